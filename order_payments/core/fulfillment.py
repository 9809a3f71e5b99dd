"""
Order fulfillment notifications.

Completion and refund events leave through the outbox; the notifier
applies them to the order so checkout can move it on.
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_payments.core.money import format_amount
from order_payments.core.repository import OrderRepository
from order_payments.database.connection import session_scope
from order_payments.database.models import PaymentRecord

logger = structlog.get_logger(__name__)

PAYMENT_COMPLETED = "payment.completed"
PAYMENT_REFUNDED = "payment.refunded"

# Order fields written for each outbox event type
ORDER_UPDATES = {
    PAYMENT_COMPLETED: {"payment_status": "completed", "status": "processing"},
    PAYMENT_REFUNDED: {"payment_status": "refunded"},
}


def fulfillment_payload(record: PaymentRecord, **extra: Any) -> Dict[str, Any]:
    """Outbox payload describing a settled payment."""
    payload = {
        "payment_id": str(record.id),
        "order_id": record.order_id,
        "method": record.method,
        "status": record.status,
        "amount": format_amount(record.settlement_amount, record.settlement_currency),
        "paid_amount": format_amount(record.paid_amount, record.settlement_currency),
        "currency": record.settlement_currency,
        "transaction_hash": record.transaction_hash,
        "attempt": record.attempt,
    }
    payload.update(extra)
    return payload


class OrderStatusNotifier:
    """Writes the payment outcome back to the order."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def __call__(self, event_data: Dict[str, Any]) -> None:
        """
        Apply one outbox event to its order.

        Idempotent: redelivery writes the same values again.

        Args:
            event_data: Outbox event as serialised by the publisher
        """
        event_type = event_data.get("event_type")
        payload = event_data.get("payload") or {}
        values: Optional[Dict[str, Any]] = ORDER_UPDATES.get(event_type)
        if values is None:
            logger.info("fulfillment_event_ignored", event_type=event_type)
            return

        order_id = payload.get("order_id")
        async with session_scope(self.session_factory) as db:
            found = await OrderRepository(db).mark_payment_status(order_id, **values)

        if not found:
            logger.warning("fulfillment_order_missing", order_id=order_id, event_type=event_type)
            return

        logger.info(
            "order_payment_status_updated",
            order_id=order_id,
            event_type=event_type,
            payment_status=values["payment_status"],
        )
        if event_type == PAYMENT_COMPLETED:
            logger.info(
                "payment_receipt_requested",
                order_id=order_id,
                method=payload.get("method"),
                amount=payload.get("amount"),
                currency=payload.get("currency"),
            )
