"""
Provider webhook handler with signature verification and event deduplication.

Implements:
- HMAC signature verification over the raw body
- Event deduplication using a bounded per-payment set of event ids
- State machine transitions applied through conditional updates
- Audit trail for every accepted delivery
"""
import json
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from order_payments.core.errors import (
    InvalidMethod,
    InvalidSignature,
    PaymentNotFound,
    PaymentValidationError,
)
from order_payments.core.fulfillment import (
    PAYMENT_COMPLETED,
    PAYMENT_REFUNDED,
    fulfillment_payload,
)
from order_payments.core.repository import Mutation, PaymentRepository, WebhookMatch
from order_payments.core.state_machine import PaymentSnapshot, PaymentStateMachine, Transition
from order_payments.core.types import PaymentMethod, PaymentStatus, WebhookEvent
from order_payments.database.models import PaymentRecord
from order_payments.integrations.base import GatewayAdapter
from order_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def remember_event_id(recent: Optional[List[str]], event_id: str, limit: int) -> List[str]:
    """Append an event id to the bounded replay window, dropping the oldest."""
    ids = [i for i in (recent or []) if i != event_id]
    ids.append(event_id)
    return ids[-limit:]


def seen_event(record: PaymentRecord, event_id: str) -> bool:
    return event_id == record.last_webhook_event_id or event_id in (
        record.recent_webhook_event_ids or []
    )


class WebhookHandler:
    """
    Handles provider webhooks with verification and deduplication.

    Features:
    - Signature verification with each provider's shared secret
    - Replay detection on the payment record itself
    - Observations applied through the state machine
    - Completion written to the outbox in the same transaction
    """

    def __init__(
        self,
        adapters: Dict[PaymentMethod, GatewayAdapter],
        state_machine: PaymentStateMachine,
        recent_event_ids_limit: int = 20,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize webhook handler.

        Args:
            adapters: Gateway adapter per enabled payment method
            state_machine: Transition rules shared with the orchestrator
            recent_event_ids_limit: Event ids remembered per payment
            clock: Returns the current UTC time (injectable for tests)
        """
        self.adapters = adapters
        self.state_machine = state_machine
        self.recent_event_ids_limit = recent_event_ids_limit
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        logger.info("webhook_handler_initialized", methods=[m.value for m in adapters])

    def verify_signature(
        self,
        adapter: GatewayAdapter,
        payload: bytes,
        signature: Optional[str],
        remote_addr: Optional[str] = None,
    ) -> None:
        """
        Verify webhook signature against the raw body.

        Raises:
            InvalidSignature: If signature verification fails
        """
        if not adapter.verify_webhook_signature(payload, signature):
            metrics.record_webhook_signature_failure(adapter.method.value)
            logger.warning(
                "webhook_signature_invalid",
                method=adapter.method.value,
                remote_addr=remote_addr,
                signature_present=bool(signature),
            )
            raise InvalidSignature(adapter.method.value)

    @staticmethod
    def parse_payload(payload: bytes) -> Dict[str, Any]:
        """
        Decode a verified body, keeping amounts exact.

        Raises:
            PaymentValidationError: If the body is not a JSON object
        """
        try:
            data = json.loads(payload, parse_float=Decimal)
        except (ValueError, UnicodeDecodeError):
            raise PaymentValidationError("Malformed webhook payload")
        if not isinstance(data, dict):
            raise PaymentValidationError("Malformed webhook payload")
        return data

    async def handle(
        self,
        method: PaymentMethod,
        payload: bytes,
        signature: Optional[str],
        db: AsyncSession,
        remote_addr: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Verify, deduplicate and apply one webhook delivery.

        An event for a replaced attempt of the order's payment is audited
        and acknowledged but never applied.

        Args:
            method: Payment method whose provider sent the webhook
            payload: Raw request body as bytes
            signature: Signature header value
            db: Database session
            remote_addr: Address the delivery came from, for security logs

        Returns:
            Dict[str, Any]: Processing result

        Raises:
            InvalidSignature: If the signature does not verify
            PaymentValidationError: If the payload is malformed
            PaymentNotFound: If no payment matches the webhook
        """
        start = time.time()
        adapter = self.adapters.get(method)
        if adapter is None:
            raise InvalidMethod(method.value)

        self.verify_signature(adapter, payload, signature, remote_addr)
        event = adapter.parse_webhook(self.parse_payload(payload))

        logger.info(
            "processing_webhook_event",
            method=method.value,
            event_id=event.event_id,
            event_type=event.event_type,
        )

        payments = PaymentRepository(db)
        match = await payments.find_for_webhook(method, event)
        if match is None:
            metrics.record_webhook_event(method.value, "not_found", time.time() - start)
            logger.warning(
                "webhook_payment_not_found",
                method=method.value,
                event_id=event.event_id,
                remote_id=event.remote_id,
                address=event.address,
                order_id=event.order_id,
            )
            raise PaymentNotFound(
                f"No {method.value} payment matches webhook {event.event_id}",
                "Payment not found",
            )

        record = match.record
        if match.replaced:
            return await self._audit_replaced(method, payments, match, event, db, start)

        if seen_event(record, event.event_id):
            return self._duplicate(method, record, event, start)

        correlation_id = uuid.uuid4()
        now = self.clock()

        def compute(current: PaymentRecord) -> Optional[Mutation]:
            if seen_event(current, event.event_id):
                return None
            snapshot = PaymentSnapshot.from_record(current)
            transition = self.state_machine.apply(snapshot, event.observation, now)
            if snapshot.status.is_terminal and not transition.changed:
                # Audited only; a settled record is not touched
                return Mutation(values={}, transition=transition)
            values = transition.changed_values()
            values["last_webhook_event_id"] = event.event_id
            values["recent_webhook_event_ids"] = remember_event_id(
                current.recent_webhook_event_ids, event.event_id, self.recent_event_ids_limit
            )
            return Mutation(values=values, transition=transition)

        record, mutation = await payments.update_with_retry(record, compute, "webhook")
        if mutation is None:
            return self._duplicate(method, record, event, start)

        transition = mutation.transition
        outcome = "applied" if mutation.values else "audited"
        payments.record_event(
            record,
            f"webhook.{method.value}",
            {
                "event_id": event.event_id,
                "event_type": event.event_type,
                "outcome": outcome,
                "reason": transition.reason,
                "from_status": transition.previous.status.value,
                "to_status": transition.current.status.value,
                "confirmations": transition.current.confirmations,
                "paid_amount": str(transition.current.paid_amount),
            },
            correlation_id,
        )
        self.emit_transition(payments, record, transition, correlation_id)
        await db.commit()

        metrics.record_webhook_event(method.value, outcome, time.time() - start)
        logger.info(
            "webhook_event_processed_successfully",
            method=method.value,
            event_id=event.event_id,
            order_id=record.order_id,
            outcome=outcome,
            status=record.status,
            confirmations=record.confirmations,
        )
        return {
            "status": outcome,
            "event_id": event.event_id,
            "order_id": record.order_id,
            "payment_status": record.status,
        }

    @staticmethod
    def emit_transition(
        payments: PaymentRepository,
        record: PaymentRecord,
        transition: Optional[Transition],
        correlation_id: uuid.UUID,
    ) -> None:
        """Record a status change, and queue fulfillment when the payment settles."""
        if transition is None or not transition.status_changed:
            return

        metrics.record_state_transition(
            record.method, transition.previous.status.value, transition.current.status.value
        )
        payments.record_event(
            record,
            "payment.status_changed",
            {
                "from_status": transition.previous.status.value,
                "to_status": transition.current.status.value,
                "reason": transition.reason,
            },
            correlation_id,
        )
        logger.info(
            "payment_status_changed",
            order_id=record.order_id,
            method=record.method,
            from_status=transition.previous.status.value,
            to_status=transition.current.status.value,
            reason=transition.reason,
        )

        if transition.current.status == PaymentStatus.COMPLETED:
            payments.write_outbox_event(record, PAYMENT_COMPLETED, fulfillment_payload(record))
        elif transition.current.status == PaymentStatus.REFUNDED:
            payments.write_outbox_event(record, PAYMENT_REFUNDED, fulfillment_payload(record))

    def _duplicate(
        self, method: PaymentMethod, record: PaymentRecord, event: WebhookEvent, start: float
    ) -> Dict[str, Any]:
        metrics.record_webhook_event(method.value, "duplicate", time.time() - start)
        logger.info(
            "webhook_event_already_processed",
            method=method.value,
            event_id=event.event_id,
            order_id=record.order_id,
        )
        return {
            "status": "duplicate",
            "event_id": event.event_id,
            "order_id": record.order_id,
            "payment_status": record.status,
        }

    async def _audit_replaced(
        self,
        method: PaymentMethod,
        payments: PaymentRepository,
        match: WebhookMatch,
        event: WebhookEvent,
        db: AsyncSession,
        start: float,
    ) -> Dict[str, Any]:
        """Record an event for an earlier attempt without touching the current one."""
        record = match.record
        payments.record_event(
            record,
            f"webhook.{method.value}",
            {
                "event_id": event.event_id,
                "event_type": event.event_type,
                "outcome": "audited",
                "reason": "replaced_attempt",
                "attempt": match.attempt,
                "remote_id": event.remote_id,
                "address": event.address,
                "payment_status": record.status,
            },
            uuid.uuid4(),
        )
        await db.commit()

        metrics.record_webhook_event(method.value, "audited", time.time() - start)
        logger.info(
            "webhook_event_for_replaced_attempt",
            method=method.value,
            event_id=event.event_id,
            order_id=record.order_id,
            attempt=match.attempt,
            current_attempt=record.attempt,
        )
        return {
            "status": "audited",
            "event_id": event.event_id,
            "order_id": record.order_id,
            "payment_status": record.status,
        }
