"""
Payment record persistence.

Every mutation of a payment record is a conditional update on its
version column. A writer that loses the race re-reads the record,
recomputes its transition against the new state and tries again.
"""
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from order_payments.core.errors import ConcurrentUpdateError, PaymentNotFound
from order_payments.core.state_machine import Transition
from order_payments.core.types import PaymentMethod, WebhookEvent
from order_payments.database.models import (
    Order,
    OutboxEvent,
    PaymentEvent,
    PaymentRecord,
    RetiredReference,
    utcnow,
)
from order_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

MAX_UPDATE_ATTEMPTS = 5


@dataclass
class Mutation:
    """Column values to write, and the transition that produced them."""

    values: Dict[str, Any]
    transition: Optional[Transition] = None


@dataclass
class WebhookMatch:
    """Record a webhook resolved to, and whether it names a replaced attempt."""

    record: PaymentRecord
    replaced: bool = False
    attempt: Optional[int] = None


class OrderRepository:
    """Read access to orders owned by the checkout collaborator."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, order_id: str) -> Optional[Order]:
        result = await self.db.execute(select(Order).where(Order.id == order_id))
        return result.scalar_one_or_none()

    async def mark_payment_status(
        self, order_id: str, payment_status: str, status: Optional[str] = None
    ) -> bool:
        """
        Write the payment outcome back to an order.

        Returns:
            bool: False if the order does not exist
        """
        values: Dict[str, Any] = {"payment_status": payment_status, "updated_at": utcnow()}
        if status is not None:
            values["status"] = status
        result = await self.db.execute(update(Order).where(Order.id == order_id).values(**values))
        return result.rowcount == 1


class PaymentRepository:
    """Payment records, their audit trail and outbox writes."""

    def __init__(self, db: AsyncSession, max_attempts: int = MAX_UPDATE_ATTEMPTS):
        self.db = db
        self.max_attempts = max_attempts

    async def get_by_order_id(self, order_id: str) -> Optional[PaymentRecord]:
        """Load the payment record for an order, bypassing the identity map."""
        stmt = (
            select(PaymentRecord)
            .where(PaymentRecord.order_id == order_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def insert(self, record: PaymentRecord) -> PaymentRecord:
        """Add a new record and flush so the unique order id is enforced now."""
        self.db.add(record)
        await self.db.flush()
        return record

    async def reload(self, record: PaymentRecord) -> Optional[PaymentRecord]:
        stmt = (
            select(PaymentRecord)
            .where(PaymentRecord.id == record.id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def _first(self, *criteria: Any) -> Optional[PaymentRecord]:
        stmt = (
            select(PaymentRecord).where(*criteria).execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def find_for_webhook(
        self, method: PaymentMethod, event: WebhookEvent
    ) -> Optional[WebhookMatch]:
        """
        Locate the record a webhook refers to.

        Tries the provider's payment id and the settlement address of the
        current attempts, then the references of replaced attempts, then
        our order id. The order id alone never attaches an event that
        carries a different provider reference to the current attempt.
        """
        current = [
            (PaymentRecord.remote_payment_id, event.remote_id),
            (PaymentRecord.settlement_address, event.address),
        ]
        for column, value in current:
            if not value:
                continue
            record = await self._first(PaymentRecord.method == method.value, column == value)
            if record is not None:
                return WebhookMatch(record)

        for reference in (event.remote_id, event.address):
            if not reference:
                continue
            result = await self.db.execute(
                select(RetiredReference)
                .where(
                    RetiredReference.method == method.value,
                    RetiredReference.reference == reference,
                )
                .order_by(RetiredReference.attempt.desc())
            )
            retired = result.scalars().first()
            if retired is not None:
                record = await self.get_by_order_id(retired.order_id)
                if record is not None:
                    return WebhookMatch(record, replaced=True, attempt=retired.attempt)

        if not event.order_id:
            return None
        record = await self._first(
            PaymentRecord.method == method.value, PaymentRecord.order_id == event.order_id
        )
        if record is None:
            return None
        # A reference that matched nothing above belongs to another attempt
        carries_reference = bool(event.remote_id or event.address)
        has_reference = bool(record.remote_payment_id or record.settlement_address)
        return WebhookMatch(record, replaced=carries_reference and has_reference)

    def retire_references(
        self, record: PaymentRecord, method: str, attempt: int, references: List[Optional[str]]
    ) -> None:
        """Remember the provider references of an attempt that is being replaced."""
        for reference in dict.fromkeys(r for r in references if r):
            self.db.add(
                RetiredReference(
                    payment_id=record.id,
                    order_id=record.order_id,
                    method=method,
                    reference=reference,
                    attempt=attempt,
                )
            )

    async def conditional_update(self, record: PaymentRecord, values: Dict[str, Any]) -> bool:
        """
        Write values only if nobody else changed the record since it was read.

        Args:
            record: Record as last read; its version guards the write
            values: Column values to set

        Returns:
            bool: True if this writer won, False if the version moved on
        """
        stmt = (
            update(PaymentRecord)
            .where(PaymentRecord.id == record.id, PaymentRecord.version == record.version)
            .values(**values, version=PaymentRecord.version + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def update_with_retry(
        self,
        record: PaymentRecord,
        compute: Callable[[PaymentRecord], Optional[Mutation]],
        operation: str,
    ) -> Tuple[PaymentRecord, Optional[Mutation]]:
        """
        Apply a computed mutation, recomputing on every lost race.

        Args:
            record: Record as last read
            compute: Builds the mutation from the current record; None or
                empty values means nothing to write
            operation: Label for logs and conflict metrics

        Returns:
            Tuple of the fresh record and the mutation that was written

        Raises:
            ConcurrentUpdateError: If every attempt lost to another writer
            PaymentNotFound: If the record disappeared
        """
        for attempt in range(1, self.max_attempts + 1):
            mutation = compute(record)
            if mutation is None or not mutation.values:
                return record, mutation

            if await self.conditional_update(record, mutation.values):
                fresh = await self.reload(record)
                return fresh, mutation

            metrics.record_update_conflict(operation)
            logger.info(
                "payment_update_conflict",
                operation=operation,
                order_id=record.order_id,
                attempt=attempt,
                version=record.version,
            )
            reloaded = await self.reload(record)
            if reloaded is None:
                raise PaymentNotFound(f"Payment for order {record.order_id} disappeared")
            record = reloaded

        raise ConcurrentUpdateError(
            f"Gave up updating payment for order {record.order_id} after "
            f"{self.max_attempts} conflicting writes",
            "Payment is being updated, please retry",
        )

    def record_event(
        self,
        record: PaymentRecord,
        event_type: str,
        event_data: Dict[str, Any],
        correlation_id: uuid.UUID,
    ) -> None:
        """
        Record a payment event for audit trail.

        Args:
            record: Payment the event belongs to
            event_type: Event type (e.g., 'payment.created')
            event_data: Event data
            correlation_id: Correlation ID for tracing
        """
        self.db.add(
            PaymentEvent(
                payment_id=record.id,
                order_id=record.order_id,
                event_type=event_type,
                event_data=event_data,
                correlation_id=correlation_id,
            )
        )

    def write_outbox_event(
        self, record: PaymentRecord, event_type: str, payload: Dict[str, Any]
    ) -> None:
        """Write event to transactional outbox."""
        self.db.add(
            OutboxEvent(
                aggregate_id=record.id,
                aggregate_type="payment",
                event_type=event_type,
                payload=payload,
                published=False,
            )
        )

    async def list_events(self, order_id: str) -> List[PaymentEvent]:
        stmt = (
            select(PaymentEvent)
            .where(PaymentEvent.order_id == order_id)
            .order_by(PaymentEvent.id)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
