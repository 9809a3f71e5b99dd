"""
Outbox delivery for payment fulfillment events.

`payment.completed` and `payment.refunded` rows are inserted in the same
transaction as the status change that produced them. The publisher hands
them to the fulfillment notifier in insertion order and marks them
published afterwards, so delivery is at-least-once and the notifier must
tolerate repeats.

A delivery that keeps failing is retried on every batch until it has used
`max_attempts`; it is then parked (left unpublished and skipped) with its
last error kept on the row for an operator.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_payments.database.models import OutboxEvent, utcnow
from order_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EventPublisher = Callable[[Dict[str, Any]], Awaitable[None]]

# Longest error text kept on a row
MAX_ERROR_LENGTH = 500


def serialize_event(event: OutboxEvent) -> Dict[str, Any]:
    """Wire form of an outbox row as handed to a publisher."""
    return {
        "id": event.id,
        "aggregate_id": str(event.aggregate_id),
        "aggregate_type": event.aggregate_type,
        "event_type": event.event_type,
        "payload": event.payload,
        "created_at": event.created_at.isoformat(),
        "attempt": event.attempts + 1,
    }


class OutboxPublisher:
    """
    Polls the outbox table and delivers fulfillment events.

    Each batch:
    1. Reads deliverable rows (unpublished, attempts left) oldest first
    2. Hands each to the publisher coroutine
    3. Marks delivered rows published and charges an attempt to the rest
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        publisher_func: EventPublisher,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
        max_attempts: int = 10,
    ):
        """
        Initialize outbox publisher.

        Args:
            session_factory: Factory for the publisher's own sessions
            publisher_func: Coroutine delivering one serialised event, usually
                the order status notifier
            batch_size: Rows read per batch
            poll_interval_seconds: Sleep between empty polls
            max_attempts: Deliveries tried before a row is parked
        """
        self.session_factory = session_factory
        self.publisher_func = publisher_func
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.max_attempts = max_attempts
        self._running = False

        logger.info(
            "outbox_publisher_initialized",
            batch_size=batch_size,
            poll_interval=poll_interval_seconds,
            max_attempts=max_attempts,
        )

    def _deliverable(self) -> Any:
        return (OutboxEvent.published == False) & (  # noqa: E712
            OutboxEvent.attempts < self.max_attempts
        )

    async def _fetch_deliverable(self, db: AsyncSession) -> List[OutboxEvent]:
        result = await db.execute(
            select(OutboxEvent)
            .where(self._deliverable())
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(self.batch_size)
        )
        return list(result.scalars().all())

    async def _deliver(self, event: OutboxEvent) -> Optional[str]:
        """
        Deliver one event.

        Returns:
            Optional[str]: None on success, otherwise the error text
        """
        start = time.time()
        try:
            await self.publisher_func(serialize_event(event))
        except Exception as e:
            parked = event.attempts + 1 >= self.max_attempts
            metrics.record_outbox_delivery_failure(event.event_type, parked)
            log = logger.error if parked else logger.warning
            log(
                "outbox_event_parked" if parked else "outbox_event_delivery_failed",
                event_id=event.id,
                event_type=event.event_type,
                attempt=event.attempts + 1,
                error=str(e),
            )
            return f"{type(e).__name__}: {e}"[:MAX_ERROR_LENGTH]

        metrics.record_outbox_event_published(event.event_type, time.time() - start)
        logger.info(
            "outbox_event_delivered",
            event_id=event.id,
            event_type=event.event_type,
            aggregate_id=str(event.aggregate_id),
        )
        return None

    async def process_batch(self) -> int:
        """
        Deliver one batch of outbox events.

        Returns:
            int: Number of events delivered
        """
        async with self.session_factory() as db:
            try:
                events = await self._fetch_deliverable(db)
                if not events:
                    return 0

                delivered: List[int] = []
                failures: Dict[int, str] = {}
                for event in events:
                    error = await self._deliver(event)
                    if error is None:
                        delivered.append(event.id)
                    else:
                        failures[event.id] = error

                if delivered:
                    await db.execute(
                        update(OutboxEvent)
                        .where(OutboxEvent.id.in_(delivered))
                        .values(published=True, published_at=utcnow())
                    )
                for event_id, error in failures.items():
                    await db.execute(
                        update(OutboxEvent)
                        .where(OutboxEvent.id == event_id)
                        .values(attempts=OutboxEvent.attempts + 1, last_error=error)
                    )
                await db.commit()

                logger.info(
                    "outbox_batch_processed",
                    total=len(events),
                    delivered=len(delivered),
                    failed=len(failures),
                )
                return len(delivered)

            except Exception as e:
                logger.error("outbox_batch_processing_error", error=str(e))
                await db.rollback()
                return 0

    async def start(self) -> None:
        """Poll and deliver until `stop()` is called."""
        self._running = True
        logger.info("outbox_publisher_started")

        try:
            while self._running:
                try:
                    delivered = await self.process_batch()
                    metrics.set_outbox_queue_depth(await self.get_pending_count())
                    # A full batch means more may be waiting
                    if delivered >= self.batch_size:
                        continue
                    await asyncio.sleep(self.poll_interval_seconds)
                except Exception as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    await asyncio.sleep(self.poll_interval_seconds)
        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        """Ask the polling loop to exit after the current batch."""
        self._running = False
        logger.info("outbox_publisher_stop_requested")

    async def get_pending_count(self) -> int:
        """Rows still awaiting delivery, parked rows excluded."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.count()).select_from(OutboxEvent).where(self._deliverable())
            )
            return int(result.scalar_one())

    async def get_parked_count(self) -> int:
        """Rows that used up their delivery attempts."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.count())
                .select_from(OutboxEvent)
                .where(
                    (OutboxEvent.published == False)  # noqa: E712
                    & (OutboxEvent.attempts >= self.max_attempts)
                )
            )
            return int(result.scalar_one())
