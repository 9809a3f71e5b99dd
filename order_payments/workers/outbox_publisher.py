"""
Standalone outbox worker.

Delivers payment completion and refund events to order fulfillment
outside the API processes. Deploy it when the API runs with
`OUTBOX_PUBLISHER_ENABLED=false`, typically as a single replica.

    order-payments-outbox
"""
import asyncio
import signal
from typing import Optional

import structlog

from order_payments.config import Settings, get_settings
from order_payments.core.fulfillment import OrderStatusNotifier
from order_payments.core.outbox import OutboxPublisher
from order_payments.database.connection import close_db, get_engine, get_session_factory
from order_payments.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_worker(settings: Optional[Settings] = None) -> None:
    """
    Deliver outbox events until SIGINT or SIGTERM.

    The batch in flight when a signal arrives is finished before exit.
    """
    settings = settings or get_settings()
    setup_logging(settings)

    get_engine(settings)
    session_factory = get_session_factory()
    publisher = OutboxPublisher(
        session_factory,
        publisher_func=OrderStatusNotifier(session_factory),
        batch_size=settings.outbox_batch_size,
        poll_interval_seconds=settings.outbox_poll_interval_seconds,
        max_attempts=settings.outbox_max_attempts,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, publisher.stop)

    logger.info(
        "outbox_worker_starting",
        app_env=settings.app_env,
        pending=await publisher.get_pending_count(),
        parked=await publisher.get_parked_count(),
    )
    try:
        await publisher.start()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await close_db()
        logger.info("outbox_worker_stopped")


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
