"""
Tests for outbox delivery to order fulfillment.
"""
from typing import Any, Dict, List

import pytest
import pytest_asyncio

from conftest import (
    bitcoin_webhook,
    create_payment,
    deliver_webhook,
    load_order,
    outbox_events,
)
from order_payments.core.fulfillment import OrderStatusNotifier
from order_payments.core.outbox import OutboxPublisher

pytestmark = pytest.mark.integration


@pytest_asyncio.fixture
async def completed_payment(
    orchestrator: Any, session_factory: Any, make_order: Any, gateways: Any
) -> None:
    await make_order()
    gateways.price("bitcoin", "gbp", 40000)
    gateways.bitcoin_address()
    await create_payment(orchestrator, session_factory, "bitcoin")
    await deliver_webhook(orchestrator, session_factory, "bitcoin", bitcoin_webhook(125000, 2))


class TestOutboxPublisher:
    """Unpublished events are delivered and marked."""

    @pytest.mark.asyncio
    async def test_completion_reaches_order(
        self, services: Any, session_factory: Any, completed_payment: None
    ) -> None:
        assert await services.outbox_publisher.get_pending_count() == 1

        published = await services.outbox_publisher.process_batch()

        assert published == 1
        order = await load_order(session_factory)
        assert order.payment_status == "completed"
        assert order.status == "processing"
        events = await outbox_events(session_factory)
        assert events[0].published is True
        assert events[0].published_at is not None
        assert await services.outbox_publisher.get_pending_count() == 0

    @pytest.mark.asyncio
    async def test_nothing_pending(self, services: Any) -> None:
        assert await services.outbox_publisher.process_batch() == 0

    @pytest.mark.asyncio
    async def test_failed_delivery_stays_pending(
        self, session_factory: Any, completed_payment: None
    ) -> None:
        async def failing_publisher(event_data: Dict[str, Any]) -> None:
            raise ConnectionError("fulfillment unreachable")

        publisher = OutboxPublisher(session_factory, publisher_func=failing_publisher)

        assert await publisher.process_batch() == 0
        assert await publisher.get_pending_count() == 1
        assert (await load_order(session_factory)).payment_status == "pending"
        event = (await outbox_events(session_factory))[0]
        assert event.published is False
        assert event.attempts == 1
        assert event.last_error == "ConnectionError: fulfillment unreachable"

    @pytest.mark.asyncio
    async def test_event_parked_after_max_attempts(
        self, session_factory: Any, completed_payment: None
    ) -> None:
        async def failing_publisher(event_data: Dict[str, Any]) -> None:
            raise ConnectionError("fulfillment unreachable")

        publisher = OutboxPublisher(
            session_factory, publisher_func=failing_publisher, max_attempts=2
        )

        await publisher.process_batch()
        await publisher.process_batch()

        assert await publisher.get_pending_count() == 0
        assert await publisher.get_parked_count() == 1
        assert await publisher.process_batch() == 0
        assert (await outbox_events(session_factory))[0].attempts == 2

    @pytest.mark.asyncio
    async def test_redelivery_after_failure(
        self, session_factory: Any, completed_payment: None
    ) -> None:
        delivered: List[Dict[str, Any]] = []
        calls = []

        async def flaky_publisher(event_data: Dict[str, Any]) -> None:
            calls.append(event_data["id"])
            if len(calls) == 1:
                raise ConnectionError("fulfillment unreachable")
            delivered.append(event_data)

        publisher = OutboxPublisher(session_factory, publisher_func=flaky_publisher)

        assert await publisher.process_batch() == 0
        assert await publisher.process_batch() == 1
        assert delivered[0]["event_type"] == "payment.completed"
        assert delivered[0]["aggregate_type"] == "payment"
        assert delivered[0]["payload"]["order_id"] == "ord_1001"
        assert delivered[0]["attempt"] == 2


class TestOrderStatusNotifier:
    """Applying outbox events to orders."""

    @pytest.mark.asyncio
    async def test_refund_marks_order(self, session_factory: Any, make_order: Any) -> None:
        await make_order()
        notifier = OrderStatusNotifier(session_factory)

        await notifier({"event_type": "payment.refunded", "payload": {"order_id": "ord_1001"}})

        order = await load_order(session_factory)
        assert order.payment_status == "refunded"
        assert order.status == "pending"

    @pytest.mark.asyncio
    async def test_redelivery_is_idempotent(self, session_factory: Any, make_order: Any) -> None:
        await make_order()
        notifier = OrderStatusNotifier(session_factory)
        event = {"event_type": "payment.completed", "payload": {"order_id": "ord_1001"}}

        await notifier(event)
        await notifier(event)

        order = await load_order(session_factory)
        assert order.payment_status == "completed"
        assert order.status == "processing"

    @pytest.mark.asyncio
    async def test_unknown_event_ignored(self, session_factory: Any, make_order: Any) -> None:
        await make_order()
        notifier = OrderStatusNotifier(session_factory)

        await notifier({"event_type": "payment.disputed", "payload": {"order_id": "ord_1001"}})

        assert (await load_order(session_factory)).payment_status == "pending"

    @pytest.mark.asyncio
    async def test_missing_order_tolerated(self, session_factory: Any) -> None:
        notifier = OrderStatusNotifier(session_factory)

        await notifier({"event_type": "payment.completed", "payload": {"order_id": "ord_gone"}})
