"""
Pytest configuration and fixtures.
"""
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
import respx
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from order_payments.config import Settings
from order_payments.core.bootstrap import Services, build_services
from order_payments.core.orchestrator import PaymentOrchestrator
from order_payments.core.repository import PaymentRepository
from order_payments.core.types import PaymentInstructions
from order_payments.database.connection import create_session_factory, get_db, session_scope
from order_payments.database.models import Base, Order, OutboxEvent, PaymentEvent, PaymentRecord
from order_payments.integrations.base import compute_signature

PAYPAL_URL = "https://api-m.sandbox.paypal.com"
BLOCKONOMICS_URL = "https://www.blockonomics.co/api"
GLOBEE_URL = "https://globee.com/payment-api/v1"
COINGECKO_URL = "https://api.coingecko.com/api/v3"

WEBHOOK_SECRETS = {
    "wallet": "paypal-webhook-secret",
    "bitcoin": "blockonomics-webhook-secret",
    "monero": "globee-webhook-secret",
}

SIGNATURE_HEADERS = {
    "wallet": "X-Paypal-Signature",
    "bitcoin": "X-Blockonomics-Signature",
    "monero": "X-Globee-Signature",
}

FIXED_NOW = datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)

BITCOIN_ADDRESS = "bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq"
MONERO_ADDRESS = (
    "44AFFq5kSiGBoZ4NMDwYtN18obc8AemS33DBLWs3H7otXft3XjrpD"
    "tQGv7SqSsaBYBb98uNbr2VBBEt7f2wfn3RVGQBEP3A"
)


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without I/O")
    config.addinivalue_line("markers", "integration: database and mocked gateway tests")
    config.addinivalue_line("markers", "race: concurrent writers against one payment record")


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> None:
        self.now += timedelta(**kwargs)


def signed(method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Serialise a webhook payload and sign it the way the provider would."""
    body = json.dumps(payload).encode()
    return {
        "content": body,
        "headers": {
            SIGNATURE_HEADERS[method]: compute_signature(WEBHOOK_SECRETS[method], body),
            "Content-Type": "application/json",
        },
    }


async def create_payment(
    orchestrator: PaymentOrchestrator,
    session_factory: async_sessionmaker[AsyncSession],
    method: str,
    order_id: str = "ord_1001",
) -> PaymentInstructions:
    async with session_factory() as db:
        return await orchestrator.create_payment(order_id, method, db)


async def deliver_webhook(
    orchestrator: PaymentOrchestrator,
    session_factory: async_sessionmaker[AsyncSession],
    method: str,
    payload: Dict[str, Any],
    signature: Optional[str] = None,
) -> Dict[str, Any]:
    """Deliver a webhook straight to the orchestrator, signed unless a signature is given."""
    request = signed(method, payload)
    if signature is None:
        signature = request["headers"][SIGNATURE_HEADERS[method]]
    async with session_factory() as db:
        return await orchestrator.handle_webhook(method, request["content"], signature, db)


async def load_payment(
    session_factory: async_sessionmaker[AsyncSession], order_id: str = "ord_1001"
) -> Optional[PaymentRecord]:
    async with session_factory() as db:
        return await PaymentRepository(db).get_by_order_id(order_id)


async def load_order(
    session_factory: async_sessionmaker[AsyncSession], order_id: str = "ord_1001"
) -> Optional[Order]:
    async with session_factory() as db:
        return await db.get(Order, order_id)


async def outbox_events(session_factory: async_sessionmaker[AsyncSession]) -> List[OutboxEvent]:
    async with session_factory() as db:
        result = await db.execute(select(OutboxEvent).order_by(OutboxEvent.id))
        return list(result.scalars().all())


async def payment_events(
    session_factory: async_sessionmaker[AsyncSession], order_id: str = "ord_1001"
) -> List[PaymentEvent]:
    async with session_factory() as db:
        return await PaymentRepository(db).list_events(order_id)


def bitcoin_webhook(
    value: int, confirmations: int, txid: str = "f4184fc596403b9d638783cf57adfe4c75c605f6"
) -> Dict[str, Any]:
    return {"addr": BITCOIN_ADDRESS, "txid": txid, "value": value, "status": confirmations}


def monero_webhook(
    status: str, confirmations: int, paid_amount: str, remote_id: str = "a1B2c3D4e5F6"
) -> Dict[str, Any]:
    return {
        "data": {
            "id": remote_id,
            "status": status,
            "order_id": "ord_1001",
            "confirmations": confirmations,
            "paid_amount": paid_amount,
            "payment_address": MONERO_ADDRESS,
        }
    }


def paypal_webhook(
    event_type: str,
    event_id: str = "WH-2WR32451HC0233532-67976317FL4543714",
    remote_id: str = "5O190127TN364715T",
    capture_id: str = "3C679366HH908993F",
    amount: str = "50.00",
) -> Dict[str, Any]:
    if event_type.startswith("PAYMENT.CAPTURE."):
        resource = {
            "id": capture_id,
            "amount": {"currency_code": "GBP", "value": amount},
            "custom_id": "ord_1001",
            "supplementary_data": {"related_ids": {"order_id": remote_id}},
        }
    else:
        resource = {"id": remote_id, "status": "APPROVED"}
    return {"id": event_id, "event_type": event_type, "resource": resource}


class GatewayMocks:
    """respx routes for every provider the services talk to."""

    def __init__(self, router: respx.MockRouter):
        self.router = router

    def price(self, coin_id: str, fiat: str, price: Any) -> respx.Route:
        return self.router.get(
            f"{COINGECKO_URL}/simple/price", params={"ids": coin_id, "vs_currencies": fiat}
        ).mock(return_value=httpx.Response(200, json={coin_id: {fiat: price}}))

    def paypal_token(self) -> respx.Route:
        return self.router.post(f"{PAYPAL_URL}/v1/oauth2/token").mock(
            return_value=httpx.Response(
                200, json={"access_token": "A21AA-test-token", "expires_in": 32400}
            )
        )

    def paypal_create(self, remote_id: str = "5O190127TN364715T") -> respx.Route:
        self.paypal_token()
        return self.router.post(f"{PAYPAL_URL}/v2/checkout/orders").mock(
            return_value=httpx.Response(
                201,
                json={
                    "id": remote_id,
                    "status": "CREATED",
                    "links": [
                        {
                            "href": f"https://www.sandbox.paypal.com/checkoutnow?token={remote_id}",
                            "rel": "approve",
                            "method": "GET",
                        }
                    ],
                },
            )
        )

    def paypal_capture(
        self,
        remote_id: str,
        amount: str,
        currency: str = "GBP",
        capture_id: str = "3C679366HH908993F",
    ) -> respx.Route:
        self.paypal_token()
        return self.router.post(f"{PAYPAL_URL}/v2/checkout/orders/{remote_id}/capture").mock(
            return_value=httpx.Response(
                201,
                json={
                    "id": remote_id,
                    "status": "COMPLETED",
                    "purchase_units": [
                        {
                            "payments": {
                                "captures": [
                                    {
                                        "id": capture_id,
                                        "status": "COMPLETED",
                                        "amount": {"currency_code": currency, "value": amount},
                                    }
                                ]
                            }
                        }
                    ],
                },
            )
        )

    def paypal_refund(self, capture_id: str = "3C679366HH908993F") -> respx.Route:
        self.paypal_token()
        return self.router.post(f"{PAYPAL_URL}/v2/payments/captures/{capture_id}/refund").mock(
            return_value=httpx.Response(
                201, json={"id": "1JU08902781691411", "status": "COMPLETED"}
            )
        )

    def bitcoin_address(self, address: str = BITCOIN_ADDRESS) -> respx.Route:
        return self.router.post(f"{BLOCKONOMICS_URL}/new_address").mock(
            return_value=httpx.Response(200, json={"address": address})
        )

    def bitcoin_balance(self, confirmed: int, unconfirmed: int = 0) -> respx.Route:
        return self.router.post(f"{BLOCKONOMICS_URL}/balance").mock(
            return_value=httpx.Response(
                200,
                json={
                    "response": [
                        {
                            "addr": BITCOIN_ADDRESS,
                            "confirmed": confirmed,
                            "unconfirmed": unconfirmed,
                        }
                    ]
                },
            )
        )

    def monero_request(
        self,
        remote_id: str = "a1B2c3D4e5F6",
        address: str = MONERO_ADDRESS,
        expiration_time: Optional[str] = None,
    ) -> respx.Route:
        data = {
            "id": remote_id,
            "status": "unpaid",
            "total": "0.400000000000",
            "currency": "XMR",
            "payment_address": address,
            "payment_url": f"https://globee.com/payment-request/{remote_id}",
        }
        if expiration_time:
            data["expiration_time"] = expiration_time
        return self.router.post(f"{GLOBEE_URL}/payment-request").mock(
            return_value=httpx.Response(200, json={"success": True, "data": data})
        )


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        redis_url=None,
        app_name="order-payments-test",
        app_env="test",
        log_level="DEBUG",
        paypal_client_id="paypal-client-id",
        paypal_client_secret="paypal-client-secret",
        paypal_webhook_secret=WEBHOOK_SECRETS["wallet"],
        blockonomics_api_key="blockonomics-api-key",
        blockonomics_webhook_secret=WEBHOOK_SECRETS["bitcoin"],
        globee_api_key="globee-api-key",
        globee_webhook_secret=WEBHOOK_SECRETS["monero"],
        gateway_retry_base_delay=0,
        admin_api_key="admin-api-key",
        outbox_publisher_enabled=False,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def webhook() -> Callable[[str, Dict[str, Any]], Dict[str, Any]]:
    """Signed webhook request kwargs for httpx."""
    return signed


@pytest.fixture
def respx_router() -> Any:
    with respx.mock(assert_all_called=False) as router:
        yield router


@pytest.fixture
def gateways(respx_router: respx.MockRouter) -> GatewayMocks:
    return GatewayMocks(respx_router)


@pytest_asyncio.fixture
async def http_client() -> AsyncGenerator[httpx.AsyncClient, Any]:
    async with httpx.AsyncClient() as client:
        yield client


@pytest_asyncio.fixture
async def engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """File-backed SQLite so concurrent sessions see each other's commits."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def make_order(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Order]]:
    async def _make_order(
        order_id: str = "ord_1001",
        total: str = "50.00",
        currency: str = "GBP",
    ) -> Order:
        order = Order(
            id=order_id,
            order_number=f"ORD-{order_id.upper()}",
            total_amount_minor=int(Decimal(total) * 100),
            currency=currency,
            customer_email="buyer@example.com",
        )
        async with session_factory() as db:
            db.add(order)
            await db.commit()
        return order

    return _make_order


@pytest_asyncio.fixture
async def services(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    http_client: httpx.AsyncClient,
    clock: FakeClock,
) -> AsyncGenerator[Services, Any]:
    services = build_services(test_settings, session_factory, http_client=http_client, clock=clock)
    yield services
    await services.close()


@pytest.fixture
def orchestrator(services: Services) -> Any:
    return services.orchestrator


@pytest_asyncio.fixture
async def client(
    test_settings: Settings,
    services: Services,
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client against the app, without running its lifespan."""
    from order_payments.api.main import create_app

    app = create_app(test_settings)
    app.state.services = services

    async def override_get_db() -> AsyncGenerator[AsyncSession, Any]:
        async with session_scope(session_factory) as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
