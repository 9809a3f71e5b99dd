"""
Tests for the payment gateway adapters.

Provider HTTP APIs are mocked with respx; no test talks to a real gateway.
"""
import json
from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from typing import Any

import httpx
import pytest

from conftest import (
    BITCOIN_ADDRESS,
    BLOCKONOMICS_URL,
    FIXED_NOW,
    GLOBEE_URL,
    MONERO_ADDRESS,
    PAYPAL_URL,
)
from order_payments.core.errors import (
    GatewayRejected,
    GatewayUnavailable,
    PaymentValidationError,
    RefundNotSupported,
)
from order_payments.core.types import Conversion, RemoteStatus
from order_payments.integrations import (
    BlockonomicsAdapter,
    CircuitBreaker,
    GloBeeAdapter,
    PayPalAdapter,
    compute_signature,
    verify_signature,
)

ORDER = SimpleNamespace(id="ord_1001", order_number="ORD-1001", customer_email="buyer@example.com")


def conversion(amount: str, currency: str, rate: str = "1") -> Conversion:
    return Conversion(
        fiat_amount=Decimal("50.00"),
        fiat_currency="GBP",
        amount=Decimal(amount),
        currency=currency,
        rate=Decimal(rate),
    )


def payment_record(**values: Any) -> SimpleNamespace:
    defaults = dict(
        order_id="ord_1001",
        remote_payment_id=None,
        settlement_address=None,
        settlement_currency="GBP",
        settlement_amount=Decimal("50.00"),
        transaction_hash=None,
        required_confirmations=1,
    )
    defaults.update(values)
    return SimpleNamespace(**defaults)


class TestSignatureVerification:
    """HMAC-SHA256 webhook signatures."""

    BODY = b'{"txid": "abc", "value": 125000}'
    SECRET = "blockonomics-webhook-secret"

    @pytest.mark.unit
    def test_valid_signature(self) -> None:
        assert verify_signature(self.BODY, compute_signature(self.SECRET, self.BODY), self.SECRET)

    @pytest.mark.unit
    def test_prefixed_and_uppercase_signature(self) -> None:
        signature = "sha256=" + compute_signature(self.SECRET, self.BODY).upper()

        assert verify_signature(self.BODY, signature, self.SECRET) is True

    @pytest.mark.unit
    def test_tampered_body_rejected(self) -> None:
        signature = compute_signature(self.SECRET, self.BODY)

        assert verify_signature(self.BODY + b" ", signature, self.SECRET) is False

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "signature, secret",
        [
            (None, SECRET),
            ("", SECRET),
            ("not-hex-at-all", SECRET),
            ("ab" * 32, SECRET),
            ("deadbeef", None),
        ],
    )
    def test_invalid_inputs_fail_without_raising(self, signature: Any, secret: Any) -> None:
        assert verify_signature(self.BODY, signature, secret) is False

    @pytest.mark.unit
    def test_non_ascii_signature_fails(self) -> None:
        signature = "é" * 64

        assert verify_signature(self.BODY, signature, self.SECRET) is False


class TestCircuitBreaker:
    """Circuit breaker counts only provider unavailability."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_opens_after_repeated_unavailability(self) -> None:
        breaker = CircuitBreaker("test-provider", failure_threshold=2, timeout=60)
        calls = []

        async def down() -> None:
            calls.append(1)
            raise GatewayUnavailable("down")

        for _ in range(2):
            with pytest.raises(GatewayUnavailable):
                await breaker.call(down)

        assert breaker.state == "open"
        with pytest.raises(GatewayUnavailable, match="circuit breaker is open"):
            await breaker.call(down)
        assert len(calls) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejections_do_not_open_circuit(self) -> None:
        breaker = CircuitBreaker("test-provider", failure_threshold=2)

        async def rejected() -> None:
            raise GatewayRejected("bad request")

        for _ in range(5):
            with pytest.raises(GatewayRejected):
                await breaker.call(rejected)

        assert breaker.state == "closed"
        assert breaker.failure_count == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self) -> None:
        breaker = CircuitBreaker("test-provider", failure_threshold=3)

        async def down() -> None:
            raise GatewayUnavailable("down")

        async def up() -> str:
            return "ok"

        with pytest.raises(GatewayUnavailable):
            await breaker.call(down)
        assert await breaker.call(up) == "ok"
        assert breaker.failure_count == 0


class TestPayPalAdapter:
    """Wallet payments through PayPal Orders v2."""

    @pytest.fixture
    def adapter(self, test_settings: Any, http_client: httpx.AsyncClient) -> PayPalAdapter:
        return PayPalAdapter(test_settings, http_client)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_payment_returns_approval_url(
        self, adapter: PayPalAdapter, gateways: Any, respx_router: Any
    ) -> None:
        route = gateways.paypal_create("5O190127TN364715T")

        payment = await adapter.create_payment(ORDER, conversion("50.00", "GBP"), FIXED_NOW)

        assert payment.remote_id == "5O190127TN364715T"
        assert payment.pay_url.endswith("token=5O190127TN364715T")
        sent = route.calls.last.request
        assert sent.headers["Authorization"] == "Bearer A21AA-test-token"
        body = json.loads(sent.content)
        assert body["purchase_units"][0]["amount"] == {"currency_code": "GBP", "value": "50.00"}
        assert body["purchase_units"][0]["custom_id"] == "ord_1001"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_access_token_cached_between_calls(
        self, adapter: PayPalAdapter, gateways: Any, respx_router: Any
    ) -> None:
        gateways.paypal_create()

        await adapter.create_payment(ORDER, conversion("50.00", "GBP"), FIXED_NOW)
        await adapter.create_payment(ORDER, conversion("50.00", "GBP"), FIXED_NOW)

        token_calls = [
            call for call in respx_router.calls if call.request.url.path == "/v1/oauth2/token"
        ]
        assert len(token_calls) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_server_error_not_retried(
        self, adapter: PayPalAdapter, gateways: Any, respx_router: Any
    ) -> None:
        """A create that may have succeeded remotely is never repeated."""
        gateways.paypal_token()
        route = respx_router.post(f"{PAYPAL_URL}/v2/checkout/orders").mock(
            return_value=httpx.Response(500, json={"name": "INTERNAL_SERVER_ERROR"})
        )

        with pytest.raises(GatewayUnavailable) as exc_info:
            await adapter.create_payment(ORDER, conversion("50.00", "GBP"), FIXED_NOW)

        assert exc_info.value.retryable is True
        assert route.call_count == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_validation_error_rejected(
        self, adapter: PayPalAdapter, gateways: Any, respx_router: Any
    ) -> None:
        gateways.paypal_token()
        respx_router.post(f"{PAYPAL_URL}/v2/checkout/orders").mock(
            return_value=httpx.Response(
                422, json={"name": "UNPROCESSABLE_ENTITY", "message": "Currency not supported"}
            )
        )

        with pytest.raises(GatewayRejected, match="Currency not supported") as exc_info:
            await adapter.create_payment(ORDER, conversion("50.00", "GBP"), FIXED_NOW)

        assert exc_info.value.retryable is False

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_timeout_is_unavailable(
        self, adapter: PayPalAdapter, gateways: Any, respx_router: Any
    ) -> None:
        gateways.paypal_token()
        route = respx_router.post(f"{PAYPAL_URL}/v2/checkout/orders").mock(
            side_effect=httpx.ReadTimeout("read timed out")
        )

        with pytest.raises(GatewayUnavailable, match="timed out"):
            await adapter.create_payment(ORDER, conversion("50.00", "GBP"), FIXED_NOW)

        assert route.call_count == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_unavailable_not_retried(
        self, adapter: PayPalAdapter, gateways: Any, respx_router: Any
    ) -> None:
        gateways.paypal_token()
        route = respx_router.post(f"{PAYPAL_URL}/v2/checkout/orders").mock(
            return_value=httpx.Response(503, json={"name": "SERVICE_UNAVAILABLE"})
        )

        with pytest.raises(GatewayUnavailable):
            await adapter.create_payment(ORDER, conversion("50.00", "GBP"), FIXED_NOW)

        assert route.call_count == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_access_token_fetch_retried(
        self, adapter: PayPalAdapter, gateways: Any, respx_router: Any
    ) -> None:
        token = respx_router.post(f"{PAYPAL_URL}/v1/oauth2/token").mock(
            side_effect=[
                httpx.Response(503, json={"error": "temporarily_unavailable"}),
                httpx.Response(
                    200, json={"access_token": "A21AA-test-token", "expires_in": 32400}
                ),
            ]
        )
        respx_router.get(f"{PAYPAL_URL}/v2/checkout/orders/5O190127TN364715T").mock(
            return_value=httpx.Response(200, json={"id": "5O190127TN364715T", "status": "APPROVED"})
        )

        status = await adapter.fetch_status(payment_record(remote_payment_id="5O190127TN364715T"))

        assert token.call_count == 2
        assert status.remote_status == RemoteStatus.APPROVED
        assert adapter.circuit_breaker.failure_count == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_credentials_rejected(
        self, test_settings: Any, http_client: httpx.AsyncClient
    ) -> None:
        settings = test_settings.model_copy(update={"paypal_client_id": None})
        adapter = PayPalAdapter(settings, http_client)

        with pytest.raises(GatewayRejected, match="credentials not configured"):
            await adapter.create_payment(ORDER, conversion("50.00", "GBP"), FIXED_NOW)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_fetch_status_of_approved_order(
        self, adapter: PayPalAdapter, gateways: Any, respx_router: Any
    ) -> None:
        gateways.paypal_token()
        respx_router.get(f"{PAYPAL_URL}/v2/checkout/orders/5O190127TN364715T").mock(
            return_value=httpx.Response(200, json={"id": "5O190127TN364715T", "status": "APPROVED"})
        )

        status = await adapter.fetch_status(payment_record(remote_payment_id="5O190127TN364715T"))

        assert status.remote_status == RemoteStatus.APPROVED
        assert status.paid_amount == Decimal(0)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_capture_reports_completed_funds(
        self, adapter: PayPalAdapter, gateways: Any
    ) -> None:
        gateways.paypal_capture("5O190127TN364715T", "50.00")

        status = await adapter.capture(payment_record(remote_payment_id="5O190127TN364715T"))

        assert status.remote_status == RemoteStatus.COMPLETED
        assert status.confirmations == 1
        assert status.paid_amount == Decimal("50.00")
        assert status.transaction_hash == "3C679366HH908993F"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_capture(self, adapter: PayPalAdapter, gateways: Any) -> None:
        route = gateways.paypal_refund()

        result = await adapter.refund(payment_record(transaction_hash="3C679366HH908993F"))

        assert result == {"refund_id": "1JU08902781691411", "status": "COMPLETED"}
        assert route.call_count == 1

    @pytest.mark.unit
    def test_parse_capture_completed_webhook(self, adapter: PayPalAdapter) -> None:
        event = adapter.parse_webhook(
            {
                "id": "WH-58D329510W468432D-8HN650336L201105X",
                "event_type": "PAYMENT.CAPTURE.COMPLETED",
                "resource": {
                    "id": "3C679366HH908993F",
                    "status": "COMPLETED",
                    "amount": {"currency_code": "GBP", "value": "50.00"},
                    "custom_id": "ord_1001",
                    "supplementary_data": {"related_ids": {"order_id": "5O190127TN364715T"}},
                },
            }
        )

        assert event.event_id == "WH-58D329510W468432D-8HN650336L201105X"
        assert event.remote_id == "5O190127TN364715T"
        assert event.order_id == "ord_1001"
        assert event.observation.remote_status == RemoteStatus.COMPLETED
        assert event.observation.paid_amount == Decimal("50.00")
        assert event.observation.confirmations == 1
        assert event.observation.transaction_hash == "3C679366HH908993F"

    @pytest.mark.unit
    def test_parse_unknown_event_type_is_empty_observation(self, adapter: PayPalAdapter) -> None:
        event = adapter.parse_webhook(
            {
                "id": "WH-1",
                "event_type": "CUSTOMER.DISPUTE.CREATED",
                "resource": {"id": "5O190127TN364715T"},
            }
        )

        assert event.observation.remote_status is None
        assert event.observation.paid_amount is None

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "payload",
        [
            {"event_type": "CHECKOUT.ORDER.APPROVED", "resource": {"id": "X"}},
            {"id": "WH-1", "resource": {"id": "X"}},
            {"id": "WH-1", "event_type": "CHECKOUT.ORDER.APPROVED", "resource": "X"},
            {"id": "WH-1", "event_type": "PAYMENT.CAPTURE.COMPLETED", "resource": {"id": "C"}},
        ],
    )
    def test_parse_malformed_webhook(self, adapter: PayPalAdapter, payload: Any) -> None:
        with pytest.raises(PaymentValidationError):
            adapter.parse_webhook(payload)


class TestBlockonomicsAdapter:
    """Bitcoin payments to Blockonomics receive addresses."""

    @pytest.fixture
    def adapter(self, test_settings: Any, http_client: httpx.AsyncClient) -> BlockonomicsAdapter:
        return BlockonomicsAdapter(test_settings, http_client)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_payment_returns_address(
        self, adapter: BlockonomicsAdapter, gateways: Any
    ) -> None:
        route = gateways.bitcoin_address()

        payment = await adapter.create_payment(ORDER, conversion("0.00125", "BTC"), FIXED_NOW)

        assert payment.address == BITCOIN_ADDRESS
        assert payment.remote_id is None
        assert route.calls.last.request.headers["Authorization"] == "Bearer blockonomics-api-key"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_without_address_rejected(
        self, adapter: BlockonomicsAdapter, respx_router: Any
    ) -> None:
        respx_router.post(f"{BLOCKONOMICS_URL}/new_address").mock(
            return_value=httpx.Response(200, json={})
        )

        with pytest.raises(GatewayRejected, match="no address"):
            await adapter.create_payment(ORDER, conversion("0.00125", "BTC"), FIXED_NOW)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_fetch_status_sums_balance_and_reads_depth(
        self, adapter: BlockonomicsAdapter, gateways: Any, respx_router: Any
    ) -> None:
        gateways.bitcoin_balance(confirmed=100000, unconfirmed=25000)
        respx_router.get(f"{BLOCKONOMICS_URL}/tx_detail", params={"txid": "f4184fc5"}).mock(
            return_value=httpx.Response(200, json={"txid": "f4184fc5", "confirmations": 3})
        )

        status = await adapter.fetch_status(
            payment_record(settlement_address=BITCOIN_ADDRESS, transaction_hash="f4184fc5")
        )

        assert status.paid_amount == Decimal("0.00125")
        assert status.confirmations == 3
        assert status.remote_status == RemoteStatus.PAID

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_fetch_status_retries_transient_failure(
        self, adapter: BlockonomicsAdapter, respx_router: Any
    ) -> None:
        route = respx_router.post(f"{BLOCKONOMICS_URL}/balance").mock(
            side_effect=[
                httpx.Response(503),
                httpx.Response(200, json={"response": [{"confirmed": 0, "unconfirmed": 0}]}),
            ]
        )

        status = await adapter.fetch_status(payment_record(settlement_address=BITCOIN_ADDRESS))

        assert route.call_count == 2
        assert status.remote_status == RemoteStatus.PENDING
        assert status.paid_amount == Decimal(0)

    @pytest.mark.unit
    def test_parse_webhook(self, adapter: BlockonomicsAdapter) -> None:
        event = adapter.parse_webhook(
            {"addr": BITCOIN_ADDRESS, "txid": "f4184fc5", "value": 125000, "status": 2}
        )

        assert event.address == BITCOIN_ADDRESS
        assert event.event_id == "f4184fc5:2:125000"
        assert event.observation.confirmations == 2
        assert event.observation.paid_amount == Decimal("0.00125")
        assert event.observation.transaction_hash == "f4184fc5"

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "payload",
        [
            {"txid": "f4184fc5", "value": 1, "status": 0},
            {"addr": BITCOIN_ADDRESS, "value": 1, "status": 0},
            {"addr": BITCOIN_ADDRESS, "txid": "f4184fc5", "value": -5, "status": 0},
            {"addr": BITCOIN_ADDRESS, "txid": "f4184fc5", "value": "1.5", "status": 0},
            {"addr": BITCOIN_ADDRESS, "txid": "f4184fc5", "value": 1, "status": -1},
        ],
    )
    def test_parse_malformed_webhook(self, adapter: BlockonomicsAdapter, payload: Any) -> None:
        with pytest.raises(PaymentValidationError):
            adapter.parse_webhook(payload)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_not_supported(self, adapter: BlockonomicsAdapter) -> None:
        with pytest.raises(RefundNotSupported):
            await adapter.refund(payment_record())


class TestGloBeeAdapter:
    """Monero payments through GloBee payment requests."""

    @pytest.fixture
    def adapter(self, test_settings: Any, http_client: httpx.AsyncClient) -> GloBeeAdapter:
        return GloBeeAdapter(test_settings, http_client)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_payment_request(self, adapter: GloBeeAdapter, gateways: Any) -> None:
        route = gateways.monero_request(expiration_time="2025-01-07T12:00:00Z")

        payment = await adapter.create_payment(
            ORDER, conversion("0.4", "XMR", "0.008"), FIXED_NOW
        )

        assert payment.remote_id == "a1B2c3D4e5F6"
        assert payment.address == MONERO_ADDRESS
        assert payment.pay_url == "https://globee.com/payment-request/a1B2c3D4e5F6"
        assert payment.expires_at == datetime(2025, 1, 7, 12, 0, tzinfo=timezone.utc)
        body = json.loads(route.calls.last.request.content)
        assert body["total"] == "0.400000000000"
        assert body["ipn_url"].endswith("/payments/monero/webhook")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_without_address_rejected(
        self, adapter: GloBeeAdapter, respx_router: Any
    ) -> None:
        respx_router.post(f"{GLOBEE_URL}/payment-request").mock(
            return_value=httpx.Response(200, json={"success": True, "data": {"id": "a1"}})
        )

        with pytest.raises(GatewayRejected):
            await adapter.create_payment(ORDER, conversion("0.4", "XMR"), FIXED_NOW)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_fetch_status(self, adapter: GloBeeAdapter, respx_router: Any) -> None:
        respx_router.get(f"{GLOBEE_URL}/payment-request/a1B2c3D4e5F6").mock(
            return_value=httpx.Response(
                200,
                json={
                    "success": True,
                    "data": {
                        "id": "a1B2c3D4e5F6",
                        "status": "paid",
                        "confirmations": 4,
                        "paid_amount": "0.400000000000",
                    },
                },
            )
        )

        status = await adapter.fetch_status(payment_record(remote_payment_id="a1B2c3D4e5F6"))

        assert status.remote_status == RemoteStatus.PAID
        assert status.confirmations == 4
        assert status.paid_amount == Decimal("0.4")

    @pytest.mark.unit
    def test_parse_confirmed_webhook(self, adapter: GloBeeAdapter) -> None:
        event = adapter.parse_webhook(
            {
                "data": {
                    "id": "a1B2c3D4e5F6",
                    "status": "confirmed",
                    "order_id": "ord_1001",
                    "confirmations": 10,
                    "paid_amount": "0.4",
                    "transaction_hash": "c2f8d1",
                }
            }
        )

        assert event.remote_id == "a1B2c3D4e5F6"
        assert event.order_id == "ord_1001"
        assert event.event_id == "a1B2c3D4e5F6:confirmed:10:0.4"
        assert event.observation.remote_status == RemoteStatus.COMPLETED
        assert event.observation.confirmations == 10

    @pytest.mark.unit
    def test_parse_unknown_status_keeps_amounts(self, adapter: GloBeeAdapter) -> None:
        event = adapter.parse_webhook(
            {"id": "a1", "status": "mystery", "paid_amount": "0.1", "event_id": "evt-9"}
        )

        assert event.event_id == "evt-9"
        assert event.observation.remote_status is None
        assert event.observation.paid_amount == Decimal("0.1")

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "payload",
        [
            {"data": "oops"},
            {"data": {"status": "paid"}},
            {"data": {"id": "a1"}},
            {"data": {"id": "a1", "status": "paid", "confirmations": "many"}},
            {"data": {"id": "a1", "status": "paid", "paid_amount": "-1"}},
        ],
    )
    def test_parse_malformed_webhook(self, adapter: GloBeeAdapter, payload: Any) -> None:
        with pytest.raises(PaymentValidationError):
            adapter.parse_webhook(payload)
