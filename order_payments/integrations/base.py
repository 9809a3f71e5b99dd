"""
Shared gateway plumbing with retry logic and comprehensive error handling.

Implements:
- Exponential backoff for idempotent reads
- Circuit breaker pattern per provider
- Transport error classification
- HMAC-SHA256 webhook signature verification
"""
import hashlib
import hmac
import time
from abc import ABC, abstractmethod
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from order_payments.config import Settings
from order_payments.core.errors import (
    GatewayErrorType,
    GatewayRejected,
    GatewayUnavailable,
    RefundNotSupported,
)
from order_payments.core.types import (
    Conversion,
    GatewayPayment,
    PaymentMethod,
    RemotePaymentStatus,
    WebhookEvent,
)
from order_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class CircuitBreaker:
    """
    Circuit breaker for gateway API calls.

    Prevents cascading failures by temporarily stopping requests
    when a provider keeps failing. Only unavailability counts as a
    failure; a rejected request means the provider is up.
    """

    def __init__(
        self,
        provider: str,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            provider: Provider name used in logs and metrics
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.provider = provider
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        """
        Await a coroutine function with circuit breaker protection.

        Args:
            func: Coroutine function to execute
            *args: Positional arguments
            **kwargs: Keyword arguments

        Returns:
            Function result

        Raises:
            GatewayUnavailable: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.monotonic() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open", provider=self.provider)
            else:
                raise GatewayUnavailable(f"{self.provider} circuit breaker is open")

        try:
            result = await func(*args, **kwargs)
        except GatewayUnavailable:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed", provider=self.provider)

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                provider=self.provider,
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(self.provider, state)


def compute_signature(secret: str, payload: bytes) -> str:
    """Hex HMAC-SHA256 of a raw payload."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """
    Verify an HMAC-SHA256 webhook signature in constant time.

    Accepts the hex digest with or without a ``sha256=`` prefix. Never
    raises; a missing secret or signature simply fails verification.
    """
    if not secret or not signature:
        return False
    try:
        candidate = signature.strip()
        if candidate.startswith("sha256="):
            candidate = candidate[len("sha256="):]
        expected = compute_signature(secret, payload)
        if len(candidate) != len(expected):
            return False
        return hmac.compare_digest(candidate.lower().encode("ascii"), expected.encode("ascii"))
    except (UnicodeError, TypeError, ValueError) as e:
        logger.warning("webhook_signature_check_error", error=str(e))
        return False


class GatewayClient:
    """
    Outbound HTTP calls to one provider.

    Features:
    - Bounded timeout on every call
    - Automatic retry with exponential backoff for reads only
    - Circuit breaker pattern
    - Error classification into unavailable and rejected
    """

    provider_name = "gateway"

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient, base_url: str):
        self.settings = settings
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.circuit_breaker = CircuitBreaker(
            self.provider_name,
            failure_threshold=settings.circuit_breaker_failure_threshold,
            timeout=settings.circuit_breaker_timeout_seconds,
        )

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    async def _send(
        self, operation: str, http_method: str, path: str, **kwargs: Any
    ) -> httpx.Response:
        """
        Perform one HTTP request and classify the outcome.

        Raises:
            GatewayUnavailable: Timeout, network error, 429 or 5xx
            GatewayRejected: Any other non-2xx response
        """
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        headers = kwargs.pop("headers", None) or await self._auth_headers()
        start = time.time()
        try:
            response = await self.http_client.request(
                http_method,
                url,
                headers=headers,
                timeout=self.settings.gateway_timeout_seconds,
                **kwargs,
            )
        except httpx.TimeoutException as e:
            self._record(operation, "timeout", start, GatewayErrorType.TRANSIENT)
            raise GatewayUnavailable(
                f"{self.provider_name} {operation} timed out", original_error=e
            )
        except httpx.TransportError as e:
            self._record(operation, "network_error", start, GatewayErrorType.TRANSIENT)
            raise GatewayUnavailable(
                f"{self.provider_name} {operation} failed: {e.__class__.__name__}",
                original_error=e,
            )

        status = response.status_code
        if status == 429:
            self._record(operation, str(status), start, GatewayErrorType.RATE_LIMIT)
            raise GatewayUnavailable(
                f"{self.provider_name} rate limited {operation}",
                error_type=GatewayErrorType.RATE_LIMIT,
            )
        if status >= 500:
            self._record(operation, str(status), start, GatewayErrorType.TRANSIENT)
            raise GatewayUnavailable(f"{self.provider_name} {operation} returned {status}")
        if status >= 400:
            self._record(operation, str(status), start, GatewayErrorType.PERMANENT)
            raise GatewayRejected(
                f"{self.provider_name} rejected {operation}: {self._error_detail(response)}"
            )

        self._record(operation, str(status), start)
        return response

    def _record(
        self,
        operation: str,
        status: str,
        start: float,
        error_type: Optional[GatewayErrorType] = None,
    ) -> None:
        metrics.record_gateway_call(self.provider_name, operation, status, time.time() - start)
        if error_type is not None:
            metrics.record_gateway_error(self.provider_name, error_type.value)
            logger.warning(
                "gateway_api_error",
                provider=self.provider_name,
                operation=operation,
                status=status,
                error_type=error_type.value,
            )

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.reason_phrase or str(response.status_code)
        if isinstance(body, dict):
            detail = body.get("message") or body.get("error_description") or body.get("error")
            return str(detail or body)
        return str(body)

    async def _auth_headers(self) -> Dict[str, str]:
        return self._headers()

    async def _request(
        self,
        operation: str,
        http_method: str,
        path: str,
        retry: bool = False,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Send a request through the circuit breaker.

        Args:
            operation: Operation label for logs and metrics
            http_method: HTTP verb
            path: Path relative to the provider base URL
            retry: Retry transient failures; only for idempotent reads

        Returns:
            httpx.Response: Successful response
        """
        # Credentials are resolved outside this call's breaker accounting
        if not kwargs.get("headers"):
            kwargs["headers"] = await self._auth_headers()
        if not retry:
            return await self.circuit_breaker.call(
                self._send, operation, http_method, path, **kwargs
            )

        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(GatewayUnavailable),
            stop=stop_after_attempt(self.settings.gateway_retry_max_attempts),
            wait=wait_exponential(multiplier=self.settings.gateway_retry_base_delay, max=8),
            reraise=True,
        ):
            with attempt:
                return await self.circuit_breaker.call(
                    self._send, operation, http_method, path, **kwargs
                )
        # Unreachable with reraise=True
        raise GatewayUnavailable(f"{self.provider_name} {operation} exhausted retries")

    def _json(self, response: httpx.Response) -> Any:
        """Decode a response body keeping amounts exact."""
        try:
            return response.json(parse_float=Decimal)
        except ValueError as e:
            raise GatewayRejected(
                f"{self.provider_name} returned a malformed response", original_error=e
            )


class GatewayAdapter(GatewayClient, ABC):
    """
    Uniform contract over one external payment provider.

    Creation is never retried automatically; a timed-out create may
    have succeeded remotely. Status reads are retried with backoff.
    """

    method: PaymentMethod
    supports_refund = False
    signature_header = "X-Webhook-Signature"

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient, base_url: str):
        super().__init__(settings, http_client, base_url)
        logger.info(
            "gateway_adapter_initialized",
            provider=self.provider_name,
            method=self.method.value,
        )

    @property
    def webhook_secret(self) -> Optional[str]:
        return None

    @property
    def required_confirmations(self) -> int:
        return self.settings.required_confirmations_for(self.method.value)

    @property
    def payment_window(self) -> timedelta:
        return timedelta(minutes=self.settings.payment_window_minutes_for(self.method.value))

    @abstractmethod
    async def create_payment(
        self, order: Any, conversion: Conversion, expires_at: Any
    ) -> GatewayPayment:
        """
        Create the remote payment for an order.

        Args:
            order: Order being paid
            conversion: Amount to request in the settlement currency
            expires_at: Local expiration of the payment window

        Returns:
            GatewayPayment: Remote id, address and/or hosted pay URL

        Raises:
            GatewayUnavailable: Provider unreachable
            GatewayRejected: Provider refused the request
        """

    @abstractmethod
    async def fetch_status(self, record: Any) -> RemotePaymentStatus:
        """Fetch the provider's current view of a payment."""

    @abstractmethod
    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        """
        Normalise a verified webhook payload.

        Raises:
            PaymentValidationError: If required fields are missing
        """

    async def refund(self, record: Any) -> Dict[str, Any]:
        """Refund a completed payment at the provider."""
        raise RefundNotSupported(self.method.value)

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> bool:
        return verify_signature(payload, signature, self.webhook_secret)
