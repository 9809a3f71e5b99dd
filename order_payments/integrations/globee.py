"""GloBee payment-request adapter for monero payments."""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
import structlog

from order_payments.config import Settings
from order_payments.core.errors import GatewayRejected, PaymentValidationError
from order_payments.core.money import format_amount, to_decimal
from order_payments.core.types import (
    Conversion,
    GatewayPayment,
    Observation,
    PaymentMethod,
    RemotePaymentStatus,
    RemoteStatus,
    WebhookEvent,
)
from order_payments.integrations.base import GatewayAdapter

logger = structlog.get_logger(__name__)

GLOBEE_STATUS_MAP = {
    "unpaid": RemoteStatus.PENDING,
    "new": RemoteStatus.PENDING,
    "pending": RemoteStatus.PENDING,
    "paid": RemoteStatus.PAID,
    "confirmed": RemoteStatus.COMPLETED,
    "complete": RemoteStatus.COMPLETED,
    "completed": RemoteStatus.COMPLETED,
    "underpaid": RemoteStatus.UNDERPAID,
    "overpaid": RemoteStatus.PAID,
    "cancelled": RemoteStatus.CANCELLED,
    "expired": RemoteStatus.EXPIRED,
    "failed": RemoteStatus.FAILED,
    "invalid": RemoteStatus.FAILED,
    "refunded": RemoteStatus.REFUNDED,
}


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a GloBee ISO-8601 timestamp; unparseable values are ignored."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class GloBeeAdapter(GatewayAdapter):
    """Monero payments through GloBee payment requests."""

    method = PaymentMethod.MONERO
    provider_name = "globee"
    signature_header = "X-Globee-Signature"

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        super().__init__(settings, http_client, settings.globee_base_url)

    @property
    def webhook_secret(self) -> Optional[str]:
        return self.settings.globee_webhook_secret

    async def _auth_headers(self) -> Dict[str, str]:
        if not self.settings.globee_api_key:
            raise GatewayRejected("GloBee API key not configured")
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.settings.globee_api_key}",
        }

    async def create_payment(
        self, order: Any, conversion: Conversion, expires_at: Any
    ) -> GatewayPayment:
        """
        Create a GloBee payment request.

        Args:
            order: Order being paid
            conversion: XMR amount the customer must send
            expires_at: Local expiration of the payment window

        Returns:
            GatewayPayment: Request id, address, hosted URL and remote expiry
        """
        frontend = self.settings.frontend_url.rstrip("/")
        backend = self.settings.backend_url.rstrip("/")
        body = {
            "total": format_amount(conversion.amount, conversion.currency),
            "currency": conversion.currency,
            "order_id": order.id,
            "customer_email": order.customer_email,
            "success_url": f"{frontend}/order-confirmation/{order.id}",
            "cancel_url": f"{frontend}/checkout",
            "ipn_url": f"{backend}/payments/monero/webhook",
            "redirect_url": f"{frontend}/payment/monero/{order.id}",
            "confirmation_speed": "high",
        }

        response = await self._request(
            "create_payment_request", "POST", "/payment-request", json=body
        )
        data = self._unwrap(self._json(response))
        if not data.get("id") or not data.get("payment_address"):
            raise GatewayRejected("Invalid response from GloBee API")

        logger.info(
            "monero_payment_request_created",
            order_id=order.id,
            globee_payment_id=data["id"],
        )
        return GatewayPayment(
            remote_id=str(data["id"]),
            address=data["payment_address"],
            pay_url=data.get("payment_url"),
            expires_at=parse_timestamp(data.get("expiration_time")),
        )

    async def fetch_status(self, record: Any) -> RemotePaymentStatus:
        response = await self._request(
            "get_payment_request",
            "GET",
            f"/payment-request/{record.remote_payment_id}",
            retry=True,
        )
        data = self._unwrap(self._json(response))
        observation = self._observation(data)
        return RemotePaymentStatus(
            remote_status=observation.remote_status or RemoteStatus.PENDING,
            confirmations=observation.confirmations or 0,
            paid_amount=observation.paid_amount or Decimal(0),
            transaction_hash=observation.transaction_hash,
        )

    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        data = payload.get("data", payload)
        if not isinstance(data, dict):
            raise PaymentValidationError("Malformed GloBee webhook: data is not an object")
        remote_id = data.get("id")
        order_id = data.get("order_id") or data.get("custom_payment_id")
        if not remote_id and not order_id:
            raise PaymentValidationError("Malformed GloBee webhook: missing id and order_id")
        if not data.get("status"):
            raise PaymentValidationError("Malformed GloBee webhook: missing status")

        observation = self._observation(data)
        event_id = payload.get("event_id") or payload.get("notification_id") or (
            f"{remote_id}:{data.get('status')}:{observation.confirmations}:"
            f"{data.get('paid_amount')}"
        )
        return WebhookEvent(
            event_id=str(event_id),
            observation=observation,
            event_type=f"payment_request.{data.get('status')}",
            order_id=str(order_id) if order_id else None,
            remote_id=str(remote_id) if remote_id else None,
            address=data.get("payment_address"),
        )

    def _observation(self, data: Dict[str, Any]) -> Observation:
        status = str(data.get("status", "")).lower()
        remote_status = GLOBEE_STATUS_MAP.get(status)
        if remote_status is None:
            logger.warning("globee_unknown_status", status=status)

        try:
            confirmations = int(data.get("confirmations") or 0)
        except (TypeError, ValueError):
            raise PaymentValidationError(f"Invalid confirmations: {data.get('confirmations')!r}")
        if confirmations < 0:
            raise PaymentValidationError(f"Invalid confirmations: {confirmations}")

        paid_amount = data.get("paid_amount")
        return Observation(
            confirmations=confirmations,
            paid_amount=to_decimal(paid_amount, "paid_amount") if paid_amount is not None else None,
            remote_status=remote_status,
            transaction_hash=data.get("transaction_hash"),
        )

    @staticmethod
    def _unwrap(body: Any) -> Dict[str, Any]:
        if not isinstance(body, dict):
            raise GatewayRejected("GloBee response is not an object")
        data = body.get("data", body)
        if not isinstance(data, dict):
            raise GatewayRejected("GloBee response data is not an object")
        return data
