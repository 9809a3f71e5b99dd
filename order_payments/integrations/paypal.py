"""
PayPal Orders v2 adapter for wallet payments.

Orders are created with intent CAPTURE and approved by the payer on
PayPal's hosted page; the capture completes the payment.
"""
import asyncio
import time
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

# Order and capture statuses reported by the Orders API
ORDER_STATUS_MAP = {
    "CREATED": RemoteStatus.PENDING,
    "SAVED": RemoteStatus.PENDING,
    "PAYER_ACTION_REQUIRED": RemoteStatus.PENDING,
    "APPROVED": RemoteStatus.APPROVED,
    "COMPLETED": RemoteStatus.COMPLETED,
    "VOIDED": RemoteStatus.CANCELLED,
}

CAPTURE_STATUS_MAP = {
    "PENDING": RemoteStatus.PAID,
    "COMPLETED": RemoteStatus.COMPLETED,
    "DECLINED": RemoteStatus.FAILED,
    "FAILED": RemoteStatus.FAILED,
    "REFUNDED": RemoteStatus.REFUNDED,
    "PARTIALLY_REFUNDED": RemoteStatus.COMPLETED,
}

WEBHOOK_EVENT_MAP = {
    "CHECKOUT.ORDER.APPROVED": RemoteStatus.APPROVED,
    "CHECKOUT.ORDER.COMPLETED": RemoteStatus.COMPLETED,
    "CHECKOUT.ORDER.VOIDED": RemoteStatus.CANCELLED,
    "PAYMENT.CAPTURE.PENDING": RemoteStatus.PAID,
    "PAYMENT.CAPTURE.COMPLETED": RemoteStatus.COMPLETED,
    "PAYMENT.CAPTURE.DENIED": RemoteStatus.FAILED,
    "PAYMENT.CAPTURE.DECLINED": RemoteStatus.FAILED,
    "PAYMENT.CAPTURE.REFUNDED": RemoteStatus.REFUNDED,
}


class PayPalAdapter(GatewayAdapter):
    """Wallet payments through the PayPal REST API."""

    method = PaymentMethod.WALLET
    provider_name = "paypal"
    supports_refund = True
    signature_header = "X-Paypal-Signature"

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        super().__init__(settings, http_client, settings.paypal_base_url)
        self._access_token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    @property
    def webhook_secret(self) -> Optional[str]:
        return self.settings.paypal_webhook_secret

    async def _auth_headers(self) -> Dict[str, str]:
        token = await self._get_access_token()
        return {"Content-Type": "application/json", "Authorization": f"Bearer {token}"}

    async def _get_access_token(self) -> str:
        """Client-credentials token, cached until a minute before it expires."""
        async with self._token_lock:
            if self._access_token and time.monotonic() < self._token_expires_at:
                return self._access_token

            if not self.settings.paypal_client_id or not self.settings.paypal_client_secret:
                raise GatewayRejected("PayPal credentials not configured")

            response = await self._request(
                "oauth_token",
                "POST",
                "/v1/oauth2/token",
                retry=True,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                data={"grant_type": "client_credentials"},
                auth=(self.settings.paypal_client_id, self.settings.paypal_client_secret),
            )
            body = self._json(response)
            if not isinstance(body, dict) or not body.get("access_token"):
                raise GatewayRejected("PayPal returned no access token")

            self._access_token = body["access_token"]
            expires_in = int(body.get("expires_in", 0))
            self._token_expires_at = time.monotonic() + max(expires_in - 60, 0)
            return self._access_token

    async def create_payment(
        self, order: Any, conversion: Conversion, expires_at: Any
    ) -> GatewayPayment:
        """
        Create a PayPal order awaiting payer approval.

        Args:
            order: Order being paid
            conversion: Amount in the order's own currency
            expires_at: Local expiration of the payment window

        Returns:
            GatewayPayment: PayPal order id and approval URL
        """
        frontend = self.settings.frontend_url.rstrip("/")
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": order.id,
                    "custom_id": order.id,
                    "invoice_id": order.order_number,
                    "description": f"Order {order.order_number}",
                    "amount": {
                        "currency_code": conversion.currency,
                        "value": format_amount(conversion.amount, conversion.currency),
                    },
                }
            ],
            "application_context": {
                "user_action": "PAY_NOW",
                "shipping_preference": "NO_SHIPPING",
                "return_url": f"{frontend}/payment/success?orderId={order.id}",
                "cancel_url": f"{frontend}/payment/cancel?orderId={order.id}",
            },
        }

        logger.info(
            "creating_paypal_order",
            order_id=order.id,
            amount=format_amount(conversion.amount, conversion.currency),
            currency=conversion.currency,
        )
        response = await self._request("create_order", "POST", "/v2/checkout/orders", json=body)
        data = self._json(response)
        remote_id = data.get("id") if isinstance(data, dict) else None
        if not remote_id:
            raise GatewayRejected("PayPal order response has no id")

        approval_url = None
        for link in data.get("links", []):
            if link.get("rel") in ("approve", "payer-action"):
                approval_url = link.get("href")
                break

        logger.info("paypal_order_created", order_id=order.id, paypal_order_id=remote_id)
        return GatewayPayment(remote_id=remote_id, pay_url=approval_url)

    async def fetch_status(self, record: Any) -> RemotePaymentStatus:
        response = await self._request(
            "get_order",
            "GET",
            f"/v2/checkout/orders/{record.remote_payment_id}",
            retry=True,
        )
        return self._order_status(self._json(response), record.required_confirmations)

    async def capture(self, record: Any) -> RemotePaymentStatus:
        """
        Capture an approved PayPal order.

        Never retried: a timed-out capture may have moved funds.
        """
        logger.info(
            "capturing_paypal_order",
            order_id=record.order_id,
            paypal_order_id=record.remote_payment_id,
        )
        response = await self._request(
            "capture_order",
            "POST",
            f"/v2/checkout/orders/{record.remote_payment_id}/capture",
            json={},
        )
        return self._order_status(self._json(response), record.required_confirmations)

    async def refund(self, record: Any) -> Dict[str, Any]:
        """Refund the captured amount in full."""
        if not record.transaction_hash:
            raise GatewayRejected("Payment has no PayPal capture to refund")

        body = {
            "amount": {
                "currency_code": record.settlement_currency,
                "value": format_amount(record.settlement_amount, record.settlement_currency),
            },
            "note_to_payer": f"Refund for order {record.order_id}",
        }
        response = await self._request(
            "refund_capture",
            "POST",
            f"/v2/payments/captures/{record.transaction_hash}/refund",
            json=body,
        )
        data = self._json(response)
        logger.info(
            "paypal_refund_created",
            order_id=record.order_id,
            refund_id=data.get("id"),
            status=data.get("status"),
        )
        return {"refund_id": data.get("id"), "status": data.get("status")}

    def _order_status(self, data: Any, required_confirmations: int) -> RemotePaymentStatus:
        if not isinstance(data, dict):
            raise GatewayRejected("PayPal order response is not an object")

        status = str(data.get("status", "")).upper()
        remote_status = ORDER_STATUS_MAP.get(status, RemoteStatus.PENDING)
        capture = self._first_capture(data)
        if capture is None:
            return RemotePaymentStatus(
                remote_status=remote_status, confirmations=0, paid_amount=Decimal(0)
            )

        remote_status = CAPTURE_STATUS_MAP.get(
            str(capture.get("status", "")).upper(), remote_status
        )
        paid = to_decimal(capture.get("amount", {}).get("value", 0), "capture amount")
        confirmations = required_confirmations if remote_status in (
            RemoteStatus.COMPLETED,
            RemoteStatus.REFUNDED,
        ) else 0
        return RemotePaymentStatus(
            remote_status=remote_status,
            confirmations=confirmations,
            paid_amount=paid if confirmations else Decimal(0),
            transaction_hash=capture.get("id"),
        )

    @staticmethod
    def _first_capture(data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        for unit in data.get("purchase_units") or []:
            captures = (unit.get("payments") or {}).get("captures") or []
            if captures:
                return captures[0]
        return None

    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        event_id = payload.get("id")
        event_type = payload.get("event_type")
        resource = payload.get("resource")
        if not event_id or not event_type or not isinstance(resource, dict):
            raise PaymentValidationError(
                "Malformed PayPal webhook: missing id, event_type or resource"
            )

        related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
        if event_type.startswith("PAYMENT.CAPTURE."):
            remote_id = related.get("order_id")
            transaction_hash = resource.get("id")
        else:
            remote_id = resource.get("id")
            transaction_hash = None
        if not remote_id:
            raise PaymentValidationError("Malformed PayPal webhook: no PayPal order reference")

        remote_status = WEBHOOK_EVENT_MAP.get(event_type)
        if remote_status is None:
            logger.info("paypal_webhook_event_ignored", event_id=event_id, event_type=event_type)
            observation = Observation()
        elif remote_status in (RemoteStatus.COMPLETED, RemoteStatus.REFUNDED) and transaction_hash:
            amount = (resource.get("amount") or {}).get("value")
            observation = Observation(
                confirmations=self.required_confirmations,
                paid_amount=to_decimal(amount, "capture amount") if amount is not None else None,
                remote_status=remote_status,
                transaction_hash=transaction_hash,
            )
        else:
            observation = Observation(
                remote_status=remote_status, transaction_hash=transaction_hash
            )

        return WebhookEvent(
            event_id=str(event_id),
            observation=observation,
            event_type=event_type,
            order_id=resource.get("custom_id"),
            remote_id=remote_id,
        )
