"""
Blockonomics adapter for bitcoin payments.

Each payment gets a fresh receive address. Blockonomics reports
amounts in satoshis; they are converted to BTC at the boundary.
"""
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
import structlog

from order_payments.config import Settings
from order_payments.core.errors import GatewayRejected, PaymentValidationError
from order_payments.core.money import from_atomic
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


def satoshis_to_btc(value: Any, field: str = "value") -> Decimal:
    """Convert an integer satoshi amount to BTC."""
    if isinstance(value, bool):
        raise PaymentValidationError(f"Invalid {field}: {value!r}")
    try:
        satoshis = int(str(value))
    except (TypeError, ValueError):
        raise PaymentValidationError(f"Invalid {field}: {value!r}")
    if satoshis < 0:
        raise PaymentValidationError(f"Invalid {field}: {value!r}")
    return from_atomic(satoshis, "BTC")


class BlockonomicsAdapter(GatewayAdapter):
    """Bitcoin payments to per-order addresses from Blockonomics."""

    method = PaymentMethod.BITCOIN
    provider_name = "blockonomics"
    signature_header = "X-Blockonomics-Signature"

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        super().__init__(settings, http_client, settings.blockonomics_base_url)

    @property
    def webhook_secret(self) -> Optional[str]:
        return self.settings.blockonomics_webhook_secret

    async def _auth_headers(self) -> Dict[str, str]:
        if not self.settings.blockonomics_api_key:
            raise GatewayRejected("Blockonomics API key not configured")
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.settings.blockonomics_api_key}",
        }

    async def create_payment(
        self, order: Any, conversion: Conversion, expires_at: Any
    ) -> GatewayPayment:
        """
        Generate a new bitcoin receive address for an order.

        Args:
            order: Order being paid
            conversion: BTC amount the customer must send
            expires_at: Local expiration of the payment window

        Returns:
            GatewayPayment: Receive address; Blockonomics has no payment id
        """
        response = await self._request("new_address", "POST", "/new_address")
        data = self._json(response)
        address = data.get("address") if isinstance(data, dict) else None
        if not address:
            raise GatewayRejected("Blockonomics returned no address")

        logger.info(
            "bitcoin_address_generated",
            order_id=order.id,
            address=address,
            amount=str(conversion.amount),
        )
        return GatewayPayment(address=address)

    async def fetch_status(self, record: Any) -> RemotePaymentStatus:
        """
        Read the address balance and, when a transaction is known, its depth.

        Returns:
            RemotePaymentStatus: Confirmed plus unconfirmed balance as paid amount
        """
        response = await self._request(
            "balance",
            "POST",
            "/balance",
            retry=True,
            json={"addr": record.settlement_address},
        )
        data = self._json(response)
        entries = data.get("response") if isinstance(data, dict) else None
        if not entries:
            paid = Decimal(0)
        else:
            entry = entries[0]
            paid = satoshis_to_btc(entry.get("confirmed", 0), "confirmed") + satoshis_to_btc(
                entry.get("unconfirmed", 0), "unconfirmed"
            )

        confirmations = 0
        if record.transaction_hash:
            confirmations = await self._transaction_confirmations(record.transaction_hash)

        return RemotePaymentStatus(
            remote_status=RemoteStatus.PAID if paid > 0 else RemoteStatus.PENDING,
            confirmations=confirmations,
            paid_amount=paid,
            transaction_hash=record.transaction_hash,
        )

    async def _transaction_confirmations(self, txid: str) -> int:
        response = await self._request(
            "tx_detail", "GET", "/tx_detail", retry=True, params={"txid": txid}
        )
        data = self._json(response)
        try:
            return max(int(data.get("confirmations", 0)), 0)
        except (AttributeError, TypeError, ValueError):
            raise GatewayRejected("Blockonomics returned malformed transaction detail")

    def parse_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        address = payload.get("addr")
        txid = payload.get("txid")
        if not address or not txid:
            raise PaymentValidationError("Missing required fields: addr and txid")

        paid = satoshis_to_btc(payload.get("value", 0))
        raw_confirmations = payload.get("confirmations", payload.get("status", 0))
        try:
            confirmations = int(raw_confirmations)
        except (TypeError, ValueError):
            raise PaymentValidationError(f"Invalid confirmations: {raw_confirmations!r}")
        if confirmations < 0:
            raise PaymentValidationError(f"Invalid confirmations: {raw_confirmations!r}")

        event_id = payload.get("event_id") or f"{txid}:{confirmations}:{payload.get('value', 0)}"
        return WebhookEvent(
            event_id=str(event_id),
            observation=Observation(
                confirmations=confirmations,
                paid_amount=paid,
                remote_status=RemoteStatus.PAID if paid > 0 else None,
                transaction_hash=str(txid),
            ),
            event_type="bitcoin.transaction",
            address=str(address),
        )
