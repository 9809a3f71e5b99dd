"""External integrations for payment settlement."""
from typing import Dict

import httpx

from order_payments.config import Settings
from order_payments.core.types import PaymentMethod

from .base import CircuitBreaker, GatewayAdapter, compute_signature, verify_signature
from .blockonomics import BlockonomicsAdapter
from .coingecko import CoinGeckoQuoteSource
from .globee import GloBeeAdapter
from .paypal import PayPalAdapter

ADAPTER_CLASSES = {
    PaymentMethod.WALLET: PayPalAdapter,
    PaymentMethod.BITCOIN: BlockonomicsAdapter,
    PaymentMethod.MONERO: GloBeeAdapter,
}


def build_adapters(
    settings: Settings, http_client: httpx.AsyncClient
) -> Dict[PaymentMethod, GatewayAdapter]:
    """Instantiate an adapter for every enabled payment method."""
    return {
        PaymentMethod(name): ADAPTER_CLASSES[PaymentMethod(name)](settings, http_client)
        for name in settings.get_enabled_payment_methods()
    }


__all__ = [
    "BlockonomicsAdapter",
    "CircuitBreaker",
    "CoinGeckoQuoteSource",
    "GatewayAdapter",
    "GloBeeAdapter",
    "PayPalAdapter",
    "build_adapters",
    "compute_signature",
    "verify_signature",
]
