"""CoinGecko spot-price source for the exchange-rate provider."""
from decimal import Decimal

import httpx
import structlog

from order_payments.config import Settings
from order_payments.core.errors import GatewayRejected
from order_payments.integrations.base import GatewayClient

logger = structlog.get_logger(__name__)

COINGECKO_IDS = {
    "BTC": "bitcoin",
    "XMR": "monero",
}


class CoinGeckoQuoteSource(GatewayClient):
    """Fiat price of one unit of a crypto currency."""

    provider_name = "coingecko"

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        super().__init__(settings, http_client, settings.coingecko_base_url)

    async def fetch_price(self, crypto_currency: str, fiat_currency: str) -> Decimal:
        """
        Fetch the current spot price.

        Args:
            crypto_currency: Crypto currency code (e.g., 'BTC')
            fiat_currency: Fiat currency code (e.g., 'GBP')

        Returns:
            Decimal: Fiat units per one crypto unit

        Raises:
            GatewayUnavailable: If CoinGecko cannot be reached
            GatewayRejected: If the response carries no usable price
        """
        coin_id = COINGECKO_IDS.get(crypto_currency.upper())
        if coin_id is None:
            raise GatewayRejected(f"No CoinGecko id for {crypto_currency}")
        vs_currency = fiat_currency.lower()

        response = await self._request(
            "simple_price",
            "GET",
            "/simple/price",
            retry=True,
            params={"ids": coin_id, "vs_currencies": vs_currency},
        )
        data = self._json(response)
        price = (data.get(coin_id) or {}).get(vs_currency) if isinstance(data, dict) else None
        if price is None:
            raise GatewayRejected(f"CoinGecko returned no {coin_id}/{vs_currency} price")

        price = Decimal(str(price))
        if not price.is_finite() or price <= 0:
            raise GatewayRejected(f"CoinGecko returned an invalid price: {price}")

        logger.info(
            "exchange_rate_fetched",
            crypto_currency=crypto_currency.upper(),
            fiat_currency=fiat_currency.upper(),
            price=str(price),
        )
        return price
