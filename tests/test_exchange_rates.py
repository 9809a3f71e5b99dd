"""
Tests for exchange-rate quoting, caching and stale fallback.
"""
import json
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx
import pytest

from conftest import COINGECKO_URL, FakeClock
from order_payments.core.errors import (
    GatewayRejected,
    GatewayUnavailable,
    PaymentValidationError,
    RateUnavailable,
)
from order_payments.core.exchange_rates import ExchangeRateProvider
from order_payments.integrations.coingecko import CoinGeckoQuoteSource


class StubQuoteSource:
    """Quote source returning scripted prices or errors."""

    def __init__(self, *results: Any):
        self.results: List[Any] = list(results)
        self.calls: List[tuple] = []

    async def fetch_price(self, crypto_currency: str, fiat_currency: str) -> Decimal:
        self.calls.append((crypto_currency, fiat_currency))
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return Decimal(result)


class FakeRedis:
    """In-memory stand-in for the few Redis calls the provider makes."""

    def __init__(self, data: Optional[Dict[str, str]] = None):
        self.data = data or {}
        self.ttls: Dict[str, int] = {}

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def setex(self, key: str, ttl: int, value: str) -> None:
        self.data[key] = value
        self.ttls[key] = ttl

    async def aclose(self) -> None:
        pass


def make_provider(source: StubQuoteSource, clock: FakeClock, **kwargs: Any) -> ExchangeRateProvider:
    return ExchangeRateProvider(
        source,
        ttl_seconds=kwargs.pop("ttl_seconds", 300),
        max_staleness_seconds=kwargs.pop("max_staleness_seconds", 3600),
        clock=clock,
        **kwargs,
    )


class TestExchangeRateProvider:
    """Test suite for ExchangeRateProvider."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fiat_to_crypto_rate_is_inverse_of_price(self, clock: FakeClock) -> None:
        """GBP/BTC is one over the BTC price in GBP."""
        source = StubQuoteSource("40000")
        provider = make_provider(source, clock)

        quote = await provider.get_rate("GBP", "BTC")

        assert quote.rate == Decimal("0.000025")
        assert quote.stale is False
        assert source.calls == [("BTC", "GBP")]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rate_served_from_cache_within_ttl(self, clock: FakeClock) -> None:
        """A second lookup inside the TTL does not hit the quote source."""
        source = StubQuoteSource("40000")
        provider = make_provider(source, clock)

        await provider.get_rate("GBP", "BTC")
        clock.advance(seconds=299)
        await provider.get_rate("gbp", "btc")

        assert len(source.calls) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rate_refetched_after_ttl(self, clock: FakeClock) -> None:
        """An expired cache entry is refreshed from the source."""
        source = StubQuoteSource("40000", "50000")
        provider = make_provider(source, clock)

        await provider.get_rate("GBP", "BTC")
        clock.advance(seconds=301)
        quote = await provider.get_rate("GBP", "BTC")

        assert len(source.calls) == 2
        assert quote.rate == Decimal("0.00002")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stale_rate_served_when_source_fails(self, clock: FakeClock) -> None:
        """Within the staleness bound the last known rate is served, flagged stale."""
        source = StubQuoteSource("40000", GatewayUnavailable("coingecko down"))
        provider = make_provider(source, clock)

        await provider.get_rate("GBP", "BTC")
        clock.advance(minutes=30)
        quote = await provider.get_rate("GBP", "BTC")

        assert quote.stale is True
        assert quote.rate == Decimal("0.000025")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rate_unavailable_beyond_staleness(self, clock: FakeClock) -> None:
        """A cached rate older than the staleness bound is never served."""
        source = StubQuoteSource("40000", GatewayUnavailable("coingecko down"))
        provider = make_provider(source, clock)

        await provider.get_rate("GBP", "BTC")
        clock.advance(hours=2)

        with pytest.raises(RateUnavailable) as exc_info:
            await provider.get_rate("GBP", "BTC")
        assert exc_info.value.retryable is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rate_unavailable_without_cache(self, clock: FakeClock) -> None:
        """A failing source with nothing cached raises RateUnavailable."""
        provider = make_provider(StubQuoteSource(GatewayRejected("no price")), clock)

        with pytest.raises(RateUnavailable):
            await provider.get_rate("GBP", "XMR")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_same_currency_rate_is_one(self, clock: FakeClock) -> None:
        """Wallet payments settle in the order's own currency."""
        source = StubQuoteSource("40000")
        provider = make_provider(source, clock)

        quote = await provider.get_rate("GBP", "GBP")

        assert quote.rate == Decimal(1)
        assert source.calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unsupported_currency_rejected(self, clock: FakeClock) -> None:
        provider = make_provider(StubQuoteSource("40000"), clock)

        with pytest.raises(PaymentValidationError, match="Unsupported currency"):
            await provider.get_rate("GBP", "DOGE")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_shared_cache_used_before_source(self, clock: FakeClock) -> None:
        """A fresh rate written by another worker avoids a quote source call."""
        redis = FakeRedis(
            {
                "exchange_rate:GBP:BTC": json.dumps(
                    {"rate": "0.000025", "fetched_at": clock().isoformat()}
                )
            }
        )
        source = StubQuoteSource("99999")
        provider = make_provider(source, clock, redis_client=redis)

        quote = await provider.get_rate("GBP", "BTC")

        assert quote.rate == Decimal("0.000025")
        assert source.calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fresh_rate_written_to_shared_cache(self, clock: FakeClock) -> None:
        redis = FakeRedis()
        provider = make_provider(StubQuoteSource("125"), clock, redis_client=redis)

        await provider.get_rate("GBP", "XMR")

        stored = json.loads(redis.data["exchange_rate:GBP:XMR"])
        assert Decimal(stored["rate"]) == Decimal("0.008")
        assert redis.ttls["exchange_rate:GBP:XMR"] == 3600


class TestConversion:
    """Rounding of fiat amounts into settlement currencies."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_scenario_a_settlement_amount(self, clock: FakeClock) -> None:
        """199.99 GBP at 0.000025 BTC/GBP is 0.00499975 BTC."""
        provider = make_provider(StubQuoteSource("40000"), clock)

        conversion = await provider.convert(Decimal("199.99"), "GBP", "BTC")

        assert conversion.amount == Decimal("0.00499975")
        assert conversion.currency == "BTC"
        assert conversion.rate == Decimal("0.000025")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_bitcoin_amount_rounded_up(self, clock: FakeClock) -> None:
        """Digits beyond satoshis round up, never down."""
        provider = make_provider(StubQuoteSource("30000"), clock)

        conversion = await provider.convert(Decimal("50.00"), "GBP", "BTC")

        assert conversion.amount == Decimal("0.00166667")
        assert conversion.amount * Decimal("30000") >= Decimal("50.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "total, price",
        [("199.99", "150.5"), ("0.01", "137.77"), ("1234.56", "99.99"), ("19.99", "151.234")],
    )
    async def test_monero_reconversion_never_short(
        self, clock: FakeClock, total: str, price: str
    ) -> None:
        """Reconverting the quoted XMR at the stored rate covers the fiat total."""
        provider = make_provider(StubQuoteSource(price), clock)

        conversion = await provider.convert(Decimal(total), "GBP", "XMR")

        assert conversion.amount.as_tuple().exponent == -12
        assert conversion.amount / conversion.rate >= Decimal(total)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_positive_amount_rejected(self, clock: FakeClock) -> None:
        provider = make_provider(StubQuoteSource("40000"), clock)

        with pytest.raises(PaymentValidationError, match="must be positive"):
            await provider.convert(Decimal("0"), "GBP", "BTC")


class TestCoinGeckoQuoteSource:
    """CoinGecko price lookups over mocked HTTP."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fetch_price(
        self, test_settings: Any, http_client: httpx.AsyncClient, gateways: Any
    ) -> None:
        route = gateways.price("monero", "gbp", 125.5)
        source = CoinGeckoQuoteSource(test_settings, http_client)

        price = await source.fetch_price("XMR", "GBP")

        assert price == Decimal("125.5")
        assert route.call_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_zero_price_rejected(
        self, test_settings: Any, http_client: httpx.AsyncClient, gateways: Any
    ) -> None:
        gateways.price("bitcoin", "gbp", 0)
        source = CoinGeckoQuoteSource(test_settings, http_client)

        with pytest.raises(GatewayRejected, match="invalid price"):
            await source.fetch_price("BTC", "GBP")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_price_rejected(
        self, test_settings: Any, http_client: httpx.AsyncClient, respx_router: Any
    ) -> None:
        respx_router.get(f"{COINGECKO_URL}/simple/price").mock(
            return_value=httpx.Response(200, json={})
        )
        source = CoinGeckoQuoteSource(test_settings, http_client)

        with pytest.raises(GatewayRejected, match="no bitcoin/gbp price"):
            await source.fetch_price("BTC", "GBP")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_server_errors_retried_then_surface(
        self, test_settings: Any, http_client: httpx.AsyncClient, respx_router: Any
    ) -> None:
        """Rate reads are idempotent and retried up to the configured attempts."""
        route = respx_router.get(f"{COINGECKO_URL}/simple/price").mock(
            return_value=httpx.Response(503)
        )
        source = CoinGeckoQuoteSource(test_settings, http_client)

        with pytest.raises(GatewayUnavailable):
            await source.fetch_price("BTC", "GBP")
        assert route.call_count == test_settings.gateway_retry_max_attempts

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_error_recovers_on_retry(
        self, test_settings: Any, http_client: httpx.AsyncClient, respx_router: Any
    ) -> None:
        route = respx_router.get(f"{COINGECKO_URL}/simple/price").mock(
            side_effect=[
                httpx.ConnectError("connection refused"),
                httpx.Response(200, json={"bitcoin": {"gbp": 40000}}),
            ]
        )
        source = CoinGeckoQuoteSource(test_settings, http_client)

        price = await source.fetch_price("BTC", "GBP")

        assert price == Decimal("40000")
        assert route.call_count == 2
