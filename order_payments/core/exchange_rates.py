"""
Exchange-rate provider with caching and stale fallback.

This module implements a two-tier rate cache:
1. Process-local cache for fast lookups (primary)
2. Optional Redis cache shared between API workers

A rate younger than the TTL is served as fresh. When the quote source
fails, the last known rate is served as stale for a bounded time.
"""
import asyncio
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal, localcontext
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import redis.asyncio as aioredis
import structlog

from order_payments.core.errors import (
    GatewayError,
    PaymentValidationError,
    RateUnavailable,
)
from order_payments.core.money import CRYPTO_CURRENCIES, precision, quantize_up
from order_payments.core.types import Conversion, RateQuote
from order_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class QuoteSource(Protocol):
    async def fetch_price(self, crypto_currency: str, fiat_currency: str) -> Decimal:
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExchangeRateProvider:
    """
    Fiat to crypto rates for payment quoting.

    Rates are expressed as quote units per one base unit, so converting
    GBP to BTC multiplies the fiat amount by the GBP/BTC rate.
    """

    def __init__(
        self,
        quote_source: QuoteSource,
        ttl_seconds: int = 300,
        max_staleness_seconds: int = 3600,
        redis_client: Optional[aioredis.Redis] = None,
        redis_url: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize exchange-rate provider.

        Args:
            quote_source: Source of crypto spot prices
            ttl_seconds: Age under which a cached rate is fresh
            max_staleness_seconds: Oldest rate served when the source fails
            redis_client: Optional Redis client for the shared cache
            redis_url: Redis URL used to create a client lazily
            clock: Returns the current UTC time (injectable for tests)
        """
        self.quote_source = quote_source
        self.ttl = timedelta(seconds=ttl_seconds)
        self.max_staleness = timedelta(seconds=max_staleness_seconds)
        self.redis_client = redis_client
        self.redis_url = redis_url
        self._redis_initialized = redis_client is not None
        self.clock = clock or _utcnow
        self._cache: Dict[Tuple[str, str], RateQuote] = {}
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    async def _ensure_redis(self) -> Optional[aioredis.Redis]:
        """Ensure Redis client is initialized, if one is configured."""
        if not self._redis_initialized:
            if not self.redis_url:
                return None
            self.redis_client = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            self._redis_initialized = True
        return self.redis_client

    @staticmethod
    def _cache_key(base: str, quote: str) -> str:
        return f"exchange_rate:{base}:{quote}"

    async def _read_shared(self, base: str, quote: str) -> Optional[RateQuote]:
        try:
            redis = await self._ensure_redis()
            if redis is None:
                return None
            raw = await redis.get(self._cache_key(base, quote))
            if not raw:
                return None
            data = json.loads(raw)
            fetched_at = datetime.fromisoformat(data["fetched_at"])
            return RateQuote(
                base=base,
                quote=quote,
                rate=Decimal(data["rate"]),
                fetched_at=fetched_at,
                valid_until=fetched_at + self.ttl,
            )
        except Exception as e:
            # A broken shared cache degrades to the local cache
            logger.warning("exchange_rate_cache_read_error", error=str(e), pair=f"{base}/{quote}")
            return None

    async def _write_shared(self, rate_quote: RateQuote) -> None:
        try:
            redis = await self._ensure_redis()
            if redis is None:
                return
            await redis.setex(
                self._cache_key(rate_quote.base, rate_quote.quote),
                int(self.max_staleness.total_seconds()),
                json.dumps(
                    {
                        "rate": str(rate_quote.rate),
                        "fetched_at": rate_quote.fetched_at.isoformat(),
                    }
                ),
            )
        except Exception as e:
            logger.warning(
                "exchange_rate_cache_write_error",
                error=str(e),
                pair=f"{rate_quote.base}/{rate_quote.quote}",
            )

    async def get_rate(self, base: str, quote: str) -> RateQuote:
        """
        Get the rate to convert base currency amounts into quote currency.

        Args:
            base: Currency being converted from (e.g., 'GBP')
            quote: Currency being converted to (e.g., 'BTC')

        Returns:
            RateQuote: Fresh, cached or bounded-stale rate

        Raises:
            RateUnavailable: If no fresh rate can be fetched and none is recent enough
            PaymentValidationError: If the pair is not supported
        """
        base = base.upper()
        quote = quote.upper()
        precision(base)
        precision(quote)
        now = self.clock()

        if base == quote:
            return RateQuote(base, quote, Decimal(1), now, now + self.ttl)

        pair = f"{base}/{quote}"
        key = (base, quote)
        cached = self._fresh(self._cache.get(key), now)
        if cached is not None:
            metrics.record_exchange_rate_lookup(pair, "cache")
            return cached

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            cached = self._cache.get(key)
            if self._fresh(cached, now) is not None:
                metrics.record_exchange_rate_lookup(pair, "cache")
                return cached

            shared = await self._read_shared(base, quote)
            if shared is not None and (cached is None or shared.fetched_at > cached.fetched_at):
                self._cache[key] = shared
                cached = shared
                if self._fresh(shared, now) is not None:
                    metrics.record_exchange_rate_lookup(pair, "shared_cache")
                    return shared

            try:
                rate = await self._fetch_rate(base, quote)
            except GatewayError as e:
                if cached is not None and now - cached.fetched_at <= self.max_staleness:
                    logger.warning(
                        "exchange_rate_stale_served",
                        pair=pair,
                        fetched_at=cached.fetched_at.isoformat(),
                        error=str(e),
                    )
                    metrics.record_exchange_rate_lookup(pair, "stale")
                    return RateQuote(
                        base=base,
                        quote=quote,
                        rate=cached.rate,
                        fetched_at=cached.fetched_at,
                        valid_until=cached.valid_until,
                        stale=True,
                    )
                logger.error("exchange_rate_unavailable", pair=pair, error=str(e))
                metrics.record_exchange_rate_lookup(pair, "unavailable")
                raise RateUnavailable(
                    f"No exchange rate available for {pair}: {e}",
                    "Exchange rate temporarily unavailable, please try again",
                )

            fresh = RateQuote(
                base=base,
                quote=quote,
                rate=rate,
                fetched_at=now,
                valid_until=now + self.ttl,
            )
            self._cache[key] = fresh
            await self._write_shared(fresh)
            metrics.record_exchange_rate_lookup(pair, "fresh")
            return fresh

    def _fresh(self, rate_quote: Optional[RateQuote], now: datetime) -> Optional[RateQuote]:
        if rate_quote is not None and now < rate_quote.valid_until:
            return rate_quote
        return None

    async def _fetch_rate(self, base: str, quote: str) -> Decimal:
        if quote in CRYPTO_CURRENCIES and base not in CRYPTO_CURRENCIES:
            price = await self.quote_source.fetch_price(quote, base)
            return Decimal(1) / price
        if base in CRYPTO_CURRENCIES and quote not in CRYPTO_CURRENCIES:
            return await self.quote_source.fetch_price(base, quote)
        raise PaymentValidationError(f"Unsupported currency pair: {base}/{quote}")

    async def convert(self, amount: Decimal, from_currency: str, to_currency: str) -> Conversion:
        """
        Convert an amount, rounding up to the target currency's precision.

        The customer is never quoted less than the fiat value at the
        stored rate.

        Args:
            amount: Amount in the source currency
            from_currency: Source currency code
            to_currency: Target currency code

        Returns:
            Conversion: Converted amount and the rate used
        """
        if amount <= 0:
            raise PaymentValidationError(f"Amount must be positive: {amount}")

        rate_quote = await self.get_rate(from_currency, to_currency)
        with localcontext() as ctx:
            ctx.prec = 50
            converted = quantize_up(Decimal(amount) * rate_quote.rate, rate_quote.quote)

        return Conversion(
            fiat_amount=Decimal(amount),
            fiat_currency=rate_quote.base,
            amount=converted,
            currency=rate_quote.quote,
            rate=rate_quote.rate,
        )

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None and self._redis_initialized:
            await self.redis_client.aclose()

    def snapshot(self) -> Dict[str, Any]:
        """Cached rates, for the health endpoint."""
        return {
            f"{base}/{quote}": {
                "rate": str(rate_quote.rate),
                "fetched_at": rate_quote.fetched_at.isoformat(),
            }
            for (base, quote), rate_quote in self._cache.items()
        }
