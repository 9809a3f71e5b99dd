"""Wiring of the settlement services from settings."""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import httpx
import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_payments.config import Settings
from order_payments.core.exchange_rates import ExchangeRateProvider
from order_payments.core.fulfillment import OrderStatusNotifier
from order_payments.core.orchestrator import PaymentOrchestrator
from order_payments.core.outbox import OutboxPublisher
from order_payments.integrations import CoinGeckoQuoteSource, build_adapters

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    """Long-lived objects shared by every request."""

    orchestrator: PaymentOrchestrator
    rate_provider: ExchangeRateProvider
    outbox_publisher: OutboxPublisher
    http_client: httpx.AsyncClient
    owns_http_client: bool = True

    async def close(self) -> None:
        self.outbox_publisher.stop()
        await self.rate_provider.close()
        if self.owns_http_client:
            await self.http_client.aclose()
        logger.info("services_closed")


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    """Pooled outbound client shared by every gateway."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.gateway_timeout_seconds),
        limits=httpx.Limits(
            max_connections=settings.gateway_max_connections,
            max_keepalive_connections=settings.gateway_max_connections // 5 or 1,
        ),
        headers={"User-Agent": settings.app_name},
    )


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    http_client: Optional[httpx.AsyncClient] = None,
    redis_client: Optional[aioredis.Redis] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> Services:
    """
    Build the orchestrator and its collaborators.

    Args:
        settings: Application settings
        session_factory: Session factory used by the outbox publisher
        http_client: Optional outbound client (one is created if omitted)
        redis_client: Optional Redis client for the shared rate cache
        clock: Optional UTC clock, for tests

    Returns:
        Services: Wired services
    """
    owns_http_client = http_client is None
    client = http_client or build_http_client(settings)

    rate_provider = ExchangeRateProvider(
        CoinGeckoQuoteSource(settings, client),
        ttl_seconds=settings.rate_cache_ttl_seconds,
        max_staleness_seconds=settings.rate_max_staleness_seconds,
        redis_client=redis_client,
        redis_url=settings.redis_url,
        clock=clock,
    )
    orchestrator = PaymentOrchestrator(
        settings,
        rate_provider,
        build_adapters(settings, client),
        clock=clock,
    )
    outbox_publisher = OutboxPublisher(
        session_factory,
        publisher_func=OrderStatusNotifier(session_factory),
        batch_size=settings.outbox_batch_size,
        poll_interval_seconds=settings.outbox_poll_interval_seconds,
        max_attempts=settings.outbox_max_attempts,
    )

    logger.info(
        "services_built",
        methods=settings.get_enabled_payment_methods(),
        shared_rate_cache=bool(redis_client or settings.redis_url),
    )
    return Services(
        orchestrator=orchestrator,
        rate_provider=rate_provider,
        outbox_publisher=outbox_publisher,
        http_client=client,
        owns_http_client=owns_http_client,
    )
