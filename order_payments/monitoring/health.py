"""
Health checks behind the liveness, readiness and /health endpoints.

Readiness fails only on hard dependencies (database, and redis when a
shared rate cache is configured). Gateway circuit breakers and parked
outbox events degrade the report without taking the instance out of
rotation.
"""
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_payments.config import Settings, get_settings
from order_payments.database.connection import get_session_factory

if TYPE_CHECKING:
    from order_payments.core.outbox import OutboxPublisher

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when a hard dependency is unreachable."""

    pass


class HealthCheck:
    """Reports on the dependencies a payment instance needs."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        adapters: Optional[Dict[Any, Any]] = None,
        settings: Optional[Settings] = None,
        outbox: Optional["OutboxPublisher"] = None,
    ) -> None:
        """
        Initialize health check service.

        Args:
            session_factory: Optional session factory (global one if omitted)
            adapters: Optional gateway adapters whose circuit breakers are reported
            settings: Optional settings (environment settings if omitted)
            outbox: Optional outbox publisher whose backlog is reported
        """
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.adapters = adapters or {}
        self.outbox = outbox

    async def check_database(self) -> Dict[str, Any]:
        """
        Run `SELECT 1` on a fresh session.

        Raises:
            HealthCheckError: If the database is unreachable
        """
        try:
            session_factory = self.session_factory or get_session_factory()
            async with session_factory() as db:
                await db.execute(text("SELECT 1"))
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {e}") from e

        return {"status": "healthy", "service": "database"}

    async def check_redis(self) -> Dict[str, Any]:
        """
        Ping the shared rate cache, if one is configured.

        Raises:
            HealthCheckError: If redis is configured but unreachable
        """
        if not self.settings.redis_url:
            return {"status": "healthy", "service": "redis", "message": "not configured"}

        client = aioredis.from_url(self.settings.redis_url, decode_responses=True)
        try:
            await client.ping()
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {e}") from e
        finally:
            await client.aclose()

        return {"status": "healthy", "service": "redis"}

    def check_gateways(self) -> Dict[str, Any]:
        """Circuit breaker state per enabled payment method."""
        gateways = {
            method.value: {
                "provider": adapter.provider_name,
                "circuit_breaker": adapter.circuit_breaker.state,
            }
            for method, adapter in self.adapters.items()
        }
        degraded = any(g["circuit_breaker"] == "open" for g in gateways.values())
        return {
            "status": "degraded" if degraded else "healthy",
            "service": "gateways",
            "gateways": gateways,
        }

    async def check_outbox(self) -> Dict[str, Any]:
        """Fulfillment backlog; parked events need an operator."""
        if self.outbox is None:
            return {"status": "healthy", "service": "outbox", "message": "not configured"}

        pending = await self.outbox.get_pending_count()
        parked = await self.outbox.get_parked_count()
        return {
            "status": "degraded" if parked else "healthy",
            "service": "outbox",
            "pending": pending,
            "parked": parked,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run every check.

        Returns:
            Dict[str, Any]: Overall status plus one entry per check
        """
        hard: Dict[str, Callable[[], Awaitable[Dict[str, Any]]]] = {
            "database": self.check_database,
            "redis": self.check_redis,
        }
        checks: Dict[str, Any] = {}
        healthy = True
        for name, check in hard.items():
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                healthy = False

        checks["gateways"] = self.check_gateways()
        try:
            checks["outbox"] = await self.check_outbox()
        except Exception as e:
            logger.warning("outbox_health_check_failed", error=str(e))
            checks["outbox"] = {"status": "unknown", "service": "outbox", "error": str(e)}

        return {"status": "healthy" if healthy else "unhealthy", "checks": checks}

    async def liveness(self) -> Dict[str, Any]:
        """The process is up; no dependency is touched."""
        return {"status": "alive", "message": "Application is running"}

    async def readiness(self) -> Dict[str, Any]:
        """Ready when every hard dependency answers."""
        return await self.check_all()
