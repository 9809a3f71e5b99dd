"""FastAPI dependencies resolving the shared services."""
import hmac
from typing import Optional

import structlog
from fastapi import Depends, HTTPException, Request, status

from order_payments.config import Settings
from order_payments.core.bootstrap import Services
from order_payments.core.orchestrator import PaymentOrchestrator
from order_payments.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_services(request: Request) -> Services:
    services: Optional[Services] = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment services are not ready",
        )
    return services


def get_orchestrator(services: Services = Depends(get_services)) -> PaymentOrchestrator:
    return services.orchestrator


def get_health_check(
    services: Services = Depends(get_services),
    settings: Settings = Depends(get_app_settings),
) -> HealthCheck:
    return HealthCheck(
        session_factory=services.outbox_publisher.session_factory,
        adapters=services.orchestrator.adapters,
        settings=settings,
        outbox=services.outbox_publisher,
    )


async def require_admin_api_key(
    request: Request, settings: Settings = Depends(get_app_settings)
) -> None:
    """
    Guard admin endpoints with the configured API key.

    Raises:
        HTTPException: 403 if no admin key is configured, 401 on a wrong key
    """
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Admin API is disabled"
        )

    provided = request.headers.get(settings.api_key_header, "")
    if not hmac.compare_digest(provided.encode(), settings.admin_api_key.encode()):
        logger.warning("admin_api_key_rejected", path=request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")
