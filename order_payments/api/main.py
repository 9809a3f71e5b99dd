"""
Main FastAPI application.

Order payment settlement API with:
- CORS configuration
- Error handling mapped from the payment error taxonomy
- Request ID tracking
- Structured logging
- Prometheus metrics
- In-process outbox publisher
"""
import asyncio
import contextlib
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from order_payments import __version__
from order_payments.config import Settings, get_settings
from order_payments.core.bootstrap import build_services
from order_payments.core.errors import PaymentError
from order_payments.database.connection import (
    close_db,
    get_engine,
    get_session_factory,
    init_db,
)
from order_payments.monitoring.logging import setup_logging

from .routes import admin_router, monitoring_router, payment_router, webhook_router

# Setup logging first
setup_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    settings: Settings = app.state.settings
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        methods=settings.get_enabled_payment_methods(),
    )

    # Initialize database
    try:
        get_engine(settings)
        await init_db()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    services = build_services(settings, get_session_factory())
    app.state.services = services

    outbox_task: Optional[asyncio.Task] = None
    if settings.outbox_publisher_enabled:
        outbox_task = asyncio.create_task(services.outbox_publisher.start())

    yield

    # Shutdown
    logger.info("application_shutdown")
    await services.close()
    if outbox_task is not None:
        outbox_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await outbox_task
    app.state.services = None

    try:
        await close_db()
        logger.info("database_connections_closed")
    except Exception as e:
        logger.error("database_shutdown_error", error=str(e))


async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """
    Add request ID to all requests for tracing.

    Also adds timing information and structured logging context.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    start_time = time.time()

    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        http_method=request.method,
        path=request.url.path,
    )

    logger.info(
        "request_started",
        client_host=request.client.host if request.client else None,
    )

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        return response

    except Exception as e:
        logger.error(
            "request_failed",
            error=str(e),
            duration_seconds=time.time() - start_time,
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
    """Map payment errors to their HTTP status and error body."""
    log = logger.error if exc.http_status >= 500 else logger.warning
    log(
        "payment_error",
        error=exc.message,
        error_code=exc.error_code,
        status_code=exc.http_status,
        path=request.url.path,
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies answer 400."""
    logger.warning("request_validation_failed", path=request.url.path, errors=len(exc.errors()))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "success": False,
            "error": "Invalid request",
            "code": "validation_error",
            "details": jsonable_encoder(exc.errors()),
        },
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.
    """
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again later.",
        },
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Optional settings (environment settings if omitted)

    Returns:
        FastAPI: Configured application
    """
    settings = settings or get_settings()

    application = FastAPI(
        title="Order Payments",
        description=(
            "Order payment settlement for PayPal, Bitcoin and Monero. "
            "Features: exchange-rate quoting, signed webhooks, confirmation "
            "tracking, lazy expiry and outbox-driven fulfillment."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    application.state.settings = settings
    application.state.services = None

    # CORS configuration
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.middleware("http")(add_request_id_middleware)

    application.add_exception_handler(PaymentError, payment_error_handler)
    application.add_exception_handler(RequestValidationError, validation_error_handler)
    application.add_exception_handler(Exception, global_exception_handler)

    # Include routers
    application.include_router(payment_router)
    application.include_router(webhook_router)
    application.include_router(admin_router)
    application.include_router(monitoring_router)

    @application.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "payment_methods": settings.get_enabled_payment_methods(),
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "order_payments.api.main:app",
        host=_settings.api_host,
        port=_settings.api_port,
        reload=_settings.debug,
        workers=_settings.api_workers if not _settings.debug else 1,
        log_level=_settings.log_level.lower(),
    )
