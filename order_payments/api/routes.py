"""
API routes for order payment settlement.
"""
import time
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from order_payments.core.errors import PaymentError
from order_payments.core.orchestrator import PaymentOrchestrator
from order_payments.database.connection import get_db
from order_payments.monitoring.health import HealthCheck

from .dependencies import get_health_check, get_orchestrator, require_admin_api_key
from .schemas import (
    CreatePaymentRequest,
    CreatePaymentResponse,
    HealthCheckResponse,
    PaymentInstructionsData,
    PaymentMethodData,
    PaymentMethodsResponse,
    PaymentStatusData,
    PaymentStatusResponse,
    RefundResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/payments", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


@payment_router.get(
    "/methods",
    response_model=PaymentMethodsResponse,
    summary="List payment methods",
    description="Enabled payment methods with their settlement parameters",
)
async def list_payment_methods(
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> PaymentMethodsResponse:
    """List enabled payment methods."""
    methods = [PaymentMethodData(**m) for m in orchestrator.list_payment_methods()]
    return PaymentMethodsResponse(data=methods)


@payment_router.post(
    "/{method}/create",
    response_model=CreatePaymentResponse,
    response_model_exclude_none=True,
    status_code=status.HTTP_201_CREATED,
    summary="Create a payment",
    description="Quote the order total and open a payment with the method's gateway",
)
async def create_payment(
    method: str,
    request: CreatePaymentRequest,
    db: AsyncSession = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> CreatePaymentResponse:
    """
    Create a payment for an order.

    At most one active payment exists per order; a second request while
    one is active is refused with 409.
    """
    start_time = time.time()
    logger.info("api_create_payment_request", method=method, order_id=request.order_id)

    instructions = await orchestrator.create_payment(request.order_id, method, db)

    logger.info(
        "api_create_payment_success",
        method=instructions.method.value,
        order_id=instructions.order_id,
        duration_seconds=time.time() - start_time,
    )
    return CreatePaymentResponse(data=PaymentInstructionsData.from_instructions(instructions))


@payment_router.get(
    "/{method}/status/{order_id}",
    response_model=PaymentStatusResponse,
    summary="Get payment status",
    description="Current payment status, refreshed from the gateway when stale",
)
async def get_payment_status(
    method: str,
    order_id: str,
    refresh: bool = False,
    db: AsyncSession = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> PaymentStatusResponse:
    """Get payment status by order id."""
    adapter = orchestrator.get_adapter(method)
    view = await orchestrator.get_status(order_id, db, method=adapter.method, refresh=refresh)
    return PaymentStatusResponse(data=PaymentStatusData.from_view(view))


@payment_router.post(
    "/wallet/capture/{order_id}",
    response_model=PaymentStatusResponse,
    summary="Capture a wallet payment",
    description="Capture a PayPal order the payer has approved",
)
async def capture_wallet_payment(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> PaymentStatusResponse:
    """Capture an approved wallet payment."""
    logger.info("api_capture_payment_request", order_id=order_id)
    view = await orchestrator.capture_wallet_payment(order_id, db)
    logger.info("api_capture_payment_success", order_id=order_id, status=view.status.value)
    return PaymentStatusResponse(data=PaymentStatusData.from_view(view))


@payment_router.post(
    "/{method}/cancel/{order_id}",
    response_model=PaymentStatusResponse,
    summary="Cancel a payment",
    description="Cancel a payment the customer has not acted on yet",
)
async def cancel_payment(
    method: str,
    order_id: str,
    db: AsyncSession = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> PaymentStatusResponse:
    """Cancel a pending payment."""
    adapter = orchestrator.get_adapter(method)
    logger.info("api_cancel_payment_request", method=adapter.method.value, order_id=order_id)
    view = await orchestrator.cancel_payment(order_id, db, method=adapter.method)
    return PaymentStatusResponse(data=PaymentStatusData.from_view(view))


@webhook_router.post(
    "/{method}/webhook",
    response_model=WebhookResponse,
    response_model_exclude_none=True,
    summary="Gateway webhook endpoint",
    description="Handle signed settlement notifications from a payment gateway",
)
async def payment_webhook(
    method: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> Any:
    """
    Handle gateway webhook events.

    Duplicates are acknowledged with 200 so the provider stops
    redelivering. Anything that was not persisted answers non-2xx.
    """
    adapter = orchestrator.get_adapter(method)
    body = await request.body()
    signature = request.headers.get(adapter.signature_header)
    remote_addr = request.client.host if request.client else None

    try:
        result = await orchestrator.handle_webhook(
            adapter.method, body, signature, db, remote_addr=remote_addr
        )
    except PaymentError:
        raise
    except Exception as e:
        logger.error("api_webhook_unexpected_error", method=adapter.method.value, error=str(e))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": "Webhook processing failed"},
        )

    logger.info(
        "api_webhook_received",
        method=adapter.method.value,
        event_id=result["event_id"],
        status=result["status"],
    )
    return WebhookResponse(status=result["status"], event_id=result["event_id"])


@admin_router.post(
    "/payments/{order_id}/refund",
    response_model=RefundResponse,
    summary="Refund a payment",
    description="Refund a completed wallet payment through the provider",
    dependencies=[Depends(require_admin_api_key)],
)
async def refund_payment(
    order_id: str,
    db: AsyncSession = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> RefundResponse:
    """Refund a completed payment."""
    logger.info("api_refund_payment_request", order_id=order_id)
    result = await orchestrator.refund_payment(order_id, db)
    logger.info(
        "api_refund_payment_success",
        order_id=order_id,
        refund_id=result["refund"].get("refund_id"),
    )
    return RefundResponse(
        data=PaymentStatusData.from_view(result["status"]), refund=result["refund"]
    )


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness() -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await HealthCheck().liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    try:
        result = await health_check.readiness()
        if result["status"] != "healthy":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
        return result
    except HTTPException:
        raise
    except Exception as e:
        logger.error("readiness_check_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "error": str(e)},
        )


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

