"""
Payment error taxonomy.

Every error carries:
- Error code (for client handling)
- User message (safe to return to callers)
- HTTP status code (for API responses)
- Retryable flag (lets checkout offer "try again" only for transient failures)
"""
from enum import Enum
from typing import Any, Dict, Optional


class PaymentError(Exception):
    """Base exception for payment processing errors."""

    error_code = "payment_error"
    http_status = 500
    retryable = False

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.user_message = user_message or message

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        body: Dict[str, Any] = {
            "success": False,
            "error": self.user_message,
            "code": self.error_code,
        }
        if self.http_status >= 500:
            body["retryable"] = self.retryable
        return body


class PaymentValidationError(PaymentError):
    """Raised when a request body or provider payload is malformed."""

    error_code = "validation_error"
    http_status = 400


class OrderNotFound(PaymentError):
    """Raised when the referenced order does not exist."""

    error_code = "order_not_found"
    http_status = 404

    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found", "Order not found")
        self.order_id = order_id


class OrderAlreadyPaid(PaymentError):
    """Raised when an order already has an active or settled payment."""

    error_code = "order_already_paid"
    http_status = 409

    def __init__(self, order_id: str, status: str):
        super().__init__(
            f"Order {order_id} already has a payment in status {status}",
            f"Order already has a payment ({status})",
        )
        self.order_id = order_id
        self.status = status


class InvalidMethod(PaymentError):
    """Raised for payment methods outside the supported or enabled set."""

    error_code = "invalid_method"
    http_status = 400

    def __init__(self, method: str):
        super().__init__(f"Invalid payment method: {method}")
        self.method = method


class PaymentNotFound(PaymentError):
    """Raised when no payment record exists for an order or webhook reference."""

    error_code = "payment_not_found"
    http_status = 404


class RateUnavailable(PaymentError):
    """Raised when no fresh or acceptably stale exchange rate exists."""

    error_code = "rate_unavailable"
    http_status = 500
    retryable = True


class InvalidSignature(PaymentError):
    """Raised when a webhook signature does not verify."""

    error_code = "invalid_signature"
    http_status = 401

    def __init__(self, method: str):
        super().__init__(f"Invalid {method} webhook signature", "Invalid webhook signature")
        self.method = method


class RefundNotSupported(PaymentError):
    """Raised when a refund is requested for a method without refunds."""

    error_code = "refund_not_supported"
    http_status = 400

    def __init__(self, method: str):
        super().__init__(f"Refunds are not supported for {method} payments")
        self.method = method


class InvalidTransition(PaymentError):
    """Raised when an explicit action is illegal in the current status."""

    error_code = "invalid_transition"
    http_status = 409


class ConcurrentUpdateError(PaymentError):
    """Raised when a conditional update keeps losing to concurrent writers."""

    error_code = "concurrent_update"
    http_status = 409
    retryable = True


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class GatewayError(PaymentError):
    """Base exception for external gateway failures."""

    error_code = "gateway_error"
    http_status = 500

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        method: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message, returned to the caller
            error_type: Classification of error
            method: Payment method of the failing gateway
            original_error: Original transport exception
        """
        super().__init__(message)
        self.error_type = error_type
        self.method = method
        self.original_error = original_error
        self.retryable = error_type != GatewayErrorType.PERMANENT


class GatewayUnavailable(GatewayError):
    """Network failure, timeout, rate limiting or 5xx from a gateway."""

    error_code = "gateway_unavailable"

    def __init__(
        self,
        message: str,
        method: Optional[str] = None,
        original_error: Optional[Exception] = None,
        error_type: GatewayErrorType = GatewayErrorType.TRANSIENT,
    ):
        super().__init__(message, error_type, method, original_error)


class GatewayRejected(GatewayError):
    """4xx validation error or malformed response from a gateway."""

    error_code = "gateway_rejected"

    def __init__(
        self,
        message: str,
        method: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message, GatewayErrorType.PERMANENT, method, original_error)
