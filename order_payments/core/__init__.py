"""Core payment settlement logic."""
from .errors import (
    ConcurrentUpdateError,
    GatewayError,
    GatewayRejected,
    GatewayUnavailable,
    InvalidMethod,
    InvalidSignature,
    InvalidTransition,
    OrderAlreadyPaid,
    OrderNotFound,
    PaymentError,
    PaymentNotFound,
    PaymentValidationError,
    RateUnavailable,
    RefundNotSupported,
)
from .types import PaymentMethod, PaymentStatus, RemoteStatus

__all__ = [
    "ConcurrentUpdateError",
    "GatewayError",
    "GatewayRejected",
    "GatewayUnavailable",
    "InvalidMethod",
    "InvalidSignature",
    "InvalidTransition",
    "OrderAlreadyPaid",
    "OrderNotFound",
    "PaymentError",
    "PaymentMethod",
    "PaymentNotFound",
    "PaymentStatus",
    "PaymentValidationError",
    "RateUnavailable",
    "RefundNotSupported",
    "RemoteStatus",
]
