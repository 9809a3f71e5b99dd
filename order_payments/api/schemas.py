"""
Pydantic schemas for API request/response models.

Responses use camelCase keys and render amounts as strings so crypto
precision survives JSON clients.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from order_payments.core.money import format_amount
from order_payments.core.types import PaymentInstructions, PaymentStatusView


class CamelModel(BaseModel):
    """Base model serialising field names as camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreatePaymentRequest(CamelModel):
    """Request schema for creating a payment."""

    order_id: str = Field(..., min_length=1, max_length=64, description="Order identifier")

    @field_validator("order_id")
    @classmethod
    def validate_order_id(cls, v: str) -> str:
        """Reject blank order ids."""
        v = v.strip()
        if not v:
            raise ValueError("orderId must not be blank")
        return v

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={"examples": [{"orderId": "ord_20250106_0001"}]},
    )


class PaymentInstructionsData(CamelModel):
    """What the customer needs to pay."""

    order_id: str
    order_number: str
    method: str
    address: Optional[str] = Field(default=None, description="Crypto settlement address")
    pay_url: Optional[str] = Field(default=None, description="Hosted payment page")
    amount: str = Field(..., description="Amount due in the settlement currency")
    currency: str
    exchange_rate: str = Field(..., description="Settlement units per fiat unit")
    required_confirmations: int
    payment_window_minutes: int
    expires_at: datetime

    @classmethod
    def from_instructions(cls, instructions: PaymentInstructions) -> "PaymentInstructionsData":
        return cls(
            order_id=instructions.order_id,
            order_number=instructions.order_number,
            method=instructions.method.value,
            address=instructions.address,
            pay_url=instructions.pay_url,
            amount=format_amount(instructions.amount, instructions.currency),
            currency=instructions.currency,
            exchange_rate=str(instructions.exchange_rate),
            required_confirmations=instructions.required_confirmations,
            payment_window_minutes=instructions.payment_window_minutes,
            expires_at=instructions.expires_at,
        )


class CreatePaymentResponse(CamelModel):
    """Response schema for payment creation."""

    success: bool = True
    data: PaymentInstructionsData


class PaymentStatusData(CamelModel):
    """Normalised payment status."""

    order_id: str
    method: str
    payment_status: str
    confirmations: int
    required_confirmations: int
    paid_amount: str
    amount: str
    currency: str
    transaction_hash: Optional[str] = None
    is_expired: bool
    expires_at: datetime

    @classmethod
    def from_view(cls, view: PaymentStatusView) -> "PaymentStatusData":
        return cls(
            order_id=view.order_id,
            method=view.method.value,
            payment_status=view.status.value,
            confirmations=view.confirmations,
            required_confirmations=view.required_confirmations,
            paid_amount=format_amount(view.paid_amount, view.currency),
            amount=format_amount(view.amount, view.currency),
            currency=view.currency,
            transaction_hash=view.transaction_hash,
            is_expired=view.is_expired,
            expires_at=view.expiration_time,
        )


class PaymentStatusResponse(CamelModel):
    """Response schema for payment status."""

    success: bool = True
    data: PaymentStatusData


class PaymentMethodData(CamelModel):
    """An enabled payment method."""

    id: str
    name: str
    description: str
    currency: Optional[str] = None
    required_confirmations: int
    payment_window_minutes: int
    supports_refund: bool


class PaymentMethodsResponse(CamelModel):
    """Response schema for the enabled payment methods."""

    success: bool = True
    data: List[PaymentMethodData]


class RefundResponse(CamelModel):
    """Response schema for an admin refund."""

    success: bool = True
    data: PaymentStatusData
    refund: Dict[str, Any]


class WebhookResponse(CamelModel):
    """Response schema for webhook processing."""

    success: bool = True
    received: bool = True
    status: Optional[str] = Field(default=None, description="applied, audited or duplicate")
    event_id: Optional[str] = None


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual check results")
    message: Optional[str] = Field(default=None, description="Status message")
