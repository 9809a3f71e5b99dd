"""Domain types shared by the gateways, the state machine and the API."""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from order_payments.core.errors import InvalidMethod


class PaymentMethod(Enum):
    """Closed set of settlement methods."""

    WALLET = "wallet"
    BITCOIN = "bitcoin"
    MONERO = "monero"

    @classmethod
    def parse(cls, value: str) -> "PaymentMethod":
        """Resolve a method name, raising InvalidMethod for anything else."""
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            raise InvalidMethod(value)

    @property
    def settlement_currency(self) -> Optional[str]:
        """Crypto currency the method settles in; None settles in the order's fiat."""
        return {
            PaymentMethod.WALLET: None,
            PaymentMethod.BITCOIN: "BTC",
            PaymentMethod.MONERO: "XMR",
        }[self]


class PaymentStatus(Enum):
    """Payment record lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    UNDERPAID = "underpaid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        PaymentStatus.COMPLETED,
        PaymentStatus.CANCELLED,
        PaymentStatus.REFUNDED,
        PaymentStatus.EXPIRED,
        PaymentStatus.FAILED,
    }
)

# A new attempt may replace a record in one of these states.
REPLACEABLE_STATUSES = frozenset(
    {PaymentStatus.EXPIRED, PaymentStatus.CANCELLED, PaymentStatus.FAILED}
)


class RemoteStatus(Enum):
    """Gateway status vocabulary normalised across providers."""

    PENDING = "pending"
    APPROVED = "approved"  # wallet: approved by the payer, awaiting capture
    PAID = "paid"  # funds seen, confirmations still accruing
    COMPLETED = "completed"
    UNDERPAID = "underpaid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDED = "refunded"


@dataclass(frozen=True)
class Observation:
    """Settlement facts reported by a webhook or a status poll."""

    confirmations: Optional[int] = None
    paid_amount: Optional[Decimal] = None
    remote_status: Optional[RemoteStatus] = None
    transaction_hash: Optional[str] = None


@dataclass(frozen=True)
class RateQuote:
    """Exchange rate expressed as quote units per one base unit."""

    base: str
    quote: str
    rate: Decimal
    fetched_at: datetime
    valid_until: datetime
    stale: bool = False


@dataclass(frozen=True)
class Conversion:
    """Fiat amount converted into the settlement currency."""

    fiat_amount: Decimal
    fiat_currency: str
    amount: Decimal
    currency: str
    rate: Decimal


@dataclass(frozen=True)
class GatewayPayment:
    """Remote payment created by a gateway."""

    remote_id: Optional[str] = None
    address: Optional[str] = None
    pay_url: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class RemotePaymentStatus:
    """Status fetched from a gateway for an existing payment."""

    remote_status: RemoteStatus
    confirmations: int
    paid_amount: Decimal
    transaction_hash: Optional[str] = None

    def to_observation(self) -> Observation:
        return Observation(
            confirmations=self.confirmations,
            paid_amount=self.paid_amount,
            remote_status=self.remote_status,
            transaction_hash=self.transaction_hash,
        )


@dataclass(frozen=True)
class WebhookEvent:
    """Provider webhook normalised into an event id, a lookup key and an observation."""

    event_id: str
    observation: Observation
    event_type: Optional[str] = None
    order_id: Optional[str] = None
    remote_id: Optional[str] = None
    address: Optional[str] = None


@dataclass(frozen=True)
class PaymentInstructions:
    """Customer-facing instructions returned by payment creation."""

    order_id: str
    order_number: str
    method: PaymentMethod
    amount: Decimal
    currency: str
    exchange_rate: Decimal
    required_confirmations: int
    payment_window_minutes: int
    expires_at: datetime
    address: Optional[str] = None
    pay_url: Optional[str] = None
    remote_payment_id: Optional[str] = None


@dataclass(frozen=True)
class PaymentStatusView:
    """Normalised status view of a payment record."""

    order_id: str
    method: PaymentMethod
    status: PaymentStatus
    confirmations: int
    required_confirmations: int
    paid_amount: Decimal
    amount: Decimal
    currency: str
    is_expired: bool
    expiration_time: datetime
    transaction_hash: Optional[str] = None
