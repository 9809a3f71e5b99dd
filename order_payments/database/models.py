"""SQLAlchemy database models for order payment settlement."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from order_payments.core.money import from_atomic

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")

# SQLite only autoincrements INTEGER primary keys
BigIntegerPK = BigInteger().with_variant(Integer(), "sqlite")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps, including on backends that store naive values."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
            if dialect.name == "sqlite":
                value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class DecimalText(TypeDecorator):
    """Exact decimal stored as text (exchange rates exceed NUMERIC scale limits)."""

    impl = String(64)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        return None if value is None else str(value)

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        return None if value is None else Decimal(value)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Order(Base):
    """
    Orders table.

    Owned by the checkout collaborator; this service reads the total and
    writes back the payment outcome only.
    """

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    total_amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="GBP")
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="pending")
    payment_status: Mapped[str] = mapped_column(String(50), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("total_amount_minor > 0", name="positive_order_total"),
        CheckConstraint("length(currency) = 3", name="valid_order_currency"),
    )

    @property
    def total_amount(self) -> Decimal:
        return from_atomic(self.total_amount_minor, self.currency)

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, number={self.order_number}, "
            f"total={self.total_amount_minor}, payment_status={self.payment_status})>"
        )


class PaymentRecord(Base):
    """
    Payment records table.

    One row per order. A new attempt replaces an expired, cancelled or
    failed row in place; the version column serialises every mutation
    through a conditional update.
    """

    __tablename__ = "payment_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    method: Mapped[str] = mapped_column(String(20), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    remote_payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    settlement_address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    pay_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    requested_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    settlement_amount_atomic: Mapped[int] = mapped_column(BigInteger, nullable=False)
    settlement_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    exchange_rate: Mapped[Decimal] = mapped_column(DecimalText, nullable=False)
    required_confirmations: Mapped[int] = mapped_column(Integer, nullable=False)
    confirmations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    paid_amount_atomic: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    transaction_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    expiration_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    last_webhook_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    recent_webhook_event_ids: Mapped[List[str]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_checked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("method IN ('wallet', 'bitcoin', 'monero')", name="valid_method"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'underpaid', "
            "'failed', 'cancelled', 'expired', 'refunded')",
            name="valid_payment_status",
        ),
        CheckConstraint("confirmations >= 0", name="non_negative_confirmations"),
        CheckConstraint("paid_amount_atomic >= 0", name="non_negative_paid_amount"),
        CheckConstraint("settlement_amount_atomic > 0", name="positive_settlement_amount"),
        Index("idx_payment_records_remote_id", "method", "remote_payment_id"),
        Index("idx_payment_records_address", "method", "settlement_address"),
    )

    @property
    def requested_amount(self) -> Decimal:
        return from_atomic(self.requested_amount_minor, self.requested_currency)

    @property
    def settlement_amount(self) -> Decimal:
        return from_atomic(self.settlement_amount_atomic, self.settlement_currency)

    @property
    def paid_amount(self) -> Decimal:
        return from_atomic(self.paid_amount_atomic, self.settlement_currency)

    def __repr__(self) -> str:
        """String representation of PaymentRecord."""
        return (
            f"<PaymentRecord(id={self.id}, order_id={self.order_id}, "
            f"method={self.method}, status={self.status}, version={self.version})>"
        )


class PaymentEvent(Base):
    """
    Payment events audit trail table.

    Stores every creation, webhook, poll and admin action against a
    payment record. Immutable once written.
    """

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    payment_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    correlation_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_payment_events_payment_id", "payment_id"),
        Index("idx_payment_events_order_id", "order_id"),
        Index("idx_payment_events_correlation_id", "correlation_id"),
        Index("idx_payment_events_type", "event_type"),
    )

    def __repr__(self) -> str:
        """String representation of PaymentEvent."""
        return (
            f"<PaymentEvent(id={self.id}, payment_id={self.payment_id}, "
            f"type={self.event_type})>"
        )


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Completion and refund notifications are written in the same
    transaction as the status change, then delivered to the fulfillment
    collaborator by the outbox publisher.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    aggregate_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    published_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index(
            "idx_outbox_unpublished",
            "published",
            "created_at",
            postgresql_where=text("NOT published"),
        ),
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
    )

    def __repr__(self) -> str:
        """String representation of OutboxEvent."""
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published}, attempts={self.attempts})>"
        )


class RetiredReference(Base):
    """
    Provider references of replaced payment attempts.

    A webhook that still arrives for an earlier attempt is matched here
    and audited against the order's payment instead of being applied.
    """

    __tablename__ = "retired_references"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    payment_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    method: Mapped[str] = mapped_column(String(20), nullable=False)
    reference: Mapped[str] = mapped_column(String(255), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    retired_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("idx_retired_references_lookup", "method", "reference"),)

    def __repr__(self) -> str:
        """String representation of RetiredReference."""
        return (
            f"<RetiredReference(order_id={self.order_id}, method={self.method}, "
            f"reference={self.reference}, attempt={self.attempt})>"
        )
