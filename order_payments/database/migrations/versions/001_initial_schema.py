"""Initial database schema

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade database schema."""
    # Create orders table
    op.create_table(
        "orders",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("order_number", sa.String(length=64), nullable=False),
        sa.Column("total_amount_minor", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("customer_email", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("payment_status", sa.String(length=50), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("total_amount_minor > 0", name="positive_order_total"),
        sa.CheckConstraint("length(currency) = 3", name="valid_order_currency"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_number"),
    )

    # Create payment_records table
    op.create_table(
        "payment_records",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("order_id", sa.String(length=64), nullable=False),
        sa.Column("method", sa.String(length=20), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False),
        sa.Column("remote_payment_id", sa.String(length=255), nullable=True),
        sa.Column("settlement_address", sa.String(length=255), nullable=True),
        sa.Column("pay_url", sa.Text(), nullable=True),
        sa.Column("requested_amount_minor", sa.BigInteger(), nullable=False),
        sa.Column("requested_currency", sa.String(length=3), nullable=False),
        sa.Column("settlement_amount_atomic", sa.BigInteger(), nullable=False),
        sa.Column("settlement_currency", sa.String(length=3), nullable=False),
        sa.Column("exchange_rate", sa.String(length=64), nullable=False),
        sa.Column("required_confirmations", sa.Integer(), nullable=False),
        sa.Column("confirmations", sa.Integer(), nullable=False),
        sa.Column("paid_amount_atomic", sa.BigInteger(), nullable=False),
        sa.Column("transaction_hash", sa.String(length=255), nullable=True),
        sa.Column("expiration_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("last_webhook_event_id", sa.String(length=255), nullable=True),
        sa.Column(
            "recent_webhook_event_ids",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
        ),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("last_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("method IN ('wallet', 'bitcoin', 'monero')", name="valid_method"),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'underpaid', "
            "'failed', 'cancelled', 'expired', 'refunded')",
            name="valid_payment_status",
        ),
        sa.CheckConstraint("confirmations >= 0", name="non_negative_confirmations"),
        sa.CheckConstraint("paid_amount_atomic >= 0", name="non_negative_paid_amount"),
        sa.CheckConstraint("settlement_amount_atomic > 0", name="positive_settlement_amount"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("order_id"),
    )
    op.create_index(
        op.f("ix_payment_records_status"), "payment_records", ["status"], unique=False
    )
    op.create_index(
        "idx_payment_records_remote_id",
        "payment_records",
        ["method", "remote_payment_id"],
        unique=False,
    )
    op.create_index(
        "idx_payment_records_address",
        "payment_records",
        ["method", "settlement_address"],
        unique=False,
    )

    # Create payment_events table
    op.create_table(
        "payment_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("payment_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("order_id", sa.String(length=64), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("event_data", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("correlation_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_payment_events_payment_id", "payment_events", ["payment_id"], unique=False
    )
    op.create_index("idx_payment_events_order_id", "payment_events", ["order_id"], unique=False)
    op.create_index(
        "idx_payment_events_correlation_id",
        "payment_events",
        ["correlation_id"],
        unique=False,
    )
    op.create_index("idx_payment_events_type", "payment_events", ["event_type"], unique=False)

    # Create outbox_events table
    op.create_table(
        "outbox_events",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("aggregate_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("aggregate_type", sa.String(length=100), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("published", sa.Boolean(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_outbox_aggregate",
        "outbox_events",
        ["aggregate_id", "aggregate_type"],
        unique=False,
    )
    op.create_index(
        "idx_outbox_unpublished",
        "outbox_events",
        ["published", "created_at"],
        unique=False,
        postgresql_where=sa.text("NOT published"),
    )
    op.create_index(
        op.f("ix_outbox_events_published"),
        "outbox_events",
        ["published"],
        unique=False,
    )

    # Create retired_references table
    op.create_table(
        "retired_references",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("payment_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("order_id", sa.String(length=64), nullable=False),
        sa.Column("method", sa.String(length=20), nullable=False),
        sa.Column("reference", sa.String(length=255), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False),
        sa.Column("retired_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_retired_references_lookup",
        "retired_references",
        ["method", "reference"],
        unique=False,
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index("idx_retired_references_lookup", table_name="retired_references")
    op.drop_table("retired_references")
    op.drop_index(op.f("ix_outbox_events_published"), table_name="outbox_events")
    op.drop_index(
        "idx_outbox_unpublished",
        table_name="outbox_events",
        postgresql_where=sa.text("NOT published"),
    )
    op.drop_index("idx_outbox_aggregate", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_index("idx_payment_events_type", table_name="payment_events")
    op.drop_index("idx_payment_events_correlation_id", table_name="payment_events")
    op.drop_index("idx_payment_events_order_id", table_name="payment_events")
    op.drop_index("idx_payment_events_payment_id", table_name="payment_events")
    op.drop_table("payment_events")
    op.drop_index("idx_payment_records_address", table_name="payment_records")
    op.drop_index("idx_payment_records_remote_id", table_name="payment_records")
    op.drop_index(op.f("ix_payment_records_status"), table_name="payment_records")
    op.drop_table("payment_records")
    op.drop_table("orders")
