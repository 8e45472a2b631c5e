"""create payments tables

Revision ID: 202610180002
Revises: 202610180001
Create Date: 2026-10-18 09:05:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180002"
down_revision: str | None = "202610180001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "payments_method",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("business_id", sa.String(length=128), nullable=False),
        sa.Column("gateway_token", sa.String(length=255), nullable=False),
        sa.Column("brand", sa.String(length=32), nullable=False),
        sa.Column("last4", sa.String(length=4), nullable=False),
        sa.Column("holder_name", sa.String(length=255), nullable=False),
        sa.Column("expire_month", sa.Integer(), nullable=False),
        sa.Column("expire_year", sa.Integer(), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("gateway_token", name="uq_payments_method_gateway_token"),
        sa.CheckConstraint("expire_month BETWEEN 1 AND 12", name="ck_payments_method_expire_month"),
    )
    op.create_index("ix_payments_method_business", "payments_method", ["business_id", "is_active"])

    op.create_table(
        "payments_charge",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("business_id", sa.String(length=128), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=False),
        sa.Column("payment_method_id", sa.Uuid(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 6), nullable=False),
        sa.Column("currency", sa.String(length=16), nullable=False),
        sa.Column("idempotency_key", sa.String(length=128), nullable=False),
        sa.Column("transaction_id", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="SUCCEEDED"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key", name="uq_payments_charge_idempotency_key"),
        sa.CheckConstraint("amount > 0", name="ck_payments_charge_amount_positive"),
    )
    op.create_index("ix_payments_charge_subscription", "payments_charge", ["subscription_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_payments_charge_subscription", table_name="payments_charge")
    op.drop_table("payments_charge")
    op.drop_index("ix_payments_method_business", table_name="payments_method")
    op.drop_table("payments_method")
