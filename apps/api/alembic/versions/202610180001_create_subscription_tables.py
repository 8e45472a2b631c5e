"""create subscription tables

Revision ID: 202610180001
Revises:
Create Date: 2026-10-18 09:00:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "subscription_plan",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("code", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.String(length=1024), nullable=True),
        sa.Column("price", sa.Numeric(18, 6), nullable=False),
        sa.Column("currency", sa.String(length=16), nullable=False),
        sa.Column("billing_interval", sa.String(length=32), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_popular", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("max_staff_per_business", sa.Integer(), nullable=True),
        sa.Column("max_services", sa.Integer(), nullable=True),
        sa.Column("max_customers", sa.Integer(), nullable=True),
        sa.Column("max_appointments_per_day", sa.Integer(), nullable=True),
        sa.Column("features_json", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code", name="uq_subscription_plan_code"),
        sa.CheckConstraint("price >= 0", name="ck_subscription_plan_price_nonnegative"),
    )
    op.create_index("ix_subscription_plan_sort", "subscription_plan", ["is_active", "sort_order"])

    op.create_table(
        "subscription",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("business_id", sa.String(length=128), nullable=False),
        sa.Column("plan_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="ACTIVE"),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("trial_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scheduled_plan_id", sa.Uuid(), nullable=True),
        sa.Column("scheduled_change_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_method_id", sa.Uuid(), nullable=True),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["plan_id"], ["subscription_plan.id"]),
        sa.ForeignKeyConstraint(["scheduled_plan_id"], ["subscription_plan.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("current_period_end > current_period_start", name="ck_subscription_period_order"),
    )
    op.create_index("ix_subscription_business_status", "subscription", ["business_id", "status"])
    op.create_index("ix_subscription_scheduled_change", "subscription", ["scheduled_change_at"])

    op.create_table(
        "subscription_change",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=False),
        sa.Column("change_type", sa.String(length=64), nullable=False),
        sa.Column("previous_plan_id", sa.Uuid(), nullable=True),
        sa.Column("new_plan_id", sa.Uuid(), nullable=False),
        sa.Column("effective_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payload_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscription.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subscription_change_subscription", "subscription_change", ["subscription_id", "created_at"])

    op.create_table(
        "business_usage",
        sa.Column("business_id", sa.String(length=128), nullable=False),
        sa.Column("active_staff_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("services_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("customers_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("appointments_per_day", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("business_id"),
    )


def downgrade() -> None:
    op.drop_table("business_usage")
    op.drop_index("ix_subscription_change_subscription", table_name="subscription_change")
    op.drop_table("subscription_change")
    op.drop_index("ix_subscription_scheduled_change", table_name="subscription")
    op.drop_index("ix_subscription_business_status", table_name="subscription")
    op.drop_table("subscription")
    op.drop_index("ix_subscription_plan_sort", table_name="subscription_plan")
    op.drop_table("subscription_plan")
