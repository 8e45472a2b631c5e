"""create plan change tables

Revision ID: 202610180003
Revises: 202610180002
Create Date: 2026-10-18 09:10:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180003"
down_revision: str | None = "202610180002"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "plan_change_execution",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("business_id", sa.String(length=128), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=False),
        sa.Column("idempotency_key", sa.String(length=128), nullable=False),
        sa.Column("request_hash", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="EXECUTING"),
        sa.Column("change_type", sa.String(length=32), nullable=False),
        sa.Column("target_plan_id", sa.Uuid(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 6), nullable=True),
        sa.Column("currency", sa.String(length=16), nullable=True),
        sa.Column("payment_method_id", sa.Uuid(), nullable=True),
        sa.Column("transaction_id", sa.String(length=128), nullable=True),
        sa.Column("charge_dispatched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("result_json", sa.JSON(), nullable=True),
        sa.Column("error_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key", name="uq_plan_change_execution_idempotency_key"),
    )
    op.create_index(
        "ix_plan_change_execution_subscription",
        "plan_change_execution",
        ["subscription_id", "status"],
    )
    op.create_index(
        "uq_plan_change_execution_in_flight",
        "plan_change_execution",
        ["subscription_id"],
        unique=True,
        postgresql_where=sa.text("status = 'EXECUTING'"),
        sqlite_where=sa.text("status = 'EXECUTING'"),
    )

    op.create_table(
        "plan_change_flow",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("business_id", sa.String(length=128), nullable=False),
        sa.Column("subscription_id", sa.Uuid(), nullable=False),
        sa.Column("state", sa.String(length=32), nullable=False, server_default="IDLE"),
        sa.Column("target_plan_id", sa.Uuid(), nullable=True),
        sa.Column("proration_preference", sa.String(length=16), nullable=False, server_default="PRORATE"),
        sa.Column("preview_json", sa.JSON(), nullable=True),
        sa.Column("payment_method_id", sa.Uuid(), nullable=True),
        sa.Column("discount_code", sa.String(length=64), nullable=True),
        sa.Column("discount_json", sa.JSON(), nullable=True),
        sa.Column("discount_error", sa.String(length=512), nullable=True),
        sa.Column("request_nonce", sa.String(length=128), nullable=True),
        sa.Column("idempotency_key", sa.String(length=128), nullable=True),
        sa.Column("result_json", sa.JSON(), nullable=True),
        sa.Column("failure_json", sa.JSON(), nullable=True),
        sa.Column("resume_state", sa.String(length=32), nullable=True),
        sa.Column("history_json", sa.JSON(), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_plan_change_flow_business", "plan_change_flow", ["business_id", "created_at"])
    op.create_index("ix_plan_change_flow_subscription", "plan_change_flow", ["subscription_id", "state"])


def downgrade() -> None:
    op.drop_index("ix_plan_change_flow_subscription", table_name="plan_change_flow")
    op.drop_index("ix_plan_change_flow_business", table_name="plan_change_flow")
    op.drop_table("plan_change_flow")
    op.drop_index("uq_plan_change_execution_in_flight", table_name="plan_change_execution")
    op.drop_index("ix_plan_change_execution_subscription", table_name="plan_change_execution")
    op.drop_table("plan_change_execution")
