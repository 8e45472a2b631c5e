from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, Numeric, String, UniqueConstraint, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PlanChangeExecution(Base):
    __tablename__ = "plan_change_execution"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    business_id: Mapped[str] = mapped_column(String(128), nullable=False)
    subscription_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False)
    request_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="EXECUTING", server_default="EXECUTING")
    change_type: Mapped[str] = mapped_column(String(32), nullable=False)
    target_plan_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 6), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(16), nullable=True)
    payment_method_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    charge_dispatched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    result_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    error_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_plan_change_execution_idempotency_key"),
        Index("ix_plan_change_execution_subscription", "subscription_id", "status"),
        Index(
            "uq_plan_change_execution_in_flight",
            "subscription_id",
            unique=True,
            postgresql_where=text("status = 'EXECUTING'"),
            sqlite_where=text("status = 'EXECUTING'"),
        ),
    )


class PlanChangeFlow(Base):
    __tablename__ = "plan_change_flow"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    business_id: Mapped[str] = mapped_column(String(128), nullable=False)
    subscription_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    state: Mapped[str] = mapped_column(String(32), nullable=False, default="IDLE", server_default="IDLE")
    target_plan_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    proration_preference: Mapped[str] = mapped_column(String(16), nullable=False, default="PRORATE", server_default="PRORATE")
    preview_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    payment_method_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    discount_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    discount_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    discount_error: Mapped[str | None] = mapped_column(String(512), nullable=True)
    request_nonce: Mapped[str | None] = mapped_column(String(128), nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    result_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    failure_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    resume_state: Mapped[str | None] = mapped_column(String(32), nullable=True)
    history_json: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_plan_change_flow_business", "business_id", "created_at"),
        Index("ix_plan_change_flow_subscription", "subscription_id", "state"),
    )
