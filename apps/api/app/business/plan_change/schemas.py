from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field

from app.business.payments.schemas import PaymentMethodCreate, PaymentMethodRead
from app.business.subscription.schemas import SubscriptionRead


ChangeType = Literal["UPGRADE", "DOWNGRADE", "LATERAL"]
EffectiveTiming = Literal["IMMEDIATE", "NEXT_BILLING_CYCLE"]
ProrationPreference = Literal["PRORATE", "NONE"]
FlowStateName = Literal[
    "IDLE",
    "PLAN_SELECTED",
    "PREVIEW_READY",
    "PREVIEW_FAILED",
    "AWAITING_PAYMENT",
    "AWAITING_CONFIRMATION",
    "EXECUTING",
    "SUCCEEDED",
    "FAILED",
    "CANCELLED",
]


class PlanSnapshotRead(BaseModel):
    id: str
    code: str
    name: str
    price: Decimal
    currency: str
    billing_interval: str
    max_staff_per_business: int | None = None
    max_services: int | None = None
    max_customers: int | None = None
    max_appointments_per_day: int | None = None
    features: dict[str, Any] = Field(default_factory=dict)


class LimitationRead(BaseModel):
    resource: str
    current_usage: int
    new_limit: int
    message: str


class DiscountRead(BaseModel):
    code: str
    is_valid: bool
    discount_amount: Decimal
    original_amount: Decimal
    final_amount: Decimal
    error_message: str | None = None


class PlanChangePreviewRead(BaseModel):
    subscription_id: UUID
    change_type: ChangeType
    current_plan: PlanSnapshotRead
    new_plan: PlanSnapshotRead
    proration_preference: ProrationPreference
    remaining_fraction: Decimal
    proration_amount: Decimal
    total_amount: Decimal
    currency: str
    effective_timing: EffectiveTiming
    effective_at: datetime
    next_billing_date: datetime
    payment_required: bool
    payment_methods: list[PaymentMethodRead] = Field(default_factory=list)
    default_payment_method_id: UUID | None = None
    limitations: list[LimitationRead] = Field(default_factory=list)
    can_proceed: bool
    entitlements_reduced: bool = False
    dropped_features: list[str] = Field(default_factory=list)
    discount: DiscountRead | None = None
    subscription_row_version: int
    current_period_end: datetime
    fingerprint: str


class PlanChangeExecuteRequest(BaseModel):
    new_plan_id: UUID
    expected_row_version: int = Field(ge=1)
    expected_period_end: datetime | None = None
    payment_method_id: UUID | None = None
    discount_code: str | None = Field(default=None, max_length=64)
    proration_preference: ProrationPreference = "PRORATE"


class PaymentConfirmationRead(BaseModel):
    transaction_id: str
    amount: Decimal
    currency: str
    payment_method_id: UUID


class ChangeResultRead(BaseModel):
    status: Literal["SUCCEEDED"] = "SUCCEEDED"
    execution_id: UUID
    idempotency_key: str
    change_type: ChangeType
    effective_timing: EffectiveTiming
    effective_at: datetime
    previous_plan_id: UUID
    new_plan_id: UUID
    subscription: SubscriptionRead
    payment: PaymentConfirmationRead | None = None
    discount: DiscountRead | None = None
    replayed: bool = False


class FlowCreate(BaseModel):
    subscription_id: UUID


class FlowSelectPlan(BaseModel):
    new_plan_id: UUID
    proration_preference: ProrationPreference = "PRORATE"


class FlowSelectPaymentMethod(BaseModel):
    payment_method_id: UUID | None = None
    card: PaymentMethodCreate | None = None


class FlowDiscountCode(BaseModel):
    code: str | None = Field(default=None, max_length=64)


class FlowConfirm(BaseModel):
    request_nonce: str | None = Field(default=None, min_length=8, max_length=128)


class FlowTransitionRead(BaseModel):
    from_state: str
    to_state: str
    at: datetime


class FlowRead(BaseModel):
    id: UUID
    business_id: str
    subscription_id: UUID
    state: FlowStateName | str
    target_plan_id: UUID | None
    proration_preference: ProrationPreference | str
    preview: PlanChangePreviewRead | None
    payment_method_id: UUID | None
    discount_code: str | None
    discount: DiscountRead | None
    discount_error: str | None
    amount_due: Decimal | None
    can_confirm: bool
    result: ChangeResultRead | None
    failure: dict[str, Any] | None
    resume_state: str | None
    history: list[FlowTransitionRead] = Field(default_factory=list)
    row_version: int
    created_at: datetime
    updated_at: datetime
