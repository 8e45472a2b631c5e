from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


BillingInterval = Literal["MONTHLY", "YEARLY"]
SubscriptionStatus = Literal["TRIAL", "ACTIVE", "PAST_DUE", "CANCELED"]
SubscriptionChangeType = Literal["UPGRADE", "DOWNGRADE", "LATERAL", "SCHEDULED_CHANGE_APPLIED"]


class PlanCreate(BaseModel):
    code: str = Field(min_length=1, max_length=128)
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    price: Decimal = Field(ge=Decimal("0"))
    currency: str = Field(min_length=3, max_length=16)
    billing_interval: BillingInterval = "MONTHLY"
    sort_order: int = 0
    is_popular: bool = False
    max_staff_per_business: int | None = Field(default=None, ge=0)
    max_services: int | None = Field(default=None, ge=0)
    max_customers: int | None = Field(default=None, ge=0)
    max_appointments_per_day: int | None = Field(default=None, ge=0)
    features: dict[str, Any] = Field(default_factory=dict)


class PlanRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    name: str
    description: str | None
    price: Decimal | str
    currency: str
    billing_interval: BillingInterval | str
    sort_order: int
    is_popular: bool
    is_active: bool
    max_staff_per_business: int | None
    max_services: int | None
    max_customers: int | None
    max_appointments_per_day: int | None
    features: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class SubscriptionCreate(BaseModel):
    plan_id: UUID
    status: Literal["TRIAL", "ACTIVE"] = "ACTIVE"
    current_period_start: datetime | None = None
    trial_days: int | None = Field(default=None, ge=1, le=90)
    payment_method_id: UUID | None = None


class SubscriptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    business_id: str
    plan_id: UUID
    status: SubscriptionStatus | str
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool
    trial_start: datetime | None
    trial_end: datetime | None
    scheduled_plan_id: UUID | None
    scheduled_change_at: datetime | None
    payment_method_id: UUID | None
    row_version: int
    created_at: datetime
    updated_at: datetime


class SubscriptionChangeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subscription_id: UUID
    change_type: SubscriptionChangeType | str
    previous_plan_id: UUID | None
    new_plan_id: UUID
    effective_at: datetime
    payload_json: dict[str, Any] | None
    created_at: datetime


class UsageUpdate(BaseModel):
    active_staff_count: int = Field(default=0, ge=0)
    services_count: int = Field(default=0, ge=0)
    customers_count: int = Field(default=0, ge=0)
    appointments_per_day: int = Field(default=0, ge=0)


class UsageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    business_id: str
    active_staff_count: int
    services_count: int
    customers_count: int
    appointments_per_day: int
    updated_at: datetime
