from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import StrEnum
from typing import Any


MONEY_QUANT = Decimal("0.01")
FRACTION_QUANT = Decimal("0.000001")


class ChangeType(StrEnum):
    UPGRADE = "UPGRADE"
    DOWNGRADE = "DOWNGRADE"
    LATERAL = "LATERAL"


class EffectiveTiming(StrEnum):
    IMMEDIATE = "IMMEDIATE"
    NEXT_BILLING_CYCLE = "NEXT_BILLING_CYCLE"


class ProrationPreference(StrEnum):
    PRORATE = "PRORATE"
    NONE = "NONE"


class PricingValidationError(ValueError):
    """Raised when the inputs cannot produce a meaningful preview."""

    def __init__(self, field_name: str, message: str) -> None:
        self.field_name = field_name
        self.message = message
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class PlanSnapshot:
    id: str
    code: str
    name: str
    price: Decimal
    currency: str
    billing_interval: str = "MONTHLY"
    max_staff_per_business: int | None = None
    max_services: int | None = None
    max_customers: int | None = None
    max_appointments_per_day: int | None = None
    features: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "price": str(quantize_money(self.price)),
            "currency": self.currency,
            "billing_interval": self.billing_interval,
            "max_staff_per_business": self.max_staff_per_business,
            "max_services": self.max_services,
            "max_customers": self.max_customers,
            "max_appointments_per_day": self.max_appointments_per_day,
            "features": dict(self.features),
        }


@dataclass(frozen=True, slots=True)
class UsageSnapshot:
    active_staff_count: int = 0
    services_count: int = 0
    customers_count: int = 0
    appointments_per_day: int = 0


@dataclass(frozen=True, slots=True)
class Limitation:
    resource: str
    current_usage: int
    new_limit: int
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource": self.resource,
            "current_usage": self.current_usage,
            "new_limit": self.new_limit,
            "message": self.message,
        }


@dataclass(frozen=True, slots=True)
class ChangePreview:
    change_type: ChangeType
    current_plan: PlanSnapshot
    new_plan: PlanSnapshot
    proration_amount: Decimal
    total_amount: Decimal
    currency: str
    effective_timing: EffectiveTiming
    effective_at: datetime
    next_billing_date: datetime
    payment_required: bool
    limitations: tuple[Limitation, ...]
    can_proceed: bool
    proration_preference: ProrationPreference
    remaining_fraction: Decimal
    entitlements_reduced: bool = False
    dropped_features: tuple[str, ...] = ()

    @property
    def fingerprint(self) -> str:
        payload = {
            "change_type": str(self.change_type),
            "current_plan_id": self.current_plan.id,
            "current_price": str(quantize_money(self.current_plan.price)),
            "new_plan_id": self.new_plan.id,
            "new_price": str(quantize_money(self.new_plan.price)),
            "currency": self.currency,
            "proration_amount": str(self.proration_amount),
            "total_amount": str(self.total_amount),
            "effective_timing": str(self.effective_timing),
            "effective_at": self.effective_at.isoformat(),
            "next_billing_date": self.next_billing_date.isoformat(),
            "limitations": [item.to_dict() for item in self.limitations],
        }
        encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


# (resource, usage attribute, plan cap attribute, label)
_CAPPED_RESOURCES: tuple[tuple[str, str, str, str], ...] = (
    ("staff", "active_staff_count", "max_staff_per_business", "Active staff"),
    ("services", "services_count", "max_services", "Services"),
    ("customers", "customers_count", "max_customers", "Customers"),
    ("appointments_per_day", "appointments_per_day", "max_appointments_per_day", "Appointments per day"),
)


def quantize_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def classify_change(current_plan: PlanSnapshot, new_plan: PlanSnapshot) -> ChangeType:
    current_price = quantize_money(current_plan.price)
    new_price = quantize_money(new_plan.price)
    if new_price > current_price:
        return ChangeType.UPGRADE
    if new_price < current_price:
        return ChangeType.DOWNGRADE
    return ChangeType.LATERAL


def remaining_fraction(period_start: datetime, period_end: datetime, now: datetime) -> Decimal:
    """Share of the billing period still ahead of ``now``, clamped to [0, 1]."""

    total_seconds = Decimal(str((period_end - period_start).total_seconds()))
    if total_seconds <= 0:
        raise PricingValidationError("current_period_end", "billing period end must be after its start")
    remaining_seconds = Decimal(str((period_end - now).total_seconds()))
    fraction = remaining_seconds / total_seconds
    if fraction < 0:
        return Decimal("0")
    if fraction > 1:
        return Decimal("1")
    return fraction.quantize(FRACTION_QUANT, rounding=ROUND_HALF_UP)


def compute_limitations(new_plan: PlanSnapshot, usage: UsageSnapshot | None) -> tuple[Limitation, ...]:
    if usage is None:
        return ()
    limitations: list[Limitation] = []
    for resource, usage_attr, cap_attr, label in _CAPPED_RESOURCES:
        cap = getattr(new_plan, cap_attr)
        current = int(getattr(usage, usage_attr))
        if cap is None or current <= cap:
            continue
        limitations.append(
            Limitation(
                resource=resource,
                current_usage=current,
                new_limit=int(cap),
                message=f"{label} count {current} exceeds the {new_plan.name} plan limit of {cap}",
            )
        )
    return tuple(limitations)


def dropped_entitlements(current_plan: PlanSnapshot, new_plan: PlanSnapshot) -> tuple[str, ...]:
    dropped: list[str] = []
    for name, enabled in sorted(current_plan.features.items()):
        if enabled and not new_plan.features.get(name):
            dropped.append(name)
    for _, _, cap_attr, _ in _CAPPED_RESOURCES:
        current_cap = getattr(current_plan, cap_attr)
        new_cap = getattr(new_plan, cap_attr)
        if new_cap is not None and (current_cap is None or new_cap < current_cap):
            dropped.append(cap_attr)
    return tuple(dropped)


def compute_preview(
    current_plan: PlanSnapshot,
    new_plan: PlanSnapshot,
    period_start: datetime,
    period_end: datetime,
    now: datetime,
    usage: UsageSnapshot | None = None,
    proration_preference: ProrationPreference | str = ProrationPreference.PRORATE,
) -> ChangePreview:
    """Classify a plan change and price it against the current billing period.

    Upgrades are charged ``(new - current) * remaining_fraction`` today and take
    effect immediately. Downgrades and lateral moves cost nothing today and
    take effect at ``period_end``. Any usage over the new plan's caps blocks the
    change.
    """

    if current_plan.id == new_plan.id:
        raise PricingValidationError("new_plan_id", "subscription is already on this plan")
    if current_plan.currency != new_plan.currency:
        raise PricingValidationError("new_plan_id", "plan currency does not match the current plan")
    preference = ProrationPreference(proration_preference)

    change_type = classify_change(current_plan, new_plan)
    fraction = remaining_fraction(period_start, period_end, now)

    proration_amount = Decimal("0.00")
    if change_type == ChangeType.UPGRADE:
        delta = quantize_money(new_plan.price) - quantize_money(current_plan.price)
        if preference == ProrationPreference.NONE:
            proration_amount = quantize_money(delta)
        else:
            proration_amount = min(quantize_money(delta * fraction), delta)

    limitations = compute_limitations(new_plan, usage)
    can_proceed = not limitations
    immediate = change_type == ChangeType.UPGRADE and can_proceed
    dropped = dropped_entitlements(current_plan, new_plan) if change_type != ChangeType.UPGRADE else ()

    return ChangePreview(
        change_type=change_type,
        current_plan=current_plan,
        new_plan=new_plan,
        proration_amount=proration_amount,
        total_amount=proration_amount,
        currency=new_plan.currency,
        effective_timing=EffectiveTiming.IMMEDIATE if immediate else EffectiveTiming.NEXT_BILLING_CYCLE,
        effective_at=now if immediate else period_end,
        next_billing_date=period_end,
        payment_required=change_type == ChangeType.UPGRADE,
        limitations=limitations,
        can_proceed=can_proceed,
        proration_preference=preference,
        remaining_fraction=fraction,
        entitlements_reduced=bool(dropped),
        dropped_features=dropped,
    )
