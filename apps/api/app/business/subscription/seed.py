from __future__ import annotations

from decimal import Decimal

from sqlalchemy.orm import Session

from app.business.subscription.schemas import PlanCreate, PlanRead
from app.business.subscription.service import SubscriptionService, subscription_service
from app.platform.security.context import AuthContext


DEFAULT_PLANS: tuple[PlanCreate, ...] = (
    PlanCreate(
        code="starter",
        name="Starter",
        price=Decimal("1500"),
        currency="TRY",
        sort_order=1,
        max_staff_per_business=2,
        max_services=10,
        max_customers=500,
        max_appointments_per_day=30,
        features={"online_booking": True, "sms_reminders": False, "reports": False},
    ),
    PlanCreate(
        code="professional",
        name="Professional",
        price=Decimal("3000"),
        currency="TRY",
        sort_order=2,
        is_popular=True,
        max_staff_per_business=10,
        max_services=50,
        max_customers=5000,
        max_appointments_per_day=150,
        features={"online_booking": True, "sms_reminders": True, "reports": True},
    ),
    PlanCreate(
        code="enterprise",
        name="Enterprise",
        price=Decimal("6000"),
        currency="TRY",
        sort_order=3,
        features={"online_booking": True, "sms_reminders": True, "reports": True, "api_access": True},
    ),
)


class SubscriptionSeedHelper:
    def __init__(self, service: SubscriptionService) -> None:
        self._service = service

    def ensure_default_plans(self, session: Session, ctx: AuthContext) -> list[PlanRead]:
        existing = {plan.code: plan for plan in self._service.list_plans(session, include_inactive=True)}
        for payload in DEFAULT_PLANS:
            if payload.code not in existing:
                existing[payload.code] = self._service.create_plan(session, ctx, payload)
        return [existing[payload.code] for payload in DEFAULT_PLANS]


subscription_seed_helper = SubscriptionSeedHelper(subscription_service)
