from __future__ import annotations

import calendar
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import Select, and_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import events
from app.business.pricing import EffectiveTiming, PlanSnapshot, UsageSnapshot
from app.business.subscription.models import (
    BusinessUsage,
    Subscription,
    SubscriptionChange,
    SubscriptionPlan,
    as_utc,
    utcnow,
)
from app.business.subscription.repository import (
    PlanRepository,
    SubscriptionChangeRepository,
    SubscriptionRepository,
    UsageRepository,
)
from app.business.subscription.schemas import (
    PlanCreate,
    PlanRead,
    SubscriptionChangeRead,
    SubscriptionCreate,
    SubscriptionRead,
    UsageRead,
    UsageUpdate,
)
from app.metrics import observe_scheduled_changes_applied
from app.platform.security.context import AuthContext
from app.platform.security.errors import AuthorizationError


logger = logging.getLogger(__name__)

OPEN_SUBSCRIPTION_STATUSES = ("TRIAL", "ACTIVE", "PAST_DUE")


class SubscriptionVersionConflictError(Exception):
    """Raised when a conditional write finds the subscription at a different row_version."""

    def __init__(self, subscription_id: uuid.UUID, expected_row_version: int) -> None:
        self.subscription_id = subscription_id
        self.expected_row_version = expected_row_version
        super().__init__(f"subscription {subscription_id} is no longer at row_version {expected_row_version}")


@dataclass(slots=True)
class SubscriptionService:
    plan_repository: PlanRepository = PlanRepository()
    subscription_repository: SubscriptionRepository = SubscriptionRepository()
    subscription_change_repository: SubscriptionChangeRepository = SubscriptionChangeRepository()
    usage_repository: UsageRepository = UsageRepository()
    clock: Callable[[], datetime] = utcnow

    def create_plan(self, session: Session, ctx: AuthContext, payload: PlanCreate) -> PlanRead:
        if not ctx.is_super_admin:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="publishing plans requires an admin role")

        data = payload.model_dump(mode="python")
        data["features_json"] = data.pop("features", {})
        data["currency"] = data["currency"].upper()
        plan = SubscriptionPlan(**data)
        session.add(plan)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="subscription plan already exists")
        session.refresh(plan)
        return self._to_plan_read(plan)

    def list_plans(self, session: Session, *, include_inactive: bool = False) -> list[PlanRead]:
        stmt: Select[tuple[SubscriptionPlan]] = select(SubscriptionPlan)
        if not include_inactive:
            stmt = stmt.where(SubscriptionPlan.is_active.is_(True))
        rows = session.scalars(stmt.order_by(SubscriptionPlan.sort_order.asc(), SubscriptionPlan.price.asc())).all()
        return [self._to_plan_read(row) for row in rows]

    def get_plan(self, session: Session, plan_id: uuid.UUID) -> PlanRead:
        return self._to_plan_read(self.get_plan_model(session, plan_id))

    def get_plan_model(self, session: Session, plan_id: uuid.UUID) -> SubscriptionPlan:
        plan = session.scalar(select(SubscriptionPlan).where(SubscriptionPlan.id == plan_id))
        if plan is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="plan not found")
        return plan

    def create_subscription(
        self,
        session: Session,
        ctx: AuthContext,
        business_id: str,
        payload: SubscriptionCreate,
    ) -> SubscriptionRead:
        self._validate_scope(ctx, business_id)
        plan = self.get_plan_model(session, payload.plan_id)
        if not plan.is_active:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="plan is not active")

        existing = self._find_open_subscription(session, business_id)
        if existing is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="business already has an open subscription")

        now = self.clock()
        period_start = as_utc(payload.current_period_start) if payload.current_period_start else now
        trial_start = None
        trial_end = None
        if payload.status == "TRIAL":
            trial_start = period_start
            trial_end = period_start + timedelta(days=payload.trial_days or 14)
            period_end = trial_end
        else:
            period_end = self._calculate_period_end(period_start, plan.billing_interval)

        subscription = Subscription(
            business_id=business_id,
            plan_id=plan.id,
            status=payload.status,
            current_period_start=period_start,
            current_period_end=period_end,
            trial_start=trial_start,
            trial_end=trial_end,
            payment_method_id=payload.payment_method_id,
            row_version=1,
        )
        session.add(subscription)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="subscription creation conflict")
        session.refresh(subscription)

        logger.info(
            "subscription.created",
            extra={"business_id": business_id, "subscription_id": str(subscription.id), "plan_id": str(plan.id)},
        )
        return self._to_subscription_read(subscription)

    def get_business_subscription(self, session: Session, ctx: AuthContext, business_id: str) -> SubscriptionRead:
        self._validate_scope(ctx, business_id)
        subscription = self._find_open_subscription(session, business_id)
        if subscription is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="subscription not found")
        return self._to_subscription_read(subscription)

    def get_subscription_model(
        self,
        session: Session,
        ctx: AuthContext,
        business_id: str,
        subscription_id: uuid.UUID,
    ) -> Subscription:
        self._validate_scope(ctx, business_id)
        stmt = select(Subscription).where(
            and_(Subscription.id == subscription_id, Subscription.business_id == business_id)
        )
        subscription = session.scalar(self.subscription_repository.apply_scope_query(stmt, ctx))
        if subscription is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="subscription not found")
        return subscription

    def list_subscription_changes(
        self,
        session: Session,
        ctx: AuthContext,
        business_id: str,
        subscription_id: uuid.UUID,
    ) -> list[SubscriptionChangeRead]:
        subscription = self.get_subscription_model(session, ctx, business_id, subscription_id)
        rows = session.scalars(
            select(SubscriptionChange)
            .where(SubscriptionChange.subscription_id == subscription.id)
            .order_by(SubscriptionChange.created_at.asc())
        ).all()
        return [SubscriptionChangeRead.model_validate(row) for row in rows]

    def record_usage(self, session: Session, ctx: AuthContext, business_id: str, payload: UsageUpdate) -> UsageRead:
        self._validate_scope(ctx, business_id)
        usage = session.get(BusinessUsage, business_id)
        if usage is None:
            usage = BusinessUsage(business_id=business_id)
        for key, value in payload.model_dump().items():
            setattr(usage, key, value)
        usage.updated_at = self.clock()
        session.add(usage)
        session.commit()
        session.refresh(usage)
        return UsageRead.model_validate(usage)

    def get_usage_snapshot(self, session: Session, business_id: str) -> UsageSnapshot:
        usage = session.get(BusinessUsage, business_id)
        if usage is None:
            return UsageSnapshot()
        return UsageSnapshot(
            active_staff_count=usage.active_staff_count,
            services_count=usage.services_count,
            customers_count=usage.customers_count,
            appointments_per_day=usage.appointments_per_day,
        )

    def commit_plan_change(
        self,
        session: Session,
        subscription: Subscription,
        *,
        new_plan_id: uuid.UUID,
        change_type: str,
        effective_timing: EffectiveTiming | str,
        effective_at: datetime,
        expected_row_version: int,
        payload_json: dict[str, Any] | None = None,
    ) -> Subscription:
        """Write a plan change guarded by ``row_version``; flushes but does not commit.

        Immediate changes move ``plan_id`` and drop any pending scheduled change.
        Deferred changes replace the pending scheduled change.
        """

        values: dict[str, Any] = {
            "updated_at": self.clock(),
            "row_version": Subscription.row_version + 1,
        }
        if EffectiveTiming(effective_timing) == EffectiveTiming.IMMEDIATE:
            values["plan_id"] = new_plan_id
            values["scheduled_plan_id"] = None
            values["scheduled_change_at"] = None
        else:
            values["scheduled_plan_id"] = new_plan_id
            values["scheduled_change_at"] = effective_at

        previous_plan_id = subscription.plan_id
        result = session.execute(
            update(Subscription)
            .where(
                and_(
                    Subscription.id == subscription.id,
                    Subscription.row_version == expected_row_version,
                    Subscription.status.in_(OPEN_SUBSCRIPTION_STATUSES),
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise SubscriptionVersionConflictError(subscription.id, expected_row_version)

        session.add(
            SubscriptionChange(
                subscription_id=subscription.id,
                change_type=change_type,
                previous_plan_id=previous_plan_id,
                new_plan_id=new_plan_id,
                effective_at=effective_at,
                payload_json=payload_json,
            )
        )
        session.flush()
        session.refresh(subscription)
        return subscription

    def apply_scheduled_plan_changes(self, session: Session, now: datetime | None = None) -> int:
        """Move every subscription whose scheduled change is due onto its scheduled plan."""

        now = now or self.clock()
        due = session.scalars(
            select(Subscription)
            .where(
                and_(
                    Subscription.scheduled_plan_id.is_not(None),
                    Subscription.scheduled_change_at <= now,
                    Subscription.status.in_(OPEN_SUBSCRIPTION_STATUSES),
                )
            )
            .order_by(Subscription.scheduled_change_at.asc())
        ).all()

        applied: list[tuple[Subscription, uuid.UUID, uuid.UUID]] = []
        for subscription in due:
            previous_plan_id = subscription.plan_id
            new_plan_id = subscription.scheduled_plan_id
            effective_at = subscription.scheduled_change_at
            if new_plan_id is None or effective_at is None:
                continue
            result = session.execute(
                update(Subscription)
                .where(
                    and_(
                        Subscription.id == subscription.id,
                        Subscription.row_version == subscription.row_version,
                    )
                )
                .values(
                    plan_id=new_plan_id,
                    scheduled_plan_id=None,
                    scheduled_change_at=None,
                    row_version=Subscription.row_version + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.warning(
                    "subscription.scheduled_change.skipped",
                    extra={"subscription_id": str(subscription.id), "business_id": subscription.business_id},
                )
                continue
            session.add(
                SubscriptionChange(
                    subscription_id=subscription.id,
                    change_type="SCHEDULED_CHANGE_APPLIED",
                    previous_plan_id=previous_plan_id,
                    new_plan_id=new_plan_id,
                    effective_at=effective_at,
                    payload_json={"scheduled_change_at": as_utc(effective_at).isoformat()},
                )
            )
            applied.append((subscription, previous_plan_id, new_plan_id))

        session.commit()

        for subscription, previous_plan_id, new_plan_id in applied:
            session.refresh(subscription)
            events.publish(
                {
                    "event_type": "subscription.scheduled_change_applied",
                    "business_id": subscription.business_id,
                    "subscription_id": str(subscription.id),
                    "previous_plan_id": str(previous_plan_id),
                    "plan_id": str(new_plan_id),
                    "row_version": subscription.row_version,
                }
            )
        observe_scheduled_changes_applied(len(applied))
        if applied:
            logger.info("subscription.scheduled_changes.applied", extra={"status": f"{len(applied)} applied"})
        return len(applied)

    @staticmethod
    def to_plan_snapshot(plan: SubscriptionPlan) -> PlanSnapshot:
        return PlanSnapshot(
            id=str(plan.id),
            code=plan.code,
            name=plan.name,
            price=Decimal(plan.price),
            currency=plan.currency,
            billing_interval=plan.billing_interval,
            max_staff_per_business=plan.max_staff_per_business,
            max_services=plan.max_services,
            max_customers=plan.max_customers,
            max_appointments_per_day=plan.max_appointments_per_day,
            features=dict(plan.features_json or {}),
        )

    def _find_open_subscription(self, session: Session, business_id: str) -> Subscription | None:
        return session.scalar(
            select(Subscription)
            .where(
                and_(
                    Subscription.business_id == business_id,
                    Subscription.status.in_(OPEN_SUBSCRIPTION_STATUSES),
                )
            )
            .order_by(Subscription.created_at.desc())
        )

    def _validate_scope(self, ctx: AuthContext, business_id: str) -> None:
        try:
            self.subscription_repository.validate_business_scope(ctx, business_id)
        except AuthorizationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))

    @staticmethod
    def _to_plan_read(plan: SubscriptionPlan) -> PlanRead:
        return PlanRead(
            id=plan.id,
            code=plan.code,
            name=plan.name,
            description=plan.description,
            price=plan.price,
            currency=plan.currency,
            billing_interval=plan.billing_interval,
            sort_order=plan.sort_order,
            is_popular=plan.is_popular,
            is_active=plan.is_active,
            max_staff_per_business=plan.max_staff_per_business,
            max_services=plan.max_services,
            max_customers=plan.max_customers,
            max_appointments_per_day=plan.max_appointments_per_day,
            features=dict(plan.features_json or {}),
            created_at=plan.created_at,
        )

    @staticmethod
    def _to_subscription_read(subscription: Subscription) -> SubscriptionRead:
        return SubscriptionRead.model_validate(subscription)

    def _calculate_period_end(self, start: datetime, billing_interval: str) -> datetime:
        if billing_interval == "MONTHLY":
            return self._add_months(start, 1)
        if billing_interval == "YEARLY":
            return self._add_months(start, 12)
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="invalid billing interval")

    @staticmethod
    def _add_months(base: datetime, months: int) -> datetime:
        month_index = base.month - 1 + months
        year = base.year + month_index // 12
        month = month_index % 12 + 1
        day = min(base.day, calendar.monthrange(year, month)[1])
        return base.replace(year=year, month=month, day=day)


subscription_service = SubscriptionService()
