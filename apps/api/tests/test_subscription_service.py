from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.business.pricing import EffectiveTiming
from app.business.subscription import tasks
from app.business.subscription.models import Subscription, SubscriptionChange, as_utc
from app.business.subscription.schemas import PlanCreate, PlanRead, SubscriptionCreate, UsageUpdate
from app.business.subscription.seed import SubscriptionSeedHelper
from app.business.subscription.service import SubscriptionService, SubscriptionVersionConflictError
from app.core.database import Base
from app.platform.security.context import AuthContext


NOW = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    events.published_events.clear()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def service() -> SubscriptionService:
    return SubscriptionService(clock=lambda: NOW)


@pytest.fixture()
def plans(db_session: Session, service: SubscriptionService) -> dict[str, PlanRead]:
    seeded = SubscriptionSeedHelper(service).ensure_default_plans(db_session, _admin())
    return {plan.code: plan for plan in seeded}


def _admin() -> AuthContext:
    return AuthContext(user_id="admin-1", is_super_admin=True, roles=["admin"])


def _ctx(business_id: str = "biz-1") -> AuthContext:
    return AuthContext(user_id="owner-1", business_scope=[business_id])


def test_publishing_plans_requires_admin(db_session: Session, service: SubscriptionService) -> None:
    payload = PlanCreate(code="solo", name="Solo", price=Decimal("500"), currency="try")

    with pytest.raises(HTTPException) as exc_info:
        service.create_plan(db_session, _ctx(), payload)
    assert exc_info.value.status_code == 403

    created = service.create_plan(db_session, _admin(), payload)
    assert created.currency == "TRY"

    with pytest.raises(HTTPException) as duplicate:
        service.create_plan(db_session, _admin(), payload)
    assert duplicate.value.status_code == 409


def test_seed_is_idempotent_and_plans_are_ordered(
    db_session: Session,
    service: SubscriptionService,
    plans: dict[str, PlanRead],
) -> None:
    again = SubscriptionSeedHelper(service).ensure_default_plans(db_session, _admin())

    assert [plan.id for plan in again] == [plans["starter"].id, plans["professional"].id, plans["enterprise"].id]
    assert [plan.code for plan in service.list_plans(db_session)] == ["starter", "professional", "enterprise"]


def test_monthly_period_end_clamps_to_month_length(
    db_session: Session,
    service: SubscriptionService,
    plans: dict[str, PlanRead],
) -> None:
    subscription = service.create_subscription(
        db_session,
        _ctx(),
        "biz-1",
        SubscriptionCreate(
            plan_id=plans["starter"].id,
            current_period_start=datetime(2026, 1, 31, tzinfo=timezone.utc),
        ),
    )

    assert as_utc(subscription.current_period_end) == datetime(2026, 2, 28, tzinfo=timezone.utc)
    assert subscription.row_version == 1
    assert subscription.status == "ACTIVE"


def test_trial_subscription_ends_with_trial(
    db_session: Session,
    service: SubscriptionService,
    plans: dict[str, PlanRead],
) -> None:
    subscription = service.create_subscription(
        db_session,
        _ctx(),
        "biz-1",
        SubscriptionCreate(plan_id=plans["professional"].id, status="TRIAL", trial_days=7),
    )

    assert as_utc(subscription.trial_end) == NOW + timedelta(days=7)
    assert as_utc(subscription.current_period_end) == NOW + timedelta(days=7)


def test_business_may_hold_one_open_subscription(
    db_session: Session,
    service: SubscriptionService,
    plans: dict[str, PlanRead],
) -> None:
    service.create_subscription(db_session, _ctx(), "biz-1", SubscriptionCreate(plan_id=plans["starter"].id))

    with pytest.raises(HTTPException) as exc_info:
        service.create_subscription(db_session, _ctx(), "biz-1", SubscriptionCreate(plan_id=plans["starter"].id))
    assert exc_info.value.status_code == 409


def test_subscription_access_is_scoped(
    db_session: Session,
    service: SubscriptionService,
    plans: dict[str, PlanRead],
) -> None:
    service.create_subscription(db_session, _ctx(), "biz-1", SubscriptionCreate(plan_id=plans["starter"].id))

    with pytest.raises(HTTPException) as exc_info:
        service.get_business_subscription(db_session, _ctx("biz-2"), "biz-1")
    assert exc_info.value.status_code == 403


def test_usage_snapshot_defaults_to_zero_and_tracks_updates(db_session: Session, service: SubscriptionService) -> None:
    assert service.get_usage_snapshot(db_session, "biz-1").active_staff_count == 0

    service.record_usage(db_session, _ctx(), "biz-1", UsageUpdate(active_staff_count=4, customers_count=120))

    snapshot = service.get_usage_snapshot(db_session, "biz-1")
    assert snapshot.active_staff_count == 4
    assert snapshot.customers_count == 120


def test_commit_plan_change_immediate_moves_plan(
    db_session: Session,
    service: SubscriptionService,
    plans: dict[str, PlanRead],
) -> None:
    created = service.create_subscription(db_session, _ctx(), "biz-1", SubscriptionCreate(plan_id=plans["starter"].id))
    subscription = service.get_subscription_model(db_session, _ctx(), "biz-1", created.id)

    service.commit_plan_change(
        db_session,
        subscription,
        new_plan_id=plans["professional"].id,
        change_type="UPGRADE",
        effective_timing=EffectiveTiming.IMMEDIATE,
        effective_at=NOW,
        expected_row_version=1,
        payload_json={"transaction_id": "txn-1"},
    )
    db_session.commit()

    assert subscription.plan_id == plans["professional"].id
    assert subscription.row_version == 2
    change = db_session.scalar(select(SubscriptionChange))
    assert change is not None
    assert change.previous_plan_id == plans["starter"].id
    assert change.payload_json == {"transaction_id": "txn-1"}


def test_commit_plan_change_with_stale_version_raises(
    db_session: Session,
    service: SubscriptionService,
    plans: dict[str, PlanRead],
) -> None:
    created = service.create_subscription(db_session, _ctx(), "biz-1", SubscriptionCreate(plan_id=plans["starter"].id))
    subscription = service.get_subscription_model(db_session, _ctx(), "biz-1", created.id)

    with pytest.raises(SubscriptionVersionConflictError):
        service.commit_plan_change(
            db_session,
            subscription,
            new_plan_id=plans["professional"].id,
            change_type="UPGRADE",
            effective_timing=EffectiveTiming.IMMEDIATE,
            effective_at=NOW,
            expected_row_version=3,
        )
    db_session.rollback()
    assert db_session.scalar(select(SubscriptionChange)) is None


def _schedule_downgrade(
    db_session: Session,
    service: SubscriptionService,
    plans: dict[str, PlanRead],
    business_id: str,
    effective_at: datetime,
) -> Subscription:
    created = service.create_subscription(
        db_session,
        _ctx(business_id),
        business_id,
        SubscriptionCreate(plan_id=plans["professional"].id, current_period_start=effective_at - timedelta(days=30)),
    )
    subscription = service.get_subscription_model(db_session, _ctx(business_id), business_id, created.id)
    service.commit_plan_change(
        db_session,
        subscription,
        new_plan_id=plans["starter"].id,
        change_type="DOWNGRADE",
        effective_timing=EffectiveTiming.NEXT_BILLING_CYCLE,
        effective_at=effective_at,
        expected_row_version=1,
    )
    db_session.commit()
    return subscription


def test_scheduled_changes_apply_only_when_due(
    db_session: Session,
    service: SubscriptionService,
    plans: dict[str, PlanRead],
) -> None:
    due = _schedule_downgrade(db_session, service, plans, "biz-1", NOW - timedelta(hours=1))
    later = _schedule_downgrade(db_session, service, plans, "biz-2", NOW + timedelta(days=3))
    assert due.plan_id == plans["professional"].id
    assert due.scheduled_plan_id == plans["starter"].id

    applied = service.apply_scheduled_plan_changes(db_session, NOW)

    assert applied == 1
    db_session.refresh(due)
    db_session.refresh(later)
    assert due.plan_id == plans["starter"].id
    assert due.scheduled_plan_id is None
    assert due.row_version == 3
    assert later.plan_id == plans["professional"].id
    assert later.scheduled_plan_id == plans["starter"].id

    change_types = [
        row.change_type
        for row in db_session.scalars(
            select(SubscriptionChange).where(SubscriptionChange.subscription_id == due.id)
        ).all()
    ]
    assert sorted(change_types) == ["DOWNGRADE", "SCHEDULED_CHANGE_APPLIED"]
    applied_events = [item for item in events.published_events if item["event_type"] == "subscription.scheduled_change_applied"]
    assert [item["subscription_id"] for item in applied_events] == [str(due.id)]

    assert service.apply_scheduled_plan_changes(db_session, NOW) == 0


def test_scheduled_change_task_runs_with_its_own_session(
    db_session: Session,
    service: SubscriptionService,
    plans: dict[str, PlanRead],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    due = _schedule_downgrade(db_session, service, plans, "biz-1", datetime.now(timezone.utc) - timedelta(minutes=5))
    bind = db_session.get_bind()
    monkeypatch.setattr(tasks, "SessionLocal", sessionmaker(bind=bind, autocommit=False, autoflush=False))

    assert tasks.apply_scheduled_plan_changes() == 1

    db_session.expire_all()
    assert db_session.get(Subscription, due.id).plan_id == plans["starter"].id
