from __future__ import annotations

import logging
import uuid
from collections.abc import Generator
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi import HTTPException
from prometheus_client import REGISTRY
from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.business.discounts.client import DEFAULT_RULES, StaticDiscountValidator
from app.business.payments.gateway import GatewayErrorKind, SandboxPaymentGateway
from app.business.payments.models import PaymentCharge
from app.business.payments.schemas import PaymentMethodCreate, PaymentMethodRead
from app.business.payments.service import PaymentMethodService
from app.business.plan_change import (
    BusinessRuleBlockedError,
    DiscountCodeInvalidError,
    ExecutionInProgressError,
    IdempotencyKeyMismatchError,
    PaymentFailedError,
    PaymentMethodRequiredError,
    PlanChangeExecution,
    PlanChangeNotFoundError,
    PlanChangeService,
    ReconciliationRequiredError,
    StalePreviewError,
    TransientInfrastructureError,
    ValidationFailedError,
    derive_idempotency_key,
)
from app.business.plan_change.schemas import PlanChangeExecuteRequest, PlanChangePreviewRead
from app.business.plan_change.single_flight import SingleFlight
from app.business.subscription.models import Subscription, SubscriptionChange
from app.business.subscription.schemas import PlanRead, SubscriptionCreate, SubscriptionRead, UsageUpdate
from app.business.subscription.seed import SubscriptionSeedHelper
from app.business.subscription.service import SubscriptionService
from app.core.database import Base
from app.platform.security.context import AuthContext


PERIOD_START = datetime(2026, 1, 1, tzinfo=timezone.utc)
NOW = datetime(2026, 1, 16, 12, 0, tzinfo=timezone.utc)
BUSINESS_ID = "biz-1"
VALID_CARD = "4111111111111111"
DECLINED_CARD = "4000000000000002"


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


@dataclass
class Harness:
    gateway: SandboxPaymentGateway
    subscriptions: SubscriptionService
    payment_methods: PaymentMethodService
    plan_changes: PlanChangeService
    plans: dict[str, PlanRead]


def _ctx(business_id: str = BUSINESS_ID) -> AuthContext:
    return AuthContext(user_id="owner-1", business_scope=[business_id])


def _admin() -> AuthContext:
    return AuthContext(user_id="admin-1", is_super_admin=True, roles=["admin"])


def _build(db_session: Session, subscriptions: SubscriptionService | None = None) -> Harness:
    gateway = SandboxPaymentGateway()
    subscriptions = subscriptions or SubscriptionService(clock=lambda: NOW)
    payment_methods = PaymentMethodService(gateway_provider=lambda: gateway, today=lambda: date(2026, 1, 16))
    discounts = StaticDiscountValidator(DEFAULT_RULES, clock=lambda: NOW)
    plan_changes = PlanChangeService(
        subscriptions=subscriptions,
        payment_methods=payment_methods,
        gateway_provider=lambda: gateway,
        discount_provider=lambda: discounts,
        single_flight=SingleFlight(),
        clock=lambda: NOW,
        max_attempts=2,
        backoff_seconds=0,
        execution_timeout_seconds=120,
    )
    plans = SubscriptionSeedHelper(subscriptions).ensure_default_plans(db_session, _admin())
    return Harness(
        gateway=gateway,
        subscriptions=subscriptions,
        payment_methods=payment_methods,
        plan_changes=plan_changes,
        plans={plan.code: plan for plan in plans},
    )


@pytest.fixture()
def harness(db_session: Session) -> Harness:
    return _build(db_session)


def _subscribe(db_session: Session, harness: Harness, plan_code: str = "starter") -> SubscriptionRead:
    return harness.subscriptions.create_subscription(
        db_session,
        _ctx(),
        BUSINESS_ID,
        SubscriptionCreate(plan_id=harness.plans[plan_code].id, current_period_start=PERIOD_START),
    )


def _add_card(db_session: Session, harness: Harness, number: str = VALID_CARD) -> PaymentMethodRead:
    return harness.payment_methods.add_method(
        db_session,
        _ctx(),
        BUSINESS_ID,
        PaymentMethodCreate(
            holder_name="Ayse Yilmaz",
            card_number=number,
            expire_month=12,
            expire_year=2028,
            cvc="123",
        ),
    )


def _preview(
    db_session: Session,
    harness: Harness,
    subscription: SubscriptionRead,
    plan_code: str,
    **kwargs: object,
) -> PlanChangePreviewRead:
    return harness.plan_changes.compute_preview(
        db_session,
        _ctx(),
        BUSINESS_ID,
        subscription.id,
        harness.plans[plan_code].id,
        **kwargs,
    )


def _request(preview: PlanChangePreviewRead, **overrides: object) -> PlanChangeExecuteRequest:
    data: dict[str, object] = {
        "new_plan_id": preview.new_plan.id,
        "expected_row_version": preview.subscription_row_version,
        "expected_period_end": preview.current_period_end,
    }
    data.update(overrides)
    return PlanChangeExecuteRequest(**data)


def _execute(
    db_session: Session,
    harness: Harness,
    subscription: SubscriptionRead,
    request: PlanChangeExecuteRequest,
    key: str = "key-1",
):
    return harness.plan_changes.execute_plan_change(db_session, _ctx(), BUSINESS_ID, subscription.id, request, key)


def _reload(db_session: Session, subscription_id: uuid.UUID) -> Subscription:
    db_session.expire_all()
    row = db_session.get(Subscription, subscription_id)
    assert row is not None
    return row


def _execution(db_session: Session, key: str) -> PlanChangeExecution:
    db_session.expire_all()
    row = db_session.scalar(select(PlanChangeExecution).where(PlanChangeExecution.idempotency_key == key))
    assert row is not None
    return row


def _event_types() -> list[str]:
    return [str(item.get("event_type")) for item in events.published_events]


def test_preview_prorates_upgrade_and_lists_payment_methods(db_session: Session, harness: Harness) -> None:
    subscription = _subscribe(db_session, harness)
    card = _add_card(db_session, harness)

    preview = _preview(db_session, harness, subscription, "professional")

    assert preview.change_type == "UPGRADE"
    assert preview.remaining_fraction == Decimal("0.5")
    assert preview.proration_amount == Decimal("750.00")
    assert preview.total_amount == Decimal("750.00")
    assert preview.payment_required is True
    assert preview.effective_timing == "IMMEDIATE"
    assert preview.can_proceed is True
    assert [item.id for item in preview.payment_methods] == [card.id]
    assert preview.default_payment_method_id == card.id
    assert preview.subscription_row_version == 1


def test_preview_with_discount_reduces_total(db_session: Session, harness: Harness) -> None:
    subscription = _subscribe(db_session, harness)

    preview = _preview(db_session, harness, subscription, "professional", discount_code="welcome10")

    assert preview.discount is not None
    assert preview.discount.is_valid is True
    assert preview.discount.discount_amount == Decimal("75.00")
    assert preview.total_amount == Decimal("675.00")
    assert preview.proration_amount == Decimal("750.00")


def test_preview_rejects_unknown_plan_and_same_plan(db_session: Session, harness: Harness) -> None:
    subscription = _subscribe(db_session, harness)

    with pytest.raises(PlanChangeNotFoundError):
        harness.plan_changes.compute_preview(db_session, _ctx(), BUSINESS_ID, subscription.id, uuid.uuid4())
    with pytest.raises(ValidationFailedError):
        _preview(db_session, harness, subscription, "starter")


def test_preview_is_scoped_to_business(db_session: Session, harness: Harness) -> None:
    subscription = _subscribe(db_session, harness)

    with pytest.raises(HTTPException) as exc_info:
        harness.plan_changes.compute_preview(
            db_session, _ctx("biz-2"), BUSINESS_ID, subscription.id, harness.plans["professional"].id
        )
    assert exc_info.value.status_code == 403


def test_upgrade_charges_and_switches_plan(db_session: Session, harness: Harness) -> None:
    subscription = _subscribe(db_session, harness)
    card = _add_card(db_session, harness)
    preview = _preview(db_session, harness, subscription, "professional")

    result = _execute(db_session, harness, subscription, _request(preview))

    assert result.change_type == "UPGRADE"
    assert result.effective_timing == "IMMEDIATE"
    assert result.replayed is False
    assert result.payment is not None
    assert result.payment.amount == Decimal("750.00")
    assert result.payment.payment_method_id == card.id
    assert result.subscription.plan_id == harness.plans["professional"].id
    assert result.subscription.row_version == 2

    stored = _reload(db_session, subscription.id)
    assert stored.plan_id == harness.plans["professional"].id
    charge = db_session.scalar(select(PaymentCharge))
    assert charge is not None
    assert charge.transaction_id == result.payment.transaction_id
    assert charge.idempotency_key == "key-1"
    change = db_session.scalar(select(SubscriptionChange))
    assert change is not None
    assert change.change_type == "UPGRADE"
    assert change.payload_json["transaction_id"] == result.payment.transaction_id

    assert _execution(db_session, "key-1").status == "SUCCEEDED"
    assert len(harness.gateway.succeeded_charges) == 1
    assert "subscription.plan_changed" in _event_types()


def test_upgrade_with_discount_charges_discounted_amount(db_session: Session, harness: Harness) -> None:
    subscription = _subscribe(db_session, harness)
    _add_card(db_session, harness)
    preview = _preview(db_session, harness, subscription, "professional")

    result = _execute(db_session, harness, subscription, _request(preview, discount_code="UPGRADE250"))

    assert result.payment is not None
    assert result.payment.amount == Decimal("500.00")
    assert result.discount is not None
    assert result.discount.code == "UPGRADE250"


def test_invalid_discount_code_rejects_before_charging(db_session: Session, harness: Harness) -> None:
    subscription = _subscribe(db_session, harness)
    _add_card(db_session, harness)
    preview = _preview(db_session, harness, subscription, "professional")

    with pytest.raises(DiscountCodeInvalidError) as exc_info:
        _execute(db_session, harness, subscription, _request(preview, discount_code="NOPE"))

    assert exc_info.value.field_errors["discount_code"] == "discount code not found"
    assert harness.gateway.charge_attempts == []
    assert _reload(db_session, subscription.id).row_version == 1


def test_downgrade_is_scheduled_without_charge(db_session: Session, harness: Harness) -> None:
    subscription = _subscribe(db_session, harness, "professional")
    preview = _preview(db_session, harness, subscription, "starter")

    result = _execute(db_session, harness, subscription, _request(preview))

    assert result.change_type == "DOWNGRADE"
    assert result.effective_timing == "NEXT_BILLING_CYCLE"
    assert result.payment is None
    stored = _reload(db_session, subscription.id)
    assert stored.plan_id == harness.plans["professional"].id
    assert stored.scheduled_plan_id == harness.plans["starter"].id
    assert stored.row_version == 2
    assert harness.gateway.charge_attempts == []
    assert "subscription.plan_change_scheduled" in _event_types()


def test_downgrade_blocked_by_usage_over_new_limits(db_session: Session, harness: Harness) -> None:
    subscription = _subscribe(db_session, harness, "professional")
    harness.subscriptions.record_usage(db_session, _ctx(), BUSINESS_ID, UsageUpdate(active_staff_count=5))
    preview = _preview(db_session, harness, subscription, "starter")
    assert preview.can_proceed is False
    assert preview.limitations[0].resource == "staff"

    with pytest.raises(BusinessRuleBlockedError) as exc_info:
        _execute(db_session, harness, subscription, _request(preview))

    assert exc_info.value.details["limitations"][0]["current_usage"] == 5
    assert _reload(db_session, subscription.id).scheduled_plan_id is None


def test_upgrade_without_payment_method_is_rejected(db_session: Session, harness: Harness) -> None:
    subscription = _subscribe(db_session, harness)
    preview = _preview(db_session, harness, subscription, "professional")

    with pytest.raises(PaymentMethodRequiredError):
        _execute(db_session, harness, subscription, _request(preview))

    assert harness.gateway.charge_attempts == []


def test_declined_card_leaves_subscription_untouched(db_session: Session, harness: Harness) -> None:
    subscription = _subscribe(db_session, harness)
    _add_card(db_session, harness, DECLINED_CARD)
    preview = _preview(db_session, harness, subscription, "professional")

    with pytest.raises(PaymentFailedError):
        _execute(db_session, harness, subscription, _request(preview))

    stored = _reload(db_session, subscription.id)
    assert stored.plan_id == harness.plans["starter"].id
    assert stored.row_version == 1
    assert db_session.scalar(select(PaymentCharge)) is None
    execution = _execution(db_session, "key-1")
    assert execution.status == "FAILED"
    assert execution.error_json["code"] == "payment_failed"

    with pytest.raises(PaymentFailedError):
        _execute(db_session, harness, subscription, _request(preview))
    assert len(harness.gateway.charge_attempts) == 1


def test_replay_returns_stored_result_without_charging_again(db_session: Session, harness: Harness) -> None:
    subscription = _subscribe(db_session, harness)
    _add_card(db_session, harness)
    preview = _preview(db_session, harness, subscription, "professional")
    request = _request(preview)

    first = _execute(db_session, harness, subscription, request)
    second = _execute(db_session, harness, subscription, request)

    assert second.replayed is True
    assert second.execution_id == first.execution_id
    assert second.payment is not None and first.payment is not None
    assert second.payment.transaction_id == first.payment.transaction_id
    assert len(harness.gateway.charge_attempts) == 1
    assert _reload(db_session, subscription.id).row_version == 2


def test_reused_key_with_different_payload_is_rejected(db_session: Session, harness: Harness) -> None:
    subscription = _subscribe(db_session, harness)
    _add_card(db_session, harness)
    preview = _preview(db_session, harness, subscription, "professional")
    _execute(db_session, harness, subscription, _request(preview))

    other = _request(preview, new_plan_id=harness.plans["enterprise"].id)
    with pytest.raises(IdempotencyKeyMismatchError):
        _execute(db_session, harness, subscription, other)


def test_missing_idempotency_key_is_rejected(db_session: Session, harness: Harness) -> None:
    subscription = _subscribe(db_session, harness)
    preview = _preview(db_session, harness, subscription, "professional")

    with pytest.raises(ValidationFailedError) as exc_info:
        _execute(db_session, harness, subscription, _request(preview), key="  ")
    assert "Idempotency-Key" in exc_info.value.field_errors


def test_stale_row_version_is_rejected(db_session: Session, harness: Harness) -> None:
    subscription = _subscribe(db_session, harness, "professional")
    stale = _preview(db_session, harness, subscription, "enterprise")
    downgrade = _preview(db_session, harness, subscription, "starter")
    _execute(db_session, harness, subscription, _request(downgrade), key="key-downgrade")
    _add_card(db_session, harness)

    with pytest.raises(StalePreviewError) as exc_info:
        _execute(db_session, harness, subscription, _request(stale), key="key-upgrade")

    assert exc_info.value.details["current_row_version"] == 2
    assert harness.gateway.charge_attempts == []


def test_changed_period_end_is_rejected(db_session: Session, harness: Harness) -> None:
    subscription = _subscribe(db_session, harness)
    _add_card(db_session, harness)
    preview = _preview(db_session, harness, subscription, "professional")

    with pytest.raises(StalePreviewError):
        _execute(
            db_session,
            harness,
            subscription,
            _request(preview, expected_period_end=preview.current_period_end + timedelta(days=1)),
        )


def test_concurrent_execution_for_same_subscription_is_refused(db_session: Session, harness: Harness) -> None:
    subscription = _subscribe(db_session, harness)
    _add_card(db_session, harness)
    preview = _preview(db_session, harness, subscription, "professional")

    with harness.plan_changes.single_flight.hold(str(subscription.id)):
        with pytest.raises(ExecutionInProgressError):
            _execute(db_session, harness, subscription, _request(preview))

    assert harness.gateway.charge_attempts == []
    result = _execute(db_session, harness, subscription, _request(preview), key="key-2")
    assert result.payment is not None


def test_in_flight_execution_row_blocks_other_keys(db_session: Session, harness: Harness) -> None:
    subscription = _subscribe(db_session, harness)
    _add_card(db_session, harness)
    preview = _preview(db_session, harness, subscription, "professional")
    db_session.add(
        PlanChangeExecution(
            business_id=BUSINESS_ID,
            subscription_id=subscription.id,
            idempotency_key="other-process",
            request_hash="x" * 64,
            status="EXECUTING",
            change_type="UPGRADE",
            target_plan_id=harness.plans["enterprise"].id,
            updated_at=NOW - timedelta(seconds=30),
        )
    )
    db_session.commit()

    with pytest.raises(ExecutionInProgressError):
        _execute(db_session, harness, subscription, _request(preview))
    assert harness.gateway.charge_attempts == []


def test_abandoned_execution_without_charge_is_released(db_session: Session, harness: Harness) -> None:
    subscription = _subscribe(db_session, harness)
    _add_card(db_session, harness)
    preview = _preview(db_session, harness, subscription, "professional")
    db_session.add(
        PlanChangeExecution(
            business_id=BUSINESS_ID,
            subscription_id=subscription.id,
            idempotency_key="crashed-process",
            request_hash="x" * 64,
            status="EXECUTING",
            change_type="UPGRADE",
            target_plan_id=harness.plans["enterprise"].id,
            updated_at=NOW - timedelta(minutes=10),
        )
    )
    db_session.commit()

    result = _execute(db_session, harness, subscription, _request(preview))

    assert result.payment is not None
    abandoned = _execution(db_session, "crashed-process")
    assert abandoned.status == "FAILED"
    assert abandoned.error_json["code"] == "transient_failure"


def test_timeout_then_status_check_confirms_charge(db_session: Session, harness: Harness) -> None:
    subscription = _subscribe(db_session, harness)
    _add_card(db_session, harness)
    preview = _preview(db_session, harness, subscription, "professional")
    harness.gateway.fail_next_charge(GatewayErrorKind.TIMEOUT, times=2, charge_applied=True)

    result = _execute(db_session, harness, subscription, _request(preview))

    assert result.payment is not None
    assert result.payment.transaction_id == harness.gateway.succeeded_charges[0].transaction_id
    assert len(harness.gateway.charge_attempts) == 2
    assert len(harness.gateway.succeeded_charges) == 1


def test_transient_gateway_failure_can_be_retried_with_same_key(db_session: Session, harness: Harness) -> None:
    subscription = _subscribe(db_session, harness)
    _add_card(db_session, harness)
    preview = _preview(db_session, harness, subscription, "professional")
    harness.gateway.fail_next_charge(GatewayErrorKind.PROVIDER_UNAVAILABLE, times=2)

    with pytest.raises(TransientInfrastructureError):
        _execute(db_session, harness, subscription, _request(preview))
    assert _execution(db_session, "key-1").status == "FAILED"
    assert _reload(db_session, subscription.id).row_version == 1

    result = _execute(db_session, harness, subscription, _request(preview))

    assert result.replayed is False
    assert result.payment is not None
    assert len(harness.gateway.charge_attempts) == 3
    assert len(harness.gateway.succeeded_charges) == 1
    assert _execution(db_session, "key-1").status == "SUCCEEDED"


def test_unknown_charge_outcome_requires_reconciliation(db_session: Session, harness: Harness) -> None:
    subscription = _subscribe(db_session, harness)
    _add_card(db_session, harness)
    preview = _preview(db_session, harness, subscription, "professional")
    harness.gateway.fail_next_charge(GatewayErrorKind.TIMEOUT, times=2, charge_applied=True)
    harness.gateway.status_check_available = False

    with pytest.raises(ReconciliationRequiredError):
        _execute(db_session, harness, subscription, _request(preview))

    assert _reload(db_session, subscription.id).plan_id == harness.plans["starter"].id
    assert _execution(db_session, "key-1").status == "RECONCILIATION_REQUIRED"
    assert "plan_change.reconciliation_required" in _event_types()

    with pytest.raises(ReconciliationRequiredError):
        _execute(db_session, harness, subscription, _request(preview))
    assert len(harness.gateway.charge_attempts) == 2


class _BrokenCommitSubscriptionService(SubscriptionService):
    def commit_plan_change(self, session, subscription, **kwargs):
        raise OperationalError("UPDATE subscription", {}, Exception("database went away"))


def test_commit_failure_after_charge_requires_reconciliation(db_session: Session) -> None:
    harness = _build(db_session, _BrokenCommitSubscriptionService(clock=lambda: NOW))
    subscription = _subscribe(db_session, harness)
    _add_card(db_session, harness)
    preview = _preview(db_session, harness, subscription, "professional")

    with pytest.raises(ReconciliationRequiredError) as exc_info:
        _execute(db_session, harness, subscription, _request(preview))

    charged = harness.gateway.succeeded_charges[0]
    assert exc_info.value.transaction_id == charged.transaction_id
    assert exc_info.value.subscription_id == str(subscription.id)
    execution = _execution(db_session, "key-1")
    assert execution.status == "RECONCILIATION_REQUIRED"
    assert execution.transaction_id == charged.transaction_id
    assert _reload(db_session, subscription.id).plan_id == harness.plans["starter"].id


class _CrashingCommitSubscriptionService(SubscriptionService):
    crashes_left = 1

    def commit_plan_change(self, session, subscription, **kwargs):
        if self.crashes_left > 0:
            self.crashes_left -= 1
            raise RuntimeError("commit crashed")
        return SubscriptionService.commit_plan_change(self, session, subscription, **kwargs)


def test_unexpected_crash_after_charge_requires_reconciliation(db_session: Session) -> None:
    harness = _build(db_session, _CrashingCommitSubscriptionService(clock=lambda: NOW))
    subscription = _subscribe(db_session, harness)
    _add_card(db_session, harness)
    preview = _preview(db_session, harness, subscription, "professional")

    with pytest.raises(ReconciliationRequiredError) as exc_info:
        _execute(db_session, harness, subscription, _request(preview))

    charged = harness.gateway.succeeded_charges[0]
    assert exc_info.value.transaction_id == charged.transaction_id
    execution = _execution(db_session, "key-1")
    assert execution.status == "RECONCILIATION_REQUIRED"
    assert execution.transaction_id == charged.transaction_id
    assert "plan_change.reconciliation_required" in _event_types()

    with pytest.raises(ReconciliationRequiredError):
        _execute(db_session, harness, subscription, _request(preview))
    assert len(harness.gateway.succeeded_charges) == 1
    assert _reload(db_session, subscription.id).plan_id == harness.plans["starter"].id


def test_unexpected_crash_without_charge_can_be_retried(db_session: Session) -> None:
    harness = _build(db_session, _CrashingCommitSubscriptionService(clock=lambda: NOW))
    subscription = _subscribe(db_session, harness, "professional")
    preview = _preview(db_session, harness, subscription, "starter")

    with pytest.raises(RuntimeError):
        _execute(db_session, harness, subscription, _request(preview))
    assert _execution(db_session, "key-1").status == "FAILED"

    result = _execute(db_session, harness, subscription, _request(preview))

    assert result.replayed is False
    assert result.change_type == "DOWNGRADE"
    assert _execution(db_session, "key-1").status == "SUCCEEDED"


def test_single_flight_refusal_is_counted_and_logged(
    db_session: Session,
    harness: Harness,
    caplog: pytest.LogCaptureFixture,
) -> None:
    subscription = _subscribe(db_session, harness)
    _add_card(db_session, harness)
    preview = _preview(db_session, harness, subscription, "professional")
    labels = {"reason": "execution_in_progress"}
    before = REGISTRY.get_sample_value("plan_change_rejections_total", labels) or 0.0
    caplog.set_level(logging.INFO)

    with harness.plan_changes.single_flight.hold(str(subscription.id)):
        with pytest.raises(ExecutionInProgressError):
            _execute(db_session, harness, subscription, _request(preview))

    assert REGISTRY.get_sample_value("plan_change_rejections_total", labels) == before + 1
    rejected = [record for record in caplog.records if record.getMessage() == "plan_change.execution.rejected"]
    assert len(rejected) == 1
    assert rejected[0].outcome == "execution_in_progress"
    assert rejected[0].subscription_id == str(subscription.id)
    assert not harness.plan_changes.single_flight.is_busy(str(subscription.id))


def test_canceled_subscription_cannot_change_plan(db_session: Session, harness: Harness) -> None:
    subscription = _subscribe(db_session, harness)
    row = db_session.get(Subscription, subscription.id)
    assert row is not None
    row.status = "CANCELED"
    db_session.commit()

    with pytest.raises(BusinessRuleBlockedError):
        _preview(db_session, harness, subscription, "professional")


def test_derived_idempotency_key_is_stable_per_nonce() -> None:
    subscription_id = uuid.uuid4()
    plan_id = uuid.uuid4()

    first = derive_idempotency_key(subscription_id, plan_id, "nonce-1")

    assert first == derive_idempotency_key(str(subscription_id), str(plan_id), "nonce-1")
    assert first != derive_idempotency_key(subscription_id, plan_id, "nonce-2")
    assert len(first) == 64
