from __future__ import annotations

import hashlib
import json
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import and_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app import events
from app.business.discounts.client import (
    DiscountResult,
    DiscountServiceUnavailableError,
    DiscountValidator,
    get_discount_validator,
)
from app.business.payments.gateway import (
    PAYMENT_FAILURE_KINDS,
    ChargeResult,
    GatewayError,
    PaymentGateway,
    charge_with_retry,
    get_payment_gateway,
)
from app.business.payments.models import PaymentCharge, PaymentMethod
from app.business.payments.schemas import PaymentMethodRead
from app.business.payments.service import PaymentMethodService, payment_method_service, select_default
from app.business.plan_change.errors import (
    BusinessRuleBlockedError,
    ConflictError,
    DiscountCodeInvalidError,
    ExecutionInProgressError,
    IdempotencyKeyMismatchError,
    PaymentFailedError,
    PaymentMethodRequiredError,
    PlanChangeError,
    PlanChangeNotFoundError,
    ReconciliationRequiredError,
    StalePreviewError,
    TransientInfrastructureError,
    ValidationFailedError,
    restore_error,
)
from app.business.plan_change.flow import (
    DISCOUNT_EDITABLE_STATES,
    PAYMENT_SELECTABLE_STATES,
    FlowState,
    assert_transition,
    reject_action,
    resume_state_for,
)
from app.business.plan_change.models import PlanChangeExecution, PlanChangeFlow
from app.business.plan_change.repository import PlanChangeExecutionRepository, PlanChangeFlowRepository
from app.business.plan_change.schemas import (
    ChangeResultRead,
    DiscountRead,
    FlowConfirm,
    FlowCreate,
    FlowDiscountCode,
    FlowRead,
    FlowSelectPaymentMethod,
    FlowSelectPlan,
    LimitationRead,
    PaymentConfirmationRead,
    PlanChangeExecuteRequest,
    PlanChangePreviewRead,
    PlanSnapshotRead,
)
from app.business.plan_change.single_flight import SingleFlight, execution_single_flight
from app.business.pricing import (
    ChangePreview,
    EffectiveTiming,
    PricingValidationError,
    ProrationPreference,
    compute_preview,
)
from app.business.subscription.models import Subscription, SubscriptionPlan, as_utc, utcnow
from app.business.subscription.schemas import SubscriptionRead
from app.business.subscription.service import (
    SubscriptionService,
    SubscriptionVersionConflictError,
    subscription_service,
)
from app.core.config import get_settings
from app.metrics import (
    observe_execution,
    observe_preview,
    observe_reconciliation_required,
    observe_rejection,
)
from app.platform.security.context import AuthContext
from app.platform.security.errors import AuthorizationError


logger = logging.getLogger(__name__)
tracer = trace.get_tracer("app.business.plan_change.service")


def derive_idempotency_key(subscription_id: uuid.UUID | str, target_plan_id: uuid.UUID | str, nonce: str) -> str:
    return hashlib.sha256(f"{subscription_id}:{target_plan_id}:{nonce}".encode("utf-8")).hexdigest()


@dataclass(slots=True)
class PlanChangeService:
    """Preview and execute plan changes for one subscription at a time.

    Execution charges first and commits second. Every attempt is keyed by an
    idempotency key and recorded as a ``PlanChangeExecution`` row, so a replay
    of a finished key returns the stored outcome instead of charging again.
    """

    subscriptions: SubscriptionService = field(default_factory=lambda: subscription_service)
    payment_methods: PaymentMethodService = field(default_factory=lambda: payment_method_service)
    execution_repository: PlanChangeExecutionRepository = PlanChangeExecutionRepository()
    gateway_provider: Callable[[], PaymentGateway] = get_payment_gateway
    discount_provider: Callable[[], DiscountValidator] = get_discount_validator
    single_flight: SingleFlight = execution_single_flight
    clock: Callable[[], datetime] = utcnow
    max_attempts: int | None = None
    backoff_seconds: float | None = None
    execution_timeout_seconds: int | None = None

    def compute_preview(
        self,
        session: Session,
        ctx: AuthContext,
        business_id: str,
        subscription_id: uuid.UUID,
        new_plan_id: uuid.UUID,
        *,
        proration_preference: ProrationPreference | str = ProrationPreference.PRORATE,
        discount_code: str | None = None,
    ) -> PlanChangePreviewRead:
        with tracer.start_as_current_span("plan_change.preview") as span:
            span.set_attribute("business_id", business_id)
            span.set_attribute("subscription_id", str(subscription_id))
            span.set_attribute("plan_id", str(new_plan_id))
            subscription = self.subscriptions.get_subscription_model(session, ctx, business_id, subscription_id)
            preview = self._price(session, subscription, new_plan_id, proration_preference, self.clock())
            methods = self.payment_methods.active_methods(session, business_id)
            discount = None
            if discount_code and discount_code.strip():
                discount = self.validate_discount(discount_code, new_plan_id, preview.total_amount)
            span.set_attribute("change_type", str(preview.change_type))
            span.set_attribute("can_proceed", preview.can_proceed)

        observe_preview(str(preview.change_type), preview.can_proceed)
        logger.info(
            "plan_change.preview.computed",
            extra={
                "business_id": business_id,
                "subscription_id": str(subscription_id),
                "plan_id": str(new_plan_id),
                "change_type": str(preview.change_type),
                "amount": str(preview.total_amount),
                "currency": preview.currency,
            },
        )
        return self._to_preview_read(subscription, preview, methods, discount)

    def validate_discount(self, code: str, plan_id: uuid.UUID | str, amount: Decimal) -> DiscountResult:
        try:
            return self.discount_provider().validate(code, str(plan_id), amount)
        except DiscountServiceUnavailableError as exc:
            raise TransientInfrastructureError("discount service is unavailable, please retry") from exc

    def execute_plan_change(
        self,
        session: Session,
        ctx: AuthContext,
        business_id: str,
        subscription_id: uuid.UUID,
        request: PlanChangeExecuteRequest,
        idempotency_key: str | None,
    ) -> ChangeResultRead:
        if not idempotency_key or not idempotency_key.strip():
            raise ValidationFailedError(
                "an idempotency key is required",
                field_errors={"Idempotency-Key": "header is required"},
            )
        idempotency_key = idempotency_key.strip()
        subscription = self.subscriptions.get_subscription_model(session, ctx, business_id, subscription_id)
        request_hash = self._request_hash(business_id, subscription_id, request)

        existing = self._find_execution(session, idempotency_key)
        if existing is not None:
            replay = self._replay(session, existing, request_hash)
            if replay is not None:
                return replay

        started = time.perf_counter()
        with tracer.start_as_current_span("plan_change.execute") as span:
            span.set_attribute("business_id", business_id)
            span.set_attribute("subscription_id", str(subscription_id))
            span.set_attribute("plan_id", str(request.new_plan_id))
            span.set_attribute("idempotency_key", idempotency_key)
            flight_key = str(subscription.id)
            try:
                self.single_flight.acquire(flight_key)
            except ExecutionInProgressError as exc:
                span.set_attribute("error_code", exc.code)
                self._note_rejection(business_id, flight_key, idempotency_key, exc)
                raise
            try:
                return self._execute_locked(
                    session,
                    subscription,
                    request,
                    idempotency_key,
                    request_hash,
                    started,
                )
            except PlanChangeError as exc:
                span.set_attribute("error_code", exc.code)
                raise
            finally:
                self.single_flight.release(flight_key)

    def _execute_locked(
        self,
        session: Session,
        subscription: Subscription,
        request: PlanChangeExecuteRequest,
        idempotency_key: str,
        request_hash: str,
        started: float,
    ) -> ChangeResultRead:
        business_id = subscription.business_id
        subscription_ref = str(subscription.id)
        try:
            existing = self._find_execution(session, idempotency_key)
            if existing is not None:
                session.refresh(existing)
                replay = self._replay(session, existing, request_hash)
                if replay is not None:
                    return replay
            session.refresh(subscription)
            self._guard_in_flight(session, subscription.id, idempotency_key)
            self._check_fresh(subscription, request)

            now = self.clock()
            preview = self._price(session, subscription, request.new_plan_id, request.proration_preference, now)
            if not preview.can_proceed:
                raise BusinessRuleBlockedError(
                    "current usage exceeds the limits of the selected plan",
                    limitations=[item.to_dict() for item in preview.limitations],
                )

            discount = None
            amount = preview.total_amount
            if request.discount_code and request.discount_code.strip():
                discount = self.validate_discount(request.discount_code, request.new_plan_id, preview.total_amount)
                if not discount.is_valid:
                    message = discount.error_message or "discount code is invalid"
                    raise DiscountCodeInvalidError(message, field_errors={"discount_code": message})
                amount = discount.final_amount

            method = None
            if preview.payment_required:
                method = self.payment_methods.resolve_method(session, business_id, request.payment_method_id)
                if method is None:
                    raise PaymentMethodRequiredError(
                        "a payment method is required to upgrade",
                        field_errors={"payment_method_id": "select or add a payment method"},
                    )

            execution = self._start_execution(
                session, existing, subscription, idempotency_key, request_hash, preview, amount, method
            )
        except PlanChangeError as exc:
            self._note_rejection(business_id, subscription_ref, idempotency_key, exc)
            raise

        change_type = str(preview.change_type)
        execution_id = execution.id
        charge = None
        dispatched = False
        try:
            if method is not None and amount > 0:
                execution.charge_dispatched_at = self.clock()
                session.commit()
                dispatched = True
                charge = self._charge(subscription, method, amount, preview.currency, idempotency_key)
            result = self._commit(session, execution, subscription, preview, request, charge, method, discount)
        except PlanChangeError as exc:
            self._record_failure(session, execution_id, exc)
            observe_execution(change_type, exc.code, time.perf_counter() - started)
            if isinstance(exc, ReconciliationRequiredError):
                self._report_reconciliation(business_id, exc, idempotency_key)
            else:
                logger.warning(
                    "plan_change.execution.failed",
                    extra={
                        "business_id": business_id,
                        "subscription_id": subscription_ref,
                        "idempotency_key": idempotency_key,
                        "change_type": change_type,
                        "outcome": exc.code,
                    },
                )
            raise
        except Exception as exc:
            observe_execution(change_type, "unexpected_error", time.perf_counter() - started)
            logger.exception(
                "plan_change.execution.crashed",
                extra={"business_id": business_id, "idempotency_key": idempotency_key, "error": str(exc)},
            )
            if not dispatched:
                self._record_failure(
                    session, execution_id, TransientInfrastructureError("plan change execution failed unexpectedly")
                )
                raise
            # The charge may have settled, so the outcome is unknown.
            reconciliation = ReconciliationRequiredError(
                "charge was dispatched but the plan change could not be completed",
                transaction_id=charge.transaction_id if charge is not None else None,
                subscription_id=subscription_ref,
                details={"idempotency_key": idempotency_key},
            )
            self._record_failure(session, execution_id, reconciliation)
            self._report_reconciliation(business_id, reconciliation, idempotency_key)
            raise reconciliation from exc

        observe_execution(change_type, "succeeded", time.perf_counter() - started)
        self._publish_result(business_id, result)
        logger.info(
            "plan_change.executed",
            extra={
                "business_id": business_id,
                "subscription_id": str(result.subscription.id),
                "plan_id": str(result.new_plan_id),
                "change_type": result.change_type,
                "idempotency_key": idempotency_key,
                "transaction_id": result.payment.transaction_id if result.payment else None,
                "amount": str(result.payment.amount) if result.payment else "0.00",
                "outcome": "succeeded",
            },
        )
        return result

    def _note_rejection(self, business_id: str, subscription_id: str, idempotency_key: str, error: PlanChangeError) -> None:
        observe_rejection(error.code)
        logger.info(
            "plan_change.execution.rejected",
            extra={
                "business_id": business_id,
                "subscription_id": subscription_id,
                "idempotency_key": idempotency_key,
                "outcome": error.code,
            },
        )

    def _price(
        self,
        session: Session,
        subscription: Subscription,
        new_plan_id: uuid.UUID,
        proration_preference: ProrationPreference | str,
        now: datetime,
    ) -> ChangePreview:
        if subscription.status == "CANCELED":
            raise BusinessRuleBlockedError("canceled subscriptions cannot change plan")
        new_plan = session.get(SubscriptionPlan, new_plan_id)
        if new_plan is None:
            raise PlanChangeNotFoundError("plan not found", details={"plan_id": str(new_plan_id)})
        if not new_plan.is_active:
            raise ValidationFailedError("plan is not available", field_errors={"new_plan_id": "plan is not active"})

        usage = self.subscriptions.get_usage_snapshot(session, subscription.business_id)
        try:
            return compute_preview(
                self.subscriptions.to_plan_snapshot(subscription.plan),
                self.subscriptions.to_plan_snapshot(new_plan),
                as_utc(subscription.current_period_start),
                as_utc(subscription.current_period_end),
                as_utc(now),
                usage=usage,
                proration_preference=proration_preference,
            )
        except PricingValidationError as exc:
            raise ValidationFailedError(exc.message, field_errors={exc.field_name: exc.message}) from exc

    def _check_fresh(self, subscription: Subscription, request: PlanChangeExecuteRequest) -> None:
        period_changed = request.expected_period_end is not None and as_utc(subscription.current_period_end) != as_utc(
            request.expected_period_end
        )
        if subscription.row_version != request.expected_row_version or period_changed:
            raise StalePreviewError(
                "subscription changed since the preview was computed; recompute the preview",
                details={
                    "expected_row_version": request.expected_row_version,
                    "current_row_version": subscription.row_version,
                },
            )

    def _guard_in_flight(self, session: Session, subscription_id: uuid.UUID, idempotency_key: str) -> None:
        rows = session.scalars(
            select(PlanChangeExecution).where(
                and_(
                    PlanChangeExecution.subscription_id == subscription_id,
                    PlanChangeExecution.status == "EXECUTING",
                    PlanChangeExecution.idempotency_key != idempotency_key,
                )
            )
        ).all()
        for row in rows:
            if not self._is_abandoned(row):
                raise ExecutionInProgressError(
                    "another plan change is already executing for this subscription",
                    details={"subscription_id": str(subscription_id)},
                )
            self._abandon(session, row)

    def _is_abandoned(self, execution: PlanChangeExecution) -> bool:
        timeout = self.execution_timeout_seconds or get_settings().plan_change_execution_timeout_seconds
        return as_utc(execution.updated_at) < as_utc(self.clock()) - timedelta(seconds=timeout)

    def _abandon(self, session: Session, execution: PlanChangeExecution) -> None:
        error: PlanChangeError
        if execution.charge_dispatched_at is not None:
            error = ReconciliationRequiredError(
                "execution was abandoned after a charge was dispatched",
                subscription_id=str(execution.subscription_id),
                details={"idempotency_key": execution.idempotency_key},
            )
            execution.status = "RECONCILIATION_REQUIRED"
        else:
            error = TransientInfrastructureError("execution was abandoned before any charge was made")
            execution.status = "FAILED"
        execution.error_json = error.to_dict()
        execution.completed_at = self.clock()
        session.add(execution)
        session.commit()
        if isinstance(error, ReconciliationRequiredError):
            self._report_reconciliation(execution.business_id, error, execution.idempotency_key)

    def _find_execution(self, session: Session, idempotency_key: str) -> PlanChangeExecution | None:
        return session.scalar(select(PlanChangeExecution).where(PlanChangeExecution.idempotency_key == idempotency_key))

    def _replay(
        self,
        session: Session,
        execution: PlanChangeExecution,
        request_hash: str,
    ) -> ChangeResultRead | None:
        """Stored outcome for a known key; ``None`` when a retryable failure may run again."""

        if execution.request_hash != request_hash:
            raise IdempotencyKeyMismatchError(
                "idempotency key payload mismatch",
                details={"idempotency_key": execution.idempotency_key},
            )
        if execution.status == "EXECUTING":
            if not self._is_abandoned(execution):
                raise ExecutionInProgressError(
                    "a plan change with this idempotency key is still executing",
                    details={"idempotency_key": execution.idempotency_key},
                )
            self._abandon(session, execution)

        if execution.status == "SUCCEEDED" and execution.result_json:
            stored = ChangeResultRead.model_validate(execution.result_json)
            logger.info(
                "plan_change.execution.replayed",
                extra={"idempotency_key": execution.idempotency_key, "subscription_id": str(execution.subscription_id)},
            )
            return stored.model_copy(update={"replayed": True})

        error = restore_error(execution.error_json or {})
        if execution.status == "FAILED" and error.retryable:
            return None
        raise error

    def _start_execution(
        self,
        session: Session,
        existing: PlanChangeExecution | None,
        subscription: Subscription,
        idempotency_key: str,
        request_hash: str,
        preview: ChangePreview,
        amount: Decimal,
        method: PaymentMethod | None,
    ) -> PlanChangeExecution:
        execution = existing or PlanChangeExecution(
            business_id=subscription.business_id,
            subscription_id=subscription.id,
            idempotency_key=idempotency_key,
            request_hash=request_hash,
        )
        execution.status = "EXECUTING"
        execution.change_type = str(preview.change_type)
        execution.target_plan_id = uuid.UUID(preview.new_plan.id)
        execution.amount = amount
        execution.currency = preview.currency
        execution.payment_method_id = method.id if method is not None else None
        execution.charge_dispatched_at = None
        execution.error_json = None
        execution.updated_at = self.clock()
        session.add(execution)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ExecutionInProgressError(
                "another plan change is already executing for this subscription",
                details={"subscription_id": str(subscription.id)},
            ) from exc
        session.refresh(execution)
        return execution

    def _charge(
        self,
        subscription: Subscription,
        method: PaymentMethod,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
    ) -> ChargeResult:
        settings = get_settings()
        gateway = self.gateway_provider()
        try:
            return charge_with_retry(
                gateway,
                payment_token=method.gateway_token,
                amount=amount,
                currency=currency,
                idempotency_key=idempotency_key,
                max_attempts=self.max_attempts or settings.payment_gateway_max_attempts,
                backoff_seconds=(
                    self.backoff_seconds if self.backoff_seconds is not None else settings.payment_gateway_backoff_seconds
                ),
            )
        except GatewayError as exc:
            if exc.kind in PAYMENT_FAILURE_KINDS:
                raise PaymentFailedError(
                    exc.message,
                    details={"gateway_error": str(exc.kind), "provider_code": exc.provider_code},
                ) from exc
            return self._confirm_charge_status(gateway, exc, subscription, idempotency_key)

    def _confirm_charge_status(
        self,
        gateway: PaymentGateway,
        charge_error: GatewayError,
        subscription: Subscription,
        idempotency_key: str,
    ) -> ChargeResult:
        try:
            found = gateway.get_charge(idempotency_key)
        except GatewayError as exc:
            raise ReconciliationRequiredError(
                "charge outcome is unknown and the gateway status check failed",
                subscription_id=str(subscription.id),
                details={"idempotency_key": idempotency_key, "gateway_error": str(charge_error.kind)},
            ) from exc

        if found is not None and found.succeeded:
            logger.info(
                "gateway.charge.confirmed_by_status_check",
                extra={"idempotency_key": idempotency_key, "transaction_id": found.transaction_id},
            )
            return found
        if charge_error.retryable:
            raise TransientInfrastructureError(
                "payment gateway is unavailable, please retry",
                details={"gateway_error": str(charge_error.kind)},
            ) from charge_error
        raise PaymentFailedError(
            charge_error.message,
            details={"gateway_error": str(charge_error.kind), "provider_code": charge_error.provider_code},
        ) from charge_error

    def _commit(
        self,
        session: Session,
        execution: PlanChangeExecution,
        subscription: Subscription,
        preview: ChangePreview,
        request: PlanChangeExecuteRequest,
        charge: ChargeResult | None,
        method: PaymentMethod | None,
        discount: DiscountResult | None,
    ) -> ChangeResultRead:
        previous_plan_id = subscription.plan_id
        new_plan_id = uuid.UUID(preview.new_plan.id)
        history_payload: dict[str, Any] = {
            "proration_amount": str(preview.proration_amount),
            "proration_preference": str(preview.proration_preference),
            "effective_timing": str(preview.effective_timing),
            "idempotency_key": execution.idempotency_key,
        }
        if charge is not None:
            history_payload["transaction_id"] = charge.transaction_id
            history_payload["amount"] = str(charge.amount)
        if discount is not None:
            history_payload["discount_code"] = discount.code
            history_payload["discount_amount"] = str(discount.discount_amount)

        try:
            self.subscriptions.commit_plan_change(
                session,
                subscription,
                new_plan_id=new_plan_id,
                change_type=str(preview.change_type),
                effective_timing=preview.effective_timing,
                effective_at=preview.effective_at,
                expected_row_version=request.expected_row_version,
                payload_json=history_payload,
            )
            if charge is not None and method is not None:
                session.add(
                    PaymentCharge(
                        business_id=subscription.business_id,
                        subscription_id=subscription.id,
                        payment_method_id=method.id,
                        amount=charge.amount,
                        currency=charge.currency or preview.currency,
                        idempotency_key=execution.idempotency_key,
                        transaction_id=charge.transaction_id,
                        status=charge.status,
                    )
                )

            result = ChangeResultRead(
                execution_id=execution.id,
                idempotency_key=execution.idempotency_key,
                change_type=str(preview.change_type),
                effective_timing=str(preview.effective_timing),
                effective_at=preview.effective_at,
                previous_plan_id=previous_plan_id,
                new_plan_id=new_plan_id,
                subscription=SubscriptionRead.model_validate(subscription),
                payment=(
                    PaymentConfirmationRead(
                        transaction_id=charge.transaction_id,
                        amount=charge.amount,
                        currency=charge.currency or preview.currency,
                        payment_method_id=method.id,
                    )
                    if charge is not None and method is not None
                    else None
                ),
                discount=self._to_discount_read(discount),
            )
            execution.status = "SUCCEEDED"
            execution.transaction_id = charge.transaction_id if charge is not None else None
            execution.result_json = result.model_dump(mode="json")
            execution.completed_at = self.clock()
            session.add(execution)
            session.commit()
        except SubscriptionVersionConflictError as exc:
            session.rollback()
            if charge is not None:
                raise ReconciliationRequiredError(
                    "charge succeeded but the subscription changed before the plan change was committed",
                    transaction_id=charge.transaction_id,
                    subscription_id=str(subscription.id),
                ) from exc
            raise StalePreviewError("subscription changed since the preview was computed; recompute the preview") from exc
        except SQLAlchemyError as exc:
            session.rollback()
            if charge is not None:
                raise ReconciliationRequiredError(
                    "charge succeeded but the plan change could not be committed",
                    transaction_id=charge.transaction_id,
                    subscription_id=str(subscription.id),
                ) from exc
            raise TransientInfrastructureError("plan change could not be committed, please retry") from exc
        return result

    def _record_failure(self, session: Session, execution_id: uuid.UUID, error: PlanChangeError) -> None:
        session.rollback()
        execution = session.get(PlanChangeExecution, execution_id)
        if execution is None:
            return
        execution.status = "RECONCILIATION_REQUIRED" if isinstance(error, ReconciliationRequiredError) else "FAILED"
        execution.error_json = error.to_dict()
        if isinstance(error, ReconciliationRequiredError) and error.transaction_id:
            execution.transaction_id = error.transaction_id
        execution.completed_at = self.clock()
        session.add(execution)
        try:
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception(
                "plan_change.execution.record_failed",
                extra={"idempotency_key": execution.idempotency_key, "error": str(exc)},
            )

    def _report_reconciliation(self, business_id: str, error: ReconciliationRequiredError, idempotency_key: str) -> None:
        observe_reconciliation_required()
        logger.error(
            "plan_change.reconciliation_required",
            extra={
                "business_id": business_id,
                "subscription_id": error.subscription_id,
                "transaction_id": error.transaction_id,
                "idempotency_key": idempotency_key,
                "error": error.message,
            },
        )
        events.publish(
            {
                "event_type": "plan_change.reconciliation_required",
                "business_id": business_id,
                "subscription_id": error.subscription_id,
                "transaction_id": error.transaction_id,
                "idempotency_key": idempotency_key,
                "message": error.message,
            }
        )

    def _publish_result(self, business_id: str, result: ChangeResultRead) -> None:
        envelope: dict[str, Any] = {
            "business_id": business_id,
            "subscription_id": str(result.subscription.id),
            "previous_plan_id": str(result.previous_plan_id),
            "change_type": result.change_type,
            "idempotency_key": result.idempotency_key,
            "row_version": result.subscription.row_version,
        }
        if result.effective_timing == str(EffectiveTiming.IMMEDIATE):
            envelope["event_type"] = "subscription.plan_changed"
            envelope["plan_id"] = str(result.new_plan_id)
            if result.payment is not None:
                envelope["transaction_id"] = result.payment.transaction_id
                envelope["amount"] = str(result.payment.amount)
                envelope["currency"] = result.payment.currency
        else:
            envelope["event_type"] = "subscription.plan_change_scheduled"
            envelope["scheduled_plan_id"] = str(result.new_plan_id)
            envelope["scheduled_change_at"] = result.effective_at.isoformat()
        events.publish(envelope)

    def _to_preview_read(
        self,
        subscription: Subscription,
        preview: ChangePreview,
        methods: list[PaymentMethod],
        discount: DiscountResult | None,
    ) -> PlanChangePreviewRead:
        default_method = select_default(methods)
        total = discount.final_amount if discount is not None and discount.is_valid else preview.total_amount
        return PlanChangePreviewRead(
            subscription_id=subscription.id,
            change_type=str(preview.change_type),
            current_plan=PlanSnapshotRead.model_validate(preview.current_plan.to_dict()),
            new_plan=PlanSnapshotRead.model_validate(preview.new_plan.to_dict()),
            proration_preference=str(preview.proration_preference),
            remaining_fraction=preview.remaining_fraction,
            proration_amount=preview.proration_amount,
            total_amount=total,
            currency=preview.currency,
            effective_timing=str(preview.effective_timing),
            effective_at=preview.effective_at,
            next_billing_date=preview.next_billing_date,
            payment_required=preview.payment_required,
            payment_methods=[PaymentMethodRead.model_validate(item) for item in methods],
            default_payment_method_id=default_method.id if default_method is not None else None,
            limitations=[LimitationRead.model_validate(item.to_dict()) for item in preview.limitations],
            can_proceed=preview.can_proceed,
            entitlements_reduced=preview.entitlements_reduced,
            dropped_features=list(preview.dropped_features),
            discount=self._to_discount_read(discount),
            subscription_row_version=subscription.row_version,
            current_period_end=as_utc(subscription.current_period_end),
            fingerprint=preview.fingerprint,
        )

    @staticmethod
    def _to_discount_read(discount: DiscountResult | None) -> DiscountRead | None:
        if discount is None:
            return None
        return DiscountRead(
            code=discount.code,
            is_valid=discount.is_valid,
            discount_amount=discount.discount_amount,
            original_amount=discount.original_amount,
            final_amount=discount.final_amount,
            error_message=discount.error_message,
        )

    @staticmethod
    def _request_hash(business_id: str, subscription_id: uuid.UUID, request: PlanChangeExecuteRequest) -> str:
        payload = {
            "business_id": business_id,
            "subscription_id": str(subscription_id),
            **request.model_dump(mode="json"),
        }
        return hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode("utf-8")).hexdigest()


plan_change_service = PlanChangeService()


@dataclass(slots=True)
class PlanChangeFlowService:
    """Persisted, per-caller plan change state machine built on ``PlanChangeService``."""

    plan_changes: PlanChangeService = field(default_factory=lambda: plan_change_service)
    flow_repository: PlanChangeFlowRepository = PlanChangeFlowRepository()
    clock: Callable[[], datetime] = utcnow

    def start_flow(self, session: Session, ctx: AuthContext, business_id: str, payload: FlowCreate) -> FlowRead:
        subscription = self.plan_changes.subscriptions.get_subscription_model(
            session, ctx, business_id, payload.subscription_id
        )
        if subscription.status == "CANCELED":
            raise BusinessRuleBlockedError("canceled subscriptions cannot change plan")

        flow = PlanChangeFlow(
            business_id=business_id,
            subscription_id=subscription.id,
            state=str(FlowState.IDLE),
            history_json=[],
            row_version=1,
        )
        session.add(flow)
        session.commit()
        session.refresh(flow)
        logger.info(
            "plan_change.flow.started",
            extra={"business_id": business_id, "subscription_id": str(subscription.id), "flow_id": str(flow.id)},
        )
        return self._to_read(flow)

    def get_flow(self, session: Session, ctx: AuthContext, business_id: str, flow_id: uuid.UUID) -> FlowRead:
        return self._to_read(self._get_flow(session, ctx, business_id, flow_id))

    def select_plan(
        self,
        session: Session,
        ctx: AuthContext,
        business_id: str,
        flow_id: uuid.UUID,
        payload: FlowSelectPlan,
    ) -> FlowRead:
        flow = self._get_flow(session, ctx, business_id, flow_id)
        expected = flow.row_version
        self._transition(flow, FlowState.PLAN_SELECTED)
        flow.target_plan_id = payload.new_plan_id
        flow.proration_preference = payload.proration_preference
        self._reset_selection(flow)
        self._run_preview(session, ctx, flow)
        self._persist(session, flow, expected)
        return self._to_read(flow)

    def select_payment_method(
        self,
        session: Session,
        ctx: AuthContext,
        business_id: str,
        flow_id: uuid.UUID,
        payload: FlowSelectPaymentMethod,
    ) -> FlowRead:
        flow = self._get_flow(session, ctx, business_id, flow_id)
        if FlowState(flow.state) not in PAYMENT_SELECTABLE_STATES:
            raise reject_action(flow.state, "select a payment method")

        if payload.card is not None:
            added = self.plan_changes.payment_methods.add_method(session, ctx, business_id, payload.card)
            method_id = added.id
        elif payload.payment_method_id is not None:
            method = self.plan_changes.payment_methods.get_active_method(session, business_id, payload.payment_method_id)
            if method is None:
                raise ValidationFailedError(
                    "payment method not found",
                    field_errors={"payment_method_id": "payment method not found"},
                )
            method_id = method.id
        else:
            raise ValidationFailedError(
                "a payment method is required",
                field_errors={"payment_method_id": "provide payment_method_id or card"},
            )

        flow = self._get_flow(session, ctx, business_id, flow_id)
        expected = flow.row_version
        flow.payment_method_id = method_id
        flow.request_nonce = None
        if FlowState(flow.state) == FlowState.AWAITING_PAYMENT:
            self._transition(flow, FlowState.AWAITING_CONFIRMATION)
        self._persist(session, flow, expected)
        return self._to_read(flow)

    def apply_discount_code(
        self,
        session: Session,
        ctx: AuthContext,
        business_id: str,
        flow_id: uuid.UUID,
        payload: FlowDiscountCode,
    ) -> FlowRead:
        flow = self._get_flow(session, ctx, business_id, flow_id)
        if FlowState(flow.state) not in DISCOUNT_EDITABLE_STATES or flow.preview_json is None:
            raise reject_action(flow.state, "apply a discount code")

        expected = flow.row_version
        flow.request_nonce = None
        code = (payload.code or "").strip()
        if not code:
            flow.discount_code = None
            flow.discount_json = None
            flow.discount_error = None
        else:
            preview = PlanChangePreviewRead.model_validate(flow.preview_json)
            result = self.plan_changes.validate_discount(code, flow.target_plan_id, preview.total_amount)
            discount = self.plan_changes._to_discount_read(result)
            flow.discount_code = result.code
            flow.discount_json = discount.model_dump(mode="json") if discount is not None else None
            flow.discount_error = None if result.is_valid else (result.error_message or "discount code is invalid")
        self._persist(session, flow, expected)
        return self._to_read(flow)

    def confirm(
        self,
        session: Session,
        ctx: AuthContext,
        business_id: str,
        flow_id: uuid.UUID,
        payload: FlowConfirm,
    ) -> FlowRead:
        flow = self._get_flow(session, ctx, business_id, flow_id)
        assert_transition(flow.state, FlowState.EXECUTING)
        if flow.discount_error:
            raise DiscountCodeInvalidError(flow.discount_error, field_errors={"discount_code": flow.discount_error})
        preview = PlanChangePreviewRead.model_validate(flow.preview_json)
        if preview.payment_required and flow.payment_method_id is None:
            raise PaymentMethodRequiredError(
                "a payment method is required to upgrade",
                field_errors={"payment_method_id": "select or add a payment method"},
            )

        nonce = payload.request_nonce or flow.request_nonce or uuid.uuid4().hex
        idempotency_key = derive_idempotency_key(flow.subscription_id, flow.target_plan_id, nonce)
        expected = flow.row_version
        self._transition(flow, FlowState.EXECUTING)
        flow.request_nonce = nonce
        flow.idempotency_key = idempotency_key
        flow.failure_json = None
        flow.resume_state = None
        self._persist(session, flow, expected)

        request = PlanChangeExecuteRequest(
            new_plan_id=flow.target_plan_id,
            expected_row_version=preview.subscription_row_version,
            expected_period_end=preview.current_period_end,
            payment_method_id=flow.payment_method_id,
            discount_code=flow.discount_code,
            proration_preference=flow.proration_preference,
        )
        try:
            result = self.plan_changes.execute_plan_change(
                session, ctx, business_id, flow.subscription_id, request, idempotency_key
            )
        except PlanChangeError as exc:
            return self._fail(session, ctx, business_id, flow_id, exc)
        except Exception:
            self._fail(session, ctx, business_id, flow_id, self._failure_after_crash(session, idempotency_key))
            raise

        flow = self._get_flow(session, ctx, business_id, flow_id)
        expected = flow.row_version
        self._transition(flow, FlowState.SUCCEEDED)
        flow.result_json = result.model_dump(mode="json")
        self._persist(session, flow, expected)
        return self._to_read(flow)

    def retry(self, session: Session, ctx: AuthContext, business_id: str, flow_id: uuid.UUID) -> FlowRead:
        flow = self._get_flow(session, ctx, business_id, flow_id)
        if FlowState(flow.state) != FlowState.FAILED:
            raise reject_action(flow.state, "retry")
        if flow.resume_state is None:
            raise reject_action(flow.state, "resume", details={"failure": flow.failure_json})

        expected = flow.row_version
        target = FlowState(flow.resume_state)
        self._transition(flow, target)
        flow.resume_state = None
        if target == FlowState.PLAN_SELECTED:
            self._reset_selection(flow)
            self._run_preview(session, ctx, flow)
        elif target == FlowState.AWAITING_PAYMENT:
            flow.payment_method_id = None
        if target != FlowState.AWAITING_CONFIRMATION:
            flow.request_nonce = None
        self._persist(session, flow, expected)
        return self._to_read(flow)

    def cancel(self, session: Session, ctx: AuthContext, business_id: str, flow_id: uuid.UUID) -> FlowRead:
        flow = self._get_flow(session, ctx, business_id, flow_id)
        if FlowState(flow.state) == FlowState.FAILED and flow.resume_state is None:
            raise reject_action(flow.state, "resume", details={"failure": flow.failure_json})
        expected = flow.row_version
        self._transition(flow, FlowState.CANCELLED)
        self._persist(session, flow, expected)
        return self._to_read(flow)

    def _run_preview(self, session: Session, ctx: AuthContext, flow: PlanChangeFlow) -> None:
        try:
            preview = self.plan_changes.compute_preview(
                session,
                ctx,
                flow.business_id,
                flow.subscription_id,
                flow.target_plan_id,
                proration_preference=flow.proration_preference,
            )
        except PlanChangeError as exc:
            self._transition(flow, FlowState.PREVIEW_FAILED)
            flow.failure_json = exc.to_dict()
            return

        flow.preview_json = preview.model_dump(mode="json")
        if not preview.can_proceed:
            self._transition(flow, FlowState.PREVIEW_FAILED)
            flow.failure_json = BusinessRuleBlockedError(
                "current usage exceeds the limits of the selected plan",
                limitations=[item.model_dump(mode="json") for item in preview.limitations],
            ).to_dict()
            return

        self._transition(flow, FlowState.PREVIEW_READY)
        if not preview.payment_required:
            self._transition(flow, FlowState.AWAITING_CONFIRMATION)
            return
        self._transition(flow, FlowState.AWAITING_PAYMENT)
        if preview.default_payment_method_id is not None:
            flow.payment_method_id = preview.default_payment_method_id
            self._transition(flow, FlowState.AWAITING_CONFIRMATION)

    def _fail(
        self,
        session: Session,
        ctx: AuthContext,
        business_id: str,
        flow_id: uuid.UUID,
        error: PlanChangeError,
    ) -> FlowRead:
        session.rollback()
        flow = self._get_flow(session, ctx, business_id, flow_id)
        expected = flow.row_version
        self._transition(flow, FlowState.FAILED)
        resume = resume_state_for(error)
        flow.failure_json = error.to_dict()
        flow.resume_state = str(resume) if resume is not None else None
        self._persist(session, flow, expected)
        return self._to_read(flow)

    def _failure_after_crash(self, session: Session, idempotency_key: str) -> PlanChangeError:
        """Classify an unexpected execution crash from what its execution row recorded."""

        session.rollback()
        execution = self.plan_changes._find_execution(session, idempotency_key)
        if execution is not None and execution.status != "SUCCEEDED" and (
            execution.status == "RECONCILIATION_REQUIRED" or execution.charge_dispatched_at is not None
        ):
            return ReconciliationRequiredError(
                "charge was dispatched but the plan change could not be completed",
                transaction_id=execution.transaction_id,
                subscription_id=str(execution.subscription_id),
                details={"idempotency_key": idempotency_key},
            )
        return TransientInfrastructureError("plan change execution failed unexpectedly")

    def _transition(self, flow: PlanChangeFlow, target: FlowState) -> None:
        current = FlowState(flow.state)
        assert_transition(current, target)
        flow.state = str(target)
        flow.history_json = [
            *(flow.history_json or []),
            {"from_state": str(current), "to_state": str(target), "at": as_utc(self.clock()).isoformat()},
        ]
        logger.info(
            "plan_change.flow.transition",
            extra={
                "business_id": flow.business_id,
                "flow_id": str(flow.id),
                "subscription_id": str(flow.subscription_id),
                "status": f"{current}->{target}",
            },
        )

    @staticmethod
    def _reset_selection(flow: PlanChangeFlow) -> None:
        flow.preview_json = None
        flow.request_nonce = None
        flow.payment_method_id = None
        flow.discount_code = None
        flow.discount_json = None
        flow.discount_error = None
        flow.failure_json = None
        flow.result_json = None

    def _persist(self, session: Session, flow: PlanChangeFlow, expected_row_version: int) -> None:
        result = session.execute(
            update(PlanChangeFlow)
            .where(and_(PlanChangeFlow.id == flow.id, PlanChangeFlow.row_version == expected_row_version))
            .values(row_version=expected_row_version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            raise ConflictError("plan change flow was modified concurrently", details={"flow_id": str(flow.id)})
        flow.updated_at = self.clock()
        session.add(flow)
        session.commit()
        session.refresh(flow)

    def _get_flow(self, session: Session, ctx: AuthContext, business_id: str, flow_id: uuid.UUID) -> PlanChangeFlow:
        try:
            self.flow_repository.validate_business_scope(ctx, business_id)
        except AuthorizationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
        stmt = select(PlanChangeFlow).where(and_(PlanChangeFlow.id == flow_id, PlanChangeFlow.business_id == business_id))
        flow = session.scalar(self.flow_repository.apply_scope_query(stmt, ctx).execution_options(populate_existing=True))
        if flow is None:
            raise PlanChangeNotFoundError("plan change flow not found", details={"flow_id": str(flow_id)})
        return flow

    def _to_read(self, flow: PlanChangeFlow) -> FlowRead:
        preview = PlanChangePreviewRead.model_validate(flow.preview_json) if flow.preview_json else None
        discount = DiscountRead.model_validate(flow.discount_json) if flow.discount_json else None
        amount_due = None
        if preview is not None:
            amount_due = discount.final_amount if discount is not None and discount.is_valid else preview.total_amount
        can_confirm = (
            FlowState(flow.state) == FlowState.AWAITING_CONFIRMATION
            and not flow.discount_error
            and (preview is None or not preview.payment_required or flow.payment_method_id is not None)
        )
        return FlowRead(
            id=flow.id,
            business_id=flow.business_id,
            subscription_id=flow.subscription_id,
            state=flow.state,
            target_plan_id=flow.target_plan_id,
            proration_preference=flow.proration_preference,
            preview=preview,
            payment_method_id=flow.payment_method_id,
            discount_code=flow.discount_code,
            discount=discount,
            discount_error=flow.discount_error,
            amount_due=amount_due,
            can_confirm=can_confirm,
            result=ChangeResultRead.model_validate(flow.result_json) if flow.result_json else None,
            failure=flow.failure_json,
            resume_state=flow.resume_state,
            history=list(flow.history_json or []),
            row_version=flow.row_version,
            created_at=flow.created_at,
            updated_at=flow.updated_at,
        )


plan_change_flow_service = PlanChangeFlowService()
