from __future__ import annotations

from enum import StrEnum

from app.business.plan_change.errors import (
    ExecutionInProgressError,
    InvalidTransitionError,
    PaymentMethodRequiredError,
    PlanChangeError,
    PlanChangeErrorKind,
)


class FlowState(StrEnum):
    IDLE = "IDLE"
    PLAN_SELECTED = "PLAN_SELECTED"
    PREVIEW_READY = "PREVIEW_READY"
    PREVIEW_FAILED = "PREVIEW_FAILED"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    AWAITING_CONFIRMATION = "AWAITING_CONFIRMATION"
    EXECUTING = "EXECUTING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


FLOW_TRANSITIONS: dict[FlowState, frozenset[FlowState]] = {
    FlowState.IDLE: frozenset({FlowState.PLAN_SELECTED, FlowState.CANCELLED}),
    FlowState.PLAN_SELECTED: frozenset({FlowState.PREVIEW_READY, FlowState.PREVIEW_FAILED, FlowState.CANCELLED}),
    FlowState.PREVIEW_READY: frozenset(
        {FlowState.AWAITING_PAYMENT, FlowState.AWAITING_CONFIRMATION, FlowState.CANCELLED}
    ),
    FlowState.PREVIEW_FAILED: frozenset({FlowState.PLAN_SELECTED, FlowState.CANCELLED}),
    FlowState.AWAITING_PAYMENT: frozenset({FlowState.AWAITING_CONFIRMATION, FlowState.CANCELLED}),
    FlowState.AWAITING_CONFIRMATION: frozenset({FlowState.EXECUTING, FlowState.CANCELLED}),
    FlowState.EXECUTING: frozenset({FlowState.SUCCEEDED, FlowState.FAILED}),
    FlowState.SUCCEEDED: frozenset(),
    FlowState.FAILED: frozenset(
        {FlowState.AWAITING_CONFIRMATION, FlowState.AWAITING_PAYMENT, FlowState.PLAN_SELECTED, FlowState.CANCELLED}
    ),
    FlowState.CANCELLED: frozenset(),
}

TERMINAL_STATES = frozenset({FlowState.SUCCEEDED, FlowState.CANCELLED})
PLAN_SELECTABLE_STATES = frozenset({FlowState.IDLE, FlowState.PREVIEW_FAILED})
PAYMENT_SELECTABLE_STATES = frozenset({FlowState.AWAITING_PAYMENT, FlowState.AWAITING_CONFIRMATION})
DISCOUNT_EDITABLE_STATES = frozenset({FlowState.AWAITING_PAYMENT, FlowState.AWAITING_CONFIRMATION})


def can_transition(current: FlowState | str, target: FlowState | str) -> bool:
    return FlowState(target) in FLOW_TRANSITIONS.get(FlowState(current), frozenset())


def assert_transition(current: FlowState | str, target: FlowState | str) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"invalid plan change flow transition {current} -> {target}",
            details={"from_state": str(current), "to_state": str(target)},
        )


def resume_state_for(error: PlanChangeError) -> FlowState | None:
    """Where a failed execution may be retried from; ``None`` means the failure is terminal."""

    if error.kind == PlanChangeErrorKind.RECONCILIATION_REQUIRED:
        return None
    if error.kind == PlanChangeErrorKind.PAYMENT_FAILURE or isinstance(error, PaymentMethodRequiredError):
        return FlowState.AWAITING_PAYMENT
    if error.kind == PlanChangeErrorKind.TRANSIENT or isinstance(error, ExecutionInProgressError):
        return FlowState.AWAITING_CONFIRMATION
    return FlowState.PLAN_SELECTED


def reject_action(state: FlowState | str, action: str, *, details: dict | None = None) -> InvalidTransitionError:
    return InvalidTransitionError(
        f"cannot {action} while the plan change flow is {state}",
        details={"state": str(state), "action": action, **(details or {})},
    )
