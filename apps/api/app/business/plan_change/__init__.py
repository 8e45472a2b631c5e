from app.business.plan_change.api import router
from app.business.plan_change.errors import (
    BusinessRuleBlockedError,
    ConflictError,
    DiscountCodeInvalidError,
    ExecutionInProgressError,
    IdempotencyKeyMismatchError,
    InvalidTransitionError,
    PaymentFailedError,
    PaymentMethodRequiredError,
    PlanChangeError,
    PlanChangeErrorKind,
    PlanChangeNotFoundError,
    ReconciliationRequiredError,
    StalePreviewError,
    TransientInfrastructureError,
    ValidationFailedError,
)
from app.business.plan_change.flow import FLOW_TRANSITIONS, FlowState, can_transition
from app.business.plan_change.models import PlanChangeExecution, PlanChangeFlow
from app.business.plan_change.service import (
    PlanChangeFlowService,
    PlanChangeService,
    derive_idempotency_key,
    plan_change_flow_service,
    plan_change_service,
)

__all__ = [
    "router",
    "PlanChangeError",
    "PlanChangeErrorKind",
    "ValidationFailedError",
    "DiscountCodeInvalidError",
    "PaymentMethodRequiredError",
    "BusinessRuleBlockedError",
    "ConflictError",
    "StalePreviewError",
    "ExecutionInProgressError",
    "IdempotencyKeyMismatchError",
    "InvalidTransitionError",
    "PaymentFailedError",
    "TransientInfrastructureError",
    "ReconciliationRequiredError",
    "PlanChangeNotFoundError",
    "FLOW_TRANSITIONS",
    "FlowState",
    "can_transition",
    "PlanChangeExecution",
    "PlanChangeFlow",
    "PlanChangeService",
    "PlanChangeFlowService",
    "derive_idempotency_key",
    "plan_change_service",
    "plan_change_flow_service",
]
