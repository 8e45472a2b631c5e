from __future__ import annotations

from enum import StrEnum
from typing import Any, ClassVar


class PlanChangeErrorKind(StrEnum):
    VALIDATION = "VALIDATION"
    CONFLICT = "CONFLICT"
    PAYMENT_FAILURE = "PAYMENT_FAILURE"
    TRANSIENT = "TRANSIENT"
    RECONCILIATION_REQUIRED = "RECONCILIATION_REQUIRED"
    BUSINESS_RULE = "BUSINESS_RULE"
    NOT_FOUND = "NOT_FOUND"


_REGISTRY: dict[str, type[PlanChangeError]] = {}


class PlanChangeError(Exception):
    """Base for every failure the orchestrator reports to callers.

    ``code`` is stable and machine readable, ``kind`` is the coarse category
    the flow uses to decide where a failed attempt may resume.
    """

    kind: ClassVar[PlanChangeErrorKind] = PlanChangeErrorKind.VALIDATION
    code: ClassVar[str] = "plan_change_error"
    status_code: ClassVar[int] = 400
    retryable: ClassVar[bool] = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = dict(details or {})
        super().__init__(message)

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        _REGISTRY[cls.code] = cls

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": str(self.kind),
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class ValidationFailedError(PlanChangeError):
    kind = PlanChangeErrorKind.VALIDATION
    code = "validation_error"
    status_code = 422

    def __init__(self, message: str, *, field_errors: dict[str, str] | None = None, details: dict[str, Any] | None = None) -> None:
        merged = dict(details or {})
        if field_errors:
            merged["field_errors"] = dict(field_errors)
        super().__init__(message, details=merged)

    @property
    def field_errors(self) -> dict[str, str]:
        return dict(self.details.get("field_errors") or {})


class DiscountCodeInvalidError(ValidationFailedError):
    code = "discount_code_invalid"


class PaymentMethodRequiredError(ValidationFailedError):
    code = "payment_method_required"


class BusinessRuleBlockedError(PlanChangeError):
    kind = PlanChangeErrorKind.BUSINESS_RULE
    code = "business_rule_blocked"
    status_code = 422

    def __init__(self, message: str, *, limitations: list[dict[str, Any]] | None = None, details: dict[str, Any] | None = None) -> None:
        merged = dict(details or {})
        if limitations is not None:
            merged["limitations"] = list(limitations)
        super().__init__(message, details=merged)


class ConflictError(PlanChangeError):
    kind = PlanChangeErrorKind.CONFLICT
    code = "conflict"
    status_code = 409


class StalePreviewError(ConflictError):
    code = "stale_preview"


class ExecutionInProgressError(ConflictError):
    code = "execution_in_progress"


class IdempotencyKeyMismatchError(ConflictError):
    code = "idempotency_key_mismatch"


class InvalidTransitionError(ConflictError):
    code = "invalid_transition"


class PaymentFailedError(PlanChangeError):
    kind = PlanChangeErrorKind.PAYMENT_FAILURE
    code = "payment_failed"
    status_code = 402


class TransientInfrastructureError(PlanChangeError):
    kind = PlanChangeErrorKind.TRANSIENT
    code = "transient_failure"
    status_code = 503
    retryable = True


class ReconciliationRequiredError(PlanChangeError):
    kind = PlanChangeErrorKind.RECONCILIATION_REQUIRED
    code = "reconciliation_required"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        transaction_id: str | None = None,
        subscription_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        merged = dict(details or {})
        if transaction_id is not None:
            merged["transaction_id"] = transaction_id
        if subscription_id is not None:
            merged["subscription_id"] = subscription_id
        super().__init__(message, details=merged)

    @property
    def transaction_id(self) -> str | None:
        return self.details.get("transaction_id")

    @property
    def subscription_id(self) -> str | None:
        return self.details.get("subscription_id")


class PlanChangeNotFoundError(PlanChangeError):
    kind = PlanChangeErrorKind.NOT_FOUND
    code = "not_found"
    status_code = 404


def restore_error(data: dict[str, Any]) -> PlanChangeError:
    """Rebuild an error previously stored with ``PlanChangeError.to_dict``."""

    cls = _REGISTRY.get(str(data.get("code")), TransientInfrastructureError)
    error = cls.__new__(cls)
    PlanChangeError.__init__(error, str(data.get("message") or cls.code), details=data.get("details") or {})
    return error
