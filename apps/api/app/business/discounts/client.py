from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Protocol

import httpx
from opentelemetry import trace

from app.context import get_correlation_id
from app.core.config import get_settings
from app.metrics import observe_discount_validation


logger = logging.getLogger(__name__)
tracer = trace.get_tracer("app.business.discounts.client")

_MONEY = Decimal("0.01")


class DiscountServiceUnavailableError(Exception):
    """The discount service could not give an answer; the code is neither valid nor invalid."""


@dataclass(frozen=True, slots=True)
class DiscountResult:
    code: str
    is_valid: bool
    discount_amount: Decimal
    original_amount: Decimal
    final_amount: Decimal
    error_message: str | None = None

    @classmethod
    def invalid(cls, code: str, amount: Decimal, message: str) -> DiscountResult:
        original = Decimal(amount).quantize(_MONEY, rounding=ROUND_HALF_UP)
        return cls(
            code=code,
            is_valid=False,
            discount_amount=Decimal("0.00"),
            original_amount=original,
            final_amount=original,
            error_message=message,
        )


class DiscountValidator(Protocol):
    def validate(self, code: str, plan_id: str, amount: Decimal) -> DiscountResult: ...


@dataclass(slots=True)
class DiscountRule:
    code: str
    discount_type: str
    discount_value: Decimal
    applicable_plans: frozenset[str] = frozenset()
    min_purchase_amount: Decimal | None = None
    max_discount_amount: Decimal | None = None
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    max_uses: int | None = None
    current_uses: int = 0
    is_active: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)


class StaticDiscountValidator:
    """Evaluates codes against in-memory rules with the external service's rule set."""

    def __init__(
        self,
        rules: Iterable[DiscountRule] = (),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._rules = {rule.code.upper(): rule for rule in rules}
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()

    def add_rule(self, rule: DiscountRule) -> None:
        with self._lock:
            self._rules[rule.code.upper()] = rule

    def validate(self, code: str, plan_id: str, amount: Decimal) -> DiscountResult:
        normalized = (code or "").strip().upper()
        with tracer.start_as_current_span("discounts.validate") as span:
            span.set_attribute("discount_code", normalized)
            span.set_attribute("plan_id", str(plan_id))
            span.set_attribute("correlation_id", get_correlation_id() or "")
            with self._lock:
                rule = self._rules.get(normalized)
            result = self._evaluate(normalized, rule, str(plan_id), Decimal(amount))
            span.set_attribute("is_valid", result.is_valid)
        observe_discount_validation("valid" if result.is_valid else "invalid")
        return result

    def _evaluate(self, code: str, rule: DiscountRule | None, plan_id: str, amount: Decimal) -> DiscountResult:
        if not code:
            return DiscountResult.invalid(code, amount, "discount code is required")
        if rule is None or not rule.is_active:
            return DiscountResult.invalid(code, amount, "discount code not found")

        now = self._clock()
        if rule.valid_from is not None and now < rule.valid_from:
            return DiscountResult.invalid(code, amount, "discount code is not active yet")
        if rule.valid_until is not None and now > rule.valid_until:
            return DiscountResult.invalid(code, amount, "discount code has expired")
        if rule.max_uses is not None and rule.current_uses >= rule.max_uses:
            return DiscountResult.invalid(code, amount, "discount code usage limit reached")
        if rule.applicable_plans and plan_id not in rule.applicable_plans:
            return DiscountResult.invalid(code, amount, "discount code does not apply to this plan")
        if rule.min_purchase_amount is not None and amount < rule.min_purchase_amount:
            return DiscountResult.invalid(
                code, amount, f"minimum purchase amount for this code is {rule.min_purchase_amount}"
            )

        original = amount.quantize(_MONEY, rounding=ROUND_HALF_UP)
        if rule.discount_type == "PERCENTAGE":
            discount = original * rule.discount_value / Decimal("100")
        else:
            discount = rule.discount_value
        if rule.max_discount_amount is not None:
            discount = min(discount, rule.max_discount_amount)
        discount = min(max(discount, Decimal("0")), original).quantize(_MONEY, rounding=ROUND_HALF_UP)
        return DiscountResult(
            code=code,
            is_valid=True,
            discount_amount=discount,
            original_amount=original,
            final_amount=(original - discount).quantize(_MONEY, rounding=ROUND_HALF_UP),
        )


class HttpDiscountValidator:
    def __init__(self, base_url: str, timeout_seconds: float = 5.0, client: httpx.Client | None = None) -> None:
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout_seconds)

    def close(self) -> None:
        self._client.close()

    def validate(self, code: str, plan_id: str, amount: Decimal) -> DiscountResult:
        normalized = (code or "").strip().upper()
        started = time.perf_counter()
        with tracer.start_as_current_span("discounts.validate") as span:
            span.set_attribute("discount_code", normalized)
            span.set_attribute("plan_id", str(plan_id))
            correlation_id = get_correlation_id()
            headers = {"x-correlation-id": correlation_id} if correlation_id else {}
            try:
                response = self._client.post(
                    "/api/v1/discount-codes/validate",
                    json={"code": normalized, "planId": str(plan_id), "amount": str(amount)},
                    headers=headers,
                )
            except httpx.HTTPError as exc:
                observe_discount_validation("unavailable")
                logger.warning(
                    "discount.validate.unavailable",
                    extra={"error": exc.__class__.__name__, "duration_ms": round((time.perf_counter() - started) * 1000, 2)},
                )
                raise DiscountServiceUnavailableError("discount service is unavailable") from exc

            if response.status_code >= 500:
                observe_discount_validation("unavailable")
                raise DiscountServiceUnavailableError(f"discount service returned {response.status_code}")

            body = self._json(response)
            if response.status_code >= 400:
                message = body.get("message")
                result = DiscountResult.invalid(normalized, Decimal(amount), str(message or "discount code is invalid"))
            else:
                result = self._to_result(normalized, Decimal(amount), body)
            span.set_attribute("is_valid", result.is_valid)

        observe_discount_validation("valid" if result.is_valid else "invalid")
        return result

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {}

    @staticmethod
    def _to_result(code: str, amount: Decimal, body: dict[str, Any]) -> DiscountResult:
        if not body.get("isValid"):
            return DiscountResult.invalid(code, amount, str(body.get("errorMessage") or "discount code is invalid"))
        original = Decimal(str(body.get("originalAmount") if body.get("originalAmount") is not None else amount))
        discount = Decimal(str(body.get("discountAmount") or "0"))
        final = Decimal(str(body.get("finalAmount") if body.get("finalAmount") is not None else original - discount))
        return DiscountResult(
            code=code,
            is_valid=True,
            discount_amount=discount.quantize(_MONEY, rounding=ROUND_HALF_UP),
            original_amount=original.quantize(_MONEY, rounding=ROUND_HALF_UP),
            final_amount=max(final, Decimal("0")).quantize(_MONEY, rounding=ROUND_HALF_UP),
        )


DEFAULT_RULES: tuple[DiscountRule, ...] = (
    DiscountRule(code="WELCOME10", discount_type="PERCENTAGE", discount_value=Decimal("10")),
    DiscountRule(
        code="UPGRADE250",
        discount_type="FIXED_AMOUNT",
        discount_value=Decimal("250"),
        min_purchase_amount=Decimal("500"),
    ),
)


_validator: DiscountValidator | None = None
_validator_lock = threading.Lock()


def set_discount_validator(validator: DiscountValidator | None) -> None:
    global _validator
    with _validator_lock:
        _validator = validator


def get_discount_validator() -> DiscountValidator:
    global _validator
    with _validator_lock:
        if _validator is None:
            settings = get_settings()
            if settings.discount_validator_backend.lower() == "http":
                _validator = HttpDiscountValidator(
                    base_url=settings.discount_service_url,
                    timeout_seconds=settings.discount_service_timeout_seconds,
                )
            else:
                _validator = StaticDiscountValidator(DEFAULT_RULES)
        return _validator
