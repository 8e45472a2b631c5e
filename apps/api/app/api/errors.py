from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from app.business.discounts.client import DiscountServiceUnavailableError
from app.business.payments.gateway import GatewayError
from app.business.payments.validation import CardValidationError
from app.business.plan_change.errors import PlanChangeError
from app.business.pricing import PricingValidationError
from app.context import get_correlation_id
from app.platform.security.errors import AuthorizationError


logger = logging.getLogger(__name__)


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    response = JSONResponse(status_code=status_code, content=payload.__dict__)
    if correlation_id:
        response.headers["x-correlation-id"] = correlation_id
    return response


async def _plan_change_error_handler(request: Request, exc: PlanChangeError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details or None,
    )


async def _card_validation_error_handler(request: Request, exc: CardValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        code="validation_error",
        message="card details are invalid",
        details={"field_errors": exc.field_errors},
    )


async def _pricing_validation_error_handler(request: Request, exc: PricingValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        code="validation_error",
        message=exc.message,
        details={"field_errors": {exc.field_name: exc.message}},
    )


async def _gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    if exc.retryable:
        status_code, code = status.HTTP_503_SERVICE_UNAVAILABLE, "transient_failure"
    else:
        status_code, code = status.HTTP_402_PAYMENT_REQUIRED, "payment_failed"
    logger.warning("gateway.error", extra={"error_kind": str(exc.kind), "status_code": status_code})
    return error_response(
        request,
        status_code=status_code,
        code=code,
        message=exc.message,
        details={"gateway_error": str(exc.kind), "provider_code": exc.provider_code},
    )


async def _discount_unavailable_handler(request: Request, exc: DiscountServiceUnavailableError) -> JSONResponse:
    return error_response(
        request,
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        code="transient_failure",
        message=str(exc) or "discount service is unavailable",
    )


async def _authorization_error_handler(request: Request, exc: AuthorizationError) -> JSONResponse:
    return error_response(
        request,
        status_code=status.HTTP_403_FORBIDDEN,
        code="forbidden",
        message=str(exc),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PlanChangeError, _plan_change_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(CardValidationError, _card_validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(PricingValidationError, _pricing_validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(GatewayError, _gateway_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(DiscountServiceUnavailableError, _discount_unavailable_handler)  # type: ignore[arg-type]
    app.add_exception_handler(AuthorizationError, _authorization_error_handler)  # type: ignore[arg-type]
