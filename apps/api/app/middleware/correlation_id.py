from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.context import reset_business_id, reset_correlation_id, set_business_id, set_correlation_id


_BUSINESS_PATH_RE = re.compile(r"^/businesses/([^/]+)")


def business_id_from_path(path: str) -> str | None:
    match = _BUSINESS_PATH_RE.match(path)
    return match.group(1) if match else None


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = request.headers.get("x-correlation-id") or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        business_id = business_id_from_path(request.url.path)
        token = set_correlation_id(correlation_id)
        business_token = set_business_id(business_id)
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
            if business_id:
                span.set_attribute("business_id", business_id)
        try:
            response = await call_next(request)
        finally:
            reset_business_id(business_token)
            reset_correlation_id(token)

        response.headers["x-correlation-id"] = correlation_id
        return response
