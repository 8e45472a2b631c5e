from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

plan_change_previews_total = Counter(
    "plan_change_previews_total",
    "Plan change previews computed by change type and whether they can proceed",
    ["change_type", "can_proceed"],
)

plan_change_executions_total = Counter(
    "plan_change_executions_total",
    "Plan change executions by change type and outcome",
    ["change_type", "outcome"],
)

plan_change_execution_duration_seconds = Histogram(
    "plan_change_execution_duration_seconds",
    "Plan change execution duration in seconds",
    ["change_type"],
)

plan_change_rejections_total = Counter(
    "plan_change_rejections_total",
    "Plan change requests rejected before execution by reason",
    ["reason"],
)

plan_change_reconciliation_required_total = Counter(
    "plan_change_reconciliation_required_total",
    "Plan changes that need manual or automated reconciliation",
)

payment_gateway_requests_total = Counter(
    "payment_gateway_requests_total",
    "Payment gateway calls by operation and outcome",
    ["operation", "outcome"],
)

payment_gateway_request_duration_seconds = Histogram(
    "payment_gateway_request_duration_seconds",
    "Payment gateway call duration in seconds",
    ["operation"],
)

payment_gateway_retries_total = Counter(
    "payment_gateway_retries_total",
    "Automatic payment gateway retries by error kind",
    ["error_kind"],
)

discount_validations_total = Counter(
    "discount_validations_total",
    "Discount code validations by outcome",
    ["outcome"],
)

scheduled_plan_changes_applied_total = Counter(
    "scheduled_plan_changes_applied_total",
    "Deferred plan changes applied at period end",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_preview(change_type: str, can_proceed: bool) -> None:
    plan_change_previews_total.labels(change_type=change_type, can_proceed=str(can_proceed).lower()).inc()


def observe_execution(change_type: str, outcome: str, duration: float) -> None:
    plan_change_executions_total.labels(change_type=change_type, outcome=outcome).inc()
    plan_change_execution_duration_seconds.labels(change_type=change_type).observe(duration)


def observe_rejection(reason: str) -> None:
    plan_change_rejections_total.labels(reason=reason).inc()


def observe_reconciliation_required() -> None:
    plan_change_reconciliation_required_total.inc()


def observe_gateway_call(operation: str, outcome: str, duration: float) -> None:
    payment_gateway_requests_total.labels(operation=operation, outcome=outcome).inc()
    payment_gateway_request_duration_seconds.labels(operation=operation).observe(duration)


def observe_gateway_retry(error_kind: str) -> None:
    payment_gateway_retries_total.labels(error_kind=error_kind).inc()


def observe_discount_validation(outcome: str) -> None:
    discount_validations_total.labels(outcome=outcome).inc()


def observe_scheduled_changes_applied(count: int) -> None:
    if count > 0:
        scheduled_plan_changes_applied_total.inc(count)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
