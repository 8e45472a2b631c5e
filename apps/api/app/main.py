from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.errors import register_exception_handlers
from app.api.routes import router as api_router
from app.business.subscription.seed import subscription_seed_helper
from app.core.config import get_settings
from app.core.database import SessionLocal
from app.events import InternalEvent, event_bus
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.rate_limit import PlanChangeRateLimitMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel
from app.platform.security.context import AuthContext


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False

_logged_event_types = [
    "subscription.plan_changed",
    "subscription.plan_change_scheduled",
    "subscription.scheduled_change_applied",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system.started", extra={"event_name": event.name})


def _on_plan_change_event(event: InternalEvent) -> None:
    payload = event.payload
    logger.info(
        "domain_event",
        extra={
            "event_name": event.name,
            "business_id": payload.get("business_id"),
            "subscription_id": payload.get("subscription_id"),
            "change_type": payload.get("change_type"),
        },
    )


def _on_reconciliation_required(event: InternalEvent) -> None:
    payload = event.payload
    logger.error(
        "domain_event",
        extra={
            "event_name": event.name,
            "business_id": payload.get("business_id"),
            "subscription_id": payload.get("subscription_id"),
            "transaction_id": payload.get("transaction_id"),
        },
    )


def _seed_default_plans() -> None:
    system_ctx = AuthContext(user_id="system", correlation_id=None, is_super_admin=True, roles=["admin"], business_scope=[])
    session = SessionLocal()
    try:
        plans = subscription_seed_helper.ensure_default_plans(session, system_ctx)
        logger.info("subscription.plans.seeded", extra={"status": f"{len(plans)} plans"})
    finally:
        session.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _logged_event_types:
            event_bus.subscribe(event_name, _on_plan_change_event)
        event_bus.subscribe("plan_change.reconciliation_required", _on_reconciliation_required)
        _subscriptions_registered = True
    if get_settings().seed_default_plans:
        _seed_default_plans()
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Plan Change API", version="0.1.0", lifespan=lifespan)
app.add_middleware(PlanChangeRateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
register_exception_handlers(app)
app.include_router(api_router)

settings = get_settings()

if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
