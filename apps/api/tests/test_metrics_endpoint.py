from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.business.payments.gateway import SandboxPaymentGateway, set_payment_gateway
from app.business.subscription.seed import subscription_seed_helper
from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter
from app.platform.security.context import AuthContext


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
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    set_payment_gateway(SandboxPaymentGateway())
    yield
    set_payment_gateway(None)
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def current_user() -> AuthUser:
    return AuthUser(sub="metrics-admin", roles=["system.metrics.read"], business_ids=["biz-1"])


@pytest.fixture()
def client(db_session: Session, current_user: AuthUser) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return current_user

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_plan_change_metrics(client: TestClient, db_session: Session) -> None:
    admin = AuthContext(user_id="admin-1", is_super_admin=True, roles=["admin"])
    plans = {plan.code: str(plan.id) for plan in subscription_seed_helper.ensure_default_plans(db_session, admin)}

    health = client.get("/health")
    assert health.status_code == 200

    subscription = client.post("/businesses/biz-1/subscription", json={"plan_id": plans["professional"]}).json()
    preview = client.get(
        f"/businesses/biz-1/subscriptions/{subscription['id']}/plan-change/preview",
        params={"new_plan_id": plans["starter"]},
    )
    assert preview.status_code == 200
    executed = client.post(
        f"/businesses/biz-1/subscriptions/{subscription['id']}/plan-change",
        json={
            "new_plan_id": plans["starter"],
            "expected_row_version": subscription["row_version"],
            "expected_period_end": subscription["current_period_end"],
        },
        headers={"Idempotency-Key": "metrics-key-1"},
    )
    assert executed.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert metrics.headers["content-type"].startswith("text/plain")
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert 'path="/health"' in body
    assert 'path="/businesses/{id}/subscriptions/{id}/plan-change"' in body
    assert 'plan_change_previews_total{change_type="DOWNGRADE",can_proceed="true"}' in body
    assert 'plan_change_executions_total{change_type="DOWNGRADE",outcome="succeeded"}' in body
    assert "plan_change_execution_duration_seconds" in body


def test_metrics_endpoint_requires_permission(client: TestClient, current_user: AuthUser) -> None:
    current_user.roles = ["user"]

    response = client.get("/metrics")

    assert response.status_code == 403


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")

    assert response.status_code == 404
