from __future__ import annotations

import uuid
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
def configure_rate_limiter_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_PLAN_CHANGE_PER_MINUTE", "2")
    get_settings.cache_clear()
    reset_rate_limiter()
    set_payment_gateway(SandboxPaymentGateway())
    yield
    set_payment_gateway(None)
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(sub="owner-1", roles=["user"], business_ids=["biz-1"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def subscription(client: TestClient, db_session: Session) -> dict:
    admin = AuthContext(user_id="admin-1", is_super_admin=True, roles=["admin"])
    plans = {plan.code: str(plan.id) for plan in subscription_seed_helper.ensure_default_plans(db_session, admin)}
    response = client.post("/businesses/biz-1/subscription", json={"plan_id": plans["professional"]})
    assert response.status_code == 201
    return {**response.json(), "plans": plans}


def _execute_downgrade(client: TestClient, subscription: dict):
    return client.post(
        f"/businesses/biz-1/subscriptions/{subscription['id']}/plan-change",
        json={
            "new_plan_id": subscription["plans"]["starter"],
            "expected_row_version": subscription["row_version"],
            "expected_period_end": subscription["current_period_end"],
        },
        headers={"Idempotency-Key": "rate-key-1"},
    )


def test_plan_change_execution_is_rate_limited(client: TestClient, subscription: dict) -> None:
    responses = [_execute_downgrade(client, subscription) for _ in range(4)]

    assert [response.status_code for response in responses[:2]] == [200, 200]
    assert responses[1].json()["replayed"] is True
    limited = [response for response in responses if response.status_code == 429]
    assert len(limited) == 2

    body = limited[0].json()
    assert body["code"] == "RATE_LIMITED"
    assert body["message"] == "Too many requests"
    assert body["correlation_id"] is not None
    assert int(limited[0].headers["Retry-After"]) >= 1


def test_flow_confirmation_has_its_own_budget(client: TestClient, subscription: dict) -> None:
    assert _execute_downgrade(client, subscription).status_code == 200
    assert _execute_downgrade(client, subscription).status_code == 200
    assert _execute_downgrade(client, subscription).status_code == 429

    flow_id = uuid.uuid4()
    confirms = [client.post(f"/businesses/biz-1/plan-change-flows/{flow_id}/confirm") for _ in range(3)]
    assert [response.status_code for response in confirms] == [404, 404, 429]

    retry = client.post(f"/businesses/biz-1/plan-change-flows/{flow_id}/retry")
    assert retry.status_code == 429


def test_reads_are_not_rate_limited(client: TestClient, subscription: dict) -> None:
    responses = [
        client.get(
            f"/businesses/biz-1/subscriptions/{subscription['id']}/plan-change/preview",
            params={"new_plan_id": subscription["plans"]["starter"]},
        )
        for _ in range(6)
    ]

    assert all(response.status_code == 200 for response in responses)
