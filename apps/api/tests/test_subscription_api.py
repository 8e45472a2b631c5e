from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import events
from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.middleware.rate_limit import reset_rate_limiter


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


@pytest.fixture()
def current_user() -> AuthUser:
    return AuthUser(sub="owner-1", roles=["user"], business_ids=["biz-1"])


@pytest.fixture()
def client(
    db_session: Session,
    current_user: AuthUser,
    monkeypatch: pytest.MonkeyPatch,
) -> Generator[TestClient, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return current_user

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    events.published_events.clear()

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    events.published_events.clear()
    get_settings.cache_clear()


def _plan_payload(code: str, price: str, **overrides: object) -> dict[str, object]:
    return {
        "code": code,
        "name": code.title(),
        "price": price,
        "currency": "TRY",
        "max_staff_per_business": 3,
        **overrides,
    }


def _create_plan(client: TestClient, current_user: AuthUser, code: str, price: str, **overrides: object) -> dict:
    roles = current_user.roles
    current_user.roles = ["admin"]
    try:
        response = client.post("/plans", json=_plan_payload(code, price, **overrides))
    finally:
        current_user.roles = roles
    assert response.status_code == 201
    return response.json()


def test_only_admins_publish_plans(client: TestClient, current_user: AuthUser) -> None:
    denied = client.post("/plans", json=_plan_payload("basic", "900"))
    assert denied.status_code == 403

    created = _create_plan(client, current_user, "basic", "900")
    assert created["code"] == "basic"
    assert created["is_active"] is True

    listed = client.get("/plans")
    assert [item["code"] for item in listed.json()] == ["basic"]
    assert client.get(f"/plans/{created['id']}").json()["name"] == "Basic"


def test_subscription_lifecycle_endpoints(client: TestClient, current_user: AuthUser) -> None:
    plan = _create_plan(client, current_user, "basic", "900")

    missing = client.get("/businesses/biz-1/subscription")
    assert missing.status_code == 404

    created = client.post("/businesses/biz-1/subscription", json={"plan_id": plan["id"]})
    assert created.status_code == 201
    body = created.json()
    assert body["plan_id"] == plan["id"]
    assert body["row_version"] == 1
    assert body["scheduled_plan_id"] is None

    fetched = client.get("/businesses/biz-1/subscription")
    assert fetched.json()["id"] == body["id"]

    duplicate = client.post("/businesses/biz-1/subscription", json={"plan_id": plan["id"]})
    assert duplicate.status_code == 409

    changes = client.get(f"/businesses/biz-1/subscriptions/{body['id']}/changes")
    assert changes.status_code == 200
    assert changes.json() == []


def test_subscription_requires_business_scope(client: TestClient, current_user: AuthUser) -> None:
    plan = _create_plan(client, current_user, "basic", "900")

    response = client.post("/businesses/biz-9/subscription", json={"plan_id": plan["id"]})
    assert response.status_code == 403

    scoped = client.post(
        "/businesses/biz-9/subscription",
        json={"plan_id": plan["id"]},
        headers={"x-allowed-business-ids": "biz-9"},
    )
    assert scoped.status_code == 201


def test_usage_feeds_preview_limitations(client: TestClient, current_user: AuthUser) -> None:
    small = _create_plan(client, current_user, "small", "900", max_staff_per_business=2)
    large = _create_plan(client, current_user, "large", "1800", max_staff_per_business=10)
    subscription = client.post("/businesses/biz-1/subscription", json={"plan_id": large["id"]}).json()

    usage = client.put("/businesses/biz-1/usage", json={"active_staff_count": 6})
    assert usage.status_code == 200
    assert usage.json()["active_staff_count"] == 6

    preview = client.get(
        f"/businesses/biz-1/subscriptions/{subscription['id']}/plan-change/preview",
        params={"new_plan_id": small["id"]},
    )
    assert preview.status_code == 200
    body = preview.json()
    assert body["change_type"] == "DOWNGRADE"
    assert body["can_proceed"] is False
    assert body["limitations"][0]["resource"] == "staff"
    assert body["limitations"][0]["new_limit"] == 2


def test_invalid_plan_payload_is_rejected(client: TestClient, current_user: AuthUser) -> None:
    current_user.roles = ["admin"]
    response = client.post("/plans", json=_plan_payload("broken", "-1"))
    assert response.status_code == 422
