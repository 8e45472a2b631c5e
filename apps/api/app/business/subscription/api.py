from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from app.business.subscription.schemas import (
    PlanCreate,
    PlanRead,
    SubscriptionChangeRead,
    SubscriptionCreate,
    SubscriptionRead,
    UsageRead,
    UsageUpdate,
)
from app.business.subscription.service import subscription_service
from app.core.database import get_db
from app.platform.security.context import AuthContext
from app.platform.security.dependencies import get_business_auth_context


router = APIRouter(tags=["subscriptions"])


@router.post("/plans", response_model=PlanRead, status_code=status.HTTP_201_CREATED)
def create_plan(
    payload: PlanCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_business_auth_context),
) -> PlanRead:
    return subscription_service.create_plan(db, ctx, payload)


@router.get("/plans", response_model=list[PlanRead])
def list_plans(
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
) -> list[PlanRead]:
    return subscription_service.list_plans(db, include_inactive=include_inactive)


@router.get("/plans/{plan_id}", response_model=PlanRead)
def get_plan(plan_id: uuid.UUID, db: Session = Depends(get_db)) -> PlanRead:
    return subscription_service.get_plan(db, plan_id)


@router.post(
    "/businesses/{business_id}/subscription",
    response_model=SubscriptionRead,
    status_code=status.HTTP_201_CREATED,
)
def create_subscription(
    business_id: str,
    payload: SubscriptionCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_business_auth_context),
) -> SubscriptionRead:
    return subscription_service.create_subscription(db, ctx, business_id, payload)


@router.get("/businesses/{business_id}/subscription", response_model=SubscriptionRead)
def get_subscription(
    business_id: str,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_business_auth_context),
) -> SubscriptionRead:
    return subscription_service.get_business_subscription(db, ctx, business_id)


@router.get(
    "/businesses/{business_id}/subscriptions/{subscription_id}/changes",
    response_model=list[SubscriptionChangeRead],
)
def list_changes(
    business_id: str,
    subscription_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_business_auth_context),
) -> list[SubscriptionChangeRead]:
    return subscription_service.list_subscription_changes(db, ctx, business_id, subscription_id)


@router.put("/businesses/{business_id}/usage", response_model=UsageRead)
def record_usage(
    business_id: str,
    payload: UsageUpdate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_business_auth_context),
) -> UsageRead:
    return subscription_service.record_usage(db, ctx, business_id, payload)
