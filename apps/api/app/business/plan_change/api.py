from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Header, Query, status
from sqlalchemy.orm import Session

from app.business.plan_change.schemas import (
    ChangeResultRead,
    FlowConfirm,
    FlowCreate,
    FlowDiscountCode,
    FlowRead,
    FlowSelectPaymentMethod,
    FlowSelectPlan,
    PlanChangeExecuteRequest,
    PlanChangePreviewRead,
    ProrationPreference,
)
from app.business.plan_change.service import plan_change_flow_service, plan_change_service
from app.core.database import get_db
from app.platform.security.context import AuthContext
from app.platform.security.dependencies import get_business_auth_context


router = APIRouter(prefix="/businesses/{business_id}", tags=["plan-change"])


@router.get(
    "/subscriptions/{subscription_id}/plan-change/preview",
    response_model=PlanChangePreviewRead,
)
def preview_plan_change(
    business_id: str,
    subscription_id: uuid.UUID,
    new_plan_id: uuid.UUID = Query(...),
    proration_preference: ProrationPreference = Query(default="PRORATE"),
    discount_code: str | None = Query(default=None, max_length=64),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_business_auth_context),
) -> PlanChangePreviewRead:
    return plan_change_service.compute_preview(
        db,
        ctx,
        business_id,
        subscription_id,
        new_plan_id,
        proration_preference=proration_preference,
        discount_code=discount_code,
    )


@router.post("/subscriptions/{subscription_id}/plan-change", response_model=ChangeResultRead)
def execute_plan_change(
    business_id: str,
    subscription_id: uuid.UUID,
    payload: PlanChangeExecuteRequest,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_business_auth_context),
) -> ChangeResultRead:
    return plan_change_service.execute_plan_change(db, ctx, business_id, subscription_id, payload, idempotency_key)


@router.post("/plan-change-flows", response_model=FlowRead, status_code=status.HTTP_201_CREATED)
def start_flow(
    business_id: str,
    payload: FlowCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_business_auth_context),
) -> FlowRead:
    return plan_change_flow_service.start_flow(db, ctx, business_id, payload)


@router.get("/plan-change-flows/{flow_id}", response_model=FlowRead)
def get_flow(
    business_id: str,
    flow_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_business_auth_context),
) -> FlowRead:
    return plan_change_flow_service.get_flow(db, ctx, business_id, flow_id)


@router.post("/plan-change-flows/{flow_id}/plan", response_model=FlowRead)
def select_plan(
    business_id: str,
    flow_id: uuid.UUID,
    payload: FlowSelectPlan,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_business_auth_context),
) -> FlowRead:
    return plan_change_flow_service.select_plan(db, ctx, business_id, flow_id, payload)


@router.post("/plan-change-flows/{flow_id}/payment-method", response_model=FlowRead)
def select_payment_method(
    business_id: str,
    flow_id: uuid.UUID,
    payload: FlowSelectPaymentMethod,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_business_auth_context),
) -> FlowRead:
    return plan_change_flow_service.select_payment_method(db, ctx, business_id, flow_id, payload)


@router.post("/plan-change-flows/{flow_id}/discount-code", response_model=FlowRead)
def apply_discount_code(
    business_id: str,
    flow_id: uuid.UUID,
    payload: FlowDiscountCode,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_business_auth_context),
) -> FlowRead:
    return plan_change_flow_service.apply_discount_code(db, ctx, business_id, flow_id, payload)


@router.post("/plan-change-flows/{flow_id}/confirm", response_model=FlowRead)
def confirm_flow(
    business_id: str,
    flow_id: uuid.UUID,
    payload: FlowConfirm | None = None,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_business_auth_context),
) -> FlowRead:
    return plan_change_flow_service.confirm(db, ctx, business_id, flow_id, payload or FlowConfirm())


@router.post("/plan-change-flows/{flow_id}/retry", response_model=FlowRead)
def retry_flow(
    business_id: str,
    flow_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_business_auth_context),
) -> FlowRead:
    return plan_change_flow_service.retry(db, ctx, business_id, flow_id)


@router.post("/plan-change-flows/{flow_id}/cancel", response_model=FlowRead)
def cancel_flow(
    business_id: str,
    flow_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_business_auth_context),
) -> FlowRead:
    return plan_change_flow_service.cancel(db, ctx, business_id, flow_id)
