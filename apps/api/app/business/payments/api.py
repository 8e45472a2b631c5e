from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.orm import Session

from app.business.payments.schemas import PaymentMethodCreate, PaymentMethodRead
from app.business.payments.service import payment_method_service
from app.core.database import get_db
from app.platform.security.context import AuthContext
from app.platform.security.dependencies import get_business_auth_context


router = APIRouter(prefix="/businesses/{business_id}/payment-methods", tags=["payment-methods"])


@router.get("", response_model=list[PaymentMethodRead])
def list_payment_methods(
    business_id: str,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_business_auth_context),
) -> list[PaymentMethodRead]:
    return payment_method_service.list_methods(db, ctx, business_id)


@router.post("", response_model=PaymentMethodRead, status_code=status.HTTP_201_CREATED)
def add_payment_method(
    business_id: str,
    payload: PaymentMethodCreate,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_business_auth_context),
) -> PaymentMethodRead:
    return payment_method_service.add_method(db, ctx, business_id, payload)


@router.post("/{method_id}/default", response_model=PaymentMethodRead)
def make_default_payment_method(
    business_id: str,
    method_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_business_auth_context),
) -> PaymentMethodRead:
    return payment_method_service.make_default(db, ctx, business_id, method_id)


@router.delete("/{method_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_payment_method(
    business_id: str,
    method_id: uuid.UUID,
    db: Session = Depends(get_db),
    ctx: AuthContext = Depends(get_business_auth_context),
) -> Response:
    payment_method_service.remove_method(db, ctx, business_id, method_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
