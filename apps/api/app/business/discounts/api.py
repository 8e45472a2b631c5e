from __future__ import annotations

from fastapi import APIRouter, Depends

from app.business.discounts.client import get_discount_validator
from app.business.discounts.schemas import DiscountValidateRequest, DiscountValidateResponse
from app.core.auth import AuthUser, get_current_user


router = APIRouter(prefix="/discount-codes", tags=["discounts"])


@router.post("/validate", response_model=DiscountValidateResponse)
def validate_discount_code(
    payload: DiscountValidateRequest,
    _: AuthUser = Depends(get_current_user),
) -> DiscountValidateResponse:
    result = get_discount_validator().validate(payload.code, str(payload.plan_id), payload.amount)
    return DiscountValidateResponse(
        code=result.code,
        is_valid=result.is_valid,
        discount_amount=result.discount_amount if result.is_valid else None,
        original_amount=result.original_amount,
        final_amount=result.final_amount if result.is_valid else None,
        error_message=result.error_message,
    )
