from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field


class DiscountValidateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    plan_id: UUID
    amount: Decimal = Field(ge=Decimal("0"))


class DiscountValidateResponse(BaseModel):
    code: str
    is_valid: bool
    discount_amount: Decimal | None
    original_amount: Decimal | None
    final_amount: Decimal | None
    error_message: str | None
