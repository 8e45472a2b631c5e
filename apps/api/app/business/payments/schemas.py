from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict


CardBrand = Literal["VISA", "MASTERCARD", "AMEX", "TROY", "UNKNOWN"]


class PaymentMethodCreate(BaseModel):
    # Shape only; content rules live in app.business.payments.validation so every
    # violation comes back field-scoped in one response.
    holder_name: str = ""
    card_number: str = ""
    expire_month: int = 0
    expire_year: int = 0
    cvc: str = ""
    make_default: bool = False


class PaymentMethodRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    business_id: str
    brand: CardBrand | str
    last4: str
    holder_name: str
    expire_month: int
    expire_year: int
    is_default: bool
    created_at: datetime
