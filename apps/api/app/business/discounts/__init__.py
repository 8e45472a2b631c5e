from app.business.discounts.api import router
from app.business.discounts.client import (
    DEFAULT_RULES,
    DiscountResult,
    DiscountRule,
    DiscountServiceUnavailableError,
    DiscountValidator,
    HttpDiscountValidator,
    StaticDiscountValidator,
    get_discount_validator,
    set_discount_validator,
)
from app.business.discounts.schemas import DiscountValidateRequest, DiscountValidateResponse

__all__ = [
    "router",
    "DEFAULT_RULES",
    "DiscountResult",
    "DiscountRule",
    "DiscountServiceUnavailableError",
    "DiscountValidator",
    "HttpDiscountValidator",
    "StaticDiscountValidator",
    "get_discount_validator",
    "set_discount_validator",
    "DiscountValidateRequest",
    "DiscountValidateResponse",
]
