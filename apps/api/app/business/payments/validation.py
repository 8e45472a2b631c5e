from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date

from app.business.payments.schemas import PaymentMethodCreate


_SEPARATORS_RE = re.compile(r"[\s-]")
_DIGITS_RE = re.compile(r"^\d+$")

MAX_EXPIRY_YEARS_AHEAD = 10


class CardValidationError(ValueError):
    """Card data failed validation; ``field_errors`` maps field name to message."""

    def __init__(self, field_errors: dict[str, str]) -> None:
        self.field_errors = field_errors
        super().__init__("card data is invalid: " + ", ".join(sorted(field_errors)))


@dataclass(frozen=True, slots=True)
class ValidatedCard:
    holder_name: str
    number: str
    expire_month: int
    expire_year: int
    cvc: str
    brand: str

    @property
    def last4(self) -> str:
        return self.number[-4:]

    def __repr__(self) -> str:
        return f"ValidatedCard(brand={self.brand!r}, last4={self.last4!r})"


def normalize_card_number(raw: str) -> str:
    return _SEPARATORS_RE.sub("", raw or "")


def detect_brand(number: str) -> str:
    if number.startswith("4"):
        return "VISA"
    if number[:2] in {"34", "37"}:
        return "AMEX"
    if number.startswith("9792"):
        return "TROY"
    if number[:2] in {"51", "52", "53", "54", "55"}:
        return "MASTERCARD"
    if len(number) >= 4 and 2221 <= int(number[:4]) <= 2720:
        return "MASTERCARD"
    return "UNKNOWN"


def validate_card(payload: PaymentMethodCreate, today: date | None = None) -> ValidatedCard:
    today = today or date.today()
    errors: dict[str, str] = {}

    holder_name = (payload.holder_name or "").strip()
    if not holder_name:
        errors["holder_name"] = "card holder name is required"

    number = normalize_card_number(payload.card_number)
    if not _DIGITS_RE.match(number) or not 13 <= len(number) <= 19:
        errors["card_number"] = "card number must be 13 to 19 digits"

    month = payload.expire_month
    if not 1 <= month <= 12:
        errors["expire_month"] = "expiry month must be between 1 and 12"

    year = payload.expire_year
    if not today.year <= year <= today.year + MAX_EXPIRY_YEARS_AHEAD:
        errors["expire_year"] = f"expiry year must be between {today.year} and {today.year + MAX_EXPIRY_YEARS_AHEAD}"
    elif "expire_month" not in errors and year == today.year and month < today.month:
        errors["expire_month"] = "card has expired"

    cvc = (payload.cvc or "").strip()
    if not _DIGITS_RE.match(cvc) or not 3 <= len(cvc) <= 4:
        errors["cvc"] = "cvc must be 3 or 4 digits"

    if errors:
        raise CardValidationError(errors)

    return ValidatedCard(
        holder_name=holder_name,
        number=number,
        expire_month=month,
        expire_year=year,
        cvc=cvc,
        brand=detect_brand(number),
    )
