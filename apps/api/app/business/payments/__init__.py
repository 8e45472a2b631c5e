from app.business.payments.api import router
from app.business.payments.gateway import (
    CardToken,
    ChargeResult,
    GatewayError,
    GatewayErrorKind,
    HttpPaymentGateway,
    PaymentGateway,
    SandboxPaymentGateway,
    charge_with_retry,
    get_payment_gateway,
    set_payment_gateway,
)
from app.business.payments.models import PaymentCharge, PaymentMethod
from app.business.payments.schemas import PaymentMethodCreate, PaymentMethodRead
from app.business.payments.service import PaymentMethodService, payment_method_service, select_default
from app.business.payments.validation import CardValidationError, ValidatedCard, detect_brand, validate_card

__all__ = [
    "router",
    "CardToken",
    "ChargeResult",
    "GatewayError",
    "GatewayErrorKind",
    "HttpPaymentGateway",
    "PaymentGateway",
    "SandboxPaymentGateway",
    "charge_with_retry",
    "get_payment_gateway",
    "set_payment_gateway",
    "PaymentCharge",
    "PaymentMethod",
    "PaymentMethodCreate",
    "PaymentMethodRead",
    "PaymentMethodService",
    "payment_method_service",
    "select_default",
    "CardValidationError",
    "ValidatedCard",
    "detect_brand",
    "validate_card",
]
