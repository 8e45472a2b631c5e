from __future__ import annotations

from app.business.payments.models import PaymentCharge, PaymentMethod
from app.platform.security.repository import BaseRepository


class PaymentMethodRepository(BaseRepository):
    resource = "payments.method"
    model = PaymentMethod


class PaymentChargeRepository(BaseRepository):
    resource = "payments.charge"
    model = PaymentCharge
