from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import date
from typing import TypeVar

from fastapi import HTTPException, status
from sqlalchemy import and_, select, update
from sqlalchemy.orm import Session

from app.business.payments.gateway import GatewayError, PaymentGateway, get_payment_gateway
from app.business.payments.models import PaymentMethod
from app.business.payments.repository import PaymentMethodRepository
from app.business.payments.schemas import PaymentMethodCreate, PaymentMethodRead
from app.business.payments.validation import validate_card
from app.platform.security.context import AuthContext
from app.platform.security.errors import AuthorizationError


logger = logging.getLogger(__name__)

_MethodT = TypeVar("_MethodT")


def select_default(methods: Sequence[_MethodT]) -> _MethodT | None:
    """The method flagged as default, else the first one, else None."""

    for method in methods:
        if getattr(method, "is_default", False):
            return method
    return methods[0] if methods else None


@dataclass(slots=True)
class PaymentMethodService:
    method_repository: PaymentMethodRepository = PaymentMethodRepository()
    gateway_provider: Callable[[], PaymentGateway] = get_payment_gateway
    today: Callable[[], date] = date.today

    def list_methods(self, session: Session, ctx: AuthContext, business_id: str) -> list[PaymentMethodRead]:
        self._validate_scope(ctx, business_id)
        return [PaymentMethodRead.model_validate(row) for row in self.active_methods(session, business_id)]

    def add_method(
        self,
        session: Session,
        ctx: AuthContext,
        business_id: str,
        payload: PaymentMethodCreate,
    ) -> PaymentMethodRead:
        self._validate_scope(ctx, business_id)
        card = validate_card(payload, today=self.today())

        try:
            token = self.gateway_provider().tokenize_card(card)
        except GatewayError as exc:
            logger.warning(
                "payment_method.tokenize.failed",
                extra={"business_id": business_id, "error_kind": str(exc.kind)},
            )
            raise

        existing = self.active_methods(session, business_id)
        make_default = payload.make_default or not existing
        if make_default and existing:
            self._clear_default(session, business_id)

        method = PaymentMethod(
            business_id=business_id,
            gateway_token=token.token,
            brand=token.brand,
            last4=token.last4,
            holder_name=card.holder_name,
            expire_month=card.expire_month,
            expire_year=card.expire_year,
            is_default=make_default,
        )
        session.add(method)
        session.commit()
        session.refresh(method)

        logger.info(
            "payment_method.added",
            extra={"business_id": business_id, "status": "default" if method.is_default else "secondary"},
        )
        return PaymentMethodRead.model_validate(method)

    def make_default(
        self,
        session: Session,
        ctx: AuthContext,
        business_id: str,
        method_id: uuid.UUID,
    ) -> PaymentMethodRead:
        self._validate_scope(ctx, business_id)
        method = self.get_active_method(session, business_id, method_id)
        if method is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="payment method not found")
        self._clear_default(session, business_id)
        method.is_default = True
        session.add(method)
        session.commit()
        session.refresh(method)
        return PaymentMethodRead.model_validate(method)

    def remove_method(self, session: Session, ctx: AuthContext, business_id: str, method_id: uuid.UUID) -> None:
        self._validate_scope(ctx, business_id)
        method = self.get_active_method(session, business_id, method_id)
        if method is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="payment method not found")
        was_default = method.is_default
        method.is_active = False
        method.is_default = False
        session.add(method)
        session.flush()
        if was_default:
            replacement = select_default(self.active_methods(session, business_id))
            if replacement is not None:
                replacement.is_default = True
                session.add(replacement)
        session.commit()

    def active_methods(self, session: Session, business_id: str) -> list[PaymentMethod]:
        rows = session.scalars(
            select(PaymentMethod)
            .where(and_(PaymentMethod.business_id == business_id, PaymentMethod.is_active.is_(True)))
            .order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at.asc())
        ).all()
        return list(rows)

    def get_active_method(self, session: Session, business_id: str, method_id: uuid.UUID) -> PaymentMethod | None:
        return session.scalar(
            select(PaymentMethod).where(
                and_(
                    PaymentMethod.id == method_id,
                    PaymentMethod.business_id == business_id,
                    PaymentMethod.is_active.is_(True),
                )
            )
        )

    def resolve_method(
        self,
        session: Session,
        business_id: str,
        method_id: uuid.UUID | None,
    ) -> PaymentMethod | None:
        """The requested method when given, else the business default."""

        if method_id is not None:
            return self.get_active_method(session, business_id, method_id)
        return select_default(self.active_methods(session, business_id))

    @staticmethod
    def _clear_default(session: Session, business_id: str) -> None:
        session.execute(
            update(PaymentMethod)
            .where(and_(PaymentMethod.business_id == business_id, PaymentMethod.is_default.is_(True)))
            .values(is_default=False)
            .execution_options(synchronize_session="fetch")
        )

    def _validate_scope(self, ctx: AuthContext, business_id: str) -> None:
        try:
            self.method_repository.validate_business_scope(ctx, business_id)
        except AuthorizationError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))


payment_method_service = PaymentMethodService()
