from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum
from typing import Any, Protocol

import httpx
from opentelemetry import trace
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from app.business.payments.validation import ValidatedCard
from app.context import get_correlation_id
from app.core.config import get_settings
from app.metrics import observe_gateway_call, observe_gateway_retry


logger = logging.getLogger(__name__)
tracer = trace.get_tracer("app.business.payments.gateway")


class GatewayErrorKind(StrEnum):
    CARD_DECLINED = "CARD_DECLINED"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    INVALID_INSTRUMENT = "INVALID_INSTRUMENT"
    TIMEOUT = "TIMEOUT"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    UNKNOWN = "UNKNOWN"


RETRYABLE_KINDS = frozenset({GatewayErrorKind.TIMEOUT, GatewayErrorKind.PROVIDER_UNAVAILABLE})
PAYMENT_FAILURE_KINDS = frozenset(
    {GatewayErrorKind.CARD_DECLINED, GatewayErrorKind.INSUFFICIENT_FUNDS, GatewayErrorKind.INVALID_INSTRUMENT}
)


class GatewayError(Exception):
    def __init__(self, kind: GatewayErrorKind, message: str, provider_code: str | None = None) -> None:
        self.kind = kind
        self.message = message
        self.provider_code = provider_code
        super().__init__(f"{kind}: {message}")

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


@dataclass(frozen=True, slots=True)
class CardToken:
    token: str
    brand: str
    last4: str


@dataclass(frozen=True, slots=True)
class ChargeResult:
    transaction_id: str
    status: str
    amount: Decimal
    currency: str
    idempotency_key: str

    @property
    def succeeded(self) -> bool:
        return self.status == "SUCCEEDED"


class PaymentGateway(Protocol):
    def tokenize_card(self, card: ValidatedCard) -> CardToken: ...

    def charge(self, payment_token: str, amount: Decimal, currency: str, idempotency_key: str) -> ChargeResult: ...

    def get_charge(self, idempotency_key: str) -> ChargeResult | None: ...


@contextmanager
def _observed_call(operation: str, **attributes: Any) -> Iterator[trace.Span]:
    started = time.perf_counter()
    outcome = "success"
    with tracer.start_as_current_span(f"payment_gateway.{operation}") as span:
        span.set_attribute("correlation_id", get_correlation_id() or "")
        for key, value in attributes.items():
            span.set_attribute(key, str(value))
        try:
            yield span
        except GatewayError as exc:
            outcome = exc.kind.lower()
            span.set_attribute("error_kind", str(exc.kind))
            raise
        finally:
            span.set_attribute("outcome", outcome)
            observe_gateway_call(operation, outcome, time.perf_counter() - started)


@dataclass(slots=True)
class ScriptedFailure:
    kind: GatewayErrorKind
    charge_applied: bool = False


class SandboxPaymentGateway:
    """In-process gateway for local development and tests.

    Card numbers ending in 0002 are declined and 9995 fail with insufficient
    funds. ``fail_next_charge`` queues failures for upcoming charge calls; with
    ``charge_applied=True`` the charge is recorded before the error is raised,
    which is how a lost response after a successful charge looks to callers.
    """

    declined_suffix = "0002"
    insufficient_funds_suffix = "9995"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cards: dict[str, ValidatedCard] = {}
        self._charges: dict[str, ChargeResult] = {}
        self._scripted: deque[ScriptedFailure] = deque()
        self.status_check_available = True
        self.charge_attempts: list[str] = []

    def fail_next_charge(self, kind: GatewayErrorKind, *, times: int = 1, charge_applied: bool = False) -> None:
        with self._lock:
            for _ in range(times):
                self._scripted.append(ScriptedFailure(kind=kind, charge_applied=charge_applied))

    @property
    def succeeded_charges(self) -> list[ChargeResult]:
        return [item for item in self._charges.values() if item.succeeded]

    def tokenize_card(self, card: ValidatedCard) -> CardToken:
        with _observed_call("tokenize_card", brand=card.brand):
            token = f"tok_sandbox_{uuid.uuid4().hex}"
            with self._lock:
                self._cards[token] = card
            return CardToken(token=token, brand=card.brand, last4=card.last4)

    def register_token(self, token: str, card: ValidatedCard) -> None:
        with self._lock:
            self._cards[token] = card

    def charge(self, payment_token: str, amount: Decimal, currency: str, idempotency_key: str) -> ChargeResult:
        with _observed_call("charge", amount=amount, currency=currency, idempotency_key=idempotency_key) as span:
            with self._lock:
                self.charge_attempts.append(idempotency_key)
                existing = self._charges.get(idempotency_key)
                scripted = self._scripted.popleft() if self._scripted else None

                if scripted is not None:
                    if scripted.charge_applied and existing is None:
                        self._charges[idempotency_key] = self._new_result(amount, currency, idempotency_key)
                    raise GatewayError(scripted.kind, f"scripted sandbox failure: {scripted.kind}")

                if existing is not None:
                    span.set_attribute("idempotent_replay", True)
                    return existing

                card = self._cards.get(payment_token)
                if card is None:
                    raise GatewayError(GatewayErrorKind.INVALID_INSTRUMENT, "unknown payment token", "invalid_token")
                if card.number.endswith(self.declined_suffix):
                    raise GatewayError(GatewayErrorKind.CARD_DECLINED, "card was declined", "card_declined")
                if card.number.endswith(self.insufficient_funds_suffix):
                    raise GatewayError(GatewayErrorKind.INSUFFICIENT_FUNDS, "insufficient funds", "insufficient_funds")

                result = self._new_result(amount, currency, idempotency_key)
                self._charges[idempotency_key] = result
                span.set_attribute("transaction_id", result.transaction_id)
                return result

    def get_charge(self, idempotency_key: str) -> ChargeResult | None:
        with _observed_call("get_charge", idempotency_key=idempotency_key):
            if not self.status_check_available:
                raise GatewayError(GatewayErrorKind.PROVIDER_UNAVAILABLE, "status check unavailable")
            with self._lock:
                return self._charges.get(idempotency_key)

    @staticmethod
    def _new_result(amount: Decimal, currency: str, idempotency_key: str) -> ChargeResult:
        return ChargeResult(
            transaction_id=f"txn_sandbox_{uuid.uuid4().hex[:20]}",
            status="SUCCEEDED",
            amount=Decimal(amount),
            currency=currency,
            idempotency_key=idempotency_key,
        )


_PROVIDER_CODE_KINDS: dict[str, GatewayErrorKind] = {
    "card_declined": GatewayErrorKind.CARD_DECLINED,
    "do_not_honor": GatewayErrorKind.CARD_DECLINED,
    "insufficient_funds": GatewayErrorKind.INSUFFICIENT_FUNDS,
    "invalid_card": GatewayErrorKind.INVALID_INSTRUMENT,
    "expired_card": GatewayErrorKind.INVALID_INSTRUMENT,
    "invalid_token": GatewayErrorKind.INVALID_INSTRUMENT,
}


class HttpPaymentGateway:
    """Adapter for a REST payment provider; amounts travel as decimal strings."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 20.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout_seconds)
        self._api_key = api_key

    def close(self) -> None:
        self._client.close()

    def tokenize_card(self, card: ValidatedCard) -> CardToken:
        with _observed_call("tokenize_card", brand=card.brand):
            body = self._request(
                "POST",
                "/v1/tokens",
                json={
                    "holder_name": card.holder_name,
                    "number": card.number,
                    "exp_month": card.expire_month,
                    "exp_year": card.expire_year,
                    "cvc": card.cvc,
                },
            )
            token = body.get("token")
            if not isinstance(token, str) or not token:
                raise GatewayError(GatewayErrorKind.UNKNOWN, "tokenization response is missing a token")
            return CardToken(token=token, brand=str(body.get("brand") or card.brand).upper(), last4=card.last4)

    def charge(self, payment_token: str, amount: Decimal, currency: str, idempotency_key: str) -> ChargeResult:
        with _observed_call("charge", amount=amount, currency=currency, idempotency_key=idempotency_key) as span:
            body = self._request(
                "POST",
                "/v1/charges",
                json={"payment_token": payment_token, "amount": str(amount), "currency": currency},
                headers={"Idempotency-Key": idempotency_key},
            )
            result = self._to_result(body, idempotency_key)
            if not result.succeeded:
                raise GatewayError(GatewayErrorKind.UNKNOWN, f"charge finished with status {result.status}")
            span.set_attribute("transaction_id", result.transaction_id)
            return result

    def get_charge(self, idempotency_key: str) -> ChargeResult | None:
        with _observed_call("get_charge", idempotency_key=idempotency_key):
            try:
                body = self._request("GET", "/v1/charges", params={"idempotency_key": idempotency_key})
            except GatewayError as exc:
                if exc.provider_code == "not_found":
                    return None
                raise
            return self._to_result(body, idempotency_key)

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self._api_key}", **kwargs.pop("headers", {})}
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["x-correlation-id"] = correlation_id
        try:
            response = self._client.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise GatewayError(GatewayErrorKind.TIMEOUT, f"gateway timed out: {exc.__class__.__name__}") from exc
        except httpx.TransportError as exc:
            raise GatewayError(GatewayErrorKind.PROVIDER_UNAVAILABLE, f"gateway unreachable: {exc.__class__.__name__}") from exc

        if response.status_code == 404:
            raise GatewayError(GatewayErrorKind.UNKNOWN, "resource not found", "not_found")
        if response.status_code == 429 or response.status_code >= 500:
            raise GatewayError(GatewayErrorKind.PROVIDER_UNAVAILABLE, f"gateway returned {response.status_code}")
        payload = self._json(response)
        if response.status_code >= 400:
            error = payload.get("error") if isinstance(payload.get("error"), dict) else {}
            code = str(error.get("code") or "")
            kind = _PROVIDER_CODE_KINDS.get(code)
            if kind is None:
                kind = GatewayErrorKind.INVALID_INSTRUMENT if response.status_code in {400, 422} else GatewayErrorKind.UNKNOWN
            raise GatewayError(kind, str(error.get("message") or f"gateway returned {response.status_code}"), code or None)
        return payload

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {}

    @staticmethod
    def _to_result(body: dict[str, Any], idempotency_key: str) -> ChargeResult:
        transaction_id = body.get("id")
        if not isinstance(transaction_id, str) or not transaction_id:
            raise GatewayError(GatewayErrorKind.UNKNOWN, "charge response is missing an id")
        return ChargeResult(
            transaction_id=transaction_id,
            status=str(body.get("status") or "UNKNOWN").upper(),
            amount=Decimal(str(body.get("amount", "0"))),
            currency=str(body.get("currency") or ""),
            idempotency_key=idempotency_key,
        )


def charge_with_retry(
    gateway: PaymentGateway,
    *,
    payment_token: str,
    amount: Decimal,
    currency: str,
    idempotency_key: str,
    max_attempts: int,
    backoff_seconds: float,
) -> ChargeResult:
    """Charge, retrying only TIMEOUT and PROVIDER_UNAVAILABLE with the same idempotency key."""

    def _before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome is not None else None
        kind = exc.kind if isinstance(exc, GatewayError) else GatewayErrorKind.UNKNOWN
        observe_gateway_retry(str(kind))
        logger.warning(
            "gateway.charge.retry",
            extra={"idempotency_key": idempotency_key, "attempt": retry_state.attempt_number, "error_kind": str(kind)},
        )

    retrying = Retrying(
        stop=stop_after_attempt(max(1, max_attempts)),
        wait=wait_exponential(multiplier=backoff_seconds, max=max(backoff_seconds * 8, backoff_seconds)),
        retry=retry_if_exception(lambda exc: isinstance(exc, GatewayError) and exc.retryable),
        before_sleep=_before_sleep,
        reraise=True,
    )
    return retrying(
        gateway.charge,
        payment_token=payment_token,
        amount=amount,
        currency=currency,
        idempotency_key=idempotency_key,
    )


_gateway: PaymentGateway | None = None
_gateway_lock = threading.Lock()


def set_payment_gateway(gateway: PaymentGateway | None) -> None:
    global _gateway
    with _gateway_lock:
        _gateway = gateway


def get_payment_gateway() -> PaymentGateway:
    global _gateway
    with _gateway_lock:
        if _gateway is None:
            settings = get_settings()
            if settings.payment_gateway_backend.lower() == "http":
                _gateway = HttpPaymentGateway(
                    base_url=settings.payment_gateway_base_url,
                    api_key=settings.payment_gateway_api_key,
                    timeout_seconds=settings.payment_gateway_timeout_seconds,
                )
            else:
                _gateway = SandboxPaymentGateway()
        return _gateway
