from __future__ import annotations

import hashlib
import hmac
import threading
from decimal import Decimal
from typing import Dict, List, Optional, Protocol

from pydantic import BaseModel

from ..errors import GatewayError
from ..id_provider import IdProvider


class GatewayOrder(BaseModel):
    order_ref: str
    amount: Decimal
    currency: str
    receipt: str


class GatewayCapture(BaseModel):
    payment_ref: str
    amount: Decimal
    status: str


class PaymentGateway(Protocol):
    """Opaque payment processor. Every failure surfaces as GatewayError."""

    def create_order(self, amount: Decimal, currency: str, receipt: str) -> GatewayOrder: ...

    def capture_payment(self, payment_ref: str, amount: Decimal, currency: str) -> GatewayCapture: ...

    def refund(self, payment_ref: str, amount: Decimal, reason: str, idempotency_key: Optional[str]) -> str: ...

    def verify_signature(self, payload: bytes, signature: str) -> bool: ...


def sign_payload(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


class SandboxPaymentGateway:
    """Simulated gateway for non-production environments.

    Never leaves the process. Refunds replayed with an idempotency key return the
    original refund reference, which is how real processors dedupe retries.
    Failures can be scripted with `fail_next` to exercise error paths.
    """

    def __init__(self, webhook_secret: str, ids: IdProvider) -> None:
        self._secret = webhook_secret
        self._ids = ids
        self._lock = threading.Lock()
        self._refunds_by_key: Dict[str, str] = {}
        self._failures: Dict[str, str] = {}
        self.calls: List[Dict[str, object]] = []

    def fail_next(self, operation: str, reason: str = "Declined by sandbox") -> None:
        with self._lock:
            self._failures[operation] = reason

    def create_order(self, amount: Decimal, currency: str, receipt: str) -> GatewayOrder:
        self._record("create_order", amount=amount, currency=currency, receipt=receipt)
        return GatewayOrder(
            order_ref=f"order_sandbox_{self._ids.new_id()[:14]}",
            amount=amount,
            currency=currency,
            receipt=receipt,
        )

    def capture_payment(self, payment_ref: str, amount: Decimal, currency: str) -> GatewayCapture:
        self._record("capture_payment", payment_ref=payment_ref, amount=amount, currency=currency)
        return GatewayCapture(payment_ref=payment_ref, amount=amount, status="captured")

    def refund(self, payment_ref: str, amount: Decimal, reason: str, idempotency_key: Optional[str]) -> str:
        self._record("refund", payment_ref=payment_ref, amount=amount, reason=reason, idempotency_key=idempotency_key)
        with self._lock:
            if idempotency_key and idempotency_key in self._refunds_by_key:
                return self._refunds_by_key[idempotency_key]
            refund_ref = f"rfnd_sandbox_{self._ids.new_id()[:14]}"
            if idempotency_key:
                self._refunds_by_key[idempotency_key] = refund_ref
        return refund_ref

    def verify_signature(self, payload: bytes, signature: str) -> bool:
        expected = sign_payload(self._secret, payload)
        return hmac.compare_digest(expected, signature or "")

    def _record(self, operation: str, **details: object) -> None:
        with self._lock:
            self.calls.append({"operation": operation, **details})
            reason = self._failures.pop(operation, None)
        if reason is not None:
            raise GatewayError(operation, reason)
