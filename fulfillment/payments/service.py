from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from decimal import Decimal
from typing import Any, Callable, List, Optional, TypeVar

from ..clock import Clock
from ..domain import (
    CaptureResult,
    EventType,
    OrderStatus,
    Payment,
    PaymentStatus,
    RefundRecord,
    RefundResult,
    RefundType,
    money,
)
from ..errors import (
    GatewayError,
    NotFoundError,
    RefundAmountExceedsMax,
    RefundNotEligible,
    StateConflictError,
    ValidationError,
)
from ..id_provider import IdProvider
from ..logging import ServiceLogger
from ..repositories import OrderRepository, PaymentRepository
from ..services import EventPublisher
from .gateway import PaymentGateway

T = TypeVar("T")


class RefundCoordinator:
    """Keeps the payment ledger in step with what the gateway actually did.

    The ledger is only written after the gateway confirms, so a failed or timed
    out gateway call leaves no trace behind and can simply be retried.
    """

    def __init__(
        self,
        payments: PaymentRepository,
        orders: OrderRepository,
        gateway: PaymentGateway,
        events: EventPublisher,
        clock: Clock,
        ids: IdProvider,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._payments = payments
        self._orders = orders
        self._gateway = gateway
        self._events = events
        self._clock = clock
        self._ids = ids
        self._timeout = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="gateway")
        self._log = ServiceLogger("payments")

    def authorize(
        self,
        tenant_id: str,
        order_id: str,
        gateway_payment_id: Optional[str] = None,
        amount: Optional[Decimal] = None,
    ) -> Payment:
        order = self._orders.get(tenant_id, order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        charge = money(amount if amount is not None else order.total_amount)
        if charge <= 0:
            raise ValidationError("Payment amount must be greater than zero")

        gateway_order = self._call("create_order", self._gateway.create_order, charge, order.currency, order.order_number)
        now = self._clock.now()
        payment = Payment(
            id=self._ids.new_id(),
            tenant_id=tenant_id,
            order_id=order_id,
            amount=charge,
            currency=order.currency,
            status=PaymentStatus.AUTHORIZED,
            gateway_order_id=gateway_order.order_ref,
            gateway_payment_id=gateway_payment_id,
            created_at=now,
            updated_at=now,
        )
        self._payments.add(payment)
        self._log.info("Payment authorized", payment_id=payment.id, order_id=order_id, amount=charge)
        self._events.publish(
            EventType.PAYMENT_AUTHORIZED,
            tenant_id,
            {"payment_id": payment.id, "order_id": order_id, "amount": str(charge)},
        )
        return payment

    def capture(self, tenant_id: str, order_id: str, amount: Decimal) -> CaptureResult:
        payment = self.payment_for_order(tenant_id, order_id)
        if payment.status != PaymentStatus.AUTHORIZED:
            raise StateConflictError(f"Payment must be authorized to capture, is {payment.status.value}")
        capture_amount = money(amount)
        if capture_amount <= 0 or capture_amount > payment.amount:
            raise ValidationError(f"Capture amount {capture_amount} must be within 0 and {payment.amount}")

        payment_ref = payment.gateway_payment_id or payment.gateway_order_id or payment.id
        capture = self._call(
            "capture_payment",
            self._gateway.capture_payment,
            payment_ref,
            capture_amount,
            payment.currency,
        )
        captured = self._payments.mark_captured(payment.id, capture.payment_ref, self._clock.now())
        if captured is None:
            self._log.error("Capture lost a concurrent update", payment_id=payment.id, order_id=order_id)
            raise StateConflictError(f"Payment {payment.id} changed while capturing")

        self._log.info("Payment captured", payment_id=payment.id, order_id=order_id, amount=capture_amount)
        self._events.publish(
            EventType.PAYMENT_CAPTURED,
            tenant_id,
            {"payment_id": payment.id, "order_id": order_id, "amount": str(capture_amount)},
        )
        return CaptureResult(
            payment_id=captured.id,
            order_id=order_id,
            captured_amount=capture_amount,
            payment_status=captured.status,
        )

    def full_refund(
        self,
        tenant_id: str,
        order_id: str,
        reason: str,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        replay = self._replay(tenant_id, idempotency_key)
        if replay:
            return replay
        payment = self._refundable_payment(tenant_id, order_id)
        return self._refund(payment, payment.refundable_amount, reason, RefundType.FULL, idempotency_key)

    def partial_refund(
        self,
        tenant_id: str,
        order_id: str,
        amount: Decimal,
        reason: str,
        idempotency_key: Optional[str] = None,
    ) -> RefundResult:
        replay = self._replay(tenant_id, idempotency_key)
        if replay:
            return replay
        payment = self._refundable_payment(tenant_id, order_id)
        refund_amount = money(amount)
        if refund_amount <= 0:
            raise ValidationError("Refund amount must be greater than zero")
        if refund_amount > payment.refundable_amount:
            raise RefundAmountExceedsMax(refund_amount, payment.refundable_amount)
        return self._refund(payment, refund_amount, reason, RefundType.PARTIAL, idempotency_key)

    def verify_signature(self, payload: bytes, signature: str) -> bool:
        return self._call("verify_signature", self._gateway.verify_signature, payload, signature)

    def payment_for_order(self, tenant_id: str, order_id: str) -> Payment:
        payment = self._payments.find_for_order(tenant_id, order_id)
        if payment is None:
            raise NotFoundError("Payment", order_id)
        return payment

    def refunds_for_payment(self, payment_id: str) -> List[RefundRecord]:
        return self._payments.list_refunds(payment_id)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)

    def _refundable_payment(self, tenant_id: str, order_id: str) -> Payment:
        order = self._orders.get(tenant_id, order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        if order.status == OrderStatus.REFUNDED:
            raise RefundNotEligible(f"Order {order_id} is already fully refunded")
        payment = self._payments.find_for_order(tenant_id, order_id)
        if payment is None or not payment.status.is_refundable:
            status = payment.status.value if payment else "missing"
            raise RefundNotEligible(f"Payment for order {order_id} must be captured to refund (status: {status})")
        return payment

    def _refund(
        self,
        payment: Payment,
        amount: Decimal,
        reason: str,
        refund_type: RefundType,
        idempotency_key: Optional[str],
    ) -> RefundResult:
        payment_ref = payment.gateway_payment_id or payment.gateway_order_id or payment.id
        try:
            refund_ref = self._call("refund", self._gateway.refund, payment_ref, amount, reason, idempotency_key)
        except GatewayError as exc:
            self._log.error(
                "Gateway refund failed",
                payment_id=payment.id,
                order_id=payment.order_id,
                amount=amount,
                error=exc.detail,
            )
            raise

        now = self._clock.now()
        record = RefundRecord(
            id=self._ids.new_id(),
            tenant_id=payment.tenant_id,
            payment_id=payment.id,
            order_id=payment.order_id,
            amount=amount,
            refund_type=refund_type,
            gateway_refund_id=refund_ref,
            reason=reason,
            idempotency_key=idempotency_key,
            created_at=now,
        )
        updated = self._payments.apply_refund(record, now)
        self._log.info(
            "Refund processed",
            payment_id=payment.id,
            order_id=payment.order_id,
            amount=amount,
            refund_id=refund_ref,
            status=updated.status.value,
        )
        self._events.publish(
            EventType.REFUND_PROCESSED,
            payment.tenant_id,
            {
                "payment_id": payment.id,
                "order_id": payment.order_id,
                "refund_id": refund_ref,
                "amount": str(amount),
                "refund_type": refund_type.value,
                "payment_status": updated.status.value,
            },
        )
        return RefundResult(
            payment_id=updated.id,
            order_id=updated.order_id,
            refund_id=refund_ref,
            amount=amount,
            refund_type=refund_type,
            payment_status=updated.status,
            total_refunded=updated.refund_amount,
        )

    def _replay(self, tenant_id: str, idempotency_key: Optional[str]) -> Optional[RefundResult]:
        if not idempotency_key:
            return None
        record = self._payments.find_refund(tenant_id, idempotency_key)
        if record is None:
            return None
        payment = self._payments.get(record.payment_id)
        self._log.info("Refund replayed", idempotency_key=idempotency_key, refund_id=record.gateway_refund_id)
        return RefundResult(
            payment_id=record.payment_id,
            order_id=record.order_id,
            refund_id=record.gateway_refund_id,
            amount=record.amount,
            refund_type=record.refund_type,
            payment_status=payment.status if payment else PaymentStatus.REFUNDED,
            total_refunded=payment.refund_amount if payment else record.amount,
            replayed=True,
        )

    def _call(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self._timeout)
        except FutureTimeout as exc:
            future.cancel()
            raise GatewayError(operation, f"timed out after {self._timeout}s") from exc
        except GatewayError:
            raise
        except Exception as exc:
            raise GatewayError(operation, str(exc)) from exc
