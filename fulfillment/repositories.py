from __future__ import annotations

import asyncio
import threading
from collections import deque
from datetime import datetime
from typing import Deque, Dict, List, Optional, Protocol, Sequence, Tuple

from .domain import (
    CommitOutcome,
    EventMessage,
    Order,
    OrderStatus,
    Payment,
    PaymentStatus,
    RefundRecord,
    Reservation,
    ReservationStatus,
    Variant,
)
from .errors import (
    ConcurrentModification,
    RefundAmountExceedsMax,
    RefundNotEligible,
    StockWouldGoNegative,
    VariantNotFound,
)
from .returns.domain import ReturnRequest, ReturnStatus


class OrderRepository(Protocol):
    def add(self, order: Order) -> Order: ...

    def get(self, tenant_id: str, order_id: str) -> Optional[Order]: ...

    def list(self, tenant_id: str, status: Optional[OrderStatus], limit: int) -> List[Order]: ...

    def update(self, order: Order) -> Order: ...


class VariantRepository(Protocol):
    def add(self, variant: Variant) -> Variant: ...

    def get(self, variant_id: str) -> Optional[Variant]: ...

    def list_all(self, tenant_id: str) -> List[Variant]: ...


class ReservationRepository(Protocol):
    """Ledger store. Every method is a single atomic unit of work."""

    def get(self, tenant_id: str, reservation_id: str) -> Optional[Reservation]: ...

    def reserve_if_available(self, reservation: Reservation, now: datetime) -> Tuple[bool, int]: ...

    def commit_all(
        self, tenant_id: str, reservation_ids: Sequence[str], order_id: str, now: datetime
    ) -> List[CommitOutcome]: ...

    def release(self, tenant_id: str, reservation_id: str, now: datetime) -> Optional[Reservation]: ...

    def release_for_order(self, tenant_id: str, order_id: str, now: datetime) -> List[Reservation]: ...

    def release_expired(self, now: datetime) -> int: ...

    def reserved_quantity(self, tenant_id: str, variant_id: str, now: datetime) -> int: ...

    def list_by_order(self, tenant_id: str, order_id: str) -> List[Reservation]: ...

    def list_active(self, tenant_id: str, limit: int) -> List[Reservation]: ...

    def count_active(self, tenant_id: str) -> int: ...

    def list_stale(self, tenant_id: Optional[str], created_before: datetime) -> List[Reservation]: ...


class PaymentRepository(Protocol):
    def add(self, payment: Payment) -> Payment: ...

    def get(self, payment_id: str) -> Optional[Payment]: ...

    def find_for_order(self, tenant_id: str, order_id: str) -> Optional[Payment]: ...

    def mark_captured(self, payment_id: str, gateway_payment_id: Optional[str], now: datetime) -> Optional[Payment]: ...

    def apply_refund(self, record: RefundRecord, now: datetime) -> Payment: ...

    def find_refund(self, tenant_id: str, idempotency_key: str) -> Optional[RefundRecord]: ...

    def list_refunds(self, payment_id: str) -> List[RefundRecord]: ...


class ReturnRequestRepository(Protocol):
    def add(self, request: ReturnRequest) -> ReturnRequest: ...

    def get(self, tenant_id: str, request_id: str) -> Optional[ReturnRequest]: ...

    def get_by_number(self, tenant_id: str, return_number: str) -> Optional[ReturnRequest]: ...

    def list(self, tenant_id: str, status: Optional[ReturnStatus], limit: int) -> List[ReturnRequest]: ...

    def update(self, request: ReturnRequest) -> ReturnRequest: ...


class EventBus(Protocol):
    def publish(self, event: EventMessage) -> None: ...

    def subscribe(self) -> asyncio.Queue: ...

    def unsubscribe(self, queue: asyncio.Queue) -> None: ...


class InMemoryOrderRepository(OrderRepository):
    def __init__(self) -> None:
        self._orders: Dict[str, Order] = {}
        self._lock = threading.RLock()

    def add(self, order: Order) -> Order:
        with self._lock:
            self._orders[order.id] = order
        return order

    def get(self, tenant_id: str, order_id: str) -> Optional[Order]:
        order = self._orders.get(order_id)
        if order and order.tenant_id == tenant_id:
            return order
        return None

    def list(self, tenant_id: str, status: Optional[OrderStatus], limit: int) -> List[Order]:
        orders = [order for order in self._orders.values() if order.tenant_id == tenant_id]
        if status:
            orders = [order for order in orders if order.status == status]
        return orders[:limit]

    def update(self, order: Order) -> Order:
        with self._lock:
            current = self._orders.get(order.id)
            if current is None or current.version != order.version:
                raise ConcurrentModification("Order", order.id)
            saved = order.model_copy(update={"version": order.version + 1})
            self._orders[order.id] = saved
        return saved


class InMemoryVariantRepository(VariantRepository):
    def __init__(self) -> None:
        self._variants: Dict[str, Variant] = {}
        self.lock = threading.RLock()

    def add(self, variant: Variant) -> Variant:
        with self.lock:
            self._variants[variant.id] = variant
        return variant

    def get(self, variant_id: str) -> Optional[Variant]:
        return self._variants.get(variant_id)

    def list_all(self, tenant_id: str) -> List[Variant]:
        return [variant for variant in self._variants.values() if variant.tenant_id == tenant_id]

    def replace(self, variant: Variant) -> None:
        self._variants[variant.id] = variant


class InMemoryReservationRepository(ReservationRepository):
    """Shares the variant store's lock so stock and reservations move together."""

    def __init__(self, variants: InMemoryVariantRepository) -> None:
        self._variants = variants
        self._reservations: Dict[str, Reservation] = {}

    def get(self, tenant_id: str, reservation_id: str) -> Optional[Reservation]:
        reservation = self._reservations.get(reservation_id)
        if reservation and reservation.tenant_id == tenant_id:
            return reservation
        return None

    def reserve_if_available(self, reservation: Reservation, now: datetime) -> Tuple[bool, int]:
        with self._variants.lock:
            variant = self._variants.get(reservation.variant_id)
            if variant is None:
                raise VariantNotFound(reservation.variant_id)
            available = variant.stock - self._reserved(reservation.tenant_id, reservation.variant_id, now)
            if available < reservation.quantity:
                return False, available
            self._reservations[reservation.id] = reservation
            return True, available

    def commit_all(
        self, tenant_id: str, reservation_ids: Sequence[str], order_id: str, now: datetime
    ) -> List[CommitOutcome]:
        """Stages every decrement first; nothing is written unless the whole batch fits."""
        with self._variants.lock:
            outcomes: List[CommitOutcome] = []
            staged_stock: Dict[str, int] = {}
            seen = set()
            for reservation_id in reservation_ids:
                reservation = self.get(tenant_id, reservation_id)
                if reservation is None:
                    outcomes.append(CommitOutcome(skipped_reason="not_found"))
                    continue
                if not reservation.is_active_at(now) or reservation.id in seen:
                    outcomes.append(CommitOutcome(reservation=reservation, skipped_reason="not_active"))
                    continue
                variant = self._variants.get(reservation.variant_id)
                if variant is None:
                    outcomes.append(CommitOutcome(reservation=reservation, skipped_reason="variant_missing"))
                    continue
                stock = staged_stock.get(variant.id, variant.stock)
                if stock - reservation.quantity < 0:
                    raise StockWouldGoNegative(variant.id, stock, reservation.quantity)
                staged_stock[variant.id] = stock - reservation.quantity
                seen.add(reservation.id)
                committed = reservation.model_copy(
                    update={"status": ReservationStatus.COMMITTED, "order_id": order_id, "updated_at": now}
                )
                outcomes.append(CommitOutcome(reservation=committed, stock_after=staged_stock[variant.id]))

            for variant_id, stock in staged_stock.items():
                variant = self._variants.get(variant_id)
                self._variants.replace(variant.model_copy(update={"stock": stock}))
            for outcome in outcomes:
                if outcome.committed:
                    self._reservations[outcome.reservation.id] = outcome.reservation
            return outcomes

    def release(self, tenant_id: str, reservation_id: str, now: datetime) -> Optional[Reservation]:
        with self._variants.lock:
            reservation = self.get(tenant_id, reservation_id)
            if reservation is None or reservation.status != ReservationStatus.ACTIVE:
                return None
            return self._mark_released(reservation, now)

    def release_for_order(self, tenant_id: str, order_id: str, now: datetime) -> List[Reservation]:
        with self._variants.lock:
            return [
                self._mark_released(reservation, now)
                for reservation in self.list_by_order(tenant_id, order_id)
                if reservation.status == ReservationStatus.ACTIVE
            ]

    def release_expired(self, now: datetime) -> int:
        with self._variants.lock:
            expired = [
                reservation
                for reservation in self._reservations.values()
                if reservation.status == ReservationStatus.ACTIVE and reservation.expires_at < now
            ]
            for reservation in expired:
                self._mark_released(reservation, now)
            return len(expired)

    def reserved_quantity(self, tenant_id: str, variant_id: str, now: datetime) -> int:
        with self._variants.lock:
            return self._reserved(tenant_id, variant_id, now)

    def list_by_order(self, tenant_id: str, order_id: str) -> List[Reservation]:
        return [
            reservation
            for reservation in self._reservations.values()
            if reservation.tenant_id == tenant_id and reservation.order_id == order_id
        ]

    def list_active(self, tenant_id: str, limit: int) -> List[Reservation]:
        active = [
            reservation
            for reservation in self._reservations.values()
            if reservation.tenant_id == tenant_id and reservation.status == ReservationStatus.ACTIVE
        ]
        active.sort(key=lambda reservation: reservation.created_at, reverse=True)
        return active[:limit]

    def count_active(self, tenant_id: str) -> int:
        return len(
            [
                reservation
                for reservation in self._reservations.values()
                if reservation.tenant_id == tenant_id and reservation.status == ReservationStatus.ACTIVE
            ]
        )

    def list_stale(self, tenant_id: Optional[str], created_before: datetime) -> List[Reservation]:
        return [
            reservation
            for reservation in self._reservations.values()
            if reservation.status == ReservationStatus.ACTIVE
            and reservation.created_at < created_before
            and (tenant_id is None or reservation.tenant_id == tenant_id)
        ]

    def _reserved(self, tenant_id: str, variant_id: str, now: datetime) -> int:
        return sum(
            reservation.quantity
            for reservation in self._reservations.values()
            if reservation.tenant_id == tenant_id
            and reservation.variant_id == variant_id
            and reservation.is_active_at(now)
        )

    def _mark_released(self, reservation: Reservation, now: datetime) -> Reservation:
        released = reservation.model_copy(update={"status": ReservationStatus.RELEASED, "updated_at": now})
        self._reservations[reservation.id] = released
        return released


class InMemoryPaymentRepository(PaymentRepository):
    def __init__(self) -> None:
        self._payments: Dict[str, Payment] = {}
        self._refunds: List[RefundRecord] = []
        self._lock = threading.RLock()

    def add(self, payment: Payment) -> Payment:
        with self._lock:
            self._payments[payment.id] = payment
        return payment

    def get(self, payment_id: str) -> Optional[Payment]:
        return self._payments.get(payment_id)

    def find_for_order(self, tenant_id: str, order_id: str) -> Optional[Payment]:
        payments = [
            payment
            for payment in self._payments.values()
            if payment.tenant_id == tenant_id and payment.order_id == order_id
        ]
        if not payments:
            return None
        payments.sort(key=lambda payment: (payment.status != PaymentStatus.FAILED, payment.created_at))
        return payments[-1]

    def mark_captured(self, payment_id: str, gateway_payment_id: Optional[str], now: datetime) -> Optional[Payment]:
        with self._lock:
            payment = self._payments.get(payment_id)
            if payment is None or payment.status != PaymentStatus.AUTHORIZED:
                return None
            captured = payment.model_copy(
                update={
                    "status": PaymentStatus.CAPTURED,
                    "gateway_payment_id": gateway_payment_id or payment.gateway_payment_id,
                    "captured_at": now,
                    "updated_at": now,
                }
            )
            self._payments[payment_id] = captured
            return captured

    def apply_refund(self, record: RefundRecord, now: datetime) -> Payment:
        with self._lock:
            payment = self._payments.get(record.payment_id)
            if payment is None or not payment.status.is_refundable:
                raise RefundNotEligible(f"Payment {record.payment_id} is no longer refundable")
            if record.amount > payment.refundable_amount:
                raise RefundAmountExceedsMax(record.amount, payment.refundable_amount)
            updated = apply_refund_to_payment(payment, record, now)
            self._payments[payment.id] = updated
            self._refunds.append(record)
            return updated

    def find_refund(self, tenant_id: str, idempotency_key: str) -> Optional[RefundRecord]:
        return next(
            (
                record
                for record in self._refunds
                if record.tenant_id == tenant_id and record.idempotency_key == idempotency_key
            ),
            None,
        )

    def list_refunds(self, payment_id: str) -> List[RefundRecord]:
        return [record for record in self._refunds if record.payment_id == payment_id]


def apply_refund_to_payment(payment: Payment, record: RefundRecord, now: datetime) -> Payment:
    total = payment.refund_amount + record.amount
    status = PaymentStatus.REFUNDED if total >= payment.amount else PaymentStatus.PARTIALLY_REFUNDED
    return payment.model_copy(
        update={
            "refund_amount": total,
            "status": status,
            "last_refund_id": record.gateway_refund_id,
            "updated_at": now,
        }
    )


class InMemoryReturnRequestRepository(ReturnRequestRepository):
    def __init__(self) -> None:
        self._requests: Dict[str, ReturnRequest] = {}
        self._lock = threading.RLock()

    def add(self, request: ReturnRequest) -> ReturnRequest:
        with self._lock:
            self._requests[request.id] = request
        return request

    def get(self, tenant_id: str, request_id: str) -> Optional[ReturnRequest]:
        request = self._requests.get(request_id)
        if request and request.tenant_id == tenant_id:
            return request
        return None

    def get_by_number(self, tenant_id: str, return_number: str) -> Optional[ReturnRequest]:
        return next(
            (
                request
                for request in self._requests.values()
                if request.tenant_id == tenant_id and request.return_number == return_number
            ),
            None,
        )

    def list(self, tenant_id: str, status: Optional[ReturnStatus], limit: int) -> List[ReturnRequest]:
        requests = [request for request in self._requests.values() if request.tenant_id == tenant_id]
        if status:
            requests = [request for request in requests if request.status == status]
        requests.sort(key=lambda request: request.requested_at, reverse=True)
        return requests[:limit]

    def update(self, request: ReturnRequest) -> ReturnRequest:
        with self._lock:
            current = self._requests.get(request.id)
            if current is None or current.version != request.version:
                raise ConcurrentModification("ReturnRequest", request.id)
            saved = request.model_copy(update={"version": request.version + 1})
            self._requests[request.id] = saved
        return saved


class InMemoryEventBus(EventBus):
    def __init__(self, history_size: int = 500) -> None:
        self._subscribers: List[asyncio.Queue] = []
        self.history: Deque[EventMessage] = deque(maxlen=history_size)

    def publish(self, event: EventMessage) -> None:
        self.history.append(event)
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                continue

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=100)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def of_type(self, event_type: str) -> List[EventMessage]:
        return [event for event in self.history if event.type == event_type]
