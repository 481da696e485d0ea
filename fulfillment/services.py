from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from .clock import Clock
from .domain import (
    EventMessage,
    EventType,
    Order,
    OrderCreate,
    OrderItem,
    OrderStatus,
    OrderStatusChange,
    Reservation,
    ReservationStatus,
    VariantStatus,
    money,
)
from .errors import (
    InsufficientStock,
    InvalidQuantity,
    InvalidShippingInfo,
    InvalidStateTransition,
    NotFoundError,
    PaymentNotCompleted,
    ReturnWindowExpired,
    StockWouldGoNegative,
    TenantMismatch,
    VariantNotActive,
    VariantNotFound,
)
from .id_provider import IdProvider
from .logging import ServiceLogger
from .repositories import EventBus, OrderRepository, PaymentRepository, ReservationRepository, VariantRepository

DEFAULT_RESERVATION_TIMEOUT_MINUTES = 15
DEFAULT_RETURN_WINDOW_DAYS = 30


class EventPublisher:
    """Hands events to the bus after the owning unit of work has succeeded.

    Publication is best-effort: a failing bus is logged and never surfaces to the
    caller, so it cannot undo a transition that already happened.
    """

    def __init__(self, bus: EventBus, clock: Clock, ids: IdProvider) -> None:
        self._bus = bus
        self._clock = clock
        self._ids = ids
        self._log = ServiceLogger("events")

    def publish(self, event_type: EventType, tenant_id: Optional[str], payload: Dict[str, Any]) -> None:
        event = EventMessage(
            id=self._ids.new_id(),
            type=event_type.value,
            tenant_id=tenant_id,
            timestamp=self._clock.now(),
            payload=payload,
        )
        try:
            self._bus.publish(event)
        except Exception as exc:
            self._log.warning("Event publication failed", event_type=event.type, event_id=event.id, error=exc)


class ReservationLedger:
    """Provisional stock holds. Only `commit` ever touches a variant's stock counter."""

    def __init__(
        self,
        variants: VariantRepository,
        reservations: ReservationRepository,
        events: EventPublisher,
        clock: Clock,
        ids: IdProvider,
        default_timeout_minutes: int = DEFAULT_RESERVATION_TIMEOUT_MINUTES,
    ) -> None:
        self._variants = variants
        self._reservations = reservations
        self._events = events
        self._clock = clock
        self._ids = ids
        self._default_timeout = default_timeout_minutes
        self._log = ServiceLogger("reservations")

    def reserve(
        self,
        tenant_id: str,
        variant_id: str,
        quantity: int,
        timeout_minutes: Optional[int] = None,
        order_id: Optional[str] = None,
    ) -> Reservation:
        if quantity <= 0:
            raise InvalidQuantity(quantity)

        variant = self._variants.get(variant_id)
        if variant is None:
            raise VariantNotFound(variant_id)
        if variant.tenant_id != tenant_id:
            raise TenantMismatch(f"Variant {variant_id} does not belong to tenant {tenant_id}")
        if variant.status != VariantStatus.ACTIVE:
            raise VariantNotActive(f"Variant {variant_id} is not available for reservation")

        now = self._clock.now()
        timeout = timeout_minutes if timeout_minutes is not None else self._default_timeout
        reservation = Reservation(
            id=self._ids.new_id(),
            tenant_id=tenant_id,
            variant_id=variant_id,
            quantity=quantity,
            order_id=order_id,
            expires_at=now + timedelta(minutes=timeout),
            created_at=now,
            updated_at=now,
        )
        admitted, available = self._reservations.reserve_if_available(reservation, now)
        if not admitted:
            self._log.info(
                "Reservation rejected",
                tenant_id=tenant_id,
                variant_id=variant_id,
                available=available,
                requested=quantity,
            )
            raise InsufficientStock(variant_id, available, quantity)

        self._log.info(
            "Reserved stock",
            tenant_id=tenant_id,
            variant_id=variant_id,
            quantity=quantity,
            expires_at=reservation.expires_at.isoformat(),
        )
        self._events.publish(
            EventType.INVENTORY_RESERVED,
            tenant_id,
            {
                "reservation_id": reservation.id,
                "variant_id": variant_id,
                "quantity": quantity,
                "order_id": order_id,
            },
        )
        return reservation

    def commit(self, tenant_id: str, reservation_ids: Iterable[str], order_id: str) -> List[Reservation]:
        reservation_ids = list(reservation_ids)
        try:
            outcomes = self._reservations.commit_all(tenant_id, reservation_ids, order_id, self._clock.now())
        except StockWouldGoNegative as exc:
            self._log.error(
                "Stock would go negative, batch rolled back",
                tenant_id=tenant_id,
                order_id=order_id,
                variant_id=exc.variant_id,
                stock=exc.stock,
                quantity=exc.quantity,
            )
            raise

        committed: List[Reservation] = []
        for reservation_id, outcome in zip(reservation_ids, outcomes):
            if not outcome.committed:
                self._log.warning(
                    "Skipping reservation commit",
                    tenant_id=tenant_id,
                    reservation_id=reservation_id,
                    reason=outcome.skipped_reason,
                )
                continue
            self._log.info(
                "Committed reservation",
                reservation_id=reservation_id,
                variant_id=outcome.reservation.variant_id,
                order_id=order_id,
                stock_after=outcome.stock_after,
            )
            committed.append(outcome.reservation)

        if committed:
            self._events.publish(
                EventType.INVENTORY_COMMITTED,
                tenant_id,
                {
                    "order_id": order_id,
                    "reservations": [
                        {"id": item.id, "variant_id": item.variant_id, "quantity": item.quantity}
                        for item in committed
                    ],
                },
            )
        return committed

    def commit_for_order(self, tenant_id: str, order_id: str) -> List[Reservation]:
        active = [
            reservation.id
            for reservation in self._reservations.list_by_order(tenant_id, order_id)
            if reservation.status == ReservationStatus.ACTIVE
        ]
        if not active:
            return []
        return self.commit(tenant_id, active, order_id)

    def release(self, tenant_id: str, reservation_id: str) -> Optional[Reservation]:
        released = self._reservations.release(tenant_id, reservation_id, self._clock.now())
        if released is None:
            self._log.warning("Release ignored", tenant_id=tenant_id, reservation_id=reservation_id)
            return None
        self._log.info("Released reservation", reservation_id=reservation_id, variant_id=released.variant_id)
        self._publish_released(tenant_id, [released], "released")
        return released

    def release_all(self, tenant_id: str, order_id: str) -> List[Reservation]:
        released = self._reservations.release_for_order(tenant_id, order_id, self._clock.now())
        if released:
            self._log.info("Released order reservations", order_id=order_id, count=len(released))
            self._publish_released(tenant_id, released, "order_released")
        return released

    def cleanup_expired(self) -> int:
        count = self._reservations.release_expired(self._clock.now())
        if count:
            self._log.info("Released expired reservations", count=count)
        return count

    def available_stock(self, tenant_id: str, variant_id: str) -> int:
        variant = self._variants.get(variant_id)
        if variant is None or variant.tenant_id != tenant_id or variant.status != VariantStatus.ACTIVE:
            return 0
        reserved = self._reservations.reserved_quantity(tenant_id, variant_id, self._clock.now())
        return max(0, variant.stock - reserved)

    def get(self, tenant_id: str, reservation_id: str) -> Reservation:
        reservation = self._reservations.get(tenant_id, reservation_id)
        if reservation is None:
            raise NotFoundError("Reservation", reservation_id)
        return reservation

    def list_active(self, tenant_id: str, limit: int = 100) -> List[Reservation]:
        return self._reservations.list_active(tenant_id, limit)

    def count_active(self, tenant_id: str) -> int:
        return self._reservations.count_active(tenant_id)

    def stale_reservations(self, threshold_minutes: int, tenant_id: Optional[str] = None) -> List[Reservation]:
        cutoff = self._clock.now() - timedelta(minutes=threshold_minutes)
        return self._reservations.list_stale(tenant_id, cutoff)

    def release_stale(self, threshold_minutes: int) -> int:
        released = 0
        for reservation in self.stale_reservations(threshold_minutes):
            if self.release(reservation.tenant_id, reservation.id) is not None:
                released += 1
        return released

    def _publish_released(self, tenant_id: str, released: List[Reservation], reason: str) -> None:
        self._events.publish(
            EventType.INVENTORY_RELEASED,
            tenant_id,
            {"reason": reason, "reservation_ids": [reservation.id for reservation in released]},
        )


class OrderStateMachine:
    """Owns order status. Every mutation goes through a named, guarded transition."""

    def __init__(
        self,
        orders: OrderRepository,
        payments: PaymentRepository,
        ledger: ReservationLedger,
        events: EventPublisher,
        clock: Clock,
        ids: IdProvider,
        return_window_days: int = DEFAULT_RETURN_WINDOW_DAYS,
    ) -> None:
        self._orders = orders
        self._payments = payments
        self._ledger = ledger
        self._events = events
        self._clock = clock
        self._ids = ids
        self._return_window = timedelta(days=return_window_days)
        self._log = ServiceLogger("orders")

    def place(self, tenant_id: str, payload: OrderCreate) -> Order:
        now = self._clock.now()
        items = [
            OrderItem(
                id=self._ids.new_id(),
                variant_id=item.variant_id,
                sku=item.sku,
                quantity=item.quantity,
                unit_price=item.unit_price,
            )
            for item in payload.items
        ]
        subtotal = money(sum(item.line_total for item in items))
        total = money(subtotal - payload.discount_amount + payload.tax_amount + payload.shipping_amount)
        order = Order(
            id=self._ids.new_id(),
            tenant_id=tenant_id,
            order_number=self._ids.order_number(now),
            customer_id=payload.customer_id,
            status=OrderStatus.PENDING_PAYMENT,
            currency=payload.currency,
            items=items,
            subtotal=subtotal,
            discount_amount=money(payload.discount_amount),
            tax_amount=money(payload.tax_amount),
            shipping_amount=money(payload.shipping_amount),
            total_amount=total,
            shipping_address=payload.shipping_address,
            notes=payload.notes,
            created_at=now,
            updated_at=now,
        )
        self._orders.add(order)
        self._log.info("Order placed", order_id=order.id, tenant_id=tenant_id, total=total)
        self._events.publish(
            EventType.ORDER_PLACED,
            tenant_id,
            {
                "order_id": order.id,
                "order_number": order.order_number,
                "customer_id": order.customer_id,
                "total_amount": str(total),
            },
        )
        return order

    def get(self, tenant_id: str, order_id: str) -> Order:
        order = self._orders.get(tenant_id, order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    def list(self, tenant_id: str, status: Optional[OrderStatus] = None, limit: int = 50) -> List[Order]:
        return self._orders.list(tenant_id, status, limit)

    def confirm(self, tenant_id: str, order_id: str) -> Order:
        order = self.get(tenant_id, order_id)
        self._guard(order, OrderStatus.CONFIRMED)
        payment = self._payments.find_for_order(tenant_id, order_id)
        if payment is None or not payment.status.is_captured:
            raise PaymentNotCompleted(f"Payment must be captured before confirming order {order_id}")
        return self._transition(order, OrderStatus.CONFIRMED, confirmed_at=self._clock.now())

    def pack(self, tenant_id: str, order_id: str) -> Order:
        order = self.get(tenant_id, order_id)
        self._guard(order, OrderStatus.PACKED)
        return self._transition(order, OrderStatus.PACKED, packed_at=self._clock.now())

    def ship(self, tenant_id: str, order_id: str, tracking_number: Optional[str], carrier: Optional[str]) -> Order:
        order = self.get(tenant_id, order_id)
        self._guard(order, OrderStatus.SHIPPED)
        if not tracking_number or not tracking_number.strip():
            raise InvalidShippingInfo("Tracking number is required for shipping")
        if not carrier or not carrier.strip():
            raise InvalidShippingInfo("Carrier is required for shipping")
        return self._transition(
            order,
            OrderStatus.SHIPPED,
            shipped_at=self._clock.now(),
            tracking_number=tracking_number.strip(),
            carrier=carrier.strip(),
        )

    def deliver(self, tenant_id: str, order_id: str) -> Order:
        order = self.get(tenant_id, order_id)
        self._guard(order, OrderStatus.DELIVERED, sources=frozenset({OrderStatus.SHIPPED}))
        return self._transition(order, OrderStatus.DELIVERED, delivered_at=self._clock.now())

    def cancel(self, tenant_id: str, order_id: str, reason: str) -> Order:
        order = self.get(tenant_id, order_id)
        self._guard(order, OrderStatus.CANCELLED)
        cancelled = self._transition(
            order,
            OrderStatus.CANCELLED,
            reason=reason,
            cancelled_at=self._clock.now(),
            cancellation_reason=reason,
        )
        self._ledger.release_all(tenant_id, order_id)
        return cancelled

    def request_return(self, tenant_id: str, order_id: str, reason: str) -> Order:
        order = self.get(tenant_id, order_id)
        self._guard(order, OrderStatus.RETURN_REQUESTED)
        now = self._clock.now()
        if order.delivered_at is None:
            raise ReturnWindowExpired(f"Order {order_id} has no delivery date")
        if now > order.delivered_at + self._return_window:
            raise ReturnWindowExpired(f"Return window has expired for order {order_id}")
        return self._transition(order, OrderStatus.RETURN_REQUESTED, reason=reason, return_requested_at=now)

    def mark_returned(self, tenant_id: str, order_id: str) -> Order:
        order = self.get(tenant_id, order_id)
        self._guard(order, OrderStatus.RETURNED)
        return self._transition(order, OrderStatus.RETURNED, returned_at=self._clock.now())

    def refund(self, tenant_id: str, order_id: str) -> Order:
        order = self.get(tenant_id, order_id)
        self._guard(order, OrderStatus.REFUNDED)
        return self._transition(order, OrderStatus.REFUNDED, refunded_at=self._clock.now())

    def reject_return(self, tenant_id: str, order_id: str, reason: str) -> Order:
        order = self.get(tenant_id, order_id)
        self._guard(order, OrderStatus.DELIVERED, sources=frozenset({OrderStatus.RETURN_REQUESTED}))
        return self._transition(order, OrderStatus.DELIVERED, reason=reason)

    def _guard(
        self,
        order: Order,
        target: OrderStatus,
        sources: Optional[FrozenSet[OrderStatus]] = None,
    ) -> None:
        allowed = order.status.can_transition_to(target)
        if sources is not None:
            allowed = allowed and order.status in sources
        if not allowed:
            raise InvalidStateTransition("Order", order.status.value, target.value)

    def _transition(
        self,
        order: Order,
        target: OrderStatus,
        reason: Optional[str] = None,
        **fields: Any,
    ) -> Order:
        now = self._clock.now()
        previous = order.status
        updated = order.model_copy(update={"status": target, "updated_at": now, **fields})
        saved = self._orders.update(updated)
        self._log.info(
            "Order transitioned",
            order_id=order.id,
            tenant_id=order.tenant_id,
            previous=previous.value,
            new=target.value,
        )
        change = OrderStatusChange(
            order_id=saved.id,
            tenant_id=saved.tenant_id,
            customer_id=saved.customer_id,
            order_number=saved.order_number,
            previous_status=previous,
            new_status=target,
            changed_at=now,
        )
        payload = change.model_dump(mode="json")
        if reason:
            payload["reason"] = reason
        self._events.publish(EventType.ORDER_STATUS_CHANGED, saved.tenant_id, payload)
        return saved
