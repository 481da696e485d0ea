from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, joinedload

from ..domain import (
    CommitOutcome,
    EventMessage,
    Order,
    OrderItem,
    OrderStatus,
    Payment,
    PaymentStatus,
    RefundRecord,
    RefundType,
    Reservation,
    ReservationStatus,
    ShippingAddress,
    Variant,
    VariantStatus,
)
from ..errors import (
    ConcurrentModification,
    RefundAmountExceedsMax,
    RefundNotEligible,
    StockWouldGoNegative,
    VariantNotFound,
)
from ..repositories import InMemoryEventBus, apply_refund_to_payment
from ..returns.domain import ReturnRequest, ReturnStatus
from .db import Database
from .models import (
    OrderItemRecord,
    OrderRecord,
    OutboxRecord,
    PaymentRecord,
    RefundEntryRecord,
    ReservationRecord,
    ReturnRequestRecord,
    VariantRecord,
)

NO_SYNC = {"synchronize_session": False}


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def variant_from_record(record: VariantRecord) -> Variant:
    return Variant(
        id=record.id,
        tenant_id=record.tenant_id,
        sku=record.sku,
        stock=record.stock,
        status=VariantStatus(record.status),
    )


def reservation_from_record(record: ReservationRecord) -> Reservation:
    return Reservation(
        id=record.id,
        tenant_id=record.tenant_id,
        variant_id=record.variant_id,
        quantity=record.quantity,
        order_id=record.order_id,
        status=ReservationStatus(record.status),
        expires_at=as_utc(record.expires_at),
        created_at=as_utc(record.created_at),
        updated_at=as_utc(record.updated_at),
    )


ORDER_TIMESTAMPS = (
    "created_at",
    "updated_at",
    "confirmed_at",
    "packed_at",
    "shipped_at",
    "delivered_at",
    "cancelled_at",
    "return_requested_at",
    "returned_at",
    "refunded_at",
)


def order_from_record(record: OrderRecord) -> Order:
    return Order(
        id=record.id,
        tenant_id=record.tenant_id,
        order_number=record.order_number,
        customer_id=record.customer_id,
        status=OrderStatus(record.status),
        currency=record.currency,
        items=[
            OrderItem(
                id=item.id,
                variant_id=item.variant_id,
                sku=item.sku,
                quantity=item.quantity,
                unit_price=item.unit_price,
            )
            for item in record.items
        ],
        subtotal=record.subtotal,
        discount_amount=record.discount_amount,
        tax_amount=record.tax_amount,
        shipping_amount=record.shipping_amount,
        total_amount=record.total_amount,
        shipping_address=ShippingAddress(**record.shipping_address) if record.shipping_address else None,
        notes=record.notes,
        tracking_number=record.tracking_number,
        carrier=record.carrier,
        cancellation_reason=record.cancellation_reason,
        version=record.version,
        **{name: as_utc(getattr(record, name)) for name in ORDER_TIMESTAMPS},
    )


def order_values(order: Order) -> Dict[str, Any]:
    values: Dict[str, Any] = {
        "status": order.status.value,
        "tracking_number": order.tracking_number,
        "carrier": order.carrier,
        "cancellation_reason": order.cancellation_reason,
        "notes": order.notes,
    }
    values.update({name: getattr(order, name) for name in ORDER_TIMESTAMPS if name != "created_at"})
    return values


def payment_from_record(record: PaymentRecord) -> Payment:
    return Payment(
        id=record.id,
        tenant_id=record.tenant_id,
        order_id=record.order_id,
        amount=record.amount,
        refund_amount=record.refund_amount,
        currency=record.currency,
        status=PaymentStatus(record.status),
        gateway_order_id=record.gateway_order_id,
        gateway_payment_id=record.gateway_payment_id,
        last_refund_id=record.last_refund_id,
        failure_reason=record.failure_reason,
        created_at=as_utc(record.created_at),
        updated_at=as_utc(record.updated_at),
        captured_at=as_utc(record.captured_at),
    )


def refund_from_record(record: RefundEntryRecord) -> RefundRecord:
    return RefundRecord(
        id=record.id,
        tenant_id=record.tenant_id,
        payment_id=record.payment_id,
        order_id=record.order_id,
        amount=record.amount,
        refund_type=RefundType(record.refund_type),
        gateway_refund_id=record.gateway_refund_id,
        reason=record.reason,
        idempotency_key=record.idempotency_key,
        created_at=as_utc(record.created_at),
    )


def return_request_from_record(record: ReturnRequestRecord) -> ReturnRequest:
    return ReturnRequest.model_validate({**record.document, "version": record.version})


class SqlAlchemyOrderRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def add(self, order: Order) -> Order:
        with self._db.session() as session:
            record = OrderRecord(
                id=order.id,
                tenant_id=order.tenant_id,
                order_number=order.order_number,
                customer_id=order.customer_id,
                currency=order.currency,
                subtotal=order.subtotal,
                discount_amount=order.discount_amount,
                tax_amount=order.tax_amount,
                shipping_amount=order.shipping_amount,
                total_amount=order.total_amount,
                shipping_address=order.shipping_address.model_dump() if order.shipping_address else None,
                created_at=order.created_at,
                version=order.version,
                items=[
                    OrderItemRecord(
                        id=item.id,
                        position=position,
                        variant_id=item.variant_id,
                        sku=item.sku,
                        quantity=item.quantity,
                        unit_price=item.unit_price,
                    )
                    for position, item in enumerate(order.items)
                ],
                **order_values(order),
            )
            session.add(record)
        return order

    def get(self, tenant_id: str, order_id: str) -> Optional[Order]:
        with self._db.session() as session:
            stmt = (
                select(OrderRecord)
                .options(joinedload(OrderRecord.items))
                .where(OrderRecord.id == order_id, OrderRecord.tenant_id == tenant_id)
            )
            record = session.execute(stmt).unique().scalars().first()
            if not record:
                return None
            return order_from_record(record)

    def list(self, tenant_id: str, status: Optional[OrderStatus], limit: int) -> List[Order]:
        with self._db.session() as session:
            stmt = (
                select(OrderRecord)
                .options(joinedload(OrderRecord.items))
                .where(OrderRecord.tenant_id == tenant_id)
                .order_by(OrderRecord.created_at.desc())
            )
            if status:
                stmt = stmt.where(OrderRecord.status == status.value)
            stmt = stmt.limit(limit)
            records = session.execute(stmt).unique().scalars().all()
            return [order_from_record(record) for record in records]

    def update(self, order: Order) -> Order:
        with self._db.session() as session:
            stmt = (
                update(OrderRecord)
                .where(OrderRecord.id == order.id, OrderRecord.version == order.version)
                .values(version=order.version + 1, **order_values(order))
                .execution_options(**NO_SYNC)
            )
            if session.execute(stmt).rowcount != 1:
                raise ConcurrentModification("Order", order.id)
        return order.model_copy(update={"version": order.version + 1})


class SqlAlchemyVariantRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def add(self, variant: Variant) -> Variant:
        with self._db.session() as session:
            session.merge(
                VariantRecord(
                    id=variant.id,
                    tenant_id=variant.tenant_id,
                    sku=variant.sku,
                    stock=variant.stock,
                    status=variant.status.value,
                    version=0,
                )
            )
        return variant

    def get(self, variant_id: str) -> Optional[Variant]:
        with self._db.session() as session:
            record = session.get(VariantRecord, variant_id)
            return variant_from_record(record) if record else None

    def list_all(self, tenant_id: str) -> List[Variant]:
        with self._db.session() as session:
            stmt = select(VariantRecord).where(VariantRecord.tenant_id == tenant_id).order_by(VariantRecord.sku.asc())
            return [variant_from_record(record) for record in session.execute(stmt).scalars().all()]


class SqlAlchemyReservationRepository:
    """Every write claims the variant row first (a version bump), which serialises
    concurrent reservations for the same variant on any backend."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def get(self, tenant_id: str, reservation_id: str) -> Optional[Reservation]:
        with self._db.session() as session:
            record = self._record(session, tenant_id, reservation_id)
            return reservation_from_record(record) if record else None

    def reserve_if_available(self, reservation: Reservation, now: datetime) -> Tuple[bool, int]:
        with self._db.session() as session:
            stock = self._claim_variant(session, reservation.variant_id)
            if stock is None:
                raise VariantNotFound(reservation.variant_id)
            available = stock - self._reserved(session, reservation.tenant_id, reservation.variant_id, now)
            if available < reservation.quantity:
                return False, available
            session.add(
                ReservationRecord(
                    id=reservation.id,
                    tenant_id=reservation.tenant_id,
                    variant_id=reservation.variant_id,
                    quantity=reservation.quantity,
                    order_id=reservation.order_id,
                    status=reservation.status.value,
                    expires_at=reservation.expires_at,
                    created_at=reservation.created_at,
                    updated_at=reservation.updated_at,
                )
            )
            return True, available

    def commit_all(
        self, tenant_id: str, reservation_ids: Sequence[str], order_id: str, now: datetime
    ) -> List[CommitOutcome]:
        """One session for the batch; a shortfall on any variant rolls back every commit before it."""
        outcomes: List[CommitOutcome] = []
        with self._db.session() as session:
            for reservation_id in reservation_ids:
                outcomes.append(self._commit_one(session, tenant_id, reservation_id, order_id, now))
        return outcomes

    def _commit_one(
        self, session: Session, tenant_id: str, reservation_id: str, order_id: str, now: datetime
    ) -> CommitOutcome:
        record = self._record(session, tenant_id, reservation_id)
        if record is None:
            return CommitOutcome(skipped_reason="not_found")
        reservation = reservation_from_record(record)
        if self._claim_variant(session, reservation.variant_id) is None:
            return CommitOutcome(reservation=reservation, skipped_reason="variant_missing")

        flipped = session.execute(
            update(ReservationRecord)
            .where(
                ReservationRecord.id == reservation_id,
                ReservationRecord.status == ReservationStatus.ACTIVE.value,
                ReservationRecord.expires_at > now,
            )
            .values(status=ReservationStatus.COMMITTED.value, order_id=order_id, updated_at=now)
            .execution_options(**NO_SYNC)
        )
        if flipped.rowcount != 1:
            return CommitOutcome(reservation=reservation, skipped_reason="not_active")

        decremented = session.execute(
            update(VariantRecord)
            .where(VariantRecord.id == reservation.variant_id, VariantRecord.stock >= reservation.quantity)
            .values(stock=VariantRecord.stock - reservation.quantity)
            .execution_options(**NO_SYNC)
        )
        stock_after = session.execute(
            select(VariantRecord.stock).where(VariantRecord.id == reservation.variant_id)
        ).scalar_one()
        if decremented.rowcount != 1:
            raise StockWouldGoNegative(reservation.variant_id, stock_after, reservation.quantity)

        committed = reservation.model_copy(
            update={"status": ReservationStatus.COMMITTED, "order_id": order_id, "updated_at": now}
        )
        return CommitOutcome(reservation=committed, stock_after=stock_after)

    def release(self, tenant_id: str, reservation_id: str, now: datetime) -> Optional[Reservation]:
        with self._db.session() as session:
            record = self._record(session, tenant_id, reservation_id)
            if record is None or not self._release(session, record.id, now):
                return None
            return reservation_from_record(record).model_copy(
                update={"status": ReservationStatus.RELEASED, "updated_at": now}
            )

    def release_for_order(self, tenant_id: str, order_id: str, now: datetime) -> List[Reservation]:
        with self._db.session() as session:
            stmt = select(ReservationRecord).where(
                ReservationRecord.tenant_id == tenant_id,
                ReservationRecord.order_id == order_id,
                ReservationRecord.status == ReservationStatus.ACTIVE.value,
            )
            released: List[Reservation] = []
            for record in session.execute(stmt).scalars().all():
                if self._release(session, record.id, now):
                    released.append(
                        reservation_from_record(record).model_copy(
                            update={"status": ReservationStatus.RELEASED, "updated_at": now}
                        )
                    )
            return released

    def release_expired(self, now: datetime) -> int:
        with self._db.session() as session:
            result = session.execute(
                update(ReservationRecord)
                .where(
                    ReservationRecord.status == ReservationStatus.ACTIVE.value,
                    ReservationRecord.expires_at < now,
                )
                .values(status=ReservationStatus.RELEASED.value, updated_at=now)
                .execution_options(**NO_SYNC)
            )
            return int(result.rowcount or 0)

    def reserved_quantity(self, tenant_id: str, variant_id: str, now: datetime) -> int:
        with self._db.session() as session:
            return self._reserved(session, tenant_id, variant_id, now)

    def list_by_order(self, tenant_id: str, order_id: str) -> List[Reservation]:
        with self._db.session() as session:
            stmt = (
                select(ReservationRecord)
                .where(ReservationRecord.tenant_id == tenant_id, ReservationRecord.order_id == order_id)
                .order_by(ReservationRecord.created_at.asc())
            )
            return [reservation_from_record(record) for record in session.execute(stmt).scalars().all()]

    def list_active(self, tenant_id: str, limit: int) -> List[Reservation]:
        with self._db.session() as session:
            stmt = (
                select(ReservationRecord)
                .where(
                    ReservationRecord.tenant_id == tenant_id,
                    ReservationRecord.status == ReservationStatus.ACTIVE.value,
                )
                .order_by(ReservationRecord.created_at.desc())
                .limit(limit)
            )
            return [reservation_from_record(record) for record in session.execute(stmt).scalars().all()]

    def count_active(self, tenant_id: str) -> int:
        with self._db.session() as session:
            stmt = (
                select(func.count())
                .select_from(ReservationRecord)
                .where(
                    ReservationRecord.tenant_id == tenant_id,
                    ReservationRecord.status == ReservationStatus.ACTIVE.value,
                )
            )
            return int(session.execute(stmt).scalar_one())

    def list_stale(self, tenant_id: Optional[str], created_before: datetime) -> List[Reservation]:
        with self._db.session() as session:
            stmt = select(ReservationRecord).where(
                ReservationRecord.status == ReservationStatus.ACTIVE.value,
                ReservationRecord.created_at < created_before,
            )
            if tenant_id is not None:
                stmt = stmt.where(ReservationRecord.tenant_id == tenant_id)
            return [reservation_from_record(record) for record in session.execute(stmt).scalars().all()]

    @staticmethod
    def _record(session: Session, tenant_id: str, reservation_id: str) -> Optional[ReservationRecord]:
        stmt = select(ReservationRecord).where(
            ReservationRecord.id == reservation_id,
            ReservationRecord.tenant_id == tenant_id,
        )
        return session.execute(stmt).scalars().first()

    @staticmethod
    def _claim_variant(session: Session, variant_id: str) -> Optional[int]:
        claimed = session.execute(
            update(VariantRecord)
            .where(VariantRecord.id == variant_id)
            .values(version=VariantRecord.version + 1)
            .execution_options(**NO_SYNC)
        )
        if claimed.rowcount != 1:
            return None
        stmt = select(VariantRecord.stock).where(VariantRecord.id == variant_id).with_for_update()
        return session.execute(stmt).scalar_one()

    @staticmethod
    def _reserved(session: Session, tenant_id: str, variant_id: str, now: datetime) -> int:
        stmt = select(func.coalesce(func.sum(ReservationRecord.quantity), 0)).where(
            ReservationRecord.tenant_id == tenant_id,
            ReservationRecord.variant_id == variant_id,
            ReservationRecord.status == ReservationStatus.ACTIVE.value,
            ReservationRecord.expires_at > now,
        )
        return int(session.execute(stmt).scalar_one())

    @staticmethod
    def _release(session: Session, reservation_id: str, now: datetime) -> bool:
        result = session.execute(
            update(ReservationRecord)
            .where(
                ReservationRecord.id == reservation_id,
                ReservationRecord.status == ReservationStatus.ACTIVE.value,
            )
            .values(status=ReservationStatus.RELEASED.value, updated_at=now)
            .execution_options(**NO_SYNC)
        )
        return result.rowcount == 1


class SqlAlchemyPaymentRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def add(self, payment: Payment) -> Payment:
        with self._db.session() as session:
            session.add(
                PaymentRecord(
                    id=payment.id,
                    tenant_id=payment.tenant_id,
                    order_id=payment.order_id,
                    amount=payment.amount,
                    refund_amount=payment.refund_amount,
                    currency=payment.currency,
                    status=payment.status.value,
                    gateway_order_id=payment.gateway_order_id,
                    gateway_payment_id=payment.gateway_payment_id,
                    last_refund_id=payment.last_refund_id,
                    failure_reason=payment.failure_reason,
                    created_at=payment.created_at,
                    updated_at=payment.updated_at,
                    captured_at=payment.captured_at,
                )
            )
        return payment

    def get(self, payment_id: str) -> Optional[Payment]:
        with self._db.session() as session:
            record = session.get(PaymentRecord, payment_id)
            return payment_from_record(record) if record else None

    def find_for_order(self, tenant_id: str, order_id: str) -> Optional[Payment]:
        with self._db.session() as session:
            stmt = select(PaymentRecord).where(
                PaymentRecord.tenant_id == tenant_id,
                PaymentRecord.order_id == order_id,
            )
            payments = [payment_from_record(record) for record in session.execute(stmt).scalars().all()]
        if not payments:
            return None
        payments.sort(key=lambda payment: (payment.status != PaymentStatus.FAILED, payment.created_at))
        return payments[-1]

    def mark_captured(self, payment_id: str, gateway_payment_id: Optional[str], now: datetime) -> Optional[Payment]:
        with self._db.session() as session:
            values: Dict[str, Any] = {"status": PaymentStatus.CAPTURED.value, "captured_at": now, "updated_at": now}
            if gateway_payment_id:
                values["gateway_payment_id"] = gateway_payment_id
            result = session.execute(
                update(PaymentRecord)
                .where(PaymentRecord.id == payment_id, PaymentRecord.status == PaymentStatus.AUTHORIZED.value)
                .values(**values)
                .execution_options(**NO_SYNC)
            )
            if result.rowcount != 1:
                return None
        return self.get(payment_id)

    def apply_refund(self, record: RefundRecord, now: datetime) -> Payment:
        with self._db.session() as session:
            current = session.get(PaymentRecord, record.payment_id)
            if current is None:
                raise RefundNotEligible(f"Payment {record.payment_id} is no longer refundable")
            payment = payment_from_record(current)
            if not payment.status.is_refundable:
                raise RefundNotEligible(f"Payment {record.payment_id} is no longer refundable")
            if record.amount > payment.refundable_amount:
                raise RefundAmountExceedsMax(record.amount, payment.refundable_amount)

            updated = apply_refund_to_payment(payment, record, now)
            result = session.execute(
                update(PaymentRecord)
                .where(PaymentRecord.id == payment.id, PaymentRecord.refund_amount == payment.refund_amount)
                .values(
                    refund_amount=updated.refund_amount,
                    status=updated.status.value,
                    last_refund_id=updated.last_refund_id,
                    updated_at=now,
                )
                .execution_options(**NO_SYNC)
            )
            if result.rowcount != 1:
                raise ConcurrentModification("Payment", payment.id)
            session.add(
                RefundEntryRecord(
                    id=record.id,
                    tenant_id=record.tenant_id,
                    payment_id=record.payment_id,
                    order_id=record.order_id,
                    amount=record.amount,
                    refund_type=record.refund_type.value,
                    gateway_refund_id=record.gateway_refund_id,
                    reason=record.reason,
                    idempotency_key=record.idempotency_key,
                    created_at=record.created_at,
                )
            )
        return updated

    def find_refund(self, tenant_id: str, idempotency_key: str) -> Optional[RefundRecord]:
        with self._db.session() as session:
            stmt = select(RefundEntryRecord).where(
                RefundEntryRecord.tenant_id == tenant_id,
                RefundEntryRecord.idempotency_key == idempotency_key,
            )
            record = session.execute(stmt).scalars().first()
            return refund_from_record(record) if record else None

    def list_refunds(self, payment_id: str) -> List[RefundRecord]:
        with self._db.session() as session:
            stmt = (
                select(RefundEntryRecord)
                .where(RefundEntryRecord.payment_id == payment_id)
                .order_by(RefundEntryRecord.created_at.asc())
            )
            return [refund_from_record(record) for record in session.execute(stmt).scalars().all()]


class SqlAlchemyReturnRequestRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def add(self, request: ReturnRequest) -> ReturnRequest:
        with self._db.session() as session:
            session.add(
                ReturnRequestRecord(
                    id=request.id,
                    tenant_id=request.tenant_id,
                    order_id=request.order_id,
                    return_number=request.return_number,
                    status=request.status.value,
                    requested_at=request.requested_at,
                    version=request.version,
                    document=request.model_dump(mode="json", exclude={"version"}),
                )
            )
        return request

    def get(self, tenant_id: str, request_id: str) -> Optional[ReturnRequest]:
        with self._db.session() as session:
            stmt = select(ReturnRequestRecord).where(
                ReturnRequestRecord.id == request_id,
                ReturnRequestRecord.tenant_id == tenant_id,
            )
            record = session.execute(stmt).scalars().first()
            return return_request_from_record(record) if record else None

    def get_by_number(self, tenant_id: str, return_number: str) -> Optional[ReturnRequest]:
        with self._db.session() as session:
            stmt = select(ReturnRequestRecord).where(
                ReturnRequestRecord.return_number == return_number,
                ReturnRequestRecord.tenant_id == tenant_id,
            )
            record = session.execute(stmt).scalars().first()
            return return_request_from_record(record) if record else None

    def list(self, tenant_id: str, status: Optional[ReturnStatus], limit: int) -> List[ReturnRequest]:
        with self._db.session() as session:
            stmt = (
                select(ReturnRequestRecord)
                .where(ReturnRequestRecord.tenant_id == tenant_id)
                .order_by(ReturnRequestRecord.requested_at.desc())
            )
            if status:
                stmt = stmt.where(ReturnRequestRecord.status == status.value)
            stmt = stmt.limit(limit)
            return [return_request_from_record(record) for record in session.execute(stmt).scalars().all()]

    def update(self, request: ReturnRequest) -> ReturnRequest:
        with self._db.session() as session:
            stmt = (
                update(ReturnRequestRecord)
                .where(ReturnRequestRecord.id == request.id, ReturnRequestRecord.version == request.version)
                .values(
                    status=request.status.value,
                    version=request.version + 1,
                    document=request.model_dump(mode="json", exclude={"version"}),
                )
                .execution_options(**NO_SYNC)
            )
            if session.execute(stmt).rowcount != 1:
                raise ConcurrentModification("ReturnRequest", request.id)
        return request.model_copy(update={"version": request.version + 1})


class SqlAlchemyOutboxEventBus:
    """Writes events to an outbox table; `relay` forwards them to local subscribers."""

    def __init__(self, db: Database, downstream: Optional[InMemoryEventBus] = None) -> None:
        self._db = db
        self.downstream = downstream or InMemoryEventBus()

    def publish(self, event: EventMessage) -> None:
        data = event.model_dump(mode="json")
        with self._db.session() as session:
            session.add(
                OutboxRecord(
                    id=event.id,
                    event_type=event.type,
                    tenant_id=event.tenant_id,
                    payload=data["payload"],
                    occurred_at=event.timestamp,
                )
            )

    def subscribe(self) -> asyncio.Queue:
        return self.downstream.subscribe()

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self.downstream.unsubscribe(queue)

    def pending(self, limit: int) -> List[EventMessage]:
        with self._db.session() as session:
            stmt = (
                select(OutboxRecord)
                .where(OutboxRecord.dispatched_at.is_(None))
                .order_by(OutboxRecord.occurred_at.asc())
                .limit(limit)
            )
            return [
                EventMessage(
                    id=record.id,
                    type=record.event_type,
                    tenant_id=record.tenant_id,
                    timestamp=as_utc(record.occurred_at),
                    payload=record.payload,
                )
                for record in session.execute(stmt).scalars().all()
            ]

    def mark_dispatched(self, event_ids: Iterable[str], now: datetime) -> int:
        ids = list(event_ids)
        if not ids:
            return 0
        with self._db.session() as session:
            result = session.execute(
                update(OutboxRecord)
                .where(OutboxRecord.id.in_(ids), OutboxRecord.dispatched_at.is_(None))
                .values(dispatched_at=now)
                .execution_options(**NO_SYNC)
            )
            return int(result.rowcount or 0)

    def relay(self, limit: int, now: datetime) -> int:
        events = self.pending(limit)
        for event in events:
            self.downstream.publish(event)
        return self.mark_dispatched([event.id for event in events], now)
