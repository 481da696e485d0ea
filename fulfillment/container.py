from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .clock import Clock, SystemClock
from .id_provider import IdProvider, UUIDProvider
from .observability import configure_observability
from .payments.gateway import PaymentGateway, SandboxPaymentGateway
from .payments.service import RefundCoordinator
from .persistence.db import Database
from .persistence.repositories import (
    SqlAlchemyOrderRepository,
    SqlAlchemyOutboxEventBus,
    SqlAlchemyPaymentRepository,
    SqlAlchemyReservationRepository,
    SqlAlchemyReturnRequestRepository,
    SqlAlchemyVariantRepository,
)
from .persistence.seed import seed_variants_if_empty
from .repositories import (
    EventBus,
    InMemoryEventBus,
    InMemoryOrderRepository,
    InMemoryPaymentRepository,
    InMemoryReservationRepository,
    InMemoryReturnRequestRepository,
    InMemoryVariantRepository,
    VariantRepository,
)
from .returns.media import MediaStorage, PrefixMediaStorage
from .returns.service import ReturnWorkflow
from .seed import load_variant_seed
from .services import EventPublisher, OrderStateMachine, ReservationLedger
from .settings import Settings


@dataclass
class Container:
    settings: Settings
    reservation_ledger: ReservationLedger
    order_machine: OrderStateMachine
    return_workflow: ReturnWorkflow
    refund_coordinator: RefundCoordinator
    event_publisher: EventPublisher
    event_bus: EventBus
    variants: VariantRepository
    gateway: PaymentGateway
    media_storage: MediaStorage
    clock: Clock
    id_provider: IdProvider
    db: Optional[Database] = None
    outbox: Optional[SqlAlchemyOutboxEventBus] = None

    def close(self) -> None:
        self.refund_coordinator.shutdown()
        if self.db is not None:
            self.db.dispose()


def build_container(
    settings: Settings,
    clock: Optional[Clock] = None,
    ids: Optional[IdProvider] = None,
    gateway: Optional[PaymentGateway] = None,
) -> Container:
    clock = clock or SystemClock()
    ids = ids or UUIDProvider()

    db: Optional[Database] = None
    outbox: Optional[SqlAlchemyOutboxEventBus] = None
    event_bus: EventBus

    if settings.database_url:
        db = Database(settings.database_url, echo=settings.db_echo)
        db.create_tables()
        seed_variants_if_empty(db, settings.variant_seed_path)
        configure_observability(settings, db.engine)
        variants = SqlAlchemyVariantRepository(db)
        reservations = SqlAlchemyReservationRepository(db)
        orders = SqlAlchemyOrderRepository(db)
        payments = SqlAlchemyPaymentRepository(db)
        return_requests = SqlAlchemyReturnRequestRepository(db)
        outbox = SqlAlchemyOutboxEventBus(db)
        event_bus = outbox
    else:
        configure_observability(settings)
        variants = InMemoryVariantRepository()
        for variant in load_variant_seed(settings.variant_seed_path):
            variants.add(variant)
        reservations = InMemoryReservationRepository(variants)
        orders = InMemoryOrderRepository()
        payments = InMemoryPaymentRepository()
        return_requests = InMemoryReturnRequestRepository()
        event_bus = InMemoryEventBus()

    if gateway is None:
        if not settings.payment_sandbox:
            raise ValueError("A payment gateway must be supplied when sandbox mode is disabled")
        gateway = SandboxPaymentGateway(settings.gateway_webhook_secret, ids)

    events = EventPublisher(event_bus, clock, ids)
    ledger = ReservationLedger(
        variants,
        reservations,
        events,
        clock,
        ids,
        default_timeout_minutes=settings.reservation_timeout_minutes,
    )
    order_machine = OrderStateMachine(
        orders,
        payments,
        ledger,
        events,
        clock,
        ids,
        return_window_days=settings.return_window_days,
    )
    refund_coordinator = RefundCoordinator(
        payments,
        orders,
        gateway,
        events,
        clock,
        ids,
        timeout_seconds=settings.gateway_timeout_seconds,
    )
    media_storage = PrefixMediaStorage(settings.media_prefix, ids, settings.media_max_bytes)
    return_workflow = ReturnWorkflow(
        return_requests,
        order_machine,
        refund_coordinator,
        media_storage,
        events,
        clock,
        ids,
    )

    return Container(
        settings=settings,
        reservation_ledger=ledger,
        order_machine=order_machine,
        return_workflow=return_workflow,
        refund_coordinator=refund_coordinator,
        event_publisher=events,
        event_bus=event_bus,
        variants=variants,
        gateway=gateway,
        media_storage=media_storage,
        clock=clock,
        id_provider=ids,
        db=db,
        outbox=outbox,
    )
