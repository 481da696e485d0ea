from __future__ import annotations

import itertools
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Optional, Tuple

import pytest

from fulfillment.clock import ManualClock
from fulfillment.container import Container, build_container
from fulfillment.domain import (
    Order,
    OrderCreate,
    OrderItemCreate,
    OrderStatus,
    Payment,
    Variant,
    VariantStatus,
)
from fulfillment.settings import Settings

START = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)
TENANT = "tenant-acme"
OTHER_TENANT = "tenant-globex"


class SequentialIds:
    def __init__(self) -> None:
        self._counter = itertools.count(1)

    def new_id(self) -> str:
        return f"id{next(self._counter):06d}"

    def reference(self, prefix: str, moment: datetime) -> str:
        return f"{prefix}-{moment:%Y%m%d-%H%M%S}-{next(self._counter) % 1000:03d}"

    def order_number(self, moment: datetime) -> str:
        return self.reference("ORD", moment)


class Shop:
    """Builds variants and orders at a given point of their lifecycle."""

    def __init__(self, container: Container, clock: ManualClock) -> None:
        self.container = container
        self.clock = clock
        self._skus = itertools.count(1)

    @property
    def ledger(self):
        return self.container.reservation_ledger

    @property
    def orders(self):
        return self.container.order_machine

    @property
    def refunds(self):
        return self.container.refund_coordinator

    @property
    def returns(self):
        return self.container.return_workflow

    def variant(
        self,
        stock: int = 10,
        tenant_id: str = TENANT,
        status: VariantStatus = VariantStatus.ACTIVE,
    ) -> Variant:
        number = next(self._skus)
        return self.container.variants.add(
            Variant(id=f"var-{number}", tenant_id=tenant_id, sku=f"SKU-{number:03d}", stock=stock, status=status)
        )

    def place(
        self,
        lines: Iterable[Tuple[Variant, int, str]],
        tenant_id: str = TENANT,
        shipping: str = "0.00",
    ) -> Order:
        payload = OrderCreate(
            customer_id="cust-001",
            items=[
                OrderItemCreate(variant_id=variant.id, sku=variant.sku, quantity=quantity, unit_price=Decimal(price))
                for variant, quantity, price in lines
            ],
            shipping_amount=Decimal(shipping),
        )
        return self.orders.place(tenant_id, payload)

    def pay(self, order: Order, amount: Optional[Decimal] = None) -> Payment:
        self.refunds.authorize(order.tenant_id, order.id, gateway_payment_id=f"pay_{order.id}")
        self.refunds.capture(order.tenant_id, order.id, amount or order.total_amount)
        return self.refunds.payment_for_order(order.tenant_id, order.id)

    def delivered_order(self, quantity: int = 2, price: str = "1500.00", stock: int = 10) -> Order:
        variant = self.variant(stock=stock)
        order = self.place([(variant, quantity, price)])
        self.pay(order)
        self.orders.confirm(order.tenant_id, order.id)
        self.orders.pack(order.tenant_id, order.id)
        self.orders.ship(order.tenant_id, order.id, "TRK-100", "BlueDart")
        delivered = self.orders.deliver(order.tenant_id, order.id)
        assert delivered.status == OrderStatus.DELIVERED
        return delivered


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(START)


@pytest.fixture
def ids() -> SequentialIds:
    return SequentialIds()


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def container(settings: Settings, clock: ManualClock, ids: SequentialIds) -> Container:
    built = build_container(settings, clock=clock, ids=ids)
    yield built
    built.close()


@pytest.fixture
def shop(container: Container, clock: ManualClock) -> Shop:
    return Shop(container, clock)
