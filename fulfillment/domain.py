from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field, condecimal, conint

TWO_PLACES = Decimal("0.01")


def money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


class OrderStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    CONFIRMED = "confirmed"
    PACKED = "packed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURN_REQUESTED = "return_requested"
    RETURNED = "returned"
    REFUNDED = "refunded"

    def can_transition_to(self, target: "OrderStatus") -> bool:
        return target in ORDER_TRANSITIONS[self]

    def can_be_returned(self) -> bool:
        return self == OrderStatus.DELIVERED

    def can_be_cancelled(self) -> bool:
        return self.can_transition_to(OrderStatus.CANCELLED)

    @property
    def is_terminal(self) -> bool:
        return not ORDER_TRANSITIONS[self]


ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING_PAYMENT: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PACKED, OrderStatus.CANCELLED}),
    OrderStatus.PACKED: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.RETURN_REQUESTED}),
    OrderStatus.RETURN_REQUESTED: frozenset(
        {OrderStatus.RETURNED, OrderStatus.REFUNDED, OrderStatus.DELIVERED}
    ),
    OrderStatus.RETURNED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}


class VariantStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DISCONTINUED = "discontinued"


class ReservationStatus(str, Enum):
    ACTIVE = "active"
    COMMITTED = "committed"
    RELEASED = "released"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self != ReservationStatus.ACTIVE


class PaymentStatus(str, Enum):
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"
    FAILED = "failed"

    @property
    def is_captured(self) -> bool:
        return self in (PaymentStatus.CAPTURED, PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED)

    @property
    def is_refundable(self) -> bool:
        return self in (PaymentStatus.CAPTURED, PaymentStatus.PARTIALLY_REFUNDED)


class RefundType(str, Enum):
    FULL = "full"
    PARTIAL = "partial"


class EventType(str, Enum):
    ORDER_PLACED = "order.placed"
    ORDER_STATUS_CHANGED = "order.status_changed"
    INVENTORY_RESERVED = "inventory.reserved"
    INVENTORY_COMMITTED = "inventory.committed"
    INVENTORY_RELEASED = "inventory.released"
    PAYMENT_AUTHORIZED = "payment.authorized"
    PAYMENT_CAPTURED = "payment.captured"
    REFUND_PROCESSED = "refund.processed"
    RETURN_CREATED = "return.created"
    RETURN_APPROVED = "return.approved"
    RETURN_REJECTED = "return.rejected"
    RETURN_STATUS_CHANGED = "return.status_changed"
    RETURN_IMAGES_ADDED = "return.images_added"
    RETURN_COMPLETED = "return.completed"


# Orders


class ShippingAddress(BaseModel):
    name: str
    phone: Optional[str] = None
    line1: str
    line2: Optional[str] = None
    city: str
    state: str
    postal_code: str
    country: str = "IN"


class OrderItem(BaseModel):
    id: str
    variant_id: str
    sku: str
    quantity: conint(gt=0)
    unit_price: condecimal(gt=0, decimal_places=2)

    @property
    def line_total(self) -> Decimal:
        return money(self.unit_price * self.quantity)


class OrderItemCreate(BaseModel):
    variant_id: str
    sku: str
    quantity: conint(gt=0)
    unit_price: condecimal(gt=0, decimal_places=2)


class OrderCreate(BaseModel):
    customer_id: str
    currency: str = Field("INR", min_length=3, max_length=3)
    items: List[OrderItemCreate] = Field(min_length=1)
    discount_amount: condecimal(ge=0, decimal_places=2) = Decimal("0.00")
    tax_amount: condecimal(ge=0, decimal_places=2) = Decimal("0.00")
    shipping_amount: condecimal(ge=0, decimal_places=2) = Decimal("0.00")
    shipping_address: Optional[ShippingAddress] = None
    notes: Optional[str] = None


class Order(BaseModel):
    id: str
    tenant_id: str
    order_number: str
    customer_id: str
    status: OrderStatus
    currency: str
    items: List[OrderItem]
    subtotal: Decimal
    discount_amount: Decimal = Decimal("0.00")
    tax_amount: Decimal = Decimal("0.00")
    shipping_amount: Decimal = Decimal("0.00")
    total_amount: Decimal
    shipping_address: Optional[ShippingAddress] = None
    notes: Optional[str] = None
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    confirmed_at: Optional[datetime] = None
    packed_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    return_requested_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    version: int = 0

    def item(self, order_item_id: str) -> Optional[OrderItem]:
        return next((item for item in self.items if item.id == order_item_id), None)


class OrderStatusChange(BaseModel):
    order_id: str
    tenant_id: str
    customer_id: str
    order_number: str
    previous_status: OrderStatus
    new_status: OrderStatus
    changed_at: datetime


# Inventory


class Variant(BaseModel):
    id: str
    tenant_id: str
    sku: str
    stock: conint(ge=0)
    status: VariantStatus = VariantStatus.ACTIVE


class Reservation(BaseModel):
    id: str
    tenant_id: str
    variant_id: str
    quantity: conint(gt=0)
    order_id: Optional[str] = None
    expires_at: datetime
    status: ReservationStatus = ReservationStatus.ACTIVE
    created_at: datetime
    updated_at: datetime

    def is_active_at(self, moment: datetime) -> bool:
        return self.status == ReservationStatus.ACTIVE and self.expires_at > moment


class CommitOutcome(BaseModel):
    reservation: Optional[Reservation] = None
    stock_after: Optional[int] = None
    skipped_reason: Optional[str] = None

    @property
    def committed(self) -> bool:
        return self.reservation is not None and self.skipped_reason is None


# Payments


class Payment(BaseModel):
    id: str
    tenant_id: str
    order_id: str
    amount: Decimal
    currency: str
    refund_amount: Decimal = Decimal("0.00")
    status: PaymentStatus
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    last_refund_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    captured_at: Optional[datetime] = None

    @property
    def refundable_amount(self) -> Decimal:
        return money(self.amount - self.refund_amount)


class RefundRecord(BaseModel):
    id: str
    tenant_id: str
    payment_id: str
    order_id: str
    amount: Decimal
    refund_type: RefundType
    gateway_refund_id: str
    reason: str
    idempotency_key: Optional[str] = None
    created_at: datetime


class RefundResult(BaseModel):
    payment_id: str
    order_id: str
    refund_id: str
    amount: Decimal
    refund_type: RefundType
    payment_status: PaymentStatus
    total_refunded: Decimal
    replayed: bool = False


class CaptureResult(BaseModel):
    payment_id: str
    order_id: str
    captured_amount: Decimal
    payment_status: PaymentStatus


# Events


class EventMessage(BaseModel):
    id: str
    type: str
    tenant_id: Optional[str] = None
    timestamp: datetime
    payload: Dict[str, Any]
