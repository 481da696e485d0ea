from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field, conint

from ..domain import money


class ReturnStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PICKUP_SCHEDULED = "pickup_scheduled"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    RECEIVED = "received"
    QUALITY_CHECK = "quality_check"
    QUALITY_APPROVED = "quality_approved"
    QUALITY_REJECTED = "quality_rejected"
    REFUND_PROCESSED = "refund_processed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return not RETURN_TRANSITIONS[self]

    def can_transition_to(self, target: "ReturnStatus") -> bool:
        return target in RETURN_TRANSITIONS[self]


RETURN_TRANSITIONS: Dict[ReturnStatus, FrozenSet[ReturnStatus]] = {
    ReturnStatus.PENDING: frozenset({ReturnStatus.APPROVED, ReturnStatus.REJECTED, ReturnStatus.CANCELLED}),
    ReturnStatus.APPROVED: frozenset(
        {ReturnStatus.PICKUP_SCHEDULED, ReturnStatus.PICKED_UP, ReturnStatus.CANCELLED}
    ),
    ReturnStatus.PICKUP_SCHEDULED: frozenset({ReturnStatus.PICKED_UP, ReturnStatus.CANCELLED}),
    ReturnStatus.PICKED_UP: frozenset({ReturnStatus.IN_TRANSIT, ReturnStatus.QUALITY_CHECK}),
    ReturnStatus.IN_TRANSIT: frozenset({ReturnStatus.RECEIVED}),
    ReturnStatus.RECEIVED: frozenset({ReturnStatus.QUALITY_CHECK}),
    ReturnStatus.QUALITY_CHECK: frozenset({ReturnStatus.QUALITY_APPROVED, ReturnStatus.QUALITY_REJECTED}),
    ReturnStatus.QUALITY_APPROVED: frozenset({ReturnStatus.REFUND_PROCESSED}),
    ReturnStatus.REFUND_PROCESSED: frozenset({ReturnStatus.COMPLETED}),
    ReturnStatus.QUALITY_REJECTED: frozenset(),
    ReturnStatus.REJECTED: frozenset(),
    ReturnStatus.COMPLETED: frozenset(),
    ReturnStatus.CANCELLED: frozenset(),
}


class ReturnType(str, Enum):
    DEFECTIVE = "defective"
    WRONG_ITEM = "wrong_item"
    SIZE_ISSUE = "size_issue"
    NOT_AS_DESCRIBED = "not_as_described"
    QUALITY_ISSUE = "quality_issue"
    CHANGED_MIND = "changed_mind"
    DUPLICATE_ORDER = "duplicate_order"
    OTHER = "other"


class ItemCondition(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    DEFECTIVE = "defective"
    UNOPENED = "unopened"

    @property
    def eligible_for_full_refund(self) -> bool:
        return self in (ItemCondition.EXCELLENT, ItemCondition.GOOD, ItemCondition.DEFECTIVE, ItemCondition.UNOPENED)

    @property
    def refund_percentage(self) -> Decimal:
        return REFUND_PERCENTAGES[self]


REFUND_PERCENTAGES: Dict[ItemCondition, Decimal] = {
    ItemCondition.EXCELLENT: Decimal("1.00"),
    ItemCondition.UNOPENED: Decimal("1.00"),
    ItemCondition.DEFECTIVE: Decimal("1.00"),
    ItemCondition.GOOD: Decimal("0.90"),
    ItemCondition.FAIR: Decimal("0.70"),
    ItemCondition.POOR: Decimal("0.50"),
}


class ImageType(str, Enum):
    DEFECT_EVIDENCE = "defect_evidence"
    PACKAGING_DAMAGE = "packaging_damage"
    WRONG_ITEM = "wrong_item"
    SIZE_COMPARISON = "size_comparison"
    QUALITY_ISSUE = "quality_issue"
    UNBOXING = "unboxing"
    GENERAL = "general"
    RECEIPT = "receipt"
    OTHER = "other"


class ReturnRequestItem(BaseModel):
    id: str
    order_item_id: str
    variant_id: str
    return_quantity: conint(gt=0)
    unit_price: Decimal
    return_amount: Decimal
    reason: Optional[str] = None
    condition_received: Optional[ItemCondition] = None
    quality_check_notes: Optional[str] = None
    approved_return_quantity: Optional[int] = None
    approved_return_amount: Optional[Decimal] = None

    def with_quality_check(
        self,
        condition: ItemCondition,
        approved_quantity: int,
        notes: Optional[str],
    ) -> "ReturnRequestItem":
        base = self.unit_price * approved_quantity
        return self.model_copy(
            update={
                "condition_received": condition,
                "quality_check_notes": notes,
                "approved_return_quantity": approved_quantity,
                "approved_return_amount": money(base * condition.refund_percentage),
            }
        )


class ReturnRequestImage(BaseModel):
    id: str
    storage_key: str
    original_filename: str
    content_type: str
    size: int
    image_type: ImageType = ImageType.GENERAL
    created_at: datetime


class ReturnRequest(BaseModel):
    id: str
    tenant_id: str
    order_id: str
    customer_id: str
    return_number: str
    status: ReturnStatus = ReturnStatus.PENDING
    return_type: ReturnType = ReturnType.OTHER
    reason: str
    customer_comments: Optional[str] = None
    admin_comments: Optional[str] = None
    items: List[ReturnRequestItem]
    images: List[ReturnRequestImage] = Field(default_factory=list)
    total_return_amount: Decimal
    refund_amount: Decimal = Decimal("0.00")
    refund_id: Optional[str] = None
    approved_by: Optional[str] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    requested_at: datetime
    updated_at: datetime
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    pickup_scheduled_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    received_at: Optional[datetime] = None
    quality_check_completed_at: Optional[datetime] = None
    refund_processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    version: int = 0

    @property
    def refund_eligible(self) -> bool:
        return (
            self.status == ReturnStatus.QUALITY_APPROVED
            and self.refund_amount > 0
            and self.refund_id is None
        )


# Commands


class ReturnItemRequest(BaseModel):
    order_item_id: str
    return_quantity: int
    reason: Optional[str] = None


class ReturnCreate(BaseModel):
    order_id: str
    reason: str
    return_type: ReturnType = ReturnType.OTHER
    customer_comments: Optional[str] = None
    items: List[ReturnItemRequest] = Field(min_length=1)


class QualityCheckItem(BaseModel):
    item_id: str
    condition: ItemCondition
    approved_quantity: conint(ge=0)
    notes: Optional[str] = None


class ImageUpload(BaseModel):
    filename: str
    content_type: str
    content: bytes
    image_type: ImageType = ImageType.GENERAL
