from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from ..clock import Clock
from ..domain import EventType, Order, OrderStatus, money
from ..errors import (
    DomainError,
    InvalidReturnQuantity,
    InvalidStateTransition,
    NotFoundError,
    RefundProcessingFailed,
    ReturnNotEligible,
)
from ..id_provider import IdProvider
from ..logging import ServiceLogger
from ..payments.service import RefundCoordinator
from ..repositories import ReturnRequestRepository
from ..services import EventPublisher, OrderStateMachine
from .domain import (
    ImageUpload,
    QualityCheckItem,
    ReturnCreate,
    ReturnItemRequest,
    ReturnRequest,
    ReturnRequestImage,
    ReturnRequestItem,
    ReturnStatus,
)
from .media import MediaStorage


class ReturnWorkflow:
    """Drives a return request (RMA) from submission to refund and completion.

    The parent order is moved only through the OrderStateMachine, and money only
    moves through the RefundCoordinator.
    """

    def __init__(
        self,
        requests: ReturnRequestRepository,
        orders: OrderStateMachine,
        refunds: RefundCoordinator,
        media: MediaStorage,
        events: EventPublisher,
        clock: Clock,
        ids: IdProvider,
    ) -> None:
        self._requests = requests
        self._orders = orders
        self._refunds = refunds
        self._media = media
        self._events = events
        self._clock = clock
        self._ids = ids
        self._log = ServiceLogger("returns")

    def create(self, tenant_id: str, payload: ReturnCreate) -> ReturnRequest:
        order = self._orders.get(tenant_id, payload.order_id)
        if not order.status.can_be_returned():
            raise ReturnNotEligible(f"Order {order.id} cannot be returned in status {order.status.value}")

        items = self._build_items(order, payload.items)
        now = self._clock.now()
        request = ReturnRequest(
            id=self._ids.new_id(),
            tenant_id=tenant_id,
            order_id=order.id,
            customer_id=order.customer_id,
            return_number=self._ids.reference("RET", now),
            return_type=payload.return_type,
            reason=payload.reason,
            customer_comments=payload.customer_comments,
            items=items,
            total_return_amount=money(sum(item.return_amount for item in items)),
            requested_at=now,
            updated_at=now,
        )
        self._orders.request_return(tenant_id, order.id, f"Return request created: {request.return_number}")
        try:
            self._requests.add(request)
        except Exception as exc:
            self._log.error(
                "Return request insert failed, restoring order",
                return_number=request.return_number,
                order_id=order.id,
                error=str(exc),
            )
            self._orders.reject_return(tenant_id, order.id, f"Return request {request.return_number} not recorded")
            raise

        self._log.info(
            "Return request created",
            return_number=request.return_number,
            order_id=order.id,
            amount=request.total_return_amount,
        )
        self._events.publish(
            EventType.RETURN_CREATED,
            tenant_id,
            self._payload(request, created_by="customer", return_type=request.return_type.value),
        )
        return request

    def get(self, tenant_id: str, request_id: str) -> ReturnRequest:
        request = self._requests.get(tenant_id, request_id)
        if request is None:
            raise NotFoundError("ReturnRequest", request_id)
        return request

    def get_by_number(self, tenant_id: str, return_number: str) -> ReturnRequest:
        request = self._requests.get_by_number(tenant_id, return_number)
        if request is None:
            raise NotFoundError("ReturnRequest", return_number)
        return request

    def list(self, tenant_id: str, status: Optional[ReturnStatus] = None, limit: int = 50) -> List[ReturnRequest]:
        return self._requests.list(tenant_id, status, limit)

    def add_images(self, tenant_id: str, request_id: str, uploads: Iterable[ImageUpload]) -> ReturnRequest:
        request = self.get(tenant_id, request_id)
        if request.status.is_terminal:
            raise InvalidStateTransition("ReturnRequest", request.status.value, "images_added")

        now = self._clock.now()
        images: List[ReturnRequestImage] = []
        for upload in uploads:
            storage_key = self._media.store(tenant_id, request.id, upload)
            images.append(
                ReturnRequestImage(
                    id=self._ids.new_id(),
                    storage_key=storage_key,
                    original_filename=upload.filename,
                    content_type=upload.content_type,
                    size=len(upload.content),
                    image_type=upload.image_type,
                    created_at=now,
                )
            )
        if not images:
            return request

        saved = self._requests.update(
            request.model_copy(update={"images": [*request.images, *images], "updated_at": now})
        )
        self._events.publish(EventType.RETURN_IMAGES_ADDED, tenant_id, self._payload(saved, count=len(images)))
        return saved

    def approve(self, tenant_id: str, request_id: str, approved_by: str, notes: Optional[str] = None) -> ReturnRequest:
        request = self.get(tenant_id, request_id)
        now = self._clock.now()
        return self._advance(
            request,
            ReturnStatus.APPROVED,
            event=EventType.RETURN_APPROVED,
            event_details={"approved_by": approved_by, "notes": notes},
            approved_by=approved_by,
            approved_at=now,
            admin_comments=notes,
        )

    def reject(self, tenant_id: str, request_id: str, rejected_by: str, reason: str) -> ReturnRequest:
        request = self.get(tenant_id, request_id)
        now = self._clock.now()
        saved = self._advance(
            request,
            ReturnStatus.REJECTED,
            event=EventType.RETURN_REJECTED,
            event_details={"rejected_by": rejected_by, "reason": reason},
            rejected_by=rejected_by,
            rejected_at=now,
            rejection_reason=reason,
        )
        self._revert_order(saved, reason)
        return saved

    def cancel(self, tenant_id: str, request_id: str, reason: str) -> ReturnRequest:
        request = self.get(tenant_id, request_id)
        saved = self._advance(
            request,
            ReturnStatus.CANCELLED,
            event_details={"reason": reason},
            cancelled_at=self._clock.now(),
        )
        self._revert_order(saved, reason)
        return saved

    def schedule_pickup(self, tenant_id: str, request_id: str) -> ReturnRequest:
        request = self.get(tenant_id, request_id)
        return self._advance(request, ReturnStatus.PICKUP_SCHEDULED, pickup_scheduled_at=self._clock.now())

    def mark_picked_up(self, tenant_id: str, request_id: str) -> ReturnRequest:
        request = self.get(tenant_id, request_id)
        return self._advance(request, ReturnStatus.PICKED_UP, picked_up_at=self._clock.now())

    def mark_in_transit(self, tenant_id: str, request_id: str) -> ReturnRequest:
        request = self.get(tenant_id, request_id)
        return self._advance(request, ReturnStatus.IN_TRANSIT)

    def mark_received(self, tenant_id: str, request_id: str) -> ReturnRequest:
        request = self.get(tenant_id, request_id)
        return self._advance(request, ReturnStatus.RECEIVED, received_at=self._clock.now())

    def start_quality_check(self, tenant_id: str, request_id: str) -> ReturnRequest:
        request = self.get(tenant_id, request_id)
        return self._advance(request, ReturnStatus.QUALITY_CHECK)

    def complete_quality_check(
        self,
        tenant_id: str,
        request_id: str,
        checks: Iterable[QualityCheckItem],
    ) -> ReturnRequest:
        request = self.get(tenant_id, request_id)
        if request.status != ReturnStatus.QUALITY_CHECK:
            raise InvalidStateTransition("ReturnRequest", request.status.value, "quality_checked")

        items: Dict[str, ReturnRequestItem] = {item.id: item for item in request.items}
        for check in checks:
            item = items.get(check.item_id)
            if item is None:
                raise NotFoundError("ReturnRequestItem", check.item_id)
            if check.approved_quantity > item.return_quantity:
                raise InvalidReturnQuantity(item.order_item_id, check.approved_quantity, item.return_quantity)
            items[item.id] = item.with_quality_check(check.condition, check.approved_quantity, check.notes)

        checked = [items[item.id] for item in request.items]
        refund_amount = money(sum((item.approved_return_amount or Decimal("0")) for item in checked))
        all_eligible = all(
            item.condition_received is not None and item.condition_received.eligible_for_full_refund
            for item in checked
        )
        target = ReturnStatus.QUALITY_APPROVED if all_eligible and refund_amount > 0 else ReturnStatus.QUALITY_REJECTED

        return self._advance(
            request,
            target,
            event_details={"refund_amount": str(refund_amount)},
            items=checked,
            refund_amount=refund_amount,
            quality_check_completed_at=self._clock.now(),
        )

    def process_refund(self, tenant_id: str, request_id: str) -> ReturnRequest:
        request = self.get(tenant_id, request_id)
        if not request.refund_eligible:
            raise ReturnNotEligible(
                f"Return request {request.return_number} is not eligible for refund (status {request.status.value})"
            )

        try:
            result = self._refunds.partial_refund(
                tenant_id,
                request.order_id,
                request.refund_amount,
                f"Return refund for {request.return_number}",
                idempotency_key=f"return:{request.id}",
            )
        except DomainError as exc:
            self._log.error("Return refund failed", return_number=request.return_number, error=exc)
            raise RefundProcessingFailed(request.id, str(exc)) from exc

        saved = self._advance(
            request,
            ReturnStatus.REFUND_PROCESSED,
            event_details={"refund_id": result.refund_id, "amount": str(result.amount)},
            refund_id=result.refund_id,
            refund_processed_at=self._clock.now(),
        )

        order = self._orders.get(tenant_id, request.order_id)
        if saved.refund_amount >= order.total_amount and order.status != OrderStatus.REFUNDED:
            self._orders.refund(tenant_id, order.id)
        return saved

    def complete(self, tenant_id: str, request_id: str) -> ReturnRequest:
        request = self.get(tenant_id, request_id)
        saved = self._advance(
            request,
            ReturnStatus.COMPLETED,
            event=EventType.RETURN_COMPLETED,
            event_details={"refund_id": request.refund_id},
            completed_at=self._clock.now(),
        )

        order = self._orders.get(tenant_id, saved.order_id)
        if order.status == OrderStatus.REFUNDED:
            self._log.info("Order already refunded, leaving status", order_id=order.id)
        else:
            self._orders.mark_returned(tenant_id, order.id)
        return saved

    def _build_items(self, order: Order, requested: Iterable[ReturnItemRequest]) -> List[ReturnRequestItem]:
        items: List[ReturnRequestItem] = []
        claimed: Dict[str, int] = {}
        for entry in requested:
            order_item = order.item(entry.order_item_id)
            if order_item is None:
                raise NotFoundError("OrderItem", entry.order_item_id)
            total = claimed.get(order_item.id, 0) + entry.return_quantity
            if entry.return_quantity <= 0 or total > order_item.quantity:
                raise InvalidReturnQuantity(order_item.id, entry.return_quantity, order_item.quantity)
            claimed[order_item.id] = total
            items.append(
                ReturnRequestItem(
                    id=self._ids.new_id(),
                    order_item_id=order_item.id,
                    variant_id=order_item.variant_id,
                    return_quantity=entry.return_quantity,
                    unit_price=order_item.unit_price,
                    return_amount=money(order_item.unit_price * entry.return_quantity),
                    reason=entry.reason,
                )
            )
        return items

    def _revert_order(self, request: ReturnRequest, reason: str) -> None:
        order = self._orders.get(request.tenant_id, request.order_id)
        if order.status == OrderStatus.RETURN_REQUESTED:
            self._orders.reject_return(request.tenant_id, order.id, reason)

    def _advance(
        self,
        request: ReturnRequest,
        target: ReturnStatus,
        event: EventType = EventType.RETURN_STATUS_CHANGED,
        event_details: Optional[Dict[str, Any]] = None,
        **fields: Any,
    ) -> ReturnRequest:
        if not request.status.can_transition_to(target):
            raise InvalidStateTransition("ReturnRequest", request.status.value, target.value)

        now = self._clock.now()
        previous = request.status
        saved = self._requests.update(request.model_copy(update={"status": target, "updated_at": now, **fields}))
        self._log.info(
            "Return request transitioned",
            return_number=saved.return_number,
            previous=previous.value,
            new=target.value,
        )
        self._events.publish(
            event,
            saved.tenant_id,
            self._payload(saved, previous_status=previous.value, changed_at=now, **(event_details or {})),
        )
        return saved

    def _payload(self, request: ReturnRequest, **extra: Any) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "return_request_id": request.id,
            "return_number": request.return_number,
            "order_id": request.order_id,
            "customer_id": request.customer_id,
            "status": request.status.value,
            "total_return_amount": str(request.total_return_amount),
            "refund_amount": str(request.refund_amount),
        }
        for key, value in extra.items():
            payload[key] = value.isoformat() if isinstance(value, datetime) else value
        return payload
