from decimal import Decimal

import pytest

from conftest import OTHER_TENANT, TENANT
from fulfillment.domain import EventType, OrderStatus, PaymentStatus
from fulfillment.errors import (
    InvalidImage,
    InvalidReturnQuantity,
    InvalidStateTransition,
    NotFoundError,
    RefundProcessingFailed,
    ReturnNotEligible,
    ReturnWindowExpired,
)
from fulfillment.repositories import InMemoryReturnRequestRepository
from fulfillment.returns.domain import (
    ImageType,
    ImageUpload,
    ItemCondition,
    QualityCheckItem,
    ReturnCreate,
    ReturnItemRequest,
    ReturnStatus,
    ReturnType,
)


def request_for(order, quantity=1, return_type=ReturnType.DEFECTIVE):
    return ReturnCreate(
        order_id=order.id,
        reason="Stopped working after a week",
        return_type=return_type,
        items=[ReturnItemRequest(order_item_id=order.items[0].id, return_quantity=quantity)],
    )


def received_return(shop, quantity=2, price="1500.00"):
    order = shop.delivered_order(quantity=quantity, price=price)
    request = shop.returns.create(TENANT, request_for(order, quantity=quantity))
    shop.returns.approve(TENANT, request.id, "agent-7")
    shop.returns.schedule_pickup(TENANT, request.id)
    shop.returns.mark_picked_up(TENANT, request.id)
    shop.returns.mark_in_transit(TENANT, request.id)
    shop.returns.mark_received(TENANT, request.id)
    shop.returns.start_quality_check(TENANT, request.id)
    return order, shop.returns.get(TENANT, request.id)


def approve_quality(shop, request, condition=ItemCondition.EXCELLENT, quantity=None):
    item = request.items[0]
    return shop.returns.complete_quality_check(
        TENANT,
        request.id,
        [
            QualityCheckItem(
                item_id=item.id,
                condition=condition,
                approved_quantity=item.return_quantity if quantity is None else quantity,
            )
        ],
    )


class TestTransitionTable:
    def test_terminal_statuses(self):
        assert {status for status in ReturnStatus if status.is_terminal} == {
            ReturnStatus.REJECTED,
            ReturnStatus.QUALITY_REJECTED,
            ReturnStatus.COMPLETED,
            ReturnStatus.CANCELLED,
        }

    def test_refund_percentages(self):
        assert ItemCondition.GOOD.refund_percentage == Decimal("0.90")
        assert ItemCondition.POOR.refund_percentage == Decimal("0.50")
        assert not ItemCondition.FAIR.eligible_for_full_refund
        assert ItemCondition.UNOPENED.eligible_for_full_refund


class TestCreate:
    def test_create_moves_order_to_return_requested(self, shop):
        order = shop.delivered_order(quantity=2, price="1500.00")

        request = shop.returns.create(TENANT, request_for(order, quantity=2))

        assert request.status == ReturnStatus.PENDING
        assert request.return_number.startswith("RET-20240301-093000-")
        assert request.total_return_amount == Decimal("3000.00")
        assert request.items[0].return_amount == Decimal("3000.00")
        assert request.customer_id == order.customer_id
        assert shop.orders.get(TENANT, order.id).status == OrderStatus.RETURN_REQUESTED
        assert shop.returns.get_by_number(TENANT, request.return_number).id == request.id

        created = shop.container.event_bus.of_type(EventType.RETURN_CREATED.value)
        assert created[-1].payload["return_number"] == request.return_number

    def test_quantity_above_ordered_is_rejected(self, shop):
        order = shop.delivered_order(quantity=2)

        with pytest.raises(InvalidReturnQuantity) as exc:
            shop.returns.create(TENANT, request_for(order, quantity=3))

        assert exc.value.maximum == 2
        assert shop.orders.get(TENANT, order.id).status == OrderStatus.DELIVERED
        assert shop.returns.list(TENANT) == []

    def test_zero_quantity_is_rejected(self, shop):
        order = shop.delivered_order(quantity=2)
        with pytest.raises(InvalidReturnQuantity):
            shop.returns.create(TENANT, request_for(order, quantity=0))

    def test_same_item_listed_twice_counts_together(self, shop):
        order = shop.delivered_order(quantity=2)
        item_id = order.items[0].id
        payload = ReturnCreate(
            order_id=order.id,
            reason="Both broken",
            items=[
                ReturnItemRequest(order_item_id=item_id, return_quantity=2),
                ReturnItemRequest(order_item_id=item_id, return_quantity=1),
            ],
        )
        with pytest.raises(InvalidReturnQuantity):
            shop.returns.create(TENANT, payload)

    def test_unknown_order_item(self, shop):
        order = shop.delivered_order()
        payload = ReturnCreate(
            order_id=order.id,
            reason="?",
            items=[ReturnItemRequest(order_item_id="nope", return_quantity=1)],
        )
        with pytest.raises(NotFoundError):
            shop.returns.create(TENANT, payload)

    def test_undelivered_order_is_not_eligible(self, shop):
        variant = shop.variant()
        order = shop.place([(variant, 1, "100.00")])
        with pytest.raises(ReturnNotEligible):
            shop.returns.create(TENANT, request_for(order))

    def test_second_request_while_one_is_open(self, shop):
        order = shop.delivered_order()
        shop.returns.create(TENANT, request_for(order))
        with pytest.raises(ReturnNotEligible):
            shop.returns.create(TENANT, request_for(order))

    def test_failed_insert_restores_order(self, shop, monkeypatch):
        order = shop.delivered_order()

        def broken_add(self, request):
            raise RuntimeError("return store unavailable")

        monkeypatch.setattr(InMemoryReturnRequestRepository, "add", broken_add)
        with pytest.raises(RuntimeError):
            shop.returns.create(TENANT, request_for(order))

        restored = shop.orders.get(TENANT, order.id)
        assert restored.status == OrderStatus.DELIVERED
        assert shop.returns.list(TENANT) == []

        monkeypatch.undo()
        request = shop.returns.create(TENANT, request_for(order))
        assert request.status == ReturnStatus.PENDING
        assert shop.orders.get(TENANT, order.id).status == OrderStatus.RETURN_REQUESTED

    def test_outside_return_window(self, shop):
        order = shop.delivered_order()
        shop.clock.advance(days=31)

        with pytest.raises(ReturnWindowExpired):
            shop.returns.create(TENANT, request_for(order))
        assert shop.returns.list(TENANT) == []

    def test_tenant_isolation(self, shop):
        order = shop.delivered_order()
        request = shop.returns.create(TENANT, request_for(order))

        with pytest.raises(NotFoundError):
            shop.returns.get(OTHER_TENANT, request.id)
        with pytest.raises(NotFoundError):
            shop.returns.create(OTHER_TENANT, request_for(order))


class TestReview:
    def test_approve(self, shop):
        order = shop.delivered_order()
        request = shop.returns.create(TENANT, request_for(order))

        approved = shop.returns.approve(TENANT, request.id, "agent-7", notes="Looks legit")

        assert approved.status == ReturnStatus.APPROVED
        assert approved.approved_by == "agent-7"
        assert approved.admin_comments == "Looks legit"
        assert shop.container.event_bus.of_type(EventType.RETURN_APPROVED.value)[-1].payload["approved_by"] == "agent-7"

    def test_reject_reverts_order_to_delivered(self, shop):
        order = shop.delivered_order()
        request = shop.returns.create(TENANT, request_for(order))

        rejected = shop.returns.reject(TENANT, request.id, "agent-7", "Outside policy")

        assert rejected.status == ReturnStatus.REJECTED
        assert rejected.rejection_reason == "Outside policy"
        assert shop.orders.get(TENANT, order.id).status == OrderStatus.DELIVERED

    def test_approve_only_from_pending(self, shop):
        order = shop.delivered_order()
        request = shop.returns.create(TENANT, request_for(order))
        shop.returns.approve(TENANT, request.id, "agent-7")

        with pytest.raises(InvalidStateTransition):
            shop.returns.approve(TENANT, request.id, "agent-8")
        with pytest.raises(InvalidStateTransition):
            shop.returns.reject(TENANT, request.id, "agent-8", "changed my mind")

    def test_cancel_before_pickup(self, shop):
        order = shop.delivered_order()
        request = shop.returns.create(TENANT, request_for(order))
        shop.returns.approve(TENANT, request.id, "agent-7")

        cancelled = shop.returns.cancel(TENANT, request.id, "Customer kept the item")

        assert cancelled.status == ReturnStatus.CANCELLED
        assert cancelled.cancelled_at is not None
        assert shop.orders.get(TENANT, order.id).status == OrderStatus.DELIVERED

    def test_cannot_cancel_after_pickup(self, shop):
        order = shop.delivered_order()
        request = shop.returns.create(TENANT, request_for(order))
        shop.returns.approve(TENANT, request.id, "agent-7")
        shop.returns.mark_picked_up(TENANT, request.id)

        with pytest.raises(InvalidStateTransition):
            shop.returns.cancel(TENANT, request.id, "too late")


class TestLogistics:
    def test_pickup_can_go_straight_to_quality_check(self, shop):
        order = shop.delivered_order()
        request = shop.returns.create(TENANT, request_for(order))
        shop.returns.approve(TENANT, request.id, "agent-7")
        picked = shop.returns.mark_picked_up(TENANT, request.id)

        checking = shop.returns.start_quality_check(TENANT, request.id)

        assert picked.picked_up_at is not None
        assert checking.status == ReturnStatus.QUALITY_CHECK

    def test_cannot_receive_before_transit(self, shop):
        order = shop.delivered_order()
        request = shop.returns.create(TENANT, request_for(order))
        shop.returns.approve(TENANT, request.id, "agent-7")

        with pytest.raises(InvalidStateTransition):
            shop.returns.mark_received(TENANT, request.id)
        with pytest.raises(InvalidStateTransition):
            shop.returns.start_quality_check(TENANT, request.id)


class TestImages:
    def test_add_images_stores_keys(self, shop):
        order = shop.delivered_order()
        request = shop.returns.create(TENANT, request_for(order))

        updated = shop.returns.add_images(
            TENANT,
            request.id,
            [
                ImageUpload(
                    filename="crack.JPG",
                    content_type="image/jpeg",
                    content=b"\xff\xd8\xff",
                    image_type=ImageType.DEFECT_EVIDENCE,
                ),
                ImageUpload(filename="box.png", content_type="image/png", content=b"\x89PNG"),
            ],
        )

        assert len(updated.images) == 2
        key = updated.images[0].storage_key
        assert key.startswith(f"returns/{TENANT}/{request.id}/defect_evidence_")
        assert key.endswith(".jpg")
        assert updated.images[1].size == 4

    @pytest.mark.parametrize(
        "upload",
        [
            ImageUpload(filename="notes.pdf", content_type="application/pdf", content=b"%PDF"),
            ImageUpload(filename="empty.png", content_type="image/png", content=b""),
        ],
    )
    def test_invalid_images_are_rejected(self, shop, upload):
        order = shop.delivered_order()
        request = shop.returns.create(TENANT, request_for(order))

        with pytest.raises(InvalidImage):
            shop.returns.add_images(TENANT, request.id, [upload])
        assert shop.returns.get(TENANT, request.id).images == []

    def test_no_images_after_terminal_status(self, shop):
        order = shop.delivered_order()
        request = shop.returns.create(TENANT, request_for(order))
        shop.returns.reject(TENANT, request.id, "agent-7", "Outside policy")

        with pytest.raises(InvalidStateTransition):
            shop.returns.add_images(
                TENANT,
                request.id,
                [ImageUpload(filename="a.png", content_type="image/png", content=b"x")],
            )


class TestQualityCheck:
    def test_good_condition_approves_ninety_percent(self, shop):
        _, request = received_return(shop, quantity=2, price="1500.00")

        checked = approve_quality(shop, request, condition=ItemCondition.GOOD)

        assert checked.status == ReturnStatus.QUALITY_APPROVED
        assert checked.refund_amount == Decimal("2700.00")
        assert checked.items[0].approved_return_amount == Decimal("2700.00")
        assert checked.items[0].condition_received == ItemCondition.GOOD
        assert checked.refund_eligible

    def test_fair_condition_is_quality_rejected(self, shop):
        _, request = received_return(shop)

        checked = approve_quality(shop, request, condition=ItemCondition.FAIR)

        assert checked.status == ReturnStatus.QUALITY_REJECTED
        assert not checked.refund_eligible

    def test_zero_approved_quantity_is_quality_rejected(self, shop):
        _, request = received_return(shop)
        checked = approve_quality(shop, request, quantity=0)
        assert checked.status == ReturnStatus.QUALITY_REJECTED

    def test_approved_quantity_cannot_exceed_returned(self, shop):
        _, request = received_return(shop, quantity=2)

        with pytest.raises(InvalidReturnQuantity):
            approve_quality(shop, request, quantity=3)
        assert shop.returns.get(TENANT, request.id).status == ReturnStatus.QUALITY_CHECK

    def test_unchecked_items_block_approval(self, shop):
        _, request = received_return(shop)
        checked = shop.returns.complete_quality_check(TENANT, request.id, [])
        assert checked.status == ReturnStatus.QUALITY_REJECTED

    def test_unknown_item(self, shop):
        _, request = received_return(shop)
        with pytest.raises(NotFoundError):
            shop.returns.complete_quality_check(
                TENANT,
                request.id,
                [QualityCheckItem(item_id="nope", condition=ItemCondition.GOOD, approved_quantity=1)],
            )


class TestRefundAndCompletion:
    def test_full_flow_with_partial_refund(self, shop):
        order, request = received_return(shop, quantity=2, price="1500.00")
        approve_quality(shop, request, condition=ItemCondition.GOOD)

        refunded = shop.returns.process_refund(TENANT, request.id)

        assert refunded.status == ReturnStatus.REFUND_PROCESSED
        assert refunded.refund_id.startswith("rfnd_sandbox_")
        payment = shop.refunds.payment_for_order(TENANT, order.id)
        assert payment.refund_amount == Decimal("2700.00")
        assert payment.status == PaymentStatus.PARTIALLY_REFUNDED
        assert shop.orders.get(TENANT, order.id).status == OrderStatus.RETURN_REQUESTED

        completed = shop.returns.complete(TENANT, request.id)

        assert completed.status == ReturnStatus.COMPLETED
        assert shop.orders.get(TENANT, order.id).status == OrderStatus.RETURNED
        assert shop.container.event_bus.of_type(EventType.RETURN_COMPLETED.value)

    def test_full_value_refund_marks_order_refunded(self, shop):
        order, request = received_return(shop, quantity=2, price="1500.00")
        approve_quality(shop, request, condition=ItemCondition.EXCELLENT)

        shop.returns.process_refund(TENANT, request.id)

        assert shop.orders.get(TENANT, order.id).status == OrderStatus.REFUNDED
        assert shop.refunds.payment_for_order(TENANT, order.id).status == PaymentStatus.REFUNDED

        shop.returns.complete(TENANT, request.id)
        assert shop.orders.get(TENANT, order.id).status == OrderStatus.REFUNDED

    def test_refund_only_after_quality_approval(self, shop):
        _, request = received_return(shop)
        with pytest.raises(ReturnNotEligible):
            shop.returns.process_refund(TENANT, request.id)

    def test_refund_cannot_be_processed_twice(self, shop):
        _, request = received_return(shop, quantity=1, price="100.00")
        approve_quality(shop, request, condition=ItemCondition.GOOD)
        shop.returns.process_refund(TENANT, request.id)

        with pytest.raises(ReturnNotEligible):
            shop.returns.process_refund(TENANT, request.id)

    def test_gateway_failure_keeps_request_retryable(self, shop):
        order, request = received_return(shop, quantity=2, price="1500.00")
        approve_quality(shop, request, condition=ItemCondition.GOOD)
        shop.container.gateway.fail_next("refund", "Gateway timeout")

        with pytest.raises(RefundProcessingFailed) as exc:
            shop.returns.process_refund(TENANT, request.id)

        assert exc.value.return_request_id == request.id
        current = shop.returns.get(TENANT, request.id)
        assert current.status == ReturnStatus.QUALITY_APPROVED
        assert current.refund_id is None
        assert shop.refunds.payment_for_order(TENANT, order.id).refund_amount == Decimal("0.00")

        retried = shop.returns.process_refund(TENANT, request.id)
        assert retried.status == ReturnStatus.REFUND_PROCESSED

    def test_complete_requires_processed_refund(self, shop):
        _, request = received_return(shop)
        approve_quality(shop, request)
        with pytest.raises(InvalidStateTransition):
            shop.returns.complete(TENANT, request.id)


class TestListing:
    def test_list_filters_by_status(self, shop):
        first = shop.returns.create(TENANT, request_for(shop.delivered_order()))
        shop.clock.advance(minutes=5)
        second = shop.returns.create(TENANT, request_for(shop.delivered_order()))
        shop.returns.approve(TENANT, second.id, "agent-7")

        assert [item.id for item in shop.returns.list(TENANT)] == [second.id, first.id]
        assert [item.id for item in shop.returns.list(TENANT, ReturnStatus.PENDING)] == [first.id]
        assert shop.returns.list(OTHER_TENANT) == []
