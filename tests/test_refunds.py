import time
from decimal import Decimal

import pytest

from conftest import TENANT, Shop
from fulfillment.container import build_container
from fulfillment.domain import EventType, OrderStatus, PaymentStatus, RefundType
from fulfillment.errors import (
    GatewayError,
    NotFoundError,
    RefundAmountExceedsMax,
    RefundNotEligible,
    StateConflictError,
    ValidationError,
)
from fulfillment.payments.gateway import SandboxPaymentGateway, sign_payload
from fulfillment.settings import Settings


def captured_order(shop, total="2500.00"):
    variant = shop.variant()
    order = shop.place([(variant, 1, total)])
    shop.pay(order)
    return order


class TestCapture:
    def test_authorize_then_capture(self, shop):
        variant = shop.variant()
        order = shop.place([(variant, 2, "500.00")])

        payment = shop.refunds.authorize(TENANT, order.id)
        assert payment.status == PaymentStatus.AUTHORIZED
        assert payment.amount == Decimal("1000.00")
        assert payment.gateway_order_id.startswith("order_sandbox_")

        result = shop.refunds.capture(TENANT, order.id, Decimal("1000.00"))
        assert result.payment_status == PaymentStatus.CAPTURED
        assert shop.refunds.payment_for_order(TENANT, order.id).captured_at == shop.clock.now()

    def test_capture_twice_conflicts(self, shop):
        order = captured_order(shop)
        with pytest.raises(StateConflictError):
            shop.refunds.capture(TENANT, order.id, order.total_amount)

    def test_capture_amount_must_fit_authorization(self, shop):
        variant = shop.variant()
        order = shop.place([(variant, 1, "100.00")])
        shop.refunds.authorize(TENANT, order.id)

        with pytest.raises(ValidationError):
            shop.refunds.capture(TENANT, order.id, Decimal("100.01"))

    def test_missing_payment(self, shop):
        variant = shop.variant()
        order = shop.place([(variant, 1, "100.00")])
        with pytest.raises(NotFoundError):
            shop.refunds.payment_for_order(TENANT, order.id)


class TestRefunds:
    def test_partial_then_full_refund(self, shop):
        order = captured_order(shop, "2500.00")

        partial = shop.refunds.partial_refund(TENANT, order.id, Decimal("1000"), "damaged box")
        assert partial.refund_type == RefundType.PARTIAL
        assert partial.payment_status == PaymentStatus.PARTIALLY_REFUNDED
        assert partial.total_refunded == Decimal("1000.00")
        assert partial.refund_id.startswith("rfnd_sandbox_")

        full = shop.refunds.full_refund(TENANT, order.id, "customer unhappy")
        assert full.amount == Decimal("1500.00")
        assert full.payment_status == PaymentStatus.REFUNDED

        payment = shop.refunds.payment_for_order(TENANT, order.id)
        assert payment.refund_amount == payment.amount
        assert payment.last_refund_id == full.refund_id

        with pytest.raises(RefundNotEligible):
            shop.refunds.full_refund(TENANT, order.id, "again")
        assert len(shop.refunds.refunds_for_payment(payment.id)) == 2

    def test_partial_refund_of_whole_amount_closes_payment(self, shop):
        order = captured_order(shop, "2500.00")

        result = shop.refunds.partial_refund(TENANT, order.id, Decimal("2500.00"), "lost in transit")

        assert result.refund_type == RefundType.PARTIAL
        assert result.payment_status == PaymentStatus.REFUNDED
        payment = shop.refunds.payment_for_order(TENANT, order.id)
        assert payment.status == PaymentStatus.REFUNDED
        assert payment.refund_amount == Decimal("2500.00")

        with pytest.raises(RefundNotEligible):
            shop.refunds.full_refund(TENANT, order.id, "again")
        assert len(shop.refunds.refunds_for_payment(payment.id)) == 1

    def test_partial_refund_cannot_exceed_refundable(self, shop):
        order = captured_order(shop, "2500.00")
        shop.refunds.partial_refund(TENANT, order.id, Decimal("2000"), "first")

        with pytest.raises(RefundAmountExceedsMax) as exc:
            shop.refunds.partial_refund(TENANT, order.id, Decimal("600"), "second")
        assert exc.value.maximum == Decimal("500.00")

    def test_partial_refund_must_be_positive(self, shop):
        order = captured_order(shop)
        with pytest.raises(ValidationError):
            shop.refunds.partial_refund(TENANT, order.id, Decimal("0"), "nothing")

    def test_refund_requires_captured_payment(self, shop):
        variant = shop.variant()
        order = shop.place([(variant, 1, "100.00")])
        shop.refunds.authorize(TENANT, order.id)

        with pytest.raises(RefundNotEligible):
            shop.refunds.full_refund(TENANT, order.id, "not captured")

    def test_refunded_order_is_not_eligible(self, shop):
        order = shop.delivered_order()
        shop.orders.request_return(TENANT, order.id, "broken")
        shop.orders.refund(TENANT, order.id)

        with pytest.raises(RefundNotEligible):
            shop.refunds.partial_refund(TENANT, order.id, Decimal("10"), "late")

    def test_gateway_failure_leaves_ledger_untouched(self, shop):
        order = captured_order(shop, "2500.00")
        shop.container.gateway.fail_next("refund", "Issuer unavailable")

        with pytest.raises(GatewayError) as exc:
            shop.refunds.partial_refund(TENANT, order.id, Decimal("1000"), "damaged")

        assert "Issuer unavailable" in str(exc.value)
        payment = shop.refunds.payment_for_order(TENANT, order.id)
        assert payment.status == PaymentStatus.CAPTURED
        assert payment.refund_amount == Decimal("0.00")
        assert shop.refunds.refunds_for_payment(payment.id) == []
        assert shop.container.event_bus.of_type(EventType.REFUND_PROCESSED.value) == []

        retried = shop.refunds.partial_refund(TENANT, order.id, Decimal("1000"), "damaged")
        assert retried.total_refunded == Decimal("1000.00")

    def test_idempotency_key_replays_recorded_refund(self, shop):
        order = captured_order(shop, "2500.00")

        first = shop.refunds.partial_refund(TENANT, order.id, Decimal("300"), "scratch", idempotency_key="rma-1")
        second = shop.refunds.partial_refund(TENANT, order.id, Decimal("300"), "scratch", idempotency_key="rma-1")

        assert second.replayed is True
        assert second.refund_id == first.refund_id
        payment = shop.refunds.payment_for_order(TENANT, order.id)
        assert payment.refund_amount == Decimal("300.00")
        refund_calls = [call for call in shop.container.gateway.calls if call["operation"] == "refund"]
        assert len(refund_calls) == 1

    def test_slow_gateway_times_out(self, clock, ids):
        class SlowGateway(SandboxPaymentGateway):
            def refund(self, payment_ref, amount, reason, idempotency_key):
                time.sleep(0.5)
                return super().refund(payment_ref, amount, reason, idempotency_key)

        settings = Settings(gateway_timeout_seconds=0.05)
        container = build_container(settings, clock=clock, ids=ids, gateway=SlowGateway("secret", ids))
        shop = Shop(container, clock)
        order = captured_order(shop)
        try:
            with pytest.raises(GatewayError) as exc:
                shop.refunds.full_refund(TENANT, order.id, "slow")
        finally:
            container.close()

        assert "timed out" in exc.value.detail
        assert shop.refunds.payment_for_order(TENANT, order.id).status == PaymentStatus.CAPTURED


class TestSignatures:
    def test_verify_signature(self, shop, settings):
        payload = b'{"event":"refund.processed"}'
        signature = sign_payload(settings.gateway_webhook_secret, payload)

        assert shop.refunds.verify_signature(payload, signature) is True
        assert shop.refunds.verify_signature(payload, "0" * 64) is False
        assert shop.refunds.verify_signature(payload, "") is False


def test_refund_does_not_move_order_status(shop):
    order = captured_order(shop)
    shop.refunds.full_refund(TENANT, order.id, "goodwill")
    assert shop.orders.get(TENANT, order.id).status == OrderStatus.PENDING_PAYMENT
