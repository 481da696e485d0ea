import json

import pytest

from conftest import TENANT
from fulfillment.container import build_container
from fulfillment.payments.gateway import SandboxPaymentGateway
from fulfillment.repositories import InMemoryEventBus
from fulfillment.settings import Settings


class TestBuildContainer:
    def test_in_memory_by_default(self, container):
        assert container.db is None
        assert container.outbox is None
        assert isinstance(container.event_bus, InMemoryEventBus)
        assert isinstance(container.gateway, SandboxPaymentGateway)

    def test_in_memory_variants_are_seeded(self, tmp_path, clock, ids):
        seed_file = tmp_path / "variants.json"
        seed_file.write_text(
            json.dumps({"variants": [{"id": "v-1", "tenant_id": TENANT, "sku": "MUG", "stock": 8}]}),
            encoding="utf-8",
        )
        container = build_container(Settings(variant_seed_path=str(seed_file)), clock=clock, ids=ids)
        try:
            assert container.reservation_ledger.available_stock(TENANT, "v-1") == 8
        finally:
            container.close()

    def test_live_mode_needs_a_gateway(self, clock, ids):
        with pytest.raises(ValueError):
            build_container(Settings(payment_sandbox=False), clock=clock, ids=ids)
