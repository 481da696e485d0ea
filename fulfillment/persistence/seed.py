from __future__ import annotations

from sqlalchemy import select

from ..seed import load_variant_seed
from .db import Database
from .models import VariantRecord


def seed_variants_if_empty(db: Database, seed_path: str) -> int:
    variants = load_variant_seed(seed_path)
    if not variants:
        return 0

    with db.session() as session:
        existing = session.execute(select(VariantRecord.id).limit(1)).first()
        if existing:
            return 0
        session.add_all(
            [
                VariantRecord(
                    id=variant.id,
                    tenant_id=variant.tenant_id,
                    sku=variant.sku,
                    stock=variant.stock,
                    status=variant.status.value,
                    version=0,
                )
                for variant in variants
            ]
        )
    return len(variants)
