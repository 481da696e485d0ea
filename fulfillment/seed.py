from __future__ import annotations

import json
from pathlib import Path
from typing import List

from pydantic import BaseModel

from .domain import Variant


class VariantSeed(BaseModel):
    variants: List[Variant]


def load_variant_seed(path: str) -> List[Variant]:
    if not path:
        return []
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    seed = VariantSeed(**data)
    return seed.variants
