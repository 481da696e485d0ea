from __future__ import annotations

import random
from datetime import datetime
from typing import Protocol
from uuid import uuid4


class IdProvider(Protocol):
    def new_id(self) -> str: ...

    def reference(self, prefix: str, moment: datetime) -> str: ...

    def order_number(self, moment: datetime) -> str: ...


class UUIDProvider:
    def new_id(self) -> str:
        return uuid4().hex

    def reference(self, prefix: str, moment: datetime) -> str:
        # PREFIX-YYYYMMDD-HHMMSS-NNN
        return f"{prefix}-{moment:%Y%m%d-%H%M%S}-{random.randint(0, 999):03d}"

    def order_number(self, moment: datetime) -> str:
        # ORD-YYYYMMDD-HHMMSSmmm-XXXXXXXXXXXX, unique across tenants
        millis = moment.microsecond // 1000
        return f"ORD-{moment:%Y%m%d-%H%M%S}{millis:03d}-{uuid4().hex[:12].upper()}"
