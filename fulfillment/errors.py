from __future__ import annotations

from decimal import Decimal
from typing import Optional


class DomainError(Exception):
    """Base class for domain/service errors."""


class NotFoundError(DomainError):
    def __init__(self, entity: str, identifier: object) -> None:
        super().__init__(f"{entity} not found: {identifier}")
        self.entity = entity
        self.identifier = identifier


class ValidationError(DomainError):
    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class StateConflictError(DomainError):
    """The caller's view of state is stale; re-fetch before retrying."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class ResourceExhaustedError(DomainError):
    pass


class InvariantViolation(DomainError):
    pass


class ExternalDependencyError(DomainError):
    pass


# Validation


class InvalidQuantity(ValidationError):
    def __init__(self, quantity: int) -> None:
        super().__init__(f"Quantity must be positive, got {quantity}")
        self.quantity = quantity


class InvalidReturnQuantity(ValidationError):
    def __init__(self, order_item_id: str, requested: int, maximum: int) -> None:
        super().__init__(
            f"Invalid return quantity {requested} for order item {order_item_id} (max: {maximum})"
        )
        self.order_item_id = order_item_id
        self.requested = requested
        self.maximum = maximum


class InvalidShippingInfo(ValidationError):
    pass


class InvalidImage(ValidationError):
    pass


# Lookups


class VariantNotFound(NotFoundError):
    def __init__(self, variant_id: str) -> None:
        super().__init__("Variant", variant_id)


# State conflicts


class InvalidStateTransition(StateConflictError):
    def __init__(self, entity: str, current: str, target: str) -> None:
        super().__init__(f"Cannot transition {entity} from {current} to {target}")
        self.entity = entity
        self.current = current
        self.target = target


class ConcurrentModification(StateConflictError):
    def __init__(self, entity: str, identifier: str) -> None:
        super().__init__(f"{entity} {identifier} was modified concurrently")
        self.entity = entity
        self.identifier = identifier


class PaymentNotCompleted(StateConflictError):
    pass


class ReturnWindowExpired(StateConflictError):
    pass


class ReturnNotEligible(StateConflictError):
    pass


class RefundNotEligible(StateConflictError):
    pass


class TenantMismatch(StateConflictError):
    pass


class VariantNotActive(StateConflictError):
    pass


# Resource exhaustion


class InsufficientStock(ResourceExhaustedError):
    def __init__(self, variant_id: str, available: int, requested: int) -> None:
        super().__init__(f"Insufficient stock. Available: {available}, Requested: {requested}")
        self.variant_id = variant_id
        self.available = available
        self.requested = requested


class RefundAmountExceedsMax(ResourceExhaustedError):
    def __init__(self, requested: Decimal, maximum: Decimal) -> None:
        super().__init__(
            f"Refund amount {requested:.2f} exceeds maximum refundable amount {maximum:.2f}"
        )
        self.requested = requested
        self.maximum = maximum


# Invariants


class StockWouldGoNegative(InvariantViolation):
    def __init__(self, variant_id: str, stock: int, quantity: int) -> None:
        super().__init__(
            f"Stock would go negative for variant {variant_id}: current={stock}, committing={quantity}"
        )
        self.variant_id = variant_id
        self.stock = stock
        self.quantity = quantity


# External dependencies


class GatewayError(ExternalDependencyError):
    def __init__(self, operation: str, detail: str, reference: Optional[str] = None) -> None:
        super().__init__(f"Gateway {operation} failed: {detail}")
        self.operation = operation
        self.detail = detail
        self.reference = reference


class RefundProcessingFailed(ExternalDependencyError):
    def __init__(self, return_request_id: str, detail: str) -> None:
        super().__init__(f"Refund processing failed for return {return_request_id}: {detail}")
        self.return_request_id = return_request_id
        self.detail = detail
