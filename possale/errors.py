"""
Error taxonomy for the sale transaction engine.

Every error carries a stable machine-readable ``code`` and a ``details`` dict
with the offending identifiers, so callers can react programmatically:

    {"error": "INSUFFICIENT_STOCK", "message": "...",
     "details": {"product_id": 7, "available": 2, "requested": 3}}
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any


class SaleError(Exception):
    """Base class for sale engine errors."""
    code = "SALE_ERROR"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "details": {k: _jsonable(v) for k, v in self.details.items()},
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    return value


class ValidationError(SaleError):
    """400-level input problem (bad quantity, malformed amount, missing field)."""
    code = "INVALID_REQUEST"


class EmptyOrderError(SaleError):
    code = "EMPTY_ORDER"

    def __init__(self):
        super().__init__("Cannot create a sale with no lines")


class ProductNotFoundError(SaleError):
    code = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: int):
        super().__init__(
            f"Product {product_id} not found",
            details={"product_id": product_id},
        )
        self.product_id = product_id


class InsufficientStockError(SaleError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: int, available: int, requested: int):
        super().__init__(
            f"Insufficient stock for product {product_id}: "
            f"available {available}, requested {requested}",
            details={"product_id": product_id, "available": available, "requested": requested},
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested


class InvalidDiscountError(SaleError):
    code = "INVALID_DISCOUNT"

    def __init__(self, discount: Decimal, limit: Decimal, product_id: int | None = None):
        scope = f"product {product_id}" if product_id is not None else "sale"
        super().__init__(
            f"Invalid discount {discount} for {scope}: must be between 0 and {limit}",
            details={"product_id": product_id, "discount": discount, "limit": limit},
        )
        self.discount = discount
        self.limit = limit
        self.product_id = product_id


class SaleNotFoundError(SaleError):
    code = "SALE_NOT_FOUND"

    def __init__(self, sale_id: int):
        super().__init__(f"Sale {sale_id} not found", details={"sale_id": sale_id})
        self.sale_id = sale_id


class InvalidStateTransitionError(SaleError):
    code = "INVALID_STATE_TRANSITION"

    def __init__(self, sale_id: int, current: str, target: str):
        super().__init__(
            f"Cannot move sale {sale_id} from {current} to {target}",
            details={"sale_id": sale_id, "current": current, "target": target},
        )
        self.sale_id = sale_id
        self.current = current
        self.target = target


class PersistenceFailureError(SaleError):
    """Storage-layer fault after logical validation passed; the transaction was rolled back."""
    code = "PERSISTENCE_FAILURE"


class OperationTimeoutError(PersistenceFailureError):
    code = "TIMEOUT"

    def __init__(self, stage: str):
        super().__init__(
            f"Deadline expired during {stage}; operation aborted",
            details={"stage": stage},
        )
        self.stage = stage


class ReconciliationRequiredError(PersistenceFailureError):
    """
    Rollback itself failed. Stock and sale rows may disagree and need manual
    reconciliation.
    """
    code = "RECONCILIATION_REQUIRED"


class UnauthorizedError(SaleError):
    """Raised by the identity collaborator when a principal may not perform an action."""
    code = "UNAUTHORIZED"
