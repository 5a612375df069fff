from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable

from .errors import ValidationError
from .services.pricing_service import ZERO, parse_money


@dataclass(frozen=True)
class SaleLineRequest:
    """One requested line of a sale, in caller order."""
    product_id: int
    quantity: int
    discount: Decimal = ZERO


def require_int(value: Any, field: str, *, positive: bool = False) -> int:
    """
    Strict integer coercion: rejects bools, floats, decimals in strings and
    scientific notation.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be an integer", details={"field": field})
    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped or not stripped.lstrip("-").isdigit():
            raise ValidationError(f"{field} must be an integer", details={"field": field})
        result = int(stripped)
    else:
        raise ValidationError(f"{field} must be an integer", details={"field": field})

    if positive and result <= 0:
        raise ValidationError(f"{field} must be > 0", details={"field": field, "value": result})
    return result


def parse_line_request(raw: Any, position: int = 0) -> SaleLineRequest:
    """
    Accept a SaleLineRequest or the wire shape {productId, quantity, discount}.
    """
    if isinstance(raw, SaleLineRequest):
        product_id, quantity, discount = raw.product_id, raw.quantity, raw.discount
    elif isinstance(raw, dict):
        if "productId" not in raw or "quantity" not in raw:
            raise ValidationError(
                f"Line {position + 1}: productId and quantity required",
                details={"line": position + 1},
            )
        product_id = raw["productId"]
        quantity = raw["quantity"]
        discount = raw.get("discount")
    else:
        raise ValidationError(f"Line {position + 1}: invalid line", details={"line": position + 1})

    product_id = require_int(product_id, "productId")
    quantity = require_int(quantity, "quantity", positive=True)
    discount = parse_money(discount, "discount")

    return SaleLineRequest(product_id=product_id, quantity=quantity, discount=discount)


def parse_line_requests(lines: Iterable[Any] | None) -> list[SaleLineRequest]:
    if lines is None:
        return []
    if isinstance(lines, (str, bytes, dict)):
        raise ValidationError("lines must be a list")
    return [parse_line_request(raw, i) for i, raw in enumerate(lines)]
