# Overview: Pure pricing arithmetic for sales; no database access.

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN
from typing import Any, Iterable, NamedTuple

from ..errors import InvalidDiscountError, ValidationError

"""
Pricing rules (authoritative)

- Money is Decimal, never float.
- Currency precision is 2 places, rounded half-to-even.
- Line totals are rounded when computed, not at the end of the sale.
- Tax is applied once, to the sale subtotal, at a single configurable rate.
- grand_total = subtotal + tax - sale_discount.
"""

DEFAULT_TAX_RATE = Decimal("0.10")
CURRENCY_QUANTUM = Decimal("0.01")
ZERO = Decimal("0.00")


class SaleTotals(NamedTuple):
    subtotal: Decimal
    tax: Decimal
    grand_total: Decimal


def quantize_money(value: Any) -> Decimal:
    return Decimal(value).quantize(CURRENCY_QUANTUM, rounding=ROUND_HALF_EVEN)


def parse_money(value: Any, field: str = "amount") -> Decimal:
    """
    Coerce user input to Decimal.

    Floats go through str() so 0.1 stays 0.1. Bools, NaN and infinities are
    rejected.
    """
    if value is None or value == "":
        return ZERO
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", details={"field": field})
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValidationError(f"{field} must be a number", details={"field": field})
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number", details={"field": field})
    return amount


def parse_tax_rate(value: Any) -> Decimal:
    rate = parse_money(value if value is not None else DEFAULT_TAX_RATE, "tax_rate")
    if rate < 0:
        raise ValidationError("tax_rate must be >= 0", details={"tax_rate": rate})
    return rate


def compute_line_total(
    unit_price: Decimal,
    quantity: int,
    line_discount: Decimal = ZERO,
    *,
    product_id: int | None = None,
) -> Decimal:
    """
    unit_price * quantity - line_discount, rounded to cents.

    The bound is checked on the discount as given; it is rounded only for the
    arithmetic, so the result matches the stored (rounded) discount.
    """
    gross = Decimal(unit_price) * quantity
    discount = Decimal(line_discount)
    if discount < 0 or discount > gross:
        raise InvalidDiscountError(discount, quantize_money(gross), product_id=product_id)
    return quantize_money(gross - quantize_money(discount))


def compute_sale_totals(
    line_totals: Iterable[Decimal],
    sale_discount: Decimal = ZERO,
    tax_rate: Decimal = DEFAULT_TAX_RATE,
) -> SaleTotals:
    if tax_rate < 0:
        raise ValidationError("tax_rate must be >= 0", details={"tax_rate": tax_rate})

    subtotal = quantize_money(sum((Decimal(t) for t in line_totals), ZERO))
    tax = quantize_money(subtotal * tax_rate)

    discount = Decimal(sale_discount)
    limit = subtotal + tax
    if discount < 0 or discount > limit:
        raise InvalidDiscountError(discount, limit)

    return SaleTotals(
        subtotal=subtotal,
        tax=tax,
        grand_total=quantize_money(subtotal + tax - quantize_money(discount)),
    )
