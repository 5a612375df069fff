# Overview: Service-layer operations for inventory; the only writer of product stock.

from __future__ import annotations

from sqlalchemy import update

from ..errors import ProductNotFoundError, ValidationError
from ..models import Product
from .concurrency import lock_for_update

"""
Inventory Ledger Invariants (authoritative)

- Product.quantity_on_hand is mutated only by InventoryLedger.try_reserve and
  InventoryLedger.release.
- quantity_on_hand never goes negative: the decrement is a conditional UPDATE
  (WHERE quantity_on_hand >= :qty) on a row already locked FOR UPDATE.
- The ledger never commits. Reservations belong to the caller's transaction and
  disappear with its rollback.
- release is not idempotent; callers release each reservation exactly once.
"""


def _require_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("quantity must be a positive integer", details={"quantity": quantity})
    return quantity


class InventoryLedger:
    def __init__(self, session):
        self.session = session

    def get_product(self, product_id: int, *, lock: bool = False) -> Product | None:
        query = self.session.query(Product).filter_by(id=product_id)
        if lock:
            query = lock_for_update(query)
        return query.first()

    def quantity_on_hand(self, product_id: int) -> int:
        product = self.get_product(product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        return product.quantity_on_hand

    def try_reserve(self, product_id: int, quantity: int) -> tuple[bool, int]:
        """
        Decrement stock by quantity inside the open transaction.

        Returns (ok, current_quantity). On failure current_quantity is what is
        sellable right now (0 for a missing or inactive product) and nothing is
        written. On success it is the stock left after the reservation.
        """
        quantity = _require_quantity(quantity)

        product = self.get_product(product_id, lock=True)
        if product is None or not product.is_active:
            return False, 0
        if product.quantity_on_hand < quantity:
            return False, product.quantity_on_hand

        result = self.session.execute(
            update(Product)
            .where(
                Product.id == product_id,
                Product.is_active.is_(True),
                Product.quantity_on_hand >= quantity,
            )
            .values(quantity_on_hand=Product.quantity_on_hand - quantity)
            .execution_options(synchronize_session=False)
        )
        self.session.refresh(product)
        if result.rowcount != 1:
            # Lost the race between the read and the conditional write
            return False, product.quantity_on_hand if product.is_active else 0

        return True, product.quantity_on_hand

    def release(self, product_id: int, quantity: int) -> int:
        """Increment stock by quantity inside the open transaction; returns the new level."""
        quantity = _require_quantity(quantity)

        product = self.get_product(product_id, lock=True)
        if product is None:
            raise ProductNotFoundError(product_id)

        self.session.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(quantity_on_hand=Product.quantity_on_hand + quantity)
            .execution_options(synchronize_session=False)
        )
        self.session.refresh(product)
        return product.quantity_on_hand
