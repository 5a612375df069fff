from __future__ import annotations

from ..extensions import db
from possale.time_utils import to_utc_z


class Product(db.Model):
    """
    Product master data, owned by the catalog.

    quantity_on_hand is the only field the sale engine writes, and only through
    InventoryLedger. The CHECK constraint backs up the ledger's own guard so a
    negative stock row can never be committed.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("sku", name="uq_products_sku"),
        db.CheckConstraint("quantity_on_hand >= 0", name="ck_products_quantity_non_negative"),
        db.Index("ix_products_active", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(100), nullable=False)

    unit_price = db.Column(db.Numeric(18, 2), nullable=False)
    quantity_on_hand = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} qoh={self.quantity_on_hand}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "unit_price": str(self.unit_price),
            "quantity_on_hand": self.quantity_on_hand,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
