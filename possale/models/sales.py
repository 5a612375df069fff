from __future__ import annotations

import enum
from decimal import Decimal

from sqlalchemy.ext.hybrid import hybrid_property

from ..extensions import db
from possale.time_utils import to_utc_z


def _money(value) -> str | None:
    if value is None:
        return None
    return str(Decimal(value).quantize(Decimal("0.01")))


class SaleStatus(str, enum.Enum):
    """
    Sale lifecycle.

    COMPLETED is the only state a sale is ever persisted in; VOIDED is terminal
    and reachable only from COMPLETED via void.
    """
    COMPLETED = "Completed"
    VOIDED = "Voided"

    def can_transition_to(self, target: "SaleStatus") -> bool:
        return target in _ALLOWED_TRANSITIONS[self]


_ALLOWED_TRANSITIONS: dict[SaleStatus, frozenset[SaleStatus]] = {
    SaleStatus.COMPLETED: frozenset({SaleStatus.VOIDED}),
    SaleStatus.VOIDED: frozenset(),
}


class Sale(db.Model):
    """
    Sale aggregate root.

    Owns its SaleItems (cascade delete). Holds non-owning references to the
    cashier principal and, through items, to products.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.Index("ix_sales_status_date", "status", "sale_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    sale_date = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    subtotal = db.Column(db.Numeric(18, 2), nullable=False)
    tax_amount = db.Column(db.Numeric(18, 2), nullable=False)
    sale_discount = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0.00"))

    status = db.Column(
        db.Enum(
            SaleStatus,
            name="sale_status",
            native_enum=False,
            length=16,
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        nullable=False,
        default=SaleStatus.COMPLETED,
    )

    payment_method = db.Column(db.String(64), nullable=False, default="Cash")
    payment_reference = db.Column(db.String(255), nullable=True)

    # Authenticated principal supplied by the identity collaborator
    cashier_id = db.Column(db.Integer, nullable=False, index=True)

    notes = db.Column(db.Text, nullable=True)

    voided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "SaleItem",
        back_populates="sale",
        cascade="all, delete-orphan",
        order_by="SaleItem.id",
        passive_deletes=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    @hybrid_property
    def grand_total(self):
        """Always derived from the stored components."""
        return self.subtotal + self.tax_amount - self.sale_discount

    def __repr__(self) -> str:
        return f"<Sale id={self.id} status={self.status.value if self.status else None} subtotal={self.subtotal}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "saleDate": to_utc_z(self.sale_date),
            "subtotal": _money(self.subtotal),
            "tax": _money(self.tax_amount),
            "discount": _money(self.sale_discount),
            "grandTotal": _money(self.grand_total),
            "paymentMethod": self.payment_method,
            "paymentReference": self.payment_reference,
            "cashierId": self.cashier_id,
            "status": self.status.value,
            "items": [item.to_dict() for item in self.items],
            "notes": self.notes,
        }


class SaleItem(db.Model):
    """Immutable line of a committed sale; price is captured at commit time."""
    __tablename__ = "sale_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_sale_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(
        db.Integer,
        db.ForeignKey("sales.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_at_sale = db.Column(db.Numeric(18, 2), nullable=False)
    line_discount = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0.00"))
    line_total = db.Column(db.Numeric(18, 2), nullable=False)

    sale = db.relationship("Sale", back_populates="items")
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "productId": self.product_id,
            "quantity": self.quantity,
            "unitPriceAtSale": _money(self.unit_price_at_sale),
            "discount": _money(self.line_discount),
            "lineTotal": _money(self.line_total),
        }
