"""
Sale transaction coordinator tests: create, void, lookup and failure handling.
"""

from decimal import Decimal

import pytest
from sqlalchemy.exc import DatabaseError, OperationalError

from possale.errors import (
    EmptyOrderError,
    InsufficientStockError,
    InvalidDiscountError,
    InvalidStateTransitionError,
    OperationTimeoutError,
    PersistenceFailureError,
    ProductNotFoundError,
    ReconciliationRequiredError,
    SaleNotFoundError,
    UnauthorizedError,
    ValidationError,
)
from possale.extensions import db
from possale.models import Sale, SaleItem, SaleStatus
from possale.services.sales_service import SaleLineRequest, build_sale_coordinator, ensure_can_void

from .conftest import make_product, stock_of


def _line(product, quantity, discount="0"):
    return {"productId": product.id, "quantity": quantity, "discount": discount}


def _sale_count(session) -> int:
    return session.execute(db.select(db.func.count(Sale.id))).scalar_one()


class TestCreateSale:
    """Happy-path creation and totals."""

    def test_single_line_totals_and_stock(self, db_session, coordinator, product_p):
        """
        SCENARIO: stock 5 at 10.00, sell 3
        EXPECTED: subtotal 30.00, tax 3.00, grand total 33.00, stock 2
        """
        sale = coordinator.create_sale(7, [_line(product_p, 3)])

        assert sale.status == SaleStatus.COMPLETED
        assert sale.subtotal == Decimal("30.00")
        assert sale.tax_amount == Decimal("3.00")
        assert sale.sale_discount == Decimal("0.00")
        assert sale.grand_total == Decimal("33.00")
        assert sale.cashier_id == 7
        assert stock_of(db_session, product_p.id) == 2

    def test_serialized_contract(self, db_session, coordinator, product_p):
        sale = coordinator.create_sale(
            7,
            [_line(product_p, 3)],
            payment_method="Credit Card",
            payment_reference="AUTH-991",
            notes="front counter",
        )

        data = sale.to_dict()
        assert set(data) == {
            "id", "saleDate", "subtotal", "tax", "discount", "grandTotal",
            "paymentMethod", "paymentReference", "cashierId", "status", "items", "notes",
        }
        assert data["status"] == "Completed"
        assert data["subtotal"] == "30.00"
        assert data["tax"] == "3.00"
        assert data["discount"] == "0.00"
        assert data["grandTotal"] == "33.00"
        assert data["paymentMethod"] == "Credit Card"
        assert data["paymentReference"] == "AUTH-991"
        assert data["cashierId"] == 7
        assert data["notes"] == "front counter"
        assert data["saleDate"].endswith("Z")

        (item,) = data["items"]
        assert set(item) == {"id", "productId", "quantity", "unitPriceAtSale", "discount", "lineTotal"}
        assert item["productId"] == product_p.id
        assert item["quantity"] == 3
        assert item["unitPriceAtSale"] == "10.00"
        assert item["discount"] == "0.00"
        assert item["lineTotal"] == "30.00"

    def test_multi_line_with_discounts(self, db_session, coordinator, product_p, product_q):
        """
        P: 2 x 10.00 - 1.00 = 19.00
        Q: 3 x 2.50        =  7.50
        subtotal 26.50, tax 2.65, sale discount 1.65 -> 27.50
        """
        sale = coordinator.create_sale(
            1,
            [_line(product_p, 2, "1.00"), _line(product_q, 3)],
            sale_discount="1.65",
        )

        assert [i.line_total for i in sale.items] == [Decimal("19.00"), Decimal("7.50")]
        assert sale.subtotal == sum(i.line_total for i in sale.items)
        assert sale.tax_amount == Decimal("2.65")
        assert sale.grand_total == Decimal("27.50")
        assert sale.grand_total == sale.subtotal + sale.tax_amount - sale.sale_discount
        assert stock_of(db_session, product_p.id) == 3
        assert stock_of(db_session, product_q.id) == 7

    def test_items_keep_caller_order(self, db_session, coordinator, product_p, product_q):
        sale = coordinator.create_sale(1, [_line(product_q, 1), _line(product_p, 1)])
        assert [i.product_id for i in sale.items] == [product_q.id, product_p.id]

    def test_accepts_line_request_objects(self, db_session, coordinator, product_p):
        sale = coordinator.create_sale(
            1, [SaleLineRequest(product_id=product_p.id, quantity=1, discount=Decimal("0.50"))]
        )
        assert sale.items[0].line_total == Decimal("9.50")

    def test_price_is_captured_at_sale_time(self, db_session, coordinator, product_p):
        sale = coordinator.create_sale(1, [_line(product_p, 1)])

        product_p.unit_price = Decimal("99.99")
        db_session.commit()

        reloaded = coordinator.get_sale(sale.id)
        assert reloaded.items[0].unit_price_at_sale == Decimal("10.00")
        assert reloaded.subtotal == Decimal("10.00")

    def test_exact_stock_leaves_zero(self, db_session, coordinator, product_p):
        coordinator.create_sale(1, [_line(product_p, 5)])
        assert stock_of(db_session, product_p.id) == 0

    def test_configured_tax_rate_is_used(self, app, db_session, product_p):
        app.config["SALES_TAX_RATE"] = "0.0825"
        try:
            sale = build_sale_coordinator().create_sale(1, [_line(product_p, 1)])
        finally:
            app.config["SALES_TAX_RATE"] = "0.10"

        assert sale.tax_amount == Decimal("0.82")
        assert sale.grand_total == Decimal("10.82")


class TestCreateSaleFailures:
    """Every rejected sale leaves stock and sales untouched."""

    def test_empty_order(self, db_session, coordinator):
        with pytest.raises(EmptyOrderError):
            coordinator.create_sale(1, [])
        assert _sale_count(db_session) == 0

    def test_one_over_stock(self, db_session, coordinator, product_p):
        with pytest.raises(InsufficientStockError) as excinfo:
            coordinator.create_sale(1, [_line(product_p, 6)])

        assert excinfo.value.available == 5
        assert excinfo.value.requested == 6
        assert stock_of(db_session, product_p.id) == 5

    def test_second_sale_runs_out(self, db_session, coordinator, product_p):
        coordinator.create_sale(1, [_line(product_p, 3)])

        with pytest.raises(InsufficientStockError) as excinfo:
            coordinator.create_sale(1, [_line(product_p, 3)])

        err = excinfo.value
        assert (err.product_id, err.available, err.requested) == (product_p.id, 2, 3)
        assert err.to_dict()["error"] == "INSUFFICIENT_STOCK"
        assert stock_of(db_session, product_p.id) == 2
        assert _sale_count(db_session) == 1

    def test_line_discount_above_line_subtotal(self, db_session, coordinator, product_p):
        with pytest.raises(InvalidDiscountError) as excinfo:
            coordinator.create_sale(1, [_line(product_p, 2, "25.00")])

        assert excinfo.value.product_id == product_p.id
        assert excinfo.value.limit == Decimal("20.00")
        assert stock_of(db_session, product_p.id) == 5
        assert _sale_count(db_session) == 0

    def test_negative_line_discount(self, db_session, coordinator, product_p):
        with pytest.raises(InvalidDiscountError):
            coordinator.create_sale(1, [_line(product_p, 1, "-1")])
        assert stock_of(db_session, product_p.id) == 5

    def test_sale_discount_above_total(self, db_session, coordinator, product_p):
        with pytest.raises(InvalidDiscountError):
            coordinator.create_sale(1, [_line(product_p, 1)], sale_discount="11.01")
        assert stock_of(db_session, product_p.id) == 5
        assert _sale_count(db_session) == 0

    def test_line_discount_over_by_less_than_a_cent(self, db_session, coordinator, product_p):
        with pytest.raises(InvalidDiscountError) as excinfo:
            coordinator.create_sale(1, [_line(product_p, 2, "20.004")])

        assert excinfo.value.discount == Decimal("20.004")
        assert stock_of(db_session, product_p.id) == 5
        assert _sale_count(db_session) == 0

    def test_sale_discount_over_by_less_than_a_cent(self, db_session, coordinator, product_p):
        with pytest.raises(InvalidDiscountError):
            coordinator.create_sale(1, [_line(product_p, 3)], sale_discount="33.004")

        assert stock_of(db_session, product_p.id) == 5
        assert _sale_count(db_session) == 0

    def test_failure_on_later_line_rolls_back_earlier_lines(
        self, db_session, coordinator, product_p, product_q
    ):
        with pytest.raises(InsufficientStockError) as excinfo:
            coordinator.create_sale(1, [_line(product_p, 2), _line(product_q, 11)])

        assert excinfo.value.product_id == product_q.id
        assert stock_of(db_session, product_p.id) == 5
        assert stock_of(db_session, product_q.id) == 10
        assert db_session.execute(db.select(db.func.count(SaleItem.id))).scalar_one() == 0

    def test_unknown_product_on_later_line(self, db_session, coordinator, product_p):
        with pytest.raises(ProductNotFoundError) as excinfo:
            coordinator.create_sale(1, [_line(product_p, 1), {"productId": 9999, "quantity": 1}])

        assert excinfo.value.to_dict()["details"] == {"product_id": 9999}
        assert stock_of(db_session, product_p.id) == 5

    def test_first_invalid_line_decides_error(self, db_session, coordinator, product_p):
        with pytest.raises(ProductNotFoundError):
            coordinator.create_sale(1, [{"productId": 9999, "quantity": 1}, _line(product_p, 50)])

    def test_same_product_twice_counts_cumulatively(self, db_session, coordinator, product_p):
        with pytest.raises(InsufficientStockError) as excinfo:
            coordinator.create_sale(1, [_line(product_p, 3), _line(product_p, 3)])

        assert excinfo.value.available == 2
        assert stock_of(db_session, product_p.id) == 5

    def test_inactive_product_has_nothing_to_sell(self, db_session, coordinator):
        retired = make_product(db_session, sku="OLD-1", price="5.00", quantity=8, is_active=False)

        with pytest.raises(InsufficientStockError) as excinfo:
            coordinator.create_sale(1, [_line(retired, 1)])

        assert excinfo.value.available == 0
        assert stock_of(db_session, retired.id) == 8

    @pytest.mark.parametrize("quantity", [0, -1, True, "1.5", None])
    def test_invalid_quantity(self, db_session, coordinator, product_p, quantity):
        with pytest.raises(ValidationError):
            coordinator.create_sale(1, [{"productId": product_p.id, "quantity": quantity}])
        assert stock_of(db_session, product_p.id) == 5

    def test_expired_deadline_aborts(self, db_session, coordinator, product_p, product_q):
        with pytest.raises(OperationTimeoutError) as excinfo:
            coordinator.create_sale(1, [_line(product_p, 1), _line(product_q, 1)], timeout=0)

        assert isinstance(excinfo.value, PersistenceFailureError)
        assert excinfo.value.to_dict()["error"] == "TIMEOUT"
        assert stock_of(db_session, product_p.id) == 5
        assert stock_of(db_session, product_q.id) == 10


class TestPersistenceFaults:
    """Storage faults after validation roll back every reservation."""

    def test_commit_failure_rolls_back(self, db_session, coordinator, product_p, monkeypatch):
        def broken_commit():
            raise DatabaseError("COMMIT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(db.session(), "commit", broken_commit)

        with pytest.raises(PersistenceFailureError) as excinfo:
            coordinator.create_sale(1, [_line(product_p, 3)])

        assert excinfo.value.code == "PERSISTENCE_FAILURE"
        monkeypatch.undo()
        assert stock_of(db_session, product_p.id) == 5
        assert _sale_count(db_session) == 0

    def test_failed_rollback_is_reported(self, db_session, coordinator, product_p, monkeypatch, caplog):
        def broken(*args, **kwargs):
            raise DatabaseError("ROLLBACK", {}, Exception("connection lost"))

        monkeypatch.setattr(db.session(), "commit", broken)
        monkeypatch.setattr(db.session(), "rollback", broken)

        with pytest.raises(ReconciliationRequiredError) as excinfo:
            coordinator.create_sale(1, [_line(product_p, 3)])

        assert excinfo.value.code == "RECONCILIATION_REQUIRED"
        assert any(r.levelname == "CRITICAL" for r in caplog.records)

        monkeypatch.undo()
        db_session.rollback()
        assert stock_of(db_session, product_p.id) == 5

    def test_contention_is_retried_once(self, db_session, coordinator, product_p, monkeypatch):
        original_add = coordinator.repository.add
        calls = {"n": 0}

        def flaky_add(sale):
            calls["n"] += 1
            if calls["n"] == 1:
                raise OperationalError("INSERT", {}, Exception("database is locked"))
            return original_add(sale)

        monkeypatch.setattr(coordinator.repository, "add", flaky_add)

        sale = coordinator.create_sale(1, [_line(product_p, 3)])

        assert calls["n"] == 2
        assert sale.status == SaleStatus.COMPLETED
        assert stock_of(db_session, product_p.id) == 2

    def test_exhausted_retries_become_persistence_failure(
        self, db_session, coordinator, product_p, monkeypatch
    ):
        def always_locked(sale):
            raise OperationalError("INSERT", {}, Exception("database is locked"))

        monkeypatch.setattr(coordinator.repository, "add", always_locked)

        with pytest.raises(PersistenceFailureError):
            coordinator.create_sale(1, [_line(product_p, 3)])

        assert stock_of(db_session, product_p.id) == 5


class TestVoidSale:
    """Void restores stock exactly once and keeps the record."""

    def test_void_restores_stock(self, db_session, coordinator, product_p):
        sale = coordinator.create_sale(1, [_line(product_p, 3)])

        coordinator.void_sale(sale.id)

        voided = coordinator.get_sale(sale.id)
        assert voided.status == SaleStatus.VOIDED
        assert voided.voided_at is not None
        assert stock_of(db_session, product_p.id) == 5

    def test_void_keeps_items_and_totals(self, db_session, coordinator, product_p, product_q):
        sale = coordinator.create_sale(1, [_line(product_p, 1), _line(product_q, 4)])
        before = sale.to_dict()

        coordinator.void_sale(sale.id)

        after = coordinator.get_sale(sale.id).to_dict()
        assert after["status"] == "Voided"
        assert after["items"] == before["items"]
        assert after["grandTotal"] == before["grandTotal"]

    def test_create_then_void_is_inverse(self, db_session, coordinator, product_p, product_q):
        lines = [_line(product_p, 2), _line(product_q, 10), _line(product_p, 3)]
        sale = coordinator.create_sale(1, lines)
        assert stock_of(db_session, product_p.id) == 0
        assert stock_of(db_session, product_q.id) == 0

        coordinator.void_sale(sale.id)

        assert stock_of(db_session, product_p.id) == 5
        assert stock_of(db_session, product_q.id) == 10

    def test_double_void_rejected(self, db_session, coordinator, product_p):
        sale = coordinator.create_sale(1, [_line(product_p, 3)])
        coordinator.void_sale(sale.id)

        with pytest.raises(InvalidStateTransitionError) as excinfo:
            coordinator.void_sale(sale.id)

        assert excinfo.value.current == "Voided"
        assert excinfo.value.to_dict()["details"]["current"] == "Voided"
        assert stock_of(db_session, product_p.id) == 5

    def test_void_missing_sale(self, db_session, coordinator):
        with pytest.raises(SaleNotFoundError):
            coordinator.void_sale(4242)

    def test_void_with_expired_deadline_changes_nothing(self, db_session, coordinator, product_p):
        sale = coordinator.create_sale(1, [_line(product_p, 3)])

        with pytest.raises(OperationTimeoutError):
            coordinator.void_sale(sale.id, timeout=0)

        assert coordinator.get_sale(sale.id).status == SaleStatus.COMPLETED
        assert stock_of(db_session, product_p.id) == 2

    def test_void_commit_failure_rolls_back_releases(
        self, db_session, coordinator, product_p, product_q, monkeypatch
    ):
        sale = coordinator.create_sale(1, [_line(product_p, 3), _line(product_q, 4)])

        def broken_commit():
            raise DatabaseError("COMMIT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(db.session(), "commit", broken_commit)

        with pytest.raises(PersistenceFailureError) as excinfo:
            coordinator.void_sale(sale.id)

        assert excinfo.value.code == "PERSISTENCE_FAILURE"
        monkeypatch.undo()
        assert stock_of(db_session, product_p.id) == 2
        assert stock_of(db_session, product_q.id) == 6
        assert coordinator.get_sale(sale.id).status == SaleStatus.COMPLETED

    def test_void_restores_stock_of_inactive_product(self, db_session, coordinator, product_p):
        sale = coordinator.create_sale(1, [_line(product_p, 5)])
        product_p.is_active = False
        db_session.commit()

        coordinator.void_sale(sale.id)

        assert stock_of(db_session, product_p.id) == 5


class TestLookup:
    def test_get_missing_sale(self, db_session, coordinator):
        with pytest.raises(SaleNotFoundError):
            coordinator.get_sale(1)

    def test_list_newest_first_and_filter(self, db_session, coordinator, product_q):
        first = coordinator.create_sale(1, [_line(product_q, 1)])
        second = coordinator.create_sale(2, [_line(product_q, 1)])
        third = coordinator.create_sale(3, [_line(product_q, 1)])
        coordinator.void_sale(second.id)

        assert [s.id for s in coordinator.list_sales()] == [third.id, second.id, first.id]
        assert [s.id for s in coordinator.list_sales(status="Voided")] == [second.id]
        assert [s.id for s in coordinator.list_sales(status=SaleStatus.COMPLETED, limit=1)] == [third.id]

    def test_list_rejects_unknown_status(self, db_session, coordinator):
        with pytest.raises(ValidationError):
            coordinator.list_sales(status="Refunded")


class TestVoidAuthorization:
    @pytest.mark.parametrize("role", ["Admin", "Manager"])
    def test_elevated_roles_allowed(self, role):
        ensure_can_void(role)

    @pytest.mark.parametrize("role", ["Cashier", None, "admin"])
    def test_other_roles_rejected(self, role):
        with pytest.raises(UnauthorizedError) as excinfo:
            ensure_can_void(role)
        assert excinfo.value.to_dict()["error"] == "UNAUTHORIZED"
