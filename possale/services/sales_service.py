"""
Sale transaction coordinator.

Creates sales atomically against live inventory and voids them with a
compensating stock release. Each create/void runs as a single transaction
owned by SaleRepository.atomic(); any error aborts it before returning, so no
reservation or half-written sale is ever observable.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Iterable

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..errors import (
    EmptyOrderError,
    InsufficientStockError,
    InvalidStateTransitionError,
    PersistenceFailureError,
    ProductNotFoundError,
    SaleError,
    SaleNotFoundError,
    UnauthorizedError,
    ValidationError,
)
from ..extensions import db
from ..models import Sale, SaleItem, SaleStatus
from ..time_utils import utcnow
from ..validation import SaleLineRequest, parse_line_requests, require_int
from .concurrency import Deadline, run_with_retry
from .inventory_service import InventoryLedger
from .pricing_service import (
    DEFAULT_TAX_RATE,
    ZERO,
    compute_line_total,
    compute_sale_totals,
    parse_money,
    parse_tax_rate,
    quantize_money,
)
from .sale_repository import SaleRepository

__all__ = [
    "SaleCoordinator",
    "SaleLineRequest",
    "VOID_ROLES",
    "build_sale_coordinator",
    "ensure_can_void",
]

# Roles the identity collaborator may let through to void_sale
VOID_ROLES = frozenset({"Admin", "Manager"})

DEFAULT_PAYMENT_METHOD = "Cash"


def ensure_can_void(role: str | None) -> None:
    if role not in VOID_ROLES:
        raise UnauthorizedError(
            f"Role {role!r} may not void sales",
            details={"role": role, "allowed": sorted(VOID_ROLES)},
        )


class SaleCoordinator:
    def __init__(
        self,
        ledger: InventoryLedger,
        repository: SaleRepository,
        *,
        tax_rate: Decimal = DEFAULT_TAX_RATE,
        retry_attempts: int = 3,
        retry_backoff: float = 0.1,
        default_timeout: float | None = None,
    ):
        self.ledger = ledger
        self.repository = repository
        self.tax_rate = parse_tax_rate(tax_rate)
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff = retry_backoff
        self.default_timeout = default_timeout

    @property
    def session(self):
        return self.repository.session

    def create_sale(
        self,
        cashier_id: int,
        lines: Iterable[SaleLineRequest | dict],
        payment_method: str | None = DEFAULT_PAYMENT_METHOD,
        payment_reference: str | None = None,
        sale_discount: Any = ZERO,
        notes: str | None = None,
        *,
        timeout: float | None = None,
    ) -> Sale:
        """
        Validate, reserve and persist a sale in one transaction.

        Lines are processed in the order given, so the first invalid line
        decides the error. Returns the committed sale in COMPLETED status.
        """
        requests = parse_line_requests(lines)
        if not requests:
            raise EmptyOrderError()
        cashier_id = require_int(cashier_id, "cashier_id")
        discount = parse_money(sale_discount, "sale_discount")
        deadline = Deadline(self._timeout(timeout))

        def _op() -> Sale:
            with self.repository.atomic():
                sale = self._reserve_and_build(
                    cashier_id=cashier_id,
                    requests=requests,
                    payment_method=payment_method or DEFAULT_PAYMENT_METHOD,
                    payment_reference=payment_reference,
                    sale_discount=discount,
                    notes=notes,
                    deadline=deadline,
                )
                self.repository.add(sale)
                deadline.check("commit")
            return sale

        sale = self._run(_op, deadline, "create_sale")
        current_app.logger.info(
            "Sale %s committed: %s lines, grand total %s, cashier %s",
            sale.id, len(requests), sale.grand_total, cashier_id,
        )
        return sale

    def void_sale(self, sale_id: int, *, timeout: float | None = None) -> None:
        """
        Mark a COMPLETED sale VOIDED and put every item's quantity back on hand.

        The sale and its items are kept for audit.
        """
        sale_id = require_int(sale_id, "sale_id")
        deadline = Deadline(self._timeout(timeout))

        def _op() -> None:
            with self.repository.atomic():
                sale = self.repository.get(sale_id, lock=True)
                if sale is None:
                    raise SaleNotFoundError(sale_id)
                if not sale.status.can_transition_to(SaleStatus.VOIDED):
                    raise InvalidStateTransitionError(sale_id, sale.status.value, SaleStatus.VOIDED.value)

                for item in sale.items:
                    deadline.check(f"release of item {item.id}")
                    self.ledger.release(item.product_id, item.quantity)

                sale.status = SaleStatus.VOIDED
                sale.voided_at = utcnow()
                self.session.flush()
                deadline.check("commit")

        self._run(_op, deadline, "void_sale")
        current_app.logger.info("Sale %s voided", sale_id)

    def get_sale(self, sale_id: int) -> Sale:
        sale = self.repository.get(require_int(sale_id, "sale_id"))
        if sale is None:
            raise SaleNotFoundError(sale_id)
        return sale

    def list_sales(self, *, status: SaleStatus | str | None = None, limit: int | None = None) -> list[Sale]:
        """Sales history, most recent first."""
        if isinstance(status, str):
            try:
                status = SaleStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown sale status {status!r}", details={"status": status})
        if limit is not None:
            limit = require_int(limit, "limit", positive=True)
        return self.repository.list(status=status, limit=limit)

    def _reserve_and_build(
        self,
        *,
        cashier_id: int,
        requests: list[SaleLineRequest],
        payment_method: str,
        payment_reference: str | None,
        sale_discount: Decimal,
        notes: str | None,
        deadline: Deadline,
    ) -> Sale:
        items: list[SaleItem] = []
        for position, line in enumerate(requests, start=1):
            deadline.check(f"line {position}")

            product = self.ledger.get_product(line.product_id)
            if product is None:
                raise ProductNotFoundError(line.product_id)

            ok, available = self.ledger.try_reserve(line.product_id, line.quantity)
            if not ok:
                raise InsufficientStockError(line.product_id, available, line.quantity)

            unit_price = quantize_money(product.unit_price)
            line_total = compute_line_total(
                unit_price, line.quantity, line.discount, product_id=line.product_id
            )
            items.append(SaleItem(
                product_id=line.product_id,
                quantity=line.quantity,
                unit_price_at_sale=unit_price,
                line_discount=quantize_money(line.discount),
                line_total=line_total,
            ))

        totals = compute_sale_totals([item.line_total for item in items], sale_discount, self.tax_rate)

        return Sale(
            sale_date=utcnow(),
            subtotal=totals.subtotal,
            tax_amount=totals.tax,
            sale_discount=quantize_money(sale_discount),
            status=SaleStatus.COMPLETED,
            payment_method=payment_method,
            payment_reference=payment_reference,
            cashier_id=cashier_id,
            notes=notes,
            items=items,
        )

    def _timeout(self, timeout: float | None) -> float | None:
        return timeout if timeout is not None else self.default_timeout

    def _run(self, op, deadline: Deadline, action: str):
        try:
            return run_with_retry(
                op,
                session=self.session,
                attempts=self.retry_attempts,
                backoff_base=self.retry_backoff,
                deadline=deadline,
            )
        except SaleError as exc:
            current_app.logger.warning("%s rejected [%s]: %s", action, exc.code, exc.message)
            raise
        except SQLAlchemyError as exc:
            current_app.logger.exception("%s failed in storage", action)
            raise PersistenceFailureError(
                f"Storage failure during {action}; transaction rolled back",
                details={"cause": str(exc)},
            ) from exc


def build_sale_coordinator(session=None) -> SaleCoordinator:
    """Wire a coordinator from the current app config and the Flask-SQLAlchemy session."""
    session = session if session is not None else db.session
    config = current_app.config
    return SaleCoordinator(
        InventoryLedger(session),
        SaleRepository(session),
        tax_rate=parse_tax_rate(config.get("SALES_TAX_RATE")),
        retry_attempts=config.get("SALE_RETRY_ATTEMPTS", 3),
        retry_backoff=config.get("SALE_RETRY_BACKOFF", 0.1),
        default_timeout=config.get("SALE_OPERATION_TIMEOUT"),
    )
