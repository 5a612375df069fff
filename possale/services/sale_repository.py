# Overview: Persistence for Sale aggregates and the transaction boundary around each sale operation.

from __future__ import annotations

from contextlib import contextmanager

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload

from ..errors import ReconciliationRequiredError
from ..models import Sale, SaleStatus
from .concurrency import lock_for_update


class SaleRepository:
    """
    Durable store for Sale + SaleItem aggregates.

    atomic() is the unit of work: everything the ledger and the repository do
    inside it commits together or not at all.
    """

    def __init__(self, session):
        self.session = session

    @contextmanager
    def atomic(self):
        bind = self.session.get_bind()
        if bind.dialect.name == "sqlite":
            # Take the write lock up front so concurrent writers queue instead of deadlocking
            self.session.execute(text("BEGIN IMMEDIATE"))
        try:
            yield self
            self.session.commit()
        except BaseException:
            self.rollback()
            raise

    def rollback(self) -> None:
        try:
            self.session.rollback()
        except SQLAlchemyError as exc:
            current_app.logger.critical(
                "Rollback failed; stock and sales may be inconsistent and need manual reconciliation",
                exc_info=True,
            )
            raise ReconciliationRequiredError(
                "Rollback failed; manual reconciliation required",
                details={"cause": str(exc)},
            ) from exc

    def add(self, sale: Sale) -> Sale:
        self.session.add(sale)
        self.session.flush()
        return sale

    def get(self, sale_id: int, *, lock: bool = False) -> Sale | None:
        query = (
            self.session.query(Sale)
            .options(selectinload(Sale.items))
            .filter(Sale.id == sale_id)
        )
        if lock:
            query = lock_for_update(query)
        return query.first()

    def list(self, *, status: SaleStatus | None = None, limit: int | None = None) -> list[Sale]:
        query = self.session.query(Sale).options(selectinload(Sale.items))
        if status is not None:
            query = query.filter(Sale.status == status)
        query = query.order_by(Sale.sale_date.desc(), Sale.id.desc())
        if limit is not None:
            query = query.limit(limit)
        return query.all()
