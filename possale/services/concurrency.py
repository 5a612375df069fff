# Overview: Service-layer operations for concurrency; row locks, retry loop and caller deadlines.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import OperationTimeoutError


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; writers there are serialized by
    BEGIN IMMEDIATE instead (see SaleRepository.atomic).
    """
    return query.with_for_update()


class Deadline:
    """Monotonic deadline for one logical operation. timeout=None never expires."""

    def __init__(self, timeout: float | None = None):
        self.expires_at = None if timeout is None else time.monotonic() + timeout

    def remaining(self) -> float | None:
        if self.expires_at is None:
            return None
        return self.expires_at - time.monotonic()

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, stage: str) -> None:
        if self.expired():
            raise OperationTimeoutError(stage)


def run_with_retry(
    func,
    *,
    session,
    attempts: int = 3,
    backoff_base: float = 0.1,
    deadline: Deadline | None = None,
):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). Each attempt starts from a rolled-back
    session. No retry is started once the deadline has passed.
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            delay = backoff_base * (2 ** attempt)
            if deadline is not None:
                remaining = deadline.remaining()
                if remaining is not None and remaining <= delay:
                    raise
            current_app.logger.warning(
                "Retrying after contention (attempt %s/%s): %s", attempt + 1, attempts, exc
            )
            time.sleep(delay)
    if last_exc:
        raise last_exc
