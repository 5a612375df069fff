# possale/config.py
from __future__ import annotations
import os


def _optional_float(name: str) -> float | None:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return None
    return float(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///possale.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Single sales tax rate applied to every sale subtotal (string so Decimal stays exact)
    SALES_TAX_RATE = os.environ.get("SALES_TAX_RATE", "0.10")

    # Contention handling for create/void (deadlocks, busy SQLite, stale versions)
    SALE_RETRY_ATTEMPTS = int(os.environ.get("SALE_RETRY_ATTEMPTS", "3"))
    SALE_RETRY_BACKOFF = float(os.environ.get("SALE_RETRY_BACKOFF", "0.1"))

    # Seconds; None means no deadline unless the caller passes one
    SALE_OPERATION_TIMEOUT = _optional_float("SALE_OPERATION_TIMEOUT")

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
