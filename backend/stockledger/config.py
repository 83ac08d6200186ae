# backend/stockledger/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw not in (None, "") else default


class Config:
    # SQLite DB stored in backend/instance/stockledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///stockledger.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Upper bound on how long a writer waits for the SQLite write lock
    LEDGER_DB_BUSY_TIMEOUT_SECONDS = _env_float("LEDGER_DB_BUSY_TIMEOUT_SECONDS", 15.0)

    # Conflict retry for ledger writes (deadlocks, stale version_id)
    LEDGER_RETRY_ATTEMPTS = _env_int("LEDGER_RETRY_ATTEMPTS", 3)
    LEDGER_RETRY_BACKOFF_SECONDS = _env_float("LEDGER_RETRY_BACKOFF_SECONDS", 0.1)

    # Bulk jobs (seeding, sweep audits) run in bounded chunks
    LEDGER_BULK_CHUNK_SIZE = _env_int("LEDGER_BULK_CHUNK_SIZE", 50)
    LEDGER_CHUNK_TIME_LIMIT_SECONDS = _env_float("LEDGER_CHUNK_TIME_LIMIT_SECONDS", 30.0)

    # Checked by the refund routes before calling the reconciler. 0 disables.
    REFUND_WINDOW_DAYS = _env_int("REFUND_WINDOW_DAYS", 30)
