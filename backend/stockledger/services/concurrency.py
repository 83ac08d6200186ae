# Overview: Transaction boundaries for ledger writes: row locks, writer serialization, conflict retry.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy import event, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db

# Session.info key set once the current transaction has flushed any writes
_FLUSHED_KEY = "ledger_flushed_writes"


@event.listens_for(Session, "after_flush")
def _mark_flushed(session, flush_context):
    session.info[_FLUSHED_KEY] = True


@event.listens_for(Session, "after_transaction_end")
def _clear_flushed(session, transaction):
    if transaction.parent is None:
        session.info.pop(_FLUSHED_KEY, None)


def has_open_writes() -> bool:
    """
    True when the session holds caller work that is not committed yet:
    pending/dirty/deleted objects, or rows already flushed in the open
    transaction.
    """
    session = db.session()
    if session.new or session.dirty or session.deleted:
        return True
    return bool(session.info.get(_FLUSHED_KEY))


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    On SQLite, begin_write() takes the database write lock instead.
    """
    return query.with_for_update()


def _sqlite_in_transaction() -> bool:
    driver_conn = db.session.connection().connection.driver_connection
    return bool(getattr(driver_conn, "in_transaction", False))


def begin_write() -> None:
    """
    Start the write transaction before the first read.

    SQLite: BEGIN IMMEDIATE takes the write lock up front, so the stock value
    read next cannot be changed by another writer before we commit. Skipped
    when the connection already has a transaction open, since SQLite cannot
    nest one.
    """
    if db.engine.dialect.name == "sqlite" and not _sqlite_in_transaction():
        db.session.execute(text("BEGIN IMMEDIATE"))


def _is_nested_begin(exc: OperationalError) -> bool:
    return "cannot start a transaction within a transaction" in str(exc.orig or exc)


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute a DB operation as one all-or-nothing unit.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts on version_id). Any other exception rolls
    back the session and propagates unchanged. A nested BEGIN is a usage
    error, not a conflict, and is never retried.
    """
    if attempts is None:
        attempts = current_app.config.get("LEDGER_RETRY_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = current_app.config.get("LEDGER_RETRY_BACKOFF_SECONDS", 0.1)

    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if isinstance(exc, OperationalError) and _is_nested_begin(exc):
                raise
            if attempt >= attempts - 1:
                raise
            current_app.logger.warning(
                "Ledger write conflict (attempt %d/%d): %s", attempt + 1, attempts, exc
            )
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
    if last_exc:
        raise last_exc


def run_in_transaction(func, *, commit: bool = True):
    """
    Run a mutating service operation.

    commit=True: the call owns its transaction (BEGIN IMMEDIATE, retry, commit).
    commit=False: the caller owns the transaction; the operation only flushes
    and the caller decides when to commit or roll back.

    WHY NO RETRY WHEN THE CALLER HAS OPEN WRITES:
    A retry starts with a rollback, which would throw away the caller's
    uncommitted rows and then re-run the operation on a clean session. Instead
    the operation joins the caller's transaction: caller work is flushed first
    (taking the write lock), the operation runs once, and everything commits
    together. Any failure rolls back the whole unit and propagates.
    """
    if not commit:
        return func()

    if has_open_writes():
        try:
            db.session.flush()
            result = func()
            db.session.commit()
            return result
        except Exception:
            db.session.rollback()
            raise

    def _op():
        begin_write()
        result = func()
        db.session.commit()
        return result

    return run_with_retry(_op)
