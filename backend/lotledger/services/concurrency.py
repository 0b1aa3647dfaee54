# Overview: Service-layer operations for concurrency; locking, timeouts and bounded retry.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..errors import TransactionConflict


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    On SQLite the version_id columns on lots and lines turn a lost race into
    a StaleDataError, which run_with_retry handles.
    """
    return query.with_for_update()


def apply_lock_timeout() -> None:
    """Bound lock waits for the current transaction where the backend supports it."""
    timeout_ms = int(current_app.config.get("LEDGER_LOCK_TIMEOUT_MS", 5000))
    dialect = db.engine.dialect.name
    if dialect == "postgresql":
        db.session.execute(text(f"SET LOCAL lock_timeout = {timeout_ms}"))
    elif dialect in ("mysql", "mariadb"):
        seconds = max(1, timeout_ms // 1000)
        db.session.execute(text(f"SET SESSION innodb_lock_wait_timeout = {seconds}"))


def lock_table(model) -> None:
    """
    Take a table-level write lock for the rest of the transaction.

    PostgreSQL gets LOCK TABLE; elsewhere every existing row is locked, and
    SQLite already serializes writers at the database level.
    """
    dialect = db.engine.dialect.name
    if dialect == "postgresql":
        db.session.execute(text(f"LOCK TABLE {model.__tablename__} IN EXCLUSIVE MODE"))
    elif dialect != "sqlite":
        lock_for_update(db.session.query(model)).all()


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute a DB unit of work with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, lock timeouts) and StaleDataError
    (optimistic locking conflicts), rolling back before each retry. When
    retries run out the failure surfaces as TransactionConflict. Any other
    exception rolls the session back and propagates unchanged, so a failed
    operation never leaves partial state behind.
    """
    if attempts is None:
        attempts = int(current_app.config.get("LEDGER_RETRY_ATTEMPTS", 3))
    if backoff_base is None:
        backoff_base = float(current_app.config.get("LEDGER_RETRY_BACKOFF", 0.1))
    attempts = max(1, attempts)

    for attempt in range(attempts):
        try:
            apply_lock_timeout()
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise TransactionConflict(
                    "Concurrent update conflict; retry the operation",
                    details={"attempts": attempts},
                ) from exc
            current_app.logger.warning(
                "Retrying ledger transaction after conflict (attempt %d/%d): %s",
                attempt + 1, attempts, exc.__class__.__name__,
            )
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise

