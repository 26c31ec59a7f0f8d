# Overview: Service-layer concurrency primitives shared by every stock-mutating operation.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..errors import ConcurrencyConflict


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; begin_write() takes the
    database write lock there instead.
    """
    return query.with_for_update()


def begin_write() -> None:
    """
    Open the write transaction for one stock-mutating unit of work.

    - SQLite: BEGIN IMMEDIATE, so writers serialize before reading stock.
    - PostgreSQL: bound lock waits and statement time for this transaction;
      a timeout surfaces as OperationalError and is retried by run_with_retry.
    """
    dialect = db.session.get_bind().dialect.name
    if dialect == "sqlite":
        dbapi_conn = db.session.connection().connection.dbapi_connection
        if not dbapi_conn.in_transaction:
            db.session.execute(text("BEGIN IMMEDIATE"))
    elif dialect == "postgresql":
        timeout_ms = int(current_app.config.get("STOCK_LOCK_TIMEOUT_MS", 5000))
        db.session.execute(text(f"SET LOCAL lock_timeout = {timeout_ms}"))
        db.session.execute(text(f"SET LOCAL statement_timeout = {timeout_ms * 2}"))


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute a DB unit of work with bounded retry on concurrency failures.

    Retries on OperationalError (deadlocks, lock timeouts) and StaleDataError
    (optimistic version conflicts); every attempt re-reads from scratch.
    Any other exception rolls the session back and propagates unchanged.
    Exhausted retries raise ConcurrencyConflict.
    """
    if attempts is None:
        attempts = int(current_app.config.get("STOCK_RETRY_ATTEMPTS", 3))
    if backoff_base is None:
        backoff_base = int(current_app.config.get("STOCK_RETRY_BACKOFF_MS", 100)) / 1000.0

    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            current_app.logger.info(
                "Stock write conflict (attempt %s/%s): %s", attempt + 1, attempts, exc
            )
            if attempt < attempts - 1:
                time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise

    raise ConcurrencyConflict(
        "Stock was modified concurrently; please retry",
        details={"attempts": attempts},
    ) from last_exc
