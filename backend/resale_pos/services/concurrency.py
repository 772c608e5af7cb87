# Overview: Service-layer transaction helpers; row locks, retries and the atomic write unit.

from __future__ import annotations

import logging
import time

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..results import Failure

logger = logging.getLogger(__name__)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    On SQLite, begin_write_transaction() takes the database write lock instead.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts).
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            logger.warning("Retrying write after %s (attempt %d)", type(exc).__name__, attempt + 1)
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc


def begin_write_transaction() -> None:
    """
    Start the write transaction up front.

    SQLite: BEGIN IMMEDIATE takes the reserved lock before the first read, so
    two writers cannot both read a unit as available. Other dialects rely on
    the row locks taken by lock_for_update().
    """
    session = db.session
    if session.get_bind().dialect.name != "sqlite":
        return
    raw = session.connection().connection.dbapi_connection
    if not raw.in_transaction:
        session.execute(text("BEGIN IMMEDIATE"))


def run_atomic(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Run func as one unit of work.

    Commits when func returns a success value. Rolls back when it returns a
    Failure or raises, so a failed step never leaves partial writes behind.
    """
    def _op():
        begin_write_transaction()
        try:
            result = func()
        except Exception:
            db.session.rollback()
            raise
        if isinstance(result, Failure):
            db.session.rollback()
        else:
            db.session.commit()
        return result

    return run_with_retry(_op, attempts=attempts, backoff_base=backoff_base)
