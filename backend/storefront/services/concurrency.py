# Overview: Transaction helpers shared by the order core services.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConflictError, UpstreamError
from ..extensions import db


def is_sqlite() -> bool:
    return db.session.get_bind().dialect.name == "sqlite"


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    Rows already in the identity map are overwritten with what the database
    holds now, so a retried operation never decides on a stale read.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; begin_write() takes the
    database write lock up front instead.
    """
    query = query.populate_existing()
    if is_sqlite():
        return query
    return query.with_for_update()


def begin_write() -> None:
    """
    Start a write transaction.

    On SQLite this issues BEGIN IMMEDIATE so that concurrent writers queue on
    the database lock before reading, instead of failing at their first write.
    A connection that is already inside a transaction is left alone.
    """
    if not is_sqlite():
        return
    dbapi_conn = db.session.connection().connection.dbapi_connection
    if getattr(dbapi_conn, "in_transaction", False):
        return
    db.session.execute(text("BEGIN IMMEDIATE"))


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (database locked, deadlocks) and
    StaleDataError (optimistic locking conflicts on Order.version_id).

    Raises:
        UpstreamError: the database still fails after the last attempt
        ConflictError: the row kept changing underneath us
    """
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                current_app.logger.error(
                    "Write failed after %d attempts: %s", attempts, type(exc).__name__,
                )
                if isinstance(exc, StaleDataError):
                    raise ConflictError("Record was modified concurrently, please retry") from exc
                raise UpstreamError("Database unavailable, please retry", {"attempts": attempts}) from exc
            current_app.logger.warning(
                "Retrying write after %s (attempt %d of %d)",
                type(exc).__name__, attempt + 1, attempts,
            )
            time.sleep(backoff_base * (2 ** attempt))


def run_write(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Run func inside one write transaction and commit it.

    Any exception rolls the whole unit back before propagating, so a failed
    checkout or transition leaves nothing behind.
    """
    def _op():
        begin_write()
        try:
            result = func()
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return result

    return run_with_retry(_op, attempts=attempts, backoff_base=backoff_base)
