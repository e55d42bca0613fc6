# Overview: Service-layer concurrency primitives; every engine runs its unit of work through here.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConcurrencyConflict, PersistenceError, PosLedgerError
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; begin_write() takes the
    database write lock up front there instead.
    """
    return query.with_for_update()


def begin_write():
    """
    Start the write transaction for the current unit of work.

    SQLite: set busy_timeout and issue BEGIN IMMEDIATE so concurrent writers
    serialize instead of failing at commit time. Skipped when a transaction
    is already open on the connection.

    PostgreSQL: bound lock waits with SET LOCAL lock_timeout.
    """
    timeout = float(current_app.config.get("LOCK_TIMEOUT_SECONDS", 5.0))
    dialect = db.engine.dialect.name

    if dialect == "sqlite":
        conn = db.session.connection()
        if not conn.connection.driver_connection.in_transaction:
            conn.exec_driver_sql(f"PRAGMA busy_timeout = {int(timeout * 1000)}")
            conn.exec_driver_sql("BEGIN IMMEDIATE")
    elif dialect == "postgresql":
        db.session.execute(text(f"SET LOCAL lock_timeout = '{int(timeout * 1000)}ms'"))


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute a unit of work with retry on concurrency-related failures.

    Retries on OperationalError (lock waits, busy database) and StaleDataError
    (optimistic version conflicts). When attempts run out the failure surfaces
    as ConcurrencyConflict. Business errors roll back and propagate unchanged;
    any other SQLAlchemy failure rolls back and surfaces as PersistenceError.
    """
    if attempts is None:
        attempts = int(current_app.config.get("LOCK_RETRY_ATTEMPTS", 3))
    if backoff_base is None:
        backoff_base = float(current_app.config.get("LOCK_RETRY_BACKOFF", 0.1))

    for attempt in range(attempts):
        try:
            return func()
        except PosLedgerError:
            db.session.rollback()
            raise
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                current_app.logger.warning("Giving up after %d attempts: %s", attempts, exc)
                raise ConcurrencyConflict(
                    "Resource is busy, please retry",
                    details={"attempts": attempts},
                ) from exc
            current_app.logger.warning("Concurrency conflict (attempt %d/%d), retrying: %s", attempt + 1, attempts, exc)
            time.sleep(backoff_base * (2 ** attempt))
        except SQLAlchemyError as exc:
            db.session.rollback()
            current_app.logger.exception("Persistence failure, unit of work rolled back")
            raise PersistenceError("Database operation failed") from exc
        except Exception:
            db.session.rollback()
            raise
