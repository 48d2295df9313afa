# Overview: Transaction boundaries, row locking and bounded retry for service operations.

from __future__ import annotations

import logging
import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ErrorCode, InventoryError
from ..extensions import db

logger = logging.getLogger(__name__)

DEFAULT_ATTEMPTS = 3
DEFAULT_BACKOFF = 0.1


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def _retry_settings(attempts: int | None, backoff_base: float | None) -> tuple[int, float]:
    if attempts is None:
        attempts = current_app.config.get("DB_RETRY_ATTEMPTS", DEFAULT_ATTEMPTS)
    if backoff_base is None:
        backoff_base = current_app.config.get("DB_RETRY_BACKOFF", DEFAULT_BACKOFF)
    return max(1, int(attempts)), float(backoff_base)


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). Any other exception rolls the session
    back and propagates unchanged. When the attempts run out the
    failure surfaces as RETRY_EXHAUSTED.
    """
    attempts, backoff_base = _retry_settings(attempts, backoff_base)
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                logger.warning("Giving up after %d attempts: %s", attempts, exc)
                raise InventoryError(
                    ErrorCode.RETRY_EXHAUSTED,
                    f"Operation did not succeed after {attempts} attempts",
                    attempts=attempts,
                    cause=type(exc).__name__,
                ) from exc
            delay = backoff_base * (2 ** attempt)
            logger.info("Concurrency conflict (attempt %d/%d), retrying in %.3fs", attempt + 1, attempts, delay)
            time.sleep(delay)
        except Exception:
            db.session.rollback()
            raise


def run_in_transaction(func, *, commit: bool = True, attempts: int | None = None):
    """
    Run func as one unit of work.

    commit=True: func runs under run_with_retry and the session is committed
    when it returns; any failure rolls everything back.
    commit=False: func joins the caller's open transaction. No retry and no
    commit; the caller owns the boundary.
    """
    if not commit:
        return func()

    def _op():
        result = func()
        db.session.commit()
        return result

    return run_with_retry(_op, attempts=attempts)

