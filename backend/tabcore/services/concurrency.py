# Overview: Optimistic-concurrency retry and transaction boundary for service operations.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConcurrencyConflictError
from ..extensions import db


DEFAULT_ATTEMPTS = 5
DEFAULT_BACKOFF_SECONDS = 0.05


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute one read-modify-write unit of work as a single transaction.

    func must do all of its reads, writes and the final commit itself. Versioned
    rows (version_id_col) raise StaleDataError when another writer got there
    first; the session is rolled back and func runs again from a fresh read.
    OperationalError (database locked) is retried the same way.

    Any other exception rolls the session back and propagates unchanged, so a
    failed operation never leaves partial writes in the session.

    Raises:
        ConcurrencyConflictError: version conflicts persisted for every attempt
    """
    if attempts is None:
        attempts = current_app.config.get("OPTIMISTIC_RETRY_ATTEMPTS", DEFAULT_ATTEMPTS)
    if backoff_base is None:
        backoff_base = current_app.config.get("RETRY_BACKOFF_SECONDS", DEFAULT_BACKOFF_SECONDS)

    for attempt in range(attempts):
        try:
            return func()
        except (StaleDataError, OperationalError) as exc:
            db.session.rollback()
            current_app.logger.warning(
                "Concurrent update detected (attempt %s/%s): %s", attempt + 1, attempts, exc
            )
            if attempt >= attempts - 1:
                if isinstance(exc, StaleDataError):
                    raise ConcurrencyConflictError(
                        "Concurrency conflict, please retry",
                        details={"attempts": attempts},
                    ) from exc
                raise
            if backoff_base:
                time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise

    raise ConcurrencyConflictError("Concurrency conflict, please retry", details={"attempts": attempts})
