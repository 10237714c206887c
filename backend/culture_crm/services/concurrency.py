# Overview: Service-layer operations for concurrency; encapsulates business logic and database work.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..validation import OptimisticLockError


DEFAULT_ATTEMPTS = 3


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def _configured_attempts() -> int:
    try:
        return int(current_app.config.get("DB_RETRY_ATTEMPTS", DEFAULT_ATTEMPTS))
    except RuntimeError:
        # No app context (scripts)
        return DEFAULT_ATTEMPTS


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float = 0.1):
    """
    Execute a unit of work with retry on concurrency-related failures.

    func must do all of its writes and commit itself; it is re-run from
    scratch after a rollback. Retries on OperationalError (deadlocks, locks)
    and StaleDataError (optimistic locking conflicts). Any other exception
    rolls the session back and propagates, so a failed unit never leaves
    partial writes pending in the session.
    """
    if attempts is None:
        attempts = _configured_attempts()
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
    if last_exc:
        raise last_exc


def check_version(entity, expected_version: int | None, entity_name: str) -> None:
    """
    Reject a write made against a stale copy of a versioned row.

    expected_version is what the caller last read; None means the caller
    did not supply one, which is rejected as well.
    """
    if expected_version is None or entity.version != expected_version:
        raise OptimisticLockError(
            entity=entity_name,
            entity_id=entity.id,
            expected_version=expected_version,
            current_version=entity.version,
            current=entity.to_dict(),
        )
