# Overview: Retry and compare-and-swap helpers for ledger appends.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


class ResolutionError(Exception):
    """Raised when the store cannot be read while resolving a ledger head."""
    pass


class ConcurrencyConflict(Exception):
    """Raised when another writer appended to the same scope first."""
    def __init__(self, message: str, scope: dict | None = None):
        super().__init__(message)
        self.scope = scope or {}


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    The per-scope sequence constraint still catches a lost update there.
    """
    return query.with_for_update()


def append_with_cas(entry, *, scope: dict):
    """
    Insert a chained ledger row and flush immediately.

    The row's `sequence` was computed from the head the caller resolved. If a
    concurrent writer already took that sequence, the unique constraint fails
    and the append surfaces as ConcurrencyConflict for the caller to retry.
    """
    db.session.add(entry)
    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConcurrencyConflict(
            f"Ledger head moved while appending sequence {entry.sequence}",
            scope=scope,
        ) from exc
    return entry


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks), StaleDataError
    (optimistic locking conflicts), ConcurrencyConflict (ledger CAS) and
    ResolutionError (head could not be read).
    """
    if attempts is None:
        attempts = current_app.config.get("LEDGER_RETRY_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = current_app.config.get("LEDGER_RETRY_BACKOFF", 0.1)

    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError, ConcurrencyConflict, ResolutionError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            current_app.logger.info(
                "Retrying ledger operation after %s (attempt %d/%d)",
                type(exc).__name__, attempt + 1, attempts,
            )
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc
