# Overview: Row locking and retry helpers for tenant units of work that race on the same rows.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db

# Lock timeouts, deadlocks, dropped connections and lost version_id races
TRANSIENT_ERRORS = (OperationalError, InterfaceError, StaleDataError)


def lock_for_update(query, *, refresh: bool = False):
    """
    SELECT ... FOR UPDATE on PostgreSQL.

    SQLite ignores the clause; tenant units there open with BEGIN IMMEDIATE
    instead. refresh=True overwrites identity-map state with the locked row.
    """
    query = query.with_for_update()
    if refresh:
        query = query.populate_existing()
    return query


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Call func(), rolling back and retrying on TRANSIENT_ERRORS with
    exponential backoff. The last error propagates once attempts run out.
    """
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except TRANSIENT_ERRORS as exc:
            db.session.rollback()
            if attempt == attempts:
                raise
            delay = backoff_base * (2 ** (attempt - 1))
            current_app.logger.warning(
                "Transient storage error (attempt %s/%s), retrying in %.2fs: %s",
                attempt, attempts, delay, exc,
            )
            time.sleep(delay)
