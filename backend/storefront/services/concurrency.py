# Overview: Retry helpers and per-order serialization for store writes.

from __future__ import annotations

import threading
import time
from contextlib import contextmanager

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import OrderBusy
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, busy database) and StaleDataError
    (optimistic locking conflicts). The session is rolled back before every
    retry so the next attempt starts from committed state.
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
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc


class OrderLockRegistry:
    """
    One logical mutex per order id.

    Reconciliation and admin status edits for the same order run one at a
    time, so the multi-field order update, the inventory side effects and the
    cart clear never interleave. Different orders never block each other.

    Entries are reference counted and dropped once nobody holds or waits on
    them, so the registry does not grow with the order table.
    """

    def __init__(self, timeout: float = 15.0):
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks: dict[int, list] = {}

    def _checkout(self, order_id: int) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(order_id)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[order_id] = entry
            entry[1] += 1
            return entry[0]

    def _release(self, order_id: int) -> None:
        with self._guard:
            entry = self._locks.get(order_id)
            if entry is None:
                return
            entry[1] -= 1
            if entry[1] <= 0:
                del self._locks[order_id]

    @contextmanager
    def hold(self, order_id: int, timeout: float | None = None):
        wait = self.timeout if timeout is None else timeout
        lock = self._checkout(order_id)
        acquired = False
        try:
            acquired = lock.acquire(timeout=wait)
            if not acquired:
                raise OrderBusy(
                    f"Order {order_id} is being updated by another request",
                    details={"order_id": order_id},
                )
            yield
        finally:
            if acquired:
                lock.release()
            self._release(order_id)

    def active_count(self) -> int:
        with self._guard:
            return len(self._locks)


def order_locks() -> OrderLockRegistry:
    """Registry constructed by the app factory."""
    return current_app.extensions["order_locks"]
