"""
Per-(book, date) exclusive locks for the admission read-check-write span.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import date
from typing import Dict, Iterator, Tuple

from ..domain.exceptions import LockTimeoutError

logger = logging.getLogger(__name__)

LockKey = Tuple[str, date]


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class SlotLockManager:
    """
    Hands out one lock per (book, date) within this process.

    Locks are created on first use and dropped once nobody holds or waits
    for them, so the registry stays bounded by the number of in-flight
    admissions. Cross-process safety comes from the store's own
    transaction, not from here.
    """

    def __init__(self, timeout_seconds: float = 5.0):
        self.timeout_seconds = timeout_seconds
        self._registry: Dict[LockKey, _Entry] = {}
        self._registry_lock = threading.Lock()

    @contextmanager
    def hold(self, book_id: str, day: date, timeout_seconds: float | None = None) -> Iterator[None]:
        """
        Hold the lock for (book_id, day) for the duration of the block.

        Raises:
            LockTimeoutError: If the lock is not acquired within the timeout
        """
        key = (book_id, day)
        timeout = self.timeout_seconds if timeout_seconds is None else timeout_seconds
        entry = self._checkout(key)

        try:
            if not entry.lock.acquire(timeout=timeout):
                logger.info("Admission lock for %s on %s not acquired within %.2fs", book_id, day, timeout)
                raise LockTimeoutError(f"Timed out waiting for {book_id} on {day.isoformat()}")
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(key, entry)

    def is_held(self, book_id: str, day: date) -> bool:
        with self._registry_lock:
            entry = self._registry.get((book_id, day))
            return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._registry)

    def _checkout(self, key: LockKey) -> _Entry:
        with self._registry_lock:
            entry = self._registry.get(key)
            if entry is None:
                entry = self._registry[key] = _Entry()
            entry.users += 1
            return entry

    def _checkin(self, key: LockKey, entry: _Entry) -> None:
        with self._registry_lock:
            entry.users -= 1
            if entry.users == 0:
                del self._registry[key]
