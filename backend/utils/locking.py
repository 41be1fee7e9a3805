"""In-process keyed locks so work on one room never waits on another."""

from __future__ import annotations

from contextlib import contextmanager
from threading import Lock
from typing import Hashable, Iterator

from backend.domain.errors import ConcurrencyConflictError


class KeyedLockRegistry:
    """Lazily created mutex per key (e.g. one per room).

    Locks are never removed; the key space is bounded by the inventory size.
    """

    def __init__(self, acquire_timeout_seconds: float) -> None:
        self._timeout = acquire_timeout_seconds
        self._guard = Lock()
        self._locks: dict[Hashable, Lock] = {}

    def _lock_for(self, key: Hashable) -> Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, *keys: Hashable) -> Iterator[None]:
        """Hold every lock in ``keys``, acquired in sorted order."""
        ordered = sorted(set(keys), key=repr)
        acquired: list[Lock] = []
        try:
            for key in ordered:
                lock = self._lock_for(key)
                if not lock.acquire(timeout=self._timeout):
                    raise ConcurrencyConflictError(
                        "Timed out waiting for allocation lock",
                        lock_key=repr(key),
                    )
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
