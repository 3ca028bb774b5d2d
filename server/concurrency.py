"""
OGS Manager — In-process serialization helpers
Per-key locks for check-in scans and a simple request deadline.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from errors import CheckinTimeout


class KeyedLocks:
    """
    One lock per key ("student:42", "room:7"), created on demand and
    released from the table once nobody holds or waits for it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._refs: Dict[str, int] = {}

    @contextmanager
    def hold(self, key: str, timeout: Optional[float] = None) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._refs[key] = self._refs.get(key, 0) + 1
        acquired = False
        try:
            acquired = lock.acquire(timeout=-1 if timeout is None else max(timeout, 0))
            if not acquired:
                raise CheckinTimeout(f"timed out waiting for lock {key}")
            yield
        finally:
            if acquired:
                lock.release()
            with self._guard:
                self._refs[key] -= 1
                if self._refs[key] == 0:
                    del self._refs[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class Deadline:
    """Wall-clock budget for one request; check() raises once it is spent."""

    def __init__(self, seconds: Optional[float]):
        self._expires_at = None if seconds is None else time.monotonic() + seconds

    @classmethod
    def none(cls) -> "Deadline":
        return cls(None)

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(self._expires_at - time.monotonic(), 0.0)

    @property
    def expired(self) -> bool:
        return self._expires_at is not None and time.monotonic() >= self._expires_at

    def check(self) -> None:
        if self.expired:
            raise CheckinTimeout()


# Shared by every check-in in this process.
checkin_locks = KeyedLocks()
