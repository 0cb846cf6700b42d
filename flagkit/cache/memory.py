"""
In-process cache backend for tests and single-process deployments.
"""

import fnmatch
import json
import threading
from datetime import datetime, timedelta
from typing import Any

from ..exceptions import CacheLockNotAcquired, CannotEncodeValue
from ..timezone import Clock, utc_now


class MemoryCacheLock:
    """Wraps one ``threading.Lock`` from the backend's lock table."""

    def __init__(self, key: str, lock: threading.Lock, blocking: bool = True, timeout: float | None = None):
        self.key = key
        self._lock = lock
        self._blocking = blocking
        self._timeout = -1 if timeout is None else timeout
        self._held = False

    def acquire(self) -> bool:
        if self._blocking:
            self._held = self._lock.acquire(timeout=self._timeout)
        else:
            self._held = self._lock.acquire(blocking=False)
        return self._held

    def release(self) -> bool:
        if not self._held:
            return False
        self._lock.release()
        self._held = False
        return True

    def __enter__(self) -> "MemoryCacheLock":
        if not self.acquire():
            raise CacheLockNotAcquired.for_key(self.key)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


class MemoryCacheBackend:
    """
    Dict-backed cache with expiry measured on ``clock``.

    Documents are held as JSON text, the same encoding Redis stores, so
    values Redis would reject are rejected here too and callers always
    get a fresh copy back.

    Usage:
        cache = MemoryCacheBackend()
        driver = CacheDriver(cache, ttl=600)
    """

    def __init__(self, clock: Clock = utc_now):
        self.clock = clock
        self._entries: dict[str, tuple[str, datetime | None]] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _live(self, key: str) -> tuple[str, datetime | None] | None:
        entry = self._entries.get(key)
        if entry is not None and entry[1] is not None and self.clock() >= entry[1]:
            del self._entries[key]
            return None
        return entry

    def get(self, key: str) -> Any | None:
        entry = self._live(key)
        return None if entry is None else json.loads(entry[0])

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        try:
            encoded = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise CannotEncodeValue.for_key(key, e) from e
        expires_at = self.clock() + timedelta(seconds=ttl) if ttl else None
        self._entries[key] = (encoded, expires_at)

    def delete(self, key: str) -> bool:
        if self._live(key) is None:
            return False
        del self._entries[key]
        return True

    def get_many(self, keys: list[str]) -> dict[str, Any]:
        found = {}
        for key in keys:
            entry = self._live(key)
            if entry is not None:
                found[key] = json.loads(entry[0])
        return found

    def delete_many(self, keys: list[str]) -> int:
        return sum(1 for key in keys if self.delete(key))

    def delete_pattern(self, pattern: str) -> int:
        return self.delete_many([key for key in list(self._entries) if fnmatch.fnmatchcase(key, pattern)])

    def ttl(self, key: str) -> int | None:
        entry = self._live(key)
        if entry is None or entry[1] is None:
            return None
        return max(0, int((entry[1] - self.clock()).total_seconds()))

    def lock(self, key: str, blocking: bool = True, timeout: float | None = None) -> MemoryCacheLock:
        with self._locks_guard:
            lock = self._locks.setdefault(key, threading.Lock())
        return MemoryCacheLock(key, lock, blocking=blocking, timeout=timeout)
