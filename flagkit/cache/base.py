"""
Key-value store used by the cache driver and the cache snapshot repository.

Values are JSON documents; anything ``json.dumps`` rejects raises
CannotEncodeValue on ``set``. TTLs are whole seconds; None means the key
never expires. Entering a lock that cannot be acquired raises
CacheLockNotAcquired.
"""

from typing import Any, Protocol


class CacheLock(Protocol):
    """Exclusive lock over one key, usable as a context manager."""

    def acquire(self) -> bool:
        ...

    def release(self) -> bool:
        ...

    def __enter__(self) -> "CacheLock":
        ...

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        ...


class CacheBackend(Protocol):
    """Operations flagkit needs from a cache."""

    def get(self, key: str) -> Any | None:
        """Stored document, or None when missing or expired."""
        ...

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        ...

    def delete(self, key: str) -> bool:
        """True when a live key was removed."""
        ...

    def get_many(self, keys: list[str]) -> dict[str, Any]:
        """Live keys only; missing keys are left out."""
        ...

    def delete_many(self, keys: list[str]) -> int:
        ...

    def delete_pattern(self, pattern: str) -> int:
        """Delete keys matching a glob such as ``features:*``."""
        ...

    def ttl(self, key: str) -> int | None:
        """Seconds left, or None for keys without expiry (or missing)."""
        ...

    def lock(self, key: str, blocking: bool = True, timeout: float | None = None) -> CacheLock:
        """Lock guarding read-modify-write cycles on ``key``."""
        ...
