"""
Redis cache backend.

Documents are stored as JSON strings; the client must be created with
``decode_responses=True``.
"""

import json
from typing import Any

import redis
import structlog
from redis.lock import Lock

from ..exceptions import CacheLockNotAcquired, CannotEncodeValue

logger = structlog.get_logger()


class RedisCacheLock:
    """Distributed lock around ``redis.lock.Lock``."""

    def __init__(self, lock: Lock):
        self._lock = lock

    def acquire(self) -> bool:
        return bool(self._lock.acquire())

    def release(self) -> bool:
        try:
            self._lock.release()
        except redis.exceptions.LockError:
            # Lease expired or never acquired
            return False
        return True

    def __enter__(self) -> "RedisCacheLock":
        if not self.acquire():
            raise CacheLockNotAcquired.for_key(self._lock.name)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


class RedisCacheBackend:
    """
    Redis-backed cache for the cache driver and snapshot repository.

    Usage:
        cache = RedisCacheBackend.from_settings(get_settings())
        manager = FeatureManager.from_settings(settings, cache=cache)

    ``namespace`` is prepended to every key, so several applications can
    share one database. Locks live under ``<namespace>lock:<key>`` and
    hold a lease of ``lock_lease`` seconds.
    """

    def __init__(self, client: redis.Redis, namespace: str = "", lock_lease: int = 30):
        self.client = client
        self.namespace = namespace
        self.lock_lease = lock_lease

    @classmethod
    def from_settings(cls, settings) -> "RedisCacheBackend":
        """Connect lazily using ``settings.redis``."""
        client = redis.Redis.from_url(
            settings.redis.url,
            decode_responses=True,
            max_connections=settings.redis.max_connections,
        )
        logger.debug("Redis cache configured", max_connections=settings.redis.max_connections)
        return cls(client)

    def close(self) -> None:
        self.client.close()

    def _key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    def _decode(self, raw: str | None) -> Any | None:
        return None if raw is None else json.loads(raw)

    def get(self, key: str) -> Any | None:
        return self._decode(self.client.get(self._key(key)))

    def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        try:
            encoded = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise CannotEncodeValue.for_key(key, e) from e
        self.client.set(self._key(key), encoded, ex=ttl or None)

    def delete(self, key: str) -> bool:
        return self.client.delete(self._key(key)) > 0

    def get_many(self, keys: list[str]) -> dict[str, Any]:
        if not keys:
            return {}
        raw_values = self.client.mget([self._key(key) for key in keys])
        return {key: json.loads(raw) for key, raw in zip(keys, raw_values) if raw is not None}

    def delete_many(self, keys: list[str]) -> int:
        if not keys:
            return 0
        return self.client.delete(*[self._key(key) for key in keys])

    def delete_pattern(self, pattern: str) -> int:
        matched = list(self.client.scan_iter(match=self._key(pattern)))
        return self.client.delete(*matched) if matched else 0

    def ttl(self, key: str) -> int | None:
        remaining = self.client.ttl(self._key(key))
        # -1: no expiry, -2: missing
        return remaining if remaining >= 0 else None

    def lock(self, key: str, blocking: bool = True, timeout: float | None = None) -> RedisCacheLock:
        return RedisCacheLock(
            self.client.lock(
                self._key(f"lock:{key}"),
                timeout=self.lock_lease,
                blocking=blocking,
                blocking_timeout=timeout,
            )
        )
