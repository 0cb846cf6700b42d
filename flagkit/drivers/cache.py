"""
Cache driver.

Keeps feature values in a ``CacheBackend`` (Redis in production). The
cache is the store of record for this driver, so anything evicted by TTL
falls back to the resolver on the next check.

Key layout (``prefix`` defaults to ``features``):
- ``features:__index`` - names of features with stored values
- ``features:<feature>:<type|id>`` - exact per-context value
- ``features:<feature>.__contexts`` - context keys stored for a feature
- ``features:<feature>.__scopes`` - scope cache key -> scope + value
"""

from typing import Any

import structlog

from ..cache.base import CacheBackend
from ..context import Context, Scope
from ..exceptions import InvalidTtlConfiguration
from .base import BaseDriver, StoredValue, most_specific_first

logger = structlog.get_logger()


def normalize_ttl(ttl: Any) -> int | None:
    """Accept None, an int or a numeric string. Anything else is rejected."""
    if ttl is None:
        return None
    if isinstance(ttl, bool):
        raise InvalidTtlConfiguration.invalid_type(ttl)
    if isinstance(ttl, str) and ttl.strip().isdigit():
        ttl = int(ttl.strip())
    if not isinstance(ttl, int) or ttl < 0:
        raise InvalidTtlConfiguration.invalid_type(ttl)
    # 0 stores forever
    return ttl or None


class CacheDriver(BaseDriver):
    """
    Cache-backed driver.

    Usage:
        backend = RedisCacheBackend.from_settings(settings)
        driver = CacheDriver(backend, prefix="features", ttl=600)
    """

    def __init__(
        self,
        cache: CacheBackend,
        prefix: str = "features",
        ttl: Any = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.cache = cache
        self.prefix = prefix
        self.ttl = normalize_ttl(ttl)

    # ============================================================
    # KEYS
    # ============================================================

    def _index_key(self) -> str:
        return f"{self.prefix}:__index"

    def _value_key(self, feature: str, context: Context) -> str:
        return f"{self.prefix}:{feature}:{context.serialize()}"

    def _contexts_key(self, feature: str) -> str:
        return f"{self.prefix}:{feature}.__contexts"

    def _scopes_key(self, feature: str) -> str:
        return f"{self.prefix}:{feature}.__scopes"

    def _add_to_list(self, key: str, item: str) -> None:
        with self.cache.lock(key):
            items = self.cache.get(key) or []
            if item not in items:
                items.append(item)
                self.cache.set(key, items)

    def _remove_from_list(self, key: str, item: str) -> None:
        with self.cache.lock(key):
            items = self.cache.get(key) or []
            if item in items:
                items.remove(item)
                self.cache.set(key, items)

    # ============================================================
    # LISTING
    # ============================================================

    def stored(self) -> list[str]:
        names = []
        for feature in self.cache.get(self._index_key()) or []:
            if self.cache.get(self._contexts_key(feature)) or self.cache.get(self._scopes_key(feature)):
                names.append(feature)
        return names

    def stored_for(self, context: Context) -> dict[str, Any]:
        features = self.cache.get(self._index_key()) or []
        values: dict[str, Any] = {}

        if context.scope is not None:
            scope_key = context.scope.to_cache_key()
            for feature in features:
                entry = (self.cache.get(self._scopes_key(feature)) or {}).get(scope_key)
                if entry is not None:
                    values[feature] = entry["value"]
            return values

        keys = {self._value_key(feature, context): feature for feature in features}
        for key, payload in self.cache.get_many(list(keys)).items():
            values[keys[key]] = payload["value"]
        return values

    # ============================================================
    # STORAGE PRIMITIVES
    # ============================================================

    def _read_exact(self, feature: str, context: Context) -> StoredValue | None:
        payload = self.cache.get(self._value_key(feature, context))
        if payload is None:
            return None
        return StoredValue.from_payload(payload)

    def _read_scoped(self, feature: str, scope: Scope) -> tuple[Scope, StoredValue] | None:
        entries = self.cache.get(self._scopes_key(feature)) or {}
        candidates = []
        for entry in entries.values():
            stored_scope = Scope.from_dict(entry["scope"])
            if scope.matches(stored_scope):
                candidates.append((stored_scope, StoredValue.from_payload(entry)))

        if not candidates:
            return None
        return most_specific_first(candidates)[0]

    def _write_exact(self, feature: str, context: Context, stored: StoredValue) -> None:
        self.cache.set(self._value_key(feature, context), stored.to_payload(), ttl=self.ttl)
        self._add_to_list(self._contexts_key(feature), context.serialize())
        self._add_to_list(self._index_key(), feature)

    def _write_scoped(self, feature: str, scope: Scope, stored: StoredValue) -> None:
        key = self._scopes_key(feature)
        with self.cache.lock(key):
            entries = self.cache.get(key) or {}
            entries[scope.to_cache_key()] = {"scope": scope.to_dict(), **stored.to_payload()}
            self.cache.set(key, entries, ttl=self.ttl)
        self._add_to_list(self._index_key(), feature)

    def _delete_exact(self, feature: str, context: Context) -> None:
        self.cache.delete(self._value_key(feature, context))
        self._remove_from_list(self._contexts_key(feature), context.serialize())

    def _delete_scoped(self, feature: str, scope: Scope) -> None:
        key = self._scopes_key(feature)
        with self.cache.lock(key):
            entries = self.cache.get(key) or {}
            if entries.pop(scope.to_cache_key(), None) is not None:
                self.cache.set(key, entries, ttl=self.ttl)

    def _clear_feature(self, feature: str) -> None:
        contexts = self.cache.get(self._contexts_key(feature)) or []
        keys = [f"{self.prefix}:{feature}:{context_key}" for context_key in contexts]
        keys += [self._contexts_key(feature), self._scopes_key(feature)]
        self.cache.delete_many(keys)
        self._remove_from_list(self._index_key(), feature)

    def flush_cache(self) -> None:
        """Drop every key under the prefix."""
        deleted = self.cache.delete_pattern(f"{self.prefix}:*")
        logger.info("Feature cache flushed", prefix=self.prefix, keys=deleted)
