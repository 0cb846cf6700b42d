"""
In-memory driver.

For tests and request-scoped use. Each instance owns its own state; build
one per request/session and drop it afterwards.
"""

from collections import defaultdict
from typing import Any

from ..context import Context, Scope
from .base import BaseDriver, StoredValue, most_specific_first


class MemoryDriver(BaseDriver):
    """
    Dict-backed driver.

    Useful for:
    - Unit testing
    - Request-scoped overrides without a backing store
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._exact: dict[str, dict[str, StoredValue]] = defaultdict(dict)
        self._scoped: dict[str, dict[str, tuple[Scope, StoredValue]]] = defaultdict(dict)

    # ============================================================
    # LISTING
    # ============================================================

    def stored(self) -> list[str]:
        names = [f for f, values in self._exact.items() if values]
        names += [f for f, values in self._scoped.items() if values and f not in names]
        return names

    def stored_for(self, context: Context) -> dict[str, Any]:
        values: dict[str, Any] = {}
        if context.scope is not None:
            scope_key = context.scope.to_cache_key()
            for feature, entries in self._scoped.items():
                if scope_key in entries:
                    values[feature] = entries[scope_key][1].value
            return values

        key = context.serialize()
        for feature, entries in self._exact.items():
            if key in entries:
                values[feature] = entries[key].value
        return values

    # ============================================================
    # STORAGE PRIMITIVES
    # ============================================================

    def _read_exact(self, feature: str, context: Context) -> StoredValue | None:
        return self._exact.get(feature, {}).get(context.serialize())

    def _read_scoped(self, feature: str, scope: Scope) -> tuple[Scope, StoredValue] | None:
        candidates = [
            (stored_scope, stored)
            for stored_scope, stored in self._scoped.get(feature, {}).values()
            if scope.matches(stored_scope)
        ]
        if not candidates:
            return None
        return most_specific_first(candidates)[0]

    def _write_exact(self, feature: str, context: Context, stored: StoredValue) -> None:
        self._exact[feature][context.serialize()] = stored

    def _write_scoped(self, feature: str, scope: Scope, stored: StoredValue) -> None:
        self._scoped[feature][scope.to_cache_key()] = (scope, stored)

    def _delete_exact(self, feature: str, context: Context) -> None:
        self._exact.get(feature, {}).pop(context.serialize(), None)

    def _delete_scoped(self, feature: str, scope: Scope) -> None:
        self._scoped.get(feature, {}).pop(scope.to_cache_key(), None)

    def _clear_feature(self, feature: str) -> None:
        self._exact.pop(feature, None)
        self._scoped.pop(feature, None)
