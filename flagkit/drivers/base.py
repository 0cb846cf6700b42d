"""
Shared driver behaviour.

``BaseDriver`` implements the lookup order, write-back, unknown-feature
reporting and global overrides once. Concrete drivers only provide the
storage primitives (``_read_exact``, ``_write_scoped`` and friends).
"""

import random
from abc import abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping, Sequence

import structlog

from ..context import Context, Scope
from ..events import EventDispatcher, UnknownFeatureResolved
from ..interfaces import Driver, Resolver
from ..timezone import Clock, ensure_utc, format_iso, utc_now

logger = structlog.get_logger()


@dataclass
class StoredValue:
    """
    A stored feature value.

    ``resolved`` marks values written back from a resolver. They rank below
    scope-matched values, so caching a resolver result never shadows a
    scope override set later.
    """
    value: Any
    expires_at: datetime | None = None
    resolved: bool = False

    def is_expired(self, now: datetime) -> bool:
        if self.expires_at is None:
            return False
        return ensure_utc(now) >= ensure_utc(self.expires_at)

    def to_payload(self) -> dict[str, Any]:
        return {
            "value": self.value,
            "expires_at": format_iso(self.expires_at),
            "resolved": self.resolved,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "StoredValue":
        expires_at = payload.get("expires_at")
        if isinstance(expires_at, str):
            expires_at = datetime.fromisoformat(expires_at.replace("Z", "+00:00"))
        return cls(
            value=payload.get("value"),
            expires_at=expires_at,
            resolved=bool(payload.get("resolved", False)),
        )


def constant(value: Any) -> Resolver:
    """Resolver that ignores the context."""
    def resolve(context: Any = None) -> Any:
        return value
    return resolve


class BaseDriver(Driver):
    """
    Driver with the resolution algorithm implemented once.

    Resolvers are in-process: definitions are code and are registered on
    every process, while stored values live wherever the driver keeps them.
    """

    def __init__(
        self,
        dispatcher: EventDispatcher | None = None,
        unknown_feature_rate: float = 1.0,
        clock: Clock = utc_now,
        sampler: Callable[[], float] = random.random,
    ):
        self.dispatcher = dispatcher
        self.unknown_feature_rate = unknown_feature_rate
        self.clock = clock
        self._sampler = sampler
        self._resolvers: dict[str, Resolver] = {}

    # ============================================================
    # DEFINITIONS
    # ============================================================

    def define(self, feature: str, resolver: Resolver | Any) -> None:
        if not callable(resolver):
            resolver = constant(resolver)
        self._resolvers[feature] = resolver

    def defined(self) -> list[str]:
        return list(self._resolvers)

    # ============================================================
    # RESOLUTION
    # ============================================================

    def get(self, feature: str, context: Context) -> Any:
        return self._resolve(feature, context).value

    def lookup(self, feature: str, context: Context) -> tuple[Any, datetime | None]:
        stored = self._resolve(feature, context)
        return stored.value, stored.expires_at

    def _resolve(self, feature: str, context: Context) -> StoredValue:
        now = self.clock()

        exact = self._read_exact(feature, context)
        if exact is not None and exact.is_expired(now):
            self._expire(feature, context)
            return StoredValue(False)
        if exact is not None and not exact.resolved:
            return exact

        if context.scope is not None:
            match = self._read_scoped(feature, context.scope)
            if match is not None:
                stored_scope, scoped = match
                if scoped.is_expired(now):
                    self._delete_scoped(feature, stored_scope)
                    return StoredValue(False)
                return scoped

        if exact is not None:
            return exact

        resolver = self._resolvers.get(feature)
        if resolver is None:
            self._report_unknown(feature, context)
            return StoredValue(False)

        stored = StoredValue(value=resolver(context), resolved=True)
        self._write_exact(feature, context, stored)
        return stored

    def get_all(self, features: Mapping[str, Sequence[Context]]) -> dict[str, list[Any]]:
        return {
            feature: [self.get(feature, context) for context in contexts]
            for feature, contexts in features.items()
        }

    def _expire(self, feature: str, context: Context) -> None:
        logger.info(
            "Expired feature value removed",
            feature=feature,
            context=context.serialize(),
        )
        self._delete_exact(feature, context)

    def _report_unknown(self, feature: str, context: Context) -> None:
        logger.debug("Unknown feature resolved", feature=feature, context=context.serialize())

        if self.dispatcher is None or self.unknown_feature_rate <= 0:
            return
        if self.unknown_feature_rate < 1 and self._sampler() >= self.unknown_feature_rate:
            return

        self.dispatcher.dispatch(UnknownFeatureResolved(feature=feature, context=context))

    # ============================================================
    # WRITES
    # ============================================================

    def set(
        self,
        feature: str,
        context: Context,
        value: Any,
        expires_at: datetime | None = None,
    ) -> None:
        stored = StoredValue(value=value, expires_at=expires_at)
        if context.scope is not None:
            self._write_scoped(feature, context.scope, stored)
        else:
            self._write_exact(feature, context, stored)

    def set_for_all_contexts(self, feature: str, value: Any) -> None:
        self._resolvers[feature] = constant(value)
        self._clear_feature(feature)
        logger.info("Feature set for all contexts", feature=feature, value=value)

    def delete(self, feature: str, context: Context) -> None:
        if context.scope is not None:
            self._delete_scoped(feature, context.scope)
        else:
            self._delete_exact(feature, context)

    def purge(self, features: Sequence[str] | None = None) -> None:
        targets = list(features) if features is not None else self.stored()
        for feature in targets:
            self._clear_feature(feature)
        logger.info("Feature values purged", features=targets)

    # ============================================================
    # STORAGE PRIMITIVES
    # ============================================================

    @abstractmethod
    def _read_exact(self, feature: str, context: Context) -> StoredValue | None:
        """Stored value keyed by ``context.serialize()``."""
        pass

    @abstractmethod
    def _read_scoped(self, feature: str, scope: Scope) -> tuple[Scope, StoredValue] | None:
        """First stored scope that ``scope`` satisfies, with its value."""
        pass

    @abstractmethod
    def _write_exact(self, feature: str, context: Context, stored: StoredValue) -> None:
        pass

    @abstractmethod
    def _write_scoped(self, feature: str, scope: Scope, stored: StoredValue) -> None:
        pass

    @abstractmethod
    def _delete_exact(self, feature: str, context: Context) -> None:
        pass

    @abstractmethod
    def _delete_scoped(self, feature: str, scope: Scope) -> None:
        pass

    @abstractmethod
    def _clear_feature(self, feature: str) -> None:
        """Remove every stored value (both tiers) of a feature."""
        pass


def most_specific_first(candidates: list[tuple[Scope, StoredValue]]) -> list[tuple[Scope, StoredValue]]:
    """Order scope matches by number of defined constraints, then key."""
    return sorted(
        candidates,
        key=lambda item: (-len(item[0].defined_constraints()), item[0].to_cache_key()),
    )
