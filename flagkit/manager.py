"""
Feature Manager - main entry point.

Normalizes callers into contexts, resolves through a driver, keeps a
per-manager in-process cache and dispatches activation events.

    manager = FeatureManager(MemoryDriver())
    manager.define("beta-dashboard", PercentageStrategy(20, seed="beta"))

    if manager.active("beta-dashboard", user):
        ...
"""

from datetime import datetime
from typing import Any, Iterable, Mapping, Sequence

import structlog
from sqlalchemy.orm import Session

from .cache import CacheBackend, RedisCacheBackend
from .config import FlagSettings, get_settings
from .context import Context, ContextResolver, GuestContext, KeyRegistry, is_guest
from .drivers import CacheDriver, DatabaseDriver, MemoryDriver
from .events import EventDispatcher, FeatureActivated, FeatureDeactivated
from .exceptions import RequiresContext, UnknownVariant
from .interfaces import Driver, Resolver
from .strategies import Strategy, VariantStrategy
from .timezone import Clock, ensure_utc, utc_now
from .values import FeatureValue

logger = structlog.get_logger()


class FeatureManager:
    """
    Feature flag manager.

    Resolution for ``get(feature, caller)``:
    1. Normalize the caller (None becomes a guest context)
    2. In-process cache keyed by (feature, context cache key)
    3. Definition expiry: expired features are inactive
    4. Driver lookup (exact value, scope match, resolver)
    """

    def __init__(
        self,
        driver: Driver,
        dispatcher: EventDispatcher | None = None,
        settings: FlagSettings | None = None,
        resolver: ContextResolver | None = None,
        clock: Clock = utc_now,
    ):
        self.settings = settings or get_settings()
        self.driver = driver
        self.dispatcher = dispatcher
        self.contexts = resolver or ContextResolver(
            KeyRegistry(self.settings.key_map, enforce=self.settings.enforce_key_map)
        )
        self.clock = clock
        # (feature, context cache key) -> (value, expires_at of the stored value)
        self._cache: dict[tuple[str, str], tuple[FeatureValue, datetime | None]] = {}
        self._expires: dict[str, datetime] = {}
        self._variants: dict[str, dict[str, int]] = {}

    @classmethod
    def from_settings(
        cls,
        settings: FlagSettings | None = None,
        *,
        db: Session | None = None,
        cache: CacheBackend | None = None,
        dispatcher: EventDispatcher | None = None,
    ) -> "FeatureManager":
        """Build a manager whose driver follows ``settings.store.default``."""
        settings = settings or get_settings()
        dispatcher = dispatcher or EventDispatcher(enabled=settings.events.enabled)
        options = {
            "dispatcher": dispatcher,
            "unknown_feature_rate": settings.events.unknown_feature_rate,
        }

        driver: Driver
        if settings.store.default == "database":
            if db is None:
                raise ValueError("The database store needs a session")
            driver = DatabaseDriver(db, **options)
        elif settings.store.default == "cache":
            driver = CacheDriver(
                cache or RedisCacheBackend.from_settings(settings),
                prefix=settings.store.cache_prefix,
                ttl=settings.store.cache_ttl,
                **options,
            )
        else:
            driver = MemoryDriver(**options)

        return cls(driver, dispatcher=dispatcher, settings=settings)

    # ============================================================
    # CONTEXTS
    # ============================================================

    def resolve_context(self, caller: Any) -> Context:
        if caller is None:
            caller = GuestContext()
        return self.contexts.resolve(caller)

    def serialize_context(self, caller: Any) -> str:
        return self.resolve_context(caller).serialize()

    # ============================================================
    # DEFINITIONS
    # ============================================================

    def define(
        self,
        feature: str,
        resolver: Resolver | Any = False,
        *,
        expires_at: datetime | None = None,
    ) -> None:
        """
        Define a feature.

        Args:
            feature: Feature name
            resolver: Strategy, callable taking a Context, or constant value
            expires_at: After this instant the feature resolves inactive
        """
        self._variants.pop(feature, None)
        if callable(resolver):
            resolver = self._wrap(feature, resolver)

        if expires_at is not None:
            self._expires[feature] = ensure_utc(expires_at)
        else:
            self._expires.pop(feature, None)

        self.driver.define(feature, resolver)
        self._forget_cached(feature)

    def _wrap(self, feature: str, resolver: Resolver) -> Resolver:
        """Hand resolvers None instead of the guest context."""
        null_safe = True
        if isinstance(resolver, Strategy):
            null_safe = resolver.can_handle_null_context()

        def resolve(context: Context) -> Any:
            if is_guest(context):
                if not null_safe:
                    raise RequiresContext.for_feature(feature)
                return resolver(None)
            return resolver(context)

        return resolve

    def defined(self) -> list[str]:
        return self.driver.defined()

    def stored(self) -> list[str]:
        return self.driver.stored()

    def is_expired(self, feature: str) -> bool:
        expires_at = self._expires.get(feature)
        return expires_at is not None and ensure_utc(self.clock()) >= expires_at

    # ============================================================
    # VARIANTS
    # ============================================================

    def define_variant(
        self,
        feature: str,
        weights: Mapping[str, int],
        *,
        expires_at: datetime | None = None,
    ) -> None:
        """
        Define a feature that hands each context one weighted variant name.

        The feature name seeds the bucketing, so a context lands on the same
        variant in every process. Weights must be non-negative integers
        summing to 100.
        """
        strategy = VariantStrategy(weights, seed=feature)
        self.define(feature, strategy, expires_at=expires_at)
        self._variants[feature] = strategy.weights

    def variants(self, feature: str) -> dict[str, int]:
        """Weights of a variant feature, or {} when it has none."""
        return dict(self._variants.get(feature, {}))

    def variant(self, feature: str, caller: Any = None) -> str | None:
        """
        The caller's variant name.

        None when the feature has no variants or is switched off for the
        caller (expired, deactivated, or overridden with a non-string).
        """
        if feature not in self._variants:
            return None
        result = self.get(feature, caller)
        if result.is_active and isinstance(result.value, str):
            return result.value
        return None

    def use_variant(self, feature: str, caller: Any, variant: str) -> None:
        """Pin the caller to one of the feature's variants."""
        if variant not in self._variants.get(feature, {}):
            raise UnknownVariant.named(feature, variant)
        self.set(feature, caller, variant)

    # ============================================================
    # CHECKS
    # ============================================================

    def get(self, feature: str, caller: Any = None) -> FeatureValue:
        context = self.resolve_context(caller)
        key = (feature, context.to_cache_key())

        if self.is_expired(feature):
            logger.debug("Feature expired", feature=feature)
            self._cache.pop(key, None)
            return FeatureValue.defined(False)

        cached = self._cache.get(key)
        if cached is not None:
            result, expires_at = cached
            if expires_at is None or ensure_utc(self.clock()) < expires_at:
                return result
            del self._cache[key]

        raw, expires_at = self.driver.lookup(feature, context)
        result = self._to_feature_value(feature, raw)
        self._cache[key] = (result, ensure_utc(expires_at) if expires_at is not None else None)
        return result

    def value(self, feature: str, caller: Any = None) -> Any:
        return self.get(feature, caller).to_value()

    def active(self, feature: str, caller: Any = None) -> bool:
        return self.get(feature, caller).is_active

    def inactive(self, feature: str, caller: Any = None) -> bool:
        return not self.active(feature, caller)

    def any_active(self, features: Iterable[str], caller: Any = None) -> bool:
        return any(self.active(feature, caller) for feature in features)

    def all_active(self, features: Iterable[str], caller: Any = None) -> bool:
        return all(self.active(feature, caller) for feature in features)

    def values(self, features: Iterable[str], caller: Any = None) -> dict[str, Any]:
        return {feature: self.value(feature, caller) for feature in features}

    def get_all(self, features: Mapping[str, Sequence[Any]]) -> dict[str, list[FeatureValue]]:
        """Batched check: ``{feature: [callers]}`` -> ``{feature: [values]}``."""
        contexts = {
            feature: [self.resolve_context(caller) for caller in callers]
            for feature, callers in features.items()
        }
        raw = self.driver.get_all(contexts)

        results: dict[str, list[FeatureValue]] = {}
        for feature, values in raw.items():
            if self.is_expired(feature):
                results[feature] = [FeatureValue.defined(False) for _ in values]
            else:
                results[feature] = [self._to_feature_value(feature, value) for value in values]
        return results

    def _to_feature_value(self, feature: str, raw: Any) -> FeatureValue:
        if raw is False and feature not in self.driver.defined() and feature not in self.driver.stored():
            return FeatureValue.undefined()
        return FeatureValue.from_raw(raw)

    # ============================================================
    # WRITES
    # ============================================================

    def set(
        self,
        feature: str,
        caller: Any,
        value: Any,
        expires_at: datetime | None = None,
    ) -> None:
        context = self.resolve_context(caller)
        self.driver.set(feature, context, value, expires_at=expires_at)
        self._forget_cached(feature)

        if value is False or value is None:
            logger.info("Feature deactivated", feature=feature, context=context.serialize())
            self._dispatch(FeatureDeactivated(feature=feature, context=context))
        else:
            logger.info("Feature activated", feature=feature, context=context.serialize())
            self._dispatch(FeatureActivated(feature=feature, context=context, value=value))

    def activate(self, features: str | Iterable[str], caller: Any = None, value: Any = True) -> None:
        for feature in _names(features):
            self.set(feature, caller, value)

    def deactivate(self, features: str | Iterable[str], caller: Any = None) -> None:
        for feature in _names(features):
            self.set(feature, caller, False)

    def forget(self, features: str | Iterable[str], caller: Any = None) -> None:
        context = self.resolve_context(caller)
        for feature in _names(features):
            self.driver.delete(feature, context)
            self._forget_cached(feature)

    def activate_for_everyone(self, features: str | Iterable[str], value: Any = True) -> None:
        for feature in _names(features):
            self.driver.set_for_all_contexts(feature, value)
            self._forget_cached(feature)
            self._dispatch(FeatureActivated(feature=feature, context=None, value=value))

    def deactivate_for_everyone(self, features: str | Iterable[str]) -> None:
        for feature in _names(features):
            self.driver.set_for_all_contexts(feature, False)
            self._forget_cached(feature)
            self._dispatch(FeatureDeactivated(feature=feature, context=None))

    def purge(self, features: str | Iterable[str] | None = None) -> None:
        self.driver.purge(None if features is None else list(_names(features)))
        self._cache.clear()

    def flush_cache(self) -> None:
        self._cache.clear()
        self.driver.flush_cache()

    def stored_values(self, caller: Any = None) -> dict[str, Any]:
        """Stored values for the caller, without reserved bookkeeping names."""
        context = self.resolve_context(caller)
        prefix = self.settings.reserved_prefix
        return {
            feature: value
            for feature, value in self.driver.stored_for(context).items()
            if not feature.startswith(prefix)
        }

    # ============================================================
    # INTERNAL
    # ============================================================

    def _forget_cached(self, feature: str) -> None:
        for key in [key for key in self._cache if key[0] == feature]:
            del self._cache[key]

    def _dispatch(self, event: Any) -> None:
        if self.dispatcher is not None:
            self.dispatcher.dispatch(event)


def _names(features: str | Iterable[str]) -> list[str]:
    if isinstance(features, str):
        return [features]
    return list(features)
