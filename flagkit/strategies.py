"""
Resolution strategies.

A strategy computes a feature's value for a context. Strategies are plain
callables, so any of them can be handed to ``Driver.define`` directly:

    driver.define("new-checkout", PercentageStrategy(25, seed="checkout"))
"""

import inspect
import types
import typing
import zlib
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Mapping

from .context import Context
from .exceptions import (
    CannotDetermineIdentifier,
    InvalidPercentage,
    InvalidVariantWeights,
    RequiresContext,
    StrategyDataMustBeInteger,
    UnknownStrategy,
    VariantWeightsSum,
)
from .timezone import Clock, ensure_utc, utc_now


def crc32_bucket(text: str) -> int:
    """Stable bucket in [0, 100) for ``text``."""
    checksum = zlib.crc32(text.encode("utf-8"))
    # crc32 is unsigned in Python; read it as a signed 32-bit int
    if checksum >= 2**31:
        checksum -= 2**32
    return abs(checksum) % 100


class Strategy(ABC):
    """Base class for resolution strategies."""

    @abstractmethod
    def resolve(self, context: Any, meta: Mapping[str, Any] | None = None) -> Any:
        """Compute the feature value for ``context`` (may be None)."""
        pass

    @abstractmethod
    def can_handle_null_context(self) -> bool:
        """Whether ``resolve`` accepts a None context."""
        pass

    def __call__(self, context: Any, meta: Mapping[str, Any] | None = None) -> Any:
        return self.resolve(context, meta)


class BooleanStrategy(Strategy):
    def __init__(self, value: bool):
        self.value = value

    def resolve(self, context: Any, meta: Mapping[str, Any] | None = None) -> Any:
        return self.value

    def can_handle_null_context(self) -> bool:
        return True

    def __repr__(self) -> str:
        return f"BooleanStrategy({self.value!r})"


class PercentageStrategy(Strategy):
    """
    Sticky percentage rollout.

    Bucket = abs(signed crc32(seed + identifier)) % 100. A context is in the
    rollout when its bucket is below ``percentage``, so raising the
    percentage only ever adds contexts.
    """

    def __init__(self, percentage: int, seed: str = ""):
        if not isinstance(percentage, int) or isinstance(percentage, bool):
            raise StrategyDataMustBeInteger.for_percentage(percentage)
        if percentage < 0 or percentage > 100:
            raise InvalidPercentage.out_of_range(percentage)
        self.percentage = percentage
        self.seed = seed

    def resolve(self, context: Any, meta: Mapping[str, Any] | None = None) -> bool:
        if context is None:
            raise RequiresContext.for_percentage()
        return self.bucket(self.identifier(context)) < self.percentage

    def can_handle_null_context(self) -> bool:
        return False

    def bucket(self, identifier: str) -> int:
        return crc32_bucket(f"{self.seed}{identifier}")

    @staticmethod
    def identifier(context: Any) -> str:
        if isinstance(context, str):
            return context
        if isinstance(context, (int, float)) and not isinstance(context, bool):
            return str(context)

        get_key = getattr(context, "get_key", None)
        if callable(get_key):
            return str(get_key())

        identifier = getattr(context, "id", None)
        if identifier is not None:
            return str(identifier)

        raise CannotDetermineIdentifier.for_percentage()

    def __repr__(self) -> str:
        return f"PercentageStrategy({self.percentage}, seed={self.seed!r})"


class VariantStrategy(Strategy):
    """
    Weighted variants for A/B tests.

    Each context gets one variant name, sticky across processes. The bucket
    is abs(signed crc32(seed + "|" + identifier)) % 100, and variants take
    consecutive bucket ranges in declaration order, sized by their weight.
    Contexts are identified by ``Context.serialize()`` (``type|id``).

    Weights are non-negative integers summing to 100.
    """

    def __init__(self, weights: Mapping[str, int], seed: str = ""):
        self.weights = validate_weights(weights)
        self.seed = seed

    def resolve(self, context: Any, meta: Mapping[str, Any] | None = None) -> str:
        if context is None:
            raise RequiresContext.for_variants()

        if isinstance(context, Context):
            identifier = context.serialize()
        else:
            identifier = PercentageStrategy.identifier(context)

        bucket = crc32_bucket(f"{self.seed}|{identifier}")
        cumulative = 0
        for variant, weight in self.weights.items():
            cumulative += weight
            if bucket < cumulative:
                return variant
        return variant

    def can_handle_null_context(self) -> bool:
        return False

    def __repr__(self) -> str:
        return f"VariantStrategy({self.weights!r}, seed={self.seed!r})"


def validate_weights(weights: Mapping[str, int]) -> dict[str, int]:
    """Check variant weights and return them as a plain dict, order kept."""
    if not weights:
        raise InvalidVariantWeights.cannot_be_empty()

    for variant, weight in weights.items():
        if not isinstance(weight, int) or isinstance(weight, bool) or weight < 0:
            raise InvalidVariantWeights.invalid_weight(variant, weight)

    total = sum(weights.values())
    if total != 100:
        raise VariantWeightsSum.for_total(total)

    return dict(weights)


class TimeBasedStrategy(Strategy):
    """Active inside ``[start, end]``, inclusive on both ends."""

    def __init__(self, start: datetime, end: datetime, clock: Clock = utc_now):
        self.start = ensure_utc(start)
        self.end = ensure_utc(end)
        self.clock = clock

    def resolve(self, context: Any, meta: Mapping[str, Any] | None = None) -> bool:
        now = ensure_utc(self.clock())
        return self.start <= now <= self.end

    def can_handle_null_context(self) -> bool:
        return True


class ScheduledStrategy(Strategy):
    """
    Optional activation and deactivation instants.

    Inactive before ``activate_at`` and strictly after ``deactivate_at``.
    At exactly ``deactivate_at`` the feature is still on.
    """

    def __init__(
        self,
        activate_at: datetime | None = None,
        deactivate_at: datetime | None = None,
        clock: Clock = utc_now,
    ):
        self.activate_at = ensure_utc(activate_at) if activate_at else None
        self.deactivate_at = ensure_utc(deactivate_at) if deactivate_at else None
        self.clock = clock

    def resolve(self, context: Any, meta: Mapping[str, Any] | None = None) -> bool:
        now = ensure_utc(self.clock())

        if self.activate_at is not None and now < self.activate_at:
            return False

        if self.deactivate_at is not None and now > self.deactivate_at:
            return False

        return True

    def can_handle_null_context(self) -> bool:
        return True


class ConditionalStrategy(Strategy):
    """
    Custom predicate.

    Null safety comes from ``handles_null`` when given. Otherwise it is read
    from the predicate's first parameter: no parameter, no annotation, or an
    Optional annotation all mean the predicate accepts None.
    """

    def __init__(
        self,
        predicate: Callable[..., Any],
        handles_null: bool | None = None,
    ):
        self.predicate = predicate
        if handles_null is None:
            handles_null = self._infer_null_safety(predicate)
        self.handles_null = handles_null

    def resolve(self, context: Any, meta: Mapping[str, Any] | None = None) -> Any:
        return self.predicate(context)

    def can_handle_null_context(self) -> bool:
        return self.handles_null

    @staticmethod
    def _infer_null_safety(predicate: Callable[..., Any]) -> bool:
        try:
            signature = inspect.signature(predicate)
        except (TypeError, ValueError):
            return False

        params = [
            p for p in signature.parameters.values()
            if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD, p.VAR_POSITIONAL)
        ]
        if not params:
            return True

        first = params[0]
        if first.annotation is inspect.Parameter.empty:
            return True

        annotation = first.annotation
        try:
            hints = typing.get_type_hints(predicate)
            annotation = hints.get(first.name, annotation)
        except (NameError, TypeError):
            # unresolvable forward reference, keep the raw annotation
            pass

        if annotation is Any or annotation is None or annotation is type(None):
            return True

        if typing.get_origin(annotation) in (typing.Union, types.UnionType):
            return type(None) in typing.get_args(annotation)

        return False


# ============================================================
# CONFIG FACTORY
# ============================================================

def _parse_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def strategy_from_config(config: Mapping[str, Any]) -> Strategy:
    """
    Build a strategy from a config mapping.

    Example:
        strategy_from_config({"strategy": "percentage", "percentage": 25})
    """
    name = config.get("strategy", "boolean")

    if name == "boolean":
        return BooleanStrategy(bool(config.get("value", True)))

    if name == "percentage":
        return PercentageStrategy(config.get("percentage"), seed=config.get("seed", ""))

    if name == "variant":
        return VariantStrategy(config["weights"], seed=config.get("seed", ""))

    if name == "time_based":
        return TimeBasedStrategy(
            _parse_datetime(config["start"]),
            _parse_datetime(config["end"]),
        )

    if name == "scheduled":
        return ScheduledStrategy(
            activate_at=_parse_datetime(config.get("activate_at")),
            deactivate_at=_parse_datetime(config.get("deactivate_at")),
        )

    raise UnknownStrategy.named(name)
