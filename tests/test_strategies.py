"""
Tests for resolution strategies.
"""

from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Optional

import pytest
from hypothesis import given, strategies as st

from flagkit.context import Context
from flagkit.exceptions import (
    CannotDetermineIdentifier,
    InvalidPercentage,
    InvalidVariantWeights,
    RequiresContext,
    StrategyDataMustBeInteger,
    UnknownStrategy,
    VariantWeightsSum,
)
from flagkit.strategies import (
    BooleanStrategy,
    ConditionalStrategy,
    PercentageStrategy,
    ScheduledStrategy,
    TimeBasedStrategy,
    VariantStrategy,
    crc32_bucket,
    strategy_from_config,
)
from flagkit.timezone import UTC

NOON = datetime(2026, 6, 1, 12, 0, tzinfo=UTC)


# ============ Percentage ============


@given(identifier=st.text(min_size=1), percentage=st.integers(min_value=0, max_value=100))
def test_percentage_is_deterministic(identifier, percentage):
    """Test the same identifier always lands the same way."""
    strategy = PercentageStrategy(percentage, seed="checkout")

    assert strategy.resolve(identifier) == strategy.resolve(identifier)
    assert 0 <= strategy.bucket(identifier) < 100


@given(
    identifier=st.text(min_size=1),
    low=st.integers(min_value=0, max_value=100),
    high=st.integers(min_value=0, max_value=100),
)
def test_percentage_is_monotonic(identifier, low, high):
    """Test raising the percentage never drops a context."""
    low, high = sorted((low, high))

    if PercentageStrategy(low).resolve(identifier):
        assert PercentageStrategy(high).resolve(identifier)


def test_percentage_bounds():
    """Test 0% includes nobody and 100% everybody."""
    nobody = PercentageStrategy(0)
    everybody = PercentageStrategy(100)

    for i in range(1000):
        assert nobody.resolve(i) is False
        assert everybody.resolve(i) is True


def test_percentage_roughly_matches_share():
    """Test a 30% rollout covers about 30% of ids."""
    strategy = PercentageStrategy(30, seed="share")
    hits = sum(strategy.resolve(f"user-{i}") for i in range(2000))

    assert 450 < hits < 750


def test_percentage_seed_changes_buckets():
    """Test different seeds give independent rollouts."""
    first = [PercentageStrategy(50, seed="a").bucket(str(i)) for i in range(50)]
    second = [PercentageStrategy(50, seed="b").bucket(str(i)) for i in range(50)]

    assert first != second


@pytest.mark.parametrize("value", [-1, 101, 1000])
def test_percentage_out_of_range(value):
    """Test out-of-range percentages are rejected."""
    with pytest.raises(InvalidPercentage):
        PercentageStrategy(value)


@pytest.mark.parametrize("value", ["50", 50.0, None, True])
def test_percentage_must_be_integer(value):
    """Test non-integer percentages are rejected."""
    with pytest.raises(StrategyDataMustBeInteger):
        PercentageStrategy(value)


def test_percentage_requires_context():
    """Test percentage rollout refuses a None context."""
    strategy = PercentageStrategy(50)

    assert strategy.can_handle_null_context() is False
    with pytest.raises(RequiresContext):
        strategy.resolve(None)


def test_percentage_identifier_sources():
    """Test identifiers come from strings, numbers, get_key() and id."""
    class WithKey:
        def get_key(self):
            return "k-1"

    assert PercentageStrategy.identifier("abc") == "abc"
    assert PercentageStrategy.identifier(7) == "7"
    assert PercentageStrategy.identifier(WithKey()) == "k-1"
    assert PercentageStrategy.identifier(Context(id=12, type="user")) == "12"

    with pytest.raises(CannotDetermineIdentifier):
        PercentageStrategy.identifier(object())


def test_percentage_context_matches_raw_id():
    """Test a Context lands in the same bucket as its id."""
    strategy = PercentageStrategy(40, seed="ctx")

    for i in range(100):
        assert strategy.resolve(Context(id=i, type="user")) == strategy.resolve(i)


# ============ Variants ============

SPLIT = {"control": 50, "short": 30, "long": 20}


@given(identifier=st.text(min_size=1))
def test_variant_is_sticky(identifier):
    """Test the same identifier always gets the same variant."""
    strategy = VariantStrategy(SPLIT, seed="checkout-copy")

    variant = strategy.resolve(identifier)

    assert variant in SPLIT
    assert strategy.resolve(identifier) == variant


def test_variant_roughly_matches_weights():
    """Test assignments follow the declared weights."""
    strategy = VariantStrategy(SPLIT, seed="share")
    counts = Counter(strategy.resolve(f"user-{i}") for i in range(3000))

    assert 1300 < counts["control"] < 1700
    assert 700 < counts["short"] < 1100
    assert 400 < counts["long"] < 800


def test_variant_follows_buckets():
    """Test variants take consecutive bucket ranges in declaration order."""
    strategy = VariantStrategy({"a": 10, "b": 0, "c": 90}, seed="order")

    for i in range(500):
        bucket = crc32_bucket(f"order|{i}")
        assert strategy.resolve(str(i)) == ("a" if bucket < 10 else "c")


def test_variant_full_weight():
    """Test a 100-weight variant takes everyone and zero weights nobody."""
    strategy = VariantStrategy({"off": 0, "on": 100})

    assert {strategy.resolve(i) for i in range(500)} == {"on"}


def test_variant_context_uses_type_and_id():
    """Test a Context is bucketed by its type|id identity."""
    strategy = VariantStrategy(SPLIT, seed="ctx")

    for i in range(100):
        assert strategy.resolve(Context(id=i, type="user")) == strategy.resolve(f"user|{i}")


def test_variant_seed_changes_assignment():
    """Test different seeds give independent assignments."""
    first = [VariantStrategy(SPLIT, seed="a").resolve(str(i)) for i in range(100)]
    second = [VariantStrategy(SPLIT, seed="b").resolve(str(i)) for i in range(100)]

    assert first != second


def test_variant_weights_must_sum_to_100():
    """Test totals other than 100 are rejected."""
    with pytest.raises(VariantWeightsSum, match="99"):
        VariantStrategy({"a": 50, "b": 49})
    with pytest.raises(VariantWeightsSum):
        VariantStrategy({"a": 100, "b": 1})


@pytest.mark.parametrize("weights", [{}, {"a": -10, "b": 110}, {"a": 50.0, "b": 50}, {"a": True, "b": 99}, {"a": "100"}])
def test_variant_invalid_weights(weights):
    """Test empty, negative and non-integer weights are rejected."""
    with pytest.raises(InvalidVariantWeights):
        VariantStrategy(weights)


def test_variant_requires_context():
    """Test variants refuse a None context."""
    strategy = VariantStrategy(SPLIT)

    assert strategy.can_handle_null_context() is False
    with pytest.raises(RequiresContext):
        strategy.resolve(None)


# ============ Time ============


def test_time_based_window_is_inclusive():
    """Test both window ends count as active."""
    start, end = NOON, NOON + timedelta(hours=1)

    assert TimeBasedStrategy(start, end, clock=lambda: start).resolve(None) is True
    assert TimeBasedStrategy(start, end, clock=lambda: end).resolve(None) is True
    assert TimeBasedStrategy(start, end, clock=lambda: end + timedelta(microseconds=1)).resolve(None) is False
    assert TimeBasedStrategy(start, end, clock=lambda: start - timedelta(seconds=1)).resolve(None) is False


def test_scheduled_boundaries():
    """Test activation is inclusive and deactivation strictly after."""
    activate, deactivate = NOON, NOON + timedelta(days=1)

    def at(now):
        return ScheduledStrategy(activate, deactivate, clock=lambda: now).resolve(None)

    assert at(activate - timedelta(seconds=1)) is False
    assert at(activate) is True
    assert at(deactivate) is True
    assert at(deactivate + timedelta(microseconds=1)) is False


def test_scheduled_open_ended():
    """Test missing bounds are unbounded."""
    assert ScheduledStrategy(clock=lambda: NOON).resolve(None) is True
    assert ScheduledStrategy(activate_at=NOON, clock=lambda: NOON + timedelta(days=999)).resolve(None) is True


def test_naive_datetimes_are_utc():
    """Test naive bounds are read as UTC."""
    naive = datetime(2026, 6, 1, 12, 0)

    assert ScheduledStrategy(activate_at=naive, clock=lambda: NOON).resolve(None) is True


# ============ Conditional ============


def test_conditional_unannotated_is_null_safe():
    """Test unannotated predicates accept None."""
    strategy = ConditionalStrategy(lambda user: user is None)

    assert strategy.can_handle_null_context() is True
    assert strategy.resolve(None) is True


def test_conditional_annotations():
    """Test null safety is read from the first parameter's annotation."""
    def strict(user: Context) -> bool:
        return user.id == 1

    def optional(user: Optional[Context]) -> bool:
        return user is not None

    def union(user: Context | None) -> bool:
        return user is not None

    def anything(user: Any) -> bool:
        return True

    def no_args() -> bool:
        return True

    assert ConditionalStrategy(strict).can_handle_null_context() is False
    assert ConditionalStrategy(optional).can_handle_null_context() is True
    assert ConditionalStrategy(union).can_handle_null_context() is True
    assert ConditionalStrategy(anything).can_handle_null_context() is True
    assert ConditionalStrategy(no_args).can_handle_null_context() is True


def test_conditional_explicit_null_safety_wins():
    """Test handles_null overrides inference."""
    assert ConditionalStrategy(lambda user: True, handles_null=False).can_handle_null_context() is False


def test_boolean_strategy():
    """Test boolean strategy ignores the context."""
    assert BooleanStrategy(True)(None) is True
    assert BooleanStrategy(False)(Context(1, "user")) is False


# ============ Config ============


def test_strategy_from_config():
    """Test config mappings build strategies."""
    percentage = strategy_from_config({"strategy": "percentage", "percentage": 25, "seed": "x"})
    scheduled = strategy_from_config({
        "strategy": "scheduled",
        "activate_at": "2026-01-01T00:00:00Z",
    })
    window = strategy_from_config({
        "strategy": "time_based",
        "start": "2026-01-01T00:00:00Z",
        "end": "2026-02-01T00:00:00Z",
    })

    assert isinstance(percentage, PercentageStrategy)
    assert percentage.percentage == 25 and percentage.seed == "x"
    assert scheduled.activate_at == datetime(2026, 1, 1, tzinfo=UTC)
    assert window.end == datetime(2026, 2, 1, tzinfo=UTC)
    assert strategy_from_config({}).resolve(None) is True
    assert strategy_from_config({"strategy": "boolean", "value": False}).resolve(None) is False

    variant = strategy_from_config({"strategy": "variant", "weights": {"a": 70, "b": 30}, "seed": "v"})
    assert isinstance(variant, VariantStrategy)
    assert variant.weights == {"a": 70, "b": 30} and variant.seed == "v"


def test_strategy_from_config_unknown():
    """Test unknown strategy names are rejected."""
    with pytest.raises(UnknownStrategy):
        strategy_from_config({"strategy": "lottery"})
