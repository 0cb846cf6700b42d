"""
Tests for the feature manager.
"""

from datetime import timedelta

import pytest

from flagkit.cache import MemoryCacheBackend, RedisCacheBackend
from flagkit.config import FlagSettings, StoreSettings
from flagkit.context import Context, Scope, qualified_name
from flagkit.drivers import CacheDriver, DatabaseDriver, MemoryDriver
from flagkit.events import FeatureActivated, FeatureDeactivated, UnknownFeatureResolved
from flagkit.exceptions import RequiresContext, UnknownVariant, VariantWeightsSum
from flagkit.manager import FeatureManager
from flagkit.strategies import ConditionalStrategy, PercentageStrategy, VariantStrategy
from flagkit.values import FeatureState, FeatureValue

from conftest import Account, Member


# ============ Checks ============


def test_unknown_feature_is_undefined(manager, recorder, contexts):
    """Test never-configured features are undefined, not inactive."""
    value = manager.get("missing", contexts.user(1))

    assert value.is_undefined
    assert not value
    assert manager.active("missing", contexts.user(1)) is False
    assert len(recorder.of_type(UnknownFeatureResolved)) == 1


def test_define_defaults_to_inactive(manager, contexts):
    """Test a bare definition resolves inactive."""
    manager.define("beta")

    assert manager.get("beta", contexts.user(1)).state is FeatureState.INACTIVE


def test_value_and_active(manager, contexts):
    """Test rich values are active and returned as-is."""
    manager.define("theme", "dark")

    assert manager.active("theme", contexts.user(1))
    assert manager.value("theme", contexts.user(1)) == "dark"
    assert manager.inactive("theme", contexts.user(1)) is False


def test_values_any_all(manager, contexts):
    """Test multi-feature helpers."""
    user = contexts.user(1)
    manager.define("a", True)
    manager.define("b", False)

    assert manager.values(["a", "b"], user) == {"a": True, "b": False}
    assert manager.any_active(["a", "b"], user) is True
    assert manager.all_active(["a", "b"], user) is False


def test_strategy_receives_context(manager, contexts):
    """Test strategies get the normalized Context."""
    manager.define("vip", ConditionalStrategy(lambda context: context.id == 1))

    assert manager.active("vip", contexts.user(1))
    assert manager.inactive("vip", contexts.user(2))


def test_entities_are_normalized(manager):
    """Test entities and contexts with the same identity share state."""
    manager.activate("beta", Member(id=5))

    assert manager.active("beta", Context(id=5, type=qualified_name(Member)))
    assert manager.serialize_context(Member(id=5)) == f"{qualified_name(Member)}|5"


# ============ Guests ============


def test_guest_gets_none(manager):
    """Test null-safe resolvers see None for guests."""
    manager.define("public", lambda user: user is None)

    assert manager.active("public") is True
    assert manager.active("public", None) is True


def test_guest_with_context_only_strategy(manager):
    """Test strategies that need a context refuse guests."""
    manager.define("rollout", PercentageStrategy(50))

    with pytest.raises(RequiresContext):
        manager.get("rollout")


def test_guest_can_hold_values(manager):
    """Test values can be stored for the guest context."""
    manager.activate("banner")

    assert manager.active("banner")
    assert manager.stored_values() == {"banner": True}


# ============ Expiry and cache ============


def test_expired_definition_is_inactive(manager, clock, contexts):
    """Test definitions past expires_at resolve inactive."""
    manager.define("promo", True, expires_at=clock() + timedelta(days=1))

    assert manager.active("promo", contexts.user(1))

    clock.advance(days=2)

    assert manager.is_expired("promo")
    assert manager.get("promo", contexts.user(1)).is_inactive
    assert manager.get("promo", contexts.user(2)).is_inactive


def test_expired_value_is_not_served_from_cache(manager, clock, contexts):
    """Test a cached check stops answering once its stored value expires."""
    user = contexts.user(1)
    manager.define("trial", False)
    manager.set("trial", user, True, expires_at=clock() + timedelta(hours=1))

    assert manager.get("trial", user) == FeatureValue.defined(True)

    clock.advance(hours=2)

    assert manager.get("trial", user).is_inactive
    assert manager.stored_values(user) == {}


def test_expired_scoped_value_is_not_served_from_cache(manager, clock, contexts):
    """Test scoped values carry their expiry into the in-process cache."""
    org = Context.scoped(None, "user", Scope("team", {"org_id": 5}))
    member = contexts.scoped(1, org_id=5)
    manager.define("ai", "default")
    manager.set("ai", org, "org", expires_at=clock() + timedelta(minutes=30))

    assert manager.value("ai", member) == "org"

    clock.advance(minutes=30)

    assert manager.value("ai", member) is False


def test_in_process_cache(manager, contexts):
    """Test repeated checks reuse the cached value."""
    user = contexts.user(1)
    manager.define("beta", True)
    first = manager.get("beta", user)

    manager.driver.set("beta", user, False)

    assert manager.get("beta", user) is first
    manager.flush_cache()
    assert manager.get("beta", user).is_inactive


def test_writes_invalidate_cache(manager, contexts):
    """Test manager writes are visible immediately."""
    user = contexts.user(1)
    manager.define("beta", False)
    assert manager.inactive("beta", user)

    manager.activate("beta", user)
    assert manager.active("beta", user)

    manager.forget("beta", user)
    assert manager.inactive("beta", user)


# ============ Writes ============


def test_activate_dispatches(manager, recorder, contexts):
    """Test per-context writes emit events."""
    user = contexts.user(1)
    manager.activate(["a", "b"], user, "blue")
    manager.deactivate("c", user)

    activated = recorder.of_type(FeatureActivated)
    deactivated = recorder.of_type(FeatureDeactivated)

    assert [e.feature for e in activated] == ["a", "b"]
    assert activated[0].value == "blue"
    assert activated[0].serialized_context == "user|1"
    assert [e.feature for e in deactivated] == ["c"]


def test_for_everyone(manager, recorder, contexts):
    """Test global overrides replace per-context values."""
    manager.deactivate("beta", contexts.user(1))
    manager.activate_for_everyone("beta")

    assert manager.active("beta", contexts.user(1))
    assert manager.active("beta", contexts.user(2))
    assert recorder.of_type(FeatureActivated)[-1].context is None

    manager.deactivate_for_everyone(["beta"])

    assert manager.inactive("beta", contexts.user(1))


def test_purge(manager, contexts):
    """Test purge clears stored values but keeps definitions."""
    manager.define("beta", True)
    manager.deactivate("beta", contexts.user(1))

    manager.purge("beta")

    assert manager.active("beta", contexts.user(1))
    assert "beta" in manager.defined()


def test_stored_values_skip_reserved(manager, contexts):
    """Test reserved names are hidden from stored_values."""
    user = contexts.user(1)
    manager.activate(["beta", "__internal"], user)

    assert manager.stored_values(user) == {"beta": True}
    assert set(manager.stored()) == {"beta", "__internal"}


def test_get_all(manager, contexts):
    """Test batched checks return FeatureValues."""
    manager.define("beta", lambda context: context.id == 1)

    result = manager.get_all({"beta": [contexts.user(1), contexts.user(2)], "missing": [contexts.user(1)]})

    assert result["beta"] == [FeatureValue.defined(True), FeatureValue.defined(False)]
    assert result["missing"][0].is_undefined


# ============ Variants ============


def test_define_variant(manager, contexts):
    """Test variant features hand each context one sticky variant name."""
    weights = {"control": 50, "short": 30, "long": 20}
    manager.define_variant("checkout-copy", weights)

    assigned = {manager.variant("checkout-copy", contexts.user(i)) for i in range(200)}

    assert assigned == set(weights)
    assert manager.variant("checkout-copy", contexts.user(7)) == manager.value("checkout-copy", contexts.user(7))
    assert manager.variants("checkout-copy") == weights
    assert manager.variants("other") == {}


def test_variant_matches_strategy_seeded_by_feature(manager, contexts):
    """Test the feature name seeds the bucketing."""
    manager.define_variant("checkout-copy", {"a": 40, "b": 60})
    strategy = VariantStrategy({"a": 40, "b": 60}, seed="checkout-copy")

    for i in range(50):
        assert manager.variant("checkout-copy", contexts.user(i)) == strategy.resolve(contexts.user(i))


def test_use_variant_pins_caller(manager, recorder, contexts):
    """Test a caller can be pinned to a declared variant only."""
    user = contexts.user(1)
    manager.define_variant("checkout-copy", {"a": 0, "b": 100})

    manager.use_variant("checkout-copy", user, "a")

    assert manager.variant("checkout-copy", user) == "a"
    assert manager.variant("checkout-copy", contexts.user(2)) == "b"
    assert recorder.of_type(FeatureActivated)[-1].value == "a"
    with pytest.raises(UnknownVariant):
        manager.use_variant("checkout-copy", user, "c")


def test_variant_none_when_switched_off(manager, contexts):
    """Test deactivated callers, plain features and redefinitions have no variant."""
    user = contexts.user(1)
    manager.define_variant("checkout-copy", {"a": 100})
    manager.define("beta", "blue")

    manager.deactivate("checkout-copy", user)

    assert manager.variant("checkout-copy", user) is None
    assert manager.variant("checkout-copy", contexts.user(2)) == "a"
    assert manager.variant("beta", user) is None

    manager.define("checkout-copy", True)

    assert manager.variants("checkout-copy") == {}
    assert manager.variant("checkout-copy", contexts.user(3)) is None


def test_variant_rejects_bad_weights_and_guests(manager):
    """Test weights are validated up front and guests need a context."""
    with pytest.raises(VariantWeightsSum):
        manager.define_variant("checkout-copy", {"a": 30, "b": 30})

    manager.define_variant("checkout-copy", {"a": 100})

    with pytest.raises(RequiresContext):
        manager.variant("checkout-copy")


# ============ Values ============


def test_feature_value_mapping():
    """Test raw values map onto states."""
    assert FeatureValue.from_raw(None).is_undefined
    assert FeatureValue.from_raw(False).is_inactive
    assert FeatureValue.from_raw(0).is_active
    assert FeatureValue.undefined().to_value() is False
    assert FeatureValue.defined("x").to_value() == "x"


# ============ Construction ============


def test_from_settings_memory():
    """Test the default store is the memory driver."""
    manager = FeatureManager.from_settings(FlagSettings(environment="testing"))

    assert isinstance(manager.driver, MemoryDriver)
    assert manager.driver.dispatcher is manager.dispatcher


def test_from_settings_cache():
    """Test the cache store uses store settings."""
    settings = FlagSettings(
        environment="testing",
        store=StoreSettings(default="cache", cache_prefix="flags", cache_ttl=30),
    )
    manager = FeatureManager.from_settings(settings, cache=MemoryCacheBackend())

    assert isinstance(manager.driver, CacheDriver)
    assert manager.driver.prefix == "flags"
    assert manager.driver.ttl == 30


def test_from_settings_cache_defaults_to_redis():
    """Test the cache store builds a Redis backend when none is given."""
    settings = FlagSettings(environment="testing", store=StoreSettings(default="cache"))

    manager = FeatureManager.from_settings(settings)

    assert isinstance(manager.driver.cache, RedisCacheBackend)


def test_from_settings_database(db):
    """Test the database store needs a session."""
    settings = FlagSettings(environment="testing", store=StoreSettings(default="database"))

    with pytest.raises(ValueError):
        FeatureManager.from_settings(settings)

    assert isinstance(FeatureManager.from_settings(settings, db=db).driver, DatabaseDriver)


def test_key_map_from_settings():
    """Test key_map settings drive context resolution."""
    settings = FlagSettings(environment="testing", key_map={qualified_name(Account): "uuid"})
    manager = FeatureManager(MemoryDriver(), settings=settings)

    assert manager.resolve_context(Account(id=1, uuid="acc-1")).id == "acc-1"
