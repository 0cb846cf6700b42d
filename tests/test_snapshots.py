"""
Tests for snapshot repositories.

Shared behaviour runs against memory, cache and database repositories.
"""

import dataclasses
import typing

import pytest

from flagkit.config import FlagSettings, SnapshotSettings
from flagkit.context import Context
from flagkit.exceptions import SnapshotNotFound
from flagkit.interfaces import Snapshot, SnapshotEvent, SnapshotEventType, SnapshotRepository
from flagkit.manager import FeatureManager
from flagkit.drivers import MemoryDriver
from flagkit.events import RecordingDispatcher
from flagkit.snapshots import (
    AutoSnapshotListener,
    CacheSnapshotRepository,
    DatabaseSnapshotRepository,
    MemorySnapshotRepository,
    create_repository,
)

ADMIN = Context(id=9, type="admin")


def keeps_history(repository) -> bool:
    return not isinstance(repository, CacheSnapshotRepository)


# ============ Create / restore ============


def test_create_records_entries(repository, contexts):
    """Test entries capture activity per feature."""
    user = contexts.user(1)
    snapshot_id = repository.create(
        user,
        {"a": True, "b": "blue", "c": False},
        label="manual",
        created_by=ADMIN,
        metadata={"reason": "test"},
    )

    snapshot = repository.get(snapshot_id, user)

    assert snapshot.label == "manual"
    assert snapshot.context_key == "user|1"
    assert snapshot.features == {"a": True, "b": "blue", "c": False}
    assert snapshot.entry("b").is_active is True
    assert snapshot.entry("c").is_active is False
    assert snapshot.metadata == {"reason": "test"}
    assert snapshot.created_by["type"] == "admin"
    assert str(snapshot.created_by["id"]) == "9"
    assert snapshot.is_restored is False


def test_entries_cannot_be_rewritten(repository, manager, contexts):
    """Test captured entries stay as captured whatever callers do with them."""
    user = contexts.user(1)
    captured = {"f1": True, "tags": ["a"]}
    snapshot_id = repository.create(user, captured)
    captured["tags"].append("b")

    snapshot = repository.get(snapshot_id, user)
    with pytest.raises(dataclasses.FrozenInstanceError):
        snapshot.entries[0].value = "tampered"

    snapshot.entry("tags").value.append("c")
    snapshot.features["f1"] = "tampered"
    repository.list(user)[0].entry("tags").value.append("d")

    repository.restore(snapshot_id, user)

    assert manager.value("f1", user) is True
    assert manager.value("tags", user) == ["a"]
    assert repository.get(snapshot_id, user).features == {"f1": True, "tags": ["a"]}


def test_restore_round_trip(repository, manager, contexts):
    """Test restore brings back exactly the captured values."""
    user = contexts.user(1)
    manager.activate("a", user)
    manager.activate("b", user, "blue")
    manager.deactivate("c", user)
    snapshot_id = repository.capture(user, label="before")

    manager.deactivate("a", user)
    manager.activate("d", user)
    repository.restore(snapshot_id, user, restored_by=ADMIN)

    assert manager.stored_values(user) == {"a": True, "b": "blue", "c": False}
    assert manager.value("b", user) == "blue"

    snapshot = repository.get(snapshot_id, user)
    assert snapshot.is_restored
    assert snapshot.restored_by["type"] == "admin"

    if keeps_history(repository):
        events = repository.get_event_history(snapshot_id)
        assert [e.event_type for e in events] == [SnapshotEventType.RESTORED, SnapshotEventType.CREATED]
        assert sorted(events[0].metadata["features_restored"]) == ["a", "b", "c"]
        assert events[1].metadata == {"feature_count": 3}
        assert events[0].context == {"key": "user|1"}


def test_restore_keeps_reserved_features(repository, manager, contexts):
    """Test reserved bookkeeping names survive a restore."""
    user = contexts.user(1)
    manager.activate("a", user)
    snapshot_id = repository.capture(user)
    manager.activate("__marker", user)

    repository.restore(snapshot_id, user)

    assert manager.driver.stored_for(user) == {"a": True, "__marker": True}


def test_restore_partial(repository, manager, contexts):
    """Test partial restore touches only the named features."""
    user = contexts.user(1)
    manager.activate(["a", "b"], user)
    snapshot_id = repository.capture(user)
    manager.deactivate(["a", "b"], user)

    repository.restore_partial(snapshot_id, user, ["a", "unknown"])

    assert manager.active("a", user)
    assert manager.inactive("b", user)

    if keeps_history(repository):
        event = repository.get_event_history(snapshot_id)[0]
        assert event.event_type is SnapshotEventType.PARTIAL_RESTORE
        assert event.metadata == {"features_restored": ["a"], "total_features": 2}


def test_snapshots_are_owned(repository, manager, contexts):
    """Test other contexts cannot see or restore a snapshot."""
    owner, other = contexts.user(1), contexts.user(2)
    manager.activate("a", other)
    snapshot_id = repository.create(owner, {"a": False})

    assert repository.get(snapshot_id, other) is None
    assert repository.list(other) == []

    repository.restore(snapshot_id, other)

    assert manager.active("a", other)


def test_missing_snapshot(repository, contexts):
    """Test absent snapshots are None, or raise on get_or_fail."""
    user = contexts.user(1)

    assert repository.get("nope", user) is None
    repository.restore("nope", user)
    repository.delete("nope", user)

    with pytest.raises(SnapshotNotFound):
        repository.get_or_fail("nope", user)


# ============ Listing / deleting ============


def test_list_newest_first(repository, clock, contexts):
    """Test snapshots are listed most recent first."""
    user = contexts.user(1)
    first = repository.create(user, {"a": True}, label="first")
    clock.advance(minutes=1)
    second = repository.create(user, {"a": False}, label="second")

    assert [s.id for s in repository.list(user)] == [second, first]
    assert repository.get_or_fail(first, user).label == "first"


def test_delete(repository, contexts):
    """Test delete removes the snapshot and records the deletion."""
    user = contexts.user(1)
    snapshot_id = repository.create(user, {"a": True}, label="temp")

    repository.delete(snapshot_id, user, deleted_by=ADMIN)

    assert repository.get(snapshot_id, user) is None
    history = repository.get_event_history(snapshot_id)
    if keeps_history(repository):
        assert history[0].event_type is SnapshotEventType.DELETED
        assert history[0].metadata == {"label": "temp"}
        assert history[0].performed_by["type"] == "admin"
    else:
        assert history == []


def test_clear_all(repository, contexts):
    """Test clear_all deletes every snapshot of the context only."""
    user, other = contexts.user(1), contexts.user(2)
    repository.create(user, {"a": True})
    repository.create(user, {"b": True})
    kept = repository.create(other, {"a": True})

    repository.clear_all(user)

    assert repository.list(user) == []
    assert [s.id for s in repository.list(other)] == [kept]


# ============ Prune ============


def test_prune(repository, clock, contexts):
    """Test prune removes snapshots older than the retention window."""
    user = contexts.user(1)
    old = repository.create(user, {"a": True})
    clock.advance(days=10)
    recent = repository.create(user, {"a": False})

    assert repository.prune(0) == 0
    assert repository.prune(-5) == 0
    assert repository.prune(5) == 1

    assert [s.id for s in repository.list(user)] == [recent]
    assert repository.get_event_history(old) == []


def test_prune_in_batches(manager, clock, contexts):
    """Test prune handles more snapshots than one batch."""
    settings = FlagSettings(environment="testing", snapshots=SnapshotSettings(prune_batch_size=2))
    repository = MemorySnapshotRepository(manager, settings=settings, clock=clock)
    for i in range(5):
        repository.create(contexts.user(i), {"a": True})
    clock.advance(days=2)

    assert repository.prune(1) == 5


def test_database_prune_removes_orphaned_events(db, manager, clock, contexts):
    """Test history of deleted snapshots is kept until prune."""
    repository = DatabaseSnapshotRepository(manager, db, clock=clock)
    user = contexts.user(1)
    snapshot_id = repository.create(user, {"a": True})
    repository.delete(snapshot_id, user)

    assert len(repository.get_event_history(snapshot_id)) == 2

    clock.advance(days=30)

    assert repository.prune(7) == 0
    assert repository.get_event_history(snapshot_id) == []


def test_cache_repository_expires_with_retention(memory_cache, manager, contexts):
    """Test cache snapshots carry the retention TTL."""
    repository = CacheSnapshotRepository(manager, memory_cache)
    repository.create(contexts.user(1), {"a": True})

    assert memory_cache.ttl("flagkit:snapshots:user|1") > 364 * 86400


# ============ Auto snapshots ============


def auto_snapshot_setup(auto_snapshot: bool):
    settings = FlagSettings(environment="testing", snapshots=SnapshotSettings(auto_snapshot=auto_snapshot))
    dispatcher = RecordingDispatcher()
    manager = FeatureManager(MemoryDriver(), dispatcher=dispatcher, settings=settings)
    repository = MemorySnapshotRepository(manager)
    AutoSnapshotListener(repository, settings).register(dispatcher)
    return manager, repository


def test_auto_snapshot_on_write(contexts):
    """Test activations capture the context's values."""
    manager, repository = auto_snapshot_setup(True)
    user = contexts.user(1)

    manager.activate("beta", user)
    manager.deactivate("beta", user)

    snapshots = repository.list(user)
    labels = {s.label for s in snapshots}
    assert labels == {"auto-activated-beta", "auto-deactivated-beta"}

    activated = next(s for s in snapshots if s.label == "auto-activated-beta")
    assert activated.features == {"beta": True}
    assert activated.metadata["auto_created"] is True
    assert activated.metadata["feature"] == "beta"


def test_auto_snapshot_skips(contexts):
    """Test reserved names, global writes and disabled settings are skipped."""
    manager, repository = auto_snapshot_setup(True)
    user = contexts.user(1)
    manager.activate("__internal", user)
    manager.activate_for_everyone("beta")

    assert repository.list(user) == []

    manager, repository = auto_snapshot_setup(False)
    manager.activate("beta", user)

    assert repository.list(user) == []


# ============ Annotations ============


@pytest.mark.parametrize(
    "cls",
    [SnapshotRepository, MemorySnapshotRepository, CacheSnapshotRepository, DatabaseSnapshotRepository],
)
def test_history_annotation_names_builtin_list(cls):
    """Test annotations declared after the list method still mean the builtin."""
    hints = typing.get_type_hints(cls.get_event_history)

    assert hints["return"] == list[SnapshotEvent]
    assert typing.get_type_hints(cls.list)["return"] == list[Snapshot]


# ============ Factory ============


def test_create_repository(manager, db, memory_cache):
    """Test the repository follows snapshots.driver."""
    assert isinstance(create_repository(manager), MemorySnapshotRepository)

    manager.settings = FlagSettings(environment="testing", snapshots=SnapshotSettings(driver="cache"))
    assert isinstance(create_repository(manager, cache=memory_cache), CacheSnapshotRepository)

    manager.settings = FlagSettings(environment="testing", snapshots=SnapshotSettings(driver="database"))
    assert isinstance(create_repository(manager, db=db), DatabaseSnapshotRepository)
    with pytest.raises(ValueError):
        create_repository(manager)
