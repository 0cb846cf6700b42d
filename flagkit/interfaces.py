"""
Core abstractions.

These define the contracts for drivers, snapshot and group repositories
and migrators, plus the records they exchange.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Mapping, Sequence

from .context import Context

Resolver = Callable[..., Any]


# ============================================================
# DRIVER
# ============================================================

class Driver(ABC):
    """
    Storage boundary for feature definitions and values.

    Implementations:
    - MemoryDriver: per-instance dicts (request scoped, testing)
    - CacheDriver: cache backend as the store of record
    - DatabaseDriver: SQLAlchemy ``features`` table

    Lookup order in ``get``: exact per-context value, then a stored value
    whose scope the context satisfies, then the resolver (written back as
    an exact value). Unknown features resolve to False.
    """

    @abstractmethod
    def define(self, feature: str, resolver: Resolver | Any) -> None:
        """Register a resolver (callable) or a constant value for a feature."""
        pass

    @abstractmethod
    def defined(self) -> list[str]:
        """Names of features with a resolver."""
        pass

    @abstractmethod
    def stored(self) -> list[str]:
        """Names of features with at least one stored value."""
        pass

    @abstractmethod
    def stored_for(self, context: Context) -> dict[str, Any]:
        """Stored values for exactly this context, by feature name."""
        pass

    @abstractmethod
    def get(self, feature: str, context: Context) -> Any:
        """Resolve a feature for a context. Never raises for unknown features."""
        pass

    @abstractmethod
    def lookup(self, feature: str, context: Context) -> tuple[Any, datetime | None]:
        """``get`` plus the ``expires_at`` of the stored value that answered."""
        pass

    @abstractmethod
    def get_all(self, features: Mapping[str, Sequence[Context]]) -> dict[str, list[Any]]:
        """Batched ``get``: one value per (feature, context) pair, in order."""
        pass

    @abstractmethod
    def set(
        self,
        feature: str,
        context: Context,
        value: Any,
        expires_at: datetime | None = None,
    ) -> None:
        """Store a value for a context (scope-keyed when the context is scoped)."""
        pass

    @abstractmethod
    def set_for_all_contexts(self, feature: str, value: Any) -> None:
        """Replace the resolver with a constant and clear every stored value."""
        pass

    @abstractmethod
    def delete(self, feature: str, context: Context) -> None:
        """Remove the stored value for exactly this context."""
        pass

    @abstractmethod
    def purge(self, features: Sequence[str] | None = None) -> None:
        """Clear stored values (not definitions) for features, or all."""
        pass

    def flush_cache(self) -> None:
        """Drop any in-process acceleration state. No-op by default."""
        pass


# ============================================================
# SNAPSHOTS
# ============================================================

class SnapshotEventType(str, Enum):
    CREATED = "created"
    RESTORED = "restored"
    PARTIAL_RESTORE = "partial_restore"
    DELETED = "deleted"


@dataclass(frozen=True)
class SnapshotEntry:
    """One captured feature. Never rewritten after creation."""
    feature_name: str
    value: Any
    is_active: bool

    @classmethod
    def capture(cls, feature_name: str, value: Any) -> "SnapshotEntry":
        return cls(
            feature_name=feature_name,
            value=value,
            is_active=value is not False and value is not None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "feature_name": self.feature_name,
            "value": self.value,
            "is_active": self.is_active,
        }


@dataclass
class SnapshotEvent:
    """Append-only audit record for a snapshot."""
    snapshot_id: str
    event_type: SnapshotEventType
    performed_by: dict[str, Any] | None = None
    context: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "event_type": self.event_type.value,
            "performed_by": self.performed_by,
            "context": self.context,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class Snapshot:
    """
    Point-in-time capture of feature values for one context.

    Attributes:
        id: UUID4 string
        context_key: ``Context.serialize()`` of the owner
        features: feature name -> captured value
        created_by / restored_by: actor info ``{"type", "id"}`` or None
    """
    id: str
    context_key: str
    features: dict[str, Any]
    label: str | None = None
    entries: list[SnapshotEntry] = field(default_factory=list)
    created_by: dict[str, Any] | None = None
    restored_at: datetime | None = None
    restored_by: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None

    @property
    def is_restored(self) -> bool:
        return self.restored_at is not None

    def entry(self, feature_name: str) -> SnapshotEntry | None:
        for entry in self.entries:
            if entry.feature_name == feature_name:
                return entry
        return None


class SnapshotRepository(ABC):
    """
    Abstract storage for snapshots and their audit trail.

    Implementations:
    - MemorySnapshotRepository: per-instance (dev/testing)
    - CacheSnapshotRepository: one cache key per context
    - DatabaseSnapshotRepository: three SQLAlchemy tables
    """

    @abstractmethod
    def create(
        self,
        caller: Any,
        features: Mapping[str, Any],
        label: str | None = None,
        created_by: Any = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> str:
        """Persist snapshot, entries and a ``created`` event. Returns the id."""
        pass

    @abstractmethod
    def restore(self, snapshot_id: str, caller: Any, restored_by: Any = None) -> None:
        """Replace the context's stored values with the snapshot's."""
        pass

    @abstractmethod
    def restore_partial(
        self,
        snapshot_id: str,
        caller: Any,
        features: Sequence[str],
        restored_by: Any = None,
    ) -> None:
        """Re-apply only the named features."""
        pass

    @abstractmethod
    def get(self, snapshot_id: str, caller: Any) -> Snapshot | None:
        """Get a snapshot owned by the context."""
        pass

    @abstractmethod
    def list(self, caller: Any) -> list[Snapshot]:
        """Snapshots for the context, most recent first."""
        pass

    @abstractmethod
    def delete(self, snapshot_id: str, caller: Any, deleted_by: Any = None) -> None:
        """Record a ``deleted`` event then remove the snapshot."""
        pass

    @abstractmethod
    def clear_all(self, caller: Any, deleted_by: Any = None) -> None:
        """Delete every snapshot of the context."""
        pass

    @abstractmethod
    def get_event_history(self, snapshot_id: str) -> list[SnapshotEvent]:
        """Events for a snapshot, most recent first. Backend dependent."""
        pass

    @abstractmethod
    def prune(self, retention_days: int) -> int:
        """Delete snapshots older than the retention window. Returns count."""
        pass


# ============================================================
# GROUPS
# ============================================================

@dataclass(frozen=True)
class FeatureGroup:
    """Named set of features that are switched on and off together."""
    name: str
    features: tuple[str, ...]
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class GroupRepository(ABC):
    """
    Abstract storage for feature groups.

    Feature lists keep their order and never hold a name twice.

    Implementations:
    - MemoryGroupRepository: per-instance (dev/testing)
    - DatabaseGroupRepository: SQLAlchemy ``feature_groups`` table
    """

    @abstractmethod
    def define(
        self,
        name: str,
        features: Sequence[str],
        metadata: Mapping[str, Any] | None = None,
    ) -> FeatureGroup:
        """Create the group, replacing any group of the same name."""
        pass

    @abstractmethod
    def get(self, name: str) -> FeatureGroup | None:
        pass

    @abstractmethod
    def all(self) -> list[FeatureGroup]:
        """Every group, ordered by name."""
        pass

    @abstractmethod
    def delete(self, name: str) -> bool:
        """True when a group was removed."""
        pass

    @abstractmethod
    def update(self, name: str, features: Sequence[str]) -> FeatureGroup:
        """Replace the feature list of an existing group."""
        pass

    @abstractmethod
    def add_features(self, name: str, features: Sequence[str]) -> FeatureGroup:
        pass

    @abstractmethod
    def remove_features(self, name: str, features: Sequence[str]) -> FeatureGroup:
        pass


# ============================================================
# MIGRATION
# ============================================================

class Migrator(ABC):
    """Import feature state from an external flag system."""

    @abstractmethod
    def migrate(self) -> None:
        """Run the import, collecting per-record errors."""
        pass

    @abstractmethod
    def get_statistics(self) -> dict[str, Any]:
        """``{"features": int, "contexts": int, "errors": list[str]}``"""
        pass
