"""
Shared snapshot repository behaviour.

Restores go through the ``FeatureManager`` so they hit the same driver,
in-process cache and activation events as any other write.
"""

import copy
import uuid
from typing import Any, Iterable, Mapping

import structlog

from ..config import FlagSettings
from ..exceptions import SnapshotNotFound, UnsupportedContextType
from ..interfaces import Snapshot, SnapshotEntry, SnapshotRepository
from ..manager import FeatureManager
from ..timezone import Clock, utc_now

logger = structlog.get_logger()


class BaseSnapshotRepository(SnapshotRepository):
    """Common helpers for snapshot repositories."""

    def __init__(
        self,
        manager: FeatureManager,
        settings: FlagSettings | None = None,
        clock: Clock = utc_now,
    ):
        self.manager = manager
        self.settings = settings or manager.settings
        self.clock = clock

    # ============================================================
    # CONVENIENCE
    # ============================================================

    def capture(
        self,
        caller: Any,
        label: str | None = None,
        created_by: Any = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> str:
        """Snapshot the caller's current stored feature values."""
        return self.create(
            caller,
            self.manager.stored_values(caller),
            label=label,
            created_by=created_by,
            metadata=metadata,
        )

    def get_or_fail(self, snapshot_id: str, caller: Any) -> Snapshot:
        snapshot = self.get(snapshot_id, caller)
        if snapshot is None:
            raise SnapshotNotFound.for_id(snapshot_id)
        return snapshot

    def clear_all(self, caller: Any, deleted_by: Any = None) -> None:
        for snapshot in self.list(caller):
            self.delete(snapshot.id, caller, deleted_by=deleted_by)

    # ============================================================
    # HELPERS
    # ============================================================

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())

    @staticmethod
    def build_entries(features: Mapping[str, Any]) -> list[SnapshotEntry]:
        return [SnapshotEntry.capture(name, value) for name, value in features.items()]

    def context_key(self, caller: Any) -> str:
        return self.manager.resolve_context(caller).serialize()

    def actor_info(self, actor: Any) -> dict[str, Any] | None:
        """
        Describe who performed an operation as ``{"type", "id"}``.

        Plain identifiers that cannot be resolved to a context are kept with
        ``type = None``.
        """
        if actor is None:
            return None
        try:
            context = self.manager.contexts.resolve(actor)
        except UnsupportedContextType:
            return {"type": None, "id": actor}
        actor_id = context.id
        if actor_id is not None and not isinstance(actor_id, (str, int)):
            actor_id = str(actor_id)
        return {"type": context.type, "id": actor_id}

    def forget_stored(self, caller: Any) -> None:
        """Clear every stored feature of the caller, keeping reserved names."""
        for feature in self.manager.stored_values(caller):
            self.manager.forget(feature, caller)

    def apply_entries(self, caller: Any, entries: Iterable[SnapshotEntry]) -> list[str]:
        restored = []
        for entry in entries:
            if entry.is_active:
                self.manager.activate(entry.feature_name, caller, copy.deepcopy(entry.value))
            else:
                self.manager.deactivate(entry.feature_name, caller)
            restored.append(entry.feature_name)
        return restored

    @staticmethod
    def select_entries(entries: Iterable[SnapshotEntry], features: Iterable[str]) -> list[SnapshotEntry]:
        wanted = set(features)
        return [entry for entry in entries if entry.feature_name in wanted]
