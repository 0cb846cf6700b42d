"""
In-memory snapshot repository.

For development and testing. Data is lost when the instance goes away.
"""

from __future__ import annotations

import copy
from collections import defaultdict
from datetime import timedelta
from typing import Any, Mapping, Sequence

import structlog

from ..interfaces import Snapshot, SnapshotEvent, SnapshotEventType
from .base import BaseSnapshotRepository

logger = structlog.get_logger()


class MemorySnapshotRepository(BaseSnapshotRepository):
    """
    Dict-backed snapshots.

    Events are kept apart from snapshots, so the history of a deleted
    snapshot is still available until it is pruned.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._snapshots: dict[str, Snapshot] = {}
        self._events: dict[str, list[SnapshotEvent]] = defaultdict(list)

    def create(
        self,
        caller: Any,
        features: Mapping[str, Any],
        label: str | None = None,
        created_by: Any = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> str:
        context_key = self.context_key(caller)
        features = copy.deepcopy(dict(features))
        snapshot = Snapshot(
            id=self.new_id(),
            context_key=context_key,
            features=features,
            label=label,
            entries=self.build_entries(features),
            created_by=self.actor_info(created_by),
            metadata=dict(metadata or {}),
            created_at=self.clock(),
        )
        self._snapshots[snapshot.id] = snapshot
        self._record(
            snapshot.id,
            SnapshotEventType.CREATED,
            snapshot.created_by,
            context_key,
            {"feature_count": len(snapshot.entries)},
        )

        logger.info("Snapshot created", snapshot_id=snapshot.id, context=context_key, label=label)
        return snapshot.id

    def restore(self, snapshot_id: str, caller: Any, restored_by: Any = None) -> None:
        snapshot = self._owned(snapshot_id, caller)
        if snapshot is None:
            return

        self.forget_stored(caller)
        restored = self.apply_entries(caller, snapshot.entries)

        snapshot.restored_at = self.clock()
        snapshot.restored_by = self.actor_info(restored_by)
        self._record(
            snapshot.id,
            SnapshotEventType.RESTORED,
            snapshot.restored_by,
            snapshot.context_key,
            {"features_restored": restored},
        )
        logger.info("Snapshot restored", snapshot_id=snapshot.id, features=len(restored))

    def restore_partial(
        self,
        snapshot_id: str,
        caller: Any,
        features: Sequence[str],
        restored_by: Any = None,
    ) -> None:
        snapshot = self._owned(snapshot_id, caller)
        if snapshot is None:
            return

        restored = self.apply_entries(caller, self.select_entries(snapshot.entries, features))
        self._record(
            snapshot.id,
            SnapshotEventType.PARTIAL_RESTORE,
            self.actor_info(restored_by),
            snapshot.context_key,
            {"features_restored": restored, "total_features": len(snapshot.entries)},
        )
        logger.info("Snapshot partially restored", snapshot_id=snapshot.id, features=restored)

    def get(self, snapshot_id: str, caller: Any) -> Snapshot | None:
        snapshot = self._owned(snapshot_id, caller)
        return copy.deepcopy(snapshot) if snapshot is not None else None

    def _owned(self, snapshot_id: str, caller: Any) -> Snapshot | None:
        snapshot = self._snapshots.get(snapshot_id)
        if snapshot is None or snapshot.context_key != self.context_key(caller):
            return None
        return snapshot

    def list(self, caller: Any) -> list[Snapshot]:
        context_key = self.context_key(caller)
        owned = [s for s in reversed(self._snapshots.values()) if s.context_key == context_key]
        # sort is stable, so equal timestamps keep newest-inserted first
        return [copy.deepcopy(s) for s in sorted(owned, key=lambda s: s.created_at, reverse=True)]

    def delete(self, snapshot_id: str, caller: Any, deleted_by: Any = None) -> None:
        snapshot = self._owned(snapshot_id, caller)
        if snapshot is None:
            return

        self._record(
            snapshot.id,
            SnapshotEventType.DELETED,
            self.actor_info(deleted_by),
            snapshot.context_key,
            {"label": snapshot.label},
        )
        del self._snapshots[snapshot.id]
        logger.info("Snapshot deleted", snapshot_id=snapshot.id)

    def get_event_history(self, snapshot_id: str) -> list[SnapshotEvent]:
        return [copy.deepcopy(event) for event in reversed(self._events.get(snapshot_id, []))]

    def prune(self, retention_days: int) -> int:
        if retention_days <= 0:
            return 0

        cutoff = self.clock() - timedelta(days=retention_days)
        expired = [s.id for s in self._snapshots.values() if s.created_at < cutoff]

        batch_size = self.settings.snapshots.prune_batch_size
        for start in range(0, len(expired), batch_size):
            for snapshot_id in expired[start:start + batch_size]:
                del self._snapshots[snapshot_id]
                self._events.pop(snapshot_id, None)

        logger.info("Snapshots pruned", deleted=len(expired), retention_days=retention_days)
        return len(expired)

    def _record(
        self,
        snapshot_id: str,
        event_type: SnapshotEventType,
        performed_by: dict[str, Any] | None,
        context_key: str,
        metadata: dict[str, Any],
    ) -> None:
        self._events[snapshot_id].append(
            SnapshotEvent(
                snapshot_id=snapshot_id,
                event_type=event_type,
                performed_by=performed_by,
                context={"key": context_key},
                metadata=metadata,
                created_at=self.clock(),
            )
        )
