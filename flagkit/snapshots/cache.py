"""
Cache-backed snapshot repository.

All snapshots of one context live under a single cache key whose TTL is
the retention window. Limitations callers must know about:

- ``get_event_history`` always returns ``[]``: events are not addressable
  by snapshot id alone. Events are emitted to the log instead.
- Deleting a snapshot loses its history.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Mapping, Sequence

import structlog

from ..cache.base import CacheBackend
from ..interfaces import Snapshot, SnapshotEntry, SnapshotEvent, SnapshotEventType
from ..timezone import format_iso
from .base import BaseSnapshotRepository

logger = structlog.get_logger()


def _parse(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def snapshot_to_payload(snapshot: Snapshot) -> dict[str, Any]:
    return {
        "id": snapshot.id,
        "context_key": snapshot.context_key,
        "label": snapshot.label,
        "features": snapshot.features,
        "entries": [entry.to_dict() for entry in snapshot.entries],
        "created_by": snapshot.created_by,
        "restored_at": format_iso(snapshot.restored_at),
        "restored_by": snapshot.restored_by,
        "metadata": snapshot.metadata,
        "created_at": format_iso(snapshot.created_at),
    }


def payload_to_snapshot(payload: Mapping[str, Any]) -> Snapshot:
    return Snapshot(
        id=payload["id"],
        context_key=payload["context_key"],
        label=payload.get("label"),
        features=dict(payload.get("features") or {}),
        entries=[SnapshotEntry(**entry) for entry in payload.get("entries", [])],
        created_by=payload.get("created_by"),
        restored_at=_parse(payload.get("restored_at")),
        restored_by=payload.get("restored_by"),
        metadata=dict(payload.get("metadata") or {}),
        created_at=_parse(payload.get("created_at")),
    )


class CacheSnapshotRepository(BaseSnapshotRepository):
    """
    Snapshots stored in a ``CacheBackend``.

    Key layout (``prefix`` defaults to ``flagkit:snapshots``):
    - ``<prefix>:<type|id>`` - snapshot id -> snapshot payload
    - ``<prefix>:__contexts`` - context keys holding snapshots (for prune)
    """

    def __init__(self, manager, cache: CacheBackend, prefix: str | None = None, **kwargs):
        super().__init__(manager, **kwargs)
        self.cache = cache
        self.prefix = prefix or self.settings.snapshots.cache_prefix

    # ============================================================
    # KEYS
    # ============================================================

    def _context_cache_key(self, context_key: str) -> str:
        return f"{self.prefix}:{context_key}"

    def _index_key(self) -> str:
        return f"{self.prefix}:__contexts"

    def _ttl(self) -> int | None:
        days = self.settings.snapshots.retention_days
        return days * 86400 if days > 0 else None

    def _load(self, context_key: str) -> dict[str, dict[str, Any]]:
        return self.cache.get(self._context_cache_key(context_key)) or {}

    def _save(self, context_key: str, snapshots: dict[str, dict[str, Any]]) -> None:
        key = self._context_cache_key(context_key)
        if snapshots:
            self.cache.set(key, snapshots, ttl=self._ttl())
        else:
            self.cache.delete(key)

        with self.cache.lock(self._index_key()):
            contexts = self.cache.get(self._index_key()) or []
            if snapshots and context_key not in contexts:
                contexts.append(context_key)
            elif not snapshots and context_key in contexts:
                contexts.remove(context_key)
            self.cache.set(self._index_key(), contexts)

    # ============================================================
    # OPERATIONS
    # ============================================================

    def create(
        self,
        caller: Any,
        features: Mapping[str, Any],
        label: str | None = None,
        created_by: Any = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> str:
        context_key = self.context_key(caller)
        snapshot = Snapshot(
            id=self.new_id(),
            context_key=context_key,
            features=dict(features),
            label=label,
            entries=self.build_entries(features),
            created_by=self.actor_info(created_by),
            metadata=dict(metadata or {}),
            created_at=self.clock(),
        )

        with self.cache.lock(self._context_cache_key(context_key)):
            snapshots = self._load(context_key)
            snapshots[snapshot.id] = snapshot_to_payload(snapshot)
            self._save(context_key, snapshots)

        self._log_event(snapshot.id, SnapshotEventType.CREATED, {"feature_count": len(snapshot.entries)})
        return snapshot.id

    def restore(self, snapshot_id: str, caller: Any, restored_by: Any = None) -> None:
        snapshot = self.get(snapshot_id, caller)
        if snapshot is None:
            return

        self.forget_stored(caller)
        restored = self.apply_entries(caller, snapshot.entries)

        # writes above may trigger listeners that snapshot this context,
        # so the lock only covers the header update
        with self.cache.lock(self._context_cache_key(snapshot.context_key)):
            snapshots = self._load(snapshot.context_key)
            if snapshot_id in snapshots:
                snapshots[snapshot_id]["restored_at"] = format_iso(self.clock())
                snapshots[snapshot_id]["restored_by"] = self.actor_info(restored_by)
                self._save(snapshot.context_key, snapshots)

        self._log_event(snapshot_id, SnapshotEventType.RESTORED, {"features_restored": restored})

    def restore_partial(
        self,
        snapshot_id: str,
        caller: Any,
        features: Sequence[str],
        restored_by: Any = None,
    ) -> None:
        snapshot = self.get(snapshot_id, caller)
        if snapshot is None:
            return

        restored = self.apply_entries(caller, self.select_entries(snapshot.entries, features))
        self._log_event(
            snapshot_id,
            SnapshotEventType.PARTIAL_RESTORE,
            {"features_restored": restored, "total_features": len(snapshot.entries)},
        )

    def get(self, snapshot_id: str, caller: Any) -> Snapshot | None:
        payload = self._load(self.context_key(caller)).get(snapshot_id)
        return payload_to_snapshot(payload) if payload is not None else None

    def list(self, caller: Any) -> list[Snapshot]:
        snapshots = [payload_to_snapshot(p) for p in self._load(self.context_key(caller)).values()]
        return sorted(reversed(snapshots), key=lambda s: s.created_at, reverse=True)

    def delete(self, snapshot_id: str, caller: Any, deleted_by: Any = None) -> None:
        context_key = self.context_key(caller)

        with self.cache.lock(self._context_cache_key(context_key)):
            snapshots = self._load(context_key)
            payload = snapshots.pop(snapshot_id, None)
            if payload is None:
                return
            self._save(context_key, snapshots)

        self._log_event(snapshot_id, SnapshotEventType.DELETED, {"label": payload.get("label")})

    def get_event_history(self, snapshot_id: str) -> list[SnapshotEvent]:
        """Always empty for this backend. See module docstring."""
        return []

    def prune(self, retention_days: int) -> int:
        if retention_days <= 0:
            return 0

        cutoff = self.clock() - timedelta(days=retention_days)
        batch_size = self.settings.snapshots.prune_batch_size
        deleted = 0

        for context_key in list(self.cache.get(self._index_key()) or []):
            with self.cache.lock(self._context_cache_key(context_key)):
                snapshots = self._load(context_key)
                expired = [
                    snapshot_id for snapshot_id, payload in snapshots.items()
                    if _parse(payload["created_at"]) < cutoff
                ]
                for start in range(0, len(expired), batch_size):
                    for snapshot_id in expired[start:start + batch_size]:
                        del snapshots[snapshot_id]
                    self._save(context_key, snapshots)
                deleted += len(expired)

        logger.info("Snapshots pruned", deleted=deleted, retention_days=retention_days)
        return deleted

    def _log_event(self, snapshot_id: str, event_type: SnapshotEventType, metadata: dict[str, Any]) -> None:
        logger.info("Snapshot event", snapshot_id=snapshot_id, event_type=event_type.value, **metadata)
