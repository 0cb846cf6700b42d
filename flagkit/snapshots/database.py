"""
Database snapshot repository.

Snapshot header, entries and the ``created`` event are written in one
savepoint. Restores lock the snapshot row (``SELECT ... FOR UPDATE``) so
concurrent restores of the same snapshot serialize on the database.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Mapping, Sequence

import structlog
from sqlalchemy import delete, select
from sqlalchemy.orm import Session, selectinload

from ..context import encode_value
from ..interfaces import Snapshot, SnapshotEntry, SnapshotEvent, SnapshotEventType
from ..models import FeatureSnapshotEntryModel, FeatureSnapshotEventModel, FeatureSnapshotModel
from ..timezone import ensure_utc
from .base import BaseSnapshotRepository

logger = structlog.get_logger()


def _id_str(value: Any) -> str | None:
    return None if value is None else str(value)


class DatabaseSnapshotRepository(BaseSnapshotRepository):
    """
    SQLAlchemy-backed snapshots.

    The repository flushes; committing is the caller's job.
    """

    def __init__(self, manager, db: Session, **kwargs):
        super().__init__(manager, **kwargs)
        self.db = db

    # ============================================================
    # WRITES
    # ============================================================

    def create(
        self,
        caller: Any,
        features: Mapping[str, Any],
        label: str | None = None,
        created_by: Any = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> str:
        context = self.manager.resolve_context(caller)
        actor = self.actor_info(created_by)
        entries = self.build_entries(features)
        now = self.clock()

        with self.db.begin_nested():
            model = FeatureSnapshotModel(
                id=self.new_id(),
                label=label,
                context_type=context.type,
                context_id=encode_value(context.id),
                context_key=context.serialize(),
                created_by_type=actor["type"] if actor else None,
                created_by_id=_id_str(actor["id"]) if actor else None,
                meta=dict(metadata or {}),
                created_at=now,
                updated_at=now,
                entries=[
                    FeatureSnapshotEntryModel(
                        feature_name=entry.feature_name,
                        feature_value={"v": entry.value},
                        is_active=entry.is_active,
                        created_at=now,
                    )
                    for entry in entries
                ],
            )
            self.db.add(model)
            self._record(model, SnapshotEventType.CREATED, actor, {"feature_count": len(entries)})

        logger.info("Snapshot created", snapshot_id=model.id, context=model.context_key, label=label)
        return model.id

    def restore(self, snapshot_id: str, caller: Any, restored_by: Any = None) -> None:
        model = self._find(snapshot_id, caller, lock=True)
        if model is None:
            return

        entries = [self._model_to_entry(entry) for entry in model.entries]
        self.forget_stored(caller)
        restored = self.apply_entries(caller, entries)

        actor = self.actor_info(restored_by)
        model.restored_at = self.clock()
        model.restored_by_type = actor["type"] if actor else None
        model.restored_by_id = _id_str(actor["id"]) if actor else None
        self._record(model, SnapshotEventType.RESTORED, actor, {"features_restored": restored})
        self.db.flush()

        logger.info("Snapshot restored", snapshot_id=model.id, features=len(restored))

    def restore_partial(
        self,
        snapshot_id: str,
        caller: Any,
        features: Sequence[str],
        restored_by: Any = None,
    ) -> None:
        model = self._find(snapshot_id, caller, lock=True)
        if model is None:
            return

        entries = self.select_entries(
            [self._model_to_entry(entry) for entry in model.entries],
            features,
        )
        restored = self.apply_entries(caller, entries)
        self._record(
            model,
            SnapshotEventType.PARTIAL_RESTORE,
            self.actor_info(restored_by),
            {"features_restored": restored, "total_features": len(model.entries)},
        )
        self.db.flush()

        logger.info("Snapshot partially restored", snapshot_id=model.id, features=restored)

    def delete(self, snapshot_id: str, caller: Any, deleted_by: Any = None) -> None:
        model = self._find(snapshot_id, caller, lock=True)
        if model is None:
            return

        self._record(model, SnapshotEventType.DELETED, self.actor_info(deleted_by), {"label": model.label})
        self.db.delete(model)
        self.db.flush()

        logger.info("Snapshot deleted", snapshot_id=snapshot_id)

    def prune(self, retention_days: int) -> int:
        """
        Delete snapshots created before ``now - retention_days``.

        Works in batches of ``snapshots.prune_batch_size`` so no single
        statement touches an unbounded number of rows. Events of pruned
        snapshots go too.
        """
        if retention_days <= 0:
            return 0

        cutoff = self.clock() - timedelta(days=retention_days)
        batch_size = self.settings.snapshots.prune_batch_size
        deleted = 0

        while True:
            ids = list(
                self.db.execute(
                    select(FeatureSnapshotModel.id)
                    .where(FeatureSnapshotModel.created_at < cutoff)
                    .order_by(FeatureSnapshotModel.created_at)
                    .limit(batch_size)
                ).scalars().all()
            )
            if not ids:
                break

            self.db.execute(
                delete(FeatureSnapshotEventModel).where(FeatureSnapshotEventModel.snapshot_id.in_(ids))
            )
            self.db.execute(
                delete(FeatureSnapshotEntryModel).where(FeatureSnapshotEntryModel.snapshot_id.in_(ids))
            )
            self.db.execute(
                delete(FeatureSnapshotModel).where(FeatureSnapshotModel.id.in_(ids))
            )
            self.db.flush()
            deleted += len(ids)

        # history of snapshots deleted earlier
        self.db.execute(
            delete(FeatureSnapshotEventModel).where(
                FeatureSnapshotEventModel.created_at < cutoff,
                FeatureSnapshotEventModel.snapshot_id.not_in(select(FeatureSnapshotModel.id)),
            )
        )
        self.db.flush()

        logger.info("Snapshots pruned", deleted=deleted, retention_days=retention_days)
        return deleted

    # ============================================================
    # READS
    # ============================================================

    def get(self, snapshot_id: str, caller: Any) -> Snapshot | None:
        model = self._find(snapshot_id, caller)
        return self._model_to_snapshot(model) if model is not None else None

    def list(self, caller: Any) -> list[Snapshot]:
        query = (
            select(FeatureSnapshotModel)
            .where(FeatureSnapshotModel.context_key == self.context_key(caller))
            .options(selectinload(FeatureSnapshotModel.entries))
            .order_by(FeatureSnapshotModel.created_at.desc(), FeatureSnapshotModel.id.desc())
        )
        return [self._model_to_snapshot(m) for m in self.db.execute(query).scalars().all()]

    def get_event_history(self, snapshot_id: str) -> list[SnapshotEvent]:
        query = (
            select(FeatureSnapshotEventModel)
            .where(FeatureSnapshotEventModel.snapshot_id == snapshot_id)
            .order_by(FeatureSnapshotEventModel.created_at.desc(), FeatureSnapshotEventModel.id.desc())
        )
        return [self._model_to_event(m) for m in self.db.execute(query).scalars().all()]

    # ============================================================
    # HELPERS
    # ============================================================

    def _find(self, snapshot_id: str, caller: Any, lock: bool = False) -> FeatureSnapshotModel | None:
        query = select(FeatureSnapshotModel).where(
            FeatureSnapshotModel.id == snapshot_id,
            FeatureSnapshotModel.context_key == self.context_key(caller),
        )
        if lock:
            query = query.with_for_update()
        return self.db.execute(query).scalar_one_or_none()

    def _record(
        self,
        model: FeatureSnapshotModel,
        event_type: SnapshotEventType,
        actor: dict[str, Any] | None,
        metadata: dict[str, Any],
    ) -> None:
        self.db.add(
            FeatureSnapshotEventModel(
                snapshot_id=model.id,
                event_type=event_type.value,
                performed_by_type=actor["type"] if actor else None,
                performed_by_id=_id_str(actor["id"]) if actor else None,
                context_key=model.context_key,
                meta=metadata,
                created_at=self.clock(),
            )
        )

    @staticmethod
    def _model_to_entry(model: FeatureSnapshotEntryModel) -> SnapshotEntry:
        return SnapshotEntry(
            feature_name=model.feature_name,
            value=(model.feature_value or {}).get("v"),
            is_active=model.is_active,
        )

    def _model_to_snapshot(self, model: FeatureSnapshotModel) -> Snapshot:
        entries = [self._model_to_entry(entry) for entry in model.entries]
        return Snapshot(
            id=model.id,
            context_key=model.context_key,
            features={entry.feature_name: entry.value for entry in entries},
            label=model.label,
            entries=entries,
            created_by=_actor(model.created_by_type, model.created_by_id),
            restored_at=ensure_utc(model.restored_at) if model.restored_at else None,
            restored_by=_actor(model.restored_by_type, model.restored_by_id),
            metadata=dict(model.meta or {}),
            created_at=ensure_utc(model.created_at),
        )

    @staticmethod
    def _model_to_event(model: FeatureSnapshotEventModel) -> SnapshotEvent:
        return SnapshotEvent(
            snapshot_id=model.snapshot_id,
            event_type=SnapshotEventType(model.event_type),
            performed_by=_actor(model.performed_by_type, model.performed_by_id),
            context={"key": model.context_key} if model.context_key else None,
            metadata=dict(model.meta or {}),
            created_at=ensure_utc(model.created_at),
        )


def _actor(actor_type: str | None, actor_id: str | None) -> dict[str, Any] | None:
    if actor_type is None and actor_id is None:
        return None
    return {"type": actor_type, "id": actor_id}
