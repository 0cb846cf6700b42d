"""
Database group repository.

One ``feature_groups`` row per group, with the feature list as JSON.
Writes lock the row (``SELECT ... FOR UPDATE``) so concurrent edits of a
group's feature list serialize on the database.
"""

import copy
from typing import Any, Iterable, Mapping

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..exceptions import GroupNotFound
from ..interfaces import FeatureGroup
from ..models import FeatureGroupModel
from ..timezone import ensure_utc
from .base import BaseGroupRepository, unique_features

logger = structlog.get_logger()


class DatabaseGroupRepository(BaseGroupRepository):
    """
    SQLAlchemy-backed groups.

    The repository flushes; committing is the caller's job.
    """

    def __init__(self, db: Session, **kwargs):
        super().__init__(**kwargs)
        self.db = db

    def define(
        self,
        name: str,
        features: str | Iterable[str],
        metadata: Mapping[str, Any] | None = None,
    ) -> FeatureGroup:
        now = self.clock()
        model = self._find(name, lock=True)

        if model is None:
            model = FeatureGroupModel(name=name, created_at=now)
            self.db.add(model)

        model.features = unique_features(features)
        model.meta = copy.deepcopy(dict(metadata or {}))
        model.updated_at = now
        self.db.flush()

        logger.info("Feature group defined", group=name, features=len(model.features))
        return self._model_to_group(model)

    def get(self, name: str) -> FeatureGroup | None:
        model = self._find(name)
        return None if model is None else self._model_to_group(model)

    def all(self) -> list[FeatureGroup]:
        query = select(FeatureGroupModel).order_by(FeatureGroupModel.name)
        return [self._model_to_group(m) for m in self.db.execute(query).scalars().all()]

    def delete(self, name: str) -> bool:
        model = self._find(name, lock=True)
        if model is None:
            return False

        self.db.delete(model)
        self.db.flush()
        logger.info("Feature group deleted", group=name)
        return True

    def update(self, name: str, features: str | Iterable[str]) -> FeatureGroup:
        model = self._find(name, lock=True)
        if model is None:
            raise GroupNotFound.named(name)

        model.features = unique_features(features)
        model.updated_at = self.clock()
        self.db.flush()
        return self._model_to_group(model)

    # ============================================================
    # HELPERS
    # ============================================================

    def _find(self, name: str, lock: bool = False) -> FeatureGroupModel | None:
        query = select(FeatureGroupModel).where(FeatureGroupModel.name == name)
        if lock:
            query = query.with_for_update()
        return self.db.execute(query).scalar_one_or_none()

    @staticmethod
    def _model_to_group(model: FeatureGroupModel) -> FeatureGroup:
        return FeatureGroup(
            name=model.name,
            features=tuple(model.features or ()),
            metadata=copy.deepcopy(dict(model.meta or {})),
            created_at=ensure_utc(model.created_at),
            updated_at=ensure_utc(model.updated_at),
        )
