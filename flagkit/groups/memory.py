"""
In-memory group repository.

For development and testing. Data is lost when the instance goes away.
"""

import copy
import dataclasses
from typing import Any, Iterable, Mapping

import structlog

from ..exceptions import GroupNotFound
from ..interfaces import FeatureGroup
from .base import BaseGroupRepository, unique_features

logger = structlog.get_logger()


class MemoryGroupRepository(BaseGroupRepository):
    """Dict-backed groups. Callers always get copies."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._groups: dict[str, FeatureGroup] = {}

    def define(
        self,
        name: str,
        features: str | Iterable[str],
        metadata: Mapping[str, Any] | None = None,
    ) -> FeatureGroup:
        now = self.clock()
        existing = self._groups.get(name)
        group = FeatureGroup(
            name=name,
            features=tuple(unique_features(features)),
            metadata=copy.deepcopy(dict(metadata or {})),
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        self._groups[name] = group
        logger.info("Feature group defined", group=name, features=len(group.features))
        return copy.deepcopy(group)

    def get(self, name: str) -> FeatureGroup | None:
        group = self._groups.get(name)
        return None if group is None else copy.deepcopy(group)

    def all(self) -> list[FeatureGroup]:
        return [copy.deepcopy(self._groups[name]) for name in sorted(self._groups)]

    def delete(self, name: str) -> bool:
        if self._groups.pop(name, None) is None:
            return False
        logger.info("Feature group deleted", group=name)
        return True

    def update(self, name: str, features: str | Iterable[str]) -> FeatureGroup:
        group = self._groups.get(name)
        if group is None:
            raise GroupNotFound.named(name)

        group = dataclasses.replace(
            group,
            features=tuple(unique_features(features)),
            updated_at=self.clock(),
        )
        self._groups[name] = group
        return copy.deepcopy(group)
