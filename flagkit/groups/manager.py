"""
Group-level activation.

    groups = GroupManager(manager, MemoryGroupRepository())
    groups.define("checkout-v2", ["new-cart", "one-click-pay"])
    groups.activate("checkout-v2", user)
"""

from typing import Any, Iterable, Mapping

import structlog

from ..interfaces import FeatureGroup, GroupRepository
from ..manager import FeatureManager

logger = structlog.get_logger()


class GroupManager:
    """
    Feature groups on top of a ``FeatureManager``.

    Group activation writes every member feature through the manager, so
    the usual events and cache invalidation apply. Editing a group's
    feature list does not touch values that are already stored.

    Unknown groups behave like empty ones: switching them is a no-op and
    checks are False. Only ``get_or_fail`` and edits raise GroupNotFound.
    """

    def __init__(self, manager: FeatureManager, repository: GroupRepository):
        self.manager = manager
        self.repository = repository

    # ============================================================
    # DEFINITIONS
    # ============================================================

    def define(
        self,
        name: str,
        features: str | Iterable[str],
        metadata: Mapping[str, Any] | None = None,
    ) -> FeatureGroup:
        return self.repository.define(name, features, metadata)

    def update(self, name: str, features: str | Iterable[str]) -> FeatureGroup:
        return self.repository.update(name, features)

    def add(self, name: str, features: str | Iterable[str]) -> FeatureGroup:
        return self.repository.add_features(name, features)

    def remove(self, name: str, features: str | Iterable[str]) -> FeatureGroup:
        return self.repository.remove_features(name, features)

    def delete(self, name: str) -> bool:
        return self.repository.delete(name)

    def get(self, name: str) -> FeatureGroup | None:
        return self.repository.get(name)

    def get_or_fail(self, name: str) -> FeatureGroup:
        return self.repository.get_or_fail(name)

    def exists(self, name: str) -> bool:
        return self.repository.exists(name)

    def all(self) -> list[FeatureGroup]:
        return self.repository.all()

    def features(self, name: str) -> list[str]:
        """Member features, or [] for an unknown group."""
        group = self.repository.get(name)
        if group is None:
            logger.debug("Unknown feature group", group=name)
            return []
        return list(group.features)

    def groups_for(self, feature: str) -> list[str]:
        """Names of the groups containing ``feature``."""
        return [group.name for group in self.repository.all() if feature in group.features]

    # ============================================================
    # ACTIVATION
    # ============================================================

    def activate(self, name: str, caller: Any = None, value: Any = True) -> None:
        features = self.features(name)
        self.manager.activate(features, caller, value)
        logger.info("Feature group activated", group=name, features=features)

    def deactivate(self, name: str, caller: Any = None) -> None:
        features = self.features(name)
        self.manager.deactivate(features, caller)
        logger.info("Feature group deactivated", group=name, features=features)

    def activate_for_everyone(self, name: str, value: Any = True) -> None:
        self.manager.activate_for_everyone(self.features(name), value)

    def deactivate_for_everyone(self, name: str) -> None:
        self.manager.deactivate_for_everyone(self.features(name))

    # ============================================================
    # CHECKS
    # ============================================================

    def active(self, name: str, caller: Any = None) -> bool:
        """Every member is active. An empty group is never active."""
        features = self.features(name)
        return bool(features) and self.manager.all_active(features, caller)

    def any_active(self, name: str, caller: Any = None) -> bool:
        return self.manager.any_active(self.features(name), caller)
