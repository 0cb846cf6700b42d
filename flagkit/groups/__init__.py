"""
Feature groups.
"""

from typing import Any

from ..manager import FeatureManager
from .base import BaseGroupRepository
from .database import DatabaseGroupRepository
from .manager import GroupManager
from .memory import MemoryGroupRepository


def create_group_manager(manager: FeatureManager, *, db: Any = None) -> GroupManager:
    """Build a group manager whose repository follows ``groups.driver``."""
    if manager.settings.groups.driver == "database":
        if db is None:
            raise ValueError("The database group repository needs a session")
        return GroupManager(manager, DatabaseGroupRepository(db))

    return GroupManager(manager, MemoryGroupRepository())


__all__ = [
    "BaseGroupRepository",
    "DatabaseGroupRepository",
    "GroupManager",
    "MemoryGroupRepository",
    "create_group_manager",
]
