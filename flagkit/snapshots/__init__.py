"""
Snapshot repositories.
"""

from typing import Any

from ..cache import CacheBackend, RedisCacheBackend
from ..manager import FeatureManager
from .base import BaseSnapshotRepository
from .cache import CacheSnapshotRepository
from .database import DatabaseSnapshotRepository
from .listener import AutoSnapshotListener
from .memory import MemorySnapshotRepository


def create_repository(
    manager: FeatureManager,
    *,
    db: Any = None,
    cache: CacheBackend | None = None,
) -> BaseSnapshotRepository:
    """Build the repository selected by ``snapshots.driver``."""
    driver = manager.settings.snapshots.driver

    if driver == "database":
        if db is None:
            raise ValueError("The database snapshot repository needs a session")
        return DatabaseSnapshotRepository(manager, db)

    if driver == "cache":
        return CacheSnapshotRepository(manager, cache or RedisCacheBackend.from_settings(manager.settings))

    return MemorySnapshotRepository(manager)


__all__ = [
    "AutoSnapshotListener",
    "BaseSnapshotRepository",
    "CacheSnapshotRepository",
    "DatabaseSnapshotRepository",
    "MemorySnapshotRepository",
    "create_repository",
]
