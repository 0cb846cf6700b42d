"""
Automatic snapshots on activation and deactivation.
"""

from typing import Any

import structlog

from ..config import FlagSettings
from ..events import EventDispatcher, FeatureActivated, FeatureDeactivated, ListenerPriority
from ..interfaces import SnapshotRepository
from ..timezone import format_iso, utc_now

logger = structlog.get_logger()


class AutoSnapshotListener:
    """
    Capture the context's stored values after every per-context write.

    Global overrides (no context) and reserved feature names are skipped.
    Does nothing unless ``snapshots.auto_snapshot`` is enabled.

    Usage:
        listener = AutoSnapshotListener(repository, settings)
        listener.register(dispatcher)
    """

    def __init__(self, repository: SnapshotRepository, settings: FlagSettings):
        self.repository = repository
        self.settings = settings

    def register(self, dispatcher: EventDispatcher) -> None:
        dispatcher.listen(FeatureActivated, self.handle, priority=ListenerPriority.LATE)
        dispatcher.listen(FeatureDeactivated, self.handle, priority=ListenerPriority.LATE)

    def should_snapshot(self, event: FeatureActivated | FeatureDeactivated) -> bool:
        if not self.settings.snapshots.auto_snapshot:
            return False
        if event.context is None:
            return False
        return not event.feature.startswith(self.settings.reserved_prefix)

    def handle(self, event: FeatureActivated | FeatureDeactivated) -> str | None:
        if not self.should_snapshot(event):
            return None

        action = "activated" if isinstance(event, FeatureActivated) else "deactivated"
        metadata: dict[str, Any] = {
            "auto_created": True,
            "event_type": action,
            "feature": event.feature,
            "timestamp": format_iso(utc_now()),
        }

        snapshot_id = self.repository.capture(
            event.context,
            label=f"auto-{action}-{event.feature}",
            metadata=metadata,
        )
        logger.debug("Auto snapshot captured", snapshot_id=snapshot_id, feature=event.feature)
        return snapshot_id
