"""
Shared group repository behaviour.
"""

from typing import Iterable

from ..exceptions import GroupNotFound
from ..interfaces import FeatureGroup, GroupRepository
from ..timezone import Clock, utc_now


def unique_features(features: str | Iterable[str]) -> list[str]:
    """Feature names with repeats dropped, first occurrence order kept."""
    if isinstance(features, str):
        features = [features]
    return list(dict.fromkeys(features))


class BaseGroupRepository(GroupRepository):
    """Helpers shared by group repositories."""

    def __init__(self, clock: Clock = utc_now):
        self.clock = clock

    def get_or_fail(self, name: str) -> FeatureGroup:
        group = self.get(name)
        if group is None:
            raise GroupNotFound.named(name)
        return group

    def exists(self, name: str) -> bool:
        return self.get(name) is not None

    def add_features(self, name: str, features: str | Iterable[str]) -> FeatureGroup:
        current = self.get_or_fail(name).features
        return self.update(name, [*current, *unique_features(features)])

    def remove_features(self, name: str, features: str | Iterable[str]) -> FeatureGroup:
        removed = set(unique_features(features))
        current = self.get_or_fail(name).features
        return self.update(name, [feature for feature in current if feature not in removed])
