"""
Resolved feature values.

``FeatureValue`` keeps "resolved to False" and "never configured" apart.
Both are falsy to callers, but only the latter is reported as unknown.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any


class FeatureState(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    UNDEFINED = "undefined"


@dataclass(frozen=True)
class FeatureValue:
    state: FeatureState
    value: Any = None

    @classmethod
    def defined(cls, value: Any) -> "FeatureValue":
        if value is False:
            return cls(state=FeatureState.INACTIVE, value=False)
        return cls(state=FeatureState.ACTIVE, value=value)

    @classmethod
    def undefined(cls) -> "FeatureValue":
        return cls(state=FeatureState.UNDEFINED)

    @classmethod
    def from_raw(cls, value: Any) -> "FeatureValue":
        """Map a stored raw value: False -> inactive, None -> undefined."""
        if value is None:
            return cls.undefined()
        return cls.defined(value)

    @property
    def is_active(self) -> bool:
        return self.state is FeatureState.ACTIVE

    @property
    def is_inactive(self) -> bool:
        return self.state is FeatureState.INACTIVE

    @property
    def is_undefined(self) -> bool:
        return self.state is FeatureState.UNDEFINED

    def to_value(self) -> Any:
        if not self.is_active:
            return False
        return True if self.value is None else self.value

    def __bool__(self) -> bool:
        return self.is_active
