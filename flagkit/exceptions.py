"""
Typed errors raised by flagkit.

Three families, matching how callers react to them:
- InputError: the caller passed something malformed. Fix the call.
- StateError: the request is inconsistent with the flag configuration.
- NotFoundError: only raised by explicit lookups (``get_or_fail``).

Unknown features are never an error; they resolve inactive.
"""

from typing import Any


class FlagError(Exception):
    """Base class for every flagkit error."""


# ============================================================
# INPUT ERRORS
# ============================================================

class InputError(FlagError):
    """Caller supplied malformed input."""


class UnsupportedContextType(InputError):
    @classmethod
    def for_value(cls, value: Any) -> "UnsupportedContextType":
        return cls(
            f"Cannot use {type(value).__qualname__} as a feature context. "
            "Pass a Context, an object with to_context(), or an identifiable entity."
        )


class CannotSerializeContext(InputError):
    @classmethod
    def for_value(cls, value: Any) -> "CannotSerializeContext":
        return cls(f"Context of type {type(value).__qualname__} cannot be serialized")


class InvalidPercentage(InputError):
    @classmethod
    def out_of_range(cls, value: int) -> "InvalidPercentage":
        return cls(f"Percentage must be between 0 and 100, got {value}")


class StrategyDataMustBeInteger(InputError):
    @classmethod
    def for_percentage(cls, value: Any) -> "StrategyDataMustBeInteger":
        return cls(f"Percentage must be an integer, got {type(value).__qualname__}")


class InvalidTtlConfiguration(InputError):
    @classmethod
    def invalid_type(cls, value: Any) -> "InvalidTtlConfiguration":
        return cls(
            f"Cache TTL must be an integer number of seconds or None, "
            f"got {type(value).__qualname__}"
        )


class KeyMapViolation(InputError):
    @classmethod
    def unmapped(cls, type_name: str) -> "KeyMapViolation":
        return cls(f"No key mapping registered for {type_name} and key mapping is enforced")


class UnknownStrategy(InputError):
    @classmethod
    def named(cls, name: str) -> "UnknownStrategy":
        return cls(f"Unknown strategy '{name}'")


class CannotEncodeValue(InputError):
    @classmethod
    def for_key(cls, key: str, error: Exception) -> "CannotEncodeValue":
        return cls(f"Value for cache key '{key}' is not JSON encodable: {error}")


class InvalidVariantWeights(InputError):
    @classmethod
    def cannot_be_empty(cls) -> "InvalidVariantWeights":
        return cls("Variant weights cannot be empty")

    @classmethod
    def invalid_weight(cls, variant: str, weight: Any) -> "InvalidVariantWeights":
        return cls(f"Weight for variant '{variant}' must be a non-negative integer, got {weight!r}")


class VariantWeightsSum(InvalidVariantWeights):
    @classmethod
    def for_total(cls, total: int) -> "VariantWeightsSum":
        return cls(f"Variant weights must sum to 100, got {total}")


class UnknownVariant(InputError):
    @classmethod
    def named(cls, feature: str, variant: str) -> "UnknownVariant":
        return cls(f"Feature '{feature}' has no variant '{variant}'")


# ============================================================
# STATE ERRORS
# ============================================================

class StateError(FlagError):
    """Request is inconsistent with the stored configuration."""


class RequiresContext(StateError):
    @classmethod
    def for_percentage(cls) -> "RequiresContext":
        return cls("Percentage strategy requires a non-null context")

    @classmethod
    def for_feature(cls, feature: str) -> "RequiresContext":
        return cls(f"Feature '{feature}' cannot be resolved without a context")

    @classmethod
    def for_variants(cls) -> "RequiresContext":
        return cls("Variant strategy requires a non-null context")


class CannotDetermineIdentifier(StateError):
    @classmethod
    def for_percentage(cls) -> "CannotDetermineIdentifier":
        return cls(
            "Cannot determine context identifier for percentage strategy. "
            "Context must be a string, a number, expose get_key() or have an id attribute."
        )


class ContextMissingIdentifier(StateError):
    @classmethod
    def for_storage(cls, type_name: str) -> "ContextMissingIdentifier":
        return cls(f"Context of type '{type_name}' has no identifier and cannot be stored")


class MissingScopeConstraint(StateError):
    @classmethod
    def for_key(cls, key: str) -> "MissingScopeConstraint":
        return cls(f"Scope is missing required constraint '{key}'")


class CacheLockNotAcquired(StateError):
    @classmethod
    def for_key(cls, key: str) -> "CacheLockNotAcquired":
        return cls(f"Could not acquire the cache lock for '{key}'")


# ============================================================
# NOT FOUND
# ============================================================

class NotFoundError(FlagError):
    """Explicitly requested record does not exist."""


class SnapshotNotFound(NotFoundError):
    @classmethod
    def for_id(cls, snapshot_id: str) -> "SnapshotNotFound":
        return cls(f"Snapshot '{snapshot_id}' not found for this context")


class GroupNotFound(NotFoundError):
    @classmethod
    def named(cls, name: str) -> "GroupNotFound":
        return cls(f"Feature group '{name}' not found")


# ============================================================
# MIGRATION
# ============================================================

class MigrationError(FlagError):
    """Importing from an external flag system failed."""


class NoContextsMigrated(MigrationError):
    @classmethod
    def for_feature(cls, feature: str) -> "NoContextsMigrated":
        return cls(f"No contexts were migrated for feature '{feature}'")


class InvalidSourceRecord(MigrationError):
    @classmethod
    def missing(cls, column: str) -> "InvalidSourceRecord":
        return cls(f"Source record is missing a string '{column}' column")
