"""
Library configuration using Pydantic Settings.
"""

from typing import Any
from functools import lru_cache
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StoreSettings(BaseSettings):
    """Feature value store configuration."""

    model_config = SettingsConfigDict(env_prefix="FLAGKIT_STORE_")

    default: str = Field(
        default="memory",
        description="Feature store driver: memory, cache, database",
    )
    cache_prefix: str = Field(
        default="features",
        description="Key prefix used by the cache driver",
    )
    cache_ttl: int | None = Field(
        default=600,
        ge=0,
        description="Cache TTL for stored values (seconds). None or 0 stores forever.",
    )

    @field_validator("default")
    @classmethod
    def validate_default(cls, v: str) -> str:
        allowed = {"memory", "cache", "database"}
        if v not in allowed:
            raise ValueError(f"store must be one of {allowed}")
        return v


class EventSettings(BaseSettings):
    """Observability event configuration."""

    model_config = SettingsConfigDict(env_prefix="FLAGKIT_EVENTS_")

    enabled: bool = Field(default=True, description="Dispatch feature events")
    unknown_feature_rate: float = Field(
        default=1.0,
        ge=0.0,
        le=1.0,
        description="Fraction of unknown feature resolutions that emit an event",
    )


class SnapshotSettings(BaseSettings):
    """Snapshot repository configuration."""

    model_config = SettingsConfigDict(env_prefix="FLAGKIT_SNAPSHOTS_")

    driver: str = Field(
        default="memory",
        description="Snapshot repository: memory, cache, database",
    )
    auto_snapshot: bool = Field(
        default=False,
        description="Capture a snapshot on every activation/deactivation",
    )
    retention_days: int = Field(
        default=365,
        description="Snapshots older than this are pruned. <= 0 disables pruning.",
    )
    prune_batch_size: int = Field(default=100, ge=1)
    cache_prefix: str = Field(default="flagkit:snapshots")

    @field_validator("driver")
    @classmethod
    def validate_driver(cls, v: str) -> str:
        allowed = {"memory", "cache", "database"}
        if v not in allowed:
            raise ValueError(f"snapshot driver must be one of {allowed}")
        return v


class GroupSettings(BaseSettings):
    """Feature group repository configuration."""

    model_config = SettingsConfigDict(env_prefix="FLAGKIT_GROUPS_")

    driver: str = Field(default="memory", description="Group repository: memory, database")

    @field_validator("driver")
    @classmethod
    def validate_driver(cls, v: str) -> str:
        allowed = {"memory", "database"}
        if v not in allowed:
            raise ValueError(f"group driver must be one of {allowed}")
        return v


class DatabaseSettings(BaseSettings):
    """Database configuration."""

    model_config = SettingsConfigDict(env_prefix="FLAGKIT_DB_")

    url: str = Field(
        default="sqlite:///flagkit.db",
        description="SQLAlchemy connection URL",
    )
    echo: bool = Field(default=False, description="Echo SQL queries")


class RedisSettings(BaseSettings):
    """Redis configuration."""

    model_config = SettingsConfigDict(env_prefix="FLAGKIT_REDIS_")

    url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL",
    )
    max_connections: int = Field(default=10, ge=1)


class FlagSettings(BaseSettings):
    """Main library settings."""

    model_config = SettingsConfigDict(
        env_prefix="FLAGKIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = Field(default="development")

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json", description="json or text")

    # Feature names starting with this prefix are internal bookkeeping
    reserved_prefix: str = Field(default="__")

    # Custom identifier mapping: qualified type name -> key attribute
    key_map: dict[str, str] = Field(default_factory=dict)
    enforce_key_map: bool = Field(default=False)

    # Nested settings
    store: StoreSettings = Field(default_factory=StoreSettings)
    events: EventSettings = Field(default_factory=EventSettings)
    snapshots: SnapshotSettings = Field(default_factory=SnapshotSettings)
    groups: GroupSettings = Field(default_factory=GroupSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = {"development", "staging", "production", "testing"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v not in {"json", "text"}:
            raise ValueError("log_format must be 'json' or 'text'")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def get_store_config(self) -> dict[str, Any]:
        """Get configuration for building drivers and repositories."""
        return {
            "store": self.store.default,
            "snapshots": self.snapshots.driver,
            "groups": self.groups.driver,
            "cache": {
                "url": self.redis.url,
                "prefix": self.store.cache_prefix,
                "ttl": self.store.cache_ttl,
            },
            "database": {
                "url": self.database.url,
                "echo": self.database.echo,
            },
        }


@lru_cache
def get_settings() -> FlagSettings:
    """Get cached settings instance."""
    return FlagSettings()
