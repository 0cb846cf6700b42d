"""
SQLAlchemy models for the database driver, snapshot and group repositories.

Tables:
- features: stored feature values (exact per-context and scope-keyed rows)
- feature_snapshots: snapshot headers (who, when, for which context)
- feature_snapshot_entries: captured feature values, one row per feature
- feature_snapshot_events: audit trail (no FK, survives snapshot deletion)
- feature_groups: named feature groups
"""

from datetime import datetime
from typing import Any, Optional
from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .timezone import utc_now

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all models."""

    # All datetimes are timezone-aware
    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }

    def to_dict(self) -> dict[str, Any]:
        """Convert model to dictionary."""
        return {c.name: getattr(self, c.key) for c in self.__mapper__.column_attrs}


class TimestampMixin:
    """
    Mixin for created_at and updated_at timestamps.

    Timestamps are set from Python in UTC so callers (and tests) can
    back-date records.
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
        index=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False,
    )


# ============================================================
# FEATURE VALUES
# ============================================================

class FeatureModel(Base, TimestampMixin):
    """
    A stored feature value.

    Exact rows carry the context identity and ``scope_key = ""``.
    Scope rows carry the canonical scope cache key and empty context
    columns, so each (feature, scope) pair has at most one row.
    """

    __tablename__ = "features"
    __table_args__ = (
        UniqueConstraint(
            "name", "context_type", "context_id", "scope_key",
            name="uq_features_name_context_scope",
        ),
        Index("idx_features_name_scope_kind", "name", "scope_kind"),
        Index("idx_features_context", "context_type", "context_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    context_type: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    context_id: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    # Scope-keyed rows only
    scope_key: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    scope_kind: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    scope: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Stored as {"v": value} so that JSON null/false survive every dialect
    value: Mapped[dict] = mapped_column(JSONType, nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        target = self.scope_key or f"{self.context_type}|{self.context_id}"
        return f"<Feature {self.name} [{target}]>"


# ============================================================
# SNAPSHOTS
# ============================================================

class FeatureSnapshotModel(Base, TimestampMixin):
    """Snapshot header."""

    __tablename__ = "feature_snapshots"
    __table_args__ = (
        Index("idx_feature_snapshots_context", "context_key", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    label: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    context_type: Mapped[str] = mapped_column(String(255), nullable=False)
    context_id: Mapped[str] = mapped_column(String(255), nullable=False)
    context_key: Mapped[str] = mapped_column(String(512), nullable=False)

    created_by_type: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_by_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    restored_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    restored_by_type: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    restored_by_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # "metadata" is reserved on declarative classes
    meta: Mapped[dict] = mapped_column("metadata", JSONType, default=dict, nullable=False)

    entries: Mapped[list["FeatureSnapshotEntryModel"]] = relationship(
        back_populates="snapshot",
        cascade="all, delete-orphan",
        order_by="FeatureSnapshotEntryModel.id",
    )

    def __repr__(self) -> str:
        return f"<FeatureSnapshot {self.id} {self.label or ''}>"


class FeatureSnapshotEntryModel(Base):
    """One captured feature value. Immutable."""

    __tablename__ = "feature_snapshot_entries"
    __table_args__ = (
        UniqueConstraint("snapshot_id", "feature_name", name="uq_snapshot_entries_feature"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    snapshot_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("feature_snapshots.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    feature_name: Mapped[str] = mapped_column(String(255), nullable=False)
    feature_value: Mapped[dict] = mapped_column(JSONType, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )

    snapshot: Mapped[FeatureSnapshotModel] = relationship(back_populates="entries")


class FeatureSnapshotEventModel(Base):
    """
    Snapshot audit event.

    ``snapshot_id`` has no foreign key. Events of a deleted snapshot stay
    queryable until prune removes them.
    """

    __tablename__ = "feature_snapshot_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    snapshot_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    performed_by_type: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    performed_by_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    context_key: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    meta: Mapped[dict] = mapped_column("metadata", JSONType, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )


# ============================================================
# GROUPS
# ============================================================

class FeatureGroupModel(Base, TimestampMixin):
    """Named set of features switched on and off together."""

    __tablename__ = "feature_groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    features: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    meta: Mapped[dict] = mapped_column("metadata", JSONType, default=dict, nullable=False)

    def __repr__(self) -> str:
        return f"<FeatureGroup {self.name}>"
