"""
Import feature state from other flag systems.

Migrators keep going past bad records and collect one message per
failure in ``get_statistics()["errors"]``. Only a failure to read the
source aborts the run: statistics are reset to a single
``Migration failed: ...`` error and the exception is re-raised.
"""

import json
from abc import abstractmethod
from typing import Any, Mapping

import structlog
from sqlalchemy import MetaData, Table, select
from sqlalchemy.engine import Connection
from sqlalchemy.orm import Session

from .context import Context
from .exceptions import InvalidSourceRecord, NoContextsMigrated
from .interfaces import Driver, Migrator

logger = structlog.get_logger()


def _empty_statistics() -> dict[str, Any]:
    return {"features": 0, "contexts": 0, "errors": [], "migrations": []}


class BaseMigrator(Migrator):
    """Shared source access and statistics bookkeeping."""

    def __init__(self, driver: Driver, source: Session | Connection, table: str = "features"):
        self.driver = driver
        self.source = source
        self.table = table
        self._statistics = _empty_statistics()

    def get_statistics(self) -> dict[str, Any]:
        return self._statistics

    def _rows(self) -> list[Mapping[str, Any]]:
        connection = self.source.connection() if isinstance(self.source, Session) else self.source
        table = Table(self.table, MetaData(), autoload_with=connection)
        return [row._mapping for row in connection.execute(select(table))]

    def migrate(self) -> None:
        self._statistics = _empty_statistics()
        try:
            self._run()
        except Exception as e:
            self._statistics = _empty_statistics()
            self._statistics["errors"].append(f"Migration failed: {e}")
            logger.error("Migration failed", migrator=type(self).__name__, table=self.table, error=str(e))
            raise

        logger.info(
            "Migration finished",
            migrator=type(self).__name__,
            features=self._statistics["features"],
            contexts=self._statistics["contexts"],
            errors=len(self._statistics["errors"]),
        )

    @abstractmethod
    def _run(self) -> None:
        """Read the source and write into the driver."""
        pass


class PennantMigrator(BaseMigrator):
    """
    Import per-context values from a Laravel Pennant ``features`` table.

    Each row has ``name``, ``scope`` (``Type|id`` or ``null``) and a JSON
    ``value``. ``context_types`` maps Pennant type names onto the types
    your contexts use (e.g. ``{"App\\Models\\User": "app.models.User"}``).
    """

    def __init__(
        self,
        driver: Driver,
        source: Session | Connection,
        table: str = "features",
        context_types: Mapping[str, str] | None = None,
    ):
        super().__init__(driver, source, table)
        self.context_types = dict(context_types or {})

    def _run(self) -> None:
        grouped: dict[str, list[Mapping[str, Any]]] = {}
        for row in self._rows():
            name = row.get("name")
            if isinstance(name, str):
                grouped.setdefault(name, []).append(row)

        for feature, records in grouped.items():
            try:
                self._migrate_feature(feature, records)
                self._statistics["features"] += 1
            except NoContextsMigrated as e:
                # per-record errors are already recorded
                logger.warning("Feature not migrated", feature=feature, reason=str(e))

    def _migrate_feature(self, feature: str, records: list[Mapping[str, Any]]) -> None:
        migrated = 0

        for record in records:
            scope = record.get("scope")
            try:
                if not isinstance(scope, str):
                    raise InvalidSourceRecord.missing("scope")
                if not isinstance(record.get("value"), str):
                    raise InvalidSourceRecord.missing("value")

                value = json.loads(record["value"])
                context = self._deserialize_context(scope)
                if context is None:
                    self._statistics["errors"].append(
                        f"Skipping deleted/missing model for scope: {scope} (feature: {feature})"
                    )
                    continue

                self.driver.set(feature, context, value)
                self._statistics["migrations"].append({
                    "source_id": record.get("id"),
                    "source_scope": scope,
                    "context_type": context.type,
                    "context_id": context.id,
                    "value": value,
                    "action": "set",
                })
                self._statistics["contexts"] += 1
                migrated += 1
            except Exception as e:
                self._statistics["errors"].append(
                    f"Failed to migrate context '{scope if isinstance(scope, str) else 'unknown'}' "
                    f"for feature '{feature}': {e}"
                )

        if migrated == 0:
            self._statistics["errors"].append(f"No contexts were migrated for feature '{feature}'")
            raise NoContextsMigrated.for_feature(feature)

    def _deserialize_context(self, scope: str) -> Context | None:
        if scope == "null":
            return None

        if "|" in scope:
            type_name, identifier = scope.split("|", 1)
            return Context(id=identifier, type=self.context_types.get(type_name, type_name))

        return Context(id=scope, type="string")


class FlagTableMigrator(BaseMigrator):
    """
    Import global on/off flags from a one-row-per-feature table.

    A feature is on when its ``field`` column is truthy (for example a
    non-null ``active_at`` timestamp).
    """

    def __init__(
        self,
        driver: Driver,
        source: Session | Connection,
        table: str = "features",
        field: str = "active_at",
        name_column: str = "feature",
    ):
        super().__init__(driver, source, table)
        self.field = field
        self.name_column = name_column

    def _run(self) -> None:
        for row in self._rows():
            name = row.get(self.name_column)
            try:
                if not isinstance(name, str):
                    raise InvalidSourceRecord.missing(self.name_column)
                self.driver.set_for_all_contexts(name, bool(row.get(self.field)))
                self._statistics["features"] += 1
                self._statistics["contexts"] += 1
            except Exception as e:
                self._statistics["errors"].append(
                    f"Failed to migrate feature '{name if isinstance(name, str) else 'unknown'}': {e}"
                )
