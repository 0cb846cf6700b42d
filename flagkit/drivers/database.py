"""
Database driver for feature values.

Stores values in the ``features`` table through a synchronous SQLAlchemy
session. The driver flushes; committing is the caller's job.
"""

from typing import Any, Mapping, Sequence

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..context import Context, Scope, encode_value
from ..exceptions import ContextMissingIdentifier
from ..models import FeatureModel
from ..timezone import ensure_utc
from .base import BaseDriver, StoredValue, most_specific_first

logger = structlog.get_logger()


class DatabaseDriver(BaseDriver):
    """
    SQLAlchemy-backed driver.

    Exact rows are keyed by (name, context_type, context_id). Scope rows
    are keyed by (name, scope_key) and matched in Python against the
    caller's scope after narrowing by ``scope_kind``.
    """

    def __init__(self, db: Session, **kwargs):
        super().__init__(**kwargs)
        self.db = db

    # ============================================================
    # LISTING
    # ============================================================

    def stored(self) -> list[str]:
        query = select(FeatureModel.name).distinct().order_by(FeatureModel.name)
        return list(self.db.execute(query).scalars().all())

    def stored_for(self, context: Context) -> dict[str, Any]:
        if context.scope is not None:
            query = select(FeatureModel).where(
                FeatureModel.scope_key == context.scope.to_cache_key(),
                FeatureModel.context_type == "",
            )
        else:
            context_type, context_id = self._context_columns(context)
            query = select(FeatureModel).where(
                FeatureModel.context_type == context_type,
                FeatureModel.context_id == context_id,
                FeatureModel.scope_key == "",
            )

        models = self.db.execute(query.order_by(FeatureModel.name)).scalars().all()
        return {m.name: self._model_to_stored(m).value for m in models}

    # ============================================================
    # BATCH
    # ============================================================

    def get_all(self, features: Mapping[str, Sequence[Context]]) -> dict[str, list[Any]]:
        """
        Batched get.

        Explicit exact values for every pair are loaded in one query; pairs
        without one go through ``get`` so per-pair semantics are unchanged.
        """
        pairs = [
            (feature, self._context_columns(context))
            for feature, contexts in features.items()
            for context in contexts
        ]
        if not pairs:
            return {feature: [] for feature in features}

        query = select(FeatureModel).where(
            FeatureModel.name.in_({feature for feature, _ in pairs}),
            FeatureModel.context_type.in_({columns[0] for _, columns in pairs}),
            FeatureModel.context_id.in_({columns[1] for _, columns in pairs}),
            FeatureModel.scope_key == "",
        )
        rows = {
            (m.name, m.context_type, m.context_id): m
            for m in self.db.execute(query).scalars().all()
        }

        now = self.clock()
        results: dict[str, list[Any]] = {}
        for feature, contexts in features.items():
            values = []
            for context in contexts:
                model = rows.get((feature, *self._context_columns(context)))
                stored = self._model_to_stored(model) if model is not None else None
                if stored is not None and not stored.resolved and not stored.is_expired(now):
                    values.append(stored.value)
                else:
                    values.append(self.get(feature, context))
            results[feature] = values
        return results

    # ============================================================
    # STORAGE PRIMITIVES
    # ============================================================

    def _read_exact(self, feature: str, context: Context) -> StoredValue | None:
        model = self._find_exact(feature, context)
        return self._model_to_stored(model) if model is not None else None

    def _read_scoped(self, feature: str, scope: Scope) -> tuple[Scope, StoredValue] | None:
        query = select(FeatureModel).where(
            FeatureModel.name == feature,
            FeatureModel.scope_kind == scope.kind,
            FeatureModel.scope_key != "",
        )
        candidates = []
        for model in self.db.execute(query).scalars().all():
            stored_scope = Scope.from_dict(model.scope or {"kind": model.scope_kind})
            if scope.matches(stored_scope):
                candidates.append((stored_scope, self._model_to_stored(model)))

        if not candidates:
            return None
        return most_specific_first(candidates)[0]

    def _write_exact(self, feature: str, context: Context, stored: StoredValue) -> None:
        context_type, context_id = self._context_columns(context)
        self._upsert(
            feature,
            stored,
            context_type=context_type,
            context_id=context_id,
            scope_key="",
        )

    def _write_scoped(self, feature: str, scope: Scope, stored: StoredValue) -> None:
        self._upsert(
            feature,
            stored,
            context_type="",
            context_id="",
            scope_key=scope.to_cache_key(),
            scope_kind=scope.kind,
            scope=scope.to_dict(),
        )

    def _delete_exact(self, feature: str, context: Context) -> None:
        context_type, context_id = self._context_columns(context)
        self.db.execute(
            delete(FeatureModel).where(
                FeatureModel.name == feature,
                FeatureModel.context_type == context_type,
                FeatureModel.context_id == context_id,
                FeatureModel.scope_key == "",
            )
        )
        self.db.flush()

    def _delete_scoped(self, feature: str, scope: Scope) -> None:
        self.db.execute(
            delete(FeatureModel).where(
                FeatureModel.name == feature,
                FeatureModel.context_type == "",
                FeatureModel.scope_key == scope.to_cache_key(),
            )
        )
        self.db.flush()

    def _clear_feature(self, feature: str) -> None:
        self.db.execute(delete(FeatureModel).where(FeatureModel.name == feature))
        self.db.flush()

    # ============================================================
    # HELPERS
    # ============================================================

    def _context_columns(self, context: Context) -> tuple[str, str]:
        if context.id is None:
            raise ContextMissingIdentifier.for_storage(context.type)
        return context.type, encode_value(context.id)

    def _find_exact(self, feature: str, context: Context) -> FeatureModel | None:
        context_type, context_id = self._context_columns(context)
        return self._find_row(feature, context_type, context_id, "")

    def _find_row(self, feature: str, context_type: str, context_id: str, scope_key: str) -> FeatureModel | None:
        query = select(FeatureModel).where(
            FeatureModel.name == feature,
            FeatureModel.context_type == context_type,
            FeatureModel.context_id == context_id,
            FeatureModel.scope_key == scope_key,
        )
        return self.db.execute(query).scalar_one_or_none()

    def _upsert(
        self,
        feature: str,
        stored: StoredValue,
        *,
        context_type: str,
        context_id: str,
        scope_key: str,
        scope_kind: str | None = None,
        scope: dict | None = None,
    ) -> None:
        """
        Insert or update one row.

        A concurrent writer can insert the same key between our read and
        insert. The unique constraint catches that; retry once as an update.
        """
        values = {
            "value": {"v": stored.value, "resolved": stored.resolved},
            "expires_at": stored.expires_at,
        }

        for attempt in range(2):
            try:
                with self.db.begin_nested():
                    model = self._find_row(feature, context_type, context_id, scope_key)
                    if model is None:
                        model = FeatureModel(
                            name=feature,
                            context_type=context_type,
                            context_id=context_id,
                            scope_key=scope_key,
                            scope_kind=scope_kind,
                            scope=scope,
                            **values,
                        )
                        self.db.add(model)
                    else:
                        for field, value in values.items():
                            setattr(model, field, value)
                return
            except IntegrityError:
                if attempt == 1:
                    raise
                logger.warning(
                    "Feature write raced, retrying",
                    feature=feature,
                    context_type=context_type,
                    context_id=context_id,
                    scope_key=scope_key,
                )

    def _model_to_stored(self, model: FeatureModel) -> StoredValue:
        payload = model.value or {}
        return StoredValue(
            value=payload.get("v"),
            expires_at=ensure_utc(model.expires_at) if model.expires_at else None,
            resolved=bool(payload.get("resolved", False)),
        )
