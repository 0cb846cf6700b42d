"""
Context model - who a feature is being checked for.

Callers hand the manager users, teams, plain ``Context`` values or anything
that can turn itself into one. ``ContextResolver`` normalizes all of them
into an immutable ``Context`` whose ``serialize()`` output is the storage
identity used by every driver.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import NoInspectionAvailable

from .exceptions import (
    CannotSerializeContext,
    KeyMapViolation,
    MissingScopeConstraint,
    UnsupportedContextType,
)

GUEST_ID = "__guest__"
GUEST_TYPE = "guest"


def encode_value(value: Any) -> str:
    """Stable string form for ids and constraint values."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float, UUID)):
        return str(value)
    try:
        return json.dumps(value, sort_keys=True, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise CannotSerializeContext.for_value(value) from e


# ============================================================
# SCOPE
# ============================================================

@dataclass(frozen=True, eq=False)
class Scope:
    """
    Hierarchical constraint set, e.g. company -> org -> team -> user.

    A ``None`` constraint value is a wildcard: a stored scope with
    ``{"org_id": 5, "team_id": None}`` applies to every team in org 5.
    """
    kind: str
    constraints: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "constraints", dict(self.constraints))

    def constraint(self, key: str) -> Any:
        if key not in self.constraints:
            raise MissingScopeConstraint.for_key(key)
        return self.constraints[key]

    def defined_constraints(self) -> dict[str, Any]:
        return {k: v for k, v in self.constraints.items() if v is not None}

    def matches(self, target: "Scope") -> bool:
        """
        Check whether this (caller) scope satisfies a stored target scope.

        Every non-wildcard constraint of ``target`` must be present here
        with an equal value. Extra constraints on the caller are fine.
        """
        if self.kind != target.kind:
            return False

        for key, value in target.defined_constraints().items():
            if key not in self.constraints:
                return False
            if self.constraints[key] != value:
                return False

        return True

    def to_cache_key(self) -> str:
        parts = [
            f"{key}={encode_value(self.constraints[key])}"
            for key in sorted(self.constraints)
        ]
        return f"{self.kind}:{'|'.join(parts)}"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "scopes": dict(self.constraints)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Scope":
        return cls(kind=data["kind"], constraints=data.get("scopes") or {})

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Scope):
            return NotImplemented
        return self.to_cache_key() == other.to_cache_key()

    def __hash__(self) -> int:
        return hash(self.to_cache_key())


# ============================================================
# CONTEXT
# ============================================================

@dataclass(frozen=True)
class Context:
    """
    Canonical subject of a flag check.

    ``id`` and ``type`` are the identity. ``source`` keeps the original
    caller around for strategies that want it and never affects equality.
    """
    id: Any
    type: str
    scope: Scope | None = None
    source: Any = field(default=None, compare=False, repr=False, hash=False)

    @classmethod
    def simple(cls, id: Any, type: str) -> "Context":
        return cls(id=id, type=type)

    @classmethod
    def scoped(cls, id: Any, type: str, scope: Scope) -> "Context":
        return cls(id=id, type=type, scope=scope)

    @property
    def kind(self) -> str:
        if self.scope is not None:
            return self.scope.kind
        return self.type.rsplit(".", 1)[-1].lower()

    def has_scope(self) -> bool:
        return self.scope is not None

    def with_scope(self, scope: Scope) -> "Context":
        return Context(id=self.id, type=self.type, scope=scope, source=self.source)

    def with_source(self, source: Any) -> "Context":
        return Context(id=self.id, type=self.type, scope=self.scope, source=source)

    def serialize(self) -> str:
        """Storage identity: ``type|id``."""
        return f"{self.type}|{encode_value(self.id)}"

    def to_cache_key(self) -> str:
        key = f"{self.type}:{encode_value(self.id)}"
        if self.scope is not None:
            key = f"{key}|{self.scope.to_cache_key()}"
        return key

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "scope": self.scope.to_dict() if self.scope else None,
        }

    def __str__(self) -> str:
        return self.serialize()


@runtime_checkable
class Contextable(Protocol):
    """Anything that knows how to describe itself as a Context."""

    def to_context(self) -> Context: ...


class GuestContext:
    """Stand-in for 'nobody'. The manager uses it when the caller is None."""

    def to_context(self) -> Context:
        return Context(id=GUEST_ID, type=GUEST_TYPE, source=self)

    def __repr__(self) -> str:
        return "GuestContext()"


def is_guest(context: Context) -> bool:
    return context.type == GUEST_TYPE and context.id == GUEST_ID


# ============================================================
# RESOLUTION
# ============================================================

def qualified_name(cls: type) -> str:
    return f"{cls.__module__}.{cls.__qualname__}"


class KeyRegistry:
    """
    Custom key mapping: which attribute of a caller type is its identifier.

    Example:
        registry = KeyRegistry({"app.models.User": "uuid"})
    """

    def __init__(
        self,
        mapping: Mapping[str, str] | None = None,
        *,
        enforce: bool = False,
    ):
        self._mapping: dict[str, str] = dict(mapping or {})
        self.enforce = enforce

    def register(self, cls: type | str, attribute: str) -> None:
        name = cls if isinstance(cls, str) else qualified_name(cls)
        self._mapping[name] = attribute

    def attribute_for(self, cls: type) -> str | None:
        name = qualified_name(cls)
        attribute = self._mapping.get(name)
        if attribute is None and self.enforce:
            raise KeyMapViolation.unmapped(name)
        return attribute

    def __contains__(self, cls: type) -> bool:
        return qualified_name(cls) in self._mapping


class ContextResolver:
    """
    Normalize any supported caller into a Context.

    Resolution order:
    1. ``Context`` - returned unchanged
    2. ``Contextable`` - ``to_context()``, id remapped via the key registry
    3. Identifiable entity - SQLAlchemy mapped instance or ``get_key()``
    4. Anything else - ``UnsupportedContextType``
    """

    def __init__(self, registry: KeyRegistry | None = None):
        self.registry = registry or KeyRegistry()

    def resolve(self, caller: Any) -> Context:
        if isinstance(caller, Context):
            return caller

        if isinstance(caller, Contextable):
            return self._from_contextable(caller)

        key = self._entity_key(caller)
        if key is not None:
            return Context(id=key, type=qualified_name(type(caller)), source=caller)

        raise UnsupportedContextType.for_value(caller)

    def _from_contextable(self, caller: Any) -> Context:
        context = caller.to_context()
        if not isinstance(context, Context):
            raise UnsupportedContextType.for_value(context)

        if not isinstance(caller, GuestContext) and type(caller) in self.registry:
            attribute = self.registry.attribute_for(type(caller))
            if attribute is not None:
                context = Context(
                    id=getattr(caller, attribute),
                    type=context.type,
                    scope=context.scope,
                )

        return context.with_source(caller)

    def _entity_key(self, caller: Any) -> Any:
        if caller is None or isinstance(caller, (str, int, float, bool, bytes)):
            return None

        if type(caller) in self.registry:
            return getattr(caller, self.registry.attribute_for(type(caller)))

        key = self._natural_key(caller)
        if key is not None and self.registry.enforce:
            raise KeyMapViolation.unmapped(qualified_name(type(caller)))
        return key

    @staticmethod
    def _natural_key(caller: Any) -> Any:
        try:
            state = sa_inspect(caller)
        except NoInspectionAvailable:
            state = None

        if state is not None and hasattr(state, "mapper"):
            identity = state.mapper.primary_key_from_instance(caller)
            if len(identity) == 1:
                return identity[0]
            return list(identity)

        get_key = getattr(caller, "get_key", None)
        if callable(get_key):
            return get_key()

        return None
