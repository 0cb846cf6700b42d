"""
Feature events and a synchronous dispatcher.

Listeners must never break a flag check: a failing handler is logged and
recorded on the ``DispatchResult``, and the remaining handlers still run.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, TypeVar

from .context import Context

logger = logging.getLogger(__name__)

E = TypeVar("E")


# ============================================================
# EVENTS
# ============================================================

@dataclass(frozen=True)
class FeatureEvent:
    feature: str
    context: Context | None

    @property
    def serialized_context(self) -> str | None:
        return self.context.serialize() if self.context is not None else None


@dataclass(frozen=True)
class UnknownFeatureResolved(FeatureEvent):
    """A feature with no resolver and no stored value was checked."""


@dataclass(frozen=True)
class FeatureActivated(FeatureEvent):
    value: Any = True


@dataclass(frozen=True)
class FeatureDeactivated(FeatureEvent):
    pass


# ============================================================
# DISPATCHER
# ============================================================

class ListenerPriority(IntEnum):
    """Listener execution priority (lower runs first)."""
    FIRST = 0
    EARLY = 25
    NORMAL = 50
    LATE = 75
    LAST = 100


@dataclass
class Listener:
    event_type: type
    handler: Callable[[Any], Any]
    priority: ListenerPriority = ListenerPriority.NORMAL
    once: bool = False


@dataclass
class DispatchResult:
    event: Any
    results: list[Any] = field(default_factory=list)
    errors: list[tuple[str, Exception]] = field(default_factory=list)


class EventDispatcher:
    """
    Routes feature events to listeners.

    Listeners registered for a base class also receive its subclasses, so
    ``listen(FeatureEvent, ...)`` sees every event.

    Example usage:
    ```python
    events = EventDispatcher()

    @events.on(FeatureActivated)
    def audit(event: FeatureActivated) -> None:
        log.info("activated", feature=event.feature)

    events.dispatch(FeatureActivated("beta", context))
    ```
    """

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._listeners: dict[type, list[Listener]] = defaultdict(list)

    def listen(
        self,
        event_type: type,
        handler: Callable[[Any], Any],
        *,
        priority: ListenerPriority = ListenerPriority.NORMAL,
        once: bool = False,
    ) -> Listener:
        listener = Listener(
            event_type=event_type,
            handler=handler,
            priority=priority,
            once=once,
        )
        self._listeners[event_type].append(listener)
        self._listeners[event_type].sort(key=lambda item: item.priority)

        logger.debug(f"Registered listener for {event_type.__name__} (priority={priority})")
        return listener

    def on(
        self,
        event_type: type[E],
        *,
        priority: ListenerPriority = ListenerPriority.NORMAL,
        once: bool = False,
    ) -> Callable[[Callable[[E], Any]], Callable[[E], Any]]:
        """Decorator to register a listener."""
        def decorator(func: Callable[[E], Any]) -> Callable[[E], Any]:
            self.listen(event_type, func, priority=priority, once=once)
            return func
        return decorator

    def forget(self, event_type: type, handler: Callable | None = None) -> bool:
        """Remove one handler, or every handler when ``handler`` is None."""
        listeners = self._listeners.get(event_type, [])
        if handler is None:
            removed = bool(listeners)
            self._listeners.pop(event_type, None)
            return removed

        for i, listener in enumerate(listeners):
            if listener.handler is handler:
                del listeners[i]
                return True
        return False

    def has_listeners(self, event_type: type) -> bool:
        return bool(self._listeners_for(event_type))

    def dispatch(self, event: Any) -> DispatchResult:
        result = DispatchResult(event=event)
        if not self.enabled:
            return result

        for listener in self._listeners_for(type(event)):
            try:
                result.results.append(listener.handler(event))
            except Exception as e:
                name = getattr(listener.handler, "__qualname__", str(listener.handler))
                result.errors.append((name, e))
                logger.error(f"Listener {name} failed for {type(event).__name__}: {e}")
            finally:
                if listener.once:
                    self.forget(listener.event_type, listener.handler)

        return result

    def _listeners_for(self, event_type: type) -> list[Listener]:
        matched = [
            listener
            for registered, listeners in self._listeners.items()
            if issubclass(event_type, registered)
            for listener in listeners
        ]
        matched.sort(key=lambda item: item.priority)
        return matched

    def clear(self) -> None:
        self._listeners.clear()


class RecordingDispatcher(EventDispatcher):
    """Dispatcher that keeps every event it sees. Useful in tests."""

    def __init__(self, enabled: bool = True):
        super().__init__(enabled=enabled)
        self.dispatched: list[Any] = []

    def dispatch(self, event: Any) -> DispatchResult:
        if self.enabled:
            self.dispatched.append(event)
        return super().dispatch(event)

    def of_type(self, event_type: type[E]) -> list[E]:
        return [event for event in self.dispatched if isinstance(event, event_type)]
