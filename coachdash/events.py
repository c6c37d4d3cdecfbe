"""Broadcast channels that carry manager state to the realtime hub.

Each manager owns one or more ``EventChannel`` instances. A channel always
holds its latest value so that new subscribers can be primed immediately,
and publishing never awaits: listeners must enqueue, not block.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Generic, Optional, TypeVar

T = TypeVar("T")

logger = logging.getLogger("coachdash.events")

Listener = Callable[[Any], None]


class EventChannel(Generic[T]):
    """Value-holding broadcast channel for a single topic."""

    def __init__(self, topic: str, initial: Optional[T] = None):
        self.topic = topic
        self._value: Optional[T] = initial
        self._listeners: list[Listener] = []
        self.version = 0

    @property
    def value(self) -> Optional[T]:
        return self._value

    def publish(self, value: Optional[T]) -> None:
        self._value = value
        self.version += 1
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception as e:
                logger.warning(f"Listener on {self.topic} failed: {e}")

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener and return a callable that removes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)


class EventBus:
    """Topic name -> channel registry shared by the managers and the hub."""

    def __init__(self) -> None:
        self._channels: dict[str, EventChannel[Any]] = {}

    def channel(self, topic: str) -> EventChannel[Any]:
        existing = self._channels.get(topic)
        if existing is None:
            existing = EventChannel(topic)
            self._channels[topic] = existing
        return existing


# Topic names
SESSION_STATUS = "session.status"
CONTEXT_STATUS = "context.status"
REALITY_CHECKS = "reality.checks"
PROJECT_STATUS = "project.status"
PROJECT_VELOCITY = "project.velocity"
DOCUMENTATION_STATUS = "documentation.status"
ADVISORY_SUGGESTIONS = "advisory.suggestions"
TOOL_EXECUTION = "tool:execution"

STATE_TOPICS = (
    SESSION_STATUS,
    CONTEXT_STATUS,
    REALITY_CHECKS,
    PROJECT_STATUS,
    PROJECT_VELOCITY,
    DOCUMENTATION_STATUS,
    ADVISORY_SUGGESTIONS,
)
KNOWN_TOPICS = STATE_TOPICS + (TOOL_EXECUTION,)


# Value a subscriber receives before any manager has published.
TOPIC_DEFAULTS: dict[str, Any] = {
    SESSION_STATUS: {"session": None},
    CONTEXT_STATUS: {"status": None},
    REALITY_CHECKS: {"snapshot_id": None, "discrepancies": []},
    PROJECT_STATUS: {"project": None},
    PROJECT_VELOCITY: {"metrics": None},
    DOCUMENTATION_STATUS: {"status": None},
    ADVISORY_SUGGESTIONS: {"suggestions": []},
}


def create_bus() -> EventBus:
    bus = EventBus()
    for topic in KNOWN_TOPICS:
        bus.channel(topic).publish(TOPIC_DEFAULTS.get(topic))
    return bus
