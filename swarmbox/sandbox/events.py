"""Typed lifecycle events for external observers.

The lifecycle manager publishes one ``LifecycleEvent`` per container
transition on a ``LifecycleEventBus``.  Observers subscribe with a
callback and get back a subscription id for ``unsubscribe``.  The bus
holds no subscriber-specific logic; a failing subscriber is logged and
does not affect delivery to the others or the publishing execution.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

__all__ = ["LifecycleEvent", "LifecycleEventBus", "LifecycleEventKind"]

log = logging.getLogger(__name__)


class LifecycleEventKind(StrEnum):
    CONTAINER_CREATED = "container.created"
    CONTAINER_STARTED = "container.started"
    CONTAINER_EXECUTED = "container.executed"
    CONTAINER_STOPPED = "container.stopped"
    CONTAINER_KILLED = "container.killed"
    CONTAINER_REMOVED = "container.removed"
    CONTAINER_ERROR = "container.error"
    SECURITY_VIOLATION = "security.violation"


@dataclass(frozen=True, slots=True)
class LifecycleEvent:
    kind: LifecycleEventKind
    session_id: str
    container_id: str = ""
    container_name: str = ""
    detail: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "session_id": self.session_id,
            "container_id": self.container_id,
            "container_name": self.container_name,
            "detail": dict(self.detail),
            "timestamp": self.timestamp,
        }


class LifecycleEventBus:
    """Synchronous fan-out of lifecycle events to subscribed callbacks."""

    def __init__(self, history_size: int = 256) -> None:
        self._subscribers: dict[int, tuple[Callable[[LifecycleEvent], None], frozenset[LifecycleEventKind] | None]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._recent: deque[LifecycleEvent] = deque(maxlen=history_size)

    def subscribe(
        self,
        callback: Callable[[LifecycleEvent], None],
        kinds: Iterable[LifecycleEventKind] | None = None,
    ) -> int:
        """Register *callback*; restrict to *kinds* when given.  Returns the subscription id."""
        with self._lock:
            sub_id = next(self._ids)
            self._subscribers[sub_id] = (callback, frozenset(kinds) if kinds is not None else None)
        return sub_id

    def unsubscribe(self, sub_id: int) -> bool:
        with self._lock:
            return self._subscribers.pop(sub_id, None) is not None

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def recent(self, limit: int | None = None) -> list[LifecycleEvent]:
        """Most recent events, oldest first."""
        with self._lock:
            events = list(self._recent)
        return events[-limit:] if limit else events

    def emit(self, event: LifecycleEvent) -> None:
        with self._lock:
            self._recent.append(event)
            targets = list(self._subscribers.items())
        for sub_id, (callback, kinds) in targets:
            if kinds is not None and event.kind not in kinds:
                continue
            try:
                callback(event)
            except Exception:
                log.exception("Lifecycle subscriber %d failed on %s", sub_id, event.kind.value)
