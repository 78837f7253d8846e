"""Approval engine notification signals.

The engine never delivers notifications itself. It hands typed events to
an ``EventPublisher`` after the request lock is released; subscribers
(dashboards, mailers, audit sinks) decide what to do with them.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .config import EventType

logger = logging.getLogger(__name__)

WILDCARD = "*"
ADMIN_AUDIENCE = "admins"


@dataclass
class EngineEvent:
    """Envelope for one engine signal."""

    event_type: EventType
    request_id: Optional[str] = None
    actor_id: Optional[str] = None
    audience: tuple[str, ...] = ()
    data: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    timestamp: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def admin_only(self) -> bool:
        return self.audience == (ADMIN_AUDIENCE,)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "request_id": self.request_id,
            "actor_id": self.actor_id,
            "audience": list(self.audience),
            "data": dict(self.data),
            "timestamp": self.timestamp.isoformat(),
        }


Handler = Callable[[EngineEvent], None]


class EventPublisher:
    """In-process pub/sub keyed by event type, with a ``*`` wildcard."""

    def __init__(self, history_limit: int = 1000) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._history: list[EngineEvent] = []
        self._history_limit = history_limit
        self._lock = threading.Lock()
        self._published_count = 0
        self._failed_count = 0

    def subscribe(self, event_type: EventType | str, handler: Handler) -> None:
        """Register ``handler`` for one event type, or ``"*"`` for all."""
        key = event_type.value if isinstance(event_type, EventType) else event_type
        with self._lock:
            self._handlers.setdefault(key, []).append(handler)

    def unsubscribe(self, event_type: EventType | str, handler: Handler) -> bool:
        key = event_type.value if isinstance(event_type, EventType) else event_type
        with self._lock:
            handlers = self._handlers.get(key, [])
            if handler in handlers:
                handlers.remove(handler)
                return True
        return False

    def publish(self, event: EngineEvent) -> int:
        """Deliver ``event`` to matching handlers; returns deliveries made.

        A failing handler is logged and skipped.
        """
        with self._lock:
            handlers = list(self._handlers.get(event.event_type.value, []))
            handlers += self._handlers.get(WILDCARD, [])
            self._history.append(event)
            if len(self._history) > self._history_limit:
                self._history = self._history[-self._history_limit:]
            self._published_count += 1

        delivered = 0
        for handler in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception:
                with self._lock:
                    self._failed_count += 1
                logger.exception(
                    "Event handler failed for %s (%s)",
                    event.event_type.value,
                    event.request_id,
                )
        return delivered

    def publish_all(self, events: list[EngineEvent]) -> None:
        for event in events:
            self.publish(event)

    def get_history(
        self,
        event_type: Optional[EventType] = None,
        request_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[EngineEvent]:
        with self._lock:
            events = list(self._history)
        if event_type is not None:
            events = [e for e in events if e.event_type == event_type]
        if request_id is not None:
            events = [e for e in events if e.request_id == request_id]
        return events[-limit:]

    def get_statistics(self) -> dict[str, int]:
        with self._lock:
            return {
                "published": self._published_count,
                "failed_deliveries": self._failed_count,
                "subscriptions": sum(len(h) for h in self._handlers.values()),
            }
