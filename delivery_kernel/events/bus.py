"""
Event Bus — typed publish/subscribe channel for external observers.

Observers (notification, broadcast, dashboards) subscribe here instead of
being wired into the subsystems. A failing subscriber never affects the
publisher.
"""

import logging
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, List, Optional
from uuid import uuid4

from delivery_kernel.models.events import EventType, KernelEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[KernelEvent], None]


class EventBus:
    """In-process publish/subscribe with an optional bounded history."""

    def __init__(self, history_size: int = 200):
        self._subscribers: Dict[Optional[EventType], List[EventHandler]] = {}
        self._history: Deque[KernelEvent] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def subscribe(self, event_type: Optional[EventType], handler: EventHandler) -> None:
        """Register a handler for one event type, or for every event when event_type is None."""
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: Optional[EventType], handler: EventHandler) -> None:
        with self._lock:
            handlers = self._subscribers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, event: KernelEvent) -> None:
        with self._lock:
            self._history.append(event)
            handlers = list(self._subscribers.get(event.type, []))
            handlers += self._subscribers.get(None, [])

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Event subscriber failed for %s", event.type.value,
                    extra={"kernel_event_id": event.id},
                )

    def emit(
        self,
        event_type: EventType,
        subject_id: Optional[str] = None,
        payload: Optional[dict] = None,
    ) -> KernelEvent:
        """Build and publish an event, handling ID generation and timestamps."""
        event = KernelEvent(
            id=f"evt_{uuid4().hex[:12]}",
            type=event_type,
            subject_id=subject_id,
            payload=payload or {},
            occurred_at=datetime.now(timezone.utc),
        )
        self.publish(event)
        return event

    def recent(self, limit: int = 50, event_type: Optional[EventType] = None) -> List[KernelEvent]:
        """Most recent events, oldest first."""
        with self._lock:
            events = list(self._history)
        if event_type is not None:
            events = [e for e in events if e.type == event_type]
        return events[-limit:]
