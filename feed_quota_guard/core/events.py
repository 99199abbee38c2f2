"""
Events produced for external collaborators.

The core never formats or delivers notifications; it hands structured
events to a sink supplied by the host.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Union

from ..platforms.base import ContentItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContentDiscovered:
    """A content item not seen before for its target."""
    schedule_id: Optional[int]
    item: ContentItem
    discovered_at: datetime
    result_type: str = "scheduled"


@dataclass(frozen=True)
class CacheServed:
    """A due schedule was answered from the cache without polling."""
    schedule_id: int
    platform: str
    content_type: str
    key: str
    served_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class ScheduleStatusChanged:
    """A schedule moved between lifecycle states."""
    schedule_id: int
    previous: str
    current: str
    at: datetime


Event = Union[ContentDiscovered, CacheServed, ScheduleStatusChanged]
EventSink = Callable[[Event], None]


class EventLog:
    """Thread-safe in-memory sink, drained by the host."""

    def __init__(self, max_events: int = 10000):
        self.max_events = max_events
        self._events: List[Event] = []
        self._lock = threading.Lock()

    def __call__(self, event: Event) -> None:
        with self._lock:
            self._events.append(event)
            overflow = len(self._events) - self.max_events
            if overflow > 0:
                del self._events[:overflow]
                logger.warning("Event log full; dropped %d oldest events", overflow)

    def drain(self) -> List[Event]:
        """Return and forget every buffered event."""
        with self._lock:
            events, self._events = self._events, []
        return events

    def __len__(self) -> int:
        return len(self._events)
