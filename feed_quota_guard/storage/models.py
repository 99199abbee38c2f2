"""
Data models for storage layer.

Defines persisted entities: schedule definitions, effectiveness history,
cache entries and quota ledger snapshots.
"""

from dataclasses import dataclass, field
from datetime import datetime, time
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


class Weekday(Enum):
    """Day of week for a schedule slot, indexed like ``datetime.weekday()``."""
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"

    @property
    def index(self) -> int:
        return list(Weekday).index(self)

    @classmethod
    def from_index(cls, index: int) -> "Weekday":
        return list(cls)[index % 7]


@dataclass(frozen=True)
class ScheduleSlot:
    """A recurring (weekday, local time) check slot."""
    weekday: Weekday
    at: time

    def __post_init__(self):
        """Validate slot fields."""
        if not isinstance(self.weekday, Weekday):
            raise ValueError(f"Invalid weekday: {self.weekday!r}")
        if not isinstance(self.at, time):
            raise ValueError(f"Invalid slot time: {self.at!r}")

    @classmethod
    def parse(cls, weekday: str, at: str) -> "ScheduleSlot":
        """Build a slot from strings such as ``("monday", "09:30")``.

        Raises:
            ValueError: If the weekday is unknown or the time is not HH:MM
                between 00:00 and 23:59
        """
        try:
            day = Weekday(str(weekday).strip().lower())
        except ValueError:
            valid = [d.value for d in Weekday]
            raise ValueError(f"weekday must be one of: {valid}")

        parts = str(at).strip().split(":")
        if len(parts) not in (2, 3) or not all(p.isdigit() for p in parts):
            raise ValueError(f"Invalid slot time '{at}', expected HH:MM")
        hour, minute = int(parts[0]), int(parts[1])
        if not (0 <= hour <= 23 and 0 <= minute <= 59):
            raise ValueError(f"Slot time '{at}' must be between 00:00 and 23:59")
        return cls(weekday=day, at=time(hour, minute))

    def label(self) -> str:
        return f"{self.weekday.value} {self.at.strftime('%H:%M')}"


@dataclass(frozen=True)
class ScheduleDefinition:
    """Configured intent to poll one channel at recurring slots.

    Owned and edited by the admin collaborator; the core only reads it.
    Slots are de-duplicated and kept in weekday/time order.
    """
    id: int
    channel_id: str
    platform: str
    priority: int = 3
    slots: Tuple[ScheduleSlot, ...] = ()
    timezone: str = "UTC"
    active: bool = True
    content_type: str = "video"
    operation: Optional[str] = None

    def __post_init__(self):
        """Validate and normalize the definition."""
        if not self.channel_id or not str(self.channel_id).strip():
            raise ValueError("channel_id is required and cannot be empty")
        if not self.platform or not str(self.platform).strip():
            raise ValueError("platform is required and cannot be empty")
        if not isinstance(self.priority, int) or not 1 <= self.priority <= 5:
            raise ValueError("priority must be an integer between 1 and 5")
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {self.timezone}")
        ordered = sorted(set(self.slots), key=lambda s: (s.weekday.index, s.at))
        object.__setattr__(self, "slots", tuple(ordered))

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


@dataclass(frozen=True)
class EffectivenessRecord:
    """Immutable outcome of one poll attempt for a schedule.

    Appended after every attempt and never modified.
    """
    schedule_id: int
    timestamp: datetime
    quota_spent: int
    content_found: int
    result_type: str = "scheduled"

    @property
    def effectiveness(self) -> float:
        """Content found per quota unit, 0.0 when nothing was spent."""
        if self.quota_spent <= 0:
            return 0.0
        return self.content_found / self.quota_spent


@dataclass(frozen=True)
class CacheEntry:
    """Cached payload keyed by (platform, content_type, key)."""
    platform: str
    content_type: str
    key: str
    payload: Any
    created_at: datetime
    expires_at: datetime

    def is_fresh(self, now: datetime) -> bool:
        return now < self.expires_at


@dataclass(frozen=True)
class OperationUsage:
    """Committed usage of one operation in the current window."""
    count: int = 0
    units: int = 0


@dataclass(frozen=True)
class QuotaSnapshot:
    """Persisted quota ledger state."""
    window_start: datetime
    used: int
    locked_until: Optional[datetime] = None
    operations: Dict[str, OperationUsage] = field(default_factory=dict)
