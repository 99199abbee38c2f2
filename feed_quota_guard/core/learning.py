"""
Effectiveness learning.

Keeps a bounded, append-only history of poll outcomes per schedule and
derives effectiveness scores, discovery patterns and advisory slot
suggestions from it. Schedule definitions are never modified here.
"""

import logging
import threading
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .clock import Clock, utc_now
from ..storage.models import EffectivenessRecord, ScheduleDefinition, ScheduleSlot, Weekday
from ..storage.repository import StateRepository

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_RECORDS = 20
DEFAULT_RETENTION_DAYS = 30
DEFAULT_MAX_RECORDS = 500
LOW_VALUE_MIN_ATTEMPTS = 10

# A slot needs this many attributed checks before it can be called zero-yield
MIN_SLOT_CHECKS = 3
# A (weekday, hour) bucket needs this many discoveries to count as a cluster
MIN_CLUSTER_DISCOVERIES = 2

LOCK_STRIPES = 64
MAX_ADD_SUGGESTIONS = 3


class SuggestionKind(Enum):
    """Kind of advisory schedule change."""
    ADD_SLOT = "add_slot"
    MOVE_SLOT = "move_slot"
    REMOVE_SLOT = "remove_slot"


@dataclass(frozen=True)
class SlotSuggestion:
    """Advisory change to a schedule's slots."""
    schedule_id: int
    kind: SuggestionKind
    reason: str
    slot: Optional[ScheduleSlot] = None
    from_slot: Optional[ScheduleSlot] = None
    confidence: float = 0.0


@dataclass(frozen=True)
class DiscoveryPattern:
    """Discoveries bucketed by local weekday and hour."""
    weekday: Weekday
    hour: int
    discoveries: int
    checks: int

    @property
    def slot(self) -> ScheduleSlot:
        return ScheduleSlot(weekday=self.weekday, at=time(self.hour, 0))


@dataclass(frozen=True)
class ContentPrediction:
    """Predicted next time new content appears."""
    at: datetime
    weekday: Weekday
    hour: int
    confidence: float


@dataclass(frozen=True)
class ScheduleInsights:
    """Learned summary of a schedule's history for the dashboard collaborator."""
    schedule_id: int
    effectiveness: float
    success_rate: float
    total_checks: int
    total_discoveries: int
    total_quota_spent: int
    low_value: bool
    patterns: Tuple[DiscoveryPattern, ...]
    suggestions: Tuple[SlotSuggestion, ...]
    next_content: Optional[ContentPrediction]


class EffectivenessLearner:
    """Learns how productive each schedule's polls are.

    Appends for one schedule are serialized; different schedules never
    contend.
    """

    def __init__(
        self,
        repository: Optional[StateRepository] = None,
        window_records: int = DEFAULT_WINDOW_RECORDS,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        max_records: int = DEFAULT_MAX_RECORDS,
        clock: Clock = utc_now,
    ):
        """Initialize the learner, loading retained history.

        Args:
            repository: Optional persistence for the history
            window_records: Records averaged by ``effectiveness``
            retention_days: Age after which records are dropped
            max_records: Records kept per schedule
            clock: Source of the current aware UTC time
        """
        if window_records <= 0:
            raise ValueError("window_records must be > 0")
        if retention_days <= 0:
            raise ValueError("retention_days must be > 0")
        if max_records <= 0:
            raise ValueError("max_records must be > 0")

        self.window_records = window_records
        self.retention = timedelta(days=retention_days)
        self.max_records = max_records
        self._clock = clock
        self._repository = repository

        self._history: Dict[int, List[EffectivenessRecord]] = {}
        self._locks = tuple(threading.Lock() for _ in range(LOCK_STRIPES))

        if repository is not None:
            cutoff = self._clock() - self.retention
            for record in repository.fetch_effectiveness_records(since=cutoff):
                self._history.setdefault(record.schedule_id, []).append(record)
            for records in self._history.values():
                del records[:-self.max_records]

    def record(
        self,
        schedule_id: int,
        quota_spent: int,
        content_found: int,
        result_type: str = "scheduled",
        timestamp: Optional[datetime] = None,
    ) -> EffectivenessRecord:
        """Append the outcome of one poll.

        A timestamp earlier than the schedule's latest record is moved up
        to it, so each schedule's history stays in time order.

        Raises:
            ValueError: If counts are negative or the result type is unknown
        """
        if quota_spent < 0 or content_found < 0:
            raise ValueError("quota_spent and content_found cannot be negative")
        if result_type not in ("scheduled", "prefetch"):
            raise ValueError(f"Unknown result type: {result_type}")

        with self._lock_for(schedule_id):
            history = self._history.setdefault(schedule_id, [])
            timestamp = timestamp or self._clock()
            if history and timestamp < history[-1].timestamp:
                timestamp = history[-1].timestamp

            record = EffectivenessRecord(
                schedule_id=schedule_id,
                timestamp=timestamp,
                quota_spent=quota_spent,
                content_found=content_found,
                result_type=result_type,
            )
            if self._repository is not None:
                self._repository.append_effectiveness_record(record)
            history.append(record)
            self._trim(history, self._clock())
        return record

    def history(self, schedule_id: int) -> List[EffectivenessRecord]:
        return list(self._history.get(schedule_id, []))

    def effectiveness(self, schedule_id: int) -> float:
        """Mean per-record effectiveness over the most recent records.

        Returns:
            0.0 for a schedule with no history
        """
        recent = self.history(schedule_id)[-self.window_records:]
        if not recent:
            return 0.0
        return sum(r.effectiveness for r in recent) / len(recent)

    def success_rate(self, schedule_id: int) -> float:
        records = self.history(schedule_id)
        if not records:
            return 0.0
        return sum(1 for r in records if r.content_found > 0) / len(records)

    def is_low_value(self, schedule_id: int) -> bool:
        """At least ten attempts in the retained history and nothing found."""
        records = self.history(schedule_id)
        return len(records) >= LOW_VALUE_MIN_ATTEMPTS and sum(r.content_found for r in records) == 0

    def prune(self, now: Optional[datetime] = None) -> int:
        """Drop records outside the retention window.

        Returns:
            Number of in-memory records removed
        """
        now = now or self._clock()
        removed = 0
        for schedule_id in list(self._history):
            with self._lock_for(schedule_id):
                history = self._history.get(schedule_id)
                if history is None:
                    continue
                before = len(history)
                self._trim(history, now)
                removed += before - len(history)
                if not history:
                    del self._history[schedule_id]
        if self._repository is not None:
            self._repository.prune_effectiveness_records(now - self.retention)
        if removed:
            logger.info("Pruned %d effectiveness records", removed)
        return removed

    def discovery_patterns(self, schedule: ScheduleDefinition) -> List[DiscoveryPattern]:
        """Checks and discoveries grouped by (weekday, hour) in the schedule's timezone.

        Returns:
            Buckets with at least one discovery, most discoveries first
        """
        checks: Counter = Counter()
        found: Counter = Counter()
        for record in self.history(schedule.id):
            local = record.timestamp.astimezone(schedule.tzinfo)
            bucket = (local.weekday(), local.hour)
            checks[bucket] += 1
            found[bucket] += record.content_found

        patterns = [
            DiscoveryPattern(
                weekday=Weekday.from_index(day),
                hour=hour,
                discoveries=found[(day, hour)],
                checks=checks[(day, hour)],
            )
            for (day, hour) in found
            if found[(day, hour)] > 0
        ]
        patterns.sort(key=lambda p: (-p.discoveries, p.weekday.index, p.hour))
        return patterns

    def suggest_adjustments(self, schedule: ScheduleDefinition) -> List[SlotSuggestion]:
        """Advisory slot changes derived from the schedule's history.

        - ``remove_slot`` for a slot with enough checks and no discoveries
        - ``move_slot`` instead when an uncovered discovery cluster falls
          on the same weekday
        - ``add_slot`` for the remaining strongest uncovered clusters
        """
        history = self.history(schedule.id)
        total_found = sum(r.content_found for r in history)

        clusters = [
            p for p in self.discovery_patterns(schedule)
            if p.discoveries >= MIN_CLUSTER_DISCOVERIES
            and not any(_covers(slot, p.weekday, p.hour) for slot in schedule.slots)
        ]

        suggestions = []
        for slot in schedule.slots:
            attributed = [r for r in history if _attributed(r, slot, schedule)]
            if len(attributed) < MIN_SLOT_CHECKS or sum(r.content_found for r in attributed) > 0:
                continue

            same_day = next((c for c in clusters if c.weekday == slot.weekday), None)
            if same_day is not None:
                clusters.remove(same_day)
                suggestions.append(SlotSuggestion(
                    schedule_id=schedule.id,
                    kind=SuggestionKind.MOVE_SLOT,
                    reason=(
                        f"{slot.label()} found nothing in {len(attributed)} checks; "
                        f"{same_day.discoveries} discoveries around {same_day.hour:02d}:00"
                    ),
                    slot=same_day.slot,
                    from_slot=slot,
                    confidence=same_day.discoveries / total_found,
                ))
            else:
                suggestions.append(SlotSuggestion(
                    schedule_id=schedule.id,
                    kind=SuggestionKind.REMOVE_SLOT,
                    reason=f"{slot.label()} found nothing in {len(attributed)} checks",
                    from_slot=slot,
                    confidence=min(1.0, len(attributed) / LOW_VALUE_MIN_ATTEMPTS),
                ))

        for cluster in clusters[:MAX_ADD_SUGGESTIONS]:
            suggestions.append(SlotSuggestion(
                schedule_id=schedule.id,
                kind=SuggestionKind.ADD_SLOT,
                reason=f"{cluster.discoveries} discoveries on {cluster.slot.label()}",
                slot=cluster.slot,
                confidence=cluster.discoveries / total_found,
            ))
        return suggestions

    def predict_next_content(
        self,
        schedule: ScheduleDefinition,
        now: Optional[datetime] = None,
    ) -> Optional[ContentPrediction]:
        """Soonest upcoming occurrence of a learned discovery pattern.

        Returns:
            Prediction with confidence equal to the pattern's share of all
            discoveries, or None without any discoveries
        """
        patterns = self.discovery_patterns(schedule)
        if not patterns:
            return None
        total = sum(p.discoveries for p in patterns)
        now = now or self._clock()
        local_now = now.astimezone(schedule.tzinfo)

        best = None
        for pattern in patterns[:MAX_ADD_SUGGESTIONS]:
            days_ahead = (pattern.weekday.index - local_now.weekday()) % 7
            at = datetime.combine(
                local_now.date() + timedelta(days=days_ahead),
                time(pattern.hour, 0),
                tzinfo=schedule.tzinfo,
            )
            if at <= local_now:
                at += timedelta(days=7)
            if best is None or at < best.at:
                best = ContentPrediction(
                    at=at,
                    weekday=pattern.weekday,
                    hour=pattern.hour,
                    confidence=pattern.discoveries / total,
                )
        return best

    def insights(self, schedule: ScheduleDefinition, now: Optional[datetime] = None) -> ScheduleInsights:
        history = self.history(schedule.id)
        return ScheduleInsights(
            schedule_id=schedule.id,
            effectiveness=self.effectiveness(schedule.id),
            success_rate=self.success_rate(schedule.id),
            total_checks=len(history),
            total_discoveries=sum(r.content_found for r in history),
            total_quota_spent=sum(r.quota_spent for r in history),
            low_value=self.is_low_value(schedule.id),
            patterns=tuple(self.discovery_patterns(schedule)),
            suggestions=tuple(self.suggest_adjustments(schedule)),
            next_content=self.predict_next_content(schedule, now),
        )

    def _trim(self, history: List[EffectivenessRecord], now: datetime) -> None:
        cutoff = now - self.retention
        expired = 0
        while expired < len(history) and history[expired].timestamp < cutoff:
            expired += 1
        del history[:expired]
        del history[:-self.max_records]

    def _lock_for(self, schedule_id: int) -> threading.Lock:
        return self._locks[schedule_id % len(self._locks)]


def _covers(slot: ScheduleSlot, weekday: Weekday, hour: int) -> bool:
    return slot.weekday == weekday and slot.at.hour == hour


def _attributed(record: EffectivenessRecord, slot: ScheduleSlot, schedule: ScheduleDefinition) -> bool:
    """Whether a record falls in the hour after a slot, in the schedule's timezone."""
    local = record.timestamp.astimezone(schedule.tzinfo)
    if local.weekday() != slot.weekday.index:
        return False
    minutes = local.hour * 60 + local.minute
    start = slot.at.hour * 60 + slot.at.minute
    return start <= minutes < start + 60
