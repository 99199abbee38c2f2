"""
Schedule state machine and admission.

Decides which schedules are due, orders them for admission under quota
pressure, and tracks each schedule through one poll:

    Idle -> Due -> Reserving -> Executing -> Recorded | Failed -> Idle
    Due -> SkippedCacheFresh -> Idle
    Due | Reserving -> SkippedNoQuota -> Due (next tick, same local day) | Idle
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .clock import Clock, utc_now
from .errors import ScheduleStateError
from .events import EventSink, ScheduleStatusChanged
from .fetch import ErrorKind, FetchOutcome
from .learning import EffectivenessLearner
from .quota import Reservation, ReservationResult
from ..storage.models import ScheduleDefinition, ScheduleSlot

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_MINUTES = 5


class ScheduleState(Enum):
    """Lifecycle state of a schedule within one poll."""
    IDLE = "idle"
    DUE = "due"
    RESERVING = "reserving"
    EXECUTING = "executing"
    RECORDED = "recorded"
    SKIPPED_CACHE_FRESH = "skipped_cache_fresh"
    SKIPPED_NO_QUOTA = "skipped_no_quota"
    FAILED = "failed"


ALLOWED_TRANSITIONS: Dict[ScheduleState, Set[ScheduleState]] = {
    ScheduleState.IDLE: {ScheduleState.DUE},
    ScheduleState.DUE: {
        ScheduleState.RESERVING,
        ScheduleState.SKIPPED_CACHE_FRESH,
        ScheduleState.SKIPPED_NO_QUOTA,
    },
    ScheduleState.RESERVING: {
        ScheduleState.EXECUTING,
        ScheduleState.SKIPPED_NO_QUOTA,
        ScheduleState.FAILED,
    },
    ScheduleState.EXECUTING: {ScheduleState.RECORDED, ScheduleState.FAILED},
    ScheduleState.RECORDED: {ScheduleState.IDLE},
    ScheduleState.SKIPPED_CACHE_FRESH: {ScheduleState.IDLE},
    ScheduleState.FAILED: {ScheduleState.IDLE},
    ScheduleState.SKIPPED_NO_QUOTA: {ScheduleState.DUE, ScheduleState.IDLE},
}


@dataclass(frozen=True)
class DueItem:
    """One slot occurrence of a schedule that should be polled now."""
    schedule: ScheduleDefinition
    slot: ScheduleSlot
    occurrence: date
    due_at: datetime

    @property
    def schedule_id(self) -> int:
        return self.schedule.id


@dataclass(frozen=True)
class Admission:
    """A due item that holds a reservation and may be executed."""
    item: DueItem
    reservation: Reservation


@dataclass
class AdmissionPlan:
    """Result of admitting one tick's due items."""
    admitted: List[Admission] = field(default_factory=list)
    cached: List[DueItem] = field(default_factory=list)
    skipped_no_quota: List[DueItem] = field(default_factory=list)
    denial: Optional[ReservationResult] = None


@dataclass(frozen=True)
class UpcomingCheck:
    """Next occurrence of a schedule slot."""
    schedule_id: int
    channel_id: str
    platform: str
    priority: int
    slot: ScheduleSlot
    at: datetime


@dataclass(frozen=True)
class ScheduleStatus:
    """Per-schedule state for the dashboard collaborator."""
    schedule_id: int
    channel_id: str
    platform: str
    priority: int
    active: bool
    state: ScheduleState
    last_outcome: Optional[str]
    last_run_at: Optional[datetime]
    effectiveness: float
    low_value: bool


@dataclass
class _Runtime:
    state: ScheduleState = ScheduleState.IDLE
    pending: Optional[DueItem] = None
    handled: Set[Tuple[date, ScheduleSlot]] = field(default_factory=set)
    last_outcome: Optional[str] = None
    last_run_at: Optional[datetime] = None


class Scheduler:
    """Tracks schedule definitions and their per-poll state."""

    def __init__(
        self,
        schedules: Iterable[ScheduleDefinition] = (),
        learner: Optional[EffectivenessLearner] = None,
        tolerance_minutes: int = DEFAULT_TOLERANCE_MINUTES,
        clock: Clock = utc_now,
        event_sink: Optional[EventSink] = None,
    ):
        """Initialize the scheduler.

        Args:
            schedules: Schedule definitions to track
            learner: Effectiveness learner for tie-breaking and result recording
            tolerance_minutes: How long after a slot it still counts as due
            clock: Source of the current aware UTC time
            event_sink: Optional receiver of status change events
        """
        if tolerance_minutes <= 0:
            raise ValueError("tolerance_minutes must be > 0")
        self.learner = learner or EffectivenessLearner(clock=clock)
        self.tolerance = timedelta(minutes=tolerance_minutes)
        self._clock = clock
        self._event_sink = event_sink
        self._lock = threading.RLock()
        self._schedules: Dict[int, ScheduleDefinition] = {}
        self._runtime: Dict[int, _Runtime] = {}
        self.refresh(schedules)

    def refresh(self, schedules: Iterable[ScheduleDefinition]) -> None:
        """Replace the tracked definitions, keeping state of surviving schedules.

        Raises:
            ValueError: If two definitions share an id
        """
        incoming: Dict[int, ScheduleDefinition] = {}
        for schedule in schedules:
            if schedule.id in incoming:
                raise ValueError(f"Duplicate schedule id: {schedule.id}")
            incoming[schedule.id] = schedule
        with self._lock:
            self._schedules = incoming
            for schedule_id in incoming:
                self._runtime.setdefault(schedule_id, _Runtime())
            for schedule_id in list(self._runtime):
                runtime = self._runtime[schedule_id]
                if schedule_id not in incoming and runtime.state in (
                    ScheduleState.IDLE, ScheduleState.SKIPPED_NO_QUOTA
                ):
                    del self._runtime[schedule_id]

    def schedules(self) -> List[ScheduleDefinition]:
        with self._lock:
            return list(self._schedules.values())

    def get(self, schedule_id: int) -> Optional[ScheduleDefinition]:
        return self._schedules.get(schedule_id)

    def state_of(self, schedule_id: int) -> ScheduleState:
        with self._lock:
            return self._runtime[schedule_id].state

    # Due detection

    def collect_due(self, now: Optional[datetime] = None) -> List[DueItem]:
        """Move every schedule with an unhandled slot in its tolerance window to Due.

        Schedules skipped for quota earlier on the same local day come back
        as Due; once the local date changes their missed slot is dropped.
        """
        now = now or self._clock()
        due = []
        with self._lock:
            for schedule in self._schedules.values():
                if not schedule.active:
                    continue
                runtime = self._runtime[schedule.id]
                local = now.astimezone(schedule.tzinfo)
                runtime.handled = {h for h in runtime.handled if h[0] >= local.date() - timedelta(days=1)}

                if runtime.state == ScheduleState.SKIPPED_NO_QUOTA:
                    pending = runtime.pending
                    if pending is not None and pending.occurrence == local.date():
                        self._transition(schedule.id, ScheduleState.DUE)
                        due.append(pending)
                        continue
                    logger.info(
                        "Schedule %d missed %s for lack of quota", schedule.id,
                        pending.slot.label() if pending else "its slot",
                    )
                    self._finish(schedule.id, "skipped_no_quota", handled=pending)

                if runtime.state != ScheduleState.IDLE:
                    continue

                item = self._due_slot(schedule, runtime, local)
                if item is not None:
                    runtime.pending = item
                    self._transition(schedule.id, ScheduleState.DUE)
                    due.append(item)
        return due

    def _due_slot(self, schedule: ScheduleDefinition, runtime: _Runtime, local: datetime) -> Optional[DueItem]:
        # Yesterday's late slots can still be inside the tolerance after midnight
        for day in (local.date(), local.date() - timedelta(days=1)):
            for slot in schedule.slots:
                if slot.weekday.index != day.weekday() or (day, slot) in runtime.handled:
                    continue
                start = datetime.combine(day, slot.at, tzinfo=schedule.tzinfo)
                if start <= local < start + self.tolerance:
                    return DueItem(schedule=schedule, slot=slot, occurrence=day, due_at=start)
        return None

    # Admission

    def admission_order(self, items: Iterable[DueItem]) -> List[DueItem]:
        """Priority descending, ties broken by lowest recent effectiveness."""
        return sorted(
            items,
            key=lambda item: (
                -item.schedule.priority,
                self.learner.effectiveness(item.schedule_id),
                item.schedule_id,
            ),
        )

    def admit(
        self,
        items: Iterable[DueItem],
        is_cached: Callable[[DueItem], bool],
        try_reserve: Callable[[DueItem], ReservationResult],
    ) -> AdmissionPlan:
        """Admit due items in priority order.

        A cached item is skipped without a reservation. After the first
        quota denial no later item is admitted this tick, so a lower
        priority schedule never takes budget a higher one was refused.

        Args:
            items: Items in Due state
            is_cached: Whether fresh cached content answers an item
            try_reserve: Reserve quota for an item

        Returns:
            AdmissionPlan with admitted, cached and skipped items
        """
        plan = AdmissionPlan()
        for item in self.admission_order(items):
            if is_cached(item):
                self._transition(item.schedule_id, ScheduleState.SKIPPED_CACHE_FRESH)
                self._finish(item.schedule_id, "cache_fresh", handled=item)
                plan.cached.append(item)
                continue

            if plan.denial is not None:
                self._transition(item.schedule_id, ScheduleState.SKIPPED_NO_QUOTA)
                plan.skipped_no_quota.append(item)
                continue

            self._transition(item.schedule_id, ScheduleState.RESERVING)
            result = try_reserve(item)
            if result.granted:
                plan.admitted.append(Admission(item=item, reservation=result.reservation))
            else:
                logger.info(
                    "Schedule %d (priority %d) skipped: %s, %d units remaining",
                    item.schedule_id, item.schedule.priority,
                    result.reason.value if result.reason else "denied", result.remaining,
                )
                plan.denial = result
                self._transition(item.schedule_id, ScheduleState.SKIPPED_NO_QUOTA)
                plan.skipped_no_quota.append(item)
        return plan

    # Execution results

    def mark_executing(self, item: DueItem) -> None:
        self._transition(item.schedule_id, ScheduleState.EXECUTING)

    def record_result(self, item: DueItem, outcome: FetchOutcome, discoveries: int) -> None:
        """Record a finished fetch and return the schedule to Idle.

        Every attempt except a cancelled one is appended to the effectiveness
        history; failures count as nothing found. Any outcome other than
        success marks the slot Failed until the next slot.
        """
        if outcome.error_kind != ErrorKind.CANCELLED:
            self.learner.record(
                item.schedule_id,
                quota_spent=outcome.units_charged,
                content_found=discoveries if outcome.ok else 0,
            )
        if outcome.ok:
            self._transition(item.schedule_id, ScheduleState.RECORDED)
            self._finish(item.schedule_id, "recorded", handled=item)
        else:
            self.fail(item, outcome.error_kind.value)

    def fail(self, item: DueItem, reason: str) -> None:
        """Mark an admitted item Failed and return it to Idle."""
        logger.info("Schedule %d failed: %s", item.schedule_id, reason)
        self._transition(item.schedule_id, ScheduleState.FAILED)
        self._finish(item.schedule_id, reason, handled=item)

    # Reporting

    def next_check_times(self, now: Optional[datetime] = None, limit: int = 10) -> List[UpcomingCheck]:
        """Upcoming slot occurrences of active schedules, soonest first."""
        now = now or self._clock()
        upcoming = []
        for schedule in self.schedules():
            if not schedule.active:
                continue
            local = now.astimezone(schedule.tzinfo)
            for slot in schedule.slots:
                days_ahead = (slot.weekday.index - local.weekday()) % 7
                at = datetime.combine(local.date() + timedelta(days=days_ahead), slot.at, tzinfo=schedule.tzinfo)
                if at < local:
                    at += timedelta(days=7)
                upcoming.append(UpcomingCheck(
                    schedule_id=schedule.id,
                    channel_id=schedule.channel_id,
                    platform=schedule.platform,
                    priority=schedule.priority,
                    slot=slot,
                    at=at.astimezone(now.tzinfo),
                ))
        upcoming.sort(key=lambda check: (check.at, -check.priority, check.schedule_id))
        return upcoming[:limit]

    def status_snapshot(self) -> List[ScheduleStatus]:
        with self._lock:
            snapshot = []
            for schedule in self._schedules.values():
                runtime = self._runtime[schedule.id]
                snapshot.append(ScheduleStatus(
                    schedule_id=schedule.id,
                    channel_id=schedule.channel_id,
                    platform=schedule.platform,
                    priority=schedule.priority,
                    active=schedule.active,
                    state=runtime.state,
                    last_outcome=runtime.last_outcome,
                    last_run_at=runtime.last_run_at,
                    effectiveness=self.learner.effectiveness(schedule.id),
                    low_value=self.learner.is_low_value(schedule.id),
                ))
            return snapshot

    # Internals

    def _transition(self, schedule_id: int, requested: ScheduleState) -> None:
        with self._lock:
            runtime = self._runtime.get(schedule_id)
            if runtime is None:
                raise ScheduleStateError(
                    f"Unknown schedule {schedule_id}", schedule_id, "unknown", requested.value
                )
            current = runtime.state
            if requested not in ALLOWED_TRANSITIONS[current]:
                raise ScheduleStateError(
                    f"Schedule {schedule_id} cannot move from {current.value} to {requested.value}",
                    schedule_id, current.value, requested.value,
                )
            runtime.state = requested
        if self._event_sink is not None:
            self._event_sink(ScheduleStatusChanged(
                schedule_id=schedule_id,
                previous=current.value,
                current=requested.value,
                at=self._clock(),
            ))

    def _finish(self, schedule_id: int, outcome: str, handled: Optional[DueItem] = None) -> None:
        with self._lock:
            runtime = self._runtime[schedule_id]
            if handled is not None:
                runtime.handled.add((handled.occurrence, handled.slot))
                runtime.last_run_at = self._clock()
            runtime.pending = None
            runtime.last_outcome = outcome
            self._transition(schedule_id, ScheduleState.IDLE)
            if schedule_id not in self._schedules:
                del self._runtime[schedule_id]
