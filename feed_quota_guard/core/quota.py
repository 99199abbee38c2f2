"""
Daily quota ledger and admission control.

Tracks weighted cost units spent against the upstream daily budget.

Admission Order (inside one critical section):
1. Lockout - a definitive upstream exhaustion signal blocks everything
2. Hard limit - used + reserved + units may never exceed the daily limit
3. Essential reserve - the last slice of the budget is kept for
   high-priority operations
"""

import itertools
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from enum import Enum
from typing import Dict, Iterable, Optional
from zoneinfo import ZoneInfo

from .clock import Clock, utc_now
from .errors import ReservationError
from ..storage.models import OperationUsage, QuotaSnapshot
from ..storage.repository import StateRepository

logger = logging.getLogger(__name__)

DEFAULT_DAILY_LIMIT = 10000

# YouTube Data API v3 unit costs
DEFAULT_OPERATION_COSTS: Dict[str, int] = {
    "search": 100,
    "videos": 1,
    "channels": 1,
    "playlistItems": 1,
    "playlists": 1,
}


class OperationPriority(Enum):
    """How essential an operation is when the budget runs low."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


DEFAULT_OPERATION_PRIORITIES: Dict[str, OperationPriority] = {
    "videos": OperationPriority.HIGH,
    "playlistItems": OperationPriority.HIGH,
    "playlists": OperationPriority.HIGH,
    "channels": OperationPriority.MEDIUM,
    "search": OperationPriority.LOW,
}


class DenialReason(Enum):
    """Why a reservation was not granted."""
    LOCKED_OUT = "locked_out"
    INSUFFICIENT_QUOTA = "insufficient_quota"
    ESSENTIAL_RESERVE = "essential_reserve"


@dataclass(frozen=True)
class QuotaThresholds:
    """Utilization percentages used for status labels."""
    moderate: float = 50.0
    high: float = 75.0
    critical: float = 90.0

    def __post_init__(self):
        """Validate thresholds are ordered percentages."""
        if not 0 <= self.moderate <= self.high <= self.critical <= 100:
            raise ValueError("thresholds must satisfy 0 <= moderate <= high <= critical <= 100")


@dataclass(frozen=True)
class Reservation:
    """Units held for one in-flight operation until commit or release."""
    id: int
    operation: str
    units: int
    window_start: datetime


@dataclass(frozen=True)
class ReservationResult:
    """Outcome of an admission request."""
    granted: bool
    remaining: int
    reservation: Optional[Reservation] = None
    reason: Optional[DenialReason] = None


@dataclass(frozen=True)
class QuotaEstimate:
    """Projected cost of a set of operations against the remaining budget."""
    estimated_cost: int
    is_safe: bool
    remaining: int


@dataclass(frozen=True)
class QuotaStats:
    """Point-in-time ledger statistics for the dashboard collaborator."""
    used: int
    reserved: int
    limit: int
    remaining: int
    percentage: float
    status: str
    operations: Dict[str, OperationUsage]
    window_start: datetime
    next_reset: datetime
    locked_until: Optional[datetime]


class QuotaLedger:
    """Thread-safe ledger of daily cost-unit usage.

    Every read-modify-write of the counters happens under a single lock, so
    concurrent reservations can never push ``used + reserved`` past the
    daily limit. The daily window starts at local midnight in
    ``window_timezone``.
    """

    def __init__(
        self,
        daily_limit: int = DEFAULT_DAILY_LIMIT,
        operation_costs: Optional[Dict[str, int]] = None,
        operation_priorities: Optional[Dict[str, OperationPriority]] = None,
        essential_reserve_percent: float = 5.0,
        thresholds: Optional[QuotaThresholds] = None,
        window_timezone: str = "America/Los_Angeles",
        clock: Clock = utc_now,
        repository: Optional[StateRepository] = None,
    ):
        """Initialize the ledger, restoring persisted state for the current window.

        Args:
            daily_limit: Daily budget in cost units
            operation_costs: Cost per operation (unknown operations cost 1)
            operation_priorities: Priority per operation (unknown operations are LOW)
            essential_reserve_percent: Share of the budget only HIGH operations may use
            thresholds: Utilization thresholds for status labels
            window_timezone: Timezone whose midnight starts a new window
            clock: Source of the current aware UTC time
            repository: Optional persistence for counters and lockout

        Raises:
            ValueError: If limits or percentages are out of range
        """
        if daily_limit <= 0:
            raise ValueError("daily_limit must be > 0")
        if not 0 <= essential_reserve_percent < 100:
            raise ValueError("essential_reserve_percent must be between 0 and 100")

        self.daily_limit = daily_limit
        self.operation_costs = dict(DEFAULT_OPERATION_COSTS if operation_costs is None else operation_costs)
        self.operation_priorities = dict(
            DEFAULT_OPERATION_PRIORITIES if operation_priorities is None else operation_priorities
        )
        self.essential_reserve = int(daily_limit * essential_reserve_percent / 100)
        self.thresholds = thresholds or QuotaThresholds()
        self.window_tz = ZoneInfo(window_timezone)
        self._clock = clock
        self._repository = repository

        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._outstanding: Dict[int, Reservation] = {}
        self._reserved = 0
        self._used = 0
        self._operations: Dict[str, OperationUsage] = {}
        self._locked_until: Optional[datetime] = None
        self._window_start = self.window_start_for(self._clock())

        if repository is not None:
            self._restore(repository.load_quota_snapshot())

    # Window arithmetic

    def window_start_for(self, now: datetime) -> datetime:
        """Start of the daily window containing ``now``."""
        local = now.astimezone(self.window_tz)
        return datetime.combine(local.date(), time(0), tzinfo=self.window_tz)

    def next_window_start(self, now: datetime) -> datetime:
        """Start of the daily window following the one containing ``now``."""
        local = now.astimezone(self.window_tz)
        return datetime.combine(local.date() + timedelta(days=1), time(0), tzinfo=self.window_tz)

    # Lookups

    def cost_of(self, operation: str) -> int:
        return self.operation_costs.get(operation, 1)

    def priority_of(self, operation: str) -> OperationPriority:
        return self.operation_priorities.get(operation, OperationPriority.LOW)

    # Admission

    def try_reserve(self, operation: str, units: Optional[int] = None) -> ReservationResult:
        """Atomically check the budget and hold units for an operation.

        Args:
            operation: Upstream operation name
            units: Cost in units; defaults to the cost table entry

        Returns:
            ReservationResult with the reservation when granted, and the
            remaining uncommitted budget either way

        Raises:
            ValueError: If units is negative
        """
        if units is None:
            units = self.cost_of(operation)
        if units < 0:
            raise ValueError("units cannot be negative")

        with self._lock:
            now = self._clock()
            self._roll_window(now)
            remaining = self._remaining()

            if self._is_locked(now):
                return ReservationResult(False, remaining, reason=DenialReason.LOCKED_OUT)

            committed_after = self._used + self._reserved + units
            if committed_after > self.daily_limit:
                logger.info(
                    "Quota denied for %s: %d units requested, %d remaining",
                    operation, units, remaining,
                )
                return ReservationResult(False, remaining, reason=DenialReason.INSUFFICIENT_QUOTA)

            if (self.priority_of(operation) != OperationPriority.HIGH
                    and committed_after > self.daily_limit - self.essential_reserve):
                logger.info(
                    "Quota denied for %s: %d remaining units are reserved for essential operations",
                    operation, remaining,
                )
                return ReservationResult(False, remaining, reason=DenialReason.ESSENTIAL_RESERVE)

            reservation = Reservation(
                id=next(self._ids),
                operation=operation,
                units=units,
                window_start=self._window_start,
            )
            self._outstanding[reservation.id] = reservation
            self._reserved += units
            return ReservationResult(True, self._remaining(), reservation=reservation)

    def commit(self, reservation: Reservation) -> None:
        """Keep the charge of a completed operation.

        A reservation taken in an earlier window is dropped without charge,
        since the upstream budget has reset as well.

        Raises:
            ReservationError: If the reservation is not outstanding
        """
        with self._lock:
            self._take(reservation)
            now = self._clock()
            self._roll_window(now)
            if reservation.window_start != self._window_start:
                logger.info(
                    "Dropping charge of reservation %d from a previous window", reservation.id
                )
                return

            self._used += reservation.units
            usage = self._operations.get(reservation.operation, OperationUsage())
            self._operations[reservation.operation] = OperationUsage(
                count=usage.count + 1,
                units=usage.units + reservation.units,
            )
            self._persist()

    def release(self, reservation: Reservation) -> None:
        """Return the units of a failed or cancelled operation.

        Raises:
            ReservationError: If the reservation is not outstanding
        """
        with self._lock:
            self._take(reservation)

    def lock(self) -> datetime:
        """Enter lockout after a definitive upstream exhaustion signal.

        The lockout lasts until the next daily window boundary.

        Returns:
            The time the lockout ends
        """
        with self._lock:
            now = self._clock()
            self._roll_window(now)
            self._locked_until = self.next_window_start(now)
            logger.warning("Quota locked out until %s", self._locked_until.isoformat())
            self._persist()
            return self._locked_until

    def reset(self) -> None:
        """Zero the counters and clear any lockout.

        In-flight reservations stay outstanding so they can still be
        committed or released.
        """
        with self._lock:
            self._used = 0
            self._operations = {}
            self._locked_until = None
            self._window_start = self.window_start_for(self._clock())
            logger.info("Quota usage reset for window starting %s", self._window_start.isoformat())
            self._persist()

    # Reporting

    def is_locked(self) -> bool:
        with self._lock:
            now = self._clock()
            self._roll_window(now)
            return self._is_locked(now)

    def remaining(self) -> int:
        with self._lock:
            self._roll_window(self._clock())
            return self._remaining()

    def get_stats(self) -> QuotaStats:
        """Return used, limit, percentage and per-operation breakdown."""
        with self._lock:
            now = self._clock()
            self._roll_window(now)
            percentage = (self._used / self.daily_limit) * 100
            return QuotaStats(
                used=self._used,
                reserved=self._reserved,
                limit=self.daily_limit,
                remaining=self._remaining(),
                percentage=percentage,
                status="locked" if self._is_locked(now) else self._status(percentage),
                operations=dict(self._operations),
                window_start=self._window_start,
                next_reset=self.next_window_start(now),
                locked_until=self._locked_until if self._is_locked(now) else None,
            )

    def estimate(self, operations: Iterable[str]) -> QuotaEstimate:
        """Estimate the cost of a set of operations and whether it fits."""
        total_cost = sum(self.cost_of(op) for op in operations)
        remaining = self.remaining()
        return QuotaEstimate(
            estimated_cost=total_cost,
            is_safe=total_cost <= remaining,
            remaining=remaining,
        )

    # Internals; callers hold self._lock

    def _remaining(self) -> int:
        return max(0, self.daily_limit - self._used - self._reserved)

    def _is_locked(self, now: datetime) -> bool:
        return self._locked_until is not None and now < self._locked_until

    def _status(self, percentage: float) -> str:
        if percentage >= self.thresholds.critical:
            return "critical"
        elif percentage >= self.thresholds.high:
            return "high"
        elif percentage >= self.thresholds.moderate:
            return "moderate"
        return "normal"

    def _take(self, reservation: Reservation) -> None:
        if self._outstanding.pop(reservation.id, None) is None:
            raise ReservationError(
                f"Reservation {reservation.id} is not outstanding", reservation.id
            )
        self._reserved -= reservation.units

    def _roll_window(self, now: datetime) -> None:
        window_start = self.window_start_for(now)
        if window_start == self._window_start:
            return
        logger.info("Quota window rolled over to %s", window_start.isoformat())
        self._window_start = window_start
        self._used = 0
        self._operations = {}
        if self._locked_until is not None and now >= self._locked_until:
            self._locked_until = None
        self._persist()

    def _persist(self) -> None:
        if self._repository is None:
            return
        self._repository.save_quota_snapshot(QuotaSnapshot(
            window_start=self._window_start,
            used=self._used,
            locked_until=self._locked_until,
            operations=dict(self._operations),
        ))

    def _restore(self, snapshot: Optional[QuotaSnapshot]) -> None:
        if snapshot is None:
            return
        now = self._clock()
        if snapshot.locked_until is not None and now < snapshot.locked_until:
            self._locked_until = snapshot.locked_until
        if self.window_start_for(snapshot.window_start) == self._window_start:
            self._used = snapshot.used
            self._operations = dict(snapshot.operations)
            logger.info("Restored quota usage %d/%d", self._used, self.daily_limit)
