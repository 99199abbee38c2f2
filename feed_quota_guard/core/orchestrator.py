"""
Bounded-concurrency orchestration.

Each tick collects due schedules, admits them against the cache and the
quota ledger, runs admitted fetches on a fixed-size thread pool, and then
spends any leftover worker capacity on predicted prefetches.

Cancellation:
Threads cannot be killed, so every task owns a cancel event. A per-task
timer sets it when the task timeout expires and shutdown sets all of
them. The fetch executor checks the event between attempts, during
backoff and before committing, so a cancelled task never keeps a charge.
"""

import concurrent.futures
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from .cache import CacheStore
from .clock import Clock, utc_now
from .errors import ReservationError, ScheduleStateError, UnknownPlatformError
from .events import CacheServed, ContentDiscovered, EventLog, EventSink
from .fetch import ErrorKind, FetchExecutor, FetchOutcome
from .learning import EffectivenessLearner
from .prefetch import PrefetchPrediction, PrefetchPredictor
from .quota import (
    DEFAULT_OPERATION_PRIORITIES,
    OperationPriority,
    QuotaLedger,
    Reservation,
    ReservationResult,
)
from .scheduler import Admission, DueItem, Scheduler
from ..platforms.base import ContentItem, FetchTarget
from ..platforms.registry import PlatformRegistry, build_registry
from ..storage.repository import StateRepository, initialize_schema

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 5
DEFAULT_TASK_TIMEOUT = 15.0
DEFAULT_TICK_INTERVAL = 60.0
# Announced item ids remembered per target
MAX_SEEN_IDS = 500


@dataclass
class TickReport:
    """Summary of one orchestrator tick."""
    started_at: datetime
    due: int = 0
    dispatched: int = 0
    cached: int = 0
    skipped_no_quota: int = 0
    recorded: int = 0
    failed: int = 0
    cancelled: int = 0
    prefetched: int = 0
    discovered: int = 0
    units_charged: int = 0
    outcomes: List[FetchOutcome] = field(default_factory=list)


class OrchestratorContext:
    """Owns every shared component for the lifetime of the process.

    Built once with ``open`` and released with ``close``; components are
    injected into each other instead of living in module globals.
    """

    def __init__(
        self,
        ledger: QuotaLedger,
        cache: CacheStore,
        registry: PlatformRegistry,
        executor: FetchExecutor,
        scheduler: Scheduler,
        predictor: PrefetchPredictor,
        events: EventSink,
        repository: Optional[StateRepository] = None,
        clock: Clock = utc_now,
    ):
        self.ledger = ledger
        self.cache = cache
        self.registry = registry
        self.executor = executor
        self.scheduler = scheduler
        self.predictor = predictor
        self.events = events
        self.repository = repository
        self.clock = clock

    @property
    def learner(self) -> EffectivenessLearner:
        return self.scheduler.learner

    @classmethod
    def open(cls, config, clock: Clock = utc_now, http_client=None) -> "OrchestratorContext":
        """Build the components described by an ``AppConfig``.

        Schedules come from the configuration file when it lists any,
        otherwise from the database written by the admin collaborator.

        Args:
            config: Validated AppConfig
            clock: Source of the current aware UTC time
            http_client: Optional shared httpx client for every adapter
        """
        initialize_schema(config.storage.db_path)
        repository = StateRepository(config.storage.db_path)

        registry = build_registry(
            config.platforms,
            timeout=config.fetch.request_timeout,
            client=http_client,
        )
        operation_costs = registry.operation_costs()
        operation_costs.update(config.quota.operation_costs)
        ledger = QuotaLedger(
            daily_limit=config.quota.daily_limit,
            operation_costs=operation_costs,
            operation_priorities=_operation_priorities(config, registry),
            essential_reserve_percent=config.quota.essential_reserve_percent,
            thresholds=config.quota.thresholds,
            window_timezone=config.quota.window_timezone,
            clock=clock,
            repository=repository,
        )
        cache = CacheStore(
            default_ttl=config.cache.default_ttl,
            ttl_by_type=config.cache.ttl_by_type,
            clock=clock,
            repository=repository,
        )
        executor = FetchExecutor(
            registry,
            ledger,
            max_retries=config.fetch.max_retries,
            base_delay=config.fetch.base_delay,
            max_delay=config.fetch.max_delay,
            request_timeout=config.fetch.request_timeout,
            clock=clock,
        )
        learner = EffectivenessLearner(
            repository=repository,
            window_records=config.learning.window_records,
            retention_days=config.learning.retention_days,
            max_records=config.learning.max_records,
            clock=clock,
        )
        events = EventLog()
        schedules = list(config.schedules) or repository.load_schedules()
        scheduler = Scheduler(
            schedules,
            learner=learner,
            tolerance_minutes=config.scheduler.tolerance_minutes,
            clock=clock,
            event_sink=events,
        )
        predictor = PrefetchPredictor(
            enabled=config.prefetch.enabled,
            analysis_window_minutes=config.prefetch.analysis_window_minutes,
            pattern_period_hours=config.prefetch.pattern_period_hours,
            confidence_threshold=config.prefetch.confidence_threshold,
            max_items=config.prefetch.max_items,
            clock=clock,
        )
        logger.info(
            "Opened context with %d schedules on platforms %s",
            len(schedules), ", ".join(registry.platforms()) or "(none)",
        )
        return cls(
            ledger=ledger,
            cache=cache,
            registry=registry,
            executor=executor,
            scheduler=scheduler,
            predictor=predictor,
            events=events,
            repository=repository,
            clock=clock,
        )

    def close(self) -> None:
        self.registry.close()

    def __enter__(self) -> "OrchestratorContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def _operation_priorities(config, registry: PlatformRegistry) -> Dict[str, OperationPriority]:
    priorities = dict(DEFAULT_OPERATION_PRIORITIES)
    for operation, value in registry.operation_priorities().items():
        priorities[operation] = OperationPriority(value)
    priorities.update(config.quota.operation_priorities)
    return priorities


class ConcurrencyOrchestrator:
    """Runs ticks of due work on a bounded thread pool."""

    def __init__(
        self,
        context: OrchestratorContext,
        max_workers: int = DEFAULT_MAX_WORKERS,
        task_timeout: float = DEFAULT_TASK_TIMEOUT,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
    ):
        """Initialize the orchestrator.

        Args:
            context: Shared components
            max_workers: Upper bound on concurrently running fetches
            task_timeout: Seconds after which a single task is cancelled
            tick_interval: Seconds between tick starts in ``run_forever``
        """
        if max_workers <= 0:
            raise ValueError("max_workers must be > 0")
        self.context = context
        self.max_workers = max_workers
        self.task_timeout = task_timeout
        self.tick_interval = tick_interval
        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="feed-fetch",
        )
        self._cancel_events: Set[threading.Event] = set()
        self._cancel_lock = threading.Lock()
        self._known_ids: Dict[Tuple[str, str, str], "OrderedDict[str, None]"] = {}
        self._known_lock = threading.Lock()
        self._shutting_down = threading.Event()

    # Ticks

    def tick(self, now: Optional[datetime] = None) -> TickReport:
        """Run one round of due work and wait for it to finish.

        Returns:
            TickReport summarizing what happened
        """
        ctx = self.context
        now = now or ctx.clock()
        report = TickReport(started_at=now)
        if self._shutting_down.is_set():
            return report

        ctx.cache.cleanup_expired()
        ctx.learner.prune(now)

        due = ctx.scheduler.collect_due(now)
        report.due = len(due)
        plan = ctx.scheduler.admit(due, self._is_cached, self._try_reserve)
        report.cached = len(plan.cached)
        report.skipped_no_quota = len(plan.skipped_no_quota)

        for item in plan.cached:
            self._serve_from_cache(item, now)

        futures = {}
        for admission in plan.admitted:
            future = self._submit(self._run_scheduled, admission)
            futures[future] = admission
        report.dispatched = len(futures)

        # Prefetch only runs on workers regular work left idle, and never
        # while a regular schedule waits for quota
        leftover = self.max_workers - len(futures)
        prefetch_futures = {}
        if leftover > 0 and plan.denial is None and not ctx.ledger.is_locked():
            in_flight = {self._target(a.item).cache_key for a in plan.admitted}
            for prediction in ctx.predictor.take(now, leftover):
                target = FetchTarget(prediction.platform, prediction.content_id, prediction.content_type)
                if (target.platform not in ctx.registry
                        or target.cache_key in in_flight
                        or ctx.cache.is_fresh(*target.cache_key)):
                    continue
                operation = ctx.registry.get(target.platform).operation_for(target.content_type)
                result = ctx.ledger.try_reserve(operation)
                if not result.granted:
                    break
                future = self._submit(self._run_prefetch, prediction, target, result.reservation)
                prefetch_futures[future] = (prediction, result.reservation)

        # Futures cancelled by shutdown never notify as_completed waiters,
        # so results are collected one by one
        for future, admission in futures.items():
            self._collect_scheduled(future, admission, report)
        for future, entry in prefetch_futures.items():
            self._collect_prefetch(future, entry, report)

        logger.info(
            "Tick: %d due, %d dispatched, %d cached, %d skipped for quota, %d prefetched, %d new items",
            report.due, report.dispatched, report.cached, report.skipped_no_quota,
            report.prefetched, report.discovered,
        )
        return report

    def run_forever(self, stop_event: threading.Event) -> None:
        """Tick at a fixed interval until ``stop_event`` is set, then shut down."""
        logger.info("Orchestrator started, ticking every %.0fs", self.tick_interval)
        try:
            while not stop_event.is_set():
                started = self.context.clock()
                try:
                    self.tick(started)
                except Exception:
                    logger.exception("Tick failed")
                elapsed = (self.context.clock() - started).total_seconds()
                stop_event.wait(max(0.0, self.tick_interval - elapsed))
        finally:
            self.shutdown()

    def shutdown(self) -> None:
        """Cancel in-flight tasks and stop the pool.

        Queued tasks never start; running ones release their reservations
        at the next cancellation check.
        """
        if self._shutting_down.is_set():
            return
        self._shutting_down.set()
        with self._cancel_lock:
            for event in self._cancel_events:
                event.set()
        self._pool.shutdown(wait=True, cancel_futures=True)
        logger.info("Orchestrator shut down")

    # Admission callbacks

    def _is_cached(self, item: DueItem) -> bool:
        return self.context.cache.is_fresh(*self._target(item).cache_key)

    def _try_reserve(self, item: DueItem) -> ReservationResult:
        return self.context.ledger.try_reserve(self._operation(item))

    def _target(self, item: DueItem) -> FetchTarget:
        schedule = item.schedule
        return FetchTarget(schedule.platform, schedule.channel_id, schedule.content_type)

    def _operation(self, item: DueItem) -> str:
        schedule = item.schedule
        if schedule.operation:
            return schedule.operation
        if schedule.platform in self.context.registry:
            return self.context.registry.get(schedule.platform).operation_for(schedule.content_type)
        return "unknown"

    # Tasks

    def _submit(self, fn, *args) -> concurrent.futures.Future:
        cancel_event = threading.Event()
        with self._cancel_lock:
            self._cancel_events.add(cancel_event)
        return self._pool.submit(self._guarded, cancel_event, fn, *args)

    def _guarded(self, cancel_event: threading.Event, fn, *args):
        timer = threading.Timer(self.task_timeout, cancel_event.set)
        timer.daemon = True
        timer.start()
        try:
            return fn(cancel_event, *args)
        finally:
            timer.cancel()
            with self._cancel_lock:
                self._cancel_events.discard(cancel_event)

    def _run_scheduled(self, cancel_event: threading.Event, admission: Admission) -> Tuple[FetchOutcome, int]:
        ctx = self.context
        item = admission.item
        ctx.scheduler.mark_executing(item)
        target = self._target(item)
        ctx.predictor.record_access(*target.cache_key)
        outcome = ctx.executor.execute(
            target,
            admission.reservation.operation,
            reservation=admission.reservation,
            cancel_event=cancel_event,
        )
        discovered = self._store(outcome, item.schedule_id, "scheduled")
        ctx.scheduler.record_result(item, outcome, discovered)
        return outcome, discovered

    def _run_prefetch(
        self,
        cancel_event: threading.Event,
        prediction: PrefetchPrediction,
        target: FetchTarget,
        reservation: Reservation,
    ) -> Tuple[FetchOutcome, int]:
        ctx = self.context
        outcome = ctx.executor.execute(
            target, reservation.operation, reservation=reservation, cancel_event=cancel_event
        )
        schedule_id = self._schedule_for(target)
        discovered = self._store(outcome, schedule_id, "prefetch")
        if outcome.ok and schedule_id is not None:
            ctx.learner.record(schedule_id, outcome.units_charged, discovered, result_type="prefetch")
        return outcome, discovered

    def _store(self, outcome: FetchOutcome, schedule_id: Optional[int], result_type: str) -> int:
        """Cache a successful outcome and emit events for items not seen before.

        Returns:
            Number of newly discovered items
        """
        if not outcome.ok:
            return 0
        ctx = self.context
        target = outcome.target
        ctx.cache.set(
            target.platform,
            target.content_type,
            target.channel_id,
            [item.to_dict() for item in outcome.items],
        )
        new_items = self._new_items(target, outcome.items)
        now = ctx.clock()
        for item in new_items:
            ctx.events(ContentDiscovered(
                schedule_id=schedule_id,
                item=item,
                discovered_at=now,
                result_type=result_type,
            ))
        return len(new_items)

    def _new_items(self, target: FetchTarget, items) -> List[ContentItem]:
        ctx = self.context
        with self._known_lock:
            known = self._known_ids.get(target.cache_key)
            if known is None:
                known = OrderedDict()
                if ctx.repository is not None:
                    for item_id in ctx.repository.load_seen_item_ids(*target.cache_key):
                        known[item_id] = None
                self._known_ids[target.cache_key] = known
            new_items = []
            for item in items:
                if item.id not in known:
                    known[item.id] = None
                    new_items.append(item)
            while len(known) > MAX_SEEN_IDS:
                known.popitem(last=False)
            if new_items and ctx.repository is not None:
                ctx.repository.add_seen_item_ids(
                    *target.cache_key,
                    [item.id for item in new_items],
                    seen_at=ctx.clock(),
                    keep=MAX_SEEN_IDS,
                )
        return new_items

    def _serve_from_cache(self, item: DueItem, now: datetime) -> None:
        ctx = self.context
        target = self._target(item)
        entry = ctx.cache.get(*target.cache_key)
        ctx.predictor.record_access(target.platform, target.content_type, target.channel_id, now)
        if entry is None:
            return
        ctx.events(CacheServed(
            schedule_id=item.schedule_id,
            platform=entry.platform,
            content_type=entry.content_type,
            key=entry.key,
            served_at=now,
            expires_at=entry.expires_at,
        ))

    def _schedule_for(self, target: FetchTarget) -> Optional[int]:
        for schedule in self.context.scheduler.schedules():
            if (schedule.platform, schedule.content_type, schedule.channel_id) == target.cache_key:
                return schedule.id
        return None

    # Result collection

    def _collect_scheduled(self, future: concurrent.futures.Future, admission: Admission, report: TickReport) -> None:
        item = admission.item
        try:
            outcome, discovered = future.result()
        except concurrent.futures.CancelledError:
            # Never started, so the reservation is still outstanding
            self._release_quietly(admission.reservation)
            self._fail_quietly(item, ErrorKind.CANCELLED.value)
            report.cancelled += 1
            return
        except UnknownPlatformError as e:
            logger.warning("Schedule %d skipped: %s", item.schedule_id, e)
            self._release_quietly(admission.reservation)
            self._fail_quietly(item, "unknown_platform")
            report.failed += 1
            return
        except Exception:
            logger.exception("Task for schedule %d crashed", item.schedule_id)
            self._release_quietly(admission.reservation)
            self._fail_quietly(item, "crashed")
            report.failed += 1
            return

        report.outcomes.append(outcome)
        report.units_charged += outcome.units_charged
        report.discovered += discovered
        if outcome.ok:
            report.recorded += 1
        elif outcome.error_kind == ErrorKind.CANCELLED:
            report.cancelled += 1
        else:
            report.failed += 1

    def _collect_prefetch(self, future: concurrent.futures.Future, entry, report: TickReport) -> None:
        prediction, reservation = entry
        try:
            outcome, discovered = future.result()
        except concurrent.futures.CancelledError:
            self._release_quietly(reservation)
            return
        except Exception:
            logger.exception("Prefetch of %s crashed", prediction.key)
            self._release_quietly(reservation)
            return
        report.outcomes.append(outcome)
        report.units_charged += outcome.units_charged
        report.discovered += discovered
        if outcome.ok:
            report.prefetched += 1

    def _release_quietly(self, reservation: Reservation) -> None:
        try:
            self.context.ledger.release(reservation)
        except ReservationError:
            # Already finalized by the executor
            pass

    def _fail_quietly(self, item: DueItem, reason: str) -> None:
        try:
            self.context.scheduler.fail(item, reason)
        except ScheduleStateError:
            # The task already moved the schedule on before failing
            logger.debug("Schedule %d already left the running states", item.schedule_id)
