"""
Resilient fetch executor.

Runs one upstream operation through its platform adapter with bounded
retries, classifies every failure, and finalizes the caller's quota
reservation exactly once.

Error Classification:
- RETRYABLE: timeouts, transport errors, 5xx, 429 and platform throttles
- FATAL: any other 4xx (bad credentials, missing channel), malformed bodies
  and requests the adapter cannot build
- QUOTA_EXCEEDED: the platform's definitive daily-quota signal; the charge
  is kept and the ledger is locked out
- CANCELLED: the task's cancel event fired; the reservation is released
"""

import email.utils
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional, Tuple

import httpx

from .clock import Clock, utc_now
from .errors import DataValidationError
from .quota import QuotaLedger, Reservation
from ..platforms.base import ContentItem, FetchTarget, PlatformAdapter
from ..platforms.registry import PlatformRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 2
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 30.0
DEFAULT_REQUEST_TIMEOUT = 15.0


class ErrorKind(Enum):
    """Terminal classification of a fetch."""
    NONE = "none"
    RETRYABLE = "retryable"
    FATAL = "fatal"
    QUOTA_EXCEEDED = "quota_exceeded"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class FetchAttempt:
    """Timing and classification of a single attempt."""
    target: FetchTarget
    attempt: int
    error_kind: ErrorKind
    elapsed: float
    status_code: Optional[int] = None
    next_retry_in: Optional[float] = None
    message: str = ""


@dataclass(frozen=True)
class FetchOutcome:
    """Result of a fetch, including every attempt made."""
    target: FetchTarget
    operation: str
    items: Tuple[ContentItem, ...]
    error_kind: ErrorKind
    attempts: Tuple[FetchAttempt, ...]
    elapsed: float
    units_charged: int = 0
    discarded: int = 0
    exhausted: bool = False
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.error_kind == ErrorKind.NONE


def backoff_delay(
    attempt: int,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
) -> float:
    """Exponential delay before retry number ``attempt + 1``.

    Example:
        Attempts 0, 1, 2 wait 1s, 2s, 4s; the delay never exceeds ``max_delay``.
    """
    return min(max_delay, base_delay * (2 ** attempt))


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Parse a Retry-After header given in seconds or as an HTTP date.

    Returns:
        Delay in seconds (never negative), or None if absent or unparseable
    """
    if value is None or not value.strip():
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        retry_at = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    now = now or utc_now()
    return max(0.0, (retry_at - now).total_seconds())


def classify_response(
    response: httpx.Response,
    adapter: PlatformAdapter,
    now: Optional[datetime] = None,
) -> Tuple[ErrorKind, Optional[float]]:
    """Classify a response status.

    Returns:
        Tuple of (error kind, Retry-After delay for retryable responses)
    """
    status = response.status_code
    if 200 <= status < 300:
        return ErrorKind.NONE, None
    if adapter.is_quota_exhausted(response):
        return ErrorKind.QUOTA_EXCEEDED, None
    if status == 429 or status >= 500 or adapter.is_throttled(response):
        return ErrorKind.RETRYABLE, parse_retry_after(response.headers.get("Retry-After"), now)
    return ErrorKind.FATAL, None


class FetchExecutor:
    """Executes upstream operations with retry, backoff and classification.

    The executor never raises for expected upstream failures; it returns a
    ``FetchOutcome`` instead. When given a reservation it commits it on
    success or definitive quota exhaustion and releases it otherwise.
    """

    def __init__(
        self,
        registry: PlatformRegistry,
        ledger: QuotaLedger,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        clock: Clock = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        """Initialize the executor.

        Args:
            registry: Platform adapters
            ledger: Quota ledger that issued the reservations
            max_retries: Retries after the first attempt
            base_delay: Backoff base in seconds
            max_delay: Backoff cap in seconds
            request_timeout: Per-request timeout in seconds
            clock: Wall clock for HTTP-date Retry-After values
            monotonic: Clock used to time attempts
            sleep: Optional replacement for the interruptible backoff wait
        """
        if max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        self.registry = registry
        self.ledger = ledger
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.request_timeout = request_timeout
        self._clock = clock
        self._monotonic = monotonic
        self._sleep = sleep

    def execute(
        self,
        target: FetchTarget,
        operation: Optional[str] = None,
        reservation: Optional[Reservation] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> FetchOutcome:
        """Fetch new content for a target.

        Args:
            target: Platform, channel and content type to poll
            operation: Upstream operation; defaults to the adapter's choice
            reservation: Quota held for this fetch, finalized exactly once
            cancel_event: Set by the orchestrator to abandon the fetch

        Returns:
            FetchOutcome describing items found and the terminal error kind

        Raises:
            UnknownPlatformError: If no adapter serves the target's platform
        """
        adapter = self.registry.get(target.platform)
        operation = operation or adapter.operation_for(target.content_type)
        cancel_event = cancel_event or threading.Event()
        attempts = []
        started = self._monotonic()

        def finish(kind: ErrorKind, items=(), discarded=0, exhausted=False, message="") -> FetchOutcome:
            charged = 0
            if reservation is not None:
                if kind in (ErrorKind.NONE, ErrorKind.QUOTA_EXCEEDED):
                    self.ledger.commit(reservation)
                    charged = reservation.units
                else:
                    self.ledger.release(reservation)
            return FetchOutcome(
                target=target,
                operation=operation,
                items=tuple(items),
                error_kind=kind,
                attempts=tuple(attempts),
                elapsed=self._monotonic() - started,
                units_charged=charged,
                discarded=discarded,
                exhausted=exhausted,
                message=message,
            )

        max_attempts = self.max_retries + 1
        for attempt in range(max_attempts):
            if cancel_event.is_set():
                return finish(ErrorKind.CANCELLED, message="cancelled before attempt")

            attempt_started = self._monotonic()
            status_code = None
            retry_after = None
            items, discarded = [], 0
            try:
                response = adapter.fetch(target, operation, timeout=self.request_timeout)
            except httpx.TimeoutException as e:
                kind, message = ErrorKind.RETRYABLE, f"timeout: {e}"
            except httpx.TransportError as e:
                kind, message = ErrorKind.RETRYABLE, f"transport error: {e}"
            except ValueError as e:
                kind, message = ErrorKind.FATAL, f"invalid request: {e}"
            else:
                status_code = response.status_code
                kind, retry_after = classify_response(response, adapter, self._clock())
                message = f"HTTP {status_code}"
                if kind == ErrorKind.NONE:
                    try:
                        items, discarded = adapter.parse_items(response.json(), target)
                    except (ValueError, DataValidationError) as e:
                        kind, message = ErrorKind.FATAL, f"malformed response: {e}"

            elapsed = self._monotonic() - attempt_started
            will_retry = kind == ErrorKind.RETRYABLE and attempt < max_attempts - 1
            delay = None
            if will_retry:
                delay = retry_after if retry_after is not None else backoff_delay(
                    attempt, self.base_delay, self.max_delay
                )
            attempts.append(FetchAttempt(
                target=target,
                attempt=attempt,
                error_kind=kind,
                elapsed=elapsed,
                status_code=status_code,
                next_retry_in=delay,
                message=message,
            ))
            logger.debug(
                "%s %s %s attempt %d: %s in %.3fs",
                target.platform, operation, target.channel_id, attempt + 1, message, elapsed,
            )

            if kind == ErrorKind.NONE:
                if cancel_event.is_set():
                    return finish(ErrorKind.CANCELLED, message="cancelled before commit")
                if discarded:
                    logger.warning(
                        "Discarded %d malformed items from %s %s", discarded, target.platform, operation
                    )
                return finish(ErrorKind.NONE, items, discarded, message=message)

            if kind == ErrorKind.QUOTA_EXCEEDED:
                logger.error(
                    "Upstream quota exhausted on %s %s; locking out", target.platform, operation
                )
                result = finish(ErrorKind.QUOTA_EXCEEDED, message=message)
                self.ledger.lock()
                return result

            if kind == ErrorKind.FATAL:
                logger.warning(
                    "Fatal error fetching %s %s for %s: %s",
                    target.platform, operation, target.channel_id, message,
                )
                return finish(ErrorKind.FATAL, message=message)

            if not will_retry:
                break

            logger.info(
                "Retrying %s %s for %s in %.1fs (attempt %d/%d): %s",
                target.platform, operation, target.channel_id, delay,
                attempt + 2, max_attempts, message,
            )
            if self._wait(delay, cancel_event):
                return finish(ErrorKind.CANCELLED, message="cancelled during backoff")

        logger.warning(
            "Giving up on %s %s for %s after %d attempts",
            target.platform, operation, target.channel_id, len(attempts),
        )
        return finish(ErrorKind.RETRYABLE, exhausted=True, message=attempts[-1].message)

    def _wait(self, delay: float, cancel_event: threading.Event) -> bool:
        """Wait out a backoff delay. Returns True if cancelled meanwhile."""
        if self._sleep is not None:
            self._sleep(delay)
            return cancel_event.is_set()
        return cancel_event.wait(delay)
