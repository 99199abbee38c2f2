"""
Unit tests for the fetch executor.

Tests retry and backoff, failure classification, reservation finalization
and cancellation, using an httpx MockTransport instead of the network.
"""

import threading
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import httpx
import pytest

from feed_quota_guard.core.fetch import (
    ErrorKind,
    FetchExecutor,
    backoff_delay,
    parse_retry_after,
)
from feed_quota_guard.core.quota import QuotaLedger
from feed_quota_guard.platforms import FetchTarget, PlatformCredentials, PlatformRegistry
from feed_quota_guard.platforms.youtube import YouTubeAdapter

TARGET = FetchTarget("youtube", "UCchannel")

PLAYLIST_PAGE = {
    "items": [
        {"contentDetails": {"videoId": "v1"}, "snippet": {"title": "One"}},
        {"contentDetails": {"videoId": "v2"}, "snippet": {"title": "Two"}},
    ]
}


class FakeMonotonic:
    """Monotonic clock whose sleep just moves time forward."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedHandler:
    """MockTransport handler replaying a list of responses or exceptions."""

    def __init__(self, *steps):
        self.steps = list(steps)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        if isinstance(step, type) and issubclass(step, Exception):
            raise step("scripted failure", request=request)
        return step


def _executor(handler, clock, ledger=None, monotonic=None, **kwargs):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    registry = PlatformRegistry([YouTubeAdapter(PlatformCredentials(api_key="k"), client=client)])
    ledger = ledger or QuotaLedger(clock=clock)
    monotonic = monotonic or FakeMonotonic()
    executor = FetchExecutor(
        registry,
        ledger,
        clock=clock,
        monotonic=monotonic,
        sleep=monotonic.sleep,
        **kwargs,
    )
    return executor, ledger, monotonic


class TestSuccess:
    """Test the happy path."""

    def test_items_parsed_and_charge_committed(self, clock):
        """A 200 commits the reservation and returns normalized items."""
        handler = ScriptedHandler(httpx.Response(200, json=PLAYLIST_PAGE))
        executor, ledger, _ = _executor(handler, clock)
        reservation = ledger.try_reserve("playlistItems").reservation

        outcome = executor.execute(TARGET, reservation=reservation)

        assert outcome.ok
        assert outcome.operation == "playlistItems"
        assert [item.id for item in outcome.items] == ["v1", "v2"]
        assert outcome.units_charged == 1
        assert len(outcome.attempts) == 1
        assert ledger.get_stats().used == 1
        assert ledger.get_stats().reserved == 0

    def test_without_reservation(self, clock):
        """Fetching without a reservation charges nothing."""
        handler = ScriptedHandler(httpx.Response(200, json=PLAYLIST_PAGE))
        executor, ledger, _ = _executor(handler, clock)

        outcome = executor.execute(TARGET)

        assert outcome.ok
        assert outcome.units_charged == 0
        assert ledger.get_stats().used == 0

    def test_discarded_items_counted(self, clock):
        """Malformed items are skipped but the fetch still succeeds."""
        page = {"items": [{"contentDetails": {"videoId": "ok"}}, {"snippet": {}}]}
        executor, _, _ = _executor(ScriptedHandler(httpx.Response(200, json=page)), clock)

        outcome = executor.execute(TARGET)

        assert outcome.ok
        assert len(outcome.items) == 1
        assert outcome.discarded == 1


class TestRetry:
    """Test retryable failures and backoff."""

    def test_retry_after_is_honored(self, clock):
        """Two 429s with Retry-After then a success waits as instructed."""
        throttled = httpx.Response(429, headers={"Retry-After": "2"})
        handler = ScriptedHandler(throttled, throttled, httpx.Response(200, json=PLAYLIST_PAGE))
        executor, ledger, monotonic = _executor(handler, clock)
        reservation = ledger.try_reserve("playlistItems").reservation

        outcome = executor.execute(TARGET, reservation=reservation)

        assert outcome.ok
        assert monotonic.sleeps == [2.0, 2.0]
        assert outcome.elapsed >= 4.0
        assert [a.error_kind for a in outcome.attempts] == [
            ErrorKind.RETRYABLE, ErrorKind.RETRYABLE, ErrorKind.NONE,
        ]
        assert outcome.attempts[0].next_retry_in == 2.0
        assert ledger.get_stats().used == 1

    def test_exhausted_retries_release(self, clock):
        """Persistent 5xx gives up after max_retries and returns the units."""
        handler = ScriptedHandler(httpx.Response(503))
        executor, ledger, monotonic = _executor(handler, clock)
        reservation = ledger.try_reserve("playlistItems").reservation

        outcome = executor.execute(TARGET, reservation=reservation)

        assert outcome.error_kind == ErrorKind.RETRYABLE
        assert outcome.exhausted
        assert len(handler.requests) == 3
        assert monotonic.sleeps == [1.0, 2.0]
        assert outcome.units_charged == 0
        assert ledger.get_stats().used == 0
        assert ledger.remaining() == 10000

    def test_timeout_is_retryable(self, clock):
        """A timeout followed by a success recovers."""
        handler = ScriptedHandler(httpx.ReadTimeout, httpx.Response(200, json=PLAYLIST_PAGE))
        executor, _, monotonic = _executor(handler, clock)

        outcome = executor.execute(TARGET)

        assert outcome.ok
        assert outcome.attempts[0].message.startswith("timeout")
        assert monotonic.sleeps == [1.0]

    def test_connection_error_is_retryable(self, clock):
        """Transport errors exhaust like any retryable failure."""
        executor, _, _ = _executor(ScriptedHandler(httpx.ConnectError), clock, max_retries=0)

        outcome = executor.execute(TARGET)

        assert outcome.error_kind == ErrorKind.RETRYABLE
        assert outcome.exhausted
        assert len(outcome.attempts) == 1

    def test_backoff_delay(self):
        """Delays double per attempt and are capped."""
        assert backoff_delay(0) == 1.0
        assert backoff_delay(1) == 2.0
        assert backoff_delay(2) == 4.0
        assert backoff_delay(10) == 30.0
        assert backoff_delay(3, base_delay=0.5, max_delay=3.0) == 3.0

    def test_negative_retries_rejected(self, clock):
        """max_retries must not be negative."""
        with pytest.raises(ValueError):
            _executor(ScriptedHandler(httpx.Response(200)), clock, max_retries=-1)


class TestClassification:
    """Test fatal and quota-exhaustion outcomes."""

    def test_not_found_is_fatal(self, clock):
        """A 404 fails immediately and releases the charge."""
        handler = ScriptedHandler(httpx.Response(404))
        executor, ledger, monotonic = _executor(handler, clock)
        reservation = ledger.try_reserve("playlistItems").reservation

        outcome = executor.execute(TARGET, reservation=reservation)

        assert outcome.error_kind == ErrorKind.FATAL
        assert len(handler.requests) == 1
        assert monotonic.sleeps == []
        assert ledger.get_stats().used == 0

    def test_quota_exceeded_commits_and_locks(self, clock):
        """A daily-quota 403 keeps the charge and locks the ledger."""
        body = {"error": {"code": 403, "errors": [{"reason": "quotaExceeded"}]}}
        handler = ScriptedHandler(httpx.Response(403, json=body))
        executor, ledger, _ = _executor(handler, clock)
        reservation = ledger.try_reserve("playlistItems").reservation

        outcome = executor.execute(TARGET, reservation=reservation)

        assert outcome.error_kind == ErrorKind.QUOTA_EXCEEDED
        assert outcome.units_charged == 1
        assert ledger.get_stats().used == 1
        assert ledger.is_locked()
        assert not ledger.try_reserve("videos").granted

    def test_other_forbidden_is_fatal(self, clock):
        """A 403 without a quota reason does not lock the ledger."""
        body = {"error": {"code": 403, "errors": [{"reason": "forbidden"}]}}
        executor, ledger, _ = _executor(ScriptedHandler(httpx.Response(403, json=body)), clock)

        outcome = executor.execute(TARGET)

        assert outcome.error_kind == ErrorKind.FATAL
        assert not ledger.is_locked()

    def test_malformed_json_is_fatal(self, clock):
        """A 200 that is not JSON is fatal."""
        handler = ScriptedHandler(httpx.Response(200, text="<html>oops</html>"))
        executor, _, _ = _executor(handler, clock)

        outcome = executor.execute(TARGET)

        assert outcome.error_kind == ErrorKind.FATAL
        assert outcome.message.startswith("malformed response")

    def test_unsupported_operation_is_fatal(self, clock):
        """An operation the adapter cannot build is fatal and sends nothing."""
        handler = ScriptedHandler(httpx.Response(200, json=PLAYLIST_PAGE))
        executor, ledger, _ = _executor(handler, clock)
        reservation = ledger.try_reserve("search").reservation

        outcome = executor.execute(TARGET, "subscriptions", reservation=reservation)

        assert outcome.error_kind == ErrorKind.FATAL
        assert outcome.message.startswith("invalid request")
        assert handler.requests == []
        assert outcome.units_charged == 0
        assert ledger.get_stats().reserved == 0

    def test_live_target_uses_search(self, clock):
        """The operation defaults to the adapter's choice for the content type."""
        handler = ScriptedHandler(httpx.Response(200, json={"items": []}))
        executor, _, _ = _executor(handler, clock)

        outcome = executor.execute(FetchTarget("youtube", "UCchannel", "live"))

        assert outcome.operation == "search"
        assert handler.requests[0].url.path.endswith("/search")


class TestCancellation:
    """Test cancel events."""

    def test_cancel_before_first_attempt(self, clock):
        """A pre-set cancel event sends no request and releases."""
        handler = ScriptedHandler(httpx.Response(200, json=PLAYLIST_PAGE))
        executor, ledger, _ = _executor(handler, clock)
        reservation = ledger.try_reserve("search").reservation
        cancel = threading.Event()
        cancel.set()

        outcome = executor.execute(TARGET, reservation=reservation, cancel_event=cancel)

        assert outcome.error_kind == ErrorKind.CANCELLED
        assert handler.requests == []
        assert ledger.remaining() == 10000

    def test_cancel_during_backoff(self, clock):
        """Cancelling while waiting to retry stops without another attempt."""
        handler = ScriptedHandler(httpx.Response(503))
        cancel = threading.Event()
        monotonic = FakeMonotonic()

        def cancelling_sleep(seconds):
            monotonic.sleep(seconds)
            cancel.set()

        client = httpx.Client(transport=httpx.MockTransport(handler))
        registry = PlatformRegistry([YouTubeAdapter(client=client)])
        ledger = QuotaLedger(clock=clock)
        executor = FetchExecutor(registry, ledger, clock=clock, monotonic=monotonic, sleep=cancelling_sleep)
        reservation = ledger.try_reserve("playlistItems").reservation

        outcome = executor.execute(TARGET, reservation=reservation, cancel_event=cancel)

        assert outcome.error_kind == ErrorKind.CANCELLED
        assert len(handler.requests) == 1
        assert ledger.get_stats().used == 0
        assert ledger.get_stats().reserved == 0

    def test_real_wait_is_interruptible(self, clock):
        """Without an injected sleep the backoff waits on the cancel event."""
        handler = ScriptedHandler(httpx.Response(503))
        client = httpx.Client(transport=httpx.MockTransport(handler))
        registry = PlatformRegistry([YouTubeAdapter(client=client)])
        executor = FetchExecutor(registry, QuotaLedger(clock=clock), base_delay=30.0, clock=clock)
        cancel = threading.Event()
        threading.Timer(0.05, cancel.set).start()

        outcome = executor.execute(TARGET, cancel_event=cancel)

        assert outcome.error_kind == ErrorKind.CANCELLED
        assert outcome.elapsed < 5.0


class TestRetryAfter:
    """Test Retry-After parsing."""

    def test_seconds(self):
        assert parse_retry_after("5") == 5.0
        assert parse_retry_after("-3") == 0.0

    def test_http_date(self):
        now = datetime(2024, 1, 15, 17, 0, tzinfo=timezone.utc)
        header = format_datetime(now + timedelta(seconds=90), usegmt=True)

        assert parse_retry_after(header, now) == 90.0

    def test_missing_or_garbage(self):
        assert parse_retry_after(None) is None
        assert parse_retry_after("") is None
        assert parse_retry_after("soon") is None
