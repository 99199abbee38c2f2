"""
Shared fixtures for the test suite.
"""

from datetime import datetime, timedelta, timezone

import pytest


class FakeClock:
    """Manually advanced aware UTC clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


@pytest.fixture
def clock():
    """Monday 2024-01-15 17:00 UTC, which is 09:00 in Los Angeles."""
    return FakeClock(datetime(2024, 1, 15, 17, 0, tzinfo=timezone.utc))


@pytest.fixture
def db_path(tmp_path):
    """Path of an initialized SQLite database."""
    from feed_quota_guard.storage.repository import initialize_schema
    path = str(tmp_path / "test.db")
    initialize_schema(path)
    return path
