"""
Time helpers.

All persisted and compared timestamps are timezone-aware UTC; components
take a ``Clock`` so tests can drive time explicitly.
"""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)
