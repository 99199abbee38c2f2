"""
Exception types for Feed Quota Guard.

Expected upstream failures (rate limits, outages, bad credentials) are never
raised; they travel as ``ErrorKind`` values on fetch outcomes. The exceptions
here signal broken invariants or invalid input.
"""


class FeedQuotaGuardError(Exception):
    """Base class for all package errors."""


class ReservationError(FeedQuotaGuardError):
    """Raised when a quota reservation is finalized twice or by the wrong ledger."""
    def __init__(self, message: str, reservation_id: int):
        super().__init__(message)
        self.reservation_id = reservation_id


class ScheduleStateError(FeedQuotaGuardError):
    """Raised on an illegal schedule state transition."""
    def __init__(self, message: str, schedule_id: int, current: str, requested: str):
        super().__init__(message)
        self.schedule_id = schedule_id
        self.current = current
        self.requested = requested


class DataValidationError(FeedQuotaGuardError):
    """Raised by adapters for a single malformed item; the batch continues."""


class UnknownPlatformError(FeedQuotaGuardError):
    """Raised when no adapter is registered for a platform id."""
    def __init__(self, platform: str):
        super().__init__(f"No adapter registered for platform: {platform}")
        self.platform = platform
