"""
Platform adapter interface.

Each upstream platform is a closed variant of ``PlatformAdapter``: it knows
how to build a request for an operation, how much each operation costs, how
the platform signals a spent daily quota, and how to normalize items.
"""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Tuple

import httpx

from ..core.errors import DataValidationError


@dataclass(frozen=True)
class FetchTarget:
    """What to poll: one channel's content of one type."""
    platform: str
    channel_id: str
    content_type: str = "video"

    @property
    def cache_key(self) -> Tuple[str, str, str]:
        return (self.platform, self.content_type, self.channel_id)


@dataclass(frozen=True)
class PlatformCredentials:
    """Per-platform credentials and endpoint overrides."""
    api_key: Optional[str] = None
    access_token: Optional[str] = None
    base_url: Optional[str] = None
    enabled: bool = True


@dataclass(frozen=True)
class ContentItem:
    """Normalized content item produced by every adapter."""
    id: str
    platform: str
    content_type: str
    channel_id: str
    title: str = ""
    url: str = ""
    thumbnail_url: str = ""
    published_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PlatformAdapter(ABC):
    """Base class for upstream platform adapters."""

    platform: str = ""
    base_url: str = ""
    default_operation: str = ""
    operation_costs: Dict[str, int] = {}
    # "high", "medium" or "low" per operation; unlisted operations are low
    operation_priorities: Dict[str, str] = {}
    supported_types: Tuple[str, ...] = ("video",)

    def __init__(
        self,
        credentials: Optional[PlatformCredentials] = None,
        client: Optional[httpx.Client] = None,
        timeout: float = 15.0,
    ):
        """Initialize the adapter.

        Args:
            credentials: Platform credentials
            client: Optional shared httpx client (tests pass one with a MockTransport)
            timeout: Default per-request timeout in seconds
        """
        self.credentials = credentials or PlatformCredentials()
        self.timeout = timeout
        self.client = client or httpx.Client(timeout=timeout)
        if self.credentials.base_url:
            self.base_url = self.credentials.base_url.rstrip("/")

    @abstractmethod
    def build_request(self, target: FetchTarget, operation: str, timeout: float) -> httpx.Request:
        """Build the HTTP request for one operation on a target."""

    @abstractmethod
    def extract_raw_items(self, payload: Any, target: FetchTarget) -> List[Any]:
        """Return the raw item list from a decoded response body.

        Raises:
            DataValidationError: If the body does not have the expected shape
        """

    @abstractmethod
    def parse_item(self, raw: Any, target: FetchTarget) -> ContentItem:
        """Normalize one raw item.

        Raises:
            DataValidationError: If the item is malformed
        """

    def is_quota_exhausted(self, response: httpx.Response) -> bool:
        """Whether a response is a definitive daily-quota exhaustion signal."""
        return False

    def is_throttled(self, response: httpx.Response) -> bool:
        """Whether a non-2xx, non-5xx response is a transient throttle worth retrying."""
        return False

    def operation_for(self, content_type: str) -> str:
        return self.default_operation

    def fetch(self, target: FetchTarget, operation: str, timeout: Optional[float] = None) -> httpx.Response:
        """Send one request. Transport errors propagate to the executor."""
        request = self.build_request(target, operation, timeout or self.timeout)
        return self.client.send(request)

    def parse_items(self, payload: Any, target: FetchTarget) -> Tuple[List[ContentItem], int]:
        """Normalize a response body, discarding malformed items.

        Returns:
            Tuple of (valid items, number of discarded items)

        Raises:
            DataValidationError: If the body as a whole is malformed
        """
        items = []
        discarded = 0
        for raw in self.extract_raw_items(payload, target):
            try:
                items.append(self.parse_item(raw, target))
            except (DataValidationError, KeyError, TypeError, AttributeError):
                discarded += 1
        return items, discarded

    def close(self) -> None:
        self.client.close()

    @staticmethod
    def _require(raw: Any, *path: str) -> Any:
        """Walk nested keys of a raw item, raising DataValidationError if absent."""
        value = raw
        for key in path:
            if not isinstance(value, dict) or value.get(key) in (None, ""):
                raise DataValidationError(f"Missing field: {'.'.join(path)}")
            value = value[key]
        return value

    @staticmethod
    def _error_body(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        error = body.get("error") if isinstance(body, dict) else None
        return error if isinstance(error, dict) else {}
