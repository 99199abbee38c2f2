"""
Facebook Graph API adapter.

Also hosts the Graph API helpers shared with the Instagram adapter.
"""

from typing import Any, List

import httpx

from .base import ContentItem, FetchTarget, PlatformAdapter
from ..core.errors import DataValidationError

GRAPH_API_BASE_URL = "https://graph.facebook.com/v19.0"

# Application and page level request throttling
THROTTLE_ERROR_CODES = frozenset({4, 17, 32, 613})


class GraphApiAdapter(PlatformAdapter):
    """Common request and error handling for Graph API platforms."""

    base_url = GRAPH_API_BASE_URL
    fields = ""

    def _graph_request(self, node: str, edge: str, timeout: float) -> httpx.Request:
        return self.client.build_request(
            "GET",
            f"{self.base_url}/{node}/{edge}",
            params={"fields": self.fields, "access_token": self.credentials.access_token or ""},
            timeout=timeout,
        )

    def is_throttled(self, response: httpx.Response) -> bool:
        return self._error_body(response).get("code") in THROTTLE_ERROR_CODES

    def extract_raw_items(self, payload: Any, target: FetchTarget) -> List[Any]:
        if not isinstance(payload, dict) or not isinstance(payload.get("data"), list):
            raise DataValidationError(f"{self.platform} response has no data list")
        return payload["data"]


class FacebookAdapter(GraphApiAdapter):
    """Adapter for Facebook page videos and live videos."""

    platform = "facebook"
    default_operation = "page.videos"
    operation_costs = {"page.videos": 1, "page.live_videos": 1}
    operation_priorities = {"page.videos": "high", "page.live_videos": "medium"}
    supported_types = ("video", "live")
    fields = "id,title,description,created_time,permalink_url,picture"

    def operation_for(self, content_type: str) -> str:
        if content_type == "live":
            return "page.live_videos"
        return self.default_operation

    def build_request(self, target: FetchTarget, operation: str, timeout: float) -> httpx.Request:
        if operation == "page.videos":
            return self._graph_request(target.channel_id, "videos", timeout)
        if operation == "page.live_videos":
            return self._graph_request(target.channel_id, "live_videos", timeout)
        raise ValueError(f"Unsupported Facebook operation: {operation}")

    def parse_item(self, raw: Any, target: FetchTarget) -> ContentItem:
        video_id = str(self._require(raw, "id"))
        permalink = raw.get("permalink_url", "")
        if permalink.startswith("/"):
            permalink = f"https://www.facebook.com{permalink}"
        return ContentItem(
            id=video_id,
            platform=self.platform,
            content_type=target.content_type,
            channel_id=target.channel_id,
            title=raw.get("title") or raw.get("description") or "",
            url=permalink,
            thumbnail_url=raw.get("picture", ""),
            published_at=raw.get("created_time") or raw.get("creation_time") or "",
        )
