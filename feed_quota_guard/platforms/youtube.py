"""
YouTube Data API v3 adapter.

Polls a channel's uploads playlist (1 unit) for new videos and falls back
to search (100 units) for live broadcasts.
"""

from typing import Any, Dict, List

import httpx

from .base import ContentItem, FetchTarget, PlatformAdapter
from ..core.errors import DataValidationError

API_BASE_URL = "https://www.googleapis.com/youtube/v3"

QUOTA_EXHAUSTED_REASONS = frozenset({"quotaExceeded", "dailyLimitExceeded"})

MAX_RESULTS = 10


class YouTubeAdapter(PlatformAdapter):
    """Adapter for the YouTube Data API v3."""

    platform = "youtube"
    base_url = API_BASE_URL
    default_operation = "playlistItems"
    operation_costs = {
        "search": 100,
        "videos": 1,
        "channels": 1,
        "playlistItems": 1,
        "playlists": 1,
    }
    operation_priorities = {
        "videos": "high",
        "playlistItems": "high",
        "playlists": "high",
        "channels": "medium",
        "search": "low",
    }
    supported_types = ("video", "live")

    def operation_for(self, content_type: str) -> str:
        # Live broadcasts are only discoverable through search
        if content_type == "live":
            return "search"
        return self.default_operation

    def build_request(self, target: FetchTarget, operation: str, timeout: float) -> httpx.Request:
        params: Dict[str, Any] = {"key": self.credentials.api_key or ""}

        if operation == "playlistItems":
            params.update({
                "part": "snippet,contentDetails",
                "playlistId": uploads_playlist_id(target.channel_id),
                "maxResults": MAX_RESULTS,
            })
        elif operation == "search":
            params.update({
                "part": "snippet",
                "channelId": target.channel_id,
                "order": "date",
                "type": "video",
                "maxResults": MAX_RESULTS,
            })
            if target.content_type == "live":
                params["eventType"] = "live"
        elif operation == "channels":
            params.update({"part": "snippet,contentDetails", "id": target.channel_id})
        elif operation == "playlists":
            params.update({"part": "snippet", "channelId": target.channel_id, "maxResults": MAX_RESULTS})
        elif operation == "videos":
            params.update({"part": "snippet", "id": target.channel_id})
        else:
            raise ValueError(f"Unsupported YouTube operation: {operation}")

        return self.client.build_request(
            "GET",
            f"{self.base_url}/{operation}",
            params=params,
            timeout=timeout,
        )

    def is_quota_exhausted(self, response: httpx.Response) -> bool:
        if response.status_code != 403:
            return False
        error = self._error_body(response)
        reasons = {
            detail.get("reason")
            for detail in error.get("errors", [])
            if isinstance(detail, dict)
        }
        return bool(reasons & QUOTA_EXHAUSTED_REASONS)

    def extract_raw_items(self, payload: Any, target: FetchTarget) -> List[Any]:
        if not isinstance(payload, dict) or not isinstance(payload.get("items", []), list):
            raise DataValidationError("YouTube response has no items list")
        return payload.get("items", [])

    def parse_item(self, raw: Any, target: FetchTarget) -> ContentItem:
        video_id = _video_id(raw)
        snippet = raw.get("snippet") or {}
        thumbnails = snippet.get("thumbnails") or {}
        thumbnail = thumbnails.get("high") or thumbnails.get("default") or {}
        return ContentItem(
            id=video_id,
            platform=self.platform,
            content_type=target.content_type,
            channel_id=target.channel_id,
            title=snippet.get("title", ""),
            url=f"https://www.youtube.com/watch?v={video_id}",
            thumbnail_url=thumbnail.get("url", ""),
            published_at=snippet.get("publishedAt", ""),
        )


def uploads_playlist_id(channel_id: str) -> str:
    """Uploads playlist of a channel: ``UC...`` becomes ``UU...``."""
    if channel_id.startswith("UC"):
        return "UU" + channel_id[2:]
    return channel_id


def _video_id(raw: Any) -> str:
    if not isinstance(raw, dict):
        raise DataValidationError("YouTube item is not an object")
    # search results nest the id, playlist items carry it in contentDetails
    item_id = raw.get("id")
    if isinstance(item_id, dict) and item_id.get("videoId"):
        return item_id["videoId"]
    details = raw.get("contentDetails") or {}
    if details.get("videoId"):
        return details["videoId"]
    resource = (raw.get("snippet") or {}).get("resourceId") or {}
    if resource.get("videoId"):
        return resource["videoId"]
    if isinstance(item_id, str) and item_id:
        return item_id
    raise DataValidationError("YouTube item has no video id")
