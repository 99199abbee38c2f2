"""
TikTok Display API adapter.

Lists the authorized creator's recent videos with a bearer access token.
"""

from typing import Any, List

import httpx

from .base import ContentItem, FetchTarget, PlatformAdapter
from ..core.errors import DataValidationError

API_BASE_URL = "https://open.tiktokapis.com/v2"

VIDEO_FIELDS = "id,title,cover_image_url,share_url,video_description,create_time"

MAX_COUNT = 20


class TikTokAdapter(PlatformAdapter):
    """Adapter for the TikTok Display API v2."""

    platform = "tiktok"
    base_url = API_BASE_URL
    default_operation = "video.list"
    operation_costs = {"video.list": 1}
    operation_priorities = {"video.list": "high"}

    def build_request(self, target: FetchTarget, operation: str, timeout: float) -> httpx.Request:
        if operation != "video.list":
            raise ValueError(f"Unsupported TikTok operation: {operation}")
        return self.client.build_request(
            "POST",
            f"{self.base_url}/video/list/",
            params={"fields": VIDEO_FIELDS},
            json={"max_count": MAX_COUNT},
            headers={"Authorization": f"Bearer {self.credentials.access_token or ''}"},
            timeout=timeout,
        )

    def extract_raw_items(self, payload: Any, target: FetchTarget) -> List[Any]:
        if not isinstance(payload, dict):
            raise DataValidationError("TikTok response is not an object")
        error = payload.get("error") or {}
        if error.get("code") not in (None, "ok"):
            raise DataValidationError(f"TikTok error: {error.get('code')}")
        videos = (payload.get("data") or {}).get("videos", [])
        if not isinstance(videos, list):
            raise DataValidationError("TikTok response has no videos list")
        return videos

    def parse_item(self, raw: Any, target: FetchTarget) -> ContentItem:
        video_id = str(self._require(raw, "id"))
        title = raw.get("title") or raw.get("video_description") or ""
        created = raw.get("create_time")
        return ContentItem(
            id=video_id,
            platform=self.platform,
            content_type=target.content_type,
            channel_id=target.channel_id,
            title=title,
            url=raw.get("share_url", ""),
            thumbnail_url=raw.get("cover_image_url", ""),
            published_at=str(created) if created is not None else "",
        )
