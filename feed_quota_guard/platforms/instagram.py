"""
Instagram Graph API adapter.
"""

from typing import Any, List

import httpx

from .base import ContentItem, FetchTarget
from .facebook import GraphApiAdapter

VIDEO_MEDIA_TYPES = frozenset({"VIDEO", "REELS"})


class InstagramAdapter(GraphApiAdapter):
    """Adapter for an Instagram professional account's media."""

    platform = "instagram"
    default_operation = "user.media"
    operation_costs = {"user.media": 1}
    operation_priorities = {"user.media": "high"}
    supported_types = ("video", "media")
    fields = "id,caption,media_type,media_url,permalink,thumbnail_url,timestamp"

    def build_request(self, target: FetchTarget, operation: str, timeout: float) -> httpx.Request:
        if operation != "user.media":
            raise ValueError(f"Unsupported Instagram operation: {operation}")
        return self._graph_request(target.channel_id, "media", timeout)

    def extract_raw_items(self, payload: Any, target: FetchTarget) -> List[Any]:
        media = super().extract_raw_items(payload, target)
        if target.content_type != "video":
            return media
        # Images are valid media, just not what a video schedule wants
        return [
            m for m in media
            if not isinstance(m, dict) or m.get("media_type") in VIDEO_MEDIA_TYPES
        ]

    def parse_item(self, raw: Any, target: FetchTarget) -> ContentItem:
        media_id = str(self._require(raw, "id"))
        caption = raw.get("caption") or ""
        return ContentItem(
            id=media_id,
            platform=self.platform,
            content_type=target.content_type,
            channel_id=target.channel_id,
            title=caption.splitlines()[0] if caption else "",
            url=raw.get("permalink", ""),
            thumbnail_url=raw.get("thumbnail_url") or raw.get("media_url") or "",
            published_at=raw.get("timestamp", ""),
        )
