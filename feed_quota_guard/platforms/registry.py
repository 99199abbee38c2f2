"""
Platform adapter registry.

Maps platform ids to adapter instances and merges their operation cost
tables for the shared quota ledger.
"""

import logging
from typing import Dict, List, Mapping, Optional, Type

import httpx

from .base import PlatformAdapter, PlatformCredentials
from .facebook import FacebookAdapter
from .instagram import InstagramAdapter
from .tiktok import TikTokAdapter
from .youtube import YouTubeAdapter
from ..core.errors import UnknownPlatformError

logger = logging.getLogger(__name__)

ADAPTER_TYPES: Dict[str, Type[PlatformAdapter]] = {
    "youtube": YouTubeAdapter,
    "tiktok": TikTokAdapter,
    "facebook": FacebookAdapter,
    "instagram": InstagramAdapter,
}


class PlatformRegistry:
    """Adapters keyed by platform id."""

    def __init__(self, adapters: Optional[List[PlatformAdapter]] = None):
        self._adapters: Dict[str, PlatformAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: PlatformAdapter) -> None:
        if not adapter.platform:
            raise ValueError("adapter has no platform id")
        self._adapters[adapter.platform] = adapter

    def get(self, platform: str) -> PlatformAdapter:
        """Return the adapter for a platform.

        Raises:
            UnknownPlatformError: If no adapter is registered
        """
        adapter = self._adapters.get(platform)
        if adapter is None:
            raise UnknownPlatformError(platform)
        return adapter

    def __contains__(self, platform: str) -> bool:
        return platform in self._adapters

    def platforms(self) -> List[str]:
        return sorted(self._adapters)

    def operation_costs(self) -> Dict[str, int]:
        """Union of every registered adapter's cost table."""
        costs: Dict[str, int] = {}
        for adapter in self._adapters.values():
            costs.update(adapter.operation_costs)
        return costs

    def operation_priorities(self) -> Dict[str, str]:
        """Union of every registered adapter's priority table."""
        priorities: Dict[str, str] = {}
        for adapter in self._adapters.values():
            priorities.update(adapter.operation_priorities)
        return priorities

    def close(self) -> None:
        for adapter in self._adapters.values():
            adapter.close()


def build_registry(
    credentials: Mapping[str, PlatformCredentials],
    timeout: float = 15.0,
    client: Optional[httpx.Client] = None,
) -> PlatformRegistry:
    """Create adapters for every enabled platform with credentials.

    Args:
        credentials: Credentials keyed by platform id
        timeout: Per-request timeout in seconds
        client: Optional shared httpx client

    Raises:
        UnknownPlatformError: If a configured platform has no adapter type
    """
    registry = PlatformRegistry()
    for platform, creds in credentials.items():
        adapter_type = ADAPTER_TYPES.get(platform)
        if adapter_type is None:
            raise UnknownPlatformError(platform)
        if not creds.enabled:
            logger.info("Platform %s is disabled", platform)
            continue
        registry.register(adapter_type(credentials=creds, client=client, timeout=timeout))
    return registry
