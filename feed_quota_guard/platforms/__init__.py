"""
Feed Quota Guard platform adapters.
"""

from .base import ContentItem, FetchTarget, PlatformAdapter, PlatformCredentials
from .registry import ADAPTER_TYPES, PlatformRegistry, build_registry

__all__ = [
    "ContentItem",
    "FetchTarget",
    "PlatformAdapter",
    "PlatformCredentials",
    "PlatformRegistry",
    "build_registry",
    "ADAPTER_TYPES",
]
