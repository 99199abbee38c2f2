"""
TTL cache of fetched platform content.

A fresh entry means the upstream does not need to be polled again, so a
cache hit always short-circuits quota reservation.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from .clock import Clock, utc_now
from ..storage.models import CacheEntry
from ..storage.repository import StateRepository

logger = logging.getLogger(__name__)

DEFAULT_TTL = 3600

# Seconds to keep each content type when no explicit TTL is given
DEFAULT_TTL_BY_TYPE: Dict[str, int] = {
    "metadata": 3600,
    "content": 86400,
    "api": 300,
    "search": 1800,
    "video": 3600,
}

CacheKey = Tuple[str, str, str]

# Writers to the same key share a lock; unrelated keys may share one too
LOCK_STRIPES = 64


@dataclass(frozen=True)
class CacheStats:
    """Cache counters since process start."""
    entries: int
    hits: int
    misses: int
    writes: int
    dropped_writes: int
    evictions: int

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0


class CacheStore:
    """In-process TTL cache with optional write-through SQLite persistence.

    Reads never take a lock. Writes to the same key are serialized by one
    of a fixed set of striped locks.
    """

    def __init__(
        self,
        default_ttl: int = DEFAULT_TTL,
        ttl_by_type: Optional[Dict[str, int]] = None,
        clock: Clock = utc_now,
        repository: Optional[StateRepository] = None,
    ):
        self.default_ttl = default_ttl
        self.ttl_by_type = dict(DEFAULT_TTL_BY_TYPE if ttl_by_type is None else ttl_by_type)
        self._clock = clock
        self._repository = repository

        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._key_locks = tuple(threading.Lock() for _ in range(LOCK_STRIPES))
        self._stats_lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._writes = 0
        self._dropped_writes = 0
        self._evictions = 0

        if repository is not None:
            for entry in repository.load_cache_entries(self._clock()):
                self._entries[(entry.platform, entry.content_type, entry.key)] = entry
            logger.debug("Loaded %d fresh cache entries", len(self._entries))

    def ttl_for(self, content_type: str) -> int:
        return self.ttl_by_type.get(content_type, self.default_ttl)

    def get(self, platform: str, content_type: str, key: str) -> Optional[CacheEntry]:
        """Return the fresh entry for a key, or None on a miss or expired entry."""
        entry = self._entries.get((platform, content_type, key))
        hit = entry is not None and entry.is_fresh(self._clock())
        with self._stats_lock:
            if hit:
                self._hits += 1
            else:
                self._misses += 1
        return entry if hit else None

    def is_fresh(self, platform: str, content_type: str, key: str) -> bool:
        entry = self._entries.get((platform, content_type, key))
        return entry is not None and entry.is_fresh(self._clock())

    def set(
        self,
        platform: str,
        content_type: str,
        key: str,
        payload: Any,
        ttl: Optional[int] = None,
    ) -> bool:
        """Store or overwrite an entry.

        Args:
            platform: Platform identifier
            content_type: Content type
            key: Content or channel key
            payload: JSON-serializable payload
            ttl: Seconds until expiry; defaults to the content type's TTL.
                A TTL of zero or less means "do not cache".

        Returns:
            True if stored, False if the write was dropped
        """
        if ttl is None:
            ttl = self.ttl_for(content_type)
        if ttl <= 0:
            with self._stats_lock:
                self._dropped_writes += 1
            return False

        cache_key = (platform, content_type, key)
        with self._lock_for(cache_key):
            now = self._clock()
            entry = CacheEntry(
                platform=platform,
                content_type=content_type,
                key=key,
                payload=payload,
                created_at=now,
                expires_at=now + timedelta(seconds=ttl),
            )
            if self._repository is not None:
                self._repository.save_cache_entry(entry)
            self._entries[cache_key] = entry
        with self._stats_lock:
            self._writes += 1
        return True

    def delete(self, platform: str, content_type: str, key: str) -> bool:
        """Remove one entry. Returns True if it existed."""
        cache_key = (platform, content_type, key)
        with self._lock_for(cache_key):
            existed = self._entries.pop(cache_key, None) is not None
            if self._repository is not None:
                self._repository.delete_cache_entries(platform, content_type, key)
        return existed

    def clear_platform(self, platform: str) -> int:
        """Remove every entry of one platform. Returns the number removed."""
        removed = self._evict([k for k in list(self._entries) if k[0] == platform])
        if self._repository is not None:
            self._repository.delete_cache_entries(platform=platform)
        logger.info("Cleared %d cache entries for %s", removed, platform)
        return removed

    def clear_all(self) -> int:
        """Remove every entry. Returns the number removed."""
        removed = self._evict(list(self._entries))
        if self._repository is not None:
            self._repository.delete_cache_entries()
        logger.info("Cleared %d cache entries", removed)
        return removed

    def cleanup_expired(self) -> int:
        """Evict entries past their expiry. Returns the number removed."""
        now = self._clock()
        expired = [k for k, entry in list(self._entries.items()) if not entry.is_fresh(now)]
        removed = self._evict(expired, only_if_expired=True)
        if self._repository is not None:
            self._repository.delete_cache_entries(expired_before=now)
        if removed:
            logger.info("Cache cleanup completed. Removed %d expired entries.", removed)
        return removed

    def entries(self, platform: Optional[str] = None) -> List[CacheEntry]:
        """Fresh entries, optionally for one platform, for the rendering collaborator."""
        now = self._clock()
        return [
            entry for entry in list(self._entries.values())
            if entry.is_fresh(now) and (platform is None or entry.platform == platform)
        ]

    def stats(self) -> CacheStats:
        with self._stats_lock:
            return CacheStats(
                entries=len(self._entries),
                hits=self._hits,
                misses=self._misses,
                writes=self._writes,
                dropped_writes=self._dropped_writes,
                evictions=self._evictions,
            )

    def _lock_for(self, cache_key: CacheKey) -> threading.Lock:
        return self._key_locks[hash(cache_key) % len(self._key_locks)]

    def _evict(self, keys: List[CacheKey], only_if_expired: bool = False) -> int:
        removed = 0
        for cache_key in keys:
            with self._lock_for(cache_key):
                entry = self._entries.get(cache_key)
                if entry is None:
                    continue
                # A concurrent set may have refreshed the entry since it was listed
                if only_if_expired and entry.is_fresh(self._clock()):
                    continue
                del self._entries[cache_key]
                removed += 1
        with self._stats_lock:
            self._evictions += removed
        return removed
