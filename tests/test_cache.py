"""
Unit tests for the content cache.

Tests TTL freshness, dropped writes, eviction and write-through persistence.
"""

import threading

from feed_quota_guard.core.cache import LOCK_STRIPES, CacheStore
from feed_quota_guard.storage.repository import StateRepository


class TestFreshness:
    """Test TTL behavior of get and set."""

    def test_hit_then_miss_after_ttl(self, clock):
        """An entry is fresh until exactly its TTL has passed."""
        cache = CacheStore(clock=clock)
        assert cache.set("youtube", "video", "UC123", [{"id": "a"}], ttl=3600)

        clock.advance(seconds=3599)
        entry = cache.get("youtube", "video", "UC123")
        assert entry is not None
        assert entry.payload == [{"id": "a"}]

        clock.advance(seconds=1)
        assert cache.get("youtube", "video", "UC123") is None

    def test_zero_ttl_drops_write(self, clock):
        """A TTL of zero or less means do not cache."""
        cache = CacheStore(clock=clock)

        assert not cache.set("youtube", "video", "UC123", [], ttl=0)
        assert not cache.set("youtube", "video", "UC123", [], ttl=-5)

        assert cache.get("youtube", "video", "UC123") is None
        assert cache.stats().dropped_writes == 2
        assert cache.stats().writes == 0

    def test_per_type_default_ttl(self, clock):
        """Content types fall back to their configured TTL."""
        cache = CacheStore(clock=clock)
        cache.set("youtube", "api", "quota", {"used": 1})

        clock.advance(seconds=299)
        assert cache.is_fresh("youtube", "api", "quota")
        clock.advance(seconds=1)
        assert not cache.is_fresh("youtube", "api", "quota")

    def test_unknown_type_uses_default_ttl(self, clock):
        """Unlisted types use the default TTL."""
        cache = CacheStore(default_ttl=60, ttl_by_type={}, clock=clock)
        assert cache.ttl_for("anything") == 60

    def test_overwrite_refreshes_entry(self, clock):
        """Setting a key again replaces payload and expiry."""
        cache = CacheStore(clock=clock)
        cache.set("tiktok", "video", "me", ["old"], ttl=10)
        clock.advance(seconds=5)
        cache.set("tiktok", "video", "me", ["new"], ttl=10)
        clock.advance(seconds=8)

        assert cache.get("tiktok", "video", "me").payload == ["new"]

    def test_hit_rate(self, clock):
        """Hits and misses are counted."""
        cache = CacheStore(clock=clock)
        cache.set("youtube", "video", "a", [])
        cache.get("youtube", "video", "a")
        cache.get("youtube", "video", "b")

        stats = cache.stats()
        assert stats.hits == 1
        assert stats.misses == 1
        assert stats.hit_rate == 0.5


class TestEviction:
    """Test delete, clear and cleanup."""

    def test_delete(self, clock):
        """Deleting reports whether the key existed."""
        cache = CacheStore(clock=clock)
        cache.set("youtube", "video", "a", [])

        assert cache.delete("youtube", "video", "a")
        assert not cache.delete("youtube", "video", "a")

    def test_clear_platform(self, clock):
        """Only the named platform is cleared."""
        cache = CacheStore(clock=clock)
        cache.set("youtube", "video", "a", [])
        cache.set("youtube", "live", "a", [])
        cache.set("tiktok", "video", "b", [])

        assert cache.clear_platform("youtube") == 2
        assert cache.is_fresh("tiktok", "video", "b")
        assert [e.key for e in cache.entries()] == ["b"]

    def test_clear_all(self, clock):
        """Everything is removed."""
        cache = CacheStore(clock=clock)
        cache.set("youtube", "video", "a", [])
        cache.set("tiktok", "video", "b", [])

        assert cache.clear_all() == 2
        assert cache.stats().entries == 0

    def test_cleanup_expired(self, clock):
        """Only expired entries are evicted."""
        cache = CacheStore(clock=clock)
        cache.set("youtube", "video", "short", [], ttl=10)
        cache.set("youtube", "video", "long", [], ttl=100)
        clock.advance(seconds=50)

        assert cache.cleanup_expired() == 1
        assert cache.stats().entries == 1
        assert cache.stats().evictions == 1

    def test_concurrent_writes_same_key(self, clock):
        """Racing writers leave exactly one complete entry."""
        cache = CacheStore(clock=clock)

        def writer(value):
            for _ in range(50):
                cache.set("youtube", "video", "shared", [value])

        threads = [threading.Thread(target=writer, args=(i,)) for i in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        entry = cache.get("youtube", "video", "shared")
        assert entry.payload[0] in range(6)
        assert cache.stats().writes == 300

    def test_key_locks_do_not_grow(self, clock):
        """Writing and evicting many keys keeps the lock set fixed."""
        cache = CacheStore(clock=clock)
        for index in range(500):
            cache.set("youtube", "video", f"channel-{index}", [])

        assert cache.clear_all() == 500
        assert len(cache._key_locks) == LOCK_STRIPES


class TestPersistence:
    """Test write-through SQLite persistence."""

    def test_warm_load_of_fresh_entries(self, clock, db_path):
        """A new cache starts with the unexpired entries."""
        repository = StateRepository(db_path)
        cache = CacheStore(clock=clock, repository=repository)
        cache.set("youtube", "video", "fresh", [{"id": "x"}], ttl=3600)
        cache.set("youtube", "video", "stale", [], ttl=10)
        clock.advance(seconds=60)

        warmed = CacheStore(clock=clock, repository=repository)

        assert warmed.get("youtube", "video", "fresh").payload == [{"id": "x"}]
        assert warmed.get("youtube", "video", "stale") is None

    def test_clear_removes_persisted_entries(self, clock, db_path):
        """Cleared entries do not come back after a restart."""
        repository = StateRepository(db_path)
        cache = CacheStore(clock=clock, repository=repository)
        cache.set("youtube", "video", "a", [])
        cache.clear_all()

        assert CacheStore(clock=clock, repository=repository).stats().entries == 0
