"""
Tests for the two-tier translation cache.

Tests cover:
- L1 LRU eviction
- L2 TTL expiry, eviction, cleanup and stats
- Persistence through a KeyValueStore
- Privacy gating of L2 in the combined tier
"""

import pytest

from screentrans.cache import (
    DAY_SECONDS,
    CacheEntry,
    L1Cache,
    L2Cache,
    TranslationCacheTier,
    make_cache_key,
)
from screentrans.store import MemoryStore


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def entry(text="translated", created_at=1000.0):
    return CacheEntry(translated_text=text, created_at=created_at)


class TestKeys:
    """Test cache key construction."""

    def test_whitespace_normalized(self):
        """Test spacing differences produce the same key."""
        assert make_cache_key("a  b\n", "zh", "natural") == make_cache_key(" a b", "zh", "natural")

    def test_target_and_template_matter(self):
        """Test every key component changes the key."""
        base = make_cache_key("hello", "zh", "natural")
        assert base != make_cache_key("hello", "ja", "natural")
        assert base != make_cache_key("hello", "zh", "formal")
        assert base != make_cache_key("hello!", "zh", "natural")


class TestL1:
    """Test the in-memory LRU tier."""

    def test_evicts_least_recently_used(self):
        """Test reading an entry protects it from eviction."""
        l1 = L1Cache(capacity=2)
        l1.set("a", entry("A"))
        l1.set("b", entry("B"))
        l1.get("a")
        l1.set("c", entry("C"))

        assert "a" in l1
        assert "b" not in l1
        assert len(l1) == 2

    def test_rejects_zero_capacity(self):
        """Test an unusable capacity is refused."""
        with pytest.raises(ValueError):
            L1Cache(capacity=0)


class TestL2:
    """Test the persistent TTL tier."""

    def test_entry_expires(self):
        """Test an entry older than the TTL is a miss."""
        clock = Clock()
        l2 = L2Cache(MemoryStore(), ttl_seconds=DAY_SECONDS, clock=clock)
        l2.set("k", entry(created_at=clock.now))
        assert l2.get("k") is not None

        clock.now += DAY_SECONDS + 1

        assert l2.get("k") is None
        assert len(l2) == 0

    def test_evicts_oldest_fifth_when_full(self):
        """Test inserting into a full cache drops the oldest entries."""
        clock = Clock()
        l2 = L2Cache(MemoryStore(), capacity=10, clock=clock)
        for i in range(10):
            l2.set(f"k{i}", entry(created_at=clock.now - 100 + i))

        l2.set("new", entry(created_at=clock.now))

        assert len(l2) == 9
        assert l2.get("k0") is None
        assert l2.get("k1") is None
        assert l2.get("k2") is not None
        assert l2.get("new") is not None

    def test_persists_across_instances(self):
        """Test a second cache over the same store sees earlier writes."""
        store = MemoryStore()
        clock = Clock()
        L2Cache(store, clock=clock).set("k", entry("persisted", created_at=clock.now))

        assert L2Cache(store, clock=clock).get("k").translated_text == "persisted"

    def test_expired_entries_dropped_on_load(self):
        """Test stale entries are removed when the store is first read."""
        store = MemoryStore()
        clock = Clock()
        L2Cache(store, ttl_seconds=10, clock=clock).set("k", entry(created_at=clock.now))

        clock.now += 60
        reloaded = L2Cache(store, ttl_seconds=10, clock=clock)

        assert len(reloaded) == 0
        assert store.get("translation_cache") == {}

    def test_stats_and_cleanup(self):
        """Test stats count expired entries until cleanup removes them."""
        clock = Clock()
        l2 = L2Cache(MemoryStore(), ttl_seconds=DAY_SECONDS, capacity=50, clock=clock)
        l2.set("old", entry(created_at=clock.now))
        clock.now += DAY_SECONDS + 1
        l2.set("fresh", entry(created_at=clock.now))

        stats = l2.stats()
        assert stats["total"] == 2
        assert stats["valid"] == 1
        assert stats["expired"] == 1
        assert stats["max_size"] == 50
        assert stats["ttl_days"] == 1

        assert l2.cleanup() == 1
        assert l2.stats()["total"] == 1

    def test_malformed_entries_ignored(self):
        """Test unreadable stored entries are dropped."""
        store = MemoryStore({"translation_cache": {"bad": {"no_text": True}}})
        assert len(L2Cache(store)) == 0

    def test_clear(self):
        """Test clear removes the stored document."""
        store = MemoryStore()
        l2 = L2Cache(store)
        l2.set("k", entry(created_at=0.0))
        l2.clear()

        assert store.get("translation_cache") is None
        assert len(l2) == 0


class TestTier:
    """Test the combined tier."""

    def test_l2_hit_warms_l1(self):
        """Test a hit in L2 is copied into L1."""
        clock = Clock()
        l2 = L2Cache(MemoryStore(), clock=clock)
        l2.set("k", entry(created_at=clock.now))
        tier = TranslationCacheTier(L1Cache(), l2)

        assert tier.get("k") is not None
        assert "k" in tier.l1
        assert tier.stats()["l2_hits"] == 1

    def test_secure_mode_writes_l1_only(self):
        """Test secure mode never touches L2."""
        store = MemoryStore()
        tier = TranslationCacheTier(L1Cache(), L2Cache(store))

        tier.set("k", entry(), "secure")

        assert "k" in tier.l1
        assert store.get("translation_cache") is None

    def test_secure_mode_skips_l2_reads(self):
        """Test secure mode misses when only L2 holds the entry."""
        clock = Clock()
        l2 = L2Cache(MemoryStore(), clock=clock)
        l2.set("k", entry(created_at=clock.now))
        tier = TranslationCacheTier(L1Cache(), l2)

        assert tier.get("k", "secure") is None
        assert tier.stats()["misses"] == 1

    def test_clear_empties_both(self):
        """Test clear empties L1 and L2."""
        tier = TranslationCacheTier(L1Cache(), L2Cache(MemoryStore()))
        tier.set("k", entry())
        tier.clear()

        assert tier.get("k") is None
