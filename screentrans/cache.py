"""
Two-tier translation cache.

- L1: in-process LRU map (capacity ~100), never expires by time
- L2: persisted through a KeyValueStore, entries expire after a TTL
  (7 days) and the oldest 20% are evicted when it is full (~200)

Both tiers share one key space: a SHA-256 fingerprint of the normalized
(protected) source text, the target language and the template ID. L2 is
neither read nor written when the privacy mode forbids persistence.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from typing import Callable, Optional

from screentrans.privacy import PrivacyMode, allows_persistence
from screentrans.store import KeyValueStore

logger = logging.getLogger(__name__)

DAY_SECONDS = 24 * 60 * 60

L1_CAPACITY = 100
L2_CAPACITY = 200
L2_TTL_SECONDS = 7 * DAY_SECONDS
L2_EVICT_FRACTION = 0.2
L2_STORAGE_KEY = "translation_cache"


@dataclass
class CacheEntry:
    """A cached translation."""
    translated_text: str
    source_lang_detected: str = "auto"
    created_at: float = field(default_factory=time.time)
    provider_id: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "CacheEntry":
        return cls(
            translated_text=data["translated_text"],
            source_lang_detected=data.get("source_lang_detected", "auto"),
            created_at=float(data.get("created_at", 0.0)),
            provider_id=data.get("provider_id"),
        )


def normalize_text(text: str) -> str:
    """Collapse runs of whitespace and strip the ends."""
    return " ".join(text.split())


def make_cache_key(text: str, target_lang: str, template_id: str) -> str:
    """Deterministic fingerprint of (normalized text, target language, template)."""
    payload = json.dumps(
        [normalize_text(text), target_lang, template_id],
        ensure_ascii=False,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class L1Cache:
    """Bounded in-memory LRU cache."""

    def __init__(self, capacity: int = L1_CAPACITY):
        if capacity < 1:
            raise ValueError("L1 capacity must be at least 1")
        self.capacity = capacity
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                self._entries.move_to_end(key)
            return entry

    def set(self, key: str, entry: CacheEntry) -> None:
        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            while len(self._entries) > self.capacity:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries


class L2Cache:
    """Persistent TTL cache stored under a single key of a KeyValueStore.

    Expired entries are dropped lazily on read and eagerly by cleanup(),
    which also runs when the cache is first loaded.
    """

    def __init__(
        self,
        store: KeyValueStore,
        ttl_seconds: float = L2_TTL_SECONDS,
        capacity: int = L2_CAPACITY,
        storage_key: str = L2_STORAGE_KEY,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.capacity = capacity
        self.storage_key = storage_key
        self._clock = clock
        self._entries: Optional[dict[str, CacheEntry]] = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> dict[str, CacheEntry]:
        if self._entries is not None:
            return self._entries

        self._entries = {}
        try:
            raw = self.store.get(self.storage_key) or {}
        except Exception as e:
            logger.warning("L2 cache unreadable, starting empty: %s", e)
            raw = {}
        for key, data in raw.items():
            try:
                self._entries[key] = CacheEntry.from_dict(data)
            except (KeyError, TypeError, ValueError):
                logger.debug("Dropping malformed L2 entry %s", key)
        if self._drop_expired():
            self._save()
        return self._entries

    def _save(self) -> None:
        try:
            self.store.set(
                self.storage_key,
                {key: entry.to_dict() for key, entry in self._entries.items()},
            )
        except Exception as e:
            logger.warning("L2 cache write failed: %s", e)

    def _is_expired(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.created_at > self.ttl_seconds

    def _drop_expired(self) -> int:
        expired = [k for k, e in self._entries.items() if self._is_expired(e)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            entries = self._load()
            entry = entries.get(key)
            if entry is None:
                return None
            if self._is_expired(entry):
                del entries[key]
                self._save()
                return None
            return entry

    def set(self, key: str, entry: CacheEntry) -> None:
        with self._lock:
            entries = self._load()
            entries.pop(key, None)
            if len(entries) >= self.capacity:
                self._evict_oldest()
            entries[key] = entry
            self._save()

    def _evict_oldest(self) -> None:
        count = max(1, int(self.capacity * L2_EVICT_FRACTION))
        oldest = sorted(self._entries, key=lambda k: self._entries[k].created_at)[:count]
        for key in oldest:
            del self._entries[key]
        logger.debug("Evicted %d oldest L2 entries", len(oldest))

    def cleanup(self) -> int:
        """Remove every expired entry. Returns how many were removed."""
        with self._lock:
            self._load()
            removed = self._drop_expired()
            if removed:
                self._save()
            return removed

    def clear(self) -> None:
        with self._lock:
            self._entries = {}
            try:
                self.store.delete(self.storage_key)
            except Exception as e:
                logger.warning("L2 cache clear failed: %s", e)

    def stats(self) -> dict:
        with self._lock:
            entries = self._load()
            expired = sum(1 for e in entries.values() if self._is_expired(e))
            return {
                "total": len(entries),
                "valid": len(entries) - expired,
                "expired": expired,
                "max_size": self.capacity,
                "ttl_days": self.ttl_seconds / DAY_SECONDS,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._load())


class TranslationCacheTier:
    """L1 + L2 facade used by the dispatcher.

    Invariants:
    - a hit never returns expired L2 data
    - writes always update L1, and update L2 only when persistence is allowed
    - an L2 hit re-warms L1
    """

    def __init__(self, l1: Optional[L1Cache] = None, l2: Optional[L2Cache] = None):
        self.l1 = l1 or L1Cache()
        self.l2 = l2
        self._stats = {"l1_hits": 0, "l2_hits": 0, "misses": 0, "writes": 0}

    make_key = staticmethod(make_cache_key)

    def get(self, key: str, privacy_mode: PrivacyMode | str | None = None) -> Optional[CacheEntry]:
        entry = self.l1.get(key)
        if entry is not None:
            self._stats["l1_hits"] += 1
            return entry

        if self.l2 is not None and allows_persistence(privacy_mode):
            entry = self.l2.get(key)
            if entry is not None:
                self._stats["l2_hits"] += 1
                self.l1.set(key, entry)
                return entry

        self._stats["misses"] += 1
        return None

    def set(self, key: str, entry: CacheEntry, privacy_mode: PrivacyMode | str | None = None) -> None:
        self.l1.set(key, entry)
        if self.l2 is not None and allows_persistence(privacy_mode):
            self.l2.set(key, entry)
        self._stats["writes"] += 1

    def clear(self) -> None:
        self.l1.clear()
        if self.l2 is not None:
            self.l2.clear()

    def stats(self) -> dict:
        stats = dict(self._stats)
        stats["l1_size"] = len(self.l1)
        stats["l1_capacity"] = self.l1.capacity
        stats["l2"] = self.l2.stats() if self.l2 is not None else None
        return stats
