import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable


class CacheMetrics:
    """Thread-safe cache metrics tracker."""

    hits: int
    misses: int
    evictions: int
    promotions: int
    errors: int
    _lock: threading.Lock

    def __init__(self):
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.promotions = 0
        self.errors = 0

    def record_hit(self):
        with self._lock:
            self.hits += 1

    def record_miss(self):
        with self._lock:
            self.misses += 1

    def record_eviction(self):
        with self._lock:
            self.evictions += 1

    def record_promotion(self):
        with self._lock:
            self.promotions += 1

    def record_error(self):
        with self._lock:
            self.errors += 1

    def hit_rate(self) -> float:
        """Return cache hit rate as percentage (0-100)."""
        with self._lock:
            total = self.hits + self.misses
            if total == 0:
                return 0.0
            return (self.hits / total) * 100

    def snapshot(self) -> dict[str, float]:
        with self._lock:
            total = self.hits + self.misses
            return {
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
                "promotions": self.promotions,
                "errors": self.errors,
                "hit_rate": (self.hits / total) * 100 if total else 0.0,
            }

    def reset(self):
        """Reset all metrics to zero."""
        with self._lock:
            self.hits = 0
            self.misses = 0
            self.evictions = 0
            self.promotions = 0
            self.errors = 0


@dataclass(frozen=True)
class HotEntry:
    payload: str
    created_at: float
    ttl_seconds: int
    hit_count: int = 0
    last_access_at: float = 0.0

    def expires_at(self) -> float:
        return self.created_at + self.ttl_seconds

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at()


class HotTier:
    """In-process LRU map holding the hot copies of cache entries.

    Entries are immutable; a read hit replaces the entry with a copy carrying the
    new hit count and access time, so readers never observe a half-updated entry.
    """

    _cache: OrderedDict[str, HotEntry]
    _lock: threading.Lock
    _maxsize: int | None
    _metrics: CacheMetrics

    def __init__(self, maxsize: int | None = None, clock: Callable[[], float] = time.time):
        """Initialize cache with optional size limit.

        Args:
            maxsize: Maximum number of entries. None = unlimited. Uses LRU eviction.
            clock: Source of the current time in epoch seconds.
        """
        self._cache = OrderedDict()
        self._lock = threading.Lock()
        self._maxsize = maxsize
        self._metrics = CacheMetrics()
        self._clock = clock

    def get(self, key: str) -> HotEntry | None:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._metrics.record_miss()
                return None
            now = self._clock()
            if entry.is_expired(now):
                del self._cache[key]
                self._metrics.record_miss()
                return None
            entry = HotEntry(
                payload=entry.payload,
                created_at=entry.created_at,
                ttl_seconds=entry.ttl_seconds,
                hit_count=entry.hit_count + 1,
                last_access_at=now,
            )
            self._cache[key] = entry
            self._cache.move_to_end(key)
            self._metrics.record_hit()
            return entry

    def set(self, key: str, payload: str, ttl_seconds: int, created_at: float | None = None):
        with self._lock:
            now = self._clock()
            if key in self._cache:
                del self._cache[key]

            self._cache[key] = HotEntry(
                payload=payload,
                created_at=now if created_at is None else created_at,
                ttl_seconds=ttl_seconds,
                last_access_at=now,
            )

            if self._maxsize is not None and len(self._cache) > self._maxsize:
                oldest_key = next(iter(self._cache))
                del self._cache[oldest_key]
                self._metrics.record_eviction()

    def contains(self, key: str) -> bool:
        """Presence check that does not count as an access."""
        with self._lock:
            entry = self._cache.get(key)
            return entry is not None and not entry.is_expired(self._clock())

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            expired = [k for k, v in self._cache.items() if v.is_expired(now)]
            for key in expired:
                del self._cache[key]
            return len(expired)

    def get_metrics(self) -> CacheMetrics:
        """Return the metrics tracker for this cache."""
        return self._metrics

    def size(self) -> int:
        """Return current number of entries in cache."""
        with self._lock:
            return len(self._cache)
