"""
Detection Cache - fused results keyed by image fingerprint.

Bounded in memory with least-recently-used eviction, so repeated
detection on an unchanged screen skips every strategy.
"""

import itertools
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional

from .config import CacheConfig, get_config
from .models import FusedResult

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """One cached fused result."""

    fingerprint: str
    result: FusedResult
    last_access: float
    insertion_order: int


@dataclass
class CacheStats:
    """Statistics about the cache."""

    size: int
    capacity: int
    hits: int
    misses: int
    evictions: int
    dropped: int

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0

    def to_dict(self) -> dict:
        return {
            "size": self.size,
            "capacity": self.capacity,
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "dropped": self.dropped,
            "hit_rate": self.hit_rate,
        }


class DetectionCache:
    """
    Content-addressed LRU store of fused detection results.

    Entries live in an OrderedDict ordered from least to most recently
    used, which gives O(1) lookup, touch and eviction. Every structural
    change happens under one lock, so the cache can be shared between
    concurrent detection calls.
    """

    def __init__(
        self,
        capacity: Optional[int] = None,
        config: Optional[CacheConfig] = None
    ):
        self.config = config or get_config().cache
        self._capacity = capacity if capacity is not None else self.config.capacity
        if self._capacity <= 0:
            raise ValueError(f"Cache capacity must be greater than 0, got {self._capacity}")

        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._counter = itertools.count()

        # Statistics
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._dropped = 0

    def get(self, fingerprint: str) -> Optional[FusedResult]:
        """
        Look up a fused result.

        A hit marks the entry most recently used. A malformed entry is
        dropped and reported as a miss.
        """
        if not fingerprint:
            with self._lock:
                self._misses += 1
            return None

        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None:
                self._misses += 1
                return None

            if not self._is_valid(fingerprint, entry):
                del self._entries[fingerprint]
                self._dropped += 1
                self._misses += 1
                logger.warning(f"Dropped malformed cache entry {fingerprint[:8]}...")
                return None

            self._entries.move_to_end(fingerprint)
            entry.last_access = time.monotonic()
            self._hits += 1
            return entry.result

    def put(self, fingerprint: str, result: FusedResult) -> None:
        """Insert or replace a result, evicting the least recently used entry at capacity."""
        if not fingerprint:
            raise ValueError("Fingerprint cannot be empty")
        if not isinstance(result, FusedResult):
            raise TypeError(f"Expected FusedResult, got {type(result).__name__}")

        with self._lock:
            now = time.monotonic()
            existing = self._entries.get(fingerprint)
            if existing is not None:
                existing.result = result
                existing.last_access = now
                self._entries.move_to_end(fingerprint)
                return

            while len(self._entries) >= self._capacity:
                evicted, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug(f"Evicted cache entry {evicted[:8]}...")

            self._entries[fingerprint] = CacheEntry(
                fingerprint=fingerprint,
                result=result,
                last_access=now,
                insertion_order=next(self._counter),
            )

    def clear(self) -> None:
        """Remove every entry. Hit and miss counters are kept."""
        with self._lock:
            self._entries.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def capacity(self) -> int:
        return self._capacity

    def hit_count(self) -> int:
        with self._lock:
            return self._hits

    def miss_count(self) -> int:
        with self._lock:
            return self._misses

    def stats(self) -> CacheStats:
        """Get cache statistics."""
        with self._lock:
            return CacheStats(
                size=len(self._entries),
                capacity=self._capacity,
                hits=self._hits,
                misses=self._misses,
                evictions=self._evictions,
                dropped=self._dropped,
            )

    def fingerprints(self) -> list[str]:
        """Cached fingerprints from least to most recently used."""
        with self._lock:
            return list(self._entries.keys())

    def __contains__(self, fingerprint: object) -> bool:
        with self._lock:
            return fingerprint in self._entries

    def __len__(self) -> int:
        return self.size()

    @staticmethod
    def _is_valid(fingerprint: str, entry: object) -> bool:
        return (
            isinstance(entry, CacheEntry)
            and entry.fingerprint == fingerprint
            and isinstance(entry.result, FusedResult)
        )
