"""Hit/miss and timing accounting for cache requests."""

from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from buildcache.types import TierName


@dataclass(frozen=True)
class StatsSnapshot:
    """Point-in-time view of collected statistics."""

    hits: dict[str, int] = field(default_factory=dict)
    misses: int = 0
    build_time_ms: int = 0
    cache_time_ms: int = 0
    store_failures: dict[str, int] = field(default_factory=dict)
    build_failures: int = 0
    cancellations: int = 0

    @property
    def total_hits(self) -> int:
        return sum(self.hits.values())

    @property
    def total_requests(self) -> int:
        return self.total_hits + self.misses

    @property
    def hit_rate(self) -> float:
        """Hit rate in percent, 0.0 when there were no requests."""
        if self.total_requests == 0:
            return 0.0
        return round(self.total_hits / self.total_requests * 100, 1)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "hits": dict(self.hits),
            "misses": self.misses,
            "total_hits": self.total_hits,
            "total_requests": self.total_requests,
            "hit_rate": self.hit_rate,
            "build_time_ms": self.build_time_ms,
            "cache_time_ms": self.cache_time_ms,
            "store_failures": dict(self.store_failures),
            "build_failures": self.build_failures,
            "cancellations": self.cancellations,
        }


class StatsCollector:
    """Thread-safe accumulator for one process or one explicit session."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        """Start a new session."""
        with self._lock:
            self._hits: Counter[str] = Counter()
            self._store_failures: Counter[str] = Counter()
            self._misses = 0
            self._build_time_ms = 0
            self._cache_time_ms = 0
            self._build_failures = 0
            self._cancellations = 0

    def record_hit(self, tier: TierName) -> None:
        with self._lock:
            self._hits[tier.value] += 1

    def record_miss(self) -> None:
        with self._lock:
            self._misses += 1

    def add_build_time(self, ms: int) -> None:
        with self._lock:
            self._build_time_ms += ms

    def add_cache_time(self, ms: int) -> None:
        """Add time spent probing, fetching or storing."""
        with self._lock:
            self._cache_time_ms += ms

    def record_store_failure(self, tier: TierName) -> None:
        with self._lock:
            self._store_failures[tier.value] += 1

    def record_build_failure(self) -> None:
        with self._lock:
            self._build_failures += 1

    def record_cancellation(self) -> None:
        with self._lock:
            self._cancellations += 1

    def snapshot(self) -> StatsSnapshot:
        """Return the current statistics."""
        with self._lock:
            return StatsSnapshot(
                hits=dict(self._hits),
                misses=self._misses,
                build_time_ms=self._build_time_ms,
                cache_time_ms=self._cache_time_ms,
                store_failures=dict(self._store_failures),
                build_failures=self._build_failures,
                cancellations=self._cancellations,
            )


__all__ = ["StatsCollector", "StatsSnapshot"]
