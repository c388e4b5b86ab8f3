"""Cache maintenance operations.

This module handles:
- Cache statistics (entry count, stored size, oldest entry)
- Clearing every tier artifact and resetting the metadata store
- Count-based retention: keep the newest N entries, remove the rest

Nothing is pruned implicitly; retention only runs when asked to.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from buildcache.metadata.store import MetadataStore
from buildcache.tiers import LocalTier, TierChain
from buildcache.types import TierName

logger = logging.getLogger(__name__)


@dataclass
class CacheStatsInfo:
    """Summary of what the cache currently holds."""

    entries: int
    total_size_bytes: int
    oldest_entry: datetime | None = None
    locations: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "entries": self.entries,
            "total_size_bytes": self.total_size_bytes,
            "total_size": format_bytes(self.total_size_bytes),
            "oldest_entry": self.oldest_entry.isoformat() if self.oldest_entry else None,
            "locations": dict(self.locations),
        }


@dataclass
class ClearResult:
    """Outcome of clearing the cache."""

    entries_removed: int
    artifacts_removed: int


@dataclass
class PruneResult:
    """Outcome of applying the retention policy."""

    kept: list[str] = field(default_factory=list)
    pruned: list[str] = field(default_factory=list)
    artifacts_removed: int = 0


def format_bytes(size: int) -> str:
    """Render a byte count with a binary unit, e.g. ``1.5 MB``."""
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(size)
    unit_index = 0
    while value >= 1024 and unit_index < len(units) - 1:
        value /= 1024
        unit_index += 1
    return f"{value:.1f} {units[unit_index]}"


def get_cache_stats(store: MetadataStore) -> CacheStatsInfo:
    """Summarize the metadata store.

    Raises:
        MetadataStoreError: If the store cannot be read.
    """
    oldest = store.oldest()
    return CacheStatsInfo(
        entries=store.count(),
        total_size_bytes=store.total_size(),
        oldest_entry=oldest.created_at if oldest else None,
        locations=store.location_counts(),
    )


def _remove_artifacts(chain: TierChain, store: MetadataStore, key: str) -> int:
    """Remove every known artifact of a key from every configured tier."""
    removed = 0
    handled: set[TierName] = set()

    for record in store.locations(key):
        tier = chain.get(record.tier)
        if tier is None:
            logger.warning(
                "Tier %s holds %s but is not configured; leaving it", record.tier.value, key
            )
            continue
        handled.add(record.tier)
        if _safe_remove(tier, key, record.locator):
            removed += 1

    # Locations are a cache of tier state; also try tiers without a record
    for tier in chain.tiers:
        if tier.name not in handled and _safe_remove(tier, key, None):
            removed += 1
    return removed


def _safe_remove(tier: Any, key: str, locator: str | None) -> bool:
    try:
        return bool(tier.remove(key, locator))
    except OSError as e:
        logger.error("Failed to remove %s from %s tier: %s", key, tier.name.value, e)
        return False


def clear_cache(store: MetadataStore, chain: TierChain) -> ClearResult:
    """Remove every tier artifact and reset the metadata store.

    Raises:
        MetadataStoreError: If the store cannot be read or written.
    """
    artifacts_removed = 0
    keys = list(store.all())
    for key in keys:
        artifacts_removed += _remove_artifacts(chain, store, key)

    # Blobs without metadata, e.g. left by an interrupted run
    local = chain.get(TierName.LOCAL)
    if isinstance(local, LocalTier) and local.cache_dir.is_dir():
        for blob in local.cache_dir.glob("*.tar"):
            if blob.stem not in keys and _safe_remove(local, blob.stem, str(blob)):
                artifacts_removed += 1

    entries_removed = store.clear()
    logger.info(
        "Cleared %d cache entries (%d artifacts removed)", entries_removed, artifacts_removed
    )
    return ClearResult(entries_removed=entries_removed, artifacts_removed=artifacts_removed)


def prune_cache(store: MetadataStore, chain: TierChain, keep: int) -> PruneResult:
    """Keep the newest ``keep`` entries and remove the others.

    For each pruned entry the tier artifacts are removed first, then the
    metadata entry.

    Raises:
        MetadataStoreError: If the store cannot be read or written.
    """
    entries = list(store.all().values())  # oldest first
    cutoff = max(len(entries) - keep, 0)
    result = PruneResult(kept=[e.cache_key for e in entries[cutoff:]])

    if cutoff == 0:
        logger.info("Cache within limit (%d/%d)", len(entries), keep)
        return result

    for entry in entries[:cutoff]:
        result.artifacts_removed += _remove_artifacts(chain, store, entry.cache_key)
        store.delete(entry.cache_key)
        result.pruned.append(entry.cache_key)
        logger.info("Pruned %s (%s)", entry.cache_key, entry.image_name)

    return result


__all__ = [
    "CacheStatsInfo",
    "ClearResult",
    "PruneResult",
    "clear_cache",
    "format_bytes",
    "get_cache_stats",
    "prune_cache",
]
