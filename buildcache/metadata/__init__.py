"""Metadata module.

This module handles:
- ORM models for cache entries and tier locations
- The MetadataStore mapping cache keys to entries
"""

from buildcache.metadata.models import CacheEntryRecord, TierLocation
from buildcache.metadata.store import MetadataStore

__all__ = ["CacheEntryRecord", "MetadataStore", "TierLocation"]
