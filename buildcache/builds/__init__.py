"""Build orchestration module.

This module handles:
- Cache key computation
- Probing tiers, building on a miss and writing through
- Cache statistics, clearing and retention
"""

from buildcache.builds.cache_key import BuildInputs, CacheKeyDeriver, ContentHasher

__all__ = ["BuildInputs", "CacheKeyDeriver", "ContentHasher"]

# Lazy imports for submodules to avoid circular imports
# Access via buildcache.builds.service, etc.
