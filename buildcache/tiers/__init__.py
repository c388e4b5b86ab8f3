"""Cache tiers.

This module handles:
- The CacheTier protocol
- Local disk, remote registry and build-tool layer tiers
- Building the configured tier chain in priority order
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from buildcache.tiers.base import CacheTier
from buildcache.tiers.layer import LayerTier
from buildcache.tiers.local import LocalTier
from buildcache.tiers.registry import RegistryTier
from buildcache.types import TierName

if TYPE_CHECKING:
    from buildcache.config import Settings
    from buildcache.docker.interfaces import ImageRuntime, RegistryClient
    from buildcache.docker.registry_api import RegistryAPI

logger = logging.getLogger(__name__)


@dataclass
class TierChain:
    """Configured tiers in probe priority order.

    Attributes:
        tiers: Storage tiers probed and written through, as configured.
        layer: Layer tier supplying build cache hints, if enabled.
    """

    tiers: list[CacheTier] = field(default_factory=list)
    layer: LayerTier | None = None

    def get(self, name: TierName) -> CacheTier | None:
        """Return the tier with the given name, if configured."""
        for tier in self.tiers:
            if tier.name == name:
                return tier
        return None


def build_tiers(
    settings: Settings,
    runtime: ImageRuntime,
    registry_client: RegistryClient,
    registry_api: RegistryAPI | None = None,
) -> TierChain:
    """Create the tiers enabled in settings, in the configured order.

    The registry tier is skipped when no registry URL is configured.

    Args:
        settings: Settings naming the enabled tiers.
        runtime: Image runtime for the local tier.
        registry_client: Registry transport for the registry tier.
        registry_api: Registry HTTP API used to delete cache tags.

    Returns:
        TierChain with tiers in priority order.
    """
    chain = TierChain()
    registry_tier: RegistryTier | None = None

    for name in settings.tiers:
        if name == TierName.LOCAL:
            chain.tiers.append(LocalTier(settings.cache_dir, runtime))
        elif name == TierName.REGISTRY:
            if not settings.registry_url:
                logger.warning("Registry tier enabled but no registry_url configured; skipping")
                continue
            registry_tier = RegistryTier(
                settings.registry_url,
                settings.registry_repository,
                registry_client,
                api=registry_api,
                push_latest=settings.push_latest,
            )
            chain.tiers.append(registry_tier)
        elif name == TierName.LAYER:
            chain.layer = LayerTier()

    if chain.layer is not None and registry_tier is not None and registry_tier.push_latest:
        chain.layer.registry_latest_tag = registry_tier.latest_tag

    return chain


__all__ = ["CacheTier", "LayerTier", "LocalTier", "RegistryTier", "TierChain", "build_tiers"]
