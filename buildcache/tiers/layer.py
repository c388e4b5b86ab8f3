"""Build-tool layer cache tier.

The build tool's incremental layer cache is opaque to buildcache. This
tier has no probe, fetch or store; it only tells the BuildInvoker which
prior images to use as cache sources.
"""

from buildcache.types import TierName


class LayerTier:
    """Pass-through tier that supplies cache hints to builds."""

    name = TierName.LAYER

    def __init__(self, registry_latest_tag: str | None = None) -> None:
        self.registry_latest_tag = registry_latest_tag

    def cache_hints(self, image_name: str) -> list[str]:
        """Images the build tool may reuse layers from.

        Args:
            image_name: Image being built; a previous build of it is the
                primary cache source.

        Returns:
            Cache-source references, most specific first.
        """
        hints = [image_name]
        if self.registry_latest_tag and self.registry_latest_tag != image_name:
            hints.append(self.registry_latest_tag)
        return hints


__all__ = ["LayerTier"]
