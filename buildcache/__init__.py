"""buildcache - multi-tier build-artifact cache for container images.

This package decides whether a previously built image can be reused for a
given set of build inputs, and otherwise builds it and writes the result
through to every configured cache tier.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
