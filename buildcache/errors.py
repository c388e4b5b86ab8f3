"""Error taxonomy for buildcache.

Every error carries a stable ``code`` for structured handling. Only
BuildFailed and OperationCancelled surface to callers as operation
failures; the rest degrade to "treat as miss" or "skip this tier".
"""

from __future__ import annotations

# Error code constants
HASHING_INPUT_MISSING = "hashing_input_missing"
TIER_UNAVAILABLE = "tier_unavailable"
FETCH_FAILED = "fetch_failed"
BUILD_FAILED = "build_failed"
STORE_FAILED = "store_failed"
METADATA_CORRUPT = "metadata_corrupt"
METADATA_ERROR = "metadata_error"
CACHE_CONFLICT = "cache_conflict"
CANCELLED = "cancelled"
DOCKER_ERROR = "docker_error"
IMAGE_NOT_FOUND = "image_not_found"
REGISTRY_API_ERROR = "registry_api_error"


class BuildCacheError(Exception):
    """Base error for buildcache operations."""

    default_code = "buildcache_error"

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code or self.default_code


class HashingInputMissing(BuildCacheError):
    """A referenced build input does not exist and was left out of the digest."""

    default_code = HASHING_INPUT_MISSING


class TierUnavailable(BuildCacheError):
    """A tier's probe could not complete."""

    default_code = TIER_UNAVAILABLE

    def __init__(self, tier: str, message: str, code: str | None = None) -> None:
        super().__init__(f"{tier}: {message}", code)
        self.tier = tier


class FetchFailed(BuildCacheError):
    """A tier reported presence but could not materialize the artifact."""

    default_code = FETCH_FAILED

    def __init__(self, tier: str, message: str, code: str | None = None) -> None:
        super().__init__(f"{tier}: {message}", code)
        self.tier = tier


class StoreFailed(BuildCacheError):
    """A tier write-through failed after a successful build."""

    default_code = STORE_FAILED

    def __init__(self, tier: str, message: str, code: str | None = None) -> None:
        super().__init__(f"{tier}: {message}", code)
        self.tier = tier


class BuildFailed(BuildCacheError):
    """The external build invocation failed."""

    default_code = BUILD_FAILED

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message, code)
        self.exit_code = exit_code


class OperationCancelled(BuildCacheError):
    """The caller's deadline expired or the operation was cancelled."""

    default_code = CANCELLED


class MetadataStoreError(BuildCacheError):
    """The metadata store could not be read or written."""

    default_code = METADATA_ERROR


class MetadataCorrupt(MetadataStoreError):
    """The persisted metadata store is unreadable."""

    default_code = METADATA_CORRUPT


class CacheConflictError(MetadataStoreError):
    """An entry already exists for the cache key."""

    default_code = CACHE_CONFLICT

    def __init__(self, cache_key: str) -> None:
        super().__init__(f"Cache entry already exists for key: {cache_key}")
        self.cache_key = cache_key


class DockerCommandError(BuildCacheError):
    """A container CLI command failed."""

    default_code = DOCKER_ERROR

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str | None = None,
        output: str = "",
    ) -> None:
        super().__init__(message, code)
        self.exit_code = exit_code
        self.output = output


class ImageNotFoundError(DockerCommandError):
    """The requested image does not exist in the registry."""

    default_code = IMAGE_NOT_FOUND


class RegistryAPIError(BuildCacheError):
    """A registry HTTP API request failed."""

    default_code = REGISTRY_API_ERROR


__all__ = [
    "BUILD_FAILED",
    "CACHE_CONFLICT",
    "CANCELLED",
    "DOCKER_ERROR",
    "FETCH_FAILED",
    "HASHING_INPUT_MISSING",
    "IMAGE_NOT_FOUND",
    "METADATA_CORRUPT",
    "METADATA_ERROR",
    "REGISTRY_API_ERROR",
    "STORE_FAILED",
    "TIER_UNAVAILABLE",
    "BuildCacheError",
    "BuildFailed",
    "CacheConflictError",
    "DockerCommandError",
    "FetchFailed",
    "HashingInputMissing",
    "ImageNotFoundError",
    "MetadataCorrupt",
    "MetadataStoreError",
    "OperationCancelled",
    "RegistryAPIError",
    "StoreFailed",
    "TierUnavailable",
]
