"""Cache key computation for builds.

This module handles:
- Canonical build input capture (BuildInputs)
- Deterministic hashing of the definition file, context tree, build
  arguments and target stage (ContentHasher)
- Extension of the key with platform and upstream dependency keys
  (CacheKeyDeriver)

Identical inputs always produce identical cache keys. Keys are truncated
hex digests; the truncation length is configurable.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from buildcache.config import DEFAULT_HASH_EXCLUDE
from buildcache.errors import HashingInputMissing

if TYPE_CHECKING:
    from buildcache.config import Settings

logger = logging.getLogger(__name__)

# Fed in place of the target stage when none is given
DEFAULT_TARGET_SENTINEL = "default"

DEFAULT_KEY_LENGTH = 16

# Chunk size for streaming file content into the digest (bytes)
HASH_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class BuildInputs:
    """Everything that determines the image a build produces.

    The build-argument mapping is copied on construction, so later changes
    to the caller's dict do not leak into a captured value.

    Attributes:
        definition_path: Build-definition file (e.g. a Dockerfile).
        context_path: Source-context directory.
        build_args: Ordered build-argument mapping.
        target: Target stage name, if any.
        platform: Target platform string, if any.
    """

    definition_path: Path
    context_path: Path
    build_args: Mapping[str, str] = field(default_factory=dict)
    target: str | None = None
    platform: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "definition_path", Path(self.definition_path))
        object.__setattr__(self, "context_path", Path(self.context_path))
        object.__setattr__(
            self, "build_args", {str(k): str(v) for k, v in self.build_args.items()}
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a provenance snapshot suitable for JSON.

        Returns:
            Dictionary representation of the inputs.
        """
        return {
            "definition_path": str(self.definition_path),
            "context_path": str(self.context_path),
            "build_args": dict(self.build_args),
            "target": self.target,
            "platform": self.platform,
        }


def canonical_build_args(build_args: Mapping[str, str]) -> str:
    """Serialize build arguments independent of mapping order.

    Args:
        build_args: Build-argument mapping.

    Returns:
        Canonical JSON (sorted keys, no extra whitespace).
    """
    return json.dumps(dict(build_args), sort_keys=True, separators=(",", ":"))


def iter_context_files(
    context_dir: Path,
    exclude: Iterable[str] = DEFAULT_HASH_EXCLUDE,
) -> Iterator[tuple[str, Path]]:
    """Walk a context directory in deterministic order.

    Entries are sorted by name at every level and visited depth first. The
    walk uses an explicit stack, so deep trees do not hit the recursion
    limit. Symlinked files are read through; symlinked directories are not
    descended into, which rules out cycles.

    Args:
        context_dir: Directory to walk.
        exclude: Directory names that are skipped entirely.

    Yields:
        Tuples of (POSIX relative path, absolute path) for regular files.
    """
    excluded = frozenset(exclude)
    stack: list[Path] = sorted(context_dir.iterdir(), key=lambda p: p.name, reverse=True)

    while stack:
        entry = stack.pop()
        if entry.is_dir():
            if entry.name in excluded or entry.is_symlink():
                continue
            stack.extend(sorted(entry.iterdir(), key=lambda p: p.name, reverse=True))
        elif entry.is_file():
            yield entry.relative_to(context_dir).as_posix(), entry


def _feed_file(digest: Any, path: Path) -> None:
    with path.open("rb") as f:
        while chunk := f.read(HASH_CHUNK_SIZE):
            digest.update(chunk)


class ContentHasher:
    """Deterministic SHA-256 digest over build inputs.

    Feeds, in this order: the definition file bytes, each context file's
    relative path and size (NUL-terminated) followed by its bytes, the
    canonical build arguments, and the target stage (or a sentinel).
    """

    def __init__(
        self,
        exclude: Iterable[str] = DEFAULT_HASH_EXCLUDE,
        key_length: int = DEFAULT_KEY_LENGTH,
    ) -> None:
        self.exclude = frozenset(exclude)
        self.key_length = key_length

    def digest(self, inputs: BuildInputs) -> Any:
        """Return an un-finalized digest over the inputs.

        Callers may feed further data before finalizing.
        """
        digest = hashlib.sha256()

        if inputs.definition_path.is_file():
            _feed_file(digest, inputs.definition_path)
        else:
            self._missing(f"build definition not found: {inputs.definition_path}")

        if inputs.context_path.is_dir():
            for rel_name, path in iter_context_files(inputs.context_path, self.exclude):
                # Path and size delimit each file so bytes cannot shift between entries
                digest.update(f"{rel_name}\0{path.stat().st_size}\0".encode("utf-8"))
                _feed_file(digest, path)
        else:
            self._missing(f"context directory not found: {inputs.context_path}")

        digest.update(canonical_build_args(inputs.build_args).encode("utf-8"))
        digest.update((inputs.target or DEFAULT_TARGET_SENTINEL).encode("utf-8"))
        return digest

    def finalize(self, digest: Any) -> str:
        """Truncate a digest to a cache key."""
        return str(digest.hexdigest()[: self.key_length])

    def hash(self, inputs: BuildInputs) -> str:
        """Compute the cache key for build inputs.

        Args:
            inputs: Build inputs.

        Returns:
            Cache key as a fixed-length hex string.
        """
        return self.finalize(self.digest(inputs))

    @staticmethod
    def _missing(message: str) -> None:
        # Absent inputs are skipped; callers validate required inputs themselves
        logger.debug("%s", HashingInputMissing(message))


class CacheKeyDeriver:
    """Derive cache keys including environment context.

    Extends the hasher's digest with the target platform and the keys of
    declared upstream dependencies, so a dependency's key change
    propagates to its dependents. The extension is fed after the hasher's
    own inputs and only when present.
    """

    def __init__(self, hasher: ContentHasher | None = None) -> None:
        self.hasher = hasher or ContentHasher()

    @classmethod
    def from_settings(cls, settings: Settings) -> CacheKeyDeriver:
        """Create a deriver configured by settings."""
        return cls(ContentHasher(settings.hash_exclude, settings.key_length))

    def derive(
        self,
        inputs: BuildInputs,
        dependencies: Iterable[str] = (),
    ) -> str:
        """Compute the cache key for inputs and upstream dependency keys.

        Args:
            inputs: Build inputs.
            dependencies: Cache keys (or other identifiers) of upstream builds.

        Returns:
            Cache key as a fixed-length hex string.
        """
        digest = self.hasher.digest(inputs)
        if inputs.platform:
            digest.update(f"platform:{inputs.platform}".encode())
        deps = sorted(set(dependencies))
        if deps:
            digest.update(f"deps:{json.dumps(deps, separators=(',', ':'))}".encode())
        return self.hasher.finalize(digest)


def compute_cache_key(
    inputs: BuildInputs,
    dependencies: Iterable[str] = (),
    settings: Settings | None = None,
) -> str:
    """Convenience function to compute a cache key.

    Args:
        inputs: Build inputs.
        dependencies: Upstream dependency keys.
        settings: Settings providing exclusions and key length; defaults
            are used when not provided.

    Returns:
        Cache key.
    """
    deriver = CacheKeyDeriver.from_settings(settings) if settings else CacheKeyDeriver()
    return deriver.derive(inputs, dependencies)


__all__ = [
    "DEFAULT_KEY_LENGTH",
    "DEFAULT_TARGET_SENTINEL",
    "BuildInputs",
    "CacheKeyDeriver",
    "ContentHasher",
    "canonical_build_args",
    "compute_cache_key",
    "iter_context_files",
]
