"""Collaborator protocols.

The cache core never runs a build tool or talks to a registry directly.
It depends on these structural interfaces, which the Docker adapter
implements and tests replace with fakes.
"""

from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Protocol, runtime_checkable


@runtime_checkable
class BuildInvoker(Protocol):
    """Runs an image build and tags the result."""

    def build(
        self,
        *,
        image_name: str,
        definition_path: Path,
        context_path: Path,
        build_args: Mapping[str, str],
        target: str | None = None,
        platform: str | None = None,
        cache_hints: Sequence[str] = (),
        timeout: float | None = None,
    ) -> None:
        """Build an image and tag it as ``image_name``.

        Raises:
            BuildFailed: If the build fails.
            OperationCancelled: If the timeout expires.
        """
        ...


@runtime_checkable
class RegistryClient(Protocol):
    """Moves images between the local runtime and a remote registry."""

    def pull(self, tag: str, *, timeout: float | None = None) -> str:
        """Pull a tag and return the local image reference.

        Raises:
            ImageNotFoundError: If the tag does not exist remotely.
            DockerCommandError: On any other failure.
        """
        ...

    def push(self, tag: str, *, timeout: float | None = None) -> None:
        """Push a local tag to its registry."""
        ...

    def tag(self, source: str, target: str) -> None:
        """Add a tag to a local image."""
        ...


@runtime_checkable
class ImageRuntime(Protocol):
    """Serializes images to and from blob files."""

    def save(self, image: str, path: Path, *, timeout: float | None = None) -> None:
        """Write an image to a blob file."""
        ...

    def load(self, path: Path, *, timeout: float | None = None) -> None:
        """Load a blob file into the local image store."""
        ...

    def tag(self, source: str, target: str) -> None:
        """Add a tag to a local image."""
        ...


__all__ = ["BuildInvoker", "ImageRuntime", "RegistryClient"]
