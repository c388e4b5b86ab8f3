"""Docker CLI adapter.

This module handles:
- Composing `docker build` commands from build inputs and cache hints
- Executing docker commands with subprocess under a timeout
- Mapping failures to BuildFailed / DockerCommandError / OperationCancelled

DockerClient satisfies BuildInvoker, RegistryClient and ImageRuntime.
"""

from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

from buildcache.errors import (
    BuildFailed,
    DockerCommandError,
    ImageNotFoundError,
    OperationCancelled,
)

logger = logging.getLogger(__name__)

# Lines of build output kept in error messages
ERROR_TAIL_LINES = 20

_NOT_FOUND_PATTERN = re.compile(
    r"manifest unknown|not found|does not exist|repository .* not found",
    re.IGNORECASE,
)


def compose_build_command(
    image_name: str,
    definition_path: Path,
    context_path: Path,
    build_args: Mapping[str, str] | None = None,
    target: str | None = None,
    platform: str | None = None,
    cache_hints: Sequence[str] = (),
    inline_cache: bool = False,
    docker_binary: str = "docker",
) -> list[str]:
    """Compose the `docker build` command.

    Args:
        image_name: Tag for the produced image.
        definition_path: Dockerfile path.
        context_path: Build context directory.
        build_args: Build arguments, passed in mapping order.
        target: Target stage.
        platform: Target platform.
        cache_hints: Images passed as --cache-from.
        inline_cache: Embed layer-cache metadata in the image (BuildKit).
        docker_binary: Docker executable.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = [docker_binary, "build", "-t", image_name, "-f", str(definition_path)]

    for key, value in (build_args or {}).items():
        cmd.extend(["--build-arg", f"{key}={value}"])

    if inline_cache:
        cmd.extend(["--build-arg", "BUILDKIT_INLINE_CACHE=1"])

    if target:
        cmd.extend(["--target", target])

    if platform:
        cmd.extend(["--platform", platform])

    for hint in cache_hints:
        cmd.extend(["--cache-from", hint])

    cmd.append(str(context_path))
    return cmd


def _tail(output: str, lines: int = ERROR_TAIL_LINES) -> str:
    return "\n".join(output.strip().splitlines()[-lines:])


class DockerClient:
    """Runs docker commands for builds, blob transfer and registry transport.

    Attributes:
        docker_binary: Docker executable.
        buildkit: Enable BuildKit and inline cache metadata for builds.
    """

    def __init__(self, docker_binary: str = "docker", buildkit: bool = False) -> None:
        self.docker_binary = docker_binary
        self.buildkit = buildkit

    def _run(
        self,
        args: list[str],
        timeout: float | None = None,
        env_override: dict[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        cmd = [self.docker_binary, *args]
        cmd_str = shlex.join(cmd)
        logger.debug("Executing: %s", cmd_str)

        env: dict[str, str] | None = None
        if env_override:
            env = dict(os.environ)
            env.update(env_override)

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=env,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise OperationCancelled(
                f"'{cmd_str}' timed out after {timeout} seconds"
            ) from e
        except OSError as e:
            raise DockerCommandError(
                f"Failed to execute '{cmd_str}': {e}",
                code="execution_error",
            ) from e

        if result.returncode != 0:
            output = (result.stderr or "") + (result.stdout or "")
            raise DockerCommandError(
                f"'{cmd_str}' failed with exit code {result.returncode}: {_tail(output, 3)}",
                exit_code=result.returncode,
                output=output,
            )
        return result

    # BuildInvoker

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
        """Build an image with `docker build`.

        Raises:
            BuildFailed: If the build exits non-zero or cannot start.
            OperationCancelled: If the timeout expires.
        """
        cmd = compose_build_command(
            image_name=image_name,
            definition_path=definition_path,
            context_path=context_path,
            build_args=build_args,
            target=target,
            platform=platform,
            cache_hints=cache_hints,
            inline_cache=self.buildkit,
            docker_binary=self.docker_binary,
        )
        env_override = {"DOCKER_BUILDKIT": "1"} if self.buildkit else None
        logger.info("Building image %s", image_name)

        try:
            self._run(cmd[1:], timeout=timeout, env_override=env_override)
        except DockerCommandError as e:
            raise BuildFailed(
                f"Build of {image_name} failed: {_tail(e.output) or e}",
                exit_code=e.exit_code,
            ) from e

    # RegistryClient

    def pull(self, tag: str, *, timeout: float | None = None) -> str:
        """Pull a tag from its registry.

        Raises:
            ImageNotFoundError: If the registry does not have the tag.
            DockerCommandError: On other failures.
        """
        try:
            self._run(["pull", tag], timeout=timeout)
        except DockerCommandError as e:
            if e.exit_code is not None and _NOT_FOUND_PATTERN.search(e.output):
                raise ImageNotFoundError(
                    f"Image not found: {tag}", exit_code=e.exit_code, output=e.output
                ) from e
            raise
        return tag

    def push(self, tag: str, *, timeout: float | None = None) -> None:
        """Push a local tag to its registry."""
        self._run(["push", tag], timeout=timeout)

    def tag(self, source: str, target: str) -> None:
        """Add a tag to a local image."""
        self._run(["tag", source, target])

    # ImageRuntime

    def save(self, image: str, path: Path, *, timeout: float | None = None) -> None:
        """Write an image to a tar blob."""
        self._run(["save", "-o", str(path), image], timeout=timeout)

    def load(self, path: Path, *, timeout: float | None = None) -> None:
        """Load a tar blob into the local image store."""
        self._run(["load", "-i", str(path)], timeout=timeout)


__all__ = ["DockerClient", "compose_build_command"]
