"""Shared fixtures and collaborator fakes.

FakeDocker stands in for the docker CLI: it keeps a set of local image
tags, a set of remote registry tags, and writes small text blobs on save.
"""

import threading
from pathlib import Path

import pytest

from buildcache.builds.cache_key import BuildInputs
from buildcache.builds.service import FallbackOrchestrator
from buildcache.config import Settings
from buildcache.errors import (
    BuildFailed,
    DockerCommandError,
    ImageNotFoundError,
    OperationCancelled,
)
from buildcache.metadata.store import MetadataStore
from buildcache.stats import StatsCollector
from buildcache.tiers import TierChain, build_tiers

REGISTRY_URL = "registry.test:5000"
BLOB_PREFIX = "image:"


class FakeDocker:
    """In-memory BuildInvoker, RegistryClient and ImageRuntime."""

    def __init__(self) -> None:
        self.images: set[str] = set()
        self.remote: set[str] = set()
        self.builds: list[dict] = []
        self.build_error: str | None = None
        self.fail_push = False
        self.fail_save = False
        # Simulate a registry that exceeds the per-call timeout
        self.stall_pull = False
        self.stall_push = False
        # Set to block build() until released
        self.build_gate: threading.Event | None = None
        self.build_started = threading.Event()
        self.on_build = None
        self._lock = threading.Lock()

    @property
    def build_count(self) -> int:
        return len(self.builds)

    def build(
        self,
        *,
        image_name,
        definition_path,
        context_path,
        build_args,
        target=None,
        platform=None,
        cache_hints=(),
        timeout=None,
    ):
        with self._lock:
            self.builds.append(
                {
                    "image_name": image_name,
                    "build_args": dict(build_args),
                    "target": target,
                    "platform": platform,
                    "cache_hints": list(cache_hints),
                    "timeout": timeout,
                }
            )
        self.build_started.set()
        if self.build_gate is not None:
            self.build_gate.wait(timeout=10)
        if self.on_build is not None:
            self.on_build()
        if self.build_error:
            raise BuildFailed(self.build_error, exit_code=1)
        self.images.add(image_name)

    def pull(self, tag, *, timeout=None):
        if self.stall_pull:
            raise OperationCancelled(f"docker pull {tag} timed out after {timeout} seconds")
        if tag not in self.remote:
            raise ImageNotFoundError(f"Image not found: {tag}", exit_code=1)
        self.images.add(tag)
        return tag

    def push(self, tag, *, timeout=None):
        if self.stall_push:
            raise OperationCancelled(f"docker push {tag} timed out after {timeout} seconds")
        if self.fail_push:
            raise DockerCommandError(f"push of {tag} denied", exit_code=1)
        if tag not in self.images:
            raise DockerCommandError(f"no such image: {tag}", exit_code=1)
        self.remote.add(tag)

    def tag(self, source, target):
        if source not in self.images:
            raise DockerCommandError(f"no such image: {source}", exit_code=1)
        self.images.add(target)

    def save(self, image, path, *, timeout=None):
        if self.fail_save:
            raise DockerCommandError("disk full", exit_code=1)
        if image not in self.images:
            raise DockerCommandError(f"no such image: {image}", exit_code=1)
        Path(path).write_text(f"{BLOB_PREFIX}{image}")

    def load(self, path, *, timeout=None):
        content = Path(path).read_text()
        if not content.startswith(BLOB_PREFIX):
            raise DockerCommandError("invalid tar header", exit_code=1)
        self.images.add(content[len(BLOB_PREFIX) :])


@pytest.fixture
def docker() -> FakeDocker:
    """Fake docker collaborator."""
    return FakeDocker()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with an isolated cache directory and a registry."""
    return Settings(
        cache_dir=tmp_path / "cache",
        registry_url=REGISTRY_URL,
        tiers=["local", "registry", "layer"],
        lock_timeout=5,
    )


@pytest.fixture
def chain(settings: Settings, docker: FakeDocker) -> TierChain:
    """Tier chain wired to the fake docker."""
    return build_tiers(settings, docker, docker)


@pytest.fixture
def metadata(settings: Settings):
    """Metadata store inside the cache directory."""
    store = MetadataStore.from_settings(settings)
    yield store
    store.close()


@pytest.fixture
def stats() -> StatsCollector:
    return StatsCollector()


@pytest.fixture
def orchestrator(settings, chain, docker, metadata, stats) -> FallbackOrchestrator:
    """Orchestrator using the fake docker for every collaborator."""
    return FallbackOrchestrator(settings, chain, docker, metadata=metadata, stats=stats)


@pytest.fixture
def build_context(tmp_path: Path) -> BuildInputs:
    """A small build definition and context tree."""
    context = tmp_path / "context"
    (context / "src").mkdir(parents=True)
    (context / "src" / "app.py").write_text("print('hello')\n")
    (context / "requirements.txt").write_text("requests\n")
    dockerfile = context / "Dockerfile"
    dockerfile.write_text("FROM python:3.12-slim\nCOPY . /app\n")
    return BuildInputs(definition_path=dockerfile, context_path=context)
