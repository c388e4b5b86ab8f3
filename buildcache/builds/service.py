"""Build service module.

This module provides the cache-aware build API:
- FallbackOrchestrator.execute(): probe tiers, build on miss, write through
- Single-flight per cache key within a process
- Cross-process locking to prevent duplicate builds
- Metadata and statistics updates

State machine per request:
    PROBING -> HIT -> DONE
    PROBING -> ALL_MISSED -> BUILDING -> BUILD_FAILED
                                      -> BUILT -> SAVING -> DONE
Any non-terminal state may end in CANCELLED when the deadline expires.
"""

from __future__ import annotations

import fcntl
import logging
import os
import threading
import time
from collections.abc import Iterable, Iterator, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from buildcache.builds.cache_key import BuildInputs, CacheKeyDeriver
from buildcache.errors import (
    BuildFailed,
    CacheConflictError,
    FetchFailed,
    MetadataStoreError,
    OperationCancelled,
    StoreFailed,
    TierUnavailable,
)
from buildcache.stats import StatsCollector
from buildcache.types import (
    CacheEntry,
    CacheResult,
    Deadline,
    RequestState,
    StoreOutcome,
    TierName,
)

if TYPE_CHECKING:
    from buildcache.config import Settings
    from buildcache.docker.interfaces import BuildInvoker
    from buildcache.metadata.store import MetadataStore
    from buildcache.tiers import TierChain

logger = logging.getLogger(__name__)

# Polling interval while waiting for a contended build lock (seconds)
LOCK_POLL_INTERVAL = 0.1


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


@contextmanager
def build_lock(
    lock_dir: Path,
    cache_key: str,
    timeout: float | None = None,
) -> Iterator[bool]:
    """Acquire a lock for a build cache key.

    Uses a file-based lock to prevent concurrent builds of the same key
    from separate processes.

    Args:
        lock_dir: Directory for lock files.
        cache_key: Cache key to lock on.
        timeout: Lock acquisition timeout in seconds (None = blocking).

    Yields:
        True if the lock was contended, i.e. another holder had to finish first.

    Raises:
        TimeoutError: If lock cannot be acquired within timeout.
    """
    lock_dir.mkdir(parents=True, exist_ok=True)

    safe_key = cache_key.replace(":", "_").replace("/", "_")[:64]
    lock_file = lock_dir / f"build_{safe_key}.lock"

    logger.debug("Acquiring build lock for key: %s", cache_key)

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    lock_acquired = False
    contended = False
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            lock_acquired = True
        except BlockingIOError:
            contended = True

        if not lock_acquired and timeout is not None:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    lock_acquired = True
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise TimeoutError(
                            f"Timeout waiting for build lock on {cache_key}"
                        ) from None
                    time.sleep(LOCK_POLL_INTERVAL)
        elif not lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_EX)
            lock_acquired = True

        logger.debug("Build lock acquired for key: %s", cache_key)
        yield contended
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Build lock released for key: %s", cache_key)
        os.close(fd)


@dataclass
class CacheRequest:
    """One top-level cache request.

    Attributes:
        inputs: Build inputs.
        image_name: Name the resulting image must carry.
        dependencies: Cache keys of upstream builds.
        force_rebuild: Skip probing and always build.
        deadline: Deadline for the whole request.
    """

    inputs: BuildInputs
    image_name: str
    dependencies: Sequence[str] = ()
    force_rebuild: bool = False
    deadline: Deadline | None = None


@dataclass
class _Run:
    """Mutable bookkeeping for one request while it moves through states."""

    cache_key: str
    image_name: str
    history: list[RequestState] = field(default_factory=list)
    store_results: dict[str, bool] = field(default_factory=dict)
    probe_ms: int = 0
    build_ms: int = 0
    save_ms: int = 0

    def enter(self, state: RequestState) -> None:
        logger.debug("[%s] -> %s", self.cache_key, state.value)
        self.history.append(state)

    def result(
        self,
        state: RequestState,
        success: bool,
        cached: bool = False,
        tier: TierName | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> CacheResult:
        self.enter(state)
        return CacheResult(
            success=success,
            cached=cached,
            cache_key=self.cache_key,
            image_name=self.image_name,
            state=state,
            tier=tier,
            history=list(self.history),
            store_results=dict(self.store_results),
            error_code=error_code,
            error_message=error_message,
            probe_ms=self.probe_ms,
            build_ms=self.build_ms,
            save_ms=self.save_ms,
        )


class FallbackOrchestrator:
    """Coordinates probing, building and write-through for cache requests.

    Tiers are probed in the configured order and the first tier that
    materializes the artifact wins. On a miss across all tiers the
    BuildInvoker runs once per key (single-flight), and the result is
    stored to every tier independently.
    """

    def __init__(
        self,
        settings: Settings,
        chain: TierChain,
        invoker: BuildInvoker,
        metadata: MetadataStore | None = None,
        stats: StatsCollector | None = None,
        deriver: CacheKeyDeriver | None = None,
    ) -> None:
        self.settings = settings
        self.chain = chain
        self.invoker = invoker
        self.metadata = metadata
        self.stats = stats or StatsCollector()
        self.deriver = deriver or CacheKeyDeriver.from_settings(settings)
        self._inflight: dict[str, Future[CacheResult]] = {}
        self._inflight_lock = threading.Lock()

    @property
    def lock_dir(self) -> Path:
        return self.settings.cache_dir / ".locks"

    def execute(
        self,
        inputs: BuildInputs,
        image_name: str,
        *,
        dependencies: Iterable[str] = (),
        deadline: Deadline | None = None,
        force_rebuild: bool = False,
    ) -> CacheResult:
        """Reuse a cached image for the inputs or build and cache it.

        Args:
            inputs: Build inputs.
            image_name: Name the resulting image must carry locally.
            dependencies: Cache keys of upstream builds.
            deadline: Optional deadline for the whole request.
            force_rebuild: Skip probing and always build.

        Returns:
            CacheResult. Build failures and cancellations are reported
            through the result, not raised.
        """
        deadline = deadline or Deadline.never()
        cache_key = self.deriver.derive(inputs, dependencies)
        run = _Run(cache_key=cache_key, image_name=image_name)
        logger.info("Cache request for %s (key=%s)", image_name, cache_key)

        try:
            deadline.check()
            if not force_rebuild:
                run.enter(RequestState.PROBING)
                tier = self._probe(run, deadline)
                if tier is not None:
                    self.stats.record_hit(tier)
                    run.enter(RequestState.HIT)
                    logger.info("Cache hit via %s for %s", tier.value, cache_key)
                    return run.result(RequestState.DONE, True, cached=True, tier=tier)

            run.enter(RequestState.ALL_MISSED)
            self.stats.record_miss()
            return self._single_flight(run, inputs, deadline, force_rebuild)

        except OperationCancelled as e:
            return self._cancelled(run, e)

    def execute_many(self, requests: Sequence[CacheRequest]) -> list[CacheResult]:
        """Run requests concurrently, each on its own worker.

        Returns:
            Results in request order.
        """
        with ThreadPoolExecutor(
            max_workers=self.settings.max_concurrent_builds,
            thread_name_prefix="buildcache",
        ) as pool:
            futures = [
                pool.submit(
                    self.execute,
                    req.inputs,
                    req.image_name,
                    dependencies=req.dependencies,
                    deadline=req.deadline,
                    force_rebuild=req.force_rebuild,
                )
                for req in requests
            ]
            return [f.result() for f in futures]

    # Probing

    def _transfer_timeout(self, deadline: Deadline) -> float | None:
        return deadline.timeout_for(self.settings.transfer_timeout)

    def _probe(self, run: _Run, deadline: Deadline) -> TierName | None:
        """Probe tiers in order; fetch from the first that has the artifact."""
        start = time.monotonic()
        try:
            for tier in self.chain.tiers:
                deadline.check()
                try:
                    record = tier.probe(run.cache_key, timeout=self._transfer_timeout(deadline))
                except OperationCancelled as e:
                    if deadline.expired():
                        raise
                    logger.warning(
                        "%s", TierUnavailable(tier.name.value, f"probe timed out: {e}")
                    )
                    continue
                if not record.present:
                    logger.debug("Miss in %s tier", tier.name.value)
                    continue
                try:
                    tier.fetch(
                        run.cache_key,
                        record.locator or "",
                        run.image_name,
                        timeout=self._transfer_timeout(deadline),
                    )
                except FetchFailed as e:
                    logger.warning("Fetch failed, trying next tier: %s", e)
                    continue
                except OperationCancelled as e:
                    if deadline.expired():
                        raise
                    logger.warning(
                        "Fetch failed, trying next tier: %s",
                        FetchFailed(tier.name.value, f"timed out: {e}"),
                    )
                    continue
                return tier.name
            return None
        finally:
            elapsed = _elapsed_ms(start)
            run.probe_ms += elapsed
            self.stats.add_cache_time(elapsed)

    # Single-flight

    def _single_flight(
        self,
        run: _Run,
        inputs: BuildInputs,
        deadline: Deadline,
        force_rebuild: bool,
    ) -> CacheResult:
        with self._inflight_lock:
            future = self._inflight.get(run.cache_key)
            leader = future is None
            if future is None:
                future = Future()
                self._inflight[run.cache_key] = future

        if not leader:
            return self._follow(run, future, inputs, deadline)

        try:
            result = self._lead(run, inputs, deadline, force_rebuild)
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._inflight_lock:
                self._inflight.pop(run.cache_key, None)

    def _follow(
        self,
        run: _Run,
        future: Future[CacheResult],
        inputs: BuildInputs,
        deadline: Deadline,
    ) -> CacheResult:
        """Wait for the in-flight build of the same key instead of duplicating it."""
        logger.info("Waiting for in-flight build of %s", run.cache_key)
        try:
            leader_result = future.result(timeout=deadline.remaining())
        except FutureTimeoutError as e:
            raise OperationCancelled(
                f"Timed out waiting for in-flight build of {run.cache_key}"
            ) from e

        if not leader_result.success:
            return run.result(
                leader_result.state,
                False,
                error_code=leader_result.error_code,
                error_message=leader_result.error_message,
            )

        run.enter(RequestState.PROBING)
        tier = self._probe(run, deadline)
        if tier is not None:
            run.enter(RequestState.HIT)
            return run.result(RequestState.DONE, True, cached=True, tier=tier)

        logger.warning("In-flight build of %s left no cached artifact; building", run.cache_key)
        return self._lead(run, inputs, deadline, force_rebuild=True)

    # Build and write-through

    def _lead(
        self,
        run: _Run,
        inputs: BuildInputs,
        deadline: Deadline,
        force_rebuild: bool,
    ) -> CacheResult:
        try:
            with build_lock(
                self.lock_dir,
                run.cache_key,
                timeout=deadline.timeout_for(self.settings.lock_timeout),
            ):
                if not force_rebuild:
                    # Another request may have stored the artifact since our probe
                    run.enter(RequestState.PROBING)
                    tier = self._probe(run, deadline)
                    if tier is not None:
                        run.enter(RequestState.HIT)
                        return run.result(RequestState.DONE, True, cached=True, tier=tier)
                    run.enter(RequestState.ALL_MISSED)

                built = self._build(run, inputs, deadline)
                if built is not None:
                    return built
                self._save(run, inputs, deadline)
                return run.result(RequestState.DONE, True)
        except TimeoutError as e:
            raise OperationCancelled(str(e)) from e

    def _build(
        self,
        run: _Run,
        inputs: BuildInputs,
        deadline: Deadline,
    ) -> CacheResult | None:
        """Run the build; return a failure result, or None on success."""
        deadline.check()
        run.enter(RequestState.BUILDING)
        hints = self.chain.layer.cache_hints(run.image_name) if self.chain.layer else []

        start = time.monotonic()
        try:
            self.invoker.build(
                image_name=run.image_name,
                definition_path=inputs.definition_path,
                context_path=inputs.context_path,
                build_args=inputs.build_args,
                target=inputs.target,
                platform=inputs.platform,
                cache_hints=hints,
                timeout=deadline.timeout_for(self.settings.build_timeout),
            )
        except BuildFailed as e:
            run.build_ms = _elapsed_ms(start)
            self.stats.add_build_time(run.build_ms)
            self.stats.record_build_failure()
            logger.error("Build failed for %s: %s", run.image_name, e)
            return run.result(
                RequestState.BUILD_FAILED, False, error_code=e.code, error_message=str(e)
            )

        run.build_ms = _elapsed_ms(start)
        self.stats.add_build_time(run.build_ms)
        run.enter(RequestState.BUILT)
        logger.info("Build of %s completed in %dms", run.image_name, run.build_ms)
        return None

    def _save(self, run: _Run, inputs: BuildInputs, deadline: Deadline) -> None:
        """Write the built image through to every tier, then record metadata."""
        deadline.check()
        run.enter(RequestState.SAVING)
        outcomes: list[StoreOutcome] = []

        start = time.monotonic()
        try:
            for tier in self.chain.tiers:
                deadline.check()
                try:
                    outcome = tier.store(
                        run.cache_key,
                        run.image_name,
                        timeout=self._transfer_timeout(deadline),
                    )
                except OperationCancelled as e:
                    if deadline.expired():
                        raise
                    self._store_failed(
                        run, tier.name, StoreFailed(tier.name.value, f"timed out: {e}")
                    )
                    continue
                except StoreFailed as e:
                    self._store_failed(run, tier.name, e)
                    continue
                outcomes.append(outcome)
                run.store_results[tier.name.value] = True
        finally:
            run.save_ms = _elapsed_ms(start)
            self.stats.add_cache_time(run.save_ms)

        logger.info(
            "Cache save completed in %dms (%d/%d tiers)",
            run.save_ms,
            len(outcomes),
            len(self.chain.tiers),
        )
        if outcomes:
            self._record(run, inputs, outcomes)

    def _store_failed(self, run: _Run, tier: TierName, error: StoreFailed) -> None:
        logger.warning("Store failed: %s", error)
        self.stats.record_store_failure(tier)
        run.store_results[tier.value] = False

    def _record(
        self,
        run: _Run,
        inputs: BuildInputs,
        outcomes: list[StoreOutcome],
    ) -> None:
        if self.metadata is None:
            return
        sizes = [o.size_bytes for o in outcomes if o.size_bytes is not None]
        entry = CacheEntry(
            cache_key=run.cache_key,
            image_name=run.image_name,
            created_at=datetime.now(timezone.utc),
            size_bytes=max(sizes) if sizes else 0,
            build_duration_ms=run.build_ms,
            inputs=inputs.to_dict(),
        )
        try:
            try:
                self.metadata.put(run.cache_key, entry, outcomes)
            except CacheConflictError:
                # Entries are append-only; refresh tier locations only
                logger.debug("Entry for %s already recorded", run.cache_key)
                for outcome in outcomes:
                    self.metadata.record_location(run.cache_key, outcome.tier, outcome.locator)
        except MetadataStoreError as e:
            logger.error("Failed to record metadata for %s: %s", run.cache_key, e)

    def _cancelled(self, run: _Run, error: OperationCancelled) -> CacheResult:
        self.stats.record_cancellation()
        logger.warning("Request for %s cancelled: %s", run.image_name, error)
        return run.result(
            RequestState.CANCELLED, False, error_code=error.code, error_message=str(error)
        )


def create_orchestrator(
    settings: Settings,
    metadata: MetadataStore | None = None,
    stats: StatsCollector | None = None,
) -> FallbackOrchestrator:
    """Wire an orchestrator with the docker adapter and configured tiers.

    Args:
        settings: Settings for every component.
        metadata: Metadata store; opened from settings if not provided.
        stats: Statistics collector; a new one if not provided.

    Returns:
        FallbackOrchestrator ready to execute requests.
    """
    from buildcache.docker.client import DockerClient
    from buildcache.docker.registry_api import RegistryAPI
    from buildcache.metadata.store import MetadataStore
    from buildcache.tiers import build_tiers

    docker = DockerClient(settings.docker_binary, buildkit=settings.enable_native_cache)
    api_url = settings.effective_registry_api_url
    api = RegistryAPI(api_url, timeout=settings.registry_timeout) if api_url else None
    chain = build_tiers(settings, docker, docker, api)

    return FallbackOrchestrator(
        settings=settings,
        chain=chain,
        invoker=docker,
        metadata=metadata if metadata is not None else MetadataStore.from_settings(settings),
        stats=stats,
    )


__all__ = [
    "CacheRequest",
    "FallbackOrchestrator",
    "build_lock",
    "create_orchestrator",
]
