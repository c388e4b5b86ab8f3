"""Tests for builds/service.py module.

Tests the fallback orchestrator with fake docker collaborators.
"""

import threading
import time

import pytest

from buildcache.builds.cache_key import BuildInputs, CacheKeyDeriver
from buildcache.builds.service import CacheRequest, FallbackOrchestrator, build_lock
from buildcache.errors import OperationCancelled
from buildcache.types import Deadline, RequestState, TierName

IMAGE = "example/app:dev"


def wait_until(predicate, timeout=5.0):
    """Poll until predicate() is true or fail."""
    end = time.monotonic() + timeout
    while time.monotonic() < end:
        if predicate():
            return
        time.sleep(0.005)
    raise AssertionError("condition not reached")


class TestBuildLock:
    """Tests for build_lock context manager."""

    def test_acquires_and_releases_lock(self, tmp_path):
        """Should acquire and release lock."""
        lock_dir = tmp_path / "locks"

        with build_lock(lock_dir, "abc123") as contended:
            lock_file = lock_dir / "build_abc123.lock"
            assert lock_file.exists()
            assert contended is False

        # Lock released (file still exists but unlocked)
        assert lock_file.exists()

    def test_creates_lock_directory(self, tmp_path):
        """Should create lock directory if needed."""
        lock_dir = tmp_path / "deep" / "nested" / "locks"

        with build_lock(lock_dir, "abc123"):
            assert lock_dir.exists()

    def test_different_keys_do_not_contend(self, tmp_path):
        """Should allow locks on different keys."""
        lock_dir = tmp_path / "locks"

        with build_lock(lock_dir, "key1"), build_lock(lock_dir, "key2") as contended:
            assert contended is False

    def test_same_key_times_out(self, tmp_path):
        """A second holder of the same key waits, then gives up."""
        lock_dir = tmp_path / "locks"

        with build_lock(lock_dir, "key1"):
            with pytest.raises(TimeoutError):
                with build_lock(lock_dir, "key1", timeout=0.2):
                    pass

    def test_reports_contention(self, tmp_path):
        """A waiter that eventually acquires the lock is told it was contended."""
        lock_dir = tmp_path / "locks"
        results = []

        def waiter():
            with build_lock(lock_dir, "key1", timeout=5) as contended:
                results.append(contended)

        with build_lock(lock_dir, "key1"):
            thread = threading.Thread(target=waiter)
            thread.start()
            time.sleep(0.1)
        thread.join(timeout=5)

        assert results == [True]


class TestMissAndWriteThrough:
    """A miss builds once and stores to every tier."""

    def test_miss_builds_and_saves(self, orchestrator, build_context, docker, metadata, settings):
        result = orchestrator.execute(build_context, IMAGE)

        assert result.success is True
        assert result.cached is False
        assert result.state == RequestState.DONE
        assert result.history == [
            RequestState.PROBING,
            RequestState.ALL_MISSED,
            RequestState.PROBING,
            RequestState.ALL_MISSED,
            RequestState.BUILDING,
            RequestState.BUILT,
            RequestState.SAVING,
            RequestState.DONE,
        ]
        assert docker.build_count == 1
        assert result.store_results == {"local": True, "registry": True}
        assert (settings.cache_dir / f"{result.cache_key}.tar").is_file()
        assert f"registry.test:5000/buildcache:cache-{result.cache_key}" in docker.remote

        entry = metadata.get(result.cache_key)
        assert entry is not None
        assert entry.image_name == IMAGE
        assert entry.size_bytes > 0
        assert {r.tier for r in metadata.locations(result.cache_key)} == {
            TierName.LOCAL,
            TierName.REGISTRY,
        }

    def test_build_gets_layer_hints(self, orchestrator, build_context, docker):
        orchestrator.execute(build_context, IMAGE)
        assert docker.builds[0]["cache_hints"] == [
            IMAGE,
            "registry.test:5000/buildcache:latest",
        ]

    def test_build_receives_inputs(self, orchestrator, build_context, docker):
        inputs = BuildInputs(
            build_context.definition_path,
            build_context.context_path,
            {"VERSION": "2"},
            target="runtime",
            platform="linux/arm64",
        )
        orchestrator.execute(inputs, IMAGE)
        build = docker.builds[0]
        assert build["build_args"] == {"VERSION": "2"}
        assert build["target"] == "runtime"
        assert build["platform"] == "linux/arm64"

    def test_stats_after_miss(self, orchestrator, build_context, stats):
        orchestrator.execute(build_context, IMAGE)
        snapshot = stats.snapshot()
        assert snapshot.misses == 1
        assert snapshot.total_hits == 0
        assert snapshot.hit_rate == 0.0


class TestHits:
    """Hits short-circuit the build."""

    def test_second_request_hits_local(self, orchestrator, build_context, docker, stats):
        first = orchestrator.execute(build_context, IMAGE)
        second = orchestrator.execute(build_context, IMAGE)

        assert docker.build_count == 1
        assert second.success is True
        assert second.cached is True
        assert second.tier == TierName.LOCAL
        assert second.cache_key == first.cache_key
        assert second.history == [RequestState.PROBING, RequestState.HIT, RequestState.DONE]

        snapshot = stats.snapshot()
        assert snapshot.hits == {"local": 1}
        assert snapshot.misses == 1
        assert snapshot.hit_rate == 50.0

    def test_local_round_trip_restores_image(self, orchestrator, build_context, docker):
        """An evicted image comes back from the local blob."""
        orchestrator.execute(build_context, IMAGE)
        docker.images.clear()
        docker.remote.clear()

        result = orchestrator.execute(build_context, IMAGE)
        assert result.tier == TierName.LOCAL
        assert IMAGE in docker.images
        assert docker.build_count == 1

    def test_registry_hit_when_local_missing(self, orchestrator, build_context, docker, settings):
        first = orchestrator.execute(build_context, IMAGE)
        (settings.cache_dir / f"{first.cache_key}.tar").unlink()
        docker.images.clear()

        result = orchestrator.execute(build_context, IMAGE)
        assert result.cached is True
        assert result.tier == TierName.REGISTRY
        assert IMAGE in docker.images
        assert docker.build_count == 1

    def test_fetch_failure_falls_through(self, orchestrator, build_context, docker, settings):
        """A present but unreadable local blob falls through to the registry."""
        first = orchestrator.execute(build_context, IMAGE)
        (settings.cache_dir / f"{first.cache_key}.tar").write_text("corrupted")

        result = orchestrator.execute(build_context, IMAGE)
        assert result.tier == TierName.REGISTRY
        assert docker.build_count == 1

    def test_force_rebuild_skips_probe(self, orchestrator, build_context, docker, metadata):
        first = orchestrator.execute(build_context, IMAGE)
        second = orchestrator.execute(build_context, IMAGE, force_rebuild=True)

        assert docker.build_count == 2
        assert second.cached is False
        assert RequestState.PROBING not in second.history
        # The original entry is kept
        assert metadata.count() == 1
        assert metadata.get(first.cache_key) is not None


class TestStoreFailures:
    """Store failures are isolated per tier."""

    def test_registry_failure_does_not_block_local(
        self, orchestrator, build_context, docker, metadata, stats, settings
    ):
        docker.fail_push = True
        result = orchestrator.execute(build_context, IMAGE)

        assert result.success is True
        assert result.store_results == {"local": True, "registry": False}
        assert (settings.cache_dir / f"{result.cache_key}.tar").is_file()
        assert stats.snapshot().store_failures == {"registry": 1}
        assert [r.tier for r in metadata.locations(result.cache_key)] == [TierName.LOCAL]

        again = orchestrator.execute(build_context, IMAGE)
        assert again.tier == TierName.LOCAL
        assert docker.build_count == 1

    def test_all_stores_fail(self, orchestrator, build_context, docker, metadata, stats):
        """The build still succeeds; nothing is recorded."""
        docker.fail_push = True
        docker.fail_save = True
        result = orchestrator.execute(build_context, IMAGE)

        assert result.success is True
        assert result.store_results == {"local": False, "registry": False}
        assert metadata.count() == 0


class TestTierTimeouts:
    """A tier exceeding its per-call timeout behaves like an unavailable tier."""

    def test_probe_timeout_falls_through_to_build(self, orchestrator, build_context, docker):
        docker.stall_pull = True
        result = orchestrator.execute(build_context, IMAGE)

        assert result.success is True
        assert result.state == RequestState.DONE
        assert result.cached is False
        assert docker.build_count == 1

    def test_probe_timeout_on_cached_registry_rebuilds(
        self, orchestrator, build_context, docker, settings
    ):
        first = orchestrator.execute(build_context, IMAGE)
        (settings.cache_dir / f"{first.cache_key}.tar").unlink()
        docker.stall_pull = True

        result = orchestrator.execute(build_context, IMAGE)
        assert result.state == RequestState.DONE
        assert docker.build_count == 2

    def test_push_timeout_is_store_failure(
        self, orchestrator, build_context, docker, metadata, stats
    ):
        """The local store still counts and is recorded."""
        docker.stall_push = True
        result = orchestrator.execute(build_context, IMAGE)

        assert result.success is True
        assert result.state == RequestState.DONE
        assert result.store_results == {"local": True, "registry": False}
        assert stats.snapshot().store_failures == {"registry": 1}
        assert stats.snapshot().cancellations == 0
        assert [r.tier for r in metadata.locations(result.cache_key)] == [TierName.LOCAL]

    def test_expired_deadline_during_probe_cancels(
        self, orchestrator, build_context, docker, chain, monkeypatch
    ):
        cancel = threading.Event()

        def stalled_probe(key, *, timeout=None):
            cancel.set()
            raise OperationCancelled("docker pull timed out")

        monkeypatch.setattr(chain.get(TierName.REGISTRY), "probe", stalled_probe)
        result = orchestrator.execute(
            build_context, IMAGE, deadline=Deadline(cancel_event=cancel)
        )

        assert result.state == RequestState.CANCELLED
        assert docker.build_count == 0


class TestBuildFailure:
    """Build failures are reported, not raised."""

    def test_build_failure(self, orchestrator, build_context, docker, metadata, stats, settings):
        docker.build_error = "step 3/5 failed"
        result = orchestrator.execute(build_context, IMAGE)

        assert result.success is False
        assert result.state == RequestState.BUILD_FAILED
        assert result.error_code == "build_failed"
        assert "step 3/5 failed" in result.error_message
        assert RequestState.SAVING not in result.history
        assert metadata.count() == 0
        assert not (settings.cache_dir / f"{result.cache_key}.tar").exists()
        assert stats.snapshot().build_failures == 1

    def test_retry_after_failure_builds_again(self, orchestrator, build_context, docker):
        docker.build_error = "flaky"
        orchestrator.execute(build_context, IMAGE)
        docker.build_error = None
        result = orchestrator.execute(build_context, IMAGE)

        assert result.success is True
        assert docker.build_count == 2


class TestCancellation:
    """Deadlines end requests in CANCELLED."""

    def test_expired_deadline_before_start(self, orchestrator, build_context, docker, stats):
        result = orchestrator.execute(build_context, IMAGE, deadline=Deadline(0))

        assert result.success is False
        assert result.state == RequestState.CANCELLED
        assert result.error_code == "cancelled"
        assert docker.build_count == 0
        assert stats.snapshot().cancellations == 1

    def test_cancel_during_build_skips_save(
        self, orchestrator, build_context, docker, metadata, settings
    ):
        """Expiry while building ends the request without saving."""
        cancel = threading.Event()
        docker.on_build = cancel.set
        result = orchestrator.execute(
            build_context, IMAGE, deadline=Deadline(cancel_event=cancel)
        )

        assert result.state == RequestState.CANCELLED
        assert RequestState.BUILT in result.history
        assert RequestState.SAVING not in result.history
        assert metadata.count() == 0
        assert not (settings.cache_dir / f"{result.cache_key}.tar").exists()

    def test_build_timeout_bounded_by_deadline(self, orchestrator, build_context, docker):
        orchestrator.execute(build_context, IMAGE, deadline=Deadline(60))
        assert docker.builds[0]["timeout"] <= 60


class TestSingleFlight:
    """Concurrent requests for one key build once."""

    def test_concurrent_requests_build_once(self, orchestrator, build_context, docker, stats):
        docker.build_gate = threading.Event()
        results = {}

        def run(name):
            results[name] = orchestrator.execute(build_context, IMAGE)

        leader = threading.Thread(target=run, args=("a",))
        leader.start()
        assert docker.build_started.wait(timeout=5)

        follower = threading.Thread(target=run, args=("b",))
        follower.start()
        wait_until(lambda: stats.snapshot().misses == 2)
        time.sleep(0.05)

        docker.build_gate.set()
        leader.join(timeout=10)
        follower.join(timeout=10)

        assert docker.build_count == 1
        assert results["a"].success and results["b"].success
        assert results["a"].cache_key == results["b"].cache_key
        assert results["a"].cached is False
        assert results["b"].cached is True
        assert results["b"].tier == TierName.LOCAL

    def test_follower_sees_leader_failure(self, orchestrator, build_context, docker, stats):
        docker.build_gate = threading.Event()
        docker.build_error = "broken"
        results = {}

        def run(name):
            results[name] = orchestrator.execute(build_context, IMAGE)

        leader = threading.Thread(target=run, args=("a",))
        leader.start()
        assert docker.build_started.wait(timeout=5)
        follower = threading.Thread(target=run, args=("b",))
        follower.start()
        wait_until(lambda: stats.snapshot().misses == 2)
        time.sleep(0.05)

        docker.build_gate.set()
        leader.join(timeout=10)
        follower.join(timeout=10)

        assert docker.build_count == 1
        assert results["a"].state == RequestState.BUILD_FAILED
        assert results["b"].state == RequestState.BUILD_FAILED
        assert results["b"].error_message == results["a"].error_message

    def test_late_request_reuses_finished_build(self, orchestrator, build_context, docker):
        """A request whose probe missed before another finished the key does not rebuild."""
        probe = orchestrator._probe
        calls = []

        def probe_while_other_finishes(run, deadline):
            tier = probe(run, deadline)
            calls.append(tier)
            if len(calls) == 1:
                assert orchestrator.execute(build_context, IMAGE).cached is False
            return tier

        orchestrator._probe = probe_while_other_finishes
        result = orchestrator.execute(build_context, IMAGE)

        assert docker.build_count == 1
        assert result.success is True
        assert result.cached is True
        assert result.tier == TierName.LOCAL
        assert RequestState.BUILDING not in result.history

    def test_other_process_finishing_first_is_reused(
        self, orchestrator, settings, chain, docker, metadata, build_context
    ):
        """An uncontended build lock still re-checks the tiers before building."""
        other = FallbackOrchestrator(settings, chain, docker, metadata=metadata)
        probe = orchestrator._probe
        calls = []

        def probe_while_other_finishes(run, deadline):
            tier = probe(run, deadline)
            calls.append(tier)
            if len(calls) == 1:
                other.execute(build_context, IMAGE)
            return tier

        orchestrator._probe = probe_while_other_finishes
        result = orchestrator.execute(build_context, IMAGE)

        assert docker.build_count == 1
        assert result.cached is True
        assert metadata.count() == 1

    def test_different_keys_build_independently(self, orchestrator, build_context, docker):
        other = BuildInputs(
            build_context.definition_path, build_context.context_path, {"VERSION": "2"}
        )
        results = orchestrator.execute_many(
            [CacheRequest(build_context, IMAGE), CacheRequest(other, "example/app:v2")]
        )

        assert [r.success for r in results] == [True, True]
        assert results[0].cache_key != results[1].cache_key
        assert docker.build_count == 2


class TestOrchestratorOptions:
    """Construction variants."""

    def test_without_metadata(self, settings, chain, docker, build_context):
        orchestrator = FallbackOrchestrator(settings, chain, docker)
        result = orchestrator.execute(build_context, IMAGE)
        assert result.success is True
        assert orchestrator.execute(build_context, IMAGE).cached is True

    def test_dependencies_change_key(self, orchestrator, build_context, docker):
        base = orchestrator.execute(build_context, IMAGE)
        dependent = orchestrator.execute(build_context, IMAGE, dependencies=["upstream1"])
        assert dependent.cache_key != base.cache_key
        assert docker.build_count == 2

    def test_key_matches_deriver(self, orchestrator, build_context, settings):
        result = orchestrator.execute(build_context, IMAGE)
        assert result.cache_key == CacheKeyDeriver.from_settings(settings).derive(build_context)
