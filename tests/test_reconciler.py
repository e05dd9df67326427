"""Tests for ReconciliationEngine.

Covers:
- Watch handlers (on_add / on_update / on_delete / handle_event)
- Full reconciliation passes: synthesized adds, missed deletions,
  sampling, decisions and persistence
- Per-cluster failure isolation and report contents
- Change notifications
- Non-reentrant passes
- Watch/monitor thread lifecycle
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest

from fleet_warden.clients.handle import StaticClientFactory, StaticClusterClient
from fleet_warden.config import MonitorConfig
from fleet_warden.engine.reconciler import EngineError, ReconciliationEngine
from fleet_warden.errors import (
    ClusterNotReady,
    DeploymentLookupFailed,
    NoClientForCluster,
    PersistConflict,
    SourceUnavailable,
)
from fleet_warden.models import (
    AUTOSCALE_ENABLED_KEY,
    CAPACITY_TOTAL_PODS_KEY,
    CAPACITY_USED_PODS_KEY,
    LIFECYCLE_STATE_KEY,
    SHUTDOWN_START_TIME_KEY,
    Cluster,
    ClusterCondition,
    WatchEvent,
    WatchEventType,
)
from fleet_warden.source.memory import InMemoryClusterSource

# --- Helpers ---


class MockClock:
    """A controllable clock for testing time-dependent behavior."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2024, 3, 1, 10, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)


class Counter:
    """Change listener that counts notifications."""

    def __init__(self) -> None:
        self.count = 0
        self._lock = threading.Lock()

    def __call__(self) -> None:
        with self._lock:
            self.count += 1


def _ready(name: str, **annotations: str) -> Cluster:
    return Cluster(
        name=name,
        conditions=[ClusterCondition(type="Ready", status="True")],
        annotations=annotations,
    )


def _unready(name: str, **annotations: str) -> Cluster:
    return Cluster(
        name=name,
        conditions=[ClusterCondition(type="Ready", status="False")],
        annotations=annotations,
    )


def _state(state: str, **extra: str) -> dict[str, str]:
    return {LIFECYCLE_STATE_KEY: state, **extra}


def _engine(
    source: InMemoryClusterSource,
    factory: StaticClientFactory | None = None,
    clock: MockClock | None = None,
    **config,
) -> ReconciliationEngine:
    config.setdefault("watch_retry_seconds", 0.01)
    return ReconciliationEngine(
        source,
        factory or StaticClientFactory(),
        config=MonitorConfig(**config),
        _clock=clock or MockClock(),
    )


def _wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


# --- Watch handlers ---


class TestOnAdd:
    def test_unmanaged_cluster_gets_client(self):
        factory = StaticClientFactory()
        engine = _engine(InMemoryClusterSource(), factory)
        counter = Counter()
        engine.add_listener(counter)

        engine.on_add(_ready("east"))
        assert engine.known_clusters() == ["east"]
        assert "east" in engine.clients
        assert factory.created == ["east"]
        assert counter.count == 1

    def test_ready_cluster_gets_client(self):
        engine = _engine(InMemoryClusterSource())
        engine.on_add(_ready("east", **_state("Ready")))
        assert "east" in engine.clients

    def test_client_deferred_for_other_states(self):
        factory = StaticClientFactory()
        engine = _engine(InMemoryClusterSource(), factory)
        engine.on_add(_ready("east", **_state("PendingShutdown")))
        assert engine.known_clusters() == ["east"]
        assert "east" not in engine.clients
        assert factory.created == []

    def test_repeated_add_notifies_once(self):
        factory = StaticClientFactory()
        engine = _engine(InMemoryClusterSource(), factory)
        counter = Counter()
        engine.add_listener(counter)

        engine.on_add(_ready("east"))
        engine.on_add(_ready("east"))
        assert counter.count == 1
        assert factory.created == ["east"]

    def test_client_failure_not_raised(self):
        engine = _engine(InMemoryClusterSource(), StaticClientFactory(failing={"east"}))
        engine.on_add(_ready("east"))
        assert engine.known_clusters() == ["east"]
        assert "east" not in engine.clients


class TestOnUpdate:
    def test_deletion_marker_routes_to_delete(self):
        engine = _engine(InMemoryClusterSource())
        engine.on_add(_ready("east"))
        deleting = _ready("east").model_copy(update={"deletion_timestamp": datetime.now(tz=UTC)})

        engine.on_update(_ready("east"), deleting)
        assert engine.known_clusters() == []
        assert "east" not in engine.clients

    def test_transition_into_ready_creates_client(self):
        factory = StaticClientFactory()
        engine = _engine(InMemoryClusterSource(), factory)
        engine.on_add(_ready("east", **_state("ScalingUp")))
        assert "east" not in engine.clients

        engine.on_update(_ready("east", **_state("ScalingUp")), _ready("east", **_state("Ready")))
        assert "east" in engine.clients
        assert factory.created == ["east"]

    def test_ready_to_ready_does_not_create(self):
        factory = StaticClientFactory()
        engine = _engine(InMemoryClusterSource(), factory)
        engine.on_update(_ready("east", **_state("Ready")), _ready("east", **_state("Ready")))
        assert factory.created == []

    def test_transition_into_ready_keeps_existing_client(self):
        handle = StaticClusterClient()
        factory = StaticClientFactory({"east": handle})
        engine = _engine(InMemoryClusterSource(), factory)
        engine.on_add(_ready("east"))

        engine.on_update(_ready("east", **_state("ScalingDown")), _ready("east", **_state("Ready")))
        assert engine.clients.get("east") is handle
        assert factory.created == ["east"]

    def test_offline_drops_client(self):
        engine = _engine(InMemoryClusterSource())
        engine.on_add(_ready("east", **_state("Ready")))
        engine.on_update(
            _ready("east", **_state("PendingShutdown")), _ready("east", **_state("Offline")),
        )
        assert "east" not in engine.clients
        assert engine.known_clusters() == ["east"]

    def test_other_transitions_leave_cache_alone(self):
        engine = _engine(InMemoryClusterSource())
        engine.on_add(_ready("east", **_state("Ready")))
        engine.on_update(_ready("east", **_state("Ready")), _ready("east", **_state("ScalingUp")))
        assert "east" in engine.clients

    def test_unknown_cluster_becomes_known(self):
        engine = _engine(InMemoryClusterSource())
        counter = Counter()
        engine.add_listener(counter)
        engine.on_update(Cluster(name="east"), _ready("east", **_state("ScalingUp")))
        assert engine.known_clusters() == ["east"]
        assert counter.count == 1


class TestOnDelete:
    def test_removes_name_and_client(self):
        engine = _engine(InMemoryClusterSource())
        engine.on_add(_ready("east"))
        engine.on_delete("east")
        assert engine.known_clusters() == []
        assert len(engine.clients) == 0

    def test_always_notifies(self):
        engine = _engine(InMemoryClusterSource())
        counter = Counter()
        engine.add_listener(counter)
        engine.on_delete("never-seen")
        assert counter.count == 1


class TestHandleEvent:
    def test_added(self):
        engine = _engine(InMemoryClusterSource())
        engine.handle_event(WatchEvent(type=WatchEventType.ADDED, cluster=_ready("east")))
        assert engine.known_clusters() == ["east"]
        assert [c.name for c in engine.get_ready_clusters()] == ["east"]

    def test_modified_uses_last_observed_copy_as_old(self):
        factory = StaticClientFactory(failing={"east"})
        engine = _engine(InMemoryClusterSource(), factory)
        engine.handle_event(WatchEvent(
            type=WatchEventType.ADDED, cluster=_ready("east", **_state("Ready")),
        ))
        assert "east" not in engine.clients

        factory.failing.clear()
        engine.handle_event(WatchEvent(
            type=WatchEventType.MODIFIED, cluster=_ready("east", **_state("Ready")),
        ))
        # Ready -> Ready is not a transition, so no client is created
        assert factory.created == []

    def test_modified_prefers_event_previous(self):
        factory = StaticClientFactory()
        engine = _engine(InMemoryClusterSource(), factory)
        engine.handle_event(WatchEvent(
            type=WatchEventType.MODIFIED,
            cluster=_ready("east", **_state("Ready")),
            previous=_ready("east", **_state("ScalingUp")),
        ))
        assert factory.created == ["east"]

    def test_deleted(self):
        engine = _engine(InMemoryClusterSource())
        engine.handle_event(WatchEvent(type=WatchEventType.ADDED, cluster=_unready("east")))
        engine.handle_event(WatchEvent(type=WatchEventType.DELETED, cluster=_unready("east")))
        assert engine.known_clusters() == []
        assert engine.get_unready_clusters() == []


# --- Full reconciliation ---


class TestFullSync:
    def test_first_pass_adds_samples_and_persists(self):
        source = InMemoryClusterSource([_ready("east"), _ready("west")])
        engine = _engine(source)
        counter = Counter()
        engine.add_listener(counter)

        report = engine.full_sync()
        assert report is not None
        assert report.ok
        assert sorted(report.listed) == ["east", "west"]
        assert sorted(report.added) == ["east", "west"]
        assert sorted(report.sampled) == ["east", "west"]
        assert sorted(report.updated) == ["east", "west"]
        assert report.skipped == {}
        assert report.finished_at is not None
        assert engine.is_synced
        # one for each newly known cluster, one for each persisted cluster
        assert counter.count == 4

        east = source.get("east")
        assert east.annotations[CAPACITY_TOTAL_PODS_KEY] == "110"
        assert east.annotations[CAPACITY_USED_PODS_KEY] == "0"

    def test_second_pass_is_noop(self):
        source = InMemoryClusterSource([_ready("east")])
        engine = _engine(source)
        engine.full_sync()
        calls = list(source.update_calls)

        report = engine.full_sync()
        assert report.added == []
        assert report.sampled == ["east"]
        assert report.updated == []
        assert source.update_calls == calls

    def test_missed_deletion_reconciled(self):
        source = InMemoryClusterSource([_ready("east"), _ready("west")])
        engine = _engine(source)
        engine.full_sync()

        source.delete("west", silent=True)
        report = engine.full_sync()
        assert report.deleted == ["west"]
        assert engine.known_clusters() == ["east"]
        assert "west" not in engine.clients
        assert [c.name for c in engine.get_ready_clusters()] == ["east"]

    def test_exactly_one_deletion_for_missing_cluster(self):
        source = InMemoryClusterSource([_unready("a"), _unready("b"), _unready("c")])
        engine = _engine(source)
        engine.full_sync()
        counter = Counter()
        engine.add_listener(counter)

        source.delete("b", silent=True)
        report = engine.full_sync()
        assert report.deleted == ["b"]
        assert engine.known_clusters() == ["a", "c"]
        assert counter.count == 1

    def test_list_failure_reported(self):
        source = InMemoryClusterSource([_ready("east")])
        source.fail_list = True
        engine = _engine(source)

        report = engine.full_sync()
        assert report is not None
        assert not report.ok
        assert "unavailable" in report.error
        assert report.listed == []
        assert not engine.is_synced
        assert engine.known_clusters() == []

    def test_not_ready_cluster_skipped(self):
        source = InMemoryClusterSource([_unready("east")])
        engine = _engine(source)
        report = engine.full_sync()
        assert report.added == ["east"]
        assert report.skipped == {"east": "not ready"}
        assert report.sampled == []
        assert source.update_calls == []

    def test_deleting_cluster_skipped(self):
        source = InMemoryClusterSource([_ready("east")])
        source.mark_deleting("east")
        engine = _engine(source)
        report = engine.full_sync()
        assert report.skipped == {"east": "not ready"}
        assert source.update_calls == []

    def test_deferred_client_skipped(self):
        source = InMemoryClusterSource([_ready("east", **_state("PendingShutdown"))])
        factory = StaticClientFactory()
        engine = _engine(source, factory)
        report = engine.full_sync()
        assert "No client" in report.skipped["east"]
        assert factory.created == []

    def test_client_creation_retried_next_pass(self):
        source = InMemoryClusterSource([_ready("east"), _ready("west")])
        factory = StaticClientFactory(failing={"east"})
        engine = _engine(source, factory)

        report = engine.full_sync()
        assert "east" in report.skipped
        assert report.updated == ["west"]

        factory.failing.clear()
        report = engine.full_sync()
        assert report.updated == ["east"]
        assert "east" in engine.clients

    def test_stats_failure_isolated(self):
        source = InMemoryClusterSource([_ready("east"), _ready("west")])
        factory = StaticClientFactory({"east": StaticClusterClient(fail=ConnectionError("refused"))})
        engine = _engine(source, factory)

        report = engine.full_sync()
        assert "refused" in report.skipped["east"]
        assert report.sampled == ["west"]
        assert report.updated == ["west"]

    def test_refresh_failure_isolated(self):
        source = InMemoryClusterSource([_ready("east"), _ready("west")])
        source.fail_get.add("east")
        engine = _engine(source)

        report = engine.full_sync()
        assert "cannot get" in report.skipped["east"]
        assert report.updated == ["west"]

    def test_not_ready_after_refresh(self):
        class FlappingSource(InMemoryClusterSource):
            def get(self, name: str) -> Cluster:
                current = super().get(name)
                return current.model_copy(update={"conditions": []})

        source = FlappingSource([_ready("east")])
        engine = _engine(source)
        report = engine.full_sync()
        assert report.sampled == ["east"]
        assert report.skipped == {"east": "not ready after refresh"}
        assert source.update_calls == []

    def test_persist_conflict_retried_next_pass(self):
        class RacingSource(InMemoryClusterSource):
            """Another writer touches the cluster between get and update."""

            race = True

            def get(self, name: str) -> Cluster:
                current = super().get(name)
                if self.race:
                    self.modify(current.model_copy(
                        update={"annotations": {**current.annotations, "touched": "yes"}},
                    ))
                return current

        source = RacingSource([_ready("east")])
        engine = _engine(source)
        counter = Counter()
        engine.add_listener(counter)

        report = engine.full_sync()
        assert "was modified" in report.skipped["east"]
        assert report.updated == []
        assert counter.count == 1  # the add only

        source.race = False
        report = engine.full_sync()
        assert report.updated == ["east"]
        assert source.get("east").annotations["touched"] == "yes"

    def test_update_failure_isolated(self):
        source = InMemoryClusterSource([_ready("east"), _ready("west")])
        source.fail_update.add("east")
        engine = _engine(source)

        report = engine.full_sync()
        assert "cannot update" in report.skipped["east"]
        assert report.updated == ["west"]

    def test_unexpected_error_isolated(self):
        class ExplodingSource(InMemoryClusterSource):
            def get(self, name: str) -> Cluster:
                if name == "east":
                    raise RuntimeError("kaboom")
                return super().get(name)

        source = ExplodingSource([_ready("east"), _ready("west")])
        engine = _engine(source)
        report = engine.full_sync()
        assert report.skipped["east"] == "unexpected error: kaboom"
        assert report.updated == ["west"]

    def test_idle_cluster_marked_pending_shutdown_after_ttl(self):
        clock = MockClock()
        source = InMemoryClusterSource([_ready("east", **_state("Ready"))])
        engine = _engine(source, clock=clock)

        engine.full_sync()
        assert SHUTDOWN_START_TIME_KEY in source.get("east").annotations

        clock.advance(1800)
        report = engine.full_sync()
        assert report.updated == ["east"]
        annotations = source.get("east").annotations
        assert annotations[LIFECYCLE_STATE_KEY] == "PendingShutdown"
        assert SHUTDOWN_START_TIME_KEY not in annotations

        assert engine.full_sync().updated == []

    def test_busy_cluster_marked_for_scale_up(self):
        handle = StaticClusterClient(
            allocatable=100, total=100,
            pods={"default": {"Running": 90}, "kube-system": {"Running": 10}},
        )
        source = InMemoryClusterSource([
            _ready("east", **_state("Ready", **{AUTOSCALE_ENABLED_KEY: "true"})),
        ])
        engine = _engine(source, StaticClientFactory({"east": handle}))

        report = engine.full_sync()
        assert report.updated == ["east"]
        assert source.get("east").annotations[LIFECYCLE_STATE_KEY] == "PendingScaleUp"

    def test_listener_failure_does_not_abort_pass(self):
        source = InMemoryClusterSource([_ready("east")])
        engine = _engine(source)

        def broken() -> None:
            raise RuntimeError("listener down")

        engine.add_listener(broken)
        report = engine.full_sync()
        assert report.updated == ["east"]

    def test_on_change_constructor_argument(self):
        counter = Counter()
        engine = ReconciliationEngine(
            InMemoryClusterSource([_unready("east")]), StaticClientFactory(), on_change=counter,
        )
        engine.full_sync()
        assert counter.count == 1


class HookedClient(StaticClusterClient):
    """Runs a callback once, the first time capacity is queried."""

    def __init__(self, hook: Callable[[], None]) -> None:
        super().__init__()
        self._hook: Callable[[], None] | None = hook

    def pod_capacity(self) -> tuple[int, int]:
        hook, self._hook = self._hook, None
        if hook is not None:
            hook()
        return super().pod_capacity()


class TestDeletionDuringPass:
    def test_watch_deletion_mid_pass_does_not_recreate_client(self):
        source = InMemoryClusterSource([_ready("a"), _ready("b")])

        def delete_b():
            source.delete("b", silent=True)
            engine.on_delete("b")

        factory = StaticClientFactory({"a": HookedClient(delete_b)})
        engine = _engine(source, factory)

        report = engine.full_sync()
        assert report.skipped["b"] == "deleted"
        assert engine.known_clusters() == ["a"]
        assert engine.clients.names() == ["a"]
        assert factory.created == ["a", "b"]

        report = engine.full_sync()
        assert report.deleted == []
        assert engine.clients.names() == ["a"]

    def test_cluster_gone_at_refresh_drops_client(self):
        source = InMemoryClusterSource([_ready("a"), _ready("b")])
        factory = StaticClientFactory(
            {"a": HookedClient(lambda: source.delete("b", silent=True))},
        )
        engine = _engine(source, factory)

        report = engine.full_sync()
        assert "not found" in report.skipped["b"]
        assert engine.clients.names() == ["a"]
        assert source.update_calls == ["a"]

        report = engine.full_sync()
        assert report.deleted == ["b"]
        assert engine.known_clusters() == ["a"]
        assert engine.clients.names() == ["a"]


class TestPerClusterSerialization:
    def _blocking_source(self):
        in_get = threading.Event()
        release = threading.Event()

        class BlockingGetSource(InMemoryClusterSource):
            """Blocks the refresh of cluster east until released."""

            block = False

            def get(self, name: str) -> Cluster:
                if self.block and name == "east":
                    in_get.set()
                    release.wait(timeout=5)
                return super().get(name)

        return BlockingGetSource([_ready("east"), _ready("west")]), in_get, release

    def test_update_cluster_waits_for_pass(self):
        source, in_get, release = self._blocking_source()
        engine = _engine(source)
        east = source.get("east")
        west = source.get("west")
        source.block = True

        sync = threading.Thread(target=engine.full_sync)
        sync.start()
        assert in_get.wait(timeout=5)

        errors: list[Exception] = []

        def write(cluster: Cluster) -> None:
            try:
                engine.update_cluster(
                    cluster.model_copy(update={"annotations": {"owner": "ops"}}),
                )
            except PersistConflict as exc:
                errors.append(exc)

        east_writer = threading.Thread(target=write, args=(east,))
        west_writer = threading.Thread(target=write, args=(west,))
        east_writer.start()
        west_writer.start()

        # another cluster is not held up by the pass
        west_writer.join(timeout=5)
        assert not west_writer.is_alive()
        time.sleep(0.1)
        assert source.update_calls == ["west"]
        assert east_writer.is_alive()

        release.set()
        sync.join(timeout=5)
        east_writer.join(timeout=5)

        # the pass wrote east first, so the waiting write saw a newer version
        assert source.update_calls[:3] == ["west", "east", "east"]
        assert len(errors) == 1
        assert errors[0].cluster == "east"

    def test_on_update_waits_for_pass(self):
        source, in_get, release = self._blocking_source()
        engine = _engine(source)
        source.block = True

        sync = threading.Thread(target=engine.full_sync)
        sync.start()
        assert in_get.wait(timeout=5)
        assert "east" in engine.clients

        handler = threading.Thread(
            target=engine.on_update,
            args=(_ready("east", **_state("Ready")), _ready("east", **_state("Offline"))),
        )
        handler.start()
        time.sleep(0.1)
        assert handler.is_alive()
        assert "east" in engine.clients

        release.set()
        sync.join(timeout=5)
        handler.join(timeout=5)
        assert "east" not in engine.clients


class TestNonReentrantPass:
    def test_overlapping_pass_skipped(self):
        source = InMemoryClusterSource([_ready("east")])
        engine = _engine(source)
        nested: list[object] = []
        engine.add_listener(lambda: nested.append(engine.full_sync()))

        report = engine.full_sync()
        assert report is not None
        assert nested
        assert all(r is None for r in nested)

    def test_pass_from_other_thread_skipped(self):
        started = threading.Event()
        release = threading.Event()

        class BlockingSource(InMemoryClusterSource):
            def list(self) -> list[Cluster]:
                started.set()
                release.wait(timeout=5)
                return super().list()

        engine = _engine(BlockingSource([_ready("east")]))
        results: list[object] = []
        worker = threading.Thread(target=lambda: results.append(engine.full_sync()))
        worker.start()
        assert started.wait(timeout=5)

        assert engine.full_sync() is None
        release.set()
        worker.join(timeout=5)
        assert results and results[0] is not None


# --- Queries ---


class TestQueries:
    def test_ready_and_unready_clusters(self):
        source = InMemoryClusterSource([_ready("east"), _unready("west")])
        engine = _engine(source)
        engine.full_sync()
        assert [c.name for c in engine.get_ready_clusters()] == ["east"]
        assert [c.name for c in engine.get_unready_clusters()] == ["west"]

    def test_query_results_are_copies(self):
        engine = _engine(InMemoryClusterSource([_ready("east")]))
        engine.full_sync()
        engine.get_ready_clusters()[0].annotations["x"] = "y"
        assert "x" not in engine.get_ready_clusters()[0].annotations

    def test_get_cluster_client_creates_lazily(self):
        factory = StaticClientFactory()
        engine = _engine(InMemoryClusterSource(), factory)
        cluster = _ready("east", **_state("Offline"))
        handle = engine.get_cluster_client(cluster)
        assert engine.get_cluster_client(cluster) is handle
        assert factory.created == ["east"]

    def test_get_cluster_deployment(self):
        deployment = {"metadata": {"name": "web", "namespace": "shop"}}
        factory = StaticClientFactory(
            {"east": StaticClusterClient(deployments={("shop", "web"): deployment})},
        )
        engine = _engine(InMemoryClusterSource(), factory)
        cluster = _ready("east")
        engine.on_add(cluster)
        assert engine.get_cluster_deployment(cluster, "shop", "web") == deployment

    def test_get_cluster_deployment_requires_cached_client(self):
        factory = StaticClientFactory()
        engine = _engine(InMemoryClusterSource(), factory)
        with pytest.raises(NoClientForCluster):
            engine.get_cluster_deployment(_ready("east"), "shop", "web")
        assert factory.created == []

    def test_get_cluster_deployment_requires_ready(self):
        engine = _engine(InMemoryClusterSource())
        engine.on_add(_ready("east"))
        with pytest.raises(ClusterNotReady):
            engine.get_cluster_deployment(_unready("east"), "shop", "web")

    def test_get_cluster_deployment_lookup_failure(self):
        engine = _engine(InMemoryClusterSource())
        cluster = _ready("east")
        engine.on_add(cluster)
        with pytest.raises(DeploymentLookupFailed, match="shop/web") as exc_info:
            engine.get_cluster_deployment(cluster, "shop", "web")
        assert exc_info.value.cluster == "east"

    def test_get_and_update_cluster(self):
        source = InMemoryClusterSource([_ready("east")])
        engine = _engine(source)
        cluster = engine.get_cluster("east")
        cluster.annotations["owner"] = "ops"
        stored = engine.update_cluster(cluster)
        assert stored.annotations["owner"] == "ops"
        assert source.get("east").annotations["owner"] == "ops"

    def test_get_cluster_missing(self):
        engine = _engine(InMemoryClusterSource())
        with pytest.raises(SourceUnavailable):
            engine.get_cluster("nope")


# --- Thread lifecycle ---


class TestEngineLifecycle:
    def test_start_syncs_and_follows_watch(self):
        source = InMemoryClusterSource([_ready("east")], poll_interval=0.01)
        engine = _engine(source, period_seconds=3600)
        engine.start()
        try:
            assert engine.running
            assert _wait_for(lambda: engine.is_synced)
            source.add(_ready("west"))
            assert _wait_for(lambda: "west" in engine.known_clusters())
            source.delete("west")
            assert _wait_for(lambda: "west" not in engine.known_clusters())
        finally:
            engine.stop(timeout=2)
        assert not engine.running

    def test_start_twice_rejected(self):
        engine = _engine(InMemoryClusterSource(poll_interval=0.01), period_seconds=3600)
        engine.start()
        try:
            with pytest.raises(EngineError, match="already running"):
                engine.start()
        finally:
            engine.stop(timeout=2)

    def test_restart_after_stop(self):
        engine = _engine(InMemoryClusterSource(poll_interval=0.01), period_seconds=3600)
        engine.start()
        engine.stop(timeout=2)
        engine.start()
        try:
            assert engine.running
        finally:
            engine.stop(timeout=2)

    def test_watch_reconnects_after_failure(self):
        class FlakyWatchSource(InMemoryClusterSource):
            def __init__(self) -> None:
                super().__init__(poll_interval=0.01)
                self.watch_calls = 0

            def watch(self, stop_event: threading.Event):
                self.watch_calls += 1
                if self.watch_calls == 1:
                    raise SourceUnavailable("stream reset")
                yield from super().watch(stop_event)

        source = FlakyWatchSource()
        engine = _engine(source, period_seconds=3600)
        engine.start()
        try:
            assert _wait_for(lambda: source.watch_calls >= 2)
            source.add(_unready("east"))
            assert _wait_for(lambda: "east" in engine.known_clusters())
        finally:
            engine.stop(timeout=2)

    def test_run_forever_returns_after_stop(self):
        engine = _engine(InMemoryClusterSource(poll_interval=0.01), period_seconds=3600)
        runner = threading.Thread(target=engine.run_forever)
        runner.start()
        assert _wait_for(lambda: engine.running)
        engine.stop(timeout=2)
        runner.join(timeout=5)
        assert not runner.is_alive()
