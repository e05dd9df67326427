"""ReconciliationEngine — keeps cluster lifecycle annotations in step with reality.

Two schedules drive the engine concurrently:

- the watch loop feeds ADDED/MODIFIED/DELETED events from the cluster
  source into ``on_add`` / ``on_update`` / ``on_delete``;
- the monitor loop runs ``full_sync`` every ``period_seconds``, which
  lists every cluster, reconciles the known set against the listing
  (catching deletions the watch missed), samples pod capacity from every
  ready cluster and persists whatever the decision rules change.

Shared state (known set, client cache, observed store) is lock-guarded,
and all work on one cluster name is serialized by a per-name lock so a
pass and a racing watch event never both rewrite the same cluster.
Passes never overlap: a pass that finds the previous one still running
is skipped.

Lifecycle of one cluster in a pass:
  1. Skip if deleting or not Ready
  2. Ensure a client (Ready / unmanaged clusters only)
  3. Collect a MetricsSnapshot
  4. Re-fetch the cluster and re-check readiness
  5. Evaluate the decision rules
  6. Persist changed annotations
  7. Notify change listeners
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from fleet_warden.clients.cache import ClusterClientCache
from fleet_warden.clients.handle import ClusterClientFactory, ClusterClientHandle
from fleet_warden.config import MonitorConfig
from fleet_warden.engine.state import ClusterStore, KnownClusterSet
from fleet_warden.errors import (
    ClientCreationFailed,
    ClusterNotFound,
    ClusterNotReady,
    DeploymentLookupFailed,
    FleetWardenError,
    NoClientForCluster,
    PersistConflict,
    SourceUnavailable,
    StatsError,
)
from fleet_warden.lifecycle.decision import LifecycleDecisionEngine
from fleet_warden.locks import KeyedLock
from fleet_warden.models import (
    LIFECYCLE_STATE_KEY,
    Cluster,
    LifecycleState,
    SyncReport,
    WatchEvent,
    WatchEventType,
    is_cluster_ready,
)
from fleet_warden.source.base import ClusterSource
from fleet_warden.stats.collector import CapacityStatsCollector

logger = logging.getLogger(__name__)

ChangeListener = Callable[[], None]


class EngineError(FleetWardenError):
    """Raised for engine configuration or lifecycle errors."""


def _wants_client(cluster: Cluster) -> bool:
    """Clients are created eagerly for unmanaged and Ready clusters only."""
    state = cluster.annotations.get(LIFECYCLE_STATE_KEY)
    return state is None or state == LifecycleState.READY


class ReconciliationEngine:
    """Owns the known-cluster set and drives capacity sampling and decisions."""

    def __init__(
        self,
        source: ClusterSource,
        client_factory: ClusterClientFactory,
        config: MonitorConfig | None = None,
        on_change: ChangeListener | None = None,
        _clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._source = source
        self._config = config or MonitorConfig()
        self._clock = _clock or (lambda: datetime.now(tz=UTC))
        self._clients = ClusterClientCache(client_factory)
        self._collector = CapacityStatsCollector(self._clients, self._config.reserved_namespaces)
        self._decisions = LifecycleDecisionEngine(self._config, _clock=self._clock)
        self._known = KnownClusterSet()
        self._observed = ClusterStore()
        self._cluster_locks = KeyedLock()
        self._pass_lock = threading.Lock()
        self._listeners_lock = threading.Lock()
        self._listeners: list[ChangeListener] = [on_change] if on_change else []
        self._stop = threading.Event()
        self._synced = threading.Event()
        self._threads: list[threading.Thread] = []

    # --- Properties ---

    @property
    def config(self) -> MonitorConfig:
        return self._config

    @property
    def clients(self) -> ClusterClientCache:
        return self._clients

    @property
    def is_synced(self) -> bool:
        """True once a full pass has listed the clusters successfully."""
        return self._synced.is_set()

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def known_clusters(self) -> list[str]:
        return sorted(self._known.snapshot())

    def add_listener(self, listener: ChangeListener) -> None:
        """Register a zero-argument callback fired after cluster changes."""
        with self._listeners_lock:
            self._listeners.append(listener)

    # --- Watch handlers ---

    def on_add(self, cluster: Cluster) -> None:
        name = cluster.name
        with self._cluster_locks.hold(name):
            newly_known = self._known.add(name)
            if newly_known:
                logger.info("Observed new cluster %s", name)
            if _wants_client(cluster):
                self._try_ensure_client(cluster)
            else:
                logger.info(
                    "Cluster %s is %s, deferring client creation",
                    name, cluster.annotations.get(LIFECYCLE_STATE_KEY),
                )
        if newly_known:
            self._notify()

    def on_update(self, old: Cluster, new: Cluster) -> None:
        if new.is_deleting:
            self.on_delete(new.name)
            return

        name = new.name
        with self._cluster_locks.hold(name):
            newly_known = self._known.add(name)
            old_state = old.annotations.get(LIFECYCLE_STATE_KEY, "")
            new_state = new.annotations.get(LIFECYCLE_STATE_KEY, "")
            logger.debug("Cluster %s updated (%r -> %r)", name, old_state, new_state)

            if new_state == LifecycleState.READY and old_state != LifecycleState.READY:
                if self._clients.get(name) is None:
                    logger.info("Cluster %s became Ready, creating client", name)
                    self._try_ensure_client(new)
            elif new_state == LifecycleState.OFFLINE:
                self._clients.drop(name)
        if newly_known:
            self._notify()

    def on_delete(self, name: str) -> None:
        with self._cluster_locks.hold(name):
            logger.info("Observed deletion of cluster %s", name)
            self._known.discard(name)
            self._clients.drop(name)
        self._notify()

    def handle_event(self, event: WatchEvent) -> None:
        """Dispatch one watch event to the matching handler."""
        cluster = event.cluster
        if event.type == WatchEventType.ADDED:
            self._observed.put(cluster)
            self.on_add(cluster)
        elif event.type == WatchEventType.MODIFIED:
            previous = self._observed.put(cluster)
            old = event.previous or previous or Cluster(name=cluster.name)
            self.on_update(old, cluster)
        elif event.type == WatchEventType.DELETED:
            self._observed.remove(cluster.name)
            self.on_delete(cluster.name)
        else:
            logger.warning("Ignoring watch event of unknown type %r", event.type)

    # --- Full reconciliation ---

    def full_sync(self) -> SyncReport | None:
        """Run one reconciliation pass.

        Returns the pass report, or None if another pass is still running.
        Never raises for source or per-cluster failures; a failed listing
        is reported through ``SyncReport.error``.
        """
        if not self._pass_lock.acquire(blocking=False):
            logger.warning("Previous reconciliation pass still running, skipping")
            return None
        try:
            return self._full_sync()
        finally:
            self._pass_lock.release()

    def _full_sync(self) -> SyncReport:
        report = SyncReport(started_at=self._clock())
        logger.debug("Refreshing cluster stats for all clusters")

        try:
            clusters = self._source.list()
        except Exception as exc:
            logger.error("Error monitoring cluster status: %s", exc)
            report.error = str(exc)
            report.finished_at = self._clock()
            return report
        self._synced.set()

        report.listed = [c.name for c in clusters]
        listed_names = set(report.listed)

        for cluster in clusters:
            self._observed.put(cluster)
            if cluster.name not in self._known:
                self.on_add(cluster)
                report.added.append(cluster.name)

        # deletions the watch stream missed or coalesced
        if len(self._known) != len(listed_names):
            for name in sorted(self._known.difference(listed_names)):
                self._observed.remove(name)
                self.on_delete(name)
                report.deleted.append(name)

        for cluster in clusters:
            if cluster.is_deleting or not is_cluster_ready(cluster):
                logger.debug("Cluster %s is not ready, skipping stats", cluster.name)
                report.skipped[cluster.name] = "not ready"
                continue
            try:
                self._reconcile_cluster(cluster, report)
            except Exception as exc:
                logger.exception("Unexpected error reconciling cluster %s", cluster.name)
                report.skipped[cluster.name] = f"unexpected error: {exc}"

        report.finished_at = self._clock()
        logger.info(
            "Reconciled %d clusters: %d added, %d deleted, %d sampled, %d updated, %d skipped",
            len(report.listed), len(report.added), len(report.deleted),
            len(report.sampled), len(report.updated), len(report.skipped),
        )
        return report

    def _reconcile_cluster(self, cluster: Cluster, report: SyncReport) -> None:
        name = cluster.name
        with self._cluster_locks.hold(name):
            # a watch deletion may have landed since the listing
            if name not in self._known:
                logger.debug("Cluster %s was deleted during the pass, skipping", name)
                report.skipped[name] = "deleted"
                return
            # retry a creation that failed when the cluster was first seen
            if self._clients.get(name) is None and _wants_client(cluster):
                try:
                    self._clients.ensure(cluster)
                except ClientCreationFailed as exc:
                    logger.warning("Failed to get metrics for cluster %s: %s", name, exc)
                    report.skipped[name] = str(exc)
                    return

        try:
            snapshot = self._collector.collect(cluster)
        except StatsError as exc:
            logger.warning("Failed to get metrics for cluster %s: %s", name, exc)
            report.skipped[name] = str(exc)
            return
        report.sampled.append(name)

        persisted = False
        with self._cluster_locks.hold(name):
            if name not in self._known:
                logger.debug("Cluster %s was deleted during the pass, skipping update", name)
                report.skipped[name] = "deleted"
                return
            try:
                current = self._source.get(name)
            except ClusterNotFound as exc:
                logger.info("Cluster %s is gone, dropping its client: %s", name, exc)
                self._clients.drop(name)
                report.skipped[name] = str(exc)
                return
            except SourceUnavailable as exc:
                logger.error("Failed to refresh cluster %s: %s", name, exc)
                report.skipped[name] = str(exc)
                return

            if current.is_deleting or not is_cluster_ready(current):
                logger.debug("Cluster %s is no longer ready, skipping update", name)
                report.skipped[name] = "not ready after refresh"
                return

            decision = self._decisions.decide(current.annotations, snapshot, cluster_name=name)
            if not decision.changed:
                logger.debug("Cluster %s doesn't require an annotation update", name)
                return

            try:
                self._source.update(current.model_copy(update={"annotations": decision.annotations}))
            except PersistConflict as exc:
                logger.warning("Conflict updating cluster %s, retrying next pass: %s", name, exc)
                report.skipped[name] = str(exc)
                return
            except SourceUnavailable as exc:
                logger.error("Failed to update annotations on cluster %s: %s", name, exc)
                report.skipped[name] = str(exc)
                return

            logger.info(
                "Updated annotations on cluster %s (%s)",
                name, ", ".join(decision.rules_fired),
            )
            report.updated.append(name)
            persisted = True

        if persisted:
            self._notify()

    # --- Queries ---

    def get_ready_clusters(self) -> list[Cluster]:
        """Copies of every observed cluster that reports Ready."""
        return [c.model_copy(deep=True) for c in self._observed.values() if is_cluster_ready(c)]

    def get_unready_clusters(self) -> list[Cluster]:
        return [
            c.model_copy(deep=True) for c in self._observed.values() if not is_cluster_ready(c)
        ]

    def get_cluster_client(self, cluster: Cluster) -> ClusterClientHandle:
        """Return the cached client for *cluster*, creating it if necessary."""
        return self._clients.ensure(cluster)

    def get_cluster_deployment(self, cluster: Cluster, namespace: str, name: str) -> dict[str, Any]:
        """Read a deployment from a Ready member cluster through its cached client.

        Never creates a client. Raises NoClientForCluster, ClusterNotReady,
        or DeploymentLookupFailed.
        """
        handle = self._clients.get(cluster.name)
        if handle is None:
            raise NoClientForCluster(f"No client for cluster {cluster.name}", cluster=cluster.name)
        if not is_cluster_ready(cluster):
            raise ClusterNotReady(
                f"Cluster {cluster.name} is not ready, cannot get deployments",
                cluster=cluster.name,
            )
        try:
            return handle.get_deployment(namespace, name)
        except Exception as exc:
            raise DeploymentLookupFailed(
                f"Failed to get deployment {namespace}/{name} from cluster {cluster.name}: {exc}",
                cluster=cluster.name,
            ) from exc

    def get_cluster(self, name: str) -> Cluster:
        return self._source.get(name)

    def update_cluster(self, cluster: Cluster) -> Cluster:
        with self._cluster_locks.hold(cluster.name):
            return self._source.update(cluster)

    # --- Loops ---

    def start(self) -> None:
        """Start the watch and monitor threads."""
        if self.running:
            raise EngineError("Engine is already running")
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._watch_loop, name="fleet-warden-watch", daemon=True),
            threading.Thread(target=self._monitor_loop, name="fleet-warden-monitor", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Started cluster lifecycle engine")

    def stop(self, timeout: float = 10.0) -> None:
        """Signal both loops to stop and wait for them to exit.

        An in-flight pass is allowed to finish within *timeout*.
        """
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Thread %s did not stop within %.0fs", thread.name, timeout)
        self._threads = []
        logger.info("Stopped cluster lifecycle engine")

    def run_forever(self) -> None:
        """Start the engine and block until interrupted."""
        self.start()
        try:
            while not self._stop.wait(1.0):
                pass
        except KeyboardInterrupt:
            logger.info("Interrupted, shutting down")
        finally:
            self.stop()

    def _watch_loop(self) -> None:
        logger.info("Starting cluster watch")
        while not self._stop.is_set():
            try:
                for event in self._source.watch(self._stop):
                    try:
                        self.handle_event(event)
                    except Exception:
                        logger.exception(
                            "Failed to handle %s event for cluster %s",
                            event.type, event.cluster.name,
                        )
            except SourceUnavailable as exc:
                logger.warning(
                    "Cluster watch failed: %s; reconnecting in %.0fs",
                    exc, self._config.watch_retry_seconds,
                )
                self._stop.wait(self._config.watch_retry_seconds)
            except Exception:
                logger.exception("Unexpected cluster watch error")
                self._stop.wait(self._config.watch_retry_seconds)
        logger.info("Cluster watch stopped")

    def _monitor_loop(self) -> None:
        logger.info("Starting cluster monitor (period %.0fs)", self._config.period_seconds)
        while not self._stop.is_set():
            try:
                self.full_sync()
            except Exception:
                logger.exception("Error monitoring cluster status")
            if self._stop.wait(self._config.period_seconds):
                break
        logger.info("Cluster monitor stopped")

    # --- Helpers ---

    def _try_ensure_client(self, cluster: Cluster) -> None:
        try:
            self._clients.ensure(cluster)
        except ClientCreationFailed as exc:
            logger.error("Failed to create client for cluster %s: %s", cluster.name, exc)

    def _notify(self) -> None:
        """Fire-and-forget change notification."""
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener()
            except Exception:
                logger.warning("Change listener %r failed", listener, exc_info=True)
