"""In-memory cluster source.

Keeps clusters in a dict and publishes watch events through a queue.
Useful for tests, dry runs, and local experiments with the decision rules.
Writes are checked against resource versions like a real API server.
"""

from __future__ import annotations

import queue
import threading
from collections.abc import Iterator
from datetime import UTC, datetime

from fleet_warden.errors import ClusterNotFound, PersistConflict, SourceUnavailable
from fleet_warden.models import Cluster, WatchEvent, WatchEventType


class InMemoryClusterSource:
    """Thread-safe cluster store with a single watch queue.

    Mutations made through ``add``/``modify``/``delete`` publish watch
    events; ``update`` (the engine's write path) publishes MODIFIED too,
    matching what a real store would echo back.
    """

    def __init__(self, clusters: list[Cluster] | None = None, poll_interval: float = 0.05) -> None:
        self._lock = threading.Lock()
        self._clusters: dict[str, Cluster] = {}
        self._version = 0
        self._events: queue.Queue[WatchEvent] = queue.Queue()
        self._poll_interval = poll_interval
        self.fail_list = False
        self.fail_get: set[str] = set()
        self.fail_update: set[str] = set()
        self.update_calls: list[str] = []
        for cluster in clusters or []:
            self._store(cluster)

    # --- ClusterSource protocol ---

    def list(self) -> list[Cluster]:
        if self.fail_list:
            raise SourceUnavailable("cluster list unavailable")
        with self._lock:
            return [c.model_copy(deep=True) for c in self._clusters.values()]

    def watch(self, stop_event: threading.Event) -> Iterator[WatchEvent]:
        while not stop_event.is_set():
            try:
                event = self._events.get(timeout=self._poll_interval)
            except queue.Empty:
                continue
            yield event

    def get(self, name: str) -> Cluster:
        if name in self.fail_get:
            raise SourceUnavailable(f"cannot get cluster {name}", cluster=name)
        with self._lock:
            cluster = self._clusters.get(name)
            if cluster is None:
                raise ClusterNotFound(f"cluster {name} not found", cluster=name)
            return cluster.model_copy(deep=True)

    def update(self, cluster: Cluster) -> Cluster:
        self.update_calls.append(cluster.name)
        if cluster.name in self.fail_update:
            raise SourceUnavailable(f"cannot update cluster {cluster.name}", cluster=cluster.name)
        with self._lock:
            current = self._clusters.get(cluster.name)
            if current is None:
                raise ClusterNotFound(f"cluster {cluster.name} not found", cluster=cluster.name)
            if cluster.resource_version != current.resource_version:
                raise PersistConflict(
                    f"cluster {cluster.name} was modified "
                    f"(have {cluster.resource_version}, store has {current.resource_version})",
                    cluster=cluster.name,
                )
            stored = self._store(cluster)
        self._events.put(WatchEvent(type=WatchEventType.MODIFIED, cluster=stored, previous=current))
        return stored.model_copy(deep=True)

    # --- Test/dry-run helpers ---

    def add(self, cluster: Cluster) -> Cluster:
        with self._lock:
            stored = self._store(cluster)
        self._events.put(WatchEvent(type=WatchEventType.ADDED, cluster=stored))
        return stored

    def modify(self, cluster: Cluster) -> Cluster:
        """Replace a cluster regardless of version, as an external actor would."""
        with self._lock:
            previous = self._clusters.get(cluster.name)
            stored = self._store(cluster)
        self._events.put(
            WatchEvent(type=WatchEventType.MODIFIED, cluster=stored, previous=previous),
        )
        return stored

    def delete(self, name: str, *, silent: bool = False) -> None:
        """Remove a cluster. ``silent`` skips the watch event, as a dropped stream would."""
        with self._lock:
            removed = self._clusters.pop(name, None)
        if removed is not None and not silent:
            self._events.put(WatchEvent(type=WatchEventType.DELETED, cluster=removed))

    def mark_deleting(self, name: str) -> Cluster:
        with self._lock:
            current = self._clusters[name]
            stored = self._store(
                current.model_copy(update={"deletion_timestamp": datetime.now(tz=UTC)}),
            )
        self._events.put(WatchEvent(type=WatchEventType.MODIFIED, cluster=stored, previous=current))
        return stored

    def pending_events(self) -> int:
        return self._events.qsize()

    def _store(self, cluster: Cluster) -> Cluster:
        """Store a copy with a bumped resource version. Caller holds the lock."""
        self._version += 1
        stored = cluster.model_copy(deep=True, update={"resource_version": str(self._version)})
        self._clusters[stored.name] = stored
        return stored
