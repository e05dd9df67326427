"""Lock-guarded in-memory state owned by the reconciliation engine.

Both the watch thread and the monitor thread read and mutate these
objects, so every access goes through a lock; raw collections are never
handed out, only copies.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable

from fleet_warden.models import Cluster


class KnownClusterSet:
    """Names of clusters the engine has observed."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._names: set[str] = set()

    def add(self, name: str) -> bool:
        """Insert *name*. Returns True if it was not known before."""
        with self._lock:
            if name in self._names:
                return False
            self._names.add(name)
            return True

    def discard(self, name: str) -> bool:
        """Remove *name*. Returns True if it was known."""
        with self._lock:
            if name not in self._names:
                return False
            self._names.remove(name)
            return True

    def difference(self, observed: Iterable[str]) -> set[str]:
        """Known names that are not in *observed*."""
        with self._lock:
            return self._names - set(observed)

    def snapshot(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._names)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._names

    def __len__(self) -> int:
        with self._lock:
            return len(self._names)


class ClusterStore:
    """Last observed copy of every cluster, keyed by name.

    Supplies the previous object for MODIFIED events that arrive without
    one and backs the ready/unready queries.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._clusters: dict[str, Cluster] = {}

    def put(self, cluster: Cluster) -> Cluster | None:
        """Store *cluster* and return the copy it replaced, if any."""
        with self._lock:
            previous = self._clusters.get(cluster.name)
            self._clusters[cluster.name] = cluster
            return previous

    def remove(self, name: str) -> Cluster | None:
        with self._lock:
            return self._clusters.pop(name, None)

    def get(self, name: str) -> Cluster | None:
        with self._lock:
            return self._clusters.get(name)

    def values(self) -> list[Cluster]:
        with self._lock:
            return list(self._clusters.values())
