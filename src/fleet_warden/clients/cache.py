"""Lazily created, cached client handles — one per member cluster.

Handles are created on demand by a ClusterClientFactory and dropped when
a cluster is deleted or goes Offline. All state is in-memory and
thread-safe: the table is guarded by one lock and creation for a given
name is serialized by a per-name lock, so two threads calling
``ensure()`` for the same cluster never both construct a handle.
"""

from __future__ import annotations

import logging
import threading

from fleet_warden.clients.handle import ClusterClientFactory, ClusterClientHandle
from fleet_warden.errors import ClientCreationFailed
from fleet_warden.locks import KeyedLock
from fleet_warden.models import Cluster

logger = logging.getLogger(__name__)


class ClusterClientCache:
    """Name -> handle cache with race-free creation."""

    def __init__(self, factory: ClusterClientFactory) -> None:
        self._factory = factory
        self._lock = threading.Lock()
        self._creation = KeyedLock()
        self._handles: dict[str, ClusterClientHandle] = {}

    def ensure(self, cluster: Cluster) -> ClusterClientHandle:
        """Return the cached handle for *cluster*, creating it if needed.

        Raises ClientCreationFailed if construction fails; nothing is
        cached in that case so the next call retries.
        """
        handle = self.get(cluster.name)
        if handle is not None:
            return handle

        with self._creation.hold(cluster.name):
            # another thread may have finished while we waited
            handle = self.get(cluster.name)
            if handle is not None:
                return handle

            logger.info("Creating client for cluster %s", cluster.name)
            try:
                handle = self._factory.create(cluster)
            except ClientCreationFailed:
                raise
            except Exception as exc:
                raise ClientCreationFailed(
                    f"Failed to create client for cluster {cluster.name}: {exc}",
                    cluster=cluster.name,
                ) from exc
            if handle is None:
                raise ClientCreationFailed(
                    f"Client factory returned no handle for cluster {cluster.name}",
                    cluster=cluster.name,
                )

            with self._lock:
                self._handles[cluster.name] = handle
            return handle

    def get(self, name: str) -> ClusterClientHandle | None:
        """Look up a handle without creating one."""
        with self._lock:
            return self._handles.get(name)

    def drop(self, name: str) -> bool:
        """Remove the handle for *name*. Returns True if one was cached."""
        with self._lock:
            removed = self._handles.pop(name, None) is not None
        if removed:
            logger.info("Dropped client for cluster %s", name)
        return removed

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._handles)

    def clear(self) -> None:
        with self._lock:
            self._handles.clear()

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)
