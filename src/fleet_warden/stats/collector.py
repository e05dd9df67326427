"""Pod-capacity collection from member clusters."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from fleet_warden.clients.cache import ClusterClientCache
from fleet_warden.clients.handle import ACTIVE_POD_PHASES
from fleet_warden.errors import ClusterNotReady, NoClientForCluster, StatsQueryFailed
from fleet_warden.models import Cluster, MetricsSnapshot, is_cluster_ready

logger = logging.getLogger(__name__)


class CapacityStatsCollector:
    """Samples allocatable/total pod capacity and pod counts for one cluster.

    Only uses handles already in the cache; it never creates one.
    """

    def __init__(
        self,
        clients: ClusterClientCache,
        reserved_namespaces: Sequence[str] = ("kube-system",),
    ) -> None:
        self._clients = clients
        self._reserved_namespaces = tuple(reserved_namespaces)

    @property
    def reserved_namespaces(self) -> tuple[str, ...]:
        return self._reserved_namespaces

    def collect(self, cluster: Cluster) -> MetricsSnapshot:
        """Return a fresh snapshot, or raise without a partial result.

        Raises:
            NoClientForCluster: no cached handle for the cluster.
            ClusterNotReady: the cluster is not Ready.
            StatsQueryFailed: any remote query failed.
        """
        handle = self._clients.get(cluster.name)
        if handle is None:
            raise NoClientForCluster(
                f"No client for cluster {cluster.name}", cluster=cluster.name,
            )
        if not is_cluster_ready(cluster):
            raise ClusterNotReady(
                f"Cluster {cluster.name} is not ready, cannot collect stats",
                cluster=cluster.name,
            )

        try:
            allocatable, total = handle.pod_capacity()
            used = handle.count_pods(phases=ACTIVE_POD_PHASES)
            system = sum(handle.count_pods(namespace=ns) for ns in self._reserved_namespaces)
            snapshot = MetricsSnapshot(
                allocatable_pods=allocatable,
                total_pods=total,
                used_pods=used,
                used_system_pods=system,
            )
        except Exception as exc:
            raise StatsQueryFailed(
                f"Failed to collect stats for cluster {cluster.name}: {exc}",
                cluster=cluster.name,
            ) from exc

        logger.debug(
            "Cluster %s: allocatable=%d total=%d used=%d system=%d",
            cluster.name, allocatable, total, used, system,
        )
        return snapshot
