"""Per-cluster client protocols and built-in StaticClusterClient.

A ClusterClientHandle answers the two questions capacity collection asks
of a member cluster: how many pods fit, and how many pods exist. A
ClusterClientFactory builds one handle per cluster.
"""

from __future__ import annotations

from collections.abc import Collection, Mapping
from typing import Any, Protocol, runtime_checkable

from fleet_warden.errors import ClientCreationFailed
from fleet_warden.models import Cluster

POD_PHASE_PENDING = "Pending"
POD_PHASE_RUNNING = "Running"
ACTIVE_POD_PHASES = frozenset({POD_PHASE_PENDING, POD_PHASE_RUNNING})


@runtime_checkable
class ClusterClientHandle(Protocol):
    """Protocol for a client bound to a single member cluster."""

    def pod_capacity(self) -> tuple[int, int]:
        """Return ``(allocatable, total)`` pod capacity summed over nodes."""
        ...

    def count_pods(
        self,
        namespace: str | None = None,
        phases: Collection[str] | None = None,
    ) -> int:
        """Count pods in *namespace* (all when None) whose phase is in *phases* (any when None)."""
        ...

    def get_deployment(self, namespace: str, name: str) -> dict[str, Any]:
        """Return the deployment *name* in *namespace* as a plain dict."""
        ...


@runtime_checkable
class ClusterClientFactory(Protocol):
    """Protocol for building client handles."""

    def create(self, cluster: Cluster) -> ClusterClientHandle:
        """Build a handle for *cluster*. Raises ClientCreationFailed on error."""
        ...


class StaticClusterClient:
    """Handle that answers from fixed numbers instead of a live cluster.

    ``pods`` maps namespace -> {phase: count} and ``deployments`` maps
    ``(namespace, name)`` -> deployment dict. Set ``fail`` to an exception
    to make every query raise it.
    """

    def __init__(
        self,
        allocatable: int = 110,
        total: int = 110,
        pods: Mapping[str, Mapping[str, int]] | None = None,
        deployments: Mapping[tuple[str, str], dict[str, Any]] | None = None,
        fail: Exception | None = None,
    ) -> None:
        self.allocatable = allocatable
        self.total = total
        self.pods: dict[str, dict[str, int]] = {ns: dict(p) for ns, p in (pods or {}).items()}
        self.deployments: dict[tuple[str, str], dict[str, Any]] = dict(deployments or {})
        self.fail = fail

    def pod_capacity(self) -> tuple[int, int]:
        if self.fail is not None:
            raise self.fail
        return self.allocatable, self.total

    def count_pods(
        self,
        namespace: str | None = None,
        phases: Collection[str] | None = None,
    ) -> int:
        if self.fail is not None:
            raise self.fail
        namespaces = [namespace] if namespace is not None else list(self.pods)
        count = 0
        for ns in namespaces:
            for phase, n in self.pods.get(ns, {}).items():
                if phases is None or phase in phases:
                    count += n
        return count

    def get_deployment(self, namespace: str, name: str) -> dict[str, Any]:
        if self.fail is not None:
            raise self.fail
        try:
            return dict(self.deployments[(namespace, name)])
        except KeyError:
            raise LookupError(f"deployment {namespace}/{name} not found") from None


class StaticClientFactory:
    """Factory returning pre-registered StaticClusterClient handles.

    Clusters without a registered handle get a fresh default one unless
    listed in ``failing``. ``created`` records every successful creation.
    """

    def __init__(
        self,
        handles: Mapping[str, ClusterClientHandle] | None = None,
        failing: Collection[str] = (),
    ) -> None:
        self.handles: dict[str, ClusterClientHandle] = dict(handles or {})
        self.failing: set[str] = set(failing)
        self.created: list[str] = []

    def create(self, cluster: Cluster) -> ClusterClientHandle:
        if cluster.name in self.failing:
            raise ClientCreationFailed(
                f"cannot build client for cluster {cluster.name}", cluster=cluster.name,
            )
        handle = self.handles.get(cluster.name)
        if handle is None:
            handle = StaticClusterClient()
        self.created.append(cluster.name)
        return handle
