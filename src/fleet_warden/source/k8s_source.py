"""KubeClusterSource — federation cluster objects via the kubernetes client.

Reads and writes the cluster-scoped ``clusters.federation/v1beta1``
custom resources of a federation control plane. Supports kubeconfig
file or in-cluster config.

Requires: ``pip install fleet-warden[k8s]``
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from datetime import datetime
from typing import Any

from fleet_warden.errors import ClusterNotFound, PersistConflict, SourceUnavailable
from fleet_warden.models import Cluster, ClusterCondition, WatchEvent, WatchEventType

logger = logging.getLogger(__name__)

FEDERATION_GROUP = "federation"
FEDERATION_VERSION = "v1beta1"
CLUSTER_PLURAL = "clusters"

_HTTP_NOT_FOUND = 404
_HTTP_CONFLICT = 409
_HTTP_GONE = 410


def _check_kubernetes_available() -> None:
    """Raise ImportError with helpful message if kubernetes is not installed."""
    try:
        import kubernetes  # noqa: F401
    except ImportError:
        raise ImportError(
            "The 'kubernetes' package is required for KubeClusterSource. "
            "Install it with: pip install fleet-warden[k8s]"
        ) from None


def _is_api_exception(exc: Exception) -> bool:
    # Detect kubernetes ApiException by class name to avoid import
    return type(exc).__name__ == "ApiException"


def cluster_from_object(obj: dict[str, Any]) -> Cluster:
    """Build a Cluster from a federation cluster object."""
    metadata = obj.get("metadata") or {}
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}

    deletion = metadata.get("deletionTimestamp")
    if isinstance(deletion, str):
        deletion = datetime.fromisoformat(deletion.replace("Z", "+00:00"))

    addresses = spec.get("serverAddressByClientCIDRs") or []
    server_address = addresses[0].get("serverAddress") if addresses else None

    return Cluster(
        name=metadata["name"],
        conditions=[
            ClusterCondition(
                type=c.get("type", ""),
                status=c.get("status", ""),
                reason=c.get("reason"),
                message=c.get("message"),
            )
            for c in status.get("conditions") or []
        ],
        annotations=dict(metadata.get("annotations") or {}),
        deletion_timestamp=deletion,
        resource_version=metadata.get("resourceVersion"),
        server_address=server_address,
        secret_ref=(spec.get("secretRef") or {}).get("name"),
        raw=obj,
    )


def cluster_to_object(cluster: Cluster) -> dict[str, Any]:
    """Write the cluster's annotations and resource version back onto its raw object."""
    obj = dict(cluster.raw) if cluster.raw else {
        "apiVersion": f"{FEDERATION_GROUP}/{FEDERATION_VERSION}",
        "kind": "Cluster",
    }
    metadata = dict(obj.get("metadata") or {})
    metadata["name"] = cluster.name
    metadata["annotations"] = dict(cluster.annotations)
    if cluster.resource_version is not None:
        metadata["resourceVersion"] = cluster.resource_version
    obj["metadata"] = metadata
    return obj


class KubeClusterSource:
    """ClusterSource backed by the federation API server.

    Credential handling mirrors KubeClientFactory:
    - ``in_cluster=True`` uses the pod's service account
    - otherwise loads ``kubeconfig`` (default location when None) and ``context``
    """

    def __init__(
        self,
        kubeconfig: str | None = None,
        context: str | None = None,
        in_cluster: bool = False,
        request_timeout: float = 30.0,
        watch_timeout: int = 300,
    ) -> None:
        _check_kubernetes_available()
        self._kubeconfig = kubeconfig
        self._context = context
        self._in_cluster = in_cluster
        self._request_timeout = request_timeout
        self._watch_timeout = watch_timeout
        self._api: Any = None
        self._api_lock = threading.Lock()

    # --- ClusterSource protocol ---

    def list(self) -> list[Cluster]:
        try:
            result = self._custom_api().list_cluster_custom_object(
                FEDERATION_GROUP, FEDERATION_VERSION, CLUSTER_PLURAL,
                _request_timeout=self._request_timeout,
            )
        except Exception as exc:
            raise SourceUnavailable(f"Failed to list clusters: {self._describe(exc)}") from exc
        return [cluster_from_object(item) for item in result.get("items", [])]

    def watch(self, stop_event: threading.Event) -> Iterator[WatchEvent]:
        from kubernetes import watch

        resource_version: str | None = None
        while not stop_event.is_set():
            w = watch.Watch()
            kwargs: dict[str, Any] = {"timeout_seconds": self._watch_timeout}
            if resource_version:
                kwargs["resource_version"] = resource_version
            try:
                for raw_event in w.stream(
                    self._custom_api().list_cluster_custom_object,
                    FEDERATION_GROUP, FEDERATION_VERSION, CLUSTER_PLURAL,
                    **kwargs,
                ):
                    if stop_event.is_set():
                        break
                    event = self._to_event(raw_event)
                    if event is None:
                        continue
                    resource_version = event.cluster.resource_version or resource_version
                    yield event
            except Exception as exc:
                if _is_api_exception(exc) and exc.status == _HTTP_GONE:
                    logger.info("Cluster watch resource version expired, restarting")
                    resource_version = None
                    continue
                raise SourceUnavailable(f"Cluster watch failed: {self._describe(exc)}") from exc
            finally:
                w.stop()

    def get(self, name: str) -> Cluster:
        try:
            obj = self._custom_api().get_cluster_custom_object(
                FEDERATION_GROUP, FEDERATION_VERSION, CLUSTER_PLURAL, name,
                _request_timeout=self._request_timeout,
            )
        except Exception as exc:
            if _is_api_exception(exc) and exc.status == _HTTP_NOT_FOUND:
                raise ClusterNotFound(f"Cluster {name} not found", cluster=name) from exc
            raise SourceUnavailable(
                f"Failed to get cluster {name}: {self._describe(exc)}", cluster=name,
            ) from exc
        return cluster_from_object(obj)

    def update(self, cluster: Cluster) -> Cluster:
        try:
            obj = self._custom_api().replace_cluster_custom_object(
                FEDERATION_GROUP, FEDERATION_VERSION, CLUSTER_PLURAL, cluster.name,
                cluster_to_object(cluster),
                _request_timeout=self._request_timeout,
            )
        except Exception as exc:
            if _is_api_exception(exc) and exc.status == _HTTP_CONFLICT:
                raise PersistConflict(
                    f"Cluster {cluster.name} was modified concurrently: {exc.reason}",
                    cluster=cluster.name,
                ) from exc
            raise SourceUnavailable(
                f"Failed to update cluster {cluster.name}: {self._describe(exc)}",
                cluster=cluster.name,
            ) from exc
        return cluster_from_object(obj)

    # --- Private ---

    def _custom_api(self) -> Any:
        with self._api_lock:
            if self._api is None:
                from kubernetes import client, config

                if self._in_cluster:
                    config.load_incluster_config()
                    api_client = client.ApiClient()
                else:
                    api_client = config.new_client_from_config(
                        config_file=self._kubeconfig, context=self._context,
                    )
                self._api = client.CustomObjectsApi(api_client)
            return self._api

    def _to_event(self, raw_event: dict[str, Any]) -> WatchEvent | None:
        event_type = raw_event.get("type")
        obj = raw_event.get("object")
        if event_type not in WatchEventType.__members__ or not isinstance(obj, dict):
            logger.debug("Skipping watch event of type %s", event_type)
            return None
        return WatchEvent(type=WatchEventType(event_type), cluster=cluster_from_object(obj))

    @staticmethod
    def _describe(exc: Exception) -> str:
        if _is_api_exception(exc):
            return f"K8s API error ({exc.status}): {exc.reason}"
        return str(exc)
