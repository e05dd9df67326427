"""KubeClusterClient — member-cluster queries via the kubernetes Python client.

Requires: ``pip install fleet-warden[k8s]``
"""

from __future__ import annotations

import base64
from collections.abc import Collection
from typing import Any

import yaml

from fleet_warden.errors import ClientCreationFailed
from fleet_warden.models import Cluster

KUBECONFIG_SECRET_KEY = "kubeconfig"


def _check_kubernetes_available() -> None:
    """Raise ImportError with helpful message if kubernetes is not installed."""
    try:
        import kubernetes  # noqa: F401
    except ImportError:
        raise ImportError(
            "The 'kubernetes' package is required for KubeClientFactory. "
            "Install it with: pip install fleet-warden[k8s]"
        ) from None


def _parse_quantity(value: Any) -> int:
    """Pod counts are plain integers in node status; tolerate missing values."""
    if value is None:
        return 0
    try:
        return int(str(value))
    except ValueError:
        return 0


class KubeClusterClient:
    """ClusterClientHandle bound to one member cluster's API server."""

    def __init__(self, api_client: Any, request_timeout: float = 30.0) -> None:
        from kubernetes import client

        self._core = client.CoreV1Api(api_client)
        self._apps = client.AppsV1Api(api_client)
        self._request_timeout = request_timeout

    def pod_capacity(self) -> tuple[int, int]:
        nodes = self._core.list_node(_request_timeout=self._request_timeout)
        allocatable = 0
        total = 0
        for node in nodes.items:
            status = node.status
            if status is None:
                continue
            allocatable += _parse_quantity((status.allocatable or {}).get("pods"))
            total += _parse_quantity((status.capacity or {}).get("pods"))
        return allocatable, total

    def count_pods(
        self,
        namespace: str | None = None,
        phases: Collection[str] | None = None,
    ) -> int:
        if namespace is None:
            pods = self._core.list_pod_for_all_namespaces(_request_timeout=self._request_timeout)
        else:
            pods = self._core.list_namespaced_pod(
                namespace, _request_timeout=self._request_timeout,
            )
        if phases is None:
            return len(pods.items)
        return sum(1 for pod in pods.items if pod.status is not None and pod.status.phase in phases)

    def get_deployment(self, namespace: str, name: str) -> dict[str, Any]:
        deployment = self._apps.read_namespaced_deployment(
            name, namespace, _request_timeout=self._request_timeout,
        )
        return deployment.to_dict()


class KubeClientFactory:
    """Builds KubeClusterClient handles for federation member clusters.

    Credential handling:
    - If the cluster has a ``secret_ref``, reads the kubeconfig stored under
      the ``kubeconfig`` key of that secret in ``secret_namespace`` on the
      federation control plane
    - Otherwise loads the local kubeconfig context named after the cluster
    - The cluster's ``server_address`` overrides the kubeconfig server
    """

    def __init__(
        self,
        kubeconfig: str | None = None,
        context: str | None = None,
        in_cluster: bool = False,
        secret_namespace: str = "federation-system",
        request_timeout: float = 30.0,
    ) -> None:
        _check_kubernetes_available()
        self._kubeconfig = kubeconfig
        self._context = context
        self._in_cluster = in_cluster
        self._secret_namespace = secret_namespace
        self._request_timeout = request_timeout

    def create(self, cluster: Cluster) -> KubeClusterClient:
        try:
            if cluster.secret_ref:
                api_client = self._client_from_secret(cluster)
            else:
                api_client = self._client_from_local_config(cluster)
            if cluster.server_address:
                api_client.configuration.host = cluster.server_address
            return KubeClusterClient(api_client, request_timeout=self._request_timeout)
        except ClientCreationFailed:
            raise
        except Exception as exc:
            if type(exc).__name__ == "ApiException":
                detail = f"K8s API error ({exc.status}): {exc.reason}"
            else:
                detail = str(exc)
            raise ClientCreationFailed(
                f"Failed to create client for cluster {cluster.name}: {detail}",
                cluster=cluster.name,
            ) from exc

    # --- Private: client setup ---

    def _client_from_secret(self, cluster: Cluster) -> Any:
        from kubernetes import config

        secret = self._federation_core().read_namespaced_secret(
            cluster.secret_ref, self._secret_namespace,
            _request_timeout=self._request_timeout,
        )
        encoded = (secret.data or {}).get(KUBECONFIG_SECRET_KEY)
        if not encoded:
            raise ClientCreationFailed(
                f"Secret {self._secret_namespace}/{cluster.secret_ref} has no "
                f"'{KUBECONFIG_SECRET_KEY}' key",
                cluster=cluster.name,
            )
        kubeconfig = yaml.safe_load(base64.b64decode(encoded).decode("utf-8"))
        if not isinstance(kubeconfig, dict):
            raise ClientCreationFailed(
                f"Secret {self._secret_namespace}/{cluster.secret_ref} does not hold a kubeconfig",
                cluster=cluster.name,
            )
        return config.new_client_from_config_dict(kubeconfig)

    def _client_from_local_config(self, cluster: Cluster) -> Any:
        from kubernetes import config

        return config.new_client_from_config(
            config_file=self._kubeconfig, context=cluster.name,
        )

    def _federation_core(self) -> Any:
        """CoreV1Api on the federation control plane, for reading cluster secrets."""
        from kubernetes import client, config

        if self._in_cluster:
            config.load_incluster_config()
            return client.CoreV1Api(client.ApiClient())
        api_client = config.new_client_from_config(
            config_file=self._kubeconfig, context=self._context,
        )
        return client.CoreV1Api(api_client)
