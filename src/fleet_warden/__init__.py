"""Fleet-Warden: capacity-aware lifecycle control for federated clusters."""

__version__ = "0.4.0"

# Optional adapter imports (don't crash if optional deps are missing)
import contextlib

from fleet_warden.clients.cache import ClusterClientCache
from fleet_warden.clients.handle import (
    ClusterClientFactory,
    ClusterClientHandle,
    StaticClientFactory,
    StaticClusterClient,
)
from fleet_warden.config import FleetWardenConfig, MonitorConfig, find_config, load_config
from fleet_warden.engine.reconciler import EngineError, ReconciliationEngine
from fleet_warden.errors import (
    ClientCreationFailed,
    ClusterNotFound,
    ClusterNotReady,
    ConfigError,
    DeploymentLookupFailed,
    FleetWardenError,
    NoClientForCluster,
    PersistConflict,
    SourceUnavailable,
    StatsError,
    StatsQueryFailed,
)
from fleet_warden.lifecycle.decision import (
    DecisionRule,
    LifecycleDecision,
    LifecycleDecisionEngine,
)
from fleet_warden.models import (
    Cluster,
    ClusterCondition,
    LifecycleState,
    MetricsSnapshot,
    SyncReport,
    WatchEvent,
    WatchEventType,
)
from fleet_warden.source.base import ClusterSource
from fleet_warden.source.memory import InMemoryClusterSource
from fleet_warden.stats.collector import CapacityStatsCollector

with contextlib.suppress(ImportError):
    from fleet_warden.source.k8s_source import KubeClusterSource

with contextlib.suppress(ImportError):
    from fleet_warden.clients.k8s_client import KubeClientFactory, KubeClusterClient

__all__ = [
    "CapacityStatsCollector",
    "ClientCreationFailed",
    "Cluster",
    "ClusterClientCache",
    "ClusterClientFactory",
    "ClusterClientHandle",
    "ClusterCondition",
    "ClusterNotFound",
    "ClusterNotReady",
    "ClusterSource",
    "ConfigError",
    "DecisionRule",
    "DeploymentLookupFailed",
    "EngineError",
    "find_config",
    "FleetWardenConfig",
    "FleetWardenError",
    "InMemoryClusterSource",
    "KubeClientFactory",
    "KubeClusterClient",
    "KubeClusterSource",
    "LifecycleDecision",
    "LifecycleDecisionEngine",
    "LifecycleState",
    "load_config",
    "MetricsSnapshot",
    "MonitorConfig",
    "NoClientForCluster",
    "PersistConflict",
    "ReconciliationEngine",
    "SourceUnavailable",
    "StaticClientFactory",
    "StaticClusterClient",
    "StatsError",
    "StatsQueryFailed",
    "SyncReport",
    "WatchEvent",
    "WatchEventType",
    "__version__",
]
