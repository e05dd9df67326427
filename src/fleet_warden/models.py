"""Core data models for Fleet-Warden.

Defines the schemas for:
- Member clusters as observed from the federation store
- Lifecycle states carried in the cluster annotations
- Pod-capacity snapshots sampled from each cluster
- Watch events delivered by a cluster source
- Reconciliation pass reports
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# --- Annotation keys ---

ANNOTATION_PREFIX = "fleet-warden.io/"

LIFECYCLE_STATE_KEY = ANNOTATION_PREFIX + "lifecycle-state"
CAPACITY_ALLOCATABLE_PODS_KEY = ANNOTATION_PREFIX + "capacity-allocatable-pods"
CAPACITY_TOTAL_PODS_KEY = ANNOTATION_PREFIX + "capacity-total-pods"
CAPACITY_USED_PODS_KEY = ANNOTATION_PREFIX + "capacity-used-pods"
CAPACITY_SYSTEM_PODS_KEY = ANNOTATION_PREFIX + "capacity-system-pods"
SHUTDOWN_START_TIME_KEY = ANNOTATION_PREFIX + "shutdown-start-time"
TIME_TO_LIVE_KEY = ANNOTATION_PREFIX + "time-to-live-seconds"
AUTOSCALE_ENABLED_KEY = ANNOTATION_PREFIX + "autoscale-enabled"
SCALE_UP_THRESHOLD_KEY = ANNOTATION_PREFIX + "scale-up-threshold-percent"
SCALE_DOWN_THRESHOLD_KEY = ANNOTATION_PREFIX + "scale-down-threshold-percent"

CAPACITY_KEYS = (
    CAPACITY_ALLOCATABLE_PODS_KEY,
    CAPACITY_TOTAL_PODS_KEY,
    CAPACITY_USED_PODS_KEY,
    CAPACITY_SYSTEM_PODS_KEY,
)

CLUSTER_READY_CONDITION = "Ready"
CONDITION_TRUE = "True"


# --- Enums ---


class LifecycleState(enum.StrEnum):
    READY = "Ready"
    PENDING_SCALE_UP = "PendingScaleUp"
    SCALING_UP = "ScalingUp"
    PENDING_SCALE_DOWN = "PendingScaleDown"
    SCALING_DOWN = "ScalingDown"
    PENDING_SHUTDOWN = "PendingShutdown"
    OFFLINE = "Offline"

    @classmethod
    def parse(cls, value: str | None) -> LifecycleState | None:
        """Map an annotation value to a state. Unknown or missing -> None."""
        if value is None:
            return None
        try:
            return cls(value)
        except ValueError:
            return None


SCALING_STATES = frozenset({
    LifecycleState.PENDING_SCALE_UP,
    LifecycleState.SCALING_UP,
    LifecycleState.PENDING_SCALE_DOWN,
    LifecycleState.SCALING_DOWN,
})


class WatchEventType(enum.StrEnum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


# --- Cluster ---


class ClusterCondition(BaseModel):
    """A status condition reported on a federated cluster."""

    type: str
    status: str
    reason: str | None = None
    message: str | None = None


class Cluster(BaseModel):
    """A member cluster as stored in the federation control plane.

    ``annotations`` is the only lifecycle state this project persists.
    ``raw`` keeps the original store object so adapters can write back
    fields they do not model.
    """

    name: str = Field(..., min_length=1)
    conditions: list[ClusterCondition] = Field(default_factory=list)
    annotations: dict[str, str] = Field(default_factory=dict)
    deletion_timestamp: datetime | None = None
    resource_version: str | None = None
    server_address: str | None = None
    secret_ref: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict, exclude=True, repr=False)

    @property
    def lifecycle_state(self) -> LifecycleState | None:
        return LifecycleState.parse(self.annotations.get(LIFECYCLE_STATE_KEY))

    @property
    def is_deleting(self) -> bool:
        return self.deletion_timestamp is not None


def is_cluster_ready(cluster: Cluster) -> bool:
    """True iff the cluster reports a ``Ready`` condition with status ``True``."""
    return any(
        c.type == CLUSTER_READY_CONDITION and c.status == CONDITION_TRUE
        for c in cluster.conditions
    )


# --- Metrics ---


class MetricsSnapshot(BaseModel):
    """Pod-capacity sample taken from one cluster during a pass."""

    model_config = ConfigDict(frozen=True)

    allocatable_pods: int = Field(..., ge=0)
    total_pods: int = Field(..., ge=0)
    used_pods: int = Field(..., ge=0)
    used_system_pods: int = Field(..., ge=0)

    def as_annotations(self) -> dict[str, str]:
        """Project the snapshot onto the four capacity annotation keys."""
        return {
            CAPACITY_ALLOCATABLE_PODS_KEY: str(self.allocatable_pods),
            CAPACITY_TOTAL_PODS_KEY: str(self.total_pods),
            CAPACITY_USED_PODS_KEY: str(self.used_pods),
            CAPACITY_SYSTEM_PODS_KEY: str(self.used_system_pods),
        }


# --- Watch events ---


class WatchEvent(BaseModel):
    """One event from a cluster source watch stream.

    ``previous`` is only set by sources that know the prior object for a
    MODIFIED event; the engine falls back to its own observed store.
    """

    type: WatchEventType
    cluster: Cluster
    previous: Cluster | None = None


# --- Reconciliation reports ---


class SyncReport(BaseModel):
    """Outcome of one full reconciliation pass."""

    started_at: datetime
    finished_at: datetime | None = None
    listed: list[str] = Field(default_factory=list)
    added: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)
    sampled: list[str] = Field(default_factory=list)
    updated: list[str] = Field(default_factory=list)
    skipped: dict[str, str] = Field(default_factory=dict)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None
