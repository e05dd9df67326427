"""Exception hierarchy shared by the engine and its collaborators.

Every per-cluster failure carries the cluster name so a pass can record
why a cluster was skipped without aborting the rest of the batch.
"""

from __future__ import annotations


class FleetWardenError(Exception):
    """Base class for all Fleet-Warden errors."""

    def __init__(self, message: str, cluster: str | None = None) -> None:
        super().__init__(message)
        self.cluster = cluster


class ConfigError(FleetWardenError):
    """Raised when the config file cannot be read or validated."""


class SourceUnavailable(FleetWardenError):
    """A list/watch/get/update call against the cluster source failed."""


class PersistConflict(SourceUnavailable):
    """The store rejected an update, e.g. because of a stale resource version."""


class ClusterNotFound(SourceUnavailable):
    """The cluster no longer exists in the source."""


class ClientCreationFailed(FleetWardenError):
    """A per-cluster client handle could not be constructed."""


class StatsError(FleetWardenError):
    """Base class for capacity collection failures."""


class NoClientForCluster(StatsError):
    """No cached client handle exists for the cluster."""


class ClusterNotReady(StatsError):
    """The cluster does not currently report the Ready condition."""


class StatsQueryFailed(StatsError):
    """A remote capacity or pod query failed during collection."""


class DeploymentLookupFailed(FleetWardenError):
    """A deployment could not be read from a member cluster."""
