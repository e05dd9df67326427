"""ClusterSource protocol.

A cluster source is the federation store the engine reads clusters from
and writes annotation changes back to. Any object with ``list()``,
``watch()``, ``get()`` and ``update()`` methods satisfies the protocol —
no inheritance required.

All methods raise ``SourceUnavailable`` on failure; ``update()`` raises
``PersistConflict`` when the store rejects a stale write.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from typing import Protocol, runtime_checkable

from fleet_warden.models import Cluster, WatchEvent


@runtime_checkable
class ClusterSource(Protocol):
    """Protocol for federation cluster stores."""

    def list(self) -> list[Cluster]:
        """Return every cluster currently registered."""
        ...

    def watch(self, stop_event: threading.Event) -> Iterator[WatchEvent]:
        """Yield change events until *stop_event* is set or the stream ends."""
        ...

    def get(self, name: str) -> Cluster:
        """Fetch the current server-side record of one cluster."""
        ...

    def update(self, cluster: Cluster) -> Cluster:
        """Persist the cluster (annotations included) and return the stored copy."""
        ...
