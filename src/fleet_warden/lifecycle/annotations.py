"""Reading and writing lifecycle values at the annotation boundary.

Annotations are plain strings in the federation store. Everything in this
module converts between those strings and typed values; nothing here
mutates a cluster.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime

from fleet_warden.models import (
    CAPACITY_KEYS,
    LIFECYCLE_STATE_KEY,
    SCALING_STATES,
    LifecycleState,
)

# Go time.UnixDate, as written by earlier controllers: "Mon Jan  2 15:04:05 UTC 2006"
_UNIX_DATE_FORMAT = "%a %b %d %H:%M:%S %Z %Y"

_TRUE_VALUES = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_VALUES = frozenset({"0", "f", "F", "FALSE", "false", "False"})


def annotation_int(annotations: Mapping[str, str], key: str, default: int = 0) -> int:
    """Parse an integer annotation, falling back to *default* when missing or invalid."""
    raw = annotations.get(key)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def parse_bool(value: str | None) -> bool | None:
    """Parse a boolean annotation. Returns None if the value is not a boolean."""
    if value is None:
        return None
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    return None


def lifecycle_state(annotations: Mapping[str, str]) -> LifecycleState | None:
    return LifecycleState.parse(annotations.get(LIFECYCLE_STATE_KEY))


def format_timestamp(moment: datetime) -> str:
    return moment.astimezone(UTC).isoformat()


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 or Go UnixDate timestamp. Returns None if unparsable.

    Naive ISO values are taken as UTC.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        try:
            parsed = datetime.strptime(value, _UNIX_DATE_FORMAT)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def is_capacity_data_present(annotations: Mapping[str, str]) -> bool:
    """True when all four capacity annotations are set."""
    return all(key in annotations for key in CAPACITY_KEYS)


def is_cluster_scaling(annotations: Mapping[str, str]) -> bool:
    """True when the cluster is pending or in the middle of a scale operation.

    Clusters without a lifecycle-state annotation are not managed and
    never count as scaling.
    """
    return lifecycle_state(annotations) in SCALING_STATES
