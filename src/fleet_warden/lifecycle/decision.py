"""Lifecycle decisions — the annotation state machine.

Given a cluster's current annotations and a fresh metrics snapshot, decides
which lifecycle annotations must change. Decisions are pure: the input
mapping is never mutated and the only outside input is the injected clock.

Rules are evaluated in a fixed order on every pass and several may fire
in the same pass:

1. Record capacity when it is missing or stale.
2. Start the idle timer when only system pods remain; cancel it when user
   pods come back.
3. Mark PendingShutdown once the idle timer has run for the TTL.
4. Mark PendingScaleUp / PendingScaleDown when user pods cross the
   capacity thresholds (autoscale-enabled, Ready clusters only).

Usage::

    engine = LifecycleDecisionEngine(MonitorConfig())
    decision = engine.decide(cluster.annotations, snapshot)
    if decision.changed:
        cluster.annotations = decision.annotations
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import NamedTuple

from fleet_warden.config import MonitorConfig
from fleet_warden.lifecycle.annotations import (
    annotation_int,
    format_timestamp,
    is_capacity_data_present,
    lifecycle_state,
    parse_bool,
    parse_timestamp,
)
from fleet_warden.models import (
    AUTOSCALE_ENABLED_KEY,
    CAPACITY_SYSTEM_PODS_KEY,
    CAPACITY_TOTAL_PODS_KEY,
    CAPACITY_USED_PODS_KEY,
    LIFECYCLE_STATE_KEY,
    SCALE_DOWN_THRESHOLD_KEY,
    SCALE_UP_THRESHOLD_KEY,
    SHUTDOWN_START_TIME_KEY,
    TIME_TO_LIVE_KEY,
    LifecycleState,
    MetricsSnapshot,
)

logger = logging.getLogger(__name__)


class DecisionRule(enum.StrEnum):
    RECORD_CAPACITY = "record-capacity"
    START_IDLE_TIMER = "start-idle-timer"
    CLEAR_IDLE_TIMER = "clear-idle-timer"
    MARK_PENDING_SHUTDOWN = "mark-pending-shutdown"
    MARK_SCALE_UP = "mark-scale-up"
    MARK_SCALE_DOWN = "mark-scale-down"


class LifecycleDecision(NamedTuple):
    """Result of one evaluation: the new annotations and what fired."""

    annotations: dict[str, str]
    changed: bool
    rules_fired: tuple[DecisionRule, ...]


def used_over_capacity_percent(
    used_pods: int, system_pods: int, capacity_pods: int,
) -> int | None:
    """Percentage of user capacity taken by user pods.

    Uses integer division truncated toward zero. Returns None when there
    is no user capacity (capacity <= system pods), since no percentage is
    meaningful then.
    """
    user_pods = used_pods - system_pods
    user_capacity = capacity_pods - system_pods
    if user_capacity <= 0:
        return None
    numerator = user_pods * 100
    quotient = abs(numerator) // user_capacity
    return quotient if numerator >= 0 else -quotient


class LifecycleDecisionEngine:
    """Evaluates the lifecycle rules for one cluster at a time.

    Stateless apart from configuration, so one instance is shared by every
    pass and thread.
    """

    def __init__(
        self,
        config: MonitorConfig | None = None,
        _clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config or MonitorConfig()
        self._clock = _clock or (lambda: datetime.now(tz=UTC))

    @property
    def config(self) -> MonitorConfig:
        return self._config

    def decide(
        self,
        annotations: Mapping[str, str],
        snapshot: MetricsSnapshot,
        cluster_name: str = "",
    ) -> LifecycleDecision:
        """Apply all rules in order and return the resulting annotations."""
        updated = dict(annotations)
        fired: list[DecisionRule] = []
        now = self._clock()

        if self._record_capacity(updated, snapshot):
            fired.append(DecisionRule.RECORD_CAPACITY)

        idle_rule = self._track_idle_timer(updated, now)
        if idle_rule is not None:
            fired.append(idle_rule)

        if self._expire_ttl(updated, now, cluster_name):
            fired.append(DecisionRule.MARK_PENDING_SHUTDOWN)

        scale_rule = self._mark_for_scaling(updated, cluster_name)
        if scale_rule is not None:
            fired.append(scale_rule)

        return LifecycleDecision(
            annotations=updated,
            changed=bool(fired),
            rules_fired=tuple(fired),
        )

    # --- Rule 1: capacity ---

    def _record_capacity(self, annotations: dict[str, str], snapshot: MetricsSnapshot) -> bool:
        fresh = snapshot.as_annotations()
        if is_capacity_data_present(annotations):
            stale = any(
                annotation_int(annotations, key, 0) != int(value)
                for key, value in fresh.items()
            )
            if not stale:
                return False
        annotations.update(fresh)
        return True

    # --- Rule 2: idle timer ---

    def _track_idle_timer(self, annotations: dict[str, str], now: datetime) -> DecisionRule | None:
        used = annotation_int(annotations, CAPACITY_USED_PODS_KEY, 0)
        system = annotation_int(annotations, CAPACITY_SYSTEM_PODS_KEY, 0)
        timer_running = SHUTDOWN_START_TIME_KEY in annotations

        if used == system:
            if not timer_running and lifecycle_state(annotations) == LifecycleState.READY:
                annotations[SHUTDOWN_START_TIME_KEY] = format_timestamp(now)
                return DecisionRule.START_IDLE_TIMER
            return None

        if timer_running:
            # user workload arrived again
            del annotations[SHUTDOWN_START_TIME_KEY]
            return DecisionRule.CLEAR_IDLE_TIMER
        return None

    # --- Rule 3: TTL ---

    def _expire_ttl(self, annotations: dict[str, str], now: datetime, cluster_name: str) -> bool:
        started = parse_timestamp(annotations.get(SHUTDOWN_START_TIME_KEY))
        if started is None:
            return False
        ttl = annotation_int(annotations, TIME_TO_LIVE_KEY, self._config.default_ttl_seconds)
        if ttl <= 0:
            return False
        elapsed = int((now - started).total_seconds())
        if elapsed < ttl:
            return False
        logger.info(
            "TTL of %ds expired for cluster %s, marking %s",
            ttl, cluster_name, LifecycleState.PENDING_SHUTDOWN,
        )
        annotations[LIFECYCLE_STATE_KEY] = LifecycleState.PENDING_SHUTDOWN.value
        del annotations[SHUTDOWN_START_TIME_KEY]
        return True

    # --- Rule 4: thresholds ---

    def _mark_for_scaling(self, annotations: dict[str, str], cluster_name: str) -> DecisionRule | None:
        if lifecycle_state(annotations) != LifecycleState.READY:
            return None
        if parse_bool(annotations.get(AUTOSCALE_ENABLED_KEY)) is not True:
            return None

        used = annotation_int(annotations, CAPACITY_USED_PODS_KEY, 0)
        system = annotation_int(annotations, CAPACITY_SYSTEM_PODS_KEY, 0)
        capacity = annotation_int(annotations, CAPACITY_TOTAL_PODS_KEY, 0)
        percent = used_over_capacity_percent(used, system, capacity)
        if percent is None:
            logger.warning(
                "Cluster %s has no user pod capacity (capacity=%d, system=%d), "
                "skipping threshold check",
                cluster_name, capacity, system,
            )
            return None

        scale_up = annotation_int(annotations, SCALE_UP_THRESHOLD_KEY, self._config.scale_up_threshold)
        scale_down = annotation_int(
            annotations, SCALE_DOWN_THRESHOLD_KEY, self._config.scale_down_threshold,
        )

        if percent >= scale_up:
            logger.info(
                "Cluster %s at %d%% of user capacity (>= %d%%), marking %s",
                cluster_name, percent, scale_up, LifecycleState.PENDING_SCALE_UP,
            )
            annotations[LIFECYCLE_STATE_KEY] = LifecycleState.PENDING_SCALE_UP.value
            return DecisionRule.MARK_SCALE_UP
        if percent <= scale_down:
            logger.info(
                "Cluster %s at %d%% of user capacity (<= %d%%), marking %s",
                cluster_name, percent, scale_down, LifecycleState.PENDING_SCALE_DOWN,
            )
            annotations[LIFECYCLE_STATE_KEY] = LifecycleState.PENDING_SCALE_DOWN.value
            return DecisionRule.MARK_SCALE_DOWN

        logger.debug(
            "Cluster %s at %d%% of user capacity, between %d%% and %d%%",
            cluster_name, percent, scale_down, scale_up,
        )
        return None
