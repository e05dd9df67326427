"""Config file loading and auto-discovery for Fleet-Warden.

Searches for ``fleet-warden.yaml`` in the current directory and parent
directories, parses it, validates the ``monitor`` block, and resolves
relative paths against the config file's location.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from fleet_warden.errors import ConfigError

CONFIG_FILENAME = "fleet-warden.yaml"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class MonitorConfig(BaseModel):
    """Tuning for the reconciliation engine and the decision rules."""

    period_seconds: float = Field(40.0, gt=0)
    """Interval between full reconciliation passes."""

    default_ttl_seconds: int = Field(1800, ge=0)
    """Idle time before an empty cluster is marked PendingShutdown.
    Overridden per cluster by the time-to-live annotation. 0 disables."""

    scale_up_threshold: int = Field(80, ge=0, le=100)
    """Used-over-capacity percentage at which a cluster is marked for scale up."""

    scale_down_threshold: int = Field(20, ge=0, le=100)
    """Used-over-capacity percentage at which a cluster is marked for scale down."""

    reserved_namespaces: list[str] = Field(default_factory=lambda: ["kube-system"])
    """Namespaces whose pods count as system pods."""

    request_timeout_seconds: float = Field(30.0, gt=0)
    """Timeout applied to each remote call."""

    watch_timeout_seconds: int = Field(300, gt=0)
    """Server-side timeout of one watch request before it is reopened."""

    watch_retry_seconds: float = Field(5.0, gt=0)
    """Delay before reconnecting a failed watch stream."""

    @model_validator(mode="after")
    def _thresholds_ordered(self) -> MonitorConfig:
        if self.scale_down_threshold > self.scale_up_threshold:
            msg = (
                f"scale_down_threshold ({self.scale_down_threshold}) must not "
                f"exceed scale_up_threshold ({self.scale_up_threshold})"
            )
            raise ValueError(msg)
        return self


@dataclass(frozen=True)
class FleetWardenConfig:
    """Parsed Fleet-Warden project configuration."""

    config_path: Path | None = None
    kubeconfig: str | None = None
    context: str | None = None
    in_cluster: bool = False
    secret_namespace: str = "federation-system"
    log_level: str = "INFO"
    monitor: MonitorConfig = field(default_factory=MonitorConfig)


def find_config(start: Path | None = None) -> Path | None:
    """Walk from *start* (default ``cwd()``) up to the filesystem root.

    Returns the first ``fleet-warden.yaml`` found, or ``None``.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_config(
    path: str | Path | None = None,
    *,
    auto_discover: bool = True,
) -> FleetWardenConfig:
    """Load a Fleet-Warden config file.

    Resolution order:

    1. Explicit *path* (error if it doesn't exist).
    2. Auto-discover by walking parent directories.
    3. Return an empty ``FleetWardenConfig`` (all defaults).
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path).resolve()
        if not config_path.is_file():
            msg = f"Config file not found: {config_path}"
            raise FileNotFoundError(msg)
    elif auto_discover:
        config_path = find_config()

    if config_path is None:
        return FleetWardenConfig()

    return _parse_config(config_path)


def _parse_config(config_path: Path) -> FleetWardenConfig:
    """Read and parse a YAML config file, resolving relative paths."""
    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {config_path}, got {type(data).__name__}"
        raise ConfigError(msg)

    try:
        monitor = MonitorConfig(**(data.get("monitor") or {}))
    except (ValidationError, TypeError) as e:
        raise ConfigError(f"Invalid monitor settings in {config_path}: {e}") from e

    log_level = str(data.get("log_level", "INFO")).upper()
    if log_level not in LOG_LEVELS:
        msg = (
            f"Invalid log_level in {config_path}: {log_level!r} "
            f"(expected one of {', '.join(LOG_LEVELS)})"
        )
        raise ConfigError(msg)

    kubeconfig = data.get("kubeconfig")
    if kubeconfig is not None:
        kubeconfig = str((config_path.parent / kubeconfig).resolve())

    return FleetWardenConfig(
        config_path=config_path,
        kubeconfig=kubeconfig,
        context=data.get("context"),
        in_cluster=bool(data.get("in_cluster", False)),
        secret_namespace=data.get("secret_namespace", "federation-system"),
        log_level=log_level,
        monitor=monitor,
    )
