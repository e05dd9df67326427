"""fleet-warden CLI — command-line interface for Fleet-Warden.

Commands:
    run         Watch the federation and reconcile cluster lifecycle state
    sync        Run a single reconciliation pass and print the report
    evaluate    Evaluate the lifecycle rules offline for a set of annotations
    config      Show the effective configuration
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
import yaml

from fleet_warden import __version__
from fleet_warden.config import LOG_LEVELS, FleetWardenConfig, load_config
from fleet_warden.engine.reconciler import ReconciliationEngine
from fleet_warden.errors import ConfigError
from fleet_warden.lifecycle.decision import LifecycleDecisionEngine
from fleet_warden.models import MetricsSnapshot

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _resolve_cfg(config_path: str | None) -> FleetWardenConfig:
    """Load config from an explicit path or fleet-warden.yaml (auto-discover)."""
    try:
        return load_config(config_path)
    except (FileNotFoundError, ConfigError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _or(explicit: Any, cfg_val: Any) -> Any:
    """Return the explicit CLI flag if given, else the config value."""
    return explicit if explicit is not None else cfg_val


def _setup_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def _build_engine(
    cfg: FleetWardenConfig,
    kubeconfig: str | None,
    context: str | None,
    in_cluster: bool | None,
) -> ReconciliationEngine:
    """Wire the kubernetes-backed source and client factory into an engine."""
    from fleet_warden.clients.k8s_client import KubeClientFactory
    from fleet_warden.source.k8s_source import KubeClusterSource

    kubeconfig = _or(kubeconfig, cfg.kubeconfig)
    context = _or(context, cfg.context)
    in_cluster = bool(_or(in_cluster, cfg.in_cluster))
    monitor = cfg.monitor

    source = KubeClusterSource(
        kubeconfig=kubeconfig,
        context=context,
        in_cluster=in_cluster,
        request_timeout=monitor.request_timeout_seconds,
        watch_timeout=monitor.watch_timeout_seconds,
    )
    factory = KubeClientFactory(
        kubeconfig=kubeconfig,
        context=context,
        in_cluster=in_cluster,
        secret_namespace=cfg.secret_namespace,
        request_timeout=monitor.request_timeout_seconds,
    )
    return ReconciliationEngine(source, factory, config=monitor)


# --- Root group ---


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """Fleet-Warden: capacity-aware lifecycle control for federated clusters."""


_config_option = click.option(
    "--config", "config_path", default=None, help="Path to fleet-warden.yaml",
)
_kube_options = [
    click.option("--kubeconfig", default=None, help="Kubeconfig for the federation API"),
    click.option("--context", default=None, help="Kubeconfig context of the federation API"),
    click.option(
        "--in-cluster/--no-in-cluster", default=None,
        help="Use the pod service account instead of a kubeconfig",
    ),
    click.option(
        "--log-level", default=None, type=click.Choice(LOG_LEVELS, case_sensitive=False),
        help="Logging level (default from config)",
    ),
]


def _with_kube_options(func: Any) -> Any:
    for option in reversed(_kube_options):
        func = option(func)
    return _config_option(func)


# --- run command ---


@cli.command()
@_with_kube_options
def run(
    config_path: str | None,
    kubeconfig: str | None,
    context: str | None,
    in_cluster: bool | None,
    log_level: str | None,
) -> None:
    """Watch the federation and keep cluster lifecycle annotations current."""
    cfg = _resolve_cfg(config_path)
    _setup_logging(_or(log_level, cfg.log_level))
    engine = _build_engine(cfg, kubeconfig, context, in_cluster)
    engine.run_forever()


# --- sync command ---


@cli.command()
@_with_kube_options
@click.option("--json-output", is_flag=True, help="Output as JSON")
def sync(
    config_path: str | None,
    kubeconfig: str | None,
    context: str | None,
    in_cluster: bool | None,
    log_level: str | None,
    json_output: bool,
) -> None:
    """Run one reconciliation pass against the federation."""
    cfg = _resolve_cfg(config_path)
    _setup_logging(_or(log_level, cfg.log_level))
    engine = _build_engine(cfg, kubeconfig, context, in_cluster)
    report = engine.full_sync()
    if report is None:
        click.echo("Error: a reconciliation pass is already running", err=True)
        sys.exit(1)

    if json_output:
        click.echo(json.dumps(report.model_dump(mode="json"), indent=2))
    else:
        click.echo(f"Listed:   {len(report.listed)} cluster(s)")
        click.echo(f"Added:    {', '.join(report.added) or '-'}")
        click.echo(f"Deleted:  {', '.join(report.deleted) or '-'}")
        click.echo(f"Sampled:  {', '.join(report.sampled) or '-'}")
        click.echo(f"Updated:  {', '.join(report.updated) or '-'}")
        for name, reason in sorted(report.skipped.items()):
            click.echo(f"Skipped:  {name} ({reason})")
        if report.error:
            click.echo(f"Error: {report.error}", err=True)

    if not report.ok:
        sys.exit(1)


# --- evaluate command ---


@cli.command()
@click.argument("annotations_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--allocatable", type=click.IntRange(min=0), required=True, help="Allocatable pods")
@click.option("--total", type=click.IntRange(min=0), required=True, help="Total pod capacity")
@click.option("--used", type=click.IntRange(min=0), required=True, help="Pending + running pods")
@click.option("--system", type=click.IntRange(min=0), required=True, help="Pods in reserved namespaces")
@_config_option
@click.option("--json-output", is_flag=True, help="Output as JSON")
def evaluate(
    annotations_file: str,
    allocatable: int,
    total: int,
    used: int,
    system: int,
    config_path: str | None,
    json_output: bool,
) -> None:
    """Evaluate the lifecycle rules for ANNOTATIONS_FILE (YAML or JSON mapping)."""
    cfg = _resolve_cfg(config_path)
    try:
        data = yaml.safe_load(Path(annotations_file).read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        click.echo(f"Error: invalid annotations file: {e}", err=True)
        sys.exit(1)
    if not isinstance(data, dict):
        click.echo("Error: annotations file must contain a mapping", err=True)
        sys.exit(1)
    annotations = {str(k): str(v) for k, v in data.items()}

    snapshot = MetricsSnapshot(
        allocatable_pods=allocatable,
        total_pods=total,
        used_pods=used,
        used_system_pods=system,
    )
    decision = LifecycleDecisionEngine(cfg.monitor).decide(annotations, snapshot)

    if json_output:
        click.echo(json.dumps({
            "changed": decision.changed,
            "rules_fired": [str(r) for r in decision.rules_fired],
            "annotations": decision.annotations,
        }, indent=2, sort_keys=True))
        return

    click.echo(f"Changed: {'yes' if decision.changed else 'no'}")
    click.echo(f"Rules:   {', '.join(decision.rules_fired) or '-'}")
    for key in sorted(decision.annotations):
        marker = "*" if annotations.get(key) != decision.annotations[key] else " "
        click.echo(f" {marker} {key}: {decision.annotations[key]}")
    for key in sorted(set(annotations) - set(decision.annotations)):
        click.echo(f" - {key}")


# --- config command ---


@cli.command("config")
@_config_option
@click.option("--json-output", is_flag=True, help="Output as JSON")
def show_config(config_path: str | None, json_output: bool) -> None:
    """Show the effective configuration."""
    cfg = _resolve_cfg(config_path)
    data = {
        "config_path": str(cfg.config_path) if cfg.config_path else None,
        "kubeconfig": cfg.kubeconfig,
        "context": cfg.context,
        "in_cluster": cfg.in_cluster,
        "secret_namespace": cfg.secret_namespace,
        "log_level": cfg.log_level,
        "monitor": cfg.monitor.model_dump(),
    }
    if json_output:
        click.echo(json.dumps(data, indent=2))
    else:
        click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False).rstrip())
