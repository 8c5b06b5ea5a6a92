"""Operator daemon and dry-run CLI commands.

This module provides:
- run: Start the operator (leader election, watches, reconcile workers)
- render: Compile a ShazamqCluster manifest and print the owned objects

Command-line options override the SHAZAMQ_OPERATOR_* environment; the
resulting settings object is built once and threaded into the manager.
"""

import asyncio
from pathlib import Path
from typing import Any

import typer
import yaml
from pydantic import ValidationError

from shazamq_operator.cluster.model import ClusterResource
from shazamq_operator.cluster.validation import parse_spec
from shazamq_operator.config import OperatorSettings
from shazamq_operator.engine.compiler import compile_cluster
from shazamq_operator.runtime.manager import serve
from shazamq_protocols.errors import SpecValidationError


def build_settings(**overrides: Any) -> OperatorSettings:
    """Settings from the environment, with non-None overrides applied."""
    return OperatorSettings(**{k: v for k, v in overrides.items() if v is not None})


def run_command(
    namespace: str = typer.Option(
        None, "--namespace", "-n", help="Watch a single namespace (default: all)"
    ),
    resync: float = typer.Option(
        None, "--resync", help="Seconds between drift-detection passes"
    ),
    identity: str = typer.Option(
        None, "--identity", help="Lease holder identity (default: hostname)"
    ),
    lease_namespace: str = typer.Option(
        None, "--lease-namespace", help="Namespace of the leader-election Lease"
    ),
    workers: int = typer.Option(None, "--workers", "-w", help="Reconcile worker count"),
    journal: Path = typer.Option(
        None, "--journal", help="Event journal database (disabled when unset)"
    ),
    kubeconfig: str = typer.Option(
        None, "--kubeconfig", envvar="KUBECONFIG", help="Kubeconfig file (default: in-cluster)"
    ),
) -> None:
    """
    Run the operator.

    Reconciles ShazamqCluster resources while holding the leader lease.
    Runs until interrupted with Ctrl+C or SIGTERM.
    """
    try:
        settings = build_settings(
            watch_namespace=namespace,
            resync_interval_seconds=resync,
            identity=identity,
            lease_namespace=lease_namespace,
            worker_count=workers,
            journal_path=journal,
        )
    except ValidationError as e:
        print(f"Error: invalid settings: {e}")
        raise typer.Exit(1)

    print(f"Starting shazamq-operator as {settings.identity}")
    print(f"  Scope: {settings.watch_namespace or 'all namespaces'}")
    print(f"  Workers: {settings.worker_count}")
    print(f"  Resync: {settings.resync_interval_seconds}s")
    print(f"  Journal: {settings.journal_path or 'disabled'}")
    print()

    asyncio.run(serve(settings, kubeconfig))


def render_command(
    manifest: Path = typer.Argument(..., exists=True, dir_okay=False, help="ShazamqCluster YAML"),
) -> None:
    """Print the owned objects a cluster manifest compiles to, as YAML."""
    body = yaml.safe_load(manifest.read_text())
    if not isinstance(body, dict) or "metadata" not in body:
        print(f"Error: {manifest} is not a ShazamqCluster manifest")
        raise typer.Exit(1)

    body["metadata"].setdefault("namespace", "default")
    cluster = ClusterResource.from_body(body)
    try:
        spec = parse_spec(cluster.raw_spec)
    except SpecValidationError as e:
        print("Error: invalid spec")
        for problem in e.problems:
            print(f"  - {problem}")
        raise typer.Exit(1)

    desired = compile_cluster(cluster, spec)
    print(
        yaml.safe_dump_all(
            [obj.body for obj in desired.objects], sort_keys=False
        ),
        end="",
    )
