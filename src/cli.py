#!/usr/bin/env python3
"""
CLI for the BigQueryTable operator.

Runs the operator and provides a kubectl-like view of BigQueryTable objects.
"""

import asyncio
import json
import sys

import click
import yaml
from tabulate import tabulate

from backend import BigQueryTableBackend
from config import Config, get_config
from crd import build_crd_manifest
from errors import ReconcileError
from finalizers import has_finalizer
from main import (
    StartupError,
    build_reconciler,
    build_store,
    load_kubernetes_client,
    main,
    setup_logging,
)
from models import Declaration, ResourceKey


def _load_config() -> Config:
    try:
        return get_config()
    except ValueError as e:
        click.echo(f"Error: invalid configuration: {e}", err=True)
        sys.exit(1)


def _ready(declaration: Declaration) -> str:
    for condition in declaration.status.get("conditions") or []:
        if isinstance(condition, dict) and condition.get("type") == "Ready":
            return condition.get("status", "Unknown")
    return "Unknown"


@click.group()
def cli():
    """BigQueryTable operator - keeps BigQuery tables in sync with BigQueryTable resources"""
    pass


@cli.command()
def run():
    """Run the operator until interrupted"""
    cfg = _load_config()
    setup_logging(cfg.logging.level)
    try:
        asyncio.run(main(cfg))
    except StartupError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("Interrupted")


@cli.command()
@click.option("--output", "-o", type=click.Choice(["yaml", "json"]), default="yaml")
def manifest(output):
    """Print the BigQueryTable CustomResourceDefinition"""
    kube = _load_config().kubernetes
    crd = build_crd_manifest(kube.crd_group, kube.crd_version, kube.crd_plural)
    if output == "json":
        click.echo(json.dumps(crd, indent=2))
    else:
        click.echo(yaml.safe_dump(crd, default_flow_style=False, sort_keys=False))


@cli.command()
@click.option("--namespace", "-n", default=None, help="Only list this namespace")
def get(namespace):
    """List BigQueryTable resources"""
    cfg = _load_config()
    if namespace is not None:
        cfg.kubernetes.namespace = namespace

    try:
        store = build_store(cfg, load_kubernetes_client(cfg))
        declarations, _ = asyncio.run(store.list())
    except (StartupError, ReconcileError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    finalizer = cfg.kubernetes.finalizer
    headers = ["NAMESPACE", "NAME", "TABLE", "READY", "FINALIZER", "DELETING"]
    rows = []
    for declaration in declarations:
        rows.append(
            [
                declaration.namespace,
                declaration.name,
                declaration.status.get("tableId", ""),
                _ready(declaration),
                "✓" if has_finalizer(declaration.metadata.finalizers, finalizer) else "",
                "✓" if declaration.metadata.deletion_requested else "",
            ]
        )

    if not rows:
        click.echo("No resources found")
        return
    click.echo(tabulate(rows, headers=headers, tablefmt="simple"))


@cli.command()
@click.argument("namespace")
@click.argument("name")
def reconcile(namespace, name):
    """Run a single reconciliation pass for one resource"""
    cfg = _load_config()
    setup_logging(cfg.logging.level)

    backend = None
    try:
        store = build_store(cfg, load_kubernetes_client(cfg))
        backend = BigQueryTableBackend(
            location=cfg.bigquery.location,
            request_timeout=cfg.bigquery.request_timeout,
        )
        reconciler = build_reconciler(cfg, store, backend)
        result = asyncio.run(reconciler.reconcile(ResourceKey(namespace, name)))
    except (StartupError, ReconcileError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        if backend is not None:
            backend.close()

    click.echo(f"{namespace}/{name}: {result.action.value}")
    if result.message:
        click.echo(result.message)


if __name__ == "__main__":
    cli()
