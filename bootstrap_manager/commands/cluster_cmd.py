# /*
# Copyright 2026 The Grove Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# */

"""Cluster subcommands (create, delete, list, status, start)."""

from __future__ import annotations

import typer
from rich.table import Table

from bootstrap_manager import console
from bootstrap_manager.cluster import ClusterProvisioner
from bootstrap_manager.config import ClusterConfig
from bootstrap_manager.executor import ShCommandRunner
from bootstrap_manager.models import ClusterSpec
from bootstrap_manager.utils import CancelToken, cancel_on_signals, require_command

app = typer.Typer(help="Manage k3d clusters.")


def _provisioner(dry_run: bool = False, verbose: bool = False) -> ClusterProvisioner:
    require_command("k3d")
    runner = ShCommandRunner(dry_run=dry_run, verbose=verbose)
    return ClusterProvisioner(runner, ClusterConfig(), dry_run=dry_run, verbose=verbose)


@app.command()
def create(
    cluster_name: str | None = typer.Argument(None, help="Cluster name"),
    nodes: int | None = typer.Option(None, "--nodes", help="Total node count (1 server + agents)"),
    k8s_version: str | None = typer.Option(None, "--k8s-version", help="k3s image tag"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print commands without running them"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose k3d output"),
) -> None:
    """Create a k3d cluster and wait until it is reachable."""
    cluster_cfg = ClusterConfig()
    spec = ClusterSpec(
        name=cluster_name or cluster_cfg.cluster_name,
        node_count=nodes if nodes is not None else cluster_cfg.node_count,
        k8s_version=k8s_version,
    )
    cancel = CancelToken()
    cancel_on_signals(cancel)
    _provisioner(dry_run, verbose).create(spec, cancel)


@app.command()
def delete(
    cluster_name: str | None = typer.Argument(None, help="Cluster name"),
    force: bool = typer.Option(False, "--force", help="Remove leftover containers if k3d fails"),
) -> None:
    """Delete a k3d cluster."""
    _provisioner().delete(cluster_name or ClusterConfig().cluster_name, force=force)


@app.command("list")
def list_clusters() -> None:
    """List k3d clusters."""
    clusters = _provisioner().list_clusters()
    if not clusters:
        console.print("[yellow]\u2139\ufe0f  No clusters found[/yellow]")
        return
    table = Table("Name", "Provider", "Servers", "Nodes")
    for info in clusters:
        table.add_row(info.name, info.provider, info.status, str(info.node_count))
    console.print(table)


@app.command()
def status(
    cluster_name: str | None = typer.Argument(None, help="Cluster name"),
) -> None:
    """Show ready/total nodes for a cluster."""
    info = _provisioner().status(cluster_name or ClusterConfig().cluster_name)
    console.print(f"[green]{info.name}[/green] ({info.provider}): {info.status} nodes ready, {info.node_count} total")


@app.command()
def start(
    cluster_name: str | None = typer.Argument(None, help="Cluster name"),
) -> None:
    """Check that an existing cluster is reachable."""
    cancel = CancelToken()
    cancel_on_signals(cancel)
    handle = _provisioner().start(cluster_name or ClusterConfig().cluster_name, cancel)
    console.print(f"[green]\u2705 Cluster '{handle.cluster_name}' is reachable at {handle.server}[/green]")
