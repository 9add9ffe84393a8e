#!/usr/bin/env python3
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

"""
cli.py - Unified CLI for ephemeral cluster bootstrap.

Subcommands:
    bootstrap  Create a k3d cluster and roll out Argo CD plus the app-of-apps bundle
    cluster    Manage k3d clusters (create, delete, list, status, start)
    install    Roll out onto an existing cluster (apps, status)

Examples:
    # Full bootstrap with defaults
    bootstrap-manager bootstrap

    # CI run on a 1-node cluster
    bootstrap-manager bootstrap ci-cluster --nodes 1 --deployment-mode oss-tenant --non-interactive

    # Roll out only the applications onto an existing cluster
    bootstrap-manager install apps --cluster-name openframe-dev --deployment-mode oss-tenant

    # Delete cluster, removing leftover containers if k3d fails
    bootstrap-manager cluster delete openframe-dev --force

For detailed usage information, run: bootstrap-manager --help
"""

from __future__ import annotations

import logging
import sys

import typer

from bootstrap_manager import console
from bootstrap_manager.commands import bootstrap_cmd, cluster_cmd, install_cmd
from bootstrap_manager.errors import BootstrapError

app = typer.Typer(
    help="Unified CLI for ephemeral cluster bootstrap.",
    no_args_is_help=True,
)


@app.callback()
def _main_callback() -> None:
    """Initialize logging for all subcommands."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )


app.command("bootstrap")(bootstrap_cmd.bootstrap)
app.add_typer(cluster_cmd.app, name="cluster")
app.add_typer(install_cmd.app, name="install")


def main() -> None:
    try:
        app()
    except (BootstrapError, RuntimeError) as e:
        console.print(f"[red]\u274c {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
