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

"""Install subcommands (rollout onto an existing cluster, release status)."""

from __future__ import annotations

import logging

import typer

from bootstrap_manager import console
from bootstrap_manager.commands.bootstrap_cmd import finish, make_bundle
from bootstrap_manager.config import ClusterConfig, ReadinessConfig, RolloutConfig
from bootstrap_manager.constants import COMPONENT_APPLICATION_BUNDLE, COMPONENT_CONTROL_PLANE
from bootstrap_manager.errors import ConfigurationError
from bootstrap_manager.models import InstallationRequest, RunMode
from bootstrap_manager.orchestrator import build_service, check_prerequisites, parse_deployment_mode
from bootstrap_manager.utils import CancelToken, cancel_on_signals

app = typer.Typer(help="Install applications onto an existing cluster.")


@app.command("apps")
def apps(
    cluster_name: str | None = typer.Option(None, "--cluster-name", help="Target cluster"),
    deployment_mode: str | None = typer.Option(
        None, "--deployment-mode", help="oss-tenant, saas-tenant or saas-shared"),
    repository: str | None = typer.Option(None, "--repository", help="App-of-apps git repository"),
    ref: str | None = typer.Option(None, "--branch", help="App-of-apps branch"),
    path: str | None = typer.Option(None, "--chart-path", help="Chart path inside the repository"),
    skip_bundle: bool = typer.Option(False, "--skip-bundle", help="Install Argo CD only"),
    force: bool = typer.Option(False, "--force", help="Reinstall existing releases"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print commands without running them"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging and verbose tools"),
    non_interactive: bool = typer.Option(False, "--non-interactive", help="Run without prompts (CI)"),
) -> None:
    """Install Argo CD and the application bundle onto an existing cluster."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    rollout_cfg = RolloutConfig()
    run_mode = RunMode(force=force, dry_run=dry_run, verbose=verbose, non_interactive=non_interactive)
    service = build_service(run_mode, ClusterConfig(), ReadinessConfig(), rollout_cfg)

    try:
        mode = parse_deployment_mode(deployment_mode)
    except ConfigurationError as err:
        service.report_outcome(service.fatal_outcome(err))
        raise typer.Exit(code=1) from err

    request = InstallationRequest(
        cluster_name=cluster_name or "",
        bundle=make_bundle(rollout_cfg, skip_bundle, repository, ref, path),
        run_mode=run_mode,
        deployment_mode=mode,
    )

    check_prerequisites(("kubectl", "helm", "git"))
    cancel = CancelToken()
    cancel_on_signals(cancel)
    outcome = service.install_on_existing(request, cancel)
    service.report_outcome(outcome)
    finish(outcome)


@app.command("status")
def status(
    cluster_name: str | None = typer.Option(None, "--cluster-name", help="Target cluster"),
) -> None:
    """Show helm release status for Argo CD and the application bundle."""
    service = build_service(RunMode())
    handle = service.provisioner.get_handle(cluster_name or ClusterConfig().cluster_name)
    for component in (COMPONENT_CONTROL_PLANE, COMPONENT_APPLICATION_BUNDLE):
        if not service.installer.is_installed(component, handle):
            console.print(f"[yellow]{component}: not installed[/yellow]")
            continue
        info = service.installer.get_status(component, handle)
        console.print(f"[green]{component}[/green]: {info.name} in {info.namespace} {info.status} (chart {info.version})")
