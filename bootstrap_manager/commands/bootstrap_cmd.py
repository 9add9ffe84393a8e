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

"""Bootstrap command: create a cluster and roll out applications."""

from __future__ import annotations

import logging

import typer

from bootstrap_manager.config import ClusterConfig, ReadinessConfig, RolloutConfig
from bootstrap_manager.errors import ConfigurationError
from bootstrap_manager.models import (
    ApplicationBundleSpec,
    ClusterSpec,
    InstallationRequest,
    Outcome,
    OutcomeStatus,
    RunMode,
)
from bootstrap_manager.orchestrator import build_service, check_prerequisites, parse_deployment_mode
from bootstrap_manager.utils import CancelToken, cancel_on_signals


def make_bundle(
    rollout_cfg: RolloutConfig,
    skip_bundle: bool,
    repository: str | None,
    ref: str | None,
    path: str | None,
) -> ApplicationBundleSpec | None:
    """Build the ApplicationBundleSpec from CLI options layered over RolloutConfig."""
    if skip_bundle:
        return None
    return ApplicationBundleSpec(
        repository=repository or rollout_cfg.bundle_repository,
        ref=ref or rollout_cfg.bundle_ref,
        path=path or rollout_cfg.bundle_path,
        namespace=rollout_cfg.bundle_namespace,
        timeout=rollout_cfg.bundle_timeout,
    )


def finish(outcome: Outcome) -> None:
    """Exit nonzero for fatal outcomes."""
    if outcome.status == OutcomeStatus.FATAL:
        raise typer.Exit(code=1)


def bootstrap(
    cluster_name: str | None = typer.Argument(None, help="Cluster name (default: openframe-dev)"),
    nodes: int | None = typer.Option(None, "--nodes", help="Total node count"),
    k8s_version: str | None = typer.Option(None, "--k8s-version", help="k3s image tag"),
    deployment_mode: str | None = typer.Option(
        None, "--deployment-mode", help="oss-tenant, saas-tenant or saas-shared"),
    repository: str | None = typer.Option(None, "--repository", help="App-of-apps git repository"),
    ref: str | None = typer.Option(None, "--branch", help="App-of-apps branch"),
    path: str | None = typer.Option(None, "--chart-path", help="Chart path inside the repository"),
    skip_bundle: bool = typer.Option(False, "--skip-bundle", help="Install Argo CD only"),
    argocd_version: str | None = typer.Option(None, "--argocd-version", help="Argo CD chart version"),
    force: bool = typer.Option(False, "--force", help="Reinstall existing releases"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print commands without running them"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging and verbose tools"),
    non_interactive: bool = typer.Option(False, "--non-interactive", help="Run without prompts (CI)"),
    skip_prereqs: bool = typer.Option(False, "--skip-prereqs", help="Skip the installed-tools check"),
) -> None:
    """Create a k3d cluster, install Argo CD and the application bundle."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    cluster_cfg = ClusterConfig()
    rollout_cfg = RolloutConfig()
    if argocd_version is not None:
        rollout_cfg = rollout_cfg.model_copy(update={"argocd_version": argocd_version})

    run_mode = RunMode(force=force, dry_run=dry_run, verbose=verbose, non_interactive=non_interactive)
    service = build_service(run_mode, cluster_cfg, ReadinessConfig(), rollout_cfg)

    try:
        mode = parse_deployment_mode(deployment_mode)
    except ConfigurationError as err:
        service.report_outcome(service.fatal_outcome(err))
        raise typer.Exit(code=1) from err

    name = cluster_name or cluster_cfg.cluster_name
    request = InstallationRequest(
        cluster_name=name,
        cluster_spec=ClusterSpec(
            name=name,
            node_count=nodes if nodes is not None else cluster_cfg.node_count,
            k8s_version=k8s_version,
        ),
        bundle=make_bundle(rollout_cfg, skip_bundle, repository, ref, path),
        run_mode=run_mode,
        deployment_mode=mode,
    )

    if not skip_prereqs:
        check_prerequisites()

    cancel = CancelToken()
    cancel_on_signals(cancel)
    outcome = service.run(request, cancel)
    service.report_outcome(outcome)
    finish(outcome)
