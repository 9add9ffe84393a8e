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

"""Orchestration that composes provisioning and rollout into one run."""

from __future__ import annotations

from rich.panel import Panel

from bootstrap_manager import console, logger
from bootstrap_manager.classifier import classify, should_soft_fail
from bootstrap_manager.cluster import ClusterProvisioner, validate_cluster_spec
from bootstrap_manager.components import ApplicationInstaller
from bootstrap_manager.config import ClusterConfig, ReadinessConfig, RolloutConfig, SoftFailConfig
from bootstrap_manager.errors import BootstrapError, ConfigurationError
from bootstrap_manager.executor import ShCommandRunner
from bootstrap_manager.models import (
    ClusterHandle,
    ClusterSpec,
    DeploymentMode,
    InstallationRequest,
    Outcome,
    OutcomeStatus,
    RunMode,
)
from bootstrap_manager.utils import CancelToken, require_command

VALID_DEPLOYMENT_MODES = ", ".join(mode.value for mode in DeploymentMode)
REQUIRED_TOOLS = ("k3d", "kubectl", "helm", "git", "docker")


# ============================================================================
# Wiring helpers
# ============================================================================

def check_prerequisites(tools: tuple[str, ...] = REQUIRED_TOOLS) -> None:
    """Check that every CLI tool the run shells out to is installed.

    Raises:
        RuntimeError: If a tool is missing.
    """
    console.print(Panel.fit("Checking prerequisites", style="bold blue"))
    for cmd in tools:
        require_command(cmd)
    console.print("[green]\u2705 All required tools are available[/green]")


def build_service(
    run_mode: RunMode,
    cluster_cfg: ClusterConfig | None = None,
    readiness_cfg: ReadinessConfig | None = None,
    rollout_cfg: RolloutConfig | None = None,
) -> OrchestrationService:
    """Wire the production runner, provisioner and installer together."""
    runner = ShCommandRunner(dry_run=run_mode.dry_run, verbose=run_mode.verbose)
    provisioner = ClusterProvisioner(
        runner, cluster_cfg, readiness_cfg, dry_run=run_mode.dry_run, verbose=run_mode.verbose,
    )
    installer = ApplicationInstaller(runner, rollout_cfg)
    return OrchestrationService(provisioner, installer)


def parse_deployment_mode(value: str | None) -> DeploymentMode | None:
    """Convert a CLI string into a DeploymentMode.

    Raises:
        ConfigurationError: If *value* is not a known mode.
    """
    if value is None or value == "":
        return None
    try:
        return DeploymentMode(value.strip().lower())
    except ValueError as err:
        raise ConfigurationError("deployment_mode", value, f"must be one of {VALID_DEPLOYMENT_MODES}") from err


def validate_request(request: InstallationRequest) -> None:
    """Reject requests that cannot run before anything is executed.

    Raises:
        ConfigurationError: On a missing deployment mode in a
            non-interactive run, or an incomplete bundle.
    """
    if request.run_mode.non_interactive and request.deployment_mode is None:
        raise ConfigurationError(
            "deployment_mode", None, f"required in non-interactive mode; one of {VALID_DEPLOYMENT_MODES}")
    if request.deployment_mode is not None and not isinstance(request.deployment_mode, DeploymentMode):
        raise ConfigurationError(
            "deployment_mode", request.deployment_mode, f"must be one of {VALID_DEPLOYMENT_MODES}")
    if request.bundle is not None:
        if not request.bundle.repository:
            raise ConfigurationError("repository", request.bundle.repository, "bundle repository cannot be empty")
        if not request.bundle.ref:
            raise ConfigurationError("ref", request.bundle.ref, "bundle ref cannot be empty")


def resolve_cluster_spec(request: InstallationRequest, cluster_cfg: ClusterConfig | None = None) -> ClusterSpec:
    """Return the request's cluster spec, defaulting name and node count from *cluster_cfg*."""
    if request.cluster_spec is not None:
        return request.cluster_spec
    cluster_cfg = cluster_cfg or ClusterConfig()
    return ClusterSpec(name=request.cluster_name or cluster_cfg.cluster_name, node_count=cluster_cfg.node_count)


class OrchestrationService:
    """Sequence cluster provisioning and application rollout.

    Args:
        provisioner: Cluster lifecycle manager.
        installer: Two-phase application installer.
        soft_fail_cfg: Platform allow-list for soft-failing.
        host_platform: Platform override; detected per run when None.
    """

    def __init__(
        self,
        provisioner: ClusterProvisioner,
        installer: ApplicationInstaller,
        soft_fail_cfg: SoftFailConfig | None = None,
        *,
        host_platform: str | None = None,
    ):
        self.provisioner = provisioner
        self.installer = installer
        self.soft_fail_cfg = soft_fail_cfg or SoftFailConfig()
        self.host_platform = host_platform

    def run(self, request: InstallationRequest, cancel: CancelToken | None = None) -> Outcome:
        """Create the cluster, then roll out applications onto it.

        Cluster creation failures are always fatal. Rollout failures are
        soft-failed when the policy allows it.

        Args:
            request: Installation request.
            cancel: Cancellation token shared by every wait.

        Returns:
            The run's outcome; errors are reported in it, not raised.
        """
        cancel = cancel or CancelToken()
        try:
            validate_request(request)
            spec = resolve_cluster_spec(request, self.provisioner.cluster_cfg)
            validate_cluster_spec(spec)
        except ConfigurationError as err:
            return self.fatal_outcome(err)

        console.print(Panel.fit(f"Bootstrapping cluster '{spec.name}'", style="bold blue"))
        try:
            handle = self.provisioner.create(spec, cancel)
        except BootstrapError as err:
            logger.error("Cluster provisioning failed: %s", err)
            return self.fatal_outcome(err)

        return self._rollout(handle, request, cancel)

    def install_on_existing(self, request: InstallationRequest, cancel: CancelToken | None = None) -> Outcome:
        """Roll out applications onto a cluster that already exists."""
        cancel = cancel or CancelToken()
        try:
            validate_request(request)
        except ConfigurationError as err:
            return self.fatal_outcome(err)

        name = request.cluster_name or self.provisioner.cluster_cfg.cluster_name
        try:
            handle = self.provisioner.get_handle(name, cancel)
        except BootstrapError as err:
            return self.fatal_outcome(err)
        return self._rollout(handle, request, cancel)

    def _rollout(self, handle: ClusterHandle, request: InstallationRequest, cancel: CancelToken) -> Outcome:
        try:
            self.installer.install(handle, request, cancel)
        except BootstrapError as err:
            if should_soft_fail(
                err, request.run_mode,
                host_platform=self.host_platform,
                allowed_platforms=self.soft_fail_cfg.allowed_platforms,
            ):
                return self._soft_failed(err, handle, request)
            return self.fatal_outcome(err, handle)
        return Outcome(
            status=OutcomeStatus.SUCCESS,
            reason=f"cluster '{handle.cluster_name}' is ready and applications are rolled out",
            handle=handle,
        )

    # ========================================================================
    # Outcome builders
    # ========================================================================

    def fatal_outcome(self, err: BaseException, handle: ClusterHandle | None = None) -> Outcome:
        classification = classify(err)
        return Outcome(
            status=OutcomeStatus.FATAL,
            reason=str(err),
            guidance=list(classification.remediation),
            error=err,
            handle=handle,
            classification=classification,
        )

    def _soft_failed(self, err: BaseException, handle: ClusterHandle, request: InstallationRequest) -> Outcome:
        classification = classify(err)
        component = classification.component or "rollout"
        logger.warning("Soft-failing %s on cluster %s: %s", component, handle.cluster_name, err)

        rerun = f"bootstrap-manager install apps --cluster-name {handle.cluster_name}"
        if request.deployment_mode is not None:
            rerun += f" --deployment-mode {request.deployment_mode.value}"
        guidance = [
            "Likely cause: container registry DNS resolution is unreliable on this host, "
            "so images could not be pulled before the deadline",
            *classification.remediation,
            f"Rerun only the application rollout: {rerun} --non-interactive",
        ]
        return Outcome(
            status=OutcomeStatus.SOFT_FAILED,
            reason=f"cluster '{handle.cluster_name}' is usable but {component} is not verified: {err}",
            guidance=guidance,
            error=err,
            handle=handle,
            classification=classification,
        )

    # ========================================================================
    # Reporting
    # ========================================================================

    def report_outcome(self, outcome: Outcome) -> None:
        """Print *outcome* to the console."""
        if outcome.status == OutcomeStatus.SUCCESS:
            console.print(Panel.fit("Bootstrap complete", style="bold green"))
            if outcome.handle is not None:
                console.print(f"[green]\u2705 Context: {outcome.handle.context} ({outcome.handle.server})[/green]")
            return

        if outcome.status == OutcomeStatus.SOFT_FAILED:
            console.print(Panel.fit("Completed with warnings", style="bold yellow"))
            console.print(f"[yellow]\u26a0\ufe0f  {outcome.reason}[/yellow]")
        else:
            console.print(Panel.fit("Bootstrap failed", style="bold red"))
            console.print(f"[red]\u274c {outcome.reason}[/red]")
            classification = outcome.classification
            if classification is not None:
                for label, value in (
                    ("Component", classification.component),
                    ("Operation", classification.operation),
                    ("Cluster", classification.cluster_name),
                ):
                    if value:
                        console.print(f"[red]   {label}: {value}[/red]")

        if outcome.guidance:
            console.print("[yellow]Troubleshooting:[/yellow]")
            for step in outcome.guidance:
                console.print(f"  - {step}")
