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

"""Argo CD control plane, app-of-apps bundle, and application readiness."""

from __future__ import annotations

import json
import os
import shutil
import tempfile
import time
from collections.abc import Callable
from pathlib import Path

import yaml
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TextColumn, TimeRemainingColumn
from tenacity import Retrying, retry_if_exception_type, stop_after_delay, wait_fixed

from bootstrap_manager import console, logger
from bootstrap_manager.classifier import classify_install_error, is_temporary_error
from bootstrap_manager.config import RolloutConfig
from bootstrap_manager.constants import (
    APP_WAIT_MAX_CONSECUTIVE_API_FAILURES,
    COMPONENT_APPLICATION_BUNDLE,
    COMPONENT_CONTROL_PLANE,
    COMPONENT_MANAGED_APPLICATIONS,
    GIT_LS_REMOTE_NO_MATCH_EXIT_CODE,
    HELM_CHART_ARGOCD,
    HELM_RELEASE_APP_OF_APPS,
    HELM_RELEASE_ARGOCD,
    HELM_REPO_ARGO,
    HELM_REPO_ARGO_URL,
    STATUS_UNKNOWN,
)
from bootstrap_manager.errors import (
    ApplicationsNotReadyError,
    BootstrapError,
    BranchNotFoundError,
    ChartError,
    ClusterAPIError,
    CommandError,
    ConfigurationError,
    OperationCancelledError,
    wrap_as_chart_error,
)
from bootstrap_manager.executor import CommandRunner, ExecuteOptions
from bootstrap_manager.kubeclient import ClusterAPIClient
from bootstrap_manager.models import (
    ApplicationBundleSpec,
    ClusterHandle,
    DeploymentMode,
    InstallationRequest,
    ManagedApplication,
    StatusInfo,
)
from bootstrap_manager.utils import CancelToken, deep_merge

GIT_TIMEOUT_SECONDS = 120

# Lightweight Argo CD for single-node development clusters.
ARGOCD_BASE_VALUES: dict = {
    "fullnameOverride": "argocd",
    "configs": {
        "cm": {
            "resource.customizations.health.argoproj.io_Application": (
                "hs = {}\n"
                "hs.status = \"Progressing\"\n"
                "hs.message = \"\"\n"
                "if obj.status ~= nil then\n"
                "  if obj.status.health ~= nil then\n"
                "    hs.status = obj.status.health.status\n"
                "    if obj.status.health.message ~= nil then\n"
                "      hs.message = obj.status.health.message\n"
                "    end\n"
                "  end\n"
                "end\n"
                "return hs\n"
            ),
        },
    },
    "dex": {"enabled": False},
    "notifications": {"enabled": False},
    "applicationSet": {"enabled": False},
    "controller": {
        "resources": {
            "limits": {"cpu": "1", "memory": "1Gi"},
            "requests": {"cpu": "200m", "memory": "512Mi"},
        },
        "env": [
            {"name": "ARGOCD_RECONCILIATION_TIMEOUT", "value": "300s"},
            {"name": "ARGOCD_REPO_SERVER_TIMEOUT_SECONDS", "value": "300"},
        ],
    },
    "server": {
        "resources": {
            "limits": {"cpu": "200m", "memory": "256Mi"},
            "requests": {"cpu": "50m", "memory": "128Mi"},
        },
    },
    "repoServer": {
        "replicas": 1,
        "resources": {
            "limits": {"cpu": "1", "memory": "512Mi"},
            "requests": {"cpu": "100m", "memory": "256Mi"},
        },
        "env": [
            {"name": "ARGOCD_EXEC_TIMEOUT", "value": "300s"},
            {"name": "ARGOCD_GIT_ATTEMPTS_COUNT", "value": "5"},
            {"name": "ARGOCD_GIT_RETRY_MAX_DURATION", "value": "30s"},
        ],
        "extraArgs": ["--parallelismlimit=2"],
    },
    "redis": {
        "resources": {
            "limits": {"cpu": "100m", "memory": "128Mi"},
            "requests": {"cpu": "50m", "memory": "64Mi"},
        },
    },
}

SAAS_MODES = (DeploymentMode.SAAS_TENANT, DeploymentMode.SAAS_SHARED)


class _NotReady(Exception):
    """Internal retry signal for the application wait."""


# ============================================================================
# Values rendering
# ============================================================================

def render_control_plane_values(mode: DeploymentMode | None) -> dict:
    """Argo CD helm values for *mode*; SaaS modes pull through the registry secret."""
    values = dict(ARGOCD_BASE_VALUES)
    if mode in SAAS_MODES:
        values["global"] = {"imagePullSecrets": [{"name": "docker-pat-secret"}]}
    return values


def render_bundle_values(mode: DeploymentMode | None, overrides: dict | None = None) -> dict:
    """App-of-apps helm values for *mode* with caller *overrides* merged on top."""
    mode = mode or DeploymentMode.OSS_TENANT
    values = {
        "deployment": {
            "mode": mode.value,
            "oss": {"enabled": mode == DeploymentMode.OSS_TENANT},
            "saas": {
                "enabled": mode in SAAS_MODES,
                "shared": mode == DeploymentMode.SAAS_SHARED,
            },
        },
    }
    return deep_merge(values, overrides or {})


def _write_values(values: dict, directory: str | None = None, prefix: str = "values-") -> str:
    with tempfile.NamedTemporaryFile(
        mode="w", suffix=".yaml", prefix=prefix, dir=directory, delete=False,
    ) as f:
        yaml.safe_dump(values, f, sort_keys=False)
        return f.name


# ============================================================================
# Installer
# ============================================================================

class ApplicationInstaller:
    """Two-phase rollout: Argo CD first, then the app-of-apps bundle.

    Args:
        runner: Command runner for helm, git and kubectl.
        rollout_cfg: Chart versions, timeouts and wait limits.
        api_client_factory: Builds the API client used for application polling.
    """

    def __init__(
        self,
        runner: CommandRunner,
        rollout_cfg: RolloutConfig | None = None,
        *,
        api_client_factory: Callable[[ClusterHandle], ClusterAPIClient] | None = None,
    ):
        self.runner = runner
        self.rollout_cfg = rollout_cfg or RolloutConfig()
        self._api_client_factory = api_client_factory or (lambda handle: handle.api_client(self.runner))

    def _release(self, component: str) -> tuple[str, str]:
        if component == COMPONENT_CONTROL_PLANE:
            return HELM_RELEASE_ARGOCD, self.rollout_cfg.argocd_namespace
        if component == COMPONENT_APPLICATION_BUNDLE:
            return HELM_RELEASE_APP_OF_APPS, self.rollout_cfg.bundle_namespace
        raise ConfigurationError(
            "component", component, f"expected {COMPONENT_CONTROL_PLANE} or {COMPONENT_APPLICATION_BUNDLE}")

    def install(self, handle: ClusterHandle, request: InstallationRequest, cancel: CancelToken | None = None) -> None:
        """Roll out the control plane, then the bundle if one is requested.

        Args:
            handle: Verified cluster handle.
            request: Bundle, run mode and deployment mode.
            cancel: Cancellation token for the waits.

        Raises:
            ChartError: Component-tagged failure. Control-plane and wait
                failures are not recoverable.
            BranchNotFoundError: If the bundle ref does not exist, unwrapped.
            OperationCancelledError: If *cancel* fires, unwrapped.
        """
        cancel = cancel or CancelToken()
        dry_run = request.run_mode.dry_run

        try:
            self.install_control_plane(handle, request)
        except OperationCancelledError:
            raise
        except BootstrapError as err:
            raise wrap_as_chart_error("installation", COMPONENT_CONTROL_PLANE, err).with_cluster(
                handle.cluster_name) from err

        if not dry_run:
            self.wait_for_stabilization(cancel)

        if request.bundle is None:
            return

        try:
            self.install_bundle(handle, request.bundle, request)
        except (OperationCancelledError, BranchNotFoundError):
            raise
        except BootstrapError as err:
            raise classify_install_error(COMPONENT_APPLICATION_BUNDLE, handle.cluster_name, err) from err

        if dry_run:
            console.print("[yellow]\u2139\ufe0f  Dry run: skipping application readiness wait[/yellow]")
            return

        try:
            self.wait_for_applications(handle, cancel)
        except OperationCancelledError:
            raise
        except BootstrapError as err:
            raise ChartError(
                "waiting", COMPONENT_MANAGED_APPLICATIONS, err,
                cluster_name=handle.cluster_name, recoverable=False,
            ) from err

    # -- control plane --

    def install_control_plane(self, handle: ClusterHandle, request: InstallationRequest) -> None:
        """Install or upgrade the Argo CD helm release.

        Raises:
            CommandError: If any helm call fails.
        """
        cfg = self.rollout_cfg
        mode = request.run_mode
        console.print(Panel.fit("Installing Argo CD", style="bold blue"))
        console.print(f"[yellow]Version: {cfg.argocd_version}[/yellow]")

        self.runner.run("helm", "repo", "add", HELM_REPO_ARGO, HELM_REPO_ARGO_URL, "--force-update")
        self.runner.run("helm", "repo", "update", HELM_REPO_ARGO)

        if mode.force:
            try:
                self.runner.run(
                    "helm", "uninstall", HELM_RELEASE_ARGOCD,
                    "-n", cfg.argocd_namespace, "--kube-context", handle.context,
                )
                console.print("[yellow]   Removed existing Argo CD release[/yellow]")
            except CommandError:
                console.print("[yellow]   No existing Argo CD release found[/yellow]")

        values_file = _write_values(render_control_plane_values(request.deployment_mode), prefix="argocd-values-")
        try:
            args = [
                "upgrade", "--install", HELM_RELEASE_ARGOCD, HELM_CHART_ARGOCD,
                f"--version={cfg.argocd_version}",
                "--namespace", cfg.argocd_namespace,
                "--create-namespace",
                "--wait",
                "--timeout", cfg.helm_timeout,
                "-f", values_file,
                "--kube-context", handle.context,
            ]
            if mode.dry_run:
                args.append("--dry-run")
            self.runner.run("helm", *args)
        finally:
            os.unlink(values_file)
        console.print("[green]\u2705 Argo CD installed[/green]")

    def wait_for_stabilization(self, cancel: CancelToken) -> None:
        """Give Argo CD a fixed settling period before the bundle lands.

        Raises:
            OperationCancelledError: If *cancel* fires during the wait.
        """
        seconds = self.rollout_cfg.stabilization_seconds
        if seconds <= 0:
            return
        console.print(f"[yellow]\u2139\ufe0f  Waiting {seconds}s for Argo CD to stabilize...[/yellow]")
        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(), TimeRemainingColumn(), console=console,
        ) as progress:
            task = progress.add_task("[cyan]Stabilizing Argo CD...", total=seconds)
            for _ in range(seconds):
                cancel.sleep(1)
                progress.advance(task)
        console.print("[green]\u2705 Argo CD stabilization period complete[/green]")

    # -- application bundle --

    def check_branch(self, repository: str, ref: str) -> None:
        """Verify *ref* exists as a branch of *repository*.

        Raises:
            BranchNotFoundError: If git reports no matching head.
            CommandError: On any other git failure.
        """
        try:
            self.runner.run(
                "git", "ls-remote", "--exit-code", "--heads", repository, ref,
                options=ExecuteOptions(timeout=GIT_TIMEOUT_SECONDS),
            )
        except CommandError as err:
            if err.exit_code == GIT_LS_REMOTE_NO_MATCH_EXIT_CODE:
                raise BranchNotFoundError(repository, ref) from err
            raise

    def install_bundle(self, handle: ClusterHandle, bundle: ApplicationBundleSpec, request: InstallationRequest) -> None:
        """Clone the bundle repository and install its app-of-apps chart.

        Raises:
            ConfigurationError: If the bundle has no repository or ref.
            BranchNotFoundError: If the ref does not exist.
            CommandError: If git or helm fails.
        """
        if not bundle.repository:
            raise ConfigurationError("repository", bundle.repository, "bundle repository cannot be empty")
        if not bundle.ref:
            raise ConfigurationError("ref", bundle.ref, "bundle ref cannot be empty")

        console.print(Panel.fit("Installing application bundle", style="bold blue"))
        console.print(f"[yellow]Repository: {bundle.repository} (ref {bundle.ref}, path {bundle.path})[/yellow]")
        self.check_branch(bundle.repository, bundle.ref)

        workdir = tempfile.mkdtemp(prefix="app-of-apps-")
        try:
            clone_dir = Path(workdir) / "repo"
            self.runner.run(
                "git", "clone", "--depth", "1", "--branch", bundle.ref, bundle.repository, str(clone_dir),
                options=ExecuteOptions(timeout=GIT_TIMEOUT_SECONDS),
            )
            values_file = _write_values(render_bundle_values(request.deployment_mode, bundle.values), directory=workdir)
            args = [
                "upgrade", "--install", HELM_RELEASE_APP_OF_APPS, str(clone_dir / bundle.path),
                "--namespace", bundle.namespace,
                "--create-namespace",
                "--wait",
                "--timeout", bundle.timeout,
                "-f", values_file,
                "--kube-context", handle.context,
            ]
            if request.run_mode.dry_run:
                args.append("--dry-run")
            self.runner.run("helm", *args)
        finally:
            shutil.rmtree(workdir, ignore_errors=True)
        console.print("[green]\u2705 Application bundle installed[/green]")

    # -- managed applications --

    def wait_for_applications(self, handle: ClusterHandle, cancel: CancelToken | None = None) -> list[ManagedApplication]:
        """Poll Argo CD applications until all are Healthy and Synced.

        At least one application must exist. Temporary API errors are retried
        up to a bounded number of consecutive failures.

        Args:
            handle: Cluster handle.
            cancel: Cancellation token checked on every poll.

        Returns:
            The final, fully ready application list.

        Raises:
            ApplicationsNotReadyError: If the deadline passes; carries the last
                observed per-application status.
            ClusterAPIError: On a non-temporary API error, or too many
                consecutive temporary ones.
            OperationCancelledError: If *cancel* fires.
        """
        cancel = cancel or CancelToken()
        cfg = self.rollout_cfg
        client = self._api_client_factory(handle)
        started = time.monotonic()
        last_seen: list[ManagedApplication] = []
        api_failures = 0

        console.print(f"[yellow]\u2139\ufe0f  Waiting for Argo CD applications (timeout {cfg.app_wait_timeout:.0f}s)...[/yellow]")

        def _poll() -> list[ManagedApplication]:
            nonlocal last_seen, api_failures
            cancel.raise_if_cancelled("application readiness wait")
            try:
                apps = client.list_applications(cfg.argocd_namespace)
            except ClusterAPIError as err:
                api_failures += 1
                if not is_temporary_error(err) or api_failures >= APP_WAIT_MAX_CONSECUTIVE_API_FAILURES:
                    raise
                raise _NotReady(str(err)) from err
            api_failures = 0
            last_seen = apps
            if not apps:
                raise _NotReady("no applications created yet")
            ready = sum(1 for app in apps if app.ready)
            if ready < len(apps):
                raise _NotReady(f"{ready}/{len(apps)} applications ready")
            return apps

        retryer = Retrying(
            stop=stop_after_delay(cfg.app_wait_timeout),
            wait=wait_fixed(cfg.app_poll_interval),
            retry=retry_if_exception_type(_NotReady),
            sleep=cancel.sleep,
            before_sleep=lambda rs: logger.debug("Applications not ready: %s", rs.outcome.exception()),
            reraise=True,
        )
        try:
            apps = retryer(_poll)
        except _NotReady as err:
            raise ApplicationsNotReadyError(last_seen, time.monotonic() - started, str(err)) from err

        console.print(f"[green]\u2705 All {len(apps)} applications are Healthy and Synced[/green]")
        return apps

    # -- queries --

    def is_installed(self, component: str, handle: ClusterHandle) -> bool:
        """Report whether the helm release for *component* exists.

        Raises:
            ConfigurationError: If *component* is unknown.
            CommandError: If helm fails.
        """
        release, namespace = self._release(component)
        result = self.runner.run(
            "helm", "list", "-q", "-n", namespace, "-f", release, "--kube-context", handle.context,
        )
        return any(line.strip() == release for line in result.stdout.splitlines())

    def get_status(self, component: str, handle: ClusterHandle) -> StatusInfo:
        """Return the helm release status for *component*.

        Raises:
            ConfigurationError: If *component* is unknown.
            ChartError: If helm fails or prints unparsable output.
        """
        release, namespace = self._release(component)
        try:
            result = self.runner.run(
                "helm", "status", release, "-n", namespace, "--output", "json", "--kube-context", handle.context,
            )
            payload = json.loads(result.stdout or "{}")
        except (CommandError, json.JSONDecodeError) as err:
            raise ChartError("status", component, err, cluster_name=handle.cluster_name) from err
        chart_meta = payload.get("chart", {}).get("metadata", {})
        version = chart_meta.get("version") or str(payload.get("version", "")) or STATUS_UNKNOWN
        return StatusInfo(
            name=payload.get("name", release),
            namespace=payload.get("namespace", namespace),
            status=payload.get("info", {}).get("status", STATUS_UNKNOWN),
            version=version,
        )
