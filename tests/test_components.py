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


from __future__ import annotations

import json
import os

import pytest

from bootstrap_manager.components import (
    ARGOCD_BASE_VALUES,
    ApplicationInstaller,
    render_bundle_values,
    render_control_plane_values,
)
from bootstrap_manager.config import RolloutConfig
from bootstrap_manager.errors import (
    ApplicationsNotReadyError,
    BranchNotFoundError,
    ChartError,
    ClusterAPIError,
    CommandError,
    ConfigurationError,
    OperationCancelledError,
    RegistryDNSError,
)
from bootstrap_manager.executor import CommandResult
from bootstrap_manager.models import (
    ApplicationBundleSpec,
    DeploymentMode,
    InstallationRequest,
    ManagedApplication,
    RunMode,
)
from bootstrap_manager.utils import CancelToken
from conftest import FakeAPIClient, healthy_app

DNS_HELM_FAILURE = (
    "Error: failed pre-install: timed out waiting for the condition: "
    "failed to pull image \"docker.io/library/busybox\": dial tcp: "
    "lookup registry-1.docker.io on 10.255.255.254:53: no such host"
)

BUNDLE = ApplicationBundleSpec(
    repository="https://github.com/example/apps", ref="main", path="manifests/app-of-apps")


def _request(bundle=BUNDLE, **run_mode):
    return InstallationRequest(
        cluster_name="demo",
        bundle=bundle,
        run_mode=RunMode(**run_mode),
        deployment_mode=DeploymentMode.OSS_TENANT,
    )


def _installer(mock_runner, client, **rollout):
    cfg = RolloutConfig(**{"stabilization_seconds": 0, "app_wait_timeout": 0.3, "app_poll_interval": 0.01, **rollout})
    return ApplicationInstaller(mock_runner, cfg, api_client_factory=lambda handle: client)


def _flag_value(command, flag):
    parts = command.split()
    return parts[parts.index(flag) + 1]


# ============================================================================
# install
# ============================================================================

def test_full_rollout_runs_both_phases_in_order(installer, mock_runner, api_client, handle):
    installer.install(handle, _request())

    commands = mock_runner.executed_commands
    argocd = next(i for i, c in enumerate(commands) if "upgrade --install argo-cd" in c)
    ls_remote = next(i for i, c in enumerate(commands) if "git ls-remote" in c)
    clone = next(i for i, c in enumerate(commands) if "git clone" in c)
    bundle = next(i for i, c in enumerate(commands) if "upgrade --install app-of-apps" in c)
    assert argocd < ls_remote < clone < bundle
    assert api_client.app_calls == 1
    assert api_client.namespaces == ["argocd"]

    argocd_cmd = commands[argocd]
    assert "argo/argo-cd --version=9.3.4" in argocd_cmd
    assert "--timeout 7m" in argocd_cmd
    assert "--kube-context k3d-demo" in argocd_cmd
    assert not os.path.exists(_flag_value(argocd_cmd, "-f"))
    assert commands[bundle].split()[4].endswith("repo/manifests/app-of-apps")


def test_control_plane_failure_stops_rollout(installer, mock_runner, api_client, handle):
    mock_runner.set_response("upgrade --install argo-cd", CommandResult(exit_code=1, stderr="Error: INSTALLATION FAILED"))

    with pytest.raises(ChartError) as exc_info:
        installer.install(handle, _request())

    err = exc_info.value
    assert err.component == "control-plane"
    assert err.operation == "installation"
    assert err.cluster_name == "demo"
    assert not err.recoverable
    assert isinstance(err.cause, CommandError)
    assert not mock_runner.was_executed("git")
    assert not mock_runner.was_executed("app-of-apps")
    assert api_client.app_calls == 0


def test_missing_branch_is_not_wrapped(installer, mock_runner, handle):
    mock_runner.set_response("git ls-remote", CommandResult(exit_code=2))

    with pytest.raises(BranchNotFoundError) as exc_info:
        installer.install(handle, _request())

    assert type(exc_info.value) is BranchNotFoundError
    assert exc_info.value.ref == "main"
    assert not mock_runner.was_executed("git clone")


def test_other_git_failures_become_chart_errors(installer, mock_runner, handle):
    mock_runner.set_response("git ls-remote", CommandResult(exit_code=128, stderr="fatal: could not read from remote"))

    with pytest.raises(ChartError) as exc_info:
        installer.install(handle, _request())

    assert exc_info.value.component == "application-bundle"


def test_no_bundle_installs_control_plane_only(installer, mock_runner, api_client, handle):
    installer.install(handle, _request(bundle=None))

    assert mock_runner.count_matching("upgrade --install") == 1
    assert not mock_runner.was_executed("git")
    assert api_client.app_calls == 0


def test_registry_dns_bundle_failure_is_recoverable(installer, mock_runner, handle):
    mock_runner.set_response("upgrade --install app-of-apps", CommandResult(exit_code=1, stderr=DNS_HELM_FAILURE))

    with pytest.raises(RegistryDNSError) as exc_info:
        installer.install(handle, _request())

    err = exc_info.value
    assert err.recoverable
    assert err.retry_after == 120
    assert err.cluster_name == "demo"
    assert err.component == "application-bundle"
    assert "registry-1.docker.io" in str(err)


def test_generic_bundle_failure_is_plain_chart_error(installer, mock_runner, handle):
    mock_runner.set_response("upgrade --install app-of-apps", CommandResult(exit_code=1, stderr="Error: chart not found"))

    with pytest.raises(ChartError) as exc_info:
        installer.install(handle, _request())

    assert type(exc_info.value) is ChartError
    assert not exc_info.value.recoverable
    assert exc_info.value.cluster_name == "demo"


def test_application_timeout_reports_pending_apps(mock_runner, handle):
    stuck = ManagedApplication("ingress-nginx", health="Degraded", sync="Synced", message="ImagePullBackOff")
    client = FakeAPIClient(applications=[[healthy_app(), stuck]])
    installer = _installer(mock_runner, client)

    with pytest.raises(ChartError) as exc_info:
        installer.install(handle, _request())

    err = exc_info.value
    assert (err.operation, err.component) == ("waiting", "managed-applications")
    assert not err.recoverable
    assert isinstance(err.cause, ApplicationsNotReadyError)
    assert "ingress-nginx" in str(err.cause)
    assert err.cause.applications == [healthy_app(), stuck]
    assert client.app_calls > 1


def test_wait_succeeds_once_all_applications_converge(mock_runner, handle):
    client = FakeAPIClient(applications=[
        [],
        [ManagedApplication("openframe-api", health="Progressing", sync="OutOfSync")],
        ClusterAPIError("dial tcp 127.0.0.1:6550: connect: connection refused"),
        [healthy_app()],
    ])
    installer = _installer(mock_runner, client)

    apps = installer.wait_for_applications(handle)

    assert apps == [healthy_app()]
    assert client.app_calls == 4


def test_wait_aborts_on_non_temporary_api_error(mock_runner, handle):
    client = FakeAPIClient(applications=[ClusterAPIError("applications.argoproj.io is forbidden")])
    installer = _installer(mock_runner, client)

    with pytest.raises(ClusterAPIError):
        installer.wait_for_applications(handle)

    assert client.app_calls == 1


def test_wait_gives_up_after_consecutive_api_failures(mock_runner, handle):
    client = FakeAPIClient(applications=[ClusterAPIError("connection refused")])
    installer = _installer(mock_runner, client, app_wait_timeout=30)

    with pytest.raises(ClusterAPIError):
        installer.wait_for_applications(handle)

    assert client.app_calls == 10


def test_dry_run_passes_flag_and_skips_polling(installer, mock_runner, api_client, handle):
    installer.install(handle, _request(dry_run=True))

    upgrades = [c for c in mock_runner.executed_commands if "upgrade --install" in c]
    assert len(upgrades) == 2
    assert all(c.endswith("--dry-run") for c in upgrades)
    assert api_client.app_calls == 0


def test_force_uninstalls_existing_release(installer, mock_runner, handle):
    mock_runner.set_response("helm uninstall", CommandResult(exit_code=1, stderr="release: not found"))

    installer.install(handle, _request(bundle=None, force=True))

    commands = mock_runner.executed_commands
    uninstall = next(i for i, c in enumerate(commands) if "helm uninstall argo-cd" in c)
    upgrade = next(i for i, c in enumerate(commands) if "upgrade --install argo-cd" in c)
    assert uninstall < upgrade


def test_cancel_during_stabilization(mock_runner, api_client, handle):
    installer = _installer(mock_runner, api_client, stabilization_seconds=5)
    cancel = CancelToken()
    cancel.cancel()

    with pytest.raises(OperationCancelledError):
        installer.install(handle, _request(), cancel)

    assert not mock_runner.was_executed("git")


# ============================================================================
# values and queries
# ============================================================================

def test_saas_modes_add_image_pull_secret():
    values = render_control_plane_values(DeploymentMode.SAAS_SHARED)

    assert values["global"]["imagePullSecrets"] == [{"name": "docker-pat-secret"}]
    assert "global" not in render_control_plane_values(DeploymentMode.OSS_TENANT)
    assert "global" not in ARGOCD_BASE_VALUES


def test_bundle_values_follow_mode_and_overrides():
    values = render_bundle_values(DeploymentMode.SAAS_TENANT, {"deployment": {"saas": {"shared": True}}, "ingress": {}})

    assert values["deployment"]["mode"] == "saas-tenant"
    assert values["deployment"]["oss"] == {"enabled": False}
    assert values["deployment"]["saas"] == {"enabled": True, "shared": True}
    assert values["ingress"] == {}
    assert render_bundle_values(None)["deployment"]["mode"] == "oss-tenant"


def test_is_installed(installer, mock_runner, handle):
    mock_runner.set_response("helm list", "argo-cd\n")
    assert installer.is_installed("control-plane", handle)

    mock_runner.set_response("helm list", "")
    assert not installer.is_installed("application-bundle", handle)
    assert "-f app-of-apps" in mock_runner.last_command()


def test_get_status_parses_helm_json(installer, mock_runner, handle):
    mock_runner.set_response("helm status", json.dumps({
        "name": "argo-cd", "namespace": "argocd", "version": 3,
        "info": {"status": "deployed"}, "chart": {"metadata": {"version": "9.3.4"}},
    }))

    info = installer.get_status("control-plane", handle)

    assert (info.name, info.namespace, info.status, info.version) == ("argo-cd", "argocd", "deployed", "9.3.4")


def test_get_status_failure(installer, mock_runner, handle):
    mock_runner.set_response("helm status", CommandResult(exit_code=1, stderr="Error: release: not found"))

    with pytest.raises(ChartError) as exc_info:
        installer.get_status("application-bundle", handle)

    assert exc_info.value.operation == "status"


def test_unknown_component_is_rejected(installer, mock_runner, handle):
    with pytest.raises(ConfigurationError):
        installer.is_installed("prometheus", handle)

    assert mock_runner.command_count() == 0
