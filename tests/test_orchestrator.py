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

import pytest

from bootstrap_manager.cluster import ClusterProvisioner
from bootstrap_manager.components import ApplicationInstaller
from bootstrap_manager.config import ClusterConfig, SoftFailConfig
from bootstrap_manager.errors import ChartError, ClusterOperationError, ConfigurationError
from bootstrap_manager.executor import CommandResult
from bootstrap_manager.models import (
    ApplicationBundleSpec,
    ClusterSpec,
    DeploymentMode,
    InstallationRequest,
    ManagedApplication,
    OutcomeStatus,
    RunMode,
)
from bootstrap_manager.orchestrator import OrchestrationService, parse_deployment_mode, resolve_cluster_spec
from conftest import FakeAPIClient, ready_node

WSL2 = "windows/wsl2"
BUNDLE = ApplicationBundleSpec(repository="https://github.com/example/apps", ref="main")
DNS_APP = ManagedApplication(
    "openframe-gateway", health="Degraded", sync="Synced",
    message="failed to pull image: dial tcp: lookup registry-1.docker.io on 10.255.255.254:53: no such host",
)


def _service(mock_runner, cluster_cfg, readiness_cfg, rollout_cfg, client, host_platform=WSL2, **kwargs):
    provisioner = ClusterProvisioner(
        mock_runner, cluster_cfg, readiness_cfg,
        api_client_factory=lambda handle: client,
        tcp_probe=lambda host, port, timeout: None,
    )
    installer = ApplicationInstaller(mock_runner, rollout_cfg, api_client_factory=lambda handle: client)
    return OrchestrationService(
        provisioner, installer, SoftFailConfig(allowed_platforms=(WSL2,)), host_platform=host_platform, **kwargs)


def _request(non_interactive=True, mode=DeploymentMode.OSS_TENANT, **kwargs):
    fields = {
        "cluster_spec": ClusterSpec(name="demo", node_count=1),
        "bundle": BUNDLE,
        "run_mode": RunMode(non_interactive=non_interactive),
        "deployment_mode": mode,
        **kwargs,
    }
    return InstallationRequest(**fields)


@pytest.fixture
def dns_client():
    return FakeAPIClient(nodes=[[ready_node()]], applications=[[DNS_APP]])


@pytest.fixture
def make_service(mock_runner, cluster_cfg, readiness_cfg, rollout_cfg):
    def _make(client, **kwargs):
        return _service(mock_runner, cluster_cfg, readiness_cfg, rollout_cfg, client, **kwargs)
    return _make


# ============================================================================
# run
# ============================================================================

def test_successful_run(make_service, api_client, mock_runner):
    outcome = make_service(api_client).run(_request())

    assert outcome.status == OutcomeStatus.SUCCESS
    assert outcome.ok
    assert outcome.handle.context == "k3d-demo"
    assert mock_runner.count_matching("upgrade --install") == 2


def test_dns_wait_failure_soft_fails_in_ci_on_wsl2(make_service, dns_client):
    outcome = make_service(dns_client).run(_request())

    assert outcome.status == OutcomeStatus.SOFT_FAILED
    assert outcome.ok
    assert outcome.handle is not None
    assert outcome.handle.cluster_name == "demo"
    assert isinstance(outcome.error, ChartError)
    assert outcome.classification.component == "managed-applications"
    rerun = outcome.guidance[-1]
    assert rerun.startswith("Rerun only the application rollout:")
    assert "install apps --cluster-name demo --deployment-mode oss-tenant --non-interactive" in rerun


def test_dns_wait_failure_is_fatal_when_interactive(make_service, dns_client):
    outcome = make_service(dns_client).run(_request(non_interactive=False))

    assert outcome.status == OutcomeStatus.FATAL
    assert not outcome.ok
    assert isinstance(outcome.error, ChartError)
    assert "registry-1.docker.io" in outcome.reason
    assert outcome.handle is not None


def test_dns_wait_failure_is_fatal_on_other_platforms(make_service, dns_client):
    outcome = make_service(dns_client, host_platform="darwin/none").run(_request())

    assert outcome.status == OutcomeStatus.FATAL


def test_missing_deployment_mode_in_ci_runs_nothing(make_service, api_client, mock_runner):
    outcome = make_service(api_client).run(_request(mode=None))

    assert outcome.status == OutcomeStatus.FATAL
    assert isinstance(outcome.error, ConfigurationError)
    assert outcome.error.field == "deployment_mode"
    assert mock_runner.command_count() == 0


def test_invalid_cluster_spec_runs_nothing(make_service, api_client, mock_runner):
    outcome = make_service(api_client).run(_request(cluster_spec=ClusterSpec(name="demo", node_count=0)))

    assert outcome.status == OutcomeStatus.FATAL
    assert isinstance(outcome.error, ConfigurationError)
    assert mock_runner.command_count() == 0


def test_incomplete_bundle_runs_nothing(make_service, api_client, mock_runner):
    outcome = make_service(api_client).run(_request(bundle=ApplicationBundleSpec(repository="", ref="main")))

    assert outcome.status == OutcomeStatus.FATAL
    assert mock_runner.command_count() == 0


def test_cluster_create_failure_is_always_fatal(make_service, api_client, mock_runner):
    mock_runner.set_response("k3d cluster create", CommandResult(
        exit_code=1, stderr="failed to pull image rancher/k3s: lookup registry-1.docker.io: no such host"))

    outcome = make_service(api_client).run(_request())

    assert outcome.status == OutcomeStatus.FATAL
    assert isinstance(outcome.error, ClusterOperationError)
    assert outcome.handle is None
    assert not mock_runner.was_executed("helm")


def test_missing_branch_is_fatal_even_in_ci(make_service, api_client, mock_runner):
    mock_runner.set_response("git ls-remote", CommandResult(exit_code=2))

    outcome = make_service(api_client).run(_request())

    assert outcome.status == OutcomeStatus.FATAL
    assert "branch 'main' not found" in outcome.reason


def test_default_cluster_name():
    spec = resolve_cluster_spec(InstallationRequest())

    assert spec.name == "openframe-dev"
    assert spec.node_count == 4
    assert resolve_cluster_spec(InstallationRequest(cluster_name="ci")).name == "ci"


# ============================================================================
# install_on_existing
# ============================================================================

def test_install_on_existing_skips_create(make_service, api_client, mock_runner):
    outcome = make_service(api_client).install_on_existing(_request(cluster_spec=None, cluster_name="demo"))

    assert outcome.status == OutcomeStatus.SUCCESS
    assert outcome.handle.cluster_name == "demo"
    assert not mock_runner.was_executed("cluster create")


def test_install_on_existing_unreachable_cluster_is_fatal(mock_runner, cluster_cfg, readiness_cfg, rollout_cfg, api_client):
    def _refuse(host, port, timeout):
        raise ConnectionRefusedError("connection refused")

    service = _service(mock_runner, cluster_cfg, readiness_cfg, rollout_cfg, api_client)
    service.provisioner._tcp_probe = _refuse

    outcome = service.install_on_existing(_request(cluster_spec=None, cluster_name="demo"))

    assert outcome.status == OutcomeStatus.FATAL
    assert outcome.classification.component == "cluster"
    assert not mock_runner.was_executed("helm")


# ============================================================================
# helpers and reporting
# ============================================================================

def test_parse_deployment_mode():
    assert parse_deployment_mode("SaaS-Shared") == DeploymentMode.SAAS_SHARED
    assert parse_deployment_mode(None) is None
    assert parse_deployment_mode("") is None
    with pytest.raises(ConfigurationError):
        parse_deployment_mode("enterprise")


def test_report_soft_failed_outcome(make_service, dns_client, capsys):
    service = make_service(dns_client)
    outcome = service.run(_request())

    service.report_outcome(outcome)

    err = capsys.readouterr().err
    assert "Completed with warnings" in err
    assert "Troubleshooting:" in err
    assert "Rerun only" in err


def test_report_fatal_outcome(make_service, api_client, mock_runner, capsys):
    mock_runner.set_response("upgrade --install argo-cd", CommandResult(exit_code=1, stderr="Error: INSTALLATION FAILED"))
    service = make_service(api_client)
    outcome = service.run(_request())

    service.report_outcome(outcome)

    err = capsys.readouterr().err
    assert outcome.status == OutcomeStatus.FATAL
    assert "Bootstrap failed" in err
    assert "Component: control-plane" in err
    assert "Cluster: demo" in err


# ============================================================================
# configured defaults and dry-run
# ============================================================================

def test_configured_cluster_name_is_the_default_target(mock_runner, tmp_path, readiness_cfg, rollout_cfg, api_client):
    cluster_cfg = ClusterConfig(cluster_name="ci-env", kubeconfig=tmp_path / "kubeconfig")
    service = _service(mock_runner, cluster_cfg, readiness_cfg, rollout_cfg, api_client)
    request = InstallationRequest(bundle=None, deployment_mode=DeploymentMode.OSS_TENANT)

    installed = service.install_on_existing(request)
    created = service.run(request)

    assert installed.handle.context == "k3d-ci-env"
    assert created.handle.cluster_name == "ci-env"


def test_default_cluster_name_from_environment(monkeypatch):
    monkeypatch.setenv("BOOTSTRAP_CLUSTER_NAME", "from-env")

    assert resolve_cluster_spec(InstallationRequest()).name == "from-env"


def test_dry_run_install_on_existing_does_not_contact_cluster(mock_runner, cluster_cfg, readiness_cfg, rollout_cfg):
    client = FakeAPIClient(nodes=[[]], applications=[[]])
    provisioner = ClusterProvisioner(
        mock_runner, cluster_cfg, readiness_cfg,
        api_client_factory=lambda handle: client,
        tcp_probe=lambda host, port, timeout: None,
        dry_run=True,
    )
    installer = ApplicationInstaller(mock_runner, rollout_cfg, api_client_factory=lambda handle: client)
    service = OrchestrationService(provisioner, installer, host_platform=WSL2)

    outcome = service.install_on_existing(_request(cluster_spec=None, cluster_name="demo", run_mode=RunMode(dry_run=True)))

    assert outcome.status == OutcomeStatus.SUCCESS
    assert outcome.handle.verified_at is None
    assert client.node_calls == 0
    assert client.app_calls == 0
    assert mock_runner.count_matching("--dry-run") == 2
