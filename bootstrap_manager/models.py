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

"""Value types passed between the provisioner, installer and orchestrator."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from bootstrap_manager.constants import (
    APP_HEALTHY,
    APP_SYNCED,
    DEFAULT_BUNDLE_NAMESPACE,
    DEFAULT_BUNDLE_PATH,
    DEFAULT_BUNDLE_TIMEOUT,
    DEFAULT_NODE_COUNT,
    PROVIDER_K3D,
)

if TYPE_CHECKING:
    from bootstrap_manager.executor import CommandRunner
    from bootstrap_manager.kubeclient import ClusterAPIClient


# ============================================================================
# Enums
# ============================================================================

class DeploymentMode(str, enum.Enum):
    """Deployment flavour; selects the templated helm values."""

    OSS_TENANT = "oss-tenant"
    SAAS_TENANT = "saas-tenant"
    SAAS_SHARED = "saas-shared"


class ClusterState(str, enum.Enum):
    ABSENT = "absent"
    CREATING = "creating"
    VERIFYING = "verifying"
    READY = "ready"
    FAILED = "failed"
    DELETING = "deleting"


class OutcomeStatus(str, enum.Enum):
    SUCCESS = "success"
    SOFT_FAILED = "soft-failed"
    FATAL = "fatal"


class Disposition(str, enum.Enum):
    FATAL = "fatal"
    RECOVERABLE = "recoverable"
    SOFT_FAILABLE = "soft-failable"


# ============================================================================
# Requests
# ============================================================================

@dataclass(frozen=True)
class ClusterSpec:
    """Desired cluster shape.

    Attributes:
        name: Cluster name, non-empty.
        node_count: Total nodes (one server plus ``node_count - 1`` agents).
        k8s_version: Optional k3s image tag; None selects the pinned default.
        provider: Cluster provider, only ``k3d`` is recognized.
    """

    name: str
    node_count: int = DEFAULT_NODE_COUNT
    k8s_version: str | None = None
    provider: str = PROVIDER_K3D


@dataclass(frozen=True)
class ApplicationBundleSpec:
    """Repository-sourced app-of-apps chart; its presence enables the bundle phase."""

    repository: str
    ref: str
    path: str = DEFAULT_BUNDLE_PATH
    namespace: str = DEFAULT_BUNDLE_NAMESPACE
    timeout: str = DEFAULT_BUNDLE_TIMEOUT
    values: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)


@dataclass(frozen=True)
class RunMode:
    force: bool = False
    dry_run: bool = False
    verbose: bool = False
    non_interactive: bool = False


@dataclass(frozen=True)
class InstallationRequest:
    """Everything one bootstrap invocation needs.

    Attributes:
        cluster_name: Target cluster; empty selects the default name.
        cluster_spec: Cluster to create, or None to derive one from the name.
        bundle: Application bundle to roll out after the control plane.
        run_mode: Execution flags.
        deployment_mode: Deployment flavour for helm values.
    """

    cluster_name: str = ""
    cluster_spec: ClusterSpec | None = None
    bundle: ApplicationBundleSpec | None = None
    run_mode: RunMode = field(default_factory=RunMode)
    deployment_mode: DeploymentMode | None = None


# ============================================================================
# Cluster state
# ============================================================================

@dataclass(frozen=True)
class ClusterHandle:
    """Verified-reachable reference to a cluster's API endpoint."""

    cluster_name: str
    context: str
    server: str
    host: str
    port: int
    insecure_skip_tls_verify: bool = False
    verified_at: datetime | None = None

    def api_client(self, runner: CommandRunner) -> ClusterAPIClient:
        """Return an API client addressing this cluster through *runner*."""
        from bootstrap_manager.kubeclient import KubectlClusterClient

        return KubectlClusterClient(runner, self.context)


@dataclass
class ClusterInfo:
    name: str
    provider: str
    status: str
    node_count: int


@dataclass
class StatusInfo:
    name: str
    namespace: str
    status: str
    version: str


@dataclass(frozen=True)
class NodeStatus:
    name: str
    ready: bool


@dataclass(frozen=True)
class ManagedApplication:
    """One Argo CD application as reported by the cluster API."""

    name: str
    health: str
    sync: str
    message: str = ""

    @property
    def ready(self) -> bool:
        return self.health == APP_HEALTHY and self.sync == APP_SYNCED

    def describe(self) -> str:
        text = f"{self.name} (health={self.health}, sync={self.sync})"
        if self.message:
            text += f": {self.message}"
        return text


# ============================================================================
# Results
# ============================================================================

@dataclass
class ErrorClassification:
    """Disposition assigned to an error, with its context and remediation."""

    disposition: Disposition
    error: BaseException
    component: str = ""
    operation: str = ""
    cluster_name: str = ""
    remediation: list[str] = field(default_factory=list)


@dataclass
class Outcome:
    """Result of an orchestration run.

    A SOFT_FAILED outcome means the cluster is usable and only a rollout
    phase is unverified.
    """

    status: OutcomeStatus
    reason: str = ""
    guidance: list[str] = field(default_factory=list)
    error: BaseException | None = None
    handle: ClusterHandle | None = None
    classification: ErrorClassification | None = None

    @property
    def ok(self) -> bool:
        return self.status != OutcomeStatus.FATAL
