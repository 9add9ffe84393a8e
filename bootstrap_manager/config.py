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

"""Configuration classes, auto-loaded from BOOTSTRAP_* env vars."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from bootstrap_manager.constants import (
    API_MAX_ATTEMPTS,
    API_RETRY_INTERVAL_SECONDS,
    DEFAULT_API_HOST,
    DEFAULT_API_PORT,
    DEFAULT_APP_POLL_INTERVAL_SECONDS,
    DEFAULT_APP_WAIT_TIMEOUT_SECONDS,
    DEFAULT_ARGOCD_VERSION,
    DEFAULT_BUNDLE_NAMESPACE,
    DEFAULT_BUNDLE_PATH,
    DEFAULT_BUNDLE_REF,
    DEFAULT_BUNDLE_REPOSITORY,
    DEFAULT_BUNDLE_TIMEOUT,
    DEFAULT_CLUSTER_NAME,
    DEFAULT_CREATE_TIMEOUT,
    DEFAULT_HELM_TIMEOUT,
    DEFAULT_HTTP_PORT,
    DEFAULT_HTTPS_PORT,
    DEFAULT_K3S_IMAGE,
    DEFAULT_NODE_COUNT,
    DEFAULT_SOFT_FAIL_PLATFORMS,
    DEFAULT_STABILIZATION_SECONDS,
    HANDLE_CACHE_TTL_SECONDS,
    NS_ARGOCD,
    TCP_CONNECT_TIMEOUT_SECONDS,
    TCP_MAX_ATTEMPTS,
    TCP_RETRY_INTERVAL_SECONDS,
)


# ============================================================================
# Configuration classes
# ============================================================================

class ClusterConfig(BaseSettings):
    """k3d cluster configuration.

    Attributes:
        cluster_name: Name used when the caller does not supply one.
        node_count: Total node count (one server plus agents).
        k3s_image: K3s Docker image used when ClusterSpec has no version.
        api_host: Host the kube API is published on.
        api_port: Host port for the kube API.
        http_port: Host port mapped to the load balancer's port 80.
        https_port: Host port mapped to the load balancer's port 443.
        create_timeout: Timeout passed to ``k3d cluster create``.
        kubeconfig: Kubeconfig file to rewrite, or None for the default.
    """

    model_config = SettingsConfigDict(env_prefix="BOOTSTRAP_", extra="ignore")

    cluster_name: str = DEFAULT_CLUSTER_NAME
    node_count: int = Field(default=DEFAULT_NODE_COUNT, ge=1, le=100)
    k3s_image: str = DEFAULT_K3S_IMAGE
    api_host: str = DEFAULT_API_HOST
    api_port: int = Field(default=DEFAULT_API_PORT, ge=1, le=65535)
    http_port: int = Field(default=DEFAULT_HTTP_PORT, ge=1, le=65535)
    https_port: int = Field(default=DEFAULT_HTTPS_PORT, ge=1, le=65535)
    create_timeout: str = Field(default=DEFAULT_CREATE_TIMEOUT, pattern=r"^\d+[smh]$")
    kubeconfig: Path | None = None


class ReadinessConfig(BaseSettings):
    """Polling limits for cluster reachability checks.

    Attributes:
        tcp_attempts: Connection attempts against the API port.
        tcp_interval: Seconds between TCP attempts.
        tcp_timeout: Per-attempt connect timeout in seconds.
        api_attempts: ``list nodes`` attempts.
        api_interval: Seconds between API attempts.
        handle_cache_ttl: Seconds a verified handle is reused without rechecking.
    """

    model_config = SettingsConfigDict(env_prefix="BOOTSTRAP_", extra="ignore")

    tcp_attempts: int = Field(default=TCP_MAX_ATTEMPTS, ge=1)
    tcp_interval: float = Field(default=TCP_RETRY_INTERVAL_SECONDS, ge=0)
    tcp_timeout: float = Field(default=TCP_CONNECT_TIMEOUT_SECONDS, gt=0)
    api_attempts: int = Field(default=API_MAX_ATTEMPTS, ge=1)
    api_interval: float = Field(default=API_RETRY_INTERVAL_SECONDS, ge=0)
    handle_cache_ttl: float = Field(default=HANDLE_CACHE_TTL_SECONDS, ge=0)


class RolloutConfig(BaseSettings):
    """Control-plane and application bundle rollout settings.

    Attributes:
        argocd_version: Argo CD helm chart version.
        argocd_namespace: Namespace the control plane is installed into.
        helm_timeout: ``--timeout`` for the control-plane helm install.
        stabilization_seconds: Fixed delay after the control-plane install.
        app_wait_timeout: Deadline in seconds for managed applications.
        app_poll_interval: Seconds between application status polls.
        bundle_repository: Default app-of-apps git repository.
        bundle_ref: Default branch of the bundle repository.
        bundle_path: Chart path inside the bundle repository.
        bundle_namespace: Namespace of the app-of-apps release.
        bundle_timeout: ``--timeout`` for the bundle helm install.
    """

    model_config = SettingsConfigDict(env_prefix="BOOTSTRAP_", extra="ignore")

    argocd_version: str = DEFAULT_ARGOCD_VERSION
    argocd_namespace: str = NS_ARGOCD
    helm_timeout: str = Field(default=DEFAULT_HELM_TIMEOUT, pattern=r"^\d+[smh]$")
    stabilization_seconds: int = Field(default=DEFAULT_STABILIZATION_SECONDS, ge=0)
    app_wait_timeout: float = Field(default=DEFAULT_APP_WAIT_TIMEOUT_SECONDS, gt=0)
    app_poll_interval: float = Field(default=DEFAULT_APP_POLL_INTERVAL_SECONDS, ge=0)
    bundle_repository: str = DEFAULT_BUNDLE_REPOSITORY
    bundle_ref: str = DEFAULT_BUNDLE_REF
    bundle_path: str = DEFAULT_BUNDLE_PATH
    bundle_namespace: str = DEFAULT_BUNDLE_NAMESPACE
    bundle_timeout: str = Field(default=DEFAULT_BUNDLE_TIMEOUT, pattern=r"^\d+[smh]$")


class SoftFailConfig(BaseSettings):
    """Soft-fail policy gate.

    Attributes:
        allowed_platforms: ``system/virtualization`` pairs where known-flaky
            registry DNS failures may be downgraded to warnings.
    """

    model_config = SettingsConfigDict(env_prefix="BOOTSTRAP_", extra="ignore")

    allowed_platforms: tuple[str, ...] = DEFAULT_SOFT_FAIL_PLATFORMS
