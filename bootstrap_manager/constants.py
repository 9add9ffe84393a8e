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

"""Constants, dependency loading, and dep_value helper."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml


def load_dependencies() -> dict:
    """Load pinned tool and chart versions from dependencies.yaml.

    Returns:
        Parsed YAML content as a nested dictionary.
    """
    deps_file = Path(__file__).resolve().parent / "dependencies.yaml"
    with open(deps_file) as f:
        return yaml.safe_load(f)


DEPENDENCIES = load_dependencies()


def dep_value(*keys: str, default: Any = None) -> Any:
    """Safely traverse the DEPENDENCIES dict by key path.

    Args:
        *keys: Sequence of dictionary keys to traverse.
        default: Value to return if any key is missing.

    Returns:
        The value at the nested key path, or *default* if not found.
    """
    node = DEPENDENCIES
    for key in keys:
        if not isinstance(node, dict):
            return default
        node = node.get(key)
        if node is None:
            return default
    return node


# -- Providers --
PROVIDER_K3D = "k3d"
SUPPORTED_PROVIDERS = (PROVIDER_K3D,)
K3D_CONTEXT_PREFIX = "k3d-"
K3D_CONFIG_API_VERSION = "k3d.io/v1alpha5"

# -- K3d cluster defaults --
DEFAULT_CLUSTER_NAME = "openframe-dev"
DEFAULT_NODE_COUNT = 4
DEFAULT_K3S_IMAGE = f"{dep_value('k3s', 'image')}:{dep_value('k3s', 'version')}"
DEFAULT_API_HOST = "127.0.0.1"
DEFAULT_API_PORT = 6550
DEFAULT_HTTP_PORT = 8080
DEFAULT_HTTPS_PORT = 8443
DEFAULT_CREATE_TIMEOUT = "300s"
CLUSTER_DELETE_TIMEOUT_SECONDS = 120
CLUSTER_LIST_TIMEOUT_SECONDS = 30
UNSPECIFIED_BIND_HOST = "0.0.0.0"

# -- Readiness polling --
TCP_CONNECT_TIMEOUT_SECONDS = 2.0
TCP_MAX_ATTEMPTS = 10
TCP_RETRY_INTERVAL_SECONDS = 1.0
API_MAX_ATTEMPTS = 15
API_RETRY_INTERVAL_SECONDS = 2.0
API_REQUEST_TIMEOUT = "5s"
HANDLE_CACHE_TTL_SECONDS = 30.0

# -- Control-plane service (Argo CD) --
NS_ARGOCD = "argocd"
HELM_RELEASE_ARGOCD = "argo-cd"
HELM_REPO_ARGO = dep_value("argocd", "repo_name", default="argo")
HELM_REPO_ARGO_URL = dep_value("argocd", "repo_url")
HELM_CHART_ARGOCD = dep_value("argocd", "chart")
DEFAULT_ARGOCD_VERSION = str(dep_value("argocd", "version"))
DEFAULT_HELM_TIMEOUT = "7m"
DEFAULT_STABILIZATION_SECONDS = 600

# -- Application bundle (app-of-apps) --
HELM_RELEASE_APP_OF_APPS = "app-of-apps"
DEFAULT_BUNDLE_REPOSITORY = dep_value("app_of_apps", "repository")
DEFAULT_BUNDLE_REF = dep_value("app_of_apps", "ref", default="main")
DEFAULT_BUNDLE_PATH = dep_value("app_of_apps", "path", default=".")
DEFAULT_BUNDLE_NAMESPACE = NS_ARGOCD
DEFAULT_BUNDLE_TIMEOUT = "60m"
GIT_LS_REMOTE_NO_MATCH_EXIT_CODE = 2

# -- Managed applications --
ARGOCD_APPLICATION_RESOURCE = "applications.argoproj.io"
APP_HEALTHY = "Healthy"
APP_SYNCED = "Synced"
APP_UNKNOWN = "Unknown"
DEFAULT_APP_WAIT_TIMEOUT_SECONDS = 3600
DEFAULT_APP_POLL_INTERVAL_SECONDS = 2.0
APP_WAIT_MAX_CONSECUTIVE_API_FAILURES = 10

# -- Components --
COMPONENT_CONTROL_PLANE = "control-plane"
COMPONENT_APPLICATION_BUNDLE = "application-bundle"
COMPONENT_MANAGED_APPLICATIONS = "managed-applications"
COMPONENT_CLUSTER = "cluster"

# -- Soft-fail policy --
PLATFORM_WSL2 = "wsl2"
PLATFORM_NONE = "none"
DEFAULT_SOFT_FAIL_PLATFORMS = ("windows/wsl2",)
REGISTRY_DOCKER_HUB = "registry-1.docker.io"
REGISTRY_DNS_RETRY_AFTER_SECONDS = 120

# -- Status strings --
STATUS_UNKNOWN = "Unknown"
