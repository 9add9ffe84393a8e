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

"""Error classification and the soft-fail policy.

This module is the only place that pattern-matches third-party error text.
Everything else inspects the typed errors from ``bootstrap_manager.errors``.
"""

from __future__ import annotations

import platform
import re
import shutil
from collections.abc import Iterable

from bootstrap_manager import logger
from bootstrap_manager.config import SoftFailConfig
from bootstrap_manager.constants import (
    ARGOCD_APPLICATION_RESOURCE,
    COMPONENT_APPLICATION_BUNDLE,
    COMPONENT_CLUSTER,
    COMPONENT_CONTROL_PLANE,
    COMPONENT_MANAGED_APPLICATIONS,
    HELM_RELEASE_APP_OF_APPS,
    HELM_RELEASE_ARGOCD,
    NS_ARGOCD,
    PLATFORM_NONE,
    PLATFORM_WSL2,
    REGISTRY_DNS_RETRY_AFTER_SECONDS,
    REGISTRY_DOCKER_HUB,
)
from bootstrap_manager.errors import (
    BranchNotFoundError,
    ChartError,
    ClusterOperationError,
    ConfigurationError,
    InstallationError,
    OperationCancelledError,
    RegistryDNSError,
    find_in_chain,
    iter_error_chain,
    wrap_as_chart_error,
)
from bootstrap_manager.models import Disposition, ErrorClassification, RunMode

TEMPORARY_ERROR_MARKERS = (
    "connection refused",
    "i/o timeout",
    "no such host",
    "connection reset",
    "service unavailable",
    "server is currently unable",
    "unable to connect to the server",
    "was refused",
    "eof",
    "tls handshake timeout",
)

HELM_TIMEOUT_MARKER = "timed out waiting for the condition"
HELM_HOOK_MARKERS = ("failed pre-install", "failed post-install", "timed out waiting")

REGISTRY_DNS_MARKERS = (
    f"lookup {REGISTRY_DOCKER_HUB}",
    "failed to pull image",
    "failed to resolve reference",
    "ErrImagePull",
    "ImagePullBackOff",
)
_LOOKUP_FAILURE_RE = re.compile(r"lookup [\w.-]+( on \S+)?: (no such host|server misbehaving)")

FATAL_ERROR_TYPES = (
    ConfigurationError,
    OperationCancelledError,
    BranchNotFoundError,
    ClusterOperationError,
)

COMPONENT_DIAGNOSTICS = {
    COMPONENT_CONTROL_PLANE: [
        f"kubectl -n {NS_ARGOCD} get pods",
        f"helm status {HELM_RELEASE_ARGOCD} -n {NS_ARGOCD}",
    ],
    COMPONENT_APPLICATION_BUNDLE: [
        f"helm status {HELM_RELEASE_APP_OF_APPS} -n {NS_ARGOCD}",
        f"kubectl -n {NS_ARGOCD} get {ARGOCD_APPLICATION_RESOURCE}",
    ],
    COMPONENT_MANAGED_APPLICATIONS: [
        f"kubectl -n {NS_ARGOCD} get {ARGOCD_APPLICATION_RESOURCE}",
        "kubectl get pods -A --field-selector=status.phase!=Running",
    ],
    COMPONENT_CLUSTER: [
        "k3d cluster list",
        "docker ps --filter name=k3d-",
    ],
}


def _text(err: BaseException | str) -> str:
    if isinstance(err, str):
        return err
    return " | ".join(str(item) for item in iter_error_chain(err))


# ============================================================================
# Text heuristics
# ============================================================================

def is_temporary_error(err: BaseException | str | None) -> bool:
    """Report whether *err* looks like a transient API connectivity failure."""
    if err is None:
        return False
    text = _text(err).lower()
    return any(marker in text for marker in TEMPORARY_ERROR_MARKERS)


def is_registry_dns_failure(text: str) -> bool:
    """Report whether *text* shows a container registry lookup or image pull failure."""
    if any(marker in text for marker in REGISTRY_DNS_MARKERS):
        return True
    if _LOOKUP_FAILURE_RE.search(text):
        return True
    return "dial tcp" in text and "i/o timeout" in text


def is_helm_timeout_with_registry_dns(text: str) -> bool:
    """Report whether a helm hook or wait timeout was caused by registry DNS."""
    is_helm_timeout = HELM_TIMEOUT_MARKER in text and any(marker in text for marker in HELM_HOOK_MARKERS)
    return is_helm_timeout and is_registry_dns_failure(text)


def is_pre_install_timeout(text: str) -> bool:
    if "failed pre-install" in text and HELM_TIMEOUT_MARKER in text:
        return True
    return "timed out waiting for pods" in text


# ============================================================================
# Classification
# ============================================================================

def classify_install_error(component: str, cluster_name: str, err: BaseException) -> ChartError:
    """Turn a helm install failure into the most specific chart error.

    Args:
        component: Component being installed.
        cluster_name: Target cluster.
        err: Raw failure, usually a CommandError.

    Returns:
        A recoverable RegistryDNSError for registry-DNS shaped helm timeouts,
        otherwise a ChartError for the installation.
    """
    if is_helm_timeout_with_registry_dns(_text(err)):
        dns_err = RegistryDNSError(component, REGISTRY_DOCKER_HUB, err, REGISTRY_DNS_RETRY_AFTER_SECONDS)
        dns_err.with_cluster(cluster_name)
        return dns_err
    return wrap_as_chart_error("installation", component, err).with_cluster(cluster_name)


def _context(err: BaseException) -> tuple[str, str, str]:
    chart = find_in_chain(err, ChartError)
    if chart is not None:
        return chart.component, chart.operation, chart.cluster_name
    cluster_err = find_in_chain(err, ClusterOperationError)
    if cluster_err is not None:
        return COMPONENT_CLUSTER, cluster_err.operation, cluster_err.cluster_name
    return "", "", ""


def _remediation(err: BaseException, component: str, dns_text: bool) -> list[str]:
    steps: list[str] = []
    installation = find_in_chain(err, InstallationError)
    if installation is not None:
        steps.extend(installation.troubleshooting_steps())
    elif dns_text:
        steps.extend([
            f"Check that {REGISTRY_DOCKER_HUB} resolves: nslookup {REGISTRY_DOCKER_HUB}",
            "Check DNS configuration in /etc/resolv.conf",
        ])
    for step in COMPONENT_DIAGNOSTICS.get(component, []):
        if step not in steps:
            steps.append(step)
    return steps


def classify(err: BaseException) -> ErrorClassification:
    """Assign a disposition to *err*.

    Configuration, cancellation, missing-branch and cluster lifecycle errors
    are fatal. Registry DNS failures, pre-install hook timeouts and chart
    errors marked recoverable are soft-failable. Transient API errors are
    recoverable. Anything else is fatal.

    Args:
        err: Exception to classify.

    Returns:
        Classification with the error's component context and remediation steps.
    """
    component, operation, cluster_name = _context(err)
    text = _text(err)
    dns_text = is_registry_dns_failure(text)

    if any(isinstance(item, FATAL_ERROR_TYPES) for item in iter_error_chain(err)):
        disposition = Disposition.FATAL
    elif (find_in_chain(err, RegistryDNSError) is not None
          or dns_text
          or is_pre_install_timeout(text)
          or any(isinstance(item, ChartError) and item.recoverable for item in iter_error_chain(err))):
        disposition = Disposition.SOFT_FAILABLE
    elif is_temporary_error(text):
        disposition = Disposition.RECOVERABLE
    else:
        disposition = Disposition.FATAL

    return ErrorClassification(
        disposition=disposition,
        error=err,
        component=component,
        operation=operation,
        cluster_name=cluster_name,
        remediation=_remediation(err, component, dns_text),
    )


# ============================================================================
# Soft-fail policy
# ============================================================================

def detect_host_platform() -> str:
    """Return the host as ``<os>/<virtualization>``.

    A Linux kernel built by Microsoft means the process runs inside WSL2 on a
    Windows host.
    """
    system = platform.system().lower()
    if system == "windows" and shutil.which("wsl"):
        return f"windows/{PLATFORM_WSL2}"
    if system == "linux" and "microsoft" in platform.release().lower():
        return f"windows/{PLATFORM_WSL2}"
    return f"{system}/{PLATFORM_NONE}"


def should_soft_fail(
    err: BaseException,
    run_mode: RunMode,
    *,
    host_platform: str | None = None,
    allowed_platforms: Iterable[str] | None = None,
) -> bool:
    """Decide whether *err* may be downgraded to a warning.

    Args:
        err: Rollout failure.
        run_mode: Execution flags; interactive runs never soft-fail.
        host_platform: Platform override, detected when None.
        allowed_platforms: Allow-list override, read from SoftFailConfig when None.

    Returns:
        True only for non-interactive runs on an allow-listed platform where
        the error is soft-failable.
    """
    if not run_mode.non_interactive:
        return False
    host = host_platform or detect_host_platform()
    allowed = tuple(allowed_platforms) if allowed_platforms is not None else SoftFailConfig().allowed_platforms
    if host not in allowed:
        logger.debug("Soft-fail not allowed on platform %s (allowed: %s)", host, ", ".join(allowed))
        return False
    return classify(err).disposition == Disposition.SOFT_FAILABLE
