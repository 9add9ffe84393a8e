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

"""Exception hierarchy for provisioning and rollout failures."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from bootstrap_manager.executor import CommandResult
    from bootstrap_manager.models import ManagedApplication


class BootstrapError(Exception):
    """Base exception for all bootstrap errors."""


class ConfigurationError(BootstrapError):
    """Invalid input detected before any external call."""

    def __init__(self, field: str, value: Any, constraint: str):
        self.field = field
        self.value = value
        self.constraint = constraint
        super().__init__(f"invalid {field} {value!r}: {constraint}")


class OperationCancelledError(BootstrapError):
    """A wait loop or command was aborted by the cancel token."""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"operation cancelled: {operation}")


class CommandError(BootstrapError):
    """An external command exited with a nonzero status."""

    def __init__(self, command: str, result: CommandResult):
        self.command = command
        self.result = result
        message = f"command failed: {command} (exit code: {result.exit_code})"
        output = result.stderr.strip() or result.stdout.strip()
        if output:
            message += f": {output}"
        super().__init__(message)

    @property
    def exit_code(self) -> int:
        return self.result.exit_code


class ClusterAPIError(BootstrapError):
    """The cluster API could not be queried."""


# ============================================================================
# Cluster errors
# ============================================================================

class ClusterOperationError(BootstrapError):
    """A cluster lifecycle operation failed."""

    def __init__(self, operation: str, cluster_name: str, cause: BaseException | str):
        self.operation = operation
        self.cluster_name = cluster_name
        self.cause = cause
        super().__init__(f"cluster {operation} failed for {cluster_name}: {cause}")


class ClusterNotReachableError(ClusterOperationError):
    """The cluster never became reachable within its polling attempts."""

    def __init__(self, cluster_name: str, detail: str, last_error: BaseException | None = None):
        self.last_error = last_error
        cause = detail if last_error is None else f"{detail} (last error: {last_error})"
        super().__init__("verify", cluster_name, cause)


class ClusterNotFoundError(ClusterOperationError):
    """The named cluster does not exist."""

    def __init__(self, cluster_name: str):
        super().__init__("status", cluster_name, f"cluster {cluster_name} not found")


# ============================================================================
# Chart errors
# ============================================================================

class ChartError(BootstrapError):
    """Rollout failure with component, operation and cluster context.

    Attributes:
        operation: Phase verb, e.g. ``installation`` or ``waiting``.
        component: Component that failed, e.g. ``control-plane``.
        cause: Underlying exception.
        cluster_name: Cluster the rollout targeted, if known.
        recoverable: Whether retrying the same operation may succeed.
        retry_after: Suggested delay in seconds before a retry.
    """

    def __init__(
        self,
        operation: str,
        component: str,
        cause: BaseException,
        *,
        cluster_name: str = "",
        recoverable: bool = False,
        retry_after: float = 0.0,
    ):
        self.operation = operation
        self.component = component
        self.cause = cause
        self.cluster_name = cluster_name
        self.recoverable = recoverable
        self.retry_after = retry_after
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(operation, component, cause)

    def __str__(self) -> str:
        if self.cluster_name:
            return (f"chart {self.operation} failed for {self.component} "
                    f"on cluster {self.cluster_name}: {self.cause}")
        return f"chart {self.operation} failed for {self.component}: {self.cause}"

    def with_cluster(self, cluster_name: str) -> ChartError:
        self.cluster_name = cluster_name
        return self

    def with_recovery(self, retry_after: float) -> ChartError:
        self.recoverable = True
        self.retry_after = retry_after
        return self


class InstallationError(ChartError):
    """Installation failure with a phase and troubleshooting suggestions."""

    def __init__(self, component: str, phase: str, cause: BaseException, suggestions: list[str] | None = None):
        super().__init__("installation", component, cause)
        self.phase = phase
        self.suggestions = list(suggestions or [])

    def __str__(self) -> str:
        base = super().__str__()
        if self.phase:
            return f"{base} during phase '{self.phase}'"
        return base

    def troubleshooting_steps(self) -> list[str]:
        steps = [
            "Check cluster connectivity: kubectl cluster-info",
            "Verify cluster resources: kubectl top nodes",
            "Check helm installation: helm version",
        ]
        return steps + self.suggestions


class RegistryDNSError(InstallationError):
    """Container registry name resolution failed while installing."""

    def __init__(self, component: str, registry: str, cause: BaseException, retry_after: float):
        super().__init__(component, "helm-install", cause, suggestions=[
            "Check WSL2 DNS configuration in /etc/resolv.conf",
            f"Ensure {registry} is reachable: curl -I https://{registry}/v2/",
            "Restart Docker daemon: sudo systemctl restart docker",
            "Retry the bootstrap after the network stabilizes",
        ])
        self.registry = registry
        self.with_recovery(retry_after)

    def __str__(self) -> str:
        return f"registry DNS resolution failed for {self.registry}: {super().__str__()}"


class BranchNotFoundError(BootstrapError):
    """The bundle repository has no branch or ref with the requested name."""

    def __init__(self, repository: str, ref: str):
        self.repository = repository
        self.ref = ref
        super().__init__(f"branch '{ref}' not found in repository {repository}")


class ApplicationsNotReadyError(BootstrapError):
    """Managed applications did not converge before the deadline."""

    def __init__(self, applications: list[ManagedApplication], elapsed: float, detail: str = ""):
        self.applications = list(applications)
        self.elapsed = elapsed
        ready = sum(1 for app in self.applications if app.ready)
        message = (f"timeout waiting for applications after {elapsed:.0f}s: "
                   f"{ready}/{len(self.applications)} ready")
        pending = [app.describe() for app in self.applications if not app.ready]
        if pending:
            message += "; pending: " + "; ".join(pending)
        if detail:
            message += f"; {detail}"
        super().__init__(message)


# ============================================================================
# Helpers
# ============================================================================

def wrap_as_chart_error(operation: str, component: str, err: BaseException) -> ChartError:
    """Wrap *err* as a ChartError, keeping an existing ChartError as is.

    Args:
        operation: Phase verb for the new error.
        component: Component name for the new error.
        err: Exception to wrap.

    Returns:
        *err* itself when it already is a ChartError, otherwise a new one.
    """
    if isinstance(err, ChartError):
        return err
    return ChartError(operation, component, err)


def iter_error_chain(err: BaseException) -> Iterator[BaseException]:
    """Yield *err* and every cause beneath it, outermost first."""
    seen: set[int] = set()
    current: BaseException | None = err
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        nxt = getattr(current, "cause", None)
        if not isinstance(nxt, BaseException):
            nxt = current.__cause__ or current.__context__
        current = nxt


def find_in_chain(err: BaseException, exc_type: type) -> Any:
    """Return the first exception of *exc_type* in the chain of *err*, or None."""
    for item in iter_error_chain(err):
        if isinstance(item, exc_type):
            return item
    return None
