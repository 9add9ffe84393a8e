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

"""k3d cluster lifecycle and readiness verification."""

from __future__ import annotations

import json
import os
import re
import socket
import tempfile
import time
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timezone

import docker
import yaml
from rich.panel import Panel
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from bootstrap_manager import console, logger
from bootstrap_manager.classifier import is_temporary_error
from bootstrap_manager.config import ClusterConfig, ReadinessConfig
from bootstrap_manager.constants import (
    CLUSTER_DELETE_TIMEOUT_SECONDS,
    CLUSTER_LIST_TIMEOUT_SECONDS,
    K3D_CONFIG_API_VERSION,
    K3D_CONTEXT_PREFIX,
    STATUS_UNKNOWN,
    SUPPORTED_PROVIDERS,
    UNSPECIFIED_BIND_HOST,
)
from bootstrap_manager.errors import (
    BootstrapError,
    ClusterAPIError,
    ClusterNotFoundError,
    ClusterNotReachableError,
    ClusterOperationError,
    CommandError,
    ConfigurationError,
    OperationCancelledError,
)
from bootstrap_manager.executor import CommandRunner, ExecuteOptions
from bootstrap_manager.kubeclient import ClusterAPIClient
from bootstrap_manager.models import ClusterHandle, ClusterInfo, ClusterSpec, ClusterState
from bootstrap_manager.utils import (
    CancelToken,
    default_kubeconfig_path,
    extract_host_port,
    rewrite_kubeconfig_server,
)

_CLUSTER_NAME_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")


class _NotReady(Exception):
    """Internal retry signal for readiness polling."""


def _tcp_connect(host: str, port: int, timeout: float) -> None:
    with socket.create_connection((host, port), timeout=timeout):
        pass


def context_name(cluster_name: str) -> str:
    return f"{K3D_CONTEXT_PREFIX}{cluster_name}"


# ============================================================================
# Config rendering
# ============================================================================

def render_k3d_config(spec: ClusterSpec, cluster_cfg: ClusterConfig) -> dict:
    """Build a k3d ``Simple`` config for *spec*.

    Args:
        spec: Validated cluster spec.
        cluster_cfg: Ports, image and API host defaults.

    Returns:
        Config document ready to be dumped as YAML.
    """
    image = cluster_cfg.k3s_image
    if spec.k8s_version:
        image = f"{image.rsplit(':', 1)[0]}:{spec.k8s_version}"
    return {
        "apiVersion": K3D_CONFIG_API_VERSION,
        "kind": "Simple",
        "metadata": {"name": spec.name},
        "servers": 1,
        "agents": spec.node_count - 1,
        "image": image,
        "kubeAPI": {
            "host": cluster_cfg.api_host,
            "hostIP": cluster_cfg.api_host,
            "hostPort": str(cluster_cfg.api_port),
        },
        "options": {
            "k3s": {
                "extraArgs": [
                    {"arg": "--disable=traefik", "nodeFilters": ["server:*"]},
                    {"arg": "--kubelet-arg=eviction-hard=", "nodeFilters": ["all"]},
                    {"arg": "--kubelet-arg=eviction-soft=", "nodeFilters": ["all"]},
                ],
            },
        },
        "ports": [
            {"port": f"{cluster_cfg.http_port}:80", "nodeFilters": ["loadbalancer"]},
            {"port": f"{cluster_cfg.https_port}:443", "nodeFilters": ["loadbalancer"]},
        ],
    }


def validate_cluster_spec(spec: ClusterSpec) -> None:
    """Reject specs that k3d would refuse.

    Raises:
        ConfigurationError: On an empty or malformed name, a node count below
            one, or an unsupported provider.
    """
    if not spec.name or not spec.name.strip():
        raise ConfigurationError("name", spec.name, "cluster name cannot be empty")
    if not _CLUSTER_NAME_RE.match(spec.name):
        raise ConfigurationError(
            "name", spec.name, "must consist of lowercase alphanumerics and '-', starting and ending alphanumeric")
    if spec.node_count < 1:
        raise ConfigurationError("node_count", spec.node_count, "must be at least 1")
    if spec.provider not in SUPPORTED_PROVIDERS:
        raise ConfigurationError("provider", spec.provider, f"supported providers: {', '.join(SUPPORTED_PROVIDERS)}")


# ============================================================================
# Provisioner
# ============================================================================

class ClusterProvisioner:
    """Create, verify and tear down k3d clusters.

    Verified handles are cached per cluster name for
    ``readiness_cfg.handle_cache_ttl`` seconds. The cache entry is dropped on
    delete, on a failed verification, and when the TTL expires.

    Args:
        runner: Command runner for k3d.
        cluster_cfg: Cluster defaults.
        readiness_cfg: Polling attempts and intervals.
        api_client_factory: Builds the API client for a handle.
        tcp_probe: ``(host, port, timeout)`` callable that raises OSError on failure.
        docker_client_factory: Builds the Docker client used by forced deletes.
        dry_run: Skip readiness verification and return unverified handles.
        verbose: Pass ``--verbose`` to k3d.
    """

    def __init__(
        self,
        runner: CommandRunner,
        cluster_cfg: ClusterConfig | None = None,
        readiness_cfg: ReadinessConfig | None = None,
        *,
        api_client_factory: Callable[[ClusterHandle], ClusterAPIClient] | None = None,
        tcp_probe: Callable[[str, int, float], None] = _tcp_connect,
        docker_client_factory: Callable[[], docker.DockerClient] = docker.from_env,
        dry_run: bool = False,
        verbose: bool = False,
    ):
        self.runner = runner
        self.cluster_cfg = cluster_cfg or ClusterConfig()
        self.readiness_cfg = readiness_cfg or ReadinessConfig()
        self._api_client_factory = api_client_factory or (lambda handle: handle.api_client(self.runner))
        self._tcp_probe = tcp_probe
        self._docker_client_factory = docker_client_factory
        self.dry_run = dry_run
        self.verbose = verbose
        self._states: dict[str, ClusterState] = {}
        self._handles: dict[str, tuple[ClusterHandle, float]] = {}

    # -- state --

    def state(self, name: str) -> ClusterState:
        return self._states.get(name, ClusterState.ABSENT)

    def _set_state(self, name: str, state: ClusterState) -> None:
        logger.debug("Cluster %s: %s -> %s", name, self.state(name).value, state.value)
        self._states[name] = state

    def invalidate(self, name: str) -> None:
        """Drop the cached handle for *name*."""
        self._handles.pop(name, None)

    # -- lifecycle --

    def create(self, spec: ClusterSpec, cancel: CancelToken | None = None) -> ClusterHandle:
        """Create a k3d cluster and wait until its API answers.

        Args:
            spec: Desired cluster.
            cancel: Cancellation token for the readiness wait.

        Returns:
            A verified handle (unverified in dry-run mode).

        Raises:
            ConfigurationError: If *spec* is invalid; nothing is executed.
            ClusterOperationError: If creation or verification fails. No
                rollback is attempted.
            OperationCancelledError: If *cancel* fires during verification.
        """
        validate_cluster_spec(spec)
        cancel = cancel or CancelToken()

        console.print(Panel.fit(f"Creating k3d cluster '{spec.name}'", style="bold blue"))
        console.print(f"[yellow]Nodes: {spec.node_count} (1 server, {spec.node_count - 1} agents)[/yellow]")
        self._set_state(spec.name, ClusterState.CREATING)
        self.invalidate(spec.name)

        config_file = tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", prefix="k3d-config-", delete=False)
        try:
            with config_file:
                yaml.safe_dump(render_k3d_config(spec, self.cluster_cfg), config_file, sort_keys=False)
            args = [
                "cluster", "create",
                "--config", config_file.name,
                "--timeout", self.cluster_cfg.create_timeout,
                "--kubeconfig-update-default",
                "--kubeconfig-switch-context",
            ]
            if self.verbose:
                args.append("--verbose")
            self.runner.run("k3d", *args)
        except CommandError as err:
            self._set_state(spec.name, ClusterState.FAILED)
            raise ClusterOperationError("create", spec.name, err) from err
        finally:
            os.unlink(config_file.name)

        if self.dry_run:
            console.print(f"[green]\u2705 Cluster '{spec.name}' created (dry run, not verified)[/green]")
            return self._bare_handle(spec.name)

        kubeconfig = self.cluster_cfg.kubeconfig or default_kubeconfig_path()
        if rewrite_kubeconfig_server(kubeconfig, UNSPECIFIED_BIND_HOST, self.cluster_cfg.api_host):
            logger.info("Rewrote API server address in %s", kubeconfig)

        try:
            handle = self.verify_reachable(spec.name, cancel)
        except (OperationCancelledError, ClusterOperationError):
            raise
        except BootstrapError as err:
            raise ClusterOperationError("create", spec.name, err) from err

        console.print(f"[green]\u2705 Cluster '{spec.name}' created and reachable at {handle.server}[/green]")
        return handle

    def verify_reachable(self, name: str, cancel: CancelToken | None = None) -> ClusterHandle:
        """Poll the cluster until its API port accepts connections and a node is Ready.

        Args:
            name: Cluster name.
            cancel: Cancellation token checked on every attempt.

        Returns:
            A freshly verified handle, also stored in the handle cache.

        Raises:
            ClusterNotReachableError: If either polling tier is exhausted or
                the API returns a non-temporary error.
            OperationCancelledError: If *cancel* fires.
        """
        cancel = cancel or CancelToken()
        self._set_state(name, ClusterState.VERIFYING)
        self.invalidate(name)
        try:
            handle = self._resolve_endpoint(name)
            self._wait_for_tcp(handle, cancel)
            self._wait_for_nodes(handle, cancel)
        except BaseException:
            self._set_state(name, ClusterState.FAILED)
            raise

        handle = replace(handle, verified_at=datetime.now(timezone.utc))
        self._handles[name] = (handle, time.monotonic())
        self._set_state(name, ClusterState.READY)
        return handle

    def get_handle(self, name: str, cancel: CancelToken | None = None) -> ClusterHandle:
        """Return a cached handle if still fresh, otherwise re-verify.

        In dry-run mode the cluster is not contacted and an unverified handle
        is returned.
        """
        if self.dry_run:
            return self._bare_handle(name)
        cached = self._handles.get(name)
        if cached is not None:
            handle, verified = cached
            if time.monotonic() - verified < self.readiness_cfg.handle_cache_ttl:
                return handle
            self.invalidate(name)
        return self.verify_reachable(name, cancel)

    def start(self, name: str, cancel: CancelToken | None = None) -> ClusterHandle:
        """Ephemeral clusters have no stopped state; force a reachability check."""
        if self.dry_run:
            return self._bare_handle(name)
        self.invalidate(name)
        return self.verify_reachable(name, cancel)

    def delete(self, name: str, force: bool = False) -> None:
        """Delete a k3d cluster.

        Args:
            name: Cluster name.
            force: On failure, remove the cluster's containers and network
                directly through Docker.

        Raises:
            ConfigurationError: If *name* is empty.
            ClusterOperationError: If deletion fails.
        """
        if not name:
            raise ConfigurationError("name", name, "cluster name cannot be empty")
        console.print(f"[yellow]\u2139\ufe0f  Deleting k3d cluster '{name}'...[/yellow]")
        self._set_state(name, ClusterState.DELETING)
        self.invalidate(name)
        try:
            self.runner.run(
                "k3d", "cluster", "delete", name,
                options=ExecuteOptions(timeout=CLUSTER_DELETE_TIMEOUT_SECONDS),
            )
        except CommandError as err:
            if not force:
                self._set_state(name, ClusterState.FAILED)
                raise ClusterOperationError("delete", name, err) from err
            console.print(f"[yellow]\u26a0\ufe0f  k3d delete failed, removing containers directly: {err}[/yellow]")
            self._force_cleanup(name)
        self._states.pop(name, None)
        console.print(f"[green]\u2705 Cluster '{name}' deleted[/green]")

    def _force_cleanup(self, name: str) -> None:
        prefix = context_name(name)
        try:
            client = self._docker_client_factory()
        except docker.errors.DockerException as err:
            self._set_state(name, ClusterState.FAILED)
            raise ClusterOperationError("delete", name, err) from err
        try:
            for container in client.containers.list(all=True, filters={"name": prefix}):
                if container.name == prefix or container.name.startswith(f"{prefix}-"):
                    logger.info("Removing container %s", container.name)
                    container.remove(force=True)
            for network in client.networks.list(names=[prefix]):
                if network.name == prefix:
                    logger.info("Removing network %s", network.name)
                    network.remove()
        except docker.errors.DockerException as err:
            self._set_state(name, ClusterState.FAILED)
            raise ClusterOperationError("delete", name, err) from err
        finally:
            client.close()

    # -- queries --

    def list_clusters(self) -> list[ClusterInfo]:
        """List k3d clusters.

        Raises:
            ClusterOperationError: If k3d fails or prints unparsable output.
        """
        try:
            result = self.runner.run(
                "k3d", "cluster", "list", "--output", "json",
                options=ExecuteOptions(timeout=CLUSTER_LIST_TIMEOUT_SECONDS),
            )
            entries = json.loads(result.stdout or "[]") or []
        except (CommandError, json.JSONDecodeError) as err:
            raise ClusterOperationError("list", "", err) from err
        return [
            ClusterInfo(
                name=entry.get("name", ""),
                provider=SUPPORTED_PROVIDERS[0],
                status=f"{entry.get('serversRunning', 0)}/{entry.get('serversCount', 0)}",
                node_count=entry.get("agentsCount", 0) + entry.get("serversCount", 0),
            )
            for entry in entries
        ]

    def status(self, name: str) -> ClusterInfo:
        """Return the listed cluster with a ``ready/total`` node status.

        The status falls back to ``Unknown`` when the API cannot be queried.

        Raises:
            ConfigurationError: If *name* is empty.
            ClusterNotFoundError: If no cluster has that name.
        """
        if not name:
            raise ConfigurationError("name", name, "cluster name cannot be empty")
        info = next((c for c in self.list_clusters() if c.name == name), None)
        if info is None:
            raise ClusterNotFoundError(name)

        cached = self._handles.get(name)
        handle = cached[0] if cached is not None else self._bare_handle(name)
        try:
            nodes = self._api_client_factory(handle).list_nodes()
        except (ClusterAPIError, CommandError) as err:
            logger.debug("Cannot query nodes of %s: %s", name, err)
            return replace(info, status=STATUS_UNKNOWN)
        ready = sum(1 for node in nodes if node.ready)
        return replace(info, status=f"{ready}/{len(nodes)}")

    # ========================================================================
    # Readiness internals
    # ========================================================================

    def _bare_handle(self, name: str) -> ClusterHandle:
        host, port = self.cluster_cfg.api_host, self.cluster_cfg.api_port
        return ClusterHandle(
            cluster_name=name, context=context_name(name),
            server=f"https://{host}:{port}", host=host, port=port,
        )

    def _resolve_endpoint(self, name: str) -> ClusterHandle:
        """Read the API endpoint from ``k3d kubeconfig get``, falling back to the configured port."""
        fallback = self._bare_handle(name)
        try:
            result = self.runner.run("k3d", "kubeconfig", "get", name)
            kubeconfig = yaml.safe_load(result.stdout) or {}
        except (CommandError, yaml.YAMLError) as err:
            logger.warning("Cannot read kubeconfig for %s, using %s: %s", name, fallback.server, err)
            return fallback

        clusters = (kubeconfig.get("clusters") or []) if isinstance(kubeconfig, dict) else []
        entry = next((c for c in clusters if c.get("name") == fallback.context), clusters[0] if clusters else None)
        cluster = (entry or {}).get("cluster") or {}
        server = cluster.get("server", "")
        try:
            host, port = extract_host_port(server)
        except ValueError:
            logger.warning("Unparsable API server %r for %s, using %s", server, name, fallback.server)
            return fallback
        if host == UNSPECIFIED_BIND_HOST:
            host = self.cluster_cfg.api_host
        return ClusterHandle(
            cluster_name=name,
            context=fallback.context,
            server=f"https://{host}:{port}",
            host=host,
            port=port,
            insecure_skip_tls_verify=bool(cluster.get("insecure-skip-tls-verify", False)),
        )

    def _wait_for_tcp(self, handle: ClusterHandle, cancel: CancelToken) -> None:
        cfg = self.readiness_cfg

        def _probe() -> None:
            cancel.raise_if_cancelled("TCP readiness check")
            self._tcp_probe(handle.host, handle.port, cfg.tcp_timeout)

        retryer = Retrying(
            stop=stop_after_attempt(cfg.tcp_attempts),
            wait=wait_fixed(cfg.tcp_interval),
            retry=retry_if_exception_type(OSError),
            sleep=cancel.sleep,
            before_sleep=lambda rs: logger.debug(
                "TCP %s:%d attempt %d failed: %s",
                handle.host, handle.port, rs.attempt_number, rs.outcome.exception()),
            reraise=True,
        )
        try:
            retryer(_probe)
        except OSError as err:
            raise ClusterNotReachableError(
                handle.cluster_name,
                f"API port {handle.host}:{handle.port} not accepting connections after {cfg.tcp_attempts} attempts",
                err,
            ) from err

    def _wait_for_nodes(self, handle: ClusterHandle, cancel: CancelToken) -> None:
        cfg = self.readiness_cfg
        client = self._api_client_factory(handle)

        def _check() -> None:
            cancel.raise_if_cancelled("node readiness check")
            try:
                nodes = client.list_nodes()
            except ClusterAPIError as err:
                if is_temporary_error(err):
                    raise _NotReady(str(err)) from err
                raise ClusterNotReachableError(
                    handle.cluster_name, "cluster API returned a non-temporary error", err) from err
            if not nodes:
                raise _NotReady("no nodes registered yet")
            ready = sum(1 for node in nodes if node.ready)
            if ready == 0:
                raise _NotReady(f"0/{len(nodes)} nodes ready")
            logger.info("Cluster %s: %d/%d nodes ready", handle.cluster_name, ready, len(nodes))

        retryer = Retrying(
            stop=stop_after_attempt(cfg.api_attempts),
            wait=wait_fixed(cfg.api_interval),
            retry=retry_if_exception_type(_NotReady),
            sleep=cancel.sleep,
            before_sleep=lambda rs: logger.debug(
                "API readiness attempt %d: %s", rs.attempt_number, rs.outcome.exception()),
            reraise=True,
        )
        try:
            retryer(_check)
        except _NotReady as err:
            last = err.__cause__ if isinstance(err.__cause__, BaseException) else err
            raise ClusterNotReachableError(
                handle.cluster_name,
                f"cluster API not ready after {cfg.api_attempts} attempts",
                last,
            ) from last
