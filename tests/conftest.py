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

"""Shared fixtures: mock runner, fake cluster API, zero-delay configs."""

from __future__ import annotations

import threading

import pytest

from bootstrap_manager.cluster import ClusterProvisioner
from bootstrap_manager.components import ApplicationInstaller
from bootstrap_manager.config import ClusterConfig, ReadinessConfig, RolloutConfig
from bootstrap_manager.executor import MockCommandRunner
from bootstrap_manager.models import ClusterHandle, ManagedApplication, NodeStatus


class FakeAPIClient:
    """Scripted cluster API; each queue returns its items in order and repeats the last."""

    def __init__(self, nodes=None, applications=None):
        self._lock = threading.Lock()
        self._nodes = list(nodes) if nodes is not None else [[]]
        self._apps = list(applications) if applications is not None else [[]]
        self.node_calls = 0
        self.app_calls = 0
        self.namespaces: list[str] = []

    @staticmethod
    def _next(queue):
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, BaseException):
            raise item
        return list(item)

    def list_nodes(self):
        with self._lock:
            self.node_calls += 1
            return self._next(self._nodes)

    def list_applications(self, namespace):
        with self._lock:
            self.app_calls += 1
            self.namespaces.append(namespace)
            return self._next(self._apps)


class FakeProbe:
    """TCP probe that fails a fixed number of times, then succeeds."""

    def __init__(self, failures: int = 0, error: OSError | None = None):
        self.failures = failures
        self.error = error or ConnectionRefusedError("connection refused")
        self.calls: list[tuple[str, int, float]] = []

    def __call__(self, host: str, port: int, timeout: float) -> None:
        self.calls.append((host, port, timeout))
        if len(self.calls) <= self.failures:
            raise self.error


def ready_node(name: str = "k3d-demo-server-0") -> NodeStatus:
    return NodeStatus(name=name, ready=True)


def healthy_app(name: str = "openframe-api") -> ManagedApplication:
    return ManagedApplication(name=name, health="Healthy", sync="Synced")


@pytest.fixture
def mock_runner():
    return MockCommandRunner()


@pytest.fixture
def cluster_cfg(tmp_path):
    return ClusterConfig(kubeconfig=tmp_path / "kubeconfig")


@pytest.fixture
def readiness_cfg():
    return ReadinessConfig(
        tcp_attempts=3, tcp_interval=0, tcp_timeout=0.1,
        api_attempts=3, api_interval=0, handle_cache_ttl=30,
    )


@pytest.fixture
def rollout_cfg():
    return RolloutConfig(stabilization_seconds=0, app_wait_timeout=0.3, app_poll_interval=0.01)


@pytest.fixture
def api_client():
    return FakeAPIClient(nodes=[[ready_node()]], applications=[[healthy_app()]])


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def provisioner(mock_runner, cluster_cfg, readiness_cfg, api_client, probe):
    return ClusterProvisioner(
        mock_runner, cluster_cfg, readiness_cfg,
        api_client_factory=lambda handle: api_client,
        tcp_probe=probe,
    )


@pytest.fixture
def installer(mock_runner, rollout_cfg, api_client):
    return ApplicationInstaller(mock_runner, rollout_cfg, api_client_factory=lambda handle: api_client)


@pytest.fixture
def handle():
    return ClusterHandle(
        cluster_name="demo", context="k3d-demo",
        server="https://127.0.0.1:6550", host="127.0.0.1", port=6550,
    )
