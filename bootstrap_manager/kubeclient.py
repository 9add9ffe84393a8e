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

"""Cluster API client backed by kubectl."""

from __future__ import annotations

import json
from typing import Any, Protocol

from bootstrap_manager.constants import API_REQUEST_TIMEOUT, APP_UNKNOWN, ARGOCD_APPLICATION_RESOURCE
from bootstrap_manager.errors import ClusterAPIError, CommandError
from bootstrap_manager.executor import CommandRunner
from bootstrap_manager.models import ManagedApplication, NodeStatus


class ClusterAPIClient(Protocol):
    def list_nodes(self) -> list[NodeStatus]:
        ...

    def list_applications(self, namespace: str) -> list[ManagedApplication]:
        ...


class KubectlClusterClient:
    """Thin wrapper around kubectl for one kubeconfig context.

    Args:
        runner: Command runner used to invoke kubectl.
        context: Kubeconfig context, e.g. ``k3d-demo``.
    """

    def __init__(self, runner: CommandRunner, context: str):
        self.runner = runner
        self.context = context

    def list_nodes(self) -> list[NodeStatus]:
        """Return the cluster's nodes and their Ready condition.

        Raises:
            ClusterAPIError: If kubectl fails or returns unparsable output.
        """
        payload = self._run_json("get", "nodes", "-o", "json")
        return [self._summarize_node(item) for item in payload.get("items", [])]

    def list_applications(self, namespace: str) -> list[ManagedApplication]:
        """Return Argo CD applications in *namespace* with health and sync status.

        Raises:
            ClusterAPIError: If kubectl fails or returns unparsable output.
        """
        payload = self._run_json("-n", namespace, "get", ARGOCD_APPLICATION_RESOURCE, "-o", "json")
        return [self._summarize_application(item) for item in payload.get("items", [])]

    def _run_json(self, *args: str) -> dict[str, Any]:
        try:
            result = self.runner.run(
                "kubectl", "--context", self.context, *args, f"--request-timeout={API_REQUEST_TIMEOUT}",
            )
        except CommandError as err:
            detail = err.result.stderr.strip() or err.result.stdout.strip() or str(err)
            raise ClusterAPIError(detail) from err
        output = result.stdout.strip()
        if not output:
            return {}
        try:
            return json.loads(output)
        except json.JSONDecodeError as err:
            raise ClusterAPIError(f"unparsable kubectl output: {err}") from err

    @staticmethod
    def _summarize_node(item: dict[str, Any]) -> NodeStatus:
        ready = False
        for condition in item.get("status", {}).get("conditions", []):
            if condition.get("type") == "Ready":
                ready = condition.get("status") == "True"
                break
        return NodeStatus(name=item.get("metadata", {}).get("name", ""), ready=ready)

    @staticmethod
    def _summarize_application(item: dict[str, Any]) -> ManagedApplication:
        status = item.get("status", {})
        health = status.get("health", {})
        messages = []
        if health.get("message"):
            messages.append(health["message"])
        for condition in status.get("conditions", []):
            if condition.get("message"):
                messages.append(condition["message"])
        operation_message = status.get("operationState", {}).get("message")
        if operation_message:
            messages.append(operation_message)
        return ManagedApplication(
            name=item.get("metadata", {}).get("name", ""),
            health=health.get("status") or APP_UNKNOWN,
            sync=status.get("sync", {}).get("status") or APP_UNKNOWN,
            message="; ".join(messages),
        )
