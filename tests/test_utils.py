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

import threading
import time

import pytest

from bootstrap_manager.errors import OperationCancelledError
from bootstrap_manager.utils import CancelToken, deep_merge, extract_host_port, rewrite_kubeconfig_server

KUBECONFIG = """apiVersion: v1
clusters:
- cluster:
    certificate-authority-data: abc
    server: https://0.0.0.0:6550
  name: k3d-demo
"""


def test_rewrite_kubeconfig_server(tmp_path):
    path = tmp_path / "config"
    path.write_text(KUBECONFIG)
    path.chmod(0o600)

    assert rewrite_kubeconfig_server(path, "0.0.0.0", "127.0.0.1")
    assert "server: https://127.0.0.1:6550" in path.read_text()
    assert "0.0.0.0" not in path.read_text()
    assert path.stat().st_mode & 0o777 == 0o600
    assert sorted(p.name for p in tmp_path.iterdir()) == ["config"]


def test_rewrite_kubeconfig_is_idempotent(tmp_path):
    path = tmp_path / "config"
    path.write_text(KUBECONFIG)

    rewrite_kubeconfig_server(path, "0.0.0.0", "127.0.0.1")
    first = path.read_text()

    assert not rewrite_kubeconfig_server(path, "0.0.0.0", "127.0.0.1")
    assert path.read_text() == first


def test_rewrite_kubeconfig_keeps_symlink(tmp_path):
    target = tmp_path / "k3d-config"
    target.write_text(KUBECONFIG)
    link = tmp_path / "config"
    link.symlink_to(target)

    assert rewrite_kubeconfig_server(link, "0.0.0.0", "127.0.0.1")

    assert link.is_symlink()
    assert "server: https://127.0.0.1:6550" in target.read_text()


def test_rewrite_kubeconfig_missing_file(tmp_path):
    assert not rewrite_kubeconfig_server(tmp_path / "absent", "0.0.0.0", "127.0.0.1")
    assert not (tmp_path / "absent").exists()


@pytest.mark.parametrize("server, expected", [
    ("https://127.0.0.1:6550", ("127.0.0.1", 6550)),
    ("https://0.0.0.0:43211", ("0.0.0.0", 43211)),
    ("https://host.docker.internal:6443/", ("host.docker.internal", 6443)),
])
def test_extract_host_port(server, expected):
    assert extract_host_port(server) == expected


@pytest.mark.parametrize("server", ["", "https://127.0.0.1", "not a url"])
def test_extract_host_port_rejects(server):
    with pytest.raises(ValueError):
        extract_host_port(server)


def test_deep_merge_keeps_base_untouched():
    base = {"global": {"domain": "localhost", "tls": False}, "replicas": 1}
    merged = deep_merge(base, {"global": {"tls": True}, "extra": [1]})

    assert merged == {"global": {"domain": "localhost", "tls": True}, "replicas": 1, "extra": [1]}
    assert base["global"]["tls"] is False


def test_cancel_token_sleep_wakes_on_cancel():
    token = CancelToken()
    threading.Timer(0.05, token.cancel).start()

    start = time.monotonic()
    with pytest.raises(OperationCancelledError):
        token.sleep(5)

    assert time.monotonic() - start < 2
    assert token.cancelled


def test_cancel_token_sleep_completes_when_not_cancelled():
    token = CancelToken()

    token.sleep(0.01)
    token.raise_if_cancelled("noop")

    assert not token.cancelled


def test_cancelled_token_raises_with_operation():
    token = CancelToken()
    token.cancel()

    with pytest.raises(OperationCancelledError) as exc_info:
        token.raise_if_cancelled("node readiness check")

    assert exc_info.value.operation == "node readiness check"
