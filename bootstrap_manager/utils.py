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

"""Cancellation token, command checks, and kubeconfig helpers."""

from __future__ import annotations

import os
import signal
import tempfile
import threading
from pathlib import Path
from urllib.parse import urlsplit

import sh

from bootstrap_manager import console
from bootstrap_manager.errors import OperationCancelledError


class CancelToken:
    """Cooperative cancellation signal shared by every bounded wait loop."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, operation: str = "wait") -> None:
        if self._event.is_set():
            raise OperationCancelledError(operation)

    def sleep(self, seconds: float) -> None:
        """Sleep for *seconds*, waking early on cancellation.

        Usable as tenacity's ``sleep`` callable.

        Raises:
            OperationCancelledError: If the token is cancelled before or during the sleep.
        """
        self.raise_if_cancelled()
        if seconds > 0 and self._event.wait(seconds):
            raise OperationCancelledError("wait")


def cancel_on_signals(token: CancelToken) -> None:
    """Cancel *token* on SIGINT or SIGTERM instead of raising KeyboardInterrupt."""

    def _handler(signum: int, _frame) -> None:
        console.print(f"[yellow]\u26a0\ufe0f  Received {signal.Signals(signum).name}, cancelling...[/yellow]")
        token.cancel()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def require_command(cmd: str) -> None:
    """Check if a command exists on the system PATH.

    Args:
        cmd: Name of the CLI command to check.

    Raises:
        RuntimeError: If the command is not found.
    """
    try:
        sh.which(cmd)
    except sh.ErrorReturnCode as err:
        raise RuntimeError(f"Required command '{cmd}' not found. Please install it first.") from err


def extract_host_port(server: str) -> tuple[str, int]:
    """Split a kube API server URL into host and port.

    Args:
        server: URL such as ``https://127.0.0.1:6550``.

    Returns:
        Tuple of (host, port).

    Raises:
        ValueError: If the URL has no host or no explicit port.
    """
    parts = urlsplit(server)
    if not parts.hostname or parts.port is None:
        raise ValueError(f"cannot parse host and port from server URL {server!r}")
    return parts.hostname, parts.port


def deep_merge(base: dict, overrides: dict) -> dict:
    """Return *base* with *overrides* merged in recursively; overrides win."""
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def default_kubeconfig_path() -> Path:
    """Return the kubeconfig file kubectl would use by default."""
    env_value = os.environ.get("KUBECONFIG", "")
    if env_value:
        return Path(env_value.split(os.pathsep)[0])
    return Path.home() / ".kube" / "config"


def rewrite_kubeconfig_server(path: Path, old_host: str, new_host: str) -> bool:
    """Replace ``server: https://<old_host>:`` with *new_host* in a kubeconfig.

    The file is rewritten atomically. Missing files and files without the
    pattern are left untouched, so repeated calls are safe.

    Args:
        path: Kubeconfig file to rewrite.
        old_host: Host to replace, typically ``0.0.0.0``.
        new_host: Replacement host, typically ``127.0.0.1``.

    Returns:
        True if the file was changed.
    """
    path = Path(path).resolve()
    if not path.is_file():
        return False
    old = f"server: https://{old_host}:"
    content = path.read_text()
    if old not in content:
        return False

    tmp = tempfile.NamedTemporaryFile(mode="w", dir=path.parent, prefix=".kubeconfig-", delete=False)
    try:
        with tmp:
            tmp.write(content.replace(old, f"server: https://{new_host}:"))
        os.chmod(tmp.name, path.stat().st_mode & 0o777)
        os.replace(tmp.name, path)
    finally:
        if os.path.exists(tmp.name):
            os.unlink(tmp.name)
    return True
