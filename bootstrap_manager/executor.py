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

"""External command execution: the sh-backed runner and an in-memory mock."""

from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass, field
from typing import Protocol, Union

import sh

from bootstrap_manager import console, logger
from bootstrap_manager.errors import CommandError


@dataclass
class CommandResult:
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, stripped."""
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


@dataclass
class ExecuteOptions:
    """Per-invocation settings.

    Attributes:
        dir: Working directory, or None for the current one.
        env: Extra environment variables layered over the process environment.
        timeout: Seconds before the command is killed; 0 disables the timeout.
    """

    dir: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    timeout: float = 0


class CommandRunner(Protocol):
    def run(self, command: str, *args: str, options: ExecuteOptions | None = None) -> CommandResult:
        """Run *command* with *args*; raise CommandError on a nonzero exit."""
        ...


def format_command(command: str, args: tuple[str, ...] | list[str]) -> str:
    return " ".join([command, *args])


def _decode(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


# ============================================================================
# Production runner
# ============================================================================

class ShCommandRunner:
    """Run external tools through ``sh``.

    Args:
        dry_run: Print commands instead of running them.
        verbose: Log every command and its duration.
    """

    def __init__(self, dry_run: bool = False, verbose: bool = False):
        self.dry_run = dry_run
        self.verbose = verbose

    def run(self, command: str, *args: str, options: ExecuteOptions | None = None) -> CommandResult:
        options = options or ExecuteOptions()
        full_cmd = format_command(command, args)

        if self.dry_run:
            console.print(f"[dim][DRY RUN] Would execute: {full_cmd}[/dim]")
            return CommandResult()

        if self.verbose:
            logger.debug("Executing: %s", full_cmd)

        kwargs: dict = {"_return_cmd": True}
        if options.dir:
            kwargs["_cwd"] = options.dir
        if options.env:
            kwargs["_env"] = {**os.environ, **options.env}
        if options.timeout > 0:
            kwargs["_timeout"] = options.timeout

        start = time.monotonic()
        try:
            proc = sh.Command(command)(*args, **kwargs)
            result = CommandResult(
                exit_code=proc.exit_code,
                stdout=_decode(proc.stdout),
                stderr=_decode(proc.stderr),
                duration=time.monotonic() - start,
            )
        except sh.ErrorReturnCode as err:
            result = CommandResult(
                exit_code=err.exit_code,
                stdout=_decode(err.stdout),
                stderr=_decode(err.stderr),
                duration=time.monotonic() - start,
            )
        except sh.TimeoutException as err:
            result = CommandResult(
                exit_code=err.exit_code if err.exit_code is not None else -1,
                stderr=f"timed out after {options.timeout}s",
                duration=time.monotonic() - start,
            )
        except sh.CommandNotFound as err:
            result = CommandResult(exit_code=127, stderr=f"command not found: {err}")

        if self.verbose:
            logger.debug("Completed in %.2fs (exit code %d): %s", result.duration, result.exit_code, full_cmd)

        if result.exit_code != 0:
            raise CommandError(full_cmd, result)
        return result


# ============================================================================
# Mock runner
# ============================================================================

MockResponse = Union[CommandResult, str, BaseException]


class MockCommandRunner:
    """Deterministic in-memory runner that records every invocation.

    Responses are matched by substring against the full command line, first
    registered pattern first. A CommandResult with a nonzero exit code raises
    CommandError; an exception response is raised as is.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._commands: list[str] = []
        self._options: list[ExecuteOptions] = []
        self._responses: dict[str, list[MockResponse]] = {}
        self._default: CommandResult = CommandResult(stdout="mock output")
        self._should_fail = False
        self._fail_message = ""

    def set_response(self, pattern: str, response: MockResponse) -> None:
        with self._lock:
            self._responses[pattern] = [response]

    def set_sequence(self, pattern: str, responses: list[MockResponse]) -> None:
        """Return *responses* in order for *pattern*; the last one repeats."""
        if not responses:
            raise ValueError(f"response sequence for {pattern!r} cannot be empty")
        with self._lock:
            self._responses[pattern] = list(responses)

    def set_default_result(self, result: CommandResult) -> None:
        with self._lock:
            self._default = result

    def set_should_fail(self, should_fail: bool, message: str = "mock failure") -> None:
        with self._lock:
            self._should_fail = should_fail
            self._fail_message = message

    def run(self, command: str, *args: str, options: ExecuteOptions | None = None) -> CommandResult:
        full_cmd = format_command(command, args)
        with self._lock:
            self._commands.append(full_cmd)
            self._options.append(options or ExecuteOptions())
            if self._should_fail:
                raise CommandError(full_cmd, CommandResult(exit_code=1, stderr=self._fail_message))
            response: MockResponse = self._default
            for pattern, queue in self._responses.items():
                if pattern in full_cmd:
                    response = queue.pop(0) if len(queue) > 1 else queue[0]
                    break

        if isinstance(response, BaseException):
            raise response
        if isinstance(response, str):
            response = CommandResult(stdout=response)
        if response.exit_code != 0:
            raise CommandError(full_cmd, response)
        return response

    @property
    def executed_commands(self) -> list[str]:
        with self._lock:
            return list(self._commands)

    @property
    def executed_options(self) -> list[ExecuteOptions]:
        with self._lock:
            return list(self._options)

    def command_count(self) -> int:
        with self._lock:
            return len(self._commands)

    def was_executed(self, pattern: str) -> bool:
        with self._lock:
            return any(pattern in cmd for cmd in self._commands)

    def count_matching(self, pattern: str) -> int:
        with self._lock:
            return sum(1 for cmd in self._commands if pattern in cmd)

    def last_command(self) -> str:
        with self._lock:
            return self._commands[-1] if self._commands else ""

    def reset(self) -> None:
        with self._lock:
            self._commands.clear()
            self._options.clear()
            self._responses.clear()
            self._default = CommandResult(stdout="mock output")
            self._should_fail = False
            self._fail_message = ""
