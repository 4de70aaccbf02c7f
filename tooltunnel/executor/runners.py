"""Runners for the execution variants of a tool.

Each variant has one runner class exposing ``execute(params, env)``;
``runner_for`` is the only place that maps a variant to its runner, so a
new variant only needs a model and a runner.

Shell runners start the process in its own session (process group). On
timeout or cancellation the whole group receives SIGTERM and, after the
grace period, SIGKILL, so children that ignore SIGTERM or keep the output
pipes open cannot hold the caller past the deadline.
"""

import asyncio
import logging
import os
import re
import signal
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

import httpx

from tooltunnel.catalog.models import HttpExecution, ShellExecution, ToolDefinition
from tooltunnel.config import TunnelSettings
from tooltunnel.exceptions import ErrorKind, ExecutionError
from tooltunnel.executor.result import ExecutionResult
from tooltunnel.templating import render, render_structure

logger = logging.getLogger(__name__)

READ_CHUNK = 64 * 1024
DRAIN_AFTER_EXIT = 0.5


class OutputBuffer:
    """Byte buffer that keeps at most ``limit`` bytes and counts the rest."""

    def __init__(self, limit: int):
        self.limit = limit
        self.data = bytearray()
        self.dropped = 0

    def append(self, chunk: bytes) -> None:
        room = max(self.limit - len(self.data), 0)
        self.data += chunk[:room]
        self.dropped += max(len(chunk) - room, 0)

    def text(self) -> str:
        text = self.data.decode("utf-8", errors="replace")
        if self.dropped:
            text += f"\n[... truncated {self.dropped} bytes]"
        return text


def cap_text(text: str, limit: int) -> str:
    """Cap text at ``limit`` UTF-8 bytes with an explicit truncation marker."""
    buffer = OutputBuffer(limit)
    buffer.append(text.encode("utf-8"))
    return buffer.text()


def extract_path(document: Any, path: str) -> Any:
    """
    Extract a subtree from a JSON document.

    Path segments are separated by dots; list indices may be written as
    ``.0`` or ``[0]``. A leading ``$`` is ignored.

    Example:
        >>> extract_path({"data": {"items": [{"id": 7}]}}, "data.items[0].id")
        7

    Raises:
        KeyError: If a segment does not exist
    """
    current = document
    for segment in re.findall(r"[^.\[\]]+", path.lstrip("$")):
        if isinstance(current, list):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError):
                raise KeyError(segment) from None
        elif isinstance(current, dict):
            if segment not in current:
                raise KeyError(segment)
            current = current[segment]
        else:
            raise KeyError(segment)
    return current


class Runner(ABC):
    """Executes one tool's execution variant."""

    def __init__(self, tool: ToolDefinition, settings: TunnelSettings):
        self.tool = tool
        self.settings = settings

    @property
    def timeout(self) -> float:
        return self.tool.execution.timeout or self.settings.default_timeout

    def render(self, template: str, params: Mapping[str, Any], env: Mapping[str, str]) -> str:
        return render(template, params, env, optional=self.tool.optional_parameters)

    @abstractmethod
    async def execute(self, params: Mapping[str, Any], env: Mapping[str, str]) -> ExecutionResult:
        """Run the tool. ``duration_ms`` is filled in by the executor."""


class ShellRunner(Runner):
    """Runs a command line through ``/bin/sh`` or an argv list directly."""

    async def _spawn(
        self, params: Mapping[str, Any], env: Mapping[str, str]
    ) -> asyncio.subprocess.Process:
        spec: ShellExecution = self.tool.execution

        proc_env = dict(env)
        for key, value in spec.env.items():
            proc_env[key] = self.render(value, params, env)
        cwd = self.render(spec.working_dir, params, env) if spec.working_dir else None

        options = dict(
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=proc_env,
            start_new_session=True,
        )
        if spec.argv is not None:
            argv = [self.render(arg, params, env) for arg in spec.argv]
            logger.debug(f"Spawning argv {argv!r}", extra={"tool": self.tool.name})
            spawn = asyncio.create_subprocess_exec(*argv, **options)
        else:
            command = self.render(spec.command, params, env)
            logger.debug(f"Spawning shell command {command!r}", extra={"tool": self.tool.name})
            spawn = asyncio.create_subprocess_shell(command, **options)

        try:
            return await spawn
        except OSError as e:
            raise ExecutionError(
                f"Failed to start process: {e}", kind=ErrorKind.SPAWN_FAILED
            ) from e

    @staticmethod
    def _signal(proc: asyncio.subprocess.Process, sig: int) -> None:
        try:
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        except (ProcessLookupError, PermissionError):
            pass

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM the process group, escalating to SIGKILL after the grace period."""
        self._signal(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), self.settings.kill_grace_period)
        except TimeoutError:
            logger.warning(
                f"Process {proc.pid} ignored SIGTERM, sending SIGKILL",
                extra={"tool": self.tool.name},
            )
            self._signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
            await proc.wait()

    @staticmethod
    async def _drain(stream: asyncio.StreamReader, buffer: OutputBuffer) -> None:
        while chunk := await stream.read(READ_CHUNK):
            buffer.append(chunk)

    async def execute(self, params: Mapping[str, Any], env: Mapping[str, str]) -> ExecutionResult:
        proc = await self._spawn(params, env)

        stdout = OutputBuffer(self.settings.max_output_bytes)
        stderr = OutputBuffer(self.settings.max_output_bytes)
        waiter = asyncio.create_task(proc.wait())
        readers = {
            asyncio.create_task(self._drain(proc.stdout, stdout)),
            asyncio.create_task(self._drain(proc.stderr, stderr)),
        }

        try:
            done, _ = await asyncio.wait({waiter}, timeout=self.timeout)
            timed_out = waiter not in done
            if timed_out:
                await self._terminate(proc)
            _, pending = await asyncio.wait(readers, timeout=DRAIN_AFTER_EXIT)
            if pending:
                # A background child still holds the output pipes.
                self._signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
                await asyncio.wait(readers, timeout=DRAIN_AFTER_EXIT)
        except asyncio.CancelledError:
            await self._terminate(proc)
            raise
        finally:
            for task in (waiter, *readers):
                task.cancel()

        out_text, err_text = stdout.text(), stderr.text()
        details = dict(output=out_text + err_text, stdout=out_text, stderr=err_text)

        if timed_out:
            return ExecutionResult.failure(
                ErrorKind.TIMEOUT,
                f"Timed out after {self.timeout:g}s",
                exit_code=proc.returncode,
                **details,
            )
        if proc.returncode != 0:
            return ExecutionResult.failure(
                ErrorKind.NONZERO_EXIT,
                f"Exited with code {proc.returncode}",
                exit_code=proc.returncode,
                **details,
            )
        return ExecutionResult(success=True, exit_code=0, **details)


class HttpRunner(Runner):
    """Issues the tool's HTTP request with httpx."""

    async def execute(self, params: Mapping[str, Any], env: Mapping[str, str]) -> ExecutionResult:
        spec: HttpExecution = self.tool.execution

        url = self.render(spec.url, params, env)
        headers = {key: self.render(value, params, env) for key, value in spec.headers.items()}
        request_kwargs: dict[str, Any] = {}
        if isinstance(spec.body, str):
            request_kwargs["content"] = self.render(spec.body, params, env)
        elif spec.body is not None:
            request_kwargs["json"] = render_structure(
                spec.body, params, env, optional=self.tool.optional_parameters
            )

        logger.debug(f"HTTP {spec.method} {url}", extra={"tool": self.tool.name})
        try:
            async with asyncio.timeout(self.timeout):
                async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                    response = await client.request(
                        spec.method, url, headers=headers, **request_kwargs
                    )
        except (TimeoutError, httpx.TimeoutException):
            return ExecutionResult.failure(ErrorKind.TIMEOUT, f"Timed out after {self.timeout:g}s")
        except httpx.HTTPError as e:
            return ExecutionResult.failure(ErrorKind.HTTP_ERROR, f"HTTP request failed: {e}")

        body = cap_text(response.text, self.settings.max_output_bytes)
        if response.status_code >= 400:
            return ExecutionResult.failure(
                ErrorKind.HTTP_STATUS,
                f"HTTP {response.status_code}",
                output=body,
                status_code=response.status_code,
            )

        if spec.json_extract_path:
            try:
                value = extract_path(response.json(), spec.json_extract_path)
            except ValueError:
                return ExecutionResult.failure(
                    ErrorKind.EXTRACT_FAILED,
                    "Response body is not JSON",
                    output=body,
                    status_code=response.status_code,
                )
            except KeyError as e:
                return ExecutionResult.failure(
                    ErrorKind.EXTRACT_FAILED,
                    f"Path '{spec.json_extract_path}' not found (missing {e})",
                    output=body,
                    status_code=response.status_code,
                )
            return ExecutionResult(success=True, output=value, status_code=response.status_code)

        return ExecutionResult(success=True, output=body, status_code=response.status_code)


RUNNERS: dict[type, type[Runner]] = {
    ShellExecution: ShellRunner,
    HttpExecution: HttpRunner,
}


def runner_for(tool: ToolDefinition, settings: TunnelSettings) -> Runner:
    """Return the runner for a tool's execution variant."""
    return RUNNERS[type(tool.execution)](tool, settings)
