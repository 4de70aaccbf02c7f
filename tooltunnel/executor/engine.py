"""Tool executor: turns a validated call into an ExecutionResult.

Usage:
    from tooltunnel.executor import ToolExecutor

    executor = ToolExecutor(settings)
    result = await executor.execute(catalog.lookup("echo"), {"msg": "hi"})
    print(result.output)  # "hi\\n"
"""

import asyncio
import dataclasses
import logging
import os
import time
from collections.abc import Iterable, Mapping
from typing import Any

from tooltunnel.catalog.models import ToolDefinition
from tooltunnel.config import TunnelSettings
from tooltunnel.exceptions import ErrorKind, ExecutionError, TemplateError
from tooltunnel.executor.result import ExecutionResult
from tooltunnel.executor.runners import runner_for

logger = logging.getLogger(__name__)


def apply_defaults(tool: ToolDefinition, params: Mapping[str, Any]) -> dict[str, Any]:
    """Return declared parameter values with defaults filled in."""
    values: dict[str, Any] = {}
    for spec in tool.parameters:
        value = params.get(spec.name)
        if value is None:
            value = spec.default
        if value is not None:
            values[spec.name] = value
    return values


class ToolExecutor:
    """
    Executes tools from the catalog.

    Tool failures (non-zero exit, HTTP errors, timeouts, template problems)
    are reported in the returned ``ExecutionResult``; ``execute`` only
    raises ``asyncio.CancelledError`` when the calling task is cancelled,
    after the underlying process has been terminated.
    """

    def __init__(
        self,
        settings: TunnelSettings | None = None,
        env: Mapping[str, str] | None = None,
    ):
        """
        Initialize executor.

        Args:
            settings: Timeouts and output limits (defaults from environment)
            env: Environment for ``${VAR}`` expansion and child processes.
                When None, ``os.environ`` is read on every call.
        """
        self.settings = settings or TunnelSettings()
        self._env = env

    def _environment(self) -> dict[str, str]:
        return dict(os.environ if self._env is None else self._env)

    def max_timeout(self, tools: Iterable[ToolDefinition]) -> float:
        """Longest time a call to any of ``tools`` may take, including the kill grace period."""
        default = self.settings.default_timeout
        longest = max((tool.execution.timeout or default for tool in tools), default=default)
        return longest + self.settings.kill_grace_period

    async def execute(self, tool: ToolDefinition, params: Mapping[str, Any]) -> ExecutionResult:
        """
        Execute a tool.

        Args:
            tool: Tool definition
            params: Validated arguments

        Returns:
            ExecutionResult with ``duration_ms`` set
        """
        start = time.perf_counter()
        try:
            runner = runner_for(tool, self.settings)
            result = await runner.execute(apply_defaults(tool, params), self._environment())
        except TemplateError as e:
            result = ExecutionResult.failure(ErrorKind.TEMPLATE, e.message)
        except ExecutionError as e:
            result = ExecutionResult.failure(e.kind, e.message)
        except asyncio.CancelledError:
            logger.info(f"Tool '{tool.name}' cancelled", extra={"tool": tool.name})
            raise
        except Exception as e:
            logger.exception(f"Tool '{tool.name}' failed unexpectedly", extra={"tool": tool.name})
            result = ExecutionResult.failure(ErrorKind.INTERNAL, f"Internal error: {e}")

        duration_ms = int((time.perf_counter() - start) * 1000)
        result = dataclasses.replace(result, duration_ms=duration_ms)

        extra = {"tool": tool.name, "duration_ms": duration_ms, "error_kind": result.error_kind}
        if result.success:
            logger.info(f"Tool '{tool.name}' completed in {duration_ms}ms", extra=extra)
        else:
            logger.warning(
                f"Tool '{tool.name}' failed ({result.error_kind}): {result.message}", extra=extra
            )
        return result
