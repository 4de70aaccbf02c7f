"""
Tool execution engine.

Usage:
    from tooltunnel.executor import ToolExecutor

    result = await ToolExecutor(settings).execute(tool, {"msg": "hi"})
"""

from tooltunnel.executor.engine import ToolExecutor, apply_defaults
from tooltunnel.executor.result import ExecutionResult
from tooltunnel.executor.runners import HttpRunner, Runner, ShellRunner, extract_path, runner_for

__all__ = [
    "ExecutionResult",
    "HttpRunner",
    "Runner",
    "ShellRunner",
    "ToolExecutor",
    "apply_defaults",
    "extract_path",
    "runner_for",
]
