"""Execution result of a single tool invocation."""

import json
from dataclasses import asdict, dataclass
from typing import Any

from tooltunnel.exceptions import ErrorKind


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one tool invocation.

    Attributes:
        success: Whether the tool completed successfully
        output: Text output, or structured data for HTTP JSON extraction
        error_kind: Error kind when ``success`` is False
        duration_ms: Wall-clock duration in milliseconds
        exit_code: Process exit code (shell tools)
        status_code: HTTP status code (http tools)
        stdout: Captured standard output (shell tools)
        stderr: Captured standard error (shell tools)
        message: Short human-readable failure description
    """

    success: bool
    output: Any = ""
    error_kind: str | None = None
    duration_ms: int = 0
    exit_code: int | None = None
    status_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    message: str | None = None

    @classmethod
    def failure(cls, kind: ErrorKind | str, message: str, **kwargs: Any) -> "ExecutionResult":
        """Build a failed result."""
        return cls(success=False, error_kind=ErrorKind(kind).value, message=message, **kwargs)

    @property
    def structured(self) -> bool:
        return not isinstance(self.output, str)

    @property
    def text(self) -> str:
        """Output rendered as text (structured output as JSON)."""
        if isinstance(self.output, str):
            return self.output
        return json.dumps(self.output, indent=2, ensure_ascii=False)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return asdict(self)
