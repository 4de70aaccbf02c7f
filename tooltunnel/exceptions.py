"""
Unified exception hierarchy for tooltunnel.

Every error that can reach an AI agent carries a distinguishable ``kind`` so
the caller can decide whether to retry, rephrase its arguments, or give up.

Usage:
    from tooltunnel.exceptions import (
        ConfigError,
        ErrorKind,
        ProtocolError,
        ValidationError,
    )

    try:
        catalog = load_catalog(path)
    except ConfigError as e:
        logger.error(f"Refusing to start: {e}")
        return 2

Propagation policy:
    Only ``ConfigError`` is fatal (it prevents startup). Everything else is
    reported per message or per call and the serving loops keep running.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Error kinds surfaced through MCP and the relay."""

    PARSE_ERROR = "parse_error"
    INVALID_REQUEST = "invalid_request"
    PROTOCOL_ORDER = "protocol_order"
    UNKNOWN_METHOD = "unknown_method"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    TEMPLATE = "template"
    TIMEOUT = "timeout"
    NONZERO_EXIT = "nonzero_exit"
    SPAWN_FAILED = "spawn_failed"
    HTTP_STATUS = "http_status"
    HTTP_ERROR = "http_error"
    EXTRACT_FAILED = "extract_failed"
    CONNECTION_CLOSED = "connection_closed"
    CANCELLED = "cancelled"
    UNAVAILABLE = "unavailable"
    UNAUTHORIZED = "unauthorized"
    ENDPOINT_CHANGED = "endpoint_changed"
    CONFIG = "config"
    TRANSPORT = "transport"
    INTERNAL = "internal"


# JSON-RPC error codes per kind. Kinds without an entry map to INTERNAL_ERROR.
JSONRPC_CODES: dict[ErrorKind, int] = {
    ErrorKind.PARSE_ERROR: -32700,
    ErrorKind.INVALID_REQUEST: -32600,
    ErrorKind.UNKNOWN_METHOD: -32601,
    ErrorKind.VALIDATION: -32602,
    ErrorKind.NOT_FOUND: -32602,
    ErrorKind.TEMPLATE: -32602,
    ErrorKind.INTERNAL: -32603,
    ErrorKind.CONNECTION_CLOSED: -32000,
    ErrorKind.TIMEOUT: -32001,
    ErrorKind.PROTOCOL_ORDER: -32002,
    ErrorKind.UNAVAILABLE: -32003,
    ErrorKind.UNAUTHORIZED: -32004,
    ErrorKind.CANCELLED: -32800,
}

INTERNAL_ERROR = -32603


def jsonrpc_code(kind: ErrorKind | str) -> int:
    """Return the JSON-RPC error code for an error kind."""
    try:
        return JSONRPC_CODES.get(ErrorKind(kind), INTERNAL_ERROR)
    except ValueError:
        return INTERNAL_ERROR


def error_kind(value: ErrorKind | str) -> ErrorKind:
    """Parse an error kind received from a peer; unknown kinds become INTERNAL."""
    try:
        return ErrorKind(value)
    except ValueError:
        return ErrorKind.INTERNAL


class TunnelError(Exception):
    """Base exception for all tooltunnel errors.

    Attributes:
        message: Human-readable error description.
        kind: Machine-readable error kind (see ``ErrorKind``).
        details: Optional dict with additional error context.
    """

    default_kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind | str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = ErrorKind(kind) if kind is not None else self.default_kind
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.kind.value}] {self.message}"

    @property
    def code(self) -> int:
        """JSON-RPC error code for this error."""
        return jsonrpc_code(self.kind)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the ``data`` member of a JSON-RPC error."""
        data: dict[str, Any] = {"errorKind": self.kind.value}
        if self.details:
            data["details"] = self.details
        return data


class ConfigError(TunnelError):
    """Bad catalog or settings. Fatal: the process does not start serving."""

    default_kind = ErrorKind.CONFIG


class ProtocolError(TunnelError):
    """Malformed or out-of-order MCP message.

    Recoverable: reported to the caller, the connection stays open.

    Example:
        raise ProtocolError(
            "initialize must be the first request",
            kind=ErrorKind.PROTOCOL_ORDER,
        )
    """

    default_kind = ErrorKind.INVALID_REQUEST


class ValidationError(TunnelError):
    """Bad tool arguments, reported per call.

    Attributes:
        field: Name of the argument that failed validation, if any.
    """

    default_kind = ErrorKind.VALIDATION

    def __init__(self, message: str, *, field: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.field = field
        if field is not None:
            self.details.setdefault("field", field)


class NotFoundError(ValidationError):
    """Requested tool does not exist in the catalog."""

    default_kind = ErrorKind.NOT_FOUND


class TemplateError(ValidationError):
    """A template could not be rendered (missing parameter or env var)."""

    default_kind = ErrorKind.TEMPLATE


class ExecutionError(TunnelError):
    """Subprocess or HTTP failure inside a runner.

    Runners raise this internally; the executor converts it into a failed
    ``ExecutionResult`` so it never escapes a tool call.
    """

    default_kind = ErrorKind.INTERNAL


class TransportError(TunnelError):
    """Connection-level failure (relay link or agent stream dropped)."""

    default_kind = ErrorKind.TRANSPORT


class RelayError(TunnelError):
    """Relay routing failure, reported to external callers as unavailable.

    Attributes:
        status_code: HTTP status returned to the public caller.
    """

    default_kind = ErrorKind.UNAVAILABLE

    def __init__(self, message: str, *, status_code: int = 502, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.status_code = status_code


class EndpointChangedError(RelayError):
    """The relay lease expired and a reconnect was given a new endpoint."""

    default_kind = ErrorKind.ENDPOINT_CHANGED

    def __init__(self, previous: str, current: str) -> None:
        super().__init__(
            f"Public endpoint changed from '{previous}' to '{current}' after reconnect",
            details={"previous": previous, "current": current},
        )
        self.previous = previous
        self.current = current
