"""JSON-RPC 2.0 message helpers for the MCP wire protocol."""

from typing import Any

from tooltunnel import __version__
from tooltunnel.exceptions import TunnelError

JSONRPC_VERSION = "2.0"

# Newest first.
SUPPORTED_PROTOCOL_VERSIONS = ("2025-06-18", "2025-03-26", "2024-11-05")
LATEST_PROTOCOL_VERSION = SUPPORTED_PROTOCOL_VERSIONS[0]

SERVER_INFO = {"name": "tooltunnel", "version": __version__}

INITIALIZE = "initialize"
PING = "ping"
TOOLS_LIST = "tools/list"
TOOLS_CALL = "tools/call"
NOTIFY_INITIALIZED = "notifications/initialized"
NOTIFY_CANCELLED = "notifications/cancelled"
NOTIFY_TOOLS_CHANGED = "notifications/tools/list_changed"

RequestId = str | int


def negotiate_version(requested: Any) -> str:
    """Echo the client's protocol version if supported, else offer the newest."""
    if requested in SUPPORTED_PROTOCOL_VERSIONS:
        return requested
    return LATEST_PROTOCOL_VERSION


def is_valid_id(value: Any) -> bool:
    return isinstance(value, (str, int)) and not isinstance(value, bool)


def success_response(request_id: RequestId | None, result: Any) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def error_response(request_id: RequestId | None, error: TunnelError) -> dict[str, Any]:
    """Convert a TunnelError into a JSON-RPC error response.

    The error kind travels in ``error.data.errorKind`` so clients can
    distinguish, for example, a validation failure from a timeout.
    """
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": {"code": error.code, "message": error.message, "data": error.to_dict()},
    }


def make_request(request_id: RequestId, method: str, params: dict | None = None) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def make_notification(method: str, params: dict | None = None) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
    if params is not None:
        message["params"] = params
    return message


def error_kind_of(message: dict[str, Any]) -> str | None:
    """Return ``error.data.errorKind`` of a response, if any."""
    error = message.get("error")
    if not isinstance(error, dict):
        return None
    data = error.get("data")
    return data.get("errorKind") if isinstance(data, dict) else None
