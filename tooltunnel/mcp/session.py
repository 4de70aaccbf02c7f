"""
MCP protocol state machine for one agent connection.

States:
    UNINITIALIZED --initialize--> READY --close()--> CLOSED

Every ``tools/call`` runs as its own task registered in the session's
in-flight table under its JSON-RPC id, so concurrent calls on the same
connection are independent and ``notifications/cancelled`` or ``close()``
can reach them.

Example:
    session = McpSession(store, executor, connection_id="c1")
    response = await session.handle(
        {"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {}}
    )
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from tooltunnel.catalog import CatalogStore
from tooltunnel.exceptions import ErrorKind, ProtocolError, TunnelError, ValidationError
from tooltunnel.executor import ExecutionResult, ToolExecutor
from tooltunnel.mcp import protocol
from tooltunnel.mcp.validation import validate_arguments

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    CLOSED = "closed"


def call_result(result: ExecutionResult) -> dict[str, Any]:
    """
    Build the ``tools/call`` result payload.

    Tool failures are not JSON-RPC errors: they are returned with
    ``isError: true`` and the error kind in ``_meta.errorKind``.
    """
    text = result.text
    if not result.success and result.message:
        text = f"{result.message}\n{text}" if text else result.message

    meta: dict[str, Any] = {"errorKind": result.error_kind, "durationMs": result.duration_ms}
    if result.exit_code is not None:
        meta["exitCode"] = result.exit_code
    if result.status_code is not None:
        meta["statusCode"] = result.status_code

    payload: dict[str, Any] = {
        "content": [{"type": "text", "text": text}],
        "isError": not result.success,
        "_meta": meta,
    }
    if result.success and isinstance(result.output, dict):
        payload["structuredContent"] = result.output
    return payload


class McpSession:
    """Protocol state of one agent connection."""

    def __init__(self, store: CatalogStore, executor: ToolExecutor, connection_id: str = ""):
        """
        Initialize session.

        Args:
            store: Catalog store; the current catalog is read per operation
            executor: Tool executor shared by all sessions
            connection_id: Identifier used in log records
        """
        self.store = store
        self.executor = executor
        self.connection_id = connection_id
        self.state = SessionState.UNINITIALIZED
        self.protocol_version: str | None = None
        self.client_info: dict[str, Any] = {}
        self.last_activity = time.monotonic()
        self._in_flight: dict[tuple[str, Any], asyncio.Task] = {}
        self._cancel_reasons: dict[tuple[str, Any], ErrorKind] = {}
        self._handlers: dict[str, Callable[[dict, Any], Awaitable[Any]]] = {
            protocol.INITIALIZE: self._initialize,
            protocol.PING: self._ping,
            protocol.TOOLS_LIST: self._tools_list,
            protocol.TOOLS_CALL: self._tools_call,
        }

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def idle_for(self, now: float | None = None) -> float:
        """Seconds since the last message, or 0 while a call is running."""
        if self._in_flight:
            return 0.0
        return (time.monotonic() if now is None else now) - self.last_activity

    @staticmethod
    def _key(request_id: Any) -> tuple[str, Any]:
        # 1 and "1" are different JSON-RPC ids.
        return (type(request_id).__name__, request_id)

    async def handle(self, message: Any) -> dict[str, Any] | None:
        """
        Handle one decoded JSON-RPC message.

        Returns:
            The response, or None for notifications and client responses
        """
        self.last_activity = time.monotonic()
        try:
            return await self._handle(message)
        finally:
            self.last_activity = time.monotonic()

    async def _handle(self, message: Any) -> dict[str, Any] | None:
        if not isinstance(message, dict):
            return protocol.error_response(None, ProtocolError("Message must be a JSON object"))

        request_id = message.get("id")
        if not protocol.is_valid_id(request_id):
            request_id = None

        if message.get("jsonrpc") != protocol.JSONRPC_VERSION:
            return protocol.error_response(request_id, ProtocolError("jsonrpc must be '2.0'"))

        method = message.get("method")
        if method is None:
            logger.debug(
                f"Ignoring client response id={request_id!r}",
                extra={"connection_id": self.connection_id},
            )
            return None
        if not isinstance(method, str):
            return protocol.error_response(request_id, ProtocolError("method must be a string"))

        params = message.get("params")
        if "id" not in message:
            await self._notification(method, params)
            return None
        if request_id is None:
            return protocol.error_response(None, ProtocolError("id must be a string or integer"))

        try:
            if params is not None and not isinstance(params, dict):
                raise ValidationError("params must be an object")
            result = await self._dispatch(method, params or {}, request_id)
        except TunnelError as e:
            logger.info(
                f"{method} id={request_id!r} failed: {e}",
                extra={
                    "connection_id": self.connection_id,
                    "request_id": request_id,
                    "error_kind": e.kind.value,
                },
            )
            return protocol.error_response(request_id, e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(
                f"Unhandled error in {method}", extra={"connection_id": self.connection_id}
            )
            return protocol.error_response(request_id, TunnelError(f"Internal error: {e}"))
        return protocol.success_response(request_id, result)

    async def _dispatch(self, method: str, params: dict, request_id: Any) -> Any:
        if self.state is SessionState.CLOSED:
            raise TunnelError("Session is closed", kind=ErrorKind.CONNECTION_CLOSED)

        handler = self._handlers.get(method)
        if handler is None:
            raise ProtocolError(f"Method not found: {method}", kind=ErrorKind.UNKNOWN_METHOD)

        if method == protocol.INITIALIZE and self.state is SessionState.READY:
            raise ProtocolError("Session is already initialized", kind=ErrorKind.PROTOCOL_ORDER)
        if method not in (protocol.INITIALIZE, protocol.PING) and (
            self.state is SessionState.UNINITIALIZED
        ):
            raise ProtocolError(
                f"'{method}' received before initialize", kind=ErrorKind.PROTOCOL_ORDER
            )

        return await handler(params, request_id)

    async def _notification(self, method: str, params: Any) -> None:
        params = params if isinstance(params, dict) else {}
        if method == protocol.NOTIFY_INITIALIZED:
            logger.debug("Client initialized", extra={"connection_id": self.connection_id})
        elif method == protocol.NOTIFY_CANCELLED:
            request_id = params.get("requestId")
            if self.cancel(request_id):
                logger.info(
                    f"Call {request_id!r} cancelled by client: {params.get('reason', '')}",
                    extra={"connection_id": self.connection_id, "request_id": request_id},
                )
        else:
            logger.debug(
                f"Ignoring notification {method}", extra={"connection_id": self.connection_id}
            )

    async def _initialize(self, params: dict, request_id: Any) -> dict[str, Any]:
        self.protocol_version = protocol.negotiate_version(params.get("protocolVersion"))
        client_info = params.get("clientInfo")
        self.client_info = client_info if isinstance(client_info, dict) else {}
        self.state = SessionState.READY
        logger.info(
            f"Session initialized (protocol {self.protocol_version}, "
            f"client {self.client_info.get('name', 'unknown')})",
            extra={"connection_id": self.connection_id},
        )
        return {
            "protocolVersion": self.protocol_version,
            "capabilities": {"tools": {"listChanged": True}},
            "serverInfo": dict(protocol.SERVER_INFO),
        }

    async def _ping(self, params: dict, request_id: Any) -> dict[str, Any]:
        return {}

    async def _tools_list(self, params: dict, request_id: Any) -> dict[str, Any]:
        return {"tools": self.store.current.list()}

    async def _tools_call(self, params: dict, request_id: Any) -> dict[str, Any]:
        key = self._key(request_id)
        if key in self._in_flight:
            raise ProtocolError(f"Request id {request_id!r} is already in flight")

        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise ValidationError("tools/call requires a tool 'name'", field="name")
        arguments = params.get("arguments")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise ValidationError("'arguments' must be an object", field="arguments")

        tool = self.store.current.lookup(name)
        values = validate_arguments(tool, arguments)

        task = asyncio.create_task(self.executor.execute(tool, values))
        self._in_flight[key] = task
        try:
            result = await task
        except asyncio.CancelledError:
            reason = self._cancel_reasons.get(key, ErrorKind.CANCELLED)
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            raise TunnelError(
                f"Call to '{name}' was cancelled", kind=reason, details={"tool": name}
            ) from None
        finally:
            self._in_flight.pop(key, None)
            self._cancel_reasons.pop(key, None)
        return call_result(result)

    def cancel(self, request_id: Any, reason: ErrorKind = ErrorKind.CANCELLED) -> bool:
        """Cancel an in-flight ``tools/call``. Returns False if none is running."""
        if not protocol.is_valid_id(request_id):
            return False
        key = self._key(request_id)
        task = self._in_flight.get(key)
        if task is None or task.done():
            return False
        self._cancel_reasons[key] = reason
        task.cancel()
        return True

    def close(self) -> None:
        """Close the session; in-flight calls resolve with ``connection_closed``."""
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        for key, task in list(self._in_flight.items()):
            if not task.done():
                self._cancel_reasons[key] = ErrorKind.CONNECTION_CLOSED
                task.cancel()
        logger.info("Session closed", extra={"connection_id": self.connection_id})
