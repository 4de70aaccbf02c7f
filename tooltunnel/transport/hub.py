"""
Connection hub: maps agent connections to MCP sessions.

Each transport (local SSE/WebSocket endpoints, or relay streams) opens a
connection with a *sender* coroutine that delivers outbound messages to
the agent, then feeds inbound messages through ``on_message``.

Usage:
    hub = ConnectionHub(store, executor)
    hub.open("conn-1", websocket.send_json)
    response = await hub.on_message("conn-1", raw_frame)
    hub.close("conn-1")
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from tooltunnel.catalog import Catalog, CatalogStore
from tooltunnel.exceptions import ErrorKind, ProtocolError, TransportError, TunnelError
from tooltunnel.executor import ToolExecutor
from tooltunnel.mcp import McpSession, SessionState
from tooltunnel.mcp import protocol
from tooltunnel.transport.framing import decode_message

logger = logging.getLogger(__name__)

Sender = Callable[[dict[str, Any]], Awaitable[None]]


class ConnectionHub:
    """Registry of open agent connections and their sessions."""

    def __init__(self, store: CatalogStore, executor: ToolExecutor):
        self.store = store
        self.executor = executor
        self._sessions: dict[str, McpSession] = {}
        self._senders: dict[str, Sender] = {}
        self._tasks: set[asyncio.Task] = set()
        self._unsubscribe = store.subscribe(self._on_catalog_replaced)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._sessions

    def get(self, connection_id: str) -> McpSession | None:
        return self._sessions.get(connection_id)

    def open(self, connection_id: str, sender: Sender) -> McpSession:
        """
        Open a connection.

        Raises:
            TransportError: If the connection id is already open
        """
        if connection_id in self._sessions:
            raise TransportError(f"Connection '{connection_id}' is already open")
        session = McpSession(self.store, self.executor, connection_id=connection_id)
        self._sessions[connection_id] = session
        self._senders[connection_id] = sender
        logger.info("Connection opened", extra={"connection_id": connection_id})
        return session

    async def on_message(
        self, connection_id: str, message: dict[str, Any] | str | bytes
    ) -> dict[str, Any] | None:
        """
        Handle one inbound message.

        Raw frames are decoded first; invalid JSON is answered with a
        ``parse_error`` and never reaches the session.

        Returns:
            Response to send back, or None (notifications)
        """
        if isinstance(message, (str, bytes)):
            try:
                message = decode_message(message)
            except ProtocolError as e:
                return protocol.error_response(None, e)

        session = self._sessions.get(connection_id)
        if session is None:
            request_id = message.get("id") if isinstance(message, dict) else None
            if not protocol.is_valid_id(request_id):
                return None
            return protocol.error_response(
                request_id,
                TunnelError(
                    f"Connection '{connection_id}' is not open",
                    kind=ErrorKind.CONNECTION_CLOSED,
                ),
            )
        return await session.handle(message)

    async def deliver(self, connection_id: str, message: dict[str, Any] | str | bytes) -> None:
        """Handle a message and send its response (if any) to the connection."""
        response = await self.on_message(connection_id, message)
        if response is not None:
            await self.send(connection_id, response)

    async def send(self, connection_id: str, message: dict[str, Any]) -> bool:
        """
        Send a message to a connection.

        A connection whose sender fails is closed.

        Returns:
            False if the message could not be delivered
        """
        sender = self._senders.get(connection_id)
        if sender is None:
            logger.debug(
                "Dropping message for closed connection", extra={"connection_id": connection_id}
            )
            return False
        try:
            await sender(message)
        except Exception as e:
            logger.warning(f"Send failed: {e}", extra={"connection_id": connection_id})
            self.close(connection_id)
            return False
        return True

    def close(self, connection_id: str) -> None:
        """Close a connection; its in-flight calls resolve with ``connection_closed``."""
        session = self._sessions.pop(connection_id, None)
        self._senders.pop(connection_id, None)
        if session is not None:
            session.close()
            logger.info("Connection closed", extra={"connection_id": connection_id})

    def close_all(self) -> None:
        for connection_id in list(self._sessions):
            self.close(connection_id)

    def reap_idle(self, max_idle: float, connection_ids: Iterable[str]) -> list[str]:
        """
        Close connections that have been idle for at least ``max_idle`` seconds.

        Only ``connection_ids`` are considered; a connection with a tool
        call running is never idle.

        Returns:
            The ids that were closed
        """
        now = time.monotonic()
        reaped = []
        for connection_id in list(connection_ids):
            session = self._sessions.get(connection_id)
            if session is not None and session.idle_for(now) >= max_idle:
                self.close(connection_id)
                reaped.append(connection_id)
        if reaped:
            logger.info(f"Closed {len(reaped)} idle connection(s)")
        return reaped

    async def broadcast(self, message: dict[str, Any]) -> int:
        """
        Send a message to every initialized connection; returns the delivery count.

        Sends run concurrently, so a slow connection does not hold up the others.
        """
        ready = [
            connection_id
            for connection_id, session in self._sessions.items()
            if session.state is SessionState.READY
        ]
        results = await asyncio.gather(*(self.send(cid, message) for cid in ready))
        return sum(results)

    def _on_catalog_replaced(self, catalog: Catalog) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Catalog replaced outside the event loop, not notifying agents")
            return
        notification = protocol.make_notification(protocol.NOTIFY_TOOLS_CHANGED)
        task = loop.create_task(self.broadcast(notification))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def shutdown(self) -> None:
        """Close every connection and stop listening to catalog changes."""
        self._unsubscribe()
        self.close_all()
