"""
Relay core: tenant connections, agent streams and request forwarding.

Lookups always go subdomain -> connection -> that connection's streams
and pending table, so one tenant can never see or resolve another
tenant's traffic.

Usage:
    service = RelayService(settings)
    connection, registered = await service.attach(register_envelope, websocket.send_text)
    response = await service.forward(connection, stream_id, message)
"""

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from tooltunnel.config import RelaySettings
from tooltunnel.exceptions import ErrorKind, RelayError, TunnelError, error_kind
from tooltunnel.mcp import protocol
from tooltunnel.relay.envelope import (
    CancelEnvelope,
    CloseEnvelope,
    ErrorEnvelope,
    LimitsEnvelope,
    OpenEnvelope,
    PingEnvelope,
    PongEnvelope,
    PushEnvelope,
    RegisteredEnvelope,
    RegisterEnvelope,
    RequestEnvelope,
    ResponseEnvelope,
    dump_envelope,
)
from tooltunnel.relay.pending import PendingTable
from tooltunnel.relay.registry import ConnectionRegistry, InMemoryConnectionRegistry
from tooltunnel.transport.auth import token_matches

logger = logging.getLogger(__name__)

Sender = Callable[[dict[str, Any]], Awaitable[None]]
Closer = Callable[[], Awaitable[None]]


@dataclass
class AgentStream:
    """One agent's stream on a tenant's public endpoint."""

    stream_id: str
    transport: str
    sender: Sender
    closer: Closer | None = None
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.monotonic)
    in_flight: int = 0

    def idle_for(self, now: float) -> float:
        return 0.0 if self.in_flight else now - self.last_activity

    async def deliver(self, message: dict[str, Any]) -> None:
        await self.sender(message)

    async def close(self) -> None:
        if self.closer is not None:
            await self.closer()


class TenantConnection:
    """A registered relay client and everything routed to it."""

    def __init__(
        self,
        connection_id: str,
        send_text: Callable[[str], Awaitable[None]],
        auth_token: str | None = None,
        close_socket: Callable[[], Awaitable[None]] | None = None,
    ):
        self.connection_id = connection_id
        self.subdomain = ""
        self.lease_key = ""
        self.public_url = ""
        self.auth_token = auth_token
        self.max_timeout: float | None = None
        self.created_at = time.time()
        self.last_activity = self.created_at
        self.streams: dict[str, AgentStream] = {}
        self.pending = PendingTable()
        self.closed = False
        self._send_text = send_text
        self._close_socket = close_socket
        self._send_lock = asyncio.Lock()

    def touch(self) -> None:
        self.last_activity = time.time()

    async def close_socket(self) -> None:
        if self._close_socket is None:
            return
        try:
            await self._close_socket()
        except (RuntimeError, OSError) as e:
            logger.debug(f"Socket of {self.connection_id} already closed: {e}")

    async def send(self, envelope: BaseModel) -> None:
        """
        Send an envelope to the relay client.

        Raises:
            RelayError: ``connection_closed`` if the link is gone
        """
        if self.closed:
            raise RelayError(
                f"Tunnel '{self.subdomain}' is disconnected", kind=ErrorKind.CONNECTION_CLOSED
            )
        async with self._send_lock:
            try:
                await self._send_text(dump_envelope(envelope))
            except (RuntimeError, OSError) as e:
                raise RelayError(
                    f"Tunnel '{self.subdomain}' send failed: {e}",
                    kind=ErrorKind.CONNECTION_CLOSED,
                ) from e
        self.touch()


class RelayService:
    """Routes public agent traffic to tenant connections."""

    def __init__(self, settings: RelaySettings, registry: ConnectionRegistry | None = None):
        self.settings = settings
        self.registry = registry or InMemoryConnectionRegistry(lease_ttl=settings.lease_ttl)
        self._connections: dict[str, TenantConnection] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def tenant_count(self) -> int:
        return len(self.registry)

    def public_url(self, subdomain: str) -> str:
        return f"{self.settings.public_scheme}://{subdomain}.{self.settings.public_domain}"

    def request_timeout(self, connection: TenantConnection) -> float:
        """
        Deadline for requests forwarded to a connection.

        A tunnel whose tools run longer than ``request_timeout`` gets their
        deadline instead, capped at ``max_request_timeout``.
        """
        timeout = self.settings.request_timeout
        if connection.max_timeout is not None:
            timeout = max(timeout, min(connection.max_timeout, self.settings.max_request_timeout))
        return timeout

    def spawn(self, coro: Coroutine) -> asyncio.Task:
        """Run a background task tracked by the service."""
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def attach(
        self,
        register: RegisterEnvelope,
        send_text: Callable[[str], Awaitable[None]],
        close_socket: Callable[[], Awaitable[None]] | None = None,
    ) -> tuple[TenantConnection, RegisteredEnvelope]:
        """
        Register a relay client.

        Args:
            register: The client's ``register`` envelope
            send_text: Coroutine sending a text frame on the client's socket
            close_socket: Coroutine closing the client's socket

        Returns:
            The tenant connection and the ``registered`` reply to send

        Raises:
            RelayError: Bad registration secret (401) or invalid subdomain (400)
        """
        secret = self.settings.registration_secret
        if secret is not None and not token_matches(
            f"Bearer {register.secret}" if register.secret else None, secret
        ):
            raise RelayError(
                "Invalid registration secret", kind=ErrorKind.UNAUTHORIZED, status_code=401
            )

        connection = TenantConnection(
            uuid.uuid4().hex, send_text, auth_token=register.auth_token, close_socket=close_socket
        )
        registration = await self.registry.register(
            connection, requested=register.subdomain, lease_key=register.lease_key
        )
        connection.public_url = self.public_url(registration.subdomain)
        connection.max_timeout = register.max_timeout
        self._connections[connection.connection_id] = connection

        if registration.displaced is not None:
            logger.info(
                "Reconnect displaced a stale connection",
                extra={"subdomain": registration.subdomain},
            )
            await self.detach(registration.displaced)
            await registration.displaced.close_socket()

        registered = RegisteredEnvelope(
            connection_id=connection.connection_id,
            subdomain=registration.subdomain,
            public_url=connection.public_url,
            lease_key=registration.lease_key,
            lease_ttl=self.settings.lease_ttl,
        )
        return connection, registered

    async def detach(self, connection: TenantConnection) -> None:
        """Drop a connection: pending requests fail and agent streams close."""
        if connection.closed:
            return
        connection.closed = True
        self._connections.pop(connection.connection_id, None)
        await self.registry.unregister(connection)

        failed = connection.pending.fail_all(
            TunnelError("Tunnel disconnected", kind=ErrorKind.CONNECTION_CLOSED)
        )
        streams = list(connection.streams.values())
        connection.streams.clear()
        for stream in streams:
            await self._close_agent(stream)

        logger.info(
            f"Tunnel detached ({failed} pending failed, {len(streams)} streams closed)",
            extra={"subdomain": connection.subdomain, "connection_id": connection.connection_id},
        )

    async def handle_client_envelope(
        self, connection: TenantConnection, envelope: BaseModel
    ) -> None:
        """Process one envelope received from a relay client."""
        connection.touch()

        if isinstance(envelope, ResponseEnvelope):
            if not connection.pending.resolve(envelope.request_id, envelope.message):
                logger.debug(
                    f"Late or unknown response {envelope.request_id}",
                    extra={"connection_id": connection.connection_id},
                )
        elif isinstance(envelope, PushEnvelope):
            stream = connection.streams.get(envelope.stream_id)
            if stream is not None:
                self.spawn(self._deliver(connection, stream, envelope.message))
        elif isinstance(envelope, CloseEnvelope):
            await self.close_stream(connection, envelope.stream_id, notify=False)
        elif isinstance(envelope, LimitsEnvelope):
            connection.max_timeout = envelope.max_timeout
            logger.info(
                f"Tunnel tool deadline is now {envelope.max_timeout:g}s",
                extra={"subdomain": connection.subdomain},
            )
        elif isinstance(envelope, PingEnvelope):
            await connection.send(PongEnvelope())
        elif isinstance(envelope, PongEnvelope):
            pass
        elif isinstance(envelope, ErrorEnvelope):
            error = TunnelError(envelope.message or "Client error", kind=error_kind(envelope.kind))
            request_id = envelope.request_id
            if request_id is None or not connection.pending.fail(request_id, error):
                logger.warning(
                    f"Client reported error: {envelope.message}",
                    extra={"connection_id": connection.connection_id, "error_kind": envelope.kind},
                )
        else:
            await connection.send(
                ErrorEnvelope(
                    kind=ErrorKind.INVALID_REQUEST.value,
                    message=f"Unexpected envelope '{envelope.type}' from client",
                )
            )

    def resolve_tenant(self, subdomain: str | None, authorization: str | None) -> TenantConnection:
        """
        Find the live connection for a public request.

        Raises:
            RelayError: 502 when no tunnel serves the subdomain, 401 when
                the agent's bearer token does not match
        """
        connection = self.registry.get(subdomain) if subdomain else None
        if connection is None or connection.closed:
            raise RelayError(f"No tunnel is connected for '{subdomain or ''}'")
        if not token_matches(authorization, connection.auth_token):
            raise RelayError(
                "Invalid or missing bearer token", kind=ErrorKind.UNAUTHORIZED, status_code=401
            )
        return connection

    def stream(self, connection: TenantConnection, stream_id: str) -> AgentStream:
        """
        Look up a stream of this connection.

        Raises:
            RelayError: 404 when the stream does not belong to the connection
        """
        stream = connection.streams.get(stream_id)
        if stream is None:
            raise RelayError(
                f"Unknown session '{stream_id}'", kind=ErrorKind.CONNECTION_CLOSED, status_code=404
            )
        return stream

    async def open_stream(
        self,
        connection: TenantConnection,
        transport: str,
        sender: Sender,
        closer: Closer | None = None,
    ) -> AgentStream:
        """Create an agent stream and announce it to the client."""
        stream = AgentStream(uuid.uuid4().hex, transport, sender, closer)
        connection.streams[stream.stream_id] = stream
        try:
            await connection.send(OpenEnvelope(stream_id=stream.stream_id, transport=transport))
        except RelayError:
            connection.streams.pop(stream.stream_id, None)
            raise
        logger.debug(
            f"Opened {transport} stream {stream.stream_id}",
            extra={"subdomain": connection.subdomain, "stream_id": stream.stream_id},
        )
        return stream

    async def close_stream(
        self, connection: TenantConnection, stream_id: str, notify: bool = True
    ) -> None:
        """Forget a stream; tell the client unless it asked for the close."""
        stream = connection.streams.pop(stream_id, None)
        if stream is None:
            return
        if notify and not connection.closed:
            try:
                await connection.send(CloseEnvelope(stream_id=stream_id))
            except RelayError as e:
                logger.debug(f"Close of stream {stream_id} not delivered: {e}")
        if not notify:
            await self._close_agent(stream)

    async def forward(
        self, connection: TenantConnection, stream_id: str, message: dict[str, Any]
    ) -> dict[str, Any] | None:
        """
        Forward an agent message and wait for the client's response.

        Failures after the message was accepted (deadline, disconnect) come
        back as JSON-RPC error responses; a timed-out request is also
        cancelled on the client.

        Returns:
            The JSON-RPC response, or None for notifications

        Raises:
            RelayError: The stream does not belong to this connection (404)
        """
        stream = self.stream(connection, stream_id)
        stream.in_flight += 1
        try:
            return await self._forward(connection, stream_id, message)
        finally:
            stream.in_flight -= 1
            stream.last_activity = time.monotonic()

    async def _forward(
        self, connection: TenantConnection, stream_id: str, message: dict[str, Any]
    ) -> dict[str, Any] | None:
        request_id = message.get("id") if protocol.is_valid_id(message.get("id")) else None
        pending = connection.pending.register(stream_id, message, self.request_timeout(connection))
        extra = {
            "subdomain": connection.subdomain,
            "stream_id": stream_id,
            "request_id": pending.request_id,
        }

        try:
            await connection.send(
                RequestEnvelope(request_id=pending.request_id, stream_id=stream_id, message=message)
            )
        except RelayError as e:
            connection.pending.discard(pending.request_id)
            return protocol.error_response(request_id, e) if request_id is not None else None

        try:
            response = await connection.pending.wait(pending)
        except TunnelError as e:
            if e.kind is ErrorKind.TIMEOUT:
                logger.warning(f"Request timed out: {e.message}", extra=extra)
                self.spawn(self._send_cancel(connection, pending.request_id, "timeout"))
            if request_id is None:
                return None
            return protocol.error_response(request_id, e)
        except asyncio.CancelledError:
            self.spawn(self._send_cancel(connection, pending.request_id, "agent disconnected"))
            raise
        return response

    async def _send_cancel(
        self, connection: TenantConnection, request_id: str, reason: str
    ) -> None:
        if connection.closed:
            return
        try:
            await connection.send(CancelEnvelope(request_id=request_id, reason=reason))
        except RelayError as e:
            logger.debug(f"Cancel for {request_id} not delivered: {e}")

    async def forward_to_stream(
        self, connection: TenantConnection, stream_id: str, message: dict[str, Any]
    ) -> None:
        """Forward a message and deliver the response on the agent's stream."""
        try:
            response = await self.forward(connection, stream_id, message)
        except RelayError as e:
            logger.debug(f"Dropping message for stream {stream_id}: {e}")
            return
        stream = connection.streams.get(stream_id)
        if response is not None and stream is not None:
            await self._deliver(connection, stream, response)

    async def _deliver(
        self, connection: TenantConnection, stream: AgentStream, message: dict[str, Any]
    ) -> None:
        try:
            await stream.deliver(message)
        except Exception as e:
            logger.warning(
                f"Delivery to stream {stream.stream_id} failed, closing it: {e}",
                extra={"subdomain": connection.subdomain, "stream_id": stream.stream_id},
            )
            await self.close_stream(connection, stream.stream_id)
            await self._close_agent(stream)

    @staticmethod
    async def _close_agent(stream: AgentStream) -> None:
        try:
            await stream.close()
        except Exception as e:
            logger.warning(f"Closing stream {stream.stream_id} failed: {e}")

    async def reap_idle_streams(self, max_idle: float | None = None) -> int:
        """
        Close ``/mcp`` streams no agent has used for ``max_idle`` seconds.

        Streams with a request in flight are kept. Defaults to the
        ``session_idle_timeout`` setting.

        Returns:
            How many streams were closed
        """
        max_idle = self.settings.session_idle_timeout if max_idle is None else max_idle
        now = time.monotonic()
        reaped = 0
        for connection in list(self._connections.values()):
            idle = [
                stream.stream_id
                for stream in connection.streams.values()
                if stream.transport == "http" and stream.idle_for(now) >= max_idle
            ]
            for stream_id in idle:
                await self.close_stream(connection, stream_id)
            if idle:
                logger.info(
                    f"Closed {len(idle)} idle session(s)", extra={"subdomain": connection.subdomain}
                )
            reaped += len(idle)
        return reaped

    async def shutdown(self) -> None:
        """Detach every connection and cancel background tasks."""
        for connection in list(self._connections.values()):
            await self.detach(connection)
        for task in list(self._tasks):
            task.cancel()

