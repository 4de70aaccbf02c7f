"""
Relay client: keeps the tunnel's single WebSocket link to the relay.

The client registers with the relay, receives agent streams and messages
as envelopes, hands them to the ConnectionHub and sends the responses
back. When the link drops it reconnects with exponential backoff,
presenting its lease key so the public endpoint stays the same; if the
relay hands out a different subdomain anyway, ``EndpointChangedError`` is
raised because every agent configured with the old URL is now broken.

Usage:
    client = RelayClient(hub, settings, auth_token=token)
    endpoint = await client.connect()
    print(endpoint.public_url)
    await client.run()
"""

import asyncio
import functools
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

import aiohttp
from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from tooltunnel import __version__
from tooltunnel.catalog import Catalog
from tooltunnel.config import TunnelSettings
from tooltunnel.exceptions import (
    EndpointChangedError,
    ErrorKind,
    ProtocolError,
    RelayError,
    TransportError,
    error_kind,
)
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
    parse_envelope,
)
from tooltunnel.transport.hub import ConnectionHub

logger = logging.getLogger(__name__)

REGISTER_TIMEOUT = 10.0
# Seconds added to the longest tool deadline for the response to reach the relay.
RESPONSE_MARGIN = 5.0
# Missed heartbeats before the link is considered dead.
HEARTBEAT_MISSES = 3

_CLOSED_TYPES = (
    aiohttp.WSMsgType.CLOSE,
    aiohttp.WSMsgType.CLOSING,
    aiohttp.WSMsgType.CLOSED,
    aiohttp.WSMsgType.ERROR,
)


class RelaySocket(Protocol):
    """The subset of ``aiohttp.ClientWebSocketResponse`` the client uses."""

    closed: bool

    async def send_str(self, data: str) -> None: ...

    async def receive(self) -> aiohttp.WSMessage: ...

    async def close(self) -> Any: ...


@dataclass(frozen=True)
class RelayEndpoint:
    """Public endpoint assigned by the relay."""

    connection_id: str
    subdomain: str
    public_url: str
    lease_key: str
    lease_ttl: float


class RelayClient:
    """Maintains the relay link and dispatches relay envelopes to the hub."""

    def __init__(
        self,
        hub: ConnectionHub,
        settings: TunnelSettings,
        *,
        auth_token: str | None = None,
        connector: Callable[[str], Awaitable[RelaySocket]] | None = None,
        on_registered: Callable[[RelayEndpoint], None] | None = None,
        backoff_multiplier: float = 1.0,
    ):
        """
        Initialize relay client.

        Args:
            hub: Connection hub serving the agent streams
            settings: Relay URL, secret, heartbeat and reconnect settings
            auth_token: Bearer token the relay must demand from agents
            connector: Opens the WebSocket (defaults to aiohttp)
            on_registered: Called with the endpoint after every registration
            backoff_multiplier: Scale of the exponential reconnect backoff
        """
        self.hub = hub
        self.settings = settings
        self.auth_token = auth_token
        self.endpoint: RelayEndpoint | None = None
        self._connector = connector or self._aiohttp_connect
        self._on_registered = on_registered
        self._backoff_multiplier = backoff_multiplier
        self._session: aiohttp.ClientSession | None = None
        self._ws: RelaySocket | None = None
        self._send_lock = asyncio.Lock()
        self._requests: dict[str, asyncio.Task] = {}
        self._last_seen = time.monotonic()
        self._closing = False
        self._tasks: set[asyncio.Task] = set()
        self._unsubscribe = hub.store.subscribe(self._on_catalog_replaced)

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    def max_timeout(self) -> float:
        """Deadline the relay should allow for a forwarded request."""
        return self.hub.executor.max_timeout(self.hub.store.current) + RESPONSE_MARGIN

    def _on_catalog_replaced(self, catalog: Catalog) -> None:
        if not self.connected:
            return
        limits = LimitsEnvelope(max_timeout=self.max_timeout())
        task = asyncio.get_running_loop().create_task(self._send_limits(limits))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send_limits(self, limits: LimitsEnvelope) -> None:
        try:
            await self._send(limits)
        except TransportError as e:
            logger.debug(f"Limits not sent: {e.message}")

    async def _aiohttp_connect(self, url: str) -> RelaySocket:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        try:
            return await self._session.ws_connect(url, autoping=True)
        except (aiohttp.ClientError, OSError) as e:
            raise TransportError(f"Cannot connect to relay {url}: {e}") from e

    def _retrying(self, stop) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop,
            wait=wait_exponential(
                multiplier=self._backoff_multiplier, max=self.settings.reconnect_max_wait
            ),
            retry=retry_if_exception_type(TransportError),
            before_sleep=lambda state: logger.warning(
                f"Relay connection attempt {state.attempt_number} failed: "
                f"{state.outcome.exception()}"
            ),
            reraise=True,
        )

    async def connect(self) -> RelayEndpoint:
        """
        Connect and register, retrying up to ``connect_attempts`` times.

        Returns:
            The assigned public endpoint

        Raises:
            TransportError: The relay stayed unreachable
            RelayError: The relay rejected the registration
        """
        async for attempt in self._retrying(stop_after_attempt(self.settings.connect_attempts)):
            with attempt:
                return await self._register()
        raise TransportError("Relay connection failed")

    async def _reconnect(self) -> RelayEndpoint:
        async for attempt in self._retrying(stop_after_delay(self.settings.reconnect_deadline)):
            with attempt:
                return await self._register()
        raise TransportError("Relay reconnect failed")

    async def _register(self) -> RelayEndpoint:
        ws = await self._connector(self.settings.relay_url)
        self._ws = ws
        previous = self.endpoint

        await self._send(
            RegisterEnvelope(
                subdomain=previous.subdomain if previous else self.settings.subdomain,
                lease_key=previous.lease_key if previous else None,
                secret=self.settings.relay_secret,
                auth_token=self.auth_token,
                client=f"tooltunnel/{__version__}",
                max_timeout=self.max_timeout(),
            )
        )
        try:
            message = await asyncio.wait_for(ws.receive(), REGISTER_TIMEOUT)
        except TimeoutError as e:
            await ws.close()
            raise TransportError("Relay did not answer the registration") from e

        if message.type not in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
            raise TransportError("Relay closed the link during registration")
        try:
            envelope = parse_envelope(message.data)
        except ProtocolError as e:
            await ws.close()
            raise TransportError(f"Invalid registration reply: {e.message}") from e

        if isinstance(envelope, ErrorEnvelope):
            await ws.close()
            kind = error_kind(envelope.kind)
            raise RelayError(
                f"Relay rejected registration: {envelope.message}",
                kind=kind,
                status_code=401 if kind is ErrorKind.UNAUTHORIZED else 502,
            )
        if not isinstance(envelope, RegisteredEnvelope):
            await ws.close()
            raise TransportError(f"Unexpected registration reply '{envelope.type}'")

        endpoint = RelayEndpoint(
            connection_id=envelope.connection_id,
            subdomain=envelope.subdomain,
            public_url=envelope.public_url,
            lease_key=envelope.lease_key,
            lease_ttl=envelope.lease_ttl,
        )
        self.endpoint = endpoint
        self._last_seen = time.monotonic()
        if previous is not None and previous.subdomain != endpoint.subdomain:
            await ws.close()
            raise EndpointChangedError(previous.subdomain, endpoint.subdomain)

        logger.info(
            f"Registered with relay as {endpoint.public_url}",
            extra={"subdomain": endpoint.subdomain, "connection_id": endpoint.connection_id},
        )
        if self._on_registered is not None:
            self._on_registered(endpoint)
        return endpoint

    async def run(self) -> None:
        """
        Serve until ``close()`` is called.

        Raises:
            EndpointChangedError: A reconnect yielded a different subdomain
            TransportError: Reconnecting failed for ``reconnect_deadline``
        """
        if not self.connected:
            await self.connect()
        while not self._closing:
            await self._serve()
            if self._closing:
                break
            logger.warning("Relay link dropped, reconnecting")
            await self._reconnect()

    async def _serve(self) -> None:
        ws = self._ws
        heartbeat = asyncio.create_task(self._heartbeat(ws))
        try:
            while True:
                message = await ws.receive()
                if message.type in _CLOSED_TYPES:
                    break
                self._last_seen = time.monotonic()
                if message.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    await self._dispatch(message.data)
        finally:
            heartbeat.cancel()
            self._drop()
            if not ws.closed:
                await ws.close()

    async def _heartbeat(self, ws: RelaySocket) -> None:
        interval = self.settings.heartbeat_interval
        while True:
            await asyncio.sleep(interval)
            if time.monotonic() - self._last_seen > interval * HEARTBEAT_MISSES:
                logger.warning("Relay heartbeat lost, closing link")
                await ws.close()
                return
            try:
                await self._send(PingEnvelope())
            except TransportError:
                return

    def _drop(self) -> None:
        """Cancel in-flight requests and close every agent session."""
        for task in list(self._requests.values()):
            task.cancel()
        self._requests.clear()
        self.hub.close_all()

    async def _dispatch(self, raw: str | bytes) -> None:
        try:
            envelope = parse_envelope(raw)
        except ProtocolError as e:
            logger.warning(f"Ignoring invalid envelope from relay: {e.message}")
            return

        if isinstance(envelope, RequestEnvelope):
            task = asyncio.create_task(self._handle_request(envelope))
            self._requests[envelope.request_id] = task
            task.add_done_callback(functools.partial(self._request_done, envelope.request_id))
        elif isinstance(envelope, OpenEnvelope):
            if envelope.stream_id in self.hub:
                logger.warning(f"Stream {envelope.stream_id} is already open")
                return
            self.hub.open(envelope.stream_id, functools.partial(self._push, envelope.stream_id))
        elif isinstance(envelope, CloseEnvelope):
            self.hub.close(envelope.stream_id)
        elif isinstance(envelope, CancelEnvelope):
            task = self._requests.get(envelope.request_id)
            if task is not None:
                logger.info(
                    f"Relay cancelled request ({envelope.reason})",
                    extra={"request_id": envelope.request_id},
                )
                task.cancel()
        elif isinstance(envelope, PingEnvelope):
            try:
                await self._send(PongEnvelope())
            except TransportError as e:
                logger.debug(f"Pong not sent: {e.message}")
        elif isinstance(envelope, PongEnvelope):
            pass
        elif isinstance(envelope, ErrorEnvelope):
            logger.warning(
                f"Relay reported error: {envelope.message}", extra={"error_kind": envelope.kind}
            )
        else:
            logger.debug(f"Ignoring '{envelope.type}' envelope from relay")

    def _request_done(self, request_id: str, task: asyncio.Task) -> None:
        if self._requests.get(request_id) is task:
            del self._requests[request_id]

    async def _handle_request(self, envelope: RequestEnvelope) -> None:
        response = await self.hub.on_message(envelope.stream_id, envelope.message)
        try:
            await self._send(ResponseEnvelope(request_id=envelope.request_id, message=response))
        except TransportError as e:
            logger.info(
                f"Response not delivered: {e.message}", extra={"request_id": envelope.request_id}
            )

    async def _push(self, stream_id: str, message: dict[str, Any]) -> None:
        await self._send(PushEnvelope(stream_id=stream_id, message=message))

    async def _send(self, envelope: BaseModel) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise TransportError("Relay link is not connected")
        async with self._send_lock:
            try:
                await ws.send_str(dump_envelope(envelope))
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
                raise TransportError(f"Relay send failed: {e}") from e

    async def close(self) -> None:
        """Close the link and stop ``run()``."""
        self._closing = True
        self._unsubscribe()
        for task in list(self._tasks):
            task.cancel()
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._session is not None and not self._session.closed:
            await self._session.close()
