"""Tests for the relay client link."""

import asyncio
import sys

import aiohttp
import pytest
import pytest_asyncio

from tooltunnel.catalog import parse_catalog
from tooltunnel.exceptions import EndpointChangedError, ErrorKind, RelayError, TransportError
from tooltunnel.mcp import protocol
from tooltunnel.relay import RelayClient, dump_envelope, parse_envelope
from tooltunnel.relay.envelope import (
    CancelEnvelope,
    CloseEnvelope,
    ErrorEnvelope,
    LimitsEnvelope,
    OpenEnvelope,
    PingEnvelope,
    PongEnvelope,
    RegisteredEnvelope,
    RegisterEnvelope,
    RequestEnvelope,
    ResponseEnvelope,
)


class FakeSocket:
    """In-memory stand-in for ``aiohttp.ClientWebSocketResponse``."""

    def __init__(self, relay: "FakeRelay"):
        self.relay = relay
        self.sent: list = []
        self.closed = False
        self.inbox: asyncio.Queue = asyncio.Queue()

    async def send_str(self, data: str) -> None:
        if self.closed:
            raise RuntimeError("socket closed")
        envelope = parse_envelope(data)
        self.sent.append(envelope)
        if isinstance(envelope, RegisterEnvelope):
            self.feed(self.relay.reply(envelope))

    def feed(self, envelope) -> None:
        message = aiohttp.WSMessage(aiohttp.WSMsgType.TEXT, dump_envelope(envelope), None)
        self.inbox.put_nowait(message)

    def drop(self) -> None:
        self.inbox.put_nowait(aiohttp.WSMessage(aiohttp.WSMsgType.CLOSE, 1006, None))

    async def receive(self) -> aiohttp.WSMessage:
        return await self.inbox.get()

    async def close(self) -> bool:
        if not self.closed:
            self.closed = True
            self.inbox.put_nowait(aiohttp.WSMessage(aiohttp.WSMsgType.CLOSED, None, None))
        return True

    def of_type(self, envelope_type) -> list:
        return [e for e in self.sent if isinstance(e, envelope_type)]


class FakeRelay:
    """Hands out sockets and answers registrations."""

    def __init__(self, subdomains=("demo",), failures: int = 0, reject: str | None = None):
        self.subdomains = list(subdomains)
        self.failures = failures
        self.reject = reject
        self.sockets: list[FakeSocket] = []
        self.registers: list[RegisterEnvelope] = []

    async def connect(self, url: str) -> FakeSocket:
        if self.failures:
            self.failures -= 1
            raise TransportError(f"Cannot connect to relay {url}")
        socket = FakeSocket(self)
        self.sockets.append(socket)
        return socket

    def reply(self, register: RegisterEnvelope):
        self.registers.append(register)
        if self.reject:
            return ErrorEnvelope(kind="unauthorized", message=self.reject)
        subdomain = self.subdomains[min(len(self.registers), len(self.subdomains)) - 1]
        return RegisteredEnvelope(
            connection_id=f"conn-{len(self.registers)}",
            subdomain=subdomain,
            public_url=f"https://{subdomain}.relay.test",
            lease_key="lease-1",
            lease_ttl=60.0,
        )

    @property
    def socket(self) -> FakeSocket:
        return self.sockets[-1]


async def eventually(predicate, timeout: float = 3.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


def make_client(hub, settings, relay, **kwargs) -> RelayClient:
    return RelayClient(hub, settings, connector=relay.connect, backoff_multiplier=0.01, **kwargs)


class TestConnect:
    """Test registration."""

    @pytest.mark.asyncio
    async def test_register(self, hub, tunnel_settings):
        relay = FakeRelay()
        endpoints = []
        settings = tunnel_settings.model_copy(update={"relay_secret": "s3", "subdomain": "demo"})
        client = make_client(
            hub, settings, relay, auth_token="agent-token", on_registered=endpoints.append
        )

        endpoint = await client.connect()

        assert endpoint.subdomain == "demo"
        assert endpoint.public_url == "https://demo.relay.test"
        assert endpoint.lease_key == "lease-1"
        assert endpoints == [endpoint]
        assert client.connected

        register = relay.registers[0]
        assert register.subdomain == "demo"
        assert register.secret == "s3"
        assert register.auth_token == "agent-token"
        assert register.lease_key is None
        assert register.max_timeout == 15.5
        await client.close()
        assert not client.connected

    @pytest.mark.asyncio
    async def test_rejected(self, hub, tunnel_settings):
        relay = FakeRelay(reject="bad secret")
        client = make_client(hub, tunnel_settings, relay)

        with pytest.raises(RelayError) as exc_info:
            await client.connect()

        assert exc_info.value.kind is ErrorKind.UNAUTHORIZED
        assert exc_info.value.status_code == 401
        assert len(relay.sockets) == 1
        assert relay.socket.closed

    @pytest.mark.asyncio
    async def test_retries_unreachable_relay(self, hub, tunnel_settings):
        relay = FakeRelay(failures=1)
        client = make_client(hub, tunnel_settings, relay)

        endpoint = await client.connect()
        assert endpoint.subdomain == "demo"
        await client.close()

    @pytest.mark.asyncio
    async def test_gives_up(self, hub, tunnel_settings):
        relay = FakeRelay(failures=5)
        client = make_client(hub, tunnel_settings, relay)

        with pytest.raises(TransportError):
            await client.connect()
        assert relay.failures == 3


class TestDispatch:
    """Test envelopes received from the relay."""

    @pytest_asyncio.fixture
    async def running(self, hub, tunnel_settings):
        relay = FakeRelay()
        client = make_client(hub, tunnel_settings, relay)
        await client.connect()
        task = asyncio.create_task(client.run())
        yield relay, client
        await client.close()
        await asyncio.wait_for(task, 3)

    async def request(self, relay, request_id, message) -> ResponseEnvelope:
        relay.socket.feed(RequestEnvelope(request_id=request_id, stream_id="s1", message=message))

        def answered():
            return any(r.request_id == request_id for r in relay.socket.of_type(ResponseEnvelope))

        await eventually(answered)
        return next(r for r in relay.socket.of_type(ResponseEnvelope) if r.request_id == request_id)

    async def open_ready_stream(self, relay, hub) -> None:
        relay.socket.feed(OpenEnvelope(stream_id="s1", transport="sse"))
        await self.request(
            relay, "r-init", protocol.make_request(1, protocol.INITIALIZE, {"protocolVersion": "x"})
        )
        initialized = protocol.make_notification(protocol.NOTIFY_INITIALIZED)
        await self.request(relay, "r-ready", initialized)
        assert "s1" in hub

    @pytest.mark.asyncio
    async def test_request_response(self, running, hub):
        relay, _ = running
        relay.socket.feed(OpenEnvelope(stream_id="s1", transport="http"))

        response = await self.request(
            relay, "r1", protocol.make_request(1, protocol.INITIALIZE, {"protocolVersion": "x"})
        )
        assert response.message["result"]["serverInfo"]["name"] == "tooltunnel"

        notified = await self.request(
            relay, "r2", protocol.make_notification(protocol.NOTIFY_INITIALIZED)
        )
        assert notified.message is None

    @pytest.mark.asyncio
    async def test_tool_call(self, running, hub):
        relay, _ = running
        await self.open_ready_stream(relay, hub)

        response = await self.request(
            relay,
            "r-call",
            protocol.make_request(2, "tools/call", {"name": "echo", "arguments": {"msg": "hi"}}),
        )
        assert response.message["result"]["content"][0]["text"] == "hi\n"

    @pytest.mark.asyncio
    async def test_unopened_stream(self, running):
        relay, _ = running
        response = await self.request(relay, "r1", protocol.make_request(1, protocol.PING))
        assert protocol.error_kind_of(response.message) == "connection_closed"

    @pytest.mark.asyncio
    async def test_close_stream(self, running, hub):
        relay, _ = running
        relay.socket.feed(OpenEnvelope(stream_id="s1"))
        await eventually(lambda: "s1" in hub)

        relay.socket.feed(CloseEnvelope(stream_id="s1"))
        await eventually(lambda: "s1" not in hub)

    @pytest.mark.asyncio
    async def test_catalog_reload_sends_limits(self, running, store):
        relay, _ = running
        long_tool = {"name": "long", "shell": {"command": "true", "timeout": 600}}
        store.replace(parse_catalog({"tools": [long_tool]}))

        await eventually(lambda: relay.socket.of_type(LimitsEnvelope))
        assert relay.socket.of_type(LimitsEnvelope)[0].max_timeout == 605.5

    @pytest.mark.asyncio
    async def test_ping(self, running):
        relay, _ = running
        relay.socket.feed(PingEnvelope())
        await eventually(lambda: relay.socket.of_type(PongEnvelope))

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == "win32", reason="uses a POSIX sleep command")
    async def test_cancel(self, running, hub):
        relay, _ = running
        await self.open_ready_stream(relay, hub)
        session = hub.get("s1")

        relay.socket.feed(
            RequestEnvelope(
                request_id="r-sleep",
                stream_id="s1",
                message=protocol.make_request(
                    3, "tools/call", {"name": "sleep", "arguments": {"seconds": 5}}
                ),
            )
        )
        await eventually(lambda: session.in_flight == 1)

        relay.socket.feed(CancelEnvelope(request_id="r-sleep", reason="timeout"))
        await eventually(lambda: session.in_flight == 0)
        await asyncio.sleep(0.05)
        assert not [r for r in relay.socket.of_type(ResponseEnvelope) if r.request_id == "r-sleep"]


class TestReconnect:
    """Test link loss and lease reconnects."""

    @pytest.mark.asyncio
    async def test_reconnect_keeps_endpoint(self, hub, tunnel_settings):
        relay = FakeRelay(subdomains=("demo", "demo"))
        endpoints = []
        client = make_client(hub, tunnel_settings, relay, on_registered=endpoints.append)
        await client.connect()
        task = asyncio.create_task(client.run())

        relay.socket.feed(OpenEnvelope(stream_id="s1"))
        await eventually(lambda: "s1" in hub)

        relay.socket.drop()
        await eventually(lambda: len(endpoints) == 2)

        again = relay.registers[1]
        assert again.subdomain == "demo"
        assert again.lease_key == "lease-1"
        assert relay.sockets[0].closed
        assert "s1" not in hub
        assert client.connected

        await client.close()
        await asyncio.wait_for(task, 3)

    @pytest.mark.asyncio
    async def test_endpoint_change_is_fatal(self, hub, tunnel_settings):
        relay = FakeRelay(subdomains=("demo", "other"))
        client = make_client(hub, tunnel_settings, relay)
        await client.connect()
        task = asyncio.create_task(client.run())

        relay.socket.drop()

        with pytest.raises(EndpointChangedError) as exc_info:
            await asyncio.wait_for(task, 3)
        assert exc_info.value.previous == "demo"
        assert exc_info.value.current == "other"
        assert exc_info.value.kind is ErrorKind.ENDPOINT_CHANGED
        assert relay.socket.closed
