"""Tests for the relay server app (FastAPI TestClient)."""

from concurrent.futures import ThreadPoolExecutor

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from tooltunnel.mcp import protocol
from tooltunnel.relay import RelayService, create_relay_app, dump_envelope, parse_envelope
from tooltunnel.relay.envelope import (
    ErrorEnvelope,
    OpenEnvelope,
    PingEnvelope,
    RegisteredEnvelope,
    RegisterEnvelope,
    RequestEnvelope,
    ResponseEnvelope,
)
from tooltunnel.relay.server import subdomain_from_host
from tooltunnel.transport.app import SESSION_HEADER


@pytest.fixture
def client(relay_settings):
    with TestClient(create_relay_app(RelayService(relay_settings))) as test_client:
        yield test_client


def register(link, **fields) -> RegisteredEnvelope:
    link.send_text(dump_envelope(RegisterEnvelope(**fields)))
    envelope = parse_envelope(link.receive_text())
    assert isinstance(envelope, RegisteredEnvelope), envelope
    return envelope


class TestSubdomainFromHost:
    """Test Host header parsing."""

    @pytest.mark.parametrize(
        "host,expected",
        [
            ("a1b2c3d4.relay.test", "a1b2c3d4"),
            ("DEMO.Relay.Test", "demo"),
            ("demo.relay.test:443", "demo"),
            ("relay.test", None),
            ("a.b.relay.test", None),
            ("demo.other.test", None),
            (None, None),
        ],
    )
    def test_parse(self, host, expected):
        assert subdomain_from_host(host, "relay.test") == expected

    def test_domain_with_port(self):
        assert subdomain_from_host("demo.localhost:8080", "localhost:8080") == "demo"


class TestPublicEndpoints:
    """Test routing of agent requests."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["tenants"] == 0

    def test_unknown_subdomain_is_502(self, client):
        response = client.post(
            "/mcp", json=protocol.make_request(1, "ping"), headers={"Host": "nobody.relay.test"}
        )
        assert response.status_code == 502
        assert response.json()["error"]["kind"] == "unavailable"

    def test_unknown_path_tenant_is_502(self, client):
        assert client.get("/t/nobody/sse").status_code == 502
        response = client.post("/t/nobody/messages", params={"session_id": "x"}, json={})
        assert response.status_code == 502

    def test_agent_websocket_unknown_tenant(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/t/nobody/ws"):
                pass
        assert exc_info.value.code == 1011


class TestRelayConnect:
    """Test the relay client endpoint."""

    def test_register(self, client):
        with client.websocket_connect("/relay/connect") as link:
            registered = register(link, subdomain="demo")
            assert registered.subdomain == "demo"
            assert registered.public_url == "https://demo.relay.test"
            assert client.get("/health").json()["tenants"] == 1

    def test_first_envelope_must_be_register(self, client):
        with client.websocket_connect("/relay/connect") as link:
            link.send_text(dump_envelope(PingEnvelope()))
            error = parse_envelope(link.receive_text())
            assert isinstance(error, ErrorEnvelope)
            assert error.kind == "protocol_order"

    def test_bad_secret(self, relay_settings):
        settings = relay_settings.model_copy(update={"registration_secret": "s3"})
        with TestClient(create_relay_app(RelayService(settings))) as client:
            with client.websocket_connect("/relay/connect") as link:
                link.send_text(dump_envelope(RegisterEnvelope(secret="nope")))
                error = parse_envelope(link.receive_text())
                assert error.kind == "unauthorized"

    def test_tenant_token_enforced(self, client):
        with client.websocket_connect("/relay/connect") as link:
            register(link, subdomain="demo", auth_token="agent-token")
            response = client.post("/t/demo/mcp", json=protocol.make_request(1, "ping"))
            assert response.status_code == 401
            assert response.json()["error"]["kind"] == "unauthorized"

    def test_request_round_trip(self, client):
        initialize = protocol.make_request(1, protocol.INITIALIZE, {"protocolVersion": "x"})
        reply = protocol.success_response(1, {"protocolVersion": "2025-06-18"})

        with client.websocket_connect("/relay/connect") as link:
            register(link, subdomain="demo")
            with ThreadPoolExecutor(max_workers=1) as pool:
                future = pool.submit(client.post, "/t/demo/mcp", json=initialize)

                opened = parse_envelope(link.receive_text())
                assert isinstance(opened, OpenEnvelope)
                assert opened.transport == "http"

                request = parse_envelope(link.receive_text())
                assert isinstance(request, RequestEnvelope)
                assert request.stream_id == opened.stream_id
                assert request.message == initialize

                link.send_text(
                    dump_envelope(ResponseEnvelope(request_id=request.request_id, message=reply))
                )
                response = future.result(timeout=10)

        assert response.status_code == 200
        assert response.json() == reply
        assert response.headers[SESSION_HEADER] == opened.stream_id
