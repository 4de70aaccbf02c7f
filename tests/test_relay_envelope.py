"""Tests for relay envelopes and the pending request table."""

import json

import pytest

from tooltunnel.exceptions import ErrorKind, ProtocolError, TunnelError
from tooltunnel.relay import PendingTable, dump_envelope, parse_envelope
from tooltunnel.relay.envelope import (
    ErrorEnvelope,
    LimitsEnvelope,
    OpenEnvelope,
    RegisterEnvelope,
    RequestEnvelope,
    ResponseEnvelope,
)


class TestEnvelopes:
    """Test envelope parsing and serialization."""

    def test_register_defaults(self):
        envelope = parse_envelope('{"type": "register"}')
        assert isinstance(envelope, RegisterEnvelope)
        assert envelope.version == 1
        assert envelope.subdomain is None

    def test_limits(self):
        envelope = parse_envelope({"type": "limits", "max_timeout": 42})
        assert isinstance(envelope, LimitsEnvelope)
        assert envelope.max_timeout == 42.0

        with pytest.raises(ProtocolError):
            parse_envelope({"type": "limits", "max_timeout": 0})

    def test_dump_and_parse(self):
        original = RequestEnvelope(request_id="r1", stream_id="s1", message={"id": 1})
        parsed = parse_envelope(dump_envelope(original))
        assert parsed == original
        assert json.loads(dump_envelope(original))["type"] == "request"

    def test_parse_dict(self):
        envelope = parse_envelope({"type": "open", "stream_id": "s", "transport": "ws"})
        assert isinstance(envelope, OpenEnvelope)
        assert envelope.transport == "ws"

    def test_response_without_message(self):
        envelope = parse_envelope({"type": "response", "request_id": "r"})
        assert isinstance(envelope, ResponseEnvelope)
        assert envelope.message is None

    def test_invalid_json(self):
        with pytest.raises(ProtocolError) as exc_info:
            parse_envelope("{nope")
        assert exc_info.value.kind is ErrorKind.PARSE_ERROR

    def test_unknown_type(self):
        with pytest.raises(ProtocolError) as exc_info:
            parse_envelope('{"type": "teleport"}')
        assert exc_info.value.kind is ErrorKind.INVALID_REQUEST

    def test_missing_field(self):
        with pytest.raises(ProtocolError):
            parse_envelope('{"type": "request", "request_id": "r"}')

    def test_error_envelope(self):
        envelope = parse_envelope(
            dump_envelope(ErrorEnvelope(kind="unauthorized", message="bad secret"))
        )
        assert envelope.kind == "unauthorized"
        assert envelope.request_id is None


class TestPendingTable:
    """Test request_id -> future routing."""

    @pytest.mark.asyncio
    async def test_resolve(self):
        table = PendingTable()
        pending = table.register("s1", {"id": 1, "method": "ping"}, timeout=1)
        assert pending.request_id in table

        assert table.resolve(pending.request_id, {"result": {}})
        assert await table.wait(pending) == {"result": {}}
        assert len(table) == 0

    @pytest.mark.asyncio
    async def test_records_tool_call(self):
        table = PendingTable()
        pending = table.register(
            "s1",
            {"id": 1, "method": "tools/call", "params": {"name": "echo", "arguments": {"m": 1}}},
            timeout=1,
        )
        assert pending.method == "tools/call"
        assert pending.tool_name == "echo"
        assert pending.arguments == {"m": 1}
        table.discard(pending.request_id)

    @pytest.mark.asyncio
    async def test_timeout(self):
        table = PendingTable()
        pending = table.register("s1", {"id": 1}, timeout=0.05)
        with pytest.raises(TunnelError) as exc_info:
            await table.wait(pending)
        assert exc_info.value.kind is ErrorKind.TIMEOUT
        assert pending.request_id not in table

    @pytest.mark.asyncio
    async def test_fail_all(self):
        table = PendingTable()
        first = table.register("s1", {"id": 1}, timeout=1)
        second = table.register("s2", {"id": 2}, timeout=1)

        error = TunnelError("gone", kind=ErrorKind.CONNECTION_CLOSED)
        assert table.fail_all(error) == 2
        for pending in (first, second):
            with pytest.raises(TunnelError) as exc_info:
                await table.wait(pending)
            assert exc_info.value.kind is ErrorKind.CONNECTION_CLOSED

    @pytest.mark.asyncio
    async def test_duplicate_id(self):
        table = PendingTable()
        table.register("s1", {}, timeout=1, request_id="fixed")
        with pytest.raises(ProtocolError):
            table.register("s1", {}, timeout=1, request_id="fixed")
        table.discard("fixed")

    @pytest.mark.asyncio
    async def test_late_response_ignored(self):
        table = PendingTable()
        assert table.resolve("unknown", {}) is False
        pending = table.register("s1", {}, timeout=1)
        table.discard(pending.request_id)
        assert pending.future.cancelled()
        assert table.resolve(pending.request_id, {}) is False

    @pytest.mark.asyncio
    async def test_generated_ids_are_unique(self):
        table = PendingTable()
        ids = {table.register("s", {}, timeout=1).request_id for _ in range(50)}
        assert len(ids) == 50
