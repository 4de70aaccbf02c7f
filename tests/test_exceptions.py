"""Tests for the tooltunnel exception hierarchy."""

import pytest

from tooltunnel.exceptions import (
    ConfigError,
    EndpointChangedError,
    ErrorKind,
    ExecutionError,
    NotFoundError,
    ProtocolError,
    RelayError,
    TemplateError,
    TransportError,
    TunnelError,
    ValidationError,
    error_kind,
    jsonrpc_code,
)


class TestErrorKinds:
    """Test default kinds and JSON-RPC code mapping."""

    @pytest.mark.parametrize(
        "error_cls,kind",
        [
            (TunnelError, ErrorKind.INTERNAL),
            (ConfigError, ErrorKind.CONFIG),
            (ProtocolError, ErrorKind.INVALID_REQUEST),
            (ValidationError, ErrorKind.VALIDATION),
            (NotFoundError, ErrorKind.NOT_FOUND),
            (TemplateError, ErrorKind.TEMPLATE),
            (ExecutionError, ErrorKind.INTERNAL),
            (TransportError, ErrorKind.TRANSPORT),
            (RelayError, ErrorKind.UNAVAILABLE),
        ],
    )
    def test_default_kind(self, error_cls, kind):
        assert error_cls("boom").kind is kind

    def test_kind_override_accepts_string(self):
        error = ProtocolError("bad order", kind="protocol_order")
        assert error.kind is ErrorKind.PROTOCOL_ORDER

    def test_jsonrpc_codes(self):
        assert jsonrpc_code(ErrorKind.PARSE_ERROR) == -32700
        assert jsonrpc_code(ErrorKind.INVALID_REQUEST) == -32600
        assert jsonrpc_code(ErrorKind.UNKNOWN_METHOD) == -32601
        assert jsonrpc_code(ErrorKind.VALIDATION) == -32602
        assert jsonrpc_code("not-a-kind") == -32603
        assert jsonrpc_code(ErrorKind.NONZERO_EXIT) == -32603

    def test_error_kind_from_peer(self):
        assert error_kind("timeout") is ErrorKind.TIMEOUT
        assert error_kind(ErrorKind.CANCELLED) is ErrorKind.CANCELLED
        assert error_kind("from-a-newer-peer") is ErrorKind.INTERNAL

    def test_all_errors_are_tunnel_errors(self):
        assert issubclass(NotFoundError, ValidationError)
        assert issubclass(EndpointChangedError, RelayError)
        assert issubclass(TransportError, TunnelError)


class TestErrorPayloads:
    """Test string and dict rendering."""

    def test_str_includes_kind(self):
        assert str(ConfigError("no catalog")) == "[config] no catalog"

    def test_to_dict_without_details(self):
        assert TunnelError("x").to_dict() == {"errorKind": "internal"}

    def test_validation_field_lands_in_details(self):
        error = ValidationError("bad", field="msg")
        assert error.field == "msg"
        assert error.to_dict() == {"errorKind": "validation", "details": {"field": "msg"}}

    def test_relay_error_status_code(self):
        assert RelayError("gone").status_code == 502
        assert RelayError("nope", kind=ErrorKind.UNAUTHORIZED, status_code=401).status_code == 401

    def test_endpoint_changed(self):
        error = EndpointChangedError("old", "new")
        assert error.kind is ErrorKind.ENDPOINT_CHANGED
        assert error.previous == "old"
        assert error.current == "new"
        assert error.details == {"previous": "old", "current": "new"}
        assert "'old'" in error.message and "'new'" in error.message
