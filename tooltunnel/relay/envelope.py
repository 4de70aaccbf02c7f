"""Envelopes exchanged between the relay server and a relay client.

Every WebSocket text frame on the relay link carries one JSON envelope;
the ``type`` field selects the model.

Relay -> client: ``registered``, ``open``, ``close``, ``request``,
``cancel``, ``ping``, ``pong``, ``error``.
Client -> relay: ``register``, ``limits``, ``response``, ``push``, ``close``,
``ping``, ``pong``, ``error``.
"""

import time
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from tooltunnel.exceptions import ErrorKind, ProtocolError

LINK_VERSION = 1


class RegisterEnvelope(BaseModel):
    """First envelope of a relay link."""

    type: Literal["register"] = "register"
    version: int = LINK_VERSION
    subdomain: str | None = None
    lease_key: str | None = None
    secret: str | None = None
    auth_token: str | None = None
    client: str = ""
    # Longest a tools/call may legitimately take, kill grace included.
    max_timeout: float | None = Field(default=None, gt=0)


class RegisteredEnvelope(BaseModel):
    type: Literal["registered"] = "registered"
    connection_id: str
    subdomain: str
    public_url: str
    lease_key: str
    lease_ttl: float


class LimitsEnvelope(BaseModel):
    """Updated request limits, sent after a catalog reload."""

    type: Literal["limits"] = "limits"
    max_timeout: float = Field(gt=0)


class OpenEnvelope(BaseModel):
    """An agent opened a stream on the tenant's public endpoint."""

    type: Literal["open"] = "open"
    stream_id: str
    transport: Literal["sse", "ws", "http"] = "sse"


class CloseEnvelope(BaseModel):
    type: Literal["close"] = "close"
    stream_id: str
    reason: str = ""


class RequestEnvelope(BaseModel):
    """An agent message to be handled by the stream's MCP session."""

    type: Literal["request"] = "request"
    request_id: str
    stream_id: str
    message: dict[str, Any]


class ResponseEnvelope(BaseModel):
    """Answer to a ``request``; ``message`` is None for notifications."""

    type: Literal["response"] = "response"
    request_id: str
    message: dict[str, Any] | None = None


class PushEnvelope(BaseModel):
    """Server-initiated message for one agent stream (e.g. list_changed)."""

    type: Literal["push"] = "push"
    stream_id: str
    message: dict[str, Any]


class CancelEnvelope(BaseModel):
    type: Literal["cancel"] = "cancel"
    request_id: str
    reason: str = ""


class PingEnvelope(BaseModel):
    type: Literal["ping"] = "ping"
    timestamp: float = Field(default_factory=time.time)


class PongEnvelope(BaseModel):
    type: Literal["pong"] = "pong"
    timestamp: float = Field(default_factory=time.time)


class ErrorEnvelope(BaseModel):
    type: Literal["error"] = "error"
    kind: str = ErrorKind.INTERNAL.value
    message: str = ""
    request_id: str | None = None


Envelope = Annotated[
    Union[
        RegisterEnvelope,
        RegisteredEnvelope,
        LimitsEnvelope,
        OpenEnvelope,
        CloseEnvelope,
        RequestEnvelope,
        ResponseEnvelope,
        PushEnvelope,
        CancelEnvelope,
        PingEnvelope,
        PongEnvelope,
        ErrorEnvelope,
    ],
    Field(discriminator="type"),
]

_ADAPTER: TypeAdapter = TypeAdapter(Envelope)


def parse_envelope(raw: str | bytes | dict[str, Any]) -> BaseModel:
    """
    Parse one relay envelope.

    Raises:
        ProtocolError: ``parse_error`` for invalid JSON, ``invalid_request``
            for an unknown type or missing fields
    """
    try:
        if isinstance(raw, dict):
            return _ADAPTER.validate_python(raw)
        return _ADAPTER.validate_json(raw)
    except PydanticValidationError as e:
        kind = ErrorKind.PARSE_ERROR if e.errors()[0]["type"] == "json_invalid" else None
        raise ProtocolError(f"Invalid relay envelope: {e.errors()[0]['msg']}", kind=kind) from e


def dump_envelope(envelope: BaseModel) -> str:
    return envelope.model_dump_json()
