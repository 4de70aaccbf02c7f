"""Message framing for the SSE and WebSocket transports.

SSE frames follow the ``text/event-stream`` format: ``event:`` / ``data:``
lines terminated by a blank line, ``:`` comment lines as keep-alives.
WebSocket frames carry exactly one JSON-RPC message each.
"""

import asyncio
import codecs
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from tooltunnel.exceptions import ErrorKind, ProtocolError, TransportError

# Queued in place of a message to end an SSE stream.
STREAM_CLOSED = None


@dataclass
class SSEEvent:
    event: str = "message"
    data: str = ""
    id: str | None = None

    def json(self) -> Any:
        return json.loads(self.data)


def encode_sse(event: str | None, data: str | dict[str, Any], event_id: str | None = None) -> str:
    """
    Encode one SSE event.

    Example:
        >>> encode_sse("endpoint", "/messages?session_id=abc")
        'event: endpoint\\ndata: /messages?session_id=abc\\n\\n'
    """
    text = data if isinstance(data, str) else json.dumps(data, separators=(",", ":"))
    lines = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    if event:
        lines.append(f"event: {event}")
    lines.extend(f"data: {line}" for line in text.split("\n"))
    return "\n".join(lines) + "\n\n"


def encode_comment(text: str = "ping") -> str:
    return f": {text}\n\n"


class SSEDecoder:
    """Incremental ``text/event-stream`` parser.

    Chunks may split events, lines and even multi-byte characters at any
    point. ``CRLF``, ``CR`` and ``LF`` line endings are all accepted.

    Example:
        >>> decoder = SSEDecoder()
        >>> decoder.feed("event: endpoint\\nda")
        []
        >>> decoder.feed("ta: /messages\\n\\n")[0].data
        '/messages'
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._event: str | None = None
        self._data: list[str] = []
        self._id: str | None = None

    def feed(self, chunk: str | bytes) -> list[SSEEvent]:
        """Feed a chunk; return the events it completed."""
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        buffer = self._buffer + text

        # A trailing CR may be the first half of a CRLF.
        tail = ""
        if buffer.endswith("\r"):
            buffer, tail = buffer[:-1], "\r"

        *lines, rest = buffer.replace("\r\n", "\n").replace("\r", "\n").split("\n")
        self._buffer = rest + tail

        events = []
        for line in lines:
            event = self._process_line(line)
            if event is not None:
                events.append(event)
        return events

    def _process_line(self, line: str) -> SSEEvent | None:
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        elif field == "id":
            self._id = value
        return None

    def _dispatch(self) -> SSEEvent | None:
        if not self._data and self._event is None:
            return None
        event = SSEEvent(event=self._event or "message", data="\n".join(self._data), id=self._id)
        self._event = None
        self._data = []
        return event


def decode_message(raw: str | bytes) -> dict[str, Any]:
    """
    Decode one JSON-RPC message.

    Raises:
        ProtocolError: ``parse_error`` for invalid JSON, ``invalid_request``
            for anything that is not a JSON object (batches included)
    """
    try:
        message = json.loads(raw)
    except (ValueError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Invalid JSON: {e}", kind=ErrorKind.PARSE_ERROR) from e
    if not isinstance(message, dict):
        raise ProtocolError("Message must be a JSON object")
    return message




def end_stream(queue: asyncio.Queue) -> None:
    """Queue ``STREAM_CLOSED``, dropping the oldest message if the queue is full."""
    while True:
        try:
            queue.put_nowait(STREAM_CLOSED)
            return
        except asyncio.QueueFull:
            queue.get_nowait()


def queue_sender(queue: asyncio.Queue) -> Callable[[dict[str, Any]], Awaitable[None]]:
    """
    Sender that feeds an SSE stream's queue without ever waiting on it.

    An agent that stops reading fills its queue; the next message ends the
    stream and raises ``TransportError`` instead of blocking the caller.
    """

    async def send(message: dict[str, Any]) -> None:
        try:
            queue.put_nowait(message)
        except asyncio.QueueFull:
            end_stream(queue)
            raise TransportError(
                f"Stream queue is full ({queue.maxsize} messages), agent is not reading"
            ) from None

    return send


async def sse_stream(
    endpoint: str,
    queue: asyncio.Queue,
    ping_interval: float = 15.0,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
) -> AsyncIterator[str]:
    """
    Produce the frames of an agent's SSE stream.

    The first frame is the ``endpoint`` event telling the agent where to
    POST its messages; after that every queued message becomes a
    ``message`` event and idle periods produce keep-alive comments. The
    stream ends when ``STREAM_CLOSED`` is queued or the peer disconnects.

    Args:
        endpoint: URL the agent POSTs messages to
        queue: Outbound messages for this stream
        ping_interval: Seconds of idleness before a keep-alive comment
        is_disconnected: Optional check run on every keep-alive
    """
    yield encode_sse("endpoint", endpoint)
    while True:
        try:
            message = await asyncio.wait_for(queue.get(), timeout=ping_interval)
        except TimeoutError:
            if is_disconnected is not None and await is_disconnected():
                return
            yield encode_comment("ping")
            continue
        if message is STREAM_CLOSED:
            return
        yield encode_sse("message", message)
