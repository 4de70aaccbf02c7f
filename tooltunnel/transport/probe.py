"""Connectivity probe for a public (or local) MCP endpoint.

Opens the SSE stream, follows the ``endpoint`` event and performs
``initialize`` + ``tools/list``, the same handshake an agent performs.

Usage:
    result = await probe("https://a1b2c3d4.relay.example.com", token="...")
    print(result.tools)
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx

from tooltunnel import __version__
from tooltunnel.exceptions import TransportError
from tooltunnel.mcp import protocol
from tooltunnel.transport.framing import SSEDecoder, SSEEvent

logger = logging.getLogger(__name__)


@dataclass
class ProbeResult:
    """Outcome of a successful probe."""

    url: str
    protocol_version: str
    server_info: dict[str, Any] = field(default_factory=dict)
    tools: list[str] = field(default_factory=list)


def sse_url_for(url: str) -> str:
    """Return the SSE endpoint for a base URL (``/sse`` is appended if missing)."""
    url = url.rstrip("/")
    return url if url.endswith("/sse") else f"{url}/sse"


async def _events(response: httpx.Response) -> AsyncIterator[SSEEvent]:
    decoder = SSEDecoder()
    async for chunk in response.aiter_bytes():
        for event in decoder.feed(chunk):
            yield event


async def _await_result(events: AsyncIterator[SSEEvent], request_id: int) -> Any:
    async for event in events:
        if event.event != "message":
            continue
        message = event.json()
        if message.get("id") != request_id:
            continue
        if "error" in message:
            error = message["error"]
            raise TransportError(
                f"Server returned error: {error.get('message')}",
                details={"error": error},
            )
        return message.get("result")
    raise TransportError("SSE stream ended before the response arrived")


async def probe(url: str, token: str | None = None, timeout: float = 10.0) -> ProbeResult:
    """
    Probe an MCP endpoint over SSE.

    Args:
        url: Public URL of the tunnel (or its ``/sse`` URL)
        token: Bearer token, if the endpoint requires one
        timeout: Overall deadline in seconds

    Returns:
        ProbeResult with the negotiated version and tool names

    Raises:
        TransportError: Endpoint unreachable, rejected the handshake or
            did not answer within ``timeout``
    """
    sse_url = sse_url_for(url)
    headers = {"Authorization": f"Bearer {token}"} if token else {}

    try:
        async with asyncio.timeout(timeout):
            async with httpx.AsyncClient(timeout=timeout, headers=headers) as client:
                async with client.stream(
                    "GET", sse_url, headers={"Accept": "text/event-stream"}
                ) as response:
                    if response.status_code != 200:
                        raise TransportError(
                            f"SSE endpoint returned HTTP {response.status_code}",
                            details={"status_code": response.status_code},
                        )

                    events = _events(response)
                    first = await anext(events, None)
                    if first is None or first.event != "endpoint":
                        raise TransportError("SSE stream did not announce a message endpoint")
                    post_url = str(httpx.URL(sse_url).join(first.data))
                    logger.debug(f"Probe message endpoint: {post_url}")

                    async def post(message: dict[str, Any]) -> None:
                        reply = await client.post(post_url, json=message)
                        reply.raise_for_status()

                    await post(
                        protocol.make_request(
                            1,
                            protocol.INITIALIZE,
                            {
                                "protocolVersion": protocol.LATEST_PROTOCOL_VERSION,
                                "capabilities": {},
                                "clientInfo": {"name": "tooltunnel-probe", "version": __version__},
                            },
                        )
                    )
                    init = await _await_result(events, 1)
                    await post(protocol.make_notification(protocol.NOTIFY_INITIALIZED))
                    await post(protocol.make_request(2, protocol.TOOLS_LIST))
                    listing = await _await_result(events, 2)
    except TimeoutError as e:
        raise TransportError(f"Probe of {sse_url} timed out after {timeout:g}s") from e
    except httpx.HTTPError as e:
        raise TransportError(f"Probe of {sse_url} failed: {e}") from e

    return ProbeResult(
        url=sse_url,
        protocol_version=init.get("protocolVersion", ""),
        server_info=init.get("serverInfo", {}),
        tools=[tool["name"] for tool in listing.get("tools", [])],
    )
