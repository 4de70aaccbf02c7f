"""FastAPI app serving MCP directly on a local port.

Endpoints:
    GET  /sse        SSE stream; first event names the POST endpoint
    POST /messages   JSON-RPC message for an SSE session (?session_id=...)
    WS   /ws         Full-duplex JSON-RPC, one message per frame
    POST /mcp        Request/response JSON-RPC keyed by ``Mcp-Session-Id``
    DELETE /mcp      End an ``Mcp-Session-Id`` session
    GET  /health     Liveness and counts

Usage:
    app = create_transport_app(hub, auth_token="secret")
    uvicorn.run(app, host="127.0.0.1", port=8765)
"""

import asyncio
import logging
import uuid
from collections.abc import Coroutine
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse

from tooltunnel import __version__
from tooltunnel.exceptions import ErrorKind, ProtocolError
from tooltunnel.mcp import protocol
from tooltunnel.transport.auth import token_matches
from tooltunnel.transport.framing import decode_message, queue_sender, sse_stream
from tooltunnel.transport.hub import ConnectionHub

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
SESSION_HEADER = "Mcp-Session-Id"


def error_body(kind: ErrorKind, message: str) -> dict[str, Any]:
    """JSON body for non-JSON-RPC HTTP errors."""
    return {"error": {"kind": kind.value, "message": message}}


async def _discard(message: dict[str, Any]) -> None:
    logger.debug(f"No stream for server message {message.get('method')}")


def create_transport_app(
    hub: ConnectionHub,
    auth_token: str | None = None,
    *,
    ping_interval: float = 15.0,
    queue_size: int = 100,
    session_idle_timeout: float = 600.0,
) -> FastAPI:
    """
    Build the local MCP transport app.

    Args:
        hub: Connection hub that owns the sessions
        auth_token: Bearer token agents must present (None disables auth)
        ping_interval: Seconds between SSE keep-alive comments
        queue_size: Bound of each SSE stream's outbound queue
        session_idle_timeout: Seconds after which an idle ``/mcp`` session
            without a DELETE is closed

    Returns:
        FastAPI application
    """
    tasks: set[asyncio.Task] = set()
    http_sessions: set[str] = set()

    def spawn(coro: Coroutine) -> None:
        task = asyncio.create_task(coro)
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    def reap_idle_sessions() -> int:
        """Close abandoned request/response sessions; returns how many were closed."""
        http_sessions.difference_update([sid for sid in http_sessions if sid not in hub])
        reaped = hub.reap_idle(session_idle_timeout, http_sessions)
        http_sessions.difference_update(reaped)
        return len(reaped)

    async def reaper() -> None:
        while True:
            await asyncio.sleep(min(session_idle_timeout, 60.0))
            reap_idle_sessions()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Local transport ready ({len(hub.store.current)} tools)")
        spawn(reaper())
        yield
        hub.close_all()
        for task in list(tasks):
            task.cancel()
        logger.info("Local transport stopped")

    app = FastAPI(
        title="tooltunnel",
        description="MCP server for local tools",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Accept", SESSION_HEADER],
        expose_headers=[SESSION_HEADER],
    )
    app.state.hub = hub
    app.state.reap_idle_sessions = reap_idle_sessions

    def require_auth(authorization: str | None = Header(default=None)) -> None:
        if not token_matches(authorization, auth_token):
            raise HTTPException(status_code=401, detail="Invalid or missing bearer token")

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "timestamp": datetime.now(UTC).isoformat(),
            "connections": len(hub),
            "tools": len(hub.store.current),
        }

    @app.get("/sse", dependencies=[Depends(require_auth)])
    async def sse_connect(request: Request):
        """Open an SSE stream; the first event tells the agent where to POST."""
        session_id = uuid.uuid4().hex
        queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        hub.open(session_id, queue_sender(queue))
        endpoint = f"{request.scope.get('root_path', '')}/messages?session_id={session_id}"

        async def frames():
            try:
                async for frame in sse_stream(
                    endpoint, queue, ping_interval, request.is_disconnected
                ):
                    yield frame
            finally:
                hub.close(session_id)

        return StreamingResponse(frames(), media_type="text/event-stream", headers=SSE_HEADERS)

    @app.post("/messages", dependencies=[Depends(require_auth)])
    async def post_message(request: Request, session_id: str):
        """Accept a JSON-RPC message; the response goes out on the SSE stream."""
        if session_id not in hub:
            return JSONResponse(
                error_body(ErrorKind.CONNECTION_CLOSED, f"Unknown session '{session_id}'"),
                status_code=404,
            )
        spawn(hub.deliver(session_id, await request.body()))
        return Response(status_code=202)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Full-duplex JSON-RPC; every frame is handled concurrently."""
        if not token_matches(websocket.headers.get("authorization"), auth_token):
            await websocket.close(code=1008)
            return
        await websocket.accept()
        connection_id = uuid.uuid4().hex
        hub.open(connection_id, websocket.send_json)
        frame_tasks: set[asyncio.Task] = set()
        try:
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    break
                raw = frame.get("text")
                if raw is None:
                    raw = frame.get("bytes")
                if raw is None:
                    continue
                task = asyncio.create_task(hub.deliver(connection_id, raw))
                frame_tasks.add(task)
                task.add_done_callback(frame_tasks.discard)
        finally:
            hub.close(connection_id)
            for task in list(frame_tasks):
                task.cancel()

    @app.post("/mcp", dependencies=[Depends(require_auth)])
    async def mcp_post(request: Request, mcp_session_id: str | None = Header(default=None)):
        """Request/response JSON-RPC. ``initialize`` without a session id opens one."""
        try:
            message = decode_message(await request.body())
        except ProtocolError as e:
            return JSONResponse(protocol.error_response(None, e), status_code=400)

        headers = {}
        session_id = mcp_session_id
        if session_id is None:
            if message.get("method") != protocol.INITIALIZE:
                error = ProtocolError(f"Missing {SESSION_HEADER} header")
                return JSONResponse(
                    protocol.error_response(message.get("id"), error), status_code=400
                )
            session_id = uuid.uuid4().hex
            hub.open(session_id, _discard)
            http_sessions.add(session_id)
            headers[SESSION_HEADER] = session_id
        elif session_id not in hub:
            return JSONResponse(
                error_body(ErrorKind.CONNECTION_CLOSED, f"Unknown session '{session_id}'"),
                status_code=404,
            )

        response = await hub.on_message(session_id, message)
        if response is None:
            return Response(status_code=202, headers=headers)
        return JSONResponse(response, headers=headers)

    @app.delete("/mcp", dependencies=[Depends(require_auth)])
    async def mcp_delete(mcp_session_id: str | None = Header(default=None)):
        """End a request/response session."""
        if mcp_session_id is None or mcp_session_id not in hub:
            return JSONResponse(
                error_body(ErrorKind.CONNECTION_CLOSED, "Unknown session"), status_code=404
            )
        hub.close(mcp_session_id)
        http_sessions.discard(mcp_session_id)
        return Response(status_code=204)

    return app


