"""Relay server: public MCP endpoints multiplexed onto relay client links.

Endpoints:
    WS   /relay/connect          Relay clients register here
    GET  /health                 Liveness and tenant count

Public tenant endpoints, reachable as ``https://<sub>.<public_domain>/...``
or, without wildcard DNS, as ``/t/<sub>/...``:
    GET  /sse, POST /messages, WS /ws, POST /mcp, DELETE /mcp

Usage:
    app = create_relay_app(RelayService(RelaySettings()))
    uvicorn.run(app, host="0.0.0.0", port=8080)
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import Depends, FastAPI, Header, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import HTTPConnection
from fastapi.responses import JSONResponse, Response, StreamingResponse

from tooltunnel import __version__
from tooltunnel.exceptions import ErrorKind, ProtocolError, RelayError
from tooltunnel.mcp import protocol
from tooltunnel.relay.envelope import ErrorEnvelope, RegisterEnvelope, dump_envelope, parse_envelope
from tooltunnel.relay.service import RelayService, TenantConnection
from tooltunnel.transport.app import SESSION_HEADER, SSE_HEADERS, error_body
from tooltunnel.transport.framing import decode_message, end_stream, queue_sender, sse_stream

logger = logging.getLogger(__name__)

PATH_PREFIX = "/t/{subdomain}"


def subdomain_from_host(host: str | None, public_domain: str) -> str | None:
    """
    Extract the tenant subdomain from a Host header.

    Example:
        >>> subdomain_from_host("a1b2c3d4.relay.example.com", "relay.example.com")
        'a1b2c3d4'
    """
    if not host:
        return None
    host = host.strip().lower()
    domain = public_domain.strip().lower()
    candidates = [(host, domain), (host.split(":")[0], domain.split(":")[0])]
    for candidate_host, candidate_domain in candidates:
        suffix = f".{candidate_domain}"
        if candidate_host.endswith(suffix):
            subdomain = candidate_host[: -len(suffix)]
            if subdomain and "." not in subdomain:
                return subdomain
    return None


def create_relay_app(service: RelayService) -> FastAPI:
    """
    Build the relay server app.

    Args:
        service: Relay service holding tenants and routing state

    Returns:
        FastAPI application
    """
    settings = service.settings

    async def reaper() -> None:
        while True:
            await asyncio.sleep(min(settings.session_idle_timeout, 60.0))
            await service.reap_idle_streams()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Relay ready for *.{settings.public_domain}")
        service.spawn(reaper())
        yield
        await service.shutdown()
        logger.info("Relay stopped")

    app = FastAPI(
        title="tooltunnel relay",
        description="Public MCP endpoints for tooltunnel clients",
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
    app.state.service = service

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        return JSONResponse(error_body(exc.kind, exc.message), status_code=exc.status_code)

    def tenant_subdomain(connection: HTTPConnection) -> str | None:
        return connection.path_params.get("subdomain") or subdomain_from_host(
            connection.headers.get("host"), settings.public_domain
        )

    def path_prefix(connection: HTTPConnection) -> str:
        subdomain = connection.path_params.get("subdomain")
        return f"/t/{subdomain}" if subdomain else ""

    def tenant(
        subdomain: str | None = Depends(tenant_subdomain),
        authorization: str | None = Header(default=None),
    ) -> TenantConnection:
        return service.resolve_tenant(subdomain, authorization)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "timestamp": datetime.now(UTC).isoformat(),
            "tenants": service.tenant_count,
        }

    @app.websocket("/relay/connect")
    async def relay_connect(websocket: WebSocket):
        """Relay client link; the first envelope must be ``register``."""
        await websocket.accept()

        async def reject(kind: ErrorKind, message: str) -> None:
            logger.warning(f"Rejected relay client: {message}")
            envelope = ErrorEnvelope(kind=kind.value, message=message)
            await websocket.send_text(dump_envelope(envelope))
            await websocket.close(code=1008)

        try:
            raw = await asyncio.wait_for(websocket.receive_text(), settings.register_timeout)
            envelope = parse_envelope(raw)
        except TimeoutError:
            await reject(ErrorKind.TIMEOUT, "No register envelope received")
            return
        except ProtocolError as e:
            await reject(e.kind, e.message)
            return
        except WebSocketDisconnect:
            return

        if not isinstance(envelope, RegisterEnvelope):
            await reject(
                ErrorKind.PROTOCOL_ORDER,
                f"First envelope must be 'register', got '{envelope.type}'",
            )
            return

        try:
            connection, registered = await service.attach(
                envelope, websocket.send_text, close_socket=websocket.close
            )
        except RelayError as e:
            await reject(e.kind, e.message)
            return

        try:
            await connection.send(registered)
            while True:
                raw = await websocket.receive_text()
                try:
                    envelope = parse_envelope(raw)
                except ProtocolError as e:
                    await connection.send(ErrorEnvelope(kind=e.kind.value, message=e.message))
                    continue
                await service.handle_client_envelope(connection, envelope)
        except WebSocketDisconnect:
            logger.info("Relay client disconnected", extra={"subdomain": connection.subdomain})
        except RelayError as e:
            logger.info(f"Relay link lost: {e}", extra={"subdomain": connection.subdomain})
        finally:
            await service.detach(connection)

    async def sse_connect(request: Request, connection: TenantConnection = Depends(tenant)):
        """Agent SSE stream for a tenant."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=settings.stream_queue_size)

        async def close_queue() -> None:
            end_stream(queue)

        stream = await service.open_stream(connection, "sse", queue_sender(queue), close_queue)
        endpoint = f"{path_prefix(request)}/messages?session_id={stream.stream_id}"

        async def frames():
            try:
                async for frame in sse_stream(
                    endpoint, queue, settings.sse_ping_interval, request.is_disconnected
                ):
                    yield frame
            finally:
                await service.close_stream(connection, stream.stream_id)

        return StreamingResponse(frames(), media_type="text/event-stream", headers=SSE_HEADERS)

    async def post_message(
        request: Request, session_id: str, connection: TenantConnection = Depends(tenant)
    ):
        """Agent message for an SSE stream; the response is delivered on the stream."""
        service.stream(connection, session_id)
        try:
            message = decode_message(await request.body())
        except ProtocolError as e:
            return JSONResponse(protocol.error_response(None, e), status_code=400)
        service.spawn(service.forward_to_stream(connection, session_id, message))
        return Response(status_code=202)

    async def websocket_stream(websocket: WebSocket):
        """Agent WebSocket stream for a tenant."""
        try:
            connection = service.resolve_tenant(
                tenant_subdomain(websocket), websocket.headers.get("authorization")
            )
        except RelayError as e:
            await websocket.close(code=1008 if e.status_code == 401 else 1011, reason=e.message)
            return

        await websocket.accept()
        stream = await service.open_stream(connection, "ws", websocket.send_json, websocket.close)
        tasks: set[asyncio.Task] = set()

        async def handle(raw: str | bytes) -> None:
            try:
                message = decode_message(raw)
            except ProtocolError as e:
                await websocket.send_json(protocol.error_response(None, e))
                return
            response = await service.forward(connection, stream.stream_id, message)
            if response is not None:
                await websocket.send_json(response)

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
                task = asyncio.create_task(handle(raw))
                tasks.add(task)
                task.add_done_callback(tasks.discard)
        finally:
            for task in list(tasks):
                task.cancel()
            await service.close_stream(connection, stream.stream_id)

    async def mcp_post(
        request: Request,
        mcp_session_id: str | None = Header(default=None),
        connection: TenantConnection = Depends(tenant),
    ):
        """Request/response JSON-RPC for a tenant."""
        try:
            message = decode_message(await request.body())
        except ProtocolError as e:
            return JSONResponse(protocol.error_response(None, e), status_code=400)

        headers = {}
        stream_id = mcp_session_id
        if stream_id is None:
            if message.get("method") != protocol.INITIALIZE:
                error = ProtocolError(f"Missing {SESSION_HEADER} header")
                return JSONResponse(
                    protocol.error_response(message.get("id"), error), status_code=400
                )
            stream = await service.open_stream(connection, "http", _discard)
            stream_id = stream.stream_id
            headers[SESSION_HEADER] = stream_id
        else:
            service.stream(connection, stream_id)

        response = await service.forward(connection, stream_id, message)
        if response is None:
            return Response(status_code=202, headers=headers)
        return JSONResponse(response, headers=headers)

    async def mcp_delete(
        mcp_session_id: str | None = Header(default=None),
        connection: TenantConnection = Depends(tenant),
    ):
        """End a request/response session."""
        if mcp_session_id is None:
            return JSONResponse(
                error_body(ErrorKind.CONNECTION_CLOSED, "Unknown session"), status_code=404
            )
        service.stream(connection, mcp_session_id)
        await service.close_stream(connection, mcp_session_id)
        return Response(status_code=204)

    for prefix in ("", PATH_PREFIX):
        app.add_api_route(f"{prefix}/sse", sse_connect, methods=["GET"])
        app.add_api_route(f"{prefix}/messages", post_message, methods=["POST"])
        app.add_api_route(f"{prefix}/mcp", mcp_post, methods=["POST"])
        app.add_api_route(f"{prefix}/mcp", mcp_delete, methods=["DELETE"])
        app.add_api_websocket_route(f"{prefix}/ws", websocket_stream)

    return app


async def _discard(message: dict) -> None:
    logger.debug(f"No stream for pushed message {message.get('method')}")
