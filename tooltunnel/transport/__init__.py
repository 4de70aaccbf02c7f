"""
Agent-facing transports (SSE and WebSocket).

Usage:
    from tooltunnel.transport import ConnectionHub, create_transport_app

    hub = ConnectionHub(store, executor)
    app = create_transport_app(hub, auth_token=token)
"""

from tooltunnel.transport.app import create_transport_app
from tooltunnel.transport.framing import SSEDecoder, SSEEvent, decode_message, encode_sse
from tooltunnel.transport.hub import ConnectionHub
from tooltunnel.transport.probe import ProbeResult, probe

__all__ = [
    "ConnectionHub",
    "ProbeResult",
    "SSEDecoder",
    "SSEEvent",
    "create_transport_app",
    "decode_message",
    "encode_sse",
    "probe",
]
