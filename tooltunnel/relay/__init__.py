"""
Relay server and client.

Usage:
    # Server side
    from tooltunnel.relay import RelayService, create_relay_app

    app = create_relay_app(RelayService(settings))

    # Tunnel side
    from tooltunnel.relay import RelayClient

    client = RelayClient(hub, settings, auth_token=token)
    await client.connect()
    await client.run()
"""

from tooltunnel.relay.client import RelayClient, RelayEndpoint
from tooltunnel.relay.envelope import dump_envelope, parse_envelope
from tooltunnel.relay.pending import PendingRequest, PendingTable
from tooltunnel.relay.registry import ConnectionRegistry, InMemoryConnectionRegistry
from tooltunnel.relay.server import create_relay_app, subdomain_from_host
from tooltunnel.relay.service import AgentStream, RelayService, TenantConnection

__all__ = [
    "AgentStream",
    "ConnectionRegistry",
    "InMemoryConnectionRegistry",
    "PendingRequest",
    "PendingTable",
    "RelayClient",
    "RelayEndpoint",
    "RelayService",
    "TenantConnection",
    "create_relay_app",
    "dump_envelope",
    "parse_envelope",
    "subdomain_from_host",
]
