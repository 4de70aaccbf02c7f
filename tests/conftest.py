"""
Pytest configuration and shared fixtures.

Provides catalogs, settings and an executor wired the way the CLI wires
them, without touching the network or the user's environment.
"""

import pytest

from tooltunnel.catalog import Catalog, CatalogStore, parse_catalog
from tooltunnel.config import RelaySettings, TunnelSettings
from tooltunnel.executor import ToolExecutor
from tooltunnel.transport.hub import ConnectionHub

CATALOG_DOCUMENT = {
    "tools": [
        {
            "name": "echo",
            "description": "Echo a message back",
            "parameters": [
                {"name": "msg", "type": "string", "required": True, "description": "Text"},
            ],
            "shell": {"command": "echo {{msg}}", "timeout": 5},
        },
        {
            "name": "greet",
            "description": "Greet someone",
            "parameters": [
                {"name": "name", "type": "string", "default": "world"},
                {"name": "loud", "type": "boolean"},
            ],
            "shell": {"argv": ["printf", "%s:%s", "{{name}}", "{{loud}}"], "timeout": 5},
        },
        {
            "name": "sleep",
            "description": "Sleep for a while",
            "parameters": [{"name": "seconds", "type": "integer", "required": True}],
            "shell": {"command": "sleep {{seconds}}", "timeout": 10},
        },
    ]
}


@pytest.fixture
def tunnel_settings(monkeypatch) -> TunnelSettings:
    """Tunnel settings isolated from TOOLTUNNEL_* variables and .env files."""
    monkeypatch.delenv("TOOLTUNNEL_AUTH_TOKEN", raising=False)
    return TunnelSettings(
        _env_file=None,
        relay_url="ws://relay.test/relay/connect",
        default_timeout=5.0,
        kill_grace_period=0.5,
        heartbeat_interval=5.0,
        connect_attempts=2,
        reconnect_max_wait=0.05,
        reconnect_deadline=1.0,
    )


@pytest.fixture
def relay_settings() -> RelaySettings:
    return RelaySettings(
        _env_file=None,
        public_domain="relay.test",
        public_scheme="https",
        request_timeout=2.0,
        lease_ttl=60.0,
        register_timeout=2.0,
    )


@pytest.fixture
def catalog() -> Catalog:
    return parse_catalog(CATALOG_DOCUMENT)


@pytest.fixture
def store(catalog) -> CatalogStore:
    return CatalogStore(catalog)


@pytest.fixture
def executor(tunnel_settings) -> ToolExecutor:
    return ToolExecutor(tunnel_settings, env={"PATH": "/usr/bin:/bin", "HOME": "/tmp"})


@pytest.fixture
def hub(store, executor) -> ConnectionHub:
    return ConnectionHub(store, executor)
