"""
Command line interface.

Commands:
    tooltunnel serve   Load the catalog and publish it through a relay
    tooltunnel local   Serve the catalog directly on a local port
    tooltunnel relay   Run the relay server
    tooltunnel check   Validate a catalog file
    tooltunnel probe   Check that a public endpoint answers MCP

Exit codes:
    0  clean shutdown
    1  runtime failure (relay unreachable, endpoint changed, probe failed)
    2  configuration error (bad catalog or settings)

Examples:
    tooltunnel check tools.yaml
    tooltunnel serve --catalog tools.yaml --relay-url wss://relay.example.com/relay/connect
    tooltunnel probe https://a1b2c3d4.relay.example.com --token $TOKEN
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Any

import uvicorn
from pydantic import ValidationError as PydanticValidationError

from tooltunnel import __version__
from tooltunnel.catalog import CatalogStore, load_catalog
from tooltunnel.config import RelaySettings, TunnelSettings
from tooltunnel.exceptions import (
    ConfigError,
    EndpointChangedError,
    RelayError,
    TransportError,
)
from tooltunnel.executor import ToolExecutor
from tooltunnel.logging_config import setup_logging
from tooltunnel.relay import RelayClient, RelayService, create_relay_app
from tooltunnel.transport import ConnectionHub, create_transport_app, probe
from tooltunnel.transport.auth import generate_token

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2


def load_settings(cls: type, **overrides: Any):
    """Build settings, letting non-None CLI values override the environment.

    Raises:
        ConfigError: If a value is invalid
    """
    try:
        return cls(**{key: value for key, value in overrides.items() if value is not None})
    except PydanticValidationError as e:
        raise ConfigError(f"Invalid settings: {e}") from e


def reload_catalog(store: CatalogStore, path: str) -> bool:
    """Reload the catalog file; on error the current catalog stays active."""
    try:
        catalog = load_catalog(path)
    except ConfigError as e:
        logger.error(f"Catalog reload failed, keeping current catalog: {e}")
        return False
    store.replace(catalog)
    return True


def install_reload_handler(store: CatalogStore, path: str) -> None:
    """Reload the catalog on SIGHUP (POSIX only)."""
    if not hasattr(signal, "SIGHUP"):
        return
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGHUP, reload_catalog, store, path)


def resolve_token(args: argparse.Namespace, settings: TunnelSettings) -> str | None:
    if args.no_auth:
        return None
    return args.token or settings.auth_token or generate_token()


def print_endpoint(url: str, token: str | None) -> None:
    """Print connection details for the operator on stdout."""
    base = url.rstrip("/")
    ws_base = base.replace("https://", "wss://", 1).replace("http://", "ws://", 1)
    print(f"Tunnel ready: {base}/sse")
    print(f"  Streamable HTTP: {base}/mcp")
    print(f"  WebSocket:       {ws_base}/ws")
    if token:
        print(f"  Bearer token:    {token}")
    else:
        print("  Authentication:  disabled")
    sys.stdout.flush()


def build_runtime(settings: TunnelSettings) -> tuple[CatalogStore, ConnectionHub]:
    store = CatalogStore(load_catalog(settings.catalog_path))
    hub = ConnectionHub(store, ToolExecutor(settings))
    return store, hub


async def run_serve(settings: TunnelSettings, token: str | None) -> int:
    store, hub = build_runtime(settings)
    client = RelayClient(
        hub,
        settings,
        auth_token=token,
        on_registered=lambda endpoint: print_endpoint(endpoint.public_url, token),
    )

    loop = asyncio.get_running_loop()
    install_reload_handler(store, settings.catalog_path)
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.ensure_future(client.close()))

    try:
        await client.run()
    except EndpointChangedError as e:
        logger.error(f"Public endpoint changed, agents must be reconfigured: {e.message}")
        print(f"FATAL: {e.message}", file=sys.stderr)
        return EXIT_FAILURE
    except (TransportError, RelayError) as e:
        logger.error(f"Relay link failed: {e}")
        print(f"Relay link failed: {e.message}", file=sys.stderr)
        return EXIT_FAILURE
    finally:
        await client.close()
        hub.shutdown()
    return EXIT_OK


async def run_local(settings: TunnelSettings, token: str | None) -> int:
    store, hub = build_runtime(settings)
    app = create_transport_app(
        hub, auth_token=token, session_idle_timeout=settings.session_idle_timeout
    )
    install_reload_handler(store, settings.catalog_path)

    config = uvicorn.Config(
        app,
        host=settings.local_host,
        port=settings.local_port,
        log_config=None,
        access_log=False,
    )
    print_endpoint(f"http://{settings.local_host}:{settings.local_port}", token)
    await uvicorn.Server(config).serve()
    return EXIT_OK


def cmd_serve(args: argparse.Namespace) -> int:
    settings = load_settings(
        TunnelSettings,
        catalog_path=args.catalog,
        relay_url=args.relay_url,
        relay_secret=args.relay_secret,
        subdomain=args.subdomain,
    )
    return asyncio.run(run_serve(settings, resolve_token(args, settings)))


def cmd_local(args: argparse.Namespace) -> int:
    settings = load_settings(
        TunnelSettings,
        catalog_path=args.catalog,
        local_host=args.host,
        local_port=args.port,
    )
    return asyncio.run(run_local(settings, resolve_token(args, settings)))


def cmd_relay(args: argparse.Namespace) -> int:
    settings = load_settings(
        RelaySettings,
        host=args.host,
        port=args.port,
        public_domain=args.public_domain,
        public_scheme=args.public_scheme,
        registration_secret=args.registration_secret,
    )
    app = create_relay_app(RelayService(settings))
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None, access_log=False)
    return EXIT_OK


def cmd_check(args: argparse.Namespace) -> int:
    path = args.catalog or load_settings(TunnelSettings).catalog_path
    catalog = load_catalog(path)
    if args.json:
        print(json.dumps({"tools": catalog.list()}, indent=2))
        return EXIT_OK
    print(f"{path}: {len(catalog)} tools OK")
    for tool in catalog:
        form = tool.execution.form if tool.execution.kind == "shell" else tool.execution.method
        print(f"  {tool.name:<24} {tool.execution.kind}/{form}")
    return EXIT_OK


def cmd_probe(args: argparse.Namespace) -> int:
    try:
        result = asyncio.run(probe(args.url, token=args.token, timeout=args.timeout))
    except TransportError as e:
        print(f"Probe failed: {e.message}", file=sys.stderr)
        return EXIT_FAILURE
    server = result.server_info.get("name", "unknown")
    print(f"OK {result.url} (server {server}, protocol {result.protocol_version})")
    print(f"  {len(result.tools)} tools: {', '.join(result.tools)}")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tooltunnel", description="Expose local tools to remote AI agents over MCP"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument("--log-text", action="store_true", help="Human-readable log lines")
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Publish the catalog through a relay")
    serve.add_argument("--catalog", help="Catalog file (yaml, json or toml)")
    serve.add_argument("--relay-url", help="Relay WebSocket URL")
    serve.add_argument("--relay-secret", help="Relay registration secret")
    serve.add_argument("--subdomain", help="Requested public subdomain")
    serve.add_argument("--token", help="Bearer token for agents (generated if omitted)")
    serve.add_argument("--no-auth", action="store_true", help="Do not require a bearer token")
    serve.set_defaults(handler=cmd_serve)

    local = commands.add_parser("local", help="Serve the catalog on a local port")
    local.add_argument("--catalog", help="Catalog file (yaml, json or toml)")
    local.add_argument("--host", help="Bind host (default: 127.0.0.1)")
    local.add_argument("--port", type=int, help="Bind port (default: 8765)")
    local.add_argument("--token", help="Bearer token for agents (generated if omitted)")
    local.add_argument("--no-auth", action="store_true", help="Do not require a bearer token")
    local.set_defaults(handler=cmd_local)

    relay = commands.add_parser("relay", help="Run the relay server")
    relay.add_argument("--host", help="Bind host (default: 0.0.0.0)")
    relay.add_argument("--port", type=int, help="Bind port (default: 8080)")
    relay.add_argument("--public-domain", help="Parent domain of tenant subdomains")
    relay.add_argument("--public-scheme", choices=["http", "https"], help="Public URL scheme")
    relay.add_argument("--registration-secret", help="Secret required from relay clients")
    relay.set_defaults(handler=cmd_relay)

    check = commands.add_parser("check", help="Validate a catalog file")
    check.add_argument("catalog", nargs="?", help="Catalog file (default: from settings)")
    check.add_argument("--json", action="store_true", help="Print the tools/list payload")
    check.set_defaults(handler=cmd_check)

    probe_cmd = commands.add_parser("probe", help="Probe a tunnel endpoint over SSE")
    probe_cmd.add_argument("url", help="Public (or local) tunnel URL")
    probe_cmd.add_argument("--token", help="Bearer token")
    probe_cmd.add_argument("--timeout", type=float, default=10.0, help="Seconds (default: 10)")
    probe_cmd.set_defaults(handler=cmd_probe)

    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point.

    Returns:
        Exit code: 0 clean, 1 runtime failure, 2 configuration error
    """
    args = build_parser().parse_args(argv)

    try:
        defaults = load_settings(RelaySettings if args.command == "relay" else TunnelSettings)
        setup_logging(
            level=args.log_level or defaults.log_level,
            json_format=defaults.log_json and not args.log_text,
        )
        return args.handler(args)
    except ConfigError as e:
        logger.error(f"Configuration error: {e.message}")
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return EXIT_CONFIG
    except KeyboardInterrupt:
        return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
