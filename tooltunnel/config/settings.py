"""Settings for the tunnel CLI and the relay server.

Values come from environment variables (and an optional ``.env`` file);
CLI flags override them by passing keyword arguments to the constructors.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class TunnelSettings(BaseSettings):
    """Settings for the local tunnel process.

    Attributes:
        relay_url: WebSocket URL of the relay server's client endpoint
        relay_secret: Shared secret required by the relay for registration
        catalog_path: Path of the tool catalog document
        auth_token: Bearer token agents must present (None disables auth)
        subdomain: Requested public subdomain (relay may assign another)
        default_timeout: Tool timeout in seconds when a tool sets none
        kill_grace_period: Seconds between SIGTERM and SIGKILL on timeout
        max_output_bytes: Per-stream cap on captured tool output
        heartbeat_interval: Seconds between relay heartbeat pings
        connect_attempts: Attempts for the initial relay connection
        reconnect_max_wait: Upper bound of the reconnect backoff in seconds
        reconnect_deadline: Seconds to keep retrying after a drop
        session_idle_timeout: Seconds before an abandoned ``/mcp`` session is closed
        local_host: Bind host for ``tooltunnel local``
        local_port: Bind port for ``tooltunnel local``
        log_level: Logging level
        log_json: Emit JSON log lines
    """

    relay_url: str = "ws://localhost:8080/relay/connect"
    relay_secret: str | None = None
    catalog_path: str = "tools.yaml"
    auth_token: str | None = None
    subdomain: str | None = None

    default_timeout: float = Field(default=30.0, gt=0)
    kill_grace_period: float = Field(default=2.0, ge=0)
    max_output_bytes: int = Field(default=1024 * 1024, gt=0)

    heartbeat_interval: float = Field(default=15.0, gt=0)
    connect_attempts: int = Field(default=5, ge=1)
    reconnect_max_wait: float = Field(default=30.0, gt=0)
    reconnect_deadline: float = Field(default=300.0, gt=0)
    session_idle_timeout: float = Field(default=600.0, gt=0)

    local_host: str = "127.0.0.1"
    local_port: int = 8765

    log_level: str = "INFO"
    log_json: bool = True

    model_config = SettingsConfigDict(
        env_prefix="TOOLTUNNEL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


class RelaySettings(BaseSettings):
    """Settings for the relay server.

    Attributes:
        host: Bind host
        port: Bind port
        public_domain: Parent domain of tenant subdomains
        public_scheme: Scheme used when building public URLs
        registration_secret: Shared secret required from relay clients
        lease_ttl: Seconds a subdomain stays reserved after a disconnect
        request_timeout: Deadline for a forwarded request in seconds
        max_request_timeout: Upper bound on the longer deadline a tunnel may
            ask for when its tools declare long timeouts
        register_timeout: Seconds a new client has to send ``register``
        stream_queue_size: Bound of each agent stream's outbound queue
        sse_ping_interval: Seconds between SSE keep-alive comments
        session_idle_timeout: Seconds before an abandoned ``/mcp`` session is closed
        log_level: Logging level
        log_json: Emit JSON log lines
    """

    host: str = "0.0.0.0"
    port: int = 8080
    public_domain: str = "localhost:8080"
    public_scheme: str = "https"
    registration_secret: str | None = None

    lease_ttl: float = Field(default=300.0, gt=0)
    request_timeout: float = Field(default=120.0, gt=0)
    max_request_timeout: float = Field(default=3600.0, gt=0)
    register_timeout: float = Field(default=10.0, gt=0)
    stream_queue_size: int = Field(default=100, gt=0)
    sse_ping_interval: float = Field(default=15.0, gt=0)
    session_idle_timeout: float = Field(default=600.0, gt=0)

    log_level: str = "INFO"
    log_json: bool = True

    model_config = SettingsConfigDict(
        env_prefix="TOOLTUNNEL_RELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

