"""Tests for tunnel and relay settings."""

import pytest
from pydantic import ValidationError

from tooltunnel.config import RelaySettings, TunnelSettings


class TestTunnelSettings:
    """Test TunnelSettings defaults and environment overrides."""

    def test_defaults(self, monkeypatch):
        for name in ("TOOLTUNNEL_RELAY_URL", "TOOLTUNNEL_CATALOG_PATH", "TOOLTUNNEL_AUTH_TOKEN"):
            monkeypatch.delenv(name, raising=False)
        settings = TunnelSettings(_env_file=None)

        assert settings.catalog_path == "tools.yaml"
        assert settings.auth_token is None
        assert settings.default_timeout == 30.0
        assert settings.kill_grace_period == 2.0
        assert settings.log_json is True

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("TOOLTUNNEL_RELAY_URL", "wss://relay.example.com/relay/connect")
        monkeypatch.setenv("TOOLTUNNEL_DEFAULT_TIMEOUT", "12.5")
        settings = TunnelSettings(_env_file=None)

        assert settings.relay_url == "wss://relay.example.com/relay/connect"
        assert settings.default_timeout == 12.5

    def test_keyword_overrides_environment(self, monkeypatch):
        monkeypatch.setenv("TOOLTUNNEL_CATALOG_PATH", "env.yaml")
        settings = TunnelSettings(_env_file=None, catalog_path="cli.yaml")
        assert settings.catalog_path == "cli.yaml"

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ValidationError):
            TunnelSettings(_env_file=None, default_timeout=0)


class TestRelaySettings:
    """Test RelaySettings."""

    def test_environment_prefix(self, monkeypatch):
        monkeypatch.setenv("TOOLTUNNEL_RELAY_PUBLIC_DOMAIN", "relay.example.com")
        monkeypatch.setenv("TOOLTUNNEL_RELAY_LEASE_TTL", "60")
        settings = RelaySettings(_env_file=None)

        assert settings.public_domain == "relay.example.com"
        assert settings.lease_ttl == 60.0

    def test_rejects_zero_queue(self):
        with pytest.raises(ValidationError):
            RelaySettings(_env_file=None, stream_queue_size=0)


    def test_session_and_deadline_limits(self, monkeypatch):
        monkeypatch.setenv("TOOLTUNNEL_RELAY_SESSION_IDLE_TIMEOUT", "30")
        settings = RelaySettings(_env_file=None)

        assert settings.session_idle_timeout == 30.0
        assert settings.max_request_timeout >= settings.request_timeout
        with pytest.raises(ValidationError):
            RelaySettings(_env_file=None, session_idle_timeout=0)
