"""
Configuration module.

Usage:
    from tooltunnel.config import TunnelSettings

    settings = TunnelSettings(relay_url="wss://relay.example/relay/connect")
"""

from tooltunnel.config.settings import RelaySettings, TunnelSettings

__all__ = ["RelaySettings", "TunnelSettings"]
