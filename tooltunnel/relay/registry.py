"""Subdomain registry of the relay server.

The registry maps public subdomains to live tenant connections. It is an
injected dependency of ``RelayService`` so a shared store can replace the
in-memory implementation when the relay runs as several replicas.
"""

from __future__ import annotations

import asyncio
import logging
import re
import secrets
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from tooltunnel.exceptions import ErrorKind, RelayError

if TYPE_CHECKING:
    from tooltunnel.relay.service import TenantConnection

logger = logging.getLogger(__name__)

SUBDOMAIN_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9-]{1,30}[a-z0-9])$")


@dataclass
class Lease:
    """Reservation of a subdomain.

    ``expires_at`` is None while a connection holds the subdomain and is set
    when it disconnects; until then a client presenting ``key`` gets the
    same subdomain back.
    """

    subdomain: str
    key: str
    connection_id: str
    expires_at: float | None = None


@dataclass
class Registration:
    """Result of ``ConnectionRegistry.register``."""

    subdomain: str
    lease_key: str
    displaced: TenantConnection | None = None


class ConnectionRegistry(ABC):
    """subdomain -> tenant connection."""

    @abstractmethod
    async def register(
        self,
        connection: TenantConnection,
        requested: str | None = None,
        lease_key: str | None = None,
    ) -> Registration:
        """
        Assign a subdomain to a connection.

        A requested subdomain is granted when it is free, or when
        ``lease_key`` matches its lease (reconnect). In the latter case a
        connection still holding it is returned as ``displaced``.
        Otherwise a random subdomain is assigned.
        """

    @abstractmethod
    async def unregister(self, connection: TenantConnection) -> bool:
        """Remove the mapping if it still points at ``connection``."""

    @abstractmethod
    def get(self, subdomain: str) -> TenantConnection | None:
        """Look up the live connection for a subdomain."""

    @abstractmethod
    def __len__(self) -> int:
        """Number of live connections."""


class InMemoryConnectionRegistry(ConnectionRegistry):
    """
    Process-local registry.

    Writes are serialized with an ``asyncio.Lock``; ``get`` is a plain dict
    read and never waits.

    Example:
        registry = InMemoryConnectionRegistry(lease_ttl=300)
        registration = await registry.register(connection, requested="demo")
        assert registry.get(registration.subdomain) is connection
    """

    def __init__(self, lease_ttl: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.lease_ttl = lease_ttl
        self._clock = clock
        self._connections: dict[str, TenantConnection] = {}
        self._leases: dict[str, Lease] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._connections)

    def get(self, subdomain: str) -> TenantConnection | None:
        return self._connections.get(subdomain.lower())

    def lease(self, subdomain: str) -> Lease | None:
        return self._leases.get(subdomain)

    def _expire_leases(self) -> None:
        now = self._clock()
        for subdomain, lease in list(self._leases.items()):
            if lease.expires_at is not None and lease.expires_at <= now:
                del self._leases[subdomain]
                logger.debug(f"Lease for '{subdomain}' expired", extra={"subdomain": subdomain})

    def _random_subdomain(self) -> str:
        while True:
            candidate = secrets.token_hex(4)
            if candidate not in self._connections and candidate not in self._leases:
                return candidate

    async def register(
        self,
        connection: TenantConnection,
        requested: str | None = None,
        lease_key: str | None = None,
    ) -> Registration:
        if requested is not None:
            requested = requested.lower()
            if not SUBDOMAIN_PATTERN.match(requested):
                raise RelayError(
                    f"Invalid subdomain '{requested}' (3-32 chars of a-z, 0-9 and '-')",
                    kind=ErrorKind.VALIDATION,
                    status_code=400,
                )

        async with self._lock:
            self._expire_leases()

            subdomain = None
            key = None
            displaced = None
            if requested is not None:
                lease = self._leases.get(requested)
                holder = self._connections.get(requested)
                if lease is not None and lease_key is not None and secrets.compare_digest(
                    lease.key, lease_key
                ):
                    subdomain, key, displaced = requested, lease.key, holder
                elif lease is None and holder is None:
                    subdomain = requested
                else:
                    logger.info(
                        f"Requested subdomain '{requested}' is taken, assigning another",
                        extra={"connection_id": connection.connection_id},
                    )

            if subdomain is None:
                subdomain = self._random_subdomain()
            if key is None:
                key = secrets.token_urlsafe(24)

            self._connections[subdomain] = connection
            self._leases[subdomain] = Lease(subdomain, key, connection.connection_id)
            connection.subdomain = subdomain
            connection.lease_key = key

        logger.info(
            f"Registered '{subdomain}'",
            extra={"subdomain": subdomain, "connection_id": connection.connection_id},
        )
        return Registration(subdomain=subdomain, lease_key=key, displaced=displaced)

    async def unregister(self, connection: TenantConnection) -> bool:
        async with self._lock:
            subdomain = connection.subdomain
            if self._connections.get(subdomain) is not connection:
                return False
            del self._connections[subdomain]
            lease = self._leases.get(subdomain)
            if lease is not None and lease.connection_id == connection.connection_id:
                lease.expires_at = self._clock() + self.lease_ttl
        logger.info(
            f"Unregistered '{subdomain}' (lease kept {self.lease_ttl:g}s)",
            extra={"subdomain": subdomain, "connection_id": connection.connection_id},
        )
        return True
