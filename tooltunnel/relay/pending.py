"""Routing table of requests forwarded to a relay client.

Each tenant connection owns one ``PendingTable``; a response arriving on a
connection can therefore only resolve requests that were sent on it.
The table is only touched from the event loop, so it needs no lock.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from tooltunnel.exceptions import ErrorKind, ProtocolError, TunnelError

logger = logging.getLogger(__name__)


@dataclass
class PendingRequest:
    """A forwarded request awaiting its response."""

    request_id: str
    stream_id: str
    method: str | None
    tool_name: str | None
    arguments: dict[str, Any]
    created_at: float
    deadline: float
    future: asyncio.Future = field(repr=False)

    @property
    def remaining(self) -> float:
        return max(self.deadline - time.monotonic(), 0.0)


class PendingTable:
    """``request_id -> future`` for one tenant connection."""

    def __init__(self):
        self._entries: dict[str, PendingRequest] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._entries

    def get(self, request_id: str) -> PendingRequest | None:
        return self._entries.get(request_id)

    def register(
        self,
        stream_id: str,
        message: dict[str, Any],
        timeout: float,
        request_id: str | None = None,
    ) -> PendingRequest:
        """
        Add a request.

        Args:
            stream_id: Agent stream the message came from
            message: JSON-RPC message being forwarded
            timeout: Seconds until the request fails with ``timeout``
            request_id: Explicit id (a fresh one is generated otherwise)

        Raises:
            ProtocolError: If ``request_id`` is already pending
        """
        request_id = request_id or uuid.uuid4().hex
        if request_id in self._entries:
            raise ProtocolError(f"Request id '{request_id}' is already pending")

        params = message.get("params") if isinstance(message.get("params"), dict) else {}
        method = message.get("method")
        is_call = method == "tools/call"
        now = time.monotonic()
        pending = PendingRequest(
            request_id=request_id,
            stream_id=stream_id,
            method=method,
            tool_name=params.get("name") if is_call else None,
            arguments=(params.get("arguments") or {}) if is_call else {},
            created_at=now,
            deadline=now + timeout,
            future=asyncio.get_running_loop().create_future(),
        )
        self._entries[request_id] = pending
        return pending

    def resolve(self, request_id: str, message: dict[str, Any] | None) -> bool:
        """Complete a request with the client's response. False if unknown."""
        pending = self._entries.get(request_id)
        if pending is None or pending.future.done():
            return False
        pending.future.set_result(message)
        return True

    def fail(self, request_id: str, error: TunnelError) -> bool:
        pending = self._entries.get(request_id)
        if pending is None or pending.future.done():
            return False
        pending.future.set_exception(error)
        return True

    def fail_all(self, error: TunnelError) -> int:
        """Fail every pending request; returns how many were failed."""
        failed = 0
        for request_id in list(self._entries):
            if self.fail(request_id, error):
                failed += 1
        return failed

    async def wait(self, pending: PendingRequest) -> dict[str, Any] | None:
        """
        Wait for a request's response until its deadline.

        The entry is removed however the wait ends.

        Raises:
            TunnelError: ``timeout`` when the deadline passes, or the error
                the request was failed with
        """
        try:
            async with asyncio.timeout(pending.remaining):
                return await pending.future
        except TimeoutError:
            raise TunnelError(
                f"No response within {pending.deadline - pending.created_at:g}s",
                kind=ErrorKind.TIMEOUT,
                details={"tool": pending.tool_name} if pending.tool_name else None,
            ) from None
        finally:
            self._entries.pop(pending.request_id, None)

    def discard(self, request_id: str) -> None:
        """Drop a request that will never be waited on."""
        pending = self._entries.pop(request_id, None)
        if pending is not None and not pending.future.done():
            pending.future.cancel()
