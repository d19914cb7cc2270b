"""Per-mode session registries.

A registry maps a session id to the live transport serving it. It holds a
lookup reference only: transports remove their own entry through a close
subscription registered when they are created.

Registries are consulted from a single event loop, where each operation is
atomic. They carry no lock; sharing one across OS threads would need a lock
around every operation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

from mcp_session_gateway.exceptions import SessionConflictError

if TYPE_CHECKING:
    from mcp_session_gateway.server.sse import SseServerTransport
    from mcp_session_gateway.server.streamable_http import StreamableHTTPServerTransport

logger = logging.getLogger(__name__)

TransportT = TypeVar("TransportT")


class SessionRegistry(Generic[TransportT]):
    """Keyed store of live transports for one transport mode."""

    def __init__(self, mode: str):
        self.mode = mode
        self._transports: dict[str, TransportT] = {}

    def put(self, session_id: str, transport: TransportT) -> None:
        """Register ``transport`` under a fresh ``session_id``.

        Raises:
            SessionConflictError: if the id is already registered. Entries are
                never overwritten.
        """
        if session_id in self._transports:
            raise SessionConflictError(session_id, self.mode)
        self._transports[session_id] = transport
        logger.debug(f"Registered {self.mode} session {session_id} ({len(self._transports)} active)")

    def get(self, session_id: str | None) -> TransportT | None:
        if session_id is None:
            return None
        return self._transports.get(session_id)

    def remove(self, session_id: str | None, transport: TransportT | None = None) -> TransportT | None:
        """Drop the entry for ``session_id``; a missing entry is not an error.

        When ``transport`` is given the entry is only dropped if it still
        points at that transport.
        """
        if session_id is None:
            return None
        current = self._transports.get(session_id)
        if current is None or (transport is not None and current is not transport):
            return None
        del self._transports[session_id]
        logger.debug(f"Removed {self.mode} session {session_id} ({len(self._transports)} active)")
        return current

    def snapshot(self) -> list[TransportT]:
        return list(self._transports.values())

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._transports

    def __len__(self) -> int:
        return len(self._transports)


def _streamable_registry() -> SessionRegistry[StreamableHTTPServerTransport]:
    return SessionRegistry("streamable-http")


def _sse_registry() -> SessionRegistry[SseServerTransport]:
    return SessionRegistry("sse")


@dataclass
class SessionRegistries:
    """The two independent session namespaces served by one gateway."""

    streamable: SessionRegistry[StreamableHTTPServerTransport] = field(default_factory=_streamable_registry)
    sse: SessionRegistry[SseServerTransport] = field(default_factory=_sse_registry)
