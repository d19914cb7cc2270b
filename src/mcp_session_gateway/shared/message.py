"""Message wrapper with metadata support.

This module defines a wrapper type that combines JSONRPCMessage with metadata
so the transports can route server messages to the right HTTP stream.
"""

from dataclasses import dataclass
from typing import Any

from mcp_session_gateway.types import (
    JSONRPCErrorResponse,
    JSONRPCMessage,
    JSONRPCResultResponse,
    RequestId,
)


@dataclass
class ServerMessageMetadata:
    """Metadata specific to server messages."""

    related_request_id: RequestId | None = None
    # Transport-specific request context (the starlette Request that carried
    # the message). Typed as Any because engines are transport-agnostic.
    request_context: Any = None


@dataclass
class SessionMessage:
    """A message with specific metadata for transport-specific features."""

    message: JSONRPCMessage
    metadata: ServerMessageMetadata | None = None

    @property
    def related_request_id(self) -> RequestId | None:
        """The client request this message belongs to, if any.

        Responses belong to the request they answer; other messages only when
        the engine tagged them with ``related_request_id``.
        """
        if isinstance(self.message, JSONRPCResultResponse | JSONRPCErrorResponse):
            return self.message.id
        if self.metadata is not None:
            return self.metadata.related_request_id
        return None
