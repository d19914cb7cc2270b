"""
SSE Server Transport Module

This module implements the legacy two-channel transport for a single session:
a long-lived Server-Sent Events stream for server-to-client messages, paired
with a POST endpoint for client-to-server messages.

The first event on the stream is an ``endpoint`` event telling the client
where to POST its messages; the session id travels in the ``sessionId`` query
parameter because clients of this transport cannot set custom headers.

Example usage:
```
    # Create a transport for a new session
    sse = SseServerTransport("/messages", session_id=generate_session_id())

    # Create Starlette routes for SSE and message handling
    routes = [
        Route("/sse", endpoint=handle_sse, methods=["GET"]),
        Route("/messages", endpoint=handle_messages, methods=["POST"]),
    ]

    # Define handler functions
    async def handle_sse(request):
        async with sse.connect_sse(
            request.scope, request.receive, request._send
        ) as streams:
            await engine.run(streams[0], streams[1])
```
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import Any
from urllib.parse import quote, urlencode

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from pydantic import ValidationError
from sse_starlette import EventSourceResponse
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from mcp_session_gateway.exceptions import TransportClosedError
from mcp_session_gateway.server.session_id import validate_session_id
from mcp_session_gateway.server.streamable_http import CONTENT_TYPE_JSON, MAXIMUM_MESSAGE_SIZE, sse_event
from mcp_session_gateway.shared.lifecycle import CloseCallback, CloseSignal
from mcp_session_gateway.shared.message import ServerMessageMetadata, SessionMessage
from mcp_session_gateway.types import JSONRPCMessageAdapter

logger = logging.getLogger(__name__)

SESSION_ID_QUERY_PARAM = "sessionId"


class SseServerTransport:
    """
    SSE server transport for one legacy session.

    The session id is fixed at construction time: the client learns it from
    the endpoint event as soon as the stream opens. The transport closes when
    the client disconnects from the stream or the protocol engine stops.
    """

    _read_stream_writer: MemoryObjectSendStream[SessionMessage | Exception] | None

    def __init__(self, endpoint: str, session_id: str) -> None:
        """
        Creates a new SSE server transport for one session.

        Args:
            endpoint: Path the client POSTs its messages to, without query string.
            session_id: Id of the session served by this transport.
        """
        self._endpoint = endpoint
        self.session_id = validate_session_id(session_id)
        self._read_stream_writer = None
        self._close_signal = CloseSignal()
        logger.debug(f"SseServerTransport initialized with endpoint: {endpoint}")

    @property
    def is_closed(self) -> bool:
        return self._close_signal.is_set

    @property
    def is_connected(self) -> bool:
        return self._read_stream_writer is not None

    def on_close(self, callback: CloseCallback) -> None:
        """Run ``callback`` once when the transport closes."""
        self._close_signal.subscribe(callback)

    async def wait_closed(self) -> None:
        await self._close_signal.wait()

    async def close(self) -> None:
        """Tear the session down. Safe to call any number of times."""
        if self._close_signal.is_set:
            return
        logger.info(f"Closing SSE transport for session {self.session_id}")
        if self._read_stream_writer is not None:
            self._read_stream_writer.close()
        self._close_signal.fire()

    def endpoint_url(self, root_path: str = "") -> str:
        """The URL announced to the client in the endpoint event."""
        path = quote(f"{root_path.rstrip('/')}{self._endpoint}")
        return f"{path}?{urlencode({SESSION_ID_QUERY_PARAM: self.session_id})}"

    @asynccontextmanager
    async def connect_sse(
        self, scope: Scope, receive: Receive, send: Send
    ) -> AsyncGenerator[
        tuple[
            MemoryObjectReceiveStream[SessionMessage | Exception],
            MemoryObjectSendStream[SessionMessage],
        ],
        None,
    ]:
        """
        Open the SSE stream on this connection and yield the engine's streams.

        The stream stays open until the client disconnects or the write
        stream is closed. Leaving the context closes the transport.
        """
        if scope["type"] != "http":
            logger.error("connect_sse received non-HTTP request")
            raise ValueError("connect_sse can only handle HTTP requests")
        if self.is_closed:
            raise TransportClosedError(self.session_id)
        if self._read_stream_writer is not None:
            raise RuntimeError("SSE stream is already connected")

        logger.debug("Setting up SSE connection")
        read_stream_writer, read_stream = anyio.create_memory_object_stream[SessionMessage | Exception](0)
        write_stream, write_stream_reader = anyio.create_memory_object_stream[SessionMessage](0)
        sse_stream_writer, sse_stream_reader = anyio.create_memory_object_stream[dict[str, Any]](0)
        self._read_stream_writer = read_stream_writer

        endpoint_url = self.endpoint_url(scope.get("root_path", ""))
        logger.debug(f"Session {self.session_id} announces endpoint {endpoint_url}")

        async def sse_writer():
            async with sse_stream_writer, write_stream_reader:
                await sse_stream_writer.send({"event": "endpoint", "data": endpoint_url})
                async for session_message in write_stream_reader:
                    logger.debug(f"Sending message via SSE: {session_message}")
                    await sse_stream_writer.send(sse_event(session_message))

        async with anyio.create_task_group() as tg:

            async def response_wrapper(scope: Scope, receive: Receive, send: Send):
                """
                The EventSourceResponse returns once the client disconnects or
                the engine closes its write stream; either way the session ends.
                """
                try:
                    await EventSourceResponse(content=sse_stream_reader, data_sender_callable=sse_writer)(
                        scope, receive, send
                    )
                finally:
                    logger.debug(f"SSE stream for session {self.session_id} ended")
                    await self.close()

            tg.start_soon(response_wrapper, scope, receive, send)

            try:
                yield (read_stream, write_stream)
            finally:
                await self.close()
                write_stream.close()
                read_stream.close()
                tg.cancel_scope.cancel()

    async def handle_post_message(self, scope: Scope, receive: Receive, send: Send) -> None:
        """
        Accept one client message for this session.

        Raises:
            TransportClosedError: if the transport has been closed. Nothing has
                been sent on ``send`` in that case.
        """
        if self.is_closed:
            raise TransportClosedError(self.session_id)

        request = Request(scope, receive)
        writer = self._read_stream_writer
        if writer is None:
            response = Response("SSE connection not established", status_code=HTTPStatus.INTERNAL_SERVER_ERROR)
            await response(scope, receive, send)
            return

        content_type = request.headers.get("content-type", "")
        if not content_type.lower().startswith(CONTENT_TYPE_JSON):
            response = Response("Invalid Content-Type header", status_code=HTTPStatus.BAD_REQUEST)
            await response(scope, receive, send)
            return

        body = await request.body()
        if len(body) > MAXIMUM_MESSAGE_SIZE:
            response = Response("Payload Too Large", status_code=HTTPStatus.REQUEST_ENTITY_TOO_LARGE)
            await response(scope, receive, send)
            return
        logger.debug(f"Received JSON: {body}")

        try:
            message = JSONRPCMessageAdapter.validate_json(body)
            logger.debug(f"Validated client message: {message}")
        except ValidationError as err:
            logger.warning(f"Failed to parse message for session {self.session_id}: {err}")
            response = Response("Could not parse message", status_code=HTTPStatus.BAD_REQUEST)
            await response(scope, receive, send)
            await self._send_to_engine(writer, err)
            return

        response = Response("Accepted", status_code=HTTPStatus.ACCEPTED)
        await response(scope, receive, send)
        await self._send_to_engine(
            writer, SessionMessage(message, metadata=ServerMessageMetadata(request_context=request))
        )

    async def _send_to_engine(
        self,
        writer: MemoryObjectSendStream[SessionMessage | Exception],
        item: SessionMessage | Exception,
    ) -> None:
        try:
            await writer.send(item)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            logger.warning(f"Session {self.session_id} closed before the message could be delivered")
