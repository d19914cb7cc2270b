"""
StreamableHTTP Server Transport Module

This module implements the server side of the Streamable HTTP transport for a
single session. One endpoint accepts POST (client messages), GET (standalone
server-push stream) and DELETE (session termination).

Client requests are answered either with an SSE stream carrying related
notifications and the final responses, or with a single JSON body when JSON
response mode is enabled.
"""

import json
import logging
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import Any

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from pydantic import ValidationError
from sse_starlette import EventSourceResponse
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import Receive, Scope, Send

from mcp_session_gateway.exceptions import TransportClosedError
from mcp_session_gateway.server.session_id import SessionIdGenerator, generate_session_id, validate_session_id
from mcp_session_gateway.shared.lifecycle import CloseCallback, CloseSignal
from mcp_session_gateway.shared.message import ServerMessageMetadata, SessionMessage
from mcp_session_gateway.types import (
    CONNECTION_CLOSED,
    INTERNAL_ERROR,
    INVALID_REQUEST,
    PARSE_ERROR,
    ErrorData,
    JSONRPCBatchAdapter,
    JSONRPCErrorResponse,
    JSONRPCMessage,
    JSONRPCMessageAdapter,
    JSONRPCRequest,
    JSONRPCResponse,
    JSONRPCResultResponse,
    RequestId,
    dump_message,
    error_body,
    is_initialize_request,
)

logger = logging.getLogger(__name__)

# Maximum size for incoming messages
MAXIMUM_MESSAGE_SIZE = 4 * 1024 * 1024  # 4MB

# Header names
MCP_SESSION_ID_HEADER = "mcp-session-id"

# Content types
CONTENT_TYPE_JSON = "application/json"
CONTENT_TYPE_SSE = "text/event-stream"

SessionInitializedCallback = Callable[[str], None]


def accepts(accept_header: str, media_type: str) -> bool:
    """Whether an ``Accept`` header admits ``media_type``, wildcards included."""
    main_type = media_type.split("/")[0]
    for part in accept_header.split(","):
        candidate = part.split(";")[0].strip().lower()
        if candidate in (media_type, "*/*", f"{main_type}/*"):
            return True
    return False


def sse_event(session_message: SessionMessage) -> dict[str, Any]:
    return {
        "event": "message",
        "data": session_message.message.model_dump_json(by_alias=True, exclude_none=True),
    }


class StreamableHTTPServerTransport:
    """
    HTTP server transport with event streaming support for one session.

    The session id is not known up front: it is produced by
    ``session_id_generator`` while the transport handles the ``initialize``
    request, and reported through ``on_session_initialized`` before the
    request is forwarded to the protocol engine.
    """

    # Writer feeding client messages to the protocol engine
    _read_stream_writer: MemoryObjectSendStream[SessionMessage | Exception] | None
    # Streams of in-flight POST requests, keyed by JSON-RPC request id
    _request_streams: dict[RequestId, MemoryObjectSendStream[SessionMessage]]
    # Stream of the standalone GET channel
    _standalone_stream: MemoryObjectSendStream[SessionMessage] | None

    def __init__(
        self,
        session_id_generator: SessionIdGenerator = generate_session_id,
        on_session_initialized: SessionInitializedCallback | None = None,
        is_json_response_enabled: bool = False,
    ):
        """
        Initialize a new StreamableHTTP server transport.

        Args:
            session_id_generator: Produces the id of this session when the
                initialize request arrives. Ids must be unpredictable and use
                visible ASCII only.
            on_session_initialized: Called with the new session id once it has
                been assigned. Exceptions propagate to the caller of
                ``handle_request``.
            is_json_response_enabled: Answer requests with a JSON body instead
                of an SSE stream.
        """
        self._session_id_generator = session_id_generator
        self._on_session_initialized = on_session_initialized
        self.is_json_response_enabled = is_json_response_enabled
        self.mcp_session_id: str | None = None
        self._initialized = False
        self._close_signal = CloseSignal()
        self._read_stream_writer = None
        self._request_streams = {}
        self._standalone_stream = None

    @property
    def session_id(self) -> str | None:
        return self.mcp_session_id

    @property
    def is_closed(self) -> bool:
        return self._close_signal.is_set

    def on_close(self, callback: CloseCallback) -> None:
        """Run ``callback`` once when the transport closes."""
        self._close_signal.subscribe(callback)

    async def wait_closed(self) -> None:
        await self._close_signal.wait()

    async def close(self) -> None:
        """Tear the session down. Safe to call any number of times."""
        if self._close_signal.is_set:
            return
        logger.info(f"Closing streamable HTTP transport for session {self.mcp_session_id}")

        for stream in list(self._request_streams.values()):
            stream.close()
        self._request_streams.clear()

        if self._standalone_stream is not None:
            self._standalone_stream.close()
            self._standalone_stream = None

        # Ends the engine's read loop
        if self._read_stream_writer is not None:
            self._read_stream_writer.close()

        self._close_signal.fire()

    def _session_headers(self) -> dict[str, str]:
        if self.mcp_session_id is None:
            return {}
        return {MCP_SESSION_ID_HEADER: self.mcp_session_id}

    def _error_response(
        self,
        message: str,
        status_code: HTTPStatus,
        code: int = CONNECTION_CLOSED,
        headers: dict[str, str] | None = None,
    ) -> Response:
        return JSONResponse(
            error_body(code, message),
            status_code=status_code,
            headers={**self._session_headers(), **(headers or {})},
        )

    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        """
        ASGI application entry point that handles all HTTP requests of the session.

        Raises:
            TransportClosedError: if the transport has been closed. Nothing has
                been sent on ``send`` in that case.
        """
        if self.is_closed:
            raise TransportClosedError(self.mcp_session_id)
        if self._read_stream_writer is None:
            raise RuntimeError("No read stream writer available. Ensure connect() is called first.")

        request = Request(scope, receive)
        if request.method == "POST":
            await self._handle_post_request(scope, request, receive, send)
        elif request.method == "GET":
            await self._handle_get_request(scope, request, receive, send)
        elif request.method == "DELETE":
            await self._handle_delete_request(scope, request, receive, send)
        else:
            await self._handle_unsupported_request(scope, receive, send)

    async def _handle_post_request(self, scope: Scope, request: Request, receive: Receive, send: Send) -> None:
        """Handle POST requests containing one JSON-RPC message or a batch."""
        accept = request.headers.get("accept", "")
        if not accepts(accept, CONTENT_TYPE_JSON) or not accepts(accept, CONTENT_TYPE_SSE):
            response = self._error_response(
                "Not Acceptable: Client must accept both application/json and text/event-stream",
                HTTPStatus.NOT_ACCEPTABLE,
            )
            await response(scope, receive, send)
            return

        content_type = request.headers.get("content-type", "")
        if not content_type.lower().startswith(CONTENT_TYPE_JSON):
            response = self._error_response(
                "Unsupported Media Type: Content-Type must be application/json",
                HTTPStatus.UNSUPPORTED_MEDIA_TYPE,
            )
            await response(scope, receive, send)
            return

        body = await request.body()
        if len(body) > MAXIMUM_MESSAGE_SIZE:
            response = self._error_response(
                "Payload Too Large: Message exceeds maximum size",
                HTTPStatus.REQUEST_ENTITY_TOO_LARGE,
            )
            await response(scope, receive, send)
            return

        try:
            raw_message = json.loads(body)
        except ValueError as e:
            response = self._error_response(f"Parse error: {e}", HTTPStatus.BAD_REQUEST, PARSE_ERROR)
            await response(scope, receive, send)
            return

        is_batch = isinstance(raw_message, list)
        try:
            if is_batch:
                messages = JSONRPCBatchAdapter.validate_python(raw_message)
            else:
                messages = [JSONRPCMessageAdapter.validate_python(raw_message)]
        except ValidationError:
            response = self._error_response(
                "Invalid Request: Body is not a JSON-RPC message", HTTPStatus.BAD_REQUEST, INVALID_REQUEST
            )
            await response(scope, receive, send)
            return

        if not messages:
            response = self._error_response("Invalid Request: Empty batch", HTTPStatus.BAD_REQUEST, INVALID_REQUEST)
            await response(scope, receive, send)
            return

        if any(is_initialize_request(message) for message in messages):
            if self._initialized:
                response = self._error_response(
                    "Invalid Request: Server already initialized", HTTPStatus.BAD_REQUEST, INVALID_REQUEST
                )
                await response(scope, receive, send)
                return
            if len(messages) > 1:
                response = self._error_response(
                    "Invalid Request: Only one initialization request is allowed",
                    HTTPStatus.BAD_REQUEST,
                    INVALID_REQUEST,
                )
                await response(scope, receive, send)
                return
            self._initialize_session()
        elif (error_response := self._validate_session(request)) is not None:
            await error_response(scope, receive, send)
            return

        requests = [message for message in messages if isinstance(message, JSONRPCRequest)]

        # Notifications and responses only: acknowledge, then hand them over
        if not requests:
            response = Response(status_code=HTTPStatus.ACCEPTED, headers=self._session_headers())
            await response(scope, receive, send)
            await self._forward(messages, request)
            return

        request_ids = [message.id for message in requests]
        if len(set(request_ids)) != len(request_ids) or any(rid in self._request_streams for rid in request_ids):
            response = self._error_response(
                "Invalid Request: Duplicate request id", HTTPStatus.BAD_REQUEST, INVALID_REQUEST
            )
            await response(scope, receive, send)
            return

        # A stream registered after close() would never be closed
        if self.is_closed:
            raise TransportClosedError(self.mcp_session_id)

        stream_writer, stream_reader = anyio.create_memory_object_stream[SessionMessage](0)
        for request_id in request_ids:
            self._request_streams[request_id] = stream_writer

        try:
            if self.is_json_response_enabled:
                await self._respond_with_json(scope, receive, send, request, messages, request_ids, stream_reader, is_batch)
            else:
                await self._respond_with_sse(scope, receive, send, request, messages, request_ids, stream_reader)
        finally:
            for request_id in request_ids:
                if self._request_streams.get(request_id) is stream_writer:
                    del self._request_streams[request_id]
            stream_writer.close()
            stream_reader.close()

    def _initialize_session(self) -> None:
        self.mcp_session_id = validate_session_id(self._session_id_generator())
        self._initialized = True
        logger.info(f"Initialized streamable HTTP session {self.mcp_session_id}")
        if self._on_session_initialized is not None:
            self._on_session_initialized(self.mcp_session_id)

    def _validate_session(self, request: Request) -> Response | None:
        """Return an error response unless the request carries this session's id."""
        if not self._initialized:
            return self._error_response("Bad Request: Server not initialized", HTTPStatus.BAD_REQUEST)

        request_session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        if request_session_id is None:
            return self._error_response("Bad Request: Mcp-Session-Id header is required", HTTPStatus.BAD_REQUEST)

        if request_session_id != self.mcp_session_id:
            logger.debug(f"Rejected session ID {request_session_id} on session {self.mcp_session_id}")
            return self._error_response("Session not found", HTTPStatus.NOT_FOUND)

        return None

    async def _forward(self, messages: list[JSONRPCMessage], request: Request) -> None:
        """Hand client messages to the protocol engine."""
        writer = self._read_stream_writer
        assert writer is not None
        try:
            for message in messages:
                await writer.send(SessionMessage(message, metadata=ServerMessageMetadata(request_context=request)))
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            # The engine is gone; closing the transport ends any pending responses
            logger.warning(f"Session {self.mcp_session_id} stopped accepting messages")

    async def _respond_with_json(
        self,
        scope: Scope,
        receive: Receive,
        send: Send,
        request: Request,
        messages: list[JSONRPCMessage],
        request_ids: list[RequestId],
        stream_reader: MemoryObjectReceiveStream[SessionMessage],
        is_batch: bool,
    ) -> None:
        async with anyio.create_task_group() as tg:
            tg.start_soon(self._forward, messages, request)
            responses = await self._collect_responses(stream_reader, request_ids)

        bodies: list[dict[str, Any]] = []
        for request_id in request_ids:
            response_message = responses.get(request_id)
            if response_message is None:
                response_message = JSONRPCErrorResponse(
                    id=request_id,
                    error=ErrorData(code=INTERNAL_ERROR, message="Session terminated before a response was sent"),
                )
            bodies.append(dump_message(response_message))

        response = JSONResponse(bodies if is_batch else bodies[0], headers=self._session_headers())
        await response(scope, receive, send)

    async def _collect_responses(
        self,
        stream_reader: MemoryObjectReceiveStream[SessionMessage],
        request_ids: list[RequestId],
    ) -> dict[RequestId, JSONRPCResponse]:
        pending = set(request_ids)
        responses: dict[RequestId, JSONRPCResponse] = {}
        async for session_message in stream_reader:
            message = session_message.message
            if isinstance(message, JSONRPCResultResponse | JSONRPCErrorResponse) and message.id in pending:
                responses[message.id] = message
                pending.discard(message.id)
                if not pending:
                    break
            else:
                logger.debug(f"Dropping {type(message).__name__} in JSON response mode")
        return responses

    async def _respond_with_sse(
        self,
        scope: Scope,
        receive: Receive,
        send: Send,
        request: Request,
        messages: list[JSONRPCMessage],
        request_ids: list[RequestId],
        stream_reader: MemoryObjectReceiveStream[SessionMessage],
    ) -> None:
        sse_stream_writer, sse_stream_reader = anyio.create_memory_object_stream[dict[str, Any]](0)

        async def sse_writer():
            pending = set(request_ids)
            async with sse_stream_writer, stream_reader:
                async for session_message in stream_reader:
                    await sse_stream_writer.send(sse_event(session_message))
                    message = session_message.message
                    # The stream ends once every request of this POST is answered
                    if isinstance(message, JSONRPCResultResponse | JSONRPCErrorResponse):
                        pending.discard(message.id)
                        if not pending:
                            break

        headers = {
            "Cache-Control": "no-cache, no-transform",
            "Connection": "keep-alive",
            **self._session_headers(),
        }
        response = EventSourceResponse(
            content=sse_stream_reader,
            data_sender_callable=sse_writer,
            headers=headers,
        )

        async with anyio.create_task_group() as tg:
            tg.start_soon(response, scope, receive, send)
            await self._forward(messages, request)

    async def _handle_get_request(self, scope: Scope, request: Request, receive: Receive, send: Send) -> None:
        """Open the standalone SSE stream for server-initiated messages."""
        if not accepts(request.headers.get("accept", ""), CONTENT_TYPE_SSE):
            response = self._error_response(
                "Not Acceptable: Client must accept text/event-stream", HTTPStatus.NOT_ACCEPTABLE
            )
            await response(scope, receive, send)
            return

        if (error_response := self._validate_session(request)) is not None:
            await error_response(scope, receive, send)
            return

        if self._standalone_stream is not None:
            response = self._error_response(
                "Conflict: Only one SSE stream is allowed per session", HTTPStatus.CONFLICT
            )
            await response(scope, receive, send)
            return

        stream_writer, stream_reader = anyio.create_memory_object_stream[SessionMessage](0)
        self._standalone_stream = stream_writer
        sse_stream_writer, sse_stream_reader = anyio.create_memory_object_stream[dict[str, Any]](0)

        async def standalone_sse_writer():
            async with sse_stream_writer, stream_reader:
                async for session_message in stream_reader:
                    await sse_stream_writer.send(sse_event(session_message))

        headers = {
            "Cache-Control": "no-cache, no-transform",
            "Connection": "keep-alive",
            **self._session_headers(),
        }
        response = EventSourceResponse(
            content=sse_stream_reader,
            data_sender_callable=standalone_sse_writer,
            headers=headers,
        )

        logger.debug(f"Opened standalone SSE stream for session {self.mcp_session_id}")
        try:
            await response(scope, receive, send)
        finally:
            # Losing the GET stream does not end the session
            if self._standalone_stream is stream_writer:
                self._standalone_stream = None
            stream_writer.close()
            stream_reader.close()
            logger.debug(f"Standalone SSE stream closed for session {self.mcp_session_id}")

    async def _handle_delete_request(self, scope: Scope, request: Request, receive: Receive, send: Send) -> None:
        """Terminate the session on explicit client request."""
        if (error_response := self._validate_session(request)) is not None:
            await error_response(scope, receive, send)
            return

        session_headers = self._session_headers()
        await self.close()
        response = Response(status_code=HTTPStatus.OK, headers=session_headers)
        await response(scope, receive, send)

    async def _handle_unsupported_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        response = self._error_response(
            "Method Not Allowed",
            HTTPStatus.METHOD_NOT_ALLOWED,
            headers={"Allow": "GET, POST, DELETE"},
        )
        await response(scope, receive, send)

    @asynccontextmanager
    async def connect(
        self,
    ) -> AsyncGenerator[
        tuple[
            MemoryObjectReceiveStream[SessionMessage | Exception],
            MemoryObjectSendStream[SessionMessage],
        ],
        None,
    ]:
        """
        Context manager that provides read and write streams for the protocol engine.

        Leaving the context closes the transport.

        Yields:
            Tuple of (read_stream, write_stream) for bidirectional communication
        """
        if self.is_closed:
            raise TransportClosedError(self.mcp_session_id)
        if self._read_stream_writer is not None:
            raise RuntimeError("Transport is already connected")

        read_stream_writer, read_stream = anyio.create_memory_object_stream[SessionMessage | Exception](0)
        write_stream, write_stream_reader = anyio.create_memory_object_stream[SessionMessage](0)
        self._read_stream_writer = read_stream_writer

        async with anyio.create_task_group() as tg:
            tg.start_soon(self._message_router, write_stream_reader)
            try:
                yield read_stream, write_stream
            finally:
                await self.close()
                write_stream.close()
                read_stream.close()
                tg.cancel_scope.cancel()

    async def _message_router(self, write_stream_reader: MemoryObjectReceiveStream[SessionMessage]) -> None:
        """Deliver engine output to the HTTP stream it belongs to."""
        async with write_stream_reader:
            async for session_message in write_stream_reader:
                message = session_message.message
                request_id = session_message.related_request_id

                if isinstance(message, JSONRPCResultResponse | JSONRPCErrorResponse):
                    target = self._request_streams.get(request_id) if request_id is not None else None
                elif request_id is not None and request_id in self._request_streams:
                    target = self._request_streams[request_id]
                else:
                    target = self._standalone_stream

                if target is None:
                    logger.debug(
                        f"No open stream for {type(message).__name__} (request {request_id}) "
                        f"on session {self.mcp_session_id}; dropping it"
                    )
                    continue

                try:
                    await target.send(session_message)
                except (anyio.BrokenResourceError, anyio.ClosedResourceError):
                    logger.debug(f"Stream for request {request_id} closed before delivery")
