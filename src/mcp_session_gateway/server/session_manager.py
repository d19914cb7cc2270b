"""Session manager routing gateway HTTP requests to per-session transports."""

from __future__ import annotations

import contextlib
import json
import logging
from collections.abc import AsyncIterator
from http import HTTPStatus
from typing import Any

import anyio
from anyio.abc import TaskGroup, TaskStatus
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import Message, Receive, Scope, Send

from mcp_session_gateway.exceptions import SessionConflictError, TransportClosedError
from mcp_session_gateway.server.engine import ProtocolEngine
from mcp_session_gateway.server.registry import SessionRegistries
from mcp_session_gateway.server.session_id import SessionIdGenerator, generate_session_id
from mcp_session_gateway.server.sse import SESSION_ID_QUERY_PARAM, SseServerTransport
from mcp_session_gateway.server.streamable_http import (
    MAXIMUM_MESSAGE_SIZE,
    MCP_SESSION_ID_HEADER,
    StreamableHTTPServerTransport,
)
from mcp_session_gateway.types import CONNECTION_CLOSED, INTERNAL_ERROR, error_body, is_initialize_request

logger = logging.getLogger(__name__)


def _load_json(body: bytes) -> Any:
    try:
        return json.loads(body)
    except ValueError:
        return None


def _replay_body(body: bytes, receive: Receive) -> Receive:
    """Wrap ``receive`` so the already consumed request body is delivered again."""
    replayed = False

    async def wrapped() -> Message:
        nonlocal replayed
        if not replayed:
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return wrapped


class GatewaySessionManager:
    """
    Routes every gateway request to the transport serving its session.

    Streamable HTTP sessions are created by an ``initialize`` POST without a
    session header and resumed through the ``mcp-session-id`` header. Legacy
    SSE sessions are created by every GET on the SSE endpoint and addressed
    by the ``sessionId`` query parameter on the message endpoint.

    Sessions are looked up in the injected ``registries``. A transport's
    registry entry is removed by its own close notification, whatever ends
    the session: DELETE, disconnect, engine exit or shutdown.

    Important: the instance cannot be reused after its run() context has
    completed. Create a new instance if you need to restart.

    Args:
        engine: The protocol engine bound to every session
        registries: Session registries; fresh ones are created when omitted
        message_path: Path legacy clients POST their messages to
        json_response: Whether to use JSON responses instead of SSE streams
        session_id_generator: Produces ids for new sessions of both modes
    """

    def __init__(
        self,
        engine: ProtocolEngine,
        registries: SessionRegistries | None = None,
        message_path: str = "/messages",
        json_response: bool = False,
        session_id_generator: SessionIdGenerator = generate_session_id,
    ):
        self.engine = engine
        self.registries = registries if registries is not None else SessionRegistries()
        self.message_path = message_path
        self.json_response = json_response
        self._session_id_generator = session_id_generator

        # The task group will be set during lifespan
        self._task_group: TaskGroup | None = None
        self._run_lock = anyio.Lock()
        self._has_started = False

    @contextlib.asynccontextmanager
    async def run(self) -> AsyncIterator[None]:
        """
        Run the session manager with proper lifecycle management.

        Use this in the lifespan context manager of your Starlette app:

        @contextlib.asynccontextmanager
        async def lifespan(app: Starlette) -> AsyncIterator[None]:
            async with session_manager.run():
                yield
        """
        async with self._run_lock:
            if self._has_started:
                raise RuntimeError(
                    "GatewaySessionManager .run() can only be called "
                    "once per instance. Create a new instance if you need to run again."
                )
            self._has_started = True

        async with anyio.create_task_group() as tg:
            self._task_group = tg
            logger.info("Gateway session manager started")
            try:
                yield
            finally:
                logger.info("Gateway session manager shutting down")
                await self.close_all_sessions()
                tg.cancel_scope.cancel()
                self._task_group = None

    async def close_all_sessions(self) -> None:
        """Close every live transport; their close notifications empty the registries."""
        for transport in self.registries.streamable.snapshot():
            await transport.close()
        for sse_transport in self.registries.sse.snapshot():
            await sse_transport.close()

    def _ensure_running(self) -> None:
        if self._task_group is None:
            raise RuntimeError("Task group is not initialized. Make sure to use run().")

    def _reject_streamable(self, status_code: HTTPStatus = HTTPStatus.BAD_REQUEST) -> Response:
        return JSONResponse(
            error_body(CONNECTION_CLOSED, "Bad Request: No valid session ID provided"),
            status_code=status_code,
        )

    async def handle_streamable_http(self, scope: Scope, receive: Receive, send: Send) -> None:
        """
        Route a request on the streamable HTTP endpoint.

        Args:
            scope: ASGI scope
            receive: ASGI receive function
            send: ASGI send function
        """
        self._ensure_running()

        request = Request(scope, receive)
        request_session_id = request.headers.get(MCP_SESSION_ID_HEADER)

        if request.method == "POST":
            if request_session_id is None:
                await self._handle_new_streamable_session(request, scope, receive, send)
            else:
                await self._resume_streamable_session(request_session_id, scope, receive, send)
        elif request.method in ("GET", "DELETE"):
            await self._resume_streamable_session(request_session_id, scope, receive, send)
        else:
            response = JSONResponse(
                error_body(CONNECTION_CLOSED, "Method Not Allowed"),
                status_code=HTTPStatus.METHOD_NOT_ALLOWED,
                headers={"Allow": "GET, POST, DELETE"},
            )
            await response(scope, receive, send)

    async def _resume_streamable_session(
        self,
        request_session_id: str | None,
        scope: Scope,
        receive: Receive,
        send: Send,
    ) -> None:
        transport = self.registries.streamable.get(request_session_id)
        if transport is None:
            logger.info(f"Rejected {scope['method']} for unknown session {request_session_id}")
            await self._reject_streamable()(scope, receive, send)
            return

        logger.debug(f"Session {request_session_id} exists, handling request directly")
        try:
            await transport.handle_request(scope, receive, send)
        except TransportClosedError:
            # Closed while this request was being routed
            logger.info(f"Session {request_session_id} closed before the request was handled")
            await self._reject_streamable()(scope, receive, send)

    async def _handle_new_streamable_session(
        self,
        request: Request,
        scope: Scope,
        receive: Receive,
        send: Send,
    ) -> None:
        body = await request.body()
        if len(body) > MAXIMUM_MESSAGE_SIZE:
            logger.info("Rejected oversized POST without session ID")
            response = JSONResponse(
                error_body(CONNECTION_CLOSED, "Payload Too Large: Message exceeds maximum size"),
                status_code=HTTPStatus.REQUEST_ENTITY_TOO_LARGE,
            )
            await response(scope, receive, send)
            return

        if not is_initialize_request(_load_json(body)):
            logger.info("Rejected POST without session ID that is not an initialize request")
            await self._reject_streamable()(scope, receive, send)
            return

        registry = self.registries.streamable

        def register(session_id: str) -> None:
            # Its close notification has already run and would never remove the entry
            if http_transport.is_closed:
                raise TransportClosedError(session_id)
            registry.put(session_id, http_transport)
            logger.info(f"Created new transport with session ID: {session_id}")

        def unregister() -> None:
            # The id is read at close time: it did not exist when the transport was created
            if registry.remove(http_transport.session_id, http_transport) is not None:
                logger.info(f"Removed session {http_transport.session_id} from active instances")

        http_transport = StreamableHTTPServerTransport(
            session_id_generator=self._session_id_generator,
            on_session_initialized=register,
            is_json_response_enabled=self.json_response,
        )
        http_transport.on_close(unregister)

        await self._start_transport_server(http_transport)

        try:
            await http_transport.handle_request(scope, _replay_body(body, receive), send)
        except SessionConflictError:
            logger.exception("Session ID collision; refusing to replace the live session")
            await http_transport.close()
            response = JSONResponse(
                error_body(INTERNAL_ERROR, "Internal Server Error: Session ID collision"),
                status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            )
            await response(scope, receive, send)
        except TransportClosedError:
            # The engine stopped before the session could be initialized
            logger.warning("Protocol engine exited before the session was initialized")
            response = JSONResponse(
                error_body(INTERNAL_ERROR, "Internal Server Error: Session closed during initialization"),
                status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            )
            await response(scope, receive, send)
        finally:
            if http_transport.session_id is None:
                # Initialization never happened, nothing to keep alive
                await http_transport.close()

    async def _transport_server_task(
        self,
        http_transport: StreamableHTTPServerTransport,
        *,
        task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED,
    ) -> None:
        """
        Background task that runs the protocol engine for a transport.

        Leaving ``connect()`` closes the transport, so an engine that crashes
        or returns also drops the session from the registry.
        """
        async with http_transport.connect() as (read_stream, write_stream):
            task_status.started()
            try:
                await self.engine.run(read_stream, write_stream)
            except Exception:
                logger.exception(f"Session {http_transport.session_id} crashed")

    async def _start_transport_server(self, http_transport: StreamableHTTPServerTransport) -> None:
        assert self._task_group is not None
        await self._task_group.start(self._transport_server_task, http_transport)

    async def handle_sse(self, scope: Scope, receive: Receive, send: Send) -> None:
        """
        Create a legacy session and serve its SSE stream until the client leaves.

        This endpoint never resumes a session: every connection gets a new one.
        """
        self._ensure_running()

        registry = self.registries.sse
        transport = SseServerTransport(self.message_path, session_id=self._session_id_generator())
        registry.put(transport.session_id, transport)
        transport.on_close(lambda: registry.remove(transport.session_id, transport))
        logger.info(f"Created new SSE session {transport.session_id}")

        try:
            async with transport.connect_sse(scope, receive, send) as (read_stream, write_stream):
                try:
                    await self.engine.run(read_stream, write_stream)
                except Exception:
                    logger.exception(f"SSE session {transport.session_id} crashed")
        finally:
            await transport.close()
            logger.info(f"SSE session {transport.session_id} ended")

    async def handle_post_message(self, scope: Scope, receive: Receive, send: Send) -> None:
        """Deliver a legacy client message to the session named in the query string."""
        self._ensure_running()

        request = Request(scope, receive)
        session_id = request.query_params.get(SESSION_ID_QUERY_PARAM)
        transport = self.registries.sse.get(session_id)
        if transport is None:
            logger.info(f"Rejected message for unknown SSE session {session_id}")
            response = Response("No transport found for sessionId", status_code=HTTPStatus.BAD_REQUEST)
            await response(scope, receive, send)
            return

        try:
            await transport.handle_post_message(scope, receive, send)
        except TransportClosedError:
            logger.info(f"SSE session {session_id} closed before the message was handled")
            response = Response("No transport found for sessionId", status_code=HTTPStatus.BAD_REQUEST)
            await response(scope, receive, send)
