"""Starlette application serving both gateway transports."""

import contextlib
from collections.abc import AsyncIterator

from starlette.applications import Starlette
from starlette.routing import Route
from starlette.types import Receive, Scope, Send

from mcp_session_gateway.server.engine import ProtocolEngine
from mcp_session_gateway.server.registry import SessionRegistries
from mcp_session_gateway.server.session_manager import GatewaySessionManager
from mcp_session_gateway.settings import GatewaySettings


class StreamableHTTPASGIApp:
    """
    ASGI application for the streamable HTTP endpoint.
    """

    def __init__(self, session_manager: GatewaySessionManager):
        self.session_manager = session_manager

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.session_manager.handle_streamable_http(scope, receive, send)


class SseASGIApp:
    """
    ASGI application for the legacy SSE stream endpoint.
    """

    def __init__(self, session_manager: GatewaySessionManager):
        self.session_manager = session_manager

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.session_manager.handle_sse(scope, receive, send)


class MessagesASGIApp:
    """
    ASGI application for the legacy message endpoint.
    """

    def __init__(self, session_manager: GatewaySessionManager):
        self.session_manager = session_manager

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.session_manager.handle_post_message(scope, receive, send)


def create_app(
    engine: ProtocolEngine,
    settings: GatewaySettings | None = None,
    registries: SessionRegistries | None = None,
) -> Starlette:
    """Return the gateway ASGI app.

    The session manager is reachable as ``app.state.session_manager``; its
    task group lives for the duration of the app lifespan.
    """
    settings = settings or GatewaySettings()
    session_manager = GatewaySessionManager(
        engine,
        registries=registries,
        message_path=settings.message_path,
        json_response=settings.json_response,
    )

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with session_manager.run():
            yield

    routes = [
        Route(
            settings.streamable_http_path,
            endpoint=StreamableHTTPASGIApp(session_manager),
            methods=["GET", "POST", "DELETE"],
        ),
        Route(settings.sse_path, endpoint=SseASGIApp(session_manager), methods=["GET"]),
        Route(settings.message_path, endpoint=MessagesASGIApp(session_manager), methods=["POST"]),
    ]

    app = Starlette(debug=settings.debug, routes=routes, lifespan=lifespan)
    app.state.session_manager = session_manager
    return app
