from .app import create_app
from .engine import ExampleEngine, ProtocolEngine
from .registry import SessionRegistries, SessionRegistry
from .session_manager import GatewaySessionManager
from .sse import SseServerTransport
from .streamable_http import StreamableHTTPServerTransport

__all__: list[str] = [
    "create_app",
    "ExampleEngine",
    "GatewaySessionManager",
    "ProtocolEngine",
    "SessionRegistries",
    "SessionRegistry",
    "SseServerTransport",
    "StreamableHTTPServerTransport",
]
