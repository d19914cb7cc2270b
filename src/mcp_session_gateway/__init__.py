"""A session-multiplexing HTTP gateway for the Model Context Protocol.

The gateway serves two delivery modes side by side:

- Streamable HTTP on a single endpoint, with sessions addressed by the
  ``mcp-session-id`` header
- The legacy SSE transport: a server-push stream plus a message endpoint, with
  sessions addressed by the ``sessionId`` query parameter

## Example

```python
import uvicorn

from mcp_session_gateway import ExampleEngine, create_app

app = create_app(ExampleEngine())

if __name__ == "__main__":
    uvicorn.run(app, port=3000)
```
"""

from .exceptions import GatewayError, SessionConflictError, TransportClosedError
from .server import (
    ExampleEngine,
    GatewaySessionManager,
    ProtocolEngine,
    SessionRegistries,
    SessionRegistry,
    SseServerTransport,
    StreamableHTTPServerTransport,
    create_app,
)
from .settings import GatewaySettings

__all__: list[str] = [
    "create_app",
    "ExampleEngine",
    "GatewayError",
    "GatewaySessionManager",
    "GatewaySettings",
    "ProtocolEngine",
    "SessionConflictError",
    "SessionRegistries",
    "SessionRegistry",
    "SseServerTransport",
    "StreamableHTTPServerTransport",
    "TransportClosedError",
]
