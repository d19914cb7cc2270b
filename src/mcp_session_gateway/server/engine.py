"""Protocol engine contract and a small example engine.

The gateway never interprets application messages. It hands each session a
pair of memory streams and lets a protocol engine consume and produce
messages on them until the session ends.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from mcp_session_gateway.shared.message import ServerMessageMetadata, SessionMessage
from mcp_session_gateway.types import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    ErrorData,
    JSONRPCErrorResponse,
    JSONRPCRequest,
    JSONRPCResultResponse,
)

logger = logging.getLogger(__name__)

ReadStream = MemoryObjectReceiveStream[SessionMessage | Exception]
WriteStream = MemoryObjectSendStream[SessionMessage]


class ProtocolEngine(Protocol):
    """Consumes and produces protocol messages for one session.

    ``run`` must return once ``read_stream`` is exhausted. Exceptions found on
    the read stream are transport-level parse failures reported for
    information; the engine decides what to do with them.
    """

    async def run(self, read_stream: ReadStream, write_stream: WriteStream) -> None: ...


class EngineError(Exception):
    """Raised by a request handler to answer with a JSON-RPC error."""

    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.error = ErrorData(code=code, message=message)


RequestHandler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]

DEFAULT_PROTOCOL_VERSION = "2025-03-26"


class ExampleEngine:
    """The example server the gateway ships with.

    Exposes ``add`` and ``echo`` tools, an ``echo://{message}`` resource and an
    ``echo`` prompt. Requests are answered concurrently; notifications are
    accepted and ignored.
    """

    def __init__(self, name: str = "Example", version: str = "1.0.0"):
        self.name = name
        self.version = version
        self._handlers: dict[str, RequestHandler] = {
            "initialize": self._initialize,
            "ping": self._ping,
            "tools/list": self._list_tools,
            "tools/call": self._call_tool,
            "resources/templates/list": self._list_resource_templates,
            "resources/read": self._read_resource,
            "prompts/list": self._list_prompts,
            "prompts/get": self._get_prompt,
        }

    async def run(self, read_stream: ReadStream, write_stream: WriteStream) -> None:
        async with read_stream, write_stream:
            async with anyio.create_task_group() as tg:
                async for item in read_stream:
                    if isinstance(item, Exception):
                        logger.warning(f"Received exception from transport: {item}")
                        continue

                    message = item.message
                    if isinstance(message, JSONRPCRequest):
                        tg.start_soon(self._respond, message, write_stream)
                    else:
                        logger.debug(f"Ignoring {type(message).__name__}")

    async def _respond(self, request: JSONRPCRequest, write_stream: WriteStream) -> None:
        handler = self._handlers.get(request.method)
        try:
            if handler is None:
                raise EngineError(METHOD_NOT_FOUND, f"Method not found: {request.method}")
            result = await handler(request.params or {})
            response: JSONRPCResultResponse | JSONRPCErrorResponse = JSONRPCResultResponse(
                id=request.id, result=result
            )
        except EngineError as e:
            response = JSONRPCErrorResponse(id=request.id, error=e.error)
        except Exception as err:
            logger.exception(f"Handler for {request.method} failed")
            response = JSONRPCErrorResponse(
                id=request.id, error=ErrorData(code=INTERNAL_ERROR, message=str(err))
            )

        try:
            await write_stream.send(
                SessionMessage(response, metadata=ServerMessageMetadata(related_request_id=request.id))
            )
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            logger.debug(f"Session closed before response to request {request.id} could be sent")

    async def _initialize(self, params: dict[str, Any]) -> dict[str, Any]:
        return {
            "protocolVersion": params.get("protocolVersion", DEFAULT_PROTOCOL_VERSION),
            "capabilities": {"tools": {}, "resources": {}, "prompts": {}},
            "serverInfo": {"name": self.name, "version": self.version},
        }

    async def _ping(self, params: dict[str, Any]) -> dict[str, Any]:
        return {}

    async def _list_tools(self, params: dict[str, Any]) -> dict[str, Any]:
        number = {"type": "number"}
        return {
            "tools": [
                {
                    "name": "add",
                    "inputSchema": {"type": "object", "properties": {"a": number, "b": number}, "required": ["a", "b"]},
                },
                {
                    "name": "echo",
                    "inputSchema": {
                        "type": "object",
                        "properties": {"message": {"type": "string"}},
                        "required": ["message"],
                    },
                },
            ]
        }

    async def _call_tool(self, params: dict[str, Any]) -> dict[str, Any]:
        name = params.get("name")
        arguments = _arguments(params)

        if name == "add":
            a, b = arguments.get("a"), arguments.get("b")
            if not _is_number(a) or not _is_number(b):
                raise EngineError(INVALID_PARAMS, "Tool 'add' requires numeric 'a' and 'b'")
            text = str(a + b)
        elif name == "echo":
            text = f"Tool echo: {_require_message(arguments)}"
        else:
            raise EngineError(INVALID_PARAMS, f"Unknown tool: {name}")

        return {"content": [{"type": "text", "text": text}], "isError": False}

    async def _list_resource_templates(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"resourceTemplates": [{"uriTemplate": "echo://{message}", "name": "echo"}]}

    async def _read_resource(self, params: dict[str, Any]) -> dict[str, Any]:
        uri = params.get("uri")
        if not isinstance(uri, str) or not uri.startswith("echo://"):
            raise EngineError(INVALID_PARAMS, f"Unknown resource: {uri}")
        message = uri.removeprefix("echo://")
        return {"contents": [{"uri": uri, "text": f"Resource echo: {message}"}]}

    async def _list_prompts(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"prompts": [{"name": "echo", "arguments": [{"name": "message", "required": True}]}]}

    async def _get_prompt(self, params: dict[str, Any]) -> dict[str, Any]:
        if params.get("name") != "echo":
            raise EngineError(INVALID_PARAMS, f"Unknown prompt: {params.get('name')}")
        message = _require_message(_arguments(params))
        return {
            "messages": [
                {
                    "role": "user",
                    "content": {"type": "text", "text": f"Please process this message: {message}"},
                }
            ]
        }


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _arguments(params: dict[str, Any]) -> dict[str, Any]:
    arguments = params.get("arguments") or {}
    if not isinstance(arguments, dict):
        raise EngineError(INVALID_PARAMS, "Argument 'arguments' must be an object")
    return arguments


def _require_message(arguments: dict[str, Any]) -> str:
    message = arguments.get("message")
    if not isinstance(message, str):
        raise EngineError(INVALID_PARAMS, "Argument 'message' must be a string")
    return message
