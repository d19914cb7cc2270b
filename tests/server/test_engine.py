"""Tests for the example protocol engine."""

from typing import Any

import anyio
import pytest

from mcp_session_gateway.server.engine import ExampleEngine
from mcp_session_gateway.shared.message import SessionMessage
from mcp_session_gateway.types import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    JSONRPCErrorResponse,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResultResponse,
)
from tests.test_helpers import INIT_PARAMS

pytestmark = pytest.mark.anyio


async def exchange(*items: JSONRPCMessage | Exception) -> list[SessionMessage]:
    """Feed ``items`` to a fresh engine and return everything it wrote."""
    read_writer, read_stream = anyio.create_memory_object_stream[SessionMessage | Exception](len(items))
    write_stream, write_reader = anyio.create_memory_object_stream[SessionMessage](len(items) + 1)

    for item in items:
        read_writer.send_nowait(item if isinstance(item, Exception) else SessionMessage(item))
    read_writer.close()

    with anyio.fail_after(5):
        await ExampleEngine().run(read_stream, write_stream)

    async with write_reader:
        return [message async for message in write_reader]


def call(request_id: int, method: str, params: dict[str, Any] | None = None) -> JSONRPCRequest:
    return JSONRPCRequest(id=request_id, method=method, params=params)


async def result_of(request: JSONRPCRequest) -> dict[str, Any]:
    (written,) = await exchange(request)
    assert isinstance(written.message, JSONRPCResultResponse)
    return written.message.result


async def error_of(request: JSONRPCRequest) -> tuple[int, str]:
    (written,) = await exchange(request)
    assert isinstance(written.message, JSONRPCErrorResponse)
    return written.message.error.code, written.message.error.message


async def test_initialize():
    result = await result_of(call(1, "initialize", INIT_PARAMS))

    assert result["protocolVersion"] == "2025-03-26"
    assert result["serverInfo"] == {"name": "Example", "version": "1.0.0"}
    assert set(result["capabilities"]) == {"tools", "resources", "prompts"}


async def test_responses_are_tagged_with_their_request():
    (written,) = await exchange(call(42, "ping"))

    assert written.related_request_id == 42
    assert written.metadata is not None
    assert written.metadata.related_request_id == 42


async def test_tools():
    listed = await result_of(call(1, "tools/list"))
    assert [tool["name"] for tool in listed["tools"]] == ["add", "echo"]

    added = await result_of(call(2, "tools/call", {"name": "add", "arguments": {"a": 2, "b": 3}}))
    assert added["content"] == [{"type": "text", "text": "5"}]

    echoed = await result_of(call(3, "tools/call", {"name": "echo", "arguments": {"message": "hi"}}))
    assert echoed["content"] == [{"type": "text", "text": "Tool echo: hi"}]


@pytest.mark.parametrize(
    "params",
    [
        {"name": "add", "arguments": {"a": "2", "b": 3}},
        {"name": "add", "arguments": {"a": True, "b": 3}},
        {"name": "echo", "arguments": {}},
        {"name": "missing", "arguments": {}},
        {"name": "echo", "arguments": "x"},
        {"name": "add", "arguments": [1, 2]},
    ],
)
async def test_tool_call_with_bad_params(params: dict[str, Any]):
    code, _ = await error_of(call(1, "tools/call", params))
    assert code == INVALID_PARAMS


async def test_resources():
    templates = await result_of(call(1, "resources/templates/list"))
    assert templates["resourceTemplates"][0]["uriTemplate"] == "echo://{message}"

    read = await result_of(call(2, "resources/read", {"uri": "echo://hello"}))
    assert read["contents"] == [{"uri": "echo://hello", "text": "Resource echo: hello"}]

    code, message = await error_of(call(3, "resources/read", {"uri": "file:///etc/passwd"}))
    assert code == INVALID_PARAMS
    assert "Unknown resource" in message


async def test_prompts():
    listed = await result_of(call(1, "prompts/list"))
    assert listed["prompts"][0]["name"] == "echo"

    prompt = await result_of(call(2, "prompts/get", {"name": "echo", "arguments": {"message": "x"}}))
    assert prompt["messages"][0]["content"]["text"] == "Please process this message: x"


async def test_unknown_method():
    code, message = await error_of(call(1, "sampling/createMessage"))

    assert code == METHOD_NOT_FOUND
    assert "sampling/createMessage" in message


async def test_notifications_and_transport_errors_get_no_reply():
    written = await exchange(
        ValueError("Could not parse message"),
        JSONRPCNotification(method="notifications/initialized"),
        call(7, "ping"),
    )

    assert len(written) == 1
    assert isinstance(written[0].message, JSONRPCResultResponse)
    assert written[0].message.id == 7


async def test_prompt_with_non_object_arguments():
    code, _ = await error_of(call(1, "prompts/get", {"name": "echo", "arguments": "x"}))
    assert code == INVALID_PARAMS


async def test_failing_handler_answers_internal_error(monkeypatch: pytest.MonkeyPatch):
    async def broken_ping(self: ExampleEngine, params: dict[str, Any]) -> dict[str, Any]:
        raise RuntimeError("ping exploded")

    monkeypatch.setattr(ExampleEngine, "_ping", broken_ping)

    written = await exchange(call(1, "ping"), call(2, "tools/list"))

    responses = {message.message.id: message.message for message in written}
    assert isinstance(responses[1], JSONRPCErrorResponse)
    assert responses[1].error.code == INTERNAL_ERROR
    assert responses[1].error.message == "ping exploded"
    assert isinstance(responses[2], JSONRPCResultResponse)
