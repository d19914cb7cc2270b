"""Common test utilities for gateway tests."""

import json
import math
from collections.abc import Callable
from typing import Any

import anyio
from starlette.types import Message, Scope

INIT_PARAMS = {
    "protocolVersion": "2025-03-26",
    "capabilities": {},
    "clientInfo": {"name": "test-client", "version": "1.0"},
}

JSON_HEADERS = {
    "Accept": "application/json, text/event-stream",
    "Content-Type": "application/json",
}


def initialize_request(request_id: int | str = "init-1") -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "method": "initialize", "params": INIT_PARAMS}


def ping_request(request_id: int | str = "ping-1") -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "method": "ping"}


def parse_sse(text: str) -> list[tuple[str, str]]:
    """Split an SSE body into ``(event, data)`` pairs, skipping comments."""
    events: list[tuple[str, str]] = []
    for block in text.replace("\r\n", "\n").split("\n\n"):
        event = "message"
        data_lines: list[str] = []
        for line in block.split("\n"):
            if line.startswith("event:"):
                event = line[len("event:") :].strip()
            elif line.startswith("data:"):
                data_lines.append(line[len("data:") :].strip())
        if data_lines:
            events.append((event, "\n".join(data_lines)))
    return events


def sse_messages(text: str) -> list[dict[str, Any]]:
    """The JSON payloads of every ``message`` event in an SSE body."""
    return [json.loads(data) for event, data in parse_sse(text) if event == "message"]


class ASGIRequest:
    """
    Drives a single ASGI HTTP request by hand.

    httpx's ASGITransport only returns once a response is complete, which never
    happens for long-lived SSE streams. This helper records what the app sends
    and lets the test decide when the client disconnects.
    """

    def __init__(
        self,
        method: str,
        path: str,
        headers: dict[str, str] | None = None,
        body: bytes = b"",
        query_string: str = "",
    ):
        self.scope: Scope = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": method,
            "scheme": "http",
            "path": path,
            "raw_path": path.encode(),
            "root_path": "",
            "query_string": query_string.encode(),
            "headers": [(key.lower().encode(), value.encode()) for key, value in (headers or {}).items()],
            "client": ("127.0.0.1", 50000),
            "server": ("testserver", 80),
        }
        self.body = body
        self.status: int | None = None
        self.headers: dict[str, str] = {}
        self.text = ""
        self.complete = False
        self._body_sent = False
        self._disconnected = anyio.Event()
        self._messages_writer, self._messages_reader = anyio.create_memory_object_stream[Message](math.inf)

    async def receive(self) -> Message:
        if not self._body_sent:
            self._body_sent = True
            return {"type": "http.request", "body": self.body, "more_body": False}
        await self._disconnected.wait()
        return {"type": "http.disconnect"}

    async def send(self, message: Message) -> None:
        self._messages_writer.send_nowait(message)

    def disconnect(self) -> None:
        self._disconnected.set()

    async def read_until(self, predicate: Callable[["ASGIRequest"], bool], timeout: float = 5.0) -> None:
        with anyio.fail_after(timeout):
            while not predicate(self):
                self._record(await self._messages_reader.receive())

    async def read_events(self, count: int, timeout: float = 5.0) -> list[tuple[str, str]]:
        """Wait until at least ``count`` SSE events have arrived and return them."""
        await self.read_until(lambda r: len(parse_sse(r.text)) >= count or r.complete, timeout)
        return parse_sse(self.text)

    def _record(self, message: Message) -> None:
        if message["type"] == "http.response.start":
            self.status = message["status"]
            self.headers = {key.decode().lower(): value.decode() for key, value in message.get("headers", [])}
        elif message["type"] == "http.response.body":
            self.text += message.get("body", b"").decode()
            if not message.get("more_body", False):
                self.complete = True
