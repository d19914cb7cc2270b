"""Tests for the per-mode session registries."""

import pytest

from mcp_session_gateway.exceptions import SessionConflictError
from mcp_session_gateway.server.registry import SessionRegistries, SessionRegistry


class FakeTransport:
    def __init__(self, name: str):
        self.name = name


def test_put_get_remove():
    registry: SessionRegistry[FakeTransport] = SessionRegistry("test")
    transport = FakeTransport("a")

    registry.put("s1", transport)

    assert registry.get("s1") is transport
    assert "s1" in registry
    assert len(registry) == 1
    assert registry.remove("s1") is transport
    assert registry.get("s1") is None
    assert len(registry) == 0


def test_get_with_no_id():
    registry: SessionRegistry[FakeTransport] = SessionRegistry("test")
    assert registry.get(None) is None
    assert registry.remove(None) is None


def test_put_never_overwrites():
    registry: SessionRegistry[FakeTransport] = SessionRegistry("test")
    first = FakeTransport("first")
    registry.put("s1", first)

    with pytest.raises(SessionConflictError) as excinfo:
        registry.put("s1", FakeTransport("second"))

    assert excinfo.value.session_id == "s1"
    assert excinfo.value.mode == "test"
    assert registry.get("s1") is first


def test_remove_is_idempotent():
    registry: SessionRegistry[FakeTransport] = SessionRegistry("test")
    transport = FakeTransport("a")
    registry.put("s1", transport)

    assert registry.remove("s1") is transport
    assert registry.remove("s1") is None
    assert registry.remove("never-registered") is None


def test_remove_only_drops_matching_transport():
    registry: SessionRegistry[FakeTransport] = SessionRegistry("test")
    current = FakeTransport("current")
    registry.put("s1", current)

    assert registry.remove("s1", FakeTransport("stale")) is None
    assert registry.get("s1") is current

    assert registry.remove("s1", current) is current
    assert "s1" not in registry


def test_snapshot_is_a_copy():
    registry: SessionRegistry[FakeTransport] = SessionRegistry("test")
    a, b = FakeTransport("a"), FakeTransport("b")
    registry.put("a", a)
    registry.put("b", b)

    snapshot = registry.snapshot()
    registry.remove("a")

    assert snapshot == [a, b]
    assert registry.snapshot() == [b]


def test_registries_are_independent_namespaces():
    registries = SessionRegistries()
    streamable = FakeTransport("streamable")
    sse = FakeTransport("sse")

    registries.streamable.put("shared-id", streamable)  # type: ignore[arg-type]
    registries.sse.put("shared-id", sse)  # type: ignore[arg-type]

    assert registries.streamable.get("shared-id") is streamable
    assert registries.sse.get("shared-id") is sse
    assert registries.streamable.mode == "streamable-http"
    assert registries.sse.mode == "sse"

    registries.sse.remove("shared-id")
    assert registries.streamable.get("shared-id") is streamable
