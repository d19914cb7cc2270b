import logging

import anyio
import pytest

from mcp_session_gateway.shared.lifecycle import CloseSignal


@pytest.mark.anyio
async def test_fire_runs_callbacks_exactly_once():
    signal = CloseSignal()
    calls: list[str] = []
    signal.subscribe(lambda: calls.append("a"))
    signal.subscribe(lambda: calls.append("b"))

    assert signal.fire() is True
    assert signal.fire() is False

    assert calls == ["a", "b"]
    assert signal.is_set


@pytest.mark.anyio
async def test_late_subscriber_is_called_immediately():
    signal = CloseSignal()
    signal.fire()

    calls: list[str] = []
    signal.subscribe(lambda: calls.append("late"))

    assert calls == ["late"]


@pytest.mark.anyio
async def test_failing_callback_does_not_block_others(caplog: pytest.LogCaptureFixture):
    signal = CloseSignal()
    calls: list[str] = []

    def broken():
        raise RuntimeError("boom")

    signal.subscribe(broken)
    signal.subscribe(lambda: calls.append("after"))

    with caplog.at_level(logging.ERROR):
        assert signal.fire() is True

    assert calls == ["after"]
    assert "Close callback failed" in caplog.text


@pytest.mark.anyio
async def test_wait_returns_once_fired():
    signal = CloseSignal()

    async with anyio.create_task_group() as tg:
        tg.start_soon(signal.wait)
        await anyio.sleep(0)
        signal.fire()

    with anyio.fail_after(1):
        await signal.wait()
