"""One-shot close notification shared by the gateway transports."""

import logging
from collections.abc import Callable

import anyio

logger = logging.getLogger(__name__)

CloseCallback = Callable[[], None]


class CloseSignal:
    """Fires exactly once, no matter how many termination paths call it.

    Subscribers registered after the signal fired are invoked immediately, so
    a late subscriber can never miss the close.
    """

    def __init__(self) -> None:
        self._event = anyio.Event()
        self._callbacks: list[CloseCallback] = []

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    def subscribe(self, callback: CloseCallback) -> None:
        if self._event.is_set():
            callback()
            return
        self._callbacks.append(callback)

    def fire(self) -> bool:
        """Set the signal and run the subscribers.

        Returns:
            True on the first call, False on every later one.
        """
        if self._event.is_set():
            return False
        self._event.set()

        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            # One failing subscriber must not keep the others from running
            try:
                callback()
            except Exception:
                logger.exception("Close callback failed")
        return True

    async def wait(self) -> None:
        await self._event.wait()
