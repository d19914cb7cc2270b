class GatewayError(Exception):
    """Base class for errors raised by the session gateway."""


class SessionConflictError(GatewayError):
    """Raised when a session id is registered twice in the same registry.

    Fresh ids come from the session id generator, so a conflict means the
    generator is broken. It is never retried.
    """

    def __init__(self, session_id: str, mode: str):
        super().__init__(f"Session {session_id} is already registered for {mode}")
        self.session_id = session_id
        self.mode = mode


class TransportClosedError(GatewayError):
    """Raised when a request reaches a transport that has already been closed."""

    def __init__(self, session_id: str | None):
        super().__init__(f"Transport for session {session_id} is closed")
        self.session_id = session_id


class InvalidSessionIdError(GatewayError, ValueError):
    """Raised when a session id is empty or contains non-visible ASCII characters."""
