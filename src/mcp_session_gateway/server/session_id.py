"""Session identifier generation.

Session ids are the only capability a client holds over its session, so they
must not be guessable. ``uuid4`` draws from ``os.urandom``; if the OS entropy
source is unavailable the error propagates instead of falling back to a
weaker generator.
"""

import re
from collections.abc import Callable
from uuid import uuid4

from mcp_session_gateway.exceptions import InvalidSessionIdError

SessionIdGenerator = Callable[[], str]

# Visible ASCII only (0x21 to 0x7E)
_SESSION_ID_PATTERN = re.compile(r"[\x21-\x7E]+")


def generate_session_id() -> str:
    return uuid4().hex


def validate_session_id(session_id: str) -> str:
    """Check that ``session_id`` can be carried in a header and a query string."""
    if not isinstance(session_id, str) or not _SESSION_ID_PATTERN.fullmatch(session_id):
        raise InvalidSessionIdError(f"Invalid session ID: {session_id!r}")
    return session_id
