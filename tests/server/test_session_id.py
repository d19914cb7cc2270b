import re

import pytest

from mcp_session_gateway.exceptions import InvalidSessionIdError
from mcp_session_gateway.server import session_id
from mcp_session_gateway.server.session_id import generate_session_id, validate_session_id


def test_generated_ids_are_visible_ascii_and_unique():
    ids = {generate_session_id() for _ in range(1000)}

    assert len(ids) == 1000
    for value in ids:
        assert re.fullmatch(r"[0-9a-f]{32}", value)
        assert validate_session_id(value) == value


@pytest.mark.parametrize("value", ["", "has space", "tab\there", "abc\n", "café", "del\x7f", None, 42])
def test_validate_rejects_unusable_ids(value: object):
    with pytest.raises(InvalidSessionIdError):
        validate_session_id(value)  # type: ignore[arg-type]


def test_invalid_session_id_error_is_a_value_error():
    with pytest.raises(ValueError):
        validate_session_id("")


def test_entropy_failure_propagates(monkeypatch: pytest.MonkeyPatch):
    def no_entropy():
        raise OSError("entropy source unavailable")

    monkeypatch.setattr(session_id, "uuid4", no_entropy)

    with pytest.raises(OSError, match="entropy source unavailable"):
        generate_session_id()
