import uuid

import pytest
from structlog.contextvars import bind_contextvars, clear_contextvars, get_contextvars

from chatauth.logging import (
    LOOKUP_ID_LOG_CHARS,
    _redact_sensitive,
    bind_auth_state,
    get_correlation_id,
    set_correlation_id,
)


@pytest.fixture(autouse=True)
def clean_context():
    clear_contextvars()
    yield
    clear_contextvars()


class TestRedaction:
    def test_lookup_id_is_shortened(self):
        event = _redact_sensitive(None, "info", {"event": "x", "lookup_id": "f" * 64})
        assert event["lookup_id"] == "f" * LOOKUP_ID_LOG_CHARS

    def test_email_keeps_domain_only(self):
        event = _redact_sensitive(None, "info", {"email": "alice@example.org"})
        assert event["email"] == "***@example.org"

    @pytest.mark.parametrize("key", ["password", "session_token", "Cookie", "authorization"])
    def test_secrets_masked(self, key):
        assert _redact_sensitive(None, "info", {key: "hunter22"})[key] == "***"

    def test_other_fields_untouched(self):
        event = {"event": "session_renewed", "user_id": "u1", "attempt": 3, "token_count": None}
        assert _redact_sensitive(None, "info", dict(event)) == event


class TestRequestContext:
    def test_set_correlation_id_starts_fresh_context(self):
        bind_contextvars(user_id="stale", session_state="valid")

        assert set_correlation_id("req-1") == "req-1"
        assert get_contextvars() == {"request_id": "req-1"}
        assert get_correlation_id() == "req-1"

    def test_missing_correlation_id_is_generated(self):
        cid = set_correlation_id()
        assert uuid.UUID(cid)
        assert get_correlation_id() == cid

    def test_bind_auth_state(self):
        set_correlation_id("req-2")
        bind_auth_state("renewed", "u1")

        assert get_contextvars() == {
            "request_id": "req-2",
            "session_state": "renewed",
            "user_id": "u1",
        }

    def test_anonymous_request_binds_no_user(self):
        bind_auth_state("anonymous")
        assert get_contextvars() == {"session_state": "anonymous"}
