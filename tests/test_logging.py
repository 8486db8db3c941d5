"""Tests for log redaction, correlation ids and client-facing error sanitizing."""

from coursegate.logging import (
    _add_request_context,
    _redact_pii,
    get_correlation_id,
    sanitize_error_message,
    set_correlation_id,
)


class TestRedaction:
    def test_secrets_and_codes_are_hidden(self):
        event = _redact_pii(
            None,
            "info",
            {
                "event": "login_attempt",
                "password": "hunter2",
                "reset_token": "abc",
                "code": "482913",
                "error_code": "invalid_code",
                "attempts": 2,
            },
        )

        assert event["password"] == "[redacted]"
        assert event["reset_token"] == "[redacted]"
        assert event["code"] == "[redacted]"
        assert event["error_code"] == "invalid_code"
        assert event["attempts"] == 2

    def test_addresses_in_values_are_masked(self):
        event = _redact_pii(
            None,
            "error",
            {"event": "email_recipient_refused", "error": "refused: alice@example.com (550)"},
        )
        assert event["error"] == "refused: al***@example.com (550)"

    def test_already_masked_address_is_untouched(self):
        event = _redact_pii(None, "info", {"event": "x", "destination": "al***@example.com"})
        assert event["destination"] == "al***@example.com"


class TestRequestContext:
    def test_correlation_id_is_stamped(self):
        cid = set_correlation_id("req-123")

        event = _add_request_context(None, "info", {"event": "x"})

        assert cid == "req-123" == get_correlation_id()
        assert event["correlation_id"] == "req-123"
        assert event["service"] == "coursegate"

    def test_generated_correlation_id(self):
        cid = set_correlation_id()
        assert len(cid) == 36


class TestSanitizeErrorMessage:
    def test_paths_and_credentials_removed(self):
        message = sanitize_error_message("smtp failed at /srv/app/mailer.py with password=hunter2")
        assert "/srv/app" not in message
        assert "hunter2" not in message

    def test_addresses_masked(self):
        assert sanitize_error_message("could not reach bob@school.edu") == "could not reach bo***@school.edu"

    def test_plain_message_unchanged(self):
        assert sanitize_error_message("failed to send verification code") == "failed to send verification code"

    def test_empty_and_long_messages(self):
        assert sanitize_error_message("") == "An error occurred"
        assert len(sanitize_error_message("x" * 800)) == 500
