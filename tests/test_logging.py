"""Tests for log redaction, correlation IDs and audit events."""

from unittest.mock import MagicMock

from gatekeep.logging import (
    _add_correlation_id,
    _redact_pii,
    correlation_id_var,
    get_correlation_id,
    redact_email,
    set_correlation_id,
)
from gatekeep.service.audit import AuditAction, AuditLogger


class TestRedaction:
    def test_short_secrets_fully_masked(self):
        event = _redact_pii(None, "info", {"event": "otp_issued", "code": "123456", "otp": "654321"})

        assert event == {"event": "otp_issued", "code": "***", "otp": "***"}

    def test_long_values_keep_edges(self):
        event = _redact_pii(None, "info", {"event": "x", "refresh_token": "abcdefghijkl"})

        assert event["refresh_token"] == "ab***kl"

    def test_unrelated_and_non_string_values_untouched(self):
        event = _redact_pii(
            None, "info", {"event": "token_rotated", "account_id": "acct-1", "password_attempts": 3}
        )

        assert event == {"event": "token_rotated", "account_id": "acct-1", "password_attempts": 3}

    def test_redact_email(self):
        assert redact_email("alice@example.com") == "a***e@example.com"
        assert redact_email("al@example.com") == "***@example.com"
        assert redact_email("not-an-email") == "***"
        assert redact_email(None) == "***"


class TestCorrelationId:
    def test_processor_adds_current_id(self):
        token = correlation_id_var.set(None)
        try:
            cid = set_correlation_id("req-42")
            assert cid == get_correlation_id() == "req-42"
            assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "req-42"
        finally:
            correlation_id_var.reset(token)

    def test_generated_when_missing(self):
        token = correlation_id_var.set(None)
        try:
            assert len(set_correlation_id()) == 36
        finally:
            correlation_id_var.reset(token)


class TestAuditLogger:
    def test_event_fields_and_masked_mailbox(self):
        sink = MagicMock()

        AuditLogger(sink).log_auth(
            AuditAction.LOGIN, account_id="acct-1", email="alice@example.com", role="standard"
        )

        sink.info.assert_called_once_with(
            "audit_event",
            action="login",
            account_id="acct-1",
            mailbox="a***e@example.com",
            role="standard",
        )

    def test_sink_failure_is_contained(self):
        sink = MagicMock()
        sink.info.side_effect = RuntimeError("sink closed")

        AuditLogger(sink).log_auth(AuditAction.LOGOUT, account_id="acct-1")

        sink.info.assert_called_once()
