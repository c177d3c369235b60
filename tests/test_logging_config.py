"""
Tests for dateguard.logging_config -- formatters, session context and
destination masking.
"""

from __future__ import annotations

import json
import logging

from dateguard.logging_config import (
    JsonFormatter,
    TextFormatter,
    mask_destination,
    session_context,
    session_id_ctx,
)


def _record(msg: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord("dateguard.test", logging.INFO, __file__, 1, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestMaskDestination:
    def test_phone_keeps_last_four(self):
        assert mask_destination("+15551234567") == "***4567"

    def test_email_keeps_first_letter_and_domain(self):
        assert mask_destination("pat@example.com") == "p***@example.com"

    def test_short_value_fully_masked(self):
        assert mask_destination("abc") == "***"


class TestSessionContext:
    def test_context_sets_and_resets(self):
        assert session_id_ctx.get() is None
        with session_context("s1"):
            assert session_id_ctx.get() == "s1"
        assert session_id_ctx.get() is None


class TestFormatters:
    def test_json_formatter_includes_session_and_extras(self):
        formatter = JsonFormatter(service_name="dateguard-test")
        with session_context("s42"):
            line = formatter.format(_record(channel="sms"))
        data = json.loads(line)
        assert data["message"] == "hello"
        assert data["service"] == "dateguard-test"
        assert data["session_id"] == "s42"
        assert data["channel"] == "sms"
        assert data["level"] == "INFO"

    def test_text_formatter_mentions_message(self):
        line = TextFormatter().format(_record("sweep done"))
        assert "sweep done" in line
        assert "INFO" in line
