"""Tests for structured JSON logging and log/error sanitization."""

import json
import logging
from io import StringIO

import pytest

from inkpay_api.context import claim_token_var, event_id_var, request_id_var
from inkpay_api.utils.logging import JSONFormatter
from inkpay_api.utils.sanitize import MAX_ERROR_LEN, error_message, sanitize_obj, sanitize_str


@pytest.fixture
def json_logger():
    logger = logging.getLogger("test_inkpay_json_logger")
    logger.setLevel(logging.INFO)
    logger.handlers.clear()
    logger.propagate = False

    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JSONFormatter())
    logger.addHandler(handler)

    def _last() -> dict:
        return json.loads(stream.getvalue().strip().splitlines()[-1])

    yield logger, _last
    logger.handlers.clear()


def test_json_formatter_standard_fields(json_logger):
    logger, last = json_logger

    logger.info("BILLING_BATCH_COMPLETED", extra={"processed": 3, "failed": 1})

    log_data = last()
    assert log_data["message"] == "BILLING_BATCH_COMPLETED"
    assert log_data["level"] == "INFO"
    assert log_data["logger"] == "test_inkpay_json_logger"
    assert log_data["processed"] == 3
    assert log_data["failed"] == 1
    for field in ("timestamp", "module", "func", "line"):
        assert field in log_data


def test_json_formatter_includes_context_vars(json_logger):
    logger, last = json_logger
    tokens = [
        request_id_var.set("req_123"),
        event_id_var.set("evt_abc"),
        claim_token_var.set("tok_xyz"),
    ]
    try:
        logger.info("BILLING_EVENT_FAILED")
    finally:
        claim_token_var.reset(tokens[2])
        event_id_var.reset(tokens[1])
        request_id_var.reset(tokens[0])

    log_data = last()
    assert log_data["request_id"] == "req_123"
    assert log_data["event_id"] == "evt_abc"
    assert log_data["claim_token"] == "tok_xyz"


def test_json_formatter_omits_empty_context(json_logger):
    logger, last = json_logger

    logger.info("no context")

    log_data = last()
    assert "event_id" not in log_data
    assert "claim_token" not in log_data


def test_json_formatter_redacts_sensitive_extras(json_logger):
    logger, last = json_logger

    logger.info(
        "BILLING_DEBUG",
        extra={"payload": {"data": {"card": "4242"}}, "meta": {"email": "a@b.co", "ok": "fine"}},
    )

    log_data = last()
    assert log_data["payload"] == "[REDACTED]"
    assert log_data["meta"] == {"email": "[REDACTED]", "ok": "fine"}


def test_json_formatter_redacts_sensitive_top_level_keys(json_logger):
    logger, last = json_logger

    logger.info("BILLING_DEBUG", extra={"Authorization": "opaque-value", "payload_json": "{}", "limit": 5})

    log_data = last()
    assert log_data["Authorization"] == "[REDACTED]"
    assert log_data["payload_json"] == "[REDACTED]"
    assert log_data["limit"] == 5


def test_json_formatter_exception_info(json_logger):
    logger, last = json_logger

    try:
        raise RuntimeError("boom")
    except RuntimeError:
        logger.error("BILLING_EVENT_FAILED", exc_info=True)

    log_data = last()
    assert log_data["level"] == "ERROR"
    assert "RuntimeError" in log_data["exc_info"]


class TestSanitize:
    def test_patterns_redacted(self):
        assert sanitize_str("Authorization: Bearer sk_live_123") == "Authorization: [REDACTED]"
        assert sanitize_str("mail me at reader@example.com") == "mail me at [REDACTED]"

    def test_long_strings_are_hashed(self):
        result = sanitize_str("x" * 5000)
        assert result.startswith("[TRUNCATED len=5000 sha256=")

    def test_nested_objects(self):
        obj = {"a": [{"secret": "s"}, "Basic Zm9v"], "b": 1}
        assert sanitize_obj(obj) == {"a": [{"secret": "[REDACTED]"}, "[REDACTED]"], "b": 1}

    def test_error_message_format(self):
        assert error_message(ValueError("bad amount")) == "ValueError: bad amount"
        assert error_message(KeyError()) == "KeyError"

    def test_error_message_first_line_and_truncated(self):
        assert error_message(RuntimeError("first\n[SQL: SELECT secret]")) == "RuntimeError: first"

        long = error_message(RuntimeError("y" * (MAX_ERROR_LEN * 2)))
        assert len(long) <= MAX_ERROR_LEN

    def test_error_message_redacts_long_errors(self):
        padding = "x" * 600
        exc = RuntimeError(f"{padding} contact ops@example.com api_key=sk_live_999")

        message = error_message(exc)

        assert len(message) > 600
        assert "ops@example.com" not in message
        assert "sk_live_999" not in message
        assert message.endswith("contact [REDACTED] [REDACTED]")
