"""Tests for the structured logging system."""

import io
import json
import logging

import pytest

from gtdmail.logging.audit import audit
from gtdmail.logging.config import current_user_var, request_id_var, setup_logging


def test_json_format(capsys):
    """Log output should be valid JSON with expected fields."""
    setup_logging(level="debug")
    logger = logging.getLogger("test")
    logger.info("test message")

    captured = capsys.readouterr()
    log = json.loads(captured.out.strip())

    assert log["level"] == "info"
    assert log["message"] == "test message"
    assert log["logger"] == "test"
    assert "timestamp" in log
    assert "request_id" in log
    assert "user" in log


def test_context_vars_appear_in_log(capsys):
    """Context variables should be included in every log line."""
    setup_logging(level="debug")
    logger = logging.getLogger("test")

    req_token = request_id_var.set("abc123")
    user_token = current_user_var.set("user-42")

    try:
        logger.info("user action")
        captured = capsys.readouterr()
        log = json.loads(captured.out.strip())

        assert log["request_id"] == "abc123"
        assert log["user"] == "user-42"
    finally:
        request_id_var.reset(req_token)
        current_user_var.reset(user_token)


def test_extra_fields(capsys):
    """Extra kwargs should appear as top-level fields in the JSON."""
    setup_logging(level="debug")
    logger = logging.getLogger("test")
    logger.info("gmail.fetch.completed", extra={"account_id": "acc-1", "emails_fetched": 25})

    captured = capsys.readouterr()
    log = json.loads(captured.out.strip())

    assert log["account_id"] == "acc-1"
    assert log["emails_fetched"] == 25


def test_secret_fields_redacted(capsys):
    setup_logging(level="debug")
    logging.getLogger("test").info(
        "oauth.token_refresh.succeeded",
        extra={"access_token": "ya29.secret", "Password": "hunter2", "provider": "GMAIL"},
    )

    log = json.loads(capsys.readouterr().out.strip())
    assert log["access_token"] == "[redacted]"
    assert log["Password"] == "[redacted]"
    assert log["provider"] == "GMAIL"
    assert "ya29.secret" not in json.dumps(log)


def test_exception_logging(capsys):
    """Exceptions should include type, message, and traceback."""
    setup_logging(level="debug")
    logger = logging.getLogger("test")

    try:
        raise ValueError("something went wrong")
    except ValueError:
        logger.exception("operation failed")

    captured = capsys.readouterr()
    log = json.loads(captured.out.strip())

    assert log["level"] == "error"
    assert log["exception_type"] == "ValueError"
    assert log["exception_message"] == "something went wrong"
    assert "traceback" in log


def test_explicit_stream():
    stream = io.StringIO()
    setup_logging(level="info", stream=stream)
    logging.getLogger("test").info("to the stream")

    log = json.loads(stream.getvalue().strip())
    assert log["message"] == "to the stream"


def test_level_filters_debug(capsys):
    setup_logging(level="warning")
    logging.getLogger("test").info("hidden")
    logging.getLogger("test").warning("shown")

    lines = capsys.readouterr().out.strip().splitlines()
    assert len(lines) == 1
    assert json.loads(lines[0])["message"] == "shown"


def test_audit_info(capsys):
    """Audit logger should produce structured JSON with action field."""
    setup_logging(level="debug")
    audit.info("classification.completed", email_id="18c2f", confidence=0.82)

    captured = capsys.readouterr()
    log = json.loads(captured.out.strip())

    assert log["level"] == "info"
    assert log["logger"] == "audit"
    assert log["action"] == "classification.completed"
    assert log["email_id"] == "18c2f"
    assert log["confidence"] == 0.82


def test_audit_error(capsys):
    """Audit error should log at error level."""
    setup_logging(level="debug")
    audit.error("gmail.fetch.failed", account_id="acc-9", error_type="timeout")

    captured = capsys.readouterr()
    log = json.loads(captured.out.strip())

    assert log["level"] == "error"
    assert log["action"] == "gmail.fetch.failed"
    assert log["error_type"] == "timeout"


def test_audit_timed_adds_latency_and_fields(capsys):
    setup_logging(level="debug")
    with audit.timed("classification.batch.completed", count=3) as fields:
        fields["failed"] = 1

    log = json.loads(capsys.readouterr().out.strip())
    assert log["action"] == "classification.batch.completed"
    assert log["count"] == 3
    assert log["failed"] == 1
    assert isinstance(log["latency_ms"], int)


def test_audit_timed_logs_nothing_on_error(capsys):
    setup_logging(level="debug")
    with pytest.raises(RuntimeError):
        with audit.timed("never.logged"):
            raise RuntimeError("boom")

    assert capsys.readouterr().out.strip() == ""


def test_default_context_values(capsys):
    """Without middleware setting context, defaults should appear."""
    setup_logging(level="debug")
    request_id_var.set("-")
    current_user_var.set("anonymous")

    logger = logging.getLogger("test")
    logger.info("no context")

    captured = capsys.readouterr()
    log = json.loads(captured.out.strip())

    assert log["request_id"] == "-"
    assert log["user"] == "anonymous"
