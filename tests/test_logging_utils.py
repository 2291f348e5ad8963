"""
Tests for structured logging utilities module.

Tests cover JSON formatting, request ID correlation,
and the standardized reconciliation and external call log methods.
"""

import json
import logging
import os
from unittest.mock import MagicMock, patch

from shared.logging_utils import (
    StructuredFormatter,
    configure_structured_logging,
    log_external_call,
    log_reconciliation,
    request_id_var,
    set_request_id,
)


def _record(msg="Test", level=logging.INFO):
    return logging.LogRecord(
        name="test.logger",
        level=level,
        pathname="test.py",
        lineno=10,
        msg=msg,
        args=(),
        exc_info=None,
    )


class TestStructuredFormatter:
    """Tests for StructuredFormatter class."""

    def test_format_includes_required_fields(self):
        """Formatter should include timestamp, level, logger, message."""
        parsed = json.loads(StructuredFormatter().format(_record("Warning message", logging.WARNING)))

        assert "timestamp" in parsed
        assert parsed["level"] == "WARNING"
        assert parsed["logger"] == "test.logger"
        assert parsed["message"] == "Warning message"

    def test_format_includes_request_id_from_context(self):
        """Formatter should include request_id from context variable."""
        token = request_id_var.set("req-12345")
        try:
            parsed = json.loads(StructuredFormatter().format(_record()))
            assert parsed["request_id"] == "req-12345"
        finally:
            request_id_var.reset(token)

    def test_format_includes_lambda_function_name(self):
        """Formatter should include AWS_LAMBDA_FUNCTION_NAME env var."""
        with patch.dict(os.environ, {"AWS_LAMBDA_FUNCTION_NAME": "tiersync-webhook"}):
            parsed = json.loads(StructuredFormatter().format(_record()))

        assert parsed["function_name"] == "tiersync-webhook"

    def test_format_includes_extra_fields(self):
        """Formatter should include extra fields passed to log call."""
        record = _record()
        record.account_id = "acct_1"
        record.customer_id = "cus_1"

        parsed = json.loads(StructuredFormatter().format(record))

        assert parsed["account_id"] == "acct_1"
        assert parsed["customer_id"] == "cus_1"
        assert "lineno" not in parsed
        assert "args" not in parsed

    def test_format_serializes_unknown_types(self):
        """Non-JSON values should be stringified rather than failing."""
        record = _record()
        record.summary = {"total": 1, "when": object()}

        parsed = json.loads(StructuredFormatter().format(record))

        assert parsed["summary"]["total"] == 1


class TestConfigureStructuredLogging:
    """Tests for configure_structured_logging."""

    def test_replaces_root_handlers(self):
        """Repeated calls should leave exactly one structured handler."""
        configure_structured_logging()
        root = configure_structured_logging()

        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, StructuredFormatter)


class TestSetRequestId:
    """Tests for set_request_id."""

    def test_prefers_request_context(self):
        """API Gateway request ids should be used first."""
        event = {"requestContext": {"requestId": "req-ctx"}, "headers": {"x-request-id": "req-hdr"}}
        assert set_request_id(event) == "req-ctx"
        assert request_id_var.get() == "req-ctx"

    def test_falls_back_to_header(self):
        """The x-request-id header should be used when there is no context."""
        assert set_request_id({"headers": {"X-Request-Id": "req-hdr"}}) == "req-hdr"

    def test_generates_id_for_direct_invocation(self):
        """Direct invocations without either should get a fresh id."""
        first = set_request_id({"email": "user@example.com"})
        second = set_request_id({})

        assert first
        assert first != second


class TestLogHelpers:
    """Tests for the standardized log methods."""

    def test_log_reconciliation_fields(self):
        """Reconciliation logs should carry the decision fields."""
        logger = MagicMock()

        log_reconciliation(logger, "customer.subscription.updated", "evt_1", "applied",
                           customer_id="cus_1", account_id="acct_1", previous_tier="base", new_tier="top")

        message = logger.info.call_args[0][0]
        extra = logger.info.call_args[1]["extra"]
        assert "evt_1" in message and "applied" in message
        assert extra["outcome"] == "applied"
        assert extra["previous_tier"] == "base"
        assert extra["new_tier"] == "top"

    def test_log_reconciliation_without_event_id(self):
        """Missing event ids should be named in the message."""
        logger = MagicMock()

        log_reconciliation(logger, "customer.created", None, "recorded")

        assert "no-event-id" in logger.info.call_args[0][0]

    def test_log_external_call_levels(self):
        """Failures should log at WARNING, successes at INFO."""
        logger = MagicMock()

        log_external_call(logger, "stripe", "Customer.retrieve", True, 12.5)
        log_external_call(logger, "stripe", "Customer.retrieve", False, 30.0, error="timeout")

        (ok_level, _), ok_kwargs = logger.log.call_args_list[0]
        (fail_level, _), fail_kwargs = logger.log.call_args_list[1]
        assert ok_level == logging.INFO
        assert fail_level == logging.WARNING
        assert fail_kwargs["extra"]["error"] == "timeout"
        assert ok_kwargs["extra"]["latency_ms"] == 12.5
