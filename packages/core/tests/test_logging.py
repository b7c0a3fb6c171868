"""Tests for structured logging setup."""

import logging

import structlog

from packages.core.logging import MAX_FIELD_CHARS, setup_logging, truncate_statement_text


class TestStructuredLogging:
    """Test structlog outputs structured JSON."""

    def test_setup_logging_configures_structlog(self):
        """After setup, structlog.get_logger() should return a bound logger."""
        setup_logging(log_level="DEBUG", json_output=True)
        logger = structlog.get_logger()
        assert logger is not None

    def test_setup_logging_dev_mode(self):
        """Dev mode should configure console renderer without errors."""
        setup_logging(log_level="DEBUG", json_output=False)
        logger = structlog.get_logger()
        assert logger is not None

    def test_unknown_level_falls_back(self):
        setup_logging(log_level="chatty", json_output=True)
        structlog.get_logger("packages.test").info("still_logs", count=1)

    def test_sets_root_level_and_quiets_pdfminer(self):
        setup_logging(log_level="debug", json_output=True)
        assert logging.getLogger().level == logging.DEBUG
        assert logging.getLogger("pdfminer").level == logging.WARNING


class TestTruncation:
    def test_long_statement_text_is_clipped(self):
        event = {"event": "row_skipped", "description": "x" * 200, "count": 3}
        result = truncate_statement_text(None, "info", event)
        assert result["description"] == "x" * MAX_FIELD_CHARS + "..."
        assert result["count"] == 3

    def test_short_and_non_text_values_untouched(self):
        event = {"event": "regex_rejected", "pattern": "kiwi", "text": None}
        assert truncate_statement_text(None, "warning", dict(event)) == event
