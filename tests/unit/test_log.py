"""Tests for timeblocker logging setup."""

from __future__ import annotations

import logging
import re

import pytest

from timeblocker.log import setup_logging


class TestSetupLogging:
    """Tests for the setup_logging function."""

    def test_setup_logging_sets_level(self) -> None:
        """setup_logging('DEBUG') sets the root logger to DEBUG."""
        setup_logging("DEBUG")

        assert logging.getLogger().level == logging.DEBUG

    def test_setup_logging_default_level_is_info(self) -> None:
        """setup_logging() with no args defaults to INFO."""
        setup_logging()

        assert logging.getLogger().level == logging.INFO

    def test_setup_logging_accepts_lowercase(self) -> None:
        """Level names are case-insensitive."""
        setup_logging("warning")

        assert logging.getLogger().level == logging.WARNING

    def test_setup_logging_invalid_level_raises(self) -> None:
        """An unrecognised level string raises ValueError."""
        with pytest.raises(ValueError, match="Invalid log level"):
            setup_logging("INVALID")

    def test_setup_logging_idempotent(self) -> None:
        """Calling setup_logging() twice does not add duplicate handlers."""
        setup_logging()
        count_after_first = len(logging.getLogger().handlers)

        setup_logging("DEBUG")
        count_after_second = len(logging.getLogger().handlers)

        assert count_after_second == count_after_first

    def test_sdk_loggers_quiet_at_info(self) -> None:
        """HTTP and SDK loggers are raised to WARNING unless debugging."""
        setup_logging("INFO")

        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("google_genai").level == logging.WARNING

    def test_sdk_loggers_verbose_at_debug(self) -> None:
        """At DEBUG the SDK loggers follow the root level."""
        setup_logging("DEBUG")

        assert logging.getLogger("httpx").level == logging.DEBUG


class TestLogOutput:
    """Tests for the log line format."""

    def test_log_line_format(self, capsys: pytest.CaptureFixture[str]) -> None:
        """A line carries timestamp, level, logger name and message, pipe-separated."""
        setup_logging("INFO")
        logging.getLogger("timeblocker.test").info("hello world")

        err = capsys.readouterr().err
        assert re.search(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2} \| INFO\s+\| timeblocker.test \| hello world", err)

    def test_debug_not_shown_at_info_level(self, capsys: pytest.CaptureFixture[str]) -> None:
        """DEBUG messages do not appear when level is INFO."""
        setup_logging("INFO")
        logging.getLogger("timeblocker.filter").debug("should not appear")

        assert "should not appear" not in capsys.readouterr().err
