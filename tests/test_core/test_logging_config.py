"""
Tests for Logging Configuration Module

Tests for plotline/core/logging_config.py
"""

import logging

from plotline.core.logging_config import (
    DEFAULT_FORMAT,
    LogLevel,
    create_session_log,
    get_logger,
    setup_logging,
)


class TestLogging:
    """Tests for logger setup."""

    def test_loggers_are_namespaced(self):
        """Test module loggers live under the plotline logger."""
        assert get_logger("pipelines.merge").name == "plotline.pipelines.merge"
        assert get_logger("plotline.custom").name == "plotline.custom"
        assert get_logger("llm.manager") is get_logger("llm.manager")

    def test_session_log_receives_records(self, temp_dir):
        """Test a session log file is created and written."""
        log_file = create_session_log(temp_dir / "logs", prefix="novel", verbose=False)

        get_logger("tests").info("merge finished")
        for handler in logging.getLogger("plotline").handlers:
            handler.flush()

        assert log_file.name.startswith("novel_")
        assert "merge finished" in log_file.read_text(encoding="utf-8")
        assert all(h.formatter._fmt == DEFAULT_FORMAT for h in logging.getLogger("plotline").handlers)
        setup_logging(LogLevel.INFO)
