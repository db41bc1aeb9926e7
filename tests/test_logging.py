"""
Tests for logging configuration.
"""

import logging

import pytest

from ai_gen_guard.core.logging_config import configure_logging, get_logger


class TestLoggingConfig:

    def test_configure_sets_root_level(self):
        configure_logging("WARNING", "json")
        assert logging.getLogger().level == logging.WARNING

        configure_logging("DEBUG", "colored")
        assert logging.getLogger().level == logging.DEBUG

    def test_unknown_level_rejected(self):
        with pytest.raises(ValueError, match="Unknown log level"):
            configure_logging("LOUD")

    def test_unknown_format_rejected(self):
        with pytest.raises(ValueError, match="Unknown log format"):
            configure_logging("INFO", "xml")

    def test_get_logger_accepts_key_values(self):
        configure_logging("INFO", "json")
        logger = get_logger("ai_gen_guard.tests")
        logger.info("test_event", principal="alice", amount_usd=1.5)
