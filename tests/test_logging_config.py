"""Tests for logging setup helpers."""

import logging

import pytest

from simharness.core.logging_config import (
    COMPACT_FORMAT,
    LogContext,
    configure_third_party_loggers,
    get_logger,
    setup_logging,
)


@pytest.fixture
def logger_name(request):
    name = f"simharness.test.{request.node.name}"
    yield name
    logger = logging.getLogger(name)
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_console_handler_not_duplicated(self, logger_name):
        """Test that repeated setup does not stack handlers."""
        setup_logging(logger_name)
        logger = setup_logging(logger_name, level="debug")

        assert len(logger.handlers) == 1
        assert logger.level == logging.DEBUG
        assert logger.propagate is False

    def test_log_dir_creates_file(self, logger_name, tmp_path):
        """Test the <name>.log file under log_dir."""
        logger = setup_logging(logger_name, log_dir=tmp_path / "logs", console=False)
        logger.warning("written")
        for handler in logger.handlers:
            handler.flush()

        path = tmp_path / "logs" / f"{logger_name.replace('.', '_')}.log"
        assert "written" in path.read_text()
        setup_logging(logger_name, log_dir=tmp_path / "logs", console=False)
        assert len(logger.handlers) == 1

    def test_format_style(self, logger_name):
        """Test a named format style."""
        logger = setup_logging(logger_name, format_style="compact")
        assert logger.handlers[0].formatter._fmt == COMPACT_FORMAT

    def test_unknown_level_falls_back_to_info(self, logger_name):
        """Test lenient level names."""
        assert setup_logging(logger_name, level="chatty").level == logging.INFO


class TestHelpers:
    """Third-party quieting and temporary levels."""

    def test_third_party_loggers_quieted(self):
        """Test that noisy packages go to WARNING unless kept verbose."""
        logging.getLogger("requests").setLevel(logging.DEBUG)
        logging.getLogger("urllib3").setLevel(logging.DEBUG)

        configure_third_party_loggers(verbose_packages=["requests"])

        assert logging.getLogger("urllib3").level == logging.WARNING
        assert logging.getLogger("requests").level == logging.DEBUG

    def test_get_logger_leaves_handlers_alone(self, logger_name):
        """Test that get_logger returns the plain named logger."""
        logger = get_logger(logger_name)
        assert logger is logging.getLogger(logger_name)
        assert logger.handlers == []

    def test_log_context_restores_level(self, logger_name):
        """Test that LogContext puts the previous level back."""
        logger = logging.getLogger(logger_name)
        logger.setLevel(logging.WARNING)

        with LogContext(logger, "DEBUG") as inner:
            assert inner.level == logging.DEBUG

        assert logger.level == logging.WARNING
