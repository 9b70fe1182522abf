"""Tests for logging setup."""

import logging
from logging.handlers import RotatingFileHandler

import pytest

from binance_access.config import LoggingConfig
from binance_access.utils.logging_setup import setup_logging


@pytest.fixture
def root_logger():
    """Restore root logger state after each test."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestSetupLogging:

    def test_console_only(self, root_logger):
        setup_logging(LoggingConfig(level="WARNING"))

        assert root_logger.level == logging.WARNING
        assert len(root_logger.handlers) == 1
        assert isinstance(root_logger.handlers[0], logging.StreamHandler)

    def test_rotating_file_handler(self, root_logger, tmp_path):
        log_file = tmp_path / "logs" / "access.log"
        setup_logging(LoggingConfig(level="INFO", file_path=str(log_file), max_size_mb=1, backup_count=3))

        file_handlers = [h for h in root_logger.handlers if isinstance(h, RotatingFileHandler)]
        assert len(file_handlers) == 1
        assert file_handlers[0].maxBytes == 1024 * 1024
        assert file_handlers[0].backupCount == 3
        assert log_file.parent.exists()

        logging.getLogger("binance_access.test").info("hello")
        file_handlers[0].flush()
        assert "hello" in log_file.read_text()

    def test_unknown_level_defaults_to_info(self, root_logger):
        setup_logging(LoggingConfig(level="chatty"))
        assert root_logger.level == logging.INFO

    def test_third_party_quieted(self, root_logger):
        setup_logging(LoggingConfig())
        assert logging.getLogger("urllib3").level == logging.WARNING
        assert logging.getLogger("websockets").level == logging.WARNING
