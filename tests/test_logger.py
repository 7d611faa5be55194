"""Tests for the logging setup module."""

import logging

import pytest

from invoice_intake.utils.logger import ContextAdapter, get_logger, setup_logging


class TestSetupLogging:
    """Tests for the setup_logging function."""

    def setup_method(self) -> None:
        root = logging.getLogger()
        self.saved = (list(root.handlers), root.level)
        root.handlers.clear()

    def teardown_method(self) -> None:
        root = logging.getLogger()
        root.handlers[:] = self.saved[0]
        root.setLevel(self.saved[1])

    def test_setup_creates_handler(self) -> None:
        setup_logging("DEBUG")
        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert root.level == logging.DEBUG

    def test_setup_idempotent(self) -> None:
        setup_logging("INFO")
        setup_logging("WARNING")
        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert root.level == logging.WARNING

    def test_format_names_thread(self) -> None:
        setup_logging("INFO")
        formatter = logging.getLogger().handlers[0].formatter
        assert "%(threadName)s" in formatter._fmt

    def test_setup_invalid_level_defaults_to_info(self) -> None:
        setup_logging("NONEXISTENT")
        assert logging.getLogger().level == logging.INFO


class TestGetLogger:
    """Tests for the get_logger function."""

    def test_returns_named_logger(self) -> None:
        logger = get_logger("test.module")
        assert logger.name == "test.module"
        assert isinstance(logger, logging.Logger)

    def test_same_name_returns_same_logger(self) -> None:
        assert get_logger("test.same") is get_logger("test.same")

    def test_context_prefixes_messages(self, caplog: pytest.LogCaptureFixture) -> None:
        logger = get_logger("test.context", document_id="inv-7", case_id="c1")
        assert isinstance(logger, ContextAdapter)
        with caplog.at_level(logging.INFO, logger="test.context"):
            logger.info("resolved %d fields", 4)
        assert caplog.messages == ["[case_id=c1 document_id=inv-7] resolved 4 fields"]
