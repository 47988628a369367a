"""
test_logging_config.py — Tests for fleetsync/logging_config.py

Verifies Loguru setup, stdlib logging interception, level selection and
JSON output. Uses loguru's sink capture for assertions.

Called by: pytest
Depends on: fleetsync/logging_config.py
"""

import logging
import os
from unittest.mock import patch

import pytest
from loguru import logger

from fleetsync.logging_config import setup_logging


@pytest.fixture(autouse=True)
def _clean_loguru():
    """Remove all handlers before/after each test for isolation."""
    logger.remove()
    yield
    logger.remove()


def test_setup_logging_adds_handler():
    """setup_logging() should add at least one Loguru handler."""
    assert len(logger._core.handlers) == 0
    setup_logging()
    assert len(logger._core.handlers) > 0


def test_stdlib_logging_intercepted():
    """After setup, stdlib logging.getLogger() messages go through Loguru."""
    setup_logging()

    # Add test sink AFTER setup (setup calls logger.remove() internally)
    messages = []
    logger.add(lambda m: messages.append(str(m)), format="{message}")

    logging.getLogger("alembic.runtime").warning("intercepted message")

    assert any("intercepted message" in m for m in messages)


def test_noisy_libraries_quieted():
    setup_logging()
    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING


def test_log_level_from_env():
    """LOG_LEVEL env var controls minimum log level."""
    with patch.dict(os.environ, {"LOG_LEVEL": "WARNING"}):
        with patch("loguru.logger.add") as mock_add:
            setup_logging()
    levels = {c.kwargs.get("level") for c in mock_add.call_args_list}
    assert levels == {"WARNING"}


def test_json_format_uses_serialize():
    """LOG_FORMAT=json switches the console sink to serialized output."""
    with patch.dict(os.environ, {"LOG_FORMAT": "json"}):
        with patch("loguru.logger.add") as mock_add:
            setup_logging()
    assert all(c.kwargs.get("serialize") is True for c in mock_add.call_args_list)


def test_log_file_added_in_json_mode(tmp_path):
    log_file = str(tmp_path / "sync.log")
    with patch.dict(os.environ, {"LOG_FORMAT": "json", "LOG_FILE": log_file}):
        with patch("loguru.logger.add") as mock_add:
            setup_logging()
    targets = [c.args[0] for c in mock_add.call_args_list]
    assert log_file in targets
    file_call = next(c for c in mock_add.call_args_list if c.args[0] == log_file)
    assert file_call.kwargs["rotation"] == "50 MB"


def test_context_binding():
    """logger.contextualize() adds fields to log records."""
    records = []
    logger.add(lambda m: records.append(m.record), format="{message}")

    with logger.contextualize(entity="os"):
        logger.info("sync log")

    assert records[-1]["extra"].get("entity") == "os"
