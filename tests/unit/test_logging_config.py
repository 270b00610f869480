"""
Unit tests for logging setup.

Tests cover:
- Text and JSON formatter selection
- Log level from settings
"""

import logging

import json_log_formatter
import pytest

from sofa_sdk.config import SofaSettings
from sofa_sdk.logging_config import setup_logging


class TestSetupLogging:
    """Tests for setup_logging."""

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers = handlers
        root.setLevel(level)

    def test_json_format(self):
        setup_logging(SofaSettings(log_format="json", log_level="debug"))
        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)
        assert root.level == logging.DEBUG

    def test_text_format(self):
        setup_logging(SofaSettings(log_format="text", log_level="WARNING"))
        root = logging.getLogger()
        assert not isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)
        assert root.level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING
