"""
Tests for logging setup.
"""

import json
import logging

import pytest
import structlog

from elarm_registry.utils.logging import JSONFormatter, get_logger, setup_logging


@pytest.fixture
def restore_logging():
    """Undo global logging configuration after the test."""
    root = logging.getLogger()
    level, handlers = root.level, root.handlers[:]
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
    structlog.reset_defaults()


class TestSetupLogging:
    """Test setup_logging."""

    def test_console_only(self, restore_logging):
        result = setup_logging(app_name="elarm-test", log_level="warning")

        assert result["log_dir"] is None
        assert result["config"]["log_level"] == "warning"
        assert logging.getLogger().level == logging.WARNING
        assert len(logging.getLogger().handlers) == 1

    def test_file_logging(self, tmp_path, restore_logging):
        log_dir = tmp_path / "logs"
        setup_logging(app_name="elarm-test", log_level="DEBUG", log_dir=log_dir)

        get_logger("elarm.test").error("something_failed", server="alpha")
        for handler in logging.getLogger().handlers:
            handler.flush()

        assert (log_dir / "elarm-test.log").exists()
        errors = (log_dir / "elarm-test-errors.log").read_text().splitlines()
        assert errors
        record = json.loads(errors[-1])
        assert record["level"] == "ERROR"
        assert "something_failed" in record["message"]


class TestJSONFormatter:
    """Test the file formatter."""

    def test_extra_fields(self):
        record = logging.LogRecord(
            name="elarm.registry",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="server_started",
            args=(),
            exc_info=None
        )
        record.server = "alpha"
        record.handle = object()

        data = json.loads(JSONFormatter().format(record))

        assert data["message"] == "server_started"
        assert data["logger"] == "elarm.registry"
        assert data["server"] == "alpha"
        assert data["handle"].startswith("<object")
