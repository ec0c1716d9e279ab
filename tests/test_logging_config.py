"""Tests for logging configuration system."""

import json
import logging
import sys

from egress_service.config import Settings
from egress_service.logging_config import (
    CorrelationAdapter,
    JSONFormatter,
    LoggerMixin,
    get_logger_with_correlation,
    setup_logging,
)
from egress_service.security import SensitiveDataFilter


def make_record(msg="Test message", **extra):
    record = logging.LogRecord(
        name="test.logger",
        level=logging.INFO,
        pathname="/test/path.py",
        lineno=42,
        msg=msg,
        args=(),
        exc_info=None
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    """Test JSON formatter functionality."""

    def test_basic_formatting(self):
        """Test basic JSON log formatting."""
        log_data = json.loads(JSONFormatter().format(make_record()))

        assert log_data["level"] == "INFO"
        assert log_data["logger"] == "test.logger"
        assert log_data["message"] == "Test message"
        assert log_data["module"] == "path"
        assert log_data["line"] == 42
        assert log_data["service"] == "egress"
        assert "timestamp" in log_data

    def test_correlation_and_extra_fields(self):
        """Test correlation ID and extra fields are included."""
        record = make_record(correlation_id="EG_abc", room_name="room-a", attempt=2)

        log_data = json.loads(JSONFormatter().format(record))

        assert log_data["correlation_id"] == "EG_abc"
        assert log_data["room_name"] == "room-a"
        assert log_data["attempt"] == 2

    def test_exception_formatting(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = make_record()
            record.exc_info = sys.exc_info()

        log_data = json.loads(JSONFormatter().format(record))

        assert "ValueError: boom" in log_data["exception"]


class TestCorrelation:
    """Test correlation-aware loggers."""

    def test_adapter_adds_correlation_id(self, caplog):
        logger = get_logger_with_correlation("egress.test", "EG_123")
        assert isinstance(logger, CorrelationAdapter)

        with caplog.at_level(logging.INFO, logger="egress.test"):
            logger.info("hello", extra={"room_name": "room-a"})

        record = caplog.records[-1]
        assert record.correlation_id == "EG_123"
        assert record.room_name == "room-a"

    def test_adapters_do_not_leak_between_jobs(self, caplog):
        first = get_logger_with_correlation("egress.test", "EG_1")
        second = get_logger_with_correlation("egress.test", "EG_2")

        with caplog.at_level(logging.INFO, logger="egress.test"):
            first.info("one")
            second.info("two")

        assert [r.correlation_id for r in caplog.records[-2:]] == ["EG_1", "EG_2"]


class TestLoggerMixin:

    def test_info_with_context(self, caplog):
        class Component(LoggerMixin):
            pass

        component = Component()
        with caplog.at_level(logging.INFO):
            component.info_with_context("started", correlation_id="EG_9", output="stream")

        record = caplog.records[-1]
        assert record.getMessage() == "started"
        assert record.correlation_id == "EG_9"
        assert record.output == "stream"
        assert record.name.endswith("Component")


class TestSetupLogging:

    def test_json_handler_with_sensitive_filter(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logging(Settings(_env_file=None, log_level="DEBUG", log_format="json"))

            assert root.level == logging.DEBUG
            assert len(root.handlers) == 1
            handler = root.handlers[0]
            assert isinstance(handler.formatter, JSONFormatter)
            assert any(isinstance(f, SensitiveDataFilter) for f in handler.filters)
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)

    def test_text_format(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logging(Settings(_env_file=None, log_format="text"))

            assert not isinstance(root.handlers[0].formatter, JSONFormatter)
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)
