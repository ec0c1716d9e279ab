"""Centralized logging configuration with structured JSON format."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, MutableMapping, Optional, Tuple

from egress_service.config import Settings
from egress_service.security import SecurityConfig, SensitiveDataFilter


SERVICE_NAME = "egress"


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "service": getattr(record, "service", SERVICE_NAME),
        }

        # Add correlation ID if present
        if hasattr(record, 'correlation_id'):
            log_entry["correlation_id"] = record.correlation_id

        # Add any extra fields
        for key, value in record.__dict__.items():
            if key in SecurityConfig.RESERVED_RECORD_ATTRS or key in log_entry:
                continue
            if key in ('correlation_id', 'service', 'message', 'asctime'):
                continue
            log_entry[key] = value

        # Add exception info if present
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class CorrelationAdapter(logging.LoggerAdapter):
    """Logger adapter that stamps every record with a correlation ID.

    Egress jobs log through an adapter bound to their egress id so the
    id shows up on every line without threading it through each call.
    """

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


def setup_logging(settings: Settings) -> None:
    """Set up centralized logging configuration."""

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.value))

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)

    if settings.log_format == "json":
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )

    console_handler.setFormatter(formatter)
    console_handler.addFilter(SensitiveDataFilter())

    root_logger.addHandler(console_handler)

    # Quiet chatty transport libraries
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.debug else logging.WARNING
    )

    logger = logging.getLogger(__name__)
    logger.info(
        "Logging system initialized with security filtering",
        extra={
            "log_level": settings.log_level.value,
            "log_format": settings.log_format,
            "environment": settings.environment.value
        }
    )


def get_logger_with_correlation(name: str, correlation_id: Optional[str] = None) -> logging.LoggerAdapter:
    """Get a logger whose records carry ``correlation_id``."""
    extra = {"correlation_id": correlation_id} if correlation_id else {}
    return CorrelationAdapter(logging.getLogger(name), extra)


class LoggerMixin:
    """Mixin class to add logging capabilities with correlation ID support."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._logger = logging.getLogger(self.__class__.__module__ + "." + self.__class__.__name__)

    def get_logger(self, correlation_id: Optional[str] = None):
        """Get logger with optional correlation ID."""
        if correlation_id:
            return get_logger_with_correlation(self._logger.name, correlation_id)
        return self._logger

    def log_with_context(
        self,
        level: int,
        message: str,
        correlation_id: Optional[str] = None,
        **extra_fields: Any
    ) -> None:
        """Log message with context and extra fields."""
        logger = self.get_logger(correlation_id)
        logger.log(level, message, extra=extra_fields)

    def info_with_context(
        self,
        message: str,
        correlation_id: Optional[str] = None,
        **extra_fields: Any
    ) -> None:
        """Log info message with context."""
        self.log_with_context(logging.INFO, message, correlation_id, **extra_fields)

    def warning_with_context(
        self,
        message: str,
        correlation_id: Optional[str] = None,
        **extra_fields: Any
    ) -> None:
        """Log warning message with context."""
        self.log_with_context(logging.WARNING, message, correlation_id, **extra_fields)

    def error_with_context(
        self,
        message: str,
        correlation_id: Optional[str] = None,
        **extra_fields: Any
    ) -> None:
        """Log error message with context."""
        self.log_with_context(logging.ERROR, message, correlation_id, **extra_fields)
