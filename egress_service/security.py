"""Log sanitizing for egress credentials and stream keys."""

import logging
import re
from typing import Any, Dict, List, Union
from urllib.parse import urlsplit, urlunsplit


class SecurityConfig:
    """Security configuration constants."""

    # Sensitive data patterns for log filtering
    SENSITIVE_PATTERNS = [
        re.compile(r'(access[_\s-]?key["\']?\s*[:=]\s*["\']?)([^\s"\',}]{8,})', re.IGNORECASE),
        re.compile(r'(account[_\s-]?key["\']?\s*[:=]\s*["\']?)([^\s"\',}]{8,})', re.IGNORECASE),
        re.compile(r'(secret["\']?\s*[:=]\s*["\']?)([^\s"\',}]{8,})', re.IGNORECASE),
        re.compile(r'(credentials["\']?\s*[:=]\s*["\']?)([^\s"\',}]{8,})', re.IGNORECASE),
        re.compile(r'(password["\']?\s*[:=]\s*["\']?)([^\s"\']{8,})', re.IGNORECASE),
        re.compile(r'(token["\']?\s*[:=]\s*["\']?)([A-Za-z0-9_.-]{20,})', re.IGNORECASE),
        re.compile(r'(rtmps?://[^\s/]+/[^\s/]+/)([^\s/"\']{6,})', re.IGNORECASE),
        re.compile(r'(srt://[^\s]*?streamid=)([^\s&"\']{6,})', re.IGNORECASE),
    ]

    # Record attributes that logging owns
    RESERVED_RECORD_ATTRS = {
        'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
        'filename', 'module', 'lineno', 'funcName', 'created',
        'msecs', 'relativeCreated', 'thread', 'threadName',
        'processName', 'process', 'getMessage', 'exc_info',
        'exc_text', 'stack_info', 'taskName'
    }


def mask_sensitive_data(data: str, mask_char: str = '*', visible_chars: int = 4) -> str:
    """
    Mask sensitive data for logging.

    Args:
        data: Sensitive data to mask
        mask_char: Character to use for masking
        visible_chars: Number of characters to show at the end

    Returns:
        str: Masked data
    """
    if not data or len(data) <= visible_chars:
        return mask_char * len(data) if data else ""

    return mask_char * (len(data) - visible_chars) + data[-visible_chars:]


def redact_url(url: str) -> str:
    """
    Redact the stream key and userinfo of an output URL.

    ``rtmp://live.example.com/app/sk_123456`` becomes
    ``rtmp://live.example.com/app/{masked}``. Query strings are dropped.
    """
    try:
        parts = urlsplit(url)
    except ValueError:
        return mask_sensitive_data(url)

    netloc = parts.hostname or ""
    if parts.port:
        netloc = f"{netloc}:{parts.port}"

    path = parts.path
    segments = path.split("/")
    if len(segments) > 2 and segments[-1]:
        segments[-1] = mask_sensitive_data(segments[-1])
        path = "/".join(segments)

    query = "***" if parts.query else ""
    return urlunsplit((parts.scheme, netloc, path, query, ""))


def sanitize_log_data(data: Union[str, Dict[str, Any], List[Any]]) -> Union[str, Dict[str, Any], List[Any]]:
    """
    Sanitize data for logging by removing or masking sensitive information.

    Args:
        data: Data to sanitize

    Returns:
        Sanitized data
    """
    if isinstance(data, str):
        return _sanitize_string(data)
    elif isinstance(data, dict):
        return {key: sanitize_log_data(value) for key, value in data.items()}
    elif isinstance(data, list):
        return [sanitize_log_data(item) for item in data]
    else:
        return data


def _sanitize_string(text: str) -> str:
    """Mask every sensitive pattern found in ``text``."""
    sanitized = text

    for pattern in SecurityConfig.SENSITIVE_PATTERNS:
        def replace_match(match):
            prefix = match.group(1) if match.lastindex >= 1 else ""
            sensitive_part = match.group(2) if match.lastindex >= 2 else match.group(0)
            return prefix + mask_sensitive_data(sensitive_part)

        sanitized = pattern.sub(replace_match, sanitized)

    return sanitized


class SensitiveDataFilter(logging.Filter):
    """Logging filter to remove sensitive data from log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        """
        Filter log record to remove sensitive data.

        Args:
            record: Log record to filter

        Returns:
            bool: Always True (record is modified in place)
        """
        if isinstance(record.msg, str):
            record.msg = sanitize_log_data(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = sanitize_log_data(record.args)
            else:
                record.args = tuple(sanitize_log_data(arg) for arg in record.args)

        for key, value in list(record.__dict__.items()):
            if key not in SecurityConfig.RESERVED_RECORD_ATTRS:
                setattr(record, key, sanitize_log_data(value))

        return True
