"""Logging helpers: configuration, structured extras, URL redaction and timing."""
from __future__ import annotations

import logging
import os
import re
import time
import urllib.parse
from typing import Any, Dict, Optional

from constants import Constants

_SENSITIVE_QUERY_KEYS = {"token", "access_token", "auth", "key", "password", "signature", "sig"}
_TOKEN_PATTERN = re.compile(r"(?i)(bearer\s+|token[=:]\s*)([A-Za-z0-9._\-]+)")


def configure_logging(level: Optional[str] = None, logfile: Optional[str] = None) -> None:
    """Configure the root logger once, honouring PKGFLOW_LOG_LEVEL.

    With ``logfile`` records go to that file instead of stderr.
    """
    level_name = (level or os.environ.get(Constants.ENV_LOG_LEVEL) or "INFO").upper()
    level_value = getattr(logging, level_name, logging.INFO)
    root = logging.getLogger()
    if logfile:
        handler: logging.Handler = logging.FileHandler(logfile, encoding="utf-8")
        handler.setFormatter(logging.Formatter(Constants.LOG_FORMAT))
        root.addHandler(handler)
    elif not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(Constants.LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(level_value)


def is_debug_enabled(logger: logging.Logger) -> bool:
    """Cheap guard for building expensive DEBUG payloads."""
    return logger.isEnabledFor(logging.DEBUG)


def extra_context(**fields: Any) -> Dict[str, Any]:
    """Build an ``extra=`` mapping for structured log records.

    None values are dropped so formatters only see populated fields.
    """
    return {k: v for k, v in fields.items() if v is not None}


def redact(text: str) -> str:
    """Mask bearer tokens and token=... fragments in free text."""
    if not text:
        return text
    return _TOKEN_PATTERN.sub(lambda m: m.group(1) + "***", text)


def safe_url(url: str) -> str:
    """Strip credentials and sensitive query parameters from a URL for logging."""
    try:
        parts = urllib.parse.urlsplit(url)
    except ValueError:
        return redact(url)
    netloc = parts.hostname or ""
    if parts.port:
        netloc = f"{netloc}:{parts.port}"
    query = urllib.parse.parse_qsl(parts.query, keep_blank_values=True)
    cleaned = [
        (k, "***" if k.lower() in _SENSITIVE_QUERY_KEYS else v) for k, v in query
    ]
    return urllib.parse.urlunsplit(
        (parts.scheme, netloc, parts.path, urllib.parse.urlencode(cleaned), "")
    )


class Timer:
    """Context manager measuring wall-clock duration in milliseconds."""

    def __init__(self) -> None:
        self._start = 0.0
        self._end: Optional[float] = None

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        self._end = None
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._end = time.perf_counter()

    def duration_ms(self) -> int:
        end = self._end if self._end is not None else time.perf_counter()
        return int((end - self._start) * 1000)
