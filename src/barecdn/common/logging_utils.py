"""Logging helpers shared by the CDN, transformer and CLI.

Structured fields travel through ``extra=extra_context(...)`` so handlers and
formatters can pick them up; the default formatter ignores them.
"""
from __future__ import annotations

import logging
import os
import re
import time
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from ..constants import Constants

_SENSITIVE_PARAM_RE = re.compile(r"(token|key|secret|password|auth|signature)", re.IGNORECASE)


def configure_logging(level: Optional[str] = None, log_format: str = Constants.LOG_FORMAT) -> None:
    """Configure the root logger.

    The level comes from ``level``, else the ``BARECDN_LOG_LEVEL`` environment
    variable, else INFO. Calling this more than once replaces the previous
    stream handler instead of stacking handlers.
    """
    level_name = (level or os.environ.get(Constants.LOG_LEVEL_ENV) or "INFO").upper()
    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    for handler in list(root.handlers):
        if getattr(handler, "_barecdn_handler", False):
            root.removeHandler(handler)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(log_format))
    handler._barecdn_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)


def is_debug_enabled(logger: logging.Logger) -> bool:
    """Return True if DEBUG records would be emitted by this logger."""
    return logger.isEnabledFor(logging.DEBUG)


def extra_context(**fields: Any) -> Dict[str, Any]:
    """Build an ``extra`` mapping for structured log records, dropping Nones."""
    return {key: value for key, value in fields.items() if value is not None}


def safe_url(url: str) -> str:
    """Strip credentials and redact sensitive query values from a URL."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    netloc = parts.netloc.rsplit("@", 1)[-1]
    query = parts.query
    if query:
        pairs = [
            (key, "[REDACTED]" if _SENSITIVE_PARAM_RE.search(key) else value)
            for key, value in parse_qsl(query, keep_blank_values=True)
        ]
        query = urlencode(pairs)
    return urlunsplit((parts.scheme, netloc, parts.path, query, parts.fragment))


class Timer:
    """Context manager measuring wall time in milliseconds."""

    def __init__(self) -> None:
        self._start = 0.0
        self._end: Optional[float] = None

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        self._end = None
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self._end = time.perf_counter()

    def duration_ms(self) -> int:
        end = self._end if self._end is not None else time.perf_counter()
        return int((end - self._start) * 1000)
