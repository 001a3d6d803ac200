"""Application logging configuration helpers."""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .structured_logging import get_correlation_id


DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_FORMAT = "text"


class CorrelationIdFilter(logging.Filter):
    """Stamp every record with the current request's correlation id."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = get_correlation_id()
        return True


class ISO8601Formatter(logging.Formatter):
    def formatTime(self, record: logging.LogRecord, datefmt: Optional[str] = None) -> str:  # noqa: N802
        dt = datetime.fromtimestamp(record.created, tz=timezone.utc).astimezone()
        if datefmt:
            return dt.strftime(datefmt)
        return dt.isoformat(timespec="milliseconds")


class JSONFormatter(ISO8601Formatter):
    """One JSON object per line, for log aggregation."""

    def __init__(self, include_identifiers: bool = False) -> None:
        super().__init__()
        self.include_identifiers = include_identifiers

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record),
            "severity": record.levelname,
            "logger": record.name,
            "correlation_id": getattr(record, "correlation_id", "none"),
            "message": record.getMessage(),
        }
        if self.include_identifiers:
            payload["process"] = record.process
            payload["thread"] = record.threadName
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class TextFormatter(ISO8601Formatter):
    """Human-readable single-line formatter."""

    def __init__(self, include_identifiers: bool = False) -> None:
        identifiers = " [pid=%(process)d thread=%(threadName)s]" if include_identifiers else ""
        super().__init__(fmt=f"%(asctime)s %(levelname)s %(name)s{identifiers}: %(message)s")


def _resolve_level(raw_level: str) -> int:
    level = getattr(logging, raw_level.strip().upper(), None)
    return level if isinstance(level, int) else logging.INFO


def configure_logging(
    level_name: Optional[str] = None,
    log_format: Optional[str] = None,
    include_identifiers: Optional[bool] = None,
) -> None:
    """Configure root logging; unset arguments fall back to environment variables.

    Supported env vars:
    - HUE_HUB_LOG_LEVEL: Python logging level (default: INFO)
    - HUE_HUB_LOG_FORMAT: text|json (default: text)
    - HUE_HUB_LOG_INCLUDE_IDENTIFIERS: true/false for process/thread ids (default: false)
    """
    level = _resolve_level(level_name or os.environ.get("HUE_HUB_LOG_LEVEL") or DEFAULT_LOG_LEVEL)
    fmt = (log_format or os.environ.get("HUE_HUB_LOG_FORMAT") or DEFAULT_LOG_FORMAT).strip().lower()
    if include_identifiers is None:
        raw_identifiers = os.environ.get("HUE_HUB_LOG_INCLUDE_IDENTIFIERS", "")
        include_identifiers = raw_identifiers.strip().lower() in {"1", "true", "yes", "on"}

    handler = logging.StreamHandler()
    handler.addFilter(CorrelationIdFilter())
    if fmt == "json":
        handler.setFormatter(JSONFormatter(include_identifiers=include_identifiers))
    else:
        handler.setFormatter(TextFormatter(include_identifiers=include_identifiers))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)
    root_logger.addHandler(handler)

    # werkzeug's request lines duplicate the app's own request logging
    werkzeug_logger = logging.getLogger("werkzeug")
    werkzeug_logger.handlers.clear()
    werkzeug_logger.propagate = True
    werkzeug_logger.setLevel(max(level, logging.WARNING))
