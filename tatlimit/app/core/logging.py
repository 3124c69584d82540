"""Logging setup for the limiter.

Two renderings share one dictConfig: human-readable text (optionally with the
decision fields appended) and one JSON object per line for log shippers.
Decision context travels on the record through ``extra=``; build it with
``get_log_context`` or ``decision_context``.
"""

import json
import logging
import logging.config
import sys
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional

from tatlimit.app.core.config import settings

if TYPE_CHECKING:
    from tatlimit.app.limiter.models import Result

REQUEST_FIELDS = ("request_id", "path", "method")
DECISION_FIELDS = ("rate_limit_key", "backend", "allowed", "remaining", "retry_after")
CONTEXT_FIELDS = REQUEST_FIELDS + DECISION_FIELDS

# Attributes every LogRecord carries; anything else came in through extra=
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
}

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
STRUCTURED_FORMAT = (
    TEXT_FORMAT
    + " - key=%(rate_limit_key)s allowed=%(allowed)s"
    " remaining=%(remaining)s retry_after=%(retry_after)s"
)


class JSONFormatter(logging.Formatter):
    """Render each record as a single JSON object.

    Context fields become top-level keys when set; other ``extra=`` values
    are grouped under ``"extra"``.
    """

    def __init__(self, timespec: str = "milliseconds"):
        super().__init__()
        self.timespec = timespec

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: Dict[str, Any] = {
            "timestamp": created.isoformat(timespec=self.timespec),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            },
        }

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        extra = {
            name: value
            for name, value in vars(record).items()
            if name not in _RECORD_ATTRS and name not in CONTEXT_FIELDS
        }
        if extra:
            payload["extra"] = extra

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Give every record the context attributes so text formats never KeyError."""

    def filter(self, record: logging.LogRecord) -> bool:
        for field in CONTEXT_FIELDS:
            record.__dict__.setdefault(field, None)
        return True


def _stream_handler(stream: Any, level: str, formatter: str) -> Dict[str, Any]:
    return {
        "class": "logging.StreamHandler",
        "stream": stream,
        "level": level,
        "formatter": formatter,
        "filters": ["context"],
    }


def get_logging_config() -> Dict[str, Any]:
    """Build the dictConfig for the current settings.

    ``log_format`` picks the console formatter (text, structured or json);
    errors are mirrored to stderr.
    """
    log_format = str(getattr(settings, "log_format", "text")).lower()
    log_level = str(getattr(settings, "log_level", "INFO")).upper()

    formatters: Dict[str, Dict[str, Any]] = {
        "text": {"format": TEXT_FORMAT},
        "structured": {"format": STRUCTURED_FORMAT},
    }
    if log_format == "json":
        formatters["json"] = {"()": "tatlimit.app.core.logging.JSONFormatter"}
    formatter = log_format if log_format in formatters else "text"

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"context": {"()": "tatlimit.app.core.logging.ContextFilter"}},
        "formatters": formatters,
        "handlers": {
            "console": _stream_handler(sys.stdout, log_level, formatter),
            "errors": _stream_handler(sys.stderr, "ERROR", formatter),
        },
        "loggers": {
            "tatlimit": {
                "level": log_level,
                "handlers": ["console", "errors"],
                "propagate": False,
            },
        },
        "root": {"level": log_level, "handlers": ["console"]},
    }


def setup_logging() -> None:
    """Apply get_logging_config() and quiet the redis client logger."""
    logging.config.dictConfig(get_logging_config())
    logging.getLogger("redis").setLevel(logging.WARNING)


def get_logger(name: str = "tatlimit") -> logging.Logger:
    return logging.getLogger(name)


def get_log_context(
    request_id: Optional[str] = None,
    rate_limit_key: Optional[str] = None,
    backend: Optional[str] = None,
    **fields: Any,
) -> Dict[str, Any]:
    """Collect context for ``extra=``, leaving out unset values.

    Example:
        >>> logger.warning(
        ...     "Rate limit store unreachable",
        ...     extra=get_log_context(rate_limit_key="RATE_LIMIT:user_1", path="/v1/items"),
        ... )
    """
    fields.update(request_id=request_id, rate_limit_key=rate_limit_key, backend=backend)
    return {name: value for name, value in fields.items() if value is not None}


def decision_context(result: "Result", rate_limit_key: str, backend: str) -> Dict[str, Any]:
    """Log context describing one decision."""
    return get_log_context(
        rate_limit_key=rate_limit_key,
        backend=backend,
        allowed=result.allowed,
        remaining=result.remaining,
        retry_after=result.retry_delay,
    )
