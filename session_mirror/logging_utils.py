"""
Structured JSON logging for background sync.

Pushes and pulls run detached from the command that triggered them, so
their outcome is only visible in logs. Records emitted through a
SyncLoggerAdapter carry a ``sync`` object (operation, blob, result, ...)
that the JSON formatter keeps apart from free-form extras.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, TextIO

PACKAGE_LOGGER = "session_mirror"

# Keys that SyncLoggerAdapter groups under "sync" in the JSON output
SYNC_FIELDS = ("operation", "session_id", "blob", "result", "bytes", "sessions")


class StructuredJsonFormatter(logging.Formatter):
    """
    Single-line JSON formatter.

    Fields:
    - timestamp: record creation time, ISO 8601 in UTC
    - level, logger, message
    - sync: sync context, present only when the record has any
    - exception: formatted traceback when exc_info is set
    - any other extra passed by the caller
    """

    _STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
        "message",
        "asctime",
    }

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        sync: dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key in self._STANDARD_ATTRS or key.startswith("_"):
                continue
            if key in SYNC_FIELDS:
                sync[key] = value
            else:
                log_obj[key] = value
        if sync:
            log_obj["sync"] = sync

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


def configure_structured_logging(
    level: int = logging.INFO,
    logger_name: str | None = PACKAGE_LOGGER,
    stream: TextIO | None = None,
) -> logging.Logger:
    """
    Send a logger's records to a stream as JSON lines.

    Args:
        level: Logging level (default: INFO)
        logger_name: Logger to configure (default: the package logger)
        stream: Destination (default: stderr, leaving stdout for command output)

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)
    logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(StructuredJsonFormatter())
    logger.addHandler(handler)
    logger.setLevel(level)

    return logger


def get_sync_logger(name: str) -> logging.Logger:
    """Logger under the package namespace, e.g. ``session_mirror.remote.drive``."""
    return logging.getLogger(f"{PACKAGE_LOGGER}.{name}")


class SyncLoggerAdapter(logging.LoggerAdapter):
    """
    Adapter that stamps sync context on every record.

    Per-call ``extra`` wins over the bound context, so one adapter can
    report a different ``result`` on each exit path.

    >>> log = SyncLoggerAdapter(logger, {"operation": "pull"})
    >>> log.info("merged 3 sessions", extra={"result": "merged", "sessions": 3})
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs

    def bind(self, **context: Any) -> "SyncLoggerAdapter":
        """A new adapter with extra context added to this one's."""
        return SyncLoggerAdapter(self.logger, {**self.extra, **context})
