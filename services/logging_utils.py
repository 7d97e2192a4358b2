#!/usr/bin/env python3
"""
Alert Remediator - Logging Utilities

Structured logging for the remediator service.

Key Features:
- NDJSON (newline-delimited JSON) output, opt-in via LOG_JSON_ENABLED
- Text output otherwise, with the correlation id in every line
- Thread-local LogContext carrying the inbound request's correlation id and
  the fingerprint of the alert being handled, stamped on every record so
  logs from worker threads can be tied back to a notification

Usage:
    from logging_utils import setup_json_logging, LogContext

    logger = setup_json_logging(service_name="remediator", version="1.0.0")

    with LogContext.bind(correlation_id=cid, fingerprint=fp):
        logger.info("Deleting pod")

Environment Variables:
    LOG_JSON_ENABLED: Enable JSON logging (default: false)
    LOG_LEVEL: Logging level (default: INFO)
    POD_NAME: Kubernetes pod name for metadata
"""

import json
import logging
import os
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

TEXT_LOG_FORMAT = "%(asctime)s - %(levelname)s - [%(correlation_id)s] - %(message)s"

# LogRecord attributes that are not user-supplied "extra" fields
_RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName", "levelname",
    "levelno", "lineno", "module", "msecs", "message", "pathname", "process",
    "processName", "relativeCreated", "thread", "threadName", "exc_info",
    "exc_text", "stack_info", "taskName", "correlation_id", "fingerprint",
})


class LogContext:
    """Thread-local correlation id and alert fingerprint."""

    _storage = threading.local()

    @classmethod
    def get_correlation_id(cls) -> str:
        return getattr(cls._storage, 'correlation_id', None) or 'system'

    @classmethod
    def get_fingerprint(cls) -> Optional[str]:
        return getattr(cls._storage, 'fingerprint', None)

    @classmethod
    def set_correlation_id(cls, correlation_id: Optional[str]) -> None:
        cls._storage.correlation_id = correlation_id

    @classmethod
    @contextmanager
    def bind(cls, correlation_id: Optional[str] = None, fingerprint: Optional[str] = None) -> Iterator[None]:
        """Set context values for the duration of the block, then restore the previous ones."""
        previous = (
            getattr(cls._storage, 'correlation_id', None),
            getattr(cls._storage, 'fingerprint', None),
        )
        if correlation_id is not None:
            cls._storage.correlation_id = correlation_id
        if fingerprint is not None:
            cls._storage.fingerprint = fingerprint
        try:
            yield
        finally:
            cls._storage.correlation_id, cls._storage.fingerprint = previous


class ContextFilter(logging.Filter):
    """Adds correlation_id and fingerprint to every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, 'correlation_id', None):
            record.correlation_id = LogContext.get_correlation_id()
        if not getattr(record, 'fingerprint', None):
            record.fingerprint = LogContext.get_fingerprint()
        return True


class NDJSONFormatter(logging.Formatter):
    """
    Formats each record as one JSON object per line.

    Fields: timestamp, level, message, logger, module, function, line,
    thread, service, version, pod_name, correlation_id, fingerprint (when
    set), error (when an exception is attached) and any ``extra`` fields.
    """

    def __init__(self, service_name: str, version: str):
        super().__init__()
        self.service_name = service_name
        self.version = version
        self.pod_name = os.getenv("POD_NAME", "unknown")

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "thread": record.threadName,
            "service": self.service_name,
            "version": self.version,
            "pod_name": self.pod_name,
            "correlation_id": getattr(record, "correlation_id", None) or "system",
        }

        fingerprint = getattr(record, "fingerprint", None)
        if fingerprint:
            log_entry["fingerprint"] = fingerprint

        if record.exc_info:
            log_entry["error"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info),
            }

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            try:
                json.dumps(value)
                log_entry[key] = value
            except (TypeError, ValueError):
                log_entry[key] = str(value)

        return json.dumps(log_entry, default=str)


def setup_json_logging(
    service_name: str,
    version: str,
    level: str = "INFO",
) -> logging.Logger:
    """
    Configure the root logger for the service.

    Idempotent: existing root handlers are replaced.

    Args:
        service_name: Name reported in JSON records
        version: Service version reported in JSON records
        level: Default level, overridden by LOG_LEVEL

    Returns:
        The root logger
    """
    json_enabled = os.getenv("LOG_JSON_ENABLED", "false").lower() in ("true", "1", "yes", "on")
    log_level = os.getenv("LOG_LEVEL", level).upper()

    logger = logging.getLogger()
    logger.handlers.clear()
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    handler = logging.StreamHandler()
    handler.setLevel(logger.level)
    # On the handler, not the logger: records propagated from module loggers
    # bypass root-logger filters.
    handler.addFilter(ContextFilter())

    if json_enabled:
        handler.setFormatter(NDJSONFormatter(service_name=service_name, version=version))
    else:
        handler.setFormatter(logging.Formatter(TEXT_LOG_FORMAT))

    logger.addHandler(handler)
    logger.info(
        f"{'JSON' if json_enabled else 'Standard'} logging enabled for "
        f"service={service_name} version={version}"
    )
    return logger
