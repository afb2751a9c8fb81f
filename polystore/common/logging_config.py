"""
Structured logging for the ingest pipeline.

Every line is one JSON object. While an ingest runs, its ingest id and
dataset id sit in context variables and are attached to every record
logged from that task, including records from the stores and the cache.
Per-call structure goes in ``extra={"extra_fields": {...}}``.
"""

import json
import logging
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator, Optional

# Task-local ids of the ingest in progress
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
dataset_id_ctx: ContextVar[Optional[str]] = ContextVar("dataset_id", default=None)

PLAIN_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Driver loggers kept at WARNING or above
QUIET_LOGGERS = ("pymongo", "sqlalchemy.engine", "alembic")


class StructuredFormatter(logging.Formatter):
    """Renders a record, its context ids, and its ``extra_fields`` as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key, var in (("ingest_id", request_id_ctx), ("dataset_id", dataset_id_ctx)):
            value = var.get()
            if value is not None:
                entry[key] = value

        entry.update(getattr(record, "extra_fields", None) or {})

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class PerformanceTracker:
    """
    Times one ingest stage and logs how it ended.

    Logs ``<operation> started`` at DEBUG, then ``<operation> finished`` at
    ``log_level`` or ``<operation> failed`` at ERROR, with ``duration_ms``.
    Exceptions are never suppressed.

    Usage:
        with PerformanceTracker("profile", logger, records=len(records)) as timer:
            ...
        timer.duration_ms
    """

    def __init__(
        self,
        operation: str,
        logger: logging.Logger,
        log_level: int = logging.INFO,
        **extra_fields,
    ):
        self.operation = operation
        self.logger = logger
        self.log_level = log_level
        self.fields = {"operation": operation, **extra_fields}
        self.duration_ms: Optional[float] = None
        self._started = 0.0

    def _emit(self, level: int, outcome: str, **fields) -> None:
        self.logger.log(
            level,
            f"{self.operation} {outcome}",
            extra={"extra_fields": {**self.fields, **fields}},
        )

    def __enter__(self) -> "PerformanceTracker":
        self._started = time.perf_counter()
        self._emit(logging.DEBUG, "started")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.duration_ms = round((time.perf_counter() - self._started) * 1000, 2)
        if exc_type is None:
            self._emit(self.log_level, "finished", duration_ms=self.duration_ms)
        else:
            self._emit(
                logging.ERROR,
                "failed",
                duration_ms=self.duration_ms,
                error=str(exc_val),
                error_type=exc_type.__name__,
            )
        return False


def setup_logging(log_level: str = "INFO", json_format: bool = True) -> None:
    """
    Replace the root handlers with one stream handler.

    Args:
        log_level: Level name for the root logger
        json_format: ``StructuredFormatter`` if True, plain text otherwise
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(StructuredFormatter() if json_format else logging.Formatter(PLAIN_FORMAT))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind an ingest id to the current task, generating one if omitted."""
    request_id = request_id or str(uuid.uuid4())
    request_id_ctx.set(request_id)
    return request_id


def get_request_id() -> Optional[str]:
    return request_id_ctx.get()


def clear_request_id() -> None:
    request_id_ctx.set(None)


@contextmanager
def ingest_context(dataset_id: str) -> Iterator[str]:
    """
    Bind a fresh ingest id and ``dataset_id`` for the duration of one ingest.

    Yields:
        The ingest id
    """
    ingest_id = set_request_id()
    token = dataset_id_ctx.set(dataset_id)
    try:
        yield ingest_id
    finally:
        dataset_id_ctx.reset(token)
        clear_request_id()
