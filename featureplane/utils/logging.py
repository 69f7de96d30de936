# SPDX-License-Identifier: MIT
"""Structured JSON logging for the featureplane control plane.

Log records carry a correlation id (propagated through :mod:`contextvars`) and
arbitrary keyword fields, so an apply or materialize call can be followed end
to end in aggregated logs.
"""
from __future__ import annotations

import json
import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any, Dict, Iterator, Optional
from uuid import uuid4

if TYPE_CHECKING:  # pragma: no cover
    from featureplane.config import LoggingSettings


_CORRELATION_ID_VAR: ContextVar[Optional[str]] = ContextVar(
    "featureplane_correlation_id", default=None
)


def generate_correlation_id() -> str:
    return uuid4().hex


def get_correlation_id() -> Optional[str]:
    """Return the correlation id of the enclosing operation, if any."""

    return _CORRELATION_ID_VAR.get()


@contextmanager
def correlation_context(correlation_id: Optional[str] = None) -> Iterator[str]:
    resolved = correlation_id or generate_correlation_id()
    token = _CORRELATION_ID_VAR.set(resolved)
    try:
        yield resolved
    finally:
        _CORRELATION_ID_VAR.reset(token)


class JSONFormatter(logging.Formatter):
    """Render log records as single-line JSON documents."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        correlation_id = getattr(record, "correlation_id", None)
        if correlation_id:
            payload["correlation_id"] = correlation_id
        fields = getattr(record, "fields", None)
        if fields:
            payload.update(fields)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class StructuredLogger:
    """Thin wrapper over :class:`logging.Logger` accepting keyword fields.

    Fields bound at construction (``project=...``) are merged into every record
    emitted through the wrapper.
    """

    def __init__(self, name: str, **bound: Any) -> None:
        self.logger = logging.getLogger(name)
        self._bound = dict(bound)

    def bind(self, **fields: Any) -> "StructuredLogger":
        return StructuredLogger(self.logger.name, **{**self._bound, **fields})

    def _log(self, level: int, msg: str, fields: Dict[str, Any], exc_info: bool = False) -> None:
        if not self.logger.isEnabledFor(level):
            return
        extra = {
            "correlation_id": get_correlation_id(),
            "fields": {**self._bound, **fields},
        }
        self.logger.log(level, msg, extra=extra, exc_info=exc_info)

    def debug(self, msg: str, **fields: Any) -> None:
        self._log(logging.DEBUG, msg, fields)

    def info(self, msg: str, **fields: Any) -> None:
        self._log(logging.INFO, msg, fields)

    def warning(self, msg: str, **fields: Any) -> None:
        self._log(logging.WARNING, msg, fields)

    def error(self, msg: str, **fields: Any) -> None:
        self._log(logging.ERROR, msg, fields)

    def critical(self, msg: str, **fields: Any) -> None:
        self._log(logging.CRITICAL, msg, fields, exc_info=True)

    @contextmanager
    def operation(self, name: str, **context: Any) -> Iterator[Dict[str, Any]]:
        """Log the start, completion, or failure of ``name`` with its duration.

        The yielded dictionary can be filled with result fields that are
        attached to the completion record::

            with logger.operation("apply", project="fraud") as op:
                op["changes"] = 3
        """

        started = time.perf_counter()
        op_context: Dict[str, Any] = {"operation": name, **context}
        with correlation_context(get_correlation_id()):
            self.info(f"Starting operation: {name}", **op_context)
            try:
                yield op_context
            except Exception as exc:
                failure = {
                    **op_context,
                    "status": "failure",
                    "duration_seconds": time.perf_counter() - started,
                    "error_type": type(exc).__name__,
                    "error_message": str(exc),
                }
                self.error(f"Failed operation: {name}", **failure)
                raise
            op_context.setdefault("status", "success")
            op_context["duration_seconds"] = time.perf_counter() - started
            self.info(f"Completed operation: {name}", **op_context)


def configure_logging(level: str = "INFO", use_json: bool = True, stream: Any = None) -> None:
    """Install a single stream handler on the ``featureplane`` logger hierarchy."""

    root = logging.getLogger("featureplane")
    root.setLevel(getattr(logging, level.upper()))
    root.handlers.clear()
    handler = logging.StreamHandler(stream or sys.stdout)
    if use_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    root.addHandler(handler)


def configure_from_settings(settings: "LoggingSettings", stream: Any = None) -> None:
    configure_logging(level=settings.level, use_json=settings.json_format, stream=stream)


def get_logger(name: str, **bound: Any) -> StructuredLogger:
    return StructuredLogger(name, **bound)


__all__ = [
    "JSONFormatter",
    "StructuredLogger",
    "configure_from_settings",
    "configure_logging",
    "correlation_context",
    "generate_correlation_id",
    "get_correlation_id",
    "get_logger",
]
