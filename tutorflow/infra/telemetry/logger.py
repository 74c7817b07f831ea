"""
Structured Logger
=================

JSON-structured logging with request-scoped context injection.

Every record emitted through ``StructuredLogger`` carries an event name
plus keyword fields, and the formatter attaches the current request id
and caller key from context variables. Pipeline stages, breaker
transitions, retries, limiter denials and cache evictions all log
through here.

Usage:
    log = get_logger(__name__)
    log.info("stage_completed", stage="parse", latency_ms=1.2)
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import os
import sys
import traceback
from contextvars import ContextVar
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

# ── Context Variables ──────────────────────────────────────────────

_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)
_caller: ContextVar[str | None] = ContextVar("caller", default=None)

def set_request_context(*, request_id: str | None = None, caller: str | None = None) -> None:
    """Set request-scoped context for log enrichment."""
    if request_id is not None:
        _request_id.set(request_id)
    if caller is not None:
        _caller.set(caller)

def clear_request_context() -> None:
    _request_id.set(None)
    _caller.set(None)

def current_request_id() -> str | None:
    return _request_id.get()

# ── Structured Formatter ──────────────────────────────────────────

# Attributes every LogRecord has; anything else arrived through ``extra``.
_RECORD_ATTRS = frozenset({
    "name", "msg", "args", "created", "relativeCreated",
    "exc_info", "exc_text", "stack_info", "lineno", "funcName",
    "pathname", "filename", "module", "levelno", "levelname",
    "thread", "threadName", "process", "processName", "msecs",
    "taskName", "message",
})

_SCALARS = (str, int, float, bool, type(None))

class StructuredFormatter(logging.Formatter):
    """Formats records as one JSON object per line, or a compact text line."""

    def __init__(self, *, json_output: bool = True, include_traceback: bool = True):
        super().__init__()
        self._json = json_output
        self._include_tb = include_traceback
        self._pid = os.getpid()

    def _fields(self, record: logging.LogRecord) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for key, val in record.__dict__.items():
            if key.startswith("_") or key in _RECORD_ATTRS:
                continue
            data[key] = val if isinstance(val, _SCALARS) else str(val)
        return data

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
            "line": record.lineno,
            "pid": self._pid,
        }

        context = {"request_id": _request_id.get(), "caller": _caller.get()}
        context = {k: v for k, v in context.items() if v is not None}
        if context:
            entry["context"] = context

        data = self._fields(record)
        if data:
            entry["data"] = data

        if record.exc_info and self._include_tb:
            exc_type, exc_val, exc_tb = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc_val) if exc_val else None,
                "traceback": traceback.format_exception(exc_type, exc_val, exc_tb)
                if exc_tb
                else None,
            }

        if self._json:
            return json.dumps(entry, default=str, ensure_ascii=False)

        req_id = (context.get("request_id") or "-")[:12]
        fields = " ".join(f"{k}={v}" for k, v in data.items())
        line = (
            f"{entry['timestamp']} | {entry['level']:8s} | {req_id:12s} | "
            f"{entry['logger']} | {entry['event']}"
        )
        return f"{line} {fields}" if fields else line

# ── Structured Logger ─────────────────────────────────────────────

class StructuredLogger:
    """
    Thin wrapper over a stdlib logger: an event name plus keyword fields.

    Usage:
        log = StructuredLogger("tutorflow.core.circuit_breaker")
        log.warning("circuit_opened", endpoint=url, failures=5)
    """

    __slots__ = ("_logger", "_name")

    def __init__(self, name: str):
        self._name = name
        self._logger = logging.getLogger(name)

    @property
    def name(self) -> str:
        return self._name

    def _log(self, level: int, event: str, exc: BaseException | None = None, **kwargs: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        self._logger.log(level, event, extra=kwargs, exc_info=exc, stacklevel=3)

    def debug(self, event: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, event, **kwargs)

    def info(self, event: str, **kwargs: Any) -> None:
        self._log(logging.INFO, event, **kwargs)

    def warning(self, event: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, event, **kwargs)

    def error(self, event: str, exc: BaseException | None = None, **kwargs: Any) -> None:
        self._log(logging.ERROR, event, exc=exc, **kwargs)

    def bind(self, **context: Any) -> BoundLogger:
        """Create a child logger with bound context fields."""
        return BoundLogger(self, context)

class BoundLogger:
    """Logger with pre-bound fields (e.g. the request id of one pipeline run)."""

    __slots__ = ("_context", "_parent")

    def __init__(self, parent: StructuredLogger, context: dict[str, Any]):
        self._parent = parent
        self._context = context

    def debug(self, event: str, **kwargs: Any) -> None:
        self._parent.debug(event, **{**self._context, **kwargs})

    def info(self, event: str, **kwargs: Any) -> None:
        self._parent.info(event, **{**self._context, **kwargs})

    def warning(self, event: str, **kwargs: Any) -> None:
        self._parent.warning(event, **{**self._context, **kwargs})

    def error(self, event: str, exc: BaseException | None = None, **kwargs: Any) -> None:
        self._parent.error(event, exc=exc, **{**self._context, **kwargs})

# ── Setup ──────────────────────────────────────────────────────────

_initialized = False

def setup_logging(
    *,
    level: str = "INFO",
    json_output: bool | None = None,
    log_dir: str | None = None,
    environment: str = "development",
) -> None:
    """
    Initialize the logging system. Call once at application startup.

    Args:
        level: Root log level
        json_output: Force JSON output. None = JSON outside development
        log_dir: Directory for rotating log files. None = stdout only
        environment: Deployment environment name
    """
    global _initialized
    if _initialized:
        return
    _initialized = True

    if json_output is None:
        json_output = environment != "development"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(StructuredFormatter(json_output=json_output))
    root.addHandler(console)

    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_path / "tutorflow.log",
            maxBytes=20 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(StructuredFormatter(json_output=True))
        root.addHandler(file_handler)

        error_handler = logging.handlers.RotatingFileHandler(
            log_path / "errors.log",
            maxBytes=10 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        error_handler.setFormatter(StructuredFormatter(json_output=True))
        error_handler.setLevel(logging.ERROR)
        root.addHandler(error_handler)

    for noisy in ("httpx", "httpcore", "asyncio", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(name)
