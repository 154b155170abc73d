"""
Ledger Logging Subsystem
========================

Purpose
-------
Structured, non-blocking logging for the progression ledger. Every record
carries the player and operation it belongs to, so a single promotion or
gain request can be followed across the gateway, ledger and engine logs.

Responsibilities
----------------
- Install and remove the root logging stack (``setup_logging`` /
  ``shutdown_logging``)
- Stamp records with the fields bound by ``LogContext``
- Render records as JSON (production, file) or as colored text (terminals)
- Keep file I/O off the event loop through a bounded queue

Architecture Notes
------------------
- Emitting tasks only enqueue; a ``QueueListener`` thread formats and writes.
- Context is copied onto the record by a filter on the queue handler, i.e.
  in the emitting task, before the ContextVar goes out of scope.
- Fields passed through ``extra={...}`` take precedence over bound context.
- A full queue drops the record and counts it rather than blocking.
- Nothing here runs at import time; ``ApplicationContext`` calls
  ``setup_logging()``.
"""

from __future__ import annotations

import json
import logging
import queue
import sys
import uuid
from contextvars import ContextVar, Token
from dataclasses import dataclass
from datetime import datetime, timezone
from logging import Logger
from logging.handlers import QueueHandler, QueueListener, TimedRotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from src.core.config.config import Config


CONTEXT_FIELDS: Tuple[str, ...] = ("player_uuid", "server", "operation", "correlation_id")

_log_context: ContextVar[Mapping[str, Any]] = ContextVar("ledger_log_context", default={})

# LogRecord attributes that are never copied into the JSON "extra" block
_RESERVED = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime", "taskName", *CONTEXT_FIELDS}

_NOISY_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "aiosqlite", "asyncio")


# ============================================================================
# Output settings
# ============================================================================


@dataclass(frozen=True)
class LogOutput:
    """Where and how records are written, resolved once from ``Config``."""

    level: int = logging.INFO
    json_console: bool = False
    colors: bool = False
    directory: Optional[Path] = None
    file_name: str = "ledger.json.log"
    backup_days: int = 7
    queue_size: int = 10_000

    @classmethod
    def from_config(cls, *, file_output: bool = True) -> "LogOutput":
        production = Config.is_production()
        json_console = production if Config.LOG_JSON is None else bool(Config.LOG_JSON)
        return cls(
            level=logging.getLevelName(Config.LOG_LEVEL.upper()),
            json_console=json_console,
            colors=(
                not json_console and Config.LOG_COLORS and sys.stdout.isatty()
            ),
            directory=Path(Config.LOGS_DIR) if file_output else None,
        )


# ============================================================================
# Filter and formatter
# ============================================================================


class ContextFilter(logging.Filter):
    """Copy the bound ``LogContext`` fields onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _log_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class LedgerFormatter(logging.Formatter):
    """
    One formatter, two renderings.

    JSON mode emits one object per line with the context fields at the top
    level and any remaining ``extra`` values nested under ``"extra"``. Text
    mode appends ``key=value`` context after the message.
    """

    _LEVEL_COLORS = {
        "DEBUG": "\033[90m",
        "INFO": "\033[36m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[1;31m",
    }
    _RESET = "\033[0m"

    def __init__(self, *, as_json: bool, colors: bool = False) -> None:
        super().__init__(datefmt="%H:%M:%S")
        self.as_json = as_json
        self.colors = colors

    def format(self, record: logging.LogRecord) -> str:
        if self.as_json:
            return self._format_json(record)
        return self._format_text(record)

    def _format_json(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED and not key.startswith("_")
        }
        if extra:
            payload["extra"] = extra
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)

    def _format_text(self, record: logging.LogRecord) -> str:
        level = record.levelname
        if self.colors and level in self._LEVEL_COLORS:
            level = f"{self._LEVEL_COLORS[level]}{level:<8}{self._RESET}"
        else:
            level = f"{level:<8}"

        line = f"{self.formatTime(record, self.datefmt)} {level} {record.name}: {record.getMessage()}"

        bound = [
            f"{key}={getattr(record, key)}"
            for key in ("player_uuid", "operation")
            if getattr(record, key, None) is not None
        ]
        if bound:
            line = f"{line} [{' '.join(bound)}]"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


# ============================================================================
# Queue plumbing
# ============================================================================


class _DroppingQueueHandler(QueueHandler):
    """Enqueue without blocking; count what a full queue rejects."""

    def __init__(self, log_queue: "queue.Queue[logging.LogRecord]") -> None:
        super().__init__(log_queue)
        self.enqueued = 0
        self.dropped = 0

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
            self.enqueued += 1
        except queue.Full:
            self.dropped += 1


_listener: Optional[QueueListener] = None
_queue_handler: Optional[_DroppingQueueHandler] = None


def _handlers_for(output: LogOutput) -> list:
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(LedgerFormatter(as_json=output.json_console, colors=output.colors))
    handlers = [console]

    if output.directory is not None:
        output.directory.mkdir(parents=True, exist_ok=True)
        rotating = TimedRotatingFileHandler(
            output.directory / output.file_name,
            when="midnight",
            backupCount=output.backup_days,
            encoding="utf-8",
            utc=True,
        )
        rotating.setFormatter(LedgerFormatter(as_json=True))
        handlers.append(rotating)

    for handler in handlers:
        handler.setLevel(output.level)
    return handlers


def setup_logging(output: Optional[LogOutput] = None, *, file_output: bool = True) -> None:
    """
    Route the root logger through a bounded queue to console and file.

    Calling it again while installed is a no-op.
    """
    global _listener, _queue_handler

    if _listener is not None:
        return

    output = output or LogOutput.from_config(file_output=file_output)
    log_queue: "queue.Queue[logging.LogRecord]" = queue.Queue(output.queue_size)

    _listener = QueueListener(log_queue, *_handlers_for(output), respect_handler_level=True)
    _listener.start()

    _queue_handler = _DroppingQueueHandler(log_queue)
    _queue_handler.addFilter(ContextFilter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(_queue_handler)
    root.setLevel(output.level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging initialized",
        extra={
            "log_level": logging.getLevelName(output.level),
            "json_console": output.json_console,
            "log_dir": str(output.directory) if output.directory else None,
        },
    )


def shutdown_logging() -> None:
    """Drain the queue, close handlers and detach from the root logger."""
    global _listener, _queue_handler

    if _listener is None:
        return

    logging.getLogger(__name__).info("Logging shutting down", extra=logging_stats())

    root = logging.getLogger()
    if _queue_handler is not None:
        root.removeHandler(_queue_handler)

    try:
        _listener.stop()
    finally:
        for handler in _listener.handlers:
            handler.close()
        _listener = None
        _queue_handler = None


def logging_stats() -> Dict[str, Any]:
    """Queue counters, for health reports."""
    if _queue_handler is None:
        return {"installed": False, "enqueued": 0, "dropped": 0, "queued": 0}
    return {
        "installed": True,
        "enqueued": _queue_handler.enqueued,
        "dropped": _queue_handler.dropped,
        "queued": _queue_handler.queue.qsize(),
    }


# ============================================================================
# Public API
# ============================================================================


def get_logger(name: str) -> Logger:
    return logging.getLogger(name)


def current_log_context() -> Dict[str, Any]:
    return dict(_log_context.get())


class LogContext:
    """
    Bind fields to every record logged inside the block.

    Nested contexts inherit the outer fields and override what they set. A
    correlation id is generated for the outermost block.

    >>> async with LogContext(player_uuid=uuid, operation="evaluate_promotion"):
    ...     await engine.evaluate(uuid)
    """

    def __init__(self, **fields: Any) -> None:
        outer = _log_context.get()
        bound = {key: value for key, value in fields.items() if value is not None}
        self.context: Dict[str, Any] = {**outer, **bound}
        self.context.setdefault("correlation_id", uuid.uuid4().hex[:8])
        self._token: Optional[Token[Mapping[str, Any]]] = None

    def __enter__(self) -> "LogContext":
        self._token = _log_context.set(self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None

    async def __aenter__(self) -> "LogContext":
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.__exit__(exc_type, exc_val, exc_tb)
