"""
foobot Logging Subsystem

Purpose
-------
One logging pipeline for the whole bot:

- Chat context (channel, sender, command, session generation) is bound with
  `LogContext` and stamped onto every record emitted inside the block,
  including records from sync handlers running under `asyncio.to_thread`
  (which copies the caller's context).
- Records pass through a bounded queue to a listener thread, so formatting
  and file writes never run on the event loop that sends heartbeats. A full
  queue drops the record and counts it; `logging_stats()` reports the
  counters to `ApplicationContext.health()`.

Output
------
- development: one text line per record, colored on a TTY, with the chat
  context inline (``#forsen viewer !ping``)
- production, or ``LOG_JSON=true``: one JSON object per line
- with a logs directory: a daily rotated JSON file as well

Design Decisions
----------------
- `setup_logging()` is called once by the supervisor after the configuration
  is loaded; tests run on the default stdlib configuration.
- Fields passed with ``extra={...}`` win over the bound chat context and end
  up under ``"extra"`` in JSON output.
"""

from __future__ import annotations

import json
import logging
import queue
import sys
import uuid
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging import Logger
from logging.handlers import QueueHandler, QueueListener, TimedRotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

from foobot.core.config.config import Config

CONTEXT_FIELDS = ("channel", "sender", "command", "generation", "component", "correlation_id")

# Attributes every LogRecord carries; anything else came in through `extra=`.
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))) | {
    "message",
    "asctime",
    "taskName",
}

_chat_context: ContextVar[Optional[Dict[str, Any]]] = ContextVar("foobot_chat_context", default=None)

DAILY_BASENAME = "foobot_daily.json.log"

_NOISY_LOGGERS = ("asyncio", "aiomysql", "aiosqlite", "sqlalchemy.engine")


# ============================================================================
# Options
# ============================================================================


@dataclass(frozen=True)
class LoggingOptions:
    level: int = logging.INFO
    json: bool = False
    colors: bool = False
    logs_dir: Optional[Path] = None
    queue_size: int = 10_000
    backup_days: int = 1

    @classmethod
    def from_config(cls) -> "LoggingOptions":
        """Build options from the loaded `Config`; unknown levels fall back to INFO."""
        level = logging.getLevelName(str(Config.LOG_LEVEL).upper())
        use_json = Config.is_production() if Config.LOG_JSON is None else bool(Config.LOG_JSON)
        return cls(
            level=level if isinstance(level, int) else logging.INFO,
            json=use_json,
            colors=not use_json and sys.stdout.isatty(),
            logs_dir=Path(Config.LOGS_DIR).resolve(),
        )


# ============================================================================
# Chat context
# ============================================================================


class LogContext:
    """
    Bind chat context to every log record emitted inside the block.

    Fields left as None are inherited from an enclosing `LogContext`, so a
    command logged by the dispatcher keeps the session's generation. Each
    block gets a fresh correlation id unless one is passed.

    >>> async with LogContext(channel="forsen", sender="viewer", command="ping"):
    ...     logger.info("Executing handler")
    """

    def __init__(
        self,
        *,
        channel: Optional[str] = None,
        sender: Optional[str] = None,
        command: Optional[str] = None,
        generation: Optional[int] = None,
        component: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        self.fields: Dict[str, Any] = {
            "channel": channel,
            "sender": sender,
            "command": command,
            "generation": generation,
            "component": component,
            "correlation_id": correlation_id or uuid.uuid4().hex[:8],
        }
        self._token: Optional[Token[Optional[Dict[str, Any]]]] = None

    def __enter__(self) -> "LogContext":
        merged = dict(_chat_context.get() or {})
        merged.update({key: value for key, value in self.fields.items() if value is not None})
        self._token = _chat_context.set(merged)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._token is not None:
            _chat_context.reset(self._token)
            self._token = None

    async def __aenter__(self) -> "LogContext":
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.__exit__(exc_type, exc_val, exc_tb)


class ChatContextFilter(logging.Filter):
    """Copy the bound chat context onto the record. Must run on the emitting thread."""

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        context = _chat_context.get() or {}
        for name in CONTEXT_FIELDS:
            if getattr(record, name, None) is None:
                setattr(record, name, context.get(name))
        if record.component is None:
            record.component = record.name.rsplit(".", 1)[-1]
        return True


# ============================================================================
# Formatters
# ============================================================================


def _chat_location(record: logging.LogRecord) -> str:
    parts: List[str] = []
    channel = getattr(record, "channel", None)
    sender = getattr(record, "sender", None)
    command = getattr(record, "command", None)
    if channel:
        parts.append(f"#{channel}")
    if sender:
        parts.append(sender)
    if command:
        parts.append(f"!{command}")
    return " ".join(parts)


class ChatFormatter(logging.Formatter):
    """``time | LEVEL | component | #channel sender !command | message``"""

    LEVEL_COLORS: Dict[str, str] = {
        "DEBUG": "\033[90m",
        "INFO": "\033[94m",
        "WARNING": "\033[93m",
        "ERROR": "\033[91m",
        "CRITICAL": "\033[91m\033[1m",
    }
    RESET = "\033[0m"

    def __init__(self, *, colors: bool = False) -> None:
        super().__init__(datefmt="%Y-%m-%d %H:%M:%S")
        self.colors = colors

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        level = f"{record.levelname:<8}"
        if self.colors and record.levelname in self.LEVEL_COLORS:
            level = f"{self.LEVEL_COLORS[record.levelname]}{level}{self.RESET}"

        parts = [
            self.formatTime(record, self.datefmt),
            level,
            f"{getattr(record, 'component', None) or record.name:<10}",
        ]
        location = _chat_location(record)
        if location:
            parts.append(location)
        parts.append(record.getMessage())

        line = " | ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                data[name] = value

        extra = {
            key: value
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and key not in CONTEXT_FIELDS and not key.startswith("_")
        }
        if extra:
            data["extra"] = extra

        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)

        return json.dumps(data, ensure_ascii=False, default=str)


# ============================================================================
# Queue pipeline
# ============================================================================


@dataclass
class LoggingStats:
    enqueued: int = 0
    dropped: int = 0


class DroppingQueueHandler(QueueHandler):
    """Never blocks the caller: a full queue drops the record and counts it."""

    def __init__(self, log_queue: "queue.Queue[logging.LogRecord]", stats: LoggingStats) -> None:
        super().__init__(log_queue)
        self.stats = stats

    def enqueue(self, record: logging.LogRecord) -> None:  # type: ignore[override]
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            self.stats.dropped += 1
            return
        self.stats.enqueued += 1


@dataclass
class _Pipeline:
    handler: DroppingQueueHandler
    listener: QueueListener
    log_queue: "queue.Queue[logging.LogRecord]"
    previous_level: int
    stats: LoggingStats = field(default_factory=LoggingStats)


_pipeline: Optional[_Pipeline] = None


def _console_handler(options: LoggingOptions) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(options.level)
    handler.setFormatter(JSONFormatter() if options.json else ChatFormatter(colors=options.colors))
    return handler


def _daily_file_handler(options: LoggingOptions, logs_dir: Path) -> logging.Handler:
    logs_dir.mkdir(parents=True, exist_ok=True)
    handler = TimedRotatingFileHandler(
        filename=str(logs_dir / DAILY_BASENAME),
        when="midnight",
        backupCount=options.backup_days,
        encoding="utf-8",
        utc=True,
    )
    handler.setLevel(options.level)
    handler.setFormatter(JSONFormatter())
    return handler


def setup_logging(options: Optional[LoggingOptions] = None) -> None:
    """Install the queue pipeline on the root logger. Idempotent."""
    global _pipeline
    if _pipeline is not None:
        return

    options = options or LoggingOptions.from_config()
    outputs = [_console_handler(options)]
    if options.logs_dir is not None:
        outputs.append(_daily_file_handler(options, options.logs_dir))

    log_queue: "queue.Queue[logging.LogRecord]" = queue.Queue(options.queue_size)
    stats = LoggingStats()
    handler = DroppingQueueHandler(log_queue, stats)
    handler.setLevel(options.level)
    handler.addFilter(ChatContextFilter())
    listener = QueueListener(log_queue, *outputs, respect_handler_level=True)

    root = logging.getLogger()
    _pipeline = _Pipeline(handler, listener, log_queue, previous_level=root.level, stats=stats)
    root.setLevel(options.level)
    root.addHandler(handler)
    listener.start()

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    get_logger(__name__).info(
        "Logging initialized",
        extra={
            "level": logging.getLevelName(options.level),
            "json": options.json,
            "logs_dir": str(options.logs_dir) if options.logs_dir else None,
        },
    )


def shutdown_logging() -> None:
    """Flush queued records and detach the pipeline."""
    global _pipeline
    pipeline = _pipeline
    if pipeline is None:
        return

    get_logger(__name__).info(
        "Logging shut down",
        extra={"records_enqueued": pipeline.stats.enqueued, "records_dropped": pipeline.stats.dropped},
    )
    _pipeline = None

    pipeline.listener.stop()
    root = logging.getLogger()
    root.removeHandler(pipeline.handler)
    root.setLevel(pipeline.previous_level)
    for output in pipeline.listener.handlers:
        output.flush()
        output.close()


def logging_stats() -> Dict[str, Any]:
    if _pipeline is None:
        return {"initialized": False, "queued": 0, "enqueued": 0, "dropped": 0}
    return {
        "initialized": True,
        "queued": _pipeline.log_queue.qsize(),
        "enqueued": _pipeline.stats.enqueued,
        "dropped": _pipeline.stats.dropped,
    }


def get_logger(name: str) -> Logger:
    return logging.getLogger(name)
