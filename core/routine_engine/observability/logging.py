"""
Structured logging with trace context for routine runs.

Every log line written while a routine runs carries the run's identifiers
without anyone passing them around:

    RoutineExecutor.execute()   -> sets execution_id, routine_id, user_id
        | (ContextVar, copied into every asyncio task)
    NodeExecutorAdapter.execute() -> adds node_id for its own task only
        |
    plugin code -> logger.info("...") gets all of the above

Sibling nodes of a wave run in separate tasks, so each one sees its own
node_id.
"""

import json
import logging
import os
import re
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import IO, Any

trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m")

# Fields copied from ``extra={...}`` onto JSON log entries
EXTRA_FIELDS = ("event", "node_id", "run_index", "wave", "latency_ms", "signal")


def strip_ansi_codes(text: str) -> str:
    """Remove ANSI escape codes from text for clean JSON logging."""
    return ANSI_ESCAPE_PATTERN.sub("", text)


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter.

    One object per line: timestamp, level, logger, message, the current
    trace context and any known extra fields.
    """

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}

        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
        }
        log_entry.update(context)

        for name in EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is None:
                continue
            log_entry[name] = strip_ansi_codes(value) if isinstance(value, str) else value

        if record.exc_info:
            log_entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Colorized single-line logs with a short trace prefix, for development."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}

        prefix_parts = []
        if context.get("routine_id"):
            prefix_parts.append(f"routine:{context['routine_id']}")
        if context.get("execution_id"):
            prefix_parts.append(f"exec:{context['execution_id'][-8:]}")
        if context.get("node_id"):
            prefix_parts.append(f"node:{context['node_id']}")
        context_prefix = f"[{' | '.join(prefix_parts)}] " if prefix_parts else ""

        color = self.COLORS.get(record.levelname, "")
        level = f"{record.levelname:<8}"

        event = ""
        record_event = getattr(record, "event", None)
        if record_event is not None:
            event = f" [{record_event}]"

        line = f"{color}[{level}]{self.RESET} {context_prefix}{record.getMessage()}{event}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def resolve_format(format: str) -> str:
    """Turn "auto" into "json" or "human" from LOG_FORMAT / ENV."""
    if format != "auto":
        return format
    if os.getenv("LOG_FORMAT", "").lower() == "json":
        return "json"
    if os.getenv("ENV", "development").lower() == "production":
        return "json"
    return "human"


def configure_logging(
    level: str = "INFO",
    format: str = "auto",  # "json", "human", or "auto"
    stream: IO[str] | None = None,
) -> None:
    """
    Configure logging for the process. Call once at startup (CLI main, tests).

    Args:
        level: Log level name
        format: "json", "human", or "auto" (JSON if LOG_FORMAT=json or
            ENV=production)
        stream: Where to write; defaults to stderr

    Examples:
        configure_logging(level="DEBUG", format="human")
        configure_logging(level="INFO", format="json")
    """
    formatter: logging.Formatter
    if resolve_format(format) == "json":
        formatter = StructuredFormatter()
        os.environ["NO_COLOR"] = "1"
    else:
        formatter = HumanReadableFormatter()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())


def set_trace_context(**kwargs: Any) -> None:
    """
    Add fields to the trace context of the current task.

    Set by the engine at run start (execution_id, routine_id, user_id) and
    per node (node_id). Values propagate to tasks created afterwards.
    """
    current = trace_context.get() or {}
    trace_context.set({**current, **kwargs})


def get_trace_context() -> dict:
    """Copy of the current trace context (empty dict if unset)."""
    context = trace_context.get() or {}
    return context.copy()


def clear_trace_context() -> None:
    """Clear trace context. Mostly for tests."""
    trace_context.set(None)


@contextmanager
def trace_scope(**kwargs: Any) -> Iterator[dict]:
    """Add fields for the duration of a block, then restore the previous context."""
    current = trace_context.get() or {}
    token = trace_context.set({**current, **kwargs})
    try:
        yield get_trace_context()
    finally:
        trace_context.reset(token)
