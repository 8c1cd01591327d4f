"""Logging setup for agent-queue.

Every module logs through stdlib ``logging`` under the ``agentqueue``
namespace. Nothing is printed until a handler is installed, either by
:func:`configure_logging` or by the ``AGENT_QUEUE_*`` environment variables
read at import time:

- ``AGENT_QUEUE_DEBUG=1``: DEBUG, overriding the level variable.
- ``AGENT_QUEUE_LOG_LEVEL``: DEBUG, INFO, WARNING or ERROR; anything else
  means WARNING.
- ``AGENT_QUEUE_LOG_FORMAT=json``: one JSON object per line.

:class:`LogContext` binds fields such as the worker name and task id to every
record emitted inside it; the consumer wraps each task in one.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from typing import IO, Any

_PREFIX = "agentqueue"

_log_context: ContextVar[dict[str, Any] | None] = ContextVar("_log_context", default=None)


def current_context() -> dict[str, Any]:
    """Fields bound by the enclosing :class:`LogContext` blocks."""
    return dict(_log_context.get() or {})


class LogContext:
    """Bind fields to every record logged inside the ``with`` block.

    Blocks nest; inner bindings win and are dropped on exit. The bindings
    live in a ``ContextVar`` so concurrent consumers do not see each other's.
    """

    def __init__(self, **fields: Any) -> None:
        self._fields = fields
        self._token: Token[dict[str, Any] | None] | None = None

    def __enter__(self) -> LogContext:
        self._token = _log_context.set({**current_context(), **self._fields})
        return self

    def __exit__(self, *_: object) -> None:
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------

_LEVEL_STYLE: dict[int, tuple[str, str]] = {
    logging.DEBUG: ("D", "\033[2m"),
    logging.INFO: ("I", "\033[36m"),
    logging.WARNING: ("W", "\033[33m"),
    logging.ERROR: ("E", "\033[31m"),
    logging.CRITICAL: ("C", "\033[1;31m"),
}
_RESET = "\033[0m"


def _short_name(name: str) -> str:
    return name.removeprefix(f"{_PREFIX}.")


class TextFormatter(logging.Formatter):
    """``12:00:01.250 W consumer [worker=w-1 task_id=t-9] message``.

    Args:
        color: Wrap the level and logger name in ANSI colours.
    """

    def __init__(self, *, color: bool = False) -> None:
        super().__init__()
        self._color = color

    def format(self, record: logging.LogRecord) -> str:
        letter, ansi = _LEVEL_STYLE.get(record.levelno, ("?", ""))
        head = f"{letter} {_short_name(record.name)}"
        if self._color:
            head = f"{ansi}{head}{_RESET}"

        stamp = datetime.fromtimestamp(record.created, tz=UTC).strftime("%H:%M:%S.%f")[:-3]
        parts = [stamp, head]
        bound = current_context()
        if bound:
            parts.append("[" + " ".join(f"{k}={v}" for k, v in bound.items()) + "]")
        parts.append(record.getMessage())
        line = " ".join(parts)

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class JsonFormatter(logging.Formatter):
    """One JSON object per record; bound fields go under ``extra``."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        bound = current_context()
        if bound:
            entry["extra"] = bound
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


# ---------------------------------------------------------------------------
# Handler setup
# ---------------------------------------------------------------------------


def get_logger(name: str) -> logging.Logger:
    """Logger *name* under the ``agentqueue`` namespace, prefixed if needed."""
    if name != _PREFIX and not name.startswith(f"{_PREFIX}."):
        name = f"{_PREFIX}.{name}"
    return logging.getLogger(name)


def _parse_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else logging.WARNING


_setup_lock = threading.Lock()
_configured = False


def configure_logging(
    level: str | int = "WARNING",
    fmt: str = "text",
    *,
    force: bool = False,
    stream: IO[str] | None = None,
) -> None:
    """Install a single stream handler on the ``agentqueue`` logger.

    Later calls do nothing unless *force* is set, in which case the existing
    handler is replaced.

    Args:
        level: Level name or number.
        fmt: ``"text"`` or ``"json"``.
        force: Replace an existing configuration.
        stream: Destination; stderr by default. Text output is coloured only
            when the stream is a terminal.
    """
    global _configured

    with _setup_lock:
        if _configured and not force:
            return
        out = stream or sys.stderr
        handler = logging.StreamHandler(out)
        if fmt == "json":
            handler.setFormatter(JsonFormatter())
        else:
            is_tty = getattr(out, "isatty", lambda: False)()
            handler.setFormatter(TextFormatter(color=is_tty))

        root = logging.getLogger(_PREFIX)
        root.handlers.clear()
        root.addHandler(handler)
        root.setLevel(_parse_level(level))
        _configured = True


def reset_logging() -> None:
    """Remove the handler and restore WARNING (for testing only)."""
    global _configured
    with _setup_lock:
        root = logging.getLogger(_PREFIX)
        root.handlers.clear()
        root.setLevel(logging.WARNING)
        _configured = False


_ENV_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def _env_level() -> str:
    if os.environ.get("AGENT_QUEUE_DEBUG", "") == "1":
        return "DEBUG"
    level = os.environ.get("AGENT_QUEUE_LOG_LEVEL", "WARNING").upper()
    return level if level in _ENV_LEVELS else "WARNING"


def _configure_from_env() -> None:
    level = _env_level()
    logging.getLogger(_PREFIX).setLevel(level)
    if os.environ.get("AGENT_QUEUE_DEBUG", "") == "1" or "AGENT_QUEUE_LOG_LEVEL" in os.environ:
        configure_logging(level, os.environ.get("AGENT_QUEUE_LOG_FORMAT", "text"))


_configure_from_env()
