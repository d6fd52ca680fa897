"""
Structured logging configuration for Conduit.

Plain stdlib logging with a JSON formatter for production and a colored
formatter for local work. Every module keeps using
`logging.getLogger(__name__)`; structured fields go through `extra`.

Run correlation: the Runner binds a run_id for the duration of each
execute() call. It lives in a ContextVar, so concurrent asyncio runs each
see their own id and every record they emit carries it.

Environments (CONDUIT_ENV):
- production: JSON to stdout
- development/staging/test: colored text to stderr

Usage:
    from core.observability.logging_config import configure_logging

    configure_logging()  # reads CONDUIT_ENV

    logger = logging.getLogger(__name__)
    logger.info("run_retrying", extra={"backend": "claude_sdk", "attempt": 2})
"""

from __future__ import annotations

import contextlib
import contextvars
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

# ─── Run Context ──────────────────────────────────────────────────────

_run_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "conduit_run_id", default=None
)


def set_run_id(run_id: Optional[str]) -> contextvars.Token:
    """Set the current run_id; returns a token for reset_run_id()."""
    return _run_id.set(run_id)


def reset_run_id(token: contextvars.Token) -> None:
    _run_id.reset(token)


def get_run_id() -> Optional[str]:
    """The run_id bound to the current task, or None outside a run."""
    return _run_id.get()


@contextlib.contextmanager
def bind_run_id(run_id: Optional[str]) -> Iterator[None]:
    token = _run_id.set(run_id)
    try:
        yield
    finally:
        _run_id.reset(token)


# ─── Context Filter ───────────────────────────────────────────────────


class ContextFilter(logging.Filter):
    """Stamps the current run_id onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        run_id = get_run_id()
        if run_id and not getattr(record, "run_id", None):
            record.run_id = run_id  # type: ignore[attr-defined]
        return True


# ─── JSON Formatter (Production) ──────────────────────────────────────


_STANDARD_FIELDS = frozenset({
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "message",
    "taskName",
})

# Extra fields that must never reach a log sink verbatim.
_SECRET_FIELDS = frozenset({"api_key", "token", "authorization", "x-api-key"})

REDACTED = "***"


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line.

    Output format:
        {"timestamp": "...", "level": "WARNING", "logger": "core.runtime.runner",
         "message": "run_retrying", "run_id": "a1b2c3", "attempt": 1, ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key in _STANDARD_FIELDS or key.startswith("_"):
                continue
            if key.lower() in _SECRET_FIELDS:
                entry[key] = REDACTED
                continue
            try:
                json.dumps(value)
                entry[key] = value
            except (TypeError, ValueError):
                entry[key] = str(value)

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


# ─── Dev Formatter (Local Development) ────────────────────────────────


class DevFormatter(logging.Formatter):
    """
    Human-readable lines for a terminal.

    Format: [HH:MM:SS] LEVEL logger: message [key=value key=value]
    """

    COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[41m",
    }
    RESET = "\033[0m"

    _EXTRA_KEYS = (
        "run_id", "backend", "attempt", "error_code",
        "key", "delay_s", "duration_ms",
    )

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelno, self.RESET)
        timestamp = self.formatTime(record, "%H:%M:%S")

        extras = [
            f"{key}={getattr(record, key)}"
            for key in self._EXTRA_KEYS
            if getattr(record, key, None) is not None
        ]
        extra_str = f" [{' '.join(extras)}]" if extras else ""

        formatted = (
            f"{self.RESET}[{timestamp}] "
            f"{color}{record.levelname:<8}{self.RESET} "
            f"{record.name}: {record.getMessage()}{extra_str}"
        )
        if record.exc_info and record.exc_info[1]:
            formatted += f"\n{self.formatException(record.exc_info)}"
        return formatted


# ─── Configuration ────────────────────────────────────────────────────


def configure_logging(
    env: Optional[str] = None,
    level: int = logging.INFO,
) -> None:
    """
    Configure the root logger.

    Args:
        env: Override environment. If None, reads CONDUIT_ENV
             (defaults to "development").
        level: Log level (default: INFO).
    """
    env = (env or os.environ.get("CONDUIT_ENV", "development")).lower().strip()

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if env == "production":
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter())
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(DevFormatter())

    handler.addFilter(ContextFilter())
    root_logger.addHandler(handler)

    # httpx logs every request line at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
