"""Structured logging configuration for the run client."""

import json
import logging
import re
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional, Set

# Context variable for run-scoped data (run_id, prompt_id)
run_context: ContextVar[Dict[str, Any]] = ContextVar("run_context", default={})

# Keys whose values are credentials
SENSITIVE_KEYS: Set[str] = {
    "authorization",
    "apikey",
    "x-api-key",
    "access_token",
    "refresh_token",
    "token",
    "credential",
}

_BEARER_PATTERN = re.compile(r"^(Bearer\s+)(.+)$", re.IGNORECASE)


def _is_token_like(value: str) -> bool:
    """Check if a string looks like a sensitive token."""
    if len(value) < 24 or " " in value:
        return False
    cleaned = value.replace("-", "").replace("_", "").replace(".", "")
    return cleaned.isalnum()


def _redact_value(value: Any) -> str:
    """Redact a sensitive value.

    Short secrets (<12 chars) are fully masked, longer ones keep their first
    and last 3 characters.
    """
    if not isinstance(value, str):
        return "[REDACTED]"

    bearer = _BEARER_PATTERN.match(value)
    if bearer:
        return f"{bearer.group(1)}{_redact_value(bearer.group(2))}"

    if len(value) < 12:
        return "<REDACTED>"
    return f"{value[:3]}***{value[-3:]}"


def redact_sensitive_data(data: Any) -> Any:
    """Recursively redact credentials from dictionaries, lists or strings."""
    if isinstance(data, dict):
        redacted = {}
        for key, value in data.items():
            if isinstance(key, str) and key.lower() in SENSITIVE_KEYS:
                redacted[key] = _redact_value(value)
            else:
                redacted[key] = redact_sensitive_data(value)
        return redacted
    elif isinstance(data, list):
        return [redact_sensitive_data(item) for item in data]
    elif isinstance(data, str):
        if _BEARER_PATTERN.match(data) or _is_token_like(data):
            return _redact_value(data)
    return data


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        ctx = run_context.get()
        if ctx:
            log_data["run_id"] = ctx.get("run_id")
            log_data["prompt_id"] = ctx.get("prompt_id")

        if hasattr(record, "data") and record.data:
            log_data["data"] = redact_sensitive_data(record.data)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter for console output."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",   # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        """Format log record for console."""
        color = self.COLORS.get(record.levelname, "")
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        ctx = run_context.get()
        run_id = (ctx.get("run_id") or "-")[:8] if ctx else "-"

        message = f"{timestamp} | {color}{record.levelname:8}{self.RESET} | {run_id} | {record.name} | {record.getMessage()}"

        if hasattr(record, "data") and record.data:
            message += f" | {redact_sensitive_data(record.data)}"

        if record.exc_info:
            message += f"\n{self.formatException(record.exc_info)}"

        return message


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter that accepts a `data=` keyword for structured fields."""

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        """Process log message with context."""
        extra = kwargs.get("extra", {})
        if "data" in kwargs:
            extra["data"] = kwargs.pop("data")
        kwargs["extra"] = extra
        return msg, kwargs


_loggers: Dict[str, ContextLogger] = {}


def get_logger(name: str) -> ContextLogger:
    """Get a context-aware logger."""
    if name not in _loggers:
        logger = logging.getLogger(name)
        _loggers[name] = ContextLogger(logger, {})
    return _loggers[name]


@contextmanager
def bind_run_context(run_id: str, prompt_id: Optional[str] = None) -> Iterator[None]:
    """Attach run identifiers to every record logged inside the block.

    Each asyncio task gets its own copy of the context, so concurrent runs
    never see each other's identifiers.
    """
    token = run_context.set({"run_id": run_id, "prompt_id": prompt_id})
    try:
        yield
    finally:
        run_context.reset(token)


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """Configure application logging."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    if json_output:
        console_handler.setFormatter(StructuredFormatter())
    else:
        console_handler.setFormatter(ConsoleFormatter())
    root_logger.addHandler(console_handler)

    # File handler (always JSON)
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(StructuredFormatter())
        root_logger.addHandler(file_handler)

    # Quiet noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
