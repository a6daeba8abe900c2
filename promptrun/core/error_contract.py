"""Error body extraction and display formatting helpers."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from promptrun.config import get_settings
from promptrun.core.exceptions import PromptRunError, RunFailedError

DEFAULT_ERROR_MESSAGE = "Execution service call failed"


@dataclass(frozen=True)
class ErrorPattern:
    pattern: re.Pattern
    code: str
    title: str
    message: str
    recoverable: bool


# Order matters: specific patterns before generic ones.
ERROR_PATTERNS: list[ErrorPattern] = [
    ErrorPattern(
        re.compile(r"exceeded your current quota|insufficient_quota|QUOTA_EXCEEDED", re.I),
        "QUOTA_EXCEEDED",
        "Quota Exceeded",
        "The model provider quota has been exceeded. Check the billing settings of the provider account.",
        False,
    ),
    ErrorPattern(
        re.compile(r"rate.?limit", re.I),
        "RATE_LIMITED",
        "Rate Limited",
        "Too many requests. Wait a moment and try again.",
        True,
    ),
    ErrorPattern(
        re.compile(r"idle.?timeout|no response (data )?received|connection may have stalled", re.I),
        "IDLE_TIMEOUT",
        "Response Timeout",
        "The model took too long to respond. Please try again.",
        True,
    ),
    ErrorPattern(
        re.compile(r"conversation_locked|CONVERSATION_BUSY|conversation.*(currently in use|processing another)", re.I),
        "CONVERSATION_BUSY",
        "Conversation Busy",
        "The conversation is processing another request. Please wait a moment and try again.",
        True,
    ),
    ErrorPattern(
        re.compile(r"not authenticated|AUTH_REQUIRED|invalid or expired token|AUTH_FAILED", re.I),
        "AUTH_REQUIRED",
        "Authentication Required",
        "Your session has expired. Sign in again and retry.",
        False,
    ),
]

_FALLBACK = ErrorPattern(re.compile(""), "UNKNOWN", "Run Failed", "", True)


@dataclass(frozen=True)
class FormattedError:
    title: str
    description: str
    code: str
    recoverable: bool
    display_seconds: int


def extract_error_message(body: str | bytes | None, default: str = DEFAULT_ERROR_MESSAGE) -> tuple[str, str | None]:
    """Pull a message and optional code out of an error response body.

    Structured JSON (`{"error": ..., "error_code": ...}`, nested
    `{"error": {"message", "code"}}` or `{"message": ...}`) wins; anything
    unparsable falls back to the raw text.
    """
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    text = (body or "").strip()
    if not text:
        return default, None

    try:
        payload = json.loads(text)
    except ValueError:
        return text, None

    if not isinstance(payload, dict):
        return text, None

    error = payload.get("error")
    code = payload.get("error_code") or payload.get("code")
    if isinstance(error, dict):
        message = error.get("message") or error.get("detail")
        code = code or error.get("code")
    else:
        message = error
    message = message or payload.get("message") or payload.get("detail") or default
    return str(message), str(code) if code else None


def parse_api_error(error: Any) -> ErrorPattern:
    """Classify an error by its code first, then by its message."""
    code = None
    if isinstance(error, PromptRunError):
        code = error.code
        message = error.message
    else:
        message = str(error or "")

    if code:
        for candidate in ERROR_PATTERNS:
            if candidate.code == code.upper():
                return candidate

    for candidate in ERROR_PATTERNS:
        if candidate.pattern.search(message):
            return candidate

    return ErrorPattern(_FALLBACK.pattern, code or _FALLBACK.code, _FALLBACK.title, message, _FALLBACK.recoverable)


def is_quota_error(error: Any) -> bool:
    if isinstance(error, RunFailedError) and error.is_quota_error:
        return True
    return parse_api_error(error).code == "QUOTA_EXCEEDED"


def format_error_for_display(error: Any, prompt_name: str | None = None) -> FormattedError:
    """Format an error for display in a notification."""
    parsed = parse_api_error(error)
    if prompt_name is None and isinstance(error, RunFailedError):
        prompt_name = error.prompt_name

    description = parsed.message
    retry_after = getattr(error, "retry_after_s", None)
    if retry_after:
        description = f"{description} Retry in {int(retry_after)}s.".strip()

    settings = get_settings()
    return FormattedError(
        title=f"{parsed.title}: {prompt_name}" if prompt_name else parsed.title,
        description=description,
        code=parsed.code,
        recoverable=parsed.recoverable,
        display_seconds=(
            settings.quota_error_display_seconds if is_quota_error(error) else settings.error_display_seconds
        ),
    )
