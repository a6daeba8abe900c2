"""Core module with logging, exceptions and error formatting."""

from promptrun.core.exceptions import (
    AuthenticationError,
    NoResponseError,
    PromptRunError,
    RunFailedError,
    ThreadBusyError,
    TransportError,
)
from promptrun.core.logging import bind_run_context, get_logger, setup_logging

__all__ = [
    "get_logger",
    "setup_logging",
    "bind_run_context",
    "PromptRunError",
    "TransportError",
    "AuthenticationError",
    "ThreadBusyError",
    "RunFailedError",
    "NoResponseError",
]
