"""Structured failures surfaced by the run client."""

from typing import Optional

QUOTA_ERROR_CODES = {"QUOTA_EXCEEDED", "INSUFFICIENT_QUOTA"}


class PromptRunError(Exception):
    """Base exception for run failures.

    `code` is a stable string usable for UI formatting and telemetry.
    """

    def __init__(
        self,
        message: str,
        code: str = "RUN_FAILED",
        details: dict = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, **self.details}


class TransportError(PromptRunError):
    """The execution service rejected the request before streaming began."""

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(
            message,
            code=code or (f"HTTP_{status_code}" if status_code else "TRANSPORT_ERROR"),
            details={"status_code": status_code} if status_code else {},
        )
        self.status_code = status_code


class AuthenticationError(PromptRunError):
    """No credential could be obtained for the request."""

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message, code="AUTH_REQUIRED")


class ThreadBusyError(PromptRunError):
    """Another live run already owns the conversation thread."""

    def __init__(self, thread_id: str, run_id: str):
        super().__init__(
            "The conversation is processing another request",
            code="CONVERSATION_BUSY",
            details={"thread_id": thread_id, "run_id": run_id},
        )


class RunFailedError(PromptRunError):
    """The stream reported an explicit `error` event."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        prompt_name: Optional[str] = None,
        retry_after_s: Optional[float] = None,
    ):
        details = {}
        if prompt_name:
            details["prompt_name"] = prompt_name
        if retry_after_s is not None:
            details["retry_after_s"] = retry_after_s
        super().__init__(message, code=error_code or "RUN_FAILED", details=details)
        self.error_code = error_code
        self.prompt_name = prompt_name
        self.retry_after_s = retry_after_s

    @property
    def is_quota_error(self) -> bool:
        return (self.error_code or "").upper() in QUOTA_ERROR_CODES


class NoResponseError(PromptRunError):
    """The stream ended without a terminal event."""

    def __init__(self, message: str = "No response received from execution service"):
        super().__init__(message, code="NO_RESPONSE")
