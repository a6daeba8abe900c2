"""Typed event records carried by the run stream."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter

from promptrun.core.exceptions import RunFailedError


class StreamEvent(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


class HeartbeatEvent(StreamEvent):
    type: Literal["heartbeat"]
    elapsed_ms: int | None = None


class ProgressEvent(StreamEvent):
    type: Literal["progress"]
    message: str = ""


class StartedEvent(StreamEvent):
    type: Literal["started"]
    prompt_id: str | None = Field(default=None, validation_alias=AliasChoices("prompt_id", "prompt_row_id"))
    thread_id: str | None = None


class ApiStartedEvent(StreamEvent):
    type: Literal["api_started"]
    response_id: str
    status: str | None = None


class SettingsResolvedEvent(StreamEvent):
    type: Literal["settings_resolved"]
    settings: dict[str, Any] = Field(default_factory=dict)
    tools: list[Any] = Field(default_factory=list)


class ThinkingStartedEvent(StreamEvent):
    type: Literal["thinking_started"]
    item_id: str | None = None


class ThinkingDeltaEvent(StreamEvent):
    type: Literal["thinking_delta"]
    delta: str | None = None
    item_id: str | None = None


class ThinkingDoneEvent(StreamEvent):
    type: Literal["thinking_done"]
    text: str | None = None
    item_id: str | None = None


class OutputTextDeltaEvent(StreamEvent):
    type: Literal["output_text_delta"]
    delta: str | None = None
    item_id: str | None = None


class OutputTextDoneEvent(StreamEvent):
    type: Literal["output_text_done"]
    text: str | None = None
    item_id: str | None = None


class UsageDeltaEvent(StreamEvent):
    type: Literal["usage_delta"]
    input_tokens: int | None = Field(default=None, ge=0)
    output_tokens: int | None = Field(default=None, ge=0)


class StatusUpdateEvent(StreamEvent):
    type: Literal["status_update"]
    status: str


class ToolStartEvent(StreamEvent):
    type: Literal["tool_start"]
    tool: str
    args: Any = None


class ToolEndEvent(StreamEvent):
    type: Literal["tool_end"]
    tool: str


class ToolLoopCompleteEvent(StreamEvent):
    type: Literal["tool_loop_complete"]


class UserInputRequiredEvent(StreamEvent):
    type: Literal["user_input_required"]
    question: str
    variable_name: str
    description: str | None = None
    call_id: str | None = None
    response_id: str | None = None


class CompleteEvent(StreamEvent):
    """Terminal success. Result fields vary by server and are kept as extras."""

    model_config = ConfigDict(extra="allow", frozen=True)

    type: Literal["complete"]

    @property
    def result(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class ErrorEvent(StreamEvent):
    type: Literal["error"]
    error: str | None = None
    error_code: str | None = None
    prompt_name: str | None = None
    retry_after_s: float | None = Field(default=None, ge=0)

    @property
    def is_cancellation(self) -> bool:
        return (self.error_code or "").upper() == "CANCELLED"

    def to_failure(self) -> RunFailedError:
        return RunFailedError(
            self.error or "Unknown error",
            error_code=self.error_code,
            prompt_name=self.prompt_name,
            retry_after_s=self.retry_after_s,
        )


RunEvent = Annotated[
    Union[
        HeartbeatEvent,
        ProgressEvent,
        StartedEvent,
        ApiStartedEvent,
        SettingsResolvedEvent,
        ThinkingStartedEvent,
        ThinkingDeltaEvent,
        ThinkingDoneEvent,
        OutputTextDeltaEvent,
        OutputTextDoneEvent,
        UsageDeltaEvent,
        StatusUpdateEvent,
        ToolStartEvent,
        ToolEndEvent,
        ToolLoopCompleteEvent,
        UserInputRequiredEvent,
        CompleteEvent,
        ErrorEvent,
    ],
    Field(discriminator="type"),
]

TERMINAL_EVENT_TYPES = frozenset({"complete", "error"})

_event_adapter: TypeAdapter[RunEvent] = TypeAdapter(RunEvent)


def parse_event(payload: Any) -> RunEvent:
    """Validate a decoded JSON payload into its typed event.

    Raises pydantic.ValidationError for unknown types or malformed fields.
    """
    return _event_adapter.validate_python(payload)
