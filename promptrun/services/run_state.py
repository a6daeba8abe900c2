"""Lifecycle of one run: status transitions and accumulated stream state."""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from promptrun.core.exceptions import PromptRunError, RunFailedError
from promptrun.core.logging import get_logger
from promptrun.services.call_registry import CallRegistry
from promptrun.services.cancellation import CancellationToken
from promptrun.streaming import events as ev

if TYPE_CHECKING:
    from promptrun.services.cancellation import CancelResult

logger = get_logger(__name__)


class RunStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    STREAMING_THINKING = "streaming_thinking"
    STREAMING_OUTPUT = "streaming_output"
    EXECUTING_TOOLS = "executing_tools"
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.ERRORED, RunStatus.CANCELLED})
# Statuses during which the server holds a cancellable response
REMOTE_ACTIVE_STATUSES = frozenset({
    RunStatus.IN_PROGRESS,
    RunStatus.STREAMING_THINKING,
    RunStatus.STREAMING_OUTPUT,
    RunStatus.EXECUTING_TOOLS,
})


@dataclass
class ToolActivity:
    name: str
    args: Any = None
    status: str = "running"  # running | complete


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    def add(self, input_tokens: Optional[int], output_tokens: Optional[int]) -> None:
        self.input_tokens += max(input_tokens or 0, 0)
        self.output_tokens += max(output_tokens or 0, 0)

    def raise_to(self, input_tokens: Any, output_tokens: Any) -> None:
        """Adopt final reported totals without ever lowering a counter."""
        if isinstance(input_tokens, int) and input_tokens > self.input_tokens:
            self.input_tokens = input_tokens
        if isinstance(output_tokens, int) and output_tokens > self.output_tokens:
            self.output_tokens = output_tokens


@dataclass(frozen=True)
class PendingQuestion:
    """A question the model asked mid-run; answering resumes the run."""

    question: str
    variable_name: str
    description: Optional[str] = None
    call_id: Optional[str] = None
    response_id: Optional[str] = None


@dataclass
class Run:
    """Client-side record of one execution, from request to terminal state."""

    prompt_id: str
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    thread_id: Optional[str] = None
    status: RunStatus = RunStatus.QUEUED
    reasoning_text: str = ""
    output_text: str = ""
    tool_activity: list[ToolActivity] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    result: Optional[dict[str, Any]] = None
    error: Optional[PromptRunError] = None
    pending_question: Optional[PendingQuestion] = None
    server_status: Optional[str] = None
    progress_message: Optional[str] = None
    last_heartbeat_ms: Optional[int] = None
    resolved_settings: Optional[dict[str, Any]] = None
    resolved_tools: Optional[list[Any]] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    token: CancellationToken = field(default_factory=CancellationToken, repr=False)
    _remote_response_id: Optional[str] = field(default=None, init=False, repr=False)
    _cancel_fn: Optional[Callable[[], Awaitable["CancelResult"]]] = field(default=None, init=False, repr=False)

    @property
    def remote_response_id(self) -> Optional[str]:
        return self._remote_response_id

    def take_remote_response_id(self) -> Optional[str]:
        """Read and clear the response id in one step (no await in between)."""
        response_id, self._remote_response_id = self._remote_response_id, None
        return response_id

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def awaiting_input(self) -> bool:
        return self.pending_question is not None and not self.is_terminal

    def bind_cancel(self, cancel_fn: Callable[[], Awaitable["CancelResult"]]) -> None:
        self._cancel_fn = cancel_fn

    async def cancel(self) -> Optional["CancelResult"]:
        if self._cancel_fn is None:
            self.token.cancel()
            return None
        return await self._cancel_fn()


class RunStateMachine:
    """Applies decoded events to a run and mirrors them into the registry.

    Once the run is terminal every further event is ignored: no status
    change, no accumulator mutation, no registry traffic.
    """

    def __init__(self, run: Run, registry: Optional[CallRegistry] = None):
        self.run = run
        self.registry = registry
        self._handlers: dict[str, Callable[[Any], None]] = {
            "heartbeat": self._on_heartbeat,
            "progress": self._on_progress,
            "started": self._on_started,
            "api_started": self._on_api_started,
            "settings_resolved": self._on_settings_resolved,
            "thinking_started": self._on_thinking_started,
            "thinking_delta": self._on_thinking_delta,
            "thinking_done": self._on_thinking_done,
            "output_text_delta": self._on_output_delta,
            "output_text_done": self._on_output_done,
            "usage_delta": self._on_usage_delta,
            "status_update": self._on_status_update,
            "tool_start": self._on_tool_start,
            "tool_end": self._on_tool_end,
            "tool_loop_complete": self._on_tool_loop_complete,
            "user_input_required": self._on_user_input_required,
            "complete": self._on_complete,
            "error": self._on_error,
        }

    @property
    def run_id(self) -> str:
        return self.run.run_id

    def apply(self, event: ev.RunEvent) -> bool:
        """Apply one event. Returns False when it was ignored."""
        if self.run.is_terminal:
            return False
        handler = self._handlers.get(event.type)
        if handler is None:
            return False
        handler(event)
        return True

    def fail(self, error: PromptRunError) -> bool:
        """Resolve the run as errored with a failure raised outside the stream."""
        if self.run.is_terminal:
            return False
        self.run.error = error
        self.run.take_remote_response_id()
        self._finish(RunStatus.ERRORED)
        return True

    def mark_cancelled(self) -> bool:
        if self.run.is_terminal:
            return False
        self.run.take_remote_response_id()
        self._finish(RunStatus.CANCELLED)
        return True

    def take_pending_question(self) -> Optional[PendingQuestion]:
        """Consume the suspension data before re-entering the protocol."""
        pending, self.run.pending_question = self.run.pending_question, None
        return pending

    def _set_status(self, status: RunStatus) -> None:
        if self.run.status is status:
            return
        self.run.status = status
        self._mirror(status=status.value)

    def _mirror(self, **fields: Any) -> None:
        if self.registry is not None:
            self.registry.update(self.run.run_id, **fields)

    def _finish(self, status: RunStatus) -> None:
        self.run.status = status
        self.run.finished_at = datetime.now(timezone.utc)
        logger.info(
            f"Run {status.value}",
            data={
                "run_id": self.run.run_id,
                "prompt_id": self.run.prompt_id,
                "input_tokens": self.run.usage.input_tokens,
                "output_tokens": self.run.usage.output_tokens,
                "error_code": self.run.error.code if self.run.error else None,
            },
        )
        if self.registry is not None:
            self.registry.update(self.run.run_id, status=status.value, response_id=None)
            self.registry.remove(self.run.run_id)
            self.registry.notify_terminal(self.run)

    # -- informational -----------------------------------------------------

    def _on_heartbeat(self, event: ev.HeartbeatEvent) -> None:
        self.run.last_heartbeat_ms = event.elapsed_ms

    def _on_progress(self, event: ev.ProgressEvent) -> None:
        self.run.progress_message = event.message

    def _on_started(self, event: ev.StartedEvent) -> None:
        if event.thread_id and not self.run.thread_id:
            self.run.thread_id = event.thread_id
            self._mirror(thread_id=event.thread_id)

    def _on_settings_resolved(self, event: ev.SettingsResolvedEvent) -> None:
        self.run.resolved_settings = dict(event.settings)
        self.run.resolved_tools = list(event.tools)
        updates: dict[str, Any] = {
            "resolved_settings": self.run.resolved_settings,
            "resolved_tools": self.run.resolved_tools,
        }
        model = event.settings.get("model")
        if isinstance(model, str) and model:
            updates["model"] = model
        self._mirror(**updates)

    # -- lifecycle ---------------------------------------------------------

    def _on_api_started(self, event: ev.ApiStartedEvent) -> None:
        self.run._remote_response_id = event.response_id
        if event.status:
            self.run.server_status = event.status
        self.run.status = RunStatus.IN_PROGRESS
        self._mirror(status=RunStatus.IN_PROGRESS.value, response_id=event.response_id)

    def _on_thinking_started(self, event: ev.ThinkingStartedEvent) -> None:
        self._set_status(RunStatus.STREAMING_THINKING)

    def _on_thinking_delta(self, event: ev.ThinkingDeltaEvent) -> None:
        self._set_status(RunStatus.STREAMING_THINKING)
        if event.delta:
            self.run.reasoning_text += event.delta
            if self.registry is not None:
                self.registry.append_reasoning(self.run.run_id, event.delta)

    def _on_thinking_done(self, event: ev.ThinkingDoneEvent) -> None:
        # Servers that poll instead of stream only send the final summary
        if event.text and not self.run.reasoning_text:
            self.run.reasoning_text = event.text
            self._mirror(reasoning_text=event.text)

    def _on_output_delta(self, event: ev.OutputTextDeltaEvent) -> None:
        self._set_status(RunStatus.STREAMING_OUTPUT)
        if event.delta:
            self.run.output_text += event.delta
            if self.registry is not None:
                self.registry.append_output(self.run.run_id, event.delta)

    def _on_output_done(self, event: ev.OutputTextDoneEvent) -> None:
        if not event.text:
            return
        if self.run.output_text and event.text != self.run.output_text:
            logger.debug(
                "Final output differs from streamed deltas",
                data={"run_id": self.run.run_id, "streamed": len(self.run.output_text), "final": len(event.text)},
            )
        self.run.output_text = event.text
        self._mirror(output_text=event.text)

    def _on_usage_delta(self, event: ev.UsageDeltaEvent) -> None:
        self.run.usage.add(event.input_tokens, event.output_tokens)
        if event.input_tokens:
            self._mirror(input_tokens=self.run.usage.input_tokens)
        if self.registry is not None and event.output_tokens:
            self.registry.increment_output_tokens(self.run.run_id, event.output_tokens)

    def _on_status_update(self, event: ev.StatusUpdateEvent) -> None:
        self.run.server_status = event.status
        self._mirror(server_status=event.status)
        try:
            status = RunStatus(event.status)
        except ValueError:
            return
        # Terminal states are reached only through complete/error/cancel so
        # the response id is always released with them.
        if status in REMOTE_ACTIVE_STATUSES and self.run.remote_response_id is not None:
            self._set_status(status)

    def _on_tool_start(self, event: ev.ToolStartEvent) -> None:
        self.run.tool_activity.append(ToolActivity(name=event.tool, args=event.args))
        self._set_status(RunStatus.EXECUTING_TOOLS)
        self._mirror_tools()

    def _on_tool_end(self, event: ev.ToolEndEvent) -> None:
        for activity in reversed(self.run.tool_activity):
            if activity.name == event.tool and activity.status == "running":
                activity.status = "complete"
                break
        self._mirror_tools()

    def _on_tool_loop_complete(self, event: ev.ToolLoopCompleteEvent) -> None:
        for activity in self.run.tool_activity:
            activity.status = "complete"
        self._set_status(RunStatus.STREAMING_OUTPUT)
        self._mirror_tools()

    def _mirror_tools(self) -> None:
        self._mirror(tool_activity=[(a.name, a.status) for a in self.run.tool_activity])

    def _on_user_input_required(self, event: ev.UserInputRequiredEvent) -> None:
        # The remote response ended with a question; the answer goes out as a
        # new message, so nothing remains to cancel server-side.
        response_id = self.run.take_remote_response_id()
        self.run.pending_question = PendingQuestion(
            question=event.question,
            variable_name=event.variable_name,
            description=event.description,
            call_id=event.call_id,
            response_id=event.response_id or response_id,
        )
        self.run.status = RunStatus.QUEUED
        self._mirror(status=RunStatus.QUEUED.value, response_id=None, awaiting_input=True)

    def _on_complete(self, event: ev.CompleteEvent) -> None:
        self.run.take_remote_response_id()
        result = event.result
        self.run.result = result

        usage = result.get("usage")
        if isinstance(usage, dict):
            self.run.usage.raise_to(usage.get("input_tokens"), usage.get("output_tokens"))
            self._mirror(
                input_tokens=self.run.usage.input_tokens,
                output_tokens=self.run.usage.output_tokens,
            )
        thread_id = result.get("thread_id")
        if isinstance(thread_id, str) and not self.run.thread_id:
            self.run.thread_id = thread_id
        response = result.get("response")
        if isinstance(response, str) and not self.run.output_text:
            self.run.output_text = response

        self._finish(RunStatus.COMPLETED)

    def _on_error(self, event: ev.ErrorEvent) -> None:
        if event.is_cancellation:
            self.mark_cancelled()
            return
        failure: RunFailedError = event.to_failure()
        self.run.error = failure
        self.run.take_remote_response_id()
        self._finish(RunStatus.ERRORED)
