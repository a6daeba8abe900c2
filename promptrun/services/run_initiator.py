"""Starts runs against the execution service and drives them to completion."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from promptrun.auth.credentials import CredentialProvider
from promptrun.config import Settings, get_settings
from promptrun.core.exceptions import NoResponseError, PromptRunError, ThreadBusyError, TransportError
from promptrun.core.logging import bind_run_context, get_logger
from promptrun.services.call_registry import CallRegistry, get_call_registry
from promptrun.services.cancellation import CancellationCoordinator, CancelOutcome, CancelResult
from promptrun.services.execution_client import ExecutionClient
from promptrun.services.run_state import PendingQuestion, Run, RunStateMachine, RunStatus, Usage
from promptrun.services.run_telemetry import RunTelemetry
from promptrun.services.thread_resolver import ThreadResolver
from promptrun.streaming import EventStreamDecoder, RunEvent, decode_events

logger = get_logger(__name__)

EventCallback = Callable[[RunEvent, Run], None]

_DELTA_EVENT_TYPES = frozenset({"thinking_delta", "output_text_delta"})


class ResumeAnswer(BaseModel):
    previous_response_id: str
    answer: str
    variable_name: str
    call_id: Optional[str] = None


class RunRequest(BaseModel):
    """Outbound run request. Serialized with the service's wire names."""

    model_config = ConfigDict(extra="forbid")

    prompt_id: str = Field(min_length=1, serialization_alias="child_prompt_row_id")
    user_message: str = ""
    thread_id: Optional[str] = Field(default=None, serialization_alias="existing_thread_row_id")
    template_variables: dict[str, Any] = Field(default_factory=dict)
    model: Optional[str] = None
    reasoning_effort: Optional[str] = None
    store_in_history: bool = True
    resume_question_answer: Optional[ResumeAnswer] = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


@dataclass(frozen=True)
class RunResult:
    """Outcome of one pass over the stream.

    A suspended run (``pending_question`` set) is not terminal; answer it
    with ``RunInitiator.resume``.
    """

    run: Run

    @property
    def status(self) -> RunStatus:
        return self.run.status

    @property
    def completed(self) -> bool:
        return self.run.status is RunStatus.COMPLETED

    @property
    def cancelled(self) -> bool:
        return self.run.status is RunStatus.CANCELLED

    @property
    def errored(self) -> bool:
        return self.run.status is RunStatus.ERRORED

    @property
    def output_text(self) -> str:
        return self.run.output_text

    @property
    def reasoning_text(self) -> str:
        return self.run.reasoning_text

    @property
    def usage(self) -> Usage:
        return self.run.usage

    @property
    def error(self) -> Optional[PromptRunError]:
        return self.run.error

    @property
    def pending_question(self) -> Optional[PendingQuestion]:
        return self.run.pending_question

    @property
    def thread_id(self) -> Optional[str]:
        return self.run.thread_id

    @property
    def result(self) -> Optional[dict[str, Any]]:
        return self.run.result

    def raise_for_error(self) -> "RunResult":
        if self.run.error is not None and self.errored:
            raise self.run.error
        return self


class RunHandle:
    """A started run. Await ``wait()`` for its result or call ``cancel()``.

    Cancelling the task that awaits ``wait()`` cancels the run as well.
    """

    def __init__(
        self,
        initiator: "RunInitiator",
        machine: RunStateMachine,
        request: RunRequest,
        task: asyncio.Task,
        on_event: Optional[EventCallback] = None,
    ):
        self._initiator = initiator
        self.machine = machine
        self.request = request
        self._task = task
        self.on_event = on_event

    @property
    def run(self) -> Run:
        return self.machine.run

    @property
    def run_id(self) -> str:
        return self.machine.run.run_id

    @property
    def done(self) -> bool:
        return self._task.done()

    async def wait(self) -> RunResult:
        try:
            return await self._task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            # Cancelled locally before the task got to run
            if self._task.cancelled() and self.run.status is RunStatus.CANCELLED:
                return RunResult(self.run)
            raise

    async def cancel(self) -> CancelResult:
        return await self._initiator.cancel(self.run_id)


class _AuthenticatedCanceller:
    def __init__(self, client: ExecutionClient, credentials: CredentialProvider):
        self.client = client
        self.credentials = credentials

    async def cancel_response(self, response_id: str) -> str:
        token = await self.credentials.get_token()
        return await self.client.cancel_response(response_id, token)


class RunInitiator:
    """Owns the lifecycle of every run it starts.

    Runs are independent: each has its own task, stream, state machine and
    cancellation token. The only shared state is the call registry and the
    table of claimed threads; one thread carries at most one live run,
    suspended runs included.
    """

    def __init__(
        self,
        client: ExecutionClient,
        credentials: CredentialProvider,
        registry: Optional[CallRegistry] = None,
        coordinator: Optional[CancellationCoordinator] = None,
        thread_resolver: Optional[ThreadResolver] = None,
        telemetry: Optional[RunTelemetry] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.client = client
        self.credentials = credentials
        self.registry = registry if registry is not None else get_call_registry()
        self.coordinator = coordinator or CancellationCoordinator(_AuthenticatedCanceller(client, credentials))
        self.thread_resolver = thread_resolver
        self.telemetry = telemetry or RunTelemetry(self.settings)

        self._machines: dict[str, RunStateMachine] = {}
        self._thread_claims: dict[str, str] = {}
        self._first_delta_seen: set[str] = set()
        self._background: set[asyncio.Task] = set()
        self._unsubscribe = self.registry.on_run_terminal(self._on_terminal)

    async def start(
        self,
        request: RunRequest,
        owner_id: Optional[str] = None,
        prompt_name: Optional[str] = None,
        model_label: Optional[str] = None,
        is_cascade_call: bool = False,
        on_event: Optional[EventCallback] = None,
        **metadata: Any,
    ) -> RunHandle:
        """Start a run in a background task and return its handle.

        Raises ThreadBusyError when another live run holds the thread.
        """
        if request.thread_id is None and owner_id and self.thread_resolver is not None:
            thread = await self.thread_resolver.ensure_thread(request.prompt_id, owner_id)
            request = request.model_copy(update={"thread_id": thread.id})

        # No await between the claim check and the claim itself
        if request.thread_id is not None:
            holder = self._thread_claims.get(request.thread_id)
            if holder is not None:
                raise ThreadBusyError(request.thread_id, holder)

        run = Run(prompt_id=request.prompt_id, thread_id=request.thread_id)
        machine = RunStateMachine(run, self.registry)
        run.bind_cancel(lambda: self.coordinator.cancel(machine))

        if request.thread_id is not None:
            self._thread_claims[request.thread_id] = run.run_id
        self._machines[run.run_id] = machine

        registry_fields: dict[str, Any] = {
            "thread_id": request.thread_id,
            "is_cascade_call": is_cascade_call,
            **metadata,
        }
        if prompt_name:
            registry_fields["prompt_name"] = prompt_name
        if model_label or request.model:
            registry_fields["model"] = model_label or request.model
        self.registry.register(run.prompt_id, cancel_fn=run.cancel, run_id=run.run_id, **registry_fields)

        return self._spawn(machine, request, on_event)

    async def run(self, request: RunRequest, **kwargs: Any) -> RunResult:
        """Start a run and wait for it."""
        handle = await self.start(request, **kwargs)
        return await handle.wait()

    async def resume(self, handle: RunHandle, answer: str) -> RunHandle:
        """Answer a suspended run's question and continue it on the same thread."""
        machine = handle.machine
        run = machine.run
        if run.is_terminal or run.pending_question is None:
            raise PromptRunError("Run is not awaiting input", code="NOT_AWAITING_INPUT")

        pending = run.pending_question
        if not pending.response_id:
            raise PromptRunError("No response to resume from", code="RESUME_UNAVAILABLE")
        machine.take_pending_question()

        request = handle.request.model_copy(
            update={
                "thread_id": run.thread_id,
                "resume_question_answer": ResumeAnswer(
                    previous_response_id=pending.response_id,
                    answer=answer,
                    variable_name=pending.variable_name,
                    call_id=pending.call_id,
                ),
            }
        )
        self.registry.update(run.run_id, awaiting_input=False)
        logger.info(
            "Resuming run",
            data={"run_id": run.run_id, "variable_name": pending.variable_name},
        )
        return self._spawn(machine, request, handle.on_event)

    async def cancel(self, run_id: str) -> CancelResult:
        machine = self._machines.get(run_id)
        if machine is None:
            return CancelResult(CancelOutcome.NOOP)
        result = await self.coordinator.cancel(machine)
        if result.warning and result.outcome is CancelOutcome.REMOTE_FAILED:
            logger.warning(
                "Server-side generation may continue briefly",
                data={"run_id": run_id, "response_id": result.response_id, "warning": result.warning},
            )
        return result

    def active_runs(self) -> list[Run]:
        return [machine.run for machine in self._machines.values()]

    def thread_holder(self, thread_id: str) -> Optional[str]:
        return self._thread_claims.get(thread_id)

    async def aclose(self) -> None:
        """Cancel every live run and close the transport."""
        for run_id in list(self._machines):
            await self.cancel(run_id)
        if self._background:
            await asyncio.gather(*self._background)
        self._unsubscribe()
        await self.client.aclose()

    def _spawn(self, machine: RunStateMachine, request: RunRequest, on_event: Optional[EventCallback]) -> RunHandle:
        task = asyncio.create_task(
            self._consume(machine, request.to_payload(), on_event),
            name=f"run-{machine.run_id}",
        )

        def abort() -> None:
            if not task.done():
                task.cancel()

        machine.run.token.add_callback(abort)
        return RunHandle(self, machine, request, task, on_event)

    async def _consume(
        self,
        machine: RunStateMachine,
        payload: dict[str, Any],
        on_event: Optional[EventCallback],
    ) -> RunResult:
        run = machine.run
        with bind_run_context(run.run_id, run.prompt_id):
            try:
                token = await self.credentials.get_token()
                async with self.client.open_stream(payload, token) as response:
                    self.telemetry.run_start(run)
                    decoder = EventStreamDecoder()
                    async with aclosing(decode_events(response.aiter_bytes(), decoder)) as events:
                        async for event in events:
                            self._dispatch(machine, event, on_event)
                            if run.is_terminal or run.awaiting_input:
                                break
                    if decoder.diagnostics:
                        logger.info("Stream had dropped frames", data={"dropped": len(decoder.diagnostics)})

                if not run.is_terminal and not run.awaiting_input:
                    machine.fail(NoResponseError())
            except asyncio.CancelledError:
                if not run.token.cancelled:
                    self._cancel_detached(machine)
                    raise
                machine.mark_cancelled()
            except PromptRunError as e:
                machine.fail(e)
            except (httpx.HTTPError, httpx.StreamError) as e:
                machine.fail(TransportError(f"Stream interrupted: {e}"))
            except Exception as e:
                logger.error(f"Run failed unexpectedly: {e}", data={"run_id": run.run_id}, exc_info=True)
                machine.fail(PromptRunError(f"Run failed: {e}", code="RUN_FAILED"))

            if run.status is RunStatus.COMPLETED and run.thread_id and self.thread_resolver is not None:
                await self._record_activity(run.thread_id)

        return RunResult(run)

    def _dispatch(self, machine: RunStateMachine, event: RunEvent, on_event: Optional[EventCallback]) -> None:
        run = machine.run
        if not machine.apply(event):
            return
        if event.type in _DELTA_EVENT_TYPES and run.run_id not in self._first_delta_seen:
            self._first_delta_seen.add(run.run_id)
            self.telemetry.run_first_delta(run)
        if event.type == "user_input_required":
            logger.info("Run awaiting input", data={"run_id": run.run_id})
        if on_event is not None:
            try:
                on_event(event, run)
            except Exception as e:
                logger.warning(f"Event callback failed: {e}", data={"event_type": event.type}, exc_info=True)

    def _cancel_detached(self, machine: RunStateMachine) -> None:
        """Resolve a run whose waiter was cancelled and stop its response in the background."""
        run = machine.run
        response_id = run.take_remote_response_id()
        machine.mark_cancelled()
        if response_id is None:
            return
        logger.info(
            "Run abandoned by caller, cancelling response",
            data={"run_id": run.run_id, "response_id": response_id},
        )
        task = asyncio.create_task(self.coordinator.cancel_remote(run.run_id, response_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _record_activity(self, thread_id: str) -> None:
        try:
            await self.thread_resolver.record_activity(thread_id)
        except Exception as e:
            logger.warning(f"Failed to record thread activity: {e}", data={"thread_id": thread_id})

    def _on_terminal(self, run: Run) -> None:
        if self._machines.pop(run.run_id, None) is None:
            return
        self._first_delta_seen.discard(run.run_id)
        if run.thread_id is not None and self._thread_claims.get(run.thread_id) == run.run_id:
            del self._thread_claims[run.thread_id]

        if run.status is RunStatus.COMPLETED:
            self.telemetry.run_done(run)
        elif run.status is RunStatus.CANCELLED:
            self.telemetry.run_cancel(run)
        else:
            self.telemetry.run_error(run)
