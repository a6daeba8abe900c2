"""Process-wide table of active runs with live-updated telemetry."""

from __future__ import annotations

import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Optional

from promptrun.core.logging import get_logger
from promptrun.services.pricing import estimate_cost

if TYPE_CHECKING:
    from promptrun.services.run_state import Run

logger = get_logger(__name__)

DEFAULT_CONTEXT_WINDOW = 128000

CancelFn = Callable[[], Awaitable[Any]]
TerminalCallback = Callable[["Run"], None]


@dataclass
class CallEntry:
    """Live projection of one run, keyed by ``run_id``."""

    run_id: str
    prompt_id: str
    prompt_name: str = "Running..."
    model: str = "loading..."
    status: str = "queued"
    response_id: Optional[str] = None
    thread_id: Optional[str] = None
    reasoning_text: str = ""
    output_text: str = ""
    output_tokens: int = 0
    input_tokens: int = 0
    estimated_input_tokens: int = 0
    context_window: int = DEFAULT_CONTEXT_WINDOW
    is_cascade_call: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    first_token_at: Optional[float] = None
    last_token_at: Optional[float] = None
    resolved_settings: Optional[dict] = None
    resolved_tools: Optional[list] = None
    cancel_fn: Optional[CancelFn] = field(default=None, repr=False)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def tokens_per_second(self) -> float:
        if self.first_token_at is None or self.last_token_at is None:
            return 0.0
        elapsed = self.last_token_at - self.first_token_at
        if elapsed <= 0:
            return 0.0
        return self.output_tokens / elapsed

    @property
    def billed_input_tokens(self) -> int:
        # Reported usage wins over the caller's estimate
        return self.input_tokens or self.estimated_input_tokens

    @property
    def estimated_cost(self) -> float:
        return estimate_cost(self.model, self.billed_input_tokens, self.output_tokens)


_ENTRY_FIELDS = {f.name for f in fields(CallEntry)} - {"run_id"}


@dataclass(frozen=True)
class CumulativeStats:
    """Totals over finished cascade calls."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_cost: float = 0.0
    call_count: int = 0


class CallRegistry:
    """Registry of concurrently active runs.

    Entries share nothing but the map itself. Calls addressed to an unknown
    or already removed ``run_id`` are ignored, so a late event from a
    finished run can never resurrect or corrupt its entry.
    """

    def __init__(self) -> None:
        self._entries: dict[str, CallEntry] = {}
        self._terminal_callbacks: list[TerminalCallback] = []
        self._cumulative = CumulativeStats()

    def register(
        self,
        prompt_id: str,
        cancel_fn: Optional[CancelFn] = None,
        run_id: Optional[str] = None,
        **metadata: Any,
    ) -> str:
        """Add an entry with status ``queued`` and return its run id."""
        run_id = run_id or uuid.uuid4().hex
        known = {k: v for k, v in metadata.items() if k in _ENTRY_FIELDS}
        extra = {k: v for k, v in metadata.items() if k not in _ENTRY_FIELDS}
        entry = CallEntry(run_id=run_id, prompt_id=prompt_id, cancel_fn=cancel_fn, **known)
        entry.status = "queued"
        entry.metadata.update(extra)
        self._entries[run_id] = entry
        logger.debug("Registered call", data={"run_id": run_id, "prompt_id": prompt_id})
        return run_id

    def update(self, run_id: str, **updates: Any) -> bool:
        """Merge fields into an entry. Returns False when the entry is gone."""
        entry = self._entries.get(run_id)
        if entry is None:
            return False
        for key, value in updates.items():
            if key in _ENTRY_FIELDS:
                setattr(entry, key, value)
            else:
                entry.metadata[key] = value
        return True

    def append_reasoning(self, run_id: str, delta: str) -> None:
        """Concatenate reasoning text. Callers deliver deltas in order."""
        if not delta or not isinstance(delta, str):
            return
        entry = self._entries.get(run_id)
        if entry is not None:
            entry.reasoning_text += delta

    def append_output(self, run_id: str, delta: str) -> None:
        """Concatenate output text. Callers deliver deltas in order."""
        if not delta or not isinstance(delta, str):
            return
        entry = self._entries.get(run_id)
        if entry is not None:
            entry.output_text += delta

    def increment_output_tokens(self, run_id: str, n: int = 1) -> None:
        entry = self._entries.get(run_id)
        if entry is None or n <= 0:
            return
        now = time.monotonic()
        if entry.first_token_at is None:
            entry.first_token_at = now
        entry.last_token_at = now
        entry.output_tokens += n

    def remove(self, run_id: str) -> None:
        """Delete an entry. Removing twice is harmless."""
        entry = self._entries.pop(run_id, None)
        if entry is None:
            return
        if entry.is_cascade_call:
            stats = self._cumulative
            self._cumulative = CumulativeStats(
                input_tokens=stats.input_tokens + entry.billed_input_tokens,
                output_tokens=stats.output_tokens + entry.output_tokens,
                total_cost=stats.total_cost + entry.estimated_cost,
                call_count=stats.call_count + 1,
            )
        logger.debug("Removed call", data={"run_id": run_id, "status": entry.status})

    async def cancel_call(self, run_id: str) -> None:
        """Invoke the entry's cancel function, then drop the entry."""
        entry = self._entries.get(run_id)
        if entry is not None and entry.cancel_fn is not None:
            await entry.cancel_fn()
        self.remove(run_id)

    def get(self, run_id: str) -> Optional[CallEntry]:
        entry = self._entries.get(run_id)
        return replace(entry) if entry is not None else None

    def active_calls(self) -> list[CallEntry]:
        """Snapshot of every active entry, oldest first."""
        return [replace(entry) for entry in self._entries.values()]

    @property
    def has_active_calls(self) -> bool:
        return bool(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, run_id: object) -> bool:
        return run_id in self._entries

    @property
    def cumulative_stats(self) -> CumulativeStats:
        return self._cumulative

    def reset_cumulative_stats(self) -> None:
        self._cumulative = CumulativeStats()

    def on_run_terminal(self, callback: TerminalCallback) -> Callable[[], None]:
        """Subscribe to terminal transitions. Returns an unsubscribe function."""
        self._terminal_callbacks.append(callback)

        def unsubscribe() -> None:
            try:
                self._terminal_callbacks.remove(callback)
            except ValueError:
                pass

        return unsubscribe

    def notify_terminal(self, run: "Run") -> None:
        for callback in list(self._terminal_callbacks):
            try:
                callback(run)
            except Exception as e:
                logger.warning(
                    f"Terminal callback failed: {e}",
                    data={"run_id": run.run_id},
                    exc_info=True,
                )


@lru_cache
def get_call_registry() -> CallRegistry:
    """Get the process-wide registry."""
    return CallRegistry()
