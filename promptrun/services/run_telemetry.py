"""Run lifecycle telemetry: sampled, metadata-only log records."""

from __future__ import annotations

import hashlib
import random
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from promptrun.config import Settings, get_settings
from promptrun.core.logging import get_logger

if TYPE_CHECKING:
    from promptrun.services.run_state import Run

logger = get_logger(__name__)

ALLOWED_EVENT_TYPES = {
    "run_start",
    "run_first_delta",
    "run_done",
    "run_cancel",
    "run_error",
}


def validate_event_type(event_type: str) -> bool:
    return event_type in ALLOWED_EVENT_TYPES


def should_keep_event(
    *,
    event: dict,
    sample_rate: float,
    sampling_mode: str,
) -> bool:
    if sample_rate >= 1.0:
        return True
    if sample_rate <= 0.0:
        return False

    if sampling_mode == "random":
        return random.random() < sample_rate

    # Keyed on the run only, so a sampled run keeps all of its events
    key = f"{event.get('run_id', '')}:{event.get('prompt_id', '')}"
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
    bucket = int(digest[:16], 16) / float(0xFFFFFFFFFFFFFFFF + 1)
    return bucket < sample_rate


class RunTelemetry:
    """Emits one log record per lifecycle milestone of a run.

    Payloads carry ids, codes and counters only, never prompt or output text.
    """

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.enabled = settings.telemetry_enabled
        self.sample_rate = settings.telemetry_sample_rate
        self.sampling_mode = settings.telemetry_sampling_mode
        self.emitted = 0
        self.dropped = 0

    def emit(self, event_type: str, run: "Run", **fields: Any) -> bool:
        if not self.enabled:
            return False
        if not validate_event_type(event_type):
            raise ValueError(f"Unknown telemetry event type: {event_type}")

        event = {
            "type": event_type,
            "run_id": run.run_id,
            "prompt_id": run.prompt_id,
            "thread_id": run.thread_id,
            "ts": datetime.now(timezone.utc).isoformat(),
            **fields,
        }
        if not should_keep_event(event=event, sample_rate=self.sample_rate, sampling_mode=self.sampling_mode):
            self.dropped += 1
            return False

        self.emitted += 1
        logger.info("Run event", data=event)
        return True

    def run_start(self, run: "Run") -> bool:
        return self.emit("run_start", run)

    def run_first_delta(self, run: "Run") -> bool:
        elapsed_ms = int((datetime.now(timezone.utc) - run.created_at).total_seconds() * 1000)
        return self.emit("run_first_delta", run, elapsed_ms=elapsed_ms)

    def run_done(self, run: "Run") -> bool:
        return self.emit(
            "run_done",
            run,
            input_tokens=run.usage.input_tokens,
            output_tokens=run.usage.output_tokens,
        )

    def run_cancel(self, run: "Run", outcome: Optional[str] = None) -> bool:
        return self.emit("run_cancel", run, outcome=outcome)

    def run_error(self, run: "Run") -> bool:
        code = run.error.code if run.error is not None else None
        return self.emit("run_error", run, code=code)
