"""Run stream decoding: SSE frames to typed events."""

from promptrun.streaming.events import RunEvent, parse_event
from promptrun.streaming.sse import (
    DONE_SENTINEL,
    EventStreamDecoder,
    FrameDiagnostic,
    decode_all,
    decode_events,
)

__all__ = [
    "RunEvent",
    "parse_event",
    "DONE_SENTINEL",
    "EventStreamDecoder",
    "FrameDiagnostic",
    "decode_all",
    "decode_events",
]
