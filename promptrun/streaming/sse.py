"""SSE (Server-Sent Events) frame decoding for run streams.

The execution service answers a run request with a byte stream of
``data: <json>`` frames, ``:`` keep-alive comments and blank separators,
terminated by ``data: [DONE]``. Chunk boundaries are arbitrary: a frame, a
line ending or a multibyte character may be split between two deliveries.
Decoding the same bytes in any chunking yields the same events.
"""

from __future__ import annotations

import codecs
import json
import re
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from dataclasses import dataclass

from pydantic import ValidationError

from promptrun.core.logging import get_logger
from promptrun.streaming.events import TERMINAL_EVENT_TYPES, RunEvent, parse_event

logger = get_logger(__name__)

DATA_MARKER = "data:"
COMMENT_MARKER = ":"
DONE_SENTINEL = "[DONE]"

_LINE_BREAK = re.compile(r"\r\n|\r|\n")


@dataclass(frozen=True)
class FrameDiagnostic:
    """A payload that was dropped instead of decoded."""

    payload: str
    reason: str


class LineBuffer:
    """Incremental UTF-8 decoder splitting on ``\\n``, ``\\r\\n`` and ``\\r``."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += self._decoder.decode(chunk)
        return self._drain()

    def flush(self) -> list[str]:
        """Return every remaining line, including an unterminated last one."""
        self._buffer += self._decoder.decode(b"", final=True)
        lines = self._drain()
        if self._buffer:
            lines.append(self._buffer)
            self._buffer = ""
        return lines

    def _drain(self) -> list[str]:
        parts = _LINE_BREAK.split(self._buffer)
        # The last part is an unterminated line (possibly empty). A "\r" at
        # the very end may be half of "\r\n"; the "\n" that follows then
        # yields a blank line, which frame parsing ignores.
        self._buffer = parts.pop()
        return parts


class EventStreamDecoder:
    """Turns raw stream chunks into typed run events.

    Malformed frames are recorded in ``diagnostics`` and skipped. The
    decoder finishes on the sentinel or right after the first ``complete``
    or ``error`` event; anything fed afterwards is ignored.
    """

    def __init__(self) -> None:
        self._lines = LineBuffer()
        self.diagnostics: list[FrameDiagnostic] = []
        self.finished = False
        self.sentinel_received = False

    def feed(self, chunk: bytes) -> list[RunEvent]:
        if self.finished:
            return []
        return self._parse_lines(self._lines.feed(chunk))

    def close(self) -> list[RunEvent]:
        """Flush buffered content as a final best-effort line."""
        if self.finished:
            return []
        events = self._parse_lines(self._lines.flush())
        self.finished = True
        return events

    def _parse_lines(self, lines: Iterable[str]) -> list[RunEvent]:
        events: list[RunEvent] = []
        for line in lines:
            event = self.parse_line(line)
            if event is not None:
                events.append(event)
                if event.type in TERMINAL_EVENT_TYPES:
                    self.finished = True
            if self.finished:
                break
        return events

    def parse_line(self, line: str) -> RunEvent | None:
        if not line.strip() or line.startswith(COMMENT_MARKER):
            return None
        if not line.startswith(DATA_MARKER):
            return None

        payload = line[len(DATA_MARKER):].strip()
        if not payload:
            return None
        if payload == DONE_SENTINEL:
            self.sentinel_received = True
            self.finished = True
            return None

        try:
            data = json.loads(payload)
        except ValueError as exc:
            self._record(payload, f"invalid JSON: {exc}")
            return None

        if not isinstance(data, dict):
            self._record(payload, "payload is not a JSON object")
            return None

        try:
            return parse_event(data)
        except ValidationError as exc:
            self._record(payload, f"invalid {data.get('type', '<untyped>')!s} event: {exc.error_count()} error(s)")
            return None

    def _record(self, payload: str, reason: str) -> None:
        self.diagnostics.append(FrameDiagnostic(payload=payload, reason=reason))
        logger.warning(
            "Dropped malformed stream frame",
            data={"reason": reason, "payload": payload[:200]},
        )


async def decode_events(
    chunks: AsyncIterable[bytes],
    decoder: EventStreamDecoder | None = None,
) -> AsyncIterator[RunEvent]:
    """Lazily decode an async byte stream into run events.

    Pass a decoder to inspect its diagnostics afterwards.
    """
    decoder = decoder or EventStreamDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
        if decoder.finished:
            return
    for event in decoder.close():
        yield event


def decode_all(chunks: Iterable[bytes]) -> tuple[list[RunEvent], list[FrameDiagnostic]]:
    """Decode a fully-buffered stream, e.g. a recorded transcript."""
    decoder = EventStreamDecoder()
    events: list[RunEvent] = []
    for chunk in chunks:
        events.extend(decoder.feed(chunk))
        if decoder.finished:
            break
    events.extend(decoder.close())
    return events, decoder.diagnostics
