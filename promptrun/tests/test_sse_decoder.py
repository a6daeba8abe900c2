"""Tests for SSE frame decoding."""

import pytest

from promptrun.streaming import EventStreamDecoder, decode_all, decode_events
from promptrun.streaming.sse import LineBuffer

from sse_helpers import chunked, sse

TRANSCRIPT = sse(
    {"type": "started", "prompt_row_id": "p1", "thread_id": "t1"},
    {"type": "api_started", "response_id": "r1", "status": "in_progress"},
    {"type": "thinking_delta", "delta": "Let me think"},
    {"type": "output_text_delta", "delta": "Hé"},
    {"type": "output_text_delta", "delta": "llo ✓"},
    {"type": "usage_delta", "input_tokens": 10, "output_tokens": 2},
    {"type": "complete", "success": True, "response": "Héllo ✓"},
)


def _summary(events):
    return [(e.type, getattr(e, "delta", None)) for e in events]


class TestLineBuffer:
    def test_splits_all_line_endings(self):
        buf = LineBuffer()
        assert buf.feed(b"a\nb\r\nc\rd") == ["a", "b", "c"]
        assert buf.flush() == ["d"]

    def test_crlf_split_across_chunks(self):
        buf = LineBuffer()
        lines = buf.feed(b"data: x\r")
        lines += buf.feed(b"\ndata: y\n")
        # The split "\r\n" yields one extra blank line, never a merged one
        assert [line for line in lines if line] == ["data: x", "data: y"]

    def test_multibyte_character_split(self):
        buf = LineBuffer()
        encoded = "é\n".encode("utf-8")
        assert buf.feed(encoded[:1]) == []
        assert buf.feed(encoded[1:]) == ["é"]

    def test_unicode_line_separator_is_not_a_break(self):
        buf = LineBuffer()
        assert buf.feed("a\u2028b\n".encode("utf-8")) == ["a\u2028b"]


class TestEventStreamDecoder:
    def test_decodes_full_transcript(self):
        events, diagnostics = decode_all([TRANSCRIPT])

        assert [e.type for e in events] == [
            "started",
            "api_started",
            "thinking_delta",
            "output_text_delta",
            "output_text_delta",
            "usage_delta",
            "complete",
        ]
        assert diagnostics == []
        assert events[0].prompt_id == "p1"
        assert events[1].response_id == "r1"
        assert events[-1].result["response"] == "Héllo ✓"

    @pytest.mark.parametrize("size", [1, 2, 3, 7, 64])
    def test_chunking_does_not_change_events(self, size):
        whole, _ = decode_all([TRANSCRIPT])
        split, _ = decode_all(chunked(TRANSCRIPT, size))
        assert _summary(split) == _summary(whole)

    def test_carriage_return_line_endings(self):
        body = TRANSCRIPT.replace(b"\n", b"\r")
        events, _ = decode_all([body])
        assert len(events) == 7

    def test_comments_and_other_fields_ignored(self):
        body = (
            b": keep-alive\n\n"
            b"event: message\n"
            b"id: 4\n"
            b"retry: 1000\n"
            b'data: {"type": "heartbeat", "elapsed_ms": 1500}\n\n'
            b"data:[DONE]\n"
        )
        events, diagnostics = decode_all([body])
        assert [e.type for e in events] == ["heartbeat"]
        assert events[0].elapsed_ms == 1500
        assert diagnostics == []

    def test_payload_without_space_after_marker(self):
        events, _ = decode_all([b'data:{"type":"progress","message":"Loading"}\n'])
        assert events[0].message == "Loading"

    def test_sentinel_stops_decoding(self):
        body = sse({"type": "progress", "message": "a"}) + sse({"type": "progress", "message": "b"}, done=False)
        decoder = EventStreamDecoder()
        events = decoder.feed(body)
        assert [e.message for e in events] == ["a"]
        assert decoder.sentinel_received is True
        assert decoder.finished is True
        assert decoder.feed(b'data: {"type": "progress", "message": "c"}\n') == []

    def test_stops_after_error_event(self):
        body = sse(
            {"type": "error", "error": "boom", "error_code": "MODEL_ERROR"},
            {"type": "output_text_delta", "delta": "late"},
        )
        events, _ = decode_all([body])
        assert [e.type for e in events] == ["error"]
        assert events[0].error_code == "MODEL_ERROR"

    def test_malformed_frames_are_skipped(self):
        body = (
            b"data: {not json\n\n"
            b"data: [1, 2]\n\n"
            b'data: {"type": "api_started"}\n\n'
            b'data: {"type": "mystery"}\n\n'
            b'data: {"type": "output_text_delta", "delta": "ok"}\n\n'
        )
        decoder = EventStreamDecoder()
        events = decoder.feed(body) + decoder.close()

        assert _summary(events) == [("output_text_delta", "ok")]
        reasons = [d.reason for d in decoder.diagnostics]
        assert len(reasons) == 4
        assert reasons[0].startswith("invalid JSON")
        assert reasons[1] == "payload is not a JSON object"
        assert "api_started" in reasons[2]
        assert "mystery" in reasons[3]

    def test_close_flushes_unterminated_line(self):
        decoder = EventStreamDecoder()
        assert decoder.feed(b'data: {"type": "output_text_delta", "delta": "tail"}') == []
        events = decoder.close()
        assert _summary(events) == [("output_text_delta", "tail")]
        assert decoder.finished

    def test_null_delta_is_accepted(self):
        events, diagnostics = decode_all([b'data: {"type": "thinking_delta", "delta": null}\n'])
        assert events[0].delta is None
        assert diagnostics == []

    def test_error_event_converts_to_failure(self):
        events, _ = decode_all([
            sse({
                "type": "error",
                "error": "You exceeded your current quota",
                "error_code": "QUOTA_EXCEEDED",
                "prompt_name": "Summarize",
                "retry_after_s": 30,
            })
        ])
        failure = events[0].to_failure()
        assert failure.code == "QUOTA_EXCEEDED"
        assert failure.is_quota_error
        assert failure.prompt_name == "Summarize"
        assert failure.retry_after_s == 30

    def test_error_event_without_message(self):
        events, _ = decode_all([sse({"type": "error"})])
        assert events[0].to_failure().message == "Unknown error"


class TestDecodeEvents:
    @pytest.mark.asyncio
    async def test_async_decoding_matches_sync(self):
        async def chunks():
            for chunk in chunked(TRANSCRIPT, 5):
                yield chunk

        events = [event async for event in decode_events(chunks())]
        whole, _ = decode_all([TRANSCRIPT])
        assert _summary(events) == _summary(whole)

    @pytest.mark.asyncio
    async def test_stops_reading_after_terminal_event(self):
        pulled = []

        async def chunks():
            for chunk in [sse({"type": "complete"}, done=False), b"data: never\n\n", b"more"]:
                pulled.append(chunk)
                yield chunk

        events = [event async for event in decode_events(chunks())]
        assert [e.type for e in events] == ["complete"]
        assert len(pulled) == 1

    @pytest.mark.asyncio
    async def test_exposes_diagnostics_through_decoder(self):
        async def chunks():
            yield b"data: nope\n\n"
            yield sse({"type": "complete"})

        decoder = EventStreamDecoder()
        events = [event async for event in decode_events(chunks(), decoder)]
        assert [e.type for e in events] == ["complete"]
        assert len(decoder.diagnostics) == 1
