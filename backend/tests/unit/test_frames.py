"""
Unit tests for SSE parsing and frame decoding.
"""

import pytest

from siftstream.client.frames import (
    CompleteFrame,
    DeltaFrame,
    ErrorFrame,
    ErrorSource,
    SnapshotFrame,
    SSEEvent,
    StatusFrame,
    decode_frame,
    encode_frame,
    is_terminal,
    iter_sse_events,
)
from siftstream.core.enums import Messages
from siftstream.core.exceptions import ParseError
from siftstream.services.stream_relay import format_sse
from siftstream.core.enums import SSEEventType


async def _lines(*lines):
    for line in lines:
        yield line


async def _collect(lines):
    return [event async for event in iter_sse_events(lines)]


class TestIterSSEEvents:
    """Tests for grouping lines into events."""

    @pytest.mark.asyncio
    async def test_groups_blocks_on_blank_lines(self):
        """Each blank line closes one event."""
        events = await _collect(_lines(
            "event: status", 'data: {"stage": "started"}', "",
            'data: {"delta": "a"}', "",
        ))

        assert len(events) == 2
        assert events[0].event == "status"
        assert events[0].data == '{"stage": "started"}'
        assert events[1].event is None

    @pytest.mark.asyncio
    async def test_skips_comments_and_unknown_fields(self):
        """Comment lines and unknown fields do not produce events."""
        events = await _collect(_lines(": keep-alive", "", "id: 7", "retry: 100", 'data: {"delta": "x"}', ""))
        assert len(events) == 1
        assert events[0].data == '{"delta": "x"}'

    @pytest.mark.asyncio
    async def test_joins_multiline_data(self):
        """Multiple data lines are joined with newlines."""
        events = await _collect(_lines("data: first", "data: second", ""))
        assert events[0].data == "first\nsecond"

    @pytest.mark.asyncio
    async def test_drops_unterminated_trailing_event(self):
        """An event without its closing blank line is not delivered."""
        events = await _collect(_lines('data: {"delta": "a"}', "", 'data: {"delta": "b"}'))
        assert [e.data for e in events] == ['{"delta": "a"}']

    @pytest.mark.asyncio
    async def test_strips_carriage_returns(self):
        """CRLF line endings parse like LF."""
        events = await _collect(_lines("event: complete\r\n", "data: {}\r\n", "\r\n"))
        assert events[0].event == "complete"
        assert events[0].data == "{}"


class TestDecodeFrame:
    """Tests for decoding events into frames."""

    def test_delta_frame(self):
        """Untyped data with a delta is an incremental frame."""
        assert decode_frame(SSEEvent(data_lines=['{"delta": "abc"}'])) == DeltaFrame("abc")

    def test_text_chunk_is_snapshot(self):
        """text_chunk payloads replace the whole text."""
        frame = decode_frame(SSEEvent(data_lines=['{"text_chunk": "final text"}']))
        assert frame == SnapshotFrame("final text")

    def test_status_frame(self):
        """Test status frame with session id."""
        frame = decode_frame(SSEEvent("status", ['{"stage": "started", "session_id": "sift_1"}']))
        assert frame == StatusFrame(stage="started", session_id="sift_1")

    def test_complete_payload_is_optional(self):
        """complete frames decode with or without a payload."""
        assert decode_frame(SSEEvent("complete", [])) == CompleteFrame()
        assert decode_frame(SSEEvent("complete", ['{"message": "Stream finished"}'])).message == "Stream finished"
        assert decode_frame(SSEEvent("complete", ["not json"])) == CompleteFrame()

    @pytest.mark.parametrize(
        "data,expected",
        [
            ('{"message": "Model overloaded"}', "Model overloaded"),
            ('{"error": "Rate limited"}', "Rate limited"),
            ("{oops", Messages.BACKEND_ERROR),
            ('{"code": 3}', Messages.BACKEND_ERROR),
        ],
    )
    def test_error_frame_message_or_fallback(self, data, expected):
        """Application error text comes from message, then error, then a fallback."""
        frame = decode_frame(SSEEvent("error", [data]))
        assert isinstance(frame, ErrorFrame)
        assert frame.source == ErrorSource.APPLICATION
        assert frame.message == expected

    def test_error_frame_keeps_type(self):
        """Test error type is kept."""
        frame = decode_frame(SSEEvent("error", ['{"message": "slow", "type": "PROVIDER_TIMEOUT"}']))
        assert frame.error_type == "PROVIDER_TIMEOUT"

    @pytest.mark.parametrize(
        "event",
        [
            SSEEvent(data_lines=["not json"]),
            SSEEvent(data_lines=['["a list"]']),
            SSEEvent(data_lines=['{"delta": 5}']),
            SSEEvent(data_lines=['{"other": "x"}']),
            SSEEvent("status", ['{"message": "no stage"}']),
            SSEEvent("ping", ["{}"]),
        ],
    )
    def test_malformed_frames_raise_parse_error(self, event):
        """Malformed payloads and unknown event types raise ParseError."""
        with pytest.raises(ParseError):
            decode_frame(event)


class TestEncodeFrame:
    """Encoded frames match what the relay writes."""

    def test_delta_matches_relay_format(self):
        """Test delta frame encoding."""
        assert encode_frame(DeltaFrame("hi")) == format_sse({"delta": "hi"})

    def test_complete_matches_relay_format(self):
        """Test complete frame encoding."""
        expected = format_sse({"message": Messages.STREAM_FINISHED}, SSEEventType.COMPLETE)
        assert encode_frame(CompleteFrame(Messages.STREAM_FINISHED)) == expected


def test_terminal_frames():
    """Only complete and error frames end a stream."""
    assert is_terminal(CompleteFrame())
    assert is_terminal(ErrorFrame("x"))
    assert is_terminal(ErrorFrame.transport())
    assert not is_terminal(DeltaFrame("x"))
    assert not is_terminal(SnapshotFrame("x"))
    assert not is_terminal(StatusFrame("started"))


def test_transport_frame_uses_generic_message():
    """Transport failures show the generic delivery message."""
    frame = ErrorFrame.transport("TRANSPORT_ERROR")
    assert frame.source == ErrorSource.TRANSPORT
    assert frame.message == Messages.TRANSPORT_ERROR
