"""
Unit tests for the stream relay.

The relay must end every invocation with exactly one terminal frame,
or with nothing at all once the consumer is gone.
"""

import asyncio
import json

import pytest

from siftstream.core.enums import StreamOutcome
from siftstream.core.metrics import ApplicationMetrics
from siftstream.services.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from siftstream.services.stream_relay import SSE_HEADERS, StreamRelay, format_sse


def _events(frames):
    """Decode relay output into (event, data) pairs."""
    parsed = []
    for frame in frames:
        event = None
        data = None
        for line in frame.strip().split("\n"):
            name, _, value = line.partition(": ")
            if name == "event":
                event = value
            elif name == "data":
                data = json.loads(value)
        parsed.append((event, data))
    return parsed


class Chunks:
    """Async iterator over chunks that records aclose()."""

    def __init__(self, chunks, error=None, stall_after=None):
        self.chunks = list(chunks)
        self.error = error
        self.stall_after = stall_after
        self.index = 0
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.stall_after is not None and self.index >= self.stall_after:
            await asyncio.sleep(10)
        if self.index < len(self.chunks):
            self.index += 1
            return self.chunks[self.index - 1]
        if self.error is not None:
            raise self.error
        raise StopAsyncIteration

    async def aclose(self):
        self.closed = True


class FinishRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, outcome, text, error):
        self.calls.append((outcome, text, error))


@pytest.fixture
def relay():
    return StreamRelay(idle_timeout=0.2, poll_interval=0, metrics=ApplicationMetrics())


def _terminal_count(events):
    return sum(1 for event, _ in events if event in ("complete", "error"))


class TestFormatSSE:
    """Tests for frame encoding."""

    def test_untyped_frame(self):
        """Test data frames carry no event line."""
        assert format_sse({"delta": "hi"}) == 'data: {"delta": "hi"}\n\n'

    def test_non_ascii_is_kept(self):
        """Test text is written as UTF-8, not escaped."""
        assert "é" in format_sse({"delta": "café"})

    def test_headers_disable_buffering(self):
        """Proxies must not buffer the stream."""
        assert SSE_HEADERS["X-Accel-Buffering"] == "no"
        assert SSE_HEADERS["Cache-Control"] == "no-cache"


class TestRelayOrdering:
    """Tests for status, deltas and the terminal frame."""

    @pytest.mark.asyncio
    async def test_complete_stream(self, relay):
        """status, then one delta per chunk, then complete."""
        chunks = Chunks(["a", "", "b", "c"])
        finish = FinishRecorder()

        frames = [f async for f in relay.stream(chunks, model_id="gpt-4o", session_id="sift_1", on_finish=finish)]
        events = _events(frames)

        assert events[0] == ("status", {"stage": "started", "session_id": "sift_1"})
        assert events[1:4] == [(None, {"delta": "a"}), (None, {"delta": "b"}), (None, {"delta": "c"})]
        assert events[-1] == ("complete", {"message": "Stream finished"})
        assert _terminal_count(events) == 1
        assert finish.calls == [(StreamOutcome.COMPLETE, "abc", None)]
        assert chunks.closed

    @pytest.mark.asyncio
    async def test_provider_exception_ends_with_one_error(self, relay):
        """A provider failure mid-stream still ends with one terminal frame."""
        chunks = Chunks(["partial"], error=RuntimeError("connection reset"))
        finish = FinishRecorder()

        events = _events([f async for f in relay.stream(chunks, model_id="gpt-4o", on_finish=finish)])

        assert events[1] == (None, {"delta": "partial"})
        assert events[-1][0] == "error"
        assert events[-1][1]["type"] == "PROVIDER_ERROR"
        assert _terminal_count(events) == 1
        outcome, text, error = finish.calls[0]
        assert outcome == StreamOutcome.ERROR
        assert text == "partial"
        assert "connection reset" in error

    @pytest.mark.asyncio
    async def test_idle_timeout(self, relay):
        """A silent provider is cut off with a timeout error frame."""
        chunks = Chunks(["a"], stall_after=1)
        finish = FinishRecorder()

        events = _events([f async for f in relay.stream(chunks, model_id="gpt-4o", on_finish=finish)])

        assert events[-1][0] == "error"
        assert events[-1][1]["type"] == "PROVIDER_TIMEOUT"
        assert _terminal_count(events) == 1
        assert finish.calls[0][0] == StreamOutcome.TIMEOUT
        assert chunks.closed

    @pytest.mark.asyncio
    async def test_finish_callback_failure_is_contained(self, relay):
        """A failing callback does not change what the client received."""

        async def broken(outcome, text, error):
            raise RuntimeError("db down")

        events = _events([f async for f in relay.stream(Chunks(["x"]), model_id="m", on_finish=broken)])
        assert events[-1][0] == "complete"


class TestDisconnect:
    """Tests for consumer disconnect."""

    @pytest.mark.asyncio
    async def test_disconnect_stops_provider(self, relay):
        """Once the client is gone no more frames are written and the provider is closed."""
        chunks = Chunks(["a", "b", "c", "d"])
        finish = FinishRecorder()
        state = {"gone": False}

        async def is_disconnected():
            return state["gone"]

        frames = []
        async for frame in relay.stream(chunks, model_id="m", is_disconnected=is_disconnected, on_finish=finish):
            frames.append(frame)
            if len(frames) == 2:
                state["gone"] = True

        events = _events(frames)
        assert [e for e, _ in events] == ["status", None]
        assert _terminal_count(events) == 0
        assert chunks.closed
        assert chunks.index == 1
        assert finish.calls == [(StreamOutcome.DISCONNECTED, "a", "client_disconnected")]

    @pytest.mark.asyncio
    async def test_generator_closed_by_server(self, relay):
        """Closing the frame iterator early counts as a disconnect."""
        chunks = Chunks(["a", "b", "c"])
        finish = FinishRecorder()
        frames = relay.stream(chunks, model_id="m", on_finish=finish)

        await frames.__anext__()
        await frames.__anext__()
        await frames.aclose()

        assert chunks.closed
        assert finish.calls[0][0] == StreamOutcome.DISCONNECTED

    @pytest.mark.asyncio
    async def test_disconnect_is_not_a_provider_failure(self, relay):
        """Client disconnects do not trip the circuit breaker."""
        breaker = CircuitBreaker("provider_test", CircuitBreakerConfig(failure_threshold=1))
        frames = relay.stream(Chunks(["a", "b"]), model_id="m", breaker=breaker)

        await frames.__anext__()
        await frames.__anext__()
        await frames.aclose()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.stats.total_failures == 0

    @pytest.mark.asyncio
    async def test_detected_disconnect_records_no_outcome(self, relay):
        """A half-open trial whose client leaves neither closes nor re-opens the circuit."""
        breaker = CircuitBreaker("provider_test", CircuitBreakerConfig(failure_threshold=1, timeout=0))
        await breaker.record_failure(RuntimeError("boom"))
        assert breaker.state == CircuitState.HALF_OPEN
        state = {"gone": False}

        async def is_disconnected():
            return state["gone"]

        frames = []
        async for frame in relay.stream(
            Chunks(["a", "b", "c"]), model_id="m", is_disconnected=is_disconnected, breaker=breaker
        ):
            frames.append(frame)
            state["gone"] = True

        assert _terminal_count(_events(frames)) == 0
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.stats.total_successes == 0
        assert breaker.stats.total_failures == 1


class TestCircuitBreaker:
    """Tests for breaker integration."""

    @pytest.mark.asyncio
    async def test_failure_recorded_on_breaker(self, relay):
        """Provider failures count against the breaker."""
        breaker = CircuitBreaker("provider_test", CircuitBreakerConfig(failure_threshold=1))

        events = _events([
            f async for f in relay.stream(Chunks([], error=RuntimeError("boom")), model_id="m", breaker=breaker)
        ])

        assert events[-1][0] == "error"
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_open_circuit_yields_unavailable_error(self, relay):
        """With the circuit open the relay answers with one error frame."""
        breaker = CircuitBreaker("provider_anthropic", CircuitBreakerConfig(failure_threshold=1, timeout=60))
        await breaker.record_failure(RuntimeError("boom"))
        chunks = Chunks(["never"])

        events = _events([f async for f in relay.stream(chunks, model_id="m", breaker=breaker)])

        assert [e for e, _ in events] == ["status", "error"]
        assert events[-1][1]["type"] == "PROVIDER_UNAVAILABLE"
        assert "anthropic" in events[-1][1]["message"]
        assert chunks.index == 0
        assert chunks.closed

    @pytest.mark.asyncio
    async def test_success_recorded_on_breaker(self, relay):
        """Test completed streams count as successes."""
        breaker = CircuitBreaker("provider_test")
        [f async for f in relay.stream(Chunks(["a"]), model_id="m", breaker=breaker)]
        assert breaker.stats.total_successes == 1


class TestRelayMetrics:
    """Tests for metrics recorded by the relay."""

    @pytest.mark.asyncio
    async def test_metrics_recorded(self):
        """Test active streams return to zero and frames are counted."""
        metrics = ApplicationMetrics()
        relay = StreamRelay(idle_timeout=1, poll_interval=0, metrics=metrics)

        [f async for f in relay.stream(Chunks(["a", "b"]), model_id="gpt-4o", kind="chat")]

        assert metrics.streams_started.get(model="gpt-4o", kind="chat") == 1
        assert metrics.streams_finished.get(model="gpt-4o", outcome="complete") == 1
        assert metrics.active_streams.get() == 0
        assert metrics.frames_emitted.get(event="delta") == 2
        assert metrics.frames_emitted.get(event="complete") == 1
