"""
Stream relay - turns a provider's text chunks into SSE frames.

Every invocation yields zero or more ``status`` frames, zero or more
``delta`` frames, then exactly one terminal frame (``complete`` or
``error``), unless the consumer disconnects, in which case nothing more is
written. Frames are yielded one at a time; the ASGI server flushes each.
"""

import asyncio
import json
import time
from contextlib import nullcontext
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from siftstream.core.config import settings
from siftstream.core.enums import Messages, SSEEventType, StreamOutcome, StreamStage
from siftstream.core.exceptions import AppError, ProviderError, ProviderTimeoutError, ProviderUnavailableError
from siftstream.core.logging import get_logger, model_id_var, perf_logger, session_id_var
from siftstream.core.metrics import ApplicationMetrics, get_metrics
from siftstream.services.circuit_breaker import CircuitBreaker, CircuitOpenError, StreamAbandoned

logger = get_logger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

DisconnectCheck = Callable[[], Awaitable[bool]]
FinishCallback = Callable[[StreamOutcome, str, Optional[str]], Awaitable[None]]


def format_sse(data: Dict[str, Any], event: Optional[SSEEventType] = None) -> str:
    """Encode one SSE frame. Untyped frames carry no ``event:`` line."""
    payload = json.dumps(data, ensure_ascii=False)
    if event is None:
        return f"data: {payload}\n\n"
    return f"event: {event.value}\ndata: {payload}\n\n"


class StreamRelay:
    """
    Relays one provider call to one SSE consumer.

    Usage:
        relay = StreamRelay()
        frames = relay.stream(chunks, model_id="gpt-4o", is_disconnected=request.is_disconnected)
        return StreamingResponse(frames, media_type="text/event-stream", headers=SSE_HEADERS)
    """

    def __init__(
        self,
        idle_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        metrics: Optional[ApplicationMetrics] = None,
    ):
        self.idle_timeout = idle_timeout if idle_timeout is not None else settings.provider_idle_timeout_seconds
        self.poll_interval = poll_interval if poll_interval is not None else settings.disconnect_poll_interval_seconds
        self.metrics = metrics or get_metrics()

    def _frame(self, data: Dict[str, Any], event: Optional[SSEEventType] = None) -> str:
        self.metrics.record_frame(event.value if event else SSEEventType.DELTA.value)
        return format_sse(data, event)

    def _error_frame(self, error: AppError) -> str:
        return self._frame({"message": error.message, "type": error.code.value}, SSEEventType.ERROR)

    async def stream(
        self,
        chunks: AsyncIterator[str],
        model_id: str,
        kind: str = "analysis",
        session_id: Optional[str] = None,
        is_disconnected: Optional[DisconnectCheck] = None,
        breaker: Optional[CircuitBreaker] = None,
        on_finish: Optional[FinishCallback] = None,
    ) -> AsyncIterator[str]:
        """
        Yield encoded SSE frames for one provider call.

        Args:
            chunks: Provider text chunks; closed with ``aclose()`` when the relay ends
            model_id: Model serving the call (for logs and metrics)
            kind: "analysis" or "chat"
            session_id: Announced in the opening status frame when given
            is_disconnected: Polled between chunks; True stops the relay silently
            breaker: Circuit breaker that records the provider call's outcome
            on_finish: Awaited once with (outcome, collected text, error message)
        """
        if session_id:
            session_id_var.set(session_id[:8] + "...")
        model_id_var.set(model_id)

        start = time.perf_counter()
        first_chunk_at: Optional[float] = None
        last_poll = start
        frames = 0
        collected = []
        outcome: Optional[StreamOutcome] = None
        error_message: Optional[str] = None
        iterator = chunks.__aiter__()

        self.metrics.record_stream_started(model_id, kind)
        logger.info("Relay started", extra={"kind": kind})

        try:
            status: Dict[str, Any] = {"stage": StreamStage.STARTED.value}
            if session_id:
                status["session_id"] = session_id
            frames += 1
            yield self._frame(status, SSEEventType.STATUS)

            try:
                async with breaker or nullcontext():
                    while True:
                        now = time.perf_counter()
                        if is_disconnected is not None and now - last_poll >= self.poll_interval:
                            last_poll = now
                            if await is_disconnected():
                                outcome = StreamOutcome.DISCONNECTED
                                raise StreamAbandoned()

                        try:
                            chunk = await asyncio.wait_for(iterator.__anext__(), timeout=self.idle_timeout)
                        except StopAsyncIteration:
                            break
                        except asyncio.TimeoutError:
                            raise ProviderTimeoutError(self.idle_timeout)

                        if not chunk:
                            continue
                        if first_chunk_at is None:
                            first_chunk_at = time.perf_counter()
                            self.metrics.record_first_chunk(model_id, first_chunk_at - start)

                        collected.append(chunk)
                        frames += 1
                        yield self._frame({"delta": chunk})

            except StreamAbandoned:
                pass
            except CircuitOpenError as e:
                outcome = StreamOutcome.ERROR
                error = ProviderUnavailableError(breaker.name.removeprefix("provider_"), "circuit open")
                error_message = str(e)
                logger.warning(f"Provider circuit open: {e}")
                frames += 1
                yield self._error_frame(error)
            except ProviderTimeoutError as e:
                outcome = StreamOutcome.TIMEOUT
                error_message = e.message
                logger.warning(f"Provider idle for {self.idle_timeout}s, ending stream")
                self.metrics.record_error("ProviderTimeoutError", "relay")
                frames += 1
                yield self._error_frame(e)
            except Exception as e:
                outcome = StreamOutcome.ERROR
                error = e if isinstance(e, AppError) else ProviderError(str(e))
                error_message = str(e) or type(e).__name__
                logger.error(f"Provider stream failed: {error_message}", exc_info=True)
                self.metrics.record_error(type(e).__name__, "relay")
                frames += 1
                yield self._error_frame(error)
            else:
                if outcome is None:
                    outcome = StreamOutcome.COMPLETE
                    frames += 1
                    yield self._frame({"message": Messages.STREAM_FINISHED}, SSEEventType.COMPLETE)

        except (asyncio.CancelledError, GeneratorExit):
            outcome = outcome or StreamOutcome.DISCONNECTED
            raise
        finally:
            await self._close_provider(iterator)
            outcome = outcome or StreamOutcome.DISCONNECTED
            if outcome == StreamOutcome.DISCONNECTED:
                error_message = "client_disconnected"
            duration = time.perf_counter() - start
            text = "".join(collected)

            self.metrics.record_stream_finished(model_id, outcome.value, duration)
            perf_logger.log_stream(
                model=model_id,
                outcome=outcome.value,
                frames=frames,
                chars=len(text),
                first_chunk_ms=(first_chunk_at - start) * 1000 if first_chunk_at is not None else None,
                duration_ms=duration * 1000,
            )

            if on_finish is not None:
                try:
                    await on_finish(outcome, text, error_message)
                except Exception as e:
                    logger.error(f"Stream finish callback failed: {e}")

    @staticmethod
    async def _close_provider(iterator: AsyncIterator[str]) -> None:
        aclose = getattr(iterator, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.warning(f"Error closing provider stream: {e}")


# Global relay instance
stream_relay = StreamRelay()
