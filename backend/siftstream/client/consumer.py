"""
Stream consumer - applies one stream's frames to the message store.

A consumer subscribes exactly once. It stops at the first terminal frame,
closes the transport and never retries. A refused request shows the
server's message; any other delivery failure becomes the generic
transport error on the active message.
"""

from typing import AsyncContextManager, AsyncIterable, Callable, Optional

from siftstream.core.exceptions import (
    AppError,
    ApplicationError,
    ParseError,
    StreamHandleConsumedError,
    TransportError,
)
from siftstream.core.logging import get_logger
from siftstream.client.frames import (
    ErrorFrame,
    ErrorSource,
    StatusFrame,
    StreamFrame,
    decode_frame,
    is_terminal,
    iter_sse_events,
)
from siftstream.client.store import MessageStateStore

logger = get_logger(__name__)

LineSource = AsyncContextManager[AsyncIterable[str]]


class StreamConsumer:
    """
    Owns one stream subscription.

    Usage:
        consumer = StreamConsumer(store, on_status=remember_session)
        terminal = await consumer.consume(api.open_stream(handle))
    """

    def __init__(
        self,
        store: MessageStateStore,
        on_status: Optional[Callable[[StatusFrame], None]] = None,
    ):
        self.store = store
        self.on_status = on_status
        self.terminal: Optional[StreamFrame] = None
        self.last_error: Optional[AppError] = None
        self.frames_applied = 0
        self.frames_discarded = 0
        self._subscribed = False

    async def consume(self, source: LineSource) -> StreamFrame:
        """
        Read frames from ``source`` until a terminal frame or a failure.

        Returns the terminal frame that resolved the active message. Leaving
        the ``source`` context closes the transport.

        Raises:
            StreamHandleConsumedError: this consumer already subscribed once
        """
        if self._subscribed:
            raise StreamHandleConsumedError(details={"reason": "consumer already subscribed"})
        self._subscribed = True

        try:
            async with source as lines:
                async for event in iter_sse_events(lines):
                    try:
                        frame = decode_frame(event)
                    except ParseError as e:
                        logger.warning(f"Skipping malformed frame: {e.message}", extra=e.details)
                        continue

                    if self._apply(frame):
                        return frame
        except TransportError as e:
            logger.warning(f"Stream transport failed: {e.message}")
            self.last_error = e
            if e.details.get("status_code") is not None:
                # The server refused the stream with its own message
                return self._resolve(
                    ErrorFrame(
                        message=e.message,
                        source=ErrorSource.TRANSPORT,
                        error_type=e.details.get("code") or e.code.value,
                    )
                )
            return self._resolve(ErrorFrame.transport(error_type=e.code.value))

        logger.warning("Stream ended without a terminal frame")
        self.last_error = TransportError("Stream ended before completion")
        return self._resolve(ErrorFrame.transport(error_type=self.last_error.code.value))

    def _apply(self, frame: StreamFrame) -> bool:
        """Dispatch one frame; True once the stream is finished."""
        if self.store.active_id is None:
            self.frames_discarded += 1
            logger.warning(f"No active message, discarding {type(frame).__name__}")
            if is_terminal(frame):
                self.terminal = frame
                return True
            return False

        if isinstance(frame, StatusFrame) and self.on_status is not None:
            self.on_status(frame)

        self.store.dispatch(frame)
        self.frames_applied += 1

        if is_terminal(frame):
            self.terminal = frame
            if isinstance(frame, ErrorFrame):
                logger.warning(f"Stream ended with error: {frame.message}")
                self.last_error = ApplicationError(frame.message, details={"type": frame.error_type})
            return True
        return False

    def _resolve(self, frame: ErrorFrame) -> ErrorFrame:
        self.terminal = frame
        self.store.dispatch(frame)
        return frame
