"""
Stream frames and the SSE wire decoder.

A stream is a sequence of ``event:``/``data:`` blocks separated by blank
lines. Each block decodes into one of a closed set of frame types.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterable, AsyncIterator, List, Optional, Union

from siftstream.core.enums import Messages, SSEEventType
from siftstream.core.exceptions import ParseError
from siftstream.core.logging import get_logger

logger = get_logger(__name__)


class ErrorSource(str, Enum):
    """Where a terminal error came from."""

    APPLICATION = "application"  # error frame sent by the server
    TRANSPORT = "transport"  # connection failed or ended early


@dataclass(frozen=True)
class StatusFrame:
    stage: str
    message: Optional[str] = None
    session_id: Optional[str] = None


@dataclass(frozen=True)
class DeltaFrame:
    delta: str


@dataclass(frozen=True)
class SnapshotFrame:
    text: str


@dataclass(frozen=True)
class CompleteFrame:
    message: Optional[str] = None


@dataclass(frozen=True)
class ErrorFrame:
    message: str
    source: ErrorSource = ErrorSource.APPLICATION
    error_type: Optional[str] = None

    @classmethod
    def transport(cls, error_type: Optional[str] = None) -> "ErrorFrame":
        return cls(message=Messages.TRANSPORT_ERROR, source=ErrorSource.TRANSPORT, error_type=error_type)


StreamFrame = Union[StatusFrame, DeltaFrame, SnapshotFrame, CompleteFrame, ErrorFrame]

TERMINAL_FRAMES = (CompleteFrame, ErrorFrame)


def is_terminal(frame: StreamFrame) -> bool:
    return isinstance(frame, TERMINAL_FRAMES)


# ============ SSE Parsing ============


@dataclass
class SSEEvent:
    """One raw server-sent event."""

    event: Optional[str] = None
    data_lines: List[str] = field(default_factory=list)

    @property
    def data(self) -> str:
        return "\n".join(self.data_lines)


async def iter_sse_events(lines: AsyncIterable[str]) -> AsyncIterator[SSEEvent]:
    """
    Group SSE lines into events.

    Comment lines (``:``) and unknown fields are skipped. A trailing event
    without its closing blank line is dropped, as browsers do.
    """
    current = SSEEvent()
    async for raw in lines:
        line = raw.rstrip("\r\n")
        if not line:
            if current.event is not None or current.data_lines:
                yield current
            current = SSEEvent()
            continue
        if line.startswith(":"):
            continue

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            current.event = value
        elif name == "data":
            current.data_lines.append(value)


def _load_object(data: str) -> dict:
    try:
        payload = json.loads(data)
    except (json.JSONDecodeError, TypeError) as e:
        raise ParseError(f"Frame payload is not JSON: {e}", details={"data": data[:200]})
    if not isinstance(payload, dict):
        raise ParseError("Frame payload is not an object", details={"data": data[:200]})
    return payload


def _optional_str(payload: dict, key: str) -> Optional[str]:
    value = payload.get(key)
    return value if isinstance(value, str) else None


def decode_frame(event: SSEEvent) -> StreamFrame:
    """
    Decode one SSE event into a frame.

    Raises:
        ParseError: malformed payload or unknown event type. ``complete`` and
            ``error`` events never raise: their payloads are optional.
    """
    kind = event.event or "message"

    if kind == SSEEventType.COMPLETE.value:
        message = None
        if event.data.strip():
            try:
                message = _optional_str(_load_object(event.data), "message")
            except ParseError:
                logger.debug("Ignoring unreadable complete payload")
        return CompleteFrame(message=message)

    if kind == SSEEventType.ERROR.value:
        try:
            payload = _load_object(event.data)
            message = _optional_str(payload, "message") or _optional_str(payload, "error")
            error_type = _optional_str(payload, "type")
        except ParseError:
            message, error_type = None, None
        return ErrorFrame(message=message or Messages.BACKEND_ERROR, error_type=error_type)

    if kind == SSEEventType.STATUS.value:
        payload = _load_object(event.data)
        stage = _optional_str(payload, "stage")
        if stage is None:
            raise ParseError("Status frame without a stage")
        return StatusFrame(
            stage=stage,
            message=_optional_str(payload, "message"),
            session_id=_optional_str(payload, "session_id"),
        )

    if kind in ("message", SSEEventType.DELTA.value, SSEEventType.SNAPSHOT.value):
        payload = _load_object(event.data)
        if "text_chunk" in payload:
            text = payload["text_chunk"]
            if not isinstance(text, str):
                raise ParseError("text_chunk is not a string")
            return SnapshotFrame(text=text)
        if "delta" in payload:
            delta = payload["delta"]
            if not isinstance(delta, str):
                raise ParseError("delta is not a string")
            return DeltaFrame(delta=delta)
        raise ParseError("Data frame has neither delta nor text_chunk", details={"keys": sorted(payload)})

    raise ParseError(f"Unknown event type: {kind}")


def encode_frame(frame: StreamFrame) -> str:
    """Encode a frame in the wire format the server writes."""
    if isinstance(frame, StatusFrame):
        payload = {"stage": frame.stage}
        if frame.message is not None:
            payload["message"] = frame.message
        if frame.session_id is not None:
            payload["session_id"] = frame.session_id
        return f"event: status\ndata: {json.dumps(payload)}\n\n"
    if isinstance(frame, DeltaFrame):
        return f"data: {json.dumps({'delta': frame.delta})}\n\n"
    if isinstance(frame, SnapshotFrame):
        return f"data: {json.dumps({'text_chunk': frame.text})}\n\n"
    if isinstance(frame, CompleteFrame):
        return f"event: complete\ndata: {json.dumps({'message': frame.message} if frame.message else {})}\n\n"
    payload = {"message": frame.message}
    if frame.error_type:
        payload["type"] = frame.error_type
    return f"event: error\ndata: {json.dumps(payload)}\n\n"
