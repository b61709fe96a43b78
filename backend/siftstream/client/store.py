"""
Conversation message state.

The state is an immutable snapshot: the ordered messages plus the id of
the single active (loading) AI message. Stream frames change it only
through ``reduce_frame``; lifecycle operations use the helper functions
below. ``MessageStateStore`` holds the current snapshot and notifies
listeners after every change.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Tuple

from siftstream.core.enums import Sender
from siftstream.core.logging import get_logger
from siftstream.client.frames import (
    CompleteFrame,
    DeltaFrame,
    ErrorFrame,
    SnapshotFrame,
    StatusFrame,
    StreamFrame,
)
from siftstream.models.analysis import HistoryMessage

logger = get_logger(__name__)


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ChatMessage:
    """One message in the client conversation."""

    sender: Sender
    text: str = ""
    id: str = field(default_factory=_new_id)
    timestamp: datetime = field(default_factory=_now)
    is_loading: bool = False
    is_error: bool = False
    original_query: Optional[Any] = None  # query snapshot on the first user message, for restart
    model_id: Optional[str] = None
    image_ref: Optional[str] = None
    report_type: Optional[str] = None


@dataclass(frozen=True)
class MessageState:
    """Messages plus the id of the one loading AI message, if any."""

    messages: Tuple[ChatMessage, ...] = ()
    active_id: Optional[str] = None

    @property
    def active(self) -> Optional[ChatMessage]:
        if self.active_id is None:
            return None
        return next((m for m in self.messages if m.id == self.active_id), None)

    @property
    def is_loading(self) -> bool:
        return self.active_id is not None


class InvariantViolation(RuntimeError):
    """Raised when an operation would create a second loading message."""


def _update(state: MessageState, message_id: str, **changes) -> Tuple[ChatMessage, ...]:
    return tuple(replace(m, **changes) if m.id == message_id else m for m in state.messages)


# ============ Reducer ============


def reduce_frame(state: MessageState, frame: StreamFrame) -> MessageState:
    """
    Apply one stream frame to the active message.

    Pure: returns a new state and never mutates its input. Frames arriving
    with no active message leave the state unchanged.
    """
    active = state.active
    if active is None:
        return state

    if isinstance(frame, StatusFrame):
        return state
    if isinstance(frame, DeltaFrame):
        return replace(state, messages=_update(state, active.id, text=active.text + frame.delta))
    if isinstance(frame, SnapshotFrame):
        return replace(state, messages=_update(state, active.id, text=frame.text))
    if isinstance(frame, CompleteFrame):
        return MessageState(messages=_update(state, active.id, is_loading=False), active_id=None)
    if isinstance(frame, ErrorFrame):
        return MessageState(
            messages=_update(state, active.id, is_loading=False, is_error=True, text=frame.message),
            active_id=None,
        )
    raise TypeError(f"Unknown frame type: {type(frame).__name__}")


# ============ Lifecycle transitions ============


def append_message(state: MessageState, message: ChatMessage) -> MessageState:
    """
    Append a message; a loading message becomes the active one.

    Nothing can be appended while a message is loading, so the active
    message is always the last one.
    """
    if state.active_id is not None:
        raise InvariantViolation("A loading message already exists")
    if message.is_loading:
        if message.sender is not Sender.AI:
            raise InvariantViolation("Only AI messages can be loading")
        return MessageState(messages=state.messages + (message,), active_id=message.id)
    return replace(state, messages=state.messages + (message,))


def stop_loading(state: MessageState, suffix: str) -> MessageState:
    """Resolve every loading message as stopped by appending ``suffix``."""
    messages = tuple(
        replace(m, text=m.text + suffix, is_loading=False, is_error=False) if m.is_loading else m
        for m in state.messages
    )
    return MessageState(messages=messages, active_id=None)


def fail_active(state: MessageState, text: str) -> MessageState:
    """Resolve the active message as an error with ``text``."""
    if state.active_id is None:
        return state
    return MessageState(
        messages=_update(state, state.active_id, is_loading=False, is_error=True, text=text),
        active_id=None,
    )


def truncate_through(state: MessageState, message_id: str) -> MessageState:
    """Keep messages up to and including ``message_id``."""
    for index, message in enumerate(state.messages):
        if message.id == message_id:
            kept = state.messages[: index + 1]
            active = state.active_id if any(m.id == state.active_id for m in kept) else None
            return MessageState(messages=kept, active_id=active)
    return MessageState()


# ============ Store ============


Listener = Callable[[MessageState], None]


class MessageStateStore:
    """
    Holds the current MessageState and notifies listeners on change.

    Usage:
        store = MessageStateStore()
        unsubscribe = store.subscribe(lambda state: render(state.messages))
    """

    def __init__(self, state: Optional[MessageState] = None):
        self._state = state or MessageState()
        self._listeners: List[Listener] = []

    @property
    def state(self) -> MessageState:
        return self._state

    @property
    def messages(self) -> Tuple[ChatMessage, ...]:
        return self._state.messages

    @property
    def active_id(self) -> Optional[str]:
        return self._state.active_id

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set(self, state: MessageState) -> None:
        if state is self._state:
            return
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as e:
                logger.error(f"Message listener failed: {e}", exc_info=True)

    def dispatch(self, frame: StreamFrame) -> None:
        """Apply one frame through the reducer."""
        self._set(reduce_frame(self._state, frame))

    def append_user(self, text: str, original_query: Optional[Any] = None, **fields) -> ChatMessage:
        message = ChatMessage(sender=Sender.USER, text=text, original_query=original_query, **fields)
        self._set(append_message(self._state, message))
        return message

    def begin_ai_message(self, model_id: Optional[str] = None) -> ChatMessage:
        """Append the loading AI placeholder and make it the active message."""
        message = ChatMessage(sender=Sender.AI, is_loading=True, model_id=model_id)
        self._set(append_message(self._state, message))
        return message

    def stop_loading(self, suffix: str) -> None:
        self._set(stop_loading(self._state, suffix))

    def fail_active(self, text: str) -> None:
        self._set(fail_active(self._state, text))

    def truncate_through(self, message_id: str) -> None:
        self._set(truncate_through(self._state, message_id))

    def clear(self) -> None:
        self._set(MessageState())

    def find_origin(self, message_id: Optional[str]) -> Optional[ChatMessage]:
        """The user message ``message_id`` if it still carries a query snapshot."""
        return next(
            (
                m
                for m in self._state.messages
                if m.id == message_id and m.sender is Sender.USER and m.original_query is not None
            ),
            None,
        )

    def history(self) -> List[HistoryMessage]:
        """Settled messages as chat history, skipping loading and error messages."""
        return [
            HistoryMessage(role=m.sender.to_role(), content=m.text)
            for m in self._state.messages
            if not m.is_loading and not m.is_error and m.text
        ]
