"""
Session controller - the public lifecycle of one analysis conversation.

Composes the API client, the message store and stream consumers into
start, follow-up, stop, restart and reset. The controller owns at most one
open stream connection; replacing it always closes the old one first.

Session states:
    idle -> initiating -> streaming -> complete | stopped | errored
"""

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from siftstream.client.api_client import SiftApiClient
from siftstream.client.consumer import LineSource, StreamConsumer
from siftstream.client.frames import CompleteFrame, ErrorFrame, StatusFrame, StreamFrame
from siftstream.client.store import ChatMessage, MessageStateStore
from siftstream.core.enums import Messages, ReportType, SessionStatus
from siftstream.core.exceptions import AppError, MissingContentError
from siftstream.core.logging import get_logger
from siftstream.models.analysis import AnalysisRequest, ChatRequest, ParamValue

logger = get_logger(__name__)


@dataclass(frozen=True)
class AnalysisQuery:
    """What the user submitted; stored on the first user message for restart."""

    text: str = ""
    image_ref: Optional[str] = None
    report_type: str = ReportType.FULL_CHECK.value
    model_id: str = ""
    params: Dict[str, ParamValue] = field(default_factory=dict, hash=False)

    @property
    def has_content(self) -> bool:
        return bool(self.text.strip()) or bool((self.image_ref or "").strip())

    def to_request(self) -> AnalysisRequest:
        return AnalysisRequest(
            user_input_text=self.text.strip() or None,
            image_ref=self.image_ref or None,
            report_type=self.report_type,
            selected_model_id=self.model_id,
            model_config_params=dict(self.params),
        )


@dataclass
class PendingInput:
    """Input fields the user has not submitted yet."""

    text: str = ""
    image_ref: Optional[str] = None
    report_type: str = ReportType.FULL_CHECK.value
    follow_up_text: str = ""


class CancellationToken:
    """
    Out-of-band cancellation for one stream.

    Callbacks run once, on the first ``cancel()``. Registering after
    cancellation runs the callback immediately.
    """

    def __init__(self):
        self._cancelled = False
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def add_callback(self, callback: Callable[[], None]) -> None:
        if self._cancelled:
            callback()
        else:
            self._callbacks.append(callback)

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()


@dataclass
class StreamConnection:
    """The controller's one open stream: its consumer task and cancel token."""

    kind: str
    token: CancellationToken
    task: Optional[asyncio.Task] = None

    def close(self) -> None:
        self.token.cancel()
        if self.task is not None and not self.task.done():
            self.task.cancel()


@dataclass
class ActiveSession:
    query: AnalysisQuery
    origin_id: Optional[str] = None
    status: SessionStatus = SessionStatus.INITIATING
    session_id: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class SessionController:
    """
    Drives one conversation against the SIFT Stream API.

    Usage:
        controller = SessionController(api)
        await controller.start(AnalysisQuery(text="claim X", model_id="gpt-4o"))
        await controller.wait()
        await controller.follow_up("What are the sources?")
    """

    def __init__(
        self,
        api: SiftApiClient,
        store: Optional[MessageStateStore] = None,
        model_id: str = "",
        params: Optional[Dict[str, ParamValue]] = None,
    ):
        self.api = api
        self.store = store or MessageStateStore()
        self.model_id = model_id
        self.params: Dict[str, ParamValue] = dict(params or {})
        self.inputs = PendingInput()
        self.session: Optional[ActiveSession] = None
        self.error: Optional[str] = None
        self.stage: Optional[str] = None
        self._connection: Optional[StreamConnection] = None

    # ============ State ============

    @property
    def status(self) -> SessionStatus:
        return self.session.status if self.session else SessionStatus.IDLE

    @property
    def is_loading(self) -> bool:
        return self.store.active_id is not None

    @property
    def can_restart(self) -> bool:
        return self._origin() is not None

    def _origin(self) -> Optional[ChatMessage]:
        if self.session is None:
            return None
        return self.store.find_origin(self.session.origin_id)

    def _set_status(self, session: ActiveSession, status: SessionStatus) -> None:
        if session.status != status:
            logger.debug(f"Session {session.session_id or '-'}: {session.status.value} -> {status.value}")
            session.status = status

    # ============ Lifecycle ============

    async def start(self, query: AnalysisQuery) -> None:
        """
        Submit a new analysis.

        Raises:
            MissingContentError: query has neither text nor an image. Nothing
                is appended and no open stream is touched.
        """
        if not query.has_content:
            raise MissingContentError()

        if not query.model_id:
            query = replace(query, model_id=self.model_id, params=dict(query.params or self.params))

        self.stop()
        origin = self.store.append_user(
            query.text,
            original_query=query,
            model_id=query.model_id,
            image_ref=query.image_ref,
            report_type=query.report_type,
        )
        await self._begin(query, origin.id)

    async def _begin(self, query: AnalysisQuery, origin_id: str) -> None:
        self.store.begin_ai_message(model_id=query.model_id)
        session = ActiveSession(query=query, origin_id=origin_id)
        connection = StreamConnection(kind="analysis", token=CancellationToken())
        self.session = session
        self._connection = connection
        self.error = None
        self.stage = None

        try:
            handle = await self.api.initiate(query.to_request())
        except AppError as e:
            if self._connection is not connection:
                return
            self._connection = None
            logger.warning(f"Initiate failed: {e.message}")
            self.store.fail_active(e.message)
            self.error = e.message
            self._set_status(session, SessionStatus.ERRORED)
            return

        if self._connection is not connection:
            logger.info(f"Session {handle.session_id} was replaced before its stream opened")
            return

        session.session_id = handle.session_id
        self._set_status(session, SessionStatus.STREAMING)
        self._spawn(connection, session, self.api.open_stream(handle))

    async def follow_up(self, text: str, cancel_token: Optional[CancellationToken] = None) -> bool:
        """
        Ask a follow-up question about the current session.

        Does nothing (returns False) without a session, with empty text, or
        while another stream is loading. Cancelling ``cancel_token`` stops
        this follow-up the same way ``stop()`` does.
        """
        text = text.strip()
        session = self.session
        if session is None or self.is_loading or not text:
            return False

        history = self.store.history()
        self.store.append_user(text, model_id=session.query.model_id)
        self.store.begin_ai_message(model_id=session.query.model_id)
        self.inputs.follow_up_text = ""

        token = cancel_token or CancellationToken()
        connection = StreamConnection(kind="chat", token=token)
        self._connection = connection
        self.error = None
        self._set_status(session, SessionStatus.STREAMING)

        request = ChatRequest(
            new_user_message_text=text,
            chat_history=history,
            selected_model_id=session.query.model_id,
            model_config_params=dict(session.query.params),
            session_id=session.session_id,
        )
        self._spawn(connection, session, self.api.chat_stream(request))
        token.add_callback(lambda: self._cancel_connection(connection))
        return True

    def stop(self) -> None:
        """
        Stop whatever is streaming. Idempotent.

        Visible state changes first: loading messages get the stopped
        marker. The transport is closed after.
        """
        connection, self._connection = self._connection, None

        if any(m.is_loading for m in self.store.messages):
            self.store.stop_loading(Messages.STOPPED_SUFFIX)
            if self.session is not None and not self.session.status.is_terminal:
                self._set_status(self.session, SessionStatus.STOPPED)

        if connection is not None:
            connection.close()

    async def restart(self) -> bool:
        """
        Re-run the current session's query, dropping everything after it.

        Returns False and changes nothing when no query snapshot is stored.
        """
        origin = self._origin()
        if origin is None:
            return False

        connection, self._connection = self._connection, None
        if connection is not None:
            connection.close()

        self.store.truncate_through(origin.id)
        await self._begin(origin.original_query, origin.id)
        return True

    def reset(self, clear_inputs: bool = True) -> None:
        """Abort any stream and forget the conversation."""
        connection, self._connection = self._connection, None
        if connection is not None:
            connection.close()

        self.store.clear()
        self.session = None
        self.error = None
        self.stage = None
        if clear_inputs:
            self.inputs = PendingInput()

    def select_model(self, model_id: str, params: Optional[Dict[str, ParamValue]] = None) -> None:
        """Switch models. The conversation is reset but typed input is kept."""
        self.model_id = model_id
        self.params = dict(params or {})
        self.reset(clear_inputs=False)

    async def wait(self) -> None:
        """Wait for the open stream, if any, to finish."""
        connection = self._connection
        if connection is not None and connection.task is not None:
            await asyncio.wait({connection.task})

    # ============ Stream handling ============

    def _spawn(self, connection: StreamConnection, session: ActiveSession, source: LineSource) -> None:
        consumer = StreamConsumer(self.store, on_status=self._on_status)
        connection.task = asyncio.create_task(self._run(connection, session, consumer, source))

    async def _run(
        self,
        connection: StreamConnection,
        session: ActiveSession,
        consumer: StreamConsumer,
        source: LineSource,
    ) -> None:
        try:
            terminal = await consumer.consume(source)
        except asyncio.CancelledError:
            logger.debug(f"{connection.kind} stream cancelled")
            raise
        except Exception as e:
            logger.error(f"{connection.kind} stream failed: {e}", exc_info=True)
            terminal = ErrorFrame.transport()
            if self._connection is connection:
                self.store.fail_active(terminal.message)
        finally:
            if self._connection is connection:
                self._connection = None

        if connection.token.cancelled or self.session is not session:
            return
        self._finish(session, terminal)

    def _finish(self, session: ActiveSession, terminal: StreamFrame) -> None:
        if isinstance(terminal, CompleteFrame):
            self._set_status(session, SessionStatus.COMPLETE)
        elif isinstance(terminal, ErrorFrame):
            self.error = terminal.message
            self._set_status(session, SessionStatus.ERRORED)

    def _on_status(self, frame: StatusFrame) -> None:
        self.stage = frame.stage
        if frame.session_id and self.session is not None and self.session.session_id is None:
            self.session.session_id = frame.session_id

    def _cancel_connection(self, connection: StreamConnection) -> None:
        if self._connection is connection:
            self.stop()
