"""
Analysis gateway - creates sessions and hands out single-use stream handles.

``initiate`` validates a request and records a session; the stream itself
is produced later when the returned handle is opened with ``open_stream``.
``chat`` skips the handle: its response body is the stream.
"""

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from siftstream.core.config import settings
from siftstream.core.enums import MessageRole, ReportType, SessionStatus, StreamOutcome
from siftstream.core.exceptions import (
    DatabaseError,
    GatewayError,
    InvalidReportTypeError,
    MissingContentError,
    ProviderUnavailableError,
    SessionNotFoundError,
    StreamHandleConsumedError,
    StreamHandleNotFoundError,
    ValidationError,
)
from siftstream.core.logging import get_logger, log_execution_time
from siftstream.core.metrics import get_metrics
from siftstream.core.security import generate_session_id, generate_stream_token, is_allowed_image_ref
from siftstream.models.analysis import AnalysisRequest, ChatRequest, HistoryMessage, InitiateResponse, SessionInfo
from siftstream.models.catalog import ModelConfig
from siftstream.services.circuit_breaker import CircuitBreaker, get_provider_breaker
from siftstream.services.model_catalog import ModelCatalog, model_catalog
from siftstream.services.persistence_service import PersistenceService, persistence_service
from siftstream.services.prompt_service import PromptService, prompt_service
from siftstream.services.providers import PromptMessage, ProviderRegistry, provider_registry
from siftstream.services.stream_relay import DisconnectCheck, StreamRelay, stream_relay

logger = get_logger(__name__)

MAX_TRACKED_SESSIONS = 10000


@dataclass
class AnalysisSession:
    """Server-side view of one analysis session."""

    session_id: str
    request: AnalysisRequest
    model: ModelConfig
    params: Dict[str, Any]
    status: SessionStatus = SessionStatus.INITIATING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    report: Optional[str] = None
    error: Optional[str] = None
    follow_up_status: Optional[SessionStatus] = None
    follow_up_error: Optional[str] = None


@dataclass
class StreamHandle:
    """Capability to open exactly one relay invocation."""

    token: str
    session_id: str
    expires_at: datetime
    consumed: bool = False


class AnalysisGateway:
    """
    Validates analysis requests and binds each session to one stream.

    Usage:
        handle = await analysis_gateway.initiate(request)
        frames = await analysis_gateway.open_stream(token, request.is_disconnected)
    """

    def __init__(
        self,
        catalog: Optional[ModelCatalog] = None,
        providers: Optional[ProviderRegistry] = None,
        relay: Optional[StreamRelay] = None,
        persistence: Optional[PersistenceService] = None,
        prompts: Optional[PromptService] = None,
        handle_ttl_seconds: Optional[float] = None,
    ):
        self.catalog = catalog or model_catalog
        self.providers = providers or provider_registry
        self.relay = relay or stream_relay
        self.persistence = persistence or persistence_service
        self.prompts = prompts or prompt_service
        self.handle_ttl = timedelta(
            seconds=handle_ttl_seconds if handle_ttl_seconds is not None else settings.stream_handle_ttl_seconds
        )
        self._sessions: "OrderedDict[str, AnalysisSession]" = OrderedDict()
        self._handles: Dict[str, StreamHandle] = {}
        self._lock = asyncio.Lock()
        self._metrics = get_metrics()

    # ============ Validation ============

    def _validate_model(self, model_id: str, params: Dict[str, Any]) -> tuple:
        model = self.catalog.get(model_id)
        return model, self.catalog.validate_params(model, params)

    def _check_provider(self, model: ModelConfig) -> CircuitBreaker:
        """Raise ProviderUnavailableError unless the model's provider can take a call."""
        if not self.providers.is_configured(model.provider):
            raise ProviderUnavailableError(model.provider.value, "API key not configured")
        breaker = get_provider_breaker(model.provider.value)
        if not breaker.is_available():
            raise ProviderUnavailableError(
                model.provider.value,
                f"too many recent failures, retry in {breaker.seconds_until_retry():.0f}s",
            )
        return breaker

    def _validate_analysis(self, request: AnalysisRequest) -> tuple:
        if not request.has_content:
            raise MissingContentError()
        if not ReportType.is_valid(request.report_type):
            raise InvalidReportTypeError(request.report_type)
        if request.user_input_text and len(request.user_input_text) > settings.max_input_length:
            raise ValidationError(
                message=f"Input is too long (max {settings.max_input_length} characters)",
                details={"length": len(request.user_input_text)},
            )

        model, params = self._validate_model(request.selected_model_id, request.model_config_params)

        if request.image_ref:
            if not is_allowed_image_ref(request.image_ref):
                raise ValidationError(message="Image must be an http(s) URL or a data:image URL")
            if not model.supports_vision:
                raise ValidationError(
                    message=f"{model.name} cannot analyze images",
                    details={"model_id": model.id},
                )
        return model, params

    # ============ Initiate / Open ============

    @log_execution_time(operation="initiate_analysis")
    async def initiate(self, request: AnalysisRequest) -> InitiateResponse:
        """
        Create a session and return its single-use stream handle.

        Raises:
            ValidationError: request rejected; nothing was recorded
            GatewayError: session could not be created
        """
        model, params = self._validate_analysis(request)
        self._check_provider(model)

        session = AnalysisSession(
            session_id=generate_session_id("sift_"),
            request=request,
            model=model,
            params=params,
        )

        try:
            await self.persistence.create_session(
                session_id=session.session_id,
                report_type=request.report_type,
                model_id=model.id,
                user_input_text=request.user_input_text,
                image_ref=request.image_ref,
            )
        except DatabaseError as e:
            raise GatewayError(details={"reason": "persistence", **e.details}) from e

        handle = StreamHandle(
            token=generate_stream_token(),
            session_id=session.session_id,
            expires_at=datetime.now(timezone.utc) + self.handle_ttl,
        )

        async with self._lock:
            self._purge_expired()
            self._remember(session)
            self._handles[handle.token] = handle

        self._metrics.record_session_initiated(model.id, request.report_type)
        logger.info(
            "Analysis session created",
            extra={"session": session.session_id[:8] + "...", "model": model.id, "report_type": request.report_type},
        )

        return InitiateResponse(
            session_id=session.session_id,
            stream_url=f"/api/sift/stream/{handle.token}",
            expires_at=handle.expires_at,
        )

    async def open_stream(
        self,
        token: str,
        is_disconnected: Optional[DisconnectCheck] = None,
    ) -> AsyncIterator[str]:
        """
        Consume a stream handle and return the relay's frame iterator.

        Exactly one caller can consume a handle. Unknown handles raise
        StreamHandleNotFoundError; consumed or expired ones raise
        StreamHandleConsumedError.
        """
        async with self._lock:
            handle = self._handles.get(token)
            if handle is None:
                self._metrics.record_handle_rejected("unknown")
                raise StreamHandleNotFoundError()
            if handle.consumed:
                self._metrics.record_handle_rejected("consumed")
                raise StreamHandleConsumedError()
            if datetime.now(timezone.utc) >= handle.expires_at:
                handle.consumed = True
                self._metrics.record_handle_rejected("expired")
                raise StreamHandleConsumedError(details={"reason": "expired"})

            session = self._sessions.get(handle.session_id)
            if session is None:
                handle.consumed = True
                raise SessionNotFoundError(handle.session_id)

            provider = self.providers.get(session.model.provider)
            handle.consumed = True
            session.status = SessionStatus.STREAMING

        request = session.request
        messages = [
            PromptMessage(
                role=MessageRole.USER,
                text=self.prompts.build_report_request(
                    ReportType(request.report_type), request.user_input_text, has_image=bool(request.image_ref)
                ),
                image_ref=request.image_ref,
            )
        ]
        chunks = provider.stream_text(session.model.id, self.prompts.get_system_prompt(), messages, session.params)

        return self.relay.stream(
            chunks,
            model_id=session.model.id,
            kind="analysis",
            session_id=session.session_id,
            is_disconnected=is_disconnected,
            breaker=get_provider_breaker(session.model.provider.value),
            on_finish=self._analysis_finished(session),
        )

    def _analysis_finished(self, session: AnalysisSession):
        async def on_finish(outcome: StreamOutcome, text: str, error: Optional[str]) -> None:
            if outcome == StreamOutcome.COMPLETE:
                session.status = SessionStatus.COMPLETE
                session.report = text
            else:
                # Server side a disconnect is an error; "stopped" exists only on the client
                session.status = SessionStatus.ERRORED
                session.error = error
                session.report = text or None
            await self.persistence.update_status(session.session_id, session.status, report=session.report, error=error)

        return on_finish

    # ============ Chat ============

    async def chat(
        self,
        request: ChatRequest,
        is_disconnected: Optional[DisconnectCheck] = None,
    ) -> AsyncIterator[str]:
        """
        Validate a follow-up and return the relay's frame iterator.

        Raises before any frame is produced when the request is invalid, the
        named session is unknown or the provider is unavailable.
        """
        if not request.new_user_message_text:
            raise ValidationError(message="Please enter a message.")
        if len(request.new_user_message_text) > settings.max_input_length:
            raise ValidationError(message=f"Message is too long (max {settings.max_input_length} characters)")
        if len(request.chat_history) > settings.max_history_messages:
            raise ValidationError(
                message=f"Conversation is too long (max {settings.max_history_messages} messages)",
                details={"messages": len(request.chat_history)},
            )

        model, params = self._validate_model(request.selected_model_id, request.model_config_params)

        session: Optional[AnalysisSession] = None
        if request.session_id:
            session = self._sessions.get(request.session_id)
            if session is None and await self.persistence.get_session(request.session_id) is None:
                raise SessionNotFoundError(request.session_id)

        breaker = self._check_provider(model)
        provider = self.providers.get(model.provider)

        messages = [PromptMessage(role=m.role, text=m.content) for m in request.chat_history]
        messages.append(PromptMessage(role=MessageRole.USER, text=request.new_user_message_text))
        chunks = provider.stream_text(
            model.id, self.prompts.get_system_prompt(request.system_instruction_override), messages, params
        )

        if session is not None:
            session.follow_up_status = SessionStatus.STREAMING
            session.follow_up_error = None

        return self.relay.stream(
            chunks,
            model_id=model.id,
            kind="chat",
            session_id=request.session_id,
            is_disconnected=is_disconnected,
            breaker=breaker,
            on_finish=self._chat_finished(request, model, session),
        )

    def _chat_finished(self, request: ChatRequest, model: ModelConfig, session: Optional[AnalysisSession]):
        async def on_finish(outcome: StreamOutcome, text: str, error: Optional[str]) -> None:
            # The analysis keeps its own status; only the follow-up is tracked here
            if session is not None:
                if outcome == StreamOutcome.COMPLETE:
                    session.follow_up_status = SessionStatus.COMPLETE
                else:
                    session.follow_up_status = SessionStatus.ERRORED
                    session.follow_up_error = error
            if request.session_id and outcome == StreamOutcome.COMPLETE:
                await self.persistence.add_exchange(request.session_id, request.new_user_message_text, text, model.id)

        return on_finish

    # ============ Sessions ============

    async def get_session_info(self, session_id: str) -> SessionInfo:
        """Status and report of a session, from memory or the database."""
        record = await self.persistence.get_session(session_id)
        stored = await self.persistence.get_messages(session_id) if record is not None else []
        history: List[HistoryMessage] = [HistoryMessage(role=m.role, content=m.content) for m in stored]

        session = self._sessions.get(session_id)
        if session is not None:
            return SessionInfo(
                session_id=session.session_id,
                status=session.status,
                report_type=session.request.report_type,
                model_id=session.model.id,
                created_at=session.created_at,
                user_input_text=session.request.user_input_text,
                image_ref=session.request.image_ref,
                report=session.report,
                error=session.error,
                follow_up_status=session.follow_up_status,
                follow_up_error=session.follow_up_error,
                messages=history,
            )
        if record is None:
            raise SessionNotFoundError(session_id)
        return SessionInfo.from_record(record, history)

    def get_stats(self) -> Dict[str, int]:
        """Counts for the detailed health check."""
        now = datetime.now(timezone.utc)
        return {
            "tracked_sessions": len(self._sessions),
            "streaming_sessions": sum(
                1
                for s in self._sessions.values()
                if SessionStatus.STREAMING in (s.status, s.follow_up_status)
            ),
            "open_handles": sum(1 for h in self._handles.values() if not h.consumed and h.expires_at > now),
        }

    def _remember(self, session: AnalysisSession) -> None:
        self._sessions[session.session_id] = session
        while len(self._sessions) > MAX_TRACKED_SESSIONS:
            self._sessions.popitem(last=False)

    def _purge_expired(self) -> None:
        # Spent handles stay one extra TTL so late openers get 410 rather than 404
        cutoff = datetime.now(timezone.utc) - self.handle_ttl
        stale = [token for token, h in self._handles.items() if h.expires_at < cutoff]
        for token in stale:
            del self._handles[token]


# Global gateway instance
analysis_gateway = AnalysisGateway()
