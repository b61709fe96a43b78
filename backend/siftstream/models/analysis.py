"""Analysis session request and response models."""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator

from siftstream.core.enums import MessageRole, SessionStatus

ParamValue = Union[int, float, str, bool]


class AnalysisRequest(BaseModel):
    """Body of ``POST /api/sift/initiate``."""

    user_input_text: Optional[str] = Field(None, description="Claim or text to analyze")
    image_ref: Optional[str] = Field(None, description="https:// or data: URL of an image to analyze")
    report_type: str = Field(..., description="Report template: Full Check, Context Report or Community Note")
    selected_model_id: str = Field(..., description="Model id from /api/models/config")
    model_config_params: Dict[str, ParamValue] = Field(
        default_factory=dict, description="Flat map of tunable model parameters"
    )

    @property
    def has_content(self) -> bool:
        return bool((self.user_input_text or "").strip()) or bool((self.image_ref or "").strip())


class HistoryMessage(BaseModel):
    """One prior turn sent along with a follow-up."""

    role: MessageRole = Field(..., description="Message role: 'user' or 'assistant'")
    content: str = Field(..., description="Message content")


class ChatRequest(BaseModel):
    """Body of ``POST /api/sift/chat``."""

    new_user_message_text: str = Field(..., description="Follow-up question")
    chat_history: List[HistoryMessage] = Field(default_factory=list, description="Prior conversation turns")
    selected_model_id: str = Field(..., description="Model id from /api/models/config")
    model_config_params: Dict[str, ParamValue] = Field(default_factory=dict)
    system_instruction_override: Optional[str] = Field(None, description="Replaces the model's default system prompt")
    session_id: Optional[str] = Field(None, description="Analysis session this follow-up belongs to")

    @field_validator("new_user_message_text")
    @classmethod
    def strip_message(cls, v: str) -> str:
        return v.strip()


class InitiateResponse(BaseModel):
    """Stream handle returned by ``initiate``."""

    session_id: str = Field(..., description="Analysis session id")
    stream_url: str = Field(..., description="Single-use SSE URL for this session's report")
    expires_at: datetime = Field(..., description="The handle cannot be opened after this instant")


class SessionInfo(BaseModel):
    """Status and persisted report of a session."""

    session_id: str
    status: SessionStatus
    report_type: str
    model_id: str
    created_at: datetime
    user_input_text: Optional[str] = None
    image_ref: Optional[str] = None
    report: Optional[str] = None
    error: Optional[str] = None
    follow_up_status: Optional[SessionStatus] = None
    follow_up_error: Optional[str] = None
    messages: List[HistoryMessage] = []

    @classmethod
    def from_record(cls, record: Any, messages: Optional[List[HistoryMessage]] = None) -> "SessionInfo":
        return cls(
            session_id=record.session_id,
            status=record.status,
            report_type=record.report_type,
            model_id=record.model_id,
            created_at=record.created_at,
            user_input_text=record.user_input_text,
            image_ref=record.image_ref,
            report=record.report,
            error=record.error,
            messages=messages or [],
        )
