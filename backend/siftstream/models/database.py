"""Database models for analysis persistence."""

from datetime import datetime, timezone

from sqlalchemy import Column, String, Integer, Text, DateTime, ForeignKey, Index
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AnalysisSessionRecord(Base):
    """One analysis session and its generated report."""

    __tablename__ = "analysis_sessions"

    session_id = Column(String(64), primary_key=True)
    status = Column(String(20), nullable=False, default="initiating")
    report_type = Column(String(50), nullable=False)
    model_id = Column(String(255), nullable=False)
    user_input_text = Column(Text, nullable=True)
    image_ref = Column(Text, nullable=True)
    report = Column(Text, nullable=True)
    error = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    def to_dict(self):
        """Convert session to dictionary."""
        return {
            "session_id": self.session_id,
            "status": self.status,
            "report_type": self.report_type,
            "model_id": self.model_id,
            "user_input_text": self.user_input_text,
            "image_ref": self.image_ref,
            "report": self.report,
            "error": self.error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class ConversationMessage(Base):
    """A follow-up exchange turn stored against a session."""

    __tablename__ = "conversation_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(
        String(64), ForeignKey("analysis_sessions.session_id", ondelete="CASCADE"), nullable=False, index=True
    )
    role = Column(String(20), nullable=False)  # 'user' or 'assistant'
    content = Column(Text, nullable=False)
    model_id = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    __table_args__ = (Index("idx_conversation_session_created", "session_id", "created_at"),)

    def to_dict(self):
        return {
            "id": self.id,
            "session_id": self.session_id,
            "role": self.role,
            "content": self.content,
            "model_id": self.model_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
