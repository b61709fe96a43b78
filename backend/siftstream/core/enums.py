"""
Enums and constants for SIFT Stream.

Replaces magic strings with type-safe enums throughout the codebase.
"""

from enum import Enum
from typing import Set


class ReportType(str, Enum):
    """Analysis report templates a user can request."""

    FULL_CHECK = "Full Check"
    CONTEXT_REPORT = "Context Report"
    COMMUNITY_NOTE = "Community Note"

    @classmethod
    def values(cls) -> Set[str]:
        """Get all valid report type values."""
        return {member.value for member in cls}

    @classmethod
    def is_valid(cls, value: str) -> bool:
        """Check if a value is a valid report type."""
        return value in cls.values()


class ProviderType(str, Enum):
    """AI providers a model can be served by."""

    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    OPENROUTER = "openrouter"

    @classmethod
    def values(cls) -> Set[str]:
        return {member.value for member in cls}


class SessionStatus(str, Enum):
    """Lifecycle states of an analysis session."""

    IDLE = "idle"
    INITIATING = "initiating"
    STREAMING = "streaming"
    COMPLETE = "complete"
    STOPPED = "stopped"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETE, SessionStatus.STOPPED, SessionStatus.ERRORED)


class MessageRole(str, Enum):
    """Chat history roles sent to the chat endpoint."""

    USER = "user"
    ASSISTANT = "assistant"


class Sender(str, Enum):
    """Who authored a message in the client conversation."""

    USER = "user"
    AI = "ai"

    def to_role(self) -> MessageRole:
        return MessageRole.USER if self is Sender.USER else MessageRole.ASSISTANT


# ============ Event Types ============


class SSEEventType(str, Enum):
    """Server-Sent Event types for streaming."""

    STATUS = "status"
    DELTA = "delta"
    SNAPSHOT = "snapshot"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (SSEEventType.COMPLETE, SSEEventType.ERROR)


class StreamStage(str, Enum):
    """Stages announced in ``status`` frames."""

    STARTED = "started"
    GENERATING = "generating"


class StreamOutcome(str, Enum):
    """How a relay invocation ended, for metrics and logs."""

    COMPLETE = "complete"
    ERROR = "error"
    TIMEOUT = "timeout"
    DISCONNECTED = "disconnected"


class ParameterType(str, Enum):
    """Kinds of tunable model parameters."""

    SLIDER = "slider"
    NUMBER = "number"


# ============ User-visible Messages ============


class Messages:
    """Fixed user-visible texts."""

    MISSING_CONTENT = "Please provide text or an image to analyze."
    TRANSPORT_ERROR = "An error occurred while streaming the response. Please try again."
    BACKEND_ERROR = "An error occurred on the backend."
    STOPPED_SUFFIX = "\n\nGeneration stopped by user."
    STREAM_FINISHED = "Stream finished"
