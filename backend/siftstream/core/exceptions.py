"""
Custom exception hierarchy for SIFT Stream.

Provides structured error handling with error codes, user-friendly messages,
and proper HTTP status code mapping. The same classes are raised by the
server (and rendered as JSON bodies or SSE ``error`` frames) and by the
client SDK.
"""

from typing import Any, Dict, Optional
from enum import Enum


class ErrorCode(str, Enum):
    """Error codes for categorizing exceptions."""

    # Validation errors (400)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    MISSING_CONTENT = "MISSING_CONTENT"
    INVALID_REPORT_TYPE = "INVALID_REPORT_TYPE"
    INVALID_MODEL = "INVALID_MODEL"
    INVALID_PARAMETERS = "INVALID_PARAMETERS"

    # Resource errors (404 / 410)
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    STREAM_HANDLE_NOT_FOUND = "STREAM_HANDLE_NOT_FOUND"
    STREAM_HANDLE_CONSUMED = "STREAM_HANDLE_CONSUMED"

    # Gateway / provider errors (502 / 503)
    GATEWAY_ERROR = "GATEWAY_ERROR"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    PROVIDER_TIMEOUT = "PROVIDER_TIMEOUT"

    # Stream errors (client side)
    TRANSPORT_ERROR = "TRANSPORT_ERROR"
    APPLICATION_ERROR = "APPLICATION_ERROR"
    PARSE_ERROR = "PARSE_ERROR"

    # Server errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"


class AppError(Exception):
    """
    Base application error with structured error information.

    All application-specific exceptions should inherit from this class.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional context (not exposed to users in production)
        http_status: HTTP status code for API responses
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        http_status: int = 500,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        self.http_status = http_status
        super().__init__(message)

    def to_dict(self, include_details: bool = False) -> Dict[str, Any]:
        """Convert exception to dictionary for API response."""
        result = {
            "error": {
                "code": self.code.value,
                "message": self.message,
            }
        }
        if include_details and self.details:
            result["error"]["details"] = self.details
        return result


# ============ Validation Errors ============


class ValidationError(AppError):
    """Raised when a request is rejected before any state is touched."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
        message: str = "Validation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code=code, message=message, details=details, http_status=400)


class MissingContentError(ValidationError):
    """Raised when neither text nor an image reference was submitted."""

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code=ErrorCode.MISSING_CONTENT,
            message="Please provide text or an image to analyze.",
            details=details,
        )


class InvalidReportTypeError(ValidationError):
    """Raised when the report type tag is unknown."""

    def __init__(self, report_type: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code=ErrorCode.INVALID_REPORT_TYPE,
            message=f"Unknown report type: {report_type}",
            details={**(details or {}), "report_type": report_type},
        )


class InvalidModelError(ValidationError):
    """Raised when the selected model is not in the catalog."""

    def __init__(self, model_id: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code=ErrorCode.INVALID_MODEL,
            message=f"Unknown model: {model_id}",
            details={**(details or {}), "model_id": model_id},
        )


# ============ Resource Errors ============


class ResourceNotFoundError(AppError):
    """Base class for resource not found errors."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        http_status: int = 404,
    ):
        super().__init__(code=code, message=message, details=details, http_status=http_status)


class SessionNotFoundError(ResourceNotFoundError):
    """Raised when an analysis session cannot be found."""

    def __init__(self, session_id: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code=ErrorCode.SESSION_NOT_FOUND,
            message="Analysis session not found",
            details={**(details or {}), "session_id": session_id[:8] + "..."},
        )


class StreamHandleNotFoundError(ResourceNotFoundError):
    """Raised when a stream handle was never issued."""

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code=ErrorCode.STREAM_HANDLE_NOT_FOUND,
            message="Stream not found",
            details=details,
        )


class StreamHandleConsumedError(ResourceNotFoundError):
    """Raised when a single-use stream handle is opened a second time or has expired."""

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code=ErrorCode.STREAM_HANDLE_CONSUMED,
            message="Stream has already been consumed or has expired",
            details=details,
            http_status=410,
        )


# ============ Gateway / Provider Errors ============


class GatewayError(AppError):
    """Raised when an analysis session could not be created."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.GATEWAY_ERROR,
        message: str = "Failed to initiate analysis. Please try again.",
        details: Optional[Dict[str, Any]] = None,
        http_status: int = 502,
    ):
        super().__init__(code=code, message=message, details=details, http_status=http_status)


class ProviderUnavailableError(GatewayError):
    """Raised when the provider behind a model is not configured or its circuit is open."""

    def __init__(self, provider: str, reason: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code=ErrorCode.PROVIDER_UNAVAILABLE,
            message=f"AI provider '{provider}' is unavailable: {reason}",
            details={**(details or {}), "provider": provider},
            http_status=503,
        )


class ProviderError(AppError):
    """Raised when a provider call fails after the stream has started."""

    def __init__(self, original_error: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code=ErrorCode.PROVIDER_ERROR,
            message="AI service error while generating the response",
            details={**(details or {}), "original_error": original_error},
            http_status=502,
        )


class ProviderTimeoutError(ProviderError):
    """Raised when the provider stays silent longer than the idle timeout."""

    def __init__(self, timeout_seconds: float):
        super().__init__(
            original_error=f"no output for {timeout_seconds:.0f}s",
            details={"timeout_seconds": timeout_seconds},
        )
        self.code = ErrorCode.PROVIDER_TIMEOUT
        self.message = "AI service timed out while generating the response"
        self.http_status = 504


# ============ Stream Errors (client side) ============


class TransportError(AppError):
    """Stream-level delivery failure. Terminal for the handle, never retried."""

    def __init__(self, message: str = "Stream delivery failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code=ErrorCode.TRANSPORT_ERROR,
            message=message,
            details=details,
            http_status=502,
        )


class ApplicationError(AppError):
    """Structured error frame sent as data by the producer."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code=ErrorCode.APPLICATION_ERROR,
            message=message,
            details=details,
            http_status=502,
        )


class ParseError(AppError):
    """Malformed frame payload. Logged and swallowed by the consumer."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code=ErrorCode.PARSE_ERROR,
            message=message,
            details=details,
            http_status=400,
        )


# ============ Internal Errors ============


class DatabaseError(AppError):
    """Raised when database operations fail."""

    def __init__(self, operation: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            code=ErrorCode.DATABASE_ERROR,
            message="Database operation failed",
            details={**(details or {}), "operation": operation},
            http_status=500,
        )
