"""
Structured logging configuration for SIFT Stream.

Provides JSON-formatted logs with context propagation so every line
written while a request or a stream is being served carries its
request, session and model identifiers.
"""

import asyncio
import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Dict, Optional

# Context variables for request tracing
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
session_id_var: ContextVar[str] = ContextVar("session_id", default="")
model_id_var: ContextVar[str] = ContextVar("model_id", default="")


def generate_request_id() -> str:
    """Generate a unique request ID."""
    return str(uuid.uuid4())[:8]


def set_request_context(
    request_id: Optional[str] = None,
    session_id: Optional[str] = None,
    model_id: Optional[str] = None,
) -> str:
    """Set request context variables for logging."""
    req_id = request_id or generate_request_id()
    request_id_var.set(req_id)
    if session_id:
        session_id_var.set(session_id[:8] + "..." if len(session_id) > 8 else session_id)
    if model_id:
        model_id_var.set(model_id)
    return req_id


def clear_request_context() -> None:
    """Clear request context after request completes."""
    request_id_var.set("")
    session_id_var.set("")
    model_id_var.set("")


def _context_fields() -> Dict[str, str]:
    fields = {}
    if request_id := request_id_var.get():
        fields["request_id"] = request_id
    if session_id := session_id_var.get():
        fields["session_id"] = session_id
    if model_id := model_id_var.get():
        fields["model_id"] = model_id
    return fields


class StructuredLogFormatter(logging.Formatter):
    """
    One JSON object per line, for log aggregation.

    Context identifiers and ``extra=`` fields become top-level keys.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
            **_context_fields(),
            **getattr(record, "extra_fields", {}),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


class DevelopmentFormatter(logging.Formatter):
    """Colourised single-line output for local runs."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    SHORT_NAMES = {"request_id": "req", "session_id": "sess", "model_id": "model"}

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]

        parts = [f"{color}{timestamp} {record.levelname:8}{self.RESET}"]
        context = [f"{self.SHORT_NAMES[key]}={value}" for key, value in _context_fields().items()]
        if context:
            parts.append(f"[{', '.join(context)}]")
        parts.append(f"{record.name}: {record.getMessage()}")
        line = " ".join(parts)

        extra_fields = getattr(record, "extra_fields", None)
        if extra_fields:
            line += " | " + " | ".join(f"{k}={v}" for k, v in extra_fields.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that nests ``extra=`` under ``extra_fields``.

    Usage:
        logger = get_logger(__name__)
        logger.info("Frame emitted", extra={"kind": "delta", "chars": 42})
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = kwargs.get("extra")
        if extra:
            kwargs["extra"] = {"extra_fields": extra}
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    """Get a ContextLogger for ``name`` (typically ``__name__``)."""
    return ContextLogger(logging.getLogger(name), {})


# Third-party loggers that are too chatty at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "anthropic", "openai", "asyncio", "aiosqlite")


def configure_logging(log_level: str = "INFO", json_format: bool = False) -> None:
    """
    Install one stdout handler on the root logger.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_format: JSON lines for production, readable lines otherwise
    """
    level = getattr(logging, log_level.upper())
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(StructuredLogFormatter() if json_format else DevelopmentFormatter())
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def log_execution_time(
    logger: Optional[ContextLogger] = None,
    operation: str = "operation",
) -> Callable:
    """
    Decorator logging how long a call took and whether it raised.

    Usage:
        @log_execution_time(operation="initiate_analysis")
        async def initiate(...):
            ...
    """

    def decorator(func: Callable) -> Callable:
        func_logger = logger or get_logger(func.__module__)

        def report(start: float, error: Optional[BaseException]) -> None:
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            if error is None:
                func_logger.info(f"{operation} completed", extra={"duration_ms": duration_ms, "status": "success"})
            else:
                func_logger.error(
                    f"{operation} failed",
                    extra={"duration_ms": duration_ms, "status": "error", "error_type": type(error).__name__},
                )

        if asyncio.iscoroutinefunction(func):
            @wraps(func)
            async def async_wrapper(*args, **kwargs):
                start = time.perf_counter()
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    report(start, e)
                    raise
                report(start, None)
                return result

            return async_wrapper

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                report(start, e)
                raise
            report(start, None)
            return result

        return sync_wrapper

    return decorator


# ============ Specialized Loggers ============


class PerformanceLogger:
    """Logger specialized for streaming performance."""

    def __init__(self, name: str = "performance"):
        self.logger = get_logger(name)

    def log_stream(
        self,
        model: str,
        outcome: str,
        frames: int,
        chars: int,
        first_chunk_ms: Optional[float],
        duration_ms: float,
    ) -> None:
        """Log the summary of one relay invocation."""
        self.logger.info(
            f"Stream finished: {outcome}",
            extra={
                "model": model,
                "outcome": outcome,
                "frames": frames,
                "chars": chars,
                "first_chunk_ms": round(first_chunk_ms, 2) if first_chunk_ms is not None else None,
                "duration_ms": round(duration_ms, 2),
            },
        )


# Global logger instances
perf_logger = PerformanceLogger()
