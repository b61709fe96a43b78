"""
HTTP client for the SIFT Stream API.

Wraps httpx so the rest of the client SDK sees typed models, application
errors, and SSE bodies as async iterators of lines.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from siftstream.core.config import settings
from siftstream.core.exceptions import (
    AppError,
    ErrorCode,
    GatewayError,
    StreamHandleConsumedError,
    TransportError,
)
from siftstream.core.logging import get_logger
from siftstream.models.analysis import AnalysisRequest, ChatRequest, InitiateResponse, SessionInfo
from siftstream.models.catalog import ModelConfig, ModelsConfigResponse

logger = get_logger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(30.0, read=None)


@dataclass
class StreamHandle:
    """Client-side copy of a single-use stream capability."""

    session_id: str
    stream_url: str
    expires_at: datetime
    consumed: bool = False

    @classmethod
    def from_response(cls, response: InitiateResponse) -> "StreamHandle":
        return cls(session_id=response.session_id, stream_url=response.stream_url, expires_at=response.expires_at)


def _error_from_body(body: bytes) -> Dict[str, Any]:
    """Pull ``{"code", "message"}`` out of an error response body."""
    try:
        payload = json.loads(body or b"null")
    except ValueError:
        return {}
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        return payload["error"]
    if isinstance(payload, dict) and isinstance(payload.get("detail"), str):
        return {"message": payload["detail"]}
    return {}


def _error_code(value: Any, default: ErrorCode) -> ErrorCode:
    try:
        return ErrorCode(value)
    except ValueError:
        return default


class LineStream:
    """
    Async context manager over one SSE response body.

    Entering sends the request and checks the status; the value is an
    async iterator of body lines. Exiting closes the connection.
    """

    def __init__(self, client: httpx.AsyncClient, method: str, url: str, json: Optional[dict] = None):
        self._client = client
        self._method = method
        self._url = url
        self._json = json
        self._context = None
        self._response: Optional[httpx.Response] = None

    async def __aenter__(self) -> AsyncIterator[str]:
        self._context = self._client.stream(
            self._method, self._url, json=self._json, headers={"Accept": "text/event-stream"}
        )
        try:
            self._response = await self._context.__aenter__()
        except httpx.HTTPError as e:
            self._context = None
            raise TransportError(f"Could not open stream: {e}") from e

        if self._response.status_code != 200:
            try:
                body = await self._response.aread()
            except httpx.HTTPError as e:
                raise TransportError(f"Could not read error response: {e}") from e
            finally:
                await self._close()
            error = _error_from_body(body)
            raise TransportError(
                error.get("message") or f"Stream request failed with HTTP {self._response.status_code}",
                details={"status_code": self._response.status_code, "code": error.get("code")},
            )
        return self._lines()

    async def _lines(self) -> AsyncIterator[str]:
        try:
            async for line in self._response.aiter_lines():
                yield line
        except httpx.HTTPError as e:
            raise TransportError(f"Stream interrupted: {e}") from e

    async def _close(self) -> None:
        if self._context is not None:
            context, self._context = self._context, None
            await context.__aexit__(None, None, None)

    async def __aexit__(self, exc_type, exc, tb):
        await self._close()
        return False


class SiftApiClient:
    """
    Client for the SIFT Stream HTTP API.

    Usage:
        async with SiftApiClient("http://localhost:8000") as api:
            handle = await api.initiate(request)
            async with api.open_stream(handle) as lines:
                ...
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url or settings.api_base_url,
            timeout=DEFAULT_TIMEOUT,
        )

    async def __aenter__(self) -> "SiftApiClient":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
        return False

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request_json(self, method: str, url: str, json: Optional[dict] = None) -> Any:
        try:
            response = await self._client.request(method, url, json=json)
        except httpx.HTTPError as e:
            logger.warning(f"{method} {url} failed: {e}")
            raise GatewayError(details={"error": str(e)}) from e

        if response.is_success:
            return response.json()

        error = _error_from_body(response.content)
        raise AppError(
            code=_error_code(error.get("code"), ErrorCode.GATEWAY_ERROR),
            message=error.get("message") or f"Request failed with HTTP {response.status_code}",
            details=error.get("details"),
            http_status=response.status_code,
        )

    async def initiate(self, request: AnalysisRequest) -> StreamHandle:
        """
        Create an analysis session.

        Raises:
            GatewayError: the server refused or could not be reached
        """
        try:
            payload = await self._request_json("POST", "/api/sift/initiate", request.model_dump(mode="json", exclude_none=True))
        except GatewayError:
            raise
        except AppError as e:
            raise GatewayError(code=e.code, message=e.message, details=e.details, http_status=e.http_status) from e
        return StreamHandle.from_response(InitiateResponse.model_validate(payload))

    def open_stream(self, handle: StreamHandle) -> LineStream:
        """
        Subscribe to a handle's stream. A handle can be opened once.

        Raises:
            StreamHandleConsumedError: before any I/O if the handle was already opened
        """
        if handle.consumed:
            raise StreamHandleConsumedError(details={"session_id": handle.session_id})
        handle.consumed = True
        return LineStream(self._client, "GET", handle.stream_url)

    def chat_stream(self, request: ChatRequest) -> LineStream:
        """Post a follow-up; the returned body is its event stream."""
        return LineStream(self._client, "POST", "/api/sift/chat", json=request.model_dump(mode="json", exclude_none=True))

    async def fetch_models(self) -> List[ModelConfig]:
        payload = await self._request_json("GET", "/api/models/config")
        return ModelsConfigResponse.model_validate(payload).models

    async def get_session(self, session_id: str) -> SessionInfo:
        payload = await self._request_json("GET", f"/api/sift/sessions/{session_id}")
        return SessionInfo.model_validate(payload)
