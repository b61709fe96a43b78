"""SIFT analysis API routes."""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from siftstream.models.analysis import AnalysisRequest, ChatRequest, InitiateResponse, SessionInfo
from siftstream.services.analysis_gateway import AnalysisGateway, analysis_gateway
from siftstream.services.stream_relay import SSE_HEADERS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sift", tags=["sift"])


def get_gateway() -> AnalysisGateway:
    """Dependency returning the process-wide gateway."""
    return analysis_gateway


@router.post("/initiate", response_model=InitiateResponse)
async def initiate_analysis(
    request: AnalysisRequest,
    gateway: AnalysisGateway = Depends(get_gateway),
):
    """
    Create an analysis session.

    Returns a single-use ``stream_url``; opening it starts generation.
    """
    return await gateway.initiate(request)


@router.get("/stream/{handle}")
async def stream_analysis(
    handle: str,
    req: Request,
    gateway: AnalysisGateway = Depends(get_gateway),
):
    """
    Stream the report of a session as Server-Sent Events.

    A handle opens once: 404 when unknown, 410 when already opened or expired.
    """
    frames = await gateway.open_stream(handle, is_disconnected=req.is_disconnected)
    return StreamingResponse(frames, media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("/chat")
async def chat(
    request: ChatRequest,
    req: Request,
    gateway: AnalysisGateway = Depends(get_gateway),
):
    """Send a follow-up question; the response body is the answer's event stream."""
    logger.info(f"Follow-up received ({len(request.chat_history)} prior messages)")
    frames = await gateway.chat(request, is_disconnected=req.is_disconnected)
    return StreamingResponse(frames, media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/sessions/{session_id}", response_model=SessionInfo)
async def get_session(
    session_id: str,
    gateway: AnalysisGateway = Depends(get_gateway),
):
    """Get a session's status, report and stored follow-ups."""
    return await gateway.get_session_info(session_id)
