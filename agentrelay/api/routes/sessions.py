"""
Session endpoints for the agentrelay API.

Provides endpoints for:
- POST /sessions - Create a session
- GET /sessions - List sessions
- GET /sessions/{id} - Session details and pending approvals
- POST /sessions/{id}/messages - Send a message, stream events (SSE)
- GET /sessions/{id}/events - Reconnect to the current event stream (SSE)
- POST /sessions/{id}/cancel - Cancel the running generation
- DELETE /sessions/{id} - Terminate the session
- POST /sessions/{id}/approvals/{tool_call_id} - Approve or deny a tool call
"""
import asyncio
import logging
import uuid
from typing import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse

from ...core.events import CanonicalEvent, PingEvent, format_sse
from ...services.session_manager import SessionManager
from ..deps import get_session_manager
from ..models import (
    ApprovalDecisionRequest,
    ApprovalDecisionResponse,
    CancelResponse,
    CreateSessionRequest,
    SendMessageRequest,
    SessionListResponse,
    SessionResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


async def sse_frames(events: AsyncIterator[CanonicalEvent], heartbeat_seconds: float) -> AsyncIterator[str]:
    """
    Format a canonical event stream as SSE frames.

    A ping event is sent whenever no event arrived for heartbeat_seconds.
    The pending read is kept across pings so no event is lost.
    """
    iterator = events.__aiter__()
    pending = None
    try:
        while True:
            if pending is None:
                pending = asyncio.ensure_future(iterator.__anext__())
            done, _ = await asyncio.wait({pending}, timeout=heartbeat_seconds)
            if not done:
                yield format_sse(PingEvent())
                continue
            task, pending = pending, None
            try:
                event = task.result()
            except StopAsyncIteration:
                return
            yield format_sse(event)
    finally:
        if pending is not None:
            pending.cancel()
            await asyncio.gather(pending, return_exceptions=True)
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()


def _event_stream(request: Request, events: AsyncIterator[CanonicalEvent]) -> StreamingResponse:
    heartbeat = request.app.state.config.api.heartbeat_seconds
    return StreamingResponse(
        sse_frames(events, heartbeat),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.post("", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def create_session(
    body: CreateSessionRequest,
    manager: SessionManager = Depends(get_session_manager),
) -> SessionResponse:
    """Create an idle session. Send messages with POST /sessions/{id}/messages."""
    conversation_id = body.conversation_id or uuid.uuid4().hex
    session_id = await manager.create_session(conversation_id, body.options)
    return SessionResponse(**manager.describe_session(session_id))


@router.get("", response_model=SessionListResponse)
async def list_sessions(manager: SessionManager = Depends(get_session_manager)) -> SessionListResponse:
    sessions = [SessionResponse(**info) for info in manager.list_sessions()]
    return SessionListResponse(sessions=sessions, total=len(sessions))


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
) -> SessionResponse:
    return SessionResponse(**manager.describe_session(session_id))


@router.post("/{session_id}/messages")
async def send_message(
    session_id: str,
    body: SendMessageRequest,
    request: Request,
    manager: SessionManager = Depends(get_session_manager),
) -> StreamingResponse:
    """
    Start a generation and stream its canonical events.

    Dropping the connection does not stop the generation; reconnect with
    GET /sessions/{id}/events.
    """
    events = await manager.send_message(session_id, body.text)
    return _event_stream(request, events)


@router.get("/{session_id}/events")
async def reconnect(
    session_id: str,
    request: Request,
    manager: SessionManager = Depends(get_session_manager),
) -> StreamingResponse:
    """Replay the buffered events of the current generation and follow it."""
    events = manager.reconnect_stream(session_id)
    if events is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No event stream for session: {session_id}",
        )
    return _event_stream(request, events)


@router.post("/{session_id}/cancel", response_model=CancelResponse)
async def cancel_generation(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
) -> CancelResponse:
    cancelled = manager.cancel_generation(session_id)
    return CancelResponse(
        session_id=session_id,
        cancelled=cancelled,
        message="Cancellation requested" if cancelled else "No generation is running",
    )


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def terminate_session(
    session_id: str,
    manager: SessionManager = Depends(get_session_manager),
) -> None:
    """Terminate a session. Terminating an unknown session is not an error."""
    await manager.terminate_session(session_id)


@router.post(
    "/{session_id}/approvals/{tool_call_id}",
    response_model=ApprovalDecisionResponse,
)
async def resolve_approval(
    session_id: str,
    tool_call_id: str,
    body: ApprovalDecisionRequest,
    manager: SessionManager = Depends(get_session_manager),
) -> ApprovalDecisionResponse:
    resolved = manager.resolve_approval(session_id, tool_call_id, body.approved)
    if not resolved:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"No pending approval for tool call: {tool_call_id}",
        )
    return ApprovalDecisionResponse(session_id=session_id, tool_call_id=tool_call_id, resolved=True)
