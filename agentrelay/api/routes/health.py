"""
Health check endpoint for the agentrelay API.
"""
from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from ... import __version__
from ...services.session_manager import SessionManager
from ..deps import get_session_manager
from ..models import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(manager: SessionManager = Depends(get_session_manager)) -> HealthResponse:
    return HealthResponse(
        status="ok",
        version=__version__,
        timestamp=datetime.now(timezone.utc),
        sessions=len(manager.list_sessions()),
    )
