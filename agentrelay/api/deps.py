"""
FastAPI dependencies for the agentrelay API.
"""
from fastapi import Request

from ..services.session_manager import SessionManager


def get_session_manager(request: Request) -> SessionManager:
    """The SessionManager created by the application lifespan."""
    return request.app.state.session_manager
