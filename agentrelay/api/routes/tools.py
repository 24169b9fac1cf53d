"""
Tool catalog endpoints for the agentrelay API.
"""
import logging

from fastapi import APIRouter, Depends

from ...core.tool_schemas import builtin_tool_schemas
from ...services.session_manager import SessionManager
from ..deps import get_session_manager
from ..models import ToolListResponse, ToolSchema

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tools", tags=["tools"])


async def _tool_list(manager: SessionManager) -> ToolListResponse:
    schemas = builtin_tool_schemas() + await manager.registry.to_tool_schemas()
    return ToolListResponse(
        tools=[ToolSchema(**schema) for schema in schemas],
        external_servers=[server.name for server in manager.registry.servers()],
    )


@router.get("", response_model=ToolListResponse)
async def list_tools(manager: SessionManager = Depends(get_session_manager)) -> ToolListResponse:
    """Built-in tools plus the (cached) external tool catalog."""
    return await _tool_list(manager)


@router.post("/refresh", response_model=ToolListResponse)
async def refresh_tools(manager: SessionManager = Depends(get_session_manager)) -> ToolListResponse:
    """Drop the external catalog cache and rediscover every server."""
    manager.registry.invalidate()
    return await _tool_list(manager)
