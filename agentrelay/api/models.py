"""
Request and response models for the agentrelay API.
"""
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..core.schemas import SessionOptions


class CreateSessionRequest(BaseModel):
    conversation_id: Optional[str] = Field(
        default=None, description="Conversation to attach to; a new id is generated when omitted"
    )
    options: SessionOptions = Field(default_factory=SessionOptions)


class SessionResponse(BaseModel):
    id: str
    conversation_id: str
    backend: str
    status: str
    native_session_id: Optional[str] = None
    stream_complete: bool
    buffered_events: int
    created_at: datetime
    options: Optional[dict[str, Any]] = None
    pending_approvals: Optional[list[dict[str, Any]]] = None


class SessionListResponse(BaseModel):
    sessions: list[SessionResponse]
    total: int


class SendMessageRequest(BaseModel):
    text: str = Field(min_length=1)


class CancelResponse(BaseModel):
    session_id: str
    cancelled: bool
    message: str


class ApprovalDecisionRequest(BaseModel):
    approved: bool


class ApprovalDecisionResponse(BaseModel):
    session_id: str
    tool_call_id: str
    resolved: bool


class ToolSchema(BaseModel):
    name: str
    description: str
    input_schema: dict[str, Any]


class ToolListResponse(BaseModel):
    tools: list[ToolSchema]
    external_servers: list[str]


class HealthResponse(BaseModel):
    status: str
    version: str
    timestamp: datetime
    sessions: int
