"""
Canonical streaming event protocol.

Every backend's output is projected onto this closed set of events before it
reaches a client. Events are frozen pydantic models discriminated on `type`;
`to_wire()` gives the JSON object sent over SSE (tool events use camelCase
field names on the wire).
"""
import json
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class _Event(_Frozen):
    def to_wire(self) -> dict[str, Any]:
        """JSON-ready dict, dropping unset optional fields."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

    def to_json(self) -> str:
        return json.dumps(self.to_wire(), ensure_ascii=False)


# --- payload pieces -------------------------------------------------------

class MessageInfo(_Frozen):
    id: str
    type: Literal["message"] = "message"
    role: Literal["assistant"] = "assistant"
    model: str = "unknown"


class ContentBlock(_Frozen):
    type: Literal["text", "thinking", "tool_use"]
    text: Optional[str] = None
    thinking: Optional[str] = None
    id: Optional[str] = None
    name: Optional[str] = None


class BlockDelta(_Frozen):
    type: Literal["text_delta", "thinking_delta", "input_json_delta"]
    text: Optional[str] = None
    thinking: Optional[str] = None
    partial_json: Optional[str] = None


class StopDelta(_Frozen):
    stop_reason: str = "end_turn"


class Usage(_Frozen):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0


class ErrorInfo(_Frozen):
    type: str
    message: str


# --- events ---------------------------------------------------------------

class MessageStartEvent(_Event):
    type: Literal["message_start"] = "message_start"
    message: MessageInfo
    parent_tool_use_id: Optional[str] = None


class ContentBlockStartEvent(_Event):
    type: Literal["content_block_start"] = "content_block_start"
    index: int
    content_block: ContentBlock
    parent_tool_use_id: Optional[str] = None


class ContentBlockDeltaEvent(_Event):
    type: Literal["content_block_delta"] = "content_block_delta"
    index: int
    delta: BlockDelta
    parent_tool_use_id: Optional[str] = None


class ContentBlockStopEvent(_Event):
    type: Literal["content_block_stop"] = "content_block_stop"
    index: int
    parent_tool_use_id: Optional[str] = None


class MessageDeltaEvent(_Event):
    type: Literal["message_delta"] = "message_delta"
    delta: StopDelta = Field(default_factory=StopDelta)
    usage: Usage = Field(default_factory=Usage)


class MessageStopEvent(_Event):
    type: Literal["message_stop"] = "message_stop"
    reason: Optional[str] = None


class ToolUseStartEvent(_Event):
    type: Literal["tool_use_start"] = "tool_use_start"
    tool_call_id: str = Field(alias="toolCallId")
    tool_name: str = Field(alias="toolName")
    input: dict[str, Any] = Field(default_factory=dict)
    parent_tool_use_id: Optional[str] = Field(default=None, alias="parentToolUseId")


class ToolApprovalRequestEvent(_Event):
    type: Literal["tool_approval_request"] = "tool_approval_request"
    tool_call_id: str = Field(alias="toolCallId")
    tool_name: str = Field(alias="toolName")
    input: dict[str, Any] = Field(default_factory=dict)
    description: Optional[str] = None


class ToolResultEvent(_Event):
    type: Literal["tool_result"] = "tool_result"
    tool_call_id: str = Field(alias="toolCallId")
    result: str
    is_error: bool = Field(default=False, alias="isError")
    tool_name: Optional[str] = Field(default=None, alias="toolName")
    duration: Optional[int] = Field(default=None, description="Milliseconds")


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    error: ErrorInfo


class PingEvent(_Event):
    type: Literal["ping"] = "ping"


CanonicalEvent = Annotated[
    Union[
        MessageStartEvent,
        ContentBlockStartEvent,
        ContentBlockDeltaEvent,
        ContentBlockStopEvent,
        MessageDeltaEvent,
        MessageStopEvent,
        ToolUseStartEvent,
        ToolApprovalRequestEvent,
        ToolResultEvent,
        ErrorEvent,
        PingEvent,
    ],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter = TypeAdapter(CanonicalEvent)


def parse_event(data: dict[str, Any]) -> CanonicalEvent:
    """Validate a wire dict back into its event model."""
    return _event_adapter.validate_python(data)


def error_event(error_type: str, message: str) -> ErrorEvent:
    return ErrorEvent(error=ErrorInfo(type=error_type, message=message))


def cancelled_stop() -> MessageStopEvent:
    """Terminal close event emitted when a generation is cancelled."""
    return MessageStopEvent(reason="cancelled")


def format_sse(event: CanonicalEvent) -> str:
    """Format one event as a Server-Sent Events frame."""
    return f"data: {event.to_json()}\n\n"
