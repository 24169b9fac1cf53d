"""
Event translator: native backend output -> canonical events.

Backends produce either Claude CLI `stream-json` dicts or claude_agent_sdk
message objects. SDK objects are first normalized to the CLI dict shape, so
both go through the same translation:

    {"type": "assistant", "message": {"id", "model", "content": [...]}}
        -> message_start, then start/delta/stop per content block
    {"type": "user", "message": {"content": [{"type": "tool_result", ...}]}}
        -> one tool_result per block
    {"type": "result", "stop_reason", "usage"}
        -> message_delta, message_stop
    {"type": "system", ...} and anything unrecognized
        -> nothing

The translator holds one piece of state: the content-block index counter,
which restarts at 0 on begin_turn().
"""
import json
import logging
import uuid
from typing import Any, Optional

from claude_agent_sdk import (
    AssistantMessage,
    ResultMessage,
    SystemMessage,
    UserMessage,
)
from claude_agent_sdk.types import (
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
)

from .events import (
    BlockDelta,
    CanonicalEvent,
    ContentBlock,
    ContentBlockDeltaEvent,
    ContentBlockStartEvent,
    ContentBlockStopEvent,
    MessageDeltaEvent,
    MessageInfo,
    MessageStartEvent,
    MessageStopEvent,
    StopDelta,
    ToolResultEvent,
    Usage,
)
from .schemas import UNKNOWN_TOOL_NAME

logger = logging.getLogger(__name__)


def synthesize_id(prefix: str) -> str:
    """Process-unique id for entities the backend left unnamed."""
    return f"{prefix}_{uuid.uuid4().hex[:24]}"


def _content_to_text(content: Any) -> str:
    """Flatten tool_result content (string or block list) to text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                parts.append(str(item.get("text", "")))
            elif isinstance(item, dict):
                parts.append(json.dumps(item, ensure_ascii=False))
            else:
                parts.append(str(item))
        return "\n".join(parts)
    return json.dumps(content, ensure_ascii=False, default=str)


def _sdk_block_to_dict(block: Any) -> Optional[dict[str, Any]]:
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ThinkingBlock):
        return {"type": "thinking", "thinking": block.thinking}
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    if isinstance(block, ToolResultBlock):
        return {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": block.content,
            "is_error": bool(block.is_error),
        }
    return None


def to_native_dict(message: Any) -> Optional[dict[str, Any]]:
    """
    Normalize a claude_agent_sdk message to the CLI stream-json shape.

    Dicts pass through unchanged. Returns None for message types that have
    no canonical projection (e.g. partial StreamEvent updates).
    """
    if isinstance(message, dict):
        return message

    if isinstance(message, SystemMessage):
        data = dict(message.data or {})
        data.setdefault("subtype", message.subtype)
        data["type"] = "system"
        return data

    if isinstance(message, AssistantMessage):
        blocks = [_sdk_block_to_dict(b) for b in message.content]
        return {
            "type": "assistant",
            "parent_tool_use_id": message.parent_tool_use_id,
            "message": {
                "model": message.model,
                "content": [b for b in blocks if b is not None],
            },
        }

    if isinstance(message, UserMessage):
        content = message.content
        if isinstance(content, list):
            content = [b for b in (_sdk_block_to_dict(b) for b in content) if b is not None]
        return {
            "type": "user",
            "parent_tool_use_id": message.parent_tool_use_id,
            "message": {"content": content},
        }

    if isinstance(message, ResultMessage):
        return {
            "type": "result",
            "subtype": message.subtype,
            "is_error": message.is_error,
            "session_id": message.session_id,
            "stop_reason": getattr(message, "stop_reason", None),
            "usage": message.usage or {},
            "total_cost_usd": message.total_cost_usd,
            "result": message.result,
        }

    logger.debug(f"EventTranslator: no projection for {type(message).__name__}")
    return None


class EventTranslator:
    """
    Projects native backend events onto canonical events.

    Usage:
        translator = EventTranslator()
        translator.begin_turn()
        async for native in backend.stream_turn(turn):
            for event in translator.translate(native):
                emit(event)
    """

    def __init__(self) -> None:
        self._next_index = 0

    def begin_turn(self) -> None:
        """Restart content-block numbering for a new backend turn."""
        self._next_index = 0

    def translate(self, native: Any) -> list[CanonicalEvent]:
        event = to_native_dict(native)
        if event is None:
            return []

        event_type = event.get("type")
        if event_type == "assistant":
            return self._translate_assistant(event)
        if event_type == "user":
            return self._translate_user(event)
        if event_type == "result":
            return self._translate_result(event)
        if event_type == "system":
            return []

        logger.debug(f"EventTranslator: ignoring native event type {event_type!r}")
        return []

    def _translate_assistant(self, event: dict[str, Any]) -> list[CanonicalEvent]:
        message = event.get("message") or {}
        parent = event.get("parent_tool_use_id")

        events: list[CanonicalEvent] = [
            MessageStartEvent(
                message=MessageInfo(
                    id=message.get("id") or synthesize_id("msg"),
                    model=message.get("model") or "unknown",
                ),
                parent_tool_use_id=parent,
            )
        ]

        content = message.get("content") or []
        if isinstance(content, str):
            content = [{"type": "text", "text": content}]

        for block in content:
            if not isinstance(block, dict):
                continue
            events.extend(self._translate_block(block, parent))
        return events

    def _translate_block(self, block: dict[str, Any], parent: Optional[str]) -> list[CanonicalEvent]:
        kind = block.get("type")
        if kind == "text":
            start = ContentBlock(type="text", text="")
            delta = BlockDelta(type="text_delta", text=block.get("text") or "")
        elif kind == "thinking":
            start = ContentBlock(type="thinking", thinking="")
            delta = BlockDelta(type="thinking_delta", thinking=block.get("thinking") or "")
        elif kind == "tool_use":
            start = ContentBlock(
                type="tool_use",
                id=block.get("id") or synthesize_id("toolu"),
                name=block.get("name") or UNKNOWN_TOOL_NAME,
            )
            delta = BlockDelta(
                type="input_json_delta",
                partial_json=json.dumps(block.get("input") or {}, ensure_ascii=False),
            )
        else:
            # redacted_thinking, server_tool_use, images, ...
            logger.debug(f"EventTranslator: dropping unsupported block kind {kind!r}")
            return []

        index = self._next_index
        self._next_index += 1
        return [
            ContentBlockStartEvent(index=index, content_block=start, parent_tool_use_id=parent),
            ContentBlockDeltaEvent(index=index, delta=delta, parent_tool_use_id=parent),
            ContentBlockStopEvent(index=index, parent_tool_use_id=parent),
        ]

    def _translate_user(self, event: dict[str, Any]) -> list[CanonicalEvent]:
        content = (event.get("message") or {}).get("content")
        if not isinstance(content, list):
            return []
        events: list[CanonicalEvent] = []
        for block in content:
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            events.append(
                ToolResultEvent(
                    tool_call_id=block.get("tool_use_id") or synthesize_id("toolu"),
                    result=_content_to_text(block.get("content")),
                    is_error=bool(block.get("is_error")),
                )
            )
        return events

    def _translate_result(self, event: dict[str, Any]) -> list[CanonicalEvent]:
        usage = event.get("usage") or {}
        return [
            MessageDeltaEvent(
                delta=StopDelta(stop_reason=event.get("stop_reason") or "end_turn"),
                usage=Usage(
                    input_tokens=usage.get("input_tokens") or 0,
                    output_tokens=usage.get("output_tokens") or 0,
                    cache_creation_input_tokens=usage.get("cache_creation_input_tokens") or 0,
                    cache_read_input_tokens=usage.get("cache_read_input_tokens") or 0,
                ),
            ),
            MessageStopEvent(),
        ]
