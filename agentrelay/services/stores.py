"""
Conversation store.

The engine does not own conversation persistence. It reads prior messages
before a turn and appends the new exchange afterwards through the
ConversationStore protocol; InMemoryConversationStore is the default.

Messages are Anthropic-format dicts: {"role": "user"|"assistant", "content": ...}.
"""
import asyncio
import copy
import logging
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class ConversationStore(Protocol):
    async def load_messages(self, conversation_id: str) -> list[dict[str, Any]]:
        ...

    async def append_messages(self, conversation_id: str, messages: list[dict[str, Any]]) -> None:
        ...


class InMemoryConversationStore:
    """Process-local conversation history. Lost on restart."""

    def __init__(self) -> None:
        self._conversations: dict[str, list[dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    async def load_messages(self, conversation_id: str) -> list[dict[str, Any]]:
        async with self._lock:
            return copy.deepcopy(self._conversations.get(conversation_id, []))

    async def append_messages(self, conversation_id: str, messages: list[dict[str, Any]]) -> None:
        if not messages:
            return
        async with self._lock:
            history = self._conversations.setdefault(conversation_id, [])
            history.extend(copy.deepcopy(messages))
            logger.debug(
                f"CONVERSATIONS: {conversation_id} now has {len(history)} messages"
            )
