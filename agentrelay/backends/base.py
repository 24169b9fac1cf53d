"""
Backend contract.

A backend runs one model turn and yields its native events. Native events
are either Claude CLI stream-json dicts or claude_agent_sdk message objects;
EventTranslator handles both.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

from ..core.schemas import SessionOptions


@dataclass
class TurnContext:
    """
    Input for one backend turn.

    prompt is the new user text. messages is the Anthropic-format context for
    backends that are stateless between turns (the orchestrator appends the
    assistant content and tool results to it). Stateful backends resume via
    resume_id instead.
    """

    prompt: str
    messages: list[dict[str, Any]] = field(default_factory=list)
    tools: list[dict[str, Any]] = field(default_factory=list)
    options: SessionOptions = field(default_factory=SessionOptions)
    resume_id: Optional[str] = None


class AgentBackend(ABC):
    """Uniform "start a turn, stream events" interface."""

    kind: str = ""

    # True when the backend runs tools itself (the orchestrator then only
    # announces tool calls instead of dispatching them)
    handles_tools: bool = False

    @abstractmethod
    def stream_turn(self, turn: TurnContext) -> AsyncIterator[Any]:
        """Run one model turn, yielding native events until it completes."""

    async def interrupt(self) -> None:
        """Ask the running turn to stop. Must not raise if nothing is running."""

    async def aclose(self) -> None:
        """Release processes and connections."""
