"""
Agent backends.

    create_backend("claude-cli")      # subprocess, runs its own tools
    create_backend("claude-sdk")      # claude_agent_sdk client
    create_backend("messages-api")    # HTTP, tools run by the orchestrator
"""
from typing import Optional

from ..config import BackendsConfig
from ..core.exceptions import ConfigurationError
from ..tools import ToolEnvironment
from .base import AgentBackend, TurnContext
from .claude_cli import ClaudeCliBackend
from .claude_sdk import ClaudeSdkBackend
from .messages_api import MessagesApiBackend

BACKEND_KINDS: tuple[str, ...] = (
    ClaudeCliBackend.kind,
    ClaudeSdkBackend.kind,
    MessagesApiBackend.kind,
)


def create_backend(
    kind: str,
    config: Optional[BackendsConfig] = None,
    tool_env: Optional[ToolEnvironment] = None,
) -> AgentBackend:
    """
    Instantiate a backend by kind.

    Raises:
        ConfigurationError: If the kind is not one of BACKEND_KINDS.
    """
    if kind == ClaudeCliBackend.kind:
        return ClaudeCliBackend(config)
    if kind == ClaudeSdkBackend.kind:
        return ClaudeSdkBackend(config, tool_env=tool_env)
    if kind == MessagesApiBackend.kind:
        return MessagesApiBackend(config)
    raise ConfigurationError(
        f"Unknown backend '{kind}'. Valid backends: {', '.join(BACKEND_KINDS)}"
    )


__all__ = [
    "AgentBackend",
    "BACKEND_KINDS",
    "ClaudeCliBackend",
    "ClaudeSdkBackend",
    "MessagesApiBackend",
    "TurnContext",
    "create_backend",
]
