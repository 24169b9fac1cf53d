"""
Shared data types for sessions, tools and sandbox policy.

Configuration-shaped types (anything loaded from YAML or an HTTP body) are
pydantic models; runtime records passed between components are dataclasses.
"""
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

EXTERNAL_TOOL_PREFIX: str = "ns__"
UNKNOWN_TOOL_NAME: str = "unknown"


class SessionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    TERMINATED = "terminated"


PermissionMode = Literal["safe", "fast", "plan", "unrestricted"]
BashPolicy = Literal["auto", "off", "turbo"]


class PermissionRule(BaseModel):
    """
    One allow/deny/ask rule for tool calls.

    `tool` is a glob on the tool name ("*" matches every tool). `pattern`, when
    set, is a glob on the call's main input (the Bash command, the file path,
    the URL...) and the rule only applies when that input matches.
    """

    type: Literal["allow", "deny", "ask"]
    tool: str = "*"
    pattern: Optional[str] = None


class SessionOptions(BaseModel):
    """Per-session backend options supplied at creation time."""

    backend: Optional[str] = Field(
        default=None, description="Backend kind; falls back to sessions.default_backend"
    )
    model: Optional[str] = None
    system_prompt: Optional[str] = None
    effort: Optional[Literal["low", "medium", "high"]] = None
    max_budget_usd: Optional[float] = Field(default=None, gt=0)
    max_turns: Optional[int] = Field(default=None, ge=1)
    allowed_tools: list[str] = Field(default_factory=list)
    disallowed_tools: list[str] = Field(default_factory=list)
    workspace_path: Optional[Path] = None
    resume_session_id: Optional[str] = Field(
        default=None, description="Native backend session id to resume"
    )
    permission_mode: Optional[PermissionMode] = Field(
        default=None, description="Overrides the workspace and engine permission mode"
    )


class SandboxPolicy(BaseModel):
    """
    Effective filesystem/command policy for one workspace.

    allowed_paths hold resolved absolute roots. The per-user config directory
    is allowed in addition to these roots.
    """

    model_config = ConfigDict(populate_by_name=True)

    enabled: bool = True
    allowed_paths: list[Path] = Field(default_factory=list, alias="allowedPaths")
    blocked_commands: list[str] = Field(default_factory=list, alias="blockedCommands")


class ExternalToolServerConfig(BaseModel):
    """One configured external tool server."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    transport: str = "stdio"
    command: Optional[str] = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    enabled: bool = True


@dataclass(frozen=True)
class ExternalToolDescriptor:
    """A tool discovered on an external server."""

    server_name: str
    tool_name: str
    full_name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)
    dangerous: bool = False


@dataclass
class ToolInvocationRequest:
    """A tool call requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any]
    session_id: str
    parent_id: Optional[str] = None

    @property
    def is_actionable(self) -> bool:
        """False for calls whose name could not be recovered from model output."""
        return bool(self.name) and self.name != UNKNOWN_TOOL_NAME


@dataclass
class ToolResult:
    """Outcome of one tool invocation, always fed back to the model."""

    tool_call_id: str
    content: str
    is_error: bool = False

    def to_content_block(self) -> dict[str, Any]:
        """Render as an Anthropic-style tool_result content block."""
        block: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": self.tool_call_id,
            "content": self.content,
        }
        if self.is_error:
            block["is_error"] = True
        return block


@dataclass
class WorkspaceContext:
    """Everything a tool handler needs to know about where it runs."""

    session_id: str
    workspace_path: Optional[Path]
    policy: SandboxPolicy

    @property
    def cwd(self) -> Path:
        """Working directory for commands: workspace root, else process cwd."""
        if self.workspace_path is not None:
            return self.workspace_path
        return Path.cwd()
