"""
Shared plumbing for built-in tools.

Tool handlers return MCP-style result dicts:
    {"content": [{"type": "text", "text": ...}], "isError": True?}
Sandbox denials are raised as SandboxViolation and turned into error
results by the dispatcher.
"""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..config import ToolsConfig
from ..core.exceptions import SandboxViolation
from ..core.sandbox_policy import SandboxPolicyGuard
from ..core.schemas import WorkspaceContext

logger = logging.getLogger(__name__)


@dataclass
class ToolEnvironment:
    """Workspace, sandbox and limits a tool instance is bound to."""

    context: WorkspaceContext
    guard: SandboxPolicyGuard
    config: ToolsConfig = field(default_factory=ToolsConfig)

    @property
    def cwd(self) -> Path:
        return self.context.cwd

    def resolve_path(self, raw_path: str, tool_name: str) -> Path:
        """
        Resolve a model-supplied path against the workspace and check it.

        Raises:
            SandboxViolation: If the policy rejects the path.
        """
        candidate = Path(raw_path).expanduser()
        if not candidate.is_absolute():
            candidate = self.cwd / candidate
        verdict = self.guard.validate_path(candidate, self.context.policy)
        if not verdict.allowed or verdict.resolved is None:
            raise SandboxViolation(
                verdict.reason or f"Path could not be resolved: {raw_path}",
                tool_name=tool_name,
                target=raw_path,
            )
        return verdict.resolved

    def check_command(self, command: str, tool_name: str) -> None:
        """
        Raises:
            SandboxViolation: If the command matches a blocked pattern.
        """
        if self.guard.is_command_blocked(command, self.context.policy):
            raise SandboxViolation(
                f"Command blocked by sandbox policy: {command}",
                tool_name=tool_name,
                target=command,
            )

    def truncate(self, text: str) -> str:
        limit = self.config.max_output_chars
        if len(text) <= limit:
            return text
        return text[:limit] + f"\n\n... (output truncated, {len(text) - limit} more characters)"


def _result(text: str) -> dict[str, Any]:
    """Create a successful result response."""
    return {"content": [{"type": "text", "text": text}]}


def _error(message: str) -> dict[str, Any]:
    """Create an error response."""
    return {"content": [{"type": "text", "text": message}], "isError": True}


def result_text(result: dict[str, Any]) -> str:
    """Join the text blocks of a handler result."""
    parts = []
    for block in result.get("content") or []:
        if isinstance(block, dict) and block.get("type") == "text":
            parts.append(str(block.get("text", "")))
    return "\n".join(parts)
