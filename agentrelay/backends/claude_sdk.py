"""
Claude Agent SDK backend.

Keeps one ClaudeSDKClient connected for the life of the session and sends
each user message with query(). When a ToolEnvironment is supplied, the
built-in tools are served in-process through an SDK MCP server so they run
under the sandbox guard, and the SDK's native equivalents are disallowed.
"""
import logging
from typing import Any, AsyncIterator, Optional

from claude_agent_sdk import ClaudeAgentOptions, ClaudeSDKClient, ClaudeSDKError

from ..config import BackendsConfig
from ..core.exceptions import BackendError
from ..core.schemas import SessionOptions
from ..core.tool_schemas import BUILTIN_TOOL_NAMES
from ..tools import BUILTIN_SERVER_NAME, ToolEnvironment, create_builtin_mcp_server, mcp_tool_name
from .base import AgentBackend, TurnContext

logger = logging.getLogger(__name__)


def build_sdk_options(
    options: SessionOptions,
    resume_id: Optional[str] = None,
    tool_env: Optional[ToolEnvironment] = None,
) -> ClaudeAgentOptions:
    """Translate session options into ClaudeAgentOptions."""
    allowed = list(options.allowed_tools)
    disallowed = list(options.disallowed_tools)
    mcp_servers: dict[str, Any] = {}

    if tool_env is not None:
        mcp_servers[BUILTIN_SERVER_NAME] = create_builtin_mcp_server(tool_env)
        disallowed += [name for name in BUILTIN_TOOL_NAMES if name not in disallowed]
        if allowed:
            allowed = [mcp_tool_name(n) if n in BUILTIN_TOOL_NAMES else n for n in allowed]
        else:
            allowed = [mcp_tool_name(n) for n in BUILTIN_TOOL_NAMES]

    extra_args: dict[str, Optional[str]] = {}
    if options.effort:
        extra_args["effort"] = options.effort
    if options.max_budget_usd is not None:
        extra_args["max-budget-usd"] = str(options.max_budget_usd)

    return ClaudeAgentOptions(
        system_prompt=options.system_prompt,
        model=options.model,
        max_turns=options.max_turns,
        allowed_tools=allowed,
        disallowed_tools=disallowed,
        mcp_servers=mcp_servers,
        cwd=str(options.workspace_path) if options.workspace_path else None,
        resume=resume_id,
        permission_mode="bypassPermissions",
        extra_args=extra_args,
    )


class ClaudeSdkBackend(AgentBackend):
    kind = "claude-sdk"
    handles_tools = True

    def __init__(
        self,
        config: Optional[BackendsConfig] = None,
        tool_env: Optional[ToolEnvironment] = None,
    ) -> None:
        self._config = config or BackendsConfig()
        self._tool_env = tool_env
        self._client: Optional[ClaudeSDKClient] = None

    async def _ensure_client(self, turn: TurnContext) -> ClaudeSDKClient:
        if self._client is None:
            options = build_sdk_options(turn.options, turn.resume_id, self._tool_env)
            client = ClaudeSDKClient(options=options)
            try:
                await client.connect()
            except ClaudeSDKError as e:
                raise BackendError(f"Failed to connect Claude SDK client: {e}", backend=self.kind) from e
            logger.info(f"CLAUDE_SDK: Connected (resume={turn.resume_id}, model={turn.options.model})")
            self._client = client
        return self._client

    async def stream_turn(self, turn: TurnContext) -> AsyncIterator[Any]:
        client = await self._ensure_client(turn)
        try:
            await client.query(turn.prompt)
            async for message in client.receive_response():
                yield message
        except ClaudeSDKError as e:
            raise BackendError(f"Claude SDK error: {e}", backend=self.kind) from e

    async def interrupt(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.interrupt()
        except ClaudeSDKError as e:
            logger.warning(f"CLAUDE_SDK: Interrupt failed: {e}")

    async def aclose(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await client.disconnect()
        except ClaudeSDKError as e:
            logger.warning(f"CLAUDE_SDK: Disconnect failed: {e}")
