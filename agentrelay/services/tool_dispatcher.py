"""
Tool execution dispatcher.

Routes a tool call by name:
- built-in names (Read, Write, Edit, ...) -> the @tool handler bound to the
  session's workspace
- ns__<server>__<tool> -> ExternalToolRegistry
- anything else -> "Unknown tool: <name>"

execute() never raises. Sandbox denials come back with the guard's reason,
every other failure as "Error executing <name>: <message>".
"""
import logging
import time
from typing import Any, Optional

from ..config import ToolsConfig
from ..core.exceptions import SandboxViolation
from ..core.sandbox_policy import SandboxPolicyGuard
from ..core.schemas import ToolInvocationRequest, ToolResult, WorkspaceContext
from ..core.tool_schemas import BUILTIN_TOOL_NAMES, is_external_tool
from ..tools import ToolEnvironment, create_builtin_tool
from ..tools.common import result_text
from .external_tools import ExternalToolRegistry

logger = logging.getLogger(__name__)


class ToolDispatcher:
    """
    Executes tool calls for the orchestrator.

    One dispatcher is shared by all sessions; per-call state (workspace,
    policy) travels in the WorkspaceContext.
    """

    def __init__(
        self,
        registry: Optional[ExternalToolRegistry] = None,
        guard: Optional[SandboxPolicyGuard] = None,
        tools_config: Optional[ToolsConfig] = None,
    ) -> None:
        self.registry = registry or ExternalToolRegistry()
        self.guard = guard or SandboxPolicyGuard()
        self.tools_config = tools_config or ToolsConfig()

    async def execute(
        self,
        name: str,
        arguments: Optional[dict[str, Any]],
        context: WorkspaceContext,
        tool_call_id: str = "",
    ) -> ToolResult:
        """Run one tool and return its result."""
        arguments = arguments or {}
        started = time.monotonic()
        try:
            if name in BUILTIN_TOOL_NAMES:
                result = await self._execute_builtin(name, arguments, context, tool_call_id)
            elif is_external_tool(name):
                result = await self.registry.execute_tool(name, arguments, tool_call_id=tool_call_id)
            else:
                logger.warning(f"DISPATCH: Unknown tool requested: {name}")
                result = ToolResult(tool_call_id=tool_call_id, content=f"Unknown tool: {name}", is_error=True)
        except SandboxViolation as e:
            logger.warning(f"SANDBOX: Denied {name} in session {context.session_id}: {e}")
            result = ToolResult(tool_call_id=tool_call_id, content=str(e), is_error=True)
        except Exception as e:
            logger.error(f"DISPATCH: {name} raised {type(e).__name__}: {e}")
            result = ToolResult(
                tool_call_id=tool_call_id,
                content=f"Error executing {name}: {e}",
                is_error=True,
            )

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"DISPATCH: {name} ({tool_call_id or '-'}) finished in {elapsed_ms}ms "
            f"(is_error={result.is_error})"
        )
        return result

    async def execute_request(self, request: ToolInvocationRequest, context: WorkspaceContext) -> ToolResult:
        return await self.execute(request.name, request.arguments, context, tool_call_id=request.id)

    async def _execute_builtin(
        self,
        name: str,
        arguments: dict[str, Any],
        context: WorkspaceContext,
        tool_call_id: str,
    ) -> ToolResult:
        env = ToolEnvironment(context=context, guard=self.guard, config=self.tools_config)
        sdk_tool = create_builtin_tool(name, env)
        response = await sdk_tool.handler(arguments)
        return ToolResult(
            tool_call_id=tool_call_id,
            content=result_text(response),
            is_error=bool(response.get("isError")),
        )
