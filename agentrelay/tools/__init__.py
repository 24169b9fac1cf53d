"""
Built-in tools.

Each tool is created with claude_agent_sdk's @tool decorator and bound to a
ToolEnvironment (workspace context, sandbox guard, limits). The dispatcher
calls the handlers directly; the SDK backend serves the same tools through
an in-process MCP server so the sandbox applies there as well.
"""
import dataclasses
import logging
from typing import Any, Callable

from claude_agent_sdk import SdkMcpTool, create_sdk_mcp_server

from .bash_tool import create_bash_tool
from .common import ToolEnvironment, _error
from .edit_tool import create_edit_tool
from .glob_tool import create_glob_tool
from .grep_tool import create_grep_tool
from .notebook_tool import create_notebook_edit_tool
from .read_tool import create_read_tool
from .webfetch_tool import create_webfetch_tool
from .websearch_tool import create_websearch_tool
from .write_tool import create_write_tool

logger = logging.getLogger(__name__)

BUILTIN_SERVER_NAME: str = "agentrelay"

TOOL_FACTORIES: dict[str, Callable[[ToolEnvironment], Any]] = {
    "Read": create_read_tool,
    "Write": create_write_tool,
    "Edit": create_edit_tool,
    "Glob": create_glob_tool,
    "Grep": create_grep_tool,
    "Bash": create_bash_tool,
    "WebFetch": create_webfetch_tool,
    "WebSearch": create_websearch_tool,
    "NotebookEdit": create_notebook_edit_tool,
}


def create_builtin_tools(env: ToolEnvironment) -> dict[str, SdkMcpTool]:
    """Instantiate every built-in tool for one workspace, keyed by tool name."""
    return {name: factory(env) for name, factory in TOOL_FACTORIES.items()}


def create_builtin_tool(name: str, env: ToolEnvironment) -> SdkMcpTool:
    """Instantiate a single built-in tool. Raises KeyError for unknown names."""
    return TOOL_FACTORIES[name](env)


def _never_raise(sdk_tool: SdkMcpTool) -> SdkMcpTool:
    """Wrap a handler so sandbox denials and I/O failures become error results."""
    handler = sdk_tool.handler

    async def guarded(args: dict[str, Any]) -> dict[str, Any]:
        try:
            return await handler(args)
        except Exception as e:
            logger.warning(f"{sdk_tool.name}: {e}")
            return _error(str(e) or f"Error executing {sdk_tool.name}")

    return dataclasses.replace(sdk_tool, handler=guarded)


def create_builtin_mcp_server(env: ToolEnvironment, version: str = "1.0.0"):
    """
    Serve the built-in tools as an in-process MCP server.

    Returns:
        McpSdkServerConfig for ClaudeAgentOptions.mcp_servers. Tools appear
        to the model as mcp__agentrelay__<Name>.
    """
    tools = [_never_raise(t) for t in create_builtin_tools(env).values()]
    logger.info(
        f"Created {BUILTIN_SERVER_NAME} MCP server with {len(tools)} tools "
        f"for session {env.context.session_id}"
    )
    return create_sdk_mcp_server(name=BUILTIN_SERVER_NAME, version=version, tools=tools)


def mcp_tool_name(name: str) -> str:
    return f"mcp__{BUILTIN_SERVER_NAME}__{name}"


__all__ = [
    "BUILTIN_SERVER_NAME",
    "TOOL_FACTORIES",
    "ToolEnvironment",
    "create_builtin_mcp_server",
    "create_builtin_tool",
    "create_builtin_tools",
    "mcp_tool_name",
]
