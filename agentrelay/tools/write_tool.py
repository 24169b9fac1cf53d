"""
Write - create or overwrite a file inside the sandbox.
"""
import logging
from typing import Any

from claude_agent_sdk import tool

from ..core.tool_schemas import BUILTIN_TOOL_SCHEMAS
from .common import ToolEnvironment, _error, _result

logger = logging.getLogger(__name__)

_SPEC = BUILTIN_TOOL_SCHEMAS["Write"]


def create_write_tool(env: ToolEnvironment):
    """Create the Write tool bound to a workspace."""

    @tool("Write", _SPEC["description"], _SPEC["input_schema"])
    async def write(args: dict[str, Any]) -> dict[str, Any]:
        file_path = args.get("file_path", "")
        content = args.get("content")

        if not file_path:
            return _error("file_path is required")
        if content is None:
            return _error("content is required")
        content = str(content)

        path = env.resolve_path(file_path, "Write")
        if path.is_dir():
            return _error(f"Cannot write to directory: {file_path}")

        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")

        logger.info(f"Write: {len(content)} characters to {path}")
        return _result(f"Successfully wrote {len(content)} characters to {file_path}")

    return write
