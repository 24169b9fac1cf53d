"""
Read - sandboxed file reading.

Output is numbered like `cat -n`. Binary files are reported, not dumped.
"""
import logging
from typing import Any

from claude_agent_sdk import tool

from ..core.tool_schemas import BUILTIN_TOOL_SCHEMAS
from .common import ToolEnvironment, _error, _result

logger = logging.getLogger(__name__)

_SPEC = BUILTIN_TOOL_SCHEMAS["Read"]


def create_read_tool(env: ToolEnvironment):
    """
    Create the Read tool bound to a workspace.

    Args:
        env: Workspace context, sandbox guard and limits.

    Returns:
        Tool function decorated with @tool.
    """

    @tool("Read", _SPEC["description"], _SPEC["input_schema"])
    async def read(args: dict[str, Any]) -> dict[str, Any]:
        """Read file contents with line numbers."""
        file_path = args.get("file_path", "")
        offset = args.get("offset") or 1
        limit = args.get("limit")

        if not file_path:
            return _error("file_path is required")

        path = env.resolve_path(file_path, "Read")

        if not path.exists():
            return _error(f"File not found: {file_path}")
        if path.is_dir():
            return _error(f"Cannot read directory: {file_path}. Use Glob to list files.")

        with open(path, "rb") as f:
            chunk = f.read(8192)
        if b"\x00" in chunk:
            size = path.stat().st_size
            return _result(f"Binary file detected ({size} bytes). Cannot display contents.")

        lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
        total_lines = len(lines)

        start_idx = max(0, int(offset) - 1)
        end_idx = start_idx + int(limit) if limit else total_lines
        selected = lines[start_idx:end_idx]

        output = "\n".join(
            f"{number:6}\t{line}" for number, line in enumerate(selected, start=start_idx + 1)
        )
        if limit and end_idx < total_lines:
            output += f"\n\n... ({total_lines - end_idx} more lines)"
        if not selected:
            output = f"(no lines in range; file has {total_lines} lines)"

        logger.info(f"Read: {len(selected)} lines from {path}")
        return _result(env.truncate(output))

    return read
