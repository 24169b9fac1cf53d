"""
Edit - exact string replacement in a file.

The match must be unique unless replace_all is set.
"""
import logging
from typing import Any

from claude_agent_sdk import tool

from ..core.tool_schemas import BUILTIN_TOOL_SCHEMAS
from .common import ToolEnvironment, _error, _result

logger = logging.getLogger(__name__)

_SPEC = BUILTIN_TOOL_SCHEMAS["Edit"]


def create_edit_tool(env: ToolEnvironment):
    """Create the Edit tool bound to a workspace."""

    @tool("Edit", _SPEC["description"], _SPEC["input_schema"])
    async def edit(args: dict[str, Any]) -> dict[str, Any]:
        """Edit a file by replacing text."""
        file_path = args.get("file_path", "")
        old_string = args.get("old_string", "")
        new_string = args.get("new_string", "")
        replace_all = bool(args.get("replace_all", False))

        if not file_path:
            return _error("file_path is required")
        if not old_string:
            return _error("old_string is required")
        if old_string == new_string:
            return _error("old_string and new_string are identical")

        path = env.resolve_path(file_path, "Edit")
        if not path.exists():
            return _error(f"File not found: {file_path}")
        if path.is_dir():
            return _error(f"Cannot edit directory: {file_path}")

        content = path.read_text(encoding="utf-8")
        count = content.count(old_string)
        if count == 0:
            return _error(f"String not found in file: {old_string[:100]}")
        if count > 1 and not replace_all:
            return _error(
                f"String appears {count} times. Use replace_all: true "
                f"or provide a more specific old_string."
            )

        if replace_all:
            new_content = content.replace(old_string, new_string)
            replaced = count
        else:
            new_content = content.replace(old_string, new_string, 1)
            replaced = 1

        path.write_text(new_content, encoding="utf-8")

        logger.info(f"Edit: {replaced} replacement(s) in {path}")
        return _result(f"Successfully replaced {replaced} occurrence(s) in {file_path}")

    return edit
