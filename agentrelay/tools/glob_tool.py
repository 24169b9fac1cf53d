"""
Glob - find files by pattern inside the sandbox.

Results are sorted newest first. Matches that escape the sandbox through
".." segments in the pattern are dropped.
"""
import asyncio
import logging
from pathlib import Path
from typing import Any

from claude_agent_sdk import tool

from ..core.tool_schemas import BUILTIN_TOOL_SCHEMAS
from .common import ToolEnvironment, _error, _result

logger = logging.getLogger(__name__)

_SPEC = BUILTIN_TOOL_SCHEMAS["Glob"]


def _mtime(path: Path) -> float:
    try:
        return path.stat().st_mtime
    except OSError:
        return 0.0


def create_glob_tool(env: ToolEnvironment):
    """Create the Glob tool bound to a workspace."""
    max_results = env.config.glob_max_results

    def _search(search_path: Path, pattern: str) -> list[Path]:
        policy = env.context.policy
        files = [
            match
            for match in search_path.glob(pattern)
            if match.is_file() and env.guard.validate_path(match, policy).allowed
        ]
        files.sort(key=_mtime, reverse=True)
        return files

    @tool("Glob", _SPEC["description"], _SPEC["input_schema"])
    async def glob(args: dict[str, Any]) -> dict[str, Any]:
        """Find files matching a glob pattern."""
        pattern = args.get("pattern", "")
        base_path = args.get("path") or "."

        if not pattern:
            return _error("pattern is required")
        if Path(pattern).is_absolute():
            return _error("pattern must be relative; pass the directory as path")

        search_path = env.resolve_path(base_path, "Glob")
        if not search_path.exists():
            return _error(f"Directory not found: {base_path}")
        if not search_path.is_dir():
            return _error(f"Not a directory: {base_path}")

        try:
            files = await asyncio.to_thread(_search, search_path, pattern)
        except ValueError as e:
            return _error(f"Invalid glob pattern: {e}")

        logger.info(f"Glob: {len(files)} files matching '{pattern}' under {search_path}")

        if not files:
            return _result(f"No files found matching pattern: {pattern}")

        output = "\n".join(str(f) for f in files[:max_results])
        if len(files) > max_results:
            output += f"\n\n... (showing first {max_results} of {len(files)} files)"
        return _result(output)

    return glob
