"""
Grep - regex search over workspace files.

Output modes follow ripgrep: files_with_matches (default), content
(path:line:text with optional context) and count (path:n).
"""
import asyncio
import fnmatch
import logging
import re
from pathlib import Path
from typing import Any, Iterator, Optional

from claude_agent_sdk import tool

from ..core.tool_schemas import BUILTIN_TOOL_SCHEMAS
from .common import ToolEnvironment, _error, _result

logger = logging.getLogger(__name__)

_SPEC = BUILTIN_TOOL_SCHEMAS["Grep"]

OUTPUT_MODES: frozenset[str] = frozenset({"content", "files_with_matches", "count"})

# Directories never worth searching
SKIP_DIRS: frozenset[str] = frozenset({".git", "node_modules", "__pycache__", ".venv", "venv"})


def _expand_braces(pattern: str) -> list[str]:
    """Expand a single {a,b} group, as in "*.{ts,tsx}"."""
    match = re.search(r"\{([^{}]*)\}", pattern)
    if not match:
        return [pattern]
    head, tail = pattern[: match.start()], pattern[match.end():]
    expanded = []
    for option in match.group(1).split(","):
        expanded.extend(_expand_braces(head + option + tail))
    return expanded


def _iter_files(root: Path, name_globs: Optional[list[str]]) -> Iterator[Path]:
    if root.is_file():
        yield root
        return
    for path in sorted(root.rglob("*")):
        if any(part in SKIP_DIRS for part in path.relative_to(root).parts):
            continue
        if not path.is_file():
            continue
        if name_globs and not any(
            fnmatch.fnmatch(path.name, g) or fnmatch.fnmatch(str(path.relative_to(root)), g)
            for g in name_globs
        ):
            continue
        yield path


def create_grep_tool(env: ToolEnvironment):
    """Create the Grep tool bound to a workspace."""
    max_results = env.config.grep_max_results

    def _search(
        root: Path,
        regex: re.Pattern,
        output_mode: str,
        name_globs: Optional[list[str]],
        context: int,
    ) -> tuple[list[str], int]:
        policy = env.context.policy
        lines_out: list[str] = []
        total = 0
        for file_path in _iter_files(root, name_globs):
            if total >= max_results:
                break
            # Symlinks may point outside the sandbox
            if not env.guard.validate_path(file_path, policy).allowed:
                continue
            try:
                with open(file_path, "rb") as f:
                    if b"\x00" in f.read(8192):
                        continue
                lines = file_path.read_text(encoding="utf-8", errors="replace").splitlines()
            except OSError:
                continue

            hits = [i for i, line in enumerate(lines) if regex.search(line)]
            if not hits:
                continue
            total += len(hits)

            if output_mode == "files_with_matches":
                lines_out.append(str(file_path))
            elif output_mode == "count":
                lines_out.append(f"{file_path}:{len(hits)}")
            else:
                hit_set = set(hits)
                shown: set[int] = set()
                for hit in hits:
                    start = max(0, hit - context)
                    end = min(len(lines), hit + context + 1)
                    if context and shown and start > max(shown) + 1:
                        lines_out.append("--")
                    for n in range(start, end):
                        if n in shown:
                            continue
                        shown.add(n)
                        sep = ":" if n in hit_set else "-"
                        lines_out.append(f"{file_path}{sep}{n + 1}{sep}{lines[n]}")
        return lines_out, total

    @tool("Grep", _SPEC["description"], _SPEC["input_schema"])
    async def grep(args: dict[str, Any]) -> dict[str, Any]:
        """Search for a pattern in files."""
        pattern = args.get("pattern", "")
        base_path = args.get("path") or "."
        output_mode = args.get("output_mode") or "files_with_matches"
        glob_filter = args.get("glob")
        case_insensitive = bool(args.get("case_insensitive", False))
        context = int(args.get("context") or 0)

        if not pattern:
            return _error("pattern is required")
        if output_mode not in OUTPUT_MODES:
            return _error(
                f"Invalid output_mode: {output_mode}. Valid modes: {', '.join(sorted(OUTPUT_MODES))}"
            )

        try:
            regex = re.compile(pattern, re.IGNORECASE if case_insensitive else 0)
        except re.error as e:
            return _error(f"Invalid regex pattern: {e}")

        root = env.resolve_path(base_path, "Grep")
        if not root.exists():
            return _error(f"Path not found: {base_path}")

        name_globs = _expand_braces(glob_filter) if glob_filter else None
        lines_out, total = await asyncio.to_thread(
            _search, root, regex, output_mode, name_globs, max(0, context)
        )

        logger.info(f"Grep: {total} matches for '{pattern}' under {root}")

        if not lines_out:
            return _result("No matches found")

        output = "\n".join(lines_out)
        if total >= max_results:
            output += f"\n\n... (stopped after {max_results} matches)"
        return _result(env.truncate(output))

    return grep
