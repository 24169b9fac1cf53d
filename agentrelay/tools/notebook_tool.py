"""
NotebookEdit - replace, insert or delete a Jupyter notebook cell.

cell_id may be a cell's `id` or a 0-based index. Without cell_id, replace
targets the first code cell and insert prepends.
"""
import json
import logging
import uuid
from typing import Any, Optional

from claude_agent_sdk import tool

from ..core.tool_schemas import BUILTIN_TOOL_SCHEMAS
from .common import ToolEnvironment, _error, _result

logger = logging.getLogger(__name__)

_SPEC = BUILTIN_TOOL_SCHEMAS["NotebookEdit"]

EDIT_MODES: frozenset[str] = frozenset({"replace", "insert", "delete"})


def _find_cell(cells: list[dict[str, Any]], cell_id: Optional[str]) -> Optional[int]:
    if cell_id is None or cell_id == "":
        for i, cell in enumerate(cells):
            if cell.get("cell_type") == "code":
                return i
        return None
    for i, cell in enumerate(cells):
        if cell.get("id") == cell_id:
            return i
    try:
        index = int(cell_id)
    except ValueError:
        return None
    return index if 0 <= index < len(cells) else None


def _source_lines(source: str) -> list[str]:
    return source.splitlines(keepends=True)


def _new_cell(cell_type: str, source: str) -> dict[str, Any]:
    cell: dict[str, Any] = {
        "cell_type": cell_type,
        "id": uuid.uuid4().hex[:8],
        "metadata": {},
        "source": _source_lines(source),
    }
    if cell_type == "code":
        cell["outputs"] = []
        cell["execution_count"] = None
    return cell


def create_notebook_edit_tool(env: ToolEnvironment):
    """Create the NotebookEdit tool bound to a workspace."""

    @tool("NotebookEdit", _SPEC["description"], _SPEC["input_schema"])
    async def notebook_edit(args: dict[str, Any]) -> dict[str, Any]:
        notebook_path = args.get("notebook_path", "")
        new_source = str(args.get("new_source") or "")
        cell_id = args.get("cell_id")
        cell_type = args.get("cell_type")
        edit_mode = args.get("edit_mode") or "replace"

        if not notebook_path:
            return _error("notebook_path is required")
        if edit_mode not in EDIT_MODES:
            return _error(f"Invalid edit_mode: {edit_mode}. Valid modes: delete, insert, replace")
        if cell_type not in (None, "code", "markdown"):
            return _error(f"Invalid cell_type: {cell_type}")

        path = env.resolve_path(notebook_path, "NotebookEdit")
        if not path.exists():
            return _error(f"Notebook not found: {notebook_path}")

        try:
            notebook = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            return _error(f"Invalid notebook JSON: {e}")
        cells = notebook.get("cells") if isinstance(notebook, dict) else None
        if not isinstance(cells, list):
            return _error("Invalid notebook format: missing cells array")

        cell_key = None if cell_id is None else str(cell_id)

        if edit_mode == "insert":
            if cell_key is None:
                position = 0
            else:
                found = _find_cell(cells, cell_key)
                if found is None:
                    return _error(f"Cell not found: {cell_key}")
                position = found + 1
            cells.insert(position, _new_cell(cell_type or "code", new_source))
            message = f"Inserted {cell_type or 'code'} cell at position {position}"
        else:
            index = _find_cell(cells, cell_key)
            if index is None:
                target = cell_key if cell_key is not None else "(first code cell)"
                return _error(f"Cell not found: {target}")
            if edit_mode == "delete":
                cells.pop(index)
                message = f"Deleted cell {index}"
            else:
                cell = cells[index]
                cell["source"] = _source_lines(new_source)
                if cell_type and cell_type != cell.get("cell_type"):
                    cell["cell_type"] = cell_type
                    if cell_type == "code":
                        cell.setdefault("outputs", [])
                        cell.setdefault("execution_count", None)
                    else:
                        cell.pop("outputs", None)
                        cell.pop("execution_count", None)
                if cell.get("cell_type") == "code":
                    cell["outputs"] = []
                    cell["execution_count"] = None
                message = f"Replaced cell {index}"

        path.write_text(json.dumps(notebook, indent=1, ensure_ascii=False) + "\n", encoding="utf-8")
        logger.info(f"NotebookEdit: {message} in {path}")
        return _result(f"{message} in {notebook_path}")

    return notebook_edit
