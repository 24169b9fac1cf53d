"""
Tool schema surface, permission rules and danger classification.

Every tool offered to a backend is presented as
{name, description, input_schema: {type: "object", properties, required}}.
Built-in schemas are declared here once; the tool implementations in
agentrelay.tools register themselves with these exact schemas.
"""
import copy
import fnmatch
import logging
from enum import Enum
from typing import Any, Iterable, Optional

from .schemas import EXTERNAL_TOOL_PREFIX, BashPolicy, PermissionMode, PermissionRule

logger = logging.getLogger(__name__)

BUILTIN_DANGEROUS_TOOLS: frozenset[str] = frozenset({"Write", "Edit", "Bash", "NotebookEdit"})
READ_ONLY_TOOLS: frozenset[str] = frozenset({"Read", "Glob", "Grep", "WebFetch", "WebSearch"})


def _schema(properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {"type": "object", "properties": properties, "required": required}


BUILTIN_TOOL_SCHEMAS: dict[str, dict[str, Any]] = {
    "Read": {
        "description": (
            "Read a file from the workspace. Output is numbered like `cat -n`. "
            "Use offset and limit to page through large files."
        ),
        "input_schema": _schema(
            {
                "file_path": {"type": "string", "description": "Path to the file to read"},
                "offset": {
                    "type": "integer",
                    "description": "Line number to start reading from (1-indexed)",
                },
                "limit": {"type": "integer", "description": "Maximum number of lines to read"},
            },
            ["file_path"],
        ),
    },
    "Write": {
        "description": (
            "Create a file or overwrite an existing one with the given content. "
            "Prefer Edit for changes to existing files. Requires user approval."
        ),
        "input_schema": _schema(
            {
                "file_path": {"type": "string", "description": "Path of the file to write"},
                "content": {"type": "string", "description": "Complete file content"},
            },
            ["file_path", "content"],
        ),
    },
    "Edit": {
        "description": (
            "Replace an exact string in a file. old_string must match exactly, "
            "including whitespace, and must be unique unless replace_all is set. "
            "Requires user approval."
        ),
        "input_schema": _schema(
            {
                "file_path": {"type": "string", "description": "Path of the file to edit"},
                "old_string": {"type": "string", "description": "Exact text to replace"},
                "new_string": {"type": "string", "description": "Replacement text"},
                "replace_all": {
                    "type": "boolean",
                    "description": "Replace every occurrence instead of requiring a unique match",
                },
            },
            ["file_path", "old_string", "new_string"],
        ),
    },
    "Glob": {
        "description": (
            "Find files matching a glob pattern such as \"**/*.py\". "
            "Results are sorted by modification time, newest first."
        ),
        "input_schema": _schema(
            {
                "pattern": {"type": "string", "description": "Glob pattern to match"},
                "path": {
                    "type": "string",
                    "description": "Directory to search in (defaults to the workspace root)",
                },
            },
            ["pattern"],
        ),
    },
    "Grep": {
        "description": "Search file contents with a regular expression.",
        "input_schema": _schema(
            {
                "pattern": {"type": "string", "description": "Regular expression to search for"},
                "path": {
                    "type": "string",
                    "description": "File or directory to search (defaults to the workspace root)",
                },
                "output_mode": {
                    "type": "string",
                    "description": (
                        "\"content\" shows matching lines, \"files_with_matches\" shows "
                        "file paths, \"count\" shows match counts"
                    ),
                    "enum": ["content", "files_with_matches", "count"],
                },
                "glob": {"type": "string", "description": "Glob filter for file names, e.g. \"*.py\""},
                "case_insensitive": {"type": "boolean", "description": "Ignore case"},
                "context": {
                    "type": "integer",
                    "description": "Lines of context before and after each match",
                },
            },
            ["pattern"],
        ),
    },
    "Bash": {
        "description": (
            "Run a shell command in the workspace directory. Can modify files or "
            "run arbitrary code. Requires user approval."
        ),
        "input_schema": _schema(
            {
                "command": {"type": "string", "description": "Shell command to execute"},
                "timeout": {
                    "type": "integer",
                    "description": "Timeout in milliseconds (max 600000)",
                },
                "description": {
                    "type": "string",
                    "description": "Short description of what the command does",
                },
            },
            ["command"],
        ),
    },
    "WebFetch": {
        "description": "Fetch a URL and return its content as Markdown.",
        "input_schema": _schema(
            {
                "url": {"type": "string", "description": "http(s) URL to fetch"},
                "prompt": {
                    "type": "string",
                    "description": "What information to look for in the page",
                },
            },
            ["url"],
        ),
    },
    "WebSearch": {
        "description": "Search the web and return result titles, links and snippets.",
        "input_schema": _schema(
            {
                "query": {"type": "string", "description": "Search query"},
                "allowed_domains": {
                    "type": "array",
                    "description": "Only include results from these domains",
                    "items": {"type": "string"},
                },
                "blocked_domains": {
                    "type": "array",
                    "description": "Exclude results from these domains",
                    "items": {"type": "string"},
                },
            },
            ["query"],
        ),
    },
    "NotebookEdit": {
        "description": (
            "Replace, insert or delete a cell in a Jupyter notebook. "
            "Requires user approval."
        ),
        "input_schema": _schema(
            {
                "notebook_path": {"type": "string", "description": "Path to the .ipynb file"},
                "new_source": {"type": "string", "description": "New cell source"},
                "cell_id": {
                    "type": "string",
                    "description": "Cell id, or a 0-based cell index",
                },
                "cell_type": {
                    "type": "string",
                    "description": "Cell type for replaced or inserted cells",
                    "enum": ["code", "markdown"],
                },
                "edit_mode": {
                    "type": "string",
                    "description": "replace (default), insert or delete",
                    "enum": ["replace", "insert", "delete"],
                },
            },
            ["notebook_path", "new_source"],
        ),
    },
}

BUILTIN_TOOL_NAMES: tuple[str, ...] = tuple(BUILTIN_TOOL_SCHEMAS)


def builtin_tool_schemas() -> list[dict[str, Any]]:
    """Schema surface for every built-in tool."""
    return [
        {"name": name, "description": spec["description"], "input_schema": spec["input_schema"]}
        for name, spec in BUILTIN_TOOL_SCHEMAS.items()
    ]


def is_external_tool(name: str) -> bool:
    return name.startswith(EXTERNAL_TOOL_PREFIX)


def make_external_tool_name(server_name: str, tool_name: str) -> str:
    return f"{EXTERNAL_TOOL_PREFIX}{server_name}__{tool_name}"


def parse_external_tool_name(full_name: str) -> Optional[tuple[str, str]]:
    """
    Split "ns__<server>__<tool>" into (server, tool).

    The tool part may itself contain "__". Returns None for names without the
    external prefix or with an empty server or tool part.
    """
    if not is_external_tool(full_name):
        return None
    server, sep, tool = full_name[len(EXTERNAL_TOOL_PREFIX):].partition("__")
    if not sep or not server or not tool:
        return None
    return server, tool


def filter_tools(
    schemas: Iterable[dict[str, Any]],
    allowed: Optional[Iterable[str]] = None,
    disallowed: Optional[Iterable[str]] = None,
) -> list[dict[str, Any]]:
    """Apply session allow/deny lists. An empty allow list means everything."""
    allowed_set = set(allowed or [])
    disallowed_set = set(disallowed or [])
    result = []
    for schema in schemas:
        name = schema["name"]
        if allowed_set and name not in allowed_set:
            continue
        if name in disallowed_set:
            continue
        result.append(schema)
    return result


class ToolDecision(str, Enum):
    """Outcome of the permission check for one tool call."""

    ALLOW = "allow"
    DENY = "deny"
    ASK = "ask"
    DEFAULT = "default"


# Input field used for rule patterns, per tool; others try MATCH_FIELDS_FALLBACK
MATCH_FIELDS: dict[str, tuple[str, ...]] = {
    "Bash": ("command",),
    "Read": ("file_path", "path"),
    "Write": ("file_path", "path"),
    "Edit": ("file_path", "path"),
    "Glob": ("pattern",),
    "Grep": ("pattern",),
    "NotebookEdit": ("notebook_path",),
    "WebFetch": ("url",),
    "WebSearch": ("query",),
}
MATCH_FIELDS_FALLBACK: tuple[str, ...] = ("command", "file_path", "path", "query")


def _glob_match(pattern: str, value: str) -> bool:
    return pattern == "*" or fnmatch.fnmatchcase(value, pattern)


def extract_tool_input_for_matching(tool_name: str, arguments: Optional[dict[str, Any]]) -> Optional[str]:
    """The string a rule pattern is matched against, or None."""
    if not arguments:
        return None
    for key in MATCH_FIELDS.get(tool_name, MATCH_FIELDS_FALLBACK):
        value = arguments.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def evaluate_rules(
    rules: Iterable[PermissionRule],
    tool_name: str,
    tool_input: Optional[str] = None,
) -> ToolDecision:
    """
    Match rules against a tool call.

    A rule with a pattern only matches when there is input to match. Among
    matching rules deny wins over ask, and ask over allow. DEFAULT means no
    rule matched.
    """
    matched: set[str] = set()
    for rule in rules:
        if not _glob_match(rule.tool, tool_name):
            continue
        if rule.pattern and (not tool_input or not _glob_match(rule.pattern, tool_input)):
            continue
        matched.add(rule.type)

    for decision in (ToolDecision.DENY, ToolDecision.ASK, ToolDecision.ALLOW):
        if decision.value in matched:
            return decision
    return ToolDecision.DEFAULT


class DangerPolicy:
    """
    Decides whether a tool call runs, needs human approval, or is refused.

    Explicit permission rules are checked first, then the Bash policy, then
    the permission mode:

    - safe: dangerous tools ask, everything else runs
    - fast: read-only built-ins run, everything else asks
    - plan: dangerous tools are refused, everything else runs
    - unrestricted: everything runs

    Built-in tools are dangerous by a fixed set. External tools are classified
    by a substring heuristic on their raw (un-namespaced) name, which produces
    false positives for benign names like "update_view"; it is an approval
    prompt, not a security boundary. Swap in a subclass to change the rule.
    """

    def __init__(
        self,
        patterns: Optional[Iterable[str]] = None,
        builtin_dangerous: Iterable[str] = BUILTIN_DANGEROUS_TOOLS,
        *,
        rules: Iterable[PermissionRule] = (),
        mode: PermissionMode = "safe",
        bash_policy: BashPolicy = "auto",
    ) -> None:
        if patterns is None:
            patterns = ("write", "delete", "remove", "exec", "create", "update", "kill")
        self.patterns: tuple[str, ...] = tuple(p.lower() for p in patterns if p)
        self.builtin_dangerous: frozenset[str] = frozenset(builtin_dangerous)
        self.rules: tuple[PermissionRule, ...] = tuple(rules)
        self.mode: PermissionMode = mode
        self.bash_policy: BashPolicy = bash_policy

    def with_overrides(
        self,
        *,
        rules: Iterable[PermissionRule] = (),
        mode: Optional[PermissionMode] = None,
        bash_policy: Optional[BashPolicy] = None,
    ) -> "DangerPolicy":
        """Copy with extra rules appended and, when given, a different mode or Bash policy."""
        clone = copy.copy(self)
        clone.rules = self.rules + tuple(rules)
        clone.mode = mode or self.mode
        clone.bash_policy = bash_policy or self.bash_policy
        return clone

    def classify_external(self, raw_tool_name: str) -> bool:
        lowered = raw_tool_name.lower()
        return any(pattern in lowered for pattern in self.patterns)

    def is_dangerous(self, tool_name: str) -> bool:
        parsed = parse_external_tool_name(tool_name)
        if parsed is not None:
            return self.classify_external(parsed[1])
        return tool_name in self.builtin_dangerous

    def decide(self, tool_name: str, arguments: Optional[dict[str, Any]] = None) -> ToolDecision:
        """ALLOW, DENY or ASK for one call. Never returns DEFAULT."""
        tool_input = extract_tool_input_for_matching(tool_name, arguments)
        decision = evaluate_rules(self.rules, tool_name, tool_input)
        if decision is not ToolDecision.DEFAULT:
            return decision

        if tool_name == "Bash":
            if self.bash_policy == "off":
                return ToolDecision.DENY
            if self.bash_policy == "turbo":
                return ToolDecision.ALLOW

        if self.mode == "unrestricted":
            return ToolDecision.ALLOW
        if self.mode == "plan":
            return ToolDecision.DENY if self.is_dangerous(tool_name) else ToolDecision.ALLOW
        if self.mode == "fast":
            return ToolDecision.ALLOW if tool_name in READ_ONLY_TOOLS else ToolDecision.ASK
        return ToolDecision.ASK if self.is_dangerous(tool_name) else ToolDecision.ALLOW

    def requires_approval(self, tool_name: str, arguments: Optional[dict[str, Any]] = None) -> bool:
        return self.decide(tool_name, arguments) is ToolDecision.ASK
