"""
Tests for the built-in tools.

Handlers are called directly, the way ToolDispatcher calls them. Network
tools are covered through their pure helpers only.
"""
import json
from pathlib import Path
from typing import Any
from unittest.mock import Mock

import pytest

from agentrelay.config import ToolsConfig
from agentrelay.core.exceptions import SandboxViolation
from agentrelay.core.sandbox_policy import PathVerdict, SandboxPolicyGuard
from agentrelay.core.schemas import WorkspaceContext
from agentrelay.tools import (
    TOOL_FACTORIES,
    ToolEnvironment,
    create_builtin_tool,
    create_builtin_tools,
    mcp_tool_name,
)
from agentrelay.tools.common import result_text
from agentrelay.tools.grep_tool import _expand_braces
from agentrelay.tools.webfetch_tool import html_to_markdown, validate_url
from agentrelay.tools.websearch_tool import parse_results


@pytest.fixture
def env(workspace: Path, guard: SandboxPolicyGuard) -> ToolEnvironment:
    context = WorkspaceContext(session_id="s1", workspace_path=workspace, policy=guard.resolve(workspace))
    return ToolEnvironment(context=context, guard=guard, config=ToolsConfig())


async def run_tool(env: ToolEnvironment, name: str, **args: Any) -> tuple[str, bool]:
    response = await create_builtin_tool(name, env).handler(args)
    return result_text(response), bool(response.get("isError"))


@pytest.mark.unit
def test_every_builtin_is_registered(env: ToolEnvironment) -> None:
    tools = create_builtin_tools(env)
    assert set(tools) == set(TOOL_FACTORIES)
    assert tools["Read"].name == "Read"
    assert mcp_tool_name("Read") == "mcp__agentrelay__Read"


@pytest.mark.unit
class TestReadTool:

    @pytest.mark.asyncio
    async def test_numbered_output(self, env: ToolEnvironment, workspace: Path) -> None:
        (workspace / "a.txt").write_text("alpha\nbeta\ngamma\n")
        text, is_error = await run_tool(env, "Read", file_path="a.txt")
        assert is_error is False
        assert text.splitlines() == ["     1\talpha", "     2\tbeta", "     3\tgamma"]

    @pytest.mark.asyncio
    async def test_offset_and_limit(self, env: ToolEnvironment, workspace: Path) -> None:
        (workspace / "a.txt").write_text("\n".join(f"line{i}" for i in range(1, 11)))
        text, _ = await run_tool(env, "Read", file_path="a.txt", offset=3, limit=2)
        assert text.startswith("     3\tline3\n     4\tline4")
        assert "(6 more lines)" in text

    @pytest.mark.asyncio
    async def test_missing_file(self, env: ToolEnvironment) -> None:
        text, is_error = await run_tool(env, "Read", file_path="nope.txt")
        assert is_error is True
        assert text == "File not found: nope.txt"

    @pytest.mark.asyncio
    async def test_binary_file(self, env: ToolEnvironment, workspace: Path) -> None:
        (workspace / "blob.bin").write_bytes(b"\x00\x01\x02")
        text, is_error = await run_tool(env, "Read", file_path="blob.bin")
        assert is_error is False
        assert text.startswith("Binary file detected (3 bytes)")

    @pytest.mark.asyncio
    async def test_outside_workspace_raises(self, env: ToolEnvironment, tmp_path: Path) -> None:
        secret = tmp_path / "secret.txt"
        secret.write_text("x")
        with pytest.raises(SandboxViolation, match="outside the sandbox"):
            await run_tool(env, "Read", file_path=str(secret))

    @pytest.mark.asyncio
    async def test_dotdot_escape_raises(self, env: ToolEnvironment) -> None:
        with pytest.raises(SandboxViolation):
            await run_tool(env, "Read", file_path="../outside.txt")

    @pytest.mark.asyncio
    async def test_user_config_dir_is_readable(self, env: ToolEnvironment, user_config_dir: Path) -> None:
        (user_config_dir / "notes.md").write_text("remember")
        text, is_error = await run_tool(env, "Read", file_path=str(user_config_dir / "notes.md"))
        assert is_error is False
        assert "remember" in text

    def test_unresolved_verdict_raises(self, env: ToolEnvironment) -> None:
        guard = Mock(spec=SandboxPolicyGuard)
        guard.validate_path.return_value = PathVerdict(allowed=True, path="a.txt", resolved=None)
        broken = ToolEnvironment(context=env.context, guard=guard, config=env.config)
        with pytest.raises(SandboxViolation, match="could not be resolved: a.txt"):
            broken.resolve_path("a.txt", "Read")


@pytest.mark.unit
class TestWriteAndEditTools:

    @pytest.mark.asyncio
    async def test_write_creates_parents(self, env: ToolEnvironment, workspace: Path) -> None:
        text, is_error = await run_tool(env, "Write", file_path="sub/dir/out.txt", content="hello")
        assert is_error is False
        assert text == "Successfully wrote 5 characters to sub/dir/out.txt"
        assert (workspace / "sub" / "dir" / "out.txt").read_text() == "hello"

    @pytest.mark.asyncio
    async def test_write_requires_content(self, env: ToolEnvironment) -> None:
        text, is_error = await run_tool(env, "Write", file_path="x.txt")
        assert is_error is True
        assert text == "content is required"

    @pytest.mark.asyncio
    async def test_edit_unique_match(self, env: ToolEnvironment, workspace: Path) -> None:
        target = workspace / "code.py"
        target.write_text("x = 1\ny = 2\n")
        text, is_error = await run_tool(env, "Edit", file_path="code.py", old_string="y = 2", new_string="y = 3")
        assert is_error is False
        assert "1 occurrence" in text
        assert target.read_text() == "x = 1\ny = 3\n"

    @pytest.mark.asyncio
    async def test_edit_ambiguous_match(self, env: ToolEnvironment, workspace: Path) -> None:
        target = workspace / "code.py"
        target.write_text("a\na\n")
        text, is_error = await run_tool(env, "Edit", file_path="code.py", old_string="a", new_string="b")
        assert is_error is True
        assert "appears 2 times" in text
        assert target.read_text() == "a\na\n"

    @pytest.mark.asyncio
    async def test_edit_replace_all(self, env: ToolEnvironment, workspace: Path) -> None:
        target = workspace / "code.py"
        target.write_text("a\na\n")
        text, is_error = await run_tool(
            env, "Edit", file_path="code.py", old_string="a", new_string="b", replace_all=True
        )
        assert is_error is False
        assert target.read_text() == "b\nb\n"

    @pytest.mark.asyncio
    async def test_edit_not_found(self, env: ToolEnvironment, workspace: Path) -> None:
        (workspace / "code.py").write_text("abc")
        text, is_error = await run_tool(env, "Edit", file_path="code.py", old_string="zzz", new_string="y")
        assert is_error is True
        assert text.startswith("String not found in file")


@pytest.mark.unit
class TestSearchTools:

    @pytest.fixture
    def tree(self, workspace: Path) -> Path:
        (workspace / "src").mkdir()
        (workspace / "src" / "main.py").write_text("import os\nprint('TODO: fix')\n")
        (workspace / "src" / "util.ts").write_text("// TODO later\n")
        (workspace / "README.md").write_text("no markers here\n")
        (workspace / ".git").mkdir()
        (workspace / ".git" / "HEAD").write_text("TODO in git\n")
        return workspace

    @pytest.mark.asyncio
    async def test_glob(self, env: ToolEnvironment, tree: Path) -> None:
        text, is_error = await run_tool(env, "Glob", pattern="**/*.py")
        assert is_error is False
        assert text.splitlines() == [str(tree / "src" / "main.py")]

    @pytest.mark.asyncio
    async def test_glob_no_match(self, env: ToolEnvironment, tree: Path) -> None:
        text, _ = await run_tool(env, "Glob", pattern="*.rs")
        assert text == "No files found matching pattern: *.rs"

    @pytest.mark.asyncio
    async def test_glob_rejects_absolute_pattern(self, env: ToolEnvironment) -> None:
        _, is_error = await run_tool(env, "Glob", pattern="/etc/*")
        assert is_error is True

    @pytest.mark.asyncio
    async def test_grep_files_with_matches_skips_git(self, env: ToolEnvironment, tree: Path) -> None:
        text, _ = await run_tool(env, "Grep", pattern="TODO")
        assert sorted(text.splitlines()) == sorted([str(tree / "src" / "main.py"), str(tree / "src" / "util.ts")])

    @pytest.mark.asyncio
    async def test_grep_content_mode(self, env: ToolEnvironment, tree: Path) -> None:
        text, _ = await run_tool(env, "Grep", pattern="todo", output_mode="content",
                                 case_insensitive=True, glob="*.py")
        assert text == f"{tree / 'src' / 'main.py'}:2:print('TODO: fix')"

    @pytest.mark.asyncio
    async def test_grep_count_with_brace_glob(self, env: ToolEnvironment, tree: Path) -> None:
        text, _ = await run_tool(env, "Grep", pattern="TODO", output_mode="count", glob="*.{py,ts}")
        assert sorted(text.splitlines()) == sorted([
            f"{tree / 'src' / 'main.py'}:1",
            f"{tree / 'src' / 'util.ts'}:1",
        ])

    @pytest.mark.asyncio
    async def test_grep_invalid_regex(self, env: ToolEnvironment) -> None:
        text, is_error = await run_tool(env, "Grep", pattern="(unclosed")
        assert is_error is True
        assert text.startswith("Invalid regex pattern")

    @pytest.mark.asyncio
    async def test_grep_skips_symlink_leaving_workspace(
        self, env: ToolEnvironment, tree: Path, tmp_path: Path
    ) -> None:
        secret = tmp_path / "secret.txt"
        secret.write_text("TODO: leaked\n")
        (tree / "src" / "link.txt").symlink_to(secret)
        text, _ = await run_tool(env, "Grep", pattern="leaked", output_mode="content")
        assert text == "No matches found"

    def test_expand_braces(self) -> None:
        assert _expand_braces("*.{ts,tsx}") == ["*.ts", "*.tsx"]
        assert _expand_braces("*.py") == ["*.py"]


@pytest.mark.unit
class TestBashTool:

    @pytest.mark.asyncio
    async def test_runs_in_workspace(self, env: ToolEnvironment, workspace: Path) -> None:
        text, is_error = await run_tool(env, "Bash", command="pwd")
        assert is_error is False
        assert text.strip() == str(workspace)

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, env: ToolEnvironment) -> None:
        text, is_error = await run_tool(env, "Bash", command="echo oops >&2; exit 3")
        assert is_error is True
        assert text == "Command failed with exit code 3:\noops"

    @pytest.mark.asyncio
    async def test_blocked_command(self, env: ToolEnvironment) -> None:
        with pytest.raises(SandboxViolation, match="Command blocked"):
            await run_tool(env, "Bash", command="rm -rf / --no-preserve-root")

    @pytest.mark.asyncio
    async def test_timeout(self, env: ToolEnvironment) -> None:
        text, is_error = await run_tool(env, "Bash", command="sleep 5", timeout=100)
        assert is_error is True
        assert "exit code 124" in text
        assert "timed out" in text

    @pytest.mark.asyncio
    async def test_empty_output(self, env: ToolEnvironment) -> None:
        text, _ = await run_tool(env, "Bash", command="true")
        assert text == "(command completed with no output)"


@pytest.mark.unit
class TestNotebookEditTool:

    @pytest.fixture
    def notebook(self, workspace: Path) -> Path:
        path = workspace / "nb.ipynb"
        path.write_text(json.dumps({
            "cells": [
                {"cell_type": "markdown", "id": "intro", "metadata": {}, "source": ["# Title\n"]},
                {"cell_type": "code", "id": "c1", "metadata": {}, "source": ["x = 1\n"],
                 "outputs": [{"output_type": "stream", "text": "1"}], "execution_count": 3},
            ],
            "metadata": {},
            "nbformat": 4,
            "nbformat_minor": 5,
        }))
        return path

    @pytest.mark.asyncio
    async def test_replace_first_code_cell(self, env: ToolEnvironment, notebook: Path) -> None:
        text, is_error = await run_tool(env, "NotebookEdit", notebook_path="nb.ipynb", new_source="x = 2\n")
        assert is_error is False
        assert text == "Replaced cell 1 in nb.ipynb"
        cell = json.loads(notebook.read_text())["cells"][1]
        assert cell["source"] == ["x = 2\n"]
        assert cell["outputs"] == []
        assert cell["execution_count"] is None

    @pytest.mark.asyncio
    async def test_insert_after_cell(self, env: ToolEnvironment, notebook: Path) -> None:
        await run_tool(env, "NotebookEdit", notebook_path="nb.ipynb", new_source="## Notes",
                       cell_id="intro", cell_type="markdown", edit_mode="insert")
        cells = json.loads(notebook.read_text())["cells"]
        assert [c["cell_type"] for c in cells] == ["markdown", "markdown", "code"]
        assert cells[1]["source"] == ["## Notes"]

    @pytest.mark.asyncio
    async def test_delete_by_index(self, env: ToolEnvironment, notebook: Path) -> None:
        await run_tool(env, "NotebookEdit", notebook_path="nb.ipynb", cell_id="0", edit_mode="delete")
        cells = json.loads(notebook.read_text())["cells"]
        assert [c["id"] for c in cells] == ["c1"]

    @pytest.mark.asyncio
    async def test_unknown_cell(self, env: ToolEnvironment, notebook: Path) -> None:
        text, is_error = await run_tool(env, "NotebookEdit", notebook_path="nb.ipynb",
                                        cell_id="missing", new_source="")
        assert is_error is True
        assert text == "Cell not found: missing"


@pytest.mark.unit
class TestWebHelpers:
    """Pure helpers of WebFetch and WebSearch (no network)."""

    @pytest.mark.parametrize("url,fragment", [
        ("ftp://example.com/file", "Invalid protocol"),
        ("http://localhost:8000/", "Domain blocked"),
        ("http://169.254.169.254/latest/meta-data", "Domain blocked"),
        ("http://10.0.0.5/", "private IP"),
        ("http://127.0.0.1/", "private IP"),
        ("https:///nohost", "missing hostname"),
    ])
    def test_validate_url_rejects(self, url: str, fragment: str) -> None:
        reason = validate_url(url)
        assert reason is not None
        assert fragment in reason

    def test_html_to_markdown(self) -> None:
        html = (
            "<html><head><style>body{}</style><script>evil()</script></head><body>"
            "<h1>Title</h1><p>Some <strong>bold</strong> and <a href=\"https://x.org\">a link</a>.</p>"
            "<ul><li>one</li><li>two</li></ul></body></html>"
        )
        markdown = html_to_markdown(html)
        assert markdown.startswith("# Title")
        assert "**bold**" in markdown
        assert "[a link](https://x.org)" in markdown
        assert "- one" in markdown
        assert "evil" not in markdown
        assert "body{}" not in markdown

    def test_parse_results(self) -> None:
        page = (
            '<a rel="nofollow" class="result__a" '
            'href="//duckduckgo.com/l/?uddg=https%3A%2F%2Fdocs.python.org%2F3%2F&amp;rut=x">'
            "Python <b>docs</b></a>"
            '<a class="result__snippet" href="#">The official &amp; complete docs</a>'
        )
        results = parse_results(page)
        assert results == [{
            "title": "Python docs",
            "url": "https://docs.python.org/3/",
            "snippet": "The official & complete docs",
        }]
