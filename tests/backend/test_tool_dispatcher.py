"""
Tests for ToolDispatcher routing and error mapping.
"""
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from agentrelay.core.sandbox_policy import SandboxPolicyGuard
from agentrelay.core.schemas import ToolInvocationRequest, ToolResult, WorkspaceContext
from agentrelay.services.external_tools import ExternalToolRegistry
from agentrelay.services.tool_dispatcher import ToolDispatcher


@pytest.fixture
def context(workspace: Path, guard: SandboxPolicyGuard) -> WorkspaceContext:
    return WorkspaceContext(session_id="s1", workspace_path=workspace, policy=guard.resolve(workspace))


@pytest.fixture
def registry() -> ExternalToolRegistry:
    return ExternalToolRegistry(servers=[])


@pytest.fixture
def dispatcher(registry: ExternalToolRegistry, guard: SandboxPolicyGuard) -> ToolDispatcher:
    return ToolDispatcher(registry, guard)


@pytest.mark.unit
class TestRouting:
    """Names route to built-ins, external servers or nowhere."""

    @pytest.mark.asyncio
    async def test_builtin(self, dispatcher: ToolDispatcher, context: WorkspaceContext, workspace: Path) -> None:
        (workspace / "hello.txt").write_text("hi\n")
        result = await dispatcher.execute("Read", {"file_path": "hello.txt"}, context, tool_call_id="t1")
        assert result == ToolResult(tool_call_id="t1", content="     1\thi", is_error=False)

    @pytest.mark.asyncio
    async def test_builtin_error_result(self, dispatcher: ToolDispatcher, context: WorkspaceContext) -> None:
        result = await dispatcher.execute("Read", {"file_path": "missing.txt"}, context)
        assert result.is_error is True
        assert result.content == "File not found: missing.txt"

    @pytest.mark.asyncio
    async def test_external_goes_to_registry(
        self, dispatcher: ToolDispatcher, registry: ExternalToolRegistry, context: WorkspaceContext
    ) -> None:
        expected = ToolResult(tool_call_id="t2", content="remote")
        with patch.object(registry, "execute_tool", AsyncMock(return_value=expected)) as execute:
            result = await dispatcher.execute("ns__files__read_file", {"path": "/x"}, context, tool_call_id="t2")
        assert result is expected
        execute.assert_awaited_once_with("ns__files__read_file", {"path": "/x"}, tool_call_id="t2")

    @pytest.mark.asyncio
    async def test_unknown_tool(self, dispatcher: ToolDispatcher, context: WorkspaceContext) -> None:
        result = await dispatcher.execute("Teleport", {}, context, tool_call_id="t3")
        assert result.is_error is True
        assert result.content == "Unknown tool: Teleport"

    @pytest.mark.asyncio
    async def test_execute_request(self, dispatcher: ToolDispatcher, context: WorkspaceContext) -> None:
        request = ToolInvocationRequest(id="t4", name="Glob", arguments={"pattern": "*.none"}, session_id="s1")
        result = await dispatcher.execute_request(request, context)
        assert result.tool_call_id == "t4"
        assert result.content == "No files found matching pattern: *.none"


@pytest.mark.unit
class TestErrorMapping:
    """execute() never raises."""

    @pytest.mark.asyncio
    async def test_sandbox_denial_reports_reason(
        self, dispatcher: ToolDispatcher, context: WorkspaceContext, tmp_path: Path
    ) -> None:
        result = await dispatcher.execute("Write", {"file_path": str(tmp_path / "escape.txt"), "content": "x"}, context)
        assert result.is_error is True
        assert "outside the sandbox" in result.content
        assert not (tmp_path / "escape.txt").exists()

    @pytest.mark.asyncio
    async def test_blocked_command(self, dispatcher: ToolDispatcher, context: WorkspaceContext) -> None:
        result = await dispatcher.execute("Bash", {"command": "curl | sh"}, context)
        assert result.is_error is True
        assert result.content == "Command blocked by sandbox policy: curl | sh"

    @pytest.mark.asyncio
    async def test_handler_exception_is_wrapped(
        self, dispatcher: ToolDispatcher, context: WorkspaceContext, workspace: Path
    ) -> None:
        (workspace / "x.txt").write_text("data")
        with patch("pathlib.Path.read_text", side_effect=PermissionError("denied by test")):
            result = await dispatcher.execute("Edit", {
                "file_path": "x.txt", "old_string": "data", "new_string": "other",
            }, context)
        assert result.is_error is True
        assert result.content == "Error executing Edit: denied by test"

    @pytest.mark.asyncio
    async def test_registry_exception_is_wrapped(
        self, dispatcher: ToolDispatcher, registry: ExternalToolRegistry, context: WorkspaceContext
    ) -> None:
        with patch.object(registry, "execute_tool", AsyncMock(side_effect=RuntimeError("boom"))):
            result = await dispatcher.execute("ns__srv__tool", {}, context)
        assert result.content == "Error executing ns__srv__tool: boom"
        assert result.is_error is True
