"""
Bash - run a shell command in the workspace directory.

Security layers:
1. Sandbox policy blocked-command list (checked before spawning)
2. The command runs with the workspace root as cwd

The command is not confined to the workspace at the OS level; the approval
prompt for Bash is what gates arbitrary execution.
"""
import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Any

from claude_agent_sdk import tool

from ..core.tool_schemas import BUILTIN_TOOL_SCHEMAS
from .common import ToolEnvironment, _error, _result

logger = logging.getLogger(__name__)

_SPEC = BUILTIN_TOOL_SCHEMAS["Bash"]

# Exit code reported for timed-out commands, as coreutils `timeout` does
TIMEOUT_EXIT_CODE: int = 124


async def run_shell_command(command: str, cwd: Path, timeout: float) -> tuple[int, str, str]:
    """
    Execute a shell command and capture its output.

    The command gets its own process group so a timeout kills children too.

    Returns:
        Tuple of (exit_code, stdout, stderr).
    """
    logger.info(f"BASH EXEC: {command[:200]} (cwd={cwd})")
    process = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        stdin=asyncio.subprocess.DEVNULL,
        cwd=str(cwd),
        start_new_session=True,
    )
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"BASH TIMEOUT: Command timed out after {timeout}s")
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        await process.wait()
        return TIMEOUT_EXIT_CODE, "", f"Command timed out after {timeout:g}s"

    exit_code = process.returncode or 0
    stdout = stdout_bytes.decode("utf-8", errors="replace")
    stderr = stderr_bytes.decode("utf-8", errors="replace")
    logger.info(f"BASH RESULT: exit={exit_code}, stdout_len={len(stdout)}")
    return exit_code, stdout, stderr


def create_bash_tool(env: ToolEnvironment):
    """Create the Bash tool bound to a workspace."""
    default_timeout_ms = env.config.bash_default_timeout_ms
    max_timeout_ms = env.config.bash_max_timeout_ms

    @tool("Bash", _SPEC["description"], _SPEC["input_schema"])
    async def bash(args: dict[str, Any]) -> dict[str, Any]:
        command = str(args.get("command") or "").strip()
        if not command:
            return _error("command is required")

        timeout_ms = args.get("timeout") or default_timeout_ms
        try:
            timeout_ms = min(int(timeout_ms), max_timeout_ms)
        except (TypeError, ValueError):
            return _error(f"Invalid timeout: {args.get('timeout')!r}")

        env.check_command(command, "Bash")

        cwd = env.cwd
        if env.context.workspace_path is not None:
            cwd = env.resolve_path(str(cwd), "Bash")

        exit_code, stdout, stderr = await run_shell_command(command, cwd, timeout_ms / 1000)

        if exit_code != 0:
            detail = stderr.strip() or stdout.strip()
            return _error(env.truncate(f"Command failed with exit code {exit_code}:\n{detail}"))

        output = stdout
        if stderr.strip():
            output = f"{stdout.rstrip()}\n[stderr]\n{stderr.rstrip()}" if stdout.strip() else stderr
        if not output.strip():
            output = "(command completed with no output)"
        return _result(env.truncate(output))

    return bash
