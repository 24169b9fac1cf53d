"""
Claude CLI backend.

Spawns `claude --output-format stream-json --verbose -p <text>` per turn and
yields each stdout line as a parsed dict. The CLI runs its own tools and
keeps its own conversation; later turns resume it with `-r <session_id>`.
"""
import asyncio
import json
import logging
import os
import signal
from collections import deque
from typing import Any, AsyncIterator, Optional

from ..config import BackendsConfig
from ..core.exceptions import BackendError
from ..core.schemas import SessionOptions
from .base import AgentBackend, TurnContext

logger = logging.getLogger(__name__)

# stream-json lines carry whole tool results and can be large
STREAM_LIMIT: int = 16 * 1024 * 1024


def build_cli_args(
    cli_path: str,
    prompt: str,
    options: SessionOptions,
    resume_id: Optional[str] = None,
) -> list[str]:
    """Build the argv for one CLI turn."""
    args = [cli_path, "--output-format", "stream-json", "--verbose", "-p", prompt]

    if resume_id:
        args += ["-r", resume_id]
    if options.model:
        args += ["--model", options.model]
    if options.system_prompt:
        args += ["--system-prompt", options.system_prompt]

    # Approval is handled by this engine, not by the CLI's own prompts
    args.append("--dangerously-skip-permissions")

    if options.effort:
        args += ["--effort", options.effort]
    if options.max_budget_usd is not None:
        args += ["--max-budget-usd", str(options.max_budget_usd)]
    if options.max_turns is not None:
        args += ["--max-turns", str(options.max_turns)]
    for tool_name in options.allowed_tools:
        args += ["--allowedTools", tool_name]
    for tool_name in options.disallowed_tools:
        args += ["--disallowedTools", tool_name]
    return args


class ClaudeCliBackend(AgentBackend):
    kind = "claude-cli"
    handles_tools = True

    def __init__(self, config: Optional[BackendsConfig] = None) -> None:
        self._config = config or BackendsConfig()
        self._process: Optional[asyncio.subprocess.Process] = None
        self._stderr_tail: deque[str] = deque(maxlen=20)
        self._interrupted = False

    async def stream_turn(self, turn: TurnContext) -> AsyncIterator[Any]:
        args = build_cli_args(self._config.claude_cli_path, turn.prompt, turn.options, turn.resume_id)
        cwd = str(turn.options.workspace_path) if turn.options.workspace_path else None
        logger.info(f"CLAUDE_CLI: Spawning {' '.join(args)[:120]}...")

        self._interrupted = False
        self._stderr_tail.clear()
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env={**os.environ, "FORCE_COLOR": "0"},
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise BackendError(f"Failed to start Claude CLI: {e}", backend=self.kind) from e

        self._process = process
        stderr_task = asyncio.create_task(self._drain_stderr(process))
        try:
            if process.stdout is None:
                raise BackendError("Claude CLI started without a stdout pipe", backend=self.kind)
            async for raw in process.stdout:
                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug(f"CLAUDE_CLI: Skipping non-JSON line: {line[:200]}")
                    continue
                if isinstance(event, dict):
                    yield event

            exit_code = await process.wait()
            await stderr_task
        finally:
            if process.returncode is None:
                await self._terminate(process)
            if not stderr_task.done():
                stderr_task.cancel()
            self._process = None

        if exit_code != 0 and not self._interrupted:
            detail = "\n".join(self._stderr_tail)
            raise BackendError(
                f"Claude CLI exited with code {exit_code}" + (f": {detail}" if detail else ""),
                backend=self.kind,
                exit_code=exit_code,
            )

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        if process.stderr is None:
            return
        async for raw in process.stderr:
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                self._stderr_tail.append(line)
                logger.debug(f"CLAUDE_CLI stderr: {line}")

    async def interrupt(self) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        self._interrupted = True
        logger.info(f"CLAUDE_CLI: Sending SIGINT to pid {process.pid}")
        try:
            process.send_signal(signal.SIGINT)
        except ProcessLookupError:
            pass

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=2.0)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()

    async def aclose(self) -> None:
        process = self._process
        if process is not None and process.returncode is None:
            await self._terminate(process)
        self._process = None
