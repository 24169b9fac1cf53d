"""
External tool registry.

External tool servers are MCP servers reached over the stdio transport. The
registry talks to them with the `mcp` client library:

- discovers each server's catalog (initialize -> tools/list), namespacing
  every tool as ns__<server>__<tool> and classifying it with the DangerPolicy;
- caches the aggregate catalog for a TTL (default 5 minutes);
- executes a tool by spawning a fresh server process per call
  (initialize -> tools/call), bounded by a timeout (default 30s).

Only the "stdio" transport is executable. Other transports are accepted in
configuration and rejected at call time. Nothing here raises past
execute_tool(): spawn failures, protocol errors, tool server errors and
silence all come back as error results.
"""
import asyncio
import json
import logging
import os
import time
from contextlib import AsyncExitStack
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

from mcp import ClientSession, McpError, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.types import Implementation, TextContent
from pydantic import BaseModel

from .. import __version__
from ..config import ExternalToolsConfig
from ..core.exceptions import ProtocolError
from ..core.schemas import (
    ExternalToolDescriptor,
    ExternalToolServerConfig,
    ToolResult,
)
from ..core.settings_store import WorkspaceSettingsStore
from ..core.tool_schemas import (
    DangerPolicy,
    make_external_tool_name,
    parse_external_tool_name,
)

logger = logging.getLogger(__name__)

STDIO_TRANSPORT: str = "stdio"

EMPTY_INPUT_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}, "required": []}

T = TypeVar("T")


def format_call_result(content: Iterable[Any], is_error: bool = False) -> tuple[str, bool]:
    """
    Map the content blocks of a tools/call result to (text, is_error).

    Text blocks contribute their text, any other block its JSON form; parts
    are joined by newlines.
    """
    parts = []
    for block in content:
        if isinstance(block, TextContent):
            parts.append(block.text)
        elif isinstance(block, BaseModel):
            parts.append(block.model_dump_json(exclude_none=True))
        else:
            parts.append(json.dumps(block, ensure_ascii=False))
    return "\n".join(parts), bool(is_error)


def normalize_input_schema(schema: Optional[dict[str, Any]]) -> dict[str, Any]:
    """Fill in the object type, properties and required list a schema may omit."""
    return {**EMPTY_INPUT_SCHEMA, **(schema or {})}


class ExternalToolRegistry:
    """
    Discovers, caches and invokes tools on external tool servers.

    Servers come from an explicit list (configure()) or, when none was given,
    from the workspace settings store on every cache refresh.
    """

    def __init__(
        self,
        servers: Optional[list[ExternalToolServerConfig]] = None,
        *,
        settings_store: Optional[WorkspaceSettingsStore] = None,
        danger_policy: Optional[DangerPolicy] = None,
        config: Optional[ExternalToolsConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or ExternalToolsConfig()
        self._settings = settings_store or WorkspaceSettingsStore()
        self._danger = danger_policy or DangerPolicy(self._config.danger_patterns)
        self._servers: Optional[list[ExternalToolServerConfig]] = (
            list(servers) if servers is not None else None
        )
        self._clock = clock
        self._cache: Optional[list[ExternalToolDescriptor]] = None
        self._cache_time: float = 0.0
        self._refresh_lock = asyncio.Lock()

    @property
    def danger_policy(self) -> DangerPolicy:
        return self._danger

    def servers(self) -> list[ExternalToolServerConfig]:
        if self._servers is not None:
            return list(self._servers)
        return self._settings.tool_servers()

    def configure(self, servers: list[ExternalToolServerConfig]) -> None:
        """Replace the server list and drop the cached catalog."""
        self._servers = list(servers)
        self.invalidate()

    def invalidate(self) -> None:
        self._cache = None
        self._cache_time = 0.0
        logger.info("EXTERNAL_TOOLS: Catalog cache invalidated")

    def _server_config(self, name: str) -> Optional[ExternalToolServerConfig]:
        for server in self.servers():
            if server.name == name:
                return server
        return None

    async def _with_session(
        self,
        server: ExternalToolServerConfig,
        operation: Callable[[ClientSession], Awaitable[T]],
    ) -> T:
        """
        Spawn the server, run the MCP handshake, apply operation, shut down.

        The server process lives only for this call.

        Raises:
            OSError: If the executable cannot be started.
            ProtocolError: If the server answers with an error.
        """
        params = StdioServerParameters(
            command=server.command,
            args=list(server.args),
            env={**os.environ, **server.env},
        )
        client_info = Implementation(name=self._config.client_name, version=__version__)
        async with AsyncExitStack() as stack:
            read, write = await stack.enter_async_context(stdio_client(params))
            session = await stack.enter_async_context(ClientSession(read, write, client_info=client_info))
            try:
                await session.initialize()
                return await operation(session)
            except McpError as e:
                error = ProtocolError(e.error.message, code=e.error.code)
        # Raised once the transport has shut down, so it is not wrapped in a task group error
        raise error

    async def discover(self, server: ExternalToolServerConfig) -> list[ExternalToolDescriptor]:
        """
        List the tools of one server.

        Spawns the server, performs the handshake, requests tools/list and
        shuts the process down. Returns [] on timeout, spawn failure, server
        error or a non-stdio transport.
        """
        if server.transport != STDIO_TRANSPORT or not server.command:
            logger.info(
                f"EXTERNAL_TOOLS: Skipping discovery for '{server.name}' "
                f"(transport={server.transport}, command={server.command!r})"
            )
            return []

        timeout = self._config.discovery_timeout_seconds
        try:
            listed = await asyncio.wait_for(
                self._with_session(server, lambda session: session.list_tools()),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"EXTERNAL_TOOLS: Discovery timed out for '{server.name}' after {timeout}s")
            return []
        except OSError as e:
            logger.warning(f"EXTERNAL_TOOLS: Failed to spawn '{server.name}': {e}")
            return []
        except ProtocolError as e:
            logger.warning(f"EXTERNAL_TOOLS: Discovery failed for '{server.name}': {e}")
            return []
        except Exception as e:
            logger.warning(f"EXTERNAL_TOOLS: Discovery failed for '{server.name}': {e}", exc_info=True)
            return []

        descriptors = [
            ExternalToolDescriptor(
                server_name=server.name,
                tool_name=tool.name,
                full_name=make_external_tool_name(server.name, tool.name),
                description=tool.description or "",
                input_schema=normalize_input_schema(tool.inputSchema),
                dangerous=self._danger.classify_external(tool.name),
            )
            for tool in listed.tools
            if tool.name
        ]
        logger.info(f"EXTERNAL_TOOLS: Discovered {len(descriptors)} tools on '{server.name}'")
        return descriptors

    async def discover_all(self) -> list[ExternalToolDescriptor]:
        """Discover every configured server concurrently and merge the catalogs."""
        servers = self.servers()
        if not servers:
            return []
        results = await asyncio.gather(*(self.discover(server) for server in servers))

        catalog: list[ExternalToolDescriptor] = []
        seen: set[str] = set()
        for descriptors in results:
            for descriptor in descriptors:
                if descriptor.full_name in seen:
                    logger.warning(
                        f"EXTERNAL_TOOLS: Duplicate tool name {descriptor.full_name}, keeping the first"
                    )
                    continue
                seen.add(descriptor.full_name)
                catalog.append(descriptor)
        return catalog

    async def get_cached(self) -> list[ExternalToolDescriptor]:
        """Aggregate catalog, refreshed when older than the cache TTL."""
        async with self._refresh_lock:
            age = self._clock() - self._cache_time
            if self._cache is not None and age < self._config.cache_ttl_seconds:
                return list(self._cache)
            self._cache = await self.discover_all()
            self._cache_time = self._clock()
            return list(self._cache)

    async def to_tool_schemas(self) -> list[dict[str, Any]]:
        """Cached catalog in the tool schema surface shape."""
        return [
            {
                "name": d.full_name,
                "description": d.description or f"{d.tool_name} from {d.server_name}",
                "input_schema": d.input_schema or dict(EMPTY_INPUT_SCHEMA),
            }
            for d in await self.get_cached()
        ]

    async def execute_tool(
        self,
        full_name: str,
        arguments: Optional[dict[str, Any]] = None,
        tool_call_id: str = "",
    ) -> ToolResult:
        """
        Call one external tool in a fresh server process.

        Never raises; every failure is an error result.
        """

        def error(message: str) -> ToolResult:
            logger.warning(f"EXTERNAL_TOOLS: {message}")
            return ToolResult(tool_call_id=tool_call_id, content=message, is_error=True)

        parsed = parse_external_tool_name(full_name)
        if parsed is None:
            return error(f"Not an external tool: {full_name}")
        server_name, tool_name = parsed

        server = self._server_config(server_name)
        if server is None:
            return error(f"Tool server not found: {server_name}")
        if server.transport != STDIO_TRANSPORT:
            return error(f"Unsupported transport '{server.transport}' for tool server '{server_name}'")
        if not server.command:
            return error(f"Tool server '{server_name}' has no command configured")

        timeout = self._config.execution_timeout_seconds
        try:
            result = await asyncio.wait_for(
                self._with_session(server, lambda session: session.call_tool(tool_name, arguments or {})),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            return error(f"External tool execution timed out after {timeout:g}s: {full_name}")
        except OSError as e:
            return error(f"Failed to start tool server '{server_name}': {e}")
        except ProtocolError as e:
            return error(f"Tool server error: {e}")
        except Exception as e:
            logger.exception(f"EXTERNAL_TOOLS: Unexpected failure calling {full_name}")
            return error(f"Tool server '{server_name}' failed: {e}")

        text, is_error = format_call_result(result.content, result.isError)
        if not text:
            text = f"No content returned by {full_name}"
        logger.info(f"EXTERNAL_TOOLS: {full_name} finished (is_error={is_error})")
        return ToolResult(tool_call_id=tool_call_id, content=text, is_error=is_error)
