"""Externally hosted tools served by MCP provider processes over stdio."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import AsyncExitStack
from typing import Any

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

from taskbot.config import McpServerConfig
from taskbot.models import ToolContext
from taskbot.tools.base import Tool, ToolCategory

LOGGER = logging.getLogger(__name__)


class McpConnection:
    """One live provider session. Calls are serialized per connection."""

    def __init__(self, name: str, session: ClientSession) -> None:
        self.name = name
        self._session = session
        self._lock = asyncio.Lock()

    async def call_tool(self, tool_name: str, arguments: dict[str, Any]) -> str:
        async with self._lock:
            result = await self._session.call_tool(tool_name, arguments)
        text_parts = [item.text for item in result.content if getattr(item, "type", None) == "text"]
        text = "\n".join(text_parts) if text_parts else str(result.content)
        if result.isError:
            raise RuntimeError(text)
        return text


class McpTool(Tool):
    """Registry adapter for one tool of one provider, named ``mcp_<server>_<tool>``."""

    category = ToolCategory.EXTERNAL

    def __init__(
        self,
        connection: McpConnection,
        remote_name: str,
        description: str | None,
        input_schema: dict[str, Any] | None,
    ) -> None:
        self._connection = connection
        self._remote_name = remote_name
        self.name = f"mcp_{connection.name}_{remote_name}"
        self.description = description or "MCP tool"
        self.parameters_schema = input_schema or {"type": "object", "properties": {}}

    async def run(self, context: ToolContext, /, **kwargs: Any) -> str:
        LOGGER.info("Calling MCP tool '%s' on server '%s'", self._remote_name, self._connection.name)
        return await self._connection.call_tool(self._remote_name, kwargs)


class McpManager:
    """Starts provider processes and exposes their tools.

    A provider that fails to start is logged and contributes no tools.
    """

    def __init__(self) -> None:
        self._stack = AsyncExitStack()
        self._tools: list[McpTool] = []
        self._connections: dict[str, McpConnection] = {}

    async def connect(self, config: McpServerConfig) -> None:
        LOGGER.info("Connecting to MCP server '%s': %s %s", config.name, config.command, config.args)
        params = StdioServerParameters(
            command=config.command,
            args=config.args,
            env={**os.environ, **config.env} if config.env else None,
        )
        async with AsyncExitStack() as stack:
            read, write = await stack.enter_async_context(stdio_client(params))
            session = await stack.enter_async_context(ClientSession(read, write))
            await session.initialize()
            listing = await session.list_tools()
            # Keep the session open past this block; shutdown() closes it.
            self._stack.push_async_callback(stack.pop_all().aclose)

        connection = McpConnection(config.name, session)
        self._connections[config.name] = connection
        for remote in listing.tools:
            self._tools.append(McpTool(connection, remote.name, remote.description, remote.inputSchema))
        LOGGER.info("MCP server '%s' provides %d tools", config.name, len(listing.tools))

    async def connect_all(self, configs: list[McpServerConfig]) -> None:
        for config in configs:
            try:
                await self.connect(config)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Failed to connect to MCP server '%s'", config.name)

    def tools(self) -> list[McpTool]:
        return list(self._tools)

    async def shutdown(self) -> None:
        LOGGER.info("Shutting down %d MCP server(s)", len(self._connections))
        self._tools.clear()
        self._connections.clear()
        await self._stack.aclose()
