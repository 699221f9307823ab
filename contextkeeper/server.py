"""MCP stdio server exposing the tool registry."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from . import __version__, db
from .tools import ToolRegistry, default_registry

logger = logging.getLogger(__name__)

SERVER_NAME = "context-keeper"


def build_server(registry: ToolRegistry = default_registry) -> Server:
    """Create an MCP server whose tools are the registry's tools."""
    server: Server = Server(SERVER_NAME, version=__version__)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return [
            Tool(name=tool.name, description=tool.description, inputSchema=tool.input_schema())
            for tool in registry.tools()
        ]

    # The registry validates arguments itself and reports failures in the envelope
    @server.call_tool(validate_input=False)
    async def call_tool(name: str, arguments: dict[str, Any] | None) -> list[TextContent]:
        result = await registry.dispatch(name, arguments or {})
        return [TextContent(type="text", text=result.to_json(indent=2))]

    return server


async def serve(registry: ToolRegistry = default_registry) -> None:
    """Probe the database, then serve the registry over stdio until EOF."""
    await db.check_connection()
    logger.info("Database reachable; serving %d tools over stdio", len(registry.list_tools()))

    server = build_server(registry)
    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())
    finally:
        await db.engine.dispose()


def run_mcp_server() -> None:
    """Entry point for the `context-keeper serve` CLI command."""
    asyncio.run(serve())
