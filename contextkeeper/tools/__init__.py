"""Tool registry exposed over MCP and the ``call`` CLI command."""

from .base import BaseTool, FunctionTool, ToolRegistry, ToolResult, to_jsonable
from .handlers import default_registry

__all__ = [
    "BaseTool",
    "FunctionTool",
    "ToolRegistry",
    "ToolResult",
    "default_registry",
    "to_jsonable",
]
