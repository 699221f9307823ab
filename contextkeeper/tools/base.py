"""
Tool abstraction: declared argument schemas, a registry and a uniform envelope.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

import pydantic
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ContextKeeperError, UnknownToolError, ValidationError
from ..models import Base
from .arguments import ToolArguments

logger = logging.getLogger(__name__)

SessionScope = Callable[[], AbstractAsyncContextManager[AsyncSession]]
Handler = Callable[[AsyncSession | None, Any], Awaitable[Any]]


def to_jsonable(value: Any) -> Any:
    """Convert ORM rows and nested containers into JSON-compatible values."""
    if isinstance(value, Base):
        return value.to_dict()
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, UUID):
        return str(value)
    if hasattr(value, "to_dict"):
        return to_jsonable(value.to_dict())
    return value


@dataclass
class ToolResult:
    """Result from a tool invocation."""

    success: bool
    data: Any = None
    error: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, data: Any, **metadata: Any) -> ToolResult:
        return cls(success=True, data=to_jsonable(data), metadata=metadata)

    @classmethod
    def failure(cls, exc: BaseException, **metadata: Any) -> ToolResult:
        if isinstance(exc, ContextKeeperError):
            error = exc.to_dict()
        else:
            error = {"type": "InternalError", "message": str(exc) or type(exc).__name__}
        return cls(success=False, error=error, metadata=metadata)

    def to_envelope(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "data": self.data}
        return {"success": False, "error": self.error}

    def to_json(self, **kwargs: Any) -> str:
        return json.dumps(self.to_envelope(), default=str, **kwargs)


class BaseTool(ABC):
    """Base class for all tools."""

    name: str
    description: str
    arguments: type[ToolArguments]
    uses_session: bool = True

    @abstractmethod
    async def run(self, session: AsyncSession | None, args: Any) -> Any:
        pass

    def parse_arguments(self, arguments: dict[str, Any]) -> ToolArguments:
        try:
            return self.arguments.model_validate(arguments)
        except pydantic.ValidationError as exc:
            first = exc.errors()[0]
            field_name = ".".join(str(part) for part in first.get("loc", ())) or None
            where = f" ({field_name})" if field_name else ""
            raise ValidationError(
                f"Invalid arguments for {self.name}{where}: {first.get('msg', 'invalid value')}",
                field=field_name,
                value=first.get("input"),
            ) from exc

    def input_schema(self) -> dict[str, Any]:
        return self.arguments.model_json_schema(by_alias=True)


class FunctionTool(BaseTool):
    """Wraps an async handler function as a callable tool."""

    def __init__(
        self,
        name: str,
        description: str,
        arguments: type[ToolArguments],
        handler: Handler,
        uses_session: bool = True,
    ):
        self.name = name
        self.description = description
        self.arguments = arguments
        self.handler = handler
        self.uses_session = uses_session

    async def run(self, session: AsyncSession | None, args: Any) -> Any:
        return await self.handler(session, args)


class ToolRegistry:
    """Registry of available tools."""

    def __init__(self, session_scope: SessionScope | None = None) -> None:
        self._tools: dict[str, BaseTool] = {}
        self._session_scope = session_scope

    def register(self, tool: BaseTool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def tool(
        self,
        name: str,
        description: str,
        arguments: type[ToolArguments],
        *,
        uses_session: bool = True,
    ) -> Callable[[Handler], Handler]:
        """Decorator registering an async handler under ``name``."""

        def decorator(handler: Handler) -> Handler:
            self.register(FunctionTool(name, description, arguments, handler, uses_session))
            return handler

        return decorator

    def get(self, name: str) -> BaseTool | None:
        return self._tools.get(name)

    def list_tools(self) -> list[str]:
        return list(self._tools.keys())

    def tools(self) -> list[BaseTool]:
        return list(self._tools.values())

    def session_scope(self) -> AbstractAsyncContextManager[AsyncSession]:
        if self._session_scope is not None:
            return self._session_scope()
        from .. import db

        return db.get_session()

    async def dispatch(self, name: str, arguments: dict[str, Any] | None = None) -> ToolResult:
        """Validate, run one unit of work, and wrap the outcome in an envelope."""
        tool = self.get(name)
        if tool is None:
            exc = UnknownToolError(f"Unknown tool: {name}")
            logger.warning("%s", exc.message)
            return ToolResult.failure(exc, tool=name)

        try:
            args = tool.parse_arguments(arguments or {})
            if tool.uses_session:
                async with self.session_scope() as session:
                    data = to_jsonable(await tool.run(session, args))
            else:
                data = to_jsonable(await tool.run(None, args))
        except ContextKeeperError as exc:
            logger.warning("Tool %s failed: %s: %s", name, type(exc).__name__, exc.message)
            return ToolResult.failure(exc, tool=name)
        except Exception as exc:
            logger.exception("Tool %s raised an unexpected error", name)
            return ToolResult.failure(exc, tool=name)

        return ToolResult.ok(data, tool=name)
