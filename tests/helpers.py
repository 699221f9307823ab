"""Helpers shared by the test modules."""

from typing import Any
from unittest.mock import MagicMock
from uuid import uuid4

from sqlalchemy.dialects import postgresql


def new_id() -> str:
    return str(uuid4())


def compile_sql(stmt: Any) -> str:
    """Render a statement with the PostgreSQL dialect (bind params left as placeholders)."""
    return str(stmt.compile(dialect=postgresql.dialect()))


def executed(session: Any, prefix: str = "UPDATE") -> list[tuple[str, dict[str, Any]]]:
    """SQL and bind values of every statement awaited on a mock session, filtered by its first word."""
    statements = []
    for call in session.execute.await_args_list:
        compiled = call.args[0].compile(dialect=postgresql.dialect())
        sql = str(compiled).strip()
        if sql.startswith(prefix):
            statements.append((sql, dict(compiled.params)))
    return statements


def result_row(*values: Any) -> MagicMock:
    """Execute result whose ``one()`` returns ``values``."""
    result = MagicMock()
    result.one.return_value = values
    return result
