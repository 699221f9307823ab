"""Error types and helpers for the context memory service."""

from __future__ import annotations

import re
from typing import Any

import click
from sqlalchemy.exc import (
    DataError,
    DBAPIError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)


class ContextKeeperError(click.ClickException):
    """Base class for every error the query façade and tools surface."""

    def to_dict(self) -> dict[str, Any]:
        return {"type": type(self).__name__, "message": self.message}


class ValidationError(ContextKeeperError):
    """Bad, missing or out-of-range input. Caller-fixable, never retried."""

    def __init__(self, message: str, *, field: str | None = None, value: Any = None) -> None:
        super().__init__(message)
        self.field = field
        self.value = value

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.field:
            data["field"] = self.field
        return data


class ConstraintError(ValidationError):
    """A store-level invariant was violated (self-loop, range check, cycle)."""


class NotFoundError(ContextKeeperError):
    """A referenced entity does not exist."""

    def __init__(self, entity: str, identifier: str | None = None) -> None:
        message = f"{entity} not found" + (f": {identifier}" if identifier else "")
        super().__init__(message)
        self.entity = entity
        self.identifier = identifier


class TransientError(ContextKeeperError):
    """The store is unreachable or timed out. Safe for the caller to retry."""


class IntegrationError(ContextKeeperError):
    """An external backup step (pg_dump, gzip, git) failed."""


class UnknownToolError(ContextKeeperError):
    """Dispatch was asked for a tool that is not registered."""


class SchemaNotInitializedError(TransientError):
    """Raised when the database schema/migrations have not been applied."""


_PG_MISSING_RELATION_RE = re.compile(r'relation "(?P<table>[^"]+)" does not exist', re.IGNORECASE)
_CONSTRAINT_NAME_RE = re.compile(r'constraint "(?P<name>[^"]+)"', re.IGNORECASE)

# SQLSTATE codes (https://www.postgresql.org/docs/current/errcodes-appendix.html)
_SQLSTATE_NOT_NULL = "23502"
_SQLSTATE_FOREIGN_KEY = "23503"
_SQLSTATE_UNIQUE = "23505"
_SQLSTATE_CHECK = "23514"
_SQLSTATE_EXCLUSION = "23P01"
_SQLSTATE_QUERY_CANCELED = "57014"
_SQLSTATE_UNDEFINED_TABLE = "42P01"


def _unwrap_exception_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        orig = getattr(current, "orig", None)
        if isinstance(orig, BaseException) and orig not in chain:
            chain.append(orig)
        current = current.__cause__ or current.__context__
    return chain


def sqlstate(exc: BaseException) -> str | None:
    """Best-effort extraction of the PostgreSQL SQLSTATE from a DB exception."""
    for e in _unwrap_exception_chain(exc):
        for attr in ("sqlstate", "pgcode"):
            code = getattr(e, attr, None)
            if isinstance(code, str) and code:
                return code
    return None


def missing_table_name(exc: BaseException) -> str | None:
    """Best-effort extraction of the missing table name from a DB exception."""
    for e in _unwrap_exception_chain(exc):
        match = _PG_MISSING_RELATION_RE.search(str(e))
        if match:
            return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """Return True if the exception looks like a missing-table / missing-schema error."""
    if sqlstate(exc) == _SQLSTATE_UNDEFINED_TABLE or missing_table_name(exc):
        return True

    # Fallback for drivers that don't format errors consistently.
    for e in _unwrap_exception_chain(exc):
        message = str(e).lower()
        if "undefinedtableerror" in message:
            return True
    return False


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    table_hint = f" (missing table `{table}`)" if table else ""

    lines: list[str] = [
        f"Database schema is not initialized{table_hint}.",
        "Run: `alembic upgrade head`",
        "Or validate with: `context-keeper schema-check`",
    ]
    return "\n".join(lines)


def _constraint_name(exc: BaseException) -> str | None:
    for e in _unwrap_exception_chain(exc):
        name = getattr(e, "constraint_name", None)
        if isinstance(name, str) and name:
            return name
        match = _CONSTRAINT_NAME_RE.search(str(e))
        if match:
            return match.group("name")
    return None


def _first_line(exc: BaseException) -> str:
    orig = getattr(exc, "orig", None)
    text = str(orig if orig is not None else exc).strip()
    return text.splitlines()[0] if text else type(exc).__name__


def translate_db_error(exc: BaseException) -> ContextKeeperError:
    """Map a SQLAlchemy / driver exception onto the service error taxonomy."""
    if isinstance(exc, ContextKeeperError):
        return exc

    if isinstance(exc, SQLAlchemyError) and is_schema_missing_error(exc):
        return SchemaNotInitializedError(schema_not_initialized_message(exc))

    code = sqlstate(exc)
    constraint = _constraint_name(exc)

    if code in (_SQLSTATE_CHECK, _SQLSTATE_UNIQUE, _SQLSTATE_EXCLUSION):
        return ConstraintError(f"Constraint violated: {_first_line(exc)}", field=constraint)
    if code == _SQLSTATE_FOREIGN_KEY:
        return NotFoundError("Referenced row", constraint)
    if code == _SQLSTATE_NOT_NULL:
        return ValidationError(f"Missing required value: {_first_line(exc)}")
    if code == _SQLSTATE_QUERY_CANCELED:
        return TransientError(f"Statement timed out: {_first_line(exc)}")
    if code and code.startswith("22"):
        return ValidationError(f"Invalid value: {_first_line(exc)}")

    if isinstance(exc, IntegrityError):
        return ConstraintError(f"Constraint violated: {_first_line(exc)}", field=constraint)
    if isinstance(exc, DataError):
        return ValidationError(f"Invalid value: {_first_line(exc)}")
    if isinstance(exc, (OperationalError, InterfaceError)):
        return TransientError(f"Database unavailable: {_first_line(exc)}")
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return TransientError(f"Database connection lost: {_first_line(exc)}")
    if isinstance(exc, (TimeoutError, OSError)):
        return TransientError(f"Database unavailable: {exc}")
    return ContextKeeperError(_first_line(exc))
