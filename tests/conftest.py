"""Shared test fixtures and configuration for pytest."""

from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from helpers import new_id

from contextkeeper.config import settings


@pytest.fixture
def mock_session() -> MagicMock:
    """AsyncSession stand-in whose ``get`` looks rows up in ``session.rows``."""
    session = MagicMock()
    session.rows = {}

    async def _get(model: type, identifier: str, **kwargs: Any) -> Any:
        row = session.rows.get(identifier)
        return row if isinstance(row, model) else None

    session.get = AsyncMock(side_effect=_get)
    session.execute = AsyncMock(return_value=MagicMock())
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.add = MagicMock()
    return session


@pytest.fixture
def store(mock_session: MagicMock) -> Callable[..., Any]:
    """Register rows so ``mock_session.get`` can find them by id."""

    def _store(*rows: Any) -> Any:
        for row in rows:
            if row.id is None:
                row.id = new_id()
            mock_session.rows[row.id] = row
        return rows[0] if len(rows) == 1 else rows

    return _store


@pytest.fixture
def fake_scope(mock_session: MagicMock) -> Callable[[], Any]:
    """Stand-in for ``db.get_session`` that records commits and rollbacks."""

    @asynccontextmanager
    async def _scope() -> AsyncGenerator[MagicMock]:
        try:
            yield mock_session
            await mock_session.commit()
        except Exception:
            await mock_session.rollback()
            raise

    return _scope


@pytest.fixture
def embedding() -> list[float]:
    return [0.01] * settings.embedding_dimensions
