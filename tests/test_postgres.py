"""Checks that need a real PostgreSQL with pgvector.

They run against ``CONTEXT_TEST_DB_NAME`` (default ``<db_name>_test``) on the
configured server, which is dropped and rebuilt per test. When that database
is unreachable or lacks the extensions, the module is skipped.
"""

import asyncio
import os

import pytest
import pytest_asyncio
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from contextkeeper import db
from contextkeeper.config import settings
from contextkeeper.models import Base, ErrorLog, Session, Task

TEST_DB_NAME = os.environ.get("CONTEXT_TEST_DB_NAME", f"{settings.db_name}_test")
DIMENSIONS = settings.embedding_dimensions
WRITERS = 20


def _vector(*head: float) -> list[float]:
    return [*head, *([0.0] * (DIMENSIONS - len(head)))]


@pytest_asyncio.fixture
async def live_db(monkeypatch):
    """Route ``db.get_session`` to a freshly built test database."""
    url = settings.async_database_url.rsplit("/", 1)[0] + f"/{TEST_DB_NAME}"
    engine = create_async_engine(url, poolclass=NullPool, isolation_level="READ COMMITTED")
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)
    except (SQLAlchemyError, DBAPIError, OSError) as exc:
        await engine.dispose()
        pytest.skip(f"PostgreSQL test database {TEST_DB_NAME} unavailable: {exc}")

    monkeypatch.setattr(db, "async_session_factory", async_sessionmaker(engine, expire_on_commit=False))
    yield engine
    await engine.dispose()


async def _new_session() -> str:
    async with db.get_session() as s:
        sess = await db.start_session(s, session_type="debugging")
        return sess.id


# =============================================================================
# Concurrent counters
# =============================================================================


@pytest.mark.asyncio
async def test_concurrent_messages_are_all_counted(live_db) -> None:
    session_id = await _new_session()

    async def write(n: int) -> None:
        async with db.get_session() as s:
            await db.log_conversation_message(s, session_id, "user", f"message {n}", token_count=3)

    await asyncio.gather(*(write(n) for n in range(WRITERS)))

    async with db.get_session() as s:
        sess = await s.get(Session, session_id)
        assert sess.total_messages == WRITERS
        assert sess.total_tokens == 3 * WRITERS


@pytest.mark.asyncio
async def test_concurrent_error_occurrences_are_all_counted(live_db) -> None:
    async with db.get_session() as s:
        error_id = (await db.log_error(s, "deadlock detected", error_type="DeadlockDetected")).id

    async def sighting() -> None:
        async with db.get_session() as s:
            await db.record_error_occurrence(s, error_id)

    await asyncio.gather(*(sighting() for _ in range(WRITERS)))

    async with db.get_session() as s:
        error = await s.get(ErrorLog, error_id)
        assert error.occurrence_count == WRITERS + 1
        assert error.is_recurring is True


@pytest.mark.asyncio
async def test_concurrent_completions_count_once(live_db) -> None:
    session_id = await _new_session()
    async with db.get_session() as s:
        project = await db.create_project(s, name="Backups", category="infrastructure")
        goal = await db.create_main_goal(s, title="Nightly dump", project_id=project.id, session_id=session_id)
        goal_id = goal.id

    async def complete() -> None:
        async with db.get_session() as s:
            await db.update_task_status(s, goal_id, "completed")

    await asyncio.gather(*(complete() for _ in range(5)))

    async with db.get_session() as s:
        sess = await s.get(Session, session_id)
        task = await s.get(Task, goal_id)
        assert task.status == "completed"
        assert sess.tasks_created == 1
        assert sess.tasks_completed == 1


# =============================================================================
# Similarity ranking over stored rows
# =============================================================================


@pytest.mark.asyncio
async def test_search_conversations_ranks_every_stored_message(live_db) -> None:
    session_id = await _new_session()
    async with db.get_session() as s:
        await db.log_conversation_message(s, session_id, "user", "near", embedding=_vector(1.0, 0.0, 0.0))
        await db.log_conversation_message(s, session_id, "user", "far", embedding=_vector(0.0, 1.0, 0.0))
        await db.log_conversation_message(s, session_id, "user", "no embedding")

    async with db.get_session() as s:
        rows = await db.search_conversations(s, _vector(0.9, 0.1, 0.0), limit=10)

    assert [message.content for message, _ in rows] == ["near", "far"]
    assert rows[0][1] == pytest.approx(0.993884, abs=1e-5)
    assert rows[1][1] == pytest.approx(0.110432, abs=1e-5)


@pytest.mark.asyncio
async def test_find_related_context_ranks_within_project(live_db) -> None:
    async with db.get_session() as s:
        project = await db.create_project(s, name="Context memory", category="infrastructure")
        other = await db.create_project(s, name="Website", category="web_dev")
        await db.store_knowledge(
            s, "near", "close match", project_id=project.id, embedding=_vector(1.0, 0.0, 0.0)
        )
        await db.store_knowledge(s, "far", "weak match", project_id=project.id, embedding=_vector(0.0, 1.0, 0.0))
        await db.store_knowledge(s, "elsewhere", "other project", project_id=other.id, embedding=_vector(1.0, 0.0, 0.0))
        await db.store_knowledge(s, "everywhere", "global entry", global_=True, embedding=_vector(1.0, 0.0, 0.0))
        project_id = project.id

    async with db.get_session() as s:
        scoped = await db.find_related_context(s, _vector(0.9, 0.1, 0.0), limit=10, project_id=project_id)

    assert [entry.title for entry, _ in scoped] == ["near", "far"]
    assert scoped[0][1] == pytest.approx(0.993884, abs=1e-5)
    assert scoped[1][1] == pytest.approx(0.110432, abs=1e-5)
    assert scoped[0][0].access_count == 1

    async with db.get_session() as s:
        unscoped = await db.find_related_context(s, _vector(0.9, 0.1, 0.0), limit=10)

    assert {entry.title for entry, _ in unscoped} == {"near", "far", "elsewhere", "everywhere"}
