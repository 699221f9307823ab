import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from helpers import executed, new_id, result_row
from sqlalchemy.exc import OperationalError

from contextkeeper import db
from contextkeeper.errors import ConstraintError, NotFoundError, TransientError, ValidationError
from contextkeeper.models import (
    Artifact,
    ErrorLog,
    Project,
    Relationship,
    Session,
    SessionReminder,
    SessionTask,
    Task,
)


def _added(session: MagicMock, model: type) -> list:
    return [call.args[0] for call in session.add.call_args_list if isinstance(call.args[0], model)]


def _open_session(**kwargs) -> Session:
    values = {
        "id": new_id(),
        "status": "in_progress",
        "started_at": datetime.now(UTC) - timedelta(minutes=42),
        "total_messages": 0,
        "total_tokens": 0,
        "tasks_created": 0,
        "tasks_completed": 0,
    }
    values.update(kwargs)
    return Session(**values)


# =============================================================================
# Projects
# =============================================================================


@pytest.mark.asyncio
async def test_create_project_requires_name(mock_session) -> None:
    with pytest.raises(ValidationError) as exc_info:
        await db.create_project(mock_session, name="  ", category="data")
    assert exc_info.value.field == "name"
    mock_session.add.assert_not_called()


@pytest.mark.asyncio
async def test_create_project_requires_category(mock_session) -> None:
    with pytest.raises(ValidationError) as exc_info:
        await db.create_project(mock_session, name="Backups", category="")
    assert exc_info.value.field == "category"


@pytest.mark.asyncio
@pytest.mark.parametrize("progress", [-1, 101])
async def test_create_project_rejects_progress_out_of_range(mock_session, progress: int) -> None:
    with pytest.raises(ValidationError) as exc_info:
        await db.create_project(mock_session, name="Backups", category="data", progress_percentage=progress)
    assert exc_info.value.field == "progress_percentage"
    mock_session.add.assert_not_called()


@pytest.mark.asyncio
async def test_create_project_with_missing_parent(mock_session) -> None:
    with pytest.raises(NotFoundError):
        await db.create_project(mock_session, name="Child", category="data", parent_project_id=new_id())


@pytest.mark.asyncio
async def test_create_project_defaults(mock_session) -> None:
    project = await db.create_project(mock_session, name=" Context memory ", category="infrastructure")
    assert project.name == "Context memory"
    assert project.status == "active"
    assert project.priority == "medium"
    assert project.progress_percentage == 0
    mock_session.flush.assert_awaited()


@pytest.mark.asyncio
async def test_update_project_rejects_self_parent(mock_session, store) -> None:
    project = store(Project(id=new_id(), name="A", status="active"))
    with pytest.raises(ConstraintError):
        await db.update_project(mock_session, project.id, parent_project_id=project.id)


@pytest.mark.asyncio
async def test_update_project_rejects_cycle(mock_session, store) -> None:
    root = store(Project(id=new_id(), name="root", status="active"))
    child = store(Project(id=new_id(), name="child", status="active", parent_project_id=root.id))
    grandchild = store(Project(id=new_id(), name="grandchild", status="active", parent_project_id=child.id))

    with pytest.raises(ConstraintError) as exc_info:
        await db.update_project(mock_session, root.id, parent_project_id=grandchild.id)
    assert isinstance(exc_info.value, ValidationError)
    assert root.parent_project_id is None


@pytest.mark.asyncio
async def test_update_project_completion_stamps_completed_at(mock_session, store) -> None:
    project = store(Project(id=new_id(), name="A", status="active"))
    updated = await db.update_project(mock_session, project.id, status="completed", progress_percentage=100)
    assert updated.status == "completed"
    assert updated.completed_at is not None
    assert updated.progress_percentage == 100


@pytest.mark.asyncio
async def test_update_project_rejects_unknown_fields(mock_session) -> None:
    with pytest.raises(ValidationError) as exc_info:
        await db.update_project(mock_session, new_id(), search_vector="x")
    assert exc_info.value.field == "search_vector"


# =============================================================================
# Tasks
# =============================================================================


@pytest.mark.asyncio
async def test_create_main_goal_requires_project(mock_session) -> None:
    with pytest.raises(NotFoundError):
        await db.create_main_goal(mock_session, title="Ship backups", project_id=new_id())


@pytest.mark.asyncio
async def test_create_main_goal_links_session(mock_session, store) -> None:
    project = store(Project(id=new_id(), name="A"))
    sess = store(_open_session())

    goal = await db.create_main_goal(mock_session, title="Ship backups", project_id=project.id, session_id=sess.id)

    assert goal.is_main_goal is True
    assert goal.project_id == project.id
    [(sql, params)] = executed(mock_session)
    assert sql.startswith("UPDATE sessions SET tasks_created=")
    assert "coalesce(sessions.tasks_created" in sql
    assert sql.endswith("RETURNING sessions.tasks_created")
    links = _added(mock_session, SessionTask)
    assert len(links) == 1
    assert links[0].role == "created"
    assert links[0].session_id == sess.id


@pytest.mark.asyncio
async def test_create_subtask_links_to_main_goal(mock_session, store) -> None:
    project_id = new_id()
    goal = store(Task(id=new_id(), title="Goal", is_main_goal=True, project_id=project_id))

    subtask = await db.create_subtask(mock_session, title="Write dump step", main_task_id=goal.id)

    assert subtask.is_main_goal is False
    assert subtask.main_task_id == goal.id
    assert subtask.parent_task_id == goal.id
    assert subtask.project_id == project_id


@pytest.mark.asyncio
async def test_create_subtask_rejects_non_goal_parent(mock_session, store) -> None:
    plain = store(Task(id=new_id(), title="Plain", is_main_goal=False))
    with pytest.raises(ValidationError) as exc_info:
        await db.create_subtask(mock_session, title="x", main_task_id=plain.id)
    assert exc_info.value.field == "main_task_id"


@pytest.mark.asyncio
async def test_create_subtask_requires_existing_goal(mock_session) -> None:
    with pytest.raises(NotFoundError):
        await db.create_subtask(mock_session, title="x", main_task_id=new_id())


@pytest.mark.asyncio
async def test_update_task_status_validates(mock_session) -> None:
    with pytest.raises(ValidationError):
        await db.update_task_status(mock_session, new_id(), "done")
    with pytest.raises(ValidationError):
        await db.update_task_status(mock_session, new_id(), "in_progress", progress_percentage=150)


@pytest.mark.asyncio
async def test_first_completion_counts_once(mock_session, store) -> None:
    sess = store(_open_session())
    task = store(Task(id=new_id(), title="t", status="in_progress", session_id=sess.id))

    await db.update_task_status(mock_session, task.id, "completed", result_summary="done")
    await db.update_task_status(mock_session, task.id, "completed")

    assert task.status == "completed"
    assert task.result_summary == "done"
    [(sql, _)] = executed(mock_session)
    assert sql.startswith("UPDATE sessions SET tasks_completed=")
    # completion time is caller-supplied
    assert task.completed_at is None


@pytest.mark.asyncio
async def test_status_change_locks_the_task_row(mock_session, store) -> None:
    task = store(Task(id=new_id(), title="t", status="pending"))

    await db.update_task_status(mock_session, task.id, "in_progress")

    lookup = mock_session.get.await_args_list[0]
    assert lookup.args == (Task, task.id)
    assert lookup.kwargs["with_for_update"] is True


@pytest.mark.asyncio
async def test_task_dependency_is_written_on_both_sides(mock_session, store) -> None:
    blocked = store(Task(id=new_id(), title="deploy"))
    blocker = store(Task(id=new_id(), title="migrate"))

    await db.add_task_dependency(mock_session, blocked.id, blocker.id)
    await db.add_task_dependency(mock_session, blocked.id, blocker.id)

    assert blocked.blocked_by == [blocker.id]
    assert blocker.blocking == [blocked.id]

    await db.remove_task_dependency(mock_session, blocked.id, blocker.id)
    assert blocked.blocked_by is None
    assert blocker.blocking is None


@pytest.mark.asyncio
async def test_task_cannot_depend_on_itself(mock_session) -> None:
    task_id = new_id()
    with pytest.raises(ConstraintError):
        await db.add_task_dependency(mock_session, task_id, task_id)
    mock_session.get.assert_not_awaited()


# =============================================================================
# Sessions and messages
# =============================================================================


@pytest.mark.asyncio
async def test_end_session(mock_session, store) -> None:
    sess = store(_open_session())

    ended = await db.end_session(
        mock_session, sess.id, summary="Wrote the backup job", outcome="success", next_steps=["add tests"]
    )

    assert ended.status == "completed"
    assert ended.ended_at is not None
    assert ended.duration_minutes == 42
    assert ended.next_steps == ["add tests"]


@pytest.mark.asyncio
async def test_end_session_twice_is_rejected(mock_session, store) -> None:
    sess = store(_open_session(status="completed"))
    with pytest.raises(ValidationError):
        await db.end_session(mock_session, sess.id, summary="again", outcome="success")


@pytest.mark.asyncio
async def test_end_session_only_to_terminal_status(mock_session, store) -> None:
    sess = store(_open_session())
    with pytest.raises(ValidationError):
        await db.end_session(mock_session, sess.id, summary="s", outcome="success", status="in_progress")


@pytest.mark.asyncio
async def test_log_message_updates_counters(mock_session, store) -> None:
    sess = store(_open_session())
    mock_session.execute.side_effect = [result_row(1, 12), result_row(2, 12)]

    await db.log_conversation_message(mock_session, sess.id, "user", "hello", token_count=12)
    await db.log_conversation_message(mock_session, sess.id, "assistant", "hi")

    first, second = executed(mock_session)
    assert first[0].startswith("UPDATE sessions SET total_messages=")
    assert "coalesce(sessions.total_tokens" in first[0]
    assert first[0].endswith("RETURNING sessions.total_messages, sessions.total_tokens")
    assert 12 in first[1].values()
    assert 12 not in second[1].values()
    # values written by the database win over the stale in-memory ones
    assert sess.total_messages == 2
    assert sess.total_tokens == 12


@pytest.mark.asyncio
async def test_log_message_to_ended_session_warns(mock_session, store, caplog) -> None:
    sess = store(_open_session(status="completed"))
    with caplog.at_level(logging.WARNING, logger="contextkeeper.db"):
        await db.log_conversation_message(mock_session, sess.id, "user", "late note")
    assert "already completed" in caplog.text
    assert len(executed(mock_session)) == 1


@pytest.mark.asyncio
async def test_log_message_rejects_wrong_embedding_size(mock_session, store) -> None:
    sess = store(_open_session())
    with pytest.raises(ValidationError) as exc_info:
        await db.log_conversation_message(mock_session, sess.id, "user", "x", embedding=[0.1, 0.2])
    assert exc_info.value.field == "embedding"


# =============================================================================
# Search validation
# =============================================================================


@pytest.mark.asyncio
async def test_similarity_search_validates_dimension(mock_session) -> None:
    with pytest.raises(ValidationError):
        await db.search_conversations(mock_session, [0.5] * 3)
    mock_session.execute.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.parametrize("limit", [0, 101])
async def test_similarity_search_validates_limit(mock_session, embedding, limit: int) -> None:
    with pytest.raises(ValidationError) as exc_info:
        await db.find_related_context(mock_session, embedding, limit=limit)
    assert exc_info.value.field == "limit"


@pytest.mark.asyncio
async def test_search_knowledge_records_access(mock_session) -> None:
    from contextkeeper.models import KnowledgeContext

    entry = KnowledgeContext(id=new_id(), title="t", content="c", access_count=2)
    found = MagicMock()
    found.scalars.return_value.all.return_value = [entry]
    touched = MagicMock()
    touched.all.return_value = [(entry.id, 3)]
    mock_session.execute.side_effect = [found, touched]

    rows = await db.search_knowledge(mock_session, query="deploy")

    assert rows == [entry]
    [(sql, _)] = executed(mock_session)
    assert sql.startswith("UPDATE knowledge_context SET access_count=")
    assert "coalesce(knowledge_context.access_count" in sql
    assert entry.access_count == 3
    assert entry.last_accessed_at is not None


@pytest.mark.asyncio
async def test_related_context_widens_vector_scan(mock_session, embedding) -> None:
    await db.find_related_context(mock_session, embedding, limit=5)

    [(sql, params)] = executed(mock_session, "SELECT set_config")
    assert "hnsw.ef_search" in params.values()
    assert str(db.settings.vector_ef_search) in params.values()


@pytest.mark.asyncio
async def test_vector_scan_never_narrower_than_limit(mock_session, embedding, monkeypatch) -> None:
    monkeypatch.setattr(db.settings, "vector_ef_search", 10)

    await db.search_conversations(mock_session, embedding, limit=50)

    [(_, params)] = executed(mock_session, "SELECT set_config")
    assert "50" in params.values()


# =============================================================================
# Decisions, errors, snapshots, relationships, artifacts, reminders
# =============================================================================


@pytest.mark.asyncio
async def test_assess_decision_validates_outcome(mock_session) -> None:
    with pytest.raises(ValidationError):
        await db.assess_decision(mock_session, new_id(), "great")


@pytest.mark.asyncio
async def test_record_error_occurrence(mock_session, store) -> None:
    error = store(ErrorLog(id=new_id(), error_message="boom", occurrence_count=1, is_recurring=False))
    seen = datetime.now(UTC)
    mock_session.execute.return_value = result_row(2, seen, True)

    await db.record_error_occurrence(mock_session, error.id)

    [(sql, _)] = executed(mock_session)
    assert sql.startswith("UPDATE error_logs SET occurrence_count=")
    assert "coalesce(error_logs.occurrence_count" in sql
    assert sql.endswith(
        "RETURNING error_logs.occurrence_count, error_logs.last_occurrence_at, error_logs.is_recurring"
    )
    assert error.occurrence_count == 2
    assert error.is_recurring is True
    assert error.last_occurrence_at == seen


@pytest.mark.asyncio
async def test_log_error_with_known_solution(mock_session) -> None:
    error = await db.log_error(
        mock_session,
        "KeyError: 'PGPASSWORD'",
        error_type="KeyError",
        solution="Export PGPASSWORD before running pg_dump",
        solution_code="export PGPASSWORD=...",
    )

    assert error.solution == "Export PGPASSWORD before running pg_dump"
    assert error.solution_code == "export PGPASSWORD=..."
    assert error.solved_at == error.first_occurrence_at
    assert mock_session.add.call_args.args[0] is error


@pytest.mark.asyncio
async def test_log_error_without_solution_is_unsolved(mock_session) -> None:
    error = await db.log_error(mock_session, "boom")
    assert error.solution is None
    assert error.solved_at is None


@pytest.mark.asyncio
async def test_log_error_rejects_blank_solution(mock_session) -> None:
    with pytest.raises(ValidationError) as exc_info:
        await db.log_error(mock_session, "boom", solution="   ")
    assert exc_info.value.field == "solution"


@pytest.mark.asyncio
async def test_save_code_snapshot_computes_diff(mock_session) -> None:
    snapshot = await db.save_code_snapshot(
        mock_session,
        file_path="C:\\work\\app\\main.py",
        content_before="print('a')\n",
        content_after="print('b')\n",
        change_type="modify",
    )
    assert snapshot.file_name == "main.py"
    assert "-print('a')" in snapshot.diff
    assert "+print('b')" in snapshot.diff


@pytest.mark.asyncio
async def test_relationship_self_loop_is_rejected(mock_session) -> None:
    entity_id = new_id()
    with pytest.raises(ConstraintError):
        await db.create_relationship(mock_session, "task", entity_id, "task", entity_id, "relates_to")
    mock_session.add.assert_not_called()


@pytest.mark.asyncio
async def test_relationship_same_id_different_kinds_is_allowed(mock_session) -> None:
    entity_id = new_id()
    edge = await db.create_relationship(
        mock_session, "task", entity_id, "project", entity_id, "relates_to", validate_endpoints=False
    )
    assert isinstance(edge, Relationship)


@pytest.mark.asyncio
async def test_relationship_endpoints_must_exist(mock_session, store) -> None:
    task = store(Task(id=new_id(), title="t"))
    with pytest.raises(NotFoundError):
        await db.create_relationship(mock_session, "task", task.id, "decision", new_id(), "solved_by")


@pytest.mark.asyncio
async def test_artifact_versions_increment(mock_session, store) -> None:
    parent = store(Artifact(id=new_id(), name="diagram", version=2))
    child = await db.create_artifact(mock_session, name="diagram", parent_artifact_id=parent.id)
    assert child.version == 3
    assert child.parent_artifact_id == parent.id


@pytest.mark.asyncio
async def test_acknowledge_reminder_is_idempotent(mock_session, store) -> None:
    reminder = store(SessionReminder(id=new_id(), message="back to main goal", acknowledged=False))

    first = await db.acknowledge_reminder(mock_session, reminder.id)
    stamp = first.acknowledged_at
    second = await db.acknowledge_reminder(mock_session, reminder.id)

    assert second.acknowledged is True
    assert second.acknowledged_at == stamp


@pytest.mark.asyncio
async def test_malformed_ids_are_validation_errors(mock_session) -> None:
    with pytest.raises(ValidationError) as exc_info:
        await db.get_task_context(mock_session, "not-a-uuid")
    assert exc_info.value.field == "task_id"


# =============================================================================
# Unit of work
# =============================================================================


@pytest.fixture
def factory_session(monkeypatch, mock_session) -> MagicMock:
    @asynccontextmanager
    async def _factory():
        yield mock_session

    monkeypatch.setattr(db, "async_session_factory", _factory)
    return mock_session


@pytest.mark.asyncio
async def test_unit_of_work_commits(factory_session) -> None:
    async with db.get_session() as session:
        session.add(Project(name="A"))

    factory_session.commit.assert_awaited_once()
    factory_session.rollback.assert_not_awaited()


@pytest.mark.asyncio
async def test_unit_of_work_translates_driver_errors(factory_session) -> None:
    with pytest.raises(TransientError):
        async with db.get_session():
            raise OperationalError("SELECT 1", {}, ConnectionRefusedError("connection refused"))

    factory_session.rollback.assert_awaited_once()
    factory_session.commit.assert_not_awaited()


@pytest.mark.asyncio
async def test_unit_of_work_keeps_service_errors(factory_session) -> None:
    with pytest.raises(NotFoundError):
        async with db.get_session():
            raise NotFoundError("Task", "abc")

    factory_session.rollback.assert_awaited_once()
