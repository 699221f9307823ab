"""Async database connection and query operations for the context memory store."""

import asyncio
import difflib
import logging
import posixpath
import uuid
from collections.abc import AsyncGenerator, Iterable
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, case, func, inspect, or_, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm.attributes import set_committed_value
from sqlalchemy.sql import ColumnElement, Select

from .config import settings
from .errors import ConstraintError, IntegrationError, NotFoundError, ValidationError, translate_db_error
from .models import (
    ARTIFACT_TYPES,
    BACKUP_TYPES,
    CHANGE_TYPES,
    CONTEXT_TYPES,
    DECISION_ASSESSMENT_DAYS,
    DECISION_OUTCOMES,
    DECISION_TYPES,
    ENTITY_KINDS,
    ENTITY_MODELS,
    FINISHED_TASK_STATUSES,
    IMPORTANCE_LEVELS,
    IMPORTANCE_RANK,
    MESSAGE_ROLES,
    MESSAGE_TYPES,
    PRIORITIES,
    PRIORITY_RANK,
    PROJECT_CATEGORIES,
    PROJECT_STATUSES,
    RELATIONSHIP_STRENGTHS,
    RELATIONSHIP_TYPES,
    REMINDER_TYPES,
    SESSION_OUTCOMES,
    SESSION_TYPES,
    STORAGE_TYPES,
    TASK_STATUSES,
    Artifact,
    Base,
    CodeSnapshot,
    ConversationMessage,
    Decision,
    ErrorLog,
    GithubBackup,
    KnowledgeContext,
    Project,
    Relationship,
    Session,
    SessionReminder,
    SessionTask,
    Task,
)

if TYPE_CHECKING:
    from .backup import BackupJob

logger = logging.getLogger(__name__)

# Create async engine and session factory
engine = create_async_engine(
    settings.async_database_url,
    echo=False,
    pool_pre_ping=True,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    isolation_level="READ COMMITTED",
    connect_args={
        "timeout": settings.db_connect_timeout,
        "server_settings": {"statement_timeout": str(settings.db_statement_timeout)},
    },
)
async_session_factory = async_sessionmaker(engine, expire_on_commit=False)

MAX_SEARCH_LIMIT = 100
RECENT_COMPLETION_DAYS = 7


async def init_db() -> None:
    """Create all tables, views and triggers (for development/testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession]:
    """One unit of work: commit on success, roll back and translate on failure."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception as exc:
            await session.rollback()
            if isinstance(exc, (SQLAlchemyError, TimeoutError, OSError)):
                raise translate_db_error(exc) from exc
            raise


async def check_connection() -> None:
    """Run ``SELECT 1``; raises TransientError if the store is unreachable."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, TimeoutError, OSError) as exc:
        raise translate_db_error(exc) from exc


async def get_missing_tables() -> list[str]:
    """Return model tables that do not exist in the connected database."""
    try:
        async with engine.connect() as conn:
            existing = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
    except (SQLAlchemyError, TimeoutError, OSError) as exc:
        raise translate_db_error(exc) from exc
    return sorted(name for name in Base.metadata.tables if name not in existing)


async def get_database_info(session: AsyncSession) -> dict[str, Any]:
    row = (
        await session.execute(
            select(
                func.version(),
                func.current_database(),
                func.pg_size_pretty(func.pg_database_size(func.current_database())),
                func.now(),
            )
        )
    ).one()
    return {"version": row[0], "database": row[1], "size": row[2], "server_time": row[3]}


# =============================================================================
# Validation helpers
# =============================================================================


def _now() -> datetime:
    return datetime.now(UTC)


def _uuid(value: Any, field: str) -> str:
    try:
        return str(uuid.UUID(str(value)))
    except (TypeError, ValueError, AttributeError):
        raise ValidationError(f"{field} must be a UUID, got {value!r}", field=field, value=value) from None


def _optional_uuid(value: Any, field: str) -> str | None:
    return None if value is None else _uuid(value, field)


def _require_text(value: str | None, field: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required", field=field, value=value)
    return value


def _require_choice(value: str | None, choices: Iterable[str], field: str, *, optional: bool = False) -> None:
    if value is None and optional:
        return
    choices = tuple(choices)
    if value not in choices:
        raise ValidationError(
            f"{field} must be one of {', '.join(choices)}; got {value!r}", field=field, value=value
        )


def _require_progress(value: int | None, field: str = "progress_percentage") -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 100:
        raise ValidationError(f"{field} must be an integer in [0, 100]; got {value!r}", field=field, value=value)


def _require_limit(limit: int, field: str = "limit") -> int:
    if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_SEARCH_LIMIT:
        raise ValidationError(f"{field} must be in 1..{MAX_SEARCH_LIMIT}; got {limit!r}", field=field, value=limit)
    return limit


def _require_embedding(embedding: list[float] | None, field: str = "embedding") -> list[float] | None:
    if embedding is None:
        return None
    if len(embedding) != settings.embedding_dimensions:
        raise ValidationError(
            f"{field} must have {settings.embedding_dimensions} dimensions; got {len(embedding)}",
            field=field,
        )
    return [float(x) for x in embedding]


def _hours(value: float | Decimal | None, field: str) -> Decimal | None:
    if value is None:
        return None
    if value < 0:
        raise ValidationError(f"{field} must not be negative", field=field, value=value)
    return Decimal(str(value))


async def _require(
    session: AsyncSession, model: type[Base], identifier: Any, label: str, field: str, *, for_update: bool = False
) -> Any:
    row = await session.get(model, _uuid(identifier, field), with_for_update=for_update or None)
    if row is None:
        raise NotFoundError(label, str(identifier))
    return row


async def _require_optional(
    session: AsyncSession, model: type[Base], identifier: Any, label: str, field: str
) -> Any:
    if identifier is None:
        return None
    return await _require(session, model, identifier, label, field)


def priority_rank(column: Any) -> ColumnElement[int]:
    """critical > high > medium > low as a sortable integer."""
    return case(PRIORITY_RANK, value=column, else_=0)


def importance_rank(column: Any) -> ColumnElement[int]:
    return case(IMPORTANCE_RANK, value=column, else_=0)


async def _increment(session: AsyncSession, row: Base, counters: dict[str, int], **assign: Any) -> None:
    """Bump counters in SQL so concurrent units of work never overwrite each other.

    The new values come back through RETURNING and are written onto ``row``
    as already-persisted state.
    """
    model = type(row)
    names = [*counters, *assign]
    values: dict[Any, Any] = {
        getattr(model, name): func.coalesce(getattr(model, name), 0) + delta for name, delta in counters.items()
    }
    values.update({getattr(model, name): value for name, value in assign.items()})
    stmt = (
        update(model)
        .where(model.id == row.id)
        .values(values)
        .returning(*(getattr(model, name) for name in names))
        .execution_options(synchronize_session=False)
    )
    fresh = (await session.execute(stmt)).one()
    for name, value in zip(names, fresh):
        set_committed_value(row, name, value)


async def _widen_vector_search(session: AsyncSession, limit: int) -> None:
    """Let the hnsw scan return at least ``limit`` candidates (transaction-local)."""
    ef_search = max(limit, settings.vector_ef_search)
    await session.execute(select(func.set_config("hnsw.ef_search", str(ef_search), True)))


# =============================================================================
# Session Operations
# =============================================================================


async def start_session(
    session: AsyncSession,
    session_type: str = "general",
    main_goal: str | None = None,
    primary_project_id: str | None = None,
    machine_name: str | None = None,
    working_directory: str | None = None,
    client_version: str | None = None,
) -> Session:
    """Open a new in-progress session."""
    _require_choice(session_type, SESSION_TYPES, "session_type")
    project = await _require_optional(session, Project, primary_project_id, "Project", "primary_project_id")

    sess = Session(
        session_type=session_type,
        main_goal=main_goal,
        primary_project_id=project.id if project else None,
        machine_name=machine_name,
        working_directory=working_directory,
        client_version=client_version,
        status="in_progress",
        started_at=_now(),
    )
    session.add(sess)
    await session.flush()
    logger.info("Started session %s (%s)", sess.id, session_type)
    return sess


async def load_startup_context(session: AsyncSession, exclude_session_id: str | None = None) -> dict[str, Any]:
    """Everything a new session should see first."""
    goals = await get_active_main_goals(session)

    reminders_query = (
        select(SessionReminder)
        .join(Session, SessionReminder.session_id == Session.id)
        .where(SessionReminder.acknowledged.is_(False), Session.status == "in_progress")
        .order_by(priority_rank(SessionReminder.priority).desc(), SessionReminder.created_at.asc())
    )
    if exclude_session_id is not None:
        reminders_query = reminders_query.where(Session.id != exclude_session_id)
    reminders = list((await session.execute(reminders_query)).scalars().all())

    last_session = (
        await session.execute(
            select(Session).where(Session.ended_at.is_not(None)).order_by(Session.ended_at.desc()).limit(1)
        )
    ).scalar_one_or_none()

    pending_decisions = (
        await session.execute(select(func.count()).select_from(Decision).where(needs_assessment_clause(_now())))
    ).scalar_one()

    return {
        "active_main_goals": goals,
        "pending_reminders": reminders,
        "last_session": last_session,
        "next_steps": list(last_session.next_steps or []) if last_session else [],
        "decisions_needing_assessment": int(pending_decisions or 0),
    }


async def end_session(
    session: AsyncSession,
    session_id: str,
    summary: str,
    outcome: str | None,
    next_steps: list[str] | None = None,
    status: str = "completed",
) -> Session:
    """Close an in-progress session with a summary and a terminal status."""
    _require_choice(status, ("completed", "aborted"), "status")
    _require_choice(outcome, SESSION_OUTCOMES, "outcome", optional=True)
    sess = await _require(session, Session, session_id, "Session", "session_id")
    if not sess.is_open:
        raise ValidationError(f"Session {sess.id} is already {sess.status}", field="session_id", value=session_id)

    now = _now()
    sess.ended_at = now
    if sess.started_at is not None:
        sess.duration_minutes = max(0, int((now - sess.started_at).total_seconds() // 60))
    sess.summary = summary
    sess.outcome = outcome
    sess.next_steps = list(next_steps) if next_steps is not None else sess.next_steps
    sess.status = status
    await session.flush()
    logger.info("Ended session %s (%s, %s min)", sess.id, status, sess.duration_minutes)
    return sess


async def get_session_context(session: AsyncSession, session_id: str) -> dict[str, Any]:
    """The session with its goals, open subtasks, pending reminders and recent messages."""
    sess = await _require(session, Session, session_id, "Session", "session_id")

    linked = select(SessionTask.task_id).where(SessionTask.session_id == sess.id)
    goals = list(
        (
            await session.execute(
                select(Task)
                .where(Task.is_main_goal.is_(True), or_(Task.session_id == sess.id, Task.id.in_(linked)))
                .order_by(priority_rank(Task.priority).desc(), Task.created_at.asc())
            )
        )
        .scalars()
        .all()
    )

    subtasks: list[Task] = []
    if goals:
        subtasks = list(
            (
                await session.execute(
                    select(Task)
                    .where(
                        Task.main_task_id.in_([g.id for g in goals]),
                        Task.status.not_in(FINISHED_TASK_STATUSES),
                    )
                    .order_by(Task.created_at.asc())
                )
            )
            .scalars()
            .all()
        )

    reminders = await get_pending_reminders(session, sess.id)

    recent = list(
        (
            await session.execute(
                select(ConversationMessage)
                .where(ConversationMessage.session_id == sess.id)
                .order_by(ConversationMessage.timestamp.desc())
                .limit(10)
            )
        )
        .scalars()
        .all()
    )
    recent.reverse()

    return {
        "session": sess,
        "main_goals": goals,
        "active_subtasks": subtasks,
        "pending_reminders": reminders,
        "recent_messages": recent,
    }


# =============================================================================
# Project Operations
# =============================================================================

PROJECT_UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "description",
        "status",
        "priority",
        "category",
        "tags",
        "progress_percentage",
        "estimated_hours",
        "actual_hours",
        "deadline_at",
        "github_repo",
        "documentation_url",
        "parent_project_id",
    }
)


async def _check_project_tree(session: AsyncSession, project_id: str, parent_id: str) -> None:
    """Refuse a parent that is the project itself or one of its descendants."""
    seen: set[str] = set()
    current: str | None = parent_id
    while current is not None and current not in seen:
        if current == project_id:
            raise ConstraintError(
                "parent_project_id would create a cycle in the project tree",
                field="parent_project_id",
                value=parent_id,
            )
        seen.add(current)
        row = await session.get(Project, current)
        if row is None:
            if current == parent_id:
                raise NotFoundError("Parent project", parent_id)
            return
        current = row.parent_project_id


async def create_project(
    session: AsyncSession,
    name: str,
    category: str,
    description: str | None = None,
    priority: str = "medium",
    tags: list[str] | None = None,
    github_repo: str | None = None,
    parent_project_id: str | None = None,
    progress_percentage: int = 0,
    estimated_hours: float | None = None,
    deadline_at: datetime | None = None,
) -> Project:
    """Create a new active project."""
    _require_text(name, "name")
    _require_text(category, "category")
    _require_choice(category, PROJECT_CATEGORIES, "category")
    _require_choice(priority, PRIORITIES, "priority")
    _require_progress(progress_percentage)
    parent = await _require_optional(session, Project, parent_project_id, "Parent project", "parent_project_id")

    project = Project(
        name=name.strip(),
        category=category,
        description=description,
        priority=priority,
        status="active",
        tags=list(tags) if tags else None,
        github_repo=github_repo,
        parent_project_id=parent.id if parent else None,
        progress_percentage=progress_percentage,
        estimated_hours=_hours(estimated_hours, "estimated_hours"),
        deadline_at=deadline_at,
        started_at=_now(),
    )
    session.add(project)
    await session.flush()
    logger.info("Created project %s (%s)", project.id, project.name)
    return project


async def update_project(session: AsyncSession, project_id: str, **changes: Any) -> Project:
    """Update whitelisted project fields."""
    unknown = sorted(set(changes) - PROJECT_UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Cannot update project field(s): {', '.join(unknown)}", field=unknown[0])
    if not changes:
        raise ValidationError("No changes given")

    project = await _require(session, Project, project_id, "Project", "project_id")

    if "name" in changes:
        _require_text(changes["name"], "name")
    if "category" in changes:
        _require_text(changes["category"], "category")
        _require_choice(changes["category"], PROJECT_CATEGORIES, "category")
    if "status" in changes:
        _require_choice(changes["status"], PROJECT_STATUSES, "status")
    if "priority" in changes:
        _require_choice(changes["priority"], PRIORITIES, "priority")
    if "progress_percentage" in changes:
        _require_progress(changes["progress_percentage"])
    for field in ("estimated_hours", "actual_hours"):
        if field in changes:
            changes[field] = _hours(changes[field], field)
    if changes.get("parent_project_id") is not None:
        changes["parent_project_id"] = _uuid(changes["parent_project_id"], "parent_project_id")
        await _check_project_tree(session, project.id, changes["parent_project_id"])

    if changes.get("status") == "completed" and project.status != "completed":
        project.completed_at = _now()

    for field, value in changes.items():
        setattr(project, field, value)
    project.updated_at = _now()
    await session.flush()
    logger.info("Updated project %s (%s)", project.id, ", ".join(sorted(changes)))
    return project


async def get_active_projects(session: AsyncSession, limit: int = 20) -> list[tuple[Project, int, int]]:
    """Active projects with their active/completed task counts."""
    _require_limit(limit)
    active_tasks = func.count(Task.id).filter(Task.status.not_in(FINISHED_TASK_STATUSES))
    completed_tasks = func.count(Task.id).filter(Task.status == "completed")
    result = await session.execute(
        select(Project, active_tasks.label("active_tasks"), completed_tasks.label("completed_tasks"))
        .outerjoin(Task, Task.project_id == Project.id)
        .where(Project.status == "active")
        .group_by(Project.id)
        .order_by(priority_rank(Project.priority).desc(), Project.updated_at.desc())
        .limit(limit)
    )
    return [(project, int(active or 0), int(done or 0)) for project, active, done in result.all()]


async def get_project_details(session: AsyncSession, project_id: str) -> dict[str, Any]:
    project = await _require(session, Project, project_id, "Project", "project_id")

    children = (
        await session.execute(select(Project).where(Project.parent_project_id == project.id).order_by(Project.name))
    ).scalars()
    tasks = (
        await session.execute(
            select(Task)
            .where(Task.project_id == project.id)
            .order_by(Task.is_main_goal.desc(), priority_rank(Task.priority).desc(), Task.created_at.asc())
        )
    ).scalars()
    decisions = (
        await session.execute(
            select(Decision).where(Decision.project_id == project.id).order_by(Decision.decided_at.desc()).limit(10)
        )
    ).scalars()
    errors = (
        await session.execute(
            select(ErrorLog)
            .where(ErrorLog.project_id == project.id, ErrorLog.solved_at.is_(None))
            .order_by(ErrorLog.first_occurrence_at.desc())
        )
    ).scalars()

    return {
        "project": project,
        "child_projects": list(children.all()),
        "tasks": list(tasks.all()),
        "recent_decisions": list(decisions.all()),
        "unsolved_errors": list(errors.all()),
    }


async def search_projects(session: AsyncSession, query: str, limit: int = 20) -> list[tuple[Project, float]]:
    """Full-text search over name, description and tags."""
    _require_text(query, "query")
    _require_limit(limit)
    ts_query = func.websearch_to_tsquery("english", query)
    rank = func.ts_rank(Project.search_vector, ts_query).label("rank")
    result = await session.execute(
        select(Project, rank)
        .where(Project.search_vector.op("@@")(ts_query))
        .order_by(rank.desc(), Project.updated_at.desc())
        .limit(limit)
    )
    return [(project, float(score)) for project, score in result.all()]


# =============================================================================
# Task Operations
# =============================================================================


async def _link_task_to_session(session: AsyncSession, sess: Session, task: Task, role: str = "created") -> None:
    session.add(SessionTask(session_id=sess.id, task_id=task.id, role=role))
    await session.flush()
    await _increment(session, sess, {"tasks_created": 1})


async def create_main_goal(
    session: AsyncSession,
    title: str,
    project_id: str,
    description: str | None = None,
    session_id: str | None = None,
    priority: str = "medium",
    deadline_at: datetime | None = None,
    acceptance_criteria: list[str] | None = None,
    tags: list[str] | None = None,
) -> Task:
    """Create a main goal inside a project."""
    _require_text(title, "title")
    _require_choice(priority, PRIORITIES, "priority")
    project = await _require(session, Project, project_id, "Project", "project_id")
    sess = await _require_optional(session, Session, session_id, "Session", "session_id")

    task = Task(
        title=title.strip(),
        description=description,
        is_main_goal=True,
        project_id=project.id,
        session_id=sess.id if sess else None,
        status="pending",
        priority=priority,
        deadline_at=deadline_at,
        acceptance_criteria=list(acceptance_criteria) if acceptance_criteria else None,
        tags=list(tags) if tags else None,
    )
    session.add(task)
    await session.flush()
    if sess is not None:
        await _link_task_to_session(session, sess, task)
    logger.info("Created main goal %s in project %s", task.id, project.id)
    return task


async def create_subtask(
    session: AsyncSession,
    title: str,
    main_task_id: str,
    description: str | None = None,
    session_id: str | None = None,
    status: str = "pending",
    priority: str = "medium",
) -> Task:
    """Create a subtask under a main goal; inherits the goal's project."""
    _require_text(title, "title")
    _require_choice(status, TASK_STATUSES, "status")
    _require_choice(priority, PRIORITIES, "priority")
    main = await _require(session, Task, main_task_id, "Main task", "main_task_id")
    if not main.is_main_goal:
        raise ValidationError(f"Task {main.id} is not a main goal", field="main_task_id", value=main_task_id)
    sess = await _require_optional(session, Session, session_id, "Session", "session_id")

    task = Task(
        title=title.strip(),
        description=description,
        is_main_goal=False,
        main_task_id=main.id,
        parent_task_id=main.id,
        project_id=main.project_id,
        session_id=sess.id if sess else None,
        status=status,
        priority=priority,
        started_at=_now() if status == "in_progress" else None,
    )
    session.add(task)
    await session.flush()
    if sess is not None:
        await _link_task_to_session(session, sess, task)
    logger.info("Created subtask %s under main goal %s", task.id, main.id)
    return task


async def update_task_status(
    session: AsyncSession,
    task_id: str,
    status: str,
    result_summary: str | None = None,
    progress_percentage: int | None = None,
    completed_at: datetime | None = None,
    started_at: datetime | None = None,
) -> Task:
    """Move a task to a new status; completion timestamps are caller-supplied."""
    _require_choice(status, TASK_STATUSES, "status")
    _require_progress(progress_percentage)
    # row lock: two concurrent completions must count once
    task = await _require(session, Task, task_id, "Task", "task_id", for_update=True)

    old_status = task.status
    task.status = status
    if result_summary is not None:
        task.result_summary = result_summary
    if progress_percentage is not None:
        task.progress_percentage = progress_percentage
    if completed_at is not None:
        task.completed_at = completed_at
    if started_at is not None:
        task.started_at = started_at
    task.updated_at = _now()

    if status == "completed" and old_status != "completed" and task.session_id is not None:
        owner = await session.get(Session, task.session_id)
        if owner is not None:
            await _increment(session, owner, {"tasks_completed": 1})

    await session.flush()
    logger.info("Task %s: %s -> %s", task.id, old_status, status)
    return task


def active_main_goals_query(project_id: str | None = None) -> Select:
    query = select(Task).where(Task.is_main_goal.is_(True), Task.status.not_in(FINISHED_TASK_STATUSES))
    if project_id is not None:
        query = query.where(Task.project_id == project_id)
    return query.order_by(priority_rank(Task.priority).desc(), Task.created_at.asc())


def recently_completed_goals_query(now: datetime, project_id: str | None = None) -> Select:
    cutoff = now - timedelta(days=RECENT_COMPLETION_DAYS)
    query = select(Task).where(
        Task.is_main_goal.is_(True),
        Task.status == "completed",
        or_(
            Task.completed_at >= cutoff,
            and_(Task.completed_at.is_(None), Task.updated_at >= cutoff),
        ),
    )
    if project_id is not None:
        query = query.where(Task.project_id == project_id)
    return query.order_by(priority_rank(Task.priority).desc(), Task.created_at.asc())


async def get_active_main_goals(
    session: AsyncSession, include_completed: bool = False, project_id: str | None = None
) -> list[Task]:
    """Open main goals by priority rank, oldest first within a rank."""
    project_id = _optional_uuid(project_id, "project_id")
    goals = list((await session.execute(active_main_goals_query(project_id))).scalars().all())
    if include_completed:
        recent = await session.execute(recently_completed_goals_query(_now(), project_id))
        goals.extend(recent.scalars().all())
    return goals


async def get_task_context(session: AsyncSession, task_id: str) -> dict[str, Any]:
    task = await _require(session, Task, task_id, "Task", "task_id")

    main_goal = None
    if task.main_task_id is not None:
        main_goal = await session.get(Task, task.main_task_id)

    subtasks = list(
        (
            await session.execute(
                select(Task)
                .where(or_(Task.main_task_id == task.id, Task.parent_task_id == task.id))
                .order_by(Task.created_at.asc())
            )
        )
        .scalars()
        .all()
    )

    async def _tasks(ids: list[str] | None) -> list[Task]:
        if not ids:
            return []
        return list((await session.execute(select(Task).where(Task.id.in_(ids)))).scalars().all())

    async def _linked(model: type[Base], order_by: Any) -> list[Any]:
        result = await session.execute(select(model).where(model.task_id == task.id).order_by(order_by))
        return list(result.scalars().all())

    return {
        "task": task,
        "main_goal": main_goal,
        "active_subtasks": [t for t in subtasks if t.is_active],
        "finished_subtasks": [t for t in subtasks if not t.is_active],
        "blocked_by": await _tasks(task.blocked_by),
        "blocking": await _tasks(task.blocking),
        "decisions": await _linked(Decision, Decision.decided_at.desc()),
        "errors": await _linked(ErrorLog, ErrorLog.first_occurrence_at.desc()),
        "artifacts": await _linked(Artifact, Artifact.created_at.desc()),
    }


async def _load_dependency_pair(session: AsyncSession, task_id: str, blocked_by_task_id: str) -> tuple[Task, Task]:
    task_id = _uuid(task_id, "task_id")
    blocked_by_task_id = _uuid(blocked_by_task_id, "blocked_by_task_id")
    if task_id == blocked_by_task_id:
        raise ConstraintError("A task cannot depend on itself", field="blocked_by_task_id", value=blocked_by_task_id)
    task = await _require(session, Task, task_id, "Task", "task_id")
    blocker = await _require(session, Task, blocked_by_task_id, "Task", "blocked_by_task_id")
    return task, blocker


async def add_task_dependency(session: AsyncSession, task_id: str, blocked_by_task_id: str) -> Task:
    """Record that ``task_id`` is blocked by ``blocked_by_task_id`` (both sides)."""
    task, blocker = await _load_dependency_pair(session, task_id, blocked_by_task_id)
    if blocker.id not in (task.blocked_by or []):
        task.blocked_by = [*(task.blocked_by or []), blocker.id]
    if task.id not in (blocker.blocking or []):
        blocker.blocking = [*(blocker.blocking or []), task.id]
    await session.flush()
    logger.info("Task %s now blocked by %s", task.id, blocker.id)
    return task


async def remove_task_dependency(session: AsyncSession, task_id: str, blocked_by_task_id: str) -> Task:
    task, blocker = await _load_dependency_pair(session, task_id, blocked_by_task_id)
    task.blocked_by = [t for t in (task.blocked_by or []) if t != blocker.id] or None
    blocker.blocking = [t for t in (blocker.blocking or []) if t != task.id] or None
    await session.flush()
    logger.info("Task %s no longer blocked by %s", task.id, blocker.id)
    return task


# =============================================================================
# Conversation Operations
# =============================================================================


async def log_conversation_message(
    session: AsyncSession,
    session_id: str,
    role: str,
    content: str,
    related_project_id: str | None = None,
    related_task_id: str | None = None,
    message_type: str | None = None,
    file_path: str | None = None,
    code_diff: str | None = None,
    token_count: int | None = None,
    embedding: list[float] | None = None,
) -> ConversationMessage:
    """Append a message and bump the session's counters."""
    _require_choice(role, MESSAGE_ROLES, "role")
    _require_text(content, "content")
    _require_choice(message_type, MESSAGE_TYPES, "message_type", optional=True)
    if token_count is not None and token_count < 0:
        raise ValidationError("token_count must not be negative", field="token_count", value=token_count)
    vector = _require_embedding(embedding)
    sess = await _require(session, Session, session_id, "Session", "session_id")
    if not sess.is_open:
        logger.warning("Logging message to session %s which is already %s", sess.id, sess.status)

    message = ConversationMessage(
        session_id=sess.id,
        role=role,
        content=content,
        related_project_id=_optional_uuid(related_project_id, "related_project_id"),
        related_task_id=_optional_uuid(related_task_id, "related_task_id"),
        message_type=message_type,
        file_path=file_path,
        code_diff=code_diff,
        token_count=token_count,
        embedding=vector,
        timestamp=_now(),
    )
    session.add(message)
    await session.flush()
    await _increment(session, sess, {"total_messages": 1, "total_tokens": token_count or 0})
    return message


def conversation_similarity_query(embedding: list[float], limit: int, cutoff: datetime) -> Select:
    distance = ConversationMessage.embedding.cosine_distance(embedding)
    return (
        select(ConversationMessage, (1 - distance).label("similarity"))
        .where(ConversationMessage.embedding.is_not(None), ConversationMessage.timestamp > cutoff)
        .order_by(distance.asc())
        .limit(limit)
    )


async def search_conversations(
    session: AsyncSession, embedding: list[float], limit: int = 10, days_back: int = 30
) -> list[tuple[ConversationMessage, float]]:
    """Nearest messages by cosine similarity within the last ``days_back`` days."""
    if embedding is None:
        raise ValidationError("embedding is required", field="embedding")
    vector = _require_embedding(embedding)
    _require_limit(limit)
    if days_back < 1:
        raise ValidationError("days_back must be positive", field="days_back", value=days_back)
    cutoff = _now() - timedelta(days=days_back)
    await _widen_vector_search(session, limit)
    result = await session.execute(conversation_similarity_query(vector, limit, cutoff))
    return [(message, float(score)) for message, score in result.all()]


# =============================================================================
# Decision Operations
# =============================================================================


def needs_assessment_clause(now: datetime) -> ColumnElement[bool]:
    """SQL form of :meth:`Decision.needs_assessment`."""
    return or_(
        Decision.outcome.is_(None),
        Decision.outcome == "unknown",
        and_(
            Decision.outcome_assessed_at.is_(None),
            Decision.decided_at < now - timedelta(days=DECISION_ASSESSMENT_DAYS),
        ),
    )


async def log_decision(
    session: AsyncSession,
    title: str,
    description: str,
    rationale: str,
    decision_type: str | None = None,
    alternatives_considered: list[str] | None = None,
    pros: list[str] | None = None,
    cons: list[str] | None = None,
    context: str | None = None,
    project_id: str | None = None,
    session_id: str | None = None,
    task_id: str | None = None,
    tags: list[str] | None = None,
) -> Decision:
    _require_text(title, "title")
    _require_text(description, "description")
    _require_text(rationale, "rationale")
    _require_choice(decision_type, DECISION_TYPES, "decision_type", optional=True)

    decision = Decision(
        title=title.strip(),
        description=description,
        rationale=rationale,
        decision_type=decision_type,
        alternatives_considered=list(alternatives_considered) if alternatives_considered else None,
        pros=list(pros) if pros else None,
        cons=list(cons) if cons else None,
        context=context,
        project_id=_optional_uuid(project_id, "project_id"),
        session_id=_optional_uuid(session_id, "session_id"),
        task_id=_optional_uuid(task_id, "task_id"),
        tags=list(tags) if tags else None,
        decided_at=_now(),
    )
    session.add(decision)
    await session.flush()
    logger.info("Logged decision %s (%s)", decision.id, decision.title)
    return decision


def recent_decisions_query(
    now: datetime,
    project_id: str | None = None,
    days_back: int = 30,
    needs_assessment_only: bool = False,
    limit: int = 50,
) -> Select:
    query = select(Decision)
    if project_id is not None:
        query = query.where(Decision.project_id == project_id)
    if needs_assessment_only:
        # No window: stale unassessed decisions are the point
        query = query.where(needs_assessment_clause(now))
    else:
        query = query.where(Decision.decided_at >= now - timedelta(days=days_back))
    return query.order_by(Decision.decided_at.desc()).limit(limit)


async def get_recent_decisions(
    session: AsyncSession,
    project_id: str | None = None,
    days_back: int = 30,
    needs_assessment_only: bool = False,
    limit: int = 50,
) -> list[Decision]:
    _require_limit(limit)
    if days_back < 1:
        raise ValidationError("days_back must be positive", field="days_back", value=days_back)
    query = recent_decisions_query(
        _now(), _optional_uuid(project_id, "project_id"), days_back, needs_assessment_only, limit
    )
    return list((await session.execute(query)).scalars().all())


async def assess_decision(
    session: AsyncSession,
    decision_id: str,
    outcome: str,
    outcome_notes: str | None = None,
    lessons_learned: list[str] | None = None,
    would_do_differently: str | None = None,
) -> Decision:
    """Record how a decision turned out."""
    _require_choice(outcome, DECISION_OUTCOMES, "outcome")
    decision = await _require(session, Decision, decision_id, "Decision", "decision_id")

    now = _now()
    decision.outcome = outcome
    decision.outcome_notes = outcome_notes
    decision.outcome_assessed_at = now
    decision.revisited_at = now
    if lessons_learned is not None:
        decision.lessons_learned = list(lessons_learned)
    if would_do_differently is not None:
        decision.would_do_differently = would_do_differently
    await session.flush()
    logger.info("Assessed decision %s: %s", decision.id, outcome)
    return decision


# =============================================================================
# Error Log Operations
# =============================================================================


async def log_error(
    session: AsyncSession,
    error_message: str,
    error_type: str | None = None,
    error_code: str | None = None,
    stack_trace: str | None = None,
    reproduction_steps: list[str] | None = None,
    environment_info: dict[str, Any] | None = None,
    solution: str | None = None,
    solution_code: str | None = None,
    project_id: str | None = None,
    session_id: str | None = None,
    task_id: str | None = None,
    file_path: str | None = None,
    tags: list[str] | None = None,
) -> ErrorLog:
    """Record an error; a known fix may be logged with it and marks it solved."""
    _require_text(error_message, "error_message")
    if solution is not None:
        _require_text(solution, "solution")
    now = _now()
    error = ErrorLog(
        error_message=error_message,
        error_type=error_type,
        error_code=error_code,
        stack_trace=stack_trace,
        reproduction_steps=list(reproduction_steps) if reproduction_steps else None,
        environment_info=environment_info,
        solution=solution,
        solution_code=solution_code,
        solved_at=now if solution is not None else None,
        project_id=_optional_uuid(project_id, "project_id"),
        session_id=_optional_uuid(session_id, "session_id"),
        task_id=_optional_uuid(task_id, "task_id"),
        file_path=file_path,
        tags=list(tags) if tags else None,
        first_occurrence_at=now,
        last_occurrence_at=now,
    )
    session.add(error)
    await session.flush()
    logger.info("Logged error %s (%s)", error.id, error_type or "untyped")
    return error


async def record_error_occurrence(session: AsyncSession, error_id: str) -> ErrorLog:
    """Count another sighting of a known error."""
    error = await _require(session, ErrorLog, error_id, "Error", "error_id")
    await _increment(session, error, {"occurrence_count": 1}, last_occurrence_at=_now(), is_recurring=True)
    return error


async def resolve_error(
    session: AsyncSession,
    error_id: str,
    solution: str,
    solution_code: str | None = None,
    solved_by: str | None = None,
) -> ErrorLog:
    _require_text(solution, "solution")
    error = await _require(session, ErrorLog, error_id, "Error", "error_id")
    error.solution = solution
    error.solution_code = solution_code
    error.solved_by = solved_by
    error.solved_at = _now()
    await session.flush()
    logger.info("Resolved error %s", error.id)
    return error


def search_errors_query(
    error_type: str | None = None,
    project_id: str | None = None,
    solved: bool | None = None,
    recurring: bool | None = None,
    tags: list[str] | None = None,
    query: str | None = None,
    limit: int = 20,
) -> Select:
    stmt = select(ErrorLog)
    if error_type:
        stmt = stmt.where(ErrorLog.error_type == error_type)
    if project_id is not None:
        stmt = stmt.where(ErrorLog.project_id == project_id)
    if solved is True:
        stmt = stmt.where(ErrorLog.solved_at.is_not(None))
    elif solved is False:
        stmt = stmt.where(ErrorLog.solved_at.is_(None))
    if recurring is not None:
        stmt = stmt.where(ErrorLog.is_recurring.is_(recurring))
    if tags:
        stmt = stmt.where(ErrorLog.tags.contains(list(tags)))
    if query:
        stmt = stmt.where(
            or_(
                ErrorLog.error_message.icontains(query, autoescape=True),
                ErrorLog.error_type.icontains(query, autoescape=True),
                ErrorLog.solution.icontains(query, autoescape=True),
            )
        )
    last_seen = func.coalesce(ErrorLog.last_occurrence_at, ErrorLog.first_occurrence_at)
    return stmt.order_by(last_seen.desc()).limit(limit)


async def search_errors(
    session: AsyncSession,
    error_type: str | None = None,
    project_id: str | None = None,
    solved: bool | None = None,
    recurring: bool | None = None,
    tags: list[str] | None = None,
    query: str | None = None,
    limit: int = 20,
) -> list[ErrorLog]:
    _require_limit(limit)
    stmt = search_errors_query(
        error_type, _optional_uuid(project_id, "project_id"), solved, recurring, tags, query, limit
    )
    return list((await session.execute(stmt)).scalars().all())


# =============================================================================
# Knowledge Operations
# =============================================================================


def _knowledge_scope(now: datetime, project_id: str | None, include_expired: bool) -> list[ColumnElement[bool]]:
    clauses: list[ColumnElement[bool]] = []
    if project_id is not None:
        clauses.append(or_(KnowledgeContext.project_id == project_id, KnowledgeContext.global_.is_(True)))
    if not include_expired:
        clauses.append(or_(KnowledgeContext.valid_until.is_(None), KnowledgeContext.valid_until > now))
    return clauses


async def _touch(session: AsyncSession, rows: Iterable[KnowledgeContext], now: datetime) -> None:
    """Count one access per row in a single UPDATE."""
    by_id = {row.id: row for row in rows}
    if not by_id:
        return
    stmt = (
        update(KnowledgeContext)
        .where(KnowledgeContext.id.in_(list(by_id)))
        .values(
            {
                KnowledgeContext.access_count: func.coalesce(KnowledgeContext.access_count, 0) + 1,
                KnowledgeContext.last_accessed_at: now,
            }
        )
        .returning(KnowledgeContext.id, KnowledgeContext.access_count)
        .execution_options(synchronize_session=False)
    )
    for row_id, access_count in (await session.execute(stmt)).all():
        row = by_id.get(row_id)
        if row is not None:
            set_committed_value(row, "access_count", access_count)
            set_committed_value(row, "last_accessed_at", now)


async def store_knowledge(
    session: AsyncSession,
    title: str,
    content: str,
    context_type: str | None = None,
    project_id: str | None = None,
    global_: bool = False,
    importance: str = "normal",
    tags: list[str] | None = None,
    valid_until: datetime | None = None,
    embedding: list[float] | None = None,
) -> KnowledgeContext:
    """Store a piece of knowledge for a project, or globally."""
    _require_text(title, "title")
    _require_text(content, "content")
    _require_choice(context_type, CONTEXT_TYPES, "context_type", optional=True)
    _require_choice(importance, IMPORTANCE_LEVELS, "importance")
    vector = _require_embedding(embedding)
    project = await _require_optional(session, Project, project_id, "Project", "project_id")

    entry = KnowledgeContext(
        title=title.strip(),
        content=content,
        context_type=context_type,
        project_id=project.id if project else None,
        global_=global_,
        importance=importance,
        tags=list(tags) if tags else None,
        valid_from=_now(),
        valid_until=valid_until,
        embedding=vector,
    )
    session.add(entry)
    await session.flush()
    logger.info("Stored knowledge %s (%s)", entry.id, entry.title)
    return entry


def search_knowledge_query(
    now: datetime,
    query: str | None = None,
    context_type: str | None = None,
    project_id: str | None = None,
    global_only: bool = False,
    tags: list[str] | None = None,
    include_expired: bool = False,
    limit: int = 20,
) -> Select:
    stmt = select(KnowledgeContext)
    if context_type:
        stmt = stmt.where(KnowledgeContext.context_type == context_type)
    if global_only:
        stmt = stmt.where(KnowledgeContext.global_.is_(True))
        project_id = None
    for clause in _knowledge_scope(now, project_id, include_expired):
        stmt = stmt.where(clause)
    if tags:
        stmt = stmt.where(KnowledgeContext.tags.contains(list(tags)))
    if query:
        stmt = stmt.where(
            or_(
                KnowledgeContext.title.icontains(query, autoescape=True),
                KnowledgeContext.content.icontains(query, autoescape=True),
            )
        )
    return stmt.order_by(
        importance_rank(KnowledgeContext.importance).desc(), KnowledgeContext.valid_from.desc()
    ).limit(limit)


async def search_knowledge(
    session: AsyncSession,
    query: str | None = None,
    context_type: str | None = None,
    project_id: str | None = None,
    global_only: bool = False,
    tags: list[str] | None = None,
    include_expired: bool = False,
    limit: int = 20,
) -> list[KnowledgeContext]:
    """Filter knowledge entries; every returned row counts as an access."""
    _require_limit(limit)
    _require_choice(context_type, CONTEXT_TYPES, "context_type", optional=True)
    now = _now()
    stmt = search_knowledge_query(
        now, query, context_type, _optional_uuid(project_id, "project_id"), global_only, tags, include_expired, limit
    )
    rows = list((await session.execute(stmt)).scalars().all())
    await _touch(session, rows, now)
    return rows


def knowledge_similarity_query(
    embedding: list[float], limit: int, now: datetime, project_id: str | None = None
) -> Select:
    distance = KnowledgeContext.embedding.cosine_distance(embedding)
    stmt = select(KnowledgeContext, (1 - distance).label("similarity")).where(
        KnowledgeContext.embedding.is_not(None),
        or_(KnowledgeContext.valid_until.is_(None), KnowledgeContext.valid_until > now),
    )
    # strictly the project; global entries are not pulled in here
    if project_id is not None:
        stmt = stmt.where(KnowledgeContext.project_id == project_id)
    return stmt.order_by(distance.asc()).limit(limit)


async def find_related_context(
    session: AsyncSession, embedding: list[float], limit: int = 10, project_id: str | None = None
) -> list[tuple[KnowledgeContext, float]]:
    """Nearest valid knowledge entries by cosine similarity."""
    if embedding is None:
        raise ValidationError("embedding is required", field="embedding")
    vector = _require_embedding(embedding)
    _require_limit(limit)
    now = _now()
    await _widen_vector_search(session, limit)
    result = await session.execute(
        knowledge_similarity_query(vector, limit, now, _optional_uuid(project_id, "project_id"))
    )
    rows = [(entry, float(score)) for entry, score in result.all()]
    await _touch(session, (entry for entry, _ in rows), now)
    return rows


# =============================================================================
# Code Snapshot Operations
# =============================================================================


def unified_diff(before: str, after: str, file_name: str) -> str:
    return "".join(
        difflib.unified_diff(
            before.splitlines(keepends=True),
            after.splitlines(keepends=True),
            fromfile=f"a/{file_name}",
            tofile=f"b/{file_name}",
        )
    )


async def save_code_snapshot(
    session: AsyncSession,
    file_path: str,
    content_after: str | None,
    change_type: str,
    content_before: str | None = None,
    diff: str | None = None,
    language: str | None = None,
    change_reason: str | None = None,
    project_id: str | None = None,
    session_id: str | None = None,
    task_id: str | None = None,
    decision_id: str | None = None,
    git_commit_hash: str | None = None,
    git_branch: str | None = None,
    git_repo_url: str | None = None,
) -> CodeSnapshot:
    """Record a file change; computes a unified diff when none is supplied."""
    _require_text(file_path, "file_path")
    _require_choice(change_type, CHANGE_TYPES, "change_type")
    file_name = posixpath.basename(file_path.replace("\\", "/").rstrip("/"))
    _require_text(file_name, "file_path")
    if diff is None and content_before is not None:
        diff = unified_diff(content_before, content_after or "", file_name)

    snapshot = CodeSnapshot(
        file_path=file_path,
        file_name=file_name,
        language=language,
        content_before=content_before,
        content_after=content_after,
        diff=diff,
        change_type=change_type,
        change_reason=change_reason,
        project_id=_optional_uuid(project_id, "project_id"),
        session_id=_optional_uuid(session_id, "session_id"),
        task_id=_optional_uuid(task_id, "task_id"),
        decision_id=_optional_uuid(decision_id, "decision_id"),
        git_commit_hash=git_commit_hash,
        git_branch=git_branch,
        git_repo_url=git_repo_url,
    )
    session.add(snapshot)
    await session.flush()
    logger.info("Saved snapshot %s of %s", snapshot.id, file_path)
    return snapshot


# =============================================================================
# Relationship Operations
# =============================================================================


async def create_relationship(
    session: AsyncSession,
    source_type: str,
    source_id: str,
    target_type: str,
    target_id: str,
    relationship_type: str,
    strength: str = "normal",
    description: str | None = None,
    validate_endpoints: bool = True,
    created_by: str | None = None,
) -> Relationship:
    """Link two entities with a typed, directed edge."""
    _require_choice(source_type, ENTITY_KINDS, "source_type")
    _require_choice(target_type, ENTITY_KINDS, "target_type")
    _require_choice(relationship_type, RELATIONSHIP_TYPES, "relationship_type")
    _require_choice(strength, RELATIONSHIP_STRENGTHS, "strength")
    source_id = _uuid(source_id, "source_id")
    target_id = _uuid(target_id, "target_id")
    if source_type == target_type and source_id == target_id:
        raise ConstraintError("An entity cannot be related to itself", field="target_id", value=target_id)

    if validate_endpoints:
        for kind, identifier, field in ((source_type, source_id, "source_id"), (target_type, target_id, "target_id")):
            await _require(session, ENTITY_MODELS[kind], identifier, kind.capitalize(), field)

    edge = Relationship(
        source_type=source_type,
        source_id=source_id,
        target_type=target_type,
        target_id=target_id,
        relationship_type=relationship_type,
        strength=strength,
        description=description,
        created_by=created_by,
    )
    session.add(edge)
    await session.flush()
    logger.info("Linked %s:%s -[%s]-> %s:%s", source_type, source_id, relationship_type, target_type, target_id)
    return edge


def relationships_query(entity_type: str, entity_id: str, direction: str = "both") -> Select:
    outgoing = and_(Relationship.source_type == entity_type, Relationship.source_id == entity_id)
    incoming = and_(Relationship.target_type == entity_type, Relationship.target_id == entity_id)
    clause = {"outgoing": outgoing, "incoming": incoming, "both": or_(outgoing, incoming)}[direction]
    return select(Relationship).where(clause).order_by(Relationship.created_at.desc())


async def get_relationships(
    session: AsyncSession, entity_type: str, entity_id: str, direction: str = "both"
) -> list[Relationship]:
    _require_choice(entity_type, ENTITY_KINDS, "entity_type")
    _require_choice(direction, ("outgoing", "incoming", "both"), "direction")
    stmt = relationships_query(entity_type, _uuid(entity_id, "entity_id"), direction)
    return list((await session.execute(stmt)).scalars().all())


# =============================================================================
# Artifact Operations
# =============================================================================


async def create_artifact(
    session: AsyncSession,
    name: str,
    artifact_type: str | None = None,
    file_path: str | None = None,
    description: str | None = None,
    project_id: str | None = None,
    session_id: str | None = None,
    task_id: str | None = None,
    content: str | None = None,
    storage_type: str | None = None,
    storage_path: str | None = None,
    url: str | None = None,
    parent_artifact_id: str | None = None,
) -> Artifact:
    """Create an artifact; with a parent it becomes the parent's next version."""
    _require_text(name, "name")
    _require_choice(artifact_type, ARTIFACT_TYPES, "type", optional=True)
    _require_choice(storage_type, STORAGE_TYPES, "storage_type", optional=True)
    parent = await _require_optional(session, Artifact, parent_artifact_id, "Parent artifact", "parent_artifact_id")

    now = _now()
    artifact = Artifact(
        name=name.strip(),
        type=artifact_type,
        file_path=file_path,
        description=description,
        project_id=_optional_uuid(project_id, "project_id"),
        session_id=_optional_uuid(session_id, "session_id"),
        task_id=_optional_uuid(task_id, "task_id"),
        content=content,
        storage_type=storage_type,
        storage_path=storage_path,
        url=url,
        created_at=now,
        modified_at=now,
        version=(parent.version or 1) + 1 if parent else 1,
        parent_artifact_id=parent.id if parent else None,
    )
    session.add(artifact)
    await session.flush()
    logger.info("Created artifact %s v%s", artifact.id, artifact.version)
    return artifact


async def get_artifact_versions(session: AsyncSession, artifact_id: str) -> list[Artifact]:
    """The version chain containing ``artifact_id``, root first."""
    artifact = await _require(session, Artifact, artifact_id, "Artifact", "artifact_id")

    chain = [artifact]
    seen = {artifact.id}
    current = artifact
    while current.parent_artifact_id is not None and current.parent_artifact_id not in seen:
        parent = await session.get(Artifact, current.parent_artifact_id)
        if parent is None:
            break
        chain.insert(0, parent)
        seen.add(parent.id)
        current = parent

    current = artifact
    while True:
        child = (
            await session.execute(
                select(Artifact)
                .where(Artifact.parent_artifact_id == current.id)
                .order_by(Artifact.version.desc(), Artifact.created_at.desc())
                .limit(1)
            )
        ).scalar_one_or_none()
        if child is None or child.id in seen:
            break
        chain.append(child)
        seen.add(child.id)
        current = child

    return chain


# =============================================================================
# Reminder Operations
# =============================================================================


async def create_reminder(
    session: AsyncSession,
    session_id: str,
    reminder_type: str,
    message: str,
    priority: str = "medium",
    main_task_id: str | None = None,
    current_subtask_id: str | None = None,
    related_project_id: str | None = None,
) -> SessionReminder:
    _require_choice(reminder_type, REMINDER_TYPES, "reminder_type")
    _require_text(message, "message")
    _require_choice(priority, PRIORITIES, "priority")
    sess = await _require(session, Session, session_id, "Session", "session_id")

    reminder = SessionReminder(
        session_id=sess.id,
        reminder_type=reminder_type,
        message=message,
        priority=priority,
        main_task_id=_optional_uuid(main_task_id, "main_task_id"),
        current_subtask_id=_optional_uuid(current_subtask_id, "current_subtask_id"),
        related_project_id=_optional_uuid(related_project_id, "related_project_id"),
        created_at=_now(),
    )
    session.add(reminder)
    await session.flush()
    logger.info("Created %s reminder %s for session %s", reminder_type, reminder.id, sess.id)
    return reminder


def pending_reminders_query(session_id: str) -> Select:
    return (
        select(SessionReminder)
        .where(SessionReminder.session_id == session_id, SessionReminder.acknowledged.is_(False))
        .order_by(priority_rank(SessionReminder.priority).desc(), SessionReminder.created_at.asc())
    )


async def get_pending_reminders(session: AsyncSession, session_id: str) -> list[SessionReminder]:
    """Unacknowledged reminders, most urgent first. Reading does not acknowledge."""
    stmt = pending_reminders_query(_uuid(session_id, "session_id"))
    return list((await session.execute(stmt)).scalars().all())


async def acknowledge_reminder(session: AsyncSession, reminder_id: str) -> SessionReminder:
    reminder = await _require(session, SessionReminder, reminder_id, "Reminder", "reminder_id")
    if not reminder.acknowledged:
        reminder.acknowledged = True
        reminder.acknowledged_at = _now()
        await session.flush()
    return reminder


# =============================================================================
# Status Operations
# =============================================================================


async def get_system_status(session: AsyncSession) -> dict[str, Any]:
    """Row counts and headline figures in one round trip, plus the last backup."""
    now = _now()

    def _count(model: type[Base], *where: Any) -> Any:
        return select(func.count()).select_from(model).where(*where).scalar_subquery()

    table_counts = {
        table.name: select(func.count()).select_from(table).scalar_subquery()
        for table in Base.metadata.sorted_tables
    }
    headline = {
        "active_projects": _count(Project, Project.status == "active"),
        "active_main_goals": _count(
            Task, Task.is_main_goal.is_(True), Task.status.not_in(FINISHED_TASK_STATUSES)
        ),
        "open_sessions": _count(Session, Session.status == "in_progress"),
        "pending_reminders": _count(SessionReminder, SessionReminder.acknowledged.is_(False)),
        "decisions_needing_assessment": _count(Decision, needs_assessment_clause(now)),
    }
    columns = [expr.label(f"table__{name}") for name, expr in table_counts.items()]
    columns += [expr.label(name) for name, expr in headline.items()]
    columns.append(func.now().label("server_time"))
    row = (await session.execute(select(*columns))).one()._mapping

    last_backup = (
        await session.execute(select(GithubBackup).order_by(GithubBackup.started_at.desc()).limit(1))
    ).scalar_one_or_none()

    return {
        "tables": {name: int(row[f"table__{name}"]) for name in table_counts},
        **{name: int(row[name]) for name in headline},
        "last_backup": last_backup,
        "server_time": row["server_time"],
    }


# =============================================================================
# Backup Operations
# =============================================================================


async def backup_to_github(
    backup_type: str = "data_only",
    commit_message: str | None = None,
    *,
    job: "BackupJob | None" = None,
) -> GithubBackup:
    """Run the export job and record the run; opens its own units of work."""
    from .backup import BackupJob

    _require_choice(backup_type, BACKUP_TYPES, "backup_type")
    job = job or BackupJob.from_settings()

    async with get_session() as session:
        record = GithubBackup(
            backup_type=backup_type,
            status="in_progress",
            repo_owner=settings.repo_owner,
            repo_name=settings.repo_name,
            branch=job.branch,
            tables_included=[table.name for table in Base.metadata.sorted_tables],
            started_at=_now(),
        )
        session.add(record)
        await session.flush()
        backup_id = record.id
    logger.info("Backup %s started (%s)", backup_id, backup_type)

    try:
        result = await asyncio.to_thread(job.run, backup_type, commit_message)
    except Exception as exc:
        failure = exc if isinstance(exc, IntegrationError) else IntegrationError(f"Backup failed: {exc}")
        logger.error("Backup %s failed: %s", backup_id, failure.message)
        async with get_session() as session:
            record = await session.get(GithubBackup, backup_id)
            if record is not None:
                record.status = "failed"
                record.error_message = failure.message
                record.completed_at = _now()
        if failure is exc:
            raise
        raise failure from exc

    async with get_session() as session:
        record = await session.get(GithubBackup, backup_id)
        if record is None:
            raise NotFoundError("Backup run", backup_id)
        record.status = "completed"
        record.commit_hash = result.commit_hash
        record.status_message = result.summary()
        record.completed_at = _now()
    logger.info("Backup %s completed: %s", backup_id, result.summary())
    return record


async def get_backup_history(session: AsyncSession, limit: int = 10) -> list[GithubBackup]:
    _require_limit(limit)
    result = await session.execute(select(GithubBackup).order_by(GithubBackup.started_at.desc()).limit(limit))
    return list(result.scalars().all())
