"""SQLAlchemy models for the context memory database."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID as PyUUID
from uuid import uuid4

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    DDL,
    Boolean,
    CheckConstraint,
    Computed,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    event,
    inspect,
    text,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, TSVECTOR, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func

from .config import settings

# =============================================================================
# ENUMERATIONS
# =============================================================================

PROJECT_STATUSES = ("active", "on_hold", "completed", "archived")
PRIORITIES = ("low", "medium", "high", "critical")
PROJECT_CATEGORIES = ("automation", "web_dev", "data", "infrastructure", "documentation", "other")
SESSION_TYPES = ("general", "project_specific", "debugging", "planning")
SESSION_STATUSES = ("in_progress", "completed", "aborted")
SESSION_OUTCOMES = ("success", "partial_success", "failed", "blocked")
TASK_STATUSES = ("pending", "in_progress", "completed", "blocked", "cancelled")
MESSAGE_ROLES = ("user", "assistant", "system")
MESSAGE_TYPES = ("question", "answer", "code", "error", "decision", "note")
DECISION_TYPES = ("architecture", "technical", "design", "process", "tool_selection")
DECISION_OUTCOMES = ("success", "partial_success", "failure", "unknown", "needs_revision")
CONTEXT_TYPES = ("credential", "instruction", "preference", "architecture", "process", "documentation")
IMPORTANCE_LEVELS = ("low", "normal", "high", "critical")
CHANGE_TYPES = ("create", "modify", "delete", "refactor")
ENTITY_KINDS = ("project", "session", "task", "decision", "error", "context", "snapshot", "artifact", "message")
RELATIONSHIP_TYPES = ("depends_on", "blocks", "relates_to", "solved_by", "references")
RELATIONSHIP_STRENGTHS = ("weak", "normal", "strong", "critical")
ARTIFACT_TYPES = ("document", "image", "diagram", "code", "config", "video")
STORAGE_TYPES = ("local", "github", "s3", "server")
BACKUP_TYPES = ("full", "incremental", "schema_only", "data_only")
BACKUP_STATUSES = ("pending", "in_progress", "completed", "failed")
REMINDER_TYPES = ("main_goal", "sidetracked", "blocked", "deadline")
SESSION_TASK_ROLES = ("primary", "secondary", "sidetracked_from", "created")

# Sort keys; ordering by the raw string would put "medium" above "high"
PRIORITY_RANK = {"critical": 4, "high": 3, "medium": 2, "low": 1}
IMPORTANCE_RANK = {"critical": 4, "high": 3, "normal": 2, "low": 1}

# Tasks in these states no longer count as "active"
FINISHED_TASK_STATUSES = ("completed", "cancelled")

# A decision left unassessed for this long needs review
DECISION_ASSESSMENT_DAYS = 7

# Columns never returned to callers
HIDDEN_COLUMNS = frozenset({"embedding", "search_vector"})


def _in_check(column: str, values: tuple[str, ...], name: str) -> CheckConstraint:
    allowed = ", ".join(f"'{v}'" for v in values)
    return CheckConstraint(f"{column} IS NULL OR {column} IN ({allowed})", name=name)


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, PyUUID):
        return str(value)
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: JSONB,
        list[str]: ARRAY(Text),
        list[int]: ARRAY(Integer),
        list[float]: ARRAY(Float),
    }

    # Fetch trigger / onupdate / generated values with RETURNING so rows stay
    # readable after flush without lazy loads on the async session.
    __mapper_args__ = {"eager_defaults": True}

    def to_dict(self, *, exclude: frozenset[str] = HIDDEN_COLUMNS) -> dict[str, Any]:
        """Serialise loaded column values to JSON-friendly types."""
        state = inspect(self)
        data: dict[str, Any] = {}
        for attr in state.mapper.column_attrs:
            column_name = attr.columns[0].name
            if column_name in exclude or attr.key in state.unloaded:
                continue
            data[column_name] = _jsonable(getattr(self, attr.key))
        return data


def _uuid_pk() -> Mapped[str]:
    return mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid4()),
        server_default=func.gen_random_uuid(),
    )


def _fk(target: str, *, ondelete: str = "SET NULL", nullable: bool = True) -> Mapped[Any]:
    return mapped_column(
        UUID(as_uuid=False), ForeignKey(target, ondelete=ondelete), nullable=nullable
    )


def _created_at() -> Mapped[datetime]:
    return mapped_column(DateTime(timezone=True), server_default=func.now())


# =============================================================================
# CORE PROJECTS
# =============================================================================


class Project(Base):
    """A unit of work the assistant tracks across sessions."""

    __tablename__ = "projects"

    id: Mapped[str] = _uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(50), default="active", server_default="active")
    priority: Mapped[str] = mapped_column(String(20), default="medium", server_default="medium")
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    tags: Mapped[list[str] | None] = mapped_column(ARRAY(Text), nullable=True)

    parent_project_id: Mapped[str | None] = _fk("projects.id")

    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deadline_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    progress_percentage: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    estimated_hours: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    actual_hours: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    github_repo: Mapped[str | None] = mapped_column(String(255), nullable=True)
    documentation_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Maintained by PostgreSQL; never written by the application
    search_vector: Mapped[Any] = mapped_column(
        TSVECTOR,
        Computed(
            "to_tsvector('english', coalesce(name, '') || ' ' || "
            "coalesce(description, '') || ' ' || tags_to_text(tags))",
            persisted=True,
        ),
    )

    __table_args__ = (
        CheckConstraint(
            "progress_percentage BETWEEN 0 AND 100", name="ck_projects_progress_range"
        ),
        _in_check("status", PROJECT_STATUSES, "ck_projects_status"),
        _in_check("priority", PRIORITIES, "ck_projects_priority"),
        Index("idx_projects_status", "status"),
        Index("idx_projects_category", "category"),
        Index("idx_projects_tags", "tags", postgresql_using="gin"),
        Index("idx_projects_search", "search_vector", postgresql_using="gin"),
        Index("idx_projects_parent", "parent_project_id"),
    )


# =============================================================================
# SESSIONS
# =============================================================================


class Session(Base):
    """One bounded unit of assistant/user interaction."""

    __tablename__ = "sessions"

    id: Mapped[str] = _uuid_pk()
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    session_type: Mapped[str] = mapped_column(String(50), default="general", server_default="general")
    main_goal: Mapped[str | None] = mapped_column(Text, nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)

    machine_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    working_directory: Mapped[str | None] = mapped_column(Text, nullable=True)
    client_version: Mapped[str | None] = mapped_column(String(50), nullable=True)

    status: Mapped[str] = mapped_column(String(50), default="in_progress", server_default="in_progress")
    outcome: Mapped[str | None] = mapped_column(String(100), nullable=True)

    primary_project_id: Mapped[str | None] = _fk("projects.id")

    total_messages: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    total_tokens: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    tasks_completed: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    tasks_created: Mapped[int] = mapped_column(Integer, default=0, server_default="0")

    next_steps: Mapped[list[str] | None] = mapped_column(ARRAY(Text), nullable=True)

    __table_args__ = (
        _in_check("status", SESSION_STATUSES, "ck_sessions_status"),
        Index("idx_sessions_started", text("started_at DESC")),
        Index("idx_sessions_status", "status"),
        Index("idx_sessions_project", "primary_project_id"),
    )

    @property
    def is_open(self) -> bool:
        return self.status == "in_progress"


# =============================================================================
# TASKS (main goals + subtasks)
# =============================================================================


class Task(Base):
    """A main goal (is_main_goal) or a subtask pointing at one."""

    __tablename__ = "tasks"

    id: Mapped[str] = _uuid_pk()
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(50), default="pending", server_default="pending")

    parent_task_id: Mapped[str | None] = _fk("tasks.id")
    is_main_goal: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    main_task_id: Mapped[str | None] = _fk("tasks.id")

    project_id: Mapped[str | None] = _fk("projects.id")
    session_id: Mapped[str | None] = _fk("sessions.id")

    # Dual arrays; only add/remove_task_dependency write them, always both sides
    blocked_by: Mapped[list[str] | None] = mapped_column(ARRAY(UUID(as_uuid=False)), nullable=True)
    blocking: Mapped[list[str] | None] = mapped_column(ARRAY(UUID(as_uuid=False)), nullable=True)

    created_at: Mapped[datetime] = _created_at()
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deadline_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    priority: Mapped[str] = mapped_column(String(20), default="medium", server_default="medium")
    progress_percentage: Mapped[int] = mapped_column(Integer, default=0, server_default="0")

    estimated_hours: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    actual_hours: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)

    acceptance_criteria: Mapped[list[str] | None] = mapped_column(ARRAY(Text), nullable=True)
    definition_of_done: Mapped[str | None] = mapped_column(Text, nullable=True)

    result_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    artifacts_produced: Mapped[list[str] | None] = mapped_column(ARRAY(Text), nullable=True)

    tags: Mapped[list[str] | None] = mapped_column(ARRAY(Text), nullable=True)

    __table_args__ = (
        CheckConstraint("progress_percentage BETWEEN 0 AND 100", name="ck_tasks_progress_range"),
        _in_check("status", TASK_STATUSES, "ck_tasks_status"),
        _in_check("priority", PRIORITIES, "ck_tasks_priority"),
        Index("idx_tasks_status", "status"),
        Index("idx_tasks_project", "project_id"),
        Index("idx_tasks_session", "session_id"),
        Index("idx_tasks_parent", "parent_task_id"),
        Index(
            "idx_tasks_main_goal",
            "is_main_goal",
            postgresql_where=text("is_main_goal = TRUE"),
        ),
        Index("idx_tasks_main_task", "main_task_id"),
    )

    @property
    def is_active(self) -> bool:
        return self.status not in FINISHED_TASK_STATUSES


class SessionTask(Base):
    """Many-to-many link between sessions and the tasks they touched."""

    __tablename__ = "session_tasks"

    session_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("sessions.id", ondelete="CASCADE"), primary_key=True
    )
    task_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("tasks.id", ondelete="CASCADE"), primary_key=True
    )
    role: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = _created_at()


# =============================================================================
# CONVERSATION HISTORY
# =============================================================================


class ConversationMessage(Base):
    """Append-only message log tied to a session."""

    __tablename__ = "conversation_messages"

    id: Mapped[str] = _uuid_pk()
    session_id: Mapped[str] = _fk("sessions.id", ondelete="CASCADE", nullable=False)

    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)

    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    token_count: Mapped[int | None] = mapped_column(Integer, nullable=True)

    related_project_id: Mapped[str | None] = _fk("projects.id")
    related_task_id: Mapped[str | None] = _fk("tasks.id")
    message_type: Mapped[str | None] = mapped_column(String(50), nullable=True)

    file_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    code_diff: Mapped[str | None] = mapped_column(Text, nullable=True)

    embedding: Mapped[Any] = mapped_column(Vector(settings.embedding_dimensions), nullable=True)

    __table_args__ = (
        _in_check("role", MESSAGE_ROLES, "ck_conversation_messages_role"),
        Index("idx_conv_messages_session", "session_id"),
        Index("idx_conv_messages_project", "related_project_id"),
        Index("idx_conv_messages_timestamp", text("timestamp DESC")),
        Index(
            "idx_conv_messages_embedding",
            "embedding",
            postgresql_using="hnsw",
            postgresql_with={"m": 16, "ef_construction": 64},
            postgresql_ops={"embedding": "vector_cosine_ops"},
        ),
    )


# =============================================================================
# DECISIONS & OUTCOMES
# =============================================================================


class Decision(Base):
    """What was decided, why, and how it turned out."""

    __tablename__ = "decisions"

    id: Mapped[str] = _uuid_pk()
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    rationale: Mapped[str] = mapped_column(Text, nullable=False)
    context: Mapped[str | None] = mapped_column(Text, nullable=True)

    project_id: Mapped[str | None] = _fk("projects.id")
    session_id: Mapped[str | None] = _fk("sessions.id")
    task_id: Mapped[str | None] = _fk("tasks.id")

    decision_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    alternatives_considered: Mapped[list[str] | None] = mapped_column(ARRAY(Text), nullable=True)
    pros: Mapped[list[str] | None] = mapped_column(ARRAY(Text), nullable=True)
    cons: Mapped[list[str] | None] = mapped_column(ARRAY(Text), nullable=True)

    outcome: Mapped[str | None] = mapped_column(String(50), nullable=True)
    outcome_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    outcome_assessed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    decided_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    revisited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    lessons_learned: Mapped[list[str] | None] = mapped_column(ARRAY(Text), nullable=True)
    would_do_differently: Mapped[str | None] = mapped_column(Text, nullable=True)

    tags: Mapped[list[str] | None] = mapped_column(ARRAY(Text), nullable=True)

    __table_args__ = (
        Index("idx_decisions_project", "project_id"),
        Index("idx_decisions_session", "session_id"),
        Index("idx_decisions_outcome", "outcome"),
    )

    def needs_assessment(self, now: datetime | None = None) -> bool:
        """True if the outcome is unset/unknown or unreviewed past the grace period."""
        if self.outcome is None or self.outcome == "unknown":
            return True
        if self.outcome_assessed_at is None and self.decided_at is not None:
            now = now or datetime.now(UTC)
            return self.decided_at < now - timedelta(days=DECISION_ASSESSMENT_DAYS)
        return False


# =============================================================================
# CODE SNAPSHOTS
# =============================================================================


class CodeSnapshot(Base):
    """Before/after content of an important file change."""

    __tablename__ = "code_snapshots"

    id: Mapped[str] = _uuid_pk()
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    language: Mapped[str | None] = mapped_column(String(100), nullable=True)

    content_before: Mapped[str | None] = mapped_column(Text, nullable=True)
    content_after: Mapped[str | None] = mapped_column(Text, nullable=True)
    diff: Mapped[str | None] = mapped_column(Text, nullable=True)

    change_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    change_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    project_id: Mapped[str | None] = _fk("projects.id")
    session_id: Mapped[str | None] = _fk("sessions.id")
    task_id: Mapped[str | None] = _fk("tasks.id")
    decision_id: Mapped[str | None] = _fk("decisions.id")

    git_commit_hash: Mapped[str | None] = mapped_column(String(100), nullable=True)
    git_branch: Mapped[str | None] = mapped_column(String(100), nullable=True)
    git_repo_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = _created_at()

    reviewed: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_code_snapshots_file", "file_path"),
        Index("idx_code_snapshots_project", "project_id"),
        Index("idx_code_snapshots_session", "session_id"),
    )


# =============================================================================
# ERROR LOGS
# =============================================================================


class ErrorLog(Base):
    """An error seen during work, and how it was fixed."""

    __tablename__ = "error_logs"

    id: Mapped[str] = _uuid_pk()
    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    error_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)

    stack_trace: Mapped[str | None] = mapped_column(Text, nullable=True)
    reproduction_steps: Mapped[list[str] | None] = mapped_column(ARRAY(Text), nullable=True)
    environment_info: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)

    project_id: Mapped[str | None] = _fk("projects.id")
    session_id: Mapped[str | None] = _fk("sessions.id")
    task_id: Mapped[str | None] = _fk("tasks.id")
    file_path: Mapped[str | None] = mapped_column(Text, nullable=True)

    solution: Mapped[str | None] = mapped_column(Text, nullable=True)
    solution_code: Mapped[str | None] = mapped_column(Text, nullable=True)
    solved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    solved_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    first_occurrence_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    last_occurrence_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    occurrence_count: Mapped[int] = mapped_column(Integer, default=1, server_default="1")
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")

    tags: Mapped[list[str] | None] = mapped_column(ARRAY(Text), nullable=True)

    __table_args__ = (
        Index("idx_error_logs_project", "project_id"),
        Index("idx_error_logs_type", "error_type"),
        Index(
            "idx_error_logs_solved",
            "solved_at",
            postgresql_where=text("solved_at IS NOT NULL"),
        ),
        Index(
            "idx_error_logs_recurring",
            "is_recurring",
            postgresql_where=text("is_recurring = TRUE"),
        ),
        Index("idx_error_logs_tags", "tags", postgresql_using="gin"),
        Index(
            "idx_error_logs_message_trgm",
            "error_message",
            postgresql_using="gin",
            postgresql_ops={"error_message": "gin_trgm_ops"},
        ),
    )


# =============================================================================
# KNOWLEDGE CONTEXT
# =============================================================================


class KnowledgeContext(Base):
    """A titled fact worth remembering, for one project or globally."""

    __tablename__ = "knowledge_context"

    id: Mapped[str] = _uuid_pk()
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    context_type: Mapped[str | None] = mapped_column(String(100), nullable=True)

    project_id: Mapped[str | None] = _fk("projects.id")
    global_: Mapped[bool] = mapped_column("global", Boolean, default=False, server_default="false")

    importance: Mapped[str] = mapped_column(String(20), default="normal", server_default="normal")

    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    last_accessed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    access_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")

    tags: Mapped[list[str] | None] = mapped_column(ARRAY(Text), nullable=True)

    embedding: Mapped[Any] = mapped_column(Vector(settings.embedding_dimensions), nullable=True)

    __table_args__ = (
        _in_check("importance", IMPORTANCE_LEVELS, "ck_knowledge_context_importance"),
        Index("idx_knowledge_context_project", "project_id"),
        Index(
            "idx_knowledge_context_global",
            "global",
            postgresql_where=text('"global" = TRUE'),
        ),
        Index("idx_knowledge_context_type", "context_type"),
        Index("idx_knowledge_context_tags", "tags", postgresql_using="gin"),
        Index(
            "idx_knowledge_context_embedding",
            "embedding",
            postgresql_using="hnsw",
            postgresql_with={"m": 16, "ef_construction": 64},
            postgresql_ops={"embedding": "vector_cosine_ops"},
        ),
    )


# =============================================================================
# RELATIONSHIPS (typed edges between any two entities)
# =============================================================================


class Relationship(Base):
    """A directed, typed edge between two (kind, id) endpoints."""

    __tablename__ = "relationships"

    id: Mapped[str] = _uuid_pk()

    source_type: Mapped[str] = mapped_column(String(50), nullable=False)
    source_id: Mapped[str] = mapped_column(UUID(as_uuid=False), nullable=False)
    target_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[str] = mapped_column(UUID(as_uuid=False), nullable=False)

    relationship_type: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    strength: Mapped[str] = mapped_column(String(20), default="normal", server_default="normal")

    created_at: Mapped[datetime] = _created_at()
    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "NOT (source_type = target_type AND source_id = target_id)",
            name="ck_relationships_no_self_loop",
        ),
        Index("idx_relationships_source", "source_type", "source_id"),
        Index("idx_relationships_target", "target_type", "target_id"),
        Index("idx_relationships_type", "relationship_type"),
    )


# =============================================================================
# ARTIFACTS
# =============================================================================


class Artifact(Base):
    """A produced file, document or diagram; versions form a linear chain."""

    __tablename__ = "artifacts"

    id: Mapped[str] = _uuid_pk()
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    file_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    project_id: Mapped[str | None] = _fk("projects.id")
    session_id: Mapped[str | None] = _fk("sessions.id")
    task_id: Mapped[str | None] = _fk("tasks.id")

    content: Mapped[str | None] = mapped_column(Text, nullable=True)

    storage_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    storage_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    url: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = _created_at()
    modified_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    version: Mapped[int] = mapped_column(Integer, default=1, server_default="1")
    parent_artifact_id: Mapped[str | None] = _fk("artifacts.id")

    __table_args__ = (
        Index("idx_artifacts_project", "project_id"),
        Index("idx_artifacts_session", "session_id"),
        Index("idx_artifacts_type", "type"),
        Index("idx_artifacts_parent", "parent_artifact_id"),
    )


# =============================================================================
# BACKUP TRACKING
# =============================================================================


class GithubBackup(Base):
    """One run of the export-to-git backup job."""

    __tablename__ = "github_backups"

    id: Mapped[str] = _uuid_pk()
    backup_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status: Mapped[str | None] = mapped_column(String(50), nullable=True)

    repo_owner: Mapped[str | None] = mapped_column(String(100), nullable=True)
    repo_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    branch: Mapped[str | None] = mapped_column(String(100), nullable=True)
    commit_hash: Mapped[str | None] = mapped_column(String(100), nullable=True)

    tables_included: Mapped[list[str] | None] = mapped_column(ARRAY(Text), nullable=True)
    rows_affected: Mapped[int | None] = mapped_column(Integer, nullable=True)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    status_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        _in_check("status", BACKUP_STATUSES, "ck_github_backups_status"),
        Index("idx_github_backups_type", "backup_type"),
        Index("idx_github_backups_status", "status"),
        Index("idx_github_backups_date", text("started_at DESC")),
    )


# =============================================================================
# SESSION REMINDERS
# =============================================================================


class SessionReminder(Base):
    """A proactive nudge, e.g. "you are sidetracked from main goal X"."""

    __tablename__ = "session_reminders"

    id: Mapped[str] = _uuid_pk()
    session_id: Mapped[str | None] = _fk("sessions.id", ondelete="CASCADE")

    reminder_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[str] = mapped_column(String(20), default="medium", server_default="medium")

    related_project_id: Mapped[str | None] = _fk("projects.id")
    main_task_id: Mapped[str | None] = _fk("tasks.id")
    current_subtask_id: Mapped[str | None] = _fk("tasks.id")

    acknowledged: Mapped[bool] = mapped_column(Boolean, default=False, server_default="false")
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = _created_at()

    __table_args__ = (
        _in_check("priority", PRIORITIES, "ck_session_reminders_priority"),
        Index("idx_session_reminders_session", "session_id"),
        Index("idx_session_reminders_type", "reminder_type"),
        Index(
            "idx_session_reminders_unacknowledged",
            "acknowledged",
            postgresql_where=text("acknowledged = FALSE"),
        ),
    )


# Polymorphic relationship endpoints resolve through this map
ENTITY_MODELS: dict[str, type[Base]] = {
    "project": Project,
    "session": Session,
    "task": Task,
    "decision": Decision,
    "error": ErrorLog,
    "context": KnowledgeContext,
    "snapshot": CodeSnapshot,
    "artifact": Artifact,
    "message": ConversationMessage,
}


# =============================================================================
# STORE-LEVEL DDL (extensions, helper functions, triggers, views)
# =============================================================================

event.listen(
    Base.metadata,
    "before_create",
    DDL("CREATE EXTENSION IF NOT EXISTS vector").execute_if(dialect="postgresql"),
)
event.listen(
    Base.metadata,
    "before_create",
    DDL("CREATE EXTENSION IF NOT EXISTS pg_trgm").execute_if(dialect="postgresql"),
)

# array_to_string() is only STABLE; generated columns need an IMMUTABLE expression
event.listen(
    Project.__table__,
    "before_create",
    DDL(
        """
        CREATE OR REPLACE FUNCTION tags_to_text(tags TEXT[])
        RETURNS TEXT AS $$
            SELECT coalesce(array_to_string(tags, ' '), '')
        $$ LANGUAGE sql IMMUTABLE
        """
    ).execute_if(dialect="postgresql"),
)

event.listen(
    Base.metadata,
    "after_create",
    DDL(
        """
        CREATE OR REPLACE FUNCTION update_updated_at_column()
        RETURNS TRIGGER AS $$
        BEGIN
            NEW.updated_at = NOW();
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql
        """
    ).execute_if(dialect="postgresql"),
)

for _table in ("projects", "tasks"):
    event.listen(
        Base.metadata,
        "after_create",
        DDL(
            f"""
            CREATE OR REPLACE TRIGGER update_{_table}_updated_at
            BEFORE UPDATE ON {_table}
            FOR EACH ROW EXECUTE FUNCTION update_updated_at_column()
            """
        ).execute_if(dialect="postgresql"),
    )

VIEWS: dict[str, str] = {
    "active_projects_overview": """
        SELECT
            p.id, p.name, p.status, p.priority, p.category, p.progress_percentage,
            COUNT(DISTINCT t.id) FILTER (WHERE t.status NOT IN ('completed', 'cancelled')) AS active_tasks,
            COUNT(DISTINCT t.id) FILTER (WHERE t.status = 'completed') AS completed_tasks,
            p.deadline_at, p.updated_at
        FROM projects p
        LEFT JOIN tasks t ON t.project_id = p.id
        WHERE p.status = 'active'
        GROUP BY p.id
    """,
    "current_main_goals": """
        SELECT
            t.id, t.title, t.description, p.name AS project_name,
            t.status, t.priority, t.created_at, t.deadline_at
        FROM tasks t
        LEFT JOIN projects p ON t.project_id = p.id
        WHERE t.is_main_goal = TRUE
          AND t.status NOT IN ('completed', 'cancelled')
        ORDER BY CASE t.priority
                   WHEN 'critical' THEN 4 WHEN 'high' THEN 3
                   WHEN 'medium' THEN 2 WHEN 'low' THEN 1 ELSE 0 END DESC,
                 t.created_at ASC
    """,
    "pending_decision_outcomes": f"""
        SELECT
            d.id, d.title, d.decision_type, p.name AS project_name, d.decided_at, TRUE AS needs_assessment
        FROM decisions d
        LEFT JOIN projects p ON d.project_id = p.id
        WHERE d.outcome IS NULL
           OR d.outcome = 'unknown'
           OR (d.outcome_assessed_at IS NULL
               AND d.decided_at < NOW() - INTERVAL '{DECISION_ASSESSMENT_DAYS} days')
        ORDER BY d.decided_at DESC
    """,
}

for _name, _body in VIEWS.items():
    event.listen(
        Base.metadata,
        "after_create",
        DDL(f"CREATE OR REPLACE VIEW {_name} AS {_body}").execute_if(dialect="postgresql"),
    )
    event.listen(
        Base.metadata,
        "before_drop",
        DDL(f"DROP VIEW IF EXISTS {_name}").execute_if(dialect="postgresql"),
    )
