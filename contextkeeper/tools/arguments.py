"""Declared argument schemas for every registered tool.

Each model doubles as the tool's published JSON schema. Unknown fields are
rejected, enumerations are ``Literal`` types and identifiers must be UUIDs.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, WithJsonSchema


def _normalize_uuid(value: str) -> str:
    return str(uuid.UUID(value))


EntityId = Annotated[
    str,
    AfterValidator(_normalize_uuid),
    WithJsonSchema({"type": "string", "format": "uuid"}),
]
Embedding = Annotated[list[float], Field(min_length=1)]
NonEmpty = Annotated[str, Field(min_length=1)]
Limit = Annotated[int, Field(ge=1, le=100)]
Progress = Annotated[int, Field(ge=0, le=100)]

ProjectStatus = Literal["active", "on_hold", "completed", "archived"]
Priority = Literal["low", "medium", "high", "critical"]
ProjectCategory = Literal["automation", "web_dev", "data", "infrastructure", "documentation", "other"]
SessionType = Literal["general", "project_specific", "debugging", "planning"]
SessionOutcome = Literal["success", "partial_success", "failed", "blocked"]
TaskStatus = Literal["pending", "in_progress", "completed", "blocked", "cancelled"]
MessageRole = Literal["user", "assistant", "system"]
MessageType = Literal["question", "answer", "code", "error", "decision", "note"]
DecisionType = Literal["architecture", "technical", "design", "process", "tool_selection"]
DecisionOutcome = Literal["success", "partial_success", "failure", "unknown", "needs_revision"]
ContextType = Literal["credential", "instruction", "preference", "architecture", "process", "documentation"]
Importance = Literal["low", "normal", "high", "critical"]
ChangeType = Literal["create", "modify", "delete", "refactor"]
EntityKind = Literal["project", "session", "task", "decision", "error", "context", "snapshot", "artifact", "message"]
RelationshipType = Literal["depends_on", "blocks", "relates_to", "solved_by", "references"]
RelationshipStrength = Literal["weak", "normal", "strong", "critical"]
ArtifactType = Literal["document", "image", "diagram", "code", "config", "video"]
StorageType = Literal["local", "github", "s3", "server"]
BackupType = Literal["full", "incremental", "schema_only", "data_only"]
ReminderType = Literal["main_goal", "sidetracked", "blocked", "deadline"]


class ToolArguments(BaseModel):
    """Base class for tool argument models."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


# =============================================================================
# Sessions
# =============================================================================


class SessionStartArgs(ToolArguments):
    session_type: SessionType = "general"
    main_goal: str | None = None
    primary_project_id: EntityId | None = None
    machine_name: str | None = None
    working_directory: str | None = None
    client_version: str | None = None


class SessionEndArgs(ToolArguments):
    session_id: EntityId
    summary: NonEmpty
    outcome: SessionOutcome | None = None
    next_steps: list[str] | None = None
    status: Literal["completed", "aborted"] = "completed"


class SessionIdArgs(ToolArguments):
    session_id: EntityId


# =============================================================================
# Projects
# =============================================================================


class CreateProjectArgs(ToolArguments):
    name: Annotated[str, Field(min_length=1, max_length=255)]
    category: ProjectCategory
    description: str | None = None
    priority: Priority = "medium"
    tags: list[str] | None = None
    github_repo: str | None = None
    parent_project_id: EntityId | None = None
    progress_percentage: Progress = 0
    estimated_hours: Annotated[float, Field(ge=0)] | None = None
    deadline_at: datetime | None = None


class UpdateProjectArgs(ToolArguments):
    """Only the fields actually supplied are changed."""

    project_id: EntityId
    name: Annotated[str, Field(min_length=1, max_length=255)] | None = None
    description: str | None = None
    status: ProjectStatus | None = None
    priority: Priority | None = None
    category: ProjectCategory | None = None
    tags: list[str] | None = None
    progress_percentage: Progress | None = None
    estimated_hours: Annotated[float, Field(ge=0)] | None = None
    actual_hours: Annotated[float, Field(ge=0)] | None = None
    deadline_at: datetime | None = None
    github_repo: str | None = None
    documentation_url: str | None = None
    parent_project_id: EntityId | None = None


class GetActiveProjectsArgs(ToolArguments):
    limit: Limit = 20


class ProjectIdArgs(ToolArguments):
    project_id: EntityId


class SearchProjectsArgs(ToolArguments):
    query: NonEmpty
    limit: Limit = 20


# =============================================================================
# Tasks
# =============================================================================


class CreateMainGoalArgs(ToolArguments):
    title: NonEmpty
    project_id: EntityId
    description: str | None = None
    session_id: EntityId | None = None
    priority: Priority = "medium"
    deadline_at: datetime | None = None
    acceptance_criteria: list[str] | None = None
    tags: list[str] | None = None


class CreateSubtaskArgs(ToolArguments):
    title: NonEmpty
    main_task_id: EntityId
    description: str | None = None
    session_id: EntityId | None = None
    status: TaskStatus = "pending"
    priority: Priority = "medium"


class UpdateTaskStatusArgs(ToolArguments):
    task_id: EntityId
    status: TaskStatus
    result_summary: str | None = None
    progress_percentage: Progress | None = None
    completed_at: datetime | None = None
    started_at: datetime | None = None


class GetActiveMainGoalsArgs(ToolArguments):
    include_completed: bool = False
    project_id: EntityId | None = None


class TaskIdArgs(ToolArguments):
    task_id: EntityId


class TaskDependencyArgs(ToolArguments):
    task_id: EntityId
    blocked_by_task_id: EntityId


# =============================================================================
# Conversations
# =============================================================================


class LogConversationMessageArgs(ToolArguments):
    session_id: EntityId
    role: MessageRole
    content: NonEmpty
    related_project_id: EntityId | None = None
    related_task_id: EntityId | None = None
    message_type: MessageType | None = None
    file_path: str | None = None
    code_diff: str | None = None
    token_count: Annotated[int, Field(ge=0)] | None = None
    embedding: Embedding | None = None


class SearchConversationsArgs(ToolArguments):
    embedding: Embedding
    limit: Limit = 10
    days_back: Annotated[int, Field(ge=1)] = 30


# =============================================================================
# Decisions
# =============================================================================


class LogDecisionArgs(ToolArguments):
    title: NonEmpty
    description: NonEmpty
    rationale: NonEmpty
    decision_type: DecisionType
    alternatives_considered: list[str] | None = None
    pros: list[str] | None = None
    cons: list[str] | None = None
    context: str | None = None
    project_id: EntityId | None = None
    session_id: EntityId | None = None
    task_id: EntityId | None = None
    tags: list[str] | None = None


class GetRecentDecisionsArgs(ToolArguments):
    project_id: EntityId | None = None
    days_back: Annotated[int, Field(ge=1)] = 30
    needs_assessment_only: bool = False
    limit: Limit = 50


class AssessDecisionArgs(ToolArguments):
    decision_id: EntityId
    outcome: DecisionOutcome
    outcome_notes: str | None = None
    lessons_learned: list[str] | None = None
    would_do_differently: str | None = None


# =============================================================================
# Knowledge
# =============================================================================


class StoreKnowledgeArgs(ToolArguments):
    title: NonEmpty
    content: NonEmpty
    context_type: ContextType
    project_id: EntityId | None = None
    global_: bool = Field(False, alias="global")
    importance: Importance = "normal"
    tags: list[str] | None = None
    valid_until: datetime | None = None
    embedding: Embedding | None = None


class SearchKnowledgeArgs(ToolArguments):
    query: str | None = None
    context_type: ContextType | None = None
    project_id: EntityId | None = None
    global_only: bool = False
    tags: list[str] | None = None
    include_expired: bool = False
    limit: Limit = 20


class FindRelatedContextArgs(ToolArguments):
    embedding: Embedding
    limit: Limit = 10
    project_id: EntityId | None = None


# =============================================================================
# Errors
# =============================================================================


class LogErrorArgs(ToolArguments):
    error_message: NonEmpty
    error_type: str | None = None
    error_code: str | None = None
    stack_trace: str | None = None
    reproduction_steps: list[str] | None = None
    environment_info: dict[str, Any] | None = None
    solution: str | None = None
    solution_code: str | None = None
    project_id: EntityId | None = None
    session_id: EntityId | None = None
    task_id: EntityId | None = None
    file_path: str | None = None
    tags: list[str] | None = None


class ErrorIdArgs(ToolArguments):
    error_id: EntityId


class ResolveErrorArgs(ToolArguments):
    error_id: EntityId
    solution: NonEmpty
    solution_code: str | None = None
    solved_by: str | None = None


class SearchErrorsArgs(ToolArguments):
    error_type: str | None = None
    project_id: EntityId | None = None
    solved: bool | None = None
    recurring: bool | None = None
    tags: list[str] | None = None
    query: str | None = None
    limit: Limit = 20


# =============================================================================
# Snapshots, relationships, artifacts
# =============================================================================


class SaveCodeSnapshotArgs(ToolArguments):
    file_path: NonEmpty
    content_after: str | None = None
    change_type: ChangeType
    content_before: str | None = None
    diff: str | None = None
    language: str | None = None
    change_reason: str | None = None
    project_id: EntityId | None = None
    session_id: EntityId | None = None
    task_id: EntityId | None = None
    decision_id: EntityId | None = None
    git_commit_hash: str | None = None
    git_branch: str | None = None
    git_repo_url: str | None = None


class CreateRelationshipArgs(ToolArguments):
    source_type: EntityKind
    source_id: EntityId
    target_type: EntityKind
    target_id: EntityId
    relationship_type: RelationshipType
    strength: RelationshipStrength = "normal"
    description: str | None = None
    validate_endpoints: bool = True


class GetRelationshipsArgs(ToolArguments):
    entity_type: EntityKind
    entity_id: EntityId
    direction: Literal["outgoing", "incoming", "both"] = "both"


class CreateArtifactArgs(ToolArguments):
    name: NonEmpty
    artifact_type: ArtifactType | None = Field(None, alias="type")
    file_path: str | None = None
    description: str | None = None
    project_id: EntityId | None = None
    session_id: EntityId | None = None
    task_id: EntityId | None = None
    content: str | None = None
    storage_type: StorageType | None = None
    storage_path: str | None = None
    url: str | None = None
    parent_artifact_id: EntityId | None = None


class ArtifactIdArgs(ToolArguments):
    artifact_id: EntityId


# =============================================================================
# Reminders, status, backups
# =============================================================================


class CreateReminderArgs(ToolArguments):
    session_id: EntityId
    reminder_type: ReminderType
    message: NonEmpty
    priority: Priority = "medium"
    main_task_id: EntityId | None = None
    current_subtask_id: EntityId | None = None
    related_project_id: EntityId | None = None


class ReminderIdArgs(ToolArguments):
    reminder_id: EntityId


class BackupToGithubArgs(ToolArguments):
    backup_type: BackupType = "data_only"
    commit_message: str | None = None


class NoArgs(ToolArguments):
    pass
