"""The registered tools. Each handler maps validated arguments onto one façade call."""

from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from .. import db
from .arguments import (
    ArtifactIdArgs,
    AssessDecisionArgs,
    BackupToGithubArgs,
    CreateArtifactArgs,
    CreateMainGoalArgs,
    CreateProjectArgs,
    CreateRelationshipArgs,
    CreateReminderArgs,
    CreateSubtaskArgs,
    ErrorIdArgs,
    FindRelatedContextArgs,
    GetActiveMainGoalsArgs,
    GetActiveProjectsArgs,
    GetRecentDecisionsArgs,
    GetRelationshipsArgs,
    LogConversationMessageArgs,
    LogDecisionArgs,
    LogErrorArgs,
    NoArgs,
    ProjectIdArgs,
    ReminderIdArgs,
    ResolveErrorArgs,
    SaveCodeSnapshotArgs,
    SearchConversationsArgs,
    SearchErrorsArgs,
    SearchKnowledgeArgs,
    SearchProjectsArgs,
    SessionEndArgs,
    SessionIdArgs,
    SessionStartArgs,
    StoreKnowledgeArgs,
    TaskDependencyArgs,
    TaskIdArgs,
    UpdateProjectArgs,
    UpdateTaskStatusArgs,
)
from .base import ToolRegistry, to_jsonable

default_registry = ToolRegistry()
tool = default_registry.tool


def _with_similarity(rows: list[tuple[Any, float]]) -> list[dict[str, Any]]:
    return [{**to_jsonable(row), "similarity": round(score, 6)} for row, score in rows]


# =============================================================================
# Sessions
# =============================================================================


@tool("session_start", "Start a new session and load the startup context.", SessionStartArgs)
async def session_start(session: AsyncSession, args: SessionStartArgs) -> dict[str, Any]:
    sess = await db.start_session(session, **args.model_dump())
    context = await db.load_startup_context(session, exclude_session_id=sess.id)
    return {"session": sess, **context}


@tool("session_end", "End a session with a summary, outcome and next steps.", SessionEndArgs)
async def session_end(session: AsyncSession, args: SessionEndArgs) -> Any:
    return await db.end_session(session, **args.model_dump())


@tool(
    "get_session_context",
    "Get a session's main goals, open subtasks, pending reminders and recent messages.",
    SessionIdArgs,
)
async def get_session_context(session: AsyncSession, args: SessionIdArgs) -> Any:
    return await db.get_session_context(session, args.session_id)


# =============================================================================
# Projects
# =============================================================================


@tool("create_project", "Create a new project.", CreateProjectArgs)
async def create_project(session: AsyncSession, args: CreateProjectArgs) -> Any:
    return await db.create_project(session, **args.model_dump())


@tool("update_project", "Update fields of an existing project.", UpdateProjectArgs)
async def update_project(session: AsyncSession, args: UpdateProjectArgs) -> Any:
    changes = args.model_dump(exclude_unset=True)
    project_id = changes.pop("project_id")
    return await db.update_project(session, project_id, **changes)


@tool("get_active_projects", "List active projects with task counts.", GetActiveProjectsArgs)
async def get_active_projects(session: AsyncSession, args: GetActiveProjectsArgs) -> list[dict[str, Any]]:
    rows = await db.get_active_projects(session, args.limit)
    return [
        {**project.to_dict(), "active_tasks": active, "completed_tasks": completed}
        for project, active, completed in rows
    ]


@tool(
    "get_project_details",
    "Get a project with its child projects, tasks, recent decisions and unsolved errors.",
    ProjectIdArgs,
)
async def get_project_details(session: AsyncSession, args: ProjectIdArgs) -> Any:
    return await db.get_project_details(session, args.project_id)


@tool("search_projects", "Full-text search over project names, descriptions and tags.", SearchProjectsArgs)
async def search_projects(session: AsyncSession, args: SearchProjectsArgs) -> list[dict[str, Any]]:
    rows = await db.search_projects(session, args.query, args.limit)
    return [{**project.to_dict(), "rank": round(rank, 6)} for project, rank in rows]


# =============================================================================
# Tasks
# =============================================================================


@tool("create_main_goal", "Create a main goal for a project.", CreateMainGoalArgs)
async def create_main_goal(session: AsyncSession, args: CreateMainGoalArgs) -> Any:
    return await db.create_main_goal(session, **args.model_dump())


@tool("create_subtask", "Create a subtask under a main goal.", CreateSubtaskArgs)
async def create_subtask(session: AsyncSession, args: CreateSubtaskArgs) -> Any:
    return await db.create_subtask(session, **args.model_dump())


@tool("update_task_status", "Update a task's status, progress and result.", UpdateTaskStatusArgs)
async def update_task_status(session: AsyncSession, args: UpdateTaskStatusArgs) -> Any:
    return await db.update_task_status(session, **args.model_dump())


@tool(
    "get_active_main_goals",
    "List open main goals by priority, optionally with goals completed in the last week.",
    GetActiveMainGoalsArgs,
)
async def get_active_main_goals(session: AsyncSession, args: GetActiveMainGoalsArgs) -> Any:
    return await db.get_active_main_goals(session, **args.model_dump())


@tool(
    "get_task_context",
    "Get a task with its main goal, subtasks, dependencies, decisions, errors and artifacts.",
    TaskIdArgs,
)
async def get_task_context(session: AsyncSession, args: TaskIdArgs) -> Any:
    return await db.get_task_context(session, args.task_id)


@tool("add_task_dependency", "Mark a task as blocked by another task.", TaskDependencyArgs)
async def add_task_dependency(session: AsyncSession, args: TaskDependencyArgs) -> Any:
    return await db.add_task_dependency(session, args.task_id, args.blocked_by_task_id)


@tool("remove_task_dependency", "Remove a blocked-by link between two tasks.", TaskDependencyArgs)
async def remove_task_dependency(session: AsyncSession, args: TaskDependencyArgs) -> Any:
    return await db.remove_task_dependency(session, args.task_id, args.blocked_by_task_id)


# =============================================================================
# Conversations
# =============================================================================


@tool("log_conversation_message", "Append a message to a session's conversation log.", LogConversationMessageArgs)
async def log_conversation_message(session: AsyncSession, args: LogConversationMessageArgs) -> Any:
    return await db.log_conversation_message(session, **args.model_dump())


@tool(
    "search_conversations",
    "Find past messages similar to an embedding vector.",
    SearchConversationsArgs,
)
async def search_conversations(session: AsyncSession, args: SearchConversationsArgs) -> list[dict[str, Any]]:
    return _with_similarity(await db.search_conversations(session, **args.model_dump()))


# =============================================================================
# Decisions
# =============================================================================


@tool("log_decision", "Record a decision with its rationale and alternatives.", LogDecisionArgs)
async def log_decision(session: AsyncSession, args: LogDecisionArgs) -> Any:
    return await db.log_decision(session, **args.model_dump())


@tool(
    "get_recent_decisions",
    "List recent decisions, or every decision still awaiting an outcome assessment.",
    GetRecentDecisionsArgs,
)
async def get_recent_decisions(session: AsyncSession, args: GetRecentDecisionsArgs) -> list[dict[str, Any]]:
    decisions = await db.get_recent_decisions(session, **args.model_dump())
    return [{**d.to_dict(), "needs_assessment": d.needs_assessment()} for d in decisions]


@tool("assess_decision", "Record how a decision turned out.", AssessDecisionArgs)
async def assess_decision(session: AsyncSession, args: AssessDecisionArgs) -> Any:
    return await db.assess_decision(session, **args.model_dump())


# =============================================================================
# Knowledge
# =============================================================================


@tool("store_knowledge", "Store a piece of project or global knowledge.", StoreKnowledgeArgs)
async def store_knowledge(session: AsyncSession, args: StoreKnowledgeArgs) -> Any:
    return await db.store_knowledge(session, **args.model_dump())


@tool("search_knowledge", "Search stored knowledge by text, type, project and tags.", SearchKnowledgeArgs)
async def search_knowledge(session: AsyncSession, args: SearchKnowledgeArgs) -> Any:
    return await db.search_knowledge(session, **args.model_dump())


@tool(
    "find_related_context",
    "Find valid knowledge entries similar to an embedding vector.",
    FindRelatedContextArgs,
)
async def find_related_context(session: AsyncSession, args: FindRelatedContextArgs) -> list[dict[str, Any]]:
    return _with_similarity(await db.find_related_context(session, **args.model_dump()))


# =============================================================================
# Errors
# =============================================================================


@tool("log_error", "Record an error encountered during work.", LogErrorArgs)
async def log_error(session: AsyncSession, args: LogErrorArgs) -> Any:
    return await db.log_error(session, **args.model_dump())


@tool("record_error_occurrence", "Count another occurrence of a known error.", ErrorIdArgs)
async def record_error_occurrence(session: AsyncSession, args: ErrorIdArgs) -> Any:
    return await db.record_error_occurrence(session, args.error_id)


@tool("resolve_error", "Record the solution to an error.", ResolveErrorArgs)
async def resolve_error(session: AsyncSession, args: ResolveErrorArgs) -> Any:
    return await db.resolve_error(session, **args.model_dump())


@tool("search_errors", "Search logged errors by type, project, state, tags and text.", SearchErrorsArgs)
async def search_errors(session: AsyncSession, args: SearchErrorsArgs) -> Any:
    return await db.search_errors(session, **args.model_dump())


# =============================================================================
# Snapshots, relationships, artifacts
# =============================================================================


@tool("save_code_snapshot", "Save the before/after content of a file change.", SaveCodeSnapshotArgs)
async def save_code_snapshot(session: AsyncSession, args: SaveCodeSnapshotArgs) -> Any:
    return await db.save_code_snapshot(session, **args.model_dump())


@tool("create_relationship", "Link two entities with a typed relationship.", CreateRelationshipArgs)
async def create_relationship(session: AsyncSession, args: CreateRelationshipArgs) -> Any:
    return await db.create_relationship(session, **args.model_dump())


@tool("get_relationships", "List relationships touching an entity.", GetRelationshipsArgs)
async def get_relationships(session: AsyncSession, args: GetRelationshipsArgs) -> Any:
    return await db.get_relationships(session, **args.model_dump())


@tool("create_artifact", "Record an artifact, optionally as a new version of another.", CreateArtifactArgs)
async def create_artifact(session: AsyncSession, args: CreateArtifactArgs) -> Any:
    return await db.create_artifact(session, **args.model_dump())


@tool("get_artifact_versions", "Get the version chain an artifact belongs to.", ArtifactIdArgs)
async def get_artifact_versions(session: AsyncSession, args: ArtifactIdArgs) -> Any:
    return await db.get_artifact_versions(session, args.artifact_id)


# =============================================================================
# Reminders, status, backups
# =============================================================================


@tool("create_reminder", "Create a reminder for a session.", CreateReminderArgs)
async def create_reminder(session: AsyncSession, args: CreateReminderArgs) -> Any:
    return await db.create_reminder(session, **args.model_dump())


@tool("get_pending_reminders", "List unacknowledged reminders for a session.", SessionIdArgs)
async def get_pending_reminders(session: AsyncSession, args: SessionIdArgs) -> Any:
    return await db.get_pending_reminders(session, args.session_id)


@tool("acknowledge_reminder", "Acknowledge a reminder.", ReminderIdArgs)
async def acknowledge_reminder(session: AsyncSession, args: ReminderIdArgs) -> Any:
    return await db.acknowledge_reminder(session, args.reminder_id)


@tool(
    "backup_to_github",
    "Export the database, commit the dump to the backup repository and push it.",
    BackupToGithubArgs,
    uses_session=False,
)
async def backup_to_github(session: None, args: BackupToGithubArgs) -> Any:
    del session
    return await db.backup_to_github(**args.model_dump())


@tool("get_system_status", "Get row counts, open work and the last backup run.", NoArgs)
async def get_system_status(session: AsyncSession, args: NoArgs) -> Any:
    del args
    return await db.get_system_status(session)
