from datetime import UTC, datetime, timedelta

from helpers import compile_sql, new_id

from contextkeeper import db
from contextkeeper.models import DECISION_ASSESSMENT_DAYS

NOW = datetime(2026, 10, 17, 12, 0, tzinfo=UTC)


def test_active_main_goals_order_by_priority_rank_then_age() -> None:
    stmt = db.active_main_goals_query()
    sql = compile_sql(stmt)
    order_by = sql.split("ORDER BY", 1)[1]

    assert "tasks.is_main_goal IS true" in sql
    assert "tasks.status NOT IN" in sql
    assert order_by.strip().startswith("CASE tasks.priority")
    assert order_by.rstrip().endswith("tasks.created_at ASC")
    assert "END DESC" in order_by

    ranked = [v for v in stmt.compile().params.values() if isinstance(v, str)]
    assert {"critical", "high", "medium", "low"} <= set(ranked)


def test_active_main_goals_can_be_scoped_to_a_project() -> None:
    project_id = new_id()
    stmt = db.active_main_goals_query(project_id)
    assert "tasks.project_id = " in compile_sql(stmt)
    assert project_id in stmt.compile().params.values()


def test_recently_completed_goals_window() -> None:
    stmt = db.recently_completed_goals_query(NOW)
    params = stmt.compile().params
    assert NOW - timedelta(days=db.RECENT_COMPLETION_DAYS) in params.values()
    assert "tasks.completed_at >=" in compile_sql(stmt)


def test_conversation_similarity_uses_cosine_distance() -> None:
    cutoff = NOW - timedelta(days=30)
    sql = compile_sql(db.conversation_similarity_query([0.1, 0.2, 0.3], 5, cutoff))

    assert "<=>" in sql
    assert "conversation_messages.embedding IS NOT NULL" in sql
    assert "conversation_messages.timestamp >" in sql
    order_by = sql.split("ORDER BY", 1)[1]
    assert "<=>" in order_by and "ASC" in order_by
    assert "LIMIT" in sql


def test_knowledge_similarity_excludes_expired_and_scopes_to_project() -> None:
    sql = compile_sql(db.knowledge_similarity_query([0.1, 0.2], 10, NOW, project_id=new_id()))
    where = sql.split("WHERE", 1)[1].split("ORDER BY", 1)[0]

    assert "knowledge_context.embedding IS NOT NULL" in where
    assert "knowledge_context.valid_until IS NULL OR knowledge_context.valid_until >" in where
    assert "knowledge_context.project_id =" in where
    # strictly the project, global entries are not mixed in
    assert "global" not in where.replace('"', "")
    assert "<=>" in sql.split("ORDER BY", 1)[1]


def test_knowledge_similarity_without_project_is_unscoped() -> None:
    sql = compile_sql(db.knowledge_similarity_query([0.1, 0.2], 10, NOW))
    assert "knowledge_context.project_id" not in sql.split("WHERE", 1)[1]


def test_search_knowledge_tags_use_contains_all() -> None:
    sql = compile_sql(db.search_knowledge_query(NOW, tags=["postgres", "backup"]))
    assert "knowledge_context.tags @>" in sql


def test_search_knowledge_global_only_ignores_project_scope() -> None:
    sql = compile_sql(db.search_knowledge_query(NOW, project_id=new_id(), global_only=True))
    assert "knowledge_context.project_id" not in sql.split("ORDER BY", 1)[0].split("WHERE", 1)[1]


def test_search_knowledge_can_include_expired() -> None:
    sql = compile_sql(db.search_knowledge_query(NOW, include_expired=True))
    assert "valid_until" not in sql.split("FROM", 1)[1]


def test_search_knowledge_orders_by_importance_rank() -> None:
    order_by = compile_sql(db.search_knowledge_query(NOW)).split("ORDER BY", 1)[1]
    assert order_by.strip().startswith("CASE knowledge_context.importance")


def test_search_errors_combines_predicates() -> None:
    sql = compile_sql(
        db.search_errors_query(
            error_type="ImportError",
            solved=False,
            recurring=True,
            tags=["python"],
            query="50%_done",
        )
    )
    where = sql.split("WHERE", 1)[1]

    assert "error_logs.error_type = " in where
    assert "error_logs.solved_at IS NULL" in where
    assert "error_logs.is_recurring IS true" in where
    assert "error_logs.tags @>" in where
    assert "LIKE" in where and "ESCAPE" in where
    assert where.count(" AND ") >= 4


def test_search_errors_solved_filter() -> None:
    assert "error_logs.solved_at IS NOT NULL" in compile_sql(db.search_errors_query(solved=True))
    assert "solved_at IS" not in compile_sql(db.search_errors_query())


def test_needs_assessment_clause() -> None:
    clause = db.needs_assessment_clause(NOW)
    sql = compile_sql(clause)

    assert "decisions.outcome IS NULL" in sql
    assert "decisions.outcome = " in sql
    assert "decisions.outcome_assessed_at IS NULL AND decisions.decided_at <" in sql
    assert NOW - timedelta(days=DECISION_ASSESSMENT_DAYS) in clause.compile().params.values()


def test_recent_decisions_window_dropped_for_assessment_queue() -> None:
    windowed = compile_sql(db.recent_decisions_query(NOW, days_back=30))
    queue = compile_sql(db.recent_decisions_query(NOW, needs_assessment_only=True))

    assert "decisions.decided_at >=" in windowed
    assert "decisions.decided_at >=" not in queue
    assert "decisions.outcome IS NULL" in queue
    assert "ORDER BY decisions.decided_at DESC" in queue


def test_pending_reminders_are_unacknowledged_and_ranked() -> None:
    sql = compile_sql(db.pending_reminders_query(new_id()))
    assert "session_reminders.acknowledged IS false" in sql
    order_by = sql.split("ORDER BY", 1)[1]
    assert order_by.strip().startswith("CASE session_reminders.priority")
    assert "session_reminders.created_at ASC" in order_by


def test_relationship_directions() -> None:
    entity_id = new_id()
    outgoing = compile_sql(db.relationships_query("task", entity_id, "outgoing")).split("WHERE", 1)[1]
    incoming = compile_sql(db.relationships_query("task", entity_id, "incoming")).split("WHERE", 1)[1]
    both = compile_sql(db.relationships_query("task", entity_id, "both"))

    assert "relationships.source_id" in outgoing and "relationships.target_id" not in outgoing
    assert "relationships.target_id" in incoming and "relationships.source_id" not in incoming
    assert " OR " in both
