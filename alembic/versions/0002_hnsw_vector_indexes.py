"""Rebuild the embedding indexes as hnsw.

Databases created from the first revision carry ivfflat indexes built on empty
tables; those drop valid rows from nearest-neighbour results.

Revision ID: 0002_hnsw_vector_indexes
Revises: 0001_initial
Create Date: 2026-10-17
"""

from collections.abc import Sequence

from alembic import op

revision: str = "0002_hnsw_vector_indexes"
down_revision: str | None = "0001_initial"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

INDEXES = {
    "idx_conv_messages_embedding": "conversation_messages",
    "idx_knowledge_context_embedding": "knowledge_context",
}


def upgrade() -> None:
    for name, table in INDEXES.items():
        op.execute(f"DROP INDEX IF EXISTS {name}")
        op.execute(
            f"CREATE INDEX IF NOT EXISTS {name} ON {table} "
            "USING hnsw (embedding vector_cosine_ops) WITH (m = 16, ef_construction = 64)"
        )


def downgrade() -> None:
    for name, table in INDEXES.items():
        op.execute(f"DROP INDEX IF EXISTS {name}")
        op.execute(
            f"CREATE INDEX IF NOT EXISTS {name} ON {table} "
            "USING ivfflat (embedding vector_cosine_ops) WITH (lists = 100)"
        )
