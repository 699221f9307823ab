"""Initial context memory schema.

Creates the extensions, tables, indexes, updated_at triggers and views.

Revision ID: 0001_initial
Revises: None
Create Date: 2026-10-17
"""

from collections.abc import Sequence

from alembic import op

revision: str = "0001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    bind = op.get_bind()
    from contextkeeper.models import Base

    # DDL listeners on the metadata add extensions, triggers and views
    Base.metadata.create_all(bind=bind)


def downgrade() -> None:
    bind = op.get_bind()
    from contextkeeper.models import Base

    Base.metadata.drop_all(bind=bind)
    op.execute("DROP FUNCTION IF EXISTS update_updated_at_column()")
    op.execute("DROP FUNCTION IF EXISTS tags_to_text(TEXT[])")
