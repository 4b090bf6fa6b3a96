"""Record who wrote each review comment.

Revision ID: 0002_review_comment_author
Revises: 0001_initial
Create Date: 2026-01-26
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

from pulseflow.migrations import add_column_if_missing

revision: str = "0002_review_comment_author"
down_revision: str | None = "0001_initial"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    add_column_if_missing(
        op.get_bind(),
        "review_comments",
        sa.Column("author", sa.String(), nullable=False, server_default=sa.text("'agent'")),
    )


def downgrade() -> None:
    with op.batch_alter_table("review_comments") as batch:
        batch.drop_column("author")
