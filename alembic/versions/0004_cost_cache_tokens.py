"""Track prompt-cache reads and writes per turn and per cost record.

Revision ID: 0004_cost_cache_tokens
Revises: 0003_relax_review_comment_constraints
Create Date: 2026-03-02
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

from pulseflow.migrations import add_column_if_missing

revision: str = "0004_cost_cache_tokens"
down_revision: str | None = "0003_relax_review_comment_constraints"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_COLUMNS = ("cache_read_tokens", "cache_write_tokens")


def upgrade() -> None:
    bind = op.get_bind()
    for name in _COLUMNS:
        add_column_if_missing(
            bind,
            "cost_records",
            sa.Column(name, sa.Integer(), nullable=False, server_default=sa.text("0")),
        )
        add_column_if_missing(bind, "turns", sa.Column(name, sa.Integer(), nullable=True))


def downgrade() -> None:
    for table in ("cost_records", "turns"):
        with op.batch_alter_table(table) as batch:
            for name in _COLUMNS:
                batch.drop_column(name)
