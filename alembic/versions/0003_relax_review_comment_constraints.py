"""Make review comment severity and category optional.

User-authored comments carry neither.

Revision ID: 0003_relax_review_comment_constraints
Revises: 0002_review_comment_author
Create Date: 2026-02-09
"""

from collections.abc import Sequence

from alembic import op

from pulseflow.migrations import relax_review_comment_constraints

revision: str = "0003_relax_review_comment_constraints"
down_revision: str | None = "0002_review_comment_author"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    relax_review_comment_constraints(op.get_bind())


def downgrade() -> None:
    raise RuntimeError("Irreversible migration: comments without severity cannot be restored safely")
