"""Initial schema.

Review comments require severity and category and have no author yet;
turns and cost records carry no prompt-cache counts. Later revisions add
those.

Revision ID: 0001_initial
Revises: None
Create Date: 2026-01-12
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "0001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _id() -> sa.Column:
    return sa.Column("id", sa.String(), primary_key=True)


def _timestamp(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _workflow_fk(**kwargs) -> sa.Column:
    return sa.Column(
        "workflow_id",
        sa.String(),
        sa.ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
        **kwargs,
    )


def _turn_fk() -> sa.Column:
    return sa.Column("turn_id", sa.String(), sa.ForeignKey("turns.id", ondelete="CASCADE"), nullable=False)


def upgrade() -> None:
    # Workflows and their history
    op.create_table(
        "workflows",
        _id(),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String()),
        sa.Column("priority", sa.String()),
        sa.Column("current_session_id", sa.String(), nullable=True),
        sa.Column("awaiting_approval", sa.Boolean()),
        sa.Column("pending_artifact_type", sa.String(), nullable=True),
        sa.Column("base_branch", sa.String(), nullable=True),
        sa.Column("skipped_stages", sa.Text()),
        sa.Column("archived", sa.Boolean()),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )

    op.create_table(
        "stage_transitions",
        _id(),
        sa.Column("workflow_id", sa.String(), nullable=False),
        sa.Column("previous_stage", sa.String(), nullable=True),
        sa.Column("new_stage", sa.String(), nullable=False),
        sa.Column("transition_type", sa.String()),
        _timestamp("created_at"),
    )
    op.create_index("ix_stage_transitions_workflow_id", "stage_transitions", ["workflow_id"])

    op.create_table(
        "workflow_errors",
        _id(),
        sa.Column("workflow_id", sa.String(), nullable=False),
        sa.Column("stage", sa.String(), nullable=False),
        sa.Column("error_type", sa.String()),
        sa.Column("error_message", sa.Text(), nullable=False),
        _timestamp("created_at"),
    )
    op.create_index("ix_workflow_errors_workflow_id", "workflow_errors", ["workflow_id"])

    # Stage artifacts
    op.create_table(
        "scope_cards",
        _id(),
        _workflow_fk(),
        sa.Column("turn_id", sa.String(), nullable=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("in_scope", sa.Text()),
        sa.Column("out_of_scope", sa.Text()),
        sa.Column("constraints", sa.Text(), nullable=True),
        sa.Column("recommended_path", sa.String()),
        sa.Column("rationale", sa.Text(), nullable=True),
        sa.Column("status", sa.String()),
        _timestamp("created_at"),
    )
    op.create_index("ix_scope_cards_workflow_id", "scope_cards", ["workflow_id"])

    op.create_table(
        "research_cards",
        _id(),
        _workflow_fk(),
        sa.Column("turn_id", sa.String(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("key_files", sa.Text()),
        sa.Column("patterns", sa.Text()),
        sa.Column("dependencies", sa.Text()),
        sa.Column("integration_points", sa.Text()),
        sa.Column("challenges", sa.Text()),
        sa.Column("recommendations", sa.Text()),
        sa.Column("status", sa.String()),
        _timestamp("created_at"),
    )
    op.create_index("ix_research_cards_workflow_id", "research_cards", ["workflow_id"])

    op.create_table(
        "plans",
        _id(),
        _workflow_fk(),
        sa.Column("turn_id", sa.String(), nullable=True),
        sa.Column("approach_summary", sa.Text(), nullable=False),
        sa.Column("pulses", sa.Text()),
        sa.Column("status", sa.String()),
        _timestamp("created_at"),
    )
    op.create_index("ix_plans_workflow_id", "plans", ["workflow_id"])

    op.create_table(
        "review_cards",
        _id(),
        _workflow_fk(),
        sa.Column("round_number", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("turn_id", sa.String(), nullable=True),
        sa.Column("recommendation", sa.String(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("suggested_commit_message", sa.Text(), nullable=True),
        sa.Column("diff_content", sa.Text(), nullable=True),
        sa.Column("status", sa.String()),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("workflow_id", "round_number"),
    )
    op.create_index("ix_review_cards_workflow_id", "review_cards", ["workflow_id"])

    op.create_table(
        "review_comments",
        _id(),
        sa.Column(
            "review_card_id",
            sa.String(),
            sa.ForeignKey("review_cards.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("file_path", sa.String(), nullable=True),
        sa.Column("start_line", sa.Integer(), nullable=True),
        sa.Column("end_line", sa.Integer(), nullable=True),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        _timestamp("created_at"),
    )
    op.create_index("ix_review_comments_review_card_id", "review_comments", ["review_card_id"])

    # Pulses and preflight
    op.create_table(
        "pulses",
        _id(),
        _workflow_fk(),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("planned_pulse_id", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String()),
        sa.Column("pulse_branch", sa.String(), nullable=True),
        sa.Column("worktree_path", sa.String(), nullable=True),
        sa.Column("checkpoint_commit_sha", sa.String(), nullable=True),
        sa.Column("has_unresolved_issues", sa.Boolean()),
        sa.Column("is_recovery_checkpoint", sa.Boolean()),
        sa.Column("rejection_count", sa.Integer()),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        _timestamp("started_at"),
        _timestamp("ended_at"),
        _timestamp("created_at"),
        sa.UniqueConstraint("workflow_id", "sequence"),
    )
    op.create_index("ix_pulses_workflow_status", "pulses", ["workflow_id", "status"])

    op.create_table(
        "preflight_setups",
        _id(),
        _workflow_fk(unique=True),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("status", sa.String()),
        sa.Column("progress_message", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("verification_commands", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("completed_at"),
    )

    op.create_table(
        "preflight_baselines",
        _id(),
        _workflow_fk(),
        sa.Column("issue_type", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("pattern", sa.Text(), nullable=False),
        sa.Column("file_path", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        _timestamp("recorded_at"),
    )
    op.create_index(
        "ix_preflight_baselines_workflow_source", "preflight_baselines", ["workflow_id", "source"]
    )

    op.create_table(
        "preflight_command_baselines",
        _id(),
        _workflow_fk(),
        sa.Column("command", sa.Text(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("stdout", sa.Text()),
        sa.Column("stderr", sa.Text()),
        sa.Column("exit_code", sa.Integer(), nullable=False),
        _timestamp("recorded_at"),
        sa.UniqueConstraint("workflow_id", "command"),
    )

    # Sessions and turns
    op.create_table(
        "sessions",
        _id(),
        sa.Column("context_type", sa.String(), nullable=False),
        sa.Column("context_id", sa.String(), nullable=False),
        sa.Column("agent_role", sa.String(), nullable=False),
        sa.Column("status", sa.String()),
        sa.Column(
            "parent_session_id",
            sa.String(),
            sa.ForeignKey("sessions.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("pulse_id", sa.String(), sa.ForeignKey("pulses.id", ondelete="SET NULL"), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_sessions_context", "sessions", ["context_type", "context_id", "status"])
    op.create_index("ix_sessions_parent_session_id", "sessions", ["parent_session_id"])

    for table, columns in (
        ("session_notes", [sa.Column("content", sa.Text(), nullable=False)]),
        (
            "session_todos",
            [
                sa.Column("title", sa.String(), nullable=False),
                sa.Column("description", sa.Text()),
                sa.Column("checked", sa.Boolean()),
                sa.Column("sort_order", sa.Integer()),
            ],
        ),
    ):
        op.create_table(
            table,
            _id(),
            sa.Column(
                "session_id",
                sa.String(),
                sa.ForeignKey("sessions.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("context_type", sa.String(), nullable=False),
            sa.Column("context_id", sa.String(), nullable=False),
            *columns,
            _timestamp("created_at"),
        )
        op.create_index(f"ix_{table}_session_id", table, ["session_id"])

    op.create_table(
        "turns",
        _id(),
        sa.Column("session_id", sa.String(), sa.ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("turn_index", sa.Integer(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("status", sa.String()),
        sa.Column("hidden", sa.Boolean()),
        sa.Column("token_count", sa.Integer(), nullable=True),
        sa.Column("prompt_tokens", sa.Integer(), nullable=True),
        sa.Column("completion_tokens", sa.Integer(), nullable=True),
        sa.Column("model_id", sa.String(), nullable=True),
        _timestamp("created_at"),
        _timestamp("completed_at"),
        sa.UniqueConstraint("session_id", "turn_index"),
    )

    op.create_table(
        "turn_messages",
        _id(),
        _turn_fk(),
        sa.Column("message_index", sa.Integer(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        _timestamp("created_at"),
        sa.UniqueConstraint("turn_id", "message_index"),
    )

    op.create_table(
        "turn_tools",
        _id(),
        _turn_fk(),
        sa.Column("tool_index", sa.Integer(), nullable=False),
        sa.Column("tool_name", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("input", sa.Text()),
        sa.Column("output", sa.Text(), nullable=True),
        sa.Column("status", sa.String()),
        _timestamp("started_at"),
        _timestamp("completed_at"),
        sa.UniqueConstraint("turn_id", "tool_index"),
    )

    op.create_table(
        "turn_thoughts",
        _id(),
        _turn_fk(),
        sa.Column("thought_index", sa.Integer(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        _timestamp("created_at"),
        sa.UniqueConstraint("turn_id", "thought_index"),
    )

    op.create_table(
        "questions",
        _id(),
        sa.Column("session_id", sa.String(), sa.ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False),
        _turn_fk(),
        sa.Column("question_index", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("options", sa.Text(), nullable=True),
        sa.Column("answer", sa.Text(), nullable=True),
        sa.Column("status", sa.String()),
        _timestamp("created_at"),
        _timestamp("answered_at"),
        sa.UniqueConstraint("turn_id", "question_index"),
    )
    op.create_index("ix_questions_session_id", "questions", ["session_id"])

    # Subtasks
    op.create_table(
        "subtasks",
        _id(),
        sa.Column(
            "parent_session_id",
            sa.String(),
            sa.ForeignKey("sessions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _workflow_fk(),
        sa.Column("task_definition", sa.Text(), nullable=False),
        sa.Column("findings", sa.Text(), nullable=True),
        sa.Column("status", sa.String()),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_subtasks_parent_session_id", "subtasks", ["parent_session_id"])
    op.create_index("ix_subtasks_workflow_id", "subtasks", ["workflow_id"])

    # Cost ledger
    op.create_table(
        "cost_records",
        _id(),
        sa.Column("context_type", sa.String(), nullable=False),
        sa.Column("context_id", sa.String(), nullable=False),
        sa.Column("turn_id", sa.String(), nullable=True),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("model_id", sa.String(), nullable=False),
        sa.Column("agent_role", sa.String(), nullable=True),
        sa.Column("prompt_tokens", sa.Integer()),
        sa.Column("completion_tokens", sa.Integer()),
        sa.Column("cost_usd", sa.Numeric(12, 6)),
        _timestamp("created_at"),
    )
    op.create_index("ix_cost_records_context", "cost_records", ["context_type", "context_id"])
    op.create_index("ix_cost_records_model", "cost_records", ["model_id"])
    op.create_index("ix_cost_records_created_at", "cost_records", ["created_at"])


def downgrade() -> None:
    for table in (
        "cost_records",
        "subtasks",
        "questions",
        "turn_thoughts",
        "turn_tools",
        "turn_messages",
        "turns",
        "session_todos",
        "session_notes",
        "sessions",
        "preflight_command_baselines",
        "preflight_baselines",
        "preflight_setups",
        "pulses",
        "review_comments",
        "review_cards",
        "plans",
        "research_cards",
        "scope_cards",
        "workflow_errors",
        "stage_transitions",
        "workflows",
    ):
        op.drop_table(table)
