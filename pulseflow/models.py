"""SQLAlchemy models for the pulseflow database."""

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from . import ids
from .context import ContextRef, context_from_columns
from .json_fields import (
    CHALLENGES,
    CODE_PATTERNS,
    DEPENDENCIES,
    INTEGRATION_POINTS,
    JSON_ANY,
    JSON_OBJECT,
    JSON_STRING,
    KEY_FILES,
    PULSE_DEFINITIONS,
    STAGE_LIST,
    STRING_LIST,
    VERIFICATION_COMMANDS,
    ValidatedJSON,
)


def utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all models."""


# =============================================================================
# WORKFLOW
# =============================================================================


class Workflow(Base):
    """A tracked coding task moving through the ordered stages."""

    __tablename__ = "workflows"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=ids.workflow_id)
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, default="scoping")
    priority: Mapped[str] = mapped_column(String, default="medium")
    current_session_id: Mapped[str | None] = mapped_column(String, nullable=True)
    awaiting_approval: Mapped[bool] = mapped_column(Boolean, default=False)
    pending_artifact_type: Mapped[str | None] = mapped_column(String, nullable=True)
    base_branch: Mapped[str | None] = mapped_column(String, nullable=True)
    skipped_stages: Mapped[list[str]] = mapped_column(
        ValidatedJSON(STAGE_LIST, "skipped_stages"), default=list
    )
    archived: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class StageTransition(Base):
    """Append-only record of each stage change."""

    __tablename__ = "stage_transitions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=ids.stage_transition_id)
    workflow_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    previous_stage: Mapped[str | None] = mapped_column(String, nullable=True)
    new_stage: Mapped[str] = mapped_column(String, nullable=False)
    transition_type: Mapped[str] = mapped_column(String, default="advance")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class WorkflowError(Base):
    """Append-only record of workflow-level failures."""

    __tablename__ = "workflow_errors"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=ids.workflow_error_id)
    workflow_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    stage: Mapped[str] = mapped_column(String, nullable=False)
    error_type: Mapped[str] = mapped_column(String, default="workflow_error")
    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


# =============================================================================
# ARTIFACTS
# =============================================================================


class ScopeCard(Base):
    __tablename__ = "scope_cards"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=ids.scope_card_id)
    workflow_id: Mapped[str] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True
    )
    turn_id: Mapped[str | None] = mapped_column(String, nullable=True)
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    in_scope: Mapped[list[str]] = mapped_column(ValidatedJSON(STRING_LIST, "in_scope"), default=list)
    out_of_scope: Mapped[list[str]] = mapped_column(
        ValidatedJSON(STRING_LIST, "out_of_scope"), default=list
    )
    constraints: Mapped[list[str] | None] = mapped_column(
        ValidatedJSON(STRING_LIST, "constraints"), nullable=True
    )
    recommended_path: Mapped[str] = mapped_column(String, default="full")
    rationale: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ResearchCard(Base):
    __tablename__ = "research_cards"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=ids.research_card_id)
    workflow_id: Mapped[str] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True
    )
    turn_id: Mapped[str | None] = mapped_column(String, nullable=True)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    key_files: Mapped[list[Any]] = mapped_column(ValidatedJSON(KEY_FILES, "key_files"), default=list)
    patterns: Mapped[list[Any]] = mapped_column(
        ValidatedJSON(CODE_PATTERNS, "patterns"), default=list
    )
    dependencies: Mapped[list[Any]] = mapped_column(
        ValidatedJSON(DEPENDENCIES, "dependencies"), default=list
    )
    integration_points: Mapped[list[Any]] = mapped_column(
        ValidatedJSON(INTEGRATION_POINTS, "integration_points"), default=list
    )
    challenges: Mapped[list[Any]] = mapped_column(
        ValidatedJSON(CHALLENGES, "challenges"), default=list
    )
    recommendations: Mapped[list[str]] = mapped_column(
        ValidatedJSON(STRING_LIST, "recommendations"), default=list
    )
    status: Mapped[str] = mapped_column(String, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Plan(Base):
    __tablename__ = "plans"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=ids.plan_id)
    workflow_id: Mapped[str] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True
    )
    turn_id: Mapped[str | None] = mapped_column(String, nullable=True)
    approach_summary: Mapped[str] = mapped_column(Text, nullable=False)
    pulses: Mapped[list[Any]] = mapped_column(
        ValidatedJSON(PULSE_DEFINITIONS, "pulses"), default=list
    )
    status: Mapped[str] = mapped_column(String, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ReviewCard(Base):
    __tablename__ = "review_cards"
    __table_args__ = (UniqueConstraint("workflow_id", "round_number"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=ids.review_card_id)
    workflow_id: Mapped[str] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True
    )
    round_number: Mapped[int] = mapped_column(Integer, nullable=False)
    session_id: Mapped[str | None] = mapped_column(String, nullable=True)
    turn_id: Mapped[str | None] = mapped_column(String, nullable=True)
    recommendation: Mapped[str | None] = mapped_column(String, nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    suggested_commit_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    diff_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    comments: Mapped[list["ReviewComment"]] = relationship(
        back_populates="review_card",
        cascade="all, delete-orphan",
        order_by="ReviewComment.created_at",
        lazy="selectin",
    )


class ReviewComment(Base):
    __tablename__ = "review_comments"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=ids.comment_id)
    review_card_id: Mapped[str] = mapped_column(
        ForeignKey("review_cards.id", ondelete="CASCADE"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(String, nullable=False)
    file_path: Mapped[str | None] = mapped_column(String, nullable=True)
    start_line: Mapped[int | None] = mapped_column(Integer, nullable=True)
    end_line: Mapped[int | None] = mapped_column(Integer, nullable=True)
    severity: Mapped[str | None] = mapped_column(String, nullable=True)
    category: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    author: Mapped[str] = mapped_column(String, default="agent")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    review_card: Mapped["ReviewCard"] = relationship(back_populates="comments")


# =============================================================================
# PULSES AND PREFLIGHT
# =============================================================================


class Pulse(Base):
    """One checkpointed unit of agent-driven execution."""

    __tablename__ = "pulses"
    __table_args__ = (
        UniqueConstraint("workflow_id", "sequence"),
        Index("ix_pulses_workflow_status", "workflow_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=ids.pulse_id)
    workflow_id: Mapped[str] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    planned_pulse_id: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String, default="proposed")
    pulse_branch: Mapped[str | None] = mapped_column(String, nullable=True)
    worktree_path: Mapped[str | None] = mapped_column(String, nullable=True)
    checkpoint_commit_sha: Mapped[str | None] = mapped_column(String, nullable=True)
    has_unresolved_issues: Mapped[bool] = mapped_column(Boolean, default=False)
    is_recovery_checkpoint: Mapped[bool] = mapped_column(Boolean, default=False)
    rejection_count: Mapped[int] = mapped_column(Integer, default=0)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class PreflightSetup(Base):
    __tablename__ = "preflight_setups"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=ids.preflight_id)
    workflow_id: Mapped[str] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    session_id: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="running")
    progress_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    verification_commands: Mapped[list[Any] | None] = mapped_column(
        ValidatedJSON(VERIFICATION_COMMANDS, "verification_commands"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PreflightBaseline(Base):
    """A pre-existing issue recorded before execution started."""

    __tablename__ = "preflight_baselines"
    __table_args__ = (Index("ix_preflight_baselines_workflow_source", "workflow_id", "source"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=ids.baseline_id)
    workflow_id: Mapped[str] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False
    )
    issue_type: Mapped[str] = mapped_column(String, nullable=False)
    source: Mapped[str] = mapped_column(String, nullable=False)
    pattern: Mapped[str] = mapped_column(Text, nullable=False)
    file_path: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class PreflightCommandBaseline(Base):
    """Output of a verification command captured before execution started."""

    __tablename__ = "preflight_command_baselines"
    __table_args__ = (UniqueConstraint("workflow_id", "command"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=ids.command_baseline_id)
    workflow_id: Mapped[str] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False
    )
    command: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[str] = mapped_column(String, nullable=False)
    stdout: Mapped[str] = mapped_column(Text, default="")
    stderr: Mapped[str] = mapped_column(Text, default="")
    exit_code: Mapped[int] = mapped_column(Integer, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


# =============================================================================
# SESSIONS AND TURNS
# =============================================================================


class AgentSession(Base):
    """A conversational session scoped to a context."""

    __tablename__ = "sessions"
    __table_args__ = (Index("ix_sessions_context", "context_type", "context_id", "status"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=ids.session_id)
    context_type: Mapped[str] = mapped_column(String, nullable=False)
    context_id: Mapped[str] = mapped_column(String, nullable=False)
    agent_role: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, default="active")
    parent_session_id: Mapped[str | None] = mapped_column(
        ForeignKey("sessions.id", ondelete="CASCADE"), nullable=True, index=True
    )
    pulse_id: Mapped[str | None] = mapped_column(
        ForeignKey("pulses.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    @property
    def context(self) -> ContextRef:
        return context_from_columns(self.context_type, self.context_id)


class SessionNote(Base):
    __tablename__ = "session_notes"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=ids.note_id)
    session_id: Mapped[str] = mapped_column(
        ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    context_type: Mapped[str] = mapped_column(String, nullable=False)
    context_id: Mapped[str] = mapped_column(String, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class SessionTodo(Base):
    __tablename__ = "session_todos"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=ids.todo_id)
    session_id: Mapped[str] = mapped_column(
        ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    context_type: Mapped[str] = mapped_column(String, nullable=False)
    context_id: Mapped[str] = mapped_column(String, nullable=False)
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    checked: Mapped[bool] = mapped_column(Boolean, default=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Turn(Base):
    __tablename__ = "turns"
    __table_args__ = (UniqueConstraint("session_id", "turn_index"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=ids.turn_id)
    session_id: Mapped[str] = mapped_column(
        ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False
    )
    turn_index: Mapped[int] = mapped_column(Integer, nullable=False)
    role: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, default="streaming")
    hidden: Mapped[bool] = mapped_column(Boolean, default=False)
    token_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    prompt_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    completion_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cache_read_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cache_write_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    model_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class TurnMessage(Base):
    __tablename__ = "turn_messages"
    __table_args__ = (UniqueConstraint("turn_id", "message_index"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=ids.message_id)
    turn_id: Mapped[str] = mapped_column(ForeignKey("turns.id", ondelete="CASCADE"), nullable=False)
    message_index: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class TurnTool(Base):
    __tablename__ = "turn_tools"
    __table_args__ = (UniqueConstraint("turn_id", "tool_index"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=ids.tool_id)
    turn_id: Mapped[str] = mapped_column(ForeignKey("turns.id", ondelete="CASCADE"), nullable=False)
    tool_index: Mapped[int] = mapped_column(Integer, nullable=False)
    tool_name: Mapped[str] = mapped_column(String, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    input: Mapped[dict[str, Any]] = mapped_column(ValidatedJSON(JSON_OBJECT, "input"), default=dict)
    output: Mapped[str | None] = mapped_column(ValidatedJSON(JSON_STRING, "output"), nullable=True)
    status: Mapped[str] = mapped_column(String, default="running")
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class TurnThought(Base):
    __tablename__ = "turn_thoughts"
    __table_args__ = (UniqueConstraint("turn_id", "thought_index"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=ids.thought_id)
    turn_id: Mapped[str] = mapped_column(ForeignKey("turns.id", ondelete="CASCADE"), nullable=False)
    thought_index: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Question(Base):
    __tablename__ = "questions"
    __table_args__ = (UniqueConstraint("turn_id", "question_index"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=ids.question_id)
    session_id: Mapped[str] = mapped_column(
        ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    turn_id: Mapped[str] = mapped_column(ForeignKey("turns.id", ondelete="CASCADE"), nullable=False)
    question_index: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String, nullable=False)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    options: Mapped[list[str] | None] = mapped_column(
        ValidatedJSON(STRING_LIST, "options"), nullable=True
    )
    answer: Mapped[Any | None] = mapped_column(ValidatedJSON(JSON_ANY, "answer"), nullable=True)
    status: Mapped[str] = mapped_column(String, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    answered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# =============================================================================
# SUBTASKS
# =============================================================================


class Subtask(Base):
    """Work delegated by a coordinator session to a subagent."""

    __tablename__ = "subtasks"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=ids.subtask_id)
    parent_session_id: Mapped[str] = mapped_column(
        ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    workflow_id: Mapped[str] = mapped_column(
        ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True
    )
    task_definition: Mapped[dict[str, Any]] = mapped_column(
        ValidatedJSON(JSON_OBJECT, "task_definition"), nullable=False
    )
    findings: Mapped[Any | None] = mapped_column(
        ValidatedJSON(JSON_ANY, "findings"), nullable=True
    )
    status: Mapped[str] = mapped_column(String, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


# =============================================================================
# COST LEDGER
# =============================================================================


class CostRecord(Base):
    """Append-only token usage and cost for one turn."""

    __tablename__ = "cost_records"
    __table_args__ = (
        Index("ix_cost_records_context", "context_type", "context_id"),
        Index("ix_cost_records_model", "model_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=ids.cost_record_id)
    context_type: Mapped[str] = mapped_column(String, nullable=False)
    context_id: Mapped[str] = mapped_column(String, nullable=False)
    turn_id: Mapped[str | None] = mapped_column(String, nullable=True)
    session_id: Mapped[str | None] = mapped_column(String, nullable=True)
    model_id: Mapped[str] = mapped_column(String, nullable=False)
    agent_role: Mapped[str | None] = mapped_column(String, nullable=True)
    prompt_tokens: Mapped[int] = mapped_column(Integer, default=0)
    completion_tokens: Mapped[int] = mapped_column(Integer, default=0)
    cache_read_tokens: Mapped[int] = mapped_column(Integer, default=0)
    cache_write_tokens: Mapped[int] = mapped_column(Integer, default=0)
    cost_usd: Mapped[Decimal] = mapped_column(Numeric(12, 6), default=Decimal("0"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
