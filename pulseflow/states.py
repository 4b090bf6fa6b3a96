"""Status vocabularies and the fixed workflow stage order."""

from __future__ import annotations

from collections.abc import Iterable
from enum import StrEnum


class WorkflowStatus(StrEnum):
    BACKLOG = "backlog"
    SCOPING = "scoping"
    RESEARCHING = "researching"
    PLANNING = "planning"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    COMPLETED = "completed"


STAGE_ORDER: tuple[WorkflowStatus, ...] = (
    WorkflowStatus.BACKLOG,
    WorkflowStatus.SCOPING,
    WorkflowStatus.RESEARCHING,
    WorkflowStatus.PLANNING,
    WorkflowStatus.IN_PROGRESS,
    WorkflowStatus.REVIEW,
    WorkflowStatus.COMPLETED,
)

# Stages a quick-path workflow may elide.
SKIPPABLE_STAGES = frozenset({WorkflowStatus.RESEARCHING, WorkflowStatus.PLANNING})

# Stages a workflow can be rewound to.
REWIND_TARGETS = frozenset(
    {
        WorkflowStatus.RESEARCHING,
        WorkflowStatus.PLANNING,
        WorkflowStatus.IN_PROGRESS,
        WorkflowStatus.REVIEW,
    }
)


class Priority(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ArtifactType(StrEnum):
    SCOPE_CARD = "scope_card"
    RESEARCH = "research"
    PLAN = "plan"
    REVIEW_CARD = "review_card"


class ArtifactStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class RecommendedPath(StrEnum):
    QUICK = "quick"
    FULL = "full"


class ReviewRecommendation(StrEnum):
    APPROVE = "approve"
    DENY = "deny"
    MANUAL_REVIEW = "manual_review"


class ReviewCommentType(StrEnum):
    LINE = "line"
    FILE = "file"
    REVIEW = "review"


class ReviewCommentSeverity(StrEnum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


class CommentAuthor(StrEnum):
    AGENT = "agent"
    USER = "user"


class PulseStatus(StrEnum):
    PROPOSED = "proposed"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    STOPPED = "stopped"


class PreflightStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class IssueType(StrEnum):
    ERROR = "error"
    WARNING = "warning"


class IssueSource(StrEnum):
    BUILD = "build"
    LINT = "lint"
    TEST = "test"


class AgentRole(StrEnum):
    SCOPING = "scoping"
    RESEARCH = "research"
    PLANNING = "planning"
    PREFLIGHT = "preflight"
    EXECUTION = "execution"
    REVIEW = "review"
    REVIEW_SUB = "review_sub"
    DISCUSSION = "discussion"


# Session roles owned by each stage; used when a stage is restarted or rewound.
STAGE_ROLES: dict[WorkflowStatus, tuple[AgentRole, ...]] = {
    WorkflowStatus.SCOPING: (AgentRole.SCOPING,),
    WorkflowStatus.RESEARCHING: (AgentRole.RESEARCH,),
    WorkflowStatus.PLANNING: (AgentRole.PLANNING,),
    WorkflowStatus.IN_PROGRESS: (AgentRole.PREFLIGHT, AgentRole.EXECUTION),
    WorkflowStatus.REVIEW: (AgentRole.REVIEW, AgentRole.REVIEW_SUB),
}


class SessionStatus(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ERROR = "error"


class TurnRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"


class TurnStatus(StrEnum):
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERROR = "error"


class ToolStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class QuestionType(StrEnum):
    SINGLE_SELECT = "single_select"
    MULTI_SELECT = "multi_select"
    RANKED = "ranked"
    FREE_TEXT = "free_text"


class QuestionStatus(StrEnum):
    PENDING = "pending"
    ANSWERED = "answered"
    SKIPPED = "skipped"


class SubtaskStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TransitionType(StrEnum):
    ADVANCE = "advance"
    REWIND = "rewind"


def stage_index(stage: str) -> int:
    return STAGE_ORDER.index(WorkflowStatus(stage))


def next_stage(current: str, skipped: Iterable[str] = ()) -> WorkflowStatus | None:
    """Return the stage after ``current``, stepping over skipped stages.

    Returns None when ``current`` is already the final stage.
    """
    skipped_set = {WorkflowStatus(s) for s in skipped}
    for stage in STAGE_ORDER[stage_index(current) + 1 :]:
        if stage not in skipped_set:
            return stage
    return None
