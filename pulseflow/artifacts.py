"""Stage artifacts: scope cards, research cards, plans and review cards.

Each stage's agent submits an artifact that a human approves or denies
before the workflow moves on. Only the latest artifact of each kind matters
for the approval gate; older ones are kept as history.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from . import ids
from .errors import InvalidTransitionError, JsonFieldError
from .json_fields import (
    CHALLENGES,
    CODE_PATTERNS,
    DEPENDENCIES,
    INTEGRATION_POINTS,
    KEY_FILES,
    PULSE_DEFINITIONS,
    STRING_LIST,
    validate_field,
)
from .models import Plan, ResearchCard, ReviewCard, ReviewComment, ScopeCard
from .states import (
    ArtifactStatus,
    ArtifactType,
    CommentAuthor,
    RecommendedPath,
    ReviewCommentSeverity,
    ReviewCommentType,
    ReviewRecommendation,
)

logger = logging.getLogger(__name__)

Artifact = ScopeCard | ResearchCard | Plan | ReviewCard


async def _latest(session: AsyncSession, model: type[Any], workflow_id: str):
    result = await session.execute(
        select(model)
        .where(model.workflow_id == workflow_id)
        .order_by(model.created_at.desc(), model.id.desc())
        .limit(1)
    )
    return result.scalars().first()


async def _all(session: AsyncSession, model: type[Any], workflow_id: str) -> list[Any]:
    result = await session.execute(
        select(model).where(model.workflow_id == workflow_id).order_by(model.created_at, model.id)
    )
    return list(result.scalars().all())


async def _set_status(
    session: AsyncSession, model: type[Any], artifact_id: str, status: ArtifactStatus | str
):
    artifact = await session.get(model, artifact_id)
    if artifact is None:
        raise InvalidTransitionError(f"{model.__name__} '{artifact_id}' not found")
    artifact.status = ArtifactStatus(status).value
    await session.flush()
    logger.info("%s %s -> %s", model.__name__, artifact_id, artifact.status)
    return artifact


async def _delete_for_workflow(session: AsyncSession, model: type[Any], workflow_id: str) -> int:
    result = await session.execute(delete(model).where(model.workflow_id == workflow_id))
    return result.rowcount


# =============================================================================
# Scope cards
# =============================================================================


async def create_scope_card(
    session: AsyncSession,
    workflow_id: str,
    *,
    title: str,
    description: str,
    in_scope: list[str],
    out_of_scope: list[str],
    recommended_path: RecommendedPath | str = RecommendedPath.FULL,
    constraints: list[str] | None = None,
    rationale: str | None = None,
    turn_id: str | None = None,
) -> ScopeCard:
    card = ScopeCard(
        id=ids.scope_card_id(),
        workflow_id=workflow_id,
        turn_id=turn_id,
        title=title,
        description=description,
        in_scope=validate_field(STRING_LIST, "in_scope", in_scope),
        out_of_scope=validate_field(STRING_LIST, "out_of_scope", out_of_scope),
        constraints=(
            validate_field(STRING_LIST, "constraints", constraints) if constraints is not None else None
        ),
        recommended_path=RecommendedPath(recommended_path).value,
        rationale=rationale,
        status=ArtifactStatus.PENDING.value,
    )
    session.add(card)
    await session.flush()
    return card


async def get_latest_scope_card(session: AsyncSession, workflow_id: str) -> ScopeCard | None:
    return await _latest(session, ScopeCard, workflow_id)


async def get_all_scope_cards(session: AsyncSession, workflow_id: str) -> list[ScopeCard]:
    return await _all(session, ScopeCard, workflow_id)


async def update_scope_card_status(
    session: AsyncSession, card_id: str, status: ArtifactStatus | str
) -> ScopeCard:
    return await _set_status(session, ScopeCard, card_id, status)


async def delete_scope_cards(session: AsyncSession, workflow_id: str) -> int:
    return await _delete_for_workflow(session, ScopeCard, workflow_id)


# =============================================================================
# Research cards
# =============================================================================


async def create_research_card(
    session: AsyncSession,
    workflow_id: str,
    *,
    summary: str,
    key_files: Sequence[Any] = (),
    patterns: Sequence[Any] = (),
    dependencies: Sequence[Any] = (),
    integration_points: Sequence[Any] = (),
    challenges: Sequence[Any] = (),
    recommendations: Sequence[str] = (),
    turn_id: str | None = None,
) -> ResearchCard:
    card = ResearchCard(
        id=ids.research_card_id(),
        workflow_id=workflow_id,
        turn_id=turn_id,
        summary=summary,
        key_files=validate_field(KEY_FILES, "key_files", list(key_files)),
        patterns=validate_field(CODE_PATTERNS, "patterns", list(patterns)),
        dependencies=validate_field(DEPENDENCIES, "dependencies", list(dependencies)),
        integration_points=validate_field(
            INTEGRATION_POINTS, "integration_points", list(integration_points)
        ),
        challenges=validate_field(CHALLENGES, "challenges", list(challenges)),
        recommendations=validate_field(STRING_LIST, "recommendations", list(recommendations)),
        status=ArtifactStatus.PENDING.value,
    )
    session.add(card)
    await session.flush()
    return card


async def get_latest_research_card(session: AsyncSession, workflow_id: str) -> ResearchCard | None:
    return await _latest(session, ResearchCard, workflow_id)


async def get_all_research_cards(session: AsyncSession, workflow_id: str) -> list[ResearchCard]:
    return await _all(session, ResearchCard, workflow_id)


async def update_research_card_status(
    session: AsyncSession, card_id: str, status: ArtifactStatus | str
) -> ResearchCard:
    return await _set_status(session, ResearchCard, card_id, status)


async def delete_research_cards(session: AsyncSession, workflow_id: str) -> int:
    return await _delete_for_workflow(session, ResearchCard, workflow_id)


# =============================================================================
# Plans
# =============================================================================


async def create_plan(
    session: AsyncSession,
    workflow_id: str,
    *,
    approach_summary: str,
    pulses: list[Any],
    turn_id: str | None = None,
) -> Plan:
    plan = Plan(
        id=ids.plan_id(),
        workflow_id=workflow_id,
        turn_id=turn_id,
        approach_summary=approach_summary,
        pulses=validate_field(PULSE_DEFINITIONS, "pulses", pulses),
        status=ArtifactStatus.PENDING.value,
    )
    session.add(plan)
    await session.flush()
    return plan


async def get_latest_plan(session: AsyncSession, workflow_id: str) -> Plan | None:
    return await _latest(session, Plan, workflow_id)


async def get_all_plans(session: AsyncSession, workflow_id: str) -> list[Plan]:
    return await _all(session, Plan, workflow_id)


async def update_plan_status(
    session: AsyncSession, plan_id: str, status: ArtifactStatus | str
) -> Plan:
    return await _set_status(session, Plan, plan_id, status)


async def delete_plans(session: AsyncSession, workflow_id: str) -> int:
    return await _delete_for_workflow(session, Plan, workflow_id)


# =============================================================================
# Review cards
# =============================================================================


def _with_comments(stmt):
    # Comments are written directly, so reload the collection on every read.
    return stmt.options(selectinload(ReviewCard.comments)).execution_options(populate_existing=True)


async def create_review_card(
    session: AsyncSession,
    workflow_id: str,
    *,
    session_id: str | None = None,
    turn_id: str | None = None,
    diff_content: str | None = None,
) -> ReviewCard:
    """Open the next review round for a workflow."""
    result = await session.execute(
        select(func.coalesce(func.max(ReviewCard.round_number), 0)).where(
            ReviewCard.workflow_id == workflow_id
        )
    )
    card = ReviewCard(
        id=ids.review_card_id(),
        workflow_id=workflow_id,
        round_number=int(result.scalar_one()) + 1,
        session_id=session_id,
        turn_id=turn_id,
        diff_content=diff_content,
        status=ArtifactStatus.PENDING.value,
        comments=[],
    )
    session.add(card)
    await session.flush()
    return card


async def get_review_card(session: AsyncSession, card_id: str) -> ReviewCard | None:
    result = await session.execute(_with_comments(select(ReviewCard).where(ReviewCard.id == card_id)))
    return result.scalar_one_or_none()


async def get_latest_review_card(session: AsyncSession, workflow_id: str) -> ReviewCard | None:
    result = await session.execute(
        _with_comments(
            select(ReviewCard)
            .where(ReviewCard.workflow_id == workflow_id)
            .order_by(ReviewCard.round_number.desc())
            .limit(1)
        )
    )
    return result.scalars().first()


async def get_all_review_cards(session: AsyncSession, workflow_id: str) -> list[ReviewCard]:
    result = await session.execute(
        _with_comments(
            select(ReviewCard)
            .where(ReviewCard.workflow_id == workflow_id)
            .order_by(ReviewCard.round_number)
        )
    )
    return list(result.scalars().all())


async def update_review_card_status(
    session: AsyncSession, card_id: str, status: ArtifactStatus | str
) -> ReviewCard:
    return await _set_status(session, ReviewCard, card_id, status)


async def complete_review(
    session: AsyncSession,
    card_id: str,
    *,
    recommendation: ReviewRecommendation | str,
    summary: str,
    suggested_commit_message: str | None = None,
    turn_id: str | None = None,
) -> ReviewCard:
    card = await get_review_card(session, card_id)
    if card is None:
        raise InvalidTransitionError(f"ReviewCard '{card_id}' not found")
    if card.status != ArtifactStatus.PENDING.value:
        raise InvalidTransitionError(
            f"Cannot complete review '{card_id}': status is '{card.status}'"
        )
    card.recommendation = ReviewRecommendation(recommendation).value
    card.summary = summary
    card.suggested_commit_message = suggested_commit_message
    if turn_id is not None:
        card.turn_id = turn_id
    await session.flush()
    return card


async def reset_review_card(session: AsyncSession, card_id: str) -> ReviewCard:
    """Put a review back to pending with no verdict, for a re-review."""
    card = await get_review_card(session, card_id)
    if card is None:
        raise InvalidTransitionError(f"ReviewCard '{card_id}' not found")
    card.status = ArtifactStatus.PENDING.value
    card.recommendation = None
    card.summary = None
    card.suggested_commit_message = None
    await session.flush()
    return card


async def delete_review_cards(session: AsyncSession, workflow_id: str) -> int:
    result = await session.execute(
        select(ReviewCard.id).where(ReviewCard.workflow_id == workflow_id)
    )
    card_ids = list(result.scalars().all())
    if not card_ids:
        return 0
    await session.execute(delete(ReviewComment).where(ReviewComment.review_card_id.in_(card_ids)))
    await session.execute(delete(ReviewCard).where(ReviewCard.id.in_(card_ids)))
    return len(card_ids)


# =============================================================================
# Review comments
# =============================================================================


def _check_comment_location(
    kind: ReviewCommentType, file_path: str | None, start_line: int | None, end_line: int | None
) -> None:
    if kind is ReviewCommentType.LINE:
        if not file_path or start_line is None:
            raise JsonFieldError("review_comment", "line comments need file_path and start_line")
        if end_line is not None and end_line < start_line:
            raise JsonFieldError("review_comment", "end_line is before start_line")
    elif kind is ReviewCommentType.FILE and not file_path:
        raise JsonFieldError("review_comment", "file comments need file_path")


async def create_review_comment(
    session: AsyncSession,
    review_card_id: str,
    *,
    type: ReviewCommentType | str,
    description: str,
    file_path: str | None = None,
    start_line: int | None = None,
    end_line: int | None = None,
    severity: ReviewCommentSeverity | str | None = None,
    category: str | None = None,
    author: CommentAuthor | str = CommentAuthor.AGENT,
) -> ReviewComment:
    kind = ReviewCommentType(type)
    _check_comment_location(kind, file_path, start_line, end_line)
    card = await session.get(ReviewCard, review_card_id)
    if card is None:
        raise InvalidTransitionError(f"ReviewCard '{review_card_id}' not found")

    comment = ReviewComment(
        id=ids.comment_id(),
        review_card=card,
        type=kind.value,
        file_path=file_path,
        start_line=start_line,
        end_line=end_line,
        severity=ReviewCommentSeverity(severity).value if severity is not None else None,
        category=category,
        description=description,
        author=CommentAuthor(author).value,
    )
    session.add(comment)
    await session.flush()
    return comment


async def get_comments_by_review_card(
    session: AsyncSession, review_card_id: str
) -> list[ReviewComment]:
    result = await session.execute(
        select(ReviewComment)
        .where(ReviewComment.review_card_id == review_card_id)
        .order_by(ReviewComment.created_at, ReviewComment.id)
    )
    return list(result.scalars().all())


async def get_comments_by_ids(session: AsyncSession, comment_ids: Sequence[str]) -> list[ReviewComment]:
    if not comment_ids:
        return []
    result = await session.execute(
        select(ReviewComment)
        .where(ReviewComment.id.in_(list(comment_ids)))
        .order_by(ReviewComment.created_at, ReviewComment.id)
    )
    return list(result.scalars().all())


async def delete_review_comments(session: AsyncSession, review_card_id: str) -> int:
    result = await session.execute(
        delete(ReviewComment).where(ReviewComment.review_card_id == review_card_id)
    )
    return result.rowcount


# =============================================================================
# Generic access
# =============================================================================

_LATEST = {
    ArtifactType.SCOPE_CARD: get_latest_scope_card,
    ArtifactType.RESEARCH: get_latest_research_card,
    ArtifactType.PLAN: get_latest_plan,
    ArtifactType.REVIEW_CARD: get_latest_review_card,
}

_STATUS_UPDATERS = {
    ArtifactType.SCOPE_CARD: update_scope_card_status,
    ArtifactType.RESEARCH: update_research_card_status,
    ArtifactType.PLAN: update_plan_status,
    ArtifactType.REVIEW_CARD: update_review_card_status,
}


async def get_pending_artifact(
    session: AsyncSession, workflow_id: str, artifact_type: ArtifactType | str | None
) -> Artifact | None:
    """Latest artifact of the type a workflow is waiting on, if any."""
    if not artifact_type:
        return None
    return await _LATEST[ArtifactType(artifact_type)](session, workflow_id)


async def set_artifact_status(
    session: AsyncSession,
    artifact_type: ArtifactType | str,
    artifact_id: str,
    status: ArtifactStatus | str,
) -> Artifact:
    return await _STATUS_UPDATERS[ArtifactType(artifact_type)](session, artifact_id, status)
