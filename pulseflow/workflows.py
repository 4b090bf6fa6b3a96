"""Workflow stage controller.

A workflow walks the fixed stage order (backlog through completed). Each
agent stage ends by raising an approval gate for the artifact it produced;
approving the artifact moves the workflow on. Stage changes are recorded
in ``stage_transitions`` and never rewritten.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from . import artifacts, baselines, costs, ids, pulses, sessions, subtasks
from .context import WorkflowContext
from .db import atomic
from .errors import InvalidTransitionError
from .events import EventType, publish
from .json_fields import STAGE_LIST, validate_field
from .models import Plan, StageTransition, Subtask, Workflow, WorkflowError
from .states import (
    REWIND_TARGETS,
    SKIPPABLE_STAGES,
    STAGE_ORDER,
    STAGE_ROLES,
    ArtifactStatus,
    ArtifactType,
    Priority,
    TransitionType,
    WorkflowStatus,
    next_stage,
    stage_index,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Queries
# =============================================================================


async def get_workflow(session: AsyncSession, workflow_id: str) -> Workflow | None:
    return await session.get(Workflow, workflow_id)


async def _require_workflow(session: AsyncSession, workflow_id: str) -> Workflow:
    workflow = await get_workflow(session, workflow_id)
    if workflow is None:
        raise InvalidTransitionError(f"Workflow '{workflow_id}' not found")
    return workflow


async def list_workflows(
    session: AsyncSession,
    *,
    include_archived: bool = False,
    order_by: str = "updated",
) -> list[Workflow]:
    """Workflows newest first; archived ones are hidden unless asked for."""
    if order_by not in ("updated", "created"):
        raise ValueError(f"order_by must be 'updated' or 'created', got {order_by!r}")
    column = Workflow.updated_at if order_by == "updated" else Workflow.created_at
    stmt = select(Workflow)
    if not include_archived:
        stmt = stmt.where(Workflow.archived.is_(False))
    result = await session.execute(stmt.order_by(column.desc(), Workflow.id.desc()))
    return list(result.scalars().all())


async def get_stage_transitions(session: AsyncSession, workflow_id: str) -> list[StageTransition]:
    result = await session.execute(
        select(StageTransition)
        .where(StageTransition.workflow_id == workflow_id)
        .order_by(StageTransition.created_at, StageTransition.id)
    )
    return list(result.scalars().all())


async def get_workflow_errors(session: AsyncSession, workflow_id: str) -> list[WorkflowError]:
    result = await session.execute(
        select(WorkflowError)
        .where(WorkflowError.workflow_id == workflow_id)
        .order_by(WorkflowError.created_at, WorkflowError.id)
    )
    return list(result.scalars().all())


def is_stage_satisfied(workflow: Workflow, stage: WorkflowStatus | str) -> bool:
    """A stage is satisfied once the workflow is past it or skips it."""
    stage = WorkflowStatus(stage)
    if stage.value in (workflow.skipped_stages or []):
        return True
    return stage_index(workflow.status) > stage_index(stage)


# =============================================================================
# Creation and simple updates
# =============================================================================


def _normalize_skipped(stages: Iterable[str]) -> list[WorkflowStatus]:
    requested = set(validate_field(STAGE_LIST, "skipped_stages", list(stages)))
    not_skippable = requested - SKIPPABLE_STAGES
    if not_skippable:
        names = ", ".join(sorted(s.value for s in not_skippable))
        raise InvalidTransitionError(f"Stages cannot be skipped: {names}")
    return [stage for stage in STAGE_ORDER if stage in requested]


async def create_workflow(
    session: AsyncSession,
    title: str,
    description: str | None = None,
    *,
    priority: Priority | str = Priority.MEDIUM,
    status: WorkflowStatus | str = WorkflowStatus.SCOPING,
    skipped_stages: Iterable[str] = (),
) -> Workflow:
    workflow = Workflow(
        id=ids.workflow_id(),
        title=title,
        description=description,
        status=WorkflowStatus(status).value,
        priority=Priority(priority).value,
        awaiting_approval=False,
        pending_artifact_type=None,
        skipped_stages=_normalize_skipped(skipped_stages),
        archived=False,
    )
    session.add(workflow)
    await session.flush()

    logger.info("Created workflow %s: %s", workflow.id, title)
    await publish(EventType.WORKFLOW_CREATED, workflow_id=workflow.id, message=title)
    return workflow


async def set_current_session(
    session: AsyncSession, workflow_id: str, session_id: str | None
) -> Workflow:
    workflow = await _require_workflow(session, workflow_id)
    workflow.current_session_id = session_id
    await session.flush()
    return workflow


async def set_base_branch(session: AsyncSession, workflow_id: str, base_branch: str) -> Workflow:
    workflow = await _require_workflow(session, workflow_id)
    workflow.base_branch = base_branch
    await session.flush()
    return workflow


async def set_skipped_stages(
    session: AsyncSession, workflow_id: str, stages: Iterable[str]
) -> Workflow:
    """Replace the skipped-stage set, kept deduplicated and in stage order."""
    workflow = await _require_workflow(session, workflow_id)
    workflow.skipped_stages = _normalize_skipped(stages)
    await session.flush()
    return workflow


async def record_workflow_error(
    session: AsyncSession,
    workflow_id: str,
    stage: WorkflowStatus | str,
    message: str,
    error_type: str = "workflow_error",
) -> WorkflowError:
    error = WorkflowError(
        id=ids.workflow_error_id(),
        workflow_id=workflow_id,
        stage=WorkflowStatus(stage).value,
        error_type=error_type,
        error_message=message,
    )
    session.add(error)
    await session.flush()

    logger.warning("Workflow %s failed in %s: %s", workflow_id, error.stage, message)
    await publish(
        EventType.WORKFLOW_ERROR,
        workflow_id=workflow_id,
        entity_id=error.id,
        message=message,
        stage=error.stage,
        error_type=error_type,
    )
    return error


# =============================================================================
# Stage transitions and the approval gate
# =============================================================================


async def _apply_transition(
    session: AsyncSession,
    workflow: Workflow,
    new_stage: WorkflowStatus,
    new_session_id: str | None,
    transition_type: TransitionType,
) -> str:
    previous = workflow.status
    workflow.status = new_stage.value
    workflow.current_session_id = new_session_id
    workflow.awaiting_approval = False
    workflow.pending_artifact_type = None
    session.add(
        StageTransition(
            id=ids.stage_transition_id(),
            workflow_id=workflow.id,
            previous_stage=previous,
            new_stage=new_stage.value,
            transition_type=transition_type.value,
        )
    )
    await session.flush()
    logger.info("Workflow %s: %s -> %s (%s)", workflow.id, previous, new_stage.value, transition_type.value)
    return previous


async def transition_stage(
    session: AsyncSession,
    workflow_id: str,
    new_stage: WorkflowStatus | str,
    new_session_id: str | None = None,
) -> Workflow:
    """Move to ``new_stage``; always clears any pending approval.

    Callers choose the stage. Ordering is not validated here.
    """
    stage = WorkflowStatus(new_stage)
    workflow = await _require_workflow(session, workflow_id)
    async with atomic(session):
        previous = await _apply_transition(
            session, workflow, stage, new_session_id, TransitionType.ADVANCE
        )
    await publish(
        EventType.WORKFLOW_STAGE_CHANGED,
        workflow_id=workflow_id,
        previous_stage=previous,
        new_stage=stage.value,
        session_id=new_session_id,
    )
    return workflow


async def set_awaiting_approval(
    session: AsyncSession, workflow_id: str, artifact_type: ArtifactType | str
) -> Workflow:
    kind = ArtifactType(artifact_type)
    workflow = await _require_workflow(session, workflow_id)
    workflow.awaiting_approval = True
    workflow.pending_artifact_type = kind.value
    await session.flush()
    await publish(EventType.APPROVAL_REQUESTED, workflow_id=workflow_id, artifact_type=kind.value)
    return workflow


async def clear_awaiting_approval(session: AsyncSession, workflow_id: str) -> Workflow:
    workflow = await _require_workflow(session, workflow_id)
    workflow.awaiting_approval = False
    workflow.pending_artifact_type = None
    await session.flush()
    await publish(EventType.APPROVAL_CLEARED, workflow_id=workflow_id)
    return workflow


async def _pending(session: AsyncSession, workflow: Workflow, action: str):
    if not workflow.awaiting_approval or not workflow.pending_artifact_type:
        raise InvalidTransitionError(
            f"Cannot {action} workflow '{workflow.id}': nothing is awaiting approval"
        )
    artifact = await artifacts.get_pending_artifact(
        session, workflow.id, workflow.pending_artifact_type
    )
    if artifact is None:
        raise InvalidTransitionError(
            f"Cannot {action} workflow '{workflow.id}': no {workflow.pending_artifact_type} found"
        )
    return ArtifactType(workflow.pending_artifact_type), artifact


async def approve_pending_artifact(
    session: AsyncSession, workflow_id: str, next_session_id: str | None = None
) -> Workflow:
    """Approve the gated artifact and advance to the next unskipped stage.

    Approving a plan materializes its pulses in the same atomic block, so a
    failure leaves neither the approval nor any pulses behind.
    """
    workflow = await _require_workflow(session, workflow_id)
    kind, artifact = await _pending(session, workflow, "approve")
    target = next_stage(workflow.status, workflow.skipped_stages or [])
    if target is None:
        raise InvalidTransitionError(
            f"Cannot approve workflow '{workflow_id}': no stage after '{workflow.status}'"
        )

    async with atomic(session):
        await artifacts.set_artifact_status(session, kind, artifact.id, ArtifactStatus.APPROVED)
        if isinstance(artifact, Plan):
            await pulses.create_pulses_from_plan(session, workflow_id, artifact.pulses)
        previous = await _apply_transition(
            session, workflow, target, next_session_id, TransitionType.ADVANCE
        )

    await publish(
        EventType.ARTIFACT_APPROVED,
        workflow_id=workflow_id,
        entity_id=artifact.id,
        artifact_type=kind.value,
        previous_stage=previous,
        new_stage=target.value,
    )
    return workflow


async def deny_pending_artifact(session: AsyncSession, workflow_id: str) -> Workflow:
    """Deny the gated artifact; the workflow stays in its stage for another attempt."""
    workflow = await _require_workflow(session, workflow_id)
    kind, artifact = await _pending(session, workflow, "deny")
    async with atomic(session):
        await artifacts.set_artifact_status(session, kind, artifact.id, ArtifactStatus.DENIED)
        workflow.awaiting_approval = False
        workflow.pending_artifact_type = None
        await session.flush()

    await publish(
        EventType.ARTIFACT_DENIED,
        workflow_id=workflow_id,
        entity_id=artifact.id,
        artifact_type=kind.value,
    )
    return workflow


async def archive_workflow(session: AsyncSession, workflow_id: str) -> Workflow:
    """Soft-delete. There is no unarchive."""
    workflow = await _require_workflow(session, workflow_id)
    if workflow.archived:
        return workflow
    workflow.archived = True
    await session.flush()
    logger.info("Archived workflow %s", workflow_id)
    await publish(EventType.WORKFLOW_ARCHIVED, workflow_id=workflow_id)
    return workflow


# =============================================================================
# Rewind and teardown
# =============================================================================


async def _discard_from(session: AsyncSession, workflow_id: str, target: WorkflowStatus) -> None:
    """Delete what the stages from ``target`` onward produced."""
    start = stage_index(target)
    later = [stage for stage in STAGE_ORDER[start:] if stage in STAGE_ROLES]
    roles = [role.value for stage in later for role in STAGE_ROLES[stage]]
    await sessions.delete_by_context_and_roles(session, WorkflowContext(workflow_id), roles)

    if start <= stage_index(WorkflowStatus.RESEARCHING):
        await artifacts.delete_research_cards(session, workflow_id)
    if start <= stage_index(WorkflowStatus.PLANNING):
        await artifacts.delete_plans(session, workflow_id)
    if start <= stage_index(WorkflowStatus.IN_PROGRESS):
        await pulses.delete_pulses_for_workflow(session, workflow_id)
        await pulses.delete_preflight_setup(session, workflow_id)
    await artifacts.delete_review_cards(session, workflow_id)


async def rewind_workflow(
    session: AsyncSession, workflow_id: str, target: WorkflowStatus | str
) -> Workflow:
    """Send a workflow back to an earlier stage, discarding later work.

    Rewinding to in_progress re-materializes pulses from the approved plan so
    execution restarts from the first pulse. Baselines and cost records stay.
    """
    target = WorkflowStatus(target)
    if target not in REWIND_TARGETS:
        raise InvalidTransitionError(f"Cannot rewind to '{target.value}'")
    workflow = await _require_workflow(session, workflow_id)
    if stage_index(workflow.status) <= stage_index(target):
        raise InvalidTransitionError(
            f"Cannot rewind workflow '{workflow_id}' from '{workflow.status}' to '{target.value}'"
        )

    async with atomic(session):
        await _discard_from(session, workflow_id, target)
        if target is WorkflowStatus.IN_PROGRESS:
            plan = await artifacts.get_latest_plan(session, workflow_id)
            if plan is not None and plan.status == ArtifactStatus.APPROVED.value:
                await pulses.create_pulses_from_plan(session, workflow_id, plan.pulses)
        previous = await _apply_transition(session, workflow, target, None, TransitionType.REWIND)

    await publish(
        EventType.WORKFLOW_REWOUND,
        workflow_id=workflow_id,
        previous_stage=previous,
        new_stage=target.value,
    )
    return workflow


async def delete_workflow(session: AsyncSession, workflow_id: str) -> bool:
    """Remove a workflow and everything it owns, all or nothing.

    Stage transitions and workflow errors are analytics and are kept.
    """
    if await get_workflow(session, workflow_id) is None:
        return False

    async with atomic(session):
        subtask_ids = await subtasks.get_subtask_ids_for_workflow(session, workflow_id)
        await sessions.delete_sessions_for_context(session, WorkflowContext(workflow_id))
        await session.execute(delete(Subtask).where(Subtask.workflow_id == workflow_id))
        await costs.delete_workflow_costs(session, workflow_id, subtask_ids)

        await artifacts.delete_review_cards(session, workflow_id)
        await artifacts.delete_plans(session, workflow_id)
        await artifacts.delete_research_cards(session, workflow_id)
        await artifacts.delete_scope_cards(session, workflow_id)

        await pulses.delete_pulses_for_workflow(session, workflow_id)
        await pulses.delete_preflight_setup(session, workflow_id)
        await baselines.delete_baselines(session, workflow_id)
        await baselines.delete_command_baselines(session, workflow_id)

        await session.execute(delete(Workflow).where(Workflow.id == workflow_id))

    logger.info("Deleted workflow %s", workflow_id)
    await publish(EventType.WORKFLOW_DELETED, workflow_id=workflow_id)
    return True
