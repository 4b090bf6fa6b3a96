"""Subtasks: work a coordinator session delegates to subagent sessions.

Delegation is one level deep. When the last sibling reaches a terminal
state exactly one caller is told to resume the coordinator.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import ids
from .context import ContextType
from .db import atomic
from .errors import InvalidTransitionError
from .events import EventType, publish
from .json_fields import JSON_ANY, JSON_OBJECT, validate_field
from .models import AgentSession, Subtask, utcnow
from .states import SubtaskStatus

logger = logging.getLogger(__name__)

_TERMINAL = (SubtaskStatus.COMPLETED.value, SubtaskStatus.FAILED.value)
_DEFAULT_LABEL = "Subtask"
_UNKNOWN_ERROR = "Unknown error"


@dataclass
class SubtaskCompletion:
    all_done: bool
    # True for exactly one caller per parent: the one whose transition finished the set.
    should_resume_coordinator: bool
    parent_session_id: str


@dataclass
class SubtaskStatusSummary:
    all_done: bool
    completed: list[Subtask] = field(default_factory=list)
    failed: list[Subtask] = field(default_factory=list)
    pending: list[Subtask] = field(default_factory=list)


@dataclass
class MergedSubtaskResults:
    completed_findings: list[dict[str, Any]] = field(default_factory=list)
    failed_tasks: list[dict[str, Any]] = field(default_factory=list)


def subtask_label(subtask: Subtask) -> str:
    label = (subtask.task_definition or {}).get("label")
    return label if isinstance(label, str) and label else _DEFAULT_LABEL


async def _publish_update(subtask: Subtask, event_type: EventType, **data: Any) -> None:
    await publish(
        event_type,
        workflow_id=subtask.workflow_id,
        entity_id=subtask.id,
        parent_session_id=subtask.parent_session_id,
        label=subtask_label(subtask),
        status=subtask.status,
        **data,
    )


# =============================================================================
# Queries
# =============================================================================


async def get_subtask(session: AsyncSession, subtask_id: str) -> Subtask | None:
    return await session.get(Subtask, subtask_id)


async def get_subtasks_for_parent(session: AsyncSession, parent_session_id: str) -> list[Subtask]:
    result = await session.execute(
        select(Subtask)
        .where(Subtask.parent_session_id == parent_session_id)
        .order_by(Subtask.created_at, Subtask.id)
    )
    return list(result.scalars().all())


async def get_subtasks_for_workflow(session: AsyncSession, workflow_id: str) -> list[Subtask]:
    result = await session.execute(
        select(Subtask).where(Subtask.workflow_id == workflow_id).order_by(Subtask.created_at, Subtask.id)
    )
    return list(result.scalars().all())


async def get_subtask_ids_for_workflow(session: AsyncSession, workflow_id: str) -> list[str]:
    """Ids used to scope cost queries to a workflow's delegated work."""
    result = await session.execute(select(Subtask.id).where(Subtask.workflow_id == workflow_id))
    return list(result.scalars().all())


# =============================================================================
# Lifecycle
# =============================================================================


async def create_subtask(
    session: AsyncSession,
    parent_session_id: str,
    workflow_id: str,
    task_definition: dict[str, Any],
    *,
    subtask_id: str | None = None,
) -> Subtask:
    task_definition = validate_field(JSON_OBJECT, "task_definition", task_definition)
    parent = await session.get(AgentSession, parent_session_id)
    if parent is None:
        raise InvalidTransitionError(f"Parent session '{parent_session_id}' not found")
    if parent.context_type == ContextType.SUBTASK.value:
        raise InvalidTransitionError(
            f"Session '{parent_session_id}' runs a subtask and cannot delegate further"
        )

    subtask = Subtask(
        id=subtask_id or ids.subtask_id(),
        parent_session_id=parent_session_id,
        workflow_id=workflow_id,
        task_definition=task_definition,
        findings=None,
        status=SubtaskStatus.PENDING.value,
    )
    session.add(subtask)
    await session.flush()
    await _publish_update(subtask, EventType.SUBTASK_CREATED)
    return subtask


async def start_subtask(session: AsyncSession, subtask_id: str) -> Subtask:
    subtask = await get_subtask(session, subtask_id)
    if subtask is None:
        raise InvalidTransitionError(f"Subtask '{subtask_id}' not found")
    if subtask.status != SubtaskStatus.PENDING.value:
        raise InvalidTransitionError(
            f"Cannot start subtask '{subtask_id}': status is '{subtask.status}'"
        )
    subtask.status = SubtaskStatus.RUNNING.value
    await session.flush()
    await _publish_update(subtask, EventType.SUBTASK_STARTED)
    return subtask


async def _finish_and_check_done(
    session: AsyncSession, subtask_id: str, status: SubtaskStatus, findings: Any
) -> SubtaskCompletion:
    async with atomic(session):
        result = await session.execute(
            update(Subtask)
            .where(Subtask.id == subtask_id, Subtask.status.not_in(_TERMINAL))
            .values(status=status.value, findings=findings, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        transitioned = result.rowcount == 1

        subtask = await session.get(Subtask, subtask_id, populate_existing=True)
        if subtask is None:
            raise InvalidTransitionError(f"Subtask '{subtask_id}' not found")

        remaining = await session.execute(
            select(func.count())
            .select_from(Subtask)
            .where(
                Subtask.parent_session_id == subtask.parent_session_id,
                Subtask.status.not_in(_TERMINAL),
            )
        )
        all_done = remaining.scalar_one() == 0

    if transitioned:
        await _publish_update(subtask, EventType.SUBTASK_FINISHED, all_done=all_done)
    else:
        logger.warning("Subtask %s was already %s; ignoring %s", subtask_id, subtask.status, status)

    return SubtaskCompletion(
        all_done=all_done,
        should_resume_coordinator=all_done and transitioned,
        parent_session_id=subtask.parent_session_id,
    )


async def complete_subtask_and_check_done(
    session: AsyncSession, subtask_id: str, findings: Any
) -> SubtaskCompletion:
    """Mark a subtask completed and report whether its siblings are all done."""
    findings = validate_field(JSON_ANY, "findings", findings)
    return await _finish_and_check_done(session, subtask_id, SubtaskStatus.COMPLETED, findings)


async def fail_subtask_and_check_done(
    session: AsyncSession, subtask_id: str, error: str | None = None
) -> SubtaskCompletion:
    """Mark a subtask failed; a coordinator whose subtasks all fail still resumes."""
    findings = {"error": error or _UNKNOWN_ERROR}
    return await _finish_and_check_done(session, subtask_id, SubtaskStatus.FAILED, findings)


# =============================================================================
# Results
# =============================================================================


async def check_all_subtasks_done(
    session: AsyncSession, parent_session_id: str
) -> SubtaskStatusSummary:
    subtasks = await get_subtasks_for_parent(session, parent_session_id)
    summary = SubtaskStatusSummary(all_done=True)
    for subtask in subtasks:
        if subtask.status == SubtaskStatus.COMPLETED.value:
            summary.completed.append(subtask)
        elif subtask.status == SubtaskStatus.FAILED.value:
            summary.failed.append(subtask)
        else:
            summary.pending.append(subtask)
    summary.all_done = not summary.pending
    return summary


async def get_merged_subtask_results(
    session: AsyncSession, parent_session_id: str
) -> MergedSubtaskResults:
    """Collect findings and failures to hand back to the coordinator."""
    merged = MergedSubtaskResults()
    for subtask in await get_subtasks_for_parent(session, parent_session_id):
        label = subtask_label(subtask)
        if subtask.status == SubtaskStatus.COMPLETED.value and subtask.findings is not None:
            merged.completed_findings.append(
                {"subtask_id": subtask.id, "label": label, "findings": subtask.findings}
            )
        elif subtask.status == SubtaskStatus.FAILED.value:
            error = _UNKNOWN_ERROR
            if isinstance(subtask.findings, dict):
                error = subtask.findings.get("error") or _UNKNOWN_ERROR
            merged.failed_tasks.append({"subtask_id": subtask.id, "label": label, "error": error})
    return merged
