"""Pulse lifecycle and the preflight setup that precedes execution.

A pulse moves ``proposed -> running -> succeeded | failed | stopped`` and
never leaves a terminal state. Every transition is a conditional UPDATE on
the expected prior status, so a stale caller gets an
:class:`InvalidTransitionError` instead of overwriting newer state.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any, NoReturn

from sqlalchemy import delete, exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from . import ids
from .db import atomic
from .errors import InvalidTransitionError
from .events import EventType, publish
from .json_fields import VERIFICATION_COMMANDS, PulseDefinition, validate_field
from .models import PreflightSetup, Pulse, utcnow
from .states import PreflightStatus, PulseStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Queries
# =============================================================================


async def get_pulse(session: AsyncSession, pulse_id: str) -> Pulse | None:
    return await session.get(Pulse, pulse_id)


async def get_pulses_for_workflow(session: AsyncSession, workflow_id: str) -> list[Pulse]:
    """All pulses for a workflow in creation (plan) order."""
    result = await session.execute(
        select(Pulse).where(Pulse.workflow_id == workflow_id).order_by(Pulse.sequence)
    )
    return list(result.scalars().all())


async def get_next_proposed_pulse(session: AsyncSession, workflow_id: str) -> Pulse | None:
    """Oldest pulse still waiting to run."""
    result = await session.execute(
        select(Pulse)
        .where(Pulse.workflow_id == workflow_id, Pulse.status == PulseStatus.PROPOSED.value)
        .order_by(Pulse.sequence)
        .limit(1)
    )
    return result.scalars().first()


async def get_running_pulse(session: AsyncSession, workflow_id: str) -> Pulse | None:
    result = await session.execute(
        select(Pulse)
        .where(Pulse.workflow_id == workflow_id, Pulse.status == PulseStatus.RUNNING.value)
        .limit(1)
    )
    return result.scalars().first()


# =============================================================================
# Creation
# =============================================================================


async def _next_sequence(session: AsyncSession, workflow_id: str) -> int:
    result = await session.execute(
        select(func.coalesce(func.max(Pulse.sequence), 0)).where(Pulse.workflow_id == workflow_id)
    )
    return int(result.scalar_one()) + 1


async def _insert_pulse(
    session: AsyncSession,
    workflow_id: str,
    sequence: int,
    description: str | None,
    planned_pulse_id: str | None,
) -> Pulse:
    pulse = Pulse(
        id=ids.pulse_id(),
        workflow_id=workflow_id,
        sequence=sequence,
        planned_pulse_id=planned_pulse_id,
        description=description,
        status=PulseStatus.PROPOSED.value,
        has_unresolved_issues=False,
        is_recovery_checkpoint=False,
        rejection_count=0,
    )
    session.add(pulse)
    await session.flush()
    return pulse


async def create_pulse(
    session: AsyncSession,
    workflow_id: str,
    description: str | None = None,
    *,
    planned_pulse_id: str | None = None,
) -> Pulse:
    sequence = await _next_sequence(session, workflow_id)
    pulse = await _insert_pulse(session, workflow_id, sequence, description, planned_pulse_id)
    logger.info("Created pulse %s for workflow %s", pulse.id, workflow_id)
    await publish(EventType.PULSES_CREATED, workflow_id=workflow_id, entity_id=pulse.id)
    return pulse


def _plan_entry(entry: PulseDefinition | Mapping[str, Any]) -> tuple[str, str | None]:
    if isinstance(entry, PulseDefinition):
        return entry.id, entry.description
    return str(entry["id"]), entry.get("description")


async def create_pulses_from_plan(
    session: AsyncSession,
    workflow_id: str,
    pulse_defs: Iterable[PulseDefinition | Mapping[str, Any]],
) -> list[Pulse]:
    """Materialize plan-time pulse definitions, all or nothing, in plan order."""
    entries = [_plan_entry(entry) for entry in pulse_defs]
    pulses: list[Pulse] = []
    async with atomic(session):
        sequence = await _next_sequence(session, workflow_id)
        for offset, (planned_id, description) in enumerate(entries):
            pulses.append(
                await _insert_pulse(
                    session, workflow_id, sequence + offset, description, planned_id
                )
            )
    logger.info("Materialized %d planned pulses for workflow %s", len(pulses), workflow_id)
    await publish(
        EventType.PULSES_CREATED,
        workflow_id=workflow_id,
        pulse_ids=[p.id for p in pulses],
    )
    return pulses


# =============================================================================
# Transitions
# =============================================================================


async def _compare_and_set(
    session: AsyncSession,
    pulse_id: str,
    expected: PulseStatus,
    values: dict[str, Any],
    *conditions: Any,
) -> bool:
    result = await session.execute(
        update(Pulse)
        .where(Pulse.id == pulse_id, Pulse.status == expected.value, *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _reload(session: AsyncSession, pulse_id: str) -> Pulse:
    pulse = await session.get(Pulse, pulse_id, populate_existing=True)
    if pulse is None:
        raise InvalidTransitionError(f"Pulse '{pulse_id}' not found")
    return pulse


async def _rejected(
    session: AsyncSession, pulse_id: str, expected: PulseStatus, action: str
) -> NoReturn:
    pulse = await _reload(session, pulse_id)
    raise InvalidTransitionError(
        f"Cannot {action} pulse '{pulse_id}': status is '{pulse.status}', expected '{expected.value}'"
    )


async def start_pulse(
    session: AsyncSession, pulse_id: str, branch: str, worktree_path: str
) -> Pulse:
    """proposed -> running, refused while another pulse of the workflow is running."""
    pulse = await _reload(session, pulse_id)
    other = aliased(Pulse)
    no_running_sibling = ~exists(
        select(other.id).where(
            other.workflow_id == pulse.workflow_id,
            other.status == PulseStatus.RUNNING.value,
        )
    )
    started = await _compare_and_set(
        session,
        pulse_id,
        PulseStatus.PROPOSED,
        {
            "status": PulseStatus.RUNNING.value,
            "pulse_branch": branch,
            "worktree_path": worktree_path,
            "started_at": utcnow(),
        },
        no_running_sibling,
    )
    if not started:
        pulse = await _reload(session, pulse_id)
        if pulse.status == PulseStatus.PROPOSED.value:
            running = await get_running_pulse(session, pulse.workflow_id)
            raise InvalidTransitionError(
                f"Cannot start pulse '{pulse_id}': pulse '{running.id if running else '?'}' "
                f"is already running for workflow '{pulse.workflow_id}'"
            )
        await _rejected(session, pulse_id, PulseStatus.PROPOSED, "start")

    pulse = await _reload(session, pulse_id)
    logger.info("Started pulse %s on branch %s", pulse_id, branch)
    await publish(EventType.PULSE_STARTED, workflow_id=pulse.workflow_id, entity_id=pulse_id)
    return pulse


async def complete_pulse(
    session: AsyncSession, pulse_id: str, commit_sha: str, has_unresolved_issues: bool
) -> Pulse:
    values = {
        "status": PulseStatus.SUCCEEDED.value,
        "checkpoint_commit_sha": commit_sha,
        "has_unresolved_issues": has_unresolved_issues,
        "ended_at": utcnow(),
    }
    if not await _compare_and_set(session, pulse_id, PulseStatus.RUNNING, values):
        await _rejected(session, pulse_id, PulseStatus.RUNNING, "complete")

    pulse = await _reload(session, pulse_id)
    logger.info("Pulse %s succeeded at %s", pulse_id, commit_sha)
    await publish(EventType.PULSE_SUCCEEDED, workflow_id=pulse.workflow_id, entity_id=pulse_id)
    return pulse


def _end_values(status: PulseStatus, recovery_commit_sha: str | None) -> dict[str, Any]:
    return {
        "status": status.value,
        "checkpoint_commit_sha": recovery_commit_sha,
        "is_recovery_checkpoint": recovery_commit_sha is not None,
        "ended_at": utcnow(),
    }


async def fail_pulse(
    session: AsyncSession,
    pulse_id: str,
    reason: str,
    recovery_commit_sha: str | None = None,
) -> Pulse:
    """running -> failed, keeping a recovery checkpoint when one is supplied."""
    values = _end_values(PulseStatus.FAILED, recovery_commit_sha)
    values["failure_reason"] = reason
    if not await _compare_and_set(session, pulse_id, PulseStatus.RUNNING, values):
        await _rejected(session, pulse_id, PulseStatus.RUNNING, "fail")

    pulse = await _reload(session, pulse_id)
    logger.warning("Pulse %s failed: %s", pulse_id, reason)
    await publish(
        EventType.PULSE_FAILED,
        workflow_id=pulse.workflow_id,
        entity_id=pulse_id,
        message=reason,
        recovery_commit_sha=recovery_commit_sha,
    )
    return pulse


async def stop_pulse(
    session: AsyncSession, pulse_id: str, recovery_commit_sha: str | None = None
) -> Pulse:
    """running -> stopped. Records the stop only; nothing external is terminated."""
    values = _end_values(PulseStatus.STOPPED, recovery_commit_sha)
    if not await _compare_and_set(session, pulse_id, PulseStatus.RUNNING, values):
        await _rejected(session, pulse_id, PulseStatus.RUNNING, "stop")

    pulse = await _reload(session, pulse_id)
    logger.info("Pulse %s stopped", pulse_id)
    await publish(
        EventType.PULSE_STOPPED,
        workflow_id=pulse.workflow_id,
        entity_id=pulse_id,
        recovery_commit_sha=recovery_commit_sha,
    )
    return pulse


async def increment_rejection_count(session: AsyncSession, pulse_id: str) -> int:
    """Bump the rejection counter in SQL and return the new value."""
    result = await session.execute(
        update(Pulse)
        .where(Pulse.id == pulse_id)
        .values(rejection_count=Pulse.rejection_count + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidTransitionError(f"Pulse '{pulse_id}' not found")

    pulse = await _reload(session, pulse_id)
    await publish(
        EventType.PULSE_REJECTED,
        workflow_id=pulse.workflow_id,
        entity_id=pulse_id,
        rejection_count=pulse.rejection_count,
    )
    return pulse.rejection_count


async def update_pulse_description(session: AsyncSession, pulse_id: str, description: str) -> Pulse:
    pulse = await get_pulse(session, pulse_id)
    if pulse is None:
        raise InvalidTransitionError(f"Pulse '{pulse_id}' not found")
    pulse.description = description
    await session.flush()
    return pulse


async def delete_pulses_for_workflow(session: AsyncSession, workflow_id: str) -> int:
    result = await session.execute(delete(Pulse).where(Pulse.workflow_id == workflow_id))
    return result.rowcount


# =============================================================================
# Preflight setup
# =============================================================================


async def get_preflight_setup(session: AsyncSession, workflow_id: str) -> PreflightSetup | None:
    result = await session.execute(
        select(PreflightSetup).where(PreflightSetup.workflow_id == workflow_id)
    )
    return result.scalar_one_or_none()


async def create_preflight_setup(
    session: AsyncSession, workflow_id: str, session_id: str | None = None
) -> PreflightSetup:
    """Start preflight for a workflow, resetting a previous attempt if there is one."""
    setup = await get_preflight_setup(session, workflow_id)
    if setup is None:
        setup = PreflightSetup(id=ids.preflight_id(), workflow_id=workflow_id)
        session.add(setup)
    setup.session_id = session_id
    setup.status = PreflightStatus.RUNNING.value
    setup.progress_message = None
    setup.error_message = None
    setup.verification_commands = None
    setup.completed_at = None
    await session.flush()

    await publish(EventType.PREFLIGHT_STARTED, workflow_id=workflow_id, entity_id=setup.id)
    return setup


async def _running_setup(session: AsyncSession, workflow_id: str, action: str) -> PreflightSetup:
    setup = await get_preflight_setup(session, workflow_id)
    if setup is None:
        raise InvalidTransitionError(f"No preflight setup for workflow '{workflow_id}'")
    if setup.status != PreflightStatus.RUNNING.value:
        raise InvalidTransitionError(
            f"Cannot {action} preflight for workflow '{workflow_id}': status is '{setup.status}'"
        )
    return setup


async def update_preflight_progress(
    session: AsyncSession, workflow_id: str, message: str
) -> PreflightSetup:
    setup = await _running_setup(session, workflow_id, "update")
    setup.progress_message = message
    await session.flush()
    await publish(EventType.PREFLIGHT_PROGRESS, workflow_id=workflow_id, message=message)
    return setup


async def complete_preflight_setup(
    session: AsyncSession,
    workflow_id: str,
    verification_commands: list[Any],
) -> PreflightSetup:
    commands = validate_field(VERIFICATION_COMMANDS, "verification_commands", verification_commands)
    setup = await _running_setup(session, workflow_id, "complete")
    setup.status = PreflightStatus.COMPLETED.value
    setup.verification_commands = commands
    setup.completed_at = utcnow()
    await session.flush()

    logger.info("Preflight completed for workflow %s (%d commands)", workflow_id, len(commands))
    await publish(EventType.PREFLIGHT_COMPLETED, workflow_id=workflow_id, entity_id=setup.id)
    return setup


async def fail_preflight_setup(
    session: AsyncSession, workflow_id: str, error_message: str
) -> PreflightSetup:
    setup = await _running_setup(session, workflow_id, "fail")
    setup.status = PreflightStatus.FAILED.value
    setup.error_message = error_message
    setup.completed_at = utcnow()
    await session.flush()

    logger.warning("Preflight failed for workflow %s: %s", workflow_id, error_message)
    await publish(
        EventType.PREFLIGHT_FAILED,
        workflow_id=workflow_id,
        entity_id=setup.id,
        message=error_message,
    )
    return setup


async def delete_preflight_setup(session: AsyncSession, workflow_id: str) -> int:
    result = await session.execute(
        delete(PreflightSetup).where(PreflightSetup.workflow_id == workflow_id)
    )
    return result.rowcount
