import pytest

from pulseflow import artifacts, pulses, sessions, workflows
from pulseflow.context import WorkflowContext
from pulseflow.errors import InvalidTransitionError, JsonFieldError
from pulseflow.events import EventType
from pulseflow.states import ArtifactStatus, ArtifactType, PulseStatus, TransitionType, WorkflowStatus

PLAN_PULSES = [
    {"id": "p1", "title": "Schema", "description": "Add the tables"},
    {"id": "p2", "title": "API", "description": "Wire the endpoints"},
    {"id": "p3", "title": "Tests", "description": "Cover the endpoints"},
]


async def _scoped(session):
    workflow = await workflows.create_workflow(session, "Add export", "CSV export")
    await artifacts.create_scope_card(
        session,
        workflow.id,
        title="Export",
        description="CSV export of reports",
        in_scope=["csv"],
        out_of_scope=["xlsx"],
    )
    await workflows.set_awaiting_approval(session, workflow.id, ArtifactType.SCOPE_CARD)
    return workflow


async def _at_planning_gate(session, skipped=()):
    workflow = await workflows.create_workflow(
        session, "Add export", status=WorkflowStatus.PLANNING, skipped_stages=skipped
    )
    await artifacts.create_plan(
        session, workflow.id, approach_summary="Three steps", pulses=PLAN_PULSES
    )
    await workflows.set_awaiting_approval(session, workflow.id, ArtifactType.PLAN)
    return workflow


async def test_create_workflow_defaults(session, events) -> None:
    workflow = await workflows.create_workflow(session, "Fix login")

    assert workflow.id.startswith("workflow_")
    assert workflow.status == WorkflowStatus.SCOPING
    assert workflow.priority == "medium"
    assert workflow.awaiting_approval is False
    assert workflow.pending_artifact_type is None
    assert workflow.skipped_stages == []
    assert [e.type for e in events] == [EventType.WORKFLOW_CREATED]


async def test_skipped_stages_are_deduplicated_in_stage_order(session) -> None:
    workflow = await workflows.create_workflow(
        session, "Quick fix", skipped_stages=["planning", "researching", "planning"]
    )
    assert workflow.skipped_stages == [WorkflowStatus.RESEARCHING, WorkflowStatus.PLANNING]


async def test_non_skippable_stage_is_rejected(session) -> None:
    with pytest.raises(InvalidTransitionError):
        await workflows.create_workflow(session, "Quick fix", skipped_stages=["review"])


async def test_unknown_stage_name_is_a_schema_error(session) -> None:
    with pytest.raises(JsonFieldError):
        await workflows.create_workflow(session, "Quick fix", skipped_stages=["deploying"])


async def test_gate_is_set_with_artifact_type(session) -> None:
    workflow = await _scoped(session)
    assert workflow.awaiting_approval is True
    assert workflow.pending_artifact_type == ArtifactType.SCOPE_CARD


async def test_transition_clears_pending_approval(session) -> None:
    workflow = await _scoped(session)

    await workflows.transition_stage(session, workflow.id, WorkflowStatus.RESEARCHING, "session_x")

    assert workflow.status == WorkflowStatus.RESEARCHING
    assert workflow.awaiting_approval is False
    assert workflow.pending_artifact_type is None
    assert workflow.current_session_id == "session_x"
    history = await workflows.get_stage_transitions(session, workflow.id)
    assert [(t.previous_stage, t.new_stage) for t in history] == [("scoping", "researching")]


async def test_approve_scope_advances_and_approves_card(session, events) -> None:
    workflow = await _scoped(session)

    await workflows.approve_pending_artifact(session, workflow.id)

    card = await artifacts.get_latest_scope_card(session, workflow.id)
    assert card.status == ArtifactStatus.APPROVED
    assert workflow.status == WorkflowStatus.RESEARCHING
    assert workflow.awaiting_approval is False
    assert events[-1].type == EventType.ARTIFACT_APPROVED
    assert events[-1].data["new_stage"] == "researching"


async def test_approve_skips_quick_path_stages(session) -> None:
    workflow = await workflows.create_workflow(
        session, "Typo", skipped_stages=["researching", "planning"]
    )
    await artifacts.create_scope_card(
        session,
        workflow.id,
        title="Typo",
        description="Fix a typo",
        in_scope=["docs"],
        out_of_scope=[],
        recommended_path="quick",
    )
    await workflows.set_awaiting_approval(session, workflow.id, ArtifactType.SCOPE_CARD)

    await workflows.approve_pending_artifact(session, workflow.id)

    assert workflow.status == WorkflowStatus.IN_PROGRESS
    assert workflows.is_stage_satisfied(workflow, WorkflowStatus.PLANNING)


async def test_approve_plan_materializes_pulses(session) -> None:
    workflow = await _at_planning_gate(session)

    await workflows.approve_pending_artifact(session, workflow.id)

    rows = await pulses.get_pulses_for_workflow(session, workflow.id)
    assert [p.planned_pulse_id for p in rows] == ["p1", "p2", "p3"]
    assert all(p.status == PulseStatus.PROPOSED for p in rows)
    assert workflow.status == WorkflowStatus.IN_PROGRESS


async def test_failed_approval_leaves_no_pulses_or_events(session, events, monkeypatch) -> None:
    workflow = await _at_planning_gate(session)
    events.clear()

    async def broken_transition(*args, **kwargs):
        raise RuntimeError("write failed")

    monkeypatch.setattr(workflows, "_apply_transition", broken_transition)

    with pytest.raises(RuntimeError):
        await workflows.approve_pending_artifact(session, workflow.id)

    assert await pulses.get_pulses_for_workflow(session, workflow.id) == []
    assert (await artifacts.get_latest_plan(session, workflow.id)).status == ArtifactStatus.PENDING
    assert events == []



async def test_approve_without_gate_is_rejected(session) -> None:
    workflow = await workflows.create_workflow(session, "Nothing yet")
    with pytest.raises(InvalidTransitionError):
        await workflows.approve_pending_artifact(session, workflow.id)


async def test_deny_keeps_stage_and_clears_gate(session) -> None:
    workflow = await _scoped(session)

    await workflows.deny_pending_artifact(session, workflow.id)

    card = await artifacts.get_latest_scope_card(session, workflow.id)
    assert card.status == ArtifactStatus.DENIED
    assert workflow.status == WorkflowStatus.SCOPING
    assert workflow.awaiting_approval is False


async def test_rewind_to_in_progress_rebuilds_pulses(session) -> None:
    workflow = await _at_planning_gate(session)
    await workflows.approve_pending_artifact(session, workflow.id)
    first = await pulses.get_next_proposed_pulse(session, workflow.id)
    await pulses.start_pulse(session, first.id, "pulse/1", "/tmp/wt")
    await pulses.complete_pulse(session, first.id, "abc123", False)
    await sessions.create_session(session, WorkflowContext(workflow.id), "execution")
    await workflows.transition_stage(session, workflow.id, WorkflowStatus.REVIEW)
    await artifacts.create_review_card(session, workflow.id)

    await workflows.rewind_workflow(session, workflow.id, WorkflowStatus.IN_PROGRESS)

    rows = await pulses.get_pulses_for_workflow(session, workflow.id)
    assert len(rows) == 3
    assert all(p.status == PulseStatus.PROPOSED for p in rows)
    assert await artifacts.get_all_review_cards(session, workflow.id) == []
    assert await sessions.get_sessions_by_context(session, WorkflowContext(workflow.id)) == []
    assert (await artifacts.get_latest_plan(session, workflow.id)).status == ArtifactStatus.APPROVED
    history = await workflows.get_stage_transitions(session, workflow.id)
    assert history[-1].transition_type == TransitionType.REWIND


async def test_rewind_to_planning_discards_plan(session) -> None:
    workflow = await _at_planning_gate(session)
    await workflows.approve_pending_artifact(session, workflow.id)

    await workflows.rewind_workflow(session, workflow.id, "planning")

    assert workflow.status == WorkflowStatus.PLANNING
    assert await artifacts.get_all_plans(session, workflow.id) == []
    assert await pulses.get_pulses_for_workflow(session, workflow.id) == []


async def test_rewind_forward_is_rejected(session) -> None:
    workflow = await workflows.create_workflow(session, "Early")
    with pytest.raises(InvalidTransitionError):
        await workflows.rewind_workflow(session, workflow.id, WorkflowStatus.PLANNING)


async def test_rewind_to_scoping_is_not_allowed(session) -> None:
    workflow = await workflows.create_workflow(session, "Late", status=WorkflowStatus.REVIEW)
    with pytest.raises(InvalidTransitionError):
        await workflows.rewind_workflow(session, workflow.id, WorkflowStatus.SCOPING)


async def test_list_hides_archived_unless_asked(session) -> None:
    kept = await workflows.create_workflow(session, "Kept")
    gone = await workflows.create_workflow(session, "Gone")
    await workflows.archive_workflow(session, gone.id)

    visible = await workflows.list_workflows(session)
    everything = await workflows.list_workflows(session, include_archived=True)

    assert [w.id for w in visible] == [kept.id]
    assert {w.id for w in everything} == {kept.id, gone.id}


async def test_list_rejects_unknown_order(session) -> None:
    with pytest.raises(ValueError):
        await workflows.list_workflows(session, order_by="title")


async def test_record_workflow_error(session, events) -> None:
    workflow = await workflows.create_workflow(session, "Flaky")
    await workflows.record_workflow_error(session, workflow.id, "scoping", "agent crashed")

    errors = await workflows.get_workflow_errors(session, workflow.id)
    assert [e.error_message for e in errors] == ["agent crashed"]
    assert events[-1].type == EventType.WORKFLOW_ERROR


async def test_delete_workflow_removes_owned_rows(session) -> None:
    workflow = await _at_planning_gate(session)
    await workflows.approve_pending_artifact(session, workflow.id)
    agent = await sessions.create_session(session, WorkflowContext(workflow.id), "execution")
    turn = await sessions.create_turn(session, agent.id, 0, "assistant")
    await sessions.upsert_message(session, turn.id, 0, "working")
    await pulses.create_preflight_setup(session, workflow.id)

    assert await workflows.delete_workflow(session, workflow.id) is True

    assert await workflows.get_workflow(session, workflow.id) is None
    assert await pulses.get_pulses_for_workflow(session, workflow.id) == []
    assert await pulses.get_preflight_setup(session, workflow.id) is None
    assert await sessions.get_turn(session, turn.id) is None
    # Analytics rows outlive the workflow.
    assert len(await workflows.get_stage_transitions(session, workflow.id)) == 1


async def test_delete_missing_workflow_returns_false(session) -> None:
    assert await workflows.delete_workflow(session, "workflow_missing") is False


async def test_clear_awaiting_approval(session, events) -> None:
    workflow = await _scoped(session)

    cleared = await workflows.clear_awaiting_approval(session, workflow.id)

    assert cleared.awaiting_approval is False
    assert cleared.pending_artifact_type is None
    assert cleared.status == WorkflowStatus.SCOPING
    assert events[-1].type == EventType.APPROVAL_CLEARED


async def test_set_skipped_stages_replaces_the_set(session) -> None:
    workflow = await workflows.create_workflow(session, "Quick fix", skipped_stages=["planning"])

    updated = await workflows.set_skipped_stages(session, workflow.id, ["researching"])
    assert updated.skipped_stages == [WorkflowStatus.RESEARCHING]
    assert workflows.is_stage_satisfied(updated, WorkflowStatus.RESEARCHING)

    with pytest.raises(InvalidTransitionError, match="cannot be skipped"):
        await workflows.set_skipped_stages(session, workflow.id, ["scoping"])


async def test_base_branch_and_current_session(session) -> None:
    workflow = await workflows.create_workflow(session, "Branching")

    await workflows.set_base_branch(session, workflow.id, "main")
    await workflows.set_current_session(session, workflow.id, "session_abc")

    refreshed = await workflows.get_workflow(session, workflow.id)
    assert refreshed.base_branch == "main"
    assert refreshed.current_session_id == "session_abc"

    with pytest.raises(InvalidTransitionError):
        await workflows.set_base_branch(session, "workflow_missing", "main")
