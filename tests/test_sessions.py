from decimal import Decimal

import pytest

from pulseflow import sessions, subtasks, workflows
from pulseflow.context import ChannelContext, WorkflowContext
from pulseflow.costs import TokenUsage
from pulseflow.errors import InvalidTransitionError, JsonFieldError
from pulseflow.events import EventType
from pulseflow.sessions import QuestionSpec
from pulseflow.states import QuestionStatus, SessionStatus, ToolStatus, TurnStatus


@pytest.fixture
async def workflow(session):
    return await workflows.create_workflow(session, "Sessions")


@pytest.fixture
async def agent(session, workflow):
    return await sessions.create_session(session, WorkflowContext(workflow.id), "research")


async def test_new_session_supersedes_active_one(session, workflow) -> None:
    context = WorkflowContext(workflow.id)
    first = await sessions.create_session(session, context, "scoping")
    second = await sessions.create_session(session, context, "research")

    assert (await sessions.get_session_by_id(session, first.id)).status == SessionStatus.COMPLETED
    assert (await sessions.get_active_by_context(session, context)).id == second.id
    assert await sessions.get_active_session_by_id(session, first.id) is None


async def test_contexts_are_independent(session, workflow) -> None:
    in_workflow = await sessions.create_session(session, WorkflowContext(workflow.id), "scoping")
    await sessions.create_session(session, ChannelContext("general"), "discussion")

    refreshed = await sessions.get_session_by_id(session, in_workflow.id)
    assert refreshed.status == SessionStatus.ACTIVE
    assert refreshed.context == WorkflowContext(workflow.id)


async def test_update_session_status(session, agent, events) -> None:
    updated = await sessions.update_session_status(session, agent.id, "error")
    assert updated.status == SessionStatus.ERROR
    assert events[-1].type == EventType.SESSION_STATUS_CHANGED


async def test_turn_lifecycle_and_context_reload(session, agent) -> None:
    first = await sessions.create_turn(session, agent.id, 0, "user")
    await sessions.complete_turn(session, first.id)
    second = await sessions.create_turn(session, agent.id, 1, "assistant")
    usage = TokenUsage(prompt_tokens=100, completion_tokens=20, model_id="gpt-4o")
    done = await sessions.complete_turn(session, second.id, usage)
    third = await sessions.create_turn(session, agent.id, 2, "assistant")
    await sessions.error_turn(session, third.id)

    assert done.status == TurnStatus.COMPLETED
    assert done.token_count == 120
    assert done.model_id == "gpt-4o"

    loaded = await sessions.load_session_context(session, agent.id)
    assert [t.turn_index for t in loaded.turns] == [0, 1]
    assert loaded.next_turn_index == 3


async def test_finished_turn_cannot_complete_again(session, agent) -> None:
    turn = await sessions.create_turn(session, agent.id, 0, "assistant")
    await sessions.complete_turn(session, turn.id)
    with pytest.raises(InvalidTransitionError):
        await sessions.complete_turn(session, turn.id)


async def test_empty_session_starts_at_index_zero(session, agent) -> None:
    loaded = await sessions.load_session_context(session, agent.id)
    assert loaded.turns == []
    assert loaded.next_turn_index == 0


async def test_message_upsert_overwrites_by_index(session, agent) -> None:
    turn = await sessions.create_turn(session, agent.id, 0, "assistant")

    await sessions.upsert_message(session, turn.id, 1, "second")
    await sessions.upsert_message(session, turn.id, 0, "draft")
    final = await sessions.upsert_message(session, turn.id, 0, "first")

    messages = await sessions.get_messages(session, turn.id)
    assert [(m.message_index, m.content) for m in messages] == [(0, "first"), (1, "second")]
    assert final.content == "first"


async def test_thoughts_upsert_by_index(session, agent) -> None:
    turn = await sessions.create_turn(session, agent.id, 0, "assistant")
    await sessions.save_thought(session, turn.id, 0, "hmm")
    await sessions.save_thought(session, turn.id, 0, "got it")

    thoughts = await sessions.get_thoughts(session, turn.id)
    assert [t.content for t in thoughts] == ["got it"]


async def test_message_for_missing_turn_is_rejected(session) -> None:
    with pytest.raises(InvalidTransitionError):
        await sessions.upsert_message(session, "turn_missing", 0, "hello")


async def test_tool_calls(session, agent) -> None:
    turn = await sessions.create_turn(session, agent.id, 0, "assistant")
    grep = await sessions.record_tool_start(
        session, turn.id, 0, "grep", {"pattern": "TODO"}, reason="find work"
    )
    edit = await sessions.record_tool_start(session, turn.id, 1, "edit", {"path": "a.py"})

    await sessions.record_tool_complete(session, grep.id, "3 matches", success=True)
    failed = await sessions.record_tool_complete(session, edit.id, "permission denied", success=False)

    assert failed.status == ToolStatus.ERROR
    assert await sessions.get_tool_names(session, turn.id) == ["grep", "edit"]
    assert await sessions.get_succeeded_tool_names(session, turn.id) == ["grep"]
    with pytest.raises(InvalidTransitionError):
        await sessions.record_tool_complete(session, grep.id, "again", success=True)


async def test_tool_input_must_be_an_object(session, agent) -> None:
    turn = await sessions.create_turn(session, agent.id, 0, "assistant")
    with pytest.raises(JsonFieldError):
        await sessions.record_tool_start(session, turn.id, 0, "grep", ["not", "a", "dict"])


async def test_questions_and_answers(session, agent) -> None:
    turn = await sessions.create_turn(session, agent.id, 0, "assistant")
    color, notes = await sessions.create_questions(
        session,
        agent.id,
        turn.id,
        [
            QuestionSpec("Pick a color", "single_select", ["red", "blue"]),
            QuestionSpec("Anything else?"),
        ],
    )
    (extra,) = await sessions.create_questions(
        session, agent.id, turn.id, [QuestionSpec("Rank", "ranked", ["a", "b"])]
    )

    assert [color.question_index, notes.question_index, extra.question_index] == [0, 1, 2]

    await sessions.answer_question(session, color.id, "blue")
    await sessions.answer_question(session, notes.id, "No")
    with pytest.raises(JsonFieldError):
        await sessions.answer_question(session, extra.id, ["a", "z"])

    assert [q.id for q in await sessions.get_pending_questions(session, agent.id)] == [extra.id]
    assert await sessions.skip_pending_questions(session, turn.id) == 1
    assert (await sessions.get_question(session, extra.id)).status == QuestionStatus.SKIPPED

    message = sessions.format_answered_questions_message(
        await sessions.get_questions_by_turn(session, turn.id)
    )
    assert message == "Q: Pick a color\nA: blue\n\nQ: Anything else?\nA: No"


async def test_select_question_needs_options(session, agent) -> None:
    turn = await sessions.create_turn(session, agent.id, 0, "assistant")
    with pytest.raises(JsonFieldError):
        await sessions.create_questions(
            session, agent.id, turn.id, [QuestionSpec("Pick", "multi_select")]
        )


async def test_answered_question_cannot_be_answered_again(session, agent) -> None:
    turn = await sessions.create_turn(session, agent.id, 0, "assistant")
    (question,) = await sessions.create_questions(session, agent.id, turn.id, [QuestionSpec("Why?")])
    await sessions.answer_question(session, question.id, "because")
    with pytest.raises(InvalidTransitionError):
        await sessions.answer_question(session, question.id, "still because")


async def test_notes_and_todos(session, workflow, agent) -> None:
    context = WorkflowContext(workflow.id)
    await sessions.save_note(session, agent.id, context, "uses sqlite")
    first = await sessions.add_todo(session, agent.id, context, "write tests")
    second = await sessions.add_todo(session, agent.id, context, "ship")
    await sessions.set_todo_checked(session, first.id)

    assert [n.content for n in await sessions.get_notes(session, context)] == ["uses sqlite"]
    todos = await sessions.get_todos(session, context, session_id=agent.id)
    assert [(t.title, t.checked) for t in todos] == [("write tests", True), ("ship", False)]
    assert second.sort_order == first.sort_order + 1


async def test_delete_session_removes_everything_it_owns(session, workflow, agent, events) -> None:
    context = WorkflowContext(workflow.id)
    turn = await sessions.create_turn(session, agent.id, 0, "assistant")
    await sessions.upsert_message(session, turn.id, 0, "hi")
    await sessions.save_thought(session, turn.id, 0, "thinking")
    await sessions.record_tool_start(session, turn.id, 0, "grep", {})
    await sessions.create_questions(session, agent.id, turn.id, [QuestionSpec("Ok?")])
    await sessions.save_note(session, agent.id, context, "note")
    await sessions.add_todo(session, agent.id, context, "todo")
    await subtasks.create_subtask(session, agent.id, workflow.id, {"label": "dig"})
    child = await sessions.create_session(
        session, ChannelContext("side"), "review_sub", parent_session_id=agent.id
    )

    assert await sessions.delete_session(session, agent.id) is True

    assert await sessions.get_session_by_id(session, agent.id) is None
    assert await sessions.get_session_by_id(session, child.id) is None
    assert await sessions.get_turn(session, turn.id) is None
    assert await sessions.get_messages(session, turn.id) == []
    assert await sessions.get_notes(session, context) == []
    assert await sessions.get_todos(session, context) == []
    assert await subtasks.get_subtasks_for_parent(session, agent.id) == []
    assert events[-1].type == EventType.SESSION_DELETED


async def test_delete_by_roles_only_touches_matching_sessions(session, workflow, events) -> None:
    context = WorkflowContext(workflow.id)
    scoping = await sessions.create_session(session, context, "scoping")
    research = await sessions.create_session(session, context, "research")
    events.clear()

    deleted = await sessions.delete_by_context_and_roles(session, context, ["research", "planning"])

    assert deleted == 1
    remaining = await sessions.get_sessions_by_context(session, context)
    assert [s.id for s in remaining] == [scoping.id]
    assert [e.type for e in events] == [EventType.SESSION_DELETED]
    assert events[0].data["session_ids"] == [research.id]


async def test_delete_by_roles_with_no_match(session, workflow) -> None:
    assert await sessions.delete_by_context_and_roles(session, WorkflowContext(workflow.id), []) == 0
    assert (
        await sessions.delete_by_context_and_roles(
            session, WorkflowContext(workflow.id), ["review"]
        )
        == 0
    )


async def test_history_hides_hidden_and_empty_turns(session, workflow, agent) -> None:
    context = WorkflowContext(workflow.id)
    asked = await sessions.create_turn(session, agent.id, 0, "user")
    await sessions.upsert_message(session, asked.id, 0, "please research")
    await sessions.complete_turn(session, asked.id)
    hidden = await sessions.create_turn(session, agent.id, 1, "user", hidden=True)
    await sessions.upsert_message(session, hidden.id, 0, "system nudge")
    await sessions.create_turn(session, agent.id, 2, "assistant")
    answered = await sessions.create_turn(session, agent.id, 3, "assistant")
    await sessions.upsert_message(session, answered.id, 0, "found it")
    await sessions.complete_turn(
        session,
        answered.id,
        TokenUsage(prompt_tokens=1_000_000, completion_tokens=0, model_id="gpt-4o"),
    )

    history = await sessions.get_history(session, context)

    assert [v.turn.id for v in history.turns] == [asked.id, answered.id]
    assert history.turns[0].cost_usd is None
    assert history.turns[1].cost_usd == Decimal("2.50")
    assert history.active_session_id == agent.id


async def test_turns_and_pending_questions_per_turn(session, agent) -> None:
    first = await sessions.create_turn(session, agent.id, 0, "user")
    second = await sessions.create_turn(session, agent.id, 1, "assistant")
    await sessions.create_questions(session, agent.id, first.id, [QuestionSpec("Old?")])
    (current,) = await sessions.create_questions(
        session, agent.id, second.id, [QuestionSpec("New?")]
    )

    assert [t.id for t in await sessions.get_turns(session, agent.id)] == [first.id, second.id]
    pending = await sessions.get_pending_questions_by_turn(session, second.id)
    assert [q.id for q in pending] == [current.id]


async def test_child_sessions(session, agent) -> None:
    child = await sessions.create_session(
        session, ChannelContext("side"), "review_sub", parent_session_id=agent.id
    )

    assert [s.id for s in await sessions.get_child_sessions(session, agent.id)] == [child.id]
    assert await sessions.get_child_sessions(session, child.id) == []
