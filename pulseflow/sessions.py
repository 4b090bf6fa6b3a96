"""Sessions and everything recorded inside them.

A session belongs to one context (workflow, channel or subtask) and owns
ordered turns; each turn owns ordered messages, tool calls, thoughts and
questions. Child rows written by a streaming producer are upserted by
``(turn_id, index)`` so repeated or out-of-order writes are harmless.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from . import ids
from .context import ContextRef, context_columns
from .costs import TokenUsage, calculate_cost
from .db import atomic
from .errors import InvalidTransitionError, JsonFieldError
from .events import EventType, publish
from .json_fields import JSON_ANY, JSON_OBJECT, JSON_STRING, validate_field
from .models import (
    AgentSession,
    Question,
    SessionNote,
    SessionTodo,
    Subtask,
    Turn,
    TurnMessage,
    TurnThought,
    TurnTool,
    utcnow,
)
from .states import QuestionStatus, QuestionType, SessionStatus, ToolStatus, TurnRole, TurnStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Sessions
# =============================================================================


def _in_context(context: ContextRef) -> tuple[Any, Any]:
    context_type, context_id = context_columns(context)
    return AgentSession.context_type == context_type, AgentSession.context_id == context_id


async def get_session_by_id(session: AsyncSession, session_id: str) -> AgentSession | None:
    return await session.get(AgentSession, session_id)


async def get_active_session_by_id(session: AsyncSession, session_id: str) -> AgentSession | None:
    result = await session.execute(
        select(AgentSession).where(
            AgentSession.id == session_id,
            AgentSession.status == SessionStatus.ACTIVE.value,
        )
    )
    return result.scalar_one_or_none()


async def get_sessions_by_context(session: AsyncSession, context: ContextRef) -> list[AgentSession]:
    result = await session.execute(
        select(AgentSession)
        .where(*_in_context(context))
        .order_by(AgentSession.created_at, AgentSession.id)
    )
    return list(result.scalars().all())


async def get_active_by_context(session: AsyncSession, context: ContextRef) -> AgentSession | None:
    result = await session.execute(
        select(AgentSession)
        .where(*_in_context(context), AgentSession.status == SessionStatus.ACTIVE.value)
        .order_by(AgentSession.created_at.desc())
        .limit(1)
    )
    return result.scalars().first()


async def get_child_sessions(session: AsyncSession, parent_session_id: str) -> list[AgentSession]:
    result = await session.execute(
        select(AgentSession)
        .where(AgentSession.parent_session_id == parent_session_id)
        .order_by(AgentSession.created_at, AgentSession.id)
    )
    return list(result.scalars().all())


async def create_session(
    session: AsyncSession,
    context: ContextRef,
    agent_role: str,
    *,
    pulse_id: str | None = None,
    parent_session_id: str | None = None,
) -> AgentSession:
    """Open an active session, completing any session still active for the context."""
    context_type, context_id = context_columns(context)
    superseded = await session.execute(
        update(AgentSession)
        .where(*_in_context(context), AgentSession.status == SessionStatus.ACTIVE.value)
        .values(status=SessionStatus.COMPLETED.value, updated_at=utcnow())
    )
    if superseded.rowcount:
        logger.info(
            "Completed %d active session(s) superseded in %s:%s",
            superseded.rowcount,
            context_type,
            context_id,
        )

    agent_session = AgentSession(
        id=ids.session_id(),
        context_type=context_type,
        context_id=context_id,
        agent_role=agent_role,
        status=SessionStatus.ACTIVE.value,
        pulse_id=pulse_id,
        parent_session_id=parent_session_id,
    )
    session.add(agent_session)
    await session.flush()

    await publish(
        EventType.SESSION_CREATED,
        entity_id=agent_session.id,
        context_type=context_type,
        context_id=context_id,
        agent_role=agent_role,
    )
    return agent_session


async def update_session_status(
    session: AsyncSession, session_id: str, status: SessionStatus | str
) -> AgentSession:
    agent_session = await get_session_by_id(session, session_id)
    if agent_session is None:
        raise InvalidTransitionError(f"Session '{session_id}' not found")
    agent_session.status = SessionStatus(status).value
    await session.flush()
    await publish(EventType.SESSION_STATUS_CHANGED, entity_id=session_id, status=agent_session.status)
    return agent_session


async def _collect_session_tree(session: AsyncSession, root_ids: Sequence[str]) -> list[str]:
    """Root session ids plus every descendant (subagent) session id."""
    collected = list(root_ids)
    frontier = list(root_ids)
    while frontier:
        result = await session.execute(
            select(AgentSession.id).where(AgentSession.parent_session_id.in_(frontier))
        )
        frontier = [sid for sid in result.scalars().all() if sid not in collected]
        collected.extend(frontier)
    return collected


async def _delete_sessions(session: AsyncSession, root_ids: Sequence[str]) -> int:
    session_ids = await _collect_session_tree(session, root_ids)
    result = await session.execute(select(Turn.id).where(Turn.session_id.in_(session_ids)))
    turn_ids = list(result.scalars().all())

    await session.execute(delete(TurnMessage).where(TurnMessage.turn_id.in_(turn_ids)))
    await session.execute(delete(TurnTool).where(TurnTool.turn_id.in_(turn_ids)))
    await session.execute(delete(TurnThought).where(TurnThought.turn_id.in_(turn_ids)))
    await session.execute(delete(Question).where(Question.session_id.in_(session_ids)))
    await session.execute(delete(Turn).where(Turn.session_id.in_(session_ids)))
    await session.execute(delete(SessionNote).where(SessionNote.session_id.in_(session_ids)))
    await session.execute(delete(SessionTodo).where(SessionTodo.session_id.in_(session_ids)))
    await session.execute(delete(Subtask).where(Subtask.parent_session_id.in_(session_ids)))
    await session.execute(delete(AgentSession).where(AgentSession.id.in_(session_ids)))
    return len(session_ids)


async def delete_session(session: AsyncSession, session_id: str) -> bool:
    """Delete a session and everything it owns, all or nothing."""
    if await get_session_by_id(session, session_id) is None:
        return False
    async with atomic(session):
        await _delete_sessions(session, [session_id])
    await publish(EventType.SESSION_DELETED, entity_id=session_id)
    return True


async def delete_by_context_and_roles(
    session: AsyncSession, context: ContextRef, roles: Iterable[str]
) -> int:
    """Delete the sessions of a context held by any of ``roles``; returns how many."""
    roles = [str(role) for role in roles]
    if not roles:
        return 0
    result = await session.execute(
        select(AgentSession.id).where(*_in_context(context), AgentSession.agent_role.in_(roles))
    )
    session_ids = list(result.scalars().all())
    if not session_ids:
        return 0

    async with atomic(session):
        await _delete_sessions(session, session_ids)
    context_type, context_id = context_columns(context)
    await publish(
        EventType.SESSION_DELETED,
        entity_id=context_id,
        context_type=context_type,
        session_ids=session_ids,
        roles=roles,
    )
    return len(session_ids)


async def delete_sessions_for_context(session: AsyncSession, context: ContextRef) -> int:
    """Delete every session of a context, used by workflow teardown."""
    result = await session.execute(select(AgentSession.id).where(*_in_context(context)))
    session_ids = list(result.scalars().all())
    if not session_ids:
        return 0
    async with atomic(session):
        return await _delete_sessions(session, session_ids)


# =============================================================================
# Turns
# =============================================================================


async def get_turn(session: AsyncSession, turn_id: str) -> Turn | None:
    return await session.get(Turn, turn_id)


async def get_turns(session: AsyncSession, session_id: str) -> list[Turn]:
    result = await session.execute(
        select(Turn).where(Turn.session_id == session_id).order_by(Turn.turn_index)
    )
    return list(result.scalars().all())


async def get_completed_turns(session: AsyncSession, session_id: str) -> list[Turn]:
    result = await session.execute(
        select(Turn)
        .where(Turn.session_id == session_id, Turn.status == TurnStatus.COMPLETED.value)
        .order_by(Turn.turn_index)
    )
    return list(result.scalars().all())


@dataclass
class SessionContext:
    turns: list[Turn]
    next_turn_index: int


async def load_session_context(session: AsyncSession, session_id: str) -> SessionContext:
    """Completed turns to replay, plus the index the next turn should use."""
    turns = await get_completed_turns(session, session_id)
    result = await session.execute(
        select(func.max(Turn.turn_index)).where(Turn.session_id == session_id)
    )
    last_index = result.scalar_one()
    return SessionContext(turns=turns, next_turn_index=0 if last_index is None else last_index + 1)


async def create_turn(
    session: AsyncSession,
    session_id: str,
    turn_index: int,
    role: TurnRole | str,
    *,
    hidden: bool = False,
) -> Turn:
    if await get_session_by_id(session, session_id) is None:
        raise InvalidTransitionError(f"Session '{session_id}' not found")
    turn = Turn(
        id=ids.turn_id(),
        session_id=session_id,
        turn_index=turn_index,
        role=TurnRole(role).value,
        status=TurnStatus.STREAMING.value,
        hidden=hidden,
    )
    session.add(turn)
    await session.flush()
    return turn


async def _streaming_turn(session: AsyncSession, turn_id: str, action: str) -> Turn:
    turn = await get_turn(session, turn_id)
    if turn is None:
        raise InvalidTransitionError(f"Cannot {action} turn '{turn_id}': turn not found")
    if turn.status != TurnStatus.STREAMING.value:
        raise InvalidTransitionError(
            f"Cannot {action} turn '{turn_id}': status is '{turn.status}'"
        )
    return turn


async def complete_turn(
    session: AsyncSession, turn_id: str, usage: TokenUsage | None = None
) -> Turn:
    turn = await _streaming_turn(session, turn_id, "complete")
    turn.status = TurnStatus.COMPLETED.value
    turn.completed_at = utcnow()
    if usage is not None:
        turn.token_count = usage.total_tokens
        turn.prompt_tokens = usage.prompt_tokens
        turn.completion_tokens = usage.completion_tokens
        turn.cache_read_tokens = usage.cache_read_tokens
        turn.cache_write_tokens = usage.cache_write_tokens
        turn.model_id = usage.model_id
    await session.flush()
    return turn


async def error_turn(session: AsyncSession, turn_id: str) -> Turn:
    turn = await _streaming_turn(session, turn_id, "error")
    turn.status = TurnStatus.ERROR.value
    turn.completed_at = utcnow()
    await session.flush()
    return turn


# =============================================================================
# Messages, thoughts and tools
# =============================================================================


async def _require_turn(session: AsyncSession, turn_id: str) -> Turn:
    turn = await get_turn(session, turn_id)
    if turn is None:
        raise InvalidTransitionError(f"Turn '{turn_id}' not found")
    return turn


async def _upsert_indexed(
    session: AsyncSession,
    model: type[TurnMessage] | type[TurnThought],
    index_column: str,
    turn_id: str,
    index: int,
    content: str,
    new_id: str,
):
    await _require_turn(session, turn_id)
    if session.get_bind().dialect.name == "postgresql":
        insert = pg_insert
    else:
        insert = sqlite_insert
    stmt = insert(model).values(
        {"id": new_id, "turn_id": turn_id, index_column: index, "content": content}
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["turn_id", index_column],
        set_={"content": stmt.excluded.content},
    )
    await session.execute(stmt)

    result = await session.execute(
        select(model)
        .where(model.turn_id == turn_id, getattr(model, index_column) == index)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def upsert_message(
    session: AsyncSession, turn_id: str, message_index: int, content: str
) -> TurnMessage:
    return await _upsert_indexed(
        session, TurnMessage, "message_index", turn_id, message_index, content, ids.message_id()
    )


async def get_messages(session: AsyncSession, turn_id: str) -> list[TurnMessage]:
    result = await session.execute(
        select(TurnMessage)
        .where(TurnMessage.turn_id == turn_id)
        .order_by(TurnMessage.message_index)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def save_thought(
    session: AsyncSession, turn_id: str, thought_index: int, content: str
) -> TurnThought:
    return await _upsert_indexed(
        session, TurnThought, "thought_index", turn_id, thought_index, content, ids.thought_id()
    )


async def get_thoughts(session: AsyncSession, turn_id: str) -> list[TurnThought]:
    result = await session.execute(
        select(TurnThought)
        .where(TurnThought.turn_id == turn_id)
        .order_by(TurnThought.thought_index)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def record_tool_start(
    session: AsyncSession,
    turn_id: str,
    tool_index: int,
    tool_name: str,
    tool_input: dict[str, Any],
    *,
    reason: str | None = None,
    tool_id: str | None = None,
) -> TurnTool:
    """Record a tool call as running; a repeat for the same index restarts it."""
    tool_input = validate_field(JSON_OBJECT, "input", tool_input)
    await _require_turn(session, turn_id)

    result = await session.execute(
        select(TurnTool).where(TurnTool.turn_id == turn_id, TurnTool.tool_index == tool_index)
    )
    tool = result.scalar_one_or_none()
    if tool is None:
        tool = TurnTool(id=tool_id or ids.tool_id(), turn_id=turn_id, tool_index=tool_index)
        session.add(tool)
    tool.tool_name = tool_name
    tool.reason = reason
    tool.input = tool_input
    tool.output = None
    tool.status = ToolStatus.RUNNING.value
    tool.started_at = utcnow()
    tool.completed_at = None
    await session.flush()
    return tool


async def record_tool_complete(
    session: AsyncSession, tool_id: str, output: str, success: bool
) -> TurnTool:
    output = validate_field(JSON_STRING, "output", output)
    tool = await session.get(TurnTool, tool_id)
    if tool is None:
        raise InvalidTransitionError(f"Tool call '{tool_id}' not found")
    if tool.status != ToolStatus.RUNNING.value:
        raise InvalidTransitionError(f"Tool call '{tool_id}' already finished ({tool.status})")
    tool.output = output
    tool.status = ToolStatus.COMPLETED.value if success else ToolStatus.ERROR.value
    tool.completed_at = utcnow()
    await session.flush()
    return tool


async def get_tools(session: AsyncSession, turn_id: str) -> list[TurnTool]:
    result = await session.execute(
        select(TurnTool).where(TurnTool.turn_id == turn_id).order_by(TurnTool.tool_index)
    )
    return list(result.scalars().all())


async def get_tool_names(session: AsyncSession, turn_id: str) -> list[str]:
    return [tool.tool_name for tool in await get_tools(session, turn_id)]


async def get_succeeded_tool_names(session: AsyncSession, turn_id: str) -> list[str]:
    return [
        tool.tool_name
        for tool in await get_tools(session, turn_id)
        if tool.status == ToolStatus.COMPLETED.value
    ]


# =============================================================================
# Questions
# =============================================================================


@dataclass
class QuestionSpec:
    prompt: str
    type: QuestionType | str = QuestionType.FREE_TEXT
    options: list[str] | None = None


async def create_questions(
    session: AsyncSession,
    session_id: str,
    turn_id: str,
    questions: Iterable[QuestionSpec],
) -> list[Question]:
    """Attach questions to a turn, indexed after any it already has."""
    await _require_turn(session, turn_id)
    result = await session.execute(
        select(func.coalesce(func.max(Question.question_index), -1)).where(
            Question.turn_id == turn_id
        )
    )
    next_index = int(result.scalar_one()) + 1

    created: list[Question] = []
    for offset, spec in enumerate(questions):
        kind = QuestionType(spec.type)
        if kind is not QuestionType.FREE_TEXT and not spec.options:
            raise JsonFieldError("options", f"{kind.value} questions need at least one option")
        question = Question(
            id=ids.question_id(),
            session_id=session_id,
            turn_id=turn_id,
            question_index=next_index + offset,
            type=kind.value,
            prompt=spec.prompt,
            options=spec.options,
            status=QuestionStatus.PENDING.value,
        )
        session.add(question)
        created.append(question)
    await session.flush()
    return created


async def get_question(session: AsyncSession, question_id: str) -> Question | None:
    return await session.get(Question, question_id)


async def get_questions_by_turn(session: AsyncSession, turn_id: str) -> list[Question]:
    result = await session.execute(
        select(Question).where(Question.turn_id == turn_id).order_by(Question.question_index)
    )
    return list(result.scalars().all())


async def get_pending_questions(session: AsyncSession, session_id: str) -> list[Question]:
    result = await session.execute(
        select(Question)
        .where(
            Question.session_id == session_id,
            Question.status == QuestionStatus.PENDING.value,
        )
        .order_by(Question.created_at, Question.question_index)
    )
    return list(result.scalars().all())


async def get_pending_questions_by_turn(session: AsyncSession, turn_id: str) -> list[Question]:
    result = await session.execute(
        select(Question)
        .where(Question.turn_id == turn_id, Question.status == QuestionStatus.PENDING.value)
        .order_by(Question.question_index)
    )
    return list(result.scalars().all())


def _check_answer(question: Question, answer: Any) -> Any:
    answer = validate_field(JSON_ANY, "answer", answer)
    kind = QuestionType(question.type)
    options = question.options or []
    if kind is QuestionType.FREE_TEXT:
        if not isinstance(answer, str):
            raise JsonFieldError("answer", "free_text answers must be a string")
    elif kind is QuestionType.SINGLE_SELECT:
        if answer not in options:
            raise JsonFieldError("answer", f"{answer!r} is not one of {options}")
    else:
        if not isinstance(answer, list) or any(choice not in options for choice in answer):
            raise JsonFieldError("answer", f"{kind.value} answers must be a list drawn from {options}")
    return answer


async def answer_question(session: AsyncSession, question_id: str, answer: Any) -> Question:
    question = await get_question(session, question_id)
    if question is None:
        raise InvalidTransitionError(f"Question '{question_id}' not found")
    if question.status != QuestionStatus.PENDING.value:
        raise InvalidTransitionError(f"Question '{question_id}' is already {question.status}")
    question.answer = _check_answer(question, answer)
    question.status = QuestionStatus.ANSWERED.value
    question.answered_at = utcnow()
    await session.flush()
    return question


async def skip_pending_questions(session: AsyncSession, turn_id: str) -> int:
    """Mark every unanswered question on a turn as skipped; returns how many."""
    result = await session.execute(
        update(Question)
        .where(Question.turn_id == turn_id, Question.status == QuestionStatus.PENDING.value)
        .values(status=QuestionStatus.SKIPPED.value)
    )
    return result.rowcount


def format_answered_questions_message(questions: Sequence[Question]) -> str:
    """Render answered questions as a user message for the next turn."""
    lines: list[str] = []
    for question in questions:
        if question.status != QuestionStatus.ANSWERED.value:
            continue
        answer = question.answer
        if isinstance(answer, list):
            answer = ", ".join(str(a) for a in answer)
        lines.append(f"Q: {question.prompt}\nA: {answer}")
    return "\n\n".join(lines)


# =============================================================================
# Notes and todos
# =============================================================================


async def save_note(
    session: AsyncSession, session_id: str, context: ContextRef, content: str
) -> SessionNote:
    context_type, context_id = context_columns(context)
    note = SessionNote(
        id=ids.note_id(),
        session_id=session_id,
        context_type=context_type,
        context_id=context_id,
        content=content,
    )
    session.add(note)
    await session.flush()
    return note


async def get_notes(
    session: AsyncSession, context: ContextRef, session_id: str | None = None
) -> list[SessionNote]:
    context_type, context_id = context_columns(context)
    stmt = select(SessionNote).where(
        SessionNote.context_type == context_type, SessionNote.context_id == context_id
    )
    if session_id is not None:
        stmt = stmt.where(SessionNote.session_id == session_id)
    result = await session.execute(stmt.order_by(SessionNote.created_at, SessionNote.id))
    return list(result.scalars().all())


async def add_todo(
    session: AsyncSession,
    session_id: str,
    context: ContextRef,
    title: str,
    description: str = "",
) -> SessionTodo:
    context_type, context_id = context_columns(context)
    result = await session.execute(
        select(func.coalesce(func.max(SessionTodo.sort_order), -1)).where(
            SessionTodo.session_id == session_id
        )
    )
    todo = SessionTodo(
        id=ids.todo_id(),
        session_id=session_id,
        context_type=context_type,
        context_id=context_id,
        title=title,
        description=description,
        checked=False,
        sort_order=int(result.scalar_one()) + 1,
    )
    session.add(todo)
    await session.flush()
    return todo


async def set_todo_checked(session: AsyncSession, todo_id: str, checked: bool = True) -> SessionTodo:
    todo = await session.get(SessionTodo, todo_id)
    if todo is None:
        raise InvalidTransitionError(f"Todo '{todo_id}' not found")
    todo.checked = checked
    await session.flush()
    return todo


async def get_todos(
    session: AsyncSession, context: ContextRef, session_id: str | None = None
) -> list[SessionTodo]:
    context_type, context_id = context_columns(context)
    stmt = select(SessionTodo).where(
        SessionTodo.context_type == context_type, SessionTodo.context_id == context_id
    )
    if session_id is not None:
        stmt = stmt.where(SessionTodo.session_id == session_id)
    result = await session.execute(stmt.order_by(SessionTodo.sort_order, SessionTodo.created_at))
    return list(result.scalars().all())


# =============================================================================
# History
# =============================================================================


@dataclass
class TurnView:
    turn: Turn
    messages: list[TurnMessage] = field(default_factory=list)
    tools: list[TurnTool] = field(default_factory=list)
    thoughts: list[TurnThought] = field(default_factory=list)
    questions: list[Question] = field(default_factory=list)
    cost_usd: Decimal | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.messages or self.tools or self.questions)


@dataclass
class ConversationHistory:
    sessions: list[AgentSession]
    turns: list[TurnView]
    active_session_id: str | None


def _group_by_turn(rows: Iterable[Any]) -> dict[str, list[Any]]:
    grouped: dict[str, list[Any]] = defaultdict(list)
    for row in rows:
        grouped[row.turn_id].append(row)
    return grouped


async def get_history(session: AsyncSession, context: ContextRef) -> ConversationHistory:
    """Visible conversation for a context across all of its sessions, oldest first."""
    sessions = await get_sessions_by_context(session, context)
    session_ids = [s.id for s in sessions]
    order = {sid: position for position, sid in enumerate(session_ids)}

    result = await session.execute(
        select(Turn).where(Turn.session_id.in_(session_ids), Turn.hidden.is_(False))
    )
    turns = sorted(result.scalars().all(), key=lambda t: (order[t.session_id], t.turn_index))
    turn_ids = [t.id for t in turns]

    messages = _group_by_turn(
        (
            await session.execute(
                select(TurnMessage)
                .where(TurnMessage.turn_id.in_(turn_ids))
                .order_by(TurnMessage.message_index)
            )
        ).scalars()
    )
    tools = _group_by_turn(
        (
            await session.execute(
                select(TurnTool).where(TurnTool.turn_id.in_(turn_ids)).order_by(TurnTool.tool_index)
            )
        ).scalars()
    )
    thoughts = _group_by_turn(
        (
            await session.execute(
                select(TurnThought)
                .where(TurnThought.turn_id.in_(turn_ids))
                .order_by(TurnThought.thought_index)
            )
        ).scalars()
    )
    questions = _group_by_turn(
        (
            await session.execute(
                select(Question)
                .where(Question.turn_id.in_(turn_ids))
                .order_by(Question.question_index)
            )
        ).scalars()
    )

    views: list[TurnView] = []
    for turn in turns:
        view = TurnView(
            turn=turn,
            messages=messages.get(turn.id, []),
            tools=tools.get(turn.id, []),
            thoughts=thoughts.get(turn.id, []),
            questions=questions.get(turn.id, []),
        )
        if view.is_empty:
            continue
        if turn.role == TurnRole.ASSISTANT.value and turn.model_id:
            view.cost_usd = calculate_cost(
                turn.model_id,
                turn.prompt_tokens or 0,
                turn.completion_tokens or 0,
                turn.cache_write_tokens or 0,
                turn.cache_read_tokens or 0,
            )
        views.append(view)

    active = next((s for s in reversed(sessions) if s.status == SessionStatus.ACTIVE.value), None)
    return ConversationHistory(
        sessions=sessions,
        turns=views,
        active_session_id=active.id if active else None,
    )
