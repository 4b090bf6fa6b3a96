from decimal import Decimal

import pytest

from pulseflow import costs, sessions, workflows
from pulseflow.context import ChannelContext, ContextType, SubtaskContext, WorkflowContext
from pulseflow.costs import ModelPricing, TokenUsage
from pulseflow.errors import InvalidTransitionError
from pulseflow.models import CostRecord


def _usd(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.000001"))


def test_model_pricing_calculate_cost() -> None:
    pricing = ModelPricing(input_per_million=Decimal("2.00"), output_per_million=Decimal("4.00"))
    cost = pricing.calculate_cost(1000, 2000)
    assert cost == Decimal("0.010")


def test_cache_tokens_fall_back_to_input_rate() -> None:
    pricing = ModelPricing(input_per_million=Decimal("2.00"), output_per_million=Decimal("4.00"))
    assert pricing.calculate_cost(0, 0, cache_write_tokens=1000, cache_read_tokens=1000) == Decimal(
        "0.004"
    )


def test_long_context_tier_applies_above_threshold() -> None:
    base = costs.calculate_cost("claude-sonnet-4-5", 200_000, 0)
    long = costs.calculate_cost("claude-sonnet-4-5", 200_001, 0)
    assert base == Decimal("0.6")
    assert _usd(long) == _usd(Decimal("200001") * Decimal("6.00") / Decimal(1_000_000))


def test_unknown_model_costs_nothing() -> None:
    assert costs.calculate_cost("made-up-model", 10_000, 10_000) == Decimal("0")
    assert costs.get_pricing("made-up-model") is None


def test_token_usage_total() -> None:
    usage = TokenUsage(prompt_tokens=10, completion_tokens=5, model_id="gpt-4o", cache_read_tokens=3)
    assert usage.total_tokens == 18
    assert TokenUsage(1, 1, "gpt-4o", token_count=99).total_tokens == 99


@pytest.fixture
async def workflow(session):
    return await workflows.create_workflow(session, "Costs")


async def _record(session, context, model_id="gpt-4o", cost="0.010000", role=None, prompt=1000):
    return await costs.insert_cost_record(
        session,
        context,
        model_id=model_id,
        prompt_tokens=prompt,
        completion_tokens=100,
        cost_usd=Decimal(cost),
        agent_role=role,
    )


async def test_sums_are_zero_when_empty(session, workflow) -> None:
    assert await costs.sum_by_context(session, WorkflowContext(workflow.id)) == Decimal("0")
    assert await costs.sum_by_context_ids(session, ContextType.SUBTASK, []) == Decimal("0")
    assert await costs.get_total_workflow_cost(session, workflow.id, []) == Decimal("0")


async def test_workflow_total_includes_subtasks(session, workflow) -> None:
    await _record(session, WorkflowContext(workflow.id), cost="0.010000")
    await _record(session, SubtaskContext("subtask_a"), cost="0.020000")
    await _record(session, SubtaskContext("subtask_other"), cost="0.500000")
    await _record(session, ChannelContext("general"), cost="1.000000")

    total = await costs.get_total_workflow_cost(session, workflow.id, ["subtask_a"])
    workflow_only = await costs.get_total_workflow_cost(session, workflow.id, [])
    subtasks_only = await costs.sum_by_context_ids(session, "subtask", ["subtask_a", "subtask_other"])

    assert _usd(total) == Decimal("0.030000")
    assert _usd(workflow_only) == Decimal("0.010000")
    assert _usd(subtasks_only) == Decimal("0.520000")


async def test_cost_breakdown_by_role_and_model(session, workflow) -> None:
    context = WorkflowContext(workflow.id)
    await _record(session, context, model_id="gpt-4o", cost="0.250000", role="planning")
    await _record(session, context, model_id="gpt-4o", cost="0.100000", role="execution")
    await _record(session, context, model_id="gpt-5", cost="0.200000", role="execution")

    breakdown = await costs.get_cost_breakdown(session, workflow.id)

    assert _usd(breakdown.total_cost) == Decimal("0.550000")
    assert breakdown.prompt_tokens == 3000
    assert breakdown.completion_tokens == 300
    assert [r["agent_role"] for r in breakdown.by_role] == ["execution", "planning"]
    assert [r["model_id"] for r in breakdown.by_model] == ["gpt-4o", "gpt-5"]


async def test_record_turn_cost_prices_completed_turn(session, workflow) -> None:
    context = WorkflowContext(workflow.id)
    agent = await sessions.create_session(session, context, "planning")
    turn = await sessions.create_turn(session, agent.id, 0, "assistant")
    await sessions.complete_turn(
        session, turn.id, TokenUsage(prompt_tokens=1_000_000, completion_tokens=0, model_id="gpt-4o")
    )

    record = await costs.record_turn_cost(session, context, turn, agent_role="planning")

    assert record.turn_id == turn.id
    assert record.session_id == agent.id
    assert _usd(record.cost_usd) == Decimal("2.500000")


async def test_record_turn_cost_requires_completed_turn(session, workflow) -> None:
    context = WorkflowContext(workflow.id)
    agent = await sessions.create_session(session, context, "planning")
    turn = await sessions.create_turn(session, agent.id, 0, "assistant")
    with pytest.raises(InvalidTransitionError):
        await costs.record_turn_cost(session, context, turn)


async def test_long_context_repair_is_idempotent(session, workflow) -> None:
    context = WorkflowContext(workflow.id)
    # Recorded at the base rate before tiered pricing existed.
    stale = await _record(
        session, context, model_id="claude-sonnet-4-5", prompt=300_000, cost="0.901500"
    )
    small = await _record(
        session, context, model_id="claude-sonnet-4-5", prompt=1_000, cost="0.004500"
    )

    preview = await costs.repair_long_context_costs(session, dry_run=True)
    assert preview["claude-sonnet-4-5"] == 1

    repaired = await costs.repair_long_context_costs(session)
    again = await costs.repair_long_context_costs(session)

    assert repaired["claude-sonnet-4-5"] == 1
    assert sum(again.values()) == 0
    fixed = await session.get(CostRecord, stale.id, populate_existing=True)
    untouched = await session.get(CostRecord, small.id, populate_existing=True)
    assert _usd(fixed.cost_usd) == Decimal("1.802250")
    assert _usd(untouched.cost_usd) == Decimal("0.004500")


async def test_long_context_repair_leaves_cached_turns_alone(session, workflow) -> None:
    context = WorkflowContext(workflow.id)
    agent = await sessions.create_session(session, context, "execution")
    turn = await sessions.create_turn(session, agent.id, 0, "assistant")
    await sessions.complete_turn(
        session,
        turn.id,
        TokenUsage(
            prompt_tokens=250_000,
            completion_tokens=1_000,
            model_id="claude-sonnet-4-5",
            cache_read_tokens=100_000,
        ),
    )
    record = await costs.record_turn_cost(session, context, turn, agent_role="execution")
    assert _usd(record.cost_usd) == Decimal("2.122500")

    assert await costs.repair_long_context_costs(session, dry_run=True) == {
        "claude-opus-4-6": 0,
        "claude-sonnet-4-5": 0,
        "claude-sonnet-4-0": 0,
    }
    assert sum((await costs.repair_long_context_costs(session)).values()) == 0

    stored = await session.get(CostRecord, record.id, populate_existing=True)
    assert _usd(stored.cost_usd) == Decimal("2.122500")


async def test_delete_workflow_costs_only_touches_scope(session, workflow) -> None:
    await _record(session, WorkflowContext(workflow.id))
    await _record(session, SubtaskContext("subtask_a"))
    await _record(session, ChannelContext("general"))

    assert await costs.delete_workflow_costs(session, workflow.id, ["subtask_a"]) == 2
    assert await costs.sum_by_context(session, ChannelContext("general")) > 0
