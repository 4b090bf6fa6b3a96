"""
API cost tracking and the cost ledger.

Cost records are append-only. Aggregates are computed in SQL and always
return ``Decimal`` (zero when nothing matched). Historical corrections go
through :func:`recompute_costs`, never through the steady-state write path.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from sqlalchemy import and_, delete, func, literal, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from . import ids
from .config import settings
from .context import ContextRef, ContextType, context_columns
from .errors import InvalidTransitionError
from .events import EventType, publish
from .models import CostRecord, Turn
from .states import TurnStatus

logger = logging.getLogger(__name__)

_MILLION = Decimal(1_000_000)


def _as_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value or 0))


@dataclass
class ModelPricing:
    """Pricing per million tokens.

    Cache rates fall back to the input rate when a model does not publish them.
    """

    input_per_million: Decimal
    output_per_million: Decimal
    cache_read_per_million: Decimal | None = None
    cache_write_per_million: Decimal | None = None

    def calculate_cost(
        self,
        input_tokens: int,
        output_tokens: int,
        cache_write_tokens: int = 0,
        cache_read_tokens: int = 0,
    ) -> Decimal:
        cache_write_rate = self.cache_write_per_million or self.input_per_million
        cache_read_rate = self.cache_read_per_million or self.input_per_million
        input_cost = (Decimal(input_tokens) / _MILLION) * self.input_per_million
        output_cost = (Decimal(output_tokens) / _MILLION) * self.output_per_million
        write_cost = (Decimal(cache_write_tokens) / _MILLION) * cache_write_rate
        read_cost = (Decimal(cache_read_tokens) / _MILLION) * cache_read_rate
        return input_cost + output_cost + write_cost + read_cost


@dataclass
class PricingTier:
    """Pricing that applies while total input tokens fall within [minimum, maximum]."""

    pricing: ModelPricing
    minimum_tokens: int | None = None
    maximum_tokens: int | None = None

    def applies_to(self, total_input_tokens: int) -> bool:
        if self.minimum_tokens is not None and total_input_tokens < self.minimum_tokens:
            return False
        if self.maximum_tokens is not None and total_input_tokens > self.maximum_tokens:
            return False
        return True


def _rates(input_rate: str, output_rate: str) -> ModelPricing:
    return ModelPricing(input_per_million=Decimal(input_rate), output_per_million=Decimal(output_rate))


def _long_context(
    base: ModelPricing, long_context: ModelPricing, threshold: int = settings.long_context_threshold
) -> list[PricingTier]:
    return [
        PricingTier(pricing=base, maximum_tokens=threshold),
        PricingTier(pricing=long_context, minimum_tokens=threshold + 1),
    ]


MODEL_PRICING: dict[str, ModelPricing | list[PricingTier]] = {
    "claude-opus-4-6": _long_context(_rates("5.00", "25.00"), _rates("10.00", "37.50")),
    "claude-opus-4-5": _rates("5.00", "25.00"),
    "claude-opus-4-1": _rates("15.00", "75.00"),
    "claude-opus-4-0": _rates("15.00", "75.00"),
    "claude-sonnet-4-5": _long_context(_rates("3.00", "15.00"), _rates("6.00", "22.50")),
    "claude-sonnet-4-0": _long_context(_rates("3.00", "15.00"), _rates("6.00", "22.50")),
    "claude-haiku-4-5": _rates("1.00", "5.00"),
    "claude-3-5-haiku-latest": _rates("0.80", "4.00"),
    "gpt-5.2": _rates("1.75", "14.00"),
    "gpt-5.1": _rates("1.25", "10.00"),
    "gpt-5": _rates("1.25", "10.00"),
    "gpt-5-mini": _rates("0.25", "2.00"),
    "gpt-5-nano": _rates("0.05", "0.40"),
    "gpt-5-codex": _rates("1.25", "10.00"),
    "gpt-5-pro": _rates("15.00", "120.00"),
    "gpt-4.1": _rates("2.00", "8.00"),
    "gpt-4.1-mini": _rates("0.40", "1.60"),
    "gpt-4o": _rates("2.50", "10.00"),
    "gpt-4o-mini": _rates("0.15", "0.60"),
    "gemini-3-pro-preview": _rates("2.00", "12.00"),
    "gemini-2.5-pro": _rates("1.25", "10.00"),
    "gemini-2.5-flash": _rates("0.30", "2.50"),
    "gemini-2.5-flash-lite": _rates("0.10", "0.40"),
    "grok-code-fast-1": _rates("0.20", "1.50"),
    "grok-3": _rates("3.00", "15.00"),
}


def get_pricing(model_id: str, total_input_tokens: int = 0) -> ModelPricing | None:
    """Rates for a model at a given input size, or None for unknown models."""
    entry = MODEL_PRICING.get(model_id)
    if entry is None:
        return None
    if isinstance(entry, ModelPricing):
        return entry
    for tier in entry:
        if tier.applies_to(total_input_tokens):
            return tier.pricing
    return None


def calculate_cost(
    model_id: str,
    prompt_tokens: int,
    completion_tokens: int,
    cache_write_tokens: int = 0,
    cache_read_tokens: int = 0,
) -> Decimal:
    """Cost in USD of one model call; unknown models cost nothing."""
    total_input = prompt_tokens + cache_write_tokens + cache_read_tokens
    pricing = get_pricing(model_id, total_input)
    if pricing is None:
        logger.warning("No pricing for model %s; recording zero cost", model_id)
        return Decimal("0")
    return pricing.calculate_cost(
        prompt_tokens, completion_tokens, cache_write_tokens, cache_read_tokens
    )


@dataclass
class TokenUsage:
    """Token usage reported when a turn completes."""

    prompt_tokens: int
    completion_tokens: int
    model_id: str
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    token_count: int | None = None

    @property
    def total_tokens(self) -> int:
        if self.token_count is not None:
            return self.token_count
        return (
            self.prompt_tokens
            + self.completion_tokens
            + self.cache_read_tokens
            + self.cache_write_tokens
        )


# =============================================================================
# Ledger writes
# =============================================================================


async def insert_cost_record(
    session: AsyncSession,
    context: ContextRef,
    *,
    model_id: str,
    prompt_tokens: int,
    completion_tokens: int,
    cost_usd: Decimal,
    cache_read_tokens: int = 0,
    cache_write_tokens: int = 0,
    turn_id: str | None = None,
    session_id: str | None = None,
    agent_role: str | None = None,
) -> CostRecord:
    context_type, context_id = context_columns(context)
    record = CostRecord(
        id=ids.cost_record_id(),
        context_type=context_type,
        context_id=context_id,
        turn_id=turn_id,
        session_id=session_id,
        model_id=model_id,
        agent_role=agent_role,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        cache_read_tokens=cache_read_tokens,
        cache_write_tokens=cache_write_tokens,
        cost_usd=cost_usd,
    )
    session.add(record)
    await session.flush()
    await publish(
        EventType.COST_RECORDED,
        workflow_id=context_id if context_type == ContextType.WORKFLOW else None,
        entity_id=record.id,
        cost_usd=str(cost_usd),
    )
    return record


async def record_turn_cost(
    session: AsyncSession,
    context: ContextRef,
    turn: Turn,
    agent_role: str | None = None,
) -> CostRecord:
    """Price a completed turn and append it to the ledger."""
    if turn.status != TurnStatus.COMPLETED.value or not turn.model_id:
        raise InvalidTransitionError(
            f"Turn '{turn.id}' has no completed usage to record (status '{turn.status}')"
        )
    prompt = turn.prompt_tokens or 0
    completion = turn.completion_tokens or 0
    cache_read = turn.cache_read_tokens or 0
    cache_write = turn.cache_write_tokens or 0
    return await insert_cost_record(
        session,
        context,
        model_id=turn.model_id,
        prompt_tokens=prompt,
        completion_tokens=completion,
        cache_read_tokens=cache_read,
        cache_write_tokens=cache_write,
        cost_usd=calculate_cost(turn.model_id, prompt, completion, cache_write, cache_read),
        turn_id=turn.id,
        session_id=turn.session_id,
        agent_role=agent_role,
    )


# =============================================================================
# Aggregates
# =============================================================================


async def _sum_cost(session: AsyncSession, *conditions: Any) -> Decimal:
    result = await session.execute(
        select(func.coalesce(func.sum(CostRecord.cost_usd), 0)).where(*conditions)
    )
    return _as_decimal(result.scalar_one())


async def sum_by_context(session: AsyncSession, context: ContextRef) -> Decimal:
    context_type, context_id = context_columns(context)
    return await _sum_cost(
        session,
        CostRecord.context_type == context_type,
        CostRecord.context_id == context_id,
    )


async def sum_by_context_ids(
    session: AsyncSession, context_type: ContextType | str, context_ids: Sequence[str]
) -> Decimal:
    if not context_ids:
        return Decimal("0")
    return await _sum_cost(
        session,
        CostRecord.context_type == ContextType(context_type).value,
        CostRecord.context_id.in_(list(context_ids)),
    )


def _workflow_scope(workflow_id: str, subtask_ids: Sequence[str]) -> Any:
    workflow_rows = and_(
        CostRecord.context_type == ContextType.WORKFLOW.value,
        CostRecord.context_id == workflow_id,
    )
    if not subtask_ids:
        return workflow_rows
    return or_(
        workflow_rows,
        and_(
            CostRecord.context_type == ContextType.SUBTASK.value,
            CostRecord.context_id.in_(list(subtask_ids)),
        ),
    )


async def get_total_workflow_cost(
    session: AsyncSession, workflow_id: str, subtask_ids: Sequence[str]
) -> Decimal:
    """Total spend for a workflow including its delegated subtask work."""
    return await _sum_cost(session, _workflow_scope(workflow_id, subtask_ids))


async def delete_workflow_costs(
    session: AsyncSession, workflow_id: str, subtask_ids: Sequence[str]
) -> int:
    """Drop a workflow's ledger rows. Only full workflow teardown calls this."""
    result = await session.execute(
        delete(CostRecord)
        .where(_workflow_scope(workflow_id, subtask_ids))
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount


@dataclass
class CostBreakdown:
    total_cost: Decimal = Decimal("0")
    prompt_tokens: int = 0
    completion_tokens: int = 0
    by_role: list[dict[str, Any]] = field(default_factory=list)
    by_model: list[dict[str, Any]] = field(default_factory=list)


async def get_cost_breakdown(
    session: AsyncSession, workflow_id: str, subtask_ids: Sequence[str] = ()
) -> CostBreakdown:
    """Return cost/token breakdown for a workflow, by agent role and by model."""
    scope = _workflow_scope(workflow_id, subtask_ids)
    totals_row = (
        await session.execute(
            select(
                func.coalesce(func.sum(CostRecord.cost_usd), 0),
                func.coalesce(func.sum(CostRecord.prompt_tokens), 0),
                func.coalesce(func.sum(CostRecord.completion_tokens), 0),
            ).where(scope)
        )
    ).one()

    breakdown = CostBreakdown(
        total_cost=_as_decimal(totals_row[0]),
        prompt_tokens=int(totals_row[1] or 0),
        completion_tokens=int(totals_row[2] or 0),
    )

    by_role_rows = (
        await session.execute(
            select(
                CostRecord.agent_role,
                func.coalesce(func.sum(CostRecord.cost_usd), 0),
                func.coalesce(func.sum(CostRecord.prompt_tokens), 0),
                func.coalesce(func.sum(CostRecord.completion_tokens), 0),
            )
            .where(scope)
            .group_by(CostRecord.agent_role)
            .order_by(func.sum(CostRecord.cost_usd).desc())
        )
    ).all()
    for role, cost, prompt, completion in by_role_rows:
        breakdown.by_role.append(
            {
                "agent_role": role,
                "total_cost": _as_decimal(cost),
                "prompt_tokens": int(prompt or 0),
                "completion_tokens": int(completion or 0),
            }
        )

    by_model_rows = (
        await session.execute(
            select(
                CostRecord.model_id,
                func.coalesce(func.sum(CostRecord.cost_usd), 0),
                func.coalesce(func.sum(CostRecord.prompt_tokens), 0),
                func.coalesce(func.sum(CostRecord.completion_tokens), 0),
            )
            .where(scope)
            .group_by(CostRecord.model_id)
            .order_by(func.sum(CostRecord.cost_usd).desc())
        )
    ).all()
    for model_id, cost, prompt, completion in by_model_rows:
        breakdown.by_model.append(
            {
                "model_id": model_id,
                "total_cost": _as_decimal(cost),
                "prompt_tokens": int(prompt or 0),
                "completion_tokens": int(completion or 0),
            }
        )

    return breakdown


# =============================================================================
# Historical correction
# =============================================================================

# Rates that should have been charged for long-context calls (prompt tokens
# above the threshold) recorded before tiered pricing was fixed.
LONG_CONTEXT_CORRECTIONS: dict[str, ModelPricing] = {
    "claude-opus-4-6": _rates("10.00", "37.50"),
    "claude-sonnet-4-5": _rates("6.00", "22.50"),
    "claude-sonnet-4-0": _rates("6.00", "22.50"),
}

# Stored costs within this distance of the corrected value count as correct.
_COST_TOLERANCE = Decimal("0.000001")


def _corrected_cost_expr(pricing: ModelPricing):
    return (
        CostRecord.prompt_tokens * literal(float(pricing.input_per_million))
        + CostRecord.completion_tokens * literal(float(pricing.output_per_million))
    ) / literal(1_000_000.0)


def _stale_cost_filter(model_id: str, min_prompt_tokens: int, corrected: Any) -> tuple[Any, ...]:
    # Rows with cache tokens were priced by calculate_cost with tiers in place.
    return (
        CostRecord.model_id == model_id,
        CostRecord.prompt_tokens > min_prompt_tokens,
        func.coalesce(CostRecord.cache_read_tokens, 0) == 0,
        func.coalesce(CostRecord.cache_write_tokens, 0) == 0,
        func.abs(CostRecord.cost_usd - corrected) > literal(float(_COST_TOLERANCE)),
    )


async def count_costs_needing_recompute(
    session: AsyncSession, model_id: str, min_prompt_tokens: int, pricing: ModelPricing
) -> int:
    corrected = _corrected_cost_expr(pricing)
    result = await session.execute(
        select(func.count())
        .select_from(CostRecord)
        .where(*_stale_cost_filter(model_id, min_prompt_tokens, corrected))
    )
    return int(result.scalar_one())


async def recompute_costs(
    session: AsyncSession,
    model_id: str,
    min_prompt_tokens: int,
    pricing: ModelPricing,
    *,
    dry_run: bool = False,
) -> int:
    """Recalculate ``cost_usd`` from stored token counts for matching rows.

    Only rows without cache tokens whose stored cost differs from the
    corrected value are touched. Re-running after a successful repair updates
    nothing, and rows priced by the tiered path are left alone. Returns the
    number of rows that were (or, with ``dry_run``, would be) rewritten.
    """
    pending = await count_costs_needing_recompute(session, model_id, min_prompt_tokens, pricing)
    if pending == 0 or dry_run:
        return pending

    corrected = _corrected_cost_expr(pricing)
    result = await session.execute(
        update(CostRecord)
        .where(*_stale_cost_filter(model_id, min_prompt_tokens, corrected))
        .values(cost_usd=corrected)
        .execution_options(synchronize_session=False)
    )
    logger.info("Recomputed %d cost records for %s", result.rowcount, model_id)
    return result.rowcount


async def repair_long_context_costs(
    session: AsyncSession, *, dry_run: bool = False
) -> dict[str, int]:
    """One-time repair of long-context cost records; a no-op once applied."""
    repaired: dict[str, int] = {}
    for model_id, pricing in LONG_CONTEXT_CORRECTIONS.items():
        repaired[model_id] = await recompute_costs(
            session,
            model_id,
            settings.long_context_threshold,
            pricing,
            dry_run=dry_run,
        )
    return repaired
