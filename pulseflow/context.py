"""Execution contexts that sessions, notes, todos and cost records belong to.

Call sites work with the typed variants below; the two physical columns
(``context_type``, ``context_id``) only appear at the storage layer.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import ClassVar


class ContextType(StrEnum):
    WORKFLOW = "workflow"
    CHANNEL = "channel"
    SUBTASK = "subtask"


@dataclass(frozen=True)
class WorkflowContext:
    workflow_id: str

    context_type: ClassVar[ContextType] = ContextType.WORKFLOW

    @property
    def context_id(self) -> str:
        return self.workflow_id


@dataclass(frozen=True)
class ChannelContext:
    channel_id: str

    context_type: ClassVar[ContextType] = ContextType.CHANNEL

    @property
    def context_id(self) -> str:
        return self.channel_id


@dataclass(frozen=True)
class SubtaskContext:
    subtask_id: str

    context_type: ClassVar[ContextType] = ContextType.SUBTASK

    @property
    def context_id(self) -> str:
        return self.subtask_id


ContextRef = WorkflowContext | ChannelContext | SubtaskContext


def context_columns(ref: ContextRef) -> tuple[str, str]:
    """Translate a context into its ``(context_type, context_id)`` columns."""
    if isinstance(ref, WorkflowContext):
        return ContextType.WORKFLOW.value, ref.workflow_id
    if isinstance(ref, ChannelContext):
        return ContextType.CHANNEL.value, ref.channel_id
    if isinstance(ref, SubtaskContext):
        return ContextType.SUBTASK.value, ref.subtask_id
    raise TypeError(f"Unsupported context: {ref!r}")


def context_from_columns(context_type: str, context_id: str) -> ContextRef:
    kind = ContextType(context_type)
    if kind is ContextType.WORKFLOW:
        return WorkflowContext(context_id)
    if kind is ContextType.CHANNEL:
        return ChannelContext(context_id)
    return SubtaskContext(context_id)
