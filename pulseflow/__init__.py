"""
Pulseflow

A workflow engine for agent-driven coding tasks: a stage state machine with
approval gates, checkpointed execution pulses, preflight issue baselines,
hierarchical agent sessions and a cost ledger, all backed by SQLAlchemy.
"""

__version__ = "0.1.0"

# Configuration
from pulseflow.config import Settings

# Contexts
from pulseflow.context import ChannelContext, ContextRef, SubtaskContext, WorkflowContext

# Cost tracking
from pulseflow.costs import ModelPricing, TokenUsage

# Errors
from pulseflow.errors import (
    InvalidTransitionError,
    JsonFieldError,
    MigrationError,
    PulseflowError,
    SchemaNotInitializedError,
)

# Events
from pulseflow.events import EngineEvent, EventType, event_bus

# Core models
from pulseflow.models import (
    AgentSession,
    CostRecord,
    Plan,
    PreflightBaseline,
    PreflightSetup,
    Pulse,
    ResearchCard,
    ReviewCard,
    ReviewComment,
    ScopeCard,
    Subtask,
    Turn,
    Workflow,
)

# Status vocabularies
from pulseflow.states import PulseStatus, WorkflowStatus

__all__ = [
    # Version
    "__version__",
    # Models
    "Workflow",
    "Pulse",
    "PreflightSetup",
    "PreflightBaseline",
    "AgentSession",
    "Turn",
    "Subtask",
    "ScopeCard",
    "ResearchCard",
    "Plan",
    "ReviewCard",
    "ReviewComment",
    "CostRecord",
    # Config
    "Settings",
    # Contexts
    "WorkflowContext",
    "ChannelContext",
    "SubtaskContext",
    "ContextRef",
    # Costs
    "ModelPricing",
    "TokenUsage",
    # Errors
    "PulseflowError",
    "InvalidTransitionError",
    "JsonFieldError",
    "MigrationError",
    "SchemaNotInitializedError",
    # Events
    "EngineEvent",
    "EventType",
    "event_bus",
    # States
    "WorkflowStatus",
    "PulseStatus",
]
