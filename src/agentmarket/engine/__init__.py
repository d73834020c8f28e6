"""Orchestration engine: decomposition, ledger, events and the control loop."""

from agentmarket.engine.decomposer import (
    TaskDecomposer,
    heuristic_decompose,
    topological_order,
    validate_dag,
)
from agentmarket.engine.events import EventBus, OrchestrationEvent, Subscription
from agentmarket.engine.ledger import LedgerEntry, OrchestrationLedger, Reservation
from agentmarket.engine.models import (
    Agent,
    OrchestrationStatus,
    Phase,
    Subtask,
    SubtaskStatus,
)
from agentmarket.engine.orchestrator import OrchestrationResult, Orchestrator

__all__ = [
    "Agent",
    "EventBus",
    "LedgerEntry",
    "OrchestrationEvent",
    "OrchestrationLedger",
    "OrchestrationResult",
    "OrchestrationStatus",
    "Orchestrator",
    "Phase",
    "Reservation",
    "Subscription",
    "Subtask",
    "SubtaskStatus",
    "TaskDecomposer",
    "heuristic_decompose",
    "topological_order",
    "validate_dag",
]
