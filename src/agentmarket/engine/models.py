"""
Engine Data Models

Subtasks, ephemeral worker agents and the orchestration phase machine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import StrEnum
from typing import Any


class SubtaskStatus(StrEnum):
    PENDING = "pending"
    DISCOVERING = "discovering"
    INVOKING = "invoking"
    COMPLETED = "completed"
    FAILED = "failed"


class Phase(StrEnum):
    """Orchestration lifecycle: started -> ... -> terminal status."""

    STARTED = "started"
    DECOMPOSING = "decomposing"
    DISCOVERING = "discovering"
    EXECUTING = "executing"
    AGGREGATING = "aggregating"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    ABORTED = "aborted"


class OrchestrationStatus(StrEnum):
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    ABORTED = "aborted"


# Subtask failure reasons that are not exception codes
NO_CANDIDATES = "no_candidates"
TIMEOUT = "timeout"
INTERNAL_ERROR = "internal_error"


@dataclass
class Subtask:
    """One node of the decomposition DAG."""

    id: str
    description: str
    capabilities: tuple[str, ...]
    dependencies: tuple[str, ...] = ()
    status: SubtaskStatus = SubtaskStatus.PENDING
    failure: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (SubtaskStatus.COMPLETED, SubtaskStatus.FAILED)

    def fail(self, reason: str) -> None:
        self.status = SubtaskStatus.FAILED
        self.failure = reason

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "capabilities": list(self.capabilities),
            "dependencies": list(self.dependencies),
            "status": self.status.value,
            "failure": self.failure,
        }


@dataclass
class Agent:
    """Ephemeral worker bound to one subtask; folded into the ledger when done."""

    id: str
    subtask_id: str
    tried: list[str] = field(default_factory=list)
    cost: Decimal = Decimal("0")
    output: Any = None
    failure: str | None = None
    service_id: str | None = None
