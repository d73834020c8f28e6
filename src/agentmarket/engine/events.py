"""
Orchestration Event Stream

Events are numbered by the ledger under its lock and fanned out to
subscribers in that order. A subscriber only sees events published after it
attached.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from agentmarket.log import get_logger

logger = get_logger("events")

ORCHESTRATION_STARTED = "orchestration-started"
PHASE_CHANGED = "phase-changed"
TASK_DECOMPOSED = "task-decomposed"
SERVICES_DISCOVERED = "services-discovered"
AGENT_SPAWNED = "agent-spawned"
SERVICE_HIRED = "service-hired"
SUBTASK_COMPLETED = "subtask-completed"
SUBTASK_FAILED = "subtask-failed"
ORCHESTRATION_COMPLETED = "orchestration-completed"
ORCHESTRATION_ERROR = "orchestration-error"

EVENT_TYPES = frozenset(
    {
        ORCHESTRATION_STARTED,
        PHASE_CHANGED,
        TASK_DECOMPOSED,
        SERVICES_DISCOVERED,
        AGENT_SPAWNED,
        SERVICE_HIRED,
        SUBTASK_COMPLETED,
        SUBTASK_FAILED,
        ORCHESTRATION_COMPLETED,
        ORCHESTRATION_ERROR,
    }
)


@dataclass(frozen=True)
class OrchestrationEvent:
    sequence: int
    type: str
    orchestration_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "type": self.type,
            "orchestrationId": self.orchestration_id,
            "timestamp": self.timestamp,
            "data": self.data,
        }


class Subscription:
    """Async iterator over events published after subscribing."""

    def __init__(self, bus: EventBus, orchestration_id: str | None = None) -> None:
        self._bus = bus
        self.orchestration_id = orchestration_id
        self.queue: asyncio.Queue[OrchestrationEvent] = asyncio.Queue()

    def __aiter__(self) -> AsyncIterator[OrchestrationEvent]:
        return self

    async def __anext__(self) -> OrchestrationEvent:
        return await self.queue.get()

    def wants(self, event: OrchestrationEvent) -> bool:
        return self.orchestration_id is None or event.orchestration_id == self.orchestration_id

    def close(self) -> None:
        self._bus.unsubscribe(self)


class EventBus:
    """In-process fan-out of orchestration events to queues and callbacks."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []
        self._listeners: list[Callable[[OrchestrationEvent], None]] = []

    def subscribe(self, orchestration_id: str | None = None) -> Subscription:
        subscription = Subscription(self, orchestration_id)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def add_listener(self, listener: Callable[[OrchestrationEvent], None]) -> None:
        self._listeners.append(listener)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: OrchestrationEvent) -> None:
        for subscription in list(self._subscriptions):
            if subscription.wants(event):
                subscription.queue.put_nowait(event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("event listener failed on %s", event.type)
