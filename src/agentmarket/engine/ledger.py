"""
Orchestration Ledger

Append-only record of spend, outcomes and events for one orchestration.
Every mutation runs under one lock, and ``spent + reserved <= ceiling`` holds
after each of them. Once closed the ledger is immutable.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from agentmarket.engine.events import EVENT_TYPES, OrchestrationEvent
from agentmarket.errors import BudgetExceeded, LedgerClosed
from agentmarket.payment.models import AttemptRecord, PaymentProof


@dataclass(frozen=True)
class Reservation:
    """Budget held for one subtask's invocation."""

    id: int
    subtask_id: str
    amount: Decimal


@dataclass(frozen=True)
class LedgerEntry:
    """Final outcome of one subtask."""

    subtask_id: str
    status: str  # completed, failed
    cost: Decimal = Decimal("0")
    service_id: str | None = None
    agent_id: str | None = None
    proofs: tuple[PaymentProof, ...] = ()
    attempts: tuple[AttemptRecord, ...] = ()
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "subtask_id": self.subtask_id,
            "status": self.status,
            "cost": str(self.cost),
            "service_id": self.service_id,
            "agent_id": self.agent_id,
            "proofs": [p.to_dict() for p in self.proofs],
            "attempts": [a.to_dict() for a in self.attempts],
            "error": self.error,
        }


@dataclass
class OrchestrationLedger:
    """Spend and outcome record for one top-level request."""

    orchestration_id: str
    goal: str
    budget_ceiling: Decimal
    on_event: Callable[[OrchestrationEvent], None] | None = None
    total_cost: Decimal = Decimal("0")
    status: str = "open"
    closed_at: str | None = None
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())
    _entries: list[LedgerEntry] = field(default_factory=list, repr=False)
    _events: list[OrchestrationEvent] = field(default_factory=list, repr=False)
    _reservations: dict[int, Reservation] = field(default_factory=dict, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _next_reservation: int = field(default=1, repr=False)

    def __post_init__(self) -> None:
        if self.budget_ceiling < 0:
            raise ValueError(f"budget_ceiling must be >= 0, got {self.budget_ceiling}")

    @property
    def closed(self) -> bool:
        return self.closed_at is not None

    @property
    def reserved(self) -> Decimal:
        return sum((r.amount for r in self._reservations.values()), Decimal("0"))

    @property
    def remaining(self) -> Decimal:
        return self.budget_ceiling - self.total_cost - self.reserved

    @property
    def entries(self) -> list[LedgerEntry]:
        return list(self._entries)

    @property
    def events(self) -> list[OrchestrationEvent]:
        return list(self._events)

    def reserve(self, subtask_id: str, wanted: Decimal, minimum: Decimal | None = None) -> Reservation:
        """
        Hold budget for a subtask.

        Args:
            subtask_id: Subtask the reservation is for
            wanted: Preferred amount; capped at the remaining budget
            minimum: Smallest acceptable amount (default: wanted)

        Raises:
            BudgetExceeded: Remaining budget is below the minimum
            LedgerClosed: Ledger already closed
        """
        minimum = wanted if minimum is None else minimum
        with self._lock:
            self._check_open()
            remaining = self.remaining
            amount = min(wanted, remaining)
            if amount < minimum:
                raise BudgetExceeded(minimum, remaining)
            reservation = Reservation(self._next_reservation, subtask_id, amount)
            self._next_reservation += 1
            self._reservations[reservation.id] = reservation
            return reservation

    def extend(self, reservation: Reservation, additional: Decimal) -> Reservation:
        """
        Grow an outstanding reservation, e.g. before a costlier fallback.

        Returns:
            The enlarged reservation (same id)

        Raises:
            BudgetExceeded: Remaining budget is below the additional amount
            LedgerClosed: Ledger already closed
        """
        if additional < 0:
            raise ValueError(f"additional amount must be >= 0, got {additional}")
        with self._lock:
            self._check_open()
            held = self._outstanding(reservation)
            remaining = self.remaining
            if additional > remaining:
                raise BudgetExceeded(additional, remaining)
            grown = Reservation(held.id, held.subtask_id, held.amount + additional)
            self._reservations[held.id] = grown
            return grown

    def settle(self, reservation: Reservation, cost: Decimal) -> None:
        """Record the actual cost of a reservation and release the rest."""
        with self._lock:
            self._check_open()
            held = self._outstanding(reservation)
            if cost < 0 or cost > held.amount:
                raise ValueError(f"cost {cost} outside reservation of {held.amount}")
            del self._reservations[reservation.id]
            self.total_cost += cost

    def record(self, entry: LedgerEntry) -> None:
        with self._lock:
            self._check_open()
            self._entries.append(entry)

    def emit(self, event_type: str, data: dict[str, Any] | None = None) -> OrchestrationEvent:
        """Append an event with the next sequence number and publish it."""
        if event_type not in EVENT_TYPES:
            raise ValueError(f"unknown event type: {event_type!r}")
        with self._lock:
            self._check_open()
            event = OrchestrationEvent(
                sequence=len(self._events) + 1,
                type=event_type,
                orchestration_id=self.orchestration_id,
                data=data or {},
            )
            self._events.append(event)
            if self.on_event is not None:
                self.on_event(event)
            return event

    def close(self, status: str) -> None:
        """Close the ledger. Outstanding reservations are released."""
        with self._lock:
            self._check_open()
            self._reservations.clear()
            self.status = status
            self.closed_at = datetime.now().isoformat()

    def entry_for(self, subtask_id: str) -> LedgerEntry | None:
        for entry in self._entries:
            if entry.subtask_id == subtask_id:
                return entry
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "orchestration_id": self.orchestration_id,
            "goal": self.goal,
            "status": self.status,
            "budget_ceiling": str(self.budget_ceiling),
            "total_cost": str(self.total_cost),
            "created_at": self.created_at,
            "closed_at": self.closed_at,
            "entries": [e.to_dict() for e in self._entries],
            "events": [e.to_dict() for e in self._events],
        }

    def is_outstanding(self, reservation: Reservation) -> bool:
        return reservation.id in self._reservations

    def _outstanding(self, reservation: Reservation) -> Reservation:
        held = self._reservations.get(reservation.id)
        if held is None:
            raise ValueError(f"reservation {reservation.id} is not outstanding")
        return held

    def _check_open(self) -> None:
        if self.closed_at is not None:
            raise LedgerClosed(
                f"ledger {self.orchestration_id} is closed",
                {"orchestration_id": self.orchestration_id},
            )
