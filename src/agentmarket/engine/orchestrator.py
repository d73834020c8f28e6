"""Orchestrator - Decomposes a goal, hires services per subtask and aggregates the results."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from agentmarket.discovery.health import HealthProber
from agentmarket.discovery.models import HealthResult, ServiceDescriptor, ServiceQuery
from agentmarket.discovery.ranking import RankingWeights, rank
from agentmarket.discovery.registry import CapabilityRegistry
from agentmarket.engine import events
from agentmarket.engine.decomposer import TaskDecomposer, topological_order
from agentmarket.engine.events import EventBus
from agentmarket.engine.ledger import LedgerEntry, OrchestrationLedger, Reservation
from agentmarket.engine.models import (
    INTERNAL_ERROR,
    NO_CANDIDATES,
    TIMEOUT,
    Agent,
    OrchestrationStatus,
    Phase,
    Subtask,
    SubtaskStatus,
)
from agentmarket.errors import (
    AllCandidatesFailed,
    BudgetExceeded,
    DecompositionInvariantViolation,
    SkippedDueToDependency,
)
from agentmarket.log import get_logger
from agentmarket.payment.executor import InvocationExecutor
from agentmarket.payment.models import AttemptRecord, InvocationResult

if TYPE_CHECKING:
    from agentmarket.storage.ledger_store import LedgerStore

logger = get_logger("orchestrator")

DISCOVERY_LIMIT = 50


@dataclass
class OrchestrationResult:
    """Result of one orchestration: always carries the closed ledger."""

    orchestration_id: str
    status: OrchestrationStatus
    deliverable: dict[str, Any] | None
    ledger: OrchestrationLedger
    error: str | None = None

    @property
    def total_cost(self) -> Decimal:
        return self.ledger.total_cost

    def to_dict(self) -> dict[str, Any]:
        return {
            "orchestration_id": self.orchestration_id,
            "status": self.status.value,
            "deliverable": self.deliverable,
            "total_cost": str(self.ledger.total_cost),
            "error": self.error,
            "ledger": self.ledger.to_dict(),
        }


class Orchestrator:
    """
    Top-level control loop.

    Workflow:
    1. Decompose the goal into a DAG of subtasks
    2. Discover candidates per subtask and probe each distinct service once
    3. Run one worker per ready subtask, at most max_concurrent at a time
    4. Aggregate completed outputs in topological order
    """

    DEFAULT_MAX_CONCURRENT = 10

    def __init__(
        self,
        registry: CapabilityRegistry,
        prober: HealthProber,
        executor: InvocationExecutor,
        decomposer: TaskDecomposer | None = None,
        weights: RankingWeights | None = None,
        event_bus: EventBus | None = None,
        ledger_store: LedgerStore | None = None,
        per_call_budget: Decimal | None = None,
        probe_timeout: float | None = None,
    ) -> None:
        self.registry = registry
        self.prober = prober
        self.executor = executor
        self.decomposer = decomposer or TaskDecomposer()
        self.weights = weights or RankingWeights()
        self.event_bus = event_bus or EventBus()
        self.ledger_store = ledger_store
        self.per_call_budget = per_call_budget
        self.probe_timeout = probe_timeout

    async def orchestrate(
        self,
        goal: str,
        budget_ceiling: Decimal,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        timeout: float | None = None,
        orchestration_id: str | None = None,
    ) -> OrchestrationResult:
        """
        Run a goal end to end.

        Args:
            goal: Free-text goal
            budget_ceiling: Maximum total spend for the whole orchestration
            max_concurrent: Maximum probes and workers in flight
            timeout: Seconds after which no new workers are dispatched
            orchestration_id: Explicit id (default: generated)

        Returns:
            OrchestrationResult with status, deliverable and the closed ledger
        """
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None

        ledger = OrchestrationLedger(
            orchestration_id=orchestration_id or f"orch-{uuid.uuid4().hex[:8]}",
            goal=goal,
            budget_ceiling=Decimal(budget_ceiling),
            on_event=self.event_bus.publish,
        )
        ledger.emit(
            events.ORCHESTRATION_STARTED,
            {"goal": goal, "budgetCeiling": str(ledger.budget_ceiling)},
        )
        logger.info("%s started: %r (budget %s)", ledger.orchestration_id, goal, budget_ceiling)

        # 1. Decompose
        self._phase(ledger, Phase.DECOMPOSING)
        try:
            subtasks = topological_order(self.decomposer.decompose(goal))
        except DecompositionInvariantViolation as e:
            logger.error("%s aborted: %s", ledger.orchestration_id, e.message)
            ledger.emit(events.ORCHESTRATION_ERROR, {"reason": e.message, "code": e.code})
            self._phase(ledger, Phase.ABORTED)
            return await self._finish(ledger, OrchestrationStatus.ABORTED, None, e.code)

        ledger.emit(events.TASK_DECOMPOSED, {"subtasks": [s.to_dict() for s in subtasks]})

        # 2. Discover and probe
        self._phase(ledger, Phase.DISCOVERING)
        candidates = self._discover(ledger, subtasks)
        distinct = {s.id: s for services in candidates.values() for s in services}
        health = await self.prober.probe_many(
            distinct.values(), max_concurrent=max_concurrent, timeout=self.probe_timeout
        )

        # 3. Execute
        self._phase(ledger, Phase.EXECUTING)
        outputs = await self._execute(
            ledger, goal, subtasks, candidates, health, max_concurrent, deadline
        )

        # 4. Aggregate
        self._phase(ledger, Phase.AGGREGATING)
        deliverable = self._aggregate(ledger, goal, subtasks, outputs)

        if all(s.status == SubtaskStatus.COMPLETED for s in subtasks):
            status = OrchestrationStatus.COMPLETED
        else:
            status = OrchestrationStatus.PARTIALLY_COMPLETED

        self._phase(ledger, Phase(status.value))
        ledger.emit(
            events.ORCHESTRATION_COMPLETED,
            {"totalCost": str(ledger.total_cost), "deliverable": deliverable, "status": status.value},
        )
        logger.info(
            "%s %s: %d/%d subtasks, spent %s of %s",
            ledger.orchestration_id,
            status.value,
            deliverable["completed"],
            len(subtasks),
            ledger.total_cost,
            ledger.budget_ceiling,
        )
        return await self._finish(ledger, status, deliverable, None)

    def _phase(self, ledger: OrchestrationLedger, phase: Phase) -> None:
        ledger.emit(events.PHASE_CHANGED, {"phase": phase.value})

    def _discover(
        self, ledger: OrchestrationLedger, subtasks: list[Subtask]
    ) -> dict[str, list[ServiceDescriptor]]:
        found: dict[str, list[ServiceDescriptor]] = {}
        for subtask in subtasks:
            subtask.status = SubtaskStatus.DISCOVERING
            found[subtask.id] = self.registry.search(
                ServiceQuery(capabilities=list(subtask.capabilities), limit=DISCOVERY_LIMIT)
            )
            ledger.emit(
                events.SERVICES_DISCOVERED,
                {"subtaskId": subtask.id, "count": len(found[subtask.id])},
            )
        return found

    async def _execute(
        self,
        ledger: OrchestrationLedger,
        goal: str,
        subtasks: list[Subtask],
        candidates: dict[str, list[ServiceDescriptor]],
        health: dict[str, HealthResult],
        max_concurrent: int,
        deadline: float | None,
    ) -> dict[str, Any]:
        """Dispatch workers as dependencies complete; returns outputs by subtask id."""
        loop = asyncio.get_running_loop()
        by_id = {s.id: s for s in subtasks}
        outputs: dict[str, Any] = {}
        undispatched = list(subtasks)
        running: dict[asyncio.Task[None], Subtask] = {}
        timed_out = False

        while True:
            self._skip_failed_dependents(ledger, undispatched, by_id)

            if not timed_out and deadline is not None and loop.time() >= deadline:
                timed_out = True
                logger.warning(
                    "%s timed out with %d subtasks undispatched",
                    ledger.orchestration_id,
                    len(undispatched),
                )
                for subtask in undispatched:
                    self._fail(ledger, subtask, TIMEOUT, "orchestration timed out before dispatch")
                undispatched.clear()

            for subtask in list(undispatched):
                if len(running) >= max_concurrent:
                    break
                if all(by_id[d].status == SubtaskStatus.COMPLETED for d in subtask.dependencies):
                    undispatched.remove(subtask)
                    inputs = {d: outputs.get(d) for d in subtask.dependencies}
                    task = asyncio.create_task(
                        self._run_worker(
                            ledger, goal, subtask, candidates[subtask.id], health, inputs, outputs
                        )
                    )
                    running[task] = subtask

            if not running:
                break

            wait_for = None
            if deadline is not None and not timed_out:
                wait_for = max(0.0, deadline - loop.time())
            done, _ = await asyncio.wait(
                running.keys(), timeout=wait_for, return_when=asyncio.FIRST_COMPLETED
            )
            for task in done:
                running.pop(task)
                task.result()

        return outputs

    def _skip_failed_dependents(
        self,
        ledger: OrchestrationLedger,
        undispatched: list[Subtask],
        by_id: dict[str, Subtask],
    ) -> None:
        # Topological order makes one pass transitive
        for subtask in list(undispatched):
            failed = [d for d in subtask.dependencies if by_id[d].status == SubtaskStatus.FAILED]
            if failed:
                undispatched.remove(subtask)
                skipped = SkippedDueToDependency(subtask.id, failed[0])
                self._fail(ledger, subtask, skipped.code, skipped.message)

    async def _run_worker(
        self,
        ledger: OrchestrationLedger,
        goal: str,
        subtask: Subtask,
        services: list[ServiceDescriptor],
        health: dict[str, HealthResult],
        inputs: dict[str, Any],
        outputs: dict[str, Any],
    ) -> None:
        agent = Agent(id=f"agent-{uuid.uuid4().hex[:8]}", subtask_id=subtask.id)
        ledger.emit(events.AGENT_SPAWNED, {"subtaskId": subtask.id, "agentId": agent.id})

        attempts: list[AttemptRecord] = []
        reservation: Reservation | None = None

        def on_attempt(record: AttemptRecord) -> None:
            attempts.append(record)
            agent.tried.append(record.service_id)
            agent.cost += record.cost
            self.registry.record_outcome(record.service_id, record.succeeded, record.response_time_ms)

        def extend_budget(shortfall: Decimal) -> bool:
            nonlocal reservation
            assert reservation is not None
            if self.per_call_budget is not None and reservation.amount + shortfall > self.per_call_budget:
                return False
            try:
                reservation = ledger.extend(reservation, shortfall)
            except BudgetExceeded as e:
                logger.info("%s cannot extend its reservation: %s", subtask.id, e.message)
                return False
            return True

        try:
            ranked = rank(services, health, self.weights)
            if not ranked:
                self._fail(
                    ledger, subtask, NO_CANDIDATES, "no services offer the required capabilities", agent
                )
                return

            # Only the top candidate is held up front; fallbacks extend the hold
            top_price = ranked[0].price
            if self.per_call_budget is not None and top_price > self.per_call_budget:
                raise BudgetExceeded(top_price, self.per_call_budget)
            reservation = ledger.reserve(subtask.id, top_price)

            subtask.status = SubtaskStatus.INVOKING
            payload = {
                "goal": goal,
                "task": subtask.description,
                "capabilities": list(subtask.capabilities),
                "inputs": inputs,
            }
            result = await self.executor.invoke_with_fallback(
                ranked,
                payload,
                reservation.amount,
                on_attempt=on_attempt,
                extend_budget=extend_budget,
            )
            ledger.settle(reservation, result.total_cost)
            self._complete(ledger, subtask, agent, result, outputs)
        except (AllCandidatesFailed, BudgetExceeded) as e:
            sunk = self._release(ledger, reservation, attempts)
            self._fail(ledger, subtask, e.code, e.message, agent, attempts, sunk)
        except Exception as e:
            logger.exception("%s worker failed unexpectedly", subtask.id)
            sunk = self._release(ledger, reservation, attempts)
            if not subtask.is_terminal:
                message = f"{type(e).__name__}: {e}"
                self._fail(ledger, subtask, INTERNAL_ERROR, message, agent, attempts, sunk)

    def _complete(
        self,
        ledger: OrchestrationLedger,
        subtask: Subtask,
        agent: Agent,
        result: InvocationResult,
        outputs: dict[str, Any],
    ) -> None:
        agent.service_id = result.service_id
        agent.output = result.response.result
        outputs[subtask.id] = agent.output
        subtask.status = SubtaskStatus.COMPLETED

        ledger.emit(
            events.SERVICE_HIRED,
            {
                "agentId": agent.id,
                "serviceId": result.service_id,
                "cost": str(result.response.cost),
            },
        )
        ledger.record(
            LedgerEntry(
                subtask_id=subtask.id,
                status=SubtaskStatus.COMPLETED.value,
                cost=result.total_cost,
                service_id=result.service_id,
                agent_id=agent.id,
                proofs=tuple(result.proofs),
                attempts=tuple(result.attempts),
            )
        )
        ledger.emit(
            events.SUBTASK_COMPLETED,
            {
                "subtaskId": subtask.id,
                "agentId": agent.id,
                "serviceId": result.service_id,
                "cost": str(result.total_cost),
            },
        )

    def _release(
        self,
        ledger: OrchestrationLedger,
        reservation: Reservation | None,
        attempts: list[AttemptRecord],
    ) -> Decimal:
        """Settle a failed worker's reservation with whatever was already paid."""
        sunk = sum((a.cost for a in attempts), Decimal("0"))
        if reservation is not None and ledger.is_outstanding(reservation):
            ledger.settle(reservation, sunk)
        return sunk

    def _fail(
        self,
        ledger: OrchestrationLedger,
        subtask: Subtask,
        reason: str,
        message: str,
        agent: Agent | None = None,
        attempts: list[AttemptRecord] | None = None,
        cost: Decimal = Decimal("0"),
    ) -> None:
        subtask.fail(reason)
        if agent is not None:
            agent.failure = reason
        attempts = attempts or []
        ledger.record(
            LedgerEntry(
                subtask_id=subtask.id,
                status=SubtaskStatus.FAILED.value,
                cost=cost,
                agent_id=agent.id if agent else None,
                proofs=tuple(a.proof for a in attempts if a.proof is not None),
                attempts=tuple(attempts),
                error=message,
            )
        )
        ledger.emit(
            events.SUBTASK_FAILED,
            {"subtaskId": subtask.id, "reason": reason, "message": message},
        )
        logger.warning("%s failed (%s): %s", subtask.id, reason, message)

    def _aggregate(
        self,
        ledger: OrchestrationLedger,
        goal: str,
        subtasks: list[Subtask],
        outputs: dict[str, Any],
    ) -> dict[str, Any]:
        sections = []
        for subtask in subtasks:
            if subtask.status != SubtaskStatus.COMPLETED:
                continue
            entry = ledger.entry_for(subtask.id)
            sections.append(
                {
                    "subtaskId": subtask.id,
                    "description": subtask.description,
                    "serviceId": entry.service_id if entry else None,
                    "output": outputs.get(subtask.id),
                }
            )
        return {
            "goal": goal,
            "sections": sections,
            "completed": len(sections),
            "failed": sum(1 for s in subtasks if s.status == SubtaskStatus.FAILED),
            "failures": [
                {"subtaskId": s.id, "reason": s.failure}
                for s in subtasks
                if s.status == SubtaskStatus.FAILED
            ],
        }

    async def _finish(
        self,
        ledger: OrchestrationLedger,
        status: OrchestrationStatus,
        deliverable: dict[str, Any] | None,
        error: str | None,
    ) -> OrchestrationResult:
        ledger.close(status.value)
        if self.ledger_store is not None:
            try:
                await self.ledger_store.save(ledger)
            except Exception:
                logger.exception("failed to archive ledger %s", ledger.orchestration_id)
        return OrchestrationResult(
            orchestration_id=ledger.orchestration_id,
            status=status,
            deliverable=deliverable,
            ledger=ledger,
            error=error,
        )
