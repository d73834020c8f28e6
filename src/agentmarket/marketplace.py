"""
Marketplace - Wires the registry, prober, payment stack and orchestrator together.

Entry points for library callers::

    async with Marketplace(settings, wallet=my_wallet) as market:
        result = await market.orchestrate("Summarize AI news", Decimal("1.00"))

    result = run_orchestration("Summarize AI news", Decimal("1.00"))
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any

import httpx

from agentmarket.config import Settings, load_settings
from agentmarket.discovery.health import HealthProber
from agentmarket.discovery.models import ServiceDescriptor, ServiceQuery
from agentmarket.discovery.ranking import RankingWeights
from agentmarket.discovery.registry import CapabilityRegistry
from agentmarket.engine.decomposer import Planner, TaskDecomposer
from agentmarket.engine.events import EventBus
from agentmarket.engine.orchestrator import OrchestrationResult, Orchestrator
from agentmarket.payment.executor import InvocationExecutor
from agentmarket.payment.gateway import PaymentGatewayClient
from agentmarket.payment.limits import SpendingLimits, SpendingStats
from agentmarket.payment.wallet import ApprovalWallet, Approver, SimulatedWallet, Wallet
from agentmarket.storage.ledger_store import LedgerStore


class Marketplace:
    """
    Facade over the marketplace runtime.

    Args:
        settings: Runtime settings (default: load_settings())
        wallet: Wallet used to pay challenges (default: SimulatedWallet)
        approver: Approval callback for payments above settings.approval_threshold
        client: Shared httpx client for probes and calls (default: owned client)
        registry: Existing registry (default: one under settings.data_dir)
        planner: Optional planner replacing the keyword decomposition
        event_bus: Bus that receives every orchestration event
        archive: Persist closed ledgers in the ledger store
    """

    def __init__(
        self,
        settings: Settings | None = None,
        wallet: Wallet | None = None,
        approver: Approver | None = None,
        client: httpx.AsyncClient | None = None,
        registry: CapabilityRegistry | None = None,
        planner: Planner | None = None,
        event_bus: EventBus | None = None,
        archive: bool = True,
    ) -> None:
        self.settings = settings or load_settings()
        wallet = wallet or SimulatedWallet()
        if approver is not None and self.settings.approval_threshold is not None:
            wallet = ApprovalWallet(wallet, self.settings.approval_threshold, approver)
        self.wallet = wallet

        self.registry = registry or CapabilityRegistry(self.settings.data_dir)
        self.event_bus = event_bus or EventBus()
        self.prober = HealthProber(client=client, timeout=self.settings.probe_timeout)
        self.gateway = PaymentGatewayClient(
            wallet,
            client=client,
            request_timeout=self.settings.request_timeout,
            signing_timeout=self.settings.signing_timeout,
        )
        self.executor = InvocationExecutor(self.gateway)
        self.ledger_store = (
            LedgerStore(self.settings.data_dir / "data" / "ledgers.db") if archive else None
        )
        self.orchestrator = Orchestrator(
            registry=self.registry,
            prober=self.prober,
            executor=self.executor,
            decomposer=TaskDecomposer(planner),
            weights=RankingWeights(
                health=self.settings.weight_health,
                rating=self.settings.weight_rating,
                price=self.settings.weight_price,
                response_time=self.settings.weight_response_time,
            ),
            event_bus=self.event_bus,
            ledger_store=self.ledger_store,
            per_call_budget=self.settings.per_call_budget,
            probe_timeout=self.settings.probe_timeout,
        )
        self.limits = SpendingLimits(
            daily=self.settings.daily_limit,
            monthly=self.settings.monthly_limit,
            store=self.ledger_store,
        )

    async def __aenter__(self) -> Marketplace:
        if self.ledger_store is not None:
            await self.ledger_store.open()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self.prober.close()
        await self.gateway.close()
        if self.ledger_store is not None:
            await self.ledger_store.close()

    async def orchestrate(
        self,
        goal: str,
        budget_ceiling: Decimal | str | float,
        max_concurrent: int | None = None,
        timeout: float | None = None,
        orchestration_id: str | None = None,
    ) -> OrchestrationResult:
        """
        Decompose and run a goal under a budget ceiling.

        The ceiling is lowered when the daily or monthly spending limit would
        otherwise be crossed.

        Returns:
            OrchestrationResult (deliverable plus closed ledger)
        """
        if self.ledger_store is not None:
            await self.ledger_store.open()
        granted = await self.limits.allow(Decimal(str(budget_ceiling)))
        result = None
        try:
            result = await self.orchestrator.orchestrate(
                goal,
                granted,
                max_concurrent=max_concurrent or self.settings.max_concurrent,
                timeout=timeout if timeout is not None else self.settings.orchestration_timeout,
                orchestration_id=orchestration_id,
            )
            return result
        finally:
            self.limits.release(granted, result.total_cost if result is not None else Decimal("0"))

    async def spending(self) -> SpendingStats:
        """Spend so far today and this month against the configured limits."""
        if self.ledger_store is not None:
            await self.ledger_store.open()
        return await self.limits.stats()

    def search(self, query: ServiceQuery | None = None, **filters: Any) -> list[ServiceDescriptor]:
        """Search the registry with a ServiceQuery or keyword filters."""
        return self.registry.search(query or ServiceQuery(**filters))

    def register(self, descriptor: ServiceDescriptor | dict[str, Any]) -> ServiceDescriptor:
        if isinstance(descriptor, dict):
            descriptor = ServiceDescriptor.from_dict(descriptor)
        return self.registry.register(descriptor)


def run_orchestration(
    goal: str,
    budget_ceiling: Decimal | str | float,
    max_concurrent: int | None = None,
    timeout: float | None = None,
    settings: Settings | None = None,
    wallet: Wallet | None = None,
) -> OrchestrationResult:
    """Synchronous wrapper around Marketplace.orchestrate()."""

    async def _run() -> OrchestrationResult:
        async with Marketplace(settings, wallet=wallet) as market:
            return await market.orchestrate(goal, budget_ceiling, max_concurrent, timeout)

    return asyncio.run(_run())


def search(settings: Settings | None = None, **filters: Any) -> list[ServiceDescriptor]:
    """Synchronous registry search."""
    return Marketplace(settings, archive=False).search(**filters)
