"""End-to-end orchestration tests against simulated services."""

from __future__ import annotations

from decimal import Decimal

import pytest

from agentmarket.engine import events
from agentmarket.engine.models import (
    INTERNAL_ERROR,
    NO_CANDIDATES,
    TIMEOUT,
    OrchestrationStatus,
    Subtask,
)
from agentmarket.errors import SkippedDueToDependency
from agentmarket.marketplace import Marketplace
from agentmarket.payment.models import PaymentChallenge, PaymentProof
from agentmarket.payment.wallet import SimulatedWallet

pytestmark = pytest.mark.anyio

# Top-ranked candidate that takes the payment and then fails
FLAKY = {"rating": 5.0, "mode": "paid_then_error"}


def plan(*specs: tuple[str, str, tuple[str, ...]]):
    """Planner returning fixed subtasks from (id, capability, dependencies) triples."""

    def planner(goal: str) -> list[Subtask]:
        return [Subtask(sid, f"{cap} for {goal}", (cap,), deps) for sid, cap, deps in specs]

    return planner


@pytest.fixture
async def client(fake_services):
    async with fake_services.client() as client:
        yield client


@pytest.fixture
def wallet() -> SimulatedWallet:
    return SimulatedWallet()


@pytest.fixture
async def build(settings, client, wallet):
    markets: list[Marketplace] = []

    def factory(planner=None) -> Marketplace:
        market = Marketplace(settings, wallet=wallet, client=client, planner=planner)
        markets.append(market)
        return market

    yield factory
    for market in markets:
        await market.close()


def offer(
    market: Marketplace,
    fake_services,
    service_factory,
    service_id: str,
    capability: str,
    price: str,
    rating: float = 0.0,
    **behavior,
) -> None:
    fake_services.add(service_id, price=price, **behavior)
    reviews = 1 if rating else 0
    market.register(service_factory(service_id, (capability,), price, rating=rating, reviews=reviews))


async def test_summarize_news_end_to_end(build, fake_services, service_factory, wallet) -> None:
    market = build()
    offer(market, fake_services, service_factory, "svc-news", "news-aggregation", "0.02", result=["headline"])
    offer(market, fake_services, service_factory, "svc-sum", "text-summarization", "0.03", result="summary")

    result = await market.orchestrate("Summarize tech news", Decimal("1.00"))

    assert result.status == OrchestrationStatus.COMPLETED
    assert result.total_cost == Decimal("0.05")
    assert wallet.total_signed == Decimal("0.05")
    assert [s["output"] for s in result.deliverable["sections"]] == [["headline"], "summary"]
    assert result.deliverable["failed"] == 0
    assert result.ledger.closed

    summary_payload = fake_services.services["svc-sum"].payloads[-1]
    assert summary_payload["inputs"] == {"subtask-1": ["headline"]}
    assert summary_payload["capabilities"] == ["text-summarization"]


async def test_event_stream_order(build, fake_services, service_factory) -> None:
    market = build(plan(("a", "text-summarization", ())))
    offer(market, fake_services, service_factory, "svc-sum", "text-summarization", "0.01")
    subscription = market.event_bus.subscribe("orch-events")

    result = await market.orchestrate("anything", Decimal("1.00"), orchestration_id="orch-events")

    published = []
    while not subscription.queue.empty():
        published.append(subscription.queue.get_nowait())
    assert published == result.ledger.events
    assert [e.sequence for e in published] == list(range(1, len(published) + 1))

    types = [e.type for e in published]
    assert types[0] == events.ORCHESTRATION_STARTED
    assert types[-1] == events.ORCHESTRATION_COMPLETED
    assert types.index(events.TASK_DECOMPOSED) < types.index(events.SERVICES_DISCOVERED)
    assert types.index(events.AGENT_SPAWNED) < types.index(events.SERVICE_HIRED)
    assert types.index(events.SERVICE_HIRED) < types.index(events.SUBTASK_COMPLETED)
    phases = [e.data["phase"] for e in published if e.type == events.PHASE_CHANGED]
    assert phases[0] == "decomposing"
    assert phases[-2:] == ["aggregating", "completed"]


async def test_budget_ceiling_never_exceeded(build, fake_services, service_factory, wallet) -> None:
    specs = [(f"t{i}", f"cap-{i}", ()) for i in range(4)]
    market = build(plan(*specs))
    for i in range(4):
        offer(market, fake_services, service_factory, f"svc-{i}", f"cap-{i}", "0.30")

    result = await market.orchestrate("four parallel jobs", Decimal("1.00"))

    assert result.status == OrchestrationStatus.PARTIALLY_COMPLETED
    assert result.total_cost == Decimal("0.90")
    assert wallet.total_signed <= Decimal("1.00")
    reasons = [f["reason"] for f in result.deliverable["failures"]]
    assert reasons == ["budget_exceeded"]
    assert result.deliverable["completed"] == 3


async def test_failed_dependency_skips_dependents(build, fake_services, service_factory, wallet) -> None:
    market = build(plan(("a", "cap-a", ()), ("b", "cap-b", ("a",)), ("c", "cap-c", ())))
    offer(market, fake_services, service_factory, "svc-a", "cap-a", "0.02", mode="error")
    offer(market, fake_services, service_factory, "svc-b", "cap-b", "0.02")
    offer(market, fake_services, service_factory, "svc-c", "cap-c", "0.02")

    result = await market.orchestrate("chain", Decimal("1.00"))

    assert result.status == OrchestrationStatus.PARTIALLY_COMPLETED
    failures = {f["subtaskId"]: f["reason"] for f in result.deliverable["failures"]}
    assert failures == {"a": "all_candidates_failed", "b": SkippedDueToDependency.code}
    assert "dependency a" in result.ledger.entry_for("b").error
    assert result.ledger.entry_for("b").cost == Decimal("0")
    assert fake_services.services["svc-b"].unpaid_calls == 0
    assert result.total_cost == Decimal("0.02")


async def test_fallback_to_next_candidate(build, fake_services, service_factory) -> None:
    market = build(plan(("a", "cap-a", ())))
    offer(market, fake_services, service_factory, "svc-cheap", "cap-a", "0.01", mode="error")
    offer(market, fake_services, service_factory, "svc-backup", "cap-a", "0.02")

    result = await market.orchestrate("one job", Decimal("1.00"))

    assert result.status == OrchestrationStatus.COMPLETED
    entry = result.ledger.entry_for("a")
    assert entry.service_id == "svc-backup"
    assert [a.outcome for a in entry.attempts] == ["service_error", "success"]
    assert len(entry.proofs) == 1
    assert result.total_cost == Decimal("0.02")

    failed = market.registry.get("svc-cheap").reputation
    assert failed.total_jobs == 1
    assert failed.success_rate == 0.0
    assert market.registry.get("svc-backup").reputation.success_rate == 1.0


async def test_fallback_after_sunk_payment(build, fake_services, service_factory, wallet) -> None:
    market = build(plan(("a", "cap-a", ())))
    offer(market, fake_services, service_factory, "svc-flaky", "cap-a", "0.02", **FLAKY)
    offer(market, fake_services, service_factory, "svc-other", "cap-a", "0.02")

    result = await market.orchestrate("one job", Decimal("1.00"))

    assert result.status == OrchestrationStatus.COMPLETED
    entry = result.ledger.entry_for("a")
    assert entry.service_id == "svc-other"
    assert [a.outcome for a in entry.attempts] == ["paid_but_failed", "success"]
    assert entry.cost == Decimal("0.04")
    assert len(entry.proofs) == 2
    assert result.total_cost == wallet.total_signed == Decimal("0.04")


async def test_sunk_payment_settled_when_budget_runs_out(
    build, fake_services, service_factory, wallet
) -> None:
    market = build(plan(("a", "cap-a", ())))
    offer(market, fake_services, service_factory, "svc-flaky", "cap-a", "0.02", **FLAKY)
    offer(market, fake_services, service_factory, "svc-other", "cap-a", "0.02")

    result = await market.orchestrate("one job", Decimal("0.03"))

    assert result.status == OrchestrationStatus.PARTIALLY_COMPLETED
    entry = result.ledger.entry_for("a")
    assert entry.status == "failed"
    assert entry.cost == Decimal("0.02")
    assert len(entry.proofs) == 1
    assert result.total_cost == wallet.total_signed == Decimal("0.02")
    assert fake_services.services["svc-other"].unpaid_calls == 0


async def test_fallbacks_do_not_hold_budget_up_front(build, fake_services, service_factory) -> None:
    specs = [(f"t{i}", f"cap-{i}", ()) for i in range(4)]
    market = build(plan(*specs))
    for i in range(4):
        offer(market, fake_services, service_factory, f"svc-main-{i}", f"cap-{i}", "0.30")
        spare = f"svc-spare-{i}"
        offer(market, fake_services, service_factory, spare, f"cap-{i}", "0.60", health="unhealthy")

    result = await market.orchestrate("four jobs with spares", Decimal("1.00"))

    assert result.deliverable["completed"] == 3
    assert result.total_cost == Decimal("0.90")
    assert [f["reason"] for f in result.deliverable["failures"]] == ["budget_exceeded"]
    for i in range(4):
        assert fake_services.services[f"svc-spare-{i}"].unpaid_calls == 0


async def test_unhealthy_service_tried_last(build, fake_services, service_factory) -> None:
    market = build(plan(("a", "cap-a", ())))
    offer(market, fake_services, service_factory, "svc-down", "cap-a", "0.01", health="bad_status")
    offer(market, fake_services, service_factory, "svc-up", "cap-a", "0.05")

    result = await market.orchestrate("one job", Decimal("1.00"))

    assert result.ledger.entry_for("a").service_id == "svc-up"
    assert fake_services.services["svc-down"].unpaid_calls == 0


async def test_no_candidates(build, fake_services, service_factory) -> None:
    market = build(plan(("a", "cap-nobody", ())))

    result = await market.orchestrate("impossible", Decimal("1.00"))

    assert result.status == OrchestrationStatus.PARTIALLY_COMPLETED
    assert result.deliverable["failures"] == [{"subtaskId": "a", "reason": NO_CANDIDATES}]
    assert result.total_cost == Decimal("0")


async def test_cyclic_plan_aborts(build) -> None:
    market = build(plan(("a", "cap-a", ("b",)), ("b", "cap-b", ("a",))))

    result = await market.orchestrate("loop", Decimal("1.00"))

    assert result.status == OrchestrationStatus.ABORTED
    assert result.deliverable is None
    assert result.error == "decomposition_invariant_violation"
    assert result.ledger.closed
    types = [e.type for e in result.ledger.events]
    assert events.ORCHESTRATION_ERROR in types
    assert events.TASK_DECOMPOSED not in types


async def test_timeout_fails_undispatched(build, fake_services, service_factory) -> None:
    market = build(plan(("a", "cap-a", ()), ("b", "cap-b", ("a",))))
    offer(market, fake_services, service_factory, "svc-a", "cap-a", "0.01")
    offer(market, fake_services, service_factory, "svc-b", "cap-b", "0.01")

    result = await market.orchestrate("late", Decimal("1.00"), timeout=0)

    reasons = {f["subtaskId"]: f["reason"] for f in result.deliverable["failures"]}
    assert reasons == {"a": TIMEOUT, "b": TIMEOUT}
    assert result.total_cost == Decimal("0")


async def test_closed_ledger_archived(build, fake_services, service_factory) -> None:
    market = build(plan(("a", "cap-a", ())))
    offer(market, fake_services, service_factory, "svc-a", "cap-a", "0.04")

    result = await market.orchestrate("archive me", Decimal("0.50"), orchestration_id="orch-archive")

    snapshot = await market.ledger_store.get("orch-archive")
    assert snapshot["status"] == "completed"
    assert snapshot["total_cost"] == "0.04"
    assert snapshot["entries"][0]["proofs"][0]["amountPaid"] == "0.04"
    assert len(snapshot["events"]) == len(result.ledger.events)

    recent = await market.ledger_store.list_recent()
    assert [r["orchestration_id"] for r in recent] == ["orch-archive"]


async def test_invalid_concurrency(build) -> None:
    market = build()
    with pytest.raises(ValueError):
        await market.orchestrator.orchestrate("goal", Decimal("1"), max_concurrent=0)


async def test_max_concurrent_bounds_workers(build, fake_services, service_factory) -> None:
    specs = [(f"t{i}", f"cap-{i}", ()) for i in range(5)]
    market = build(plan(*specs))
    for i in range(5):
        offer(market, fake_services, service_factory, f"svc-{i}", f"cap-{i}", "0.01", delay=0.02)

    result = await market.orchestrate("five slow jobs", Decimal("1.00"), max_concurrent=2)

    assert result.status == OrchestrationStatus.COMPLETED
    assert fake_services.peak_in_flight == 2


async def test_timeout_mid_run(build, fake_services, service_factory) -> None:
    market = build(plan(("a", "cap-a", ()), ("b", "cap-b", ("a",))))
    offer(market, fake_services, service_factory, "svc-a", "cap-a", "0.01", delay=0.1)
    offer(market, fake_services, service_factory, "svc-b", "cap-b", "0.01")

    result = await market.orchestrate("slow chain", Decimal("1.00"), timeout=0.05)

    assert result.status == OrchestrationStatus.PARTIALLY_COMPLETED
    assert result.ledger.entry_for("a").status == "completed"
    assert result.total_cost == Decimal("0.01")
    assert result.deliverable["failures"] == [{"subtaskId": "b", "reason": TIMEOUT}]
    assert fake_services.services["svc-b"].unpaid_calls == 0


async def test_malformed_challenge_fails_only_its_subtask(build, fake_services, service_factory) -> None:
    market = build(plan(("a", "cap-a", ()), ("b", "cap-b", ())))
    offer(market, fake_services, service_factory, "svc-odd", "cap-a", "0.02", challenge_amount="NaN")
    offer(market, fake_services, service_factory, "svc-b", "cap-b", "0.02")

    result = await market.orchestrate("two jobs", Decimal("1.00"))

    assert result.status == OrchestrationStatus.PARTIALLY_COMPLETED
    assert result.ledger.closed
    assert result.deliverable["failures"] == [{"subtaskId": "a", "reason": "all_candidates_failed"}]
    assert result.ledger.entry_for("b").status == "completed"
    assert result.total_cost == Decimal("0.02")


class BrokenWallet(SimulatedWallet):
    """Signs normally except for one recipient, where signing blows up."""

    def __init__(self, broken_recipient: str) -> None:
        super().__init__()
        self.broken_recipient = broken_recipient

    async def sign(self, challenge: PaymentChallenge) -> PaymentProof:
        if challenge.recipient == self.broken_recipient:
            raise RuntimeError("signer offline")
        return await super().sign(challenge)


async def test_unexpected_worker_error_is_contained(settings, client, fake_services, service_factory) -> None:
    wallet = BrokenWallet("0xsvc-broken")
    planner = plan(("a", "cap-a", ()), ("b", "cap-b", ()))
    market = Marketplace(settings, wallet=wallet, client=client, planner=planner)
    try:
        offer(market, fake_services, service_factory, "svc-flaky", "cap-a", "0.02", **FLAKY)
        offer(market, fake_services, service_factory, "svc-broken", "cap-a", "0.02")
        offer(market, fake_services, service_factory, "svc-b", "cap-b", "0.03")

        result = await market.orchestrate("two jobs", Decimal("1.00"))
    finally:
        await market.close()

    assert result.status == OrchestrationStatus.PARTIALLY_COMPLETED
    assert result.ledger.closed
    entry = result.ledger.entry_for("a")
    assert entry.status == "failed"
    assert entry.cost == Decimal("0.02")
    assert "signer offline" in entry.error
    assert result.deliverable["failures"] == [{"subtaskId": "a", "reason": INTERNAL_ERROR}]
    assert result.ledger.entry_for("b").status == "completed"
    assert result.total_cost == wallet.total_signed == Decimal("0.05")
