"""Tests for rank-ordered invocation with fallback."""

from __future__ import annotations

from decimal import Decimal

import pytest

from agentmarket.discovery.models import HealthResult
from agentmarket.discovery.ranking import rank
from agentmarket.errors import AllCandidatesFailed, BudgetExceeded
from agentmarket.payment.executor import InvocationExecutor
from agentmarket.payment.gateway import PaymentGatewayClient
from agentmarket.payment.wallet import SimulatedWallet

pytestmark = pytest.mark.anyio


@pytest.fixture
def wallet() -> SimulatedWallet:
    return SimulatedWallet()


@pytest.fixture
async def executor(fake_services, wallet):
    async with fake_services.client() as client:
        yield InvocationExecutor(PaymentGatewayClient(wallet, client=client))


async def test_first_candidate_wins(executor, fake_services, service_factory) -> None:
    first = fake_services.add("svc-1")
    second = fake_services.add("svc-2")

    result = await executor.invoke_with_fallback(
        [service_factory("svc-1"), service_factory("svc-2")], {"task": "x"}
    )

    assert result.service_id == "svc-1"
    assert [a.outcome for a in result.attempts] == ["success"]
    assert result.total_cost == Decimal("0.01")
    assert first.paid_calls == 1
    assert second.unpaid_calls == 0


async def test_falls_back_in_rank_order(executor, fake_services, service_factory) -> None:
    fake_services.add("svc-1", mode="error")
    fake_services.add("svc-2", mode="expired")
    fake_services.add("svc-3", price="0.02")
    calls = []

    result = await executor.invoke_with_fallback(
        [service_factory("svc-1"), service_factory("svc-2"), service_factory("svc-3", price="0.02")],
        {},
        on_attempt=calls.append,
    )

    assert result.service_id == "svc-3"
    assert [a.outcome for a in result.attempts] == ["service_error", "payment_rejected", "success"]
    assert calls == result.attempts
    assert result.total_cost == Decimal("0.02")


async def test_accepts_ranked_candidates(executor, fake_services, service_factory) -> None:
    fake_services.add("svc-cheap", price="0.01")
    fake_services.add("svc-dear", price="0.05")
    services = [service_factory("svc-dear", price="0.05"), service_factory("svc-cheap", price="0.01")]
    ranked = rank(services, {s.id: HealthResult.healthy(s.id, 10.0) for s in services})

    result = await executor.invoke_with_fallback(ranked, {})

    assert result.service_id == "svc-cheap"


async def test_sunk_cost_counts_against_budget(executor, fake_services, service_factory) -> None:
    flaky = fake_services.add("svc-flaky", price="0.04", mode="paid_then_error")
    fake_services.add("svc-next", price="0.04")

    with pytest.raises(BudgetExceeded) as excinfo:
        await executor.invoke_with_fallback(
            [service_factory("svc-flaky", price="0.04"), service_factory("svc-next", price="0.04")],
            {},
            per_call_budget=Decimal("0.06"),
        )

    assert excinfo.value.available == Decimal("0.02")
    assert [a.outcome for a in excinfo.value.attempts] == ["paid_but_failed"]
    assert excinfo.value.attempts[0].cost == Decimal("0.04")
    assert excinfo.value.attempts[0].proof is not None
    assert flaky.paid_calls == 1


async def test_costlier_fallback_extends_budget(executor, wallet, fake_services, service_factory) -> None:
    fake_services.add("svc-cheap", price="0.02", mode="error")
    fake_services.add("svc-dear", price="0.05")
    requested = []

    def extend(shortfall: Decimal) -> bool:
        requested.append(shortfall)
        return True

    result = await executor.invoke_with_fallback(
        [service_factory("svc-cheap", price="0.02"), service_factory("svc-dear", price="0.05")],
        {},
        per_call_budget=Decimal("0.02"),
        extend_budget=extend,
    )

    assert result.service_id == "svc-dear"
    assert requested == [Decimal("0.03")]
    assert wallet.total_signed == Decimal("0.05")


async def test_refused_extension_stops_fallback(executor, fake_services, service_factory) -> None:
    fake_services.add("svc-cheap", price="0.02", mode="error")
    dear = fake_services.add("svc-dear", price="0.05")

    with pytest.raises(BudgetExceeded) as excinfo:
        await executor.invoke_with_fallback(
            [service_factory("svc-cheap", price="0.02"), service_factory("svc-dear", price="0.05")],
            {},
            per_call_budget=Decimal("0.02"),
            extend_budget=lambda shortfall: False,
        )

    assert excinfo.value.available == Decimal("0.02")
    assert dear.unpaid_calls == 0


async def test_spend_never_exceeds_budget(executor, wallet, fake_services, service_factory) -> None:
    services = []
    for i in range(5):
        fake_services.add(f"svc-{i}", price="0.03", mode="paid_then_error")
        services.append(service_factory(f"svc-{i}", price="0.03"))

    with pytest.raises(BudgetExceeded):
        await executor.invoke_with_fallback(services, {}, per_call_budget=Decimal("0.10"))

    assert wallet.total_signed <= Decimal("0.10")
    assert len(wallet.signed) == 3


async def test_understated_price_caught_by_max_amount(
    executor, wallet, fake_services, service_factory
) -> None:
    fake_services.add("svc-liar", price="0.50")
    fake_services.add("svc-honest", price="0.02")

    result = await executor.invoke_with_fallback(
        [service_factory("svc-liar", price="0.01"), service_factory("svc-honest", price="0.02")],
        {},
        per_call_budget=Decimal("0.05"),
    )

    assert result.service_id == "svc-honest"
    assert result.attempts[0].outcome == "budget_exceeded"
    assert wallet.total_signed == Decimal("0.02")


async def test_all_candidates_failed_keeps_reasons(executor, fake_services, service_factory) -> None:
    fake_services.add("svc-a", mode="error")
    fake_services.add("svc-b", mode="reject_proof")

    with pytest.raises(AllCandidatesFailed) as excinfo:
        await executor.invoke_with_fallback([service_factory("svc-a"), service_factory("svc-b")], {})

    attempts = excinfo.value.attempts
    assert [a.service_id for a in attempts] == ["svc-a", "svc-b"]
    assert [a.outcome for a in attempts] == ["service_error", "payment_rejected"]
    assert len(excinfo.value.details["reasons"]) == 2


async def test_duplicate_candidates_tried_once(executor, fake_services, service_factory) -> None:
    fake = fake_services.add("svc-a", mode="error")

    with pytest.raises(AllCandidatesFailed) as excinfo:
        await executor.invoke_with_fallback([service_factory("svc-a"), service_factory("svc-a")], {})

    assert len(excinfo.value.attempts) == 1
    assert fake.unpaid_calls == 1


async def test_no_candidates(executor) -> None:
    with pytest.raises(AllCandidatesFailed):
        await executor.invoke_with_fallback([], {})
