"""Invocation Executor - Rank-ordered fallback across candidate services."""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from decimal import Decimal
from typing import Any

from agentmarket.discovery.models import ServiceDescriptor
from agentmarket.discovery.ranking import RankedCandidate
from agentmarket.errors import (
    AllCandidatesFailed,
    BudgetExceeded,
    PaidButFailed,
    PaymentRejected,
    PaymentTimeout,
    ServiceError,
)
from agentmarket.log import get_logger
from agentmarket.payment.gateway import PaymentGatewayClient
from agentmarket.payment.models import AttemptRecord, InvocationResult

logger = get_logger("executor")

# Failures that move on to the next candidate
RECOVERABLE = (PaymentRejected, PaymentTimeout, ServiceError, PaidButFailed, BudgetExceeded)


class InvocationExecutor:
    """
    Tries ranked candidates in order until one succeeds.

    Spend never exceeds the per-call budget: sunk payments from paid-but-failed
    attempts are subtracted before the next candidate is considered.
    """

    def __init__(self, gateway: PaymentGatewayClient) -> None:
        self.gateway = gateway

    async def invoke_with_fallback(
        self,
        candidates: Sequence[RankedCandidate | ServiceDescriptor],
        payload: dict[str, Any],
        per_call_budget: Decimal | None = None,
        on_attempt: Callable[[AttemptRecord], None] | None = None,
        extend_budget: Callable[[Decimal], bool] | None = None,
    ) -> InvocationResult:
        """
        Invoke the best candidate, falling back down the ranking on failure.

        Args:
            candidates: Services in rank order
            payload: JSON request body for each call
            per_call_budget: Maximum total spend across all attempts (None = unlimited)
            on_attempt: Called with each AttemptRecord as it is recorded
            extend_budget: Asked for the shortfall when the next candidate costs more
                than what is left; returns True if the budget was raised by that much

        Returns:
            InvocationResult with the winning response and the full attempt log

        Raises:
            BudgetExceeded: Next candidate's price exceeds the remaining budget and
                could not be extended
            AllCandidatesFailed: Every candidate failed
        """
        attempts: list[AttemptRecord] = []
        tried: set[str] = set()
        sunk = Decimal("0")

        def record(entry: AttemptRecord) -> None:
            attempts.append(entry)
            if on_attempt is not None:
                on_attempt(entry)

        for candidate in candidates:
            service = candidate.service if isinstance(candidate, RankedCandidate) else candidate
            if service.id in tried:
                continue
            tried.add(service.id)

            remaining = None if per_call_budget is None else per_call_budget - sunk
            if remaining is not None and service.price > remaining:
                shortfall = service.price - remaining
                if extend_budget is not None and extend_budget(shortfall):
                    per_call_budget += shortfall
                    remaining = service.price
            if remaining is not None and service.price > remaining:
                logger.info(
                    "budget exhausted before %s: price %s > remaining %s",
                    service.id,
                    service.price,
                    remaining,
                )
                raise BudgetExceeded(service.price, remaining, attempts)

            start = time.perf_counter()
            try:
                response = await self.gateway.invoke(service, payload, max_amount=remaining)
            except RECOVERABLE as e:
                elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
                cost = e.cost if isinstance(e, PaidButFailed) else Decimal("0")
                sunk += cost
                logger.warning("%s failed (%s): %s", service.id, e.code, e.message)
                record(
                    AttemptRecord(
                        service_id=service.id,
                        price=service.price,
                        outcome=e.code,
                        error=e.message,
                        cost=cost,
                        proof=getattr(e, "proof", None),
                        response_time_ms=elapsed_ms,
                    )
                )
                continue

            record(
                AttemptRecord(
                    service_id=service.id,
                    price=service.price,
                    outcome="success",
                    cost=response.cost,
                    proof=response.proof,
                    response_time_ms=response.response_time_ms,
                )
            )
            return InvocationResult(response=response, attempts=attempts)

        raise AllCandidatesFailed(attempts)
