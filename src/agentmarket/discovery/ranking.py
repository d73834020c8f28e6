"""
Ranking Engine

Pure scoring function that orders candidate services for one capability.

Factors (default weights):
    health         0.4   1.0 if healthy, else 0
    rating         0.3   min-max over the group (rating / 5 when degenerate)
    price          0.2   inverted min-max, cheaper is higher
    response_time  0.1   inverted min-max among measured services

Unhealthy services are always ranked after every healthy or unknown one,
whatever the weights.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from agentmarket.discovery.health import health_for
from agentmarket.discovery.models import HealthResult, HealthStatus, ServiceDescriptor

SCORE_PRECISION = 9


@dataclass(frozen=True)
class RankingWeights:
    """Relative weight of each ranking factor."""

    health: float = 0.4
    rating: float = 0.3
    price: float = 0.2
    response_time: float = 0.1

    def __post_init__(self) -> None:
        values = (self.health, self.rating, self.price, self.response_time)
        if any(w < 0 for w in values):
            raise ValueError(f"ranking weights must be non-negative, got {values}")
        if sum(values) <= 0:
            raise ValueError("ranking weights must have a positive sum")


@dataclass(frozen=True)
class RankedCandidate:
    """A service with its composite score and 1-based rank."""

    service: ServiceDescriptor
    score: float
    rank: int
    health: HealthStatus
    breakdown: dict[str, float] = field(default_factory=dict, compare=False)

    @property
    def service_id(self) -> str:
        return self.service.id

    @property
    def price(self) -> Decimal:
        return self.service.price

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_id": self.service.id,
            "name": self.service.name,
            "price": str(self.service.price),
            "score": self.score,
            "rank": self.rank,
            "health": self.health.value,
            "breakdown": self.breakdown,
        }


def rank(
    services: Sequence[ServiceDescriptor],
    health_results: Mapping[str, HealthResult],
    weights: RankingWeights | None = None,
) -> list[RankedCandidate]:
    """
    Rank services for a single subtask.

    Args:
        services: Candidate services (duplicates by id are ranked once)
        health_results: Probe results keyed by service id; missing means unknown
        weights: Factor weights (default: RankingWeights())

    Returns:
        Candidates in rank order, ranks 1..N
    """
    weights = weights or RankingWeights()

    unique: dict[str, ServiceDescriptor] = {}
    for service in services:
        unique.setdefault(service.id, service)

    available: list[ServiceDescriptor] = []
    unhealthy: list[ServiceDescriptor] = []
    for service in unique.values():
        if health_for(health_results, service.id).status == HealthStatus.UNHEALTHY:
            unhealthy.append(service)
        else:
            available.append(service)

    ordered = _score_group(available, health_results, weights)
    ordered += _score_group(unhealthy, health_results, weights)

    return [
        RankedCandidate(
            service=service,
            score=score,
            rank=position,
            health=health_for(health_results, service.id).status,
            breakdown=breakdown,
        )
        for position, (service, score, breakdown) in enumerate(ordered, start=1)
    ]


def _score_group(
    group: list[ServiceDescriptor],
    health_results: Mapping[str, HealthResult],
    weights: RankingWeights,
) -> list[tuple[ServiceDescriptor, float, dict[str, float]]]:
    if not group:
        return []

    ratings = [s.reputation.rating for s in group]
    prices = [s.price for s in group]
    results = {s.id: health_for(health_results, s.id) for s in group}
    latencies = [r.response_time_ms for r in results.values() if r.response_time_ms is not None]

    min_rating, max_rating = min(ratings), max(ratings)
    min_price, max_price = min(prices), max(prices)

    scored = []
    for service in group:
        result = results[service.id]

        if len(group) == 1 or max_rating == min_rating:
            rating_score = service.reputation.rating / 5.0
        else:
            rating_score = (service.reputation.rating - min_rating) / (max_rating - min_rating)

        if max_price == min_price:
            price_score = 1.0
        else:
            price_score = float((max_price - service.price) / (max_price - min_price))

        if result.response_time_ms is None:
            latency_score = 0.0
        elif max(latencies) == min(latencies):
            latency_score = 1.0
        else:
            latency_score = (max(latencies) - result.response_time_ms) / (
                max(latencies) - min(latencies)
            )

        health_score = 1.0 if result.status == HealthStatus.HEALTHY else 0.0

        breakdown = {
            "health": health_score,
            "rating": round(rating_score, SCORE_PRECISION),
            "price": round(price_score, SCORE_PRECISION),
            "response_time": round(latency_score, SCORE_PRECISION),
        }
        total = (
            weights.health * health_score
            + weights.rating * rating_score
            + weights.price * price_score
            + weights.response_time * latency_score
        )
        scored.append((service, round(total, SCORE_PRECISION), breakdown))

    scored.sort(key=lambda item: (-item[1], item[0].price, item[0].id))
    return scored
