"""Service discovery: registry, health probing and ranking."""

from agentmarket.discovery.health import HealthProber, health_for
from agentmarket.discovery.models import (
    HealthResult,
    HealthStatus,
    Reputation,
    ServiceDescriptor,
    ServiceQuery,
    UnhealthyReason,
)
from agentmarket.discovery.ranking import RankedCandidate, RankingWeights, rank
from agentmarket.discovery.registry import CapabilityRegistry

__all__ = [
    "CapabilityRegistry",
    "HealthProber",
    "HealthResult",
    "HealthStatus",
    "RankedCandidate",
    "RankingWeights",
    "Reputation",
    "ServiceDescriptor",
    "ServiceQuery",
    "UnhealthyReason",
    "health_for",
    "rank",
]
