"""
Discovery Data Models

Service descriptors, reputation projections, search queries and health
results shared by the registry, the prober and the ranking engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import StrEnum
from typing import Any
from urllib.parse import urlparse


@dataclass(frozen=True)
class Reputation:
    """Reputation projection derived from seed values plus appended events."""

    total_jobs: int = 0
    success_rate: float = 0.0  # 0-1
    avg_response_time: float = 0.0  # ms
    rating: float = 0.0  # 0-5
    review_count: int = 0

    def __post_init__(self) -> None:
        if not 0.0 <= self.rating <= 5.0:
            raise ValueError(f"rating must be in [0.0, 5.0], got {self.rating}")
        if not 0.0 <= self.success_rate <= 1.0:
            raise ValueError(f"success_rate must be in [0.0, 1.0], got {self.success_rate}")
        if self.total_jobs < 0 or self.review_count < 0:
            raise ValueError("total_jobs and review_count must be >= 0")

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_jobs": self.total_jobs,
            "success_rate": self.success_rate,
            "avg_response_time": self.avg_response_time,
            "rating": self.rating,
            "review_count": self.review_count,
        }


@dataclass(frozen=True)
class ServiceDescriptor:
    """A published pay-per-call service. Immutable apart from its reputation projection."""

    id: str
    name: str
    endpoint: str
    capabilities: frozenset[str]
    price: Decimal
    currency: str = "USDC"
    description: str = ""
    provider: str = ""
    network: str | None = None
    health_check_url: str | None = None
    reputation: Reputation = field(default_factory=Reputation)
    metadata: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)
    created_at: str | None = None
    retired: bool = False

    @property
    def health_url(self) -> str:
        return self.health_check_url or f"{self.endpoint.rstrip('/')}/health"

    def problems(self) -> list[str]:
        """Invariant violations, empty when the descriptor is publishable."""
        issues = []
        if not self.id:
            issues.append("id must not be empty")
        if not self.price.is_finite():
            issues.append(f"price must be a finite amount, got {self.price}")
        elif self.price < 0:
            issues.append(f"price must be >= 0, got {self.price}")
        if not self.capabilities or not all(c.strip() for c in self.capabilities):
            issues.append("capabilities must be a non-empty set of non-blank tags")
        parsed = urlparse(self.endpoint)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            issues.append(f"endpoint must be an absolute http(s) URI, got {self.endpoint!r}")
        return issues

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "provider": self.provider,
            "endpoint": self.endpoint,
            "health_check_url": self.health_url,
            "capabilities": sorted(self.capabilities),
            "price": str(self.price),
            "currency": self.currency,
            "network": self.network,
            "reputation": self.reputation.to_dict(),
            "metadata": self.metadata,
            "created_at": self.created_at,
            "retired": self.retired,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ServiceDescriptor:
        """Build a descriptor from API/CLI input. Accepts ``"$0.02"`` style prices."""
        reputation = data.get("reputation") or {}
        capabilities = data.get("capabilities") or []
        if isinstance(capabilities, str):
            capabilities = [c for c in capabilities.split(",")]
        return cls(
            id=data.get("id", ""),
            name=data.get("name") or data.get("id", ""),
            endpoint=data.get("endpoint", ""),
            capabilities=frozenset(c.strip() for c in capabilities if c.strip()),
            price=parse_price(data.get("price", "0")),
            currency=data.get("currency", "USDC"),
            description=data.get("description", ""),
            provider=data.get("provider", ""),
            network=data.get("network"),
            health_check_url=data.get("health_check_url"),
            reputation=Reputation(
                total_jobs=int(reputation.get("total_jobs", 0)),
                success_rate=float(reputation.get("success_rate", 0.0)),
                avg_response_time=float(reputation.get("avg_response_time", 0.0)),
                rating=float(reputation.get("rating", 0.0)),
                review_count=int(reputation.get("review_count", 0)),
            ),
            metadata=dict(data.get("metadata") or {}),
        )


def parse_price(value: Any) -> Decimal:
    """Parse ``0.02``, ``"0.02"`` or ``"$0.02"`` into a Decimal."""
    if isinstance(value, Decimal):
        return value
    text = str(value).strip().lstrip("$")
    try:
        return Decimal(text)
    except ArithmeticError as e:
        raise ValueError(f"invalid price: {value!r}") from e


@dataclass
class ServiceQuery:
    """Registry search filters. Unset filters match everything."""

    text: str | None = None
    capabilities: list[str] = field(default_factory=list)
    min_rating: float | None = None
    max_price: Decimal | None = None
    limit: int = 20
    offset: int = 0
    include_retired: bool = False

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValueError(f"limit must be >= 1, got {self.limit}")
        if self.offset < 0:
            raise ValueError(f"offset must be >= 0, got {self.offset}")


class HealthStatus(StrEnum):
    """Liveness classification of a service."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class UnhealthyReason(StrEnum):
    """Diagnostic detail for unhealthy results. Ranking treats them all alike."""

    TIMEOUT = "timeout"
    CONNECTION_REFUSED = "connection_refused"
    BAD_STATUS = "bad_status"
    REPORTED_UNHEALTHY = "reported_unhealthy"
    TRANSPORT = "transport"


@dataclass(frozen=True)
class HealthResult:
    """Outcome of one probe. response_time_ms iff healthy, error iff unhealthy."""

    service_id: str
    status: HealthStatus
    response_time_ms: float | None = None
    error: str | None = None
    reason: UnhealthyReason | None = None

    def __post_init__(self) -> None:
        healthy = self.status == HealthStatus.HEALTHY
        unhealthy = self.status == HealthStatus.UNHEALTHY
        if healthy != (self.response_time_ms is not None):
            raise ValueError("response_time_ms must be set iff status is healthy")
        if unhealthy != (self.error is not None):
            raise ValueError("error must be set iff status is unhealthy")

    @classmethod
    def healthy(cls, service_id: str, response_time_ms: float) -> HealthResult:
        return cls(service_id, HealthStatus.HEALTHY, response_time_ms=response_time_ms)

    @classmethod
    def unhealthy(cls, service_id: str, reason: UnhealthyReason, error: str) -> HealthResult:
        return cls(service_id, HealthStatus.UNHEALTHY, error=error, reason=reason)

    @classmethod
    def unknown(cls, service_id: str) -> HealthResult:
        return cls(service_id, HealthStatus.UNKNOWN)

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_id": self.service_id,
            "status": self.status.value,
            "response_time_ms": self.response_time_ms,
            "error": self.error,
            "reason": self.reason.value if self.reason else None,
        }
