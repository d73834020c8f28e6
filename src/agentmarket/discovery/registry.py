"""Capability Registry - Stores service descriptors and answers discovery queries."""

from __future__ import annotations

import json
import uuid
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

from agentmarket.discovery.models import Reputation, ServiceDescriptor, ServiceQuery
from agentmarket.errors import InvalidDescriptor, NotFound
from agentmarket.log import get_logger
from agentmarket.storage.database import Database

logger = get_logger("registry")


class CapabilityRegistry:
    """
    Service registry with database persistence.

    Features:
    - Database-backed storage with WAL mode
    - Append-only reputation events with a derived rolling-average projection
    - Soft retirement; descriptors are never deleted
    """

    MIN_SCORE = 1
    MAX_SCORE = 5

    def __init__(self, data_dir: Path | None = None, db: Database | None = None) -> None:
        self.db = db or Database(data_dir)
        self.db.ensure_tables()

    def register(self, descriptor: ServiceDescriptor) -> ServiceDescriptor:
        """
        Publish a service descriptor.

        Args:
            descriptor: Descriptor to publish; an empty id is replaced by a generated one

        Returns:
            The stored descriptor (with id and created_at filled in)

        Raises:
            InvalidDescriptor: non-finite or negative price, no capabilities, bad endpoint or duplicate id
        """
        if not descriptor.id:
            descriptor = replace(descriptor, id=f"svc-{uuid.uuid4().hex[:8]}")

        problems = descriptor.problems()
        if problems:
            raise InvalidDescriptor("; ".join(problems), {"service_id": descriptor.id})

        now = datetime.now().isoformat()
        rep = descriptor.reputation
        with self.db.connect() as conn:
            exists = conn.execute("SELECT 1 FROM services WHERE id = ?", (descriptor.id,)).fetchone()
            if exists:
                raise InvalidDescriptor(
                    f"service {descriptor.id} is already registered",
                    {"service_id": descriptor.id},
                )
            conn.execute(
                """
                INSERT INTO services (
                    id, name, description, provider, endpoint, health_check_url,
                    capabilities, price, currency, network, metadata,
                    seed_total_jobs, seed_success_rate, seed_avg_response_time,
                    seed_rating, seed_review_count, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    descriptor.id,
                    descriptor.name or descriptor.id,
                    descriptor.description,
                    descriptor.provider,
                    descriptor.endpoint,
                    descriptor.health_check_url,
                    json.dumps(sorted(descriptor.capabilities)),
                    str(descriptor.price),
                    descriptor.currency,
                    descriptor.network,
                    json.dumps(descriptor.metadata),
                    rep.total_jobs,
                    rep.success_rate,
                    rep.avg_response_time,
                    rep.rating,
                    rep.review_count,
                    now,
                ),
            )

        logger.info(
            "registered %s (%s) at %s %s",
            descriptor.id,
            ",".join(sorted(descriptor.capabilities)),
            descriptor.price,
            descriptor.currency,
        )
        return self.get(descriptor.id)

    def get(self, service_id: str) -> ServiceDescriptor:
        """Get a service by id, retired or not."""
        rows = self.db.execute("SELECT * FROM services WHERE id = ?", (service_id,))
        if not rows:
            raise NotFound(f"service {service_id} not found", {"service_id": service_id})
        return self._row_to_descriptor(rows[0])

    def search(self, query: ServiceQuery | None = None) -> list[ServiceDescriptor]:
        """
        Find services matching ALL specified filters.

        Ordering is rating desc, then price asc, then id asc, before pagination.
        """
        query = query or ServiceQuery()
        if query.include_retired:
            rows = self.db.execute("SELECT * FROM services")
        else:
            rows = self.db.execute("SELECT * FROM services WHERE retired = 0")

        wanted = {c.strip().lower() for c in query.capabilities if c.strip()}
        text = query.text.strip().lower() if query.text else ""

        matches: list[ServiceDescriptor] = []
        for row in rows:
            service = self._row_to_descriptor(row)
            caps = {c.lower() for c in service.capabilities}
            if wanted and not wanted <= caps:
                continue
            if query.max_price is not None and service.price > query.max_price:
                continue
            if query.min_rating is not None and service.reputation.rating < query.min_rating:
                continue
            if text and not _matches_text(service, text):
                continue
            matches.append(service)

        matches.sort(key=lambda s: (-s.reputation.rating, s.price, s.id))
        return matches[query.offset : query.offset + query.limit]

    def rate(self, service_id: str, score: int, review: str | None = None) -> Reputation:
        """
        Append a rating and return the updated reputation.

        The event insert and the projection update share one transaction. The
        projection keeps an integer score sum, so the resulting average does not
        depend on the order in which ratings arrive.
        """
        if isinstance(score, bool) or not isinstance(score, int):
            raise ValueError(f"score must be an integer, got {score!r}")
        if not self.MIN_SCORE <= score <= self.MAX_SCORE:
            raise ValueError(f"score must be in [{self.MIN_SCORE}, {self.MAX_SCORE}], got {score}")

        with self.db.connect() as conn:
            cursor = conn.execute(
                "UPDATE services SET review_count = review_count + 1, score_sum = score_sum + ? "
                "WHERE id = ?",
                (score, service_id),
            )
            if cursor.rowcount == 0:
                raise NotFound(f"service {service_id} not found", {"service_id": service_id})
            conn.execute(
                "INSERT INTO reputation_events (service_id, kind, score, review, created_at) "
                "VALUES (?, 'rating', ?, ?, ?)",
                (service_id, score, review, datetime.now().isoformat()),
            )

        reputation = self.get(service_id).reputation
        logger.debug(
            "rated %s: %d -> %.3f over %d reviews",
            service_id,
            score,
            reputation.rating,
            reputation.review_count,
        )
        return reputation

    def record_outcome(self, service_id: str, success: bool, response_time_ms: float) -> Reputation:
        """Append a job outcome; updates total_jobs, success_rate and avg_response_time."""
        if response_time_ms < 0:
            raise ValueError(f"response_time_ms must be >= 0, got {response_time_ms}")

        with self.db.connect() as conn:
            cursor = conn.execute(
                "UPDATE services SET job_count = job_count + 1, "
                "success_count = success_count + ?, response_time_sum = response_time_sum + ? "
                "WHERE id = ?",
                (1 if success else 0, response_time_ms, service_id),
            )
            if cursor.rowcount == 0:
                raise NotFound(f"service {service_id} not found", {"service_id": service_id})
            conn.execute(
                "INSERT INTO reputation_events (service_id, kind, success, response_time_ms, created_at) "
                "VALUES (?, 'job', ?, ?, ?)",
                (service_id, 1 if success else 0, response_time_ms, datetime.now().isoformat()),
            )

        return self.get(service_id).reputation

    def retire(self, service_id: str) -> ServiceDescriptor:
        """Soft-retire a service. It stays resolvable through get() but leaves search results."""
        with self.db.connect() as conn:
            cursor = conn.execute(
                "UPDATE services SET retired = 1, retired_at = COALESCE(retired_at, ?) WHERE id = ?",
                (datetime.now().isoformat(), service_id),
            )
            if cursor.rowcount == 0:
                raise NotFound(f"service {service_id} not found", {"service_id": service_id})
        logger.info("retired %s", service_id)
        return self.get(service_id)

    def list_reviews(self, service_id: str) -> list[dict[str, Any]]:
        """Rating events for a service in append order."""
        self.get(service_id)
        rows = self.db.execute(
            "SELECT score, review, created_at FROM reputation_events "
            "WHERE service_id = ? AND kind = 'rating' ORDER BY id",
            (service_id,),
        )
        return [dict(row) for row in rows]

    def get_stats(self) -> dict[str, Any]:
        """Registry statistics."""
        rows = self.db.execute("SELECT retired, capabilities FROM services")
        by_capability: dict[str, int] = {}
        active = 0
        for row in rows:
            if row["retired"]:
                continue
            active += 1
            for cap in json.loads(row["capabilities"]):
                by_capability[cap] = by_capability.get(cap, 0) + 1
        return {
            "total_services": len(rows),
            "active_services": active,
            "retired_services": len(rows) - active,
            "by_capability": by_capability,
        }

    def _row_to_descriptor(self, row: Any) -> ServiceDescriptor:
        """Convert database row to a descriptor with its current reputation projection."""
        return ServiceDescriptor(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            provider=row["provider"],
            endpoint=row["endpoint"],
            health_check_url=row["health_check_url"],
            capabilities=frozenset(json.loads(row["capabilities"])),
            price=Decimal(row["price"]),
            currency=row["currency"],
            network=row["network"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            reputation=_project_reputation(row),
            created_at=row["created_at"],
            retired=bool(row["retired"]),
        )


def _project_reputation(row: Any) -> Reputation:
    seed_reviews = row["seed_review_count"]
    reviews = seed_reviews + row["review_count"]
    if reviews:
        rating = (row["seed_rating"] * seed_reviews + row["score_sum"]) / reviews
    else:
        rating = row["seed_rating"]

    seed_jobs = row["seed_total_jobs"]
    jobs = seed_jobs + row["job_count"]
    if jobs:
        success_rate = (row["seed_success_rate"] * seed_jobs + row["success_count"]) / jobs
        avg_response = (row["seed_avg_response_time"] * seed_jobs + row["response_time_sum"]) / jobs
    else:
        success_rate = row["seed_success_rate"]
        avg_response = row["seed_avg_response_time"]

    return Reputation(
        total_jobs=jobs,
        success_rate=min(1.0, max(0.0, success_rate)),
        avg_response_time=avg_response,
        rating=min(5.0, max(0.0, rating)),
        review_count=reviews,
    )


def _matches_text(service: ServiceDescriptor, text: str) -> bool:
    haystack = " ".join([service.name, service.description, *service.capabilities]).lower()
    return text in haystack

