"""Health Prober - Liveness checks against registered service endpoints."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable, Mapping
from typing import Any

import httpx

from agentmarket.discovery.models import (
    HealthResult,
    HealthStatus,
    ServiceDescriptor,
    UnhealthyReason,
)
from agentmarket.log import get_logger

logger = get_logger("health")

HEALTHY_MARKERS = frozenset({"healthy", "ok", "up", "pass"})
UNHEALTHY_MARKERS = frozenset({"unhealthy", "down", "fail", "error", "degraded"})


class HealthProber:
    """
    Probes ``GET <endpoint>/health`` and classifies each service.

    A 200 is only healthy when the body carries an explicit marker
    (``status: healthy|ok`` or ``healthy: true``); otherwise the result is unknown.
    """

    DEFAULT_TIMEOUT = 5.0  # seconds
    DEFAULT_MAX_CONCURRENT = 10

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> HealthProber:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def probe_one(
        self, service: ServiceDescriptor, timeout: float | None = None
    ) -> HealthResult:
        """
        Probe a single service.

        Args:
            service: Service to probe
            timeout: Seconds to wait for the liveness response

        Returns:
            HealthResult for the service
        """
        timeout = timeout if timeout is not None else self.timeout
        start = time.perf_counter()
        try:
            response = await self.client.get(service.health_url, timeout=timeout)
        except httpx.TimeoutException:
            return HealthResult.unhealthy(
                service.id, UnhealthyReason.TIMEOUT, f"health check timed out after {timeout}s"
            )
        except httpx.ConnectError as e:
            return HealthResult.unhealthy(
                service.id, UnhealthyReason.CONNECTION_REFUSED, f"service unreachable: {e}"
            )
        except httpx.HTTPError as e:
            return HealthResult.unhealthy(service.id, UnhealthyReason.TRANSPORT, str(e) or type(e).__name__)

        elapsed_ms = (time.perf_counter() - start) * 1000

        if response.status_code != 200:
            return HealthResult.unhealthy(
                service.id,
                UnhealthyReason.BAD_STATUS,
                f"unexpected status code: {response.status_code}",
            )

        marker = _read_marker(response)
        if marker is True:
            return HealthResult.healthy(service.id, round(elapsed_ms, 2))
        if marker is False:
            return HealthResult.unhealthy(
                service.id, UnhealthyReason.REPORTED_UNHEALTHY, "service reported itself unhealthy"
            )
        return HealthResult.unknown(service.id)

    async def probe_many(
        self,
        services: Iterable[ServiceDescriptor],
        parallel: bool = True,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        timeout: float | None = None,
    ) -> dict[str, HealthResult]:
        """
        Probe many services with bounded concurrency.

        Args:
            services: Services to probe (duplicates by id are probed once)
            parallel: False probes one at a time in input order
            max_concurrent: Maximum probes in flight
            timeout: Per-probe timeout in seconds

        Returns:
            Dict mapping service_id to HealthResult, one per distinct input service
        """
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")

        unique: dict[str, ServiceDescriptor] = {}
        for service in services:
            unique.setdefault(service.id, service)

        results: dict[str, HealthResult] = {}
        if not parallel:
            for service_id, service in unique.items():
                results[service_id] = await self.probe_one(service, timeout)
            return results

        semaphore = asyncio.Semaphore(max_concurrent)

        async def bounded(service: ServiceDescriptor) -> HealthResult:
            async with semaphore:
                return await self.probe_one(service, timeout)

        probed = await asyncio.gather(*(bounded(s) for s in unique.values()))
        for result in probed:
            results[result.service_id] = result

        counts = summarize(results)
        logger.info(
            "probed %d services: %d healthy, %d unhealthy, %d unknown",
            len(results),
            counts[HealthStatus.HEALTHY],
            counts[HealthStatus.UNHEALTHY],
            counts[HealthStatus.UNKNOWN],
        )
        return results


def health_for(results: Mapping[str, HealthResult], service_id: str) -> HealthResult:
    """Result for a service, unknown when it was never probed."""
    return results.get(service_id) or HealthResult.unknown(service_id)


def partition(
    services: Iterable[ServiceDescriptor], results: Mapping[str, HealthResult]
) -> dict[HealthStatus, list[ServiceDescriptor]]:
    """Split services into healthy/unhealthy/unknown buckets."""
    buckets: dict[HealthStatus, list[ServiceDescriptor]] = {status: [] for status in HealthStatus}
    for service in services:
        buckets[health_for(results, service.id).status].append(service)
    return buckets


def summarize(results: Mapping[str, HealthResult]) -> dict[HealthStatus, int]:
    counts = {status: 0 for status in HealthStatus}
    for result in results.values():
        counts[result.status] += 1
    return counts


def _read_marker(response: httpx.Response) -> bool | None:
    """True/False for an explicit liveness marker, None when absent."""
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None

    healthy = body.get("healthy")
    if isinstance(healthy, bool):
        return healthy

    status = body.get("status")
    if isinstance(status, str):
        status = status.strip().lower()
        if status in HEALTHY_MARKERS:
            return True
        if status in UNHEALTHY_MARKERS:
            return False
    return None
