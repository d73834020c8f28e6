"""Tests for the health prober."""

from __future__ import annotations

import pytest

from agentmarket.discovery.health import HealthProber, health_for, partition, summarize
from agentmarket.discovery.models import HealthResult, HealthStatus, UnhealthyReason

pytestmark = pytest.mark.anyio


@pytest.fixture
async def prober(fake_services):
    async with fake_services.client() as client:
        yield HealthProber(client=client, timeout=1.0)


class TestProbeOne:
    @pytest.mark.parametrize(
        "health, status, reason",
        [
            ("healthy", HealthStatus.HEALTHY, None),
            ("unhealthy", HealthStatus.UNHEALTHY, UnhealthyReason.REPORTED_UNHEALTHY),
            ("unknown", HealthStatus.UNKNOWN, None),
            ("bad_status", HealthStatus.UNHEALTHY, UnhealthyReason.BAD_STATUS),
            ("refused", HealthStatus.UNHEALTHY, UnhealthyReason.CONNECTION_REFUSED),
            ("timeout", HealthStatus.UNHEALTHY, UnhealthyReason.TIMEOUT),
        ],
    )
    async def test_classification(
        self, prober, fake_services, service_factory, health, status, reason
    ) -> None:
        fake_services.add("svc-h", health=health)
        result = await prober.probe_one(service_factory("svc-h"))
        assert result.status == status
        assert result.reason == reason

    async def test_healthy_has_latency(self, prober, fake_services, service_factory) -> None:
        fake_services.add("svc-fast")
        result = await prober.probe_one(service_factory("svc-fast"))
        assert result.response_time_ms is not None
        assert result.response_time_ms >= 0
        assert result.error is None

    async def test_unhealthy_has_error(self, prober, service_factory) -> None:
        result = await prober.probe_one(service_factory("svc-missing"))
        assert result.status == HealthStatus.UNHEALTHY
        assert result.error
        assert result.response_time_ms is None

    async def test_uses_explicit_health_url(self, prober, fake_services, service_factory) -> None:
        fake_services.add("svc-custom")
        service = service_factory("svc-other", health_check_url="http://svc-custom.test/health")
        result = await prober.probe_one(service)
        assert result.status == HealthStatus.HEALTHY
        assert result.service_id == "svc-other"


class TestProbeMany:
    async def test_one_result_per_distinct_service(self, prober, fake_services, service_factory) -> None:
        fake_services.add("svc-a")
        fake_services.add("svc-b", health="unhealthy")
        services = [service_factory("svc-a"), service_factory("svc-b"), service_factory("svc-a")]

        results = await prober.probe_many(services, max_concurrent=2)

        assert set(results) == {"svc-a", "svc-b"}
        assert results["svc-a"].status == HealthStatus.HEALTHY
        assert results["svc-b"].status == HealthStatus.UNHEALTHY

    async def test_sequential(self, prober, fake_services, service_factory) -> None:
        fake_services.add("svc-a", health="unknown")
        fake_services.add("svc-b")
        results = await prober.probe_many(
            [service_factory("svc-a"), service_factory("svc-b")], parallel=False
        )
        assert list(results) == ["svc-a", "svc-b"]
        assert results["svc-a"].status == HealthStatus.UNKNOWN

    async def test_empty(self, prober) -> None:
        assert await prober.probe_many([]) == {}

    async def test_rejects_zero_concurrency(self, prober, service_factory) -> None:
        with pytest.raises(ValueError):
            await prober.probe_many([service_factory("svc-a")], max_concurrent=0)


class TestHelpers:
    def test_health_for_missing_is_unknown(self) -> None:
        assert health_for({}, "svc-x").status == HealthStatus.UNKNOWN

    def test_partition_and_summarize(self, service_factory) -> None:
        results = {
            "svc-a": HealthResult.healthy("svc-a", 12.0),
            "svc-b": HealthResult.unhealthy("svc-b", UnhealthyReason.TIMEOUT, "timed out"),
        }
        services = [service_factory("svc-a"), service_factory("svc-b"), service_factory("svc-c")]

        buckets = partition(services, results)
        assert [s.id for s in buckets[HealthStatus.HEALTHY]] == ["svc-a"]
        assert [s.id for s in buckets[HealthStatus.UNHEALTHY]] == ["svc-b"]
        assert [s.id for s in buckets[HealthStatus.UNKNOWN]] == ["svc-c"]

        counts = summarize(results)
        assert counts[HealthStatus.HEALTHY] == 1
        assert counts[HealthStatus.UNKNOWN] == 0

    def test_result_invariants(self) -> None:
        with pytest.raises(ValueError):
            HealthResult("svc-a", HealthStatus.HEALTHY)
        with pytest.raises(ValueError):
            HealthResult("svc-a", HealthStatus.UNHEALTHY, response_time_ms=5.0)
