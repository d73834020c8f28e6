"""Shared fixtures: temporary data dirs and simulated pay-per-call services."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

import httpx
import pytest

from agentmarket.config import Settings
from agentmarket.discovery.models import Reputation, ServiceDescriptor
from agentmarket.discovery.registry import CapabilityRegistry


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    return tmp_path / "agentmarket"


@pytest.fixture
def settings(data_dir: Path) -> Settings:
    return Settings(data_dir=data_dir)


@pytest.fixture
def registry(data_dir: Path) -> CapabilityRegistry:
    return CapabilityRegistry(data_dir)


def make_service(
    service_id: str,
    capabilities: tuple[str, ...] = ("text-summarization",),
    price: str = "0.01",
    rating: float = 0.0,
    reviews: int = 0,
    **kwargs: Any,
) -> ServiceDescriptor:
    return ServiceDescriptor(
        id=service_id,
        name=kwargs.pop("name", service_id),
        endpoint=kwargs.pop("endpoint", f"http://{service_id}.test/invoke"),
        capabilities=frozenset(capabilities),
        price=Decimal(price),
        reputation=Reputation(rating=rating, review_count=reviews),
        **kwargs,
    )


@pytest.fixture
def service_factory() -> Callable[..., ServiceDescriptor]:
    return make_service


@dataclass
class FakeService:
    """Behavior of one simulated service.

    health: healthy | unhealthy | unknown | bad_status | refused | timeout
    mode:   paid | free | error | paid_then_error | reject_proof | timeout | expired

    challenge_amount overrides the 402 amount; delay holds each invoke request open.
    """

    service_id: str
    price: Decimal
    health: str = "healthy"
    mode: str = "paid"
    result: Any = None
    challenge_amount: str | None = None
    delay: float = 0.0
    challenges_issued: int = 0
    paid_calls: int = 0
    unpaid_calls: int = 0
    proofs: list[dict[str, Any]] = field(default_factory=list)
    payloads: list[dict[str, Any]] = field(default_factory=list)


class FakeServices:
    """httpx MockTransport routing requests to simulated services by host."""

    def __init__(self) -> None:
        self.services: dict[str, FakeService] = {}
        self.in_flight = 0
        self.peak_in_flight = 0

    def add(self, service_id: str, price: str = "0.01", **behavior: Any) -> FakeService:
        fake = FakeService(service_id, Decimal(price), **behavior)
        self.services[service_id] = fake
        return fake

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handle))

    async def handle(self, request: httpx.Request) -> httpx.Response:
        service_id = request.url.host.removesuffix(".test")
        fake = self.services.get(service_id)
        if fake is None:
            raise httpx.ConnectError("connection refused", request=request)
        if request.url.path.endswith("/health"):
            return self._health(fake, request)
        if not fake.delay:
            return self._invoke(fake, request)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            await asyncio.sleep(fake.delay)
            return self._invoke(fake, request)
        finally:
            self.in_flight -= 1

    def _health(self, fake: FakeService, request: httpx.Request) -> httpx.Response:
        if fake.health == "refused":
            raise httpx.ConnectError("connection refused", request=request)
        if fake.health == "timeout":
            raise httpx.ReadTimeout("timed out", request=request)
        if fake.health == "bad_status":
            return httpx.Response(503, json={"status": "down"})
        if fake.health == "unhealthy":
            return httpx.Response(200, json={"status": "unhealthy"})
        if fake.health == "unknown":
            return httpx.Response(200, text="pong")
        return httpx.Response(200, json={"status": "healthy"})

    def _invoke(self, fake: FakeService, request: httpx.Request) -> httpx.Response:
        fake.payloads.append(json.loads(request.content or b"{}"))
        header = request.headers.get("X-Payment")

        if header is None:
            fake.unpaid_calls += 1
            if fake.mode == "free":
                return httpx.Response(200, json={"result": self._result(fake)})
            if fake.mode == "error":
                return httpx.Response(500, json={"error": "internal"})
            if fake.mode == "timeout":
                raise httpx.ReadTimeout("timed out", request=request)
            fake.challenges_issued += 1
            expires = datetime.now(timezone.utc) + timedelta(minutes=5)
            if fake.mode == "expired":
                expires = datetime.now(timezone.utc) - timedelta(minutes=5)
            return httpx.Response(
                402,
                json={
                    "amount": fake.challenge_amount or str(fake.price),
                    "currency": "USDC",
                    "recipient": f"0x{fake.service_id}",
                    "network": "base-sepolia",
                    "challengeToken": f"tok-{fake.service_id}-{fake.challenges_issued}",
                    "expiresAt": expires.isoformat(),
                },
            )

        proof = json.loads(header)
        fake.paid_calls += 1
        fake.proofs.append(proof)
        if fake.mode == "reject_proof":
            return httpx.Response(403, json={"error": "invalid payment"})
        if fake.mode == "paid_then_error":
            return httpx.Response(500, json={"error": "business logic failed"})
        if Decimal(proof["amountPaid"]) < fake.price:
            return httpx.Response(402, json={"error": "underpaid"})
        return httpx.Response(
            200,
            json={
                "result": self._result(fake),
                "receipt": {
                    "challengeToken": proof["challengeToken"],
                    "transactionRef": proof["transactionRef"],
                    "amount": proof["amountPaid"],
                },
            },
        )

    def _result(self, fake: FakeService) -> Any:
        return fake.result if fake.result is not None else {"service": fake.service_id}


@pytest.fixture
def fake_services() -> FakeServices:
    return FakeServices()
