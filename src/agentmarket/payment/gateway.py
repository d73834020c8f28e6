"""
Payment Gateway Client - Pay-to-call protocol against a single service.

    POST endpoint ──► 2xx ─────────────────────────────► free result
                 └──► 402 + challenge ─► wallet.sign ─► POST + X-Payment
                                                          ├─► 2xx          settled
                                                          ├─► 401/402/403  rejected
                                                          └─► anything else paid-but-failed
"""

from __future__ import annotations

import asyncio
import time
from decimal import Decimal
from typing import Any

import httpx

from agentmarket.discovery.models import ServiceDescriptor
from agentmarket.errors import (
    BudgetExceeded,
    PaidButFailed,
    PaymentRejected,
    PaymentTimeout,
    ServiceError,
)
from agentmarket.log import get_logger, redact
from agentmarket.payment.models import (
    PAYMENT_HEADER,
    CallState,
    PaidResponse,
    PaymentAttempt,
    PaymentChallenge,
    PaymentProof,
    PaymentReceipt,
)
from agentmarket.payment.wallet import Wallet

logger = get_logger("payment")

PAYMENT_REQUIRED = 402
PROOF_REFUSED_STATUSES = frozenset({401, 402, 403})


class PaymentGatewayClient:
    """
    Executes the challenge/proof exchange for one call.

    A challenge is paid at most once per call. After a proof has been
    submitted, no failure ever leads to a second payment.
    """

    DEFAULT_REQUEST_TIMEOUT = 30.0  # seconds
    DEFAULT_SIGNING_TIMEOUT = 60.0  # seconds

    def __init__(
        self,
        wallet: Wallet,
        client: httpx.AsyncClient | None = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        signing_timeout: float = DEFAULT_SIGNING_TIMEOUT,
    ) -> None:
        self.wallet = wallet
        self.request_timeout = request_timeout
        self.signing_timeout = signing_timeout
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> PaymentGatewayClient:
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

    async def invoke(
        self,
        service: ServiceDescriptor,
        payload: dict[str, Any],
        max_amount: Decimal | None = None,
    ) -> PaidResponse:
        """
        Call a service, paying its challenge if it asks for one.

        Args:
            service: Service to call
            payload: JSON request body
            max_amount: Refuse challenges above this amount

        Returns:
            PaidResponse with the business result, cost and payment evidence

        Raises:
            PaymentTimeout: Service or wallet did not answer in time (nothing paid)
            ServiceError: Transport failure or non-402 error before payment
            BudgetExceeded: Challenge amount above max_amount
            PaymentRejected: Challenge expired, proof invalid or refused
            PaidButFailed: Proof accepted but the business call failed
        """
        attempt = PaymentAttempt(service_id=service.id)
        attempt.advance(CallState.REQUESTED)

        start = time.perf_counter()
        try:
            response = await self.client.post(
                service.endpoint, json=payload, timeout=self.request_timeout
            )
        except httpx.TimeoutException as e:
            raise PaymentTimeout(
                f"{service.id} did not respond within {self.request_timeout}s",
                {"service_id": service.id},
            ) from e
        except httpx.HTTPError as e:
            raise ServiceError(
                f"{service.id} unreachable: {e}", details={"service_id": service.id}
            ) from e

        if response.is_success:
            attempt.advance(CallState.SETTLED)
            logger.debug("%s answered without payment", service.id)
            return self._build_response(service, response, Decimal("0"), None, attempt, start)

        if response.status_code != PAYMENT_REQUIRED:
            raise ServiceError(
                f"{service.id} returned {response.status_code}",
                status_code=response.status_code,
                details={"service_id": service.id, "body": _preview(response)},
            )

        challenge = self._parse_challenge(service, response)
        attempt.challenge = challenge
        attempt.advance(CallState.CHALLENGE_RECEIVED)

        if challenge.is_expired():
            attempt.advance(CallState.EXPIRED)
            raise PaymentRejected(
                "challenge expired",
                details={"service_id": service.id, "challenge_token": challenge.challenge_token},
            )

        if max_amount is not None and challenge.amount > max_amount:
            attempt.advance(CallState.REJECTED)
            raise BudgetExceeded(challenge.amount, max_amount)

        proof = await self._sign(service, challenge, attempt, max_amount)
        attempt.proof = proof
        attempt.advance(CallState.PROOF_SUBMITTED)
        logger.info(
            "paying %s %s to %s for %s (tx %s)",
            proof.amount_paid,
            proof.currency,
            challenge.recipient,
            service.id,
            redact(proof.transaction_ref),
        )

        start = time.perf_counter()
        try:
            paid = await self.client.post(
                service.endpoint,
                json=payload,
                headers={PAYMENT_HEADER: proof.to_header()},
                timeout=self.request_timeout,
            )
        except httpx.HTTPError as e:
            attempt.advance(CallState.FAILED)
            raise PaidButFailed(
                f"{service.id} failed after payment: {type(e).__name__}",
                proof=proof,
                details={"service_id": service.id},
                attempt=attempt,
            ) from e

        if paid.is_success:
            attempt.advance(CallState.SETTLED)
            return self._build_response(service, paid, proof.amount_paid, proof, attempt, start)

        if paid.status_code in PROOF_REFUSED_STATUSES:
            attempt.advance(CallState.REJECTED)
            raise PaymentRejected(
                f"{service.id} refused the payment proof ({paid.status_code})",
                proof=proof,
                details={"service_id": service.id, "status_code": paid.status_code},
            )

        attempt.advance(CallState.FAILED)
        raise PaidButFailed(
            f"{service.id} returned {paid.status_code} after payment",
            proof=proof,
            status_code=paid.status_code,
            details={"service_id": service.id, "body": _preview(paid)},
            attempt=attempt,
        )

    def _parse_challenge(
        self, service: ServiceDescriptor, response: httpx.Response
    ) -> PaymentChallenge:
        try:
            return PaymentChallenge.from_body(response.json())
        except ValueError as e:
            raise ServiceError(
                f"{service.id} sent a malformed payment challenge: {e}",
                status_code=response.status_code,
                details={"service_id": service.id},
            ) from e

    async def _sign(
        self,
        service: ServiceDescriptor,
        challenge: PaymentChallenge,
        attempt: PaymentAttempt,
        max_amount: Decimal | None,
    ) -> PaymentProof:
        try:
            proof = await asyncio.wait_for(self.wallet.sign(challenge), self.signing_timeout)
        except asyncio.TimeoutError as e:
            attempt.advance(CallState.REJECTED)
            raise PaymentTimeout(
                f"wallet did not sign within {self.signing_timeout}s",
                {"service_id": service.id, "challenge_token": challenge.challenge_token},
            ) from e
        except PaymentRejected:
            attempt.advance(CallState.REJECTED)
            raise

        if not proof.satisfies(challenge):
            attempt.advance(CallState.REJECTED)
            raise PaymentRejected(
                "proof does not satisfy challenge",
                proof=proof,
                details={
                    "service_id": service.id,
                    "required": str(challenge.amount),
                    "paid": str(proof.amount_paid),
                },
            )
        if max_amount is not None and proof.amount_paid > max_amount:
            attempt.advance(CallState.REJECTED)
            raise PaymentRejected(
                f"wallet paid {proof.amount_paid}, above the allowed {max_amount}",
                proof=proof,
                details={"service_id": service.id},
            )
        return proof

    def _build_response(
        self,
        service: ServiceDescriptor,
        response: httpx.Response,
        cost: Decimal,
        proof: PaymentProof | None,
        attempt: PaymentAttempt,
        start: float,
    ) -> PaidResponse:
        elapsed_ms = (time.perf_counter() - start) * 1000
        try:
            body = response.json()
        except ValueError:
            body = response.text

        receipt = None
        result = body
        if isinstance(body, dict) and "result" in body:
            result = body["result"]
            receipt = PaymentReceipt.from_body(body.get("receipt"))

        return PaidResponse(
            service_id=service.id,
            result=result,
            cost=cost,
            proof=proof,
            receipt=receipt,
            status_code=response.status_code,
            response_time_ms=round(elapsed_ms, 2),
            attempt=attempt,
        )


def _preview(response: httpx.Response, limit: int = 200) -> str:
    return response.text[:limit]
