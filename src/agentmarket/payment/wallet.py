"""
Wallets

The runtime never holds keys. It consumes any object with an ``address`` and
an ``async sign(challenge) -> PaymentProof`` method.
"""

from __future__ import annotations

import hashlib
from collections.abc import Awaitable, Callable
from decimal import Decimal
from typing import Protocol, runtime_checkable

from agentmarket.errors import PaymentRejected
from agentmarket.log import get_logger
from agentmarket.payment.models import PaymentChallenge, PaymentProof

logger = get_logger("payment")

Approver = Callable[[PaymentChallenge], Awaitable[bool]]


@runtime_checkable
class Wallet(Protocol):
    """Signs payment challenges. Signing may block on a human approval step."""

    address: str

    async def sign(self, challenge: PaymentChallenge) -> PaymentProof: ...


class SimulatedWallet:
    """
    Deterministic wallet for local and development marketplaces.

    Pays exactly the challenged amount; the transaction ref is derived from the
    payer and the challenge token so repeated runs produce identical proofs.
    """

    def __init__(self, address: str = "0xsimulated") -> None:
        self.address = address
        self.signed: list[PaymentChallenge] = []

    async def sign(self, challenge: PaymentChallenge) -> PaymentProof:
        self.signed.append(challenge)
        digest = hashlib.sha256(f"{self.address}:{challenge.challenge_token}".encode()).hexdigest()
        return PaymentProof(
            challenge_token=challenge.challenge_token,
            transaction_ref=f"0x{digest}",
            payer=self.address,
            amount_paid=challenge.amount,
            currency=challenge.currency,
            network=challenge.network,
        )

    @property
    def total_signed(self) -> Decimal:
        return sum((c.amount for c in self.signed), Decimal("0"))


class ApprovalWallet:
    """
    Wraps a wallet and asks an approver before signing large amounts.

    Args:
        inner: Wallet that actually signs
        threshold: Amounts strictly above this need approval
        approver: Async callable returning True to approve
    """

    def __init__(self, inner: Wallet, threshold: Decimal, approver: Approver) -> None:
        self.inner = inner
        self.threshold = threshold
        self.approver = approver

    @property
    def address(self) -> str:
        return self.inner.address

    async def sign(self, challenge: PaymentChallenge) -> PaymentProof:
        if challenge.amount > self.threshold:
            logger.info(
                "approval required for %s %s to %s",
                challenge.amount,
                challenge.currency,
                challenge.recipient,
            )
            if not await self.approver(challenge):
                raise PaymentRejected(
                    f"payment of {challenge.amount} {challenge.currency} denied by approver",
                    details={"challenge_token": challenge.challenge_token},
                )
        return await self.inner.sign(challenge)
