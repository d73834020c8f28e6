"""
Payment Data Models

Challenge/proof/receipt records for the pay-to-call protocol and the audit
records produced by the gateway and the fallback executor.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import StrEnum
from typing import Any

PAYMENT_HEADER = "X-Payment"


class CallState(StrEnum):
    """States of a single pay-to-call exchange."""

    IDLE = "idle"
    REQUESTED = "requested"
    CHALLENGE_RECEIVED = "challenge_received"
    PROOF_SUBMITTED = "proof_submitted"
    SETTLED = "settled"
    REJECTED = "rejected"
    EXPIRED = "expired"
    FAILED = "failed"  # proof accepted, business call failed; the payment is sunk

    @property
    def is_terminal(self) -> bool:
        return self in (CallState.SETTLED, CallState.REJECTED, CallState.EXPIRED, CallState.FAILED)


# Allowed transitions; failures before a challenge leave the attempt in REQUESTED
_TRANSITIONS: dict[CallState, frozenset[CallState]] = {
    CallState.IDLE: frozenset({CallState.REQUESTED}),
    CallState.REQUESTED: frozenset({CallState.CHALLENGE_RECEIVED, CallState.SETTLED}),
    CallState.CHALLENGE_RECEIVED: frozenset(
        {CallState.PROOF_SUBMITTED, CallState.REJECTED, CallState.EXPIRED}
    ),
    CallState.PROOF_SUBMITTED: frozenset({CallState.SETTLED, CallState.REJECTED, CallState.FAILED}),
}


@dataclass(frozen=True)
class PaymentChallenge:
    """Server-issued, single-use request for payment (HTTP 402 body)."""

    amount: Decimal
    currency: str
    recipient: str
    network: str
    challenge_token: str
    expires_at: datetime | None = None

    @classmethod
    def from_body(cls, body: Any) -> PaymentChallenge:
        """
        Parse a 402 response body.

        Raises:
            ValueError: Missing or malformed fields
        """
        if not isinstance(body, dict):
            raise ValueError("payment challenge must be a JSON object")
        missing = [k for k in ("amount", "recipient", "challengeToken") if not body.get(k)]
        if missing:
            raise ValueError(f"payment challenge missing fields: {', '.join(missing)}")
        try:
            amount = Decimal(str(body["amount"]).lstrip("$"))
        except ArithmeticError as e:
            raise ValueError(f"invalid challenge amount: {body['amount']!r}") from e
        if not amount.is_finite():
            raise ValueError(f"challenge amount must be finite, got {amount}")
        if amount < 0:
            raise ValueError(f"challenge amount must be >= 0, got {amount}")

        return cls(
            amount=amount,
            currency=str(body.get("currency") or "USDC"),
            recipient=str(body["recipient"]),
            network=str(body.get("network") or ""),
            challenge_token=str(body["challengeToken"]),
            expires_at=_parse_timestamp(body.get("expiresAt")),
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now(timezone.utc)) >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "amount": str(self.amount),
            "currency": self.currency,
            "recipient": self.recipient,
            "network": self.network,
            "challengeToken": self.challenge_token,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
        }


@dataclass(frozen=True)
class PaymentProof:
    """Evidence that a challenge was paid. Single use; keyed by challenge token."""

    challenge_token: str
    transaction_ref: str
    payer: str
    amount_paid: Decimal
    currency: str
    network: str

    def satisfies(self, challenge: PaymentChallenge) -> bool:
        return (
            self.challenge_token == challenge.challenge_token
            and self.amount_paid >= challenge.amount
        )

    def to_header(self) -> str:
        """Serialize for the ``X-Payment`` request header."""
        return json.dumps(self.to_dict(), separators=(",", ":"), sort_keys=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "challengeToken": self.challenge_token,
            "transactionRef": self.transaction_ref,
            "payer": self.payer,
            "amountPaid": str(self.amount_paid),
            "currency": self.currency,
            "network": self.network,
        }


@dataclass(frozen=True)
class PaymentReceipt:
    """Settlement receipt echoed by the service; every field is optional."""

    challenge_token: str | None = None
    transaction_ref: str | None = None
    amount: Decimal | None = None

    @classmethod
    def from_body(cls, body: Any) -> PaymentReceipt | None:
        if not isinstance(body, dict):
            return None
        amount = body.get("amount")
        try:
            parsed = Decimal(str(amount)) if amount is not None else None
        except InvalidOperation:
            parsed = None
        return cls(
            challenge_token=body.get("challengeToken"),
            transaction_ref=body.get("transactionRef"),
            amount=parsed,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "challengeToken": self.challenge_token,
            "transactionRef": self.transaction_ref,
            "amount": str(self.amount) if self.amount is not None else None,
        }


@dataclass
class PaymentAttempt:
    """Audit trail of one gateway call: every state transition in order."""

    service_id: str
    state: CallState = CallState.IDLE
    transitions: list[tuple[CallState, str]] = field(default_factory=list)
    challenge: PaymentChallenge | None = None
    proof: PaymentProof | None = None

    def advance(self, state: CallState) -> None:
        if self.state.is_terminal:
            raise ValueError(f"payment attempt already ended in {self.state}")
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if state not in allowed:
            raise ValueError(f"invalid payment transition {self.state} -> {state}")
        self.state = state
        self.transitions.append((state, datetime.now(timezone.utc).isoformat()))

    @property
    def history(self) -> list[CallState]:
        return [CallState.IDLE] + [state for state, _ in self.transitions]


@dataclass(frozen=True)
class PaidResponse:
    """Successful gateway call: business result plus payment evidence."""

    service_id: str
    result: Any
    cost: Decimal
    proof: PaymentProof | None = None
    receipt: PaymentReceipt | None = None
    status_code: int = 200
    response_time_ms: float = 0.0
    attempt: PaymentAttempt | None = field(default=None, compare=False)


@dataclass(frozen=True)
class AttemptRecord:
    """One candidate tried by the executor."""

    service_id: str
    price: Decimal
    outcome: str  # success, or an error code
    error: str | None = None
    cost: Decimal = Decimal("0")
    proof: PaymentProof | None = None
    response_time_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.outcome == "success"

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_id": self.service_id,
            "price": str(self.price),
            "outcome": self.outcome,
            "error": self.error,
            "cost": str(self.cost),
            "proof": self.proof.to_dict() if self.proof else None,
            "response_time_ms": self.response_time_ms,
        }


@dataclass(frozen=True)
class InvocationResult:
    """Outcome of invoke_with_fallback: the winning response and every attempt."""

    response: PaidResponse
    attempts: list[AttemptRecord]

    @property
    def service_id(self) -> str:
        return self.response.service_id

    @property
    def total_cost(self) -> Decimal:
        """Winning cost plus sunk costs of failed-but-paid attempts."""
        return sum((a.cost for a in self.attempts), Decimal("0"))

    @property
    def proofs(self) -> list[PaymentProof]:
        return [a.proof for a in self.attempts if a.proof is not None]


def _parse_timestamp(value: Any) -> datetime | None:
    """Accept ISO-8601 strings and unix seconds (or milliseconds)."""
    if value in (None, ""):
        return None
    if isinstance(value, int | float):
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise ValueError(f"invalid expiresAt: {value!r}") from e
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as e:
        raise ValueError(f"invalid expiresAt: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
