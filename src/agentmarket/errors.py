"""Typed failure reasons for the marketplace runtime.

Every error carries a stable ``code`` so that ledger entries, API responses and
CLI output can report the same reason string.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from agentmarket.payment.models import AttemptRecord, PaymentAttempt, PaymentProof


class MarketplaceError(Exception):
    """Base exception for all marketplace runtime errors."""

    code = "marketplace_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(f"[{self.code}] {message}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class InvalidDescriptor(MarketplaceError):
    """Raised when a service descriptor violates registry invariants."""

    code = "invalid_descriptor"


class NotFound(MarketplaceError):
    """Raised when a registry lookup misses."""

    code = "not_found"


class ServiceError(MarketplaceError):
    """Raised when a service fails before any payment was made."""

    code = "service_error"

    def __init__(
        self, message: str, status_code: int | None = None, details: dict[str, Any] | None = None
    ) -> None:
        super().__init__(message, details)
        self.status_code = status_code


class PaymentRejected(MarketplaceError):
    """Raised when a proof is refused (bad amount, expired, wrong recipient, denied)."""

    code = "payment_rejected"

    def __init__(
        self,
        message: str,
        proof: PaymentProof | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.proof = proof


class PaymentTimeout(MarketplaceError):
    """Raised when the service or the wallet does not answer before the deadline."""

    code = "payment_timeout"


class PaidButFailed(MarketplaceError):
    """Payment settled but the business call then failed.

    The payment is sunk: it is never retried with a second payment and the
    proof stays attached for dispute or credit.
    """

    code = "paid_but_failed"

    def __init__(
        self,
        message: str,
        proof: PaymentProof,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
        attempt: PaymentAttempt | None = None,
    ) -> None:
        super().__init__(message, details)
        self.proof = proof
        self.status_code = status_code
        self.attempt = attempt

    @property
    def cost(self) -> Decimal:
        return self.proof.amount_paid


class BudgetExceeded(MarketplaceError):
    """Raised when a call or reservation would exceed the available budget."""

    code = "budget_exceeded"

    def __init__(
        self,
        required: Decimal,
        available: Decimal,
        attempts: list[AttemptRecord] | None = None,
    ) -> None:
        super().__init__(
            f"required {required} exceeds available budget {available}",
            {"required": str(required), "available": str(available)},
        )
        self.required = required
        self.available = available
        self.attempts = attempts or []


class AllCandidatesFailed(MarketplaceError):
    """Raised when every ranked candidate failed; keeps every per-candidate reason."""

    code = "all_candidates_failed"

    def __init__(self, attempts: list[AttemptRecord]) -> None:
        reasons = [f"{a.service_id}: {a.error}" for a in attempts]
        super().__init__(
            f"all {len(attempts)} candidate(s) failed",
            {"reasons": reasons},
        )
        self.attempts = attempts


class SkippedDueToDependency(MarketplaceError):
    """A subtask was not dispatched because a dependency did not complete."""

    code = "skipped_due_to_dependency"

    def __init__(self, subtask_id: str, dependency_id: str) -> None:
        super().__init__(
            f"subtask {subtask_id} skipped: dependency {dependency_id} did not complete",
            {"subtask_id": subtask_id, "dependency_id": dependency_id},
        )
        self.subtask_id = subtask_id
        self.dependency_id = dependency_id


class DecompositionInvariantViolation(MarketplaceError):
    """Raised for empty or cyclic decompositions. Fatal for an orchestration."""

    code = "decomposition_invariant_violation"


class LedgerClosed(MarketplaceError):
    """Raised on any mutation of a closed orchestration ledger."""

    code = "ledger_closed"
