"""Pay-to-call protocol: challenges, proofs, wallets and fallback invocation."""

from agentmarket.payment.executor import InvocationExecutor
from agentmarket.payment.gateway import PaymentGatewayClient
from agentmarket.payment.limits import SpendingLimits, SpendingStats
from agentmarket.payment.models import (
    AttemptRecord,
    CallState,
    InvocationResult,
    PaidResponse,
    PaymentAttempt,
    PaymentChallenge,
    PaymentProof,
    PaymentReceipt,
)
from agentmarket.payment.wallet import ApprovalWallet, SimulatedWallet, Wallet

__all__ = [
    "ApprovalWallet",
    "AttemptRecord",
    "CallState",
    "InvocationExecutor",
    "InvocationResult",
    "PaidResponse",
    "PaymentAttempt",
    "PaymentChallenge",
    "PaymentGatewayClient",
    "PaymentProof",
    "PaymentReceipt",
    "SimulatedWallet",
    "SpendingLimits",
    "SpendingStats",
    "Wallet",
]
