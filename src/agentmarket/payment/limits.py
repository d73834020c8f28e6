"""
Spending Limits - Daily and monthly caps across orchestrations.

Spend is read back from archived ledgers. Ceilings granted to orchestrations
that are still running in this process count as spent until they are released.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from agentmarket.log import get_logger

if TYPE_CHECKING:
    from agentmarket.storage.ledger_store import LedgerStore

logger = get_logger("limits")

ZERO = Decimal("0")


@dataclass(frozen=True)
class SpendingStats:
    """Spend against the configured limits at one point in time."""

    spent_today: Decimal
    spent_this_month: Decimal
    pending: Decimal
    daily_limit: Decimal | None = None
    monthly_limit: Decimal | None = None

    @property
    def remaining(self) -> Decimal | None:
        """Amount still grantable, or None when no limit is configured."""
        caps = []
        if self.daily_limit is not None:
            caps.append(self.daily_limit - self.spent_today - self.pending)
        if self.monthly_limit is not None:
            caps.append(self.monthly_limit - self.spent_this_month - self.pending)
        if not caps:
            return None
        return max(min(caps), ZERO)

    def to_dict(self) -> dict[str, Any]:
        remaining = self.remaining
        return {
            "spent_today": str(self.spent_today),
            "spent_this_month": str(self.spent_this_month),
            "pending": str(self.pending),
            "daily_limit": str(self.daily_limit) if self.daily_limit is not None else None,
            "monthly_limit": str(self.monthly_limit) if self.monthly_limit is not None else None,
            "remaining": str(remaining) if remaining is not None else None,
        }


class SpendingLimits:
    """
    Caps each orchestration's budget ceiling by what the limits leave.

    Args:
        daily: Maximum spend since local midnight (None: unlimited)
        monthly: Maximum spend since the first of the month (None: unlimited)
        store: Archive of closed ledgers. Without one, only spend released
            through this instance is counted.
    """

    def __init__(
        self,
        daily: Decimal | None = None,
        monthly: Decimal | None = None,
        store: LedgerStore | None = None,
    ) -> None:
        self.daily = daily
        self.monthly = monthly
        self.store = store
        self._pending = ZERO
        self._unarchived: list[tuple[datetime, Decimal]] = []
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self.daily is not None or self.monthly is not None

    async def stats(self, now: datetime | None = None) -> SpendingStats:
        now = now or datetime.now()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        start_of_month = start_of_day.replace(day=1)
        return SpendingStats(
            spent_today=await self._spent_since(start_of_day),
            spent_this_month=await self._spent_since(start_of_month),
            pending=self._pending,
            daily_limit=self.daily,
            monthly_limit=self.monthly,
        )

    async def allow(self, budget: Decimal, now: datetime | None = None) -> Decimal:
        """
        Grant a budget ceiling for one orchestration.

        The grant is held as pending spend until release() is called.

        Returns:
            ``budget``, or less when a limit would otherwise be crossed
        """
        if not budget.is_finite() or budget < 0:
            raise ValueError(f"budget must be a finite amount >= 0, got {budget}")

        async with self._lock:
            remaining = (await self.stats(now)).remaining
            granted = budget if remaining is None else min(budget, remaining)
            if granted < budget:
                logger.warning("spending limit caps budget %s to %s", budget, granted)
            self._pending += granted
            return granted

    def release(self, granted: Decimal, spent: Decimal, now: datetime | None = None) -> None:
        """Return a grant once its orchestration has finished and spent ``spent``."""
        self._pending -= granted
        if self.store is None and spent > 0:
            self._unarchived.append((now or datetime.now(), spent))

    async def _spent_since(self, since: datetime) -> Decimal:
        spent = sum((amount for at, amount in self._unarchived if at >= since), ZERO)
        if self.store is not None:
            spent += await self.store.spent_since(since)
        return spent
