"""
Ledger Store — Archive of Closed Orchestration Ledgers

Closed ledgers are written once, as JSON snapshots, so that spend and outcomes
of past orchestrations stay auditable after the process exits.
"""

from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiosqlite

from agentmarket.config import DEFAULT_DATA_DIR

if TYPE_CHECKING:
    from agentmarket.engine.ledger import OrchestrationLedger


class LedgerStore:
    """Persistent archive of closed orchestration ledgers (aiosqlite)."""

    DB_PATH = DEFAULT_DATA_DIR / "data" / "ledgers.db"

    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = Path(db_path) if db_path else self.DB_PATH
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: aiosqlite.Connection | None = None

    async def __aenter__(self) -> LedgerStore:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object | None,
    ) -> None:
        await self.close()

    async def _init_db(self) -> None:
        self._db = await aiosqlite.connect(str(self.db_path))
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS ledgers (
                orchestration_id TEXT PRIMARY KEY,
                goal TEXT NOT NULL,
                status TEXT NOT NULL,
                budget_ceiling TEXT NOT NULL,
                total_cost TEXT NOT NULL,
                entry_count INTEGER NOT NULL DEFAULT 0,
                snapshot TEXT NOT NULL,
                closed_at TEXT NOT NULL
            )
        """)
        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_ledgers_closed
            ON ledgers(closed_at DESC)
        """)
        await self._db.commit()

    async def open(self) -> None:
        if self._db is None:
            await self._init_db()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def save(self, ledger: OrchestrationLedger) -> None:
        """Archive a closed ledger. Re-saving the same orchestration is a no-op."""
        if not ledger.closed:
            raise ValueError(f"ledger {ledger.orchestration_id} is still open")

        assert self._db is not None
        snapshot = ledger.to_dict()
        await self._db.execute(
            """INSERT OR IGNORE INTO ledgers
               (orchestration_id, goal, status, budget_ceiling, total_cost,
                entry_count, snapshot, closed_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                ledger.orchestration_id,
                ledger.goal,
                snapshot["status"],
                snapshot["budget_ceiling"],
                snapshot["total_cost"],
                len(snapshot["entries"]),
                json.dumps(snapshot),
                snapshot["closed_at"],
            ),
        )
        await self._db.commit()

    async def get(self, orchestration_id: str) -> dict[str, Any] | None:
        """Return the archived snapshot of one orchestration."""
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT snapshot FROM ledgers WHERE orchestration_id = ?",
            (orchestration_id,),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return json.loads(row[0])  # type: ignore[no-any-return]

    async def list_recent(self, limit: int = 20) -> list[dict[str, Any]]:
        """Summaries of the most recently closed orchestrations."""
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT orchestration_id, goal, status, budget_ceiling, total_cost, "
            "entry_count, closed_at FROM ledgers ORDER BY closed_at DESC LIMIT ?",
            (limit,),
        )
        rows = await cursor.fetchall()
        return [
            {
                "orchestration_id": row[0],
                "goal": row[1],
                "status": row[2],
                "budget_ceiling": row[3],
                "total_cost": row[4],
                "entry_count": row[5],
                "closed_at": row[6],
            }
            for row in rows
        ]

    async def spent_since(self, since: datetime) -> Decimal:
        """Total cost of ledgers closed at or after ``since`` (naive local time)."""
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT total_cost FROM ledgers WHERE closed_at >= ?",
            (since.isoformat(),),
        )
        rows = await cursor.fetchall()
        return sum((Decimal(row[0]) for row in rows), Decimal("0"))
