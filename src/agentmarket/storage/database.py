"""SQLite database with WAL mode for the service registry."""

from __future__ import annotations

import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from agentmarket.config import DEFAULT_DATA_DIR


class Database:
    """SQLite storage layer with WAL mode for registry descriptors and reputation events."""

    BUSY_TIMEOUT_MS = 5000

    def __init__(self, data_dir: Path | None = None) -> None:
        self.data_dir = data_dir or DEFAULT_DATA_DIR
        self.db_path = self.data_dir / "data" / "agentmarket.db"

    def _ensure_dirs(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        (self.data_dir / "data").mkdir(exist_ok=True)
        (self.data_dir / "logs").mkdir(exist_ok=True)

    @contextmanager
    def connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with WAL mode; commits on success, rolls back on error."""
        self._ensure_dirs()
        conn = sqlite3.connect(str(self.db_path), timeout=self.BUSY_TIMEOUT_MS / 1000)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={self.BUSY_TIMEOUT_MS}")
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def ensure_tables(self) -> None:
        """Create all tables if they don't exist."""
        with self.connect() as conn:
            conn.executescript(_SCHEMA)

    def execute(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        """Execute a query and return results."""
        with self.connect() as conn:
            cursor = conn.execute(sql, params)
            return cursor.fetchall()

    def execute_insert(self, sql: str, params: tuple[Any, ...] = ()) -> int:
        """Execute an insert and return lastrowid."""
        with self.connect() as conn:
            cursor = conn.execute(sql, params)
            return cursor.lastrowid or 0


_SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS services (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    provider TEXT NOT NULL DEFAULT '',
    endpoint TEXT NOT NULL,
    health_check_url TEXT,
    capabilities TEXT NOT NULL,
    price TEXT NOT NULL,
    currency TEXT NOT NULL DEFAULT 'USDC',
    network TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    seed_total_jobs INTEGER NOT NULL DEFAULT 0,
    seed_success_rate REAL NOT NULL DEFAULT 0.0,
    seed_avg_response_time REAL NOT NULL DEFAULT 0.0,
    seed_rating REAL NOT NULL DEFAULT 0.0,
    seed_review_count INTEGER NOT NULL DEFAULT 0,
    review_count INTEGER NOT NULL DEFAULT 0,
    score_sum INTEGER NOT NULL DEFAULT 0,
    job_count INTEGER NOT NULL DEFAULT 0,
    success_count INTEGER NOT NULL DEFAULT 0,
    response_time_sum REAL NOT NULL DEFAULT 0.0,
    retired INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    retired_at TEXT,
    CHECK (seed_review_count >= 0),
    CHECK (review_count >= 0),
    CHECK (seed_rating BETWEEN 0.0 AND 5.0)
);

CREATE TABLE IF NOT EXISTS reputation_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    service_id TEXT NOT NULL REFERENCES services(id),
    kind TEXT NOT NULL,
    score INTEGER,
    review TEXT,
    success INTEGER,
    response_time_ms REAL,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    CHECK (kind IN ('rating', 'job')),
    CHECK (score IS NULL OR score BETWEEN 1 AND 5)
);

CREATE INDEX IF NOT EXISTS idx_reputation_service
ON reputation_events(service_id, id);

INSERT OR IGNORE INTO schema_version (version) VALUES (1);
"""
