"""Persistence for the registry and the ledger archive."""

from __future__ import annotations

from .database import Database
from .ledger_store import LedgerStore

__all__ = [
    "Database",
    "LedgerStore",
]
