"""Ledger store backends."""
from __future__ import annotations

from .base import LedgerStore
from .memory import InMemoryLedgerStore
from .sql import SQLLedgerStore


def create_store(database_url: str, echo: bool = False) -> LedgerStore:
    """Pick a backend for a database URL. ``memory://`` selects the in-memory store."""
    if database_url.startswith("memory://"):
        return InMemoryLedgerStore()
    return SQLLedgerStore(database_url, echo=echo)


__all__ = [
    "LedgerStore",
    "InMemoryLedgerStore",
    "SQLLedgerStore",
    "create_store",
]
