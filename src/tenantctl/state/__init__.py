"""Durable state helpers for tenantctl."""
from __future__ import annotations

from .ledger import (
    LedgerEntry,
    LedgerError,
    LedgerReadError,
    LedgerStatus,
    LedgerWriteError,
    StatusLedger,
)

__all__ = [
    "LedgerEntry",
    "LedgerError",
    "LedgerReadError",
    "LedgerStatus",
    "LedgerWriteError",
    "StatusLedger",
]
