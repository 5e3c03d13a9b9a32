"""
ledger.py - Settled earnings ledger, as seen by enforcement.

Enforcement only gates *future* earning and visibility.  It must never
change an entry that is already settled, so the engine is handed a
``ReadOnlyLedgerView`` that exposes totals and entries but no way to write.
``InMemoryLedger`` stands in for the payment system's ledger in tests and
local runs.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Tuple

from utils.errors import FraudEngineError


class LedgerError(FraudEngineError):
    """Invalid ledger operation (unknown entry, write to a settled entry)."""


@dataclass(frozen=True)
class LedgerEntry:
    entry_id: str
    user_id: str
    amount: Decimal
    created_at: datetime
    settled: bool = False


class InMemoryLedger:
    def __init__(self) -> None:
        self._entries: Dict[str, LedgerEntry] = {}
        self._lock = threading.RLock()

    def add_entry(self, entry_id: str, user_id: str, amount, created_at: datetime, settled: bool = False) -> LedgerEntry:
        with self._lock:
            if entry_id in self._entries:
                raise LedgerError(f"Ledger entry {entry_id} already exists.")
            entry = LedgerEntry(entry_id, user_id, Decimal(str(amount)), created_at, settled)
            self._entries[entry_id] = entry
            return entry

    def settle(self, entry_id: str) -> LedgerEntry:
        with self._lock:
            entry = self._get(entry_id)
            if entry.settled:
                return entry
            entry = replace(entry, settled=True)
            self._entries[entry_id] = entry
            return entry

    def adjust(self, entry_id: str, amount) -> LedgerEntry:
        """Change a pending entry's amount; settled entries are immutable."""
        with self._lock:
            entry = self._get(entry_id)
            if entry.settled:
                raise LedgerError(f"Ledger entry {entry_id} is settled and cannot change.")
            entry = replace(entry, amount=Decimal(str(amount)))
            self._entries[entry_id] = entry
            return entry

    def settled_total(self, user_id: str) -> Decimal:
        with self._lock:
            return sum(
                (e.amount for e in self._entries.values() if e.user_id == user_id and e.settled),
                Decimal("0"),
            )

    def entries_for(self, user_id: str) -> Tuple[LedgerEntry, ...]:
        with self._lock:
            found: List[LedgerEntry] = [e for e in self._entries.values() if e.user_id == user_id]
        return tuple(sorted(found, key=lambda e: e.entry_id))

    def _get(self, entry_id: str) -> LedgerEntry:
        try:
            return self._entries[entry_id]
        except KeyError:
            raise LedgerError(f"Unknown ledger entry {entry_id}.") from None


class ReadOnlyLedgerView:
    """Read access to a ledger; the wrapped object is not reachable."""

    __slots__ = ("_settled_total", "_entries_for")

    def __init__(self, ledger) -> None:
        self._settled_total = ledger.settled_total
        self._entries_for = ledger.entries_for

    def settled_total(self, user_id: str) -> Decimal:
        return self._settled_total(user_id)

    def entries_for(self, user_id: str) -> Tuple[LedgerEntry, ...]:
        return tuple(self._entries_for(user_id))
