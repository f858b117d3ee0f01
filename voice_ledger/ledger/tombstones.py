"""
Recently Deleted Expenses

A deleted expense is kept as a tombstone, together with the queue
entries that referenced it, for a retention window (30 days by default).
Within the window it can be restored with its original id; past it the
entry is purged.

The set of tombstoned ids is also what keeps a stale remote refresh from
bringing a deleted row back.
"""

from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional
from uuid import UUID

from voice_ledger.config import get_settings
from voice_ledger.models.expense import (
    ExpenseRecord,
    QueuedCapture,
    RecentlyDeletedExpenseEntry,
    utc_now,
)


class RecentlyDeletedExpenses:
    """Tombstone set, newest deletion first."""

    def __init__(
        self,
        entries: Optional[Iterable[RecentlyDeletedExpenseEntry]] = None,
        retention_days: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        if retention_days is None:
            retention_days = get_settings().app.tombstone_retention_days
        self._retention = timedelta(days=retention_days)
        self._clock = clock
        self._entries: list[RecentlyDeletedExpenseEntry] = []
        for entry in entries or []:
            self._add(entry)

    @property
    def entries(self) -> list[RecentlyDeletedExpenseEntry]:
        return list(self._entries)

    @property
    def retention(self) -> timedelta:
        return self._retention

    def __len__(self) -> int:
        return len(self._entries)

    def tombstoned_ids(self) -> set[UUID]:
        return {entry.expense.id for entry in self._entries}

    def get(self, entry_id: UUID) -> Optional[RecentlyDeletedExpenseEntry]:
        for entry in self._entries:
            if entry.id == entry_id:
                return entry
        return None

    def add(
        self,
        expense: ExpenseRecord,
        queue_entries: Iterable[QueuedCapture] = (),
    ) -> RecentlyDeletedExpenseEntry:
        entry = RecentlyDeletedExpenseEntry(
            expense=expense,
            queue_entries=list(queue_entries),
            deleted_at=self._clock(),
        )
        self._add(entry)
        return entry

    def _add(self, entry: RecentlyDeletedExpenseEntry) -> None:
        # One tombstone per expense id; the newer deletion wins
        self._entries = [e for e in self._entries if e.expense.id != entry.expense.id]
        self._entries.append(entry)
        self._entries.sort(key=lambda e: e.deleted_at, reverse=True)

    def take(self, entry_id: UUID) -> Optional[RecentlyDeletedExpenseEntry]:
        """Remove and return an entry (restore or permanent delete)."""
        entry = self.get(entry_id)
        if entry is None:
            return None
        self._entries = [e for e in self._entries if e.id != entry_id]
        return entry

    def take_all(self) -> list[RecentlyDeletedExpenseEntry]:
        taken, self._entries = self._entries, []
        return taken

    def discard_expense(self, expense_id: UUID) -> None:
        """Drop the tombstone of an expense whose delete was rolled back."""
        self._entries = [e for e in self._entries if e.expense.id != expense_id]

    def is_expired(self, entry: RecentlyDeletedExpenseEntry, now: Optional[datetime] = None) -> bool:
        return (now or self._clock()) - entry.deleted_at >= self._retention

    def take_expired(self, now: Optional[datetime] = None) -> list[RecentlyDeletedExpenseEntry]:
        """Remove and return every entry past the retention window."""
        now = now or self._clock()
        expired = [e for e in self._entries if self.is_expired(e, now)]
        if expired:
            self._entries = [e for e in self._entries if not self.is_expired(e, now)]
        return expired
