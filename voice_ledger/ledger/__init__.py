"""
Ledger Package

Confirmed expense records, their reconciliation with the server, the
recently-deleted tombstones and read-only insight queries.
"""

from voice_ledger.ledger.ledger import (
    Ledger,
    LedgerCommitError,
    deduplicate_expenses,
    draft_from_expense,
    merge_remote_expenses,
)
from voice_ledger.ledger.tombstones import RecentlyDeletedExpenses
from voice_ledger.ledger.queries import (
    CategoryTotal,
    category_totals,
    filtered_expenses,
    monthly_spend_total,
    trip_total,
)

__all__ = [
    "CategoryTotal",
    "Ledger",
    "LedgerCommitError",
    "RecentlyDeletedExpenses",
    "category_totals",
    "deduplicate_expenses",
    "draft_from_expense",
    "filtered_expenses",
    "merge_remote_expenses",
    "monthly_spend_total",
    "trip_total",
]
