"""
Expense Ledger

Holds the confirmed ExpenseRecords and keeps them reconciled.

CRITICAL BOUNDARIES:
- For every client_expense_id exactly one record is authoritative: the
  most recently updated. The same holds for every id. A record stays in
  the ledger only if it is authoritative for BOTH groupings, so a merge
  of local and remote snapshots never leaves an orphaned duplicate.
- The ledger is deduplicated after every mutation.
- Remote rows whose id is tombstoned are dropped before a merge, so a
  delete followed by a stale refresh can't resurrect a row.
"""

from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable, Optional
from uuid import UUID, uuid4

import structlog

from voice_ledger.models.expense import (
    ExpenseDraft,
    ExpenseRecord,
    ParseStatus,
    QueuedCapture,
    normalize_currency_code,
    utc_now,
)
from voice_ledger.validation import parse_review_amount


logger = structlog.get_logger(__name__)


def deduplicate_expenses(items: Iterable[ExpenseRecord]) -> list[ExpenseRecord]:
    """
    Keep only records authoritative for both their id and their client id.

    Result is ordered by expense_date, then updated_at, newest first.
    """
    newest_first = sorted(items, key=lambda record: record.updated_at, reverse=True)

    by_id: dict[UUID, ExpenseRecord] = {}
    by_client_id: dict[UUID, ExpenseRecord] = {}
    for record in newest_first:
        by_id.setdefault(record.id, record)
        by_client_id.setdefault(record.client_expense_id, record)

    selected = [
        record for record in by_id.values()
        if by_client_id[record.client_expense_id].id == record.id
    ]
    return sorted(
        selected,
        key=lambda record: (record.expense_date, record.updated_at),
        reverse=True,
    )


def merge_remote_expenses(
    local: Iterable[ExpenseRecord],
    remote: Iterable[ExpenseRecord],
    tombstoned_ids: Iterable[UUID] = (),
) -> list[ExpenseRecord]:
    """Union of both snapshots minus tombstoned rows, then deduplicated."""
    excluded = set(tombstoned_ids)
    incoming = [record for record in remote if record.id not in excluded]
    return deduplicate_expenses([*local, *incoming])


def draft_from_expense(expense: ExpenseRecord) -> ExpenseDraft:
    """Editable draft of an already saved expense."""
    return ExpenseDraft(
        client_expense_id=expense.client_expense_id,
        amount_text=format(expense.amount.normalize(), "f"),
        currency=expense.currency,
        category=expense.category,
        category_id=expense.category_id,
        description=expense.description or "",
        merchant=expense.merchant or "",
        trip_id=expense.trip_id,
        trip_name=expense.trip_name,
        payment_method_id=expense.payment_method_id,
        payment_method_name=expense.payment_method_name,
        expense_date=expense.expense_date,
        raw_text=expense.raw_text or "",
        source=expense.source,
        parse_confidence=expense.parse_confidence,
    )


class LedgerCommitError(ValueError):
    """A draft could not be turned into a ledger row."""


class Ledger:
    """
    The in-memory ledger.

    Owned by ExpenseTracker and only mutated on its event loop;
    persistence is the owner's job.
    """

    def __init__(
        self,
        expenses: Optional[Iterable[ExpenseRecord]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._expenses: list[ExpenseRecord] = deduplicate_expenses(expenses or [])
        self._clock = clock

    @property
    def expenses(self) -> list[ExpenseRecord]:
        return list(self._expenses)

    def __len__(self) -> int:
        return len(self._expenses)

    def get(self, expense_id: UUID) -> Optional[ExpenseRecord]:
        for record in self._expenses:
            if record.id == expense_id:
                return record
        return None

    def find_by_client_id(self, client_expense_id: UUID) -> Optional[ExpenseRecord]:
        for record in self._expenses:
            if record.client_expense_id == client_expense_id:
                return record
        return None

    def ids(self) -> set[UUID]:
        return {record.id for record in self._expenses}

    # ===== COMMIT =====

    def commit_draft(
        self,
        draft: ExpenseDraft,
        default_currency: str,
        queue_item: Optional[QueuedCapture] = None,
        existing_expense_id: Optional[UUID] = None,
        mark_edited: bool = False,
    ) -> ExpenseRecord:
        """
        Write a draft into the ledger.

        Updates the record named by existing_expense_id when it exists.
        Otherwise inserts a record keyed by the draft's client_expense_id,
        using the queue item's server_expense_id as its id when known.
        A record already holding that id or client id is replaced, so
        committing the same capture twice leaves one row.

        Raises:
            LedgerCommitError: amount_text is not a positive number
        """
        amount = parse_review_amount(draft.amount_text)
        if amount is None:
            raise LedgerCommitError(f"Invalid amount: {draft.amount_text!r}")

        now = self._clock()
        currency = normalize_currency_code(draft.currency) or default_currency

        if existing_expense_id is not None:
            index = self._index_of(existing_expense_id)
            if index is not None:
                current = self._expenses[index]
                updated = current.model_copy(update={
                    **_draft_fields(draft, amount, currency),
                    "raw_text": draft.raw_text or None,
                    "parse_status": ParseStatus.EDITED,
                    "updated_at": now,
                })
                self._expenses[index] = updated
                self._expenses = deduplicate_expenses(self._expenses)
                return updated

        record = ExpenseRecord(
            id=(queue_item.server_expense_id if queue_item else None) or uuid4(),
            client_expense_id=draft.client_expense_id,
            **_draft_fields(draft, amount, currency),
            raw_text=draft.raw_text,
            captured_at_device=queue_item.captured_at if queue_item else now,
            synced_at=now,
            source=draft.source,
            parse_status=ParseStatus.EDITED if mark_edited else ParseStatus.AUTO,
            audio_duration_seconds=queue_item.audio_duration_seconds if queue_item else None,
            created_at=now,
            updated_at=now,
        )

        for index, existing in enumerate(self._expenses):
            if existing.id == record.id or existing.client_expense_id == record.client_expense_id:
                self._expenses[index] = record
                break
        else:
            self._expenses.insert(0, record)

        self._expenses = deduplicate_expenses(self._expenses)
        return record

    # ===== REMOVAL / RESTORE =====

    def remove(self, expense_id: UUID) -> Optional[tuple[int, ExpenseRecord]]:
        """Remove a record, returning its position for a later rollback."""
        index = self._index_of(expense_id)
        if index is None:
            return None
        record = self._expenses.pop(index)
        return index, record

    def reinsert(self, record: ExpenseRecord, index: Optional[int] = None) -> None:
        """Put a removed record back unless it is already present."""
        if self._index_of(record.id) is not None:
            return
        position = 0 if index is None else min(max(0, index), len(self._expenses))
        self._expenses.insert(position, record)
        self._expenses = deduplicate_expenses(self._expenses)

    # ===== BULK UPDATES =====

    def merge_remote(self, remote: Iterable[ExpenseRecord], tombstoned_ids: Iterable[UUID] = ()) -> None:
        self._expenses = merge_remote_expenses(self._expenses, remote, tombstoned_ids)

    def update_where(
        self,
        predicate: Callable[[ExpenseRecord], bool],
        updates: Callable[[ExpenseRecord], dict],
    ) -> int:
        """
        Apply field updates to every matching record.

        Returns:
            Number of records changed
        """
        changed = 0
        for index, record in enumerate(self._expenses):
            if not predicate(record):
                continue
            fields = updates(record)
            if not fields:
                continue
            self._expenses[index] = record.model_copy(update=fields)
            changed += 1
        if changed:
            self._expenses = deduplicate_expenses(self._expenses)
        return changed

    def _index_of(self, expense_id: UUID) -> Optional[int]:
        for index, record in enumerate(self._expenses):
            if record.id == expense_id:
                return index
        return None


def _draft_fields(draft: ExpenseDraft, amount: Decimal, currency: str) -> dict:
    return {
        "amount": amount,
        "currency": currency,
        "category": draft.category,
        "category_id": draft.category_id,
        "description": draft.description or None,
        "merchant": draft.merchant or None,
        "trip_id": draft.trip_id,
        "trip_name": draft.trip_name,
        "payment_method_id": draft.payment_method_id,
        "payment_method_name": draft.payment_method_name,
        "expense_date": draft.expense_date,
        "parse_confidence": draft.parse_confidence,
    }
