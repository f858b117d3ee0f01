"""
Offline Capture Queue

Ordered collection of QueuedCapture records, newest first, and the
state machine they move through:

    pending -> syncing -> {saved | needs_review | failed}
    failed / pending -> pending (retry)

CRITICAL BOUNDARIES:
- client_expense_id is never touched after creation
- An item found in "syncing" at startup is reset to "pending"
- Reaching "saved" deletes the local audio file and clears its path
- A queue entry a ledger row still references is never deleted
"""

import os
from typing import Iterable, Optional
from uuid import UUID

import structlog

from voice_ledger.models.expense import (
    ExpenseDraft,
    ExpenseRecord,
    FailedState,
    NeedsReviewState,
    PendingState,
    QueuedCapture,
    QueueStatus,
    SavedState,
    SyncingState,
)


logger = structlog.get_logger(__name__)


def delete_local_audio(path: Optional[str]) -> None:
    """Remove a local recording; a file that is already gone is fine."""
    if not path:
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        return
    except OSError as e:
        logger.warning("local_audio_delete_failed", path=path, error=str(e))


def deduplicate_queue(items: Iterable[QueuedCapture]) -> list[QueuedCapture]:
    """
    Collapse duplicate queue entries, keeping list order.

    - A repeated local id keeps its first occurrence.
    - Entries sharing a client_expense_id collapse when either copy is
      already saved. The saved copy survives; between two saved copies
      the first one does.
    """
    by_id: set[UUID] = set()
    unique: list[QueuedCapture] = []
    for item in items:
        if item.id in by_id:
            continue
        by_id.add(item.id)
        unique.append(item)

    kept: list[QueuedCapture] = []
    position_by_client: dict[UUID, int] = {}
    for item in unique:
        position = position_by_client.get(item.client_expense_id)
        if position is None:
            position_by_client[item.client_expense_id] = len(kept)
            kept.append(item)
            continue

        existing = kept[position]
        if existing.status == QueueStatus.SAVED:
            continue
        if item.status == QueueStatus.SAVED:
            kept[position] = item
            continue
        # Neither copy is saved yet; both stay until one of them lands
        kept.append(item)

    return kept


def reset_interrupted(items: Iterable[QueuedCapture]) -> list[QueuedCapture]:
    """Items left "syncing" by a crash go back to "pending"."""
    reset = []
    for item in items:
        if item.status == QueueStatus.SYNCING:
            item = item.model_copy(update={"state": PendingState()})
        reset.append(item)
    return reset


class CaptureQueue:
    """
    The offline queue.

    Not thread-safe: it is owned by ExpenseTracker and only mutated on
    its event loop. Persistence is the owner's job; every mutator returns
    the affected item (or None when the id is unknown) so the caller can
    decide whether to persist.
    """

    def __init__(self, items: Optional[Iterable[QueuedCapture]] = None):
        self._items: list[QueuedCapture] = deduplicate_queue(items or [])

    @classmethod
    def for_startup(cls, items: Iterable[QueuedCapture]) -> "CaptureQueue":
        return cls(reset_interrupted(deduplicate_queue(items)))

    # ===== READ =====

    @property
    def items(self) -> list[QueuedCapture]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def get(self, queue_id: UUID) -> Optional[QueuedCapture]:
        index = self._index_of(queue_id)
        return None if index is None else self._items[index]

    def ids(self) -> list[UUID]:
        return [item.id for item in self._items]

    def with_status(self, status: QueueStatus) -> list[QueuedCapture]:
        return [item for item in self._items if item.status == status]

    def _index_of(self, queue_id: UUID) -> Optional[int]:
        for index, item in enumerate(self._items):
            if item.id == queue_id:
                return index
        return None

    def _replace(self, queue_id: UUID, **updates) -> Optional[QueuedCapture]:
        index = self._index_of(queue_id)
        if index is None:
            return None
        updated = self._items[index].model_copy(update=updates)
        self._items[index] = updated
        return updated

    # ===== ENQUEUE / NORMALIZE =====

    def enqueue(self, item: QueuedCapture) -> QueuedCapture:
        self._items.insert(0, item)
        self._items = deduplicate_queue(self._items)
        return item

    def normalize(self) -> None:
        self._items = deduplicate_queue(self._items)

    # ===== TRANSITIONS =====

    def mark_syncing(self, queue_id: UUID) -> Optional[QueuedCapture]:
        """pending -> syncing. Clears last_error."""
        return self._replace(queue_id, state=SyncingState())

    def mark_saved(
        self,
        queue_id: UUID,
        draft: Optional[ExpenseDraft] = None,
        server_expense_id: Optional[UUID] = None,
    ) -> Optional[QueuedCapture]:
        """Terminal state. Deletes the local recording."""
        item = self.get(queue_id)
        if item is None:
            return None
        delete_local_audio(item.local_audio_file_path)
        return self._replace(
            queue_id,
            state=SavedState(draft=draft),
            local_audio_file_path=None,
            server_expense_id=server_expense_id or item.server_expense_id,
        )

    def mark_needs_review(
        self,
        queue_id: UUID,
        draft: ExpenseDraft,
        server_expense_id: Optional[UUID] = None,
    ) -> Optional[QueuedCapture]:
        item = self.get(queue_id)
        if item is None:
            return None
        return self._replace(
            queue_id,
            state=NeedsReviewState(draft=draft),
            server_expense_id=server_expense_id or item.server_expense_id,
        )

    def mark_failed(
        self,
        queue_id: UUID,
        error: str,
        draft: Optional[ExpenseDraft] = None,
        count_retry: bool = True,
    ) -> Optional[QueuedCapture]:
        """Record a failure, counting it against the item unless told not to."""
        item = self.get(queue_id)
        if item is None:
            return None
        return self._replace(
            queue_id,
            state=FailedState(error=error, draft=draft),
            retry_count=item.retry_count + 1 if count_retry else item.retry_count,
        )

    def mark_pending(
        self,
        queue_id: UUID,
        last_error: Optional[str] = None,
    ) -> Optional[QueuedCapture]:
        """Back to pending without touching retry_count."""
        return self._replace(queue_id, state=PendingState(last_error=last_error))

    # ===== RETRY =====

    def retry_item(self, queue_id: UUID) -> Optional[QueuedCapture]:
        """Per-item retry: back to pending with the last error cleared."""
        item = self.get(queue_id)
        if item is None or item.status not in (QueueStatus.FAILED, QueueStatus.PENDING):
            return None
        return self.mark_pending(queue_id)

    def retry_failed(self) -> list[QueuedCapture]:
        """
        Bulk retry of every failed item.

        retry_count and the last error message are kept so the history
        of a flaky item stays visible.
        """
        retried = []
        for item in self.with_status(QueueStatus.FAILED):
            updated = self.mark_pending(item.id, last_error=item.last_error)
            if updated is not None:
                retried.append(updated)
        return retried

    # ===== REMOVAL =====

    @staticmethod
    def is_referenced(item: QueuedCapture, expenses: Iterable[ExpenseRecord]) -> bool:
        for expense in expenses:
            if expense.client_expense_id == item.client_expense_id:
                return True
            if item.server_expense_id is not None and expense.id == item.server_expense_id:
                return True
        return False

    def remove(self, queue_id: UUID, expenses: Iterable[ExpenseRecord]) -> bool:
        """
        Delete a queue item the ledger does not reference.

        Returns False (and keeps the item as a sync artifact) when a
        ledger row still points at it. The item's recording is deleted
        along with it.
        """
        index = self._index_of(queue_id)
        if index is None:
            return False
        item = self._items[index]
        if self.is_referenced(item, expenses):
            logger.info("queue_delete_refused", queue_id=str(queue_id))
            return False
        del self._items[index]
        delete_local_audio(item.local_audio_file_path)
        return True

    def detach_for_expense(self, expense: ExpenseRecord) -> list[tuple[int, QueuedCapture]]:
        """
        Remove every entry that refers to an expense.

        Returns (original index, entry) pairs so a rollback can put them
        back where they were.
        """
        detached = []
        kept = []
        for index, item in enumerate(self._items):
            refers = (
                item.client_expense_id == expense.client_expense_id
                or (item.server_expense_id is not None and item.server_expense_id == expense.id)
            )
            if refers:
                detached.append((index, item))
            else:
                kept.append(item)
        self._items = kept
        return detached

    def reattach(self, entries: Iterable[tuple[int, QueuedCapture]]) -> None:
        """Undo detach_for_expense, skipping entries already present."""
        for index, item in sorted(entries, key=lambda pair: pair[0]):
            if self._index_of(item.id) is not None:
                continue
            self._items.insert(min(max(0, index), len(self._items)), item)

    def restore_entries(self, entries: Iterable[QueuedCapture]) -> None:
        """Put back queue entries from a tombstone, newest first."""
        for item in entries:
            if self._index_of(item.id) is None:
                self._items.append(item)
        self._items.sort(key=lambda item: item.captured_at, reverse=True)
        self._items = deduplicate_queue(self._items)
