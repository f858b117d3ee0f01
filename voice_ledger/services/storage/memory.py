"""
In-Memory Storage Implementations

Used by tests and by the in-process server. Every store keeps deep
copies so callers can't mutate stored state by holding a reference.

The local stores accept fail_writes=True to simulate a disk that
rejects every write.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from voice_ledger.models.api import UsageEvent
from voice_ledger.models.audit import AuditEvent
from voice_ledger.models.expense import (
    ExpenseRecord,
    MetadataSnapshot,
    QueuedCapture,
    RecentlyDeletedExpenseEntry,
    UserProfile,
    utc_now,
)
from voice_ledger.services.storage.interface import (
    AuditStorageInterface,
    LedgerStoreInterface,
    MetadataStoreInterface,
    NotFoundError,
    PersistenceError,
    QueueStoreInterface,
    RecentlyDeletedStoreInterface,
    ServerStoreInterface,
)


# =============================================================================
# LOCAL STORES
# =============================================================================

class _InMemoryLocalStore:
    def __init__(self, fail_writes: bool = False):
        self.fail_writes = fail_writes
        self.write_count = 0

    def _check_writable(self, name: str) -> None:
        if self.fail_writes:
            raise PersistenceError(f"Simulated write failure for {name}")
        self.write_count += 1


class InMemoryQueueStore(_InMemoryLocalStore, QueueStoreInterface):
    def __init__(self, items: Optional[list[QueuedCapture]] = None, fail_writes: bool = False):
        super().__init__(fail_writes)
        self._items = [item.model_copy(deep=True) for item in items or []]

    def load_queue(self) -> list[QueuedCapture]:
        return [item.model_copy(deep=True) for item in self._items]

    def save_queue(self, items: list[QueuedCapture]) -> None:
        self._check_writable("queue")
        self._items = [item.model_copy(deep=True) for item in items]


class InMemoryLedgerStore(_InMemoryLocalStore, LedgerStoreInterface):
    def __init__(self, items: Optional[list[ExpenseRecord]] = None, fail_writes: bool = False):
        super().__init__(fail_writes)
        self._items = [item.model_copy(deep=True) for item in items or []]

    def load_expenses(self) -> list[ExpenseRecord]:
        return [item.model_copy(deep=True) for item in self._items]

    def save_expenses(self, items: list[ExpenseRecord]) -> None:
        self._check_writable("expenses")
        self._items = [item.model_copy(deep=True) for item in items]


class InMemoryRecentlyDeletedStore(_InMemoryLocalStore, RecentlyDeletedStoreInterface):
    def __init__(
        self,
        entries: Optional[list[RecentlyDeletedExpenseEntry]] = None,
        fail_writes: bool = False,
    ):
        super().__init__(fail_writes)
        self._entries = [entry.model_copy(deep=True) for entry in entries or []]

    def load_entries(self) -> list[RecentlyDeletedExpenseEntry]:
        return [entry.model_copy(deep=True) for entry in self._entries]

    def save_entries(self, entries: list[RecentlyDeletedExpenseEntry]) -> None:
        self._check_writable("recently deleted")
        self._entries = [entry.model_copy(deep=True) for entry in entries]


class InMemoryMetadataStore(_InMemoryLocalStore, MetadataStoreInterface):
    def __init__(self, snapshot: Optional[MetadataSnapshot] = None, fail_writes: bool = False):
        super().__init__(fail_writes)
        self._snapshot = (snapshot or MetadataSnapshot()).model_copy(deep=True)

    def load_metadata(self) -> MetadataSnapshot:
        return self._snapshot.model_copy(deep=True)

    def save_metadata(self, snapshot: MetadataSnapshot) -> None:
        self._check_writable("metadata")
        self._snapshot = snapshot.model_copy(deep=True)


# =============================================================================
# SERVER STORE
# =============================================================================

class InMemoryServerStore(ServerStoreInterface):
    """
    Server datastore held in dictionaries keyed by user id.

    Expense rows are unique per (user_id, client_expense_id), mirroring
    the unique index the real datastore enforces.
    """

    def __init__(self):
        self._profiles: dict[str, UserProfile] = {}
        self._metadata: dict[str, MetadataSnapshot] = {}
        self._expenses: dict[str, dict[UUID, ExpenseRecord]] = {}
        self._usage: list[UsageEvent] = []

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        profile = self._profiles.get(user_id)
        return profile.model_copy() if profile else None

    async def save_profile(self, profile: UserProfile) -> None:
        self._profiles[profile.user_id] = profile.model_copy()

    async def load_metadata(self, user_id: str) -> Optional[MetadataSnapshot]:
        snapshot = self._metadata.get(user_id)
        return snapshot.model_copy(deep=True) if snapshot else None

    async def save_metadata(self, user_id: str, snapshot: MetadataSnapshot) -> None:
        self._metadata[user_id] = snapshot.model_copy(deep=True)

    def _rows(self, user_id: str) -> dict[UUID, ExpenseRecord]:
        return self._expenses.setdefault(user_id, {})

    async def upsert_expense(self, user_id: str, record: ExpenseRecord) -> ExpenseRecord:
        rows = self._rows(user_id)
        existing = next(
            (row for row in rows.values() if row.client_expense_id == record.client_expense_id),
            None,
        )
        if existing is not None:
            stored = record.model_copy(update={
                "id": existing.id,
                "created_at": existing.created_at,
                "updated_at": utc_now(),
            })
            del rows[existing.id]
        else:
            stored = record.model_copy()
        rows[stored.id] = stored
        return stored.model_copy()

    async def update_expense(self, user_id: str, record: ExpenseRecord) -> ExpenseRecord:
        rows = self._rows(user_id)
        if record.id not in rows:
            raise NotFoundError(f"Expense not found: {record.id}")
        stored = record.model_copy(update={"updated_at": utc_now()})
        rows[record.id] = stored
        return stored.model_copy()

    async def delete_expense(self, user_id: str, expense_id: UUID) -> bool:
        return self._rows(user_id).pop(expense_id, None) is not None

    async def get_expense(self, user_id: str, expense_id: UUID) -> Optional[ExpenseRecord]:
        row = self._rows(user_id).get(expense_id)
        return row.model_copy() if row else None

    async def list_expenses(self, user_id: str) -> list[ExpenseRecord]:
        rows = [row.model_copy() for row in self._rows(user_id).values()]
        rows.sort(key=lambda r: (r.expense_date, r.updated_at), reverse=True)
        return rows

    async def record_usage_event(self, event: UsageEvent) -> None:
        self._usage.append(event.model_copy())

    async def list_usage_events(
        self,
        user_id: str,
        event_type: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[UsageEvent]:
        events = [e for e in self._usage if e.user_id == user_id]
        if event_type:
            events = [e for e in events if e.event_type == event_type]
        if since:
            events = [e for e in events if e.created_at >= since]
        if until:
            events = [e for e in events if e.created_at < until]
        return [e.model_copy() for e in events]


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only audit log kept in a list."""

    def __init__(self):
        self.events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self.events.append(event)
        return True

    async def get_events_by_correlation_id(self, correlation_id: UUID) -> list[AuditEvent]:
        return [e for e in self.events if e.correlation_id == correlation_id]

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        return sorted(self.events, key=lambda e: e.timestamp, reverse=True)[:limit]
