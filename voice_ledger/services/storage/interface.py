"""
Abstract Storage Interfaces

DESIGN DECISION: Every store is a narrow interface with an in-memory
implementation and a persistent one, injected at construction. This
allows us to:
1. Keep the queue/ledger logic independent of files or spreadsheets
2. Use in-memory storage for testing
3. Force write failures in tests without touching the disk

Two families:

LOCAL STORES (device side):
- Synchronous. They are called from a background executor, never from
  the event loop directly, and raise PersistenceError on write failure.
- Loading never raises: a missing or corrupt file is an empty collection.

SERVER STORE (parse endpoint side):
- Async, like any remote datastore.
- Keyed by user id; expense upserts are idempotent on
  (user_id, client_expense_id).
"""

from abc import ABC, abstractmethod
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
)


# =============================================================================
# LOCAL STORES
# =============================================================================

class QueueStoreInterface(ABC):
    """Persists the offline capture queue."""

    @abstractmethod
    def load_queue(self) -> list[QueuedCapture]:
        """
        Load the persisted queue.

        Returns:
            Saved items in saved order; empty when nothing readable exists
        """
        pass

    @abstractmethod
    def save_queue(self, items: list[QueuedCapture]) -> None:
        """
        Replace the persisted queue.

        Raises:
            PersistenceError: If the write fails
        """
        pass


class LedgerStoreInterface(ABC):
    """Persists confirmed expense records."""

    @abstractmethod
    def load_expenses(self) -> list[ExpenseRecord]:
        pass

    @abstractmethod
    def save_expenses(self, items: list[ExpenseRecord]) -> None:
        """
        Raises:
            PersistenceError: If the write fails
        """
        pass


class RecentlyDeletedStoreInterface(ABC):
    """Persists tombstones of deleted expenses."""

    @abstractmethod
    def load_entries(self) -> list[RecentlyDeletedExpenseEntry]:
        pass

    @abstractmethod
    def save_entries(self, entries: list[RecentlyDeletedExpenseEntry]) -> None:
        """
        Raises:
            PersistenceError: If the write fails
        """
        pass


class MetadataStoreInterface(ABC):
    """Persists categories, trips, payment methods and the default currency."""

    @abstractmethod
    def load_metadata(self) -> MetadataSnapshot:
        pass

    @abstractmethod
    def save_metadata(self, snapshot: MetadataSnapshot) -> None:
        """
        Raises:
            PersistenceError: If the write fails
        """
        pass


# =============================================================================
# SERVER STORE
# =============================================================================

class ServerStoreInterface(ABC):
    """
    Abstract interface for the parse endpoint's datastore.

    Any backend (Google Sheets, a SQL database, memory) must implement
    these methods.
    """

    @abstractmethod
    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        """
        Retrieve a user's profile.

        Returns:
            The profile if one was saved, None otherwise
        """
        pass

    @abstractmethod
    async def save_profile(self, profile: UserProfile) -> None:
        pass

    @abstractmethod
    async def load_metadata(self, user_id: str) -> Optional[MetadataSnapshot]:
        """
        Retrieve the user's metadata snapshot.

        Returns:
            The last synced snapshot, None if the user never synced
        """
        pass

    @abstractmethod
    async def save_metadata(self, user_id: str, snapshot: MetadataSnapshot) -> None:
        """
        Replace the user's metadata snapshot.

        Raises:
            StorageError: If save fails
        """
        pass

    @abstractmethod
    async def upsert_expense(self, user_id: str, record: ExpenseRecord) -> ExpenseRecord:
        """
        Insert or replace an expense keyed by (user_id, client_expense_id).

        If a row with the same client_expense_id exists, it is replaced
        but keeps its id and created_at.

        Returns:
            The stored row

        Raises:
            StorageError: If save fails
        """
        pass

    @abstractmethod
    async def update_expense(self, user_id: str, record: ExpenseRecord) -> ExpenseRecord:
        """
        Replace an existing expense by id.

        Raises:
            NotFoundError: If the expense doesn't exist
        """
        pass

    @abstractmethod
    async def delete_expense(self, user_id: str, expense_id: UUID) -> bool:
        """
        Delete an expense by id.

        Returns:
            True if a row was deleted, False if none existed
        """
        pass

    @abstractmethod
    async def get_expense(self, user_id: str, expense_id: UUID) -> Optional[ExpenseRecord]:
        pass

    @abstractmethod
    async def list_expenses(self, user_id: str) -> list[ExpenseRecord]:
        """
        All of the user's expenses, most recent expense date first.
        """
        pass

    @abstractmethod
    async def record_usage_event(self, event: UsageEvent) -> None:
        pass

    @abstractmethod
    async def list_usage_events(
        self,
        user_id: str,
        event_type: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[UsageEvent]:
        """
        List usage events, optionally filtered.

        Args:
            user_id: Owner of the events
            event_type: "voice_parse" or "text_parse"
            since: Inclusive lower bound on created_at
            until: Exclusive upper bound on created_at
        """
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event.

        Returns:
            True if saved successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for one capture (correlated by client expense id).
        """
        pass

    @abstractmethod
    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        pass


# =============================================================================
# EXCEPTIONS
# =============================================================================

class StorageError(Exception):
    """Base exception for storage errors."""
    pass


class NotFoundError(StorageError):
    """Raised when a requested item is not found."""
    pass


class DuplicateError(StorageError):
    """Raised when trying to create a duplicate item."""
    pass


class StorageConnectionError(StorageError):
    """Raised when the storage backend cannot be reached."""
    pass


class PersistenceError(StorageError):
    """Raised when a local store cannot write to disk."""
    pass
