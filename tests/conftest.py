"""
Shared test doubles.

No real API calls in tests: the tracker and the sync engine talk to
FakeExpenseAPIClient, and every store is in memory.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID, uuid4

import pytest

from voice_ledger.models.api import CaptureParseRequest, ParseResult, UpdateExpenseRequest
from voice_ledger.models.expense import (
    ExpenseDraft,
    ExpenseRecord,
    ExpenseSource,
    MetadataSnapshot,
    QueueStatus,
)
from voice_ledger.orchestrator import ExpenseTracker
from voice_ledger.services.api import ExpenseAPIClientInterface
from voice_ledger.services.network import ConnectivityMonitor
from voice_ledger.services.storage import (
    InMemoryLedgerStore,
    InMemoryMetadataStore,
    InMemoryQueueStore,
    InMemoryRecentlyDeletedStore,
)


FIXED_NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


class MutableClock:
    """A clock tests can move forward."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeExpenseAPIClient(ExpenseAPIClientInterface):
    """
    Scriptable API client.

    parse_handler decides the answer for each request; by default every
    capture is saved as a 12.50 USD Food expense with a fresh server id.
    Set the *_error attributes to make the matching call raise.
    """

    def __init__(self, parse_handler: Optional[Callable[[CaptureParseRequest], ParseResult]] = None):
        self.parse_handler = parse_handler or saved_result
        self.parse_requests: list[CaptureParseRequest] = []
        self.updates: list[UpdateExpenseRequest] = []
        self.deleted_ids: list[UUID] = []
        self.restored: list[ExpenseRecord] = []
        self.metadata_pushes: list[MetadataSnapshot] = []
        self.remote_metadata: Optional[MetadataSnapshot] = None
        self.remote_expenses: list[ExpenseRecord] = []

        self.update_error: Optional[Exception] = None
        self.delete_error: Optional[Exception] = None
        self.restore_error: Optional[Exception] = None
        self.sync_metadata_error: Optional[Exception] = None
        self.fetch_expenses_error: Optional[Exception] = None

    async def parse_expense(self, request: CaptureParseRequest) -> ParseResult:
        self.parse_requests.append(request)
        return self.parse_handler(request)

    async def update_expense(self, request: UpdateExpenseRequest) -> None:
        self.updates.append(request)
        if self.update_error:
            raise self.update_error

    async def delete_expense(self, expense_id: UUID) -> None:
        self.deleted_ids.append(expense_id)
        if self.delete_error:
            raise self.delete_error

    async def restore_expense(self, record: ExpenseRecord) -> None:
        self.restored.append(record)
        if self.restore_error:
            raise self.restore_error

    async def sync_metadata(self, snapshot: MetadataSnapshot) -> None:
        self.metadata_pushes.append(snapshot)
        if self.sync_metadata_error:
            raise self.sync_metadata_error

    async def fetch_metadata(self) -> Optional[MetadataSnapshot]:
        return self.remote_metadata

    async def fetch_expenses(self) -> list[ExpenseRecord]:
        if self.fetch_expenses_error:
            raise self.fetch_expenses_error
        return list(self.remote_expenses)


def make_draft(request: CaptureParseRequest, **overrides) -> ExpenseDraft:
    fields = dict(
        client_expense_id=request.client_expense_id,
        amount_text="12.50",
        currency="USD",
        category="Food",
        description="Lunch",
        expense_date=date(2024, 3, 15),
        raw_text=request.raw_text,
        source=request.source,
        parse_confidence=0.95,
    )
    fields.update(overrides)
    return ExpenseDraft(**fields)


def saved_result(request: CaptureParseRequest) -> ParseResult:
    return ParseResult(status=QueueStatus.SAVED, draft=make_draft(request), server_expense_id=uuid4())


def review_result(request: CaptureParseRequest) -> ParseResult:
    return ParseResult(
        status=QueueStatus.NEEDS_REVIEW,
        draft=make_draft(request, parse_confidence=0.6),
        server_expense_id=uuid4(),
    )


def make_expense(**overrides) -> ExpenseRecord:
    fields = dict(
        client_expense_id=uuid4(),
        amount=Decimal("20.00"),
        currency="USD",
        category="Food",
        expense_date=date(2024, 3, 10),
        captured_at_device=FIXED_NOW,
        source=ExpenseSource.TEXT,
        updated_at=FIXED_NOW,
        created_at=FIXED_NOW,
    )
    fields.update(overrides)
    return ExpenseRecord(**fields)


def make_tracker(
    api: Optional[FakeExpenseAPIClient] = None,
    connected: bool = True,
    clock: Optional[MutableClock] = None,
    **stores,
) -> ExpenseTracker:
    """Tracker wired to in-memory stores; pass a store by name to override it."""
    return ExpenseTracker(
        api_client=api or FakeExpenseAPIClient(),
        queue_store=stores.get("queue_store") or InMemoryQueueStore(),
        ledger_store=stores.get("ledger_store") or InMemoryLedgerStore(),
        recently_deleted_store=stores.get("recently_deleted_store") or InMemoryRecentlyDeletedStore(),
        metadata_store=stores.get("metadata_store") or InMemoryMetadataStore(),
        connectivity=ConnectivityMonitor(connected=connected),
        sessions=stores.get("sessions"),
        audit_logger=stores.get("audit_logger"),
        clock=clock or MutableClock(),
    )


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def api() -> FakeExpenseAPIClient:
    return FakeExpenseAPIClient()
