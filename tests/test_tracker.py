"""
Tests for ExpenseTracker, the single owner of application state.

Every test uses in-memory stores and FakeExpenseAPIClient. Background
work (queue drains, metadata pushes, local writes) is awaited with
wait_idle() before asserting.
"""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from voice_ledger.audit import AuditLogger
from voice_ledger.capture import CaptureSessionManager
from voice_ledger.models.audit import AuditEventType
from voice_ledger.models.expense import (
    CategoryDefinition,
    ExpenseSource,
    FailedState,
    MetadataSnapshot,
    ParseStatus,
    QueuedCapture,
    QueueStatus,
    RecentlyDeletedExpenseEntry,
    SavedState,
)
from voice_ledger.config import Settings
from voice_ledger.orchestrator import (
    ExpenseTracker,
    create_app_components,
    METADATA_SYNC_FAILED,
    QUEUE_SAVE_FAILED,
    REFRESH_FAILED,
    REMOTE_DELETE_FAILED,
    REMOTE_UPDATE_STALE,
    RESTORE_FAILED,
    SYNC_FAILED,
    SYNC_PAUSED_AUTH,
)
from voice_ledger.services.api import MissingAuthSessionError
from voice_ledger.services.storage import (
    InMemoryAuditStorage,
    InMemoryLedgerStore,
    InMemoryMetadataStore,
    InMemoryQueueStore,
    InMemoryRecentlyDeletedStore,
)
from voice_ledger.validation import INVALID_AMOUNT_MESSAGE

from conftest import FIXED_NOW, FakeExpenseAPIClient, make_expense, review_result
from conftest import make_tracker as build_tracker


def make_tracker(api=None, **stores):
    return build_tracker(api=api, connected=True, **stores)


def make_tracker_offline(api=None, **stores):
    return build_tracker(api=api, connected=False, **stores)


def raising(error):
    def handler(request):
        raise error
    return handler


def linked_pair(**queue_overrides):
    """A saved expense and the queue entry it came from."""
    expense = make_expense()
    fields = dict(
        source=ExpenseSource.TEXT,
        raw_text="lunch 20",
        client_expense_id=expense.client_expense_id,
        server_expense_id=expense.id,
        state=SavedState(),
    )
    fields.update(queue_overrides)
    return expense, QueuedCapture(**fields)


class TestCapture:
    """Text and voice captures reaching the queue."""

    @pytest.mark.asyncio
    async def test_offline_text_entry_is_queued(self, api):
        """Offline text entries are trimmed, queued and persisted."""
        queue_store = InMemoryQueueStore()
        tracker = make_tracker_offline(api, queue_store=queue_store)

        item = await tracker.create_text_entry("  coffee 4  ")
        await tracker.wait_idle()

        assert item.raw_text == "coffee 4"
        assert item.captured_at == FIXED_NOW
        assert tracker.queue.get(item.id).status == QueueStatus.PENDING
        assert [i.id for i in queue_store.load_queue()] == [item.id]
        assert api.parse_requests == []

    @pytest.mark.asyncio
    async def test_blank_text_is_ignored(self, api):
        """Whitespace-only text creates nothing."""
        tracker = make_tracker_offline(api)
        assert await tracker.create_text_entry("   ") is None
        assert len(tracker.queue) == 0

    @pytest.mark.asyncio
    async def test_online_capture_is_synced(self, api):
        """Online captures are parsed and land in the ledger."""
        ledger_store = InMemoryLedgerStore()
        tracker = make_tracker(api, ledger_store=ledger_store)

        item = await tracker.create_text_entry("lunch 12.50")
        await tracker.wait_idle()

        assert tracker.queue.get(item.id).status == QueueStatus.SAVED
        assert len(tracker.expenses) == 1
        assert [e.id for e in ledger_store.load_expenses()] == [tracker.expenses[0].id]
        assert tracker.last_operational_error_message is None

    @pytest.mark.asyncio
    async def test_active_trip_attached(self, api):
        """The active trip is stamped on new captures."""
        tracker = make_tracker_offline(api)
        trip = await tracker.add_trip("Lisbon")

        item = await tracker.create_text_entry("taxi 12")

        assert item.trip_id == trip.id
        assert item.trip_name == "Lisbon"

    @pytest.mark.asyncio
    async def test_voice_session(self, api, tmp_path):
        """Finished sessions are queued and cancelled ones leave no file."""
        sessions = CaptureSessionManager(audio_dir=tmp_path, max_voice_seconds=15)
        tracker = make_tracker_offline(api, sessions=sessions)

        session = tracker.begin_voice_capture()
        with open(session.audio_path, "wb") as handle:
            handle.write(b"audio")
        item = await tracker.finish_voice_capture(session, "taxi 12", 5)

        assert item.source == ExpenseSource.VOICE
        assert item.local_audio_file_path == session.audio_path
        assert item.audio_duration_seconds == 5

        cancelled = tracker.begin_voice_capture()
        with open(cancelled.audio_path, "wb") as handle:
            handle.write(b"partial")
        await tracker.cancel_voice_capture(cancelled)

        assert len(tracker.queue) == 1
        assert not (tmp_path / f"{cancelled.id}.m4a").exists()


class TestQueueOperations:
    """Sync messages, retry and deletion of queue items."""

    @pytest.mark.asyncio
    async def test_auth_pause_message(self):
        """A missing session shows the sign-in pause message."""
        api = FakeExpenseAPIClient(raising(MissingAuthSessionError()))
        tracker = make_tracker(api)

        item = await tracker.create_text_entry("coffee 4")
        await tracker.wait_idle()

        assert tracker.last_operational_error_message == SYNC_PAUSED_AUTH
        assert tracker.queue.get(item.id).status == QueueStatus.PENDING

    @pytest.mark.asyncio
    async def test_failure_message(self):
        """Ordinary sync failures show the generic message."""
        tracker = make_tracker(FakeExpenseAPIClient(raising(RuntimeError("timeout"))))

        item = await tracker.create_text_entry("coffee 4")
        await tracker.wait_idle()

        assert tracker.last_operational_error_message == SYNC_FAILED
        assert tracker.queue.get(item.id).retry_count == 1

    @pytest.mark.asyncio
    async def test_retry_failed_items(self, api):
        """Retrying failed items keeps their retry count."""
        failed = QueuedCapture(source=ExpenseSource.TEXT, raw_text="x 1",
                               state=FailedState(error="timeout"), retry_count=2)
        tracker = make_tracker_offline(api, queue_store=InMemoryQueueStore([failed]))

        assert await tracker.retry_failed_queue_items() == 1

        item = tracker.queue.get(failed.id)
        assert item.status == QueueStatus.PENDING
        assert item.retry_count == 2

    @pytest.mark.asyncio
    async def test_retry_single_item_then_sync(self, api):
        """A retried item is synced straight away."""
        failed = QueuedCapture(source=ExpenseSource.TEXT, raw_text="coffee 4",
                               state=FailedState(error="timeout"))
        tracker = make_tracker(api, queue_store=InMemoryQueueStore([failed]))

        assert await tracker.retry_queue_item(failed.id) is True
        await tracker.wait_idle()

        assert tracker.queue.get(failed.id).status == QueueStatus.SAVED

    @pytest.mark.asyncio
    async def test_delete_queue_item(self, api):
        """Only queue items without a ledger row can be deleted."""
        expense, linked = linked_pair()
        loose = QueuedCapture(source=ExpenseSource.TEXT, raw_text="coffee 4")
        tracker = make_tracker_offline(
            api,
            queue_store=InMemoryQueueStore([linked, loose]),
            ledger_store=InMemoryLedgerStore([expense]),
        )

        assert await tracker.delete_queue_item(linked.id) is False
        assert await tracker.delete_queue_item(loose.id) is True
        assert tracker.queue.ids() == [linked.id]


class TestReview:
    """Reviewing low-confidence parses and editing saved expenses."""

    @pytest.mark.asyncio
    async def test_invalid_amount_keeps_review_open(self):
        """An unparseable amount keeps the review open with a message."""
        tracker = make_tracker(FakeExpenseAPIClient(review_result))
        item = await tracker.create_text_entry("something 4")
        await tracker.wait_idle()

        context = tracker.open_review_for_queue_item(item.id)
        bad = context.model_copy(update={"draft": context.draft.model_copy(update={"amount_text": "invalid"})})

        assert await tracker.save_review(bad) is False
        assert tracker.active_review == bad
        assert tracker.last_operational_error_message == INVALID_AMOUNT_MESSAGE
        assert len(tracker.expenses) == 0
        assert tracker.queue.get(item.id).status == QueueStatus.NEEDS_REVIEW

    @pytest.mark.asyncio
    async def test_review_commits_and_updates_server(self):
        """Saving a review commits locally and pushes the edit."""
        api = FakeExpenseAPIClient(review_result)
        tracker = make_tracker(api)
        item = await tracker.create_text_entry("something 4")
        await tracker.wait_idle()
        server_id = tracker.queue.get(item.id).server_expense_id

        context = tracker.open_review_for_queue_item(item.id)
        edited = context.model_copy(update={"draft": context.draft.model_copy(update={"amount_text": "15"})})

        assert await tracker.save_review(edited) is True
        await tracker.wait_idle()

        record = tracker.expenses[0]
        assert record.id == server_id
        assert record.amount == Decimal("15")
        assert record.parse_status == ParseStatus.EDITED
        assert tracker.queue.get(item.id).status == QueueStatus.SAVED
        assert tracker.active_review is None
        assert [u.expense_id for u in api.updates] == [server_id]

    @pytest.mark.asyncio
    async def test_failed_server_update_keeps_local_edit(self, api):
        """A failed server update keeps the local edit."""
        expense = make_expense()
        api.update_error = RuntimeError("503")
        tracker = make_tracker(api, ledger_store=InMemoryLedgerStore([expense]))

        context = tracker.open_review_for_expense(expense.id)
        edited = context.model_copy(update={"draft": context.draft.model_copy(update={"description": "Brunch"})})

        assert await tracker.save_review(edited) is True
        assert tracker.ledger.get(expense.id).description == "Brunch"
        assert tracker.last_operational_error_message == REMOTE_UPDATE_STALE

    @pytest.mark.asyncio
    async def test_dismiss_review(self, api):
        """Dismissing clears the active review."""
        expense = make_expense()
        tracker = make_tracker_offline(api, ledger_store=InMemoryLedgerStore([expense]))
        tracker.open_review_for_expense(expense.id)
        tracker.dismiss_review()
        assert tracker.active_review is None


class TestDeleteAndRestore:
    """Optimistic delete, rollback, restore and purge."""

    @pytest.mark.asyncio
    async def test_delete_moves_row_to_recently_deleted(self, api, tmp_path):
        """Deleting moves the row and its queue items to recently deleted."""
        audio = tmp_path / "a.m4a"
        audio.write_bytes(b"x")
        expense, linked = linked_pair(local_audio_file_path=str(audio))
        tracker = make_tracker(
            api,
            queue_store=InMemoryQueueStore([linked]),
            ledger_store=InMemoryLedgerStore([expense]),
        )

        assert await tracker.delete_expense(expense.id) is True
        await tracker.wait_idle()

        assert tracker.expenses == []
        assert len(tracker.queue) == 0
        entry = tracker.recently_deleted_expenses[0]
        assert entry.expense.id == expense.id
        assert [i.id for i in entry.queue_entries] == [linked.id]
        assert entry.queue_entries[0].local_audio_file_path is None
        assert api.deleted_ids == [expense.id]
        assert not audio.exists()

    @pytest.mark.asyncio
    async def test_remote_failure_rolls_back(self, api, tmp_path):
        """A failed remote delete puts everything back."""
        audio = tmp_path / "a.m4a"
        audio.write_bytes(b"x")
        storage = InMemoryAuditStorage()
        api.delete_error = RuntimeError("offline")
        expense, linked = linked_pair(local_audio_file_path=str(audio))
        tracker = make_tracker(
            api,
            queue_store=InMemoryQueueStore([linked]),
            ledger_store=InMemoryLedgerStore([expense]),
            audit_logger=AuditLogger(storage),
        )

        assert await tracker.delete_expense(expense.id) is False
        await tracker.wait_idle()

        assert tracker.ledger.get(expense.id) == expense
        assert tracker.queue.ids() == [linked.id]
        assert tracker.recently_deleted_expenses == []
        assert tracker.last_operational_error_message == REMOTE_DELETE_FAILED
        assert audio.exists()
        assert AuditEventType.DELETE_ROLLED_BACK in [e.event_type for e in storage.events]

    @pytest.mark.asyncio
    async def test_restore_keeps_identity(self, api):
        """Restoring brings back the same row and queue items."""
        expense, linked = linked_pair()
        tracker = make_tracker(
            api,
            queue_store=InMemoryQueueStore([linked]),
            ledger_store=InMemoryLedgerStore([expense]),
        )
        await tracker.delete_expense(expense.id)
        entry = tracker.recently_deleted_expenses[0]

        assert await tracker.restore_recently_deleted(entry.id) is True
        await tracker.wait_idle()

        assert tracker.ledger.get(expense.id) is not None
        assert tracker.queue.ids() == [linked.id]
        assert tracker.recently_deleted_expenses == []
        assert [r.id for r in api.restored] == [expense.id]

    @pytest.mark.asyncio
    async def test_restore_remote_failure_is_reported(self, api):
        """Restore failures are reported but the local restore stands."""
        expense = make_expense()
        api.restore_error = RuntimeError("500")
        tracker = make_tracker(api, ledger_store=InMemoryLedgerStore([expense]))
        await tracker.delete_expense(expense.id)

        assert await tracker.restore_recently_deleted(tracker.recently_deleted_expenses[0].id) is True
        assert tracker.ledger.get(expense.id) is not None
        assert tracker.last_operational_error_message == RESTORE_FAILED

    @pytest.mark.asyncio
    async def test_purge_expired(self, api):
        """Expired tombstones are deleted remotely and dropped."""
        old = RecentlyDeletedExpenseEntry(expense=make_expense(), deleted_at=FIXED_NOW - timedelta(days=31))
        fresh = RecentlyDeletedExpenseEntry(expense=make_expense(), deleted_at=FIXED_NOW - timedelta(days=2))
        tracker = make_tracker_offline(
            api, recently_deleted_store=InMemoryRecentlyDeletedStore([old, fresh])
        )

        assert await tracker.purge_expired_recently_deleted() == 1

        assert api.deleted_ids == [old.expense.id]
        assert [e.id for e in tracker.recently_deleted_expenses] == [fresh.id]

    @pytest.mark.asyncio
    async def test_permanent_delete_and_clear(self, api):
        """Permanent delete and clear both hit the server."""
        first = RecentlyDeletedExpenseEntry(expense=make_expense(), deleted_at=FIXED_NOW)
        second = RecentlyDeletedExpenseEntry(expense=make_expense(), deleted_at=FIXED_NOW)
        tracker = make_tracker(api, recently_deleted_store=InMemoryRecentlyDeletedStore([first, second]))

        assert await tracker.permanently_delete_recently_deleted(first.id) is True
        assert await tracker.clear_recently_deleted() == 1
        assert api.deleted_ids == [first.expense.id, second.expense.id]
        assert tracker.recently_deleted_expenses == []


class GatedAPIClient(FakeExpenseAPIClient):
    """Holds the first metadata push until the test opens the gate."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def sync_metadata(self, snapshot):
        self.metadata_pushes.append(snapshot)
        self.entered.set()
        if len(self.metadata_pushes) == 1:
            await self.gate.wait()


class TestMetadataSync:
    """Pushing metadata edits to the server."""

    @pytest.mark.asyncio
    async def test_edits_during_push_cause_one_more_push(self):
        """Edits made during a push are sent in one follow-up push."""
        api = GatedAPIClient()
        tracker = make_tracker(api)

        await tracker.add_category("Pets")
        await api.entered.wait()
        assert tracker.is_syncing_metadata is True

        await tracker.add_category("Travel")
        await tracker.add_category("Gifts")
        api.gate.set()
        await tracker.wait_idle()

        assert len(api.metadata_pushes) == 2
        names = [c.name for c in api.metadata_pushes[-1].categories]
        assert "Travel" in names and "Gifts" in names
        assert tracker.is_syncing_metadata is False

    @pytest.mark.asyncio
    async def test_failed_push_stays_pending(self, api):
        """A failed push is retried on the next refresh."""
        tracker = make_tracker(api)
        api.sync_metadata_error = RuntimeError("503")

        assert await tracker.sync_metadata() is False
        assert tracker.last_operational_error_message == METADATA_SYNC_FAILED

        api.sync_metadata_error = None
        await tracker.refresh_cloud_state()

        assert len(api.metadata_pushes) == 2

    @pytest.mark.asyncio
    async def test_offline_edits_pushed_on_reconnect(self, api):
        """Reconnecting pushes metadata and drains the queue."""
        tracker = make_tracker_offline(api)
        await tracker.set_default_currency("EUR")
        item = await tracker.create_text_entry("coffee 4")
        await tracker.wait_idle()
        assert api.metadata_pushes == []

        tracker.set_network_connectivity(True)
        await tracker.wait_idle()

        assert api.metadata_pushes[0].default_currency_code == "EUR"
        assert tracker.queue.get(item.id).status == QueueStatus.SAVED

    @pytest.mark.asyncio
    async def test_metadata_saved_locally(self, api):
        """Metadata edits are written to the local store."""
        metadata_store = InMemoryMetadataStore()
        tracker = make_tracker_offline(api, metadata_store=metadata_store)

        await tracker.add_payment_method("Visa", aliases=["visa"])
        await tracker.wait_idle()

        assert [m.name for m in metadata_store.load_metadata().payment_methods] == ["Visa"]


class TestCloudRefresh:
    """Pulling metadata and expenses from the server."""

    @pytest.mark.asyncio
    async def test_start_seeds_and_refreshes(self, api):
        """Startup seeds defaults, purges and pulls expenses."""
        old = RecentlyDeletedExpenseEntry(expense=make_expense(), deleted_at=FIXED_NOW - timedelta(days=40))
        remote = make_expense()
        api.remote_expenses = [remote]
        metadata_store = InMemoryMetadataStore()
        tracker = make_tracker(
            api,
            metadata_store=metadata_store,
            recently_deleted_store=InMemoryRecentlyDeletedStore([old]),
        )

        await tracker.start()
        await tracker.wait_idle()

        assert len(metadata_store.load_metadata().categories) == 8
        assert api.deleted_ids == [old.expense.id]
        assert tracker.ledger.get(remote.id) is not None
        await tracker.close()

    @pytest.mark.asyncio
    async def test_tombstoned_rows_stay_deleted(self, api):
        """A refresh does not resurrect deleted rows."""
        expense = make_expense()
        tracker = make_tracker(api, ledger_store=InMemoryLedgerStore([expense]))
        await tracker.delete_expense(expense.id)

        api.remote_expenses = [expense]
        assert await tracker.refresh_expenses() is True

        assert tracker.expenses == []

    @pytest.mark.asyncio
    async def test_fetch_failure_message(self, api):
        """A failed fetch shows the refresh message."""
        api.fetch_expenses_error = RuntimeError("timeout")
        tracker = make_tracker(api)
        assert await tracker.refresh_expenses() is False
        assert tracker.last_operational_error_message == REFRESH_FAILED

    @pytest.mark.asyncio
    async def test_remote_metadata_relinks_expenses(self, api):
        """Remote categories relink local expenses."""
        pets = CategoryDefinition(name="Pets")
        api.remote_metadata = MetadataSnapshot(categories=[pets])
        expense = make_expense(category="pets")
        tracker = make_tracker(api, ledger_store=InMemoryLedgerStore([expense]))

        assert await tracker.refresh_metadata() is True

        assert tracker.registry.category_named("Pets").id == pets.id
        assert tracker.ledger.get(expense.id).category_id == pets.id


class TestPersistenceFailures:
    """Local write failures surface as messages, never exceptions."""

    @pytest.mark.asyncio
    async def test_queue_write_failure(self, api):
        """A failing queue store reports and audits instead of raising."""
        storage = InMemoryAuditStorage()
        tracker = make_tracker_offline(
            api,
            queue_store=InMemoryQueueStore(fail_writes=True),
            audit_logger=AuditLogger(storage),
        )

        item = await tracker.create_text_entry("coffee 4")
        await tracker.wait_idle()

        assert tracker.queue.get(item.id) is not None
        assert tracker.last_operational_error_message == QUEUE_SAVE_FAILED
        assert AuditEventType.PERSISTENCE_FAILED in [e.event_type for e in storage.events]


class TestInsights:
    @pytest.mark.asyncio
    async def test_totals(self, api):
        """Totals, trip totals and filters read from the ledger."""
        trip_expense = make_expense(amount=Decimal("30"), category="Transport")
        rows = [
            make_expense(amount=Decimal("10")),
            make_expense(amount=Decimal("5")),
            trip_expense.model_copy(update={"trip_id": trip_expense.id}),
        ]
        tracker = make_tracker_offline(api, ledger_store=InMemoryLedgerStore(rows))

        assert tracker.monthly_spend_total() == Decimal("45")
        assert tracker.trip_total(trip_expense.id) == Decimal("30")
        assert [t.category for t in tracker.category_totals()] == ["Transport", "Food"]
        assert len(tracker.filtered_expenses(trip_id=trip_expense.id)) == 1


class TestFactory:
    def test_unconfigured_integrations_run_locally(self, tmp_path, monkeypatch):
        """Without Sheets or Cloudinary credentials the in-memory backends are used."""
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        for name in (
            "GOOGLE_SHEETS_CREDENTIALS_PATH",
            "GOOGLE_SHEETS_SPREADSHEET_ID",
            "CLOUDINARY_CLOUD_NAME",
            "CLOUDINARY_API_KEY",
            "CLOUDINARY_API_SECRET",
        ):
            monkeypatch.delenv(name, raising=False)

        tracker = create_app_components(settings=Settings())

        assert isinstance(tracker, ExpenseTracker)
        assert len(tracker.ledger) == 0
        assert tracker.queue.items == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
