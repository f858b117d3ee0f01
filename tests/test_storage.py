"""
Tests for device-side JSON stores and the in-memory server store.
"""

import json
from datetime import timedelta

import pytest

from voice_ledger.models.expense import (
    ExpenseSource,
    MetadataSnapshot,
    NeedsReviewState,
    ExpenseDraft,
    QueuedCapture,
    RecentlyDeletedExpenseEntry,
    TripRecord,
)
from voice_ledger.services.storage import (
    InMemoryServerStore,
    JsonFileLedgerStore,
    JsonFileMetadataStore,
    JsonFileQueueStore,
    JsonFileRecentlyDeletedStore,
    NotFoundError,
    PersistenceError,
)
from voice_ledger.services.storage.local_files import QUEUE_FILE_NAME, write_json_atomically

from conftest import FIXED_NOW, make_expense


class TestJsonFileStores:
    """Local persistence survives restarts and tolerates damage."""

    def test_missing_files_load_empty(self, tmp_path):
        """Missing files read as empty stores."""
        assert JsonFileQueueStore(tmp_path).load_queue() == []
        assert JsonFileLedgerStore(tmp_path).load_expenses() == []
        assert JsonFileRecentlyDeletedStore(tmp_path).load_entries() == []
        assert JsonFileMetadataStore(tmp_path).load_metadata() == MetadataSnapshot()

    def test_corrupt_files_load_empty(self, tmp_path):
        """Unreadable JSON reads as empty instead of raising."""
        (tmp_path / QUEUE_FILE_NAME).write_text("[{not json", encoding="utf-8")
        (tmp_path / "metadata.json").write_text('{"categories": 5}', encoding="utf-8")

        assert JsonFileQueueStore(tmp_path).load_queue() == []
        assert JsonFileMetadataStore(tmp_path).load_metadata() == MetadataSnapshot()

    def test_queue_keeps_state_payload(self, tmp_path):
        """The status discriminant and the draft come back intact."""
        item = QueuedCapture(source=ExpenseSource.TEXT, raw_text="coffee 4")
        item = item.model_copy(update={"state": NeedsReviewState(
            draft=ExpenseDraft(client_expense_id=item.client_expense_id,
                               source=ExpenseSource.TEXT, amount_text="4"),
        )})
        store = JsonFileQueueStore(tmp_path)

        store.save_queue([item])
        loaded = JsonFileQueueStore(tmp_path).load_queue()

        assert loaded == [item]
        raw = json.loads(store.path.read_text(encoding="utf-8"))
        assert raw[0]["state"]["status"] == "needs_review"

    def test_ledger_amount_is_exact(self, tmp_path):
        """Amounts survive a save and load without float drift."""
        expense = make_expense()
        store = JsonFileLedgerStore(tmp_path)
        store.save_expenses([expense])
        assert store.load_expenses()[0].amount == expense.amount

    def test_tombstones_and_metadata(self, tmp_path):
        """Tombstones and metadata round-trip through their files."""
        entry = RecentlyDeletedExpenseEntry(expense=make_expense(), deleted_at=FIXED_NOW - timedelta(days=1))
        snapshot = MetadataSnapshot(trips=[TripRecord(name="Lisbon")], default_currency_code="EUR")

        JsonFileRecentlyDeletedStore(tmp_path).save_entries([entry])
        JsonFileMetadataStore(tmp_path).save_metadata(snapshot)

        assert JsonFileRecentlyDeletedStore(tmp_path).load_entries() == [entry]
        assert JsonFileMetadataStore(tmp_path).load_metadata() == snapshot

    def test_atomic_write_leaves_no_temp_files(self, tmp_path):
        """Atomic writes clean up their temp file and sort keys."""
        target = tmp_path / "nested" / "data.json"
        write_json_atomically(target, {"b": 1, "a": 2})
        assert list(target.parent.iterdir()) == [target]
        assert target.read_text(encoding="utf-8").index('"a"') < target.read_text(encoding="utf-8").index('"b"')

    def test_unwritable_directory(self, tmp_path):
        """Write failures surface as PersistenceError."""
        blocker = tmp_path / "blocker"
        blocker.write_text("file, not a directory", encoding="utf-8")
        with pytest.raises(PersistenceError):
            JsonFileLedgerStore(blocker).save_expenses([make_expense()])


class TestInMemoryServerStore:
    """Rows are unique per user and client expense id."""

    @pytest.mark.asyncio
    async def test_upsert_keeps_first_server_id(self):
        """A retried upsert keeps the first server id."""
        store = InMemoryServerStore()
        first = make_expense()
        retried = make_expense(client_expense_id=first.client_expense_id, description="again")

        stored = await store.upsert_expense("u1", first)
        again = await store.upsert_expense("u1", retried)

        assert again.id == stored.id == first.id
        assert again.description == "again"
        assert len(await store.list_expenses("u1")) == 1

    @pytest.mark.asyncio
    async def test_users_are_isolated(self):
        """One user's rows are invisible to another."""
        store = InMemoryServerStore()
        await store.upsert_expense("u1", make_expense())
        assert await store.list_expenses("u2") == []

    @pytest.mark.asyncio
    async def test_update_and_delete(self):
        """Updates apply and deletes report whether a row existed."""
        store = InMemoryServerStore()
        expense = await store.upsert_expense("u1", make_expense())

        updated = await store.update_expense("u1", expense.model_copy(update={"merchant": "Cafe"}))
        assert updated.merchant == "Cafe"

        assert await store.delete_expense("u1", expense.id) is True
        assert await store.delete_expense("u1", expense.id) is False
        with pytest.raises(NotFoundError):
            await store.update_expense("u1", expense)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
