"""
JSON File Storage Implementation

DESIGN DECISION: Device-side state is kept as plain JSON files:
1. Queue, ledger and tombstones are each one sorted-key JSON array
2. Metadata is one sorted-key JSON object
3. Timestamps are ISO-8601 (pydantic's JSON mode)

WRITES are atomic: the payload goes to a temp file in the same directory
and is moved over the target with os.replace, so a crash mid-write leaves
either the old file or the new one.

READS never raise: a missing, truncated or otherwise unreadable file
loads as an empty collection and a warning is logged.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Generic, TypeVar

import structlog
from pydantic import TypeAdapter, ValidationError

from voice_ledger.models.expense import (
    ExpenseRecord,
    MetadataSnapshot,
    QueuedCapture,
    RecentlyDeletedExpenseEntry,
)
from voice_ledger.services.storage.interface import (
    LedgerStoreInterface,
    MetadataStoreInterface,
    PersistenceError,
    QueueStoreInterface,
    RecentlyDeletedStoreInterface,
)


logger = structlog.get_logger(__name__)

QUEUE_FILE_NAME = "pending_queue.json"
LEDGER_FILE_NAME = "expenses.json"
RECENTLY_DELETED_FILE_NAME = "recently_deleted_expenses.json"
METADATA_FILE_NAME = "metadata.json"

T = TypeVar("T")


def write_json_atomically(path: Path, payload: Any) -> None:
    """
    Serialize payload with sorted keys and replace path atomically.

    Raises:
        PersistenceError: If the directory or file cannot be written
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, sort_keys=True, indent=2, ensure_ascii=False)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
    except OSError as e:
        raise PersistenceError(f"Failed to write {path}: {e}") from e


class JsonArrayFile(Generic[T]):
    """A file holding one JSON array of pydantic models."""

    def __init__(self, path: Path, item_type: type):
        self.path = Path(path)
        self._adapter = TypeAdapter(list[item_type])

    def load(self) -> list[T]:
        if not self.path.exists():
            return []
        try:
            raw = self.path.read_text(encoding="utf-8")
            return self._adapter.validate_json(raw)
        except (OSError, ValueError, ValidationError) as e:
            logger.warning(
                "local_store_unreadable",
                path=str(self.path),
                error=str(e),
            )
            return []

    def save(self, items: list[T]) -> None:
        write_json_atomically(self.path, self._adapter.dump_python(items, mode="json"))


class JsonFileQueueStore(QueueStoreInterface):
    """Offline queue persisted as a JSON array."""

    def __init__(self, data_dir: Path):
        self._file: JsonArrayFile[QueuedCapture] = JsonArrayFile(
            Path(data_dir) / QUEUE_FILE_NAME, QueuedCapture
        )

    @property
    def path(self) -> Path:
        return self._file.path

    def load_queue(self) -> list[QueuedCapture]:
        return self._file.load()

    def save_queue(self, items: list[QueuedCapture]) -> None:
        self._file.save(items)


class JsonFileLedgerStore(LedgerStoreInterface):
    """Confirmed expenses persisted as a JSON array."""

    def __init__(self, data_dir: Path):
        self._file: JsonArrayFile[ExpenseRecord] = JsonArrayFile(
            Path(data_dir) / LEDGER_FILE_NAME, ExpenseRecord
        )

    @property
    def path(self) -> Path:
        return self._file.path

    def load_expenses(self) -> list[ExpenseRecord]:
        return self._file.load()

    def save_expenses(self, items: list[ExpenseRecord]) -> None:
        self._file.save(items)


class JsonFileRecentlyDeletedStore(RecentlyDeletedStoreInterface):
    def __init__(self, data_dir: Path):
        self._file: JsonArrayFile[RecentlyDeletedExpenseEntry] = JsonArrayFile(
            Path(data_dir) / RECENTLY_DELETED_FILE_NAME, RecentlyDeletedExpenseEntry
        )

    @property
    def path(self) -> Path:
        return self._file.path

    def load_entries(self) -> list[RecentlyDeletedExpenseEntry]:
        return self._file.load()

    def save_entries(self, entries: list[RecentlyDeletedExpenseEntry]) -> None:
        self._file.save(entries)


class JsonFileMetadataStore(MetadataStoreInterface):
    """Categories, trips and payment methods persisted as one JSON object."""

    def __init__(self, data_dir: Path):
        self.path = Path(data_dir) / METADATA_FILE_NAME

    def load_metadata(self) -> MetadataSnapshot:
        if not self.path.exists():
            return MetadataSnapshot()
        try:
            return MetadataSnapshot.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError, ValidationError) as e:
            logger.warning(
                "local_store_unreadable",
                path=str(self.path),
                error=str(e),
            )
            return MetadataSnapshot()

    def save_metadata(self, snapshot: MetadataSnapshot) -> None:
        write_json_atomically(self.path, snapshot.model_dump(mode="json"))
