"""
Storage Services Package

Provides abstract interfaces and concrete implementations for data storage:
device-side JSON files and in-memory stores, and the server-side store
backed by memory or Google Sheets.
"""

from voice_ledger.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    LedgerStoreInterface,
    MetadataStoreInterface,
    NotFoundError,
    PersistenceError,
    QueueStoreInterface,
    RecentlyDeletedStoreInterface,
    ServerStoreInterface,
    StorageConnectionError,
    StorageError,
)
from voice_ledger.services.storage.local_files import (
    JsonFileLedgerStore,
    JsonFileMetadataStore,
    JsonFileQueueStore,
    JsonFileRecentlyDeletedStore,
)
from voice_ledger.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryLedgerStore,
    InMemoryMetadataStore,
    InMemoryQueueStore,
    InMemoryRecentlyDeletedStore,
    InMemoryServerStore,
)
from voice_ledger.services.storage.google_sheets import (
    GoogleSheetsClient,
    GoogleSheetsServerStore,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "LedgerStoreInterface",
    "MetadataStoreInterface",
    "QueueStoreInterface",
    "RecentlyDeletedStoreInterface",
    "ServerStoreInterface",
    # Exceptions
    "DuplicateError",
    "NotFoundError",
    "PersistenceError",
    "StorageConnectionError",
    "StorageError",
    # Local JSON files
    "JsonFileLedgerStore",
    "JsonFileMetadataStore",
    "JsonFileQueueStore",
    "JsonFileRecentlyDeletedStore",
    # In-memory
    "InMemoryAuditStorage",
    "InMemoryLedgerStore",
    "InMemoryMetadataStore",
    "InMemoryQueueStore",
    "InMemoryRecentlyDeletedStore",
    "InMemoryServerStore",
    # Google Sheets implementation
    "GoogleSheetsClient",
    "GoogleSheetsServerStore",
]
