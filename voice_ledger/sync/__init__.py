"""Offline queue drain."""

from voice_ledger.sync.engine import (
    MISSING_TEXT_MESSAGE,
    UNEXPECTED_STATE_MESSAGE,
    MissingCaptureTextError,
    SyncEngine,
    SyncReport,
)

__all__ = [
    "MISSING_TEXT_MESSAGE",
    "UNEXPECTED_STATE_MESSAGE",
    "MissingCaptureTextError",
    "SyncEngine",
    "SyncReport",
]
