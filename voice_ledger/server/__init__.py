"""In-process parse endpoint."""

from voice_ledger.server.handler import (
    ParseExpenseHandler,
    TEXT_PARSE_EVENT,
    TranscriberInterface,
    TranscriptionError,
    VOICE_PARSE_EVENT,
)

__all__ = [
    "ParseExpenseHandler",
    "TEXT_PARSE_EVENT",
    "TranscriberInterface",
    "TranscriptionError",
    "VOICE_PARSE_EVENT",
]
