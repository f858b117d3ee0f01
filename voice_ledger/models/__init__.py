"""
Data Models Package

This package contains all Pydantic models used by Voice Ledger.
Everything persisted locally or exchanged with the server conforms to these schemas.
"""

from voice_ledger.models.expense import (
    OTHER_CATEGORY,
    SUPPORTED_CURRENCY_CODES,
    CaptureState,
    CategoryDefinition,
    ExpenseDraft,
    ExpenseRecord,
    ExpenseSource,
    FailedState,
    MetadataSnapshot,
    NeedsReviewState,
    ParseStatus,
    PaymentMethod,
    PaymentMethodType,
    PendingState,
    QueuedCapture,
    QueueStatus,
    RecentlyDeletedExpenseEntry,
    ReviewContext,
    SavedState,
    SyncingState,
    TripRecord,
    TripStatus,
    UserProfile,
    normalize_currency_code,
    utc_now,
)
from voice_ledger.models.api import (
    DEFAULT_VOICE_BUCKET,
    VOICE_PLACEHOLDER_TEXT,
    CaptureParseRequest,
    ExpenseEcho,
    ParsedExpense,
    ParseExpenseRequest,
    ParseExpenseResponse,
    ParseInfo,
    ParseOutcome,
    ParseResult,
    ResponseStatus,
    UpdateExpenseRequest,
    UsageEvent,
    UsageInfo,
    ValidationIssue,
    ValidationResult,
)
from voice_ledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Expense models
    "OTHER_CATEGORY",
    "SUPPORTED_CURRENCY_CODES",
    "CaptureState",
    "CategoryDefinition",
    "ExpenseDraft",
    "ExpenseRecord",
    "ExpenseSource",
    "FailedState",
    "MetadataSnapshot",
    "NeedsReviewState",
    "ParseStatus",
    "PaymentMethod",
    "PaymentMethodType",
    "PendingState",
    "QueuedCapture",
    "QueueStatus",
    "RecentlyDeletedExpenseEntry",
    "ReviewContext",
    "SavedState",
    "SyncingState",
    "TripRecord",
    "TripStatus",
    "UserProfile",
    "normalize_currency_code",
    "utc_now",
    # API models
    "DEFAULT_VOICE_BUCKET",
    "VOICE_PLACEHOLDER_TEXT",
    "CaptureParseRequest",
    "ExpenseEcho",
    "ParsedExpense",
    "ParseExpenseRequest",
    "ParseExpenseResponse",
    "ParseInfo",
    "ParseOutcome",
    "ParseResult",
    "ResponseStatus",
    "UpdateExpenseRequest",
    "UsageEvent",
    "UsageInfo",
    "ValidationIssue",
    "ValidationResult",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
