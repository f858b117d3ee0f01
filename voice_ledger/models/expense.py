"""
Core Data Models for Voice Ledger

These models define the schemas for everything the capture pipeline
persists or exchanges:
1. Ledger rows (ExpenseRecord) and editable drafts (ExpenseDraft)
2. Offline queue entries (QueuedCapture) and their per-state payloads
3. User taxonomy (categories, trips, payment methods)
4. Tombstones for recently deleted expenses

DESIGN DECISION: A queued capture's status is a discriminated union.
Each state model carries only the payload that state can have (a draft
exists only after parsing, an error only after a failure) and is
serialized with an explicit "status" discriminant.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)


def utc_now() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


OTHER_CATEGORY = "Other"

SUPPORTED_CURRENCY_CODES = (
    "USD", "MXN", "EUR", "GBP", "CAD", "JPY", "BRL", "COP", "ARS", "CLP", "PEN",
)


def normalize_currency_code(raw: Optional[str]) -> Optional[str]:
    """Return the upper-cased code if it is a supported currency, else None."""
    if raw is None:
        return None
    normalized = raw.strip().upper()
    if normalized not in SUPPORTED_CURRENCY_CODES:
        return None
    return normalized


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class ExpenseSource(str, Enum):
    """How the expense was captured."""
    VOICE = "voice"
    TEXT = "text"


class ParseStatus(str, Enum):
    """
    Provenance of a ledger row's fields.

    AUTO rows were committed straight from the parser; EDITED rows have
    been touched by the user (review, category removal, rename).
    """
    AUTO = "auto"
    EDITED = "edited"
    FAILED = "failed"


class QueueStatus(str, Enum):
    """
    Lifecycle of a queued capture.

    pending -> syncing -> {saved | needs_review | failed}
    failed and pending are retryable back to pending.
    """
    PENDING = "pending"
    SYNCING = "syncing"
    NEEDS_REVIEW = "needs_review"
    SAVED = "saved"
    FAILED = "failed"


class PaymentMethodType(str, Enum):
    """Kinds of payment instrument a user can register."""
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    CASH = "cash"
    APPLE_PAY = "apple_pay"
    BANK_TRANSFER = "bank_transfer"
    OTHER = "other"


class TripStatus(str, Enum):
    """Trip lifecycle. At most one trip is active at a time."""
    PLANNED = "planned"
    ACTIVE = "active"
    COMPLETED = "completed"


# =============================================================================
# TAXONOMY - user-defined categories, trips and payment methods
# =============================================================================

class CategoryDefinition(BaseModel):
    """
    A spending category.

    hint_keywords feed both server-side category resolution and the
    client-side refinement pass.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1, max_length=60)
    color_hex: Optional[str] = Field(
        default=None,
        pattern=r"^#[0-9A-Fa-f]{6}$",
        description="Display color"
    )
    is_default: bool = False
    hint_keywords: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)


class TripRecord(BaseModel):
    """A trip that expenses can be grouped under."""

    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1)
    destination: Optional[str] = None
    start_date: date = Field(default_factory=lambda: utc_now().date())
    end_date: Optional[date] = None
    base_currency: Optional[str] = None
    status: TripStatus = TripStatus.PLANNED
    created_at: datetime = Field(default_factory=utc_now)


class PaymentMethod(BaseModel):
    """A card, wallet or account the user pays with."""

    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1)
    type: PaymentMethodType = PaymentMethodType.OTHER
    network: Optional[str] = None
    last4: Optional[str] = Field(default=None, pattern=r"^\d{4}$")
    aliases: list[str] = Field(default_factory=list)
    is_default: bool = False
    is_active: bool = True
    created_at: datetime = Field(default_factory=utc_now)


class MetadataSnapshot(BaseModel):
    """Everything the user configures, exchanged with the server as one unit."""

    categories: list[CategoryDefinition] = Field(default_factory=list)
    trips: list[TripRecord] = Field(default_factory=list)
    payment_methods: list[PaymentMethod] = Field(default_factory=list)
    active_trip_id: Optional[UUID] = None
    default_currency_code: Optional[str] = None


class UserProfile(BaseModel):
    """Per-account server-side preferences."""

    user_id: str
    daily_voice_limit: Optional[int] = Field(default=None, ge=0)
    timezone: Optional[str] = None
    default_currency: Optional[str] = None


# =============================================================================
# LEDGER
# =============================================================================

class ExpenseRecord(BaseModel):
    """
    A confirmed ledger row.

    CRITICAL: amount is an exact Decimal, never a float.
    `id` is server-canonical; `client_expense_id` is the idempotency key
    assigned at capture time.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(
        default_factory=uuid4,
        description="Server-canonical identifier"
    )
    client_expense_id: UUID = Field(
        ...,
        description="Idempotency key generated when the capture was created"
    )
    amount: Decimal = Field(
        ...,
        gt=0,
        description="Expense amount"
    )
    currency: str = Field(..., min_length=3, max_length=3)
    category: str = OTHER_CATEGORY
    category_id: Optional[UUID] = None
    description: Optional[str] = None
    merchant: Optional[str] = None
    trip_id: Optional[UUID] = None
    trip_name: Optional[str] = None
    payment_method_id: Optional[UUID] = None
    payment_method_name: Optional[str] = None
    expense_date: date
    captured_at_device: datetime
    synced_at: Optional[datetime] = None
    source: ExpenseSource
    parse_status: ParseStatus = ParseStatus.AUTO
    parse_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    raw_text: Optional[str] = None
    audio_duration_seconds: Optional[int] = Field(default=None, ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class ExpenseDraft(BaseModel):
    """
    The editable result of parsing a capture.

    amount_text stays a string so the review screen can hold whatever the
    user typed; it is normalized to a Decimal only on commit.
    """

    id: UUID = Field(default_factory=uuid4)
    client_expense_id: UUID = Field(default_factory=uuid4)
    amount_text: str = ""
    currency: str = "USD"
    category: str = OTHER_CATEGORY
    category_id: Optional[UUID] = None
    description: str = ""
    merchant: str = ""
    trip_id: Optional[UUID] = None
    trip_name: Optional[str] = None
    payment_method_id: Optional[UUID] = None
    payment_method_name: Optional[str] = None
    expense_date: date = Field(default_factory=lambda: utc_now().date())
    raw_text: str = ""
    source: ExpenseSource
    parse_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)


# =============================================================================
# OFFLINE QUEUE - one state model per status
# =============================================================================

class PendingState(BaseModel):
    """Waiting for a drain. last_error is kept after an auth pause."""
    status: Literal["pending"] = "pending"
    last_error: Optional[str] = None


class SyncingState(BaseModel):
    status: Literal["syncing"] = "syncing"


class NeedsReviewState(BaseModel):
    """Parsed below the confidence gate; the draft waits for the user."""
    status: Literal["needs_review"] = "needs_review"
    draft: ExpenseDraft


class SavedState(BaseModel):
    status: Literal["saved"] = "saved"
    draft: Optional[ExpenseDraft] = None


class FailedState(BaseModel):
    status: Literal["failed"] = "failed"
    error: str
    draft: Optional[ExpenseDraft] = None


CaptureState = Annotated[
    Union[PendingState, SyncingState, NeedsReviewState, SavedState, FailedState],
    Field(discriminator="status"),
]


class QueuedCapture(BaseModel):
    """
    An unconfirmed capture in the offline queue.

    CRITICAL: client_expense_id is assigned once at creation and never
    regenerated. It is the only key linking this entry to its ledger row.
    """

    id: UUID = Field(
        default_factory=uuid4,
        description="Local queue identity"
    )
    client_expense_id: UUID = Field(default_factory=uuid4)
    source: ExpenseSource
    captured_at: datetime = Field(default_factory=utc_now)
    local_audio_file_path: Optional[str] = None
    audio_duration_seconds: Optional[int] = Field(default=None, ge=0)
    raw_text: Optional[str] = None

    # Hints carried from the capture screen
    trip_id: Optional[UUID] = None
    trip_name: Optional[str] = None
    payment_method_id: Optional[UUID] = None
    payment_method_name: Optional[str] = None

    state: CaptureState = Field(default_factory=PendingState)
    retry_count: int = Field(default=0, ge=0)
    server_expense_id: Optional[UUID] = None

    @property
    def status(self) -> QueueStatus:
        return QueueStatus(self.state.status)

    @property
    def last_error(self) -> Optional[str]:
        if isinstance(self.state, PendingState):
            return self.state.last_error
        if isinstance(self.state, FailedState):
            return self.state.error
        return None

    @property
    def parsed_draft(self) -> Optional[ExpenseDraft]:
        return getattr(self.state, "draft", None)


# =============================================================================
# REVIEW AND TOMBSTONES
# =============================================================================

class ReviewContext(BaseModel):
    """
    An open review session.

    Exactly one of queue_id / expense_id is normally set: reviewing a
    needs-review capture, or editing an already saved expense.
    """

    id: UUID = Field(default_factory=uuid4)
    queue_id: Optional[UUID] = None
    expense_id: Optional[UUID] = None
    draft: ExpenseDraft


class RecentlyDeletedExpenseEntry(BaseModel):
    """
    Tombstone for a deleted expense.

    Holds the removed row and the queue entries that referenced it so a
    restore can put both back. Purged after the retention window.
    """

    id: UUID = Field(default_factory=uuid4)
    expense: ExpenseRecord
    queue_entries: list[QueuedCapture] = Field(default_factory=list)
    deleted_at: datetime = Field(default_factory=utc_now)
