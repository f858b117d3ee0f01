"""
Wire Models for the Parse Endpoint and Remote Store

Two families live here:
1. The parse endpoint's request/response payloads (snake_case JSON)
2. The client-side DTOs the sync engine exchanges with an API client

DESIGN DECISION: Required request fields are Optional on the wire model.
A malformed request must reach the validator and come back as a
4xx-style rejection with a readable message, not as a pydantic error.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from voice_ledger.models.expense import (
    ExpenseDraft,
    ExpenseSource,
    ParseStatus,
    QueueStatus,
    utc_now,
)


DEFAULT_VOICE_BUCKET = "voice-captures"
VOICE_PLACEHOLDER_TEXT = "voice recording"


class ResponseStatus(str, Enum):
    """Top-level status of a parse response."""
    SAVED = "saved"
    NEEDS_REVIEW = "needs_review"
    REJECTED_LIMIT = "rejected_limit"
    ERROR = "error"


# =============================================================================
# PARSE ENDPOINT PAYLOADS
# =============================================================================

class ParseExpenseRequest(BaseModel):
    """Body of a parse request."""

    model_config = ConfigDict(str_strip_whitespace=True)

    client_expense_id: Optional[UUID] = None
    source: Optional[ExpenseSource] = None
    captured_at_device: Optional[datetime] = None
    timezone: Optional[str] = None
    audio_duration_seconds: Optional[int] = None
    storage_bucket: Optional[str] = None
    storage_object_path: Optional[str] = None
    raw_text: Optional[str] = None
    currency_hint: Optional[str] = None
    language_hint: Optional[str] = None
    allow_auto_save: bool = True
    category_id: Optional[UUID] = None
    trip_id: Optional[UUID] = None
    trip_name: Optional[str] = None
    payment_method_id: Optional[UUID] = None
    payment_method_name: Optional[str] = None


class ParsedExpense(BaseModel):
    """The fields either parser path must produce."""

    amount: Decimal = Field(..., gt=0)
    currency: str = Field(..., min_length=3, max_length=3)
    category: str
    description: str = ""
    merchant: Optional[str] = None
    expense_date: date


class ParseOutcome(BaseModel):
    """A parse plus the confidence and which extractor produced it."""

    parsed: ParsedExpense
    confidence: float = Field(..., ge=0.0, le=1.0)
    provider: str
    model: str


class ParseInfo(BaseModel):
    confidence: float
    raw_text: str
    needs_review: bool


class UsageInfo(BaseModel):
    daily_voice_used: int
    daily_voice_limit: int


class ExpenseEcho(BaseModel):
    """
    The persisted row as echoed back by the server.

    Every field is optional so an incomplete payload can be detected and
    reported instead of failing to decode.
    """

    id: Optional[UUID] = None
    client_expense_id: Optional[UUID] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    category: Optional[str] = None
    category_id: Optional[UUID] = None
    description: Optional[str] = None
    merchant: Optional[str] = None
    expense_date: Optional[date] = None
    source: Optional[ExpenseSource] = None
    parse_status: Optional[ParseStatus] = None
    trip_id: Optional[UUID] = None
    trip_name: Optional[str] = None
    payment_method_id: Optional[UUID] = None
    payment_method_name: Optional[str] = None


class ParseExpenseResponse(BaseModel):
    """Body of a parse response."""

    status: ResponseStatus
    expense: Optional[ExpenseEcho] = None
    parse: Optional[ParseInfo] = None
    usage: Optional[UsageInfo] = None
    error: Optional[str] = None
    message: Optional[str] = None


class UsageEvent(BaseModel):
    """One parse, recorded for quota counting and cost tracking."""

    user_id: str
    client_expense_id: Optional[UUID] = None
    event_type: str = Field(..., pattern="^(voice_parse|text_parse)$")
    provider: str
    model: str
    audio_seconds: Optional[int] = None
    created_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# CLIENT-SIDE DTOs
# =============================================================================

class CaptureParseRequest(BaseModel):
    """What the sync engine hands to an API client for one queue item."""

    client_expense_id: UUID
    source: ExpenseSource
    captured_at_device: datetime
    audio_duration_seconds: Optional[int] = None
    local_audio_file_path: Optional[str] = None
    raw_text: str = ""
    timezone: str = "UTC"
    currency_hint: Optional[str] = None
    language_hint: Optional[str] = None
    allow_auto_save: bool = True
    trip_id: Optional[UUID] = None
    trip_name: Optional[str] = None
    payment_method_id: Optional[UUID] = None
    payment_method_name: Optional[str] = None


class ParseResult(BaseModel):
    """An API client's answer for one capture."""

    status: QueueStatus
    draft: ExpenseDraft
    server_expense_id: Optional[UUID] = None


class UpdateExpenseRequest(BaseModel):
    """Full-draft update of an existing server row."""

    expense_id: UUID
    draft: ExpenseDraft


# =============================================================================
# VALIDATION
# =============================================================================

class ValidationIssue(BaseModel):
    """A single validation issue found."""

    field: str = Field(
        ...,
        description="Field with the issue"
    )
    issue_type: str = Field(
        ...,
        description="Type of issue (e.g., 'missing', 'invalid_value', 'too_long')"
    )
    message: str = Field(
        ...,
        description="Human-readable description of the issue"
    )
    severity: str = Field(
        default="error",
        pattern="^(error|warning|info)$",
        description="Issue severity"
    )


class ValidationResult(BaseModel):
    """Outcome of validating one request or draft."""

    issues: list[ValidationIssue] = Field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        """Check if there are any error-level issues."""
        return any(issue.severity == "error" for issue in self.issues)

    @property
    def is_valid(self) -> bool:
        return not self.has_errors

    @property
    def first_error(self) -> Optional[str]:
        for issue in self.issues:
            if issue.severity == "error":
                return issue.message
        return None
