"""
Conversions between client DTOs and parse endpoint payloads.

Shared by every client so the in-process and remote paths accept and
reject exactly the same responses.
"""

from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from voice_ledger.models.api import (
    CaptureParseRequest,
    ParseExpenseRequest,
    ParseExpenseResponse,
    ParseResult,
    ResponseStatus,
)
from voice_ledger.models.expense import (
    ExpenseDraft,
    ExpenseRecord,
    ParseStatus,
    QueueStatus,
    utc_now,
)
from voice_ledger.services.api.errors import (
    InvalidResponseError,
    LimitExceededError,
    ServerError,
    UnauthorizedError,
)
from voice_ledger.validation import parse_review_amount


# Used when the server omits parse.confidence
SAVED_FALLBACK_CONFIDENCE = 0.95
REVIEW_FALLBACK_CONFIDENCE = 0.5


def format_amount(amount: Decimal) -> str:
    """Plain decimal text: no exponent, no trailing zeros."""
    return format(amount.normalize(), "f")


def to_wire_request(
    request: CaptureParseRequest,
    storage_bucket: Optional[str] = None,
    storage_object_path: Optional[str] = None,
) -> ParseExpenseRequest:
    return ParseExpenseRequest(
        client_expense_id=request.client_expense_id,
        source=request.source,
        captured_at_device=request.captured_at_device,
        timezone=request.timezone,
        audio_duration_seconds=request.audio_duration_seconds,
        storage_bucket=storage_bucket,
        storage_object_path=storage_object_path,
        raw_text=request.raw_text,
        currency_hint=request.currency_hint,
        language_hint=request.language_hint,
        allow_auto_save=request.allow_auto_save,
        trip_id=request.trip_id,
        trip_name=request.trip_name,
        payment_method_id=request.payment_method_id,
        payment_method_name=request.payment_method_name,
    )


def raise_for_parse_status(status_code: int, response: Optional[ParseExpenseResponse], body: str = "") -> None:
    """Map a non-success parse response onto the error taxonomy."""
    if status_code == 200 and response is not None and response.status in (
        ResponseStatus.SAVED,
        ResponseStatus.NEEDS_REVIEW,
    ):
        return
    if status_code == 401:
        raise UnauthorizedError()
    if status_code == 429:
        raise LimitExceededError(response.error if response else None)
    message = None
    if response is not None:
        message = response.error or response.message
    raise ServerError(message or body or "Unexpected server error")


def result_from_response(request: CaptureParseRequest, response: ParseExpenseResponse) -> ParseResult:
    """
    Build the client-side draft from a successful parse response.

    Raises:
        ServerError: If the echoed expense is missing or incomplete
    """
    saved = response.status == ResponseStatus.SAVED
    expense = response.expense
    if expense is None:
        raise ServerError("Missing expense payload")
    if (
        expense.client_expense_id is None
        or expense.amount is None
        or expense.currency is None
        or expense.category is None
        or expense.expense_date is None
    ):
        raise ServerError("Server expense payload is incomplete.")

    parse = response.parse
    confidence = parse.confidence if parse is not None else None
    if confidence is None:
        confidence = SAVED_FALLBACK_CONFIDENCE if saved else REVIEW_FALLBACK_CONFIDENCE
    raw_text = parse.raw_text if parse is not None and parse.raw_text.strip() else request.raw_text

    draft = ExpenseDraft(
        client_expense_id=expense.client_expense_id,
        amount_text=format_amount(expense.amount),
        currency=expense.currency,
        category=expense.category,
        category_id=expense.category_id,
        description=expense.description if expense.description is not None else request.raw_text,
        merchant=expense.merchant or "",
        trip_id=expense.trip_id or request.trip_id,
        trip_name=expense.trip_name or request.trip_name,
        payment_method_id=expense.payment_method_id or request.payment_method_id,
        payment_method_name=expense.payment_method_name or request.payment_method_name,
        expense_date=expense.expense_date,
        raw_text=raw_text or "",
        source=request.source,
        parse_confidence=min(1.0, max(0.0, confidence)),
    )
    return ParseResult(
        status=QueueStatus.SAVED if saved else QueueStatus.NEEDS_REVIEW,
        draft=draft,
        server_expense_id=expense.id,
    )


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    return value


def update_fields(draft: ExpenseDraft) -> dict[str, Any]:
    """
    Columns a full-draft update writes. parse_status is always edited.

    Raises:
        ServerError: If the draft amount is not a number greater than zero
    """
    amount = parse_review_amount(draft.amount_text)
    if amount is None:
        raise ServerError("Enter a valid amount greater than zero.")
    return {
        "amount": amount,
        "currency": draft.currency.upper(),
        "category": draft.category,
        "category_id": draft.category_id,
        "description": _blank_to_none(draft.description),
        "merchant": _blank_to_none(draft.merchant),
        "expense_date": draft.expense_date,
        "parse_status": ParseStatus.EDITED,
        "parse_confidence": draft.parse_confidence,
        "raw_text": _blank_to_none(draft.raw_text),
        "trip_id": draft.trip_id,
        "trip_name": draft.trip_name,
        "payment_method_id": draft.payment_method_id,
        "payment_method_name": draft.payment_method_name,
    }


def json_update_fields(draft: ExpenseDraft) -> dict[str, Any]:
    """update_fields with JSON-safe values."""
    fields = update_fields(draft)
    json_fields = {}
    for key, value in fields.items():
        if isinstance(value, (Decimal, UUID)):
            value = str(value)
        elif hasattr(value, "isoformat"):
            value = value.isoformat()
        elif isinstance(value, ParseStatus):
            value = value.value
        json_fields[key] = value
    return json_fields


def apply_update(record: ExpenseRecord, draft: ExpenseDraft) -> ExpenseRecord:
    """A server row with a reviewed draft written over it."""
    return record.model_copy(update={**update_fields(draft), "updated_at": utc_now()})


def decode_response(payload: Any) -> ParseExpenseResponse:
    """
    Validate a decoded JSON body as a parse response.

    Raises:
        ServerError: If the body doesn't have the expected shape
    """
    if not isinstance(payload, dict):
        raise InvalidResponseError()
    try:
        return ParseExpenseResponse.model_validate(payload)
    except ValueError as e:
        raise ServerError(f"Unexpected server response. {e}")
