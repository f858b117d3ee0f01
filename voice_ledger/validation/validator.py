"""
Request and Draft Validation

Two checks live here:

PARSE REQUEST VALIDATION:
- Required field presence (client_expense_id, source, captured_at_device)
- Voice constraints (duration present and within the maximum, and some
  input to parse: raw text or an uploaded audio object)

REVIEW AMOUNT VALIDATION:
- The amount typed on the review screen must normalize to a number
  greater than zero before anything is committed

IMPORTANT: Validation NEVER mutates state and NEVER silently fixes
issues. The first error message is what the caller surfaces.
"""

from decimal import Decimal
from typing import Optional

from voice_ledger.config import ParserSettings, get_settings
from voice_ledger.models.api import (
    ParseExpenseRequest,
    ValidationIssue,
    ValidationResult,
)
from voice_ledger.models.expense import ExpenseDraft, ExpenseSource
from voice_ledger.parsing.normalizer import normalize_amount_text


INVALID_AMOUNT_MESSAGE = "Enter a valid amount greater than zero."


class ParseRequestValidator:
    """Validates parse requests before any quota or parsing work."""

    def __init__(self, settings: Optional[ParserSettings] = None):
        self._settings = settings or get_settings().parser

    def validate(self, request: ParseExpenseRequest) -> ValidationResult:
        issues: list[ValidationIssue] = []

        required = (
            ("client_expense_id", request.client_expense_id),
            ("source", request.source),
            ("captured_at_device", request.captured_at_device),
        )
        for field, value in required:
            if value is None:
                issues.append(ValidationIssue(
                    field=field,
                    issue_type="missing",
                    message=f"{field} is required",
                ))
        if issues:
            return ValidationResult(issues=issues)

        if request.source == ExpenseSource.VOICE:
            issues.extend(self._validate_voice(request))

        return ValidationResult(issues=issues)

    def _validate_voice(self, request: ParseExpenseRequest) -> list[ValidationIssue]:
        max_seconds = self._settings.max_voice_seconds
        duration = request.audio_duration_seconds

        if not duration:
            return [ValidationIssue(
                field="audio_duration_seconds",
                issue_type="missing",
                message="audio_duration_seconds is required for voice",
            )]
        if duration > max_seconds:
            return [ValidationIssue(
                field="audio_duration_seconds",
                issue_type="too_long",
                message=f"audio_duration_seconds exceeds {max_seconds}s",
            )]

        has_text = bool((request.raw_text or "").strip())
        has_object = bool((request.storage_object_path or "").strip())
        if not has_text and not has_object:
            return [ValidationIssue(
                field="raw_text",
                issue_type="missing",
                message="voice requests require raw_text or storage_object_path",
            )]
        return []


def parse_review_amount(amount_text: str) -> Optional[Decimal]:
    """The committed amount for a review, or None when it is not > 0."""
    amount = normalize_amount_text(amount_text)
    if amount is None or amount <= 0:
        return None
    return amount


def validate_draft_amount(draft: ExpenseDraft) -> ValidationResult:
    if parse_review_amount(draft.amount_text) is None:
        return ValidationResult(issues=[ValidationIssue(
            field="amount_text",
            issue_type="invalid_value",
            message=INVALID_AMOUNT_MESSAGE,
        )])
    return ValidationResult()
