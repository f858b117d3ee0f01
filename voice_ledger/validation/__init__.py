"""Validation package."""

from voice_ledger.validation.validator import (
    INVALID_AMOUNT_MESSAGE,
    ParseRequestValidator,
    parse_review_amount,
    validate_draft_amount,
)

__all__ = [
    "INVALID_AMOUNT_MESSAGE",
    "ParseRequestValidator",
    "parse_review_amount",
    "validate_draft_amount",
]
