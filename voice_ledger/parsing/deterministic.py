"""
Deterministic Rule Engine

The fallback expense parser. Given the same text and context it always
produces the same draft and the same confidence, which makes it the
baseline the confidence gate is calibrated against.

Order of extraction:
1. Amount (largest numeric candidate outside date phrases)
2. Currency (explicit words/symbols, then hint, then account default)
3. Category (longest alias phrase, then single-token alias)
4. Expense date (relative words, then absolute phrases)
5. Description and merchant
6. Confidence (weighted signals, clamped)
"""

from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel

from voice_ledger.config import ParserSettings, get_settings
from voice_ledger.models.api import ParsedExpense, ParseOutcome
from voice_ledger.models.expense import OTHER_CATEGORY
from voice_ledger.parsing.normalizer import (
    CategoryContext,
    build_description,
    detect_currency,
    extract_amount,
    infer_expense_date,
    match_category,
    refine_narrative,
    tokenize,
)


DETERMINISTIC_PROVIDER = "deterministic"
DETERMINISTIC_MODEL = "rules-v1"


class ParseSignals(BaseModel):
    """Which signals the rule engine found; these drive the confidence score."""

    has_amount: bool
    has_explicit_currency: bool
    has_explicit_category: bool
    token_count: int


class DeterministicParse(BaseModel):
    parsed: ParsedExpense
    confidence: float
    signals: ParseSignals

    def to_outcome(self) -> ParseOutcome:
        return ParseOutcome(
            parsed=self.parsed,
            confidence=self.confidence,
            provider=DETERMINISTIC_PROVIDER,
            model=DETERMINISTIC_MODEL,
        )


class DeterministicExpenseParser:
    """
    Rule-based expense parser.

    Confidence weights come from ParserSettings so they can be tuned
    per environment.
    """

    def __init__(self, settings: Optional[ParserSettings] = None):
        self._settings = settings or get_settings().parser

    def parse(
        self,
        raw_text: str,
        capture_date: date,
        context: CategoryContext,
        currency_hint: Optional[str] = None,
        default_currency: Optional[str] = None,
        language_hint: Optional[str] = None,
    ) -> DeterministicParse:
        """
        Parse raw text into an expense.

        Args:
            raw_text: Transcript or typed note
            capture_date: Local calendar date the capture was made
            context: The user's category tables
            currency_hint: Caller's preferred currency
            default_currency: Account default currency
            language_hint: Preferred description language ("en"/"es")

        Returns:
            The parse, its confidence and the signals behind it
        """
        tokens = tokenize(raw_text)

        amount_match = extract_amount(raw_text)
        has_amount = amount_match is not None

        explicit_currency = detect_currency(raw_text)
        currency = (
            explicit_currency
            or (currency_hint or default_currency or "USD").upper()
        )

        category, explicit_category = match_category(raw_text, context)

        expense_date = infer_expense_date(raw_text, capture_date)

        description = build_description(
            raw_text,
            amount_match[0] if amount_match else None,
            category,
            context,
        )
        description, merchant = refine_narrative(
            raw_text,
            category,
            description,
            language_hint=language_hint,
            category_names=context.category_names,
        )

        signals = ParseSignals(
            has_amount=has_amount,
            has_explicit_currency=explicit_currency is not None,
            has_explicit_category=explicit_category,
            token_count=len(tokens),
        )
        amount = amount_match[1] if amount_match else Decimal(self._settings.sentinel_amount)

        return DeterministicParse(
            parsed=ParsedExpense(
                amount=amount,
                currency=currency,
                category=category,
                description=description,
                merchant=merchant,
                expense_date=expense_date,
            ),
            confidence=self.score(signals, category, description),
            signals=signals,
        )

    def score(self, signals: ParseSignals, category: str, description: str) -> float:
        """Weighted confidence for a set of signals, clamped and rounded."""
        s = self._settings
        resolved = category != OTHER_CATEGORY

        confidence = s.confidence_base
        if signals.has_amount:
            confidence += s.amount_bonus
        if resolved:
            confidence += s.category_bonus
        if signals.has_explicit_category:
            confidence += s.explicit_category_bonus
        if signals.has_explicit_currency:
            confidence += s.explicit_currency_bonus
        if signals.token_count >= 3:
            confidence += s.token_bonus
        if signals.token_count >= 5:
            confidence += s.token_bonus

        normalized = description.strip().lower()
        if signals.has_amount and resolved and len(normalized) >= 3 and normalized != "on":
            confidence += s.description_bonus

        if not signals.has_amount:
            confidence -= s.missing_amount_penalty
        if not resolved and not signals.has_explicit_category:
            confidence -= s.unresolved_category_penalty
        if not signals.has_explicit_currency:
            confidence -= s.default_currency_penalty

        clamped = min(s.confidence_ceiling, max(s.confidence_floor, confidence))
        return round(clamped, 4)
