"""
Hybrid Parsing Engine

AI first, rules second:
1. The Gemini extractor is asked for a JSON expense constrained to the
   user's categories.
2. If it is unavailable or its answer fails sanity checks, the
   deterministic rule engine parses the text instead.

Both paths produce the same ParseOutcome shape. The confidence gate
(auto-save vs review) is applied here, against a configurable threshold.
"""

from datetime import date
from typing import Optional

import structlog

from voice_ledger.agents.interface import ExpenseExtractorInterface
from voice_ledger.config import ParserSettings, get_settings
from voice_ledger.models.api import ParseOutcome
from voice_ledger.parsing.deterministic import DeterministicExpenseParser
from voice_ledger.parsing.normalizer import CategoryContext


logger = structlog.get_logger(__name__)


class ParsingEngine:
    """Turns raw text into a ParseOutcome and decides whether it may auto-save."""

    def __init__(
        self,
        extractor: Optional[ExpenseExtractorInterface] = None,
        deterministic: Optional[DeterministicExpenseParser] = None,
        settings: Optional[ParserSettings] = None,
    ):
        """
        Initialize the engine.

        Args:
            extractor: AI extractor. If None, only the rule engine runs.
            deterministic: Rule engine. Created from settings if None.
            settings: Parser settings (threshold and weights).
        """
        self._settings = settings or get_settings().parser
        self._extractor = extractor
        self._deterministic = deterministic or DeterministicExpenseParser(self._settings)

    @property
    def auto_save_threshold(self) -> float:
        return self._settings.auto_save_threshold

    async def parse(
        self,
        raw_text: str,
        capture_date: date,
        context: CategoryContext,
        currency_hint: Optional[str] = None,
        default_currency: Optional[str] = None,
        language_hint: Optional[str] = None,
    ) -> ParseOutcome:
        """
        Parse raw text, trying the AI extractor before the rule engine.

        The rule engine never fails, so this always returns an outcome.
        """
        if self._extractor is not None and self._extractor.is_available:
            outcome = await self._extractor.extract(
                raw_text,
                capture_date,
                context,
                currency_hint=currency_hint,
                default_currency=default_currency,
                language_hint=language_hint,
            )
            if outcome is not None and outcome.parsed.amount > 0:
                return outcome
            logger.info("ai_extraction_fallback", reason="unavailable_or_invalid")

        return self._deterministic.parse(
            raw_text,
            capture_date,
            context,
            currency_hint=currency_hint,
            default_currency=default_currency,
            language_hint=language_hint,
        ).to_outcome()

    def needs_review(self, confidence: float, allow_auto_save: bool) -> bool:
        """
        Apply the confidence gate.

        Confidence exactly at the threshold auto-saves.
        """
        return not allow_auto_save or confidence < self._settings.auto_save_threshold
