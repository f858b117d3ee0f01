"""
Expense Extractor Interface

Any model-backed extractor the parsing engine can try before falling
back to the rule engine.
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import TYPE_CHECKING, Optional

from voice_ledger.models.api import ParseOutcome

if TYPE_CHECKING:
    from voice_ledger.parsing.normalizer import CategoryContext


class ExpenseExtractorInterface(ABC):
    """Abstract interface for AI expense extractors."""

    @property
    @abstractmethod
    def is_available(self) -> bool:
        """Whether the extractor can be called at all (configured, reachable)."""
        pass

    @abstractmethod
    async def extract(
        self,
        raw_text: str,
        capture_date: date,
        context: "CategoryContext",
        currency_hint: Optional[str] = None,
        default_currency: Optional[str] = None,
        language_hint: Optional[str] = None,
    ) -> Optional[ParseOutcome]:
        """
        Extract one expense from raw text.

        Args:
            raw_text: Transcript or typed note
            capture_date: Local date of the capture (default expense date)
            context: The user's category tables
            currency_hint: Caller's preferred currency
            default_currency: Account default currency
            language_hint: Preferred description language

        Returns:
            A normalized outcome, or None to defer to the rule engine.
            Implementations must not raise.
        """
        pass
