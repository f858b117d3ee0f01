"""
AI Expense Extractor

DESIGN DECISION: The LLM is a SUGGESTER, not an AUTHORITY.

CRITICAL BOUNDARIES:
   - CAN: Read a messy transcript and propose amount, currency, category,
          description, merchant and date
   - CANNOT: Invent a category outside the user's category set
   - CANNOT: Persist anything; its output goes through the same
             confidence gate as the rule engine
   - MUST: Return None (never raise) when unavailable or when the
           answer fails sanity checks, so the deterministic parser
           takes over

Output is constrained to JSON and then normalized field by field.
"""

import json
import re
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import google.generativeai as genai
import structlog

from voice_ledger.agents.interface import ExpenseExtractorInterface
from voice_ledger.config import GeminiSettings, ParserSettings, get_settings
from voice_ledger.models.api import ParsedExpense, ParseOutcome
from voice_ledger.models.expense import OTHER_CATEGORY
from voice_ledger.parsing.normalizer import CategoryContext, is_recurring_phrase, refine_narrative


logger = structlog.get_logger(__name__)

GEMINI_PROVIDER = "gemini"

_CURRENCY_CODE = re.compile(r"^[A-Z]{3}$")
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class GeminiExpenseExtractor(ExpenseExtractorInterface):
    """
    Gemini-backed structured extraction of one expense.

    RESPONSIBILITIES:
    - Build a prompt constrained to the caller's categories
    - Parse the JSON answer
    - Normalize and sanity-check every field

    BOUNDARIES:
    - NEVER raises to the parsing engine
    - NEVER returns a non-positive amount
    """

    def __init__(
        self,
        settings: Optional[GeminiSettings] = None,
        parser_settings: Optional[ParserSettings] = None,
        model: Any = None,
    ):
        """
        Initialize the extractor.

        Args:
            settings: Gemini settings. Without an API key the extractor
                      reports itself unavailable.
            parser_settings: Confidence clamp settings.
            model: Pre-built model object exposing generate_content_async.
        """
        self._settings = settings or get_settings().gemini
        self._parser_settings = parser_settings or get_settings().parser
        self._model = model
        if self._model is None and self._settings.is_configured:
            self._configure_genai()

    def _configure_genai(self):
        """Configure Google Generative AI."""
        genai.configure(api_key=self._settings.api_key)
        self._model = genai.GenerativeModel(
            model_name=self._settings.model_name,
            generation_config={
                "temperature": self._settings.temperature,
                "max_output_tokens": self._settings.max_tokens,
                "response_mime_type": "application/json",
            }
        )

    @property
    def is_available(self) -> bool:
        return self._model is not None

    @property
    def model_name(self) -> str:
        return self._settings.model_name

    def build_prompt(
        self,
        raw_text: str,
        fallback_date: date,
        default_currency: str,
        context: CategoryContext,
        language_hint: Optional[str] = None,
    ) -> str:
        category_lines = []
        for name in context.category_names:
            hints = context.hints_by_category.get(name, [])
            category_lines.append(f"- {name}: {', '.join(hints[:20])}" if hints else f"- {name}")

        language_rule = (
            f"- language: keep description/merchant in the user's language (preferred: {language_hint})"
            if language_hint
            else "- language: keep description/merchant in the user's language when clear"
        )

        return "\n".join([
            "You parse personal finance expense messages into strict JSON.",
            "Extract one personal expense from the user text.",
            "Return JSON only with keys: amount, currency, category, description, merchant, expense_date, confidence.",
            "Rules:",
            "- amount: number > 0",
            f"- currency: ISO code, default to {default_currency} when omitted",
            f"- category: one of {', '.join(context.category_names)}",
            f"- expense_date: YYYY-MM-DD, default to {fallback_date.isoformat()} if not specified",
            "- confidence: number 0 to 1",
            "- merchant can be null",
            "- description should be concise and useful (3-10 words when possible), remove filler words and rambling",
            language_rule,
            "- if the user mentions a place/restaurant/store, put it in merchant",
            "- good description example: 'Food with friends at Peter Piper Pizza'",
            "Available categories and examples:",
            *category_lines,
            f"User text: {raw_text}",
        ])

    async def extract(
        self,
        raw_text: str,
        capture_date: date,
        context: CategoryContext,
        currency_hint: Optional[str] = None,
        default_currency: Optional[str] = None,
        language_hint: Optional[str] = None,
    ) -> Optional[ParseOutcome]:
        """
        Ask the model for a structured expense.

        Returns:
            A normalized outcome, or None when the model is unavailable,
            errors out, or answers without a positive amount.
        """
        if not self.is_available:
            return None

        fallback_currency = (currency_hint or default_currency or "USD").upper()
        prompt = self.build_prompt(raw_text, capture_date, fallback_currency, context, language_hint)

        try:
            response = await self._model.generate_content_async(prompt)
            text = response.text.strip()

            start = text.find("{")
            end = text.rfind("}") + 1
            if start < 0 or end <= start:
                return None
            data = json.loads(text[start:end])
        except Exception as e:
            logger.warning("gemini_extraction_failed", error=str(e))
            return None

        if not isinstance(data, dict):
            return None

        parsed = self._normalize(data, raw_text, capture_date, fallback_currency, context, language_hint)
        if parsed is None:
            return None

        return ParseOutcome(
            parsed=parsed,
            confidence=self._normalize_confidence(data.get("confidence")),
            provider=GEMINI_PROVIDER,
            model=self.model_name,
        )

    def _normalize(
        self,
        data: dict,
        raw_text: str,
        fallback_date: date,
        fallback_currency: str,
        context: CategoryContext,
        language_hint: Optional[str],
    ) -> Optional[ParsedExpense]:
        amount = _coerce_amount(data.get("amount"))
        if amount is None or amount <= 0:
            return None

        currency_raw = data.get("currency")
        currency_raw = currency_raw.strip().upper() if isinstance(currency_raw, str) else ""
        currency = currency_raw if _CURRENCY_CODE.match(currency_raw) else fallback_currency

        category_raw = data.get("category")
        category = (
            context.normalize_category(category_raw.strip())
            if isinstance(category_raw, str)
            else OTHER_CATEGORY
        )

        description_raw = data.get("description")
        description_raw = description_raw.strip() if isinstance(description_raw, str) else ""
        merchant_raw = data.get("merchant")
        if not isinstance(merchant_raw, str) or not merchant_raw.strip():
            merchant_raw = None
        description, merchant = refine_narrative(
            raw_text,
            category,
            description_raw or raw_text,
            merchant=merchant_raw,
            language_hint=language_hint,
            category_names=context.category_names,
        )

        date_raw = data.get("expense_date")
        date_raw = date_raw.strip() if isinstance(date_raw, str) else ""
        expense_date = fallback_date
        # A schedule ("every Tuesday") is not the day this expense happened
        if _ISO_DATE.match(date_raw) and not is_recurring_phrase(raw_text):
            try:
                expense_date = date.fromisoformat(date_raw)
            except ValueError:
                expense_date = fallback_date

        return ParsedExpense(
            amount=amount,
            currency=currency,
            category=category,
            description=description,
            merchant=merchant,
            expense_date=expense_date,
        )

    def _normalize_confidence(self, value: Any) -> float:
        s = self._parser_settings
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return s.ai_default_confidence
        return min(s.ai_confidence_ceiling, max(s.ai_confidence_floor, float(value)))


def _coerce_amount(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool):
        return None
    try:
        if isinstance(value, (int, float)):
            amount = Decimal(str(value))
        elif isinstance(value, str):
            amount = Decimal(value.strip().replace(",", "."))
        else:
            return None
    except InvalidOperation:
        return None
    return amount if amount.is_finite() else None
