"""
Parsing package.

Text normalization, the deterministic rule engine, the hybrid parsing
engine and the client-side refinement pass.
"""

from voice_ledger.parsing.normalizer import (
    DEFAULT_CATEGORY_KEYWORDS,
    DEFAULT_CATEGORY_NAMES,
    CategoryContext,
    detect_currency,
    detect_expense_date,
    extract_amount,
    infer_expense_date,
    is_recurring_phrase,
    is_voice_placeholder,
    local_date,
    match_category,
    normalize_amount_text,
    refine_narrative,
)
from voice_ledger.parsing.deterministic import (
    DETERMINISTIC_MODEL,
    DETERMINISTIC_PROVIDER,
    DeterministicExpenseParser,
    DeterministicParse,
    ParseSignals,
)
from voice_ledger.parsing.engine import ParsingEngine
from voice_ledger.parsing.refinement import (
    detect_payment_method,
    link_category,
    override_currency,
    refine_draft,
    refine_expense_date,
)

__all__ = [
    "DEFAULT_CATEGORY_KEYWORDS",
    "DEFAULT_CATEGORY_NAMES",
    "CategoryContext",
    "detect_currency",
    "detect_expense_date",
    "extract_amount",
    "infer_expense_date",
    "is_recurring_phrase",
    "is_voice_placeholder",
    "local_date",
    "match_category",
    "normalize_amount_text",
    "refine_narrative",
    "DETERMINISTIC_MODEL",
    "DETERMINISTIC_PROVIDER",
    "DeterministicExpenseParser",
    "DeterministicParse",
    "ParseSignals",
    "ParsingEngine",
    "detect_payment_method",
    "link_category",
    "override_currency",
    "refine_draft",
    "refine_expense_date",
]
