"""
Client-side Draft Refinement

Applied to every draft the parser returns, before it reaches the ledger.
The server parsed against its own copy of the user's metadata; this pass
re-links the draft against the metadata on this device:

- Category: exact name match, else the best hint-keyword score
- Currency: explicit currency words in the text win, else the draft's
  code if supported, else the account default
- Payment method: only when unset, and only if exactly one method matches
- Expense date: relative/absolute phrases re-applied against the capture
  date, so local edits to the raw text still move the date
"""

import re
from datetime import date
from typing import Iterable, Optional

from voice_ledger.models.expense import (
    CategoryDefinition,
    ExpenseDraft,
    PaymentMethod,
    normalize_currency_code,
)
from voice_ledger.parsing.normalizer import (
    detect_currency,
    detect_expense_date,
    is_recurring_phrase,
)


def link_category(draft: ExpenseDraft, categories: Iterable[CategoryDefinition]) -> ExpenseDraft:
    categories = list(categories)
    wanted = draft.category.strip().lower()
    for category in categories:
        if category.name.lower() == wanted:
            return draft.model_copy(update={"category": category.name, "category_id": category.id})

    text = f"{draft.description} {draft.raw_text}".lower()
    best: Optional[CategoryDefinition] = None
    best_score = 0
    for category in categories:
        score = sum(1 for keyword in category.hint_keywords if keyword.lower() in text)
        if score > best_score:
            best, best_score = category, score

    if best is None:
        return draft
    return draft.model_copy(update={"category": best.name, "category_id": best.id})


def override_currency(draft: ExpenseDraft, default_currency: str) -> ExpenseDraft:
    text = " ".join([draft.raw_text, draft.description, draft.merchant]).strip()
    currency = (
        detect_currency(text)
        or normalize_currency_code(draft.currency)
        or default_currency
    )
    return draft.model_copy(update={"currency": currency})


def _payment_aliases(method: PaymentMethod) -> list[str]:
    values = [method.name, method.network or "", *method.aliases]
    return [v.strip().lower() for v in values if v and v.strip()]


def detect_payment_method(text: str, methods: Iterable[PaymentMethod]) -> Optional[PaymentMethod]:
    """
    The single payment method text refers to, or None.

    Aliases are tried longest first. Word aliases must match whole words;
    aliases with symbols match as substrings. Ambiguous text (two or more
    methods match) returns None rather than guessing.
    """
    lower = text.lower()
    alias_map: dict[str, list[PaymentMethod]] = {}
    for method in methods:
        if not method.is_active:
            continue
        for alias in _payment_aliases(method):
            bucket = alias_map.setdefault(alias, [])
            if method not in bucket:
                bucket.append(method)

    matched: dict[str, PaymentMethod] = {}
    for alias in sorted(alias_map, key=len, reverse=True):
        if re.fullmatch(r"[a-z0-9 ]+", alias):
            found = re.search(rf"\b{re.escape(alias)}\b", lower) is not None
        else:
            found = alias in lower
        if found:
            for method in alias_map[alias]:
                matched[str(method.id)] = method

    if len(matched) != 1:
        return None
    return next(iter(matched.values()))


def assign_payment_method(draft: ExpenseDraft, methods: Iterable[PaymentMethod]) -> ExpenseDraft:
    if draft.payment_method_id is not None:
        return draft
    text = " ".join([draft.raw_text, draft.description, draft.merchant])
    method = detect_payment_method(text, methods)
    if method is None:
        return draft
    return draft.model_copy(update={
        "payment_method_id": method.id,
        "payment_method_name": method.name,
    })


def refine_expense_date(draft: ExpenseDraft, capture_date: Optional[date] = None) -> ExpenseDraft:
    """
    Re-apply date phrases; drafts without one keep their date.

    Recurring phrasing pins the draft to the capture date.
    """
    text = f"{draft.raw_text} {draft.description}".strip()
    if not text:
        return draft
    if is_recurring_phrase(text.lower()):
        if capture_date is None or draft.expense_date == capture_date:
            return draft
        return draft.model_copy(update={"expense_date": capture_date})
    found = detect_expense_date(text, capture_date or draft.expense_date)
    if found is None:
        return draft
    return draft.model_copy(update={"expense_date": found})


def refine_draft(
    draft: ExpenseDraft,
    categories: Iterable[CategoryDefinition],
    payment_methods: Iterable[PaymentMethod],
    default_currency: str,
    capture_date: Optional[date] = None,
) -> ExpenseDraft:
    """Run the whole refinement pass."""
    draft = assign_payment_method(draft, payment_methods)
    draft = link_category(draft, categories)
    draft = override_currency(draft, default_currency)
    return refine_expense_date(draft, capture_date)
