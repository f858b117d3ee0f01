"""
Ledger Insights

Read-only totals over ledger rows. Amounts are summed as Decimal; rows
in different currencies are added as-is (there is no FX conversion).
"""

from datetime import date
from decimal import Decimal
from typing import Iterable, Optional
from uuid import UUID

from pydantic import BaseModel

from voice_ledger.models.expense import ExpenseRecord


class CategoryTotal(BaseModel):
    category: str
    total: Decimal


def filtered_expenses(
    expenses: Iterable[ExpenseRecord],
    trip_id: Optional[UUID] = None,
    payment_method_id: Optional[UUID] = None,
) -> list[ExpenseRecord]:
    """Rows matching the trip and payment method; None matches everything."""
    return [
        expense for expense in expenses
        if (trip_id is None or expense.trip_id == trip_id)
        and (payment_method_id is None or expense.payment_method_id == payment_method_id)
    ]


def trip_total(expenses: Iterable[ExpenseRecord], trip_id: Optional[UUID]) -> Decimal:
    return sum(
        (expense.amount for expense in filtered_expenses(expenses, trip_id=trip_id)),
        Decimal("0"),
    )


def _same_month(day: date, today: date) -> bool:
    return day.year == today.year and day.month == today.month


def category_totals(
    expenses: Iterable[ExpenseRecord],
    today: date,
    trip_id: Optional[UUID] = None,
    payment_method_id: Optional[UUID] = None,
) -> list[CategoryTotal]:
    """
    Spend per category.

    Without a trip only the current month counts; a trip covers all of
    its rows. Sorted by total (largest first), then name.
    """
    totals: dict[str, Decimal] = {}
    for expense in filtered_expenses(expenses, trip_id, payment_method_id):
        if trip_id is None and not _same_month(expense.expense_date, today):
            continue
        totals[expense.category] = totals.get(expense.category, Decimal("0")) + expense.amount

    ordered = sorted(totals.items(), key=lambda item: (-item[1], item[0].lower()))
    return [CategoryTotal(category=name, total=total) for name, total in ordered]


def monthly_spend_total(expenses: Iterable[ExpenseRecord], today: date) -> Decimal:
    return sum(
        (expense.amount for expense in expenses if _same_month(expense.expense_date, today)),
        Decimal("0"),
    )
