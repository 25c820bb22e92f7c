from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Optional

from fxbudget.ledger import Budget, CategoryBudget, Expense

ZERO = Decimal("0")
HORIZON_MONTHS = 6


def month_start(value: date | datetime) -> date:
    return date(value.year, value.month, 1)


def add_months(value: date | datetime, months: int) -> date:
    index = value.year * 12 + (value.month - 1) + months
    year, month = divmod(index, 12)
    return date(year, month + 1, 1)


def month_bounds(value: date | datetime) -> tuple[datetime, datetime]:
    """Half-open ``[start, next_start)`` datetimes for the month of ``value``."""
    start = month_start(value)
    end = add_months(start, 1)
    return datetime(start.year, start.month, 1), datetime(end.year, end.month, 1)


def is_same_month(left: date | datetime, right: date | datetime) -> bool:
    return (left.year, left.month) == (right.year, right.month)


def calculate_total_category_budget(budget: Budget) -> Decimal:
    total = ZERO
    for category_budget in budget.category_budgets:
        total += category_budget.amount
    return total


def calculate_everything_else_amount(budget: Budget) -> Optional[Decimal]:
    """Part of the total not allocated to any category.

    ``None`` when the budget has no total or the allocations exceed it.
    """
    if budget.amount is None:
        return None
    remainder = budget.amount - calculate_total_category_budget(budget)
    if remainder < ZERO:
        return None
    return remainder


def reconciled_amount(budget: Budget) -> Optional[Decimal]:
    """New total when the category sum exceeds the current one, else ``None``."""
    category_total = calculate_total_category_budget(budget)
    current = budget.amount if budget.amount is not None else ZERO
    if category_total > current:
        return category_total
    return None


def _reporting_amount(expense: Expense) -> Decimal:
    if expense.converted_amount is not None:
        return expense.converted_amount
    return expense.amount


def _sum_expenses(
    expenses: Iterable[Expense],
    *,
    category_id: Optional[int] = None,
) -> Decimal:
    total = ZERO
    for expense in expenses:
        if category_id is not None and expense.category_id != category_id:
            continue
        total += _reporting_amount(expense)
    return total


def calculate_spent(expenses: Iterable[Expense], category_id: Optional[int] = None) -> Decimal:
    return _sum_expenses(expenses, category_id=category_id)


def calculate_non_budgeted_spending(budget: Budget, expenses: Iterable[Expense]) -> Decimal:
    """Spending in categories that have no allocation on ``budget``.

    Uncategorized expenses are not counted.
    """
    budgeted = {category_budget.category_id for category_budget in budget.category_budgets}
    total = ZERO
    for expense in expenses:
        if expense.category_id is None or expense.category_id in budgeted:
            continue
        total += _reporting_amount(expense)
    return total


def calculate_percentage(spent: Decimal, limit: Optional[Decimal]) -> float:
    if limit is None or limit <= ZERO:
        return 0.0
    return float(spent) / float(limit) * 100


def calculate_category_percentage(category_budget: CategoryBudget, expenses: Iterable[Expense]) -> float:
    spent = _sum_expenses(expenses, category_id=category_budget.category_id)
    return calculate_percentage(spent, category_budget.amount)
