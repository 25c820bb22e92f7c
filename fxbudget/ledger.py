"""Repositories over the budget ledger and its collaborator tables.

Every method takes the connection of the caller's unit of work and returns
frozen snapshots; nothing here hands out live, mutable object graphs.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import Connection, RowMapping

from fxbudget.amounts import coerce_amount
from fxbudget.db import budgets, categories, category_budgets, expenses


@dataclass(frozen=True)
class Category:
    id: int
    name: str
    icon: Optional[str] = None


@dataclass(frozen=True)
class CategoryBudget:
    id: int
    budget_id: int
    category_id: int
    amount: Decimal
    currency: str
    year: int
    month: int
    category_name: Optional[str] = None


@dataclass(frozen=True)
class Budget:
    id: int
    anchor_month: date
    amount: Optional[Decimal]
    currency: str
    alert_threshold: Optional[Decimal] = None
    category_budgets: tuple[CategoryBudget, ...] = ()


@dataclass(frozen=True)
class Expense:
    id: int
    amount: Decimal
    currency: str
    date: datetime
    converted_amount: Optional[Decimal] = None
    conversion_rate: Optional[Decimal] = None
    category_id: Optional[int] = None
    notes: Optional[str] = None


def _optional_decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    return coerce_amount(value)


def _category_budget_from_row(row: RowMapping) -> CategoryBudget:
    return CategoryBudget(
        id=row["id"],
        budget_id=row["budget_id"],
        category_id=row["category_id"],
        amount=coerce_amount(row["amount"]),
        currency=row["currency"],
        year=row["year"],
        month=row["month"],
        category_name=row["category_name"],
    )


def _expense_from_row(row: RowMapping) -> Expense:
    return Expense(
        id=row["id"],
        amount=coerce_amount(row["amount"]),
        currency=row["currency"],
        date=row["date"],
        converted_amount=_optional_decimal(row["converted_amount"]),
        conversion_rate=_optional_decimal(row["conversion_rate"]),
        category_id=row["category_id"],
        notes=row["notes"],
    )


class BudgetRepository:
    def _hydrate(self, conn: Connection, rows: Iterable[RowMapping]) -> list[Budget]:
        rows = list(rows)
        if not rows:
            return []
        children: dict[int, list[CategoryBudget]] = {row["id"]: [] for row in rows}
        child_rows = conn.execute(
            select(category_budgets)
            .where(category_budgets.c.budget_id.in_(list(children)))
            .order_by(category_budgets.c.id)
        ).mappings()
        for child in child_rows:
            children[child["budget_id"]].append(_category_budget_from_row(child))
        return [
            Budget(
                id=row["id"],
                anchor_month=row["anchor_month"],
                amount=_optional_decimal(row["amount"]),
                currency=row["currency"],
                alert_threshold=_optional_decimal(row["alert_threshold"]),
                category_budgets=tuple(children[row["id"]]),
            )
            for row in rows
        ]

    def get_budget(self, conn: Connection, budget_id: int) -> Optional[Budget]:
        rows = conn.execute(select(budgets).where(budgets.c.id == budget_id)).mappings()
        found = self._hydrate(conn, rows)
        return found[0] if found else None

    def budget_for_month(self, conn: Connection, month: date) -> Optional[Budget]:
        rows = conn.execute(select(budgets).where(budgets.c.anchor_month == month)).mappings()
        found = self._hydrate(conn, rows)
        return found[0] if found else None

    def budgets_from(self, conn: Connection, month: date, *, inclusive: bool = True) -> list[Budget]:
        condition = budgets.c.anchor_month >= month if inclusive else budgets.c.anchor_month > month
        rows = conn.execute(
            select(budgets).where(condition).order_by(budgets.c.anchor_month)
        ).mappings()
        return self._hydrate(conn, rows)

    def budgets_in_currency(self, conn: Connection, currency: str) -> list[Budget]:
        rows = conn.execute(
            select(budgets).where(budgets.c.currency == currency).order_by(budgets.c.anchor_month)
        ).mappings()
        return self._hydrate(conn, rows)

    def all_budgets(self, conn: Connection) -> list[Budget]:
        rows = conn.execute(select(budgets).order_by(budgets.c.anchor_month)).mappings()
        return self._hydrate(conn, rows)

    def latest_budget(self, conn: Connection) -> Optional[Budget]:
        rows = conn.execute(
            select(budgets).order_by(budgets.c.anchor_month.desc()).limit(1)
        ).mappings()
        found = self._hydrate(conn, rows)
        return found[0] if found else None

    def category_budgets_of(self, conn: Connection, budget_id: int) -> list[CategoryBudget]:
        rows = conn.execute(
            select(category_budgets)
            .where(category_budgets.c.budget_id == budget_id)
            .order_by(category_budgets.c.id)
        ).mappings()
        return [_category_budget_from_row(row) for row in rows]

    def insert_budget(
        self,
        conn: Connection,
        *,
        anchor_month: date,
        amount: Optional[Decimal],
        currency: str,
        alert_threshold: Optional[Decimal],
    ) -> int:
        result = conn.execute(
            insert(budgets).values(
                anchor_month=anchor_month,
                amount=amount,
                currency=currency,
                alert_threshold=alert_threshold,
                created_at=datetime.now(),
            )
        )
        return result.inserted_primary_key[0]

    def insert_category_budget(
        self,
        conn: Connection,
        *,
        budget_id: int,
        category_id: int,
        amount: Decimal,
        currency: str,
        month: date,
        category_name: Optional[str],
    ) -> int:
        result = conn.execute(
            insert(category_budgets).values(
                budget_id=budget_id,
                category_id=category_id,
                amount=amount,
                currency=currency,
                year=month.year,
                month=month.month,
                category_name=category_name,
            )
        )
        return result.inserted_primary_key[0]

    def update_budget_amounts(
        self,
        conn: Connection,
        budget_ids: Iterable[int],
        *,
        amount: Decimal,
        alert_threshold: Optional[Decimal],
    ) -> int:
        ids = list(budget_ids)
        if not ids:
            return 0
        result = conn.execute(
            update(budgets)
            .where(budgets.c.id.in_(ids))
            .values(amount=amount, alert_threshold=alert_threshold)
        )
        return result.rowcount

    def set_budget_amount(self, conn: Connection, budget_id: int, amount: Decimal) -> None:
        conn.execute(update(budgets).where(budgets.c.id == budget_id).values(amount=amount))

    def restamp_budget(
        self,
        conn: Connection,
        budget_id: int,
        *,
        amount: Optional[Decimal],
        alert_threshold: Optional[Decimal],
        currency: str,
    ) -> None:
        conn.execute(
            update(budgets)
            .where(budgets.c.id == budget_id)
            .values(amount=amount, alert_threshold=alert_threshold, currency=currency)
        )

    def update_category_budget_amount(
        self,
        conn: Connection,
        category_budget_id: int,
        *,
        amount: Decimal,
        currency: str,
    ) -> None:
        conn.execute(
            update(category_budgets)
            .where(category_budgets.c.id == category_budget_id)
            .values(amount=amount, currency=currency)
        )

    def delete_category_budgets(self, conn: Connection, budget_ids: Iterable[int]) -> int:
        ids = list(budget_ids)
        if not ids:
            return 0
        result = conn.execute(delete(category_budgets).where(category_budgets.c.budget_id.in_(ids)))
        return result.rowcount

    def delete_budgets(self, conn: Connection, budget_ids: Iterable[int]) -> int:
        ids = list(budget_ids)
        if not ids:
            return 0
        self.delete_category_budgets(conn, ids)
        result = conn.execute(delete(budgets).where(budgets.c.id.in_(ids)))
        return result.rowcount


class ExpenseRepository:
    def fetch_by_date_range(self, conn: Connection, start: datetime, end: datetime) -> list[Expense]:
        """Expenses dated in ``[start, end)``."""
        rows = conn.execute(
            select(expenses)
            .where(expenses.c.date >= start, expenses.c.date < end)
            .order_by(expenses.c.date, expenses.c.id)
        ).mappings()
        return [_expense_from_row(row) for row in rows]

    def fetch_all(self, conn: Connection) -> list[Expense]:
        rows = conn.execute(select(expenses).order_by(expenses.c.date, expenses.c.id)).mappings()
        return [_expense_from_row(row) for row in rows]

    def set_converted_amount(
        self,
        conn: Connection,
        expense_id: int,
        *,
        converted_amount: Decimal,
        conversion_rate: Decimal,
    ) -> None:
        conn.execute(
            update(expenses)
            .where(expenses.c.id == expense_id)
            .values(converted_amount=converted_amount, conversion_rate=conversion_rate)
        )

    def add(
        self,
        conn: Connection,
        *,
        amount: Decimal,
        currency: str,
        date: datetime,
        converted_amount: Optional[Decimal] = None,
        conversion_rate: Optional[Decimal] = None,
        category_id: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> Expense:
        result = conn.execute(
            insert(expenses).values(
                amount=amount,
                currency=currency,
                date=date,
                converted_amount=converted_amount,
                conversion_rate=conversion_rate,
                category_id=category_id,
                notes=notes,
            )
        )
        row = conn.execute(
            select(expenses).where(expenses.c.id == result.inserted_primary_key[0])
        ).mappings().one()
        return _expense_from_row(row)


class CategoryRepository:
    def get(self, conn: Connection, category_id: int) -> Optional[Category]:
        row = conn.execute(select(categories).where(categories.c.id == category_id)).mappings().first()
        if row is None:
            return None
        return Category(id=row["id"], name=row["name"], icon=row["icon"])

    def list_all(self, conn: Connection) -> list[Category]:
        rows = conn.execute(select(categories).order_by(categories.c.name)).mappings()
        return [Category(id=row["id"], name=row["name"], icon=row["icon"]) for row in rows]

    def add(self, conn: Connection, name: str, icon: Optional[str] = None) -> Category:
        result = conn.execute(insert(categories).values(name=name.strip(), icon=icon))
        return Category(id=result.inserted_primary_key[0], name=name.strip(), icon=icon)
