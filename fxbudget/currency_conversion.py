from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Callable

from sqlalchemy.engine import Connection

from fxbudget.amounts import coerce_amount, format_amount, quantize_money
from fxbudget.config import normalize_currency
from fxbudget.currencies import CurrencyCatalog
from fxbudget.db import Database
from fxbudget.errors import RateUnavailable
from fxbudget.ledger import BudgetRepository, ExpenseRepository
from fxbudget.rate_store import RateStore

logger = logging.getLogger(__name__)

ONE = Decimal("1")


@dataclass(frozen=True)
class Conversion:
    """Converted amount plus the effective source-to-target rate.

    ``stale`` is set when either leg fell back to a rate that was not
    known on the requested day.
    """

    amount: Decimal
    rate: Decimal
    stale: bool = False


@dataclass(frozen=True)
class LedgerConversionResult:
    source_currency: str
    target_currency: str
    expenses_converted: int
    budgets_converted: int
    category_budgets_converted: int


class CurrencyConverter:
    """Converts amounts by pivoting through the rate store.

    Both legs are resolved against the pivot currency:
    ``amount / rate(source) * rate(target)``.
    """

    def __init__(
        self,
        db: Database,
        rate_store: RateStore,
        catalog: CurrencyCatalog,
        *,
        budgets: BudgetRepository | None = None,
        expenses: ExpenseRepository | None = None,
    ) -> None:
        self._db = db
        self._rates = rate_store
        self._catalog = catalog
        self._budgets = budgets or BudgetRepository()
        self._expenses = expenses or ExpenseRepository()
        self._ledger_lock = asyncio.Lock()

    @property
    def is_converting(self) -> bool:
        return self._ledger_lock.locked()

    def convert(
        self,
        amount: Decimal | int | float | str,
        source_currency: str,
        target_currency: str,
        on: date | datetime | None = None,
        *,
        conn: Connection | None = None,
    ) -> Conversion | None:
        """Convert ``amount``; ``None`` when either rate is unavailable."""
        try:
            return self._convert(amount, source_currency, target_currency, on, conn)
        except RateUnavailable as exc:
            logger.warning(
                "Cannot convert %s to %s: %s", source_currency, target_currency, exc
            )
            return None

    def _convert(
        self,
        amount: Decimal | int | float | str,
        source_currency: str,
        target_currency: str,
        on: date | datetime | None,
        conn: Connection | None,
    ) -> Conversion:
        normalized_source = normalize_currency(source_currency)
        normalized_target = normalize_currency(target_currency)
        coerced_amount = coerce_amount(amount)

        if normalized_source == normalized_target:
            return Conversion(amount=coerced_amount, rate=ONE)

        source_quote = self._rates.get_rate(normalized_source, on, conn=conn)
        target_quote = self._rates.get_rate(normalized_target, on, conn=conn)
        amount_in_pivot = coerced_amount / source_quote.rate
        return Conversion(
            amount=amount_in_pivot * target_quote.rate,
            rate=target_quote.rate / source_quote.rate,
            stale=source_quote.is_stale or target_quote.is_stale,
        )

    def format(self, amount: Decimal, currency_code: str) -> str:
        code = normalize_currency(currency_code)
        return format_amount(amount, code, self._catalog.symbol_for(code))

    async def convert_ledger(
        self,
        source_currency: str,
        target_currency: str,
        *,
        finalize: Callable[[Connection], object] | None = None,
    ) -> LedgerConversionResult:
        """Re-stamp every expense and every ``source`` budget in ``target``.

        Runs as one transaction: if any conversion cannot be resolved,
        ``RateUnavailable`` propagates and nothing is written. Budgets are
        selected by ``currency == source``, so repeating the call is a no-op
        for budgets that were already converted. ``finalize`` runs last in
        the same transaction.
        """
        source = normalize_currency(source_currency)
        target = normalize_currency(target_currency)
        async with self._ledger_lock:
            logger.info("Starting ledger conversion %s -> %s", source, target)
            result = await self._db.run(self._convert_ledger, source, target, finalize)
        logger.info(
            "Ledger conversion %s -> %s done: %d expenses, %d budgets, %d category budgets",
            source,
            target,
            result.expenses_converted,
            result.budgets_converted,
            result.category_budgets_converted,
        )
        return result

    def _convert_ledger(
        self,
        conn: Connection,
        source: str,
        target: str,
        finalize: Callable[[Connection], object] | None = None,
    ) -> LedgerConversionResult:
        staged_expenses: list[tuple[int, Decimal, Decimal]] = []
        for expense in self._expenses.fetch_all(conn):
            conversion = self._convert(expense.amount, expense.currency, target, expense.date, conn)
            staged_expenses.append((expense.id, quantize_money(conversion.amount), conversion.rate))

        staged_budgets: list[tuple[int, Decimal | None, Decimal | None]] = []
        staged_children: list[tuple[int, Decimal]] = []
        for budget in self._budgets.budgets_in_currency(conn, source):
            anchor = budget.anchor_month
            amount = None
            if budget.amount is not None:
                amount = quantize_money(self._convert(budget.amount, source, target, anchor, conn).amount)
            threshold = None
            if budget.alert_threshold is not None:
                threshold = quantize_money(
                    self._convert(budget.alert_threshold, source, target, anchor, conn).amount
                )
            staged_budgets.append((budget.id, amount, threshold))
            logger.debug(
                "Budget %s: %s -> %s",
                anchor.isoformat(),
                self.format(budget.amount, source) if budget.amount is not None else "no amount",
                self.format(amount, target) if amount is not None else "no amount",
            )
            for child in budget.category_budgets:
                converted = self._convert(child.amount, child.currency, target, anchor, conn)
                staged_children.append((child.id, quantize_money(converted.amount)))

        for expense_id, converted_amount, rate in staged_expenses:
            self._expenses.set_converted_amount(
                conn, expense_id, converted_amount=converted_amount, conversion_rate=rate
            )
        for budget_id, amount, threshold in staged_budgets:
            self._budgets.restamp_budget(
                conn, budget_id, amount=amount, alert_threshold=threshold, currency=target
            )
        for category_budget_id, amount in staged_children:
            self._budgets.update_category_budget_amount(
                conn, category_budget_id, amount=amount, currency=target
            )
        if finalize is not None:
            finalize(conn)

        return LedgerConversionResult(
            source_currency=source,
            target_currency=target,
            expenses_converted=len(staged_expenses),
            budgets_converted=len(staged_budgets),
            category_budgets_converted=len(staged_children),
        )
