from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Iterator, Mapping, Optional

from sqlalchemy.engine import Connection

from fxbudget import budget_engine
from fxbudget.amounts import coerce_amount, format_percentage, parse_amount
from fxbudget.budget_engine import HORIZON_MONTHS, add_months, month_bounds, month_start
from fxbudget.currencies import CurrencyCatalog, ReportingCurrency
from fxbudget.currency_conversion import Conversion, CurrencyConverter
from fxbudget.db import Database
from fxbudget.errors import (
    BudgetExistsForCurrentMonth,
    BudgetNotFound,
    CategoryNotFound,
    InvalidAmount,
    InvalidDate,
    InvalidThreshold,
    NoCurrencyAvailable,
    OperationInProgress,
)
from fxbudget.ledger import (
    Budget,
    BudgetRepository,
    CategoryBudget,
    CategoryRepository,
    Expense,
    ExpenseRepository,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class BudgetSummary:
    budget: Budget
    total_category_budget: Decimal
    everything_else: Optional[Decimal]
    spent: Decimal
    non_budgeted_spending: Decimal
    percentage: float
    is_current_month: bool


def _validate_amount(amount: Decimal | int | float | str) -> Decimal:
    try:
        value = coerce_amount(amount)
    except (InvalidOperation, ValueError) as exc:
        raise InvalidAmount() from exc
    if not value.is_finite() or value <= ZERO:
        raise InvalidAmount()
    return value


def _validate_threshold(
    threshold: Decimal | int | float | str | None, amount: Optional[Decimal]
) -> Optional[Decimal]:
    if threshold is None:
        return None
    try:
        value = coerce_amount(threshold)
    except (InvalidOperation, ValueError) as exc:
        raise InvalidThreshold() from exc
    if amount is None or not value.is_finite() or value <= ZERO or value > amount:
        raise InvalidThreshold()
    return value


def _month_after(anchor: date, months: int) -> date:
    try:
        return add_months(anchor, months)
    except ValueError as exc:
        raise InvalidDate() from exc


class BudgetManager:
    """Lifecycle of monthly budgets and their category allocations.

    Mutations are serialized by a busy flag: a call made while another is
    running fails with ``OperationInProgress`` instead of waiting. Each
    mutation validates its input first and then runs as a single
    transaction on the database writer. Edits and deletes cascade forward
    through later months only.
    """

    def __init__(
        self,
        db: Database,
        converter: CurrencyConverter,
        reporting_currency: ReportingCurrency,
        catalog: CurrencyCatalog,
        *,
        budgets: BudgetRepository | None = None,
        expenses: ExpenseRepository | None = None,
        categories: CategoryRepository | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._db = db
        self._converter = converter
        self._reporting = reporting_currency
        self._catalog = catalog
        self._budgets = budgets or BudgetRepository()
        self._expenses = expenses or ExpenseRepository()
        self._categories = categories or CategoryRepository()
        self._clock = clock
        self._busy = False

    @property
    def is_processing(self) -> bool:
        return self._busy

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        if self._busy:
            raise OperationInProgress()
        self._busy = True
        try:
            yield
        finally:
            self._busy = False

    def _current_month(self) -> date:
        return month_start(self._clock())

    def _reload(self, conn: Connection, budget: Budget) -> Budget:
        current = self._budgets.get_budget(conn, budget.id)
        if current is None:
            raise BudgetNotFound()
        return current

    # -- create ---------------------------------------------------------------

    async def create_budget(
        self,
        amount: Decimal | int | str | None = None,
        alert_threshold: Decimal | int | str | None = None,
        *,
        propagate: bool = False,
    ) -> Budget:
        """Create the current month's budget.

        With ``propagate`` the next six months are filled in the same
        transaction, as :meth:`create_future_budgets` would.
        """
        with self._exclusive():
            value = None if amount is None else _validate_amount(amount)
            threshold = _validate_threshold(alert_threshold, value)
            return await self._db.run(self._create_budget, value, threshold, propagate)

    def _create_budget(
        self,
        conn: Connection,
        amount: Optional[Decimal],
        threshold: Optional[Decimal],
        propagate: bool = False,
    ) -> Budget:
        month = self._current_month()
        if self._budgets.budget_for_month(conn, month) is not None:
            raise BudgetExistsForCurrentMonth()
        currency = self._reporting.get(conn)
        if currency is None:
            raise NoCurrencyAvailable()
        budget_id = self._budgets.insert_budget(
            conn,
            anchor_month=month,
            amount=amount,
            currency=currency,
            alert_threshold=threshold,
        )
        logger.info(
            "Created budget for %s: %s %s",
            month.isoformat(),
            amount if amount is not None else "no amount",
            currency,
        )
        budget = self._budgets.get_budget(conn, budget_id)
        if propagate:
            self._create_future_budgets(conn, budget)
        return budget

    async def create_future_budgets(self, source: Budget) -> list[Budget]:
        """Copy ``source`` into each of the next six months that has no budget."""
        with self._exclusive():
            return await self._db.run(self._create_future_budgets, source)

    def _create_future_budgets(self, conn: Connection, source: Budget) -> list[Budget]:
        source = self._reload(conn, source)
        created: list[Budget] = []
        for offset in range(1, HORIZON_MONTHS + 1):
            month = _month_after(source.anchor_month, offset)
            if self._budgets.budget_for_month(conn, month) is not None:
                logger.debug("Budget already exists for %s", month.isoformat())
                continue
            created.append(self._copy_budget(conn, source, month))
        logger.info(
            "Propagated budget %s to %d future months",
            source.anchor_month.isoformat(),
            len(created),
        )
        return created

    def _copy_budget(self, conn: Connection, source: Budget, month: date) -> Budget:
        budget_id = self._budgets.insert_budget(
            conn,
            anchor_month=month,
            amount=source.amount,
            currency=source.currency,
            alert_threshold=source.alert_threshold,
        )
        for category_budget in source.category_budgets:
            self._budgets.insert_category_budget(
                conn,
                budget_id=budget_id,
                category_id=category_budget.category_id,
                amount=category_budget.amount,
                currency=category_budget.currency,
                month=month,
                category_name=category_budget.category_name,
            )
        return self._budgets.get_budget(conn, budget_id)

    async def ensure_horizon(self) -> list[Budget]:
        """Extend the chain from the latest budget up to six months ahead."""
        with self._exclusive():
            return await self._db.run(self._ensure_horizon)

    def _ensure_horizon(self, conn: Connection) -> list[Budget]:
        latest = self._budgets.latest_budget(conn)
        if latest is None:
            logger.info("No budgets yet, nothing to extend")
            return []
        horizon = _month_after(self._current_month(), HORIZON_MONTHS)
        created: list[Budget] = []
        while latest.anchor_month < horizon:
            latest = self._copy_budget(conn, latest, _month_after(latest.anchor_month, 1))
            created.append(latest)
        if created:
            logger.info("Extended budgets through %s", latest.anchor_month.isoformat())
        return created

    # -- update ---------------------------------------------------------------

    async def update_budget(
        self,
        budget: Budget,
        amount: Decimal | int | str,
        alert_threshold: Decimal | int | str | None = None,
    ) -> Budget:
        """Set amount and threshold on ``budget`` and every later month.

        A ``None`` threshold clears it. Later months are overwritten even if
        they were edited on their own since they were propagated.
        """
        with self._exclusive():
            value = _validate_amount(amount)
            threshold = _validate_threshold(alert_threshold, value)
            return await self._db.run(self._update_budget, budget, value, threshold)

    def _update_budget(
        self,
        conn: Connection,
        budget: Budget,
        amount: Decimal,
        threshold: Optional[Decimal],
    ) -> Budget:
        target = self._reload(conn, budget)
        later = self._budgets.budgets_from(conn, target.anchor_month, inclusive=False)
        self._budgets.update_budget_amounts(
            conn,
            [target.id, *(future.id for future in later)],
            amount=amount,
            alert_threshold=threshold,
        )
        logger.info(
            "Updated budget %s to %s %s and %d future months",
            target.anchor_month.isoformat(),
            amount,
            target.currency,
            len(later),
        )
        return self._budgets.get_budget(conn, target.id)

    # -- delete ---------------------------------------------------------------

    async def delete_budget(self, budget: Budget) -> int:
        """Delete ``budget`` and every budget in a later month."""
        with self._exclusive():
            return await self._db.run(self._delete_budget, budget)

    def _delete_budget(self, conn: Connection, budget: Budget) -> int:
        target = self._reload(conn, budget)
        doomed = self._budgets.budgets_from(conn, target.anchor_month, inclusive=True)
        deleted = self._budgets.delete_budgets(conn, [item.id for item in doomed])
        logger.info("Deleted %d budgets from %s onward", deleted, target.anchor_month.isoformat())
        return deleted

    # -- category allocations ---------------------------------------------------

    async def save_category_budgets(
        self,
        budget: Budget,
        allocations: Mapping[int, Decimal | int | str],
    ) -> list[Budget]:
        """Replace the allocations of ``budget`` and of every later month.

        Values may be typed text such as ``"1 200,50"``; entries that do not
        parse are skipped.
        """
        with self._exclusive():
            symbol = self._catalog.symbol_for(budget.currency)
            parsed: dict[int, Decimal] = {}
            for category_id, raw in allocations.items():
                value = parse_amount(raw, symbol) if isinstance(raw, str) else coerce_amount(raw)
                if value is None:
                    logger.warning("Skipping unparseable allocation %r for category %s", raw, category_id)
                    continue
                if not value.is_finite() or value < ZERO:
                    raise InvalidAmount()
                parsed[category_id] = value
            return await self._db.run(self._save_category_budgets, budget, parsed)

    def _save_category_budgets(
        self, conn: Connection, budget: Budget, allocations: Mapping[int, Decimal]
    ) -> list[Budget]:
        target = self._reload(conn, budget)
        names: dict[int, str] = {}
        for category_id in allocations:
            category = self._categories.get(conn, category_id)
            if category is None:
                raise CategoryNotFound()
            names[category_id] = category.name

        chain = self._budgets.budgets_from(conn, target.anchor_month, inclusive=True)
        self._budgets.delete_category_budgets(conn, [item.id for item in chain])
        for item in chain:
            for category_id, amount in allocations.items():
                self._budgets.insert_category_budget(
                    conn,
                    budget_id=item.id,
                    category_id=category_id,
                    amount=amount,
                    currency=item.currency,
                    month=item.anchor_month,
                    category_name=names[category_id],
                )
        logger.info(
            "Saved %d category budgets on %d budgets from %s",
            len(allocations),
            len(chain),
            target.anchor_month.isoformat(),
        )
        return [self._budgets.get_budget(conn, item.id) for item in chain]

    async def reconcile_budget_amount(self, budget: Budget) -> Budget:
        """Raise the total to the category sum when the sum is larger."""
        with self._exclusive():
            return await self._db.run(self._reconcile_budget_amount, budget)

    def _reconcile_budget_amount(self, conn: Connection, budget: Budget) -> Budget:
        target = self._reload(conn, budget)
        new_amount = budget_engine.reconciled_amount(target)
        if new_amount is None:
            logger.debug("Budget %s already covers its categories", target.anchor_month.isoformat())
            return target
        self._budgets.set_budget_amount(conn, target.id, new_amount)
        logger.info(
            "Raised budget %s from %s to %s",
            target.anchor_month.isoformat(),
            target.amount,
            new_amount,
        )
        return self._budgets.get_budget(conn, target.id)

    # -- queries --------------------------------------------------------------

    def get_budget(self, budget_id: int) -> Optional[Budget]:
        with self._db.read() as conn:
            return self._budgets.get_budget(conn, budget_id)

    def get_budget_for_month(self, month: date | datetime) -> Optional[Budget]:
        with self._db.read() as conn:
            return self._budgets.budget_for_month(conn, month_start(month))

    def get_current_month_budget(self) -> Optional[Budget]:
        return self.get_budget_for_month(self._current_month())

    def all_budgets(self) -> list[Budget]:
        with self._db.read() as conn:
            return self._budgets.all_budgets(conn)

    def get_budget_amount(self, target_currency: str) -> Optional[Conversion]:
        budget = self.get_current_month_budget()
        if budget is None or budget.amount is None:
            return None
        return self._converter.convert(budget.amount, budget.currency, target_currency)

    def verify_budget_currency(self, expected_currency: str) -> list[Budget]:
        mismatched = [budget for budget in self.all_budgets() if budget.currency != expected_currency]
        for budget in mismatched:
            logger.warning(
                "Budget %s is in %s, expected %s",
                budget.anchor_month.isoformat(),
                budget.currency,
                expected_currency,
            )
        return mismatched

    def expenses_for_budget(self, budget: Budget) -> list[Expense]:
        start, end = month_bounds(budget.anchor_month)
        with self._db.read() as conn:
            return self._expenses.fetch_by_date_range(conn, start, end)

    def calculate_total_category_budget(self, budget: Budget) -> Decimal:
        return budget_engine.calculate_total_category_budget(budget)

    def calculate_everything_else_amount(self, budget: Budget) -> Optional[Decimal]:
        return budget_engine.calculate_everything_else_amount(budget)

    def calculate_non_budgeted_spending(self, budget: Budget) -> Decimal:
        return budget_engine.calculate_non_budgeted_spending(budget, self.expenses_for_budget(budget))

    def calculate_percentage(self, category_budget: CategoryBudget, budget: Budget) -> float:
        return budget_engine.calculate_category_percentage(category_budget, self.expenses_for_budget(budget))

    def calculate_monthly_percentage(self, spent: Decimal, budget_amount: Optional[Decimal]) -> float:
        return budget_engine.calculate_percentage(spent, budget_amount)

    def format_percentage(self, percentage: float) -> str:
        return format_percentage(percentage)

    def is_current_month(self, budget: Budget) -> bool:
        return budget_engine.is_same_month(budget.anchor_month, self._clock())

    def summarize(self, budget: Budget) -> BudgetSummary:
        expenses = self.expenses_for_budget(budget)
        spent = budget_engine.calculate_spent(expenses)
        return BudgetSummary(
            budget=budget,
            total_category_budget=budget_engine.calculate_total_category_budget(budget),
            everything_else=budget_engine.calculate_everything_else_amount(budget),
            spent=spent,
            non_budgeted_spending=budget_engine.calculate_non_budgeted_spending(budget, expenses),
            percentage=budget_engine.calculate_percentage(spent, budget.amount),
            is_current_month=self.is_current_month(budget),
        )
