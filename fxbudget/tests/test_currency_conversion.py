import unittest
from datetime import date, datetime
from decimal import Decimal

from fxbudget.amounts import quantize_money
from fxbudget.currencies import CurrencyCatalog
from fxbudget.currency_conversion import CurrencyConverter
from fxbudget.db import Database
from fxbudget.errors import RateUnavailable
from fxbudget.ledger import BudgetRepository, CategoryRepository, ExpenseRepository
from fxbudget.rate_store import RateStore

RATES = {"USD": "1", "EUR": "0.9", "GBP": "0.8"}


def build(db: Database) -> tuple[RateStore, CurrencyConverter]:
    db.create_all()
    catalog = CurrencyCatalog(db)
    db.run_sync(catalog.seed)
    catalog.load()
    store = RateStore(db, clock=lambda: datetime(2024, 6, 15, 12, 0))
    for code, rate in RATES.items():
        db.run_sync(store.save_historical_rate, code, rate, date(2024, 6, 1))
    return store, CurrencyConverter(db, store, catalog)


class CurrencyConversionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = Database("sqlite://")
        self.store, self.converter = build(self.db)

    def tearDown(self) -> None:
        self.db.close()

    def test_same_currency_returns_original_amount(self) -> None:
        conversion = self.converter.convert(Decimal("12.50"), "USD", " usd ")

        self.assertEqual(conversion.amount, Decimal("12.50"))
        self.assertEqual(conversion.rate, Decimal("1"))

    def test_same_currency_needs_no_rates(self) -> None:
        conversion = self.converter.convert(Decimal("5"), "XYZ", "XYZ")

        self.assertEqual(conversion.amount, Decimal("5"))

    def test_conversion_pivots_through_base_rates(self) -> None:
        conversion = self.converter.convert(Decimal("90"), "EUR", "GBP", date(2024, 6, 10))

        self.assertEqual(quantize_money(conversion.amount), Decimal("80.00"))
        self.assertEqual(quantize_money(conversion.rate * 90), Decimal("80.00"))
        self.assertFalse(conversion.stale)

    def test_direct_matches_two_step_conversion(self) -> None:
        direct = self.converter.convert(Decimal("100"), "EUR", "GBP")
        to_pivot = self.converter.convert(Decimal("100"), "EUR", "USD")
        two_step = self.converter.convert(to_pivot.amount, "USD", "GBP")

        self.assertEqual(quantize_money(direct.amount), quantize_money(two_step.amount))

    def test_missing_rate_returns_none(self) -> None:
        self.assertIsNone(self.converter.convert(Decimal("10"), "USD", "XYZ"))

    def test_rate_before_first_record_is_stale(self) -> None:
        conversion = self.converter.convert(Decimal("10"), "USD", "EUR", date(2024, 5, 1))

        self.assertEqual(quantize_money(conversion.amount), Decimal("9.00"))
        self.assertTrue(conversion.stale)

    def test_format_uses_catalog_symbol(self) -> None:
        self.assertEqual(self.converter.format(Decimal("1234.5"), "usd"), "$1 234,50")
        self.assertEqual(self.converter.format(Decimal("1234.5"), "EUR"), "1 234,50 €")


class LedgerConversionTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = Database("sqlite://")
        self.store, self.converter = build(self.db)
        self.budgets = BudgetRepository()
        self.expenses = ExpenseRepository()
        food = self.db.run_sync(CategoryRepository().add, "Food")
        self.db.run_sync(self._seed_ledger, food.id)

    async def asyncTearDown(self) -> None:
        self.db.close()

    def _seed_ledger(self, conn, category_id: int) -> None:
        self.budget_id = self.budgets.insert_budget(
            conn,
            anchor_month=date(2024, 6, 1),
            amount=Decimal("1000"),
            currency="USD",
            alert_threshold=Decimal("800"),
        )
        self.budgets.insert_category_budget(
            conn,
            budget_id=self.budget_id,
            category_id=category_id,
            amount=Decimal("200"),
            currency="USD",
            month=date(2024, 6, 1),
            category_name="Food",
        )
        self.expenses.add(conn, amount=Decimal("100"), currency="EUR", date=datetime(2024, 6, 5))
        self.expenses.add(conn, amount=Decimal("50"), currency="USD", date=datetime(2024, 6, 6))

    def load_budget(self):
        with self.db.read() as conn:
            return self.budgets.get_budget(conn, self.budget_id)

    async def test_converts_budgets_and_expenses(self) -> None:
        result = await self.converter.convert_ledger("USD", "EUR")

        self.assertEqual(result.expenses_converted, 2)
        self.assertEqual(result.budgets_converted, 1)
        self.assertEqual(result.category_budgets_converted, 1)
        budget = self.load_budget()
        self.assertEqual(budget.currency, "EUR")
        self.assertEqual(budget.amount, Decimal("900"))
        self.assertEqual(budget.alert_threshold, Decimal("720"))
        self.assertEqual(budget.category_budgets[0].amount, Decimal("180"))
        self.assertEqual(budget.category_budgets[0].currency, "EUR")
        with self.db.read() as conn:
            converted = {e.currency: e for e in self.expenses.fetch_all(conn)}
        self.assertEqual(converted["EUR"].converted_amount, Decimal("100"))
        self.assertEqual(converted["EUR"].conversion_rate, Decimal("1"))
        self.assertEqual(converted["USD"].converted_amount, Decimal("45"))
        self.assertEqual(converted["USD"].conversion_rate, Decimal("0.9"))

    async def test_second_run_leaves_converted_budgets_alone(self) -> None:
        await self.converter.convert_ledger("USD", "EUR")

        result = await self.converter.convert_ledger("USD", "EUR")

        self.assertEqual(result.budgets_converted, 0)
        self.assertEqual(self.load_budget().amount, Decimal("900"))
        self.assertFalse(self.converter.is_converting)

    async def test_missing_rate_aborts_whole_conversion(self) -> None:
        self.db.run_sync(
            self.expenses.add, amount=Decimal("10"), currency="XYZ", date=datetime(2024, 6, 7)
        )

        with self.assertRaises(RateUnavailable):
            await self.converter.convert_ledger("USD", "EUR")

        budget = self.load_budget()
        self.assertEqual(budget.currency, "USD")
        self.assertEqual(budget.amount, Decimal("1000"))
        with self.db.read() as conn:
            self.assertTrue(all(e.converted_amount is None for e in self.expenses.fetch_all(conn)))


if __name__ == "__main__":
    unittest.main()
