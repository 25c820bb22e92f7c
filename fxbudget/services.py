from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import httpx

from fxbudget.budget_manager import BudgetManager
from fxbudget.config import Settings
from fxbudget.currencies import CurrencyCatalog, ReportingCurrency
from fxbudget.currency_conversion import CurrencyConverter
from fxbudget.db import Database
from fxbudget.ledger import BudgetRepository, CategoryRepository, ExpenseRepository
from fxbudget.preferences import CredentialStore, PreferenceStore
from fxbudget.rate_fetcher import RateFetcher
from fxbudget.rate_store import RateStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything built once at startup and handed to callers explicitly."""

    settings: Settings
    db: Database
    catalog: CurrencyCatalog
    reporting_currency: ReportingCurrency
    rate_store: RateStore
    rate_fetcher: RateFetcher
    converter: CurrencyConverter
    budget_manager: BudgetManager
    budgets: BudgetRepository
    expenses: ExpenseRepository
    categories: CategoryRepository

    async def startup(self) -> None:
        self.db.create_all()
        await self.db.run(self.catalog.seed)
        self.catalog.load()
        self.rate_store.load_cached_rates()
        await self.rate_fetcher.resolve_credential()
        if self.settings.start_rate_scheduler:
            await self.rate_fetcher.refresh_if_due()
            self.rate_fetcher.start()
        logger.info("fxbudget services started (reporting currency %s)", self.reporting_currency.get())

    async def shutdown(self) -> None:
        await self.rate_fetcher.stop()
        self.db.close()
        logger.info("fxbudget services stopped")


def build_services(
    settings: Settings,
    *,
    http_client: httpx.AsyncClient | None = None,
    clock: Callable[[], datetime] = datetime.now,
) -> Services:
    db = Database(settings.database_url)
    preferences = PreferenceStore()
    budgets = BudgetRepository()
    expenses = ExpenseRepository()
    categories = CategoryRepository()
    catalog = CurrencyCatalog(db)
    reporting_currency = ReportingCurrency(
        db,
        catalog,
        default_code=settings.default_currency,
        preferences=preferences,
    )
    rate_store = RateStore(db, pivot_currency=settings.pivot_currency, clock=clock)
    rate_fetcher = RateFetcher(
        db,
        rate_store,
        settings,
        preferences=preferences,
        credentials=CredentialStore(),
        client=http_client,
        clock=clock,
    )
    converter = CurrencyConverter(db, rate_store, catalog, budgets=budgets, expenses=expenses)
    budget_manager = BudgetManager(
        db,
        converter,
        reporting_currency,
        catalog,
        budgets=budgets,
        expenses=expenses,
        categories=categories,
        clock=clock,
    )
    return Services(
        settings=settings,
        db=db,
        catalog=catalog,
        reporting_currency=reporting_currency,
        rate_store=rate_store,
        rate_fetcher=rate_fetcher,
        converter=converter,
        budget_manager=budget_manager,
        budgets=budgets,
        expenses=expenses,
        categories=categories,
    )
