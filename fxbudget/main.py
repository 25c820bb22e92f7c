from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from fxbudget.amounts import quantize_money
from fxbudget.budget_manager import BudgetSummary
from fxbudget.config import Settings, normalize_currency
from fxbudget.errors import (
    BudgetError,
    BudgetExistsForCurrentMonth,
    BudgetNotFound,
    CategoryNotFound,
    InvalidDate,
    NoCurrencyAvailable,
    OperationInProgress,
    RateUnavailable,
)
from fxbudget.ledger import Budget, Expense
from fxbudget.logging_setup import configure_logging
from fxbudget.services import Services, build_services

BUDGET_ERROR_STATUS = {
    OperationInProgress: 409,
    BudgetExistsForCurrentMonth: 409,
    BudgetNotFound: 404,
    CategoryNotFound: 404,
    NoCurrencyAvailable: 409,
    InvalidDate: 500,
}


def budget_http_error(exc: BudgetError) -> HTTPException:
    status_code = BUDGET_ERROR_STATUS.get(type(exc), 400)
    return HTTPException(status_code=status_code, detail=str(exc))


def get_services(request: Request) -> Services:
    return request.app.state.services


class CurrencyResponse(BaseModel):
    code: str
    name: str
    symbol: str | None = None
    flag: str | None = None


class ReportingCurrencyPayload(BaseModel):
    currency: str


class ReportingCurrencyResponse(BaseModel):
    currency: str | None
    expenses_converted: int = 0
    budgets_converted: int = 0
    category_budgets_converted: int = 0


class RateResponse(BaseModel):
    currency: str
    rate: Decimal
    effective_date: date | None = None
    source: str
    stale: bool


class HistoricalRatePayload(BaseModel):
    currency: str
    rate: Decimal
    effective_date: date

    @classmethod
    def validate_payload(cls, payload: "HistoricalRatePayload") -> "HistoricalRatePayload":
        payload.currency = normalize_currency(payload.currency)
        if payload.rate <= 0:
            raise ValueError("Rate must be greater than zero.")
        return payload


class CredentialPayload(BaseModel):
    api_key: str


class RefreshResponse(BaseModel):
    refreshed: bool
    last_update: datetime | None = None
    cached_rates: int
    is_fetching: bool
    is_due: bool
    has_credential: bool
    last_error: str | None = None


class ConvertPayload(BaseModel):
    amount: Decimal
    source_currency: str
    target_currency: str
    on: date | None = None


class ConvertResponse(BaseModel):
    amount: Decimal
    rate: Decimal
    currency: str
    formatted: str
    stale: bool


class CategoryBudgetResponse(BaseModel):
    id: int
    category_id: int
    category_name: str | None = None
    amount: Decimal
    currency: str
    year: int
    month: int


class BudgetResponse(BaseModel):
    id: int
    anchor_month: date
    amount: Decimal | None = None
    currency: str
    alert_threshold: Decimal | None = None
    category_budgets: list[CategoryBudgetResponse] = []


class BudgetPayload(BaseModel):
    amount: Decimal | None = None
    alert_threshold: Decimal | None = None
    propagate: bool = True


class BudgetUpdatePayload(BaseModel):
    amount: Decimal
    alert_threshold: Decimal | None = None


class CategoryAllocationPayload(BaseModel):
    allocations: dict[int, str | Decimal]
    reconcile: bool = True


class BudgetSummaryResponse(BaseModel):
    budget: BudgetResponse
    total_category_budget: Decimal
    everything_else: Decimal | None = None
    spent: Decimal
    non_budgeted_spending: Decimal
    percentage: float
    formatted_percentage: str
    is_current_month: bool


class DeleteResponse(BaseModel):
    deleted: int


class CategoryResponse(BaseModel):
    id: int
    name: str
    icon: str | None = None


class ExpensePayload(BaseModel):
    amount: Decimal
    currency: str
    date: datetime
    category_id: int | None = None
    notes: str | None = None

    @classmethod
    def validate_payload(cls, payload: "ExpensePayload") -> "ExpensePayload":
        payload.currency = normalize_currency(payload.currency)
        payload.notes = payload.notes.strip() if payload.notes else None
        if payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        return payload


class ExpenseResponse(BaseModel):
    id: int
    amount: Decimal
    currency: str
    date: datetime
    converted_amount: Decimal | None = None
    conversion_rate: Decimal | None = None
    category_id: int | None = None
    notes: str | None = None


def budget_response(budget: Budget) -> BudgetResponse:
    return BudgetResponse(
        id=budget.id,
        anchor_month=budget.anchor_month,
        amount=budget.amount,
        currency=budget.currency,
        alert_threshold=budget.alert_threshold,
        category_budgets=[
            CategoryBudgetResponse(
                id=item.id,
                category_id=item.category_id,
                category_name=item.category_name,
                amount=item.amount,
                currency=item.currency,
                year=item.year,
                month=item.month,
            )
            for item in budget.category_budgets
        ],
    )


def expense_response(expense: Expense) -> ExpenseResponse:
    return ExpenseResponse(
        id=expense.id,
        amount=expense.amount,
        currency=expense.currency,
        date=expense.date,
        converted_amount=expense.converted_amount,
        conversion_rate=expense.conversion_rate,
        category_id=expense.category_id,
        notes=expense.notes,
    )


def summary_response(services: Services, summary: BudgetSummary) -> BudgetSummaryResponse:
    return BudgetSummaryResponse(
        budget=budget_response(summary.budget),
        total_category_budget=summary.total_category_budget,
        everything_else=summary.everything_else,
        spent=summary.spent,
        non_budgeted_spending=summary.non_budgeted_spending,
        percentage=summary.percentage,
        formatted_percentage=services.budget_manager.format_percentage(summary.percentage),
        is_current_month=summary.is_current_month,
    )


def refresh_response(services: Services, refreshed: bool) -> RefreshResponse:
    status = services.rate_fetcher.status()
    return RefreshResponse(
        refreshed=refreshed,
        last_update=status.last_update,
        cached_rates=status.cached_rates,
        is_fetching=status.is_fetching,
        is_due=status.is_due,
        has_credential=status.has_credential,
        last_error=status.last_error,
    )


def load_budget(services: Services, budget_id: int) -> Budget:
    budget = services.budget_manager.get_budget(budget_id)
    if budget is None:
        raise HTTPException(status_code=404, detail="Budget not found.")
    return budget


def create_app(settings: Settings | None = None, prebuilt: Services | None = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level, settings.log_format)
        active = prebuilt or build_services(settings)
        app.state.services = active
        await active.startup()
        try:
            yield
        finally:
            await active.shutdown()

    app = FastAPI(lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.get("/currencies", response_model=list[CurrencyResponse])
    def list_currencies(services: Services = Depends(get_services)) -> list[CurrencyResponse]:
        return [
            CurrencyResponse(code=c.code, name=c.name, symbol=c.symbol, flag=c.flag)
            for c in services.catalog.list_all()
        ]

    @app.get("/settings/currency", response_model=ReportingCurrencyResponse)
    def get_reporting_currency(services: Services = Depends(get_services)) -> ReportingCurrencyResponse:
        return ReportingCurrencyResponse(currency=services.reporting_currency.get())

    @app.put("/settings/currency", response_model=ReportingCurrencyResponse)
    async def change_reporting_currency(
        payload: ReportingCurrencyPayload, services: Services = Depends(get_services)
    ) -> ReportingCurrencyResponse:
        try:
            result = await services.reporting_currency.change(payload.currency, services.converter)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except RateUnavailable as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        response = ReportingCurrencyResponse(currency=services.reporting_currency.get())
        if result is not None:
            response.expenses_converted = result.expenses_converted
            response.budgets_converted = result.budgets_converted
            response.category_budgets_converted = result.category_budgets_converted
        return response

    @app.get("/rates/status", response_model=RefreshResponse)
    def rate_status(services: Services = Depends(get_services)) -> RefreshResponse:
        return refresh_response(services, refreshed=False)

    @app.post("/rates/refresh", response_model=RefreshResponse)
    async def refresh_rates(
        force: bool = Query(False), services: Services = Depends(get_services)
    ) -> RefreshResponse:
        refreshed = await services.rate_fetcher.refresh_if_due(force=force)
        return refresh_response(services, refreshed)

    @app.put("/rates/credential", response_model=RefreshResponse)
    async def configure_credential(
        payload: CredentialPayload, services: Services = Depends(get_services)
    ) -> RefreshResponse:
        try:
            refreshed = await services.rate_fetcher.configure_api_key(payload.api_key)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return refresh_response(services, refreshed)

    @app.delete("/rates/credential", response_model=RefreshResponse)
    async def clear_credential(services: Services = Depends(get_services)) -> RefreshResponse:
        await services.rate_fetcher.clear_api_key()
        return refresh_response(services, refreshed=False)

    @app.post("/rates/historical", response_model=RateResponse)
    async def backfill_rate(
        payload: HistoricalRatePayload, services: Services = Depends(get_services)
    ) -> RateResponse:
        try:
            payload = HistoricalRatePayload.validate_payload(payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        await services.db.run(
            services.rate_store.save_historical_rate, payload.currency, payload.rate, payload.effective_date
        )
        quote = services.rate_store.get_rate(payload.currency, payload.effective_date)
        return RateResponse(
            currency=quote.currency,
            rate=quote.rate,
            effective_date=quote.effective_date,
            source=quote.source,
            stale=quote.is_stale,
        )

    @app.get("/rates/{currency}", response_model=RateResponse)
    def get_rate(
        currency: str,
        on: date | None = Query(None),
        services: Services = Depends(get_services),
    ) -> RateResponse:
        try:
            quote = services.rate_store.get_rate(currency, on)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except RateUnavailable as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return RateResponse(
            currency=quote.currency,
            rate=quote.rate,
            effective_date=quote.effective_date,
            source=quote.source,
            stale=quote.is_stale,
        )

    @app.post("/currency/convert", response_model=ConvertResponse)
    def convert_currency(
        payload: ConvertPayload, services: Services = Depends(get_services)
    ) -> ConvertResponse:
        try:
            target = normalize_currency(payload.target_currency)
            conversion = services.converter.convert(
                payload.amount, payload.source_currency, target, payload.on
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if conversion is None:
            raise HTTPException(status_code=422, detail="Exchange rate unavailable.")
        return ConvertResponse(
            amount=conversion.amount,
            rate=conversion.rate,
            currency=target,
            formatted=services.converter.format(conversion.amount, target),
            stale=conversion.stale,
        )

    @app.get("/budgets", response_model=list[BudgetResponse])
    def list_budgets(services: Services = Depends(get_services)) -> list[BudgetResponse]:
        return [budget_response(budget) for budget in services.budget_manager.all_budgets()]

    @app.get("/budgets/current", response_model=BudgetResponse)
    def current_budget(services: Services = Depends(get_services)) -> BudgetResponse:
        budget = services.budget_manager.get_current_month_budget()
        if budget is None:
            raise HTTPException(status_code=404, detail="No budget for the current month.")
        return budget_response(budget)

    @app.get("/budgets/month/{year}/{month}", response_model=BudgetResponse)
    def budget_for_month(
        year: int, month: int, services: Services = Depends(get_services)
    ) -> BudgetResponse:
        try:
            anchor = date(year, month, 1)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        budget = services.budget_manager.get_budget_for_month(anchor)
        if budget is None:
            raise HTTPException(status_code=404, detail="No budget for this month.")
        return budget_response(budget)

    @app.post("/budgets", response_model=BudgetResponse)
    async def create_budget(
        payload: BudgetPayload, services: Services = Depends(get_services)
    ) -> BudgetResponse:
        try:
            budget = await services.budget_manager.create_budget(
                payload.amount, payload.alert_threshold, propagate=payload.propagate
            )
        except BudgetError as exc:
            raise budget_http_error(exc) from exc
        return budget_response(budget)

    @app.post("/budgets/horizon", response_model=list[BudgetResponse])
    async def extend_horizon(services: Services = Depends(get_services)) -> list[BudgetResponse]:
        try:
            created = await services.budget_manager.ensure_horizon()
        except BudgetError as exc:
            raise budget_http_error(exc) from exc
        return [budget_response(budget) for budget in created]

    @app.put("/budgets/{budget_id}", response_model=BudgetResponse)
    async def update_budget(
        budget_id: int, payload: BudgetUpdatePayload, services: Services = Depends(get_services)
    ) -> BudgetResponse:
        budget = load_budget(services, budget_id)
        try:
            updated = await services.budget_manager.update_budget(
                budget, payload.amount, payload.alert_threshold
            )
        except BudgetError as exc:
            raise budget_http_error(exc) from exc
        return budget_response(updated)

    @app.delete("/budgets/{budget_id}", response_model=DeleteResponse)
    async def delete_budget(budget_id: int, services: Services = Depends(get_services)) -> DeleteResponse:
        budget = load_budget(services, budget_id)
        try:
            deleted = await services.budget_manager.delete_budget(budget)
        except BudgetError as exc:
            raise budget_http_error(exc) from exc
        return DeleteResponse(deleted=deleted)

    @app.post("/budgets/{budget_id}/propagate", response_model=list[BudgetResponse])
    async def propagate_budget(
        budget_id: int, services: Services = Depends(get_services)
    ) -> list[BudgetResponse]:
        budget = load_budget(services, budget_id)
        try:
            created = await services.budget_manager.create_future_budgets(budget)
        except BudgetError as exc:
            raise budget_http_error(exc) from exc
        return [budget_response(item) for item in created]

    @app.put("/budgets/{budget_id}/categories", response_model=BudgetResponse)
    async def save_category_budgets(
        budget_id: int,
        payload: CategoryAllocationPayload,
        services: Services = Depends(get_services),
    ) -> BudgetResponse:
        manager = services.budget_manager
        budget = load_budget(services, budget_id)
        try:
            await manager.save_category_budgets(budget, payload.allocations)
            budget = load_budget(services, budget_id)
            if payload.reconcile:
                budget = await manager.reconcile_budget_amount(budget)
        except BudgetError as exc:
            raise budget_http_error(exc) from exc
        return budget_response(budget)

    @app.post("/budgets/{budget_id}/reconcile", response_model=BudgetResponse)
    async def reconcile_budget(budget_id: int, services: Services = Depends(get_services)) -> BudgetResponse:
        budget = load_budget(services, budget_id)
        try:
            reconciled = await services.budget_manager.reconcile_budget_amount(budget)
        except BudgetError as exc:
            raise budget_http_error(exc) from exc
        return budget_response(reconciled)

    @app.get("/budgets/{budget_id}/summary", response_model=BudgetSummaryResponse)
    def budget_summary(budget_id: int, services: Services = Depends(get_services)) -> BudgetSummaryResponse:
        budget = load_budget(services, budget_id)
        return summary_response(services, services.budget_manager.summarize(budget))

    @app.get("/categories", response_model=list[CategoryResponse])
    def list_categories(services: Services = Depends(get_services)) -> list[CategoryResponse]:
        with services.db.read() as conn:
            rows = services.categories.list_all(conn)
        return [CategoryResponse(id=c.id, name=c.name, icon=c.icon) for c in rows]

    @app.get("/expenses", response_model=list[ExpenseResponse])
    def list_expenses(
        start_date: datetime = Query(...),
        end_date: datetime = Query(...),
        services: Services = Depends(get_services),
    ) -> list[ExpenseResponse]:
        if start_date > end_date:
            raise HTTPException(status_code=400, detail="start_date must be on or before end_date.")
        with services.db.read() as conn:
            rows = services.expenses.fetch_by_date_range(conn, start_date, end_date)
        return [expense_response(expense) for expense in rows]

    @app.post("/expenses", response_model=ExpenseResponse)
    async def add_expense(payload: ExpensePayload, services: Services = Depends(get_services)) -> ExpenseResponse:
        try:
            payload = ExpensePayload.validate_payload(payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        reporting = services.reporting_currency.get()
        if reporting is None:
            raise HTTPException(status_code=409, detail=str(NoCurrencyAvailable()))
        conversion = services.converter.convert(payload.amount, payload.currency, reporting, payload.date)
        if conversion is None:
            raise HTTPException(
                status_code=422,
                detail=f"Exchange rate unavailable for {payload.currency}; expense not saved.",
            )
        expense = await services.db.run(
            services.expenses.add,
            amount=payload.amount,
            currency=payload.currency,
            date=payload.date,
            converted_amount=quantize_money(conversion.amount),
            conversion_rate=conversion.rate,
            category_id=payload.category_id,
            notes=payload.notes,
        )
        return expense_response(expense)

    return app


app = create_app()
