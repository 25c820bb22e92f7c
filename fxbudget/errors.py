from __future__ import annotations


class BudgetError(Exception):
    """Base class for budget lifecycle failures.

    ``message`` is safe to show to the user as-is.
    """

    message = "Budget operation failed."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)


class OperationInProgress(BudgetError):
    message = "Another budget operation is in progress. Try again shortly."


class InvalidAmount(BudgetError):
    message = "Enter an amount greater than zero."


class InvalidThreshold(BudgetError):
    message = "Alert threshold must be greater than zero and not above the budget amount."


class BudgetExistsForCurrentMonth(BudgetError):
    message = "A budget already exists for this month."


class NoCurrencyAvailable(BudgetError):
    message = "No reporting currency is configured."


class InvalidDate(BudgetError):
    message = "Could not compute a month for this budget."


class BudgetNotFound(BudgetError):
    message = "Budget not found."


class CategoryNotFound(BudgetError):
    message = "Category not found."


class RateUnavailable(LookupError):
    """Raised when no exchange rate can be resolved for a currency."""

    def __init__(self, currency: str) -> None:
        super().__init__(f"No exchange rate available for {currency}.")
        self.currency = currency


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate provider cannot fetch live rates."""
