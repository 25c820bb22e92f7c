from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENT = Decimal("0.01")
PERCENT_CAP = 999999


def coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))


def quantize_money(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def format_amount(amount: Decimal, code: str, symbol: str | None = None) -> str:
    """Render ``amount`` as e.g. ``$1 234,50`` or ``1 234,50 €``.

    Two decimals, a space as the grouping separator and a comma as the
    decimal separator. USD puts its symbol in front; every other currency
    puts it after a space. The code stands in for a missing symbol.
    """
    grouped = f"{quantize_money(coerce_amount(amount)):,.2f}"
    number = grouped.replace(",", " ").replace(".", ",")
    sign = symbol or code
    if code == "USD":
        return f"{sign}{number}"
    return f"{number} {sign}"


def parse_amount(text: str, symbol: str | None = "$") -> Decimal | None:
    """Parse a user-typed amount such as ``"1 200,50 €"``.

    Returns ``None`` when the text is not a finite number.
    """
    cleaned = text
    if symbol:
        cleaned = cleaned.replace(symbol, "")
    cleaned = cleaned.replace(" ", "").replace(" ", "").replace(",", ".")
    if not cleaned:
        return None
    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not value.is_finite():
        return None
    return value


def format_percentage(percentage: float) -> str:
    if math.isinf(percentage) or math.isnan(percentage):
        return "0%"
    if 0 < percentage < 1:
        return "<1%"
    return f"{int(min(percentage, PERCENT_CAP))}%"
