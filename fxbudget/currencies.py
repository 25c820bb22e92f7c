from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from sqlalchemy import insert, select
from sqlalchemy.engine import Connection

from fxbudget.config import normalize_currency
from fxbudget.db import Database, currencies
from fxbudget.errors import NoCurrencyAvailable
from fxbudget.preferences import REPORTING_CURRENCY_KEY, PreferenceStore

if TYPE_CHECKING:
    from fxbudget.currency_conversion import CurrencyConverter, LedgerConversionResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Currency:
    code: str
    name: str
    symbol: Optional[str] = None
    flag: Optional[str] = None


COMMON_CURRENCIES: tuple[Currency, ...] = (
    Currency("AED", "United Arab Emirates Dirham", "د.إ", "🇦🇪"),
    Currency("ARS", "Argentine Peso", "$", "🇦🇷"),
    Currency("AUD", "Australian Dollar", "A$", "🇦🇺"),
    Currency("BGN", "Bulgarian Lev", "лв", "🇧🇬"),
    Currency("BRL", "Brazilian Real", "R$", "🇧🇷"),
    Currency("BTC", "Bitcoin", "₿", "🌍"),
    Currency("CAD", "Canadian Dollar", "C$", "🇨🇦"),
    Currency("CHF", "Swiss Franc", "Fr.", "🇨🇭"),
    Currency("CLP", "Chilean Peso", "$", "🇨🇱"),
    Currency("CNY", "Chinese Yuan", "¥", "🇨🇳"),
    Currency("COP", "Colombian Peso", "$", "🇨🇴"),
    Currency("CZK", "Czech Republic Koruna", "Kč", "🇨🇿"),
    Currency("DKK", "Danish Krone", "kr", "🇩🇰"),
    Currency("EGP", "Egyptian Pound", "£", "🇪🇬"),
    Currency("EUR", "Euro", "€", "🇪🇺"),
    Currency("GBP", "British Pound Sterling", "£", "🇬🇧"),
    Currency("GEL", "Georgian Lari", "₾", "🇬🇪"),
    Currency("HKD", "Hong Kong Dollar", "HK$", "🇭🇰"),
    Currency("HUF", "Hungarian Forint", "Ft", "🇭🇺"),
    Currency("IDR", "Indonesian Rupiah", "Rp", "🇮🇩"),
    Currency("ILS", "Israeli New Sheqel", "₪", "🇮🇱"),
    Currency("INR", "Indian Rupee", "₹", "🇮🇳"),
    Currency("ISK", "Icelandic Króna", "kr", "🇮🇸"),
    Currency("JPY", "Japanese Yen", "¥", "🇯🇵"),
    Currency("KRW", "South Korean Won", "₩", "🇰🇷"),
    Currency("KZT", "Kazakhstani Tenge", "₸", "🇰🇿"),
    Currency("MXN", "Mexican Peso", "$", "🇲🇽"),
    Currency("MYR", "Malaysian Ringgit", "RM", "🇲🇾"),
    Currency("NOK", "Norwegian Krone", "kr", "🇳🇴"),
    Currency("NZD", "New Zealand Dollar", "NZ$", "🇳🇿"),
    Currency("PHP", "Philippine Peso", "₱", "🇵🇭"),
    Currency("PLN", "Polish Zloty", "zł", "🇵🇱"),
    Currency("RON", "Romanian Leu", "lei", "🇷🇴"),
    Currency("SEK", "Swedish Krona", "kr", "🇸🇪"),
    Currency("SGD", "Singapore Dollar", "S$", "🇸🇬"),
    Currency("THB", "Thai Baht", "฿", "🇹🇭"),
    Currency("TRY", "Turkish Lira", "₺", "🇹🇷"),
    Currency("TWD", "New Taiwan Dollar", "NT$", "🇹🇼"),
    Currency("UAH", "Ukrainian Hryvnia", "₴", "🇺🇦"),
    Currency("USD", "United States Dollar", "$", "🇺🇸"),
    Currency("VND", "Vietnamese Dong", "₫", "🇻🇳"),
    Currency("ZAR", "South African Rand", "R", "🇿🇦"),
)


class CurrencyCatalog:
    """Reference currencies, deduplicated by code."""

    def __init__(self, db: Database) -> None:
        self._db = db
        self._by_code: dict[str, Currency] = {currency.code: currency for currency in COMMON_CURRENCIES}

    def seed(self, conn: Connection) -> int:
        existing = set(conn.execute(select(currencies.c.code)).scalars())
        missing = [currency for currency in COMMON_CURRENCIES if currency.code not in existing]
        if missing:
            conn.execute(
                insert(currencies),
                [
                    {"code": c.code, "name": c.name, "symbol": c.symbol, "flag": c.flag}
                    for c in missing
                ],
            )
            logger.info("Seeded %d currencies", len(missing))
        return len(missing)

    def load(self) -> list[Currency]:
        with self._db.read() as conn:
            rows = conn.execute(select(currencies).order_by(currencies.c.code)).mappings().all()
        for row in rows:
            self._by_code[row["code"]] = Currency(
                code=row["code"], name=row["name"], symbol=row["symbol"], flag=row["flag"]
            )
        return self.list_all()

    def list_all(self) -> list[Currency]:
        return [self._by_code[code] for code in sorted(self._by_code)]

    def get(self, code: str) -> Optional[Currency]:
        try:
            return self._by_code.get(normalize_currency(code))
        except ValueError:
            return None

    def symbol_for(self, code: str) -> str:
        currency = self.get(code)
        if currency is None or not currency.symbol:
            return code
        return currency.symbol


class ReportingCurrency:
    """The user's default currency for aggregate display.

    Resolved from the stored preference, then the configured default
    (USD unless overridden). Changes are serialized; each one re-converts
    the whole ledger and writes the new code in the same transaction.
    """

    def __init__(
        self,
        db: Database,
        catalog: CurrencyCatalog,
        *,
        default_code: str | None = "USD",
        preferences: PreferenceStore | None = None,
    ) -> None:
        self._db = db
        self._catalog = catalog
        self._default_code = default_code
        self._preferences = preferences or PreferenceStore()
        self._change_lock = asyncio.Lock()

    def get(self, conn: Connection | None = None) -> Optional[str]:
        if conn is None:
            with self._db.read() as read_conn:
                return self.get(read_conn)
        stored = self._preferences.get(conn, REPORTING_CURRENCY_KEY)
        for candidate in (stored, self._default_code):
            if candidate and self._catalog.get(candidate) is not None:
                return candidate
        return None

    def require(self, conn: Connection | None = None) -> str:
        code = self.get(conn)
        if code is None:
            raise NoCurrencyAvailable()
        return code

    def set(self, conn: Connection, code: str) -> str:
        normalized = normalize_currency(code)
        if self._catalog.get(normalized) is None:
            raise ValueError(f"Unsupported currency: {normalized}")
        self._preferences.set(conn, REPORTING_CURRENCY_KEY, normalized)
        return normalized

    async def change(
        self, new_code: str, converter: "CurrencyConverter"
    ) -> "LedgerConversionResult | None":
        target = normalize_currency(new_code)
        if self._catalog.get(target) is None:
            raise ValueError(f"Unsupported currency: {target}")
        async with self._change_lock:
            current = self.get()
            if current == target:
                logger.info("Reporting currency already %s", target)
                return None
            result = None
            if current is None:
                await self._db.run(self.set, target)
            else:
                result = await converter.convert_ledger(
                    current, target, finalize=lambda conn: self.set(conn, target)
                )
        logger.info("Reporting currency changed from %s to %s", current, target)
        return result
