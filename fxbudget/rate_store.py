from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from types import MappingProxyType
from typing import Callable, Mapping

from sqlalchemy import delete, insert, select
from sqlalchemy.engine import Connection

from fxbudget.amounts import coerce_amount
from fxbudget.config import normalize_currency
from fxbudget.db import Database, exchange_rates
from fxbudget.errors import RateUnavailable

logger = logging.getLogger(__name__)

SOURCE_HISTORICAL = "historical"
SOURCE_LATEST = "latest"
SOURCE_CACHE = "cache"


@dataclass(frozen=True)
class RateQuote:
    """A resolved rate for one currency, expressed against the pivot.

    ``source`` tells how it was found: ``historical`` (a record at or before
    the requested day), ``latest`` (the newest record of any date) or
    ``cache`` (the in-memory snapshot of the last fetch).
    """

    currency: str
    rate: Decimal
    effective_date: date | None
    source: str

    @property
    def is_stale(self) -> bool:
        return self.source != SOURCE_HISTORICAL


def as_day(value: date | datetime | None, default: Callable[[], datetime] = datetime.now) -> date:
    if value is None:
        return default().date()
    if isinstance(value, datetime):
        return value.date()
    return value


class RateStore:
    """Time series of ``(currency, day, rate_to_pivot)`` records.

    Records are append-only; a newer record for the same day supersedes an
    older one because readers always take the most recent match.
    """

    def __init__(
        self,
        db: Database,
        *,
        pivot_currency: str = "USD",
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._db = db
        self.pivot_currency = pivot_currency
        self._clock = clock
        self._current: dict[str, Decimal] = {}

    @property
    def current_rates(self) -> Mapping[str, Decimal]:
        return MappingProxyType(dict(self._current))

    def get_rate(
        self,
        code: str,
        on: date | datetime | None = None,
        *,
        conn: Connection | None = None,
    ) -> RateQuote:
        normalized = normalize_currency(code)
        day = as_day(on, self._clock)
        if conn is None:
            with self._db.read() as read_conn:
                return self._resolve(read_conn, normalized, day)
        return self._resolve(conn, normalized, day)

    def _resolve(self, conn: Connection, code: str, day: date) -> RateQuote:
        newest_first = (
            exchange_rates.c.effective_date.desc(),
            exchange_rates.c.fetched_at.desc(),
            exchange_rates.c.id.desc(),
        )
        base = select(exchange_rates.c.rate_to_pivot, exchange_rates.c.effective_date).where(
            exchange_rates.c.currency_code == code
        )

        row = conn.execute(
            base.where(exchange_rates.c.effective_date <= day).order_by(*newest_first).limit(1)
        ).first()
        if row is not None:
            return RateQuote(code, coerce_amount(row.rate_to_pivot), row.effective_date, SOURCE_HISTORICAL)

        row = conn.execute(base.order_by(*newest_first).limit(1)).first()
        if row is not None:
            logger.info(
                "No rate for %s on or before %s, using latest from %s",
                code,
                day,
                row.effective_date,
            )
            return RateQuote(code, coerce_amount(row.rate_to_pivot), row.effective_date, SOURCE_LATEST)

        cached = self._current.get(code)
        if cached is not None:
            logger.info("No stored rate for %s, using in-memory rate %s", code, cached)
            return RateQuote(code, cached, None, SOURCE_CACHE)

        logger.warning("No rate available for %s", code)
        raise RateUnavailable(code)

    def save_historical_rate(
        self,
        conn: Connection,
        code: str,
        rate: Decimal | int | float | str,
        on: date | datetime | None = None,
    ) -> None:
        value = coerce_amount(rate)
        if value <= 0:
            raise ValueError("Rate must be greater than zero.")
        normalized = normalize_currency(code)
        conn.execute(
            insert(exchange_rates).values(
                currency_code=normalized,
                effective_date=as_day(on, self._clock),
                fetched_at=self._clock(),
                rate_to_pivot=value,
            )
        )
        logger.debug("Saved rate %s=%s for %s", normalized, value, as_day(on, self._clock))

    def record_snapshot(
        self,
        conn: Connection,
        rates: Mapping[str, Decimal],
        fetched_at: datetime,
    ) -> int:
        """Append one record per code stamped with ``fetched_at``.

        The hot cache is not touched here; call :meth:`update_cache` once
        the surrounding transaction has committed.
        """
        rows = [
            {
                "currency_code": code,
                "effective_date": fetched_at.date(),
                "fetched_at": fetched_at,
                "rate_to_pivot": rate,
            }
            for code, rate in rates.items()
        ]
        if rows:
            conn.execute(insert(exchange_rates), rows)
        return len(rows)

    def update_cache(self, rates: Mapping[str, Decimal]) -> None:
        self._current = dict(rates)

    def load_cached_rates(self, conn: Connection | None = None) -> dict[str, Decimal]:
        """Rebuild the hot cache from the newest stored record per code."""
        if conn is None:
            with self._db.read() as read_conn:
                return self.load_cached_rates(read_conn)
        rows = conn.execute(
            select(exchange_rates.c.currency_code, exchange_rates.c.rate_to_pivot).order_by(
                exchange_rates.c.effective_date.desc(),
                exchange_rates.c.fetched_at.desc(),
                exchange_rates.c.id.desc(),
            )
        ).all()
        latest: dict[str, Decimal] = {}
        for row in rows:
            if row.currency_code not in latest:
                latest[row.currency_code] = coerce_amount(row.rate_to_pivot)
        self._current = latest
        logger.info("Loaded %d cached rates", len(latest))
        return dict(latest)

    def prune(self, conn: Connection, older_than: date | None = None, *, retention_days: int = 365) -> int:
        cutoff = older_than or (self._clock().date() - timedelta(days=retention_days))
        result = conn.execute(delete(exchange_rates).where(exchange_rates.c.effective_date < cutoff))
        if result.rowcount:
            logger.info("Pruned %d exchange rate records before %s", result.rowcount, cutoff)
        return result.rowcount
