from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Mapping

import httpx
from sqlalchemy.engine import Connection

from fxbudget.config import Settings, normalize_currency
from fxbudget.db import Database
from fxbudget.errors import RateProviderUnavailable
from fxbudget.preferences import (
    LAST_RATE_UPDATE_KEY,
    RATES_API_KEY,
    CredentialStore,
    PreferenceStore,
)
from fxbudget.rate_store import RateStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FetcherStatus:
    last_update: datetime | None
    cached_rates: int
    is_fetching: bool
    is_due: bool
    has_credential: bool
    last_error: str | None


def parse_rates_payload(payload: Any, pivot_currency: str) -> dict[str, Decimal]:
    """Validate a ``{timestamp, base, rates}`` body into ``code -> rate``.

    Any malformed entry rejects the whole snapshot.
    """
    if not isinstance(payload, dict):
        raise RateProviderUnavailable("Rate response is not a JSON object")
    rates = payload.get("rates")
    if not isinstance(rates, dict) or not rates:
        raise RateProviderUnavailable("Rate response missing rates")
    base = payload.get("base")
    if base is not None and str(base).upper() != pivot_currency:
        raise RateProviderUnavailable(f"Rate response base {base} does not match pivot {pivot_currency}")

    parsed: dict[str, Decimal] = {}
    for code, value in rates.items():
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            raise RateProviderUnavailable(f"Invalid rate for {code}")
        try:
            rate = Decimal(str(value))
            normalized = normalize_currency(str(code))
        except (InvalidOperation, ValueError) as exc:
            raise RateProviderUnavailable(f"Invalid rate entry {code}={value!r}") from exc
        if not rate.is_finite() or rate <= 0:
            raise RateProviderUnavailable(f"Invalid rate for {code}")
        parsed[normalized] = rate
    parsed[pivot_currency] = Decimal("1")
    return parsed


def next_midnight(now: datetime) -> datetime:
    return datetime.combine(now.date() + timedelta(days=1), time.min)


class RateFetcher:
    """Daily snapshot fetcher for the rate store.

    At most one fetch runs at a time. A non-forced request made while a
    fetch is running is dropped; a forced one cancels the running fetch and
    starts over. Failures are logged and leave the last-update timestamp
    alone so the next eligible refresh retries.
    """

    def __init__(
        self,
        db: Database,
        rate_store: RateStore,
        settings: Settings,
        *,
        preferences: PreferenceStore | None = None,
        credentials: CredentialStore | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._db = db
        self._rates = rate_store
        self._settings = settings
        self._preferences = preferences or PreferenceStore()
        self._credentials = credentials or CredentialStore()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=10.0)
        self._clock = clock
        self._sleep = sleep
        self._api_key: str | None = None
        self._fetch_task: asyncio.Task[bool] | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self.last_error: str | None = None

    @property
    def has_credential(self) -> bool:
        return bool(self._api_key)

    @property
    def is_fetching(self) -> bool:
        return self._fetch_task is not None and not self._fetch_task.done()

    async def resolve_credential(self) -> str | None:
        """Load the API key: secure storage, then the bundled fallback."""
        self._api_key = await self._db.run(self._resolve_credential)
        if self._api_key:
            logger.info("Rate provider API key configured")
        else:
            logger.warning("No rate provider API key found; rate fetching is disabled")
        return self._api_key

    def _resolve_credential(self, conn: Connection) -> str | None:
        stored = self._credentials.load(conn, RATES_API_KEY)
        if stored:
            return stored
        bundled = self._settings.bundled_api_key
        if bundled:
            logger.info("Using bundled API key and saving it to secure storage")
            self._credentials.store(conn, RATES_API_KEY, bundled)
            return bundled
        return None

    async def configure_api_key(self, key: str) -> bool:
        """Persist a new API key and force an immediate refresh.

        Returns whether the forced refresh succeeded.
        """
        cleaned = key.strip()
        if not cleaned:
            self.last_error = "API key cannot be empty"
            raise ValueError(self.last_error)
        await self._db.run(self._credentials.store, RATES_API_KEY, cleaned)
        self._api_key = cleaned
        return await self.refresh_if_due(force=True)

    async def clear_api_key(self) -> bool:
        """Forget the stored API key; scheduled fetches skip until a new one is set."""
        removed = await self._db.run(self._credentials.delete, RATES_API_KEY)
        self._api_key = None
        logger.info("Rate provider API key cleared")
        return removed

    def last_update(self) -> datetime | None:
        with self._db.read() as conn:
            return self._preferences.get_datetime(conn, LAST_RATE_UPDATE_KEY)

    def is_due(self) -> bool:
        last = self.last_update()
        if last is None:
            return True
        start_of_today = datetime.combine(self._clock().date(), time.min)
        return last < start_of_today

    async def refresh_if_due(self, force: bool = False) -> bool:
        if not force and not self.is_due():
            logger.debug("Skipping rate fetch, rates are up to date")
            return False
        if self.is_fetching:
            if not force:
                logger.info("Skipping rate fetch, one is already in progress")
                return False
            logger.info("Forced refresh replaces the fetch in progress")
            self._fetch_task.cancel()
        if not self._api_key:
            logger.warning("Rate provider API key not configured; skipping fetch")
            return False

        task = asyncio.create_task(self._refresh(self._api_key))
        self._fetch_task = task
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                task.cancel()
                raise
            logger.info("Rate fetch was superseded by a forced refresh")
            return False
        finally:
            if self._fetch_task is task:
                self._fetch_task = None

    async def _refresh(self, api_key: str) -> bool:
        try:
            response = await self._client.get(self._settings.rates_url, params={"app_id": api_key})
        except httpx.HTTPError as exc:
            return self._fail(f"Network error: {exc}")
        if response.status_code != 200:
            return self._fail(f"Rate provider returned status {response.status_code}")
        try:
            rates = parse_rates_payload(response.json(), self._settings.pivot_currency)
        except (ValueError, RateProviderUnavailable) as exc:
            return self._fail(f"Malformed rate response: {exc}")

        fetched_at = self._clock()
        await self._db.run(self._store_snapshot, rates, fetched_at)
        self._rates.update_cache(rates)
        self.last_error = None
        logger.info("Stored %d exchange rates fetched at %s", len(rates), fetched_at.isoformat())
        return True

    def _store_snapshot(self, conn: Connection, rates: Mapping[str, Decimal], fetched_at: datetime) -> None:
        self._rates.record_snapshot(conn, rates, fetched_at)
        self._preferences.set_datetime(conn, LAST_RATE_UPDATE_KEY, fetched_at)
        self._rates.prune(conn, retention_days=self._settings.rate_retention_days)

    def _fail(self, message: str) -> bool:
        self.last_error = message
        logger.warning("Rate refresh failed: %s", message)
        return False

    async def run(self) -> None:
        """Sleep until the next local midnight, refresh, and re-arm."""
        while True:
            now = self._clock()
            delay = (next_midnight(now) - now).total_seconds()
            logger.debug("Next rate refresh in %.0f seconds", delay)
            await self._sleep(max(delay, 0.0))
            try:
                await self.refresh_if_due()
            except Exception:
                logger.exception("Scheduled rate refresh failed")

    def start(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self.run(), name="rate-fetcher")

    async def stop(self) -> None:
        for task in (self._loop_task, self._fetch_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._loop_task = None
        self._fetch_task = None
        if self._owns_client:
            await self._client.aclose()

    def status(self) -> FetcherStatus:
        return FetcherStatus(
            last_update=self.last_update(),
            cached_rates=len(self._rates.current_rates),
            is_fetching=self.is_fetching,
            is_due=self.is_due(),
            has_credential=self.has_credential,
            last_error=self.last_error,
        )
