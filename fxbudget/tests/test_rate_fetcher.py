import asyncio
import unittest
from datetime import date, datetime
from decimal import Decimal

import httpx

from fxbudget.config import Settings
from fxbudget.db import Database
from fxbudget.errors import RateProviderUnavailable
from fxbudget.preferences import RATES_API_KEY, CredentialStore
from fxbudget.rate_fetcher import RateFetcher, next_midnight, parse_rates_payload
from fxbudget.rate_store import RateStore

RATES_BODY = {
    "timestamp": 1718409600,
    "base": "USD",
    "rates": {"EUR": 0.9, "GBP": 0.8},
}


class StopLoop(Exception):
    pass


class ParseRatesPayloadTests(unittest.TestCase):
    def test_adds_pivot_and_normalizes_codes(self) -> None:
        rates = parse_rates_payload({"base": "USD", "rates": {"eur": 0.9}}, "USD")

        self.assertEqual(rates, {"EUR": Decimal("0.9"), "USD": Decimal("1")})

    def test_rejects_non_object_body(self) -> None:
        with self.assertRaises(RateProviderUnavailable):
            parse_rates_payload(["EUR", 0.9], "USD")

    def test_rejects_missing_rates(self) -> None:
        with self.assertRaises(RateProviderUnavailable):
            parse_rates_payload({"base": "USD"}, "USD")

    def test_rejects_other_base(self) -> None:
        with self.assertRaises(RateProviderUnavailable):
            parse_rates_payload({"base": "EUR", "rates": {"USD": 1.1}}, "USD")

    def test_rejects_invalid_entries(self) -> None:
        for bad in (-1, 0, "abc", None, True):
            with self.subTest(value=bad), self.assertRaises(RateProviderUnavailable):
                parse_rates_payload({"rates": {"EUR": bad}}, "USD")

    def test_next_midnight(self) -> None:
        self.assertEqual(next_midnight(datetime(2024, 6, 15, 9, 30)), datetime(2024, 6, 16))


class RateFetcherTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.now = datetime(2024, 6, 15, 9, 0)
        self.requests: list[httpx.Request] = []
        self.responder = lambda request: httpx.Response(200, json=RATES_BODY)
        self.db = Database("sqlite://")
        self.db.create_all()
        self.store = RateStore(self.db, clock=lambda: self.now)
        self.client = httpx.AsyncClient(transport=httpx.MockTransport(self._handle))
        self.fetcher = self.make_fetcher(Settings(database_url="sqlite://"))

    async def asyncTearDown(self) -> None:
        await self.fetcher.stop()
        await self.client.aclose()
        self.db.close()

    async def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responder(request)
        if asyncio.iscoroutine(response):
            response = await response
        return response

    def make_fetcher(self, settings: Settings, sleep=asyncio.sleep) -> RateFetcher:
        return RateFetcher(
            self.db,
            self.store,
            settings,
            client=self.client,
            clock=lambda: self.now,
            sleep=sleep,
        )

    async def configure_key(self, key: str = "secret") -> None:
        self.db.run_sync(CredentialStore().store, RATES_API_KEY, key)
        await self.fetcher.resolve_credential()

    async def test_refresh_stores_snapshot_and_updates_cache(self) -> None:
        await self.configure_key()

        refreshed = await self.fetcher.refresh_if_due()

        self.assertTrue(refreshed)
        self.assertEqual(self.requests[0].url.params["app_id"], "secret")
        self.assertEqual(self.store.current_rates["EUR"], Decimal("0.9"))
        self.assertEqual(self.store.current_rates["USD"], Decimal("1"))
        quote = self.store.get_rate("GBP")
        self.assertEqual(quote.rate, Decimal("0.8"))
        self.assertEqual(quote.effective_date, date(2024, 6, 15))
        self.assertEqual(self.fetcher.last_update(), self.now)
        self.assertIsNone(self.fetcher.last_error)

    async def test_skips_when_already_refreshed_today(self) -> None:
        await self.configure_key()
        await self.fetcher.refresh_if_due()

        refreshed = await self.fetcher.refresh_if_due()

        self.assertFalse(refreshed)
        self.assertEqual(len(self.requests), 1)

        self.now = datetime(2024, 6, 16, 0, 1)
        self.assertTrue(self.fetcher.is_due())
        self.assertTrue(await self.fetcher.refresh_if_due())
        self.assertEqual(len(self.requests), 2)

    async def test_http_error_keeps_last_update(self) -> None:
        await self.configure_key()
        self.responder = lambda request: httpx.Response(500, json={"error": True})

        refreshed = await self.fetcher.refresh_if_due()

        self.assertFalse(refreshed)
        self.assertIn("500", self.fetcher.last_error)
        self.assertIsNone(self.fetcher.last_update())
        self.assertEqual(dict(self.store.current_rates), {})
        self.assertTrue(self.fetcher.is_due())

    async def test_malformed_body_is_rejected_whole(self) -> None:
        await self.configure_key()
        self.responder = lambda request: httpx.Response(
            200, json={"base": "USD", "rates": {"EUR": 0.9, "GBP": "abc"}}
        )

        refreshed = await self.fetcher.refresh_if_due()

        self.assertFalse(refreshed)
        self.assertTrue(self.fetcher.last_error.startswith("Malformed"))
        with self.db.read() as conn:
            self.assertEqual(self.store.load_cached_rates(conn), {})

    async def test_network_error_is_reported(self) -> None:
        await self.configure_key()

        def fail(request):
            raise httpx.ConnectError("offline", request=request)

        self.responder = fail

        self.assertFalse(await self.fetcher.refresh_if_due())
        self.assertTrue(self.fetcher.last_error.startswith("Network error"))

    async def test_no_credential_skips_fetch(self) -> None:
        self.assertIsNone(await self.fetcher.resolve_credential())

        refreshed = await self.fetcher.refresh_if_due(force=True)

        self.assertFalse(refreshed)
        self.assertEqual(self.requests, [])
        self.assertFalse(self.fetcher.has_credential)

    async def test_bundled_key_is_saved_to_secure_storage(self) -> None:
        self.fetcher = self.make_fetcher(Settings(database_url="sqlite://", bundled_api_key="bundled"))

        key = await self.fetcher.resolve_credential()

        self.assertEqual(key, "bundled")
        with self.db.read() as conn:
            self.assertEqual(CredentialStore().load(conn, RATES_API_KEY), "bundled")

    async def test_stored_key_wins_over_bundled(self) -> None:
        self.db.run_sync(CredentialStore().store, RATES_API_KEY, "stored")
        self.fetcher = self.make_fetcher(Settings(database_url="sqlite://", bundled_api_key="bundled"))

        self.assertEqual(await self.fetcher.resolve_credential(), "stored")

    async def test_configure_api_key_forces_refresh(self) -> None:
        await self.configure_key()
        await self.fetcher.refresh_if_due()

        refreshed = await self.fetcher.configure_api_key("  fresh  ")

        self.assertTrue(refreshed)
        self.assertEqual(self.requests[-1].url.params["app_id"], "fresh")
        with self.db.read() as conn:
            self.assertEqual(CredentialStore().load(conn, RATES_API_KEY), "fresh")

    async def test_configure_api_key_rejects_empty(self) -> None:
        with self.assertRaises(ValueError):
            await self.fetcher.configure_api_key("   ")
        self.assertEqual(self.requests, [])

    async def test_clear_api_key_disables_fetching(self) -> None:
        await self.configure_key()

        removed = await self.fetcher.clear_api_key()

        self.assertTrue(removed)
        self.assertFalse(self.fetcher.has_credential)
        self.assertFalse(await self.fetcher.refresh_if_due(force=True))
        self.assertEqual(self.requests, [])
        with self.db.read() as conn:
            self.assertIsNone(CredentialStore().load(conn, RATES_API_KEY))
        self.assertFalse(await self.fetcher.clear_api_key())

    async def test_concurrent_request_is_dropped(self) -> None:
        await self.configure_key()
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow(request):
            started.set()
            await release.wait()
            return httpx.Response(200, json=RATES_BODY)

        self.responder = slow
        first = asyncio.create_task(self.fetcher.refresh_if_due())
        await started.wait()

        self.assertTrue(self.fetcher.is_fetching)
        self.assertFalse(await self.fetcher.refresh_if_due())

        release.set()
        self.assertTrue(await first)
        self.assertEqual(len(self.requests), 1)

    async def test_forced_refresh_supersedes_running_fetch(self) -> None:
        await self.configure_key()
        started = asyncio.Event()
        never = asyncio.Event()

        async def hang(request):
            started.set()
            await never.wait()
            return httpx.Response(200, json=RATES_BODY)

        self.responder = hang
        first = asyncio.create_task(self.fetcher.refresh_if_due())
        await started.wait()
        self.responder = lambda request: httpx.Response(200, json=RATES_BODY)

        forced = await self.fetcher.refresh_if_due(force=True)

        self.assertTrue(forced)
        self.assertFalse(await first)
        self.assertFalse(self.fetcher.is_fetching)
        self.assertEqual(self.store.current_rates["EUR"], Decimal("0.9"))

    async def test_run_sleeps_until_midnight_then_refreshes(self) -> None:
        delays: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            delays.append(seconds)
            if len(delays) > 1:
                raise StopLoop()

        self.fetcher = self.make_fetcher(Settings(database_url="sqlite://"), sleep=fake_sleep)
        await self.configure_key()

        with self.assertRaises(StopLoop):
            await self.fetcher.run()

        self.assertEqual(delays[0], 15 * 3600)
        self.assertEqual(len(self.requests), 1)

    async def test_status_reports_state(self) -> None:
        await self.configure_key()
        await self.fetcher.refresh_if_due()

        status = self.fetcher.status()

        self.assertEqual(status.last_update, self.now)
        self.assertEqual(status.cached_rates, 3)
        self.assertFalse(status.is_due)
        self.assertTrue(status.has_credential)
        self.assertFalse(status.is_fetching)


if __name__ == "__main__":
    unittest.main()
