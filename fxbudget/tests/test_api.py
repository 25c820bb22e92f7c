import unittest
from datetime import datetime
from decimal import Decimal

import httpx
from fastapi.testclient import TestClient

from fxbudget.config import Settings
from fxbudget.main import create_app
from fxbudget.services import build_services

NOW = datetime(2024, 6, 15, 10, 0)


def rates_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        json={"timestamp": 1718445600, "base": "USD", "rates": {"EUR": 0.9, "GBP": 0.8}},
    )


class ApiTests(unittest.TestCase):
    def setUp(self) -> None:
        settings = Settings(
            database_url="sqlite://",
            bundled_api_key="test-key",
            start_rate_scheduler=False,
        )
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(rates_handler))
        self.services = build_services(settings, http_client=http_client, clock=lambda: NOW)
        self.client = TestClient(create_app(settings, prebuilt=self.services))
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)

    def refresh_rates(self) -> None:
        response = self.client.post("/rates/refresh", params={"force": True})
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["refreshed"])

    def add_category(self, name: str) -> int:
        return self.services.db.run_sync(self.services.categories.add, name).id

    def test_health(self) -> None:
        response = self.client.get("/health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})

    def test_currencies_and_reporting_currency(self) -> None:
        currencies = {item["code"]: item for item in self.client.get("/currencies").json()}

        self.assertEqual(currencies["USD"]["symbol"], "$")
        self.assertEqual(self.client.get("/settings/currency").json()["currency"], "USD")

    def test_refresh_and_rate_lookup(self) -> None:
        self.refresh_rates()

        rate = self.client.get("/rates/eur").json()
        status = self.client.get("/rates/status").json()

        self.assertEqual(Decimal(rate["rate"]), Decimal("0.9"))
        self.assertEqual(rate["source"], "historical")
        self.assertFalse(rate["stale"])
        self.assertEqual(status["cached_rates"], 3)
        self.assertFalse(status["is_due"])
        self.assertTrue(status["has_credential"])

    def test_unknown_rate_is_not_found(self) -> None:
        self.assertEqual(self.client.get("/rates/XYZ").status_code, 404)
        self.assertEqual(self.client.get("/rates/12").status_code, 400)

    def test_historical_backfill(self) -> None:
        response = self.client.post(
            "/rates/historical",
            json={"currency": "jpy", "rate": "150", "effective_date": "2024-01-10"},
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["effective_date"], "2024-01-10")
        self.assertEqual(
            self.client.post(
                "/rates/historical",
                json={"currency": "JPY", "rate": "-1", "effective_date": "2024-01-10"},
            ).status_code,
            400,
        )

    def test_empty_credential_is_rejected(self) -> None:
        response = self.client.put("/rates/credential", json={"api_key": "  "})

        self.assertEqual(response.status_code, 400)

    def test_clearing_credential_stops_refreshes(self) -> None:
        response = self.client.delete("/rates/credential")

        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()["has_credential"])
        self.assertFalse(self.client.post("/rates/refresh", params={"force": True}).json()["refreshed"])
        self.assertFalse(self.client.get("/rates/status").json()["has_credential"])

    def test_convert(self) -> None:
        self.refresh_rates()

        response = self.client.post(
            "/currency/convert",
            json={"amount": "100", "source_currency": "USD", "target_currency": "EUR"},
        )
        missing = self.client.post(
            "/currency/convert",
            json={"amount": "100", "source_currency": "USD", "target_currency": "XYZ"},
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(Decimal(response.json()["amount"]), Decimal("90"))
        self.assertEqual(response.json()["formatted"], "90,00 €")
        self.assertEqual(missing.status_code, 422)

    def test_budget_lifecycle(self) -> None:
        created = self.client.post("/budgets", json={"amount": "1000", "alert_threshold": "800"})
        self.assertEqual(created.status_code, 200)
        budget_id = created.json()["id"]

        self.assertEqual(len(self.client.get("/budgets").json()), 7)
        self.assertEqual(self.client.get("/budgets/current").json()["id"], budget_id)
        self.assertEqual(self.client.post("/budgets", json={"amount": "500"}).status_code, 409)

        september = self.client.get("/budgets/month/2024/9").json()
        updated = self.client.put(f"/budgets/{september['id']}", json={"amount": "1500"})
        self.assertEqual(Decimal(updated.json()["amount"]), Decimal("1500"))
        self.assertEqual(Decimal(self.client.get("/budgets/current").json()["amount"]), Decimal("1000"))

        deleted = self.client.delete(f"/budgets/{september['id']}")
        self.assertEqual(deleted.json(), {"deleted": 4})
        self.assertEqual(len(self.client.get("/budgets").json()), 3)

    def test_budget_validation_errors(self) -> None:
        self.assertEqual(self.client.post("/budgets", json={"amount": "0"}).status_code, 400)
        self.assertEqual(
            self.client.post("/budgets", json={"amount": "100", "alert_threshold": "200"}).status_code,
            400,
        )
        self.assertEqual(self.client.put("/budgets/999", json={"amount": "10"}).status_code, 404)
        self.assertEqual(self.client.get("/budgets/month/2024/13").status_code, 400)
        self.assertEqual(self.client.get("/budgets/current").status_code, 404)

    def test_category_allocations_and_summary(self) -> None:
        food = self.add_category("Food")
        rent = self.add_category("Rent")
        budget_id = self.client.post("/budgets", json={"amount": "1000", "propagate": False}).json()["id"]

        response = self.client.put(
            f"/budgets/{budget_id}/categories",
            json={"allocations": {str(food): "700", str(rent): "500"}},
        )
        categories = self.client.get("/categories").json()
        summary = self.client.get(f"/budgets/{budget_id}/summary").json()

        self.assertEqual(response.status_code, 200)
        self.assertEqual(Decimal(response.json()["amount"]), Decimal("1200"))
        self.assertEqual([item["name"] for item in categories], ["Food", "Rent"])
        self.assertEqual(Decimal(summary["everything_else"]), Decimal("0"))
        self.assertEqual(summary["formatted_percentage"], "0%")
        self.assertTrue(summary["is_current_month"])
        self.assertEqual(
            self.client.put(
                f"/budgets/{budget_id}/categories", json={"allocations": {"999": "10"}}
            ).status_code,
            404,
        )

    def test_expenses_are_converted_on_save(self) -> None:
        self.refresh_rates()

        saved = self.client.post(
            "/expenses",
            json={"amount": "45", "currency": "eur", "date": "2024-06-10T12:00:00", "notes": " lunch "},
        )
        blocked = self.client.post(
            "/expenses",
            json={"amount": "10", "currency": "XYZ", "date": "2024-06-10T12:00:00"},
        )
        listed = self.client.get(
            "/expenses",
            params={"start_date": "2024-06-01T00:00:00", "end_date": "2024-07-01T00:00:00"},
        ).json()

        self.assertEqual(saved.status_code, 200)
        self.assertEqual(saved.json()["currency"], "EUR")
        self.assertEqual(Decimal(saved.json()["converted_amount"]), Decimal("50"))
        self.assertEqual(saved.json()["notes"], "lunch")
        self.assertEqual(blocked.status_code, 422)
        self.assertEqual(len(listed), 1)

    def test_changing_reporting_currency_converts_budgets(self) -> None:
        self.refresh_rates()
        self.client.post("/budgets", json={"amount": "1000"})

        response = self.client.put("/settings/currency", json={"currency": "eur"})
        current = self.client.get("/budgets/current").json()

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["currency"], "EUR")
        self.assertEqual(response.json()["budgets_converted"], 7)
        self.assertEqual(current["currency"], "EUR")
        self.assertEqual(Decimal(current["amount"]), Decimal("900"))
        self.assertEqual(
            self.client.put("/settings/currency", json={"currency": "XYZ"}).status_code,
            400,
        )


if __name__ == "__main__":
    unittest.main()
