import os
import tempfile
import unittest
from decimal import Decimal

_DB_DIR = tempfile.mkdtemp(prefix="firefly-lite-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'api.db')}"

from fastapi.testclient import TestClient  # noqa: E402

from firefly_lite.main import app, engine, metadata  # noqa: E402

JAN_15_2025 = 1736899200000
DEC_15_2024 = 1734220800000
USER = {"x-user-id": "1"}
OTHER_USER = {"x-user-id": "2"}


class ApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        metadata.create_all(engine)
        self.client = TestClient(app)

    def tearDown(self) -> None:
        metadata.drop_all(engine)

    def create(self, path: str, payload: dict, headers: dict = USER) -> dict:
        response = self.client.post(path, json=payload, headers=headers)
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def seed(self) -> None:
        self.account = self.create("/accounts", {"name": "Checking"})
        self.groceries = self.create("/categories", {"name": "Groceries", "is_expense": True})
        self.salary = self.create("/categories", {"name": "Salary", "is_expense": False})
        self.tag = self.create("/tags", {"name": "weekly"})


class IdentityTests(ApiTestCase):
    def test_missing_user_header_is_unauthorized(self) -> None:
        self.assertEqual(self.client.get("/accounts").status_code, 401)

    def test_invalid_user_header_is_rejected(self) -> None:
        self.assertEqual(self.client.get("/accounts", headers={"x-user-id": "abc"}).status_code, 400)

    def test_health(self) -> None:
        self.assertEqual(self.client.get("/health").json(), {"status": "ok"})


class TransactionApiTests(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.seed()

    def test_creating_transaction_updates_balance(self) -> None:
        created = self.create(
            "/transactions",
            {
                "account_id": self.account["id"],
                "category_id": self.groceries["id"],
                "amount": "-42.50",
                "date": JAN_15_2025,
                "tag_ids": [self.tag["id"]],
            },
        )

        accounts = self.client.get("/accounts", headers=USER).json()
        listed = self.client.get("/transactions", headers=USER).json()
        self.assertEqual(Decimal(accounts[0]["balance"]), Decimal("-42.50"))
        self.assertEqual(listed[0]["id"], created["id"])
        self.assertEqual(listed[0]["tag_ids"], [self.tag["id"]])

    def test_other_users_references_are_not_found(self) -> None:
        response = self.client.post(
            "/transactions",
            json={
                "account_id": self.account["id"],
                "category_id": self.groceries["id"],
                "amount": "-1",
                "date": JAN_15_2025,
            },
            headers=OTHER_USER,
        )

        self.assertEqual(response.status_code, 404)

    def test_zero_amount_is_rejected(self) -> None:
        response = self.client.post(
            "/transactions",
            json={"account_id": self.account["id"], "category_id": self.groceries["id"], "amount": "0", "date": 1},
            headers=USER,
        )

        self.assertEqual(response.status_code, 400)

    def test_date_range_filter(self) -> None:
        for date in (JAN_15_2025, DEC_15_2024):
            self.create(
                "/transactions",
                {"account_id": self.account["id"], "category_id": self.salary["id"], "amount": "5", "date": date},
            )

        listed = self.client.get(
            "/transactions", params={"start": JAN_15_2025, "end": JAN_15_2025}, headers=USER
        ).json()

        self.assertEqual([item["date"] for item in listed], [JAN_15_2025])

    def test_bulk_create_is_atomic(self) -> None:
        response = self.client.post(
            "/transactions/bulk",
            json={
                "rows": [
                    {"account_id": self.account["id"], "category_id": self.salary["id"], "amount": "10",
                     "date": JAN_15_2025, "tag_ids": []},
                    {"account_id": 999, "category_id": self.salary["id"], "amount": "10",
                     "date": JAN_15_2025, "tag_ids": []},
                ]
            },
            headers=USER,
        )

        self.assertEqual(response.status_code, 404)
        self.assertEqual(self.client.get("/transactions", headers=USER).json(), [])

    def test_export_csv(self) -> None:
        self.create(
            "/transactions",
            {"account_id": self.account["id"], "category_id": self.groceries["id"], "amount": "-12.30",
             "date": JAN_15_2025, "tag_ids": [self.tag["id"]]},
        )

        response = self.client.get("/transactions/export", headers=USER)

        self.assertEqual(response.status_code, 200)
        lines = response.text.split("\n")
        self.assertEqual(lines[0], "transactionId,date,accountId,accountName,categoryId,categoryName,amount,tags")
        self.assertIn("2025-01-15", lines[1])
        self.assertIn("Groceries", lines[1])

    def test_import_preview(self) -> None:
        content = "date,account,category,amount\n2025-01-15,Checking,Groceries,-42.50\n2025-01-15,Savings,Groceries,1\n"

        response = self.client.post(
            "/transactions/import/preview",
            files={"file": ("transactions.csv", content.encode("utf-8"), "text/csv")},
            headers=USER,
        )

        body = response.json()
        self.assertEqual(response.status_code, 200)
        self.assertEqual((body["valid_count"], body["invalid_count"]), (1, 1))
        self.assertEqual(body["rows"][1]["validation"]["errors"], ['Account "Savings" not found'])

    def test_import_preview_requires_data_rows(self) -> None:
        response = self.client.post(
            "/transactions/import/preview",
            files={"file": ("transactions.csv", b"date,account,category,amount\n", "text/csv")},
            headers=USER,
        )

        self.assertEqual(response.status_code, 400)

    def test_deleting_tag_unlinks_transactions(self) -> None:
        self.create(
            "/transactions",
            {"account_id": self.account["id"], "category_id": self.groceries["id"], "amount": "-1",
             "date": JAN_15_2025, "tag_ids": [self.tag["id"]]},
        )

        self.assertEqual(self.client.delete(f"/tags/{self.tag['id']}", headers=USER).status_code, 200)
        listed = self.client.get("/transactions", headers=USER).json()
        self.assertEqual(listed[0]["tag_ids"], [])

    def test_duplicate_tag_conflicts(self) -> None:
        response = self.client.post("/tags", json={"name": "weekly"}, headers=USER)

        self.assertEqual(response.status_code, 409)


class BudgetApiTests(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.seed()

    def test_budget_crud_and_duplicate_month(self) -> None:
        budget = self.create(
            "/budgets",
            {"month": 202501, "category_limits": [{"category_id": self.groceries["id"], "limit_amount": "200"}]},
        )

        duplicate = self.client.post("/budgets", json={"month": 202501}, headers=USER)
        updated = self.client.put(
            f"/budgets/{budget['id']}", json={"month": 202501, "carry_over": "-15"}, headers=USER
        )
        self.assertEqual(duplicate.status_code, 409)
        self.assertEqual(updated.status_code, 200)
        self.assertEqual(Decimal(updated.json()["carry_over"]), Decimal("-15"))
        self.assertEqual(updated.json()["category_limits"], [])

        self.assertEqual(self.client.delete(f"/budgets/{budget['id']}", headers=USER).status_code, 200)
        self.assertEqual(self.client.get(f"/budgets/{budget['id']}", headers=USER).status_code, 404)

    def test_income_category_limit_is_rejected(self) -> None:
        response = self.client.post(
            "/budgets",
            json={"month": 202501, "category_limits": [{"category_id": self.salary["id"], "limit_amount": "1"}]},
            headers=USER,
        )

        self.assertEqual(response.status_code, 400)

    def test_invalid_month_is_rejected(self) -> None:
        self.assertEqual(self.client.post("/budgets", json={"month": 202513}, headers=USER).status_code, 400)

    def test_summary(self) -> None:
        self.create(
            "/budgets",
            {"month": 202501, "category_limits": [{"category_id": self.groceries["id"], "limit_amount": "200"}]},
        )
        for amount, category in (("-250", self.groceries), ("3000", self.salary)):
            self.create(
                "/transactions",
                {"account_id": self.account["id"], "category_id": category["id"], "amount": amount,
                 "date": JAN_15_2025},
            )

        summary = self.client.get("/budgets/summary", params={"month": 202501}, headers=USER).json()

        self.assertEqual(Decimal(summary["actual_income"]), Decimal("3000"))
        self.assertEqual(Decimal(summary["actual_expenses"]), Decimal("250"))
        status = summary["categories"][0]
        self.assertEqual(Decimal(status["remaining"]), Decimal("-50"))
        self.assertEqual(Decimal(status["percentage_used"]), Decimal("125"))
        self.assertEqual(status["status"], "over")


class ReportApiTests(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.seed()

    def test_report_defaults_name_and_runs(self) -> None:
        self.create(
            "/transactions",
            {"account_id": self.account["id"], "category_id": self.groceries["id"], "amount": "-80",
             "date": JAN_15_2025},
        )
        report = self.create(
            "/reports", {"report_type": "categoryBreakdown", "start_date": 0, "end_date": JAN_15_2025}
        )

        results = self.client.get(f"/reports/{report['id']}/results", headers=USER).json()

        self.assertEqual(report["name"], "Category Breakdown")
        self.assertEqual(results["categories"][0]["name"], "Groceries")
        self.assertEqual(Decimal(results["categories"][0]["percentage"]), Decimal("100"))

    def test_report_validation(self) -> None:
        bad_type = self.client.post(
            "/reports", json={"report_type": "cashFlow", "start_date": 0, "end_date": 1}, headers=USER
        )
        bad_range = self.client.post(
            "/reports", json={"report_type": "incomeVsExpenses", "start_date": 5, "end_date": 1}, headers=USER
        )
        bad_filters = self.client.post(
            "/reports",
            json={"report_type": "incomeVsExpenses", "start_date": 0, "end_date": 1, "filters": "[1]"},
            headers=USER,
        )

        self.assertEqual(bad_type.status_code, 400)
        self.assertEqual(bad_range.status_code, 400)
        self.assertEqual(bad_filters.status_code, 400)

    def test_usage(self) -> None:
        self.create("/reports", {"report_type": "incomeVsExpenses", "start_date": 0, "end_date": 1})

        usage = self.client.get("/reports/usage", headers=USER).json()

        self.assertEqual(usage, {"last_report_type": "incomeVsExpenses", "most_used_type": "incomeVsExpenses"})


class DashboardApiTests(ApiTestCase):
    def test_dashboard(self) -> None:
        self.seed()
        for amount, category in (("-50", self.groceries), ("-30", self.groceries), ("1000", self.salary)):
            self.create(
                "/transactions",
                {"account_id": self.account["id"], "category_id": category["id"], "amount": amount,
                 "date": JAN_15_2025},
            )

        body = self.client.get("/dashboard", headers=USER).json()

        self.assertEqual(Decimal(body["quick_stats"]["net"]), Decimal("920"))
        self.assertEqual(Decimal(body["category_breakdown"][0]["total"]), Decimal("80"))
        self.assertEqual(len(body["top_categories"]), 1)


class BankConnectionApiTests(ApiTestCase):
    def test_sync_and_status_updates(self) -> None:
        connection = self.create("/bank-connections", {"name": "Main bank", "connection_type": "plaid"})
        self.assertEqual(connection["status"]["kind"], "idle")

        failed = self.client.put(
            f"/bank-connections/{connection['id']}/status",
            json={"kind": "syncError", "timestamp": 5, "error": "bad token"},
            headers=USER,
        ).json()
        self.assertEqual(failed["retry_attempts"], 1)
        self.assertEqual(failed["status_label"], "Error: bad token")

        synced = self.client.post(f"/bank-connections/{connection['id']}/sync", headers=USER).json()
        self.assertEqual(synced["status"]["kind"], "lastSynced")
        self.assertEqual(synced["retry_attempts"], 0)
        self.assertEqual(synced["next_sync_timestamp"] - synced["last_sync"], 86_400_000)

    def test_sync_in_progress_conflicts(self) -> None:
        connection = self.create("/bank-connections", {"name": "Main bank", "connection_type": "plaid"})
        self.client.put(
            f"/bank-connections/{connection['id']}/status", json={"kind": "inProgress"}, headers=USER
        )

        response = self.client.post(f"/bank-connections/{connection['id']}/sync", headers=USER)

        self.assertEqual(response.status_code, 409)

    def test_invalid_status_is_rejected(self) -> None:
        connection = self.create("/bank-connections", {"name": "Main bank", "connection_type": "plaid"})

        response = self.client.put(
            f"/bank-connections/{connection['id']}/status", json={"kind": "lastSynced"}, headers=USER
        )

        self.assertEqual(response.status_code, 400)


class InvoiceApiTests(ApiTestCase):
    def invoice_payload(self, **overrides) -> dict:
        payload = {
            "customer_id": 1,
            "customer_name": "Acme Corp",
            "issue_date": JAN_15_2025,
            "due_date": JAN_15_2025 + 86_400_000,
            "status": "Sent",
            "items": [{"name": "Design", "quantity": 2, "unit_price": "150.00"}],
        }
        payload.update(overrides)
        return payload

    def test_totals_and_number_are_computed(self) -> None:
        invoice = self.create("/invoices", self.invoice_payload())

        self.assertEqual(invoice["invoice_number"], f"INV-{invoice['id']:05d}")
        self.assertEqual(Decimal(invoice["subtotal"]), Decimal("300"))
        self.assertEqual(Decimal(invoice["tax"]), Decimal("30"))
        self.assertEqual(Decimal(invoice["total"]), Decimal("330"))
        self.assertEqual(invoice["badge_variant"], "default")

    def test_filters_and_stats(self) -> None:
        self.create("/invoices", self.invoice_payload())
        self.create("/invoices", self.invoice_payload(customer_name="Globex", status="Paid"))
        self.create("/invoices", self.invoice_payload(status="Overdue"))

        paid = self.client.get("/invoices", params={"status": "paid"}, headers=USER).json()
        searched = self.client.get("/invoices", params={"search": "glob"}, headers=USER).json()
        stats = self.client.get("/invoices/stats", headers=USER).json()

        self.assertEqual([item["customer_name"] for item in paid], ["Globex"])
        self.assertEqual(len(searched), 1)
        self.assertEqual((stats["total_invoices"], stats["unpaid_count"], stats["overdue_count"]), (3, 2, 1))
        self.assertEqual(Decimal(stats["total_paid_value"]), Decimal("330"))

    def test_invalid_line_item_is_rejected(self) -> None:
        response = self.client.post(
            "/invoices",
            json=self.invoice_payload(items=[{"name": "Design", "quantity": 0, "unit_price": "1"}]),
            headers=USER,
        )

        self.assertEqual(response.status_code, 400)

    def test_update_and_delete(self) -> None:
        invoice = self.create("/invoices", self.invoice_payload())

        updated = self.client.put(
            f"/invoices/{invoice['id']}", json=self.invoice_payload(status="Paid", items=[]), headers=USER
        ).json()
        self.assertEqual(updated["status"], "Paid")
        self.assertEqual(Decimal(updated["total"]), Decimal("0"))

        self.assertEqual(self.client.delete(f"/invoices/{invoice['id']}", headers=USER).status_code, 200)
        self.assertEqual(self.client.get(f"/invoices/{invoice['id']}", headers=USER).status_code, 404)


class SettingsApiTests(ApiTestCase):
    def test_currency_defaults_and_updates(self) -> None:
        self.assertEqual(self.client.get("/users/me/settings", headers=USER).json(), {"currency": "USD"})

        saved = self.client.put("/users/me/settings", json={"currency": "eur"}, headers=USER)
        self.assertEqual(saved.json(), {"currency": "EUR"})
        self.assertEqual(self.client.get("/users/me/settings", headers=USER).json(), {"currency": "EUR"})

    def test_invalid_currency_is_rejected(self) -> None:
        response = self.client.put("/users/me/settings", json={"currency": "EURO"}, headers=USER)

        self.assertEqual(response.status_code, 400)


if __name__ == "__main__":
    unittest.main()
