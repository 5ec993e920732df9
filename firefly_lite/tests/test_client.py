import json
import unittest
from decimal import Decimal
from urllib.parse import urlsplit

from firefly_lite.client import BackendError, FireflyClient
from firefly_lite.csv_transactions import ParseError
from firefly_lite.records import BudgetLimit
from firefly_lite.statuses import LastSynced

DEC_15_2024 = 1734220800000


class FakeTransport:
    """Routes ``(method, path)`` to canned ``(status, payload)`` responses."""

    def __init__(self, routes=None) -> None:
        self.routes = dict(routes or {})
        self.calls = []

    def __call__(self, method, url, headers, body):
        parts = urlsplit(url)
        payload = json.loads(body) if body else None
        self.calls.append((method, parts.path, parts.query, headers, payload))
        response = self.routes.get((method, parts.path))
        if response is None:
            return 404, json.dumps({"detail": "Not Found"}).encode("utf-8")
        if callable(response):
            response = response(payload)
        status, data = response
        raw = data.encode("utf-8") if isinstance(data, str) else json.dumps(data).encode("utf-8")
        return status, raw

    def count(self, method, path) -> int:
        return sum(1 for call in self.calls if call[0] == method and call[1] == path)


ACCOUNTS = [{"id": 1, "name": "Checking", "balance": "100.00"}]
CATEGORIES = [
    {"id": 1, "name": "Groceries", "is_expense": True},
    {"id": 2, "name": "Salary", "is_expense": False},
]


class ClientRequestTests(unittest.TestCase):
    def test_sends_user_header_and_parses_decimals(self) -> None:
        transport = FakeTransport({("GET", "/accounts"): (200, ACCOUNTS)})
        client = FireflyClient("http://backend", user_id=7, transport=transport)

        accounts = client.list_accounts()

        self.assertEqual(accounts[0].balance, Decimal("100.00"))
        self.assertEqual(transport.calls[0][3]["x-user-id"], "7")

    def test_reads_are_cached_until_a_write(self) -> None:
        transport = FakeTransport(
            {
                ("GET", "/accounts"): (200, ACCOUNTS),
                ("POST", "/accounts"): (200, {"id": 2, "name": "Savings", "balance": "0"}),
            }
        )
        client = FireflyClient("http://backend", user_id=1, transport=transport)

        client.list_accounts()
        client.list_accounts()
        self.assertEqual(transport.count("GET", "/accounts"), 1)

        self.assertEqual(client.create_account("Savings"), 2)
        client.list_accounts()
        self.assertEqual(transport.count("GET", "/accounts"), 2)

    def test_mutating_a_read_leaves_the_cache_intact(self) -> None:
        transport = FakeTransport({("GET", "/accounts"): (200, ACCOUNTS)})
        client = FireflyClient("http://backend", user_id=1, transport=transport)

        accounts = client.list_accounts()
        accounts.clear()

        self.assertEqual([account.name for account in client.list_accounts()], ["Checking"])
        self.assertEqual(transport.count("GET", "/accounts"), 1)

    def test_backend_error_carries_detail_and_status(self) -> None:
        transport = FakeTransport({("POST", "/tags"): (409, {"detail": "Tag already exists."})})
        client = FireflyClient("http://backend", user_id=1, transport=transport)

        with self.assertRaises(BackendError) as ctx:
            client.create_tag("weekly")

        self.assertEqual(str(ctx.exception), "Tag already exists.")
        self.assertEqual(ctx.exception.status_code, 409)

    def test_failed_write_invalidates_nothing(self) -> None:
        transport = FakeTransport(
            {
                ("GET", "/tags"): (200, [{"id": 1, "name": "weekly"}]),
                ("POST", "/tags"): (409, {"detail": "Tag already exists."}),
            }
        )
        client = FireflyClient("http://backend", user_id=1, transport=transport)
        client.list_tags()

        with self.assertRaises(BackendError):
            client.create_tag("weekly")

        self.assertIn(("tags",), client.cache)

    def test_missing_budget_returns_none(self) -> None:
        client = FireflyClient("http://backend", user_id=1, transport=FakeTransport())

        self.assertIsNone(client.get_budget(12))

    def test_date_range_query_parameters(self) -> None:
        transport = FakeTransport({("GET", "/transactions"): (200, [])})
        client = FireflyClient("http://backend", user_id=1, transport=transport)

        client.list_transactions_by_date_range(10, 20)

        self.assertEqual(transport.calls[0][2], "start=10&end=20")

    def test_bank_connection_status_is_typed(self) -> None:
        connection = {
            "id": 3,
            "name": "Main bank",
            "connection_type": "plaid",
            "status": {"kind": "lastSynced", "timestamp": 99, "error": None},
            "status_label": "Last synced: 99",
            "created_timestamp": 1,
            "last_sync": 99,
            "next_sync_timestamp": 86_400_099,
            "retry_attempts": 0,
        }
        transport = FakeTransport({("POST", "/bank-connections/3/sync"): (200, connection)})
        client = FireflyClient("http://backend", user_id=1, transport=transport)

        result = client.sync_bank_connection(3)

        self.assertEqual(result.status, LastSynced(timestamp=99))

    def test_format_amount_uses_saved_currency(self) -> None:
        transport = FakeTransport({("GET", "/users/me/settings"): (200, {"currency": "EUR"})})
        client = FireflyClient("http://backend", user_id=1, transport=transport)

        self.assertEqual(client.format_amount(Decimal("-5")), "-€5.00")


class SaveBudgetTests(unittest.TestCase):
    def routes(self, budgets):
        return {
            ("GET", "/budgets"): (200, budgets),
            ("GET", "/categories"): (200, CATEGORIES),
            ("GET", "/transactions"): (
                200,
                [
                    {"id": 1, "account_id": 1, "category_id": 1, "amount": "-260.00", "date": DEC_15_2024,
                     "tag_ids": []},
                    {"id": 2, "account_id": 1, "category_id": 2, "amount": "4000.00", "date": DEC_15_2024,
                     "tag_ids": []},
                ],
            ),
            ("POST", "/budgets"): (200, {"id": 9, "month": 202501, "category_limits": [], "carry_over": "0"}),
            ("PUT", "/budgets/5"): (200, {"id": 5, "month": 202501, "category_limits": [], "carry_over": "0"}),
        }

    def test_creates_budget_with_carry_over(self) -> None:
        previous = {"id": 4, "month": 202412, "category_limits": [{"category_id": 1, "limit_amount": "200"}],
                    "carry_over": "0"}
        transport = FakeTransport(self.routes([previous]))
        client = FireflyClient("http://backend", user_id=1, transport=transport)

        budget_id = client.save_budget(202501, [BudgetLimit(1, Decimal("300"))])

        self.assertEqual(budget_id, 9)
        posted = [call for call in transport.calls if call[0] == "POST"][0][4]
        self.assertEqual(Decimal(posted["carry_over"]), Decimal("-60.00"))
        self.assertEqual(posted["category_limits"], [{"category_id": 1, "limit_amount": "300"}])

    def test_updates_existing_budget_for_month(self) -> None:
        existing = {"id": 5, "month": 202501, "category_limits": [], "carry_over": "0"}
        transport = FakeTransport(self.routes([existing]))
        client = FireflyClient("http://backend", user_id=1, transport=transport)

        budget_id = client.save_budget(202501, [])

        self.assertEqual(budget_id, 5)
        self.assertEqual(transport.count("PUT", "/budgets/5"), 1)
        self.assertEqual(transport.count("POST", "/budgets"), 0)

    def test_rejects_invalid_month(self) -> None:
        client = FireflyClient("http://backend", user_id=1, transport=FakeTransport())

        with self.assertRaises(ValueError):
            client.save_budget(202513, [])


class ImportCsvTests(unittest.TestCase):
    def routes(self, bulk_response=None):
        created_tags = []

        def create_tag(payload):
            created_tags.append({"id": 10 + len(created_tags), "name": payload["name"]})
            return 200, created_tags[-1]

        def list_tags(_payload):
            return 200, [{"id": 1, "name": "weekly"}] + created_tags

        def bulk(payload):
            if bulk_response is not None:
                return bulk_response
            return 200, {"transaction_ids": list(range(100, 100 + len(payload["rows"])))}

        return {
            ("GET", "/accounts"): (200, ACCOUNTS),
            ("GET", "/categories"): (200, CATEGORIES),
            ("GET", "/tags"): list_tags,
            ("POST", "/tags"): create_tag,
            ("POST", "/transactions/bulk"): bulk,
        }

    CSV = (
        "date,account,category,amount,tags\n"
        "2025-01-15,Checking,Groceries,42.50,weekly\n"
        "2025-01-16,Savings,Groceries,10,\n"
        "2025-01-17,Checking,Salary,1000,bonus\n"
    )

    def test_valid_rows_are_submitted_and_invalid_rows_reported(self) -> None:
        transport = FakeTransport(self.routes())
        client = FireflyClient("http://backend", user_id=1, transport=transport)

        result = client.import_csv(self.CSV)

        self.assertEqual(result.created_count, 1)
        self.assertEqual(result.failed_count, 2)
        self.assertEqual(
            result.errors,
            ['Row 2: Account "Savings" not found', 'Row 3: Tag "bonus" not found'],
        )
        submitted = [call for call in transport.calls if call[1] == "/transactions/bulk"][0][4]["rows"]
        self.assertEqual(Decimal(submitted[0]["amount"]), Decimal("-42.50"))
        self.assertEqual(submitted[0]["tag_ids"], [1])

    def test_missing_tags_can_be_created(self) -> None:
        transport = FakeTransport(self.routes())
        client = FireflyClient("http://backend", user_id=1, transport=transport)

        result = client.import_csv(self.CSV, create_missing_tags=True)

        self.assertEqual(result.created_count, 2)
        self.assertEqual(result.failed_count, 1)
        self.assertEqual(transport.count("POST", "/tags"), 1)
        submitted = [call for call in transport.calls if call[1] == "/transactions/bulk"][0][4]["rows"]
        self.assertEqual(submitted[1]["tag_ids"], [10])

    def test_backend_failure_counts_every_submitted_row(self) -> None:
        transport = FakeTransport(self.routes(bulk_response=(500, {"detail": "Database unavailable"})))
        client = FireflyClient("http://backend", user_id=1, transport=transport)

        result = client.import_csv(self.CSV)

        self.assertEqual(result.created_count, 0)
        self.assertEqual(result.failed_count, 3)
        self.assertEqual(result.errors[-1], "Import failed: Database unavailable")

    def test_parse_error_propagates(self) -> None:
        client = FireflyClient("http://backend", user_id=1, transport=FakeTransport(self.routes()))

        with self.assertRaises(ParseError):
            client.import_csv("date,account,category,amount\n")

    def test_byte_order_mark_export_imports_cleanly(self) -> None:
        transport = FakeTransport(self.routes())
        client = FireflyClient("http://backend", user_id=1, transport=transport)

        result = client.import_csv("\ufeffdate,account,category,amount\n2025-01-15,Checking,Groceries,5\n")

        self.assertEqual(result.created_count, 1)
        self.assertEqual(result.failed_count, 0)
        self.assertEqual(result.errors, [])

    def test_separator_only_line_counts_as_failed(self) -> None:
        transport = FakeTransport(self.routes())
        client = FireflyClient("http://backend", user_id=1, transport=transport)

        result = client.import_csv("date,account,category,amount\n,,,\n2025-01-15,Checking,Groceries,5\n")

        self.assertEqual(result.created_count, 1)
        self.assertEqual(result.failed_count, 1)
        self.assertEqual(
            result.errors,
            ["Row 1: Date is required, Account name is required, Category name is required, Amount is required"],
        )


class DashboardTests(unittest.TestCase):
    def test_dashboard_from_snapshot(self) -> None:
        transport = FakeTransport(
            {
                ("GET", "/categories"): (200, CATEGORIES),
                ("GET", "/transactions"): (
                    200,
                    [
                        {"id": 1, "account_id": 1, "category_id": 1, "amount": "-50", "date": 5, "tag_ids": []},
                        {"id": 2, "account_id": 1, "category_id": 1, "amount": "-30", "date": 6, "tag_ids": []},
                        {"id": 3, "account_id": 1, "category_id": 2, "amount": "1000", "date": 7, "tag_ids": []},
                    ],
                ),
            }
        )
        client = FireflyClient("http://backend", user_id=1, transport=transport)

        dashboard = client.dashboard()

        self.assertEqual(dashboard.quick_stats.net, Decimal("920"))
        self.assertEqual([share.name for share in dashboard.top_categories], ["Groceries"])
        self.assertEqual(dashboard.category_breakdown[0].percentage, Decimal("100"))


class ReportClientTests(unittest.TestCase):
    def test_run_report_uses_report_window_and_filters(self) -> None:
        report = {
            "id": 4,
            "name": "Income vs. Expenses",
            "report_type": "incomeVsExpenses",
            "start_date": 0,
            "end_date": 10,
            "filters": '{"accountId": 1}',
            "created_at": 1,
            "updated_at": 1,
        }
        transport = FakeTransport(
            {
                ("GET", "/reports/4"): (200, report),
                ("GET", "/categories"): (200, CATEGORIES),
                ("GET", "/transactions"): (
                    200,
                    [
                        {"id": 1, "account_id": 1, "category_id": 1, "amount": "-50", "date": 5, "tag_ids": []},
                        {"id": 2, "account_id": 2, "category_id": 1, "amount": "-30", "date": 6, "tag_ids": []},
                        {"id": 3, "account_id": 1, "category_id": 2, "amount": "1000", "date": 7, "tag_ids": []},
                    ],
                ),
            }
        )
        client = FireflyClient("http://backend", user_id=1, transport=transport)

        result = client.run_report(4)

        self.assertEqual(result.total_income, Decimal("1000"))
        self.assertEqual(result.total_expenses, Decimal("50"))
        self.assertEqual(transport.calls[1][2], "start=0&end=10")

    def test_missing_report_raises(self) -> None:
        client = FireflyClient("http://backend", user_id=1, transport=FakeTransport())

        with self.assertRaises(BackendError):
            client.run_report(99)


if __name__ == "__main__":
    unittest.main()
