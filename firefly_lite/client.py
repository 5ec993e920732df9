"""HTTP client for the Firefly Lite backend service.

``FireflyClient`` exposes one method per backend operation, keeps read
results in a :class:`~firefly_lite.query_cache.QueryCache` and invalidates
the affected keys after every successful write. The multi-step workflows
(budget upsert with carry-over, CSV import, dashboard) are built on top of
those methods and the pure aggregation modules.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from firefly_lite.aggregation import (
    CategoryShare,
    IncomeVsExpenses,
    QuickStats,
    ReportUsage,
    category_breakdown,
    filter_by_window,
    quick_stats,
    report_usage,
    run_report,
    top_categories,
)
from firefly_lite.budget_engine import (
    BudgetSummary,
    CategoryBudgetStatus,
    compute_carry_over,
    find_budget_for_month,
    split_month_key,
)
from firefly_lite.csv_transactions import (
    CsvTransactionRow,
    ImportResult,
    parse_transactions_csv,
    resolve_row,
    validate_row,
)
from firefly_lite.formatting import format_currency, resolve_currency
from firefly_lite.invoice_math import Invoice, InvoiceLineItem, InvoiceStats
from firefly_lite.logging_setup import get_logger
from firefly_lite.query_cache import CacheKey, QueryCache
from firefly_lite.records import Account, Budget, BudgetLimit, Category, Report, Tag, Transaction
from firefly_lite.statuses import BankConnectionStatus, parse_invoice_status, status_from_record, status_to_record

DEFAULT_BASE_URL = os.getenv("FIREFLY_API_URL", "http://localhost:8000")
DEFAULT_TIMEOUT = 10

Transport = Callable[[str, str, Mapping[str, str], Optional[bytes]], tuple[int, bytes]]

_logger = get_logger("firefly_lite.client")


class BackendError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class BankConnection:
    id: int
    name: str
    connection_type: str
    status: BankConnectionStatus
    status_label: str
    created_timestamp: int
    last_sync: Optional[int]
    next_sync_timestamp: Optional[int]
    retry_attempts: int


@dataclass(frozen=True)
class Dashboard:
    quick_stats: QuickStats
    category_breakdown: list[CategoryShare]
    top_categories: list[CategoryShare]


def urllib_transport(
    method: str,
    url: str,
    headers: Mapping[str, str],
    body: Optional[bytes],
    timeout: float = DEFAULT_TIMEOUT,
) -> tuple[int, bytes]:
    request = Request(url, data=body, headers=dict(headers), method=method)
    try:
        with urlopen(request, timeout=timeout) as response:
            return response.status, response.read()
    except HTTPError as exc:
        return exc.code, exc.read()
    except (URLError, TimeoutError) as exc:
        raise BackendError("Backend service unavailable") from exc


class FireflyClient:
    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        user_id: int = 1,
        transport: Optional[Transport] = None,
        cache: Optional[QueryCache] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self._transport = transport or urllib_transport
        self.cache = cache if cache is not None else QueryCache()

    def _request(
        self,
        method: str,
        path: str,
        payload: Any = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        query = {key: value for key, value in (params or {}).items() if value is not None}
        if query:
            url = f"{url}?{urlencode(query)}"
        headers = {"x-user-id": str(self.user_id), "Accept": "application/json"}
        body = None
        if payload is not None:
            headers["Content-Type"] = "application/json"
            body = json.dumps(payload, default=str).encode("utf-8")

        status, raw = self._transport(method, url, headers, body)
        text = raw.decode("utf-8") if raw else ""
        if status >= 400:
            detail = _error_detail(text) or f"Request failed with status {status}"
            _logger.warning("%s %s failed with %s: %s", method, path, status, detail)
            raise BackendError(detail, status_code=status)
        if not text:
            return None
        if text.lstrip().startswith(("{", "[")):
            return json.loads(text)
        return text

    def _cached(self, key: CacheKey, fetch: Callable[[], Any]) -> Any:
        # Callers get their own list so the cached copy stays intact.
        value = self.cache.get_or_fetch(key, fetch)
        if isinstance(value, list):
            return list(value)
        if isinstance(value, BudgetSummary):
            return replace(value, categories=list(value.categories))
        return value

    def _write(self, operation: str, method: str, path: str, payload: Any = None, **ids: Any) -> Any:
        result = self._request(method, path, payload)
        self.cache.on_write(operation, **ids)
        return result

    # Accounts and categories

    def list_accounts(self) -> list[Account]:
        return self._cached(
            ("accounts",),
            lambda: [_account(item) for item in self._request("GET", "/accounts")],
        )

    def create_account(self, name: str) -> int:
        return self._write("create_account", "POST", "/accounts", {"name": name})["id"]

    def list_categories(self) -> list[Category]:
        return self._cached(
            ("categories",),
            lambda: [_category(item) for item in self._request("GET", "/categories")],
        )

    def create_category(self, name: str, is_expense: bool) -> int:
        payload = {"name": name, "is_expense": is_expense}
        return self._write("create_category", "POST", "/categories", payload)["id"]

    # Transactions

    def list_transactions(self) -> list[Transaction]:
        return self._cached(
            ("transactions",),
            lambda: [_transaction(item) for item in self._request("GET", "/transactions")],
        )

    def list_transactions_by_date_range(self, start: int, end: int) -> list[Transaction]:
        return self._cached(
            ("transactions", "dateRange", start, end),
            lambda: [
                _transaction(item)
                for item in self._request("GET", "/transactions", params={"start": start, "end": end})
            ],
        )

    def create_transaction(
        self,
        account_id: int,
        category_id: int,
        amount: Decimal,
        date: int,
        tag_ids: Iterable[int] = (),
    ) -> int:
        payload = {
            "account_id": account_id,
            "category_id": category_id,
            "amount": str(amount),
            "date": date,
            "tag_ids": list(tag_ids),
        }
        return self._write("create_transaction", "POST", "/transactions", payload)["id"]

    def create_transactions_from_rows(self, rows: Sequence[CsvTransactionRow]) -> list[int]:
        payload = {"rows": [row.model_dump(mode="json") for row in rows]}
        result = self._write("create_transactions_from_rows", "POST", "/transactions/bulk", payload)
        return result["transaction_ids"]

    def export_transactions(self, start: Optional[int] = None, end: Optional[int] = None) -> str:
        return self._request("GET", "/transactions/export", params={"start": start, "end": end}) or ""

    # Tags

    def list_tags(self) -> list[Tag]:
        return self._cached(
            ("tags",),
            lambda: [Tag(id=item["id"], name=item["name"]) for item in self._request("GET", "/tags")],
        )

    def create_tag(self, name: str) -> int:
        return self._write("create_tag", "POST", "/tags", {"name": name})["id"]

    def delete_tag(self, tag_id: int) -> None:
        self._write("delete_tag", "DELETE", f"/tags/{tag_id}")

    # Budgets

    def list_budgets(self) -> list[Budget]:
        return self._cached(
            ("budgets",),
            lambda: [_budget(item) for item in self._request("GET", "/budgets")],
        )

    def get_budget(self, budget_id: int) -> Optional[Budget]:
        def fetch() -> Optional[Budget]:
            try:
                return _budget(self._request("GET", f"/budgets/{budget_id}"))
            except BackendError as exc:
                if exc.status_code == 404:
                    return None
                raise

        return self._cached(("budgets", budget_id), fetch)

    def create_budget(self, month: int, limits: Sequence[BudgetLimit], carry_over: Decimal) -> int:
        payload = _budget_payload(month, limits, carry_over)
        return self._write("create_budget", "POST", "/budgets", payload)["id"]

    def update_budget(
        self,
        budget_id: int,
        month: int,
        limits: Sequence[BudgetLimit],
        carry_over: Decimal,
    ) -> None:
        payload = _budget_payload(month, limits, carry_over)
        self._write("update_budget", "PUT", f"/budgets/{budget_id}", payload, budget_id=budget_id)

    def delete_budget(self, budget_id: int) -> None:
        self._write("delete_budget", "DELETE", f"/budgets/{budget_id}")

    def get_budget_summary(self, month: int) -> BudgetSummary:
        return self._cached(
            ("budget_summary", month),
            lambda: _budget_summary(self._request("GET", "/budgets/summary", params={"month": month})),
        )

    # Reports

    def list_reports(self) -> list[Report]:
        return self._cached(
            ("reports",),
            lambda: [_report(item) for item in self._request("GET", "/reports")],
        )

    def get_report(self, report_id: int) -> Optional[Report]:
        def fetch() -> Optional[Report]:
            try:
                return _report(self._request("GET", f"/reports/{report_id}"))
            except BackendError as exc:
                if exc.status_code == 404:
                    return None
                raise

        return self._cached(("reports", report_id), fetch)

    def create_report(
        self,
        report_type: str,
        start_date: int,
        end_date: int,
        filters: Optional[str] = None,
        name: Optional[str] = None,
    ) -> int:
        payload = _report_payload(report_type, start_date, end_date, filters, name)
        return self._write("create_report", "POST", "/reports", payload)["id"]

    def update_report(
        self,
        report_id: int,
        report_type: str,
        start_date: int,
        end_date: int,
        filters: Optional[str] = None,
        name: Optional[str] = None,
    ) -> None:
        payload = _report_payload(report_type, start_date, end_date, filters, name)
        self._write("update_report", "PUT", f"/reports/{report_id}", payload, report_id=report_id)

    def delete_report(self, report_id: int) -> None:
        self._write("delete_report", "DELETE", f"/reports/{report_id}")

    def run_report(self, report_id: int) -> list[CategoryShare] | IncomeVsExpenses:
        report = self.get_report(report_id)
        if report is None:
            raise BackendError("Report not found.", status_code=404)
        transactions = self.list_transactions_by_date_range(report.start_date, report.end_date)
        return run_report(report, transactions, self.list_categories())

    def report_usage(self) -> ReportUsage:
        return report_usage(self.list_reports())

    # Bank connections

    def list_bank_connections(self) -> list[BankConnection]:
        return self._cached(
            ("bank_connections",),
            lambda: [_bank_connection(item) for item in self._request("GET", "/bank-connections")],
        )

    def create_bank_connection(self, name: str, connection_type: str) -> int:
        payload = {"name": name, "connection_type": connection_type}
        return self._write("create_bank_connection", "POST", "/bank-connections", payload)["id"]

    def delete_bank_connection(self, connection_id: int) -> None:
        self._write("delete_bank_connection", "DELETE", f"/bank-connections/{connection_id}")

    def sync_bank_connection(self, connection_id: int) -> BankConnection:
        result = self._write("sync_bank_connection", "POST", f"/bank-connections/{connection_id}/sync")
        return _bank_connection(result)

    def update_bank_connection_status(self, connection_id: int, status: BankConnectionStatus) -> BankConnection:
        record = status_to_record(status)
        payload = {
            "kind": record["status_kind"],
            "timestamp": record["status_timestamp"],
            "error": record["status_error"],
        }
        result = self._write(
            "update_bank_connection_status",
            "PUT",
            f"/bank-connections/{connection_id}/status",
            payload,
        )
        return _bank_connection(result)

    # Invoices

    def list_invoices(
        self,
        status: Optional[str] = None,
        customer_id: Optional[int] = None,
        start: Optional[int] = None,
        end: Optional[int] = None,
        search: Optional[str] = None,
    ) -> list[Invoice]:
        params = {"status": status, "customer_id": customer_id, "start": start, "end": end, "search": search}
        return self._cached(
            ("invoices", "list", status, customer_id, start, end, search),
            lambda: [_invoice(item) for item in self._request("GET", "/invoices", params=params)],
        )

    def get_invoice(self, invoice_id: int) -> Optional[Invoice]:
        def fetch() -> Optional[Invoice]:
            try:
                return _invoice(self._request("GET", f"/invoices/{invoice_id}"))
            except BackendError as exc:
                if exc.status_code == 404:
                    return None
                raise

        return self._cached(("invoices", invoice_id), fetch)

    def get_invoice_stats(self) -> InvoiceStats:
        def fetch() -> InvoiceStats:
            payload = self._request("GET", "/invoices/stats")
            return InvoiceStats(
                total_invoices=payload["total_invoices"],
                unpaid_count=payload["unpaid_count"],
                overdue_count=payload["overdue_count"],
                total_paid_value=_decimal(payload["total_paid_value"]),
            )

        return self._cached(("invoices", "stats"), fetch)

    def create_invoice(
        self,
        customer_name: str,
        issue_date: int,
        due_date: int,
        items: Sequence[InvoiceLineItem],
        status: str = "Draft",
        customer_id: int = 0,
        notes: str = "",
    ) -> int:
        payload = _invoice_payload(customer_name, issue_date, due_date, items, status, customer_id, notes)
        return self._write("create_invoice", "POST", "/invoices", payload)["id"]

    def update_invoice(
        self,
        invoice_id: int,
        customer_name: str,
        issue_date: int,
        due_date: int,
        items: Sequence[InvoiceLineItem],
        status: str = "Draft",
        customer_id: int = 0,
        notes: str = "",
    ) -> None:
        payload = _invoice_payload(customer_name, issue_date, due_date, items, status, customer_id, notes)
        self._write("update_invoice", "PUT", f"/invoices/{invoice_id}", payload, invoice_id=invoice_id)

    def delete_invoice(self, invoice_id: int) -> None:
        self._write("delete_invoice", "DELETE", f"/invoices/{invoice_id}")

    # Settings

    def get_currency(self) -> str:
        return self._cached(
            ("settings",),
            lambda: resolve_currency(self._request("GET", "/users/me/settings").get("currency")),
        )

    def save_settings(self, currency: str) -> str:
        result = self._write("save_settings", "PUT", "/users/me/settings", {"currency": currency})
        return result["currency"]

    # Workflows

    def save_budget(self, month: int, limits: Sequence[BudgetLimit]) -> int:
        """Create or update the budget for ``month`` with a fresh carry-over.

        Carry-over is computed from the previous month's budget and spend and
        stored with the budget; it is not recomputed on later reads.
        """
        split_month_key(month)
        budgets = self.list_budgets()
        carry_over = compute_carry_over(budgets, self.list_transactions(), self.list_categories(), month)
        existing = find_budget_for_month(budgets, month)
        if existing is not None:
            self.update_budget(existing.id, month, limits, carry_over)
            _logger.info("Updated budget %s for %s (carry-over %s)", existing.id, month, carry_over)
            return existing.id
        budget_id = self.create_budget(month, limits, carry_over)
        _logger.info("Created budget %s for %s (carry-over %s)", budget_id, month, carry_over)
        return budget_id

    def import_csv(self, text: str, create_missing_tags: bool = False) -> ImportResult:
        """Validate every row of a CSV export and submit the valid rows in one call.

        ``ParseError`` propagates when the file itself is unusable. Invalid rows
        never block the rest of the file; each one is reported as
        ``"Row N: ..."`` with ``N`` counting data rows from 1.
        """
        rows = parse_transactions_csv(text)
        accounts = self.list_accounts()
        categories = self.list_categories()
        tags = self.list_tags()

        errors: list[str] = []
        valid: list[tuple[int, Any]] = []
        missing_tags: list[str] = []
        for index, row in enumerate(rows, start=1):
            validation = validate_row(row, accounts, categories, tags, allow_unknown_tags=create_missing_tags)
            if not validation.is_valid:
                errors.append(f"Row {index}: {', '.join(validation.errors)}")
                continue
            valid.append((index, row))
            for tag_name in validation.missing_tags:
                if tag_name.lower() not in (name.lower() for name in missing_tags):
                    missing_tags.append(tag_name)

        if missing_tags:
            for tag_name in missing_tags:
                self.create_tag(tag_name)
            tags = self.list_tags()

        resolved: list[CsvTransactionRow] = []
        for index, row in valid:
            try:
                resolved.append(resolve_row(row, accounts, categories, tags))
            except ValueError as exc:
                errors.append(f"Row {index}: {exc}")

        failed_count = len(rows) - len(resolved)
        created_count = 0
        if resolved:
            try:
                created_count = len(self.create_transactions_from_rows(resolved))
            except BackendError as exc:
                failed_count += len(resolved)
                errors.append(f"Import failed: {exc}")

        _logger.info("CSV import: %d created, %d failed", created_count, failed_count)
        return ImportResult(created_count=created_count, failed_count=failed_count, errors=errors)

    def dashboard(self, start: Optional[int] = None, end: Optional[int] = None) -> Dashboard:
        if start is not None and end is not None:
            transactions = self.list_transactions_by_date_range(start, end)
        else:
            transactions = filter_by_window(self.list_transactions(), start, end)
        categories = self.list_categories()
        return Dashboard(
            quick_stats=quick_stats(transactions),
            category_breakdown=category_breakdown(transactions, categories),
            top_categories=top_categories(transactions, categories),
        )

    def format_amount(self, amount: Decimal | int | float | str) -> str:
        return format_currency(amount, preferred_currency=self.get_currency())


def _error_detail(text: str) -> str:
    if not text:
        return ""
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return text
    if isinstance(payload, dict) and isinstance(payload.get("detail"), str):
        return payload["detail"]
    if isinstance(payload, dict) and "detail" in payload:
        return json.dumps(payload["detail"])
    return text


def _decimal(value: Any) -> Decimal:
    return Decimal(str(value))


def _account(item: Mapping[str, Any]) -> Account:
    return Account(id=item["id"], name=item["name"], balance=_decimal(item.get("balance", "0")))


def _category(item: Mapping[str, Any]) -> Category:
    return Category(id=item["id"], name=item["name"], is_expense=bool(item["is_expense"]))


def _transaction(item: Mapping[str, Any]) -> Transaction:
    return Transaction(
        id=item["id"],
        account_id=item["account_id"],
        category_id=item["category_id"],
        amount=_decimal(item["amount"]),
        date=item["date"],
        tag_ids=frozenset(item.get("tag_ids") or ()),
    )


def _budget(item: Mapping[str, Any]) -> Budget:
    return Budget(
        id=item["id"],
        month=item["month"],
        category_limits=tuple(
            BudgetLimit(category_id=limit["category_id"], limit_amount=_decimal(limit["limit_amount"]))
            for limit in item.get("category_limits") or ()
        ),
        carry_over=_decimal(item.get("carry_over", "0")),
    )


def _budget_payload(month: int, limits: Sequence[BudgetLimit], carry_over: Decimal) -> dict[str, Any]:
    return {
        "month": month,
        "category_limits": [
            {"category_id": limit.category_id, "limit_amount": str(limit.limit_amount)} for limit in limits
        ],
        "carry_over": str(carry_over),
    }


def _budget_summary(item: Mapping[str, Any]) -> BudgetSummary:
    return BudgetSummary(
        month=item["month"],
        carry_over=_decimal(item["carry_over"]),
        total_expense_budget=_decimal(item["total_expense_budget"]),
        actual_income=_decimal(item["actual_income"]),
        actual_expenses=_decimal(item["actual_expenses"]),
        remaining_expense_budget=_decimal(item["remaining_expense_budget"]),
        categories=[
            CategoryBudgetStatus(
                category_id=status["category_id"],
                limit_amount=_decimal(status["limit_amount"]),
                spent=_decimal(status["spent"]),
                remaining=_decimal(status["remaining"]),
                percentage_used=(
                    None if status.get("percentage_used") is None else _decimal(status["percentage_used"])
                ),
                status=status["status"],
            )
            for status in item.get("categories") or ()
        ],
    )


def _report(item: Mapping[str, Any]) -> Report:
    return Report(
        id=item["id"],
        name=item["name"],
        report_type=item["report_type"],
        start_date=item["start_date"],
        end_date=item["end_date"],
        filters=item.get("filters"),
        created_at=item.get("created_at", 0),
        updated_at=item.get("updated_at", 0),
    )


def _report_payload(
    report_type: str,
    start_date: int,
    end_date: int,
    filters: Optional[str],
    name: Optional[str],
) -> dict[str, Any]:
    return {
        "report_type": report_type,
        "start_date": start_date,
        "end_date": end_date,
        "filters": filters,
        "name": name,
    }


def _bank_connection(item: Mapping[str, Any]) -> BankConnection:
    status = item["status"]
    return BankConnection(
        id=item["id"],
        name=item["name"],
        connection_type=item["connection_type"],
        status=status_from_record(status["kind"], status.get("timestamp"), status.get("error")),
        status_label=item.get("status_label", ""),
        created_timestamp=item["created_timestamp"],
        last_sync=item.get("last_sync"),
        next_sync_timestamp=item.get("next_sync_timestamp"),
        retry_attempts=item.get("retry_attempts", 0),
    )


def _invoice(item: Mapping[str, Any]) -> Invoice:
    return Invoice(
        id=item["id"],
        invoice_number=item["invoice_number"],
        customer_id=item["customer_id"],
        customer_name=item["customer_name"],
        issue_date=item["issue_date"],
        due_date=item["due_date"],
        status=parse_invoice_status(item["status"]),
        subtotal=_decimal(item["subtotal"]),
        tax=_decimal(item["tax"]),
        total=_decimal(item["total"]),
        notes=item.get("notes", ""),
        items=tuple(
            InvoiceLineItem(name=line["name"], quantity=line["quantity"], unit_price=_decimal(line["unit_price"]))
            for line in item.get("items") or ()
        ),
    )


def _invoice_payload(
    customer_name: str,
    issue_date: int,
    due_date: int,
    items: Sequence[InvoiceLineItem],
    status: str,
    customer_id: int,
    notes: str,
) -> dict[str, Any]:
    return {
        "customer_id": customer_id,
        "customer_name": customer_name,
        "issue_date": issue_date,
        "due_date": due_date,
        "status": status,
        "notes": notes,
        "items": [
            {"name": item.name, "quantity": item.quantity, "unit_price": str(item.unit_price)} for item in items
        ],
    }
