import json
import os
import time
from decimal import Decimal

from fastapi import FastAPI, File, Header, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel
from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError

from firefly_lite.aggregation import (
    CategoryShare,
    IncomeVsExpenses,
    category_breakdown,
    filter_by_window,
    quick_stats,
    report_usage,
    run_report,
    top_categories,
)
from firefly_lite.budget_engine import (
    CategoryBudgetStatus,
    find_budget_for_month,
    split_month_key,
    summarize_month,
    validate_limits,
)
from firefly_lite.csv_transactions import (
    CsvRow,
    CsvTransactionRow,
    ParseError,
    RowValidation,
    export_transactions_csv,
    parse_transactions_csv,
    validate_row,
)
from firefly_lite.formatting import normalize_currency, resolve_currency
from firefly_lite.invoice_math import (
    Invoice,
    InvoiceLineItem,
    calculate_invoice_totals,
    filter_invoices,
    format_invoice_number,
    invoice_stats,
    line_item_total,
)
from firefly_lite.logging_setup import configure_logging, get_logger
from firefly_lite.records import (
    REPORT_TYPE_LABELS,
    Account,
    Budget,
    BudgetLimit,
    Category,
    Report,
    Tag,
    Transaction,
)
from firefly_lite.statuses import (
    InProgress,
    LastSynced,
    SyncError,
    describe_status,
    parse_invoice_status,
    status_from_record,
    status_to_record,
)

app = FastAPI(title="Firefly Lite")

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./firefly_lite.db")
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)
metadata = MetaData()

SYSTEM_DEFAULT_CURRENCY = resolve_currency(os.getenv("DEFAULT_CURRENCY", "USD"))
SYNC_INTERVAL_MILLIS = 24 * 60 * 60 * 1000

_logger = get_logger("firefly_lite.main")

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("balance", Numeric(14, 2), nullable=False, default=Decimal("0")),
    Column("created_at", BigInteger, nullable=False),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("is_expense", Boolean, nullable=False),
    Column("created_at", BigInteger, nullable=False),
    UniqueConstraint("user_id", "name", name="uq_categories_user_name"),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id"), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("date", BigInteger, nullable=False),
)

tags = Table(
    "tags",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("name", String(255), nullable=False),
    UniqueConstraint("user_id", "name", name="uq_tags_user_name"),
)

transaction_tags = Table(
    "transaction_tags",
    metadata,
    Column("transaction_id", Integer, ForeignKey("transactions.id"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id"), primary_key=True),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("month", Integer, nullable=False),
    Column("carry_over", Numeric(14, 2), nullable=False, default=Decimal("0")),
    UniqueConstraint("user_id", "month", name="uq_budgets_user_month"),
)

budget_limits = Table(
    "budget_limits",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("budget_id", Integer, ForeignKey("budgets.id"), nullable=False),
    Column("position", Integer, nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id"), nullable=False),
    Column("limit_amount", Numeric(12, 2), nullable=False),
)

reports = Table(
    "reports",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("report_type", String(50), nullable=False),
    Column("start_date", BigInteger, nullable=False),
    Column("end_date", BigInteger, nullable=False),
    Column("filters", String(2000)),
    Column("created_at", BigInteger, nullable=False),
    Column("updated_at", BigInteger, nullable=False),
)

bank_connections = Table(
    "bank_connections",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("connection_type", String(50), nullable=False),
    Column("status_kind", String(20), nullable=False),
    Column("status_timestamp", BigInteger),
    Column("status_error", String(500)),
    Column("created_timestamp", BigInteger, nullable=False),
    Column("last_sync", BigInteger),
    Column("next_sync_timestamp", BigInteger),
    Column("retry_attempts", Integer, nullable=False, default=0),
)

invoices = Table(
    "invoices",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("invoice_number", String(50)),
    Column("customer_id", Integer, nullable=False),
    Column("customer_name", String(255), nullable=False),
    Column("issue_date", BigInteger, nullable=False),
    Column("due_date", BigInteger, nullable=False),
    Column("status", String(20), nullable=False),
    Column("subtotal", Numeric(16, 4), nullable=False),
    Column("tax", Numeric(16, 4), nullable=False),
    Column("total", Numeric(16, 4), nullable=False),
    Column("notes", String(2000), nullable=False, default=""),
    Column("created_at", BigInteger, nullable=False),
    Column("updated_at", BigInteger, nullable=False),
)

invoice_items = Table(
    "invoice_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("invoice_id", Integer, ForeignKey("invoices.id"), nullable=False),
    Column("position", Integer, nullable=False),
    Column("name", String(255), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Numeric(12, 2), nullable=False),
    Column("total", Numeric(16, 2), nullable=False),
)

user_settings = Table(
    "user_settings",
    metadata,
    Column("user_id", Integer, primary_key=True),
    Column("currency", String(3), nullable=False),
)


@app.on_event("startup")
def init_db() -> None:
    configure_logging()
    metadata.create_all(engine)


class AccountPayload(BaseModel):
    name: str

    @classmethod
    def validate_payload(cls, payload: "AccountPayload") -> "AccountPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Account name required.")
        return payload


class AccountResponse(BaseModel):
    id: int
    name: str
    balance: Decimal


class CategoryPayload(BaseModel):
    name: str
    is_expense: bool

    @classmethod
    def validate_payload(cls, payload: "CategoryPayload") -> "CategoryPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Category name required.")
        return payload


class CategoryResponse(BaseModel):
    id: int
    name: str
    is_expense: bool


class TransactionPayload(BaseModel):
    account_id: int
    category_id: int
    amount: Decimal
    date: int
    tag_ids: list[int] = []

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        if not payload.amount.is_finite() or payload.amount == 0:
            raise ValueError("Amount must be a non-zero number.")
        if payload.date < 0:
            raise ValueError("Date must be a positive timestamp.")
        payload.tag_ids = list(dict.fromkeys(payload.tag_ids))
        return payload


class TransactionResponse(BaseModel):
    id: int
    account_id: int
    category_id: int
    amount: Decimal
    date: int
    tag_ids: list[int]


class BulkTransactionPayload(BaseModel):
    rows: list[CsvTransactionRow]


class BulkTransactionResponse(BaseModel):
    transaction_ids: list[int]


class ImportPreviewRow(BaseModel):
    row: CsvRow
    validation: RowValidation


class ImportPreviewResponse(BaseModel):
    rows: list[ImportPreviewRow]
    valid_count: int
    invalid_count: int


class TagPayload(BaseModel):
    name: str

    @classmethod
    def validate_payload(cls, payload: "TagPayload") -> "TagPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Tag name required.")
        return payload


class TagResponse(BaseModel):
    id: int
    name: str


class BudgetLimitModel(BaseModel):
    category_id: int
    limit_amount: Decimal


class BudgetPayload(BaseModel):
    month: int
    category_limits: list[BudgetLimitModel] = []
    carry_over: Decimal = Decimal("0")

    @classmethod
    def validate_payload(cls, payload: "BudgetPayload") -> "BudgetPayload":
        split_month_key(payload.month)
        if not payload.carry_over.is_finite():
            raise ValueError("Carry-over must be a number.")
        return payload


class BudgetResponse(BaseModel):
    id: int
    month: int
    category_limits: list[BudgetLimitModel]
    carry_over: Decimal


class CategoryBudgetStatusResponse(BaseModel):
    category_id: int
    limit_amount: Decimal
    spent: Decimal
    remaining: Decimal
    percentage_used: Decimal | None = None
    status: str


class BudgetSummaryResponse(BaseModel):
    month: int
    carry_over: Decimal
    total_expense_budget: Decimal
    actual_income: Decimal
    actual_expenses: Decimal
    remaining_expense_budget: Decimal
    categories: list[CategoryBudgetStatusResponse]


class ReportPayload(BaseModel):
    report_type: str
    start_date: int
    end_date: int
    filters: str | None = None
    name: str | None = None

    @classmethod
    def validate_payload(cls, payload: "ReportPayload") -> "ReportPayload":
        if payload.report_type not in REPORT_TYPE_LABELS:
            raise ValueError("Invalid report type.")
        if payload.start_date > payload.end_date:
            raise ValueError("Start date must be on or before end date.")
        payload.name = payload.name.strip() if payload.name else None
        if not payload.name:
            payload.name = REPORT_TYPE_LABELS[payload.report_type]
        if payload.filters is not None and not payload.filters.strip():
            payload.filters = None
        if payload.filters is not None:
            try:
                parsed = json.loads(payload.filters)
            except json.JSONDecodeError as exc:
                raise ValueError("Report filters must be valid JSON.") from exc
            if not isinstance(parsed, dict):
                raise ValueError("Report filters must be a JSON object.")
        return payload


class ReportResponse(BaseModel):
    id: int
    name: str
    report_type: str
    start_date: int
    end_date: int
    filters: str | None = None
    created_at: int
    updated_at: int


class CategoryShareResponse(BaseModel):
    category_id: int
    name: str
    total: Decimal
    percentage: Decimal
    transaction_count: int


class CategoryTotalResponse(BaseModel):
    category_id: int
    name: str
    total: Decimal


class IncomeVsExpensesResponse(BaseModel):
    total_income: Decimal
    total_expenses: Decimal
    net_income: Decimal
    income_by_category: list[CategoryTotalResponse]
    expenses_by_category: list[CategoryTotalResponse]


class ReportResultsResponse(BaseModel):
    report_type: str
    categories: list[CategoryShareResponse] | None = None
    income_vs_expenses: IncomeVsExpensesResponse | None = None


class ReportUsageResponse(BaseModel):
    last_report_type: str | None = None
    most_used_type: str | None = None


class QuickStatsResponse(BaseModel):
    income: Decimal
    expense: Decimal
    net: Decimal


class DashboardResponse(BaseModel):
    quick_stats: QuickStatsResponse
    category_breakdown: list[CategoryShareResponse]
    top_categories: list[CategoryShareResponse]


class BankConnectionPayload(BaseModel):
    name: str
    connection_type: str

    @classmethod
    def validate_payload(cls, payload: "BankConnectionPayload") -> "BankConnectionPayload":
        payload.name = payload.name.strip()
        payload.connection_type = payload.connection_type.strip()
        if not payload.name:
            raise ValueError("Connection name required.")
        if not payload.connection_type:
            raise ValueError("Connection type required.")
        return payload


class BankConnectionStatusModel(BaseModel):
    kind: str
    timestamp: int | None = None
    error: str | None = None


class BankConnectionResponse(BaseModel):
    id: int
    name: str
    connection_type: str
    status: BankConnectionStatusModel
    status_label: str
    created_timestamp: int
    last_sync: int | None = None
    next_sync_timestamp: int | None = None
    retry_attempts: int


class InvoiceItemPayload(BaseModel):
    name: str
    quantity: int
    unit_price: Decimal


class InvoicePayload(BaseModel):
    customer_id: int = 0
    customer_name: str
    issue_date: int
    due_date: int
    status: str = "Draft"
    notes: str = ""
    items: list[InvoiceItemPayload] = []

    @classmethod
    def validate_payload(cls, payload: "InvoicePayload") -> "InvoicePayload":
        payload.customer_name = payload.customer_name.strip()
        if not payload.customer_name:
            raise ValueError("Customer name required.")
        if payload.due_date < payload.issue_date:
            raise ValueError("Due date must be on or after issue date.")
        payload.status = parse_invoice_status(payload.status).value
        payload.notes = payload.notes.strip()
        for item in payload.items:
            item.name = item.name.strip()
            if not item.name:
                raise ValueError("Line item name required.")
            line_item_total(item.quantity, item.unit_price)
        return payload


class InvoiceItemResponse(BaseModel):
    name: str
    quantity: int
    unit_price: Decimal
    total: Decimal


class InvoiceResponse(BaseModel):
    id: int
    invoice_number: str
    customer_id: int
    customer_name: str
    issue_date: int
    due_date: int
    status: str
    badge_variant: str
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    notes: str
    items: list[InvoiceItemResponse]
    created_at: int
    updated_at: int


class InvoiceStatsResponse(BaseModel):
    total_invoices: int
    unpaid_count: int
    overdue_count: int
    total_paid_value: Decimal


class UserSettingsPayload(BaseModel):
    currency: str | None = None


class UserSettingsResponse(BaseModel):
    currency: str


def now_millis() -> int:
    return int(time.time() * 1000)


def get_user_id(x_user_id: str | None = Header(None)) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        return int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc


def resolve_preferred_currency(conn, user_id: int) -> str:
    stored = conn.execute(
        select(user_settings.c.currency).where(user_settings.c.user_id == user_id)
    ).scalar_one_or_none()
    return resolve_currency(stored, SYSTEM_DEFAULT_CURRENCY)


def load_accounts(conn, user_id: int) -> list[Account]:
    rows = conn.execute(
        select(accounts).where(accounts.c.user_id == user_id).order_by(accounts.c.id.asc())
    ).mappings().all()
    return [Account(id=row["id"], name=row["name"], balance=row["balance"]) for row in rows]


def load_categories(conn, user_id: int) -> list[Category]:
    rows = conn.execute(
        select(categories).where(categories.c.user_id == user_id).order_by(categories.c.id.asc())
    ).mappings().all()
    return [Category(id=row["id"], name=row["name"], is_expense=row["is_expense"]) for row in rows]


def load_tags(conn, user_id: int) -> list[Tag]:
    rows = conn.execute(
        select(tags).where(tags.c.user_id == user_id).order_by(tags.c.id.asc())
    ).mappings().all()
    return [Tag(id=row["id"], name=row["name"]) for row in rows]


def load_transactions(
    conn,
    user_id: int,
    start_date: int | None = None,
    end_date: int | None = None,
) -> list[Transaction]:
    conditions = [transactions.c.user_id == user_id]
    if start_date is not None:
        conditions.append(transactions.c.date >= start_date)
    if end_date is not None:
        conditions.append(transactions.c.date <= end_date)
    rows = conn.execute(
        select(transactions)
        .where(*conditions)
        .order_by(transactions.c.date.desc(), transactions.c.id.desc())
    ).mappings().all()

    tag_map: dict[int, set[int]] = {}
    if rows:
        link_rows = conn.execute(
            select(transaction_tags).where(
                transaction_tags.c.transaction_id.in_([row["id"] for row in rows])
            )
        ).mappings().all()
        for link in link_rows:
            tag_map.setdefault(link["transaction_id"], set()).add(link["tag_id"])

    return [
        Transaction(
            id=row["id"],
            account_id=row["account_id"],
            category_id=row["category_id"],
            amount=row["amount"],
            date=row["date"],
            tag_ids=frozenset(tag_map.get(row["id"], set())),
        )
        for row in rows
    ]


def load_budgets(conn, user_id: int, budget_id: int | None = None) -> list[Budget]:
    conditions = [budgets.c.user_id == user_id]
    if budget_id is not None:
        conditions.append(budgets.c.id == budget_id)
    budget_rows = conn.execute(
        select(budgets).where(*conditions).order_by(budgets.c.month.asc())
    ).mappings().all()
    if not budget_rows:
        return []

    limit_rows = conn.execute(
        select(budget_limits)
        .where(budget_limits.c.budget_id.in_([row["id"] for row in budget_rows]))
        .order_by(budget_limits.c.budget_id.asc(), budget_limits.c.position.asc())
    ).mappings().all()
    limits_by_budget: dict[int, list[BudgetLimit]] = {}
    for row in limit_rows:
        limits_by_budget.setdefault(row["budget_id"], []).append(
            BudgetLimit(category_id=row["category_id"], limit_amount=row["limit_amount"])
        )

    return [
        Budget(
            id=row["id"],
            month=row["month"],
            category_limits=tuple(limits_by_budget.get(row["id"], [])),
            carry_over=row["carry_over"],
        )
        for row in budget_rows
    ]


def load_report(conn, user_id: int, report_id: int) -> Report | None:
    row = conn.execute(
        select(reports).where(reports.c.id == report_id, reports.c.user_id == user_id)
    ).mappings().first()
    if not row:
        return None
    return Report(
        id=row["id"],
        name=row["name"],
        report_type=row["report_type"],
        start_date=row["start_date"],
        end_date=row["end_date"],
        filters=row["filters"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def insert_transaction(conn, user_id: int, payload: TransactionPayload | CsvTransactionRow) -> int:
    account_row = conn.execute(
        select(accounts.c.id).where(accounts.c.id == payload.account_id, accounts.c.user_id == user_id)
    ).first()
    if not account_row:
        raise HTTPException(status_code=404, detail="Account not found.")
    category_row = conn.execute(
        select(categories.c.id).where(
            categories.c.id == payload.category_id, categories.c.user_id == user_id
        )
    ).first()
    if not category_row:
        raise HTTPException(status_code=404, detail="Category not found.")

    tag_ids = list(dict.fromkeys(payload.tag_ids))
    if tag_ids:
        found = conn.execute(
            select(tags.c.id).where(tags.c.user_id == user_id, tags.c.id.in_(tag_ids))
        ).scalars().all()
        if len(found) != len(tag_ids):
            raise HTTPException(status_code=404, detail="Tag not found.")

    transaction_id = conn.execute(
        insert(transactions)
        .values(
            user_id=user_id,
            account_id=payload.account_id,
            category_id=payload.category_id,
            amount=payload.amount,
            date=payload.date,
        )
        .returning(transactions.c.id)
    ).scalar_one()
    if tag_ids:
        conn.execute(
            insert(transaction_tags),
            [{"transaction_id": transaction_id, "tag_id": tag_id} for tag_id in tag_ids],
        )
    conn.execute(
        update(accounts)
        .where(accounts.c.id == payload.account_id)
        .values(balance=accounts.c.balance + payload.amount)
    )
    return transaction_id


def write_budget_limits(conn, budget_id: int, limits: list[BudgetLimit]) -> None:
    conn.execute(delete(budget_limits).where(budget_limits.c.budget_id == budget_id))
    if limits:
        conn.execute(
            insert(budget_limits),
            [
                {
                    "budget_id": budget_id,
                    "position": position,
                    "category_id": limit.category_id,
                    "limit_amount": limit.limit_amount,
                }
                for position, limit in enumerate(limits)
            ],
        )


def budget_response(budget: Budget) -> BudgetResponse:
    return BudgetResponse(
        id=budget.id,
        month=budget.month,
        category_limits=[
            BudgetLimitModel(category_id=limit.category_id, limit_amount=limit.limit_amount)
            for limit in budget.category_limits
        ],
        carry_over=budget.carry_over,
    )


def report_response(report: Report) -> ReportResponse:
    return ReportResponse(
        id=report.id,
        name=report.name,
        report_type=report.report_type,
        start_date=report.start_date,
        end_date=report.end_date,
        filters=report.filters,
        created_at=report.created_at,
        updated_at=report.updated_at,
    )


def share_response(share: CategoryShare) -> CategoryShareResponse:
    return CategoryShareResponse(
        category_id=share.category_id,
        name=share.name,
        total=share.total,
        percentage=share.percentage,
        transaction_count=share.transaction_count,
    )


def income_vs_expenses_response(summary: IncomeVsExpenses) -> IncomeVsExpensesResponse:
    return IncomeVsExpensesResponse(
        total_income=summary.total_income,
        total_expenses=summary.total_expenses,
        net_income=summary.net_income,
        income_by_category=[
            CategoryTotalResponse(category_id=item.category_id, name=item.name, total=item.total)
            for item in summary.income_by_category
        ],
        expenses_by_category=[
            CategoryTotalResponse(category_id=item.category_id, name=item.name, total=item.total)
            for item in summary.expenses_by_category
        ],
    )


def budget_status_response(status: CategoryBudgetStatus) -> CategoryBudgetStatusResponse:
    return CategoryBudgetStatusResponse(
        category_id=status.category_id,
        limit_amount=status.limit_amount,
        spent=status.spent,
        remaining=status.remaining,
        percentage_used=status.percentage_used,
        status=status.status,
    )


def bank_connection_response(row) -> BankConnectionResponse:
    status = status_from_record(row["status_kind"], row["status_timestamp"], row["status_error"])
    record = status_to_record(status)
    return BankConnectionResponse(
        id=row["id"],
        name=row["name"],
        connection_type=row["connection_type"],
        status=BankConnectionStatusModel(
            kind=record["status_kind"],
            timestamp=record["status_timestamp"],
            error=record["status_error"],
        ),
        status_label=describe_status(status),
        created_timestamp=row["created_timestamp"],
        last_sync=row["last_sync"],
        next_sync_timestamp=row["next_sync_timestamp"],
        retry_attempts=row["retry_attempts"],
    )


def load_invoices(
    conn, user_id: int, invoice_id: int | None = None
) -> list[tuple[Invoice, int, int]]:
    conditions = [invoices.c.user_id == user_id]
    if invoice_id is not None:
        conditions.append(invoices.c.id == invoice_id)
    rows = conn.execute(
        select(invoices).where(*conditions).order_by(invoices.c.issue_date.desc(), invoices.c.id.desc())
    ).mappings().all()
    if not rows:
        return []

    item_rows = conn.execute(
        select(invoice_items)
        .where(invoice_items.c.invoice_id.in_([row["id"] for row in rows]))
        .order_by(invoice_items.c.invoice_id.asc(), invoice_items.c.position.asc())
    ).mappings().all()
    items_by_invoice: dict[int, list[InvoiceLineItem]] = {}
    for item in item_rows:
        items_by_invoice.setdefault(item["invoice_id"], []).append(
            InvoiceLineItem(name=item["name"], quantity=item["quantity"], unit_price=item["unit_price"])
        )

    return [
        (
            Invoice(
                id=row["id"],
                invoice_number=row["invoice_number"] or format_invoice_number(row["id"]),
                customer_id=row["customer_id"],
                customer_name=row["customer_name"],
                issue_date=row["issue_date"],
                due_date=row["due_date"],
                status=parse_invoice_status(row["status"]),
                subtotal=row["subtotal"],
                tax=row["tax"],
                total=row["total"],
                notes=row["notes"],
                items=tuple(items_by_invoice.get(row["id"], [])),
            ),
            row["created_at"],
            row["updated_at"],
        )
        for row in rows
    ]


def invoice_response(invoice: Invoice, created_at: int, updated_at: int) -> InvoiceResponse:
    return InvoiceResponse(
        id=invoice.id,
        invoice_number=invoice.invoice_number,
        customer_id=invoice.customer_id,
        customer_name=invoice.customer_name,
        issue_date=invoice.issue_date,
        due_date=invoice.due_date,
        status=invoice.status.label,
        badge_variant=invoice.status.badge_variant,
        subtotal=invoice.subtotal,
        tax=invoice.tax,
        total=invoice.total,
        notes=invoice.notes,
        items=[
            InvoiceItemResponse(
                name=item.name,
                quantity=item.quantity,
                unit_price=item.unit_price,
                total=line_item_total(item.quantity, item.unit_price),
            )
            for item in invoice.items
        ],
        created_at=created_at,
        updated_at=updated_at,
    )


def load_invoice_responses(conn, user_id: int, invoice_id: int | None = None) -> list[InvoiceResponse]:
    return [
        invoice_response(invoice, created_at, updated_at)
        for invoice, created_at, updated_at in load_invoices(conn, user_id, invoice_id)
    ]


def write_invoice_items(conn, invoice_id: int, payload: InvoicePayload) -> dict:
    line_items = [
        InvoiceLineItem(name=item.name, quantity=item.quantity, unit_price=item.unit_price)
        for item in payload.items
    ]
    conn.execute(delete(invoice_items).where(invoice_items.c.invoice_id == invoice_id))
    if line_items:
        conn.execute(
            insert(invoice_items),
            [
                {
                    "invoice_id": invoice_id,
                    "position": position,
                    "name": item.name,
                    "quantity": item.quantity,
                    "unit_price": item.unit_price,
                    "total": line_item_total(item.quantity, item.unit_price),
                }
                for position, item in enumerate(line_items)
            ],
        )
    totals = calculate_invoice_totals(line_items)
    return {"subtotal": totals.subtotal, "tax": totals.tax, "total": totals.total}


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/users/me/settings", response_model=UserSettingsResponse)
def get_user_settings(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> UserSettingsResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        currency = resolve_preferred_currency(conn, user_id)
    return UserSettingsResponse(currency=currency)


@app.put("/users/me/settings", response_model=UserSettingsResponse)
def update_user_settings(
    payload: UserSettingsPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> UserSettingsResponse:
    user_id = get_user_id(x_user_id)
    if payload.currency is None:
        raise HTTPException(status_code=400, detail="Currency required.")
    try:
        currency = normalize_currency(payload.currency)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    with engine.begin() as conn:
        result = conn.execute(
            update(user_settings).where(user_settings.c.user_id == user_id).values(currency=currency)
        )
        if result.rowcount == 0:
            conn.execute(insert(user_settings).values(user_id=user_id, currency=currency))
    return UserSettingsResponse(currency=currency)


@app.get("/accounts", response_model=list[AccountResponse])
def list_accounts(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[AccountResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = load_accounts(conn, user_id)
    return [AccountResponse(id=row.id, name=row.name, balance=row.balance) for row in rows]


@app.post("/accounts", response_model=AccountResponse)
def create_account(
    payload: AccountPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = AccountPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        row = conn.execute(
            insert(accounts)
            .values(user_id=user_id, name=payload.name, balance=Decimal("0"), created_at=now_millis())
            .returning(accounts.c.id, accounts.c.name, accounts.c.balance)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=500, detail="Failed to create account.")
    _logger.info("Created account %s for user %s", row["id"], user_id)
    return AccountResponse(id=row["id"], name=row["name"], balance=row["balance"])


@app.get("/categories", response_model=list[CategoryResponse])
def list_categories(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[CategoryResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = load_categories(conn, user_id)
    return [CategoryResponse(id=row.id, name=row.name, is_expense=row.is_expense) for row in rows]


@app.post("/categories", response_model=CategoryResponse)
def create_category(
    payload: CategoryPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> CategoryResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = CategoryPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        insert(categories)
        .values(user_id=user_id, name=payload.name, is_expense=payload.is_expense, created_at=now_millis())
        .returning(categories.c.id, categories.c.name, categories.c.is_expense)
    )
    try:
        with engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create category.")
    return CategoryResponse(id=row["id"], name=row["name"], is_expense=row["is_expense"])


@app.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(
    start: int | None = Query(None),
    end: int | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[TransactionResponse]:
    user_id = get_user_id(x_user_id)
    if start is not None and end is not None and start > end:
        raise HTTPException(status_code=400, detail="Start date must be on or before end date.")
    with engine.begin() as conn:
        rows = load_transactions(conn, user_id, start, end)
    return [
        TransactionResponse(
            id=row.id,
            account_id=row.account_id,
            category_id=row.category_id,
            amount=row.amount,
            date=row.date,
            tag_ids=sorted(row.tag_ids),
        )
        for row in rows
    ]


@app.get("/transactions/export")
def export_transactions(
    start: int | None = Query(None),
    end: int | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> Response:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = load_transactions(conn, user_id, start, end)
        content = export_transactions_csv(
            rows,
            load_accounts(conn, user_id),
            load_categories(conn, user_id),
            load_tags(conn, user_id),
        )
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="transactions.csv"'},
    )


@app.post("/transactions/import/preview", response_model=ImportPreviewResponse)
async def preview_transaction_import(
    file: UploadFile = File(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ImportPreviewResponse:
    user_id = get_user_id(x_user_id)
    if not file.filename or not file.filename.lower().endswith(".csv"):
        raise HTTPException(status_code=400, detail="CSV file required.")

    contents = await file.read()
    try:
        decoded = contents.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="CSV must be UTF-8 encoded.") from exc

    try:
        parsed_rows = parse_transactions_csv(decoded)
    except ParseError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        account_rows = load_accounts(conn, user_id)
        category_rows = load_categories(conn, user_id)
        tag_rows = load_tags(conn, user_id)

    preview = [
        ImportPreviewRow(row=row, validation=validate_row(row, account_rows, category_rows, tag_rows))
        for row in parsed_rows
    ]
    valid_count = sum(1 for item in preview if item.validation.is_valid)
    return ImportPreviewResponse(
        rows=preview,
        valid_count=valid_count,
        invalid_count=len(preview) - valid_count,
    )


@app.post("/transactions/bulk", response_model=BulkTransactionResponse)
def create_transactions_from_rows(
    payload: BulkTransactionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BulkTransactionResponse:
    user_id = get_user_id(x_user_id)
    if not payload.rows:
        raise HTTPException(status_code=400, detail="No transactions to import.")
    for index, row in enumerate(payload.rows, start=1):
        if not row.amount.is_finite() or row.amount == 0:
            raise HTTPException(status_code=400, detail=f"Row {index} must be a non-zero amount.")

    with engine.begin() as conn:
        transaction_ids = [insert_transaction(conn, user_id, row) for row in payload.rows]
    _logger.info("Imported %d transactions for user %s", len(transaction_ids), user_id)
    return BulkTransactionResponse(transaction_ids=transaction_ids)


@app.post("/transactions", response_model=TransactionResponse)
def create_transaction(
    payload: TransactionPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        transaction_id = insert_transaction(conn, user_id, payload)
    return TransactionResponse(
        id=transaction_id,
        account_id=payload.account_id,
        category_id=payload.category_id,
        amount=payload.amount,
        date=payload.date,
        tag_ids=sorted(payload.tag_ids),
    )


@app.get("/tags", response_model=list[TagResponse])
def list_tags(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[TagResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = load_tags(conn, user_id)
    return [TagResponse(id=row.id, name=row.name) for row in rows]


@app.post("/tags", response_model=TagResponse)
def create_tag(payload: TagPayload, x_user_id: str | None = Header(None, alias="x-user-id")) -> TagResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = TagPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        with engine.begin() as conn:
            row = conn.execute(
                insert(tags).values(user_id=user_id, name=payload.name).returning(tags.c.id, tags.c.name)
            ).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Tag already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create tag.")
    return TagResponse(id=row["id"], name=row["name"])


@app.delete("/tags/{tag_id}")
def delete_tag(tag_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(
            select(tags.c.id).where(tags.c.id == tag_id, tags.c.user_id == user_id)
        ).first()
        if not row:
            raise HTTPException(status_code=404, detail="Tag not found.")
        conn.execute(delete(transaction_tags).where(transaction_tags.c.tag_id == tag_id))
        conn.execute(delete(tags).where(tags.c.id == tag_id))
    _logger.info("Deleted tag %s for user %s", tag_id, user_id)
    return {"status": "deleted"}


@app.get("/budgets", response_model=list[BudgetResponse])
def list_budgets(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[BudgetResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = load_budgets(conn, user_id)
    return [budget_response(row) for row in rows]


@app.get("/budgets/summary", response_model=BudgetSummaryResponse)
def get_budget_summary(
    month: int = Query(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetSummaryResponse:
    user_id = get_user_id(x_user_id)
    try:
        split_month_key(month)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        budget = find_budget_for_month(load_budgets(conn, user_id), month)
        category_rows = load_categories(conn, user_id)
        txn_rows = load_transactions(conn, user_id)

    summary = summarize_month(budget, txn_rows, category_rows, month)
    return BudgetSummaryResponse(
        month=summary.month,
        carry_over=summary.carry_over,
        total_expense_budget=summary.total_expense_budget,
        actual_income=summary.actual_income,
        actual_expenses=summary.actual_expenses,
        remaining_expense_budget=summary.remaining_expense_budget,
        categories=[budget_status_response(status) for status in summary.categories],
    )


@app.get("/budgets/{budget_id}", response_model=BudgetResponse)
def get_budget(budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = load_budgets(conn, user_id, budget_id)
    if not rows:
        raise HTTPException(status_code=404, detail="Budget not found.")
    return budget_response(rows[0])


@app.post("/budgets", response_model=BudgetResponse)
def create_budget(
    payload: BudgetPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = BudgetPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        with engine.begin() as conn:
            try:
                limits = validate_limits(
                    [
                        BudgetLimit(category_id=limit.category_id, limit_amount=limit.limit_amount)
                        for limit in payload.category_limits
                    ],
                    load_categories(conn, user_id),
                )
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
            budget_id = conn.execute(
                insert(budgets)
                .values(user_id=user_id, month=payload.month, carry_over=payload.carry_over)
                .returning(budgets.c.id)
            ).scalar_one()
            write_budget_limits(conn, budget_id, limits)
            rows = load_budgets(conn, user_id, budget_id)
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="A budget already exists for this month.") from exc

    _logger.info("Created budget %s for month %s", budget_id, payload.month)
    return budget_response(rows[0])


@app.put("/budgets/{budget_id}", response_model=BudgetResponse)
def update_budget(
    budget_id: int,
    payload: BudgetPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = BudgetPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        with engine.begin() as conn:
            try:
                limits = validate_limits(
                    [
                        BudgetLimit(category_id=limit.category_id, limit_amount=limit.limit_amount)
                        for limit in payload.category_limits
                    ],
                    load_categories(conn, user_id),
                )
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
            result = conn.execute(
                update(budgets)
                .where(budgets.c.id == budget_id, budgets.c.user_id == user_id)
                .values(month=payload.month, carry_over=payload.carry_over)
            )
            if result.rowcount == 0:
                raise HTTPException(status_code=404, detail="Budget not found.")
            write_budget_limits(conn, budget_id, limits)
            rows = load_budgets(conn, user_id, budget_id)
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="A budget already exists for this month.") from exc

    _logger.info("Updated budget %s for month %s", budget_id, payload.month)
    return budget_response(rows[0])


@app.delete("/budgets/{budget_id}")
def delete_budget(budget_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(
            select(budgets.c.id).where(budgets.c.id == budget_id, budgets.c.user_id == user_id)
        ).first()
        if not row:
            raise HTTPException(status_code=404, detail="Budget not found.")
        conn.execute(delete(budget_limits).where(budget_limits.c.budget_id == budget_id))
        conn.execute(delete(budgets).where(budgets.c.id == budget_id))
    return {"status": "deleted"}


@app.get("/reports", response_model=list[ReportResponse])
def list_reports(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[ReportResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(reports.c.id).where(reports.c.user_id == user_id).order_by(reports.c.created_at.desc())
        ).scalars().all()
        report_rows = [load_report(conn, user_id, report_id) for report_id in rows]
    return [report_response(report) for report in report_rows if report is not None]


@app.get("/reports/usage", response_model=ReportUsageResponse)
def get_report_usage(x_user_id: str | None = Header(None, alias="x-user-id")) -> ReportUsageResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        report_ids = conn.execute(select(reports.c.id).where(reports.c.user_id == user_id)).scalars().all()
        report_rows = [load_report(conn, user_id, report_id) for report_id in report_ids]
    usage = report_usage([report for report in report_rows if report is not None])
    return ReportUsageResponse(
        last_report_type=usage.last_report_type,
        most_used_type=usage.most_used_type,
    )


@app.get("/reports/{report_id}", response_model=ReportResponse)
def get_report(report_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> ReportResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        report = load_report(conn, user_id, report_id)
    if report is None:
        raise HTTPException(status_code=404, detail="Report not found.")
    return report_response(report)


@app.get("/reports/{report_id}/results", response_model=ReportResultsResponse)
def get_report_results(
    report_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> ReportResultsResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        report = load_report(conn, user_id, report_id)
        if report is None:
            raise HTTPException(status_code=404, detail="Report not found.")
        txn_rows = load_transactions(conn, user_id, report.start_date, report.end_date)
        category_rows = load_categories(conn, user_id)

    try:
        result = run_report(report, txn_rows, category_rows)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if isinstance(result, IncomeVsExpenses):
        return ReportResultsResponse(
            report_type=report.report_type,
            income_vs_expenses=income_vs_expenses_response(result),
        )
    return ReportResultsResponse(
        report_type=report.report_type,
        categories=[share_response(share) for share in result],
    )


@app.post("/reports", response_model=ReportResponse)
def create_report(
    payload: ReportPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> ReportResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = ReportPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    timestamp = now_millis()
    with engine.begin() as conn:
        report_id = conn.execute(
            insert(reports)
            .values(
                user_id=user_id,
                name=payload.name,
                report_type=payload.report_type,
                start_date=payload.start_date,
                end_date=payload.end_date,
                filters=payload.filters,
                created_at=timestamp,
                updated_at=timestamp,
            )
            .returning(reports.c.id)
        ).scalar_one()
        report = load_report(conn, user_id, report_id)
    return report_response(report)


@app.put("/reports/{report_id}", response_model=ReportResponse)
def update_report(
    report_id: int,
    payload: ReportPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ReportResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = ReportPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        result = conn.execute(
            update(reports)
            .where(reports.c.id == report_id, reports.c.user_id == user_id)
            .values(
                name=payload.name,
                report_type=payload.report_type,
                start_date=payload.start_date,
                end_date=payload.end_date,
                filters=payload.filters,
                updated_at=now_millis(),
            )
        )
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Report not found.")
        report = load_report(conn, user_id, report_id)
    return report_response(report)


@app.delete("/reports/{report_id}")
def delete_report(report_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        result = conn.execute(
            delete(reports).where(reports.c.id == report_id, reports.c.user_id == user_id)
        )
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Report not found.")
    return {"status": "deleted"}


@app.get("/dashboard", response_model=DashboardResponse)
def dashboard(
    start: int | None = Query(None),
    end: int | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> DashboardResponse:
    user_id = get_user_id(x_user_id)
    if start is not None and end is not None and start > end:
        raise HTTPException(status_code=400, detail="Start date must be on or before end date.")
    with engine.begin() as conn:
        txn_rows = load_transactions(conn, user_id, start, end)
        category_rows = load_categories(conn, user_id)

    window = filter_by_window(txn_rows, start, end)
    stats = quick_stats(window)
    return DashboardResponse(
        quick_stats=QuickStatsResponse(income=stats.income, expense=stats.expense, net=stats.net),
        category_breakdown=[share_response(share) for share in category_breakdown(window, category_rows)],
        top_categories=[share_response(share) for share in top_categories(window, category_rows)],
    )


@app.get("/bank-connections", response_model=list[BankConnectionResponse])
def list_bank_connections(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[BankConnectionResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(bank_connections)
            .where(bank_connections.c.user_id == user_id)
            .order_by(bank_connections.c.created_timestamp.desc(), bank_connections.c.id.desc())
        ).mappings().all()
    return [bank_connection_response(row) for row in rows]


@app.get("/bank-connections/{connection_id}", response_model=BankConnectionResponse)
def get_bank_connection(
    connection_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> BankConnectionResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(
            select(bank_connections).where(
                bank_connections.c.id == connection_id, bank_connections.c.user_id == user_id
            )
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Bank connection not found.")
    return bank_connection_response(row)


@app.post("/bank-connections", response_model=BankConnectionResponse)
def create_bank_connection(
    payload: BankConnectionPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> BankConnectionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = BankConnectionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        row = conn.execute(
            insert(bank_connections)
            .values(
                user_id=user_id,
                name=payload.name,
                connection_type=payload.connection_type,
                status_kind="idle",
                created_timestamp=now_millis(),
                retry_attempts=0,
            )
            .returning(*bank_connections.c)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=500, detail="Failed to create bank connection.")
    return bank_connection_response(row)


@app.delete("/bank-connections/{connection_id}")
def delete_bank_connection(
    connection_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        result = conn.execute(
            delete(bank_connections).where(
                bank_connections.c.id == connection_id, bank_connections.c.user_id == user_id
            )
        )
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Bank connection not found.")
    return {"status": "deleted"}


@app.post("/bank-connections/{connection_id}/sync", response_model=BankConnectionResponse)
def sync_bank_connection(
    connection_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> BankConnectionResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(
            select(bank_connections).where(
                bank_connections.c.id == connection_id, bank_connections.c.user_id == user_id
            )
        ).mappings().first()
        if not row:
            raise HTTPException(status_code=404, detail="Bank connection not found.")
        current = status_from_record(row["status_kind"], row["status_timestamp"], row["status_error"])
        if isinstance(current, InProgress):
            raise HTTPException(status_code=409, detail="Bank connection is already syncing.")

        synced_at = now_millis()
        updated = conn.execute(
            update(bank_connections)
            .where(bank_connections.c.id == connection_id)
            .values(
                **status_to_record(LastSynced(timestamp=synced_at)),
                last_sync=synced_at,
                next_sync_timestamp=synced_at + SYNC_INTERVAL_MILLIS,
                retry_attempts=0,
            )
            .returning(*bank_connections.c)
        ).mappings().first()
    _logger.info("Synced bank connection %s for user %s", connection_id, user_id)
    return bank_connection_response(updated)


@app.put("/bank-connections/{connection_id}/status", response_model=BankConnectionResponse)
def update_bank_connection_status(
    connection_id: int,
    payload: BankConnectionStatusModel,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BankConnectionResponse:
    user_id = get_user_id(x_user_id)
    try:
        status = status_from_record(payload.kind, payload.timestamp, payload.error)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    values = status_to_record(status)
    if isinstance(status, SyncError):
        values["retry_attempts"] = bank_connections.c.retry_attempts + 1
    with engine.begin() as conn:
        row = conn.execute(
            update(bank_connections)
            .where(bank_connections.c.id == connection_id, bank_connections.c.user_id == user_id)
            .values(**values)
            .returning(*bank_connections.c)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Bank connection not found.")
    return bank_connection_response(row)


@app.get("/invoices", response_model=list[InvoiceResponse])
def list_invoices(
    status: str | None = Query(None),
    customer_id: int | None = Query(None),
    start: int | None = Query(None),
    end: int | None = Query(None),
    search: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[InvoiceResponse]:
    user_id = get_user_id(x_user_id)
    try:
        status_filter = parse_invoice_status(status) if status else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        rows = load_invoices(conn, user_id)

    timestamps = {invoice.id: (created_at, updated_at) for invoice, created_at, updated_at in rows}
    selected = filter_invoices(
        [invoice for invoice, _, _ in rows],
        status=status_filter,
        customer_id=customer_id,
        start_date=start,
        end_date=end,
        search=search,
    )
    return [invoice_response(invoice, *timestamps[invoice.id]) for invoice in selected]


@app.get("/invoices/stats", response_model=InvoiceStatsResponse)
def get_invoice_stats(x_user_id: str | None = Header(None, alias="x-user-id")) -> InvoiceStatsResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = load_invoices(conn, user_id)

    stats = invoice_stats(invoice for invoice, _, _ in rows)
    return InvoiceStatsResponse(
        total_invoices=stats.total_invoices,
        unpaid_count=stats.unpaid_count,
        overdue_count=stats.overdue_count,
        total_paid_value=stats.total_paid_value,
    )


@app.get("/invoices/{invoice_id}", response_model=InvoiceResponse)
def get_invoice(invoice_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> InvoiceResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = load_invoice_responses(conn, user_id, invoice_id)
    if not rows:
        raise HTTPException(status_code=404, detail="Invoice not found.")
    return rows[0]


@app.post("/invoices", response_model=InvoiceResponse)
def create_invoice(
    payload: InvoicePayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> InvoiceResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = InvoicePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    timestamp = now_millis()
    with engine.begin() as conn:
        invoice_id = conn.execute(
            insert(invoices)
            .values(
                user_id=user_id,
                customer_id=payload.customer_id,
                customer_name=payload.customer_name,
                issue_date=payload.issue_date,
                due_date=payload.due_date,
                status=payload.status,
                subtotal=Decimal("0"),
                tax=Decimal("0"),
                total=Decimal("0"),
                notes=payload.notes,
                created_at=timestamp,
                updated_at=timestamp,
            )
            .returning(invoices.c.id)
        ).scalar_one()
        totals = write_invoice_items(conn, invoice_id, payload)
        conn.execute(
            update(invoices)
            .where(invoices.c.id == invoice_id)
            .values(invoice_number=format_invoice_number(invoice_id), **totals)
        )
        rows = load_invoice_responses(conn, user_id, invoice_id)
    _logger.info("Created invoice %s for user %s", invoice_id, user_id)
    return rows[0]


@app.put("/invoices/{invoice_id}", response_model=InvoiceResponse)
def update_invoice(
    invoice_id: int,
    payload: InvoicePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> InvoiceResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = InvoicePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        row = conn.execute(
            select(invoices.c.id).where(invoices.c.id == invoice_id, invoices.c.user_id == user_id)
        ).first()
        if not row:
            raise HTTPException(status_code=404, detail="Invoice not found.")
        totals = write_invoice_items(conn, invoice_id, payload)
        conn.execute(
            update(invoices)
            .where(invoices.c.id == invoice_id)
            .values(
                customer_id=payload.customer_id,
                customer_name=payload.customer_name,
                issue_date=payload.issue_date,
                due_date=payload.due_date,
                status=payload.status,
                notes=payload.notes,
                updated_at=now_millis(),
                **totals,
            )
        )
        rows = load_invoice_responses(conn, user_id, invoice_id)
    return rows[0]


@app.delete("/invoices/{invoice_id}")
def delete_invoice(invoice_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(
            select(invoices.c.id).where(invoices.c.id == invoice_id, invoices.c.user_id == user_id)
        ).first()
        if not row:
            raise HTTPException(status_code=404, detail="Invoice not found.")
        conn.execute(delete(invoice_items).where(invoice_items.c.invoice_id == invoice_id))
        conn.execute(delete(invoices).where(invoices.c.id == invoice_id))
    return {"status": "deleted"}
