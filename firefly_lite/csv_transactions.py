from __future__ import annotations

import csv
import io
import re
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Iterable, Sequence

from pydantic import BaseModel

from firefly_lite.formatting import iso_date
from firefly_lite.records import Account, Category, Tag, Transaction

COLUMN_ALIASES: dict[str, tuple[str, ...]] = {
    "date": ("date",),
    "account_name": ("accountname", "account"),
    "category_name": ("categoryname", "category"),
    "amount": ("amount",),
    "tags": ("tags",),
}

EXPORT_HEADER = (
    "transactionId",
    "date",
    "accountId",
    "accountName",
    "categoryId",
    "categoryName",
    "amount",
    "tags",
)

DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m/%d/%y", "%m-%d-%Y", "%d %b %Y", "%d %B %Y", "%b %d, %Y")

BYTE_ORDER_MARK = "\ufeff"


class ParseError(ValueError):
    """The file is structurally unusable; nothing in it can be imported."""


class CsvRow(BaseModel):
    date: str
    account_name: str
    category_name: str
    amount: str
    tags: str = ""


class RowValidation(BaseModel):
    is_valid: bool
    errors: list[str]
    missing_tags: list[str] = []


class CsvTransactionRow(BaseModel):
    account_id: int
    category_id: int
    amount: Decimal
    date: int
    tag_ids: list[int]


class ImportResult(BaseModel):
    created_count: int
    failed_count: int
    errors: list[str]


def parse_transactions_csv(contents: str) -> list[CsvRow]:
    reader = csv.reader(io.StringIO(contents.removeprefix(BYTE_ORDER_MARK)))
    records = [record for record in reader if not is_blank_record(record)]
    if len(records) < 2:
        raise ParseError("CSV file must contain a header row and at least one data row")

    columns = map_columns(records[0])
    rows: list[CsvRow] = []
    for record in records[1:]:
        values = {
            field: clean_text(record[index]) if index is not None and index < len(record) else ""
            for field, index in columns.items()
        }
        rows.append(CsvRow(**values))
    return rows


def map_columns(header: Sequence[str]) -> dict[str, int | None]:
    normalized = [value.replace(BYTE_ORDER_MARK, "").strip().lower() for value in header]
    columns: dict[str, int | None] = {}
    for field, aliases in COLUMN_ALIASES.items():
        columns[field] = None
        for alias in aliases:
            if alias in normalized:
                columns[field] = normalized.index(alias)
                break
    return columns


def validate_row(
    row: CsvRow,
    accounts: Sequence[Account],
    categories: Sequence[Category],
    tags: Sequence[Tag],
    *,
    allow_unknown_tags: bool = False,
) -> RowValidation:
    errors: list[str] = []

    if not row.date:
        errors.append("Date is required")
    elif parse_date(row.date) is None:
        errors.append("Invalid date format")

    if not row.account_name:
        errors.append("Account name is required")
    else:
        matches = find_by_name(accounts, row.account_name)
        if not matches:
            errors.append(f'Account "{row.account_name}" not found')
        elif len(matches) > 1:
            errors.append(f'Account "{row.account_name}" matches multiple accounts')

    if not row.category_name:
        errors.append("Category name is required")
    else:
        matches = find_by_name(categories, row.category_name)
        if not matches:
            errors.append(f'Category "{row.category_name}" not found')
        elif len(matches) > 1:
            errors.append(f'Category "{row.category_name}" matches multiple categories')

    if not row.amount:
        errors.append("Amount is required")
    else:
        amount = parse_decimal(row.amount)
        if amount is None or not amount.is_finite() or amount == 0:
            errors.append("Invalid amount")

    missing_tags: list[str] = []
    for tag_name in split_tag_names(row.tags):
        matches = find_by_name(tags, tag_name)
        if not matches:
            missing_tags.append(tag_name)
            if not allow_unknown_tags:
                errors.append(f'Tag "{tag_name}" not found')
        elif len(matches) > 1:
            errors.append(f'Tag "{tag_name}" matches multiple tags')

    return RowValidation(is_valid=not errors, errors=errors, missing_tags=missing_tags)


def resolve_row(
    row: CsvRow,
    accounts: Sequence[Account],
    categories: Sequence[Category],
    tags: Sequence[Tag],
) -> CsvTransactionRow:
    """Map a validated row onto ids, applying the category sign convention.

    Raises ``ValueError`` when a reference cannot be resolved, which only
    happens for rows that did not pass :func:`validate_row`.
    """
    parsed_date = parse_date(row.date)
    amount = parse_decimal(row.amount)
    account_matches = find_by_name(accounts, row.account_name)
    category_matches = find_by_name(categories, row.category_name)
    if parsed_date is None or amount is None:
        raise ValueError("Row has an invalid date or amount.")
    if len(account_matches) != 1 or len(category_matches) != 1:
        raise ValueError("Row references an unknown account or category.")

    tag_ids: list[int] = []
    for tag_name in split_tag_names(row.tags):
        tag_matches = find_by_name(tags, tag_name)
        if not tag_matches:
            raise ValueError(f'Tag "{tag_name}" not found')
        if len(tag_matches) > 1:
            raise ValueError(f'Tag "{tag_name}" matches multiple tags')
        if tag_matches[0].id not in tag_ids:
            tag_ids.append(tag_matches[0].id)

    category = category_matches[0]
    return CsvTransactionRow(
        account_id=account_matches[0].id,
        category_id=category.id,
        amount=signed_amount(amount, category.is_expense),
        date=date_to_millis(parsed_date),
        tag_ids=tag_ids,
    )


def export_transactions_csv(
    transactions: Iterable[Transaction],
    accounts: Sequence[Account],
    categories: Sequence[Category],
    tags: Sequence[Tag],
) -> str:
    account_names = {account.id: account.name for account in accounts}
    category_names = {category.id: category.name for category in categories}

    lines = [",".join(EXPORT_HEADER)]
    for txn in transactions:
        tag_names = ",".join(tag.name for tag in tags if tag.id in txn.tag_ids)
        lines.append(
            ",".join(
                [
                    str(txn.id),
                    iso_date(txn.date),
                    str(txn.account_id),
                    escape_csv_value(account_names.get(txn.account_id, "Unknown")),
                    str(txn.category_id),
                    escape_csv_value(category_names.get(txn.category_id, "Unknown")),
                    str(txn.amount),
                    escape_csv_value(tag_names),
                ]
            )
        )
    return "\n".join(lines)


def escape_csv_value(value: str) -> str:
    if "," in value or '"' in value or "\n" in value:
        return '"' + value.replace('"', '""') + '"'
    return value


def signed_amount(amount: Decimal, is_expense: bool) -> Decimal:
    return -abs(amount) if is_expense else abs(amount)


def find_by_name(items, name: str) -> list:
    wanted = name.strip().lower()
    return [item for item in items if item.name.strip().lower() == wanted]


def split_tag_names(value: str | None) -> list[str]:
    if not value:
        return []
    return [name.strip() for name in value.split(",") if name.strip()]


def parse_date(value: str | None) -> date | None:
    cleaned = clean_text(value)
    if not cleaned:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(cleaned).date()
    except ValueError:
        return None


def date_to_millis(value: date) -> int:
    moment = datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


def parse_decimal(value: str | None) -> Decimal | None:
    cleaned = clean_text(value)
    if not cleaned:
        return None

    negative = False
    if cleaned.startswith("(") and cleaned.endswith(")"):
        negative = True
        cleaned = cleaned[1:-1]

    cleaned = cleaned.replace("$", "").replace(",", "")
    cleaned = re.sub(r"\s+", "", cleaned)

    if cleaned.startswith("-"):
        negative = True
        cleaned = cleaned[1:]
    elif cleaned.startswith("+"):
        cleaned = cleaned[1:]

    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None

    return -amount if negative else amount


def clean_text(value: str | None) -> str:
    return value.strip() if value else ""


def is_blank_record(record: Sequence[str]) -> bool:
    # Only an empty or whitespace-only line. A line of bare separators is a row.
    return len(record) <= 1 and not clean_text(record[0] if record else "")
