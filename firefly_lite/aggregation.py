from __future__ import annotations

import json
from collections import Counter
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from firefly_lite.logging_setup import get_logger
from firefly_lite.records import Category, Report, Transaction

ZERO = Decimal("0")
HUNDRED = Decimal("100")
TOP_CATEGORY_LIMIT = 5

_logger = get_logger("firefly_lite.aggregation")


@dataclass(frozen=True)
class CategoryShare:
    category_id: int
    name: str
    total: Decimal
    percentage: Decimal
    transaction_count: int = 0


@dataclass(frozen=True)
class CategoryTotal:
    category_id: int
    name: str
    total: Decimal


@dataclass(frozen=True)
class QuickStats:
    income: Decimal
    expense: Decimal
    net: Decimal


@dataclass(frozen=True)
class IncomeVsExpenses:
    total_income: Decimal
    total_expenses: Decimal
    net_income: Decimal
    income_by_category: list[CategoryTotal]
    expenses_by_category: list[CategoryTotal]


@dataclass(frozen=True)
class ReportFilters:
    category_id: Optional[int] = None
    account_id: Optional[int] = None
    tag_ids: frozenset[int] = frozenset()


@dataclass(frozen=True)
class ReportUsage:
    last_report_type: Optional[str]
    most_used_type: Optional[str]


def filter_by_window(
    transactions: Iterable[Transaction],
    start: Optional[int] = None,
    end: Optional[int] = None,
) -> list[Transaction]:
    return [
        txn
        for txn in transactions
        if (start is None or txn.date >= start) and (end is None or txn.date <= end)
    ]


def category_breakdown(
    transactions: Iterable[Transaction],
    categories: Sequence[Category],
    *,
    start: Optional[int] = None,
    end: Optional[int] = None,
) -> list[CategoryShare]:
    totals, counts, total_expense = _expense_totals(filter_by_window(transactions, start, end), categories)
    return _rank_shares(totals, counts, total_expense, categories)


def top_categories(
    transactions: Iterable[Transaction],
    categories: Sequence[Category],
    limit: int = TOP_CATEGORY_LIMIT,
    *,
    start: Optional[int] = None,
    end: Optional[int] = None,
) -> list[CategoryShare]:
    # Percentages stay relative to every expense, not only the shown slice.
    return category_breakdown(transactions, categories, start=start, end=end)[:limit]


def quick_stats(transactions: Iterable[Transaction]) -> QuickStats:
    income = ZERO
    expense = ZERO
    for txn in transactions:
        amount = _coerce_amount(txn.amount)
        if amount > 0:
            income += amount
        else:
            expense += abs(amount)
    return QuickStats(income=income, expense=expense, net=income - expense)


def income_vs_expenses(
    transactions: Iterable[Transaction],
    categories: Sequence[Category],
) -> IncomeVsExpenses:
    category_map = {category.id: category for category in categories}
    income_totals: dict[int, Decimal] = {}
    expense_totals: dict[int, Decimal] = {}
    total_income = ZERO
    total_expenses = ZERO

    for txn in transactions:
        category = category_map.get(txn.category_id)
        if category is None:
            continue
        amount = _coerce_amount(txn.amount)
        if category.is_expense:
            total_expenses += abs(amount)
            expense_totals[category.id] = expense_totals.get(category.id, ZERO) + abs(amount)
        else:
            total_income += amount
            income_totals[category.id] = income_totals.get(category.id, ZERO) + amount

    return IncomeVsExpenses(
        total_income=total_income,
        total_expenses=total_expenses,
        net_income=total_income - total_expenses,
        income_by_category=_ranked_totals(income_totals, category_map),
        expenses_by_category=_ranked_totals(expense_totals, category_map),
    )


def parse_report_filters(raw: Optional[str]) -> ReportFilters:
    if not raw:
        return ReportFilters()
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        _logger.warning("Ignoring malformed report filters: %r", raw)
        return ReportFilters()
    if not isinstance(payload, dict):
        _logger.warning("Ignoring report filters that are not an object: %r", raw)
        return ReportFilters()

    try:
        category_id = _optional_id(payload.get("categoryId"))
        account_id = _optional_id(payload.get("accountId"))
        tag_ids = frozenset(int(tag_id) for tag_id in payload.get("tagIds") or [])
    except (TypeError, ValueError):
        _logger.warning("Ignoring report filters with non-numeric ids: %r", raw)
        return ReportFilters()
    return ReportFilters(category_id=category_id, account_id=account_id, tag_ids=tag_ids)


def apply_report_filters(
    transactions: Iterable[Transaction],
    filters: ReportFilters,
) -> list[Transaction]:
    results: list[Transaction] = []
    for txn in transactions:
        if filters.category_id is not None and txn.category_id != filters.category_id:
            continue
        if filters.account_id is not None and txn.account_id != filters.account_id:
            continue
        if filters.tag_ids and not (filters.tag_ids & set(txn.tag_ids)):
            continue
        results.append(txn)
    return results


def run_report(
    report: Report,
    transactions: Iterable[Transaction],
    categories: Sequence[Category],
) -> list[CategoryShare] | IncomeVsExpenses:
    selected = apply_report_filters(
        filter_by_window(transactions, report.start_date, report.end_date),
        parse_report_filters(report.filters),
    )
    if report.report_type == "categoryBreakdown":
        return category_breakdown(selected, categories)
    if report.report_type == "incomeVsExpenses":
        return income_vs_expenses(selected, categories)
    raise ValueError(f"Unsupported report type: {report.report_type}")


def report_usage(reports: Sequence[Report]) -> ReportUsage:
    if not reports:
        return ReportUsage(last_report_type=None, most_used_type=None)

    latest = max(reports, key=lambda report: report.created_at)
    counts = Counter(report.report_type for report in reports)
    most_used, _ = min(counts.items(), key=lambda item: (-item[1], item[0]))
    return ReportUsage(last_report_type=latest.report_type, most_used_type=most_used)


def _expense_totals(
    transactions: Iterable[Transaction],
    categories: Sequence[Category],
) -> tuple[dict[int, Decimal], dict[int, int], Decimal]:
    expense_ids = {category.id for category in categories if category.is_expense}
    totals: dict[int, Decimal] = {}
    counts: dict[int, int] = {}
    total_expense = ZERO
    for txn in transactions:
        if txn.category_id not in expense_ids:
            continue
        amount = abs(_coerce_amount(txn.amount))
        totals[txn.category_id] = totals.get(txn.category_id, ZERO) + amount
        counts[txn.category_id] = counts.get(txn.category_id, 0) + 1
        total_expense += amount
    return totals, counts, total_expense


def _rank_shares(
    totals: dict[int, Decimal],
    counts: dict[int, int],
    total_expense: Decimal,
    categories: Sequence[Category],
) -> list[CategoryShare]:
    names = {category.id: category.name for category in categories}
    shares = [
        CategoryShare(
            category_id=category_id,
            name=names[category_id],
            total=total,
            percentage=_percentage(total, total_expense),
            transaction_count=counts[category_id],
        )
        for category_id, total in totals.items()
    ]
    # sorted() is stable, so exact ties keep first-encounter order.
    return sorted(shares, key=lambda share: share.total, reverse=True)


def _ranked_totals(totals: dict[int, Decimal], category_map: dict[int, Category]) -> list[CategoryTotal]:
    return sorted(
        (
            CategoryTotal(category_id=category_id, name=category_map[category_id].name, total=total)
            for category_id, total in totals.items()
        ),
        key=lambda item: item.total,
        reverse=True,
    )


def _percentage(part: Decimal, whole: Decimal) -> Decimal:
    if whole <= ZERO:
        return ZERO
    return part / whole * HUNDRED


def _optional_id(value: object) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
