from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from firefly_lite.records import Budget, BudgetLimit, Category, Transaction

ZERO = Decimal("0")
HUNDRED = Decimal("100")

STATUS_OK = "ok"
STATUS_OVER = "over"
STATUS_NOT_SET = "not_set"


@dataclass(frozen=True)
class CategoryBudgetStatus:
    category_id: int
    limit_amount: Decimal
    spent: Decimal
    remaining: Decimal
    percentage_used: Optional[Decimal]
    status: str


@dataclass(frozen=True)
class BudgetSummary:
    month: int
    carry_over: Decimal
    total_expense_budget: Decimal
    actual_income: Decimal
    actual_expenses: Decimal
    remaining_expense_budget: Decimal
    categories: list[CategoryBudgetStatus]


def month_key(year: int, month: int) -> int:
    if not 1 <= month <= 12:
        raise ValueError("month must be between 1 and 12.")
    if year < 1:
        raise ValueError("year must be positive.")
    return year * 100 + month


def split_month_key(key: int) -> tuple[int, int]:
    year, month = divmod(int(key), 100)
    month_key(year, month)
    return year, month


def previous_month_key(key: int) -> int:
    year, month = split_month_key(key)
    if month == 1:
        return month_key(year - 1, 12)
    return month_key(year, month - 1)


def next_month_key(key: int) -> int:
    year, month = split_month_key(key)
    if month == 12:
        return month_key(year + 1, 1)
    return month_key(year, month + 1)


def month_bounds(key: int) -> tuple[int, int]:
    """Inclusive ``(start, end)`` millisecond timestamps of a month, in UTC."""
    year, month = split_month_key(key)
    next_year, next_month = split_month_key(next_month_key(key))
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    following = datetime(next_year, next_month, 1, tzinfo=timezone.utc)
    return int(start.timestamp() * 1000), int(following.timestamp() * 1000) - 1


def month_key_for_timestamp(timestamp_millis: int) -> int:
    moment = datetime.fromtimestamp(timestamp_millis / 1000, tz=timezone.utc)
    return month_key(moment.year, moment.month)


def find_budget_for_month(budgets: Iterable[Budget], key: int) -> Optional[Budget]:
    for budget in budgets:
        if budget.month == key:
            return budget
    return None


def monthly_expense_spend(
    transactions: Iterable[Transaction],
    categories: Sequence[Category],
    key: int,
) -> dict[int, Decimal]:
    start, end = month_bounds(key)
    expense_ids = {category.id for category in categories if category.is_expense}
    spend: dict[int, Decimal] = {}
    for txn in transactions:
        if not start <= txn.date <= end:
            continue
        if txn.category_id not in expense_ids:
            continue
        spend[txn.category_id] = spend.get(txn.category_id, ZERO) + abs(_coerce_amount(txn.amount))
    return spend


def evaluate_budget(
    budget: Budget,
    transactions: Iterable[Transaction],
    categories: Sequence[Category],
) -> list[CategoryBudgetStatus]:
    spend = monthly_expense_spend(transactions, categories, budget.month)
    return [_evaluate_limit(limit, spend.get(limit.category_id, ZERO)) for limit in budget.category_limits]


def compute_carry_over(
    budgets: Iterable[Budget],
    transactions: Iterable[Transaction],
    categories: Sequence[Category],
    key: int,
) -> Decimal:
    previous_key = previous_month_key(key)
    previous = find_budget_for_month(budgets, previous_key)
    if previous is None:
        return ZERO

    total_limit = sum((_coerce_amount(limit.limit_amount) for limit in previous.category_limits), ZERO)
    # All expense categories count here, budgeted or not.
    total_spent = sum(monthly_expense_spend(transactions, categories, previous_key).values(), ZERO)
    return total_limit - total_spent


def summarize_month(
    budget: Optional[Budget],
    transactions: Iterable[Transaction],
    categories: Sequence[Category],
    key: int,
) -> BudgetSummary:
    start, end = month_bounds(key)
    category_map = {category.id: category for category in categories}
    in_month = [txn for txn in transactions if start <= txn.date <= end]

    actual_income = ZERO
    actual_expenses = ZERO
    for txn in in_month:
        category = category_map.get(txn.category_id)
        if category is None:
            continue
        if category.is_expense:
            actual_expenses += abs(_coerce_amount(txn.amount))
        else:
            actual_income += _coerce_amount(txn.amount)

    statuses = evaluate_budget(budget, in_month, categories) if budget is not None else []
    total_expense_budget = sum((status.limit_amount for status in statuses), ZERO)
    return BudgetSummary(
        month=key,
        carry_over=budget.carry_over if budget is not None else ZERO,
        total_expense_budget=total_expense_budget,
        actual_income=actual_income,
        actual_expenses=actual_expenses,
        remaining_expense_budget=total_expense_budget - actual_expenses,
        categories=statuses,
    )


def validate_limits(
    limits: Iterable[BudgetLimit],
    categories: Sequence[Category],
) -> list[BudgetLimit]:
    category_map = {category.id: category for category in categories}
    seen: set[int] = set()
    validated: list[BudgetLimit] = []
    for limit in limits:
        category = category_map.get(limit.category_id)
        if category is None:
            raise ValueError(f"Category {limit.category_id} not found.")
        if not category.is_expense:
            raise ValueError(f'Category "{category.name}" is not an expense category.')
        if limit.category_id in seen:
            raise ValueError(f'Category "{category.name}" has more than one limit.')
        amount = _coerce_amount(limit.limit_amount)
        if not amount.is_finite() or amount < ZERO:
            raise ValueError("Budget limits must be zero or greater.")
        seen.add(limit.category_id)
        validated.append(BudgetLimit(category_id=limit.category_id, limit_amount=amount))
    return validated


def _evaluate_limit(limit: BudgetLimit, spent: Decimal) -> CategoryBudgetStatus:
    limit_amount = _coerce_amount(limit.limit_amount)
    remaining = limit_amount - spent
    if limit_amount <= ZERO:
        return CategoryBudgetStatus(
            category_id=limit.category_id,
            limit_amount=limit_amount,
            spent=spent,
            remaining=remaining,
            percentage_used=None,
            status=STATUS_NOT_SET,
        )
    return CategoryBudgetStatus(
        category_id=limit.category_id,
        limit_amount=limit_amount,
        spent=spent,
        remaining=remaining,
        percentage_used=spent / limit_amount * HUNDRED,
        status=STATUS_OK if spent <= limit_amount else STATUS_OVER,
    )


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
