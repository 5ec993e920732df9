from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

REPORT_TYPE_LABELS = {
    "categoryBreakdown": "Category Breakdown",
    "incomeVsExpenses": "Income vs. Expenses",
}


@dataclass(frozen=True)
class Account:
    id: int
    name: str
    balance: Decimal = Decimal("0")


@dataclass(frozen=True)
class Category:
    id: int
    name: str
    is_expense: bool


@dataclass(frozen=True)
class Tag:
    id: int
    name: str


@dataclass(frozen=True)
class Transaction:
    id: int
    account_id: int
    category_id: int
    amount: Decimal
    date: int
    tag_ids: frozenset[int] = field(default_factory=frozenset)


@dataclass(frozen=True)
class BudgetLimit:
    category_id: int
    limit_amount: Decimal


@dataclass(frozen=True)
class Budget:
    id: int
    month: int
    category_limits: tuple[BudgetLimit, ...] = ()
    carry_over: Decimal = Decimal("0")


@dataclass(frozen=True)
class Report:
    id: int
    name: str
    report_type: str
    start_date: int
    end_date: int
    filters: Optional[str] = None
    created_at: int = 0
    updated_at: int = 0
