from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Optional

from firefly_lite.statuses import InvoiceStatus

ZERO = Decimal("0")
DEFAULT_TAX_RATE = Decimal("0.10")


@dataclass(frozen=True)
class InvoiceLineItem:
    name: str
    quantity: int
    unit_price: Decimal


@dataclass(frozen=True)
class InvoiceTotals:
    subtotal: Decimal
    tax: Decimal
    total: Decimal


@dataclass(frozen=True)
class Invoice:
    id: int
    invoice_number: str
    customer_id: int
    customer_name: str
    issue_date: int
    due_date: int
    status: InvoiceStatus
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    notes: str = ""
    items: tuple[InvoiceLineItem, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class InvoiceStats:
    total_invoices: int
    unpaid_count: int
    overdue_count: int
    total_paid_value: Decimal


def line_item_total(quantity: int, unit_price: Decimal | int | str) -> Decimal:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValueError("quantity must be a positive integer.")
    price = _coerce_amount(unit_price)
    if price < ZERO:
        raise ValueError("unit_price must not be negative.")
    return quantity * price


def calculate_subtotal(items: Iterable[InvoiceLineItem]) -> Decimal:
    return sum((line_item_total(item.quantity, item.unit_price) for item in items), ZERO)


def calculate_tax(subtotal: Decimal, tax_rate: Decimal = DEFAULT_TAX_RATE) -> Decimal:
    return _coerce_amount(subtotal) * _coerce_amount(tax_rate)


def calculate_total(subtotal: Decimal, tax: Decimal) -> Decimal:
    return _coerce_amount(subtotal) + _coerce_amount(tax)


def calculate_invoice_totals(
    items: Iterable[InvoiceLineItem],
    tax_rate: Decimal = DEFAULT_TAX_RATE,
) -> InvoiceTotals:
    subtotal = calculate_subtotal(items)
    tax = calculate_tax(subtotal, tax_rate)
    return InvoiceTotals(subtotal=subtotal, tax=tax, total=calculate_total(subtotal, tax))


def format_invoice_number(invoice_id: int) -> str:
    return f"INV-{invoice_id:05d}"


def invoice_stats(invoices: Iterable[Invoice]) -> InvoiceStats:
    total_invoices = 0
    unpaid_count = 0
    overdue_count = 0
    total_paid_value = ZERO
    for invoice in invoices:
        total_invoices += 1
        if invoice.status.is_unpaid:
            unpaid_count += 1
        if invoice.status is InvoiceStatus.OVERDUE:
            overdue_count += 1
        if invoice.status is InvoiceStatus.PAID:
            total_paid_value += invoice.total
    return InvoiceStats(
        total_invoices=total_invoices,
        unpaid_count=unpaid_count,
        overdue_count=overdue_count,
        total_paid_value=total_paid_value,
    )


def filter_invoices(
    invoices: Iterable[Invoice],
    *,
    status: Optional[InvoiceStatus] = None,
    customer_id: Optional[int] = None,
    start_date: Optional[int] = None,
    end_date: Optional[int] = None,
    search: Optional[str] = None,
) -> list[Invoice]:
    query = search.strip().lower() if search else ""
    results: list[Invoice] = []
    for invoice in invoices:
        if status is not None and invoice.status is not status:
            continue
        if customer_id is not None and invoice.customer_id != customer_id:
            continue
        if start_date is not None and invoice.issue_date < start_date:
            continue
        if end_date is not None and invoice.issue_date > end_date:
            continue
        if query and query not in invoice.invoice_number.lower() and query not in invoice.customer_name.lower():
            continue
        results.append(invoice)
    return results


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
