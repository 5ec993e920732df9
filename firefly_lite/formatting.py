from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

DEFAULT_CURRENCY = "USD"
CENTS = Decimal("0.01")

# en-US display symbols; any other well-formed code is printed as a prefix.
CURRENCY_SYMBOLS: dict[str, str] = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "CAD": "CA$",
    "AUD": "A$",
    "NZD": "NZ$",
    "MXN": "MX$",
    "BRL": "R$",
    "HKD": "HK$",
    "TWD": "NT$",
    "CNY": "CN¥",
    "INR": "₹",
    "KRW": "₩",
    "ILS": "₪",
    "VND": "₫",
    "PHP": "₱",
}

MONTH_ABBREVIATIONS = (
    "Jan",
    "Feb",
    "Mar",
    "Apr",
    "May",
    "Jun",
    "Jul",
    "Aug",
    "Sep",
    "Oct",
    "Nov",
    "Dec",
)


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def resolve_currency(value: str | None, fallback: str = DEFAULT_CURRENCY) -> str:
    """Return ``value`` normalized, or ``fallback`` when it is missing or malformed."""
    if value:
        try:
            return normalize_currency(value)
        except ValueError:
            pass
    return fallback


def format_currency(
    amount: Decimal | int | float | str,
    currency_code: str | None = None,
    *,
    preferred_currency: str | None = None,
) -> str:
    """Render ``amount`` as an en-US currency string with two decimals.

    ``currency_code`` wins over ``preferred_currency`` (the caller's stored
    setting), which wins over ``DEFAULT_CURRENCY``. A code that is not a
    well-formed ISO 4217 code is printed verbatim in front of the amount
    instead of raising. A non-finite amount raises ``ValueError``.
    """
    currency = currency_code or preferred_currency or DEFAULT_CURRENCY
    value = _coerce_amount(amount)
    if not value.is_finite():
        raise ValueError("Amount must be a finite number.")
    try:
        normalized = normalize_currency(currency)
    except ValueError:
        return f"{currency} {value.quantize(CENTS, rounding=ROUND_HALF_UP)}"

    rounded = value.quantize(CENTS, rounding=ROUND_HALF_UP)
    sign = "-" if rounded < 0 else ""
    digits = f"{abs(rounded):,.2f}"
    symbol = CURRENCY_SYMBOLS.get(normalized)
    if symbol is None:
        return f"{sign}{normalized} {digits}"
    return f"{sign}{symbol}{digits}"


def format_date(timestamp_millis: int) -> str:
    moment = datetime.fromtimestamp(timestamp_millis / 1000, tz=timezone.utc)
    return f"{MONTH_ABBREVIATIONS[moment.month - 1]} {moment.day}, {moment.year}"


def iso_date(timestamp_millis: int) -> str:
    return datetime.fromtimestamp(timestamp_millis / 1000, tz=timezone.utc).date().isoformat()


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
