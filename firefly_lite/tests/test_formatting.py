import unittest
from decimal import Decimal

from firefly_lite.formatting import (
    format_currency,
    format_date,
    iso_date,
    normalize_currency,
    resolve_currency,
)

JAN_15_2025 = 1736899200000


class FormatCurrencyTests(unittest.TestCase):
    def test_defaults_to_usd(self) -> None:
        self.assertEqual(format_currency(Decimal("1234.5")), "$1,234.50")

    def test_negative_amounts_keep_sign_before_symbol(self) -> None:
        self.assertEqual(format_currency(Decimal("-1234.567")), "-$1,234.57")

    def test_rounds_half_up(self) -> None:
        self.assertEqual(format_currency(Decimal("0.125")), "$0.13")

    def test_explicit_code_beats_preference(self) -> None:
        self.assertEqual(format_currency("10", "eur", preferred_currency="GBP"), "€10.00")

    def test_preference_used_when_no_code(self) -> None:
        self.assertEqual(format_currency(5, preferred_currency="GBP"), "£5.00")

    def test_unknown_but_well_formed_code_is_prefixed(self) -> None:
        self.assertEqual(format_currency(Decimal("1000"), "XYZ"), "XYZ 1,000.00")

    def test_malformed_code_falls_back_to_plain_amount(self) -> None:
        self.assertEqual(format_currency(Decimal("12.3"), "DOLLARS"), "DOLLARS 12.30")

    def test_non_finite_amount_raises_value_error(self) -> None:
        for amount in (Decimal("Infinity"), Decimal("-Infinity"), Decimal("NaN"), float("inf")):
            with self.subTest(amount=amount):
                with self.assertRaises(ValueError):
                    format_currency(amount)


class CurrencyCodeTests(unittest.TestCase):
    def test_normalize_currency_uppercases(self) -> None:
        self.assertEqual(normalize_currency(" cad "), "CAD")

    def test_normalize_currency_rejects_bad_codes(self) -> None:
        with self.assertRaises(ValueError):
            normalize_currency("US")

    def test_resolve_currency_falls_back(self) -> None:
        self.assertEqual(resolve_currency(None), "USD")
        self.assertEqual(resolve_currency("nope", "EUR"), "EUR")
        self.assertEqual(resolve_currency("jpy"), "JPY")


class FormatDateTests(unittest.TestCase):
    def test_short_month_day_year(self) -> None:
        self.assertEqual(format_date(JAN_15_2025), "Jan 15, 2025")

    def test_iso_date(self) -> None:
        self.assertEqual(iso_date(JAN_15_2025 + 3_600_000), "2025-01-15")


if __name__ == "__main__":
    unittest.main()
