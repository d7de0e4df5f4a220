"""
Unit tests for Money and Currency.

Verifies:
- Float prohibition
- Minor-unit rounding per currency
- Same-currency arithmetic and comparison
"""

from decimal import ROUND_DOWN, Decimal

import pytest

from discount_kernel.domain.values import Currency, Money


class TestConstruction:

    def test_of_parses_strings_and_ints(self):
        assert Money.of("10.50", "usd").amount == Decimal("10.50")
        assert Money.of(7, "JPY").amount == Decimal("7")

    def test_currency_normalised(self):
        assert Money.of("1", "eur").currency == Currency("EUR")

    def test_float_rejected(self):
        with pytest.raises(TypeError):
            Money(10.5, "USD")

    def test_non_finite_rejected(self):
        with pytest.raises(ValueError):
            Money(Decimal("Infinity"), "USD")

    def test_unknown_currency(self):
        with pytest.raises(ValueError, match="Invalid ISO 4217"):
            Currency("ZZZ")

    def test_zero(self):
        zero = Money.zero("USD")
        assert zero.is_zero
        assert not zero.is_positive


class TestRounding:

    @pytest.mark.parametrize(
        "currency, amount, expected",
        [
            ("USD", "10.555", "10.56"),
            ("USD", "10.554", "10.55"),
            ("JPY", "100.5", "101"),
            ("KWD", "1.2345", "1.235"),
        ],
    )
    def test_round_half_up_to_minor_unit(self, currency, amount, expected):
        assert Money.of(amount, currency).round().amount == Decimal(expected)

    def test_truncate(self):
        assert Money.of("10.559", "USD").truncate().amount == Decimal("10.55")
        assert Money.of("10.559", "USD").round(ROUND_DOWN) == Money.of("10.55", "USD")

    def test_minor_unit(self):
        assert Currency("USD").minor_unit == Decimal("0.01")
        assert Currency("JPY").minor_unit == Decimal("1")
        assert Currency("BHD").minor_unit == Decimal("0.001")


class TestArithmetic:

    def test_add_and_subtract(self):
        a = Money.of("10.00", "USD")
        b = Money.of("2.50", "USD")
        assert a + b == Money.of("12.50", "USD")
        assert a - b == Money.of("7.50", "USD")
        assert (-b).is_negative

    def test_multiply_by_decimal(self):
        assert Money.of("10.00", "USD") * Decimal("0.15") == Money.of("1.5000", "USD")

    def test_multiply_by_float_rejected(self):
        with pytest.raises(TypeError):
            Money.of("10.00", "USD") * 0.15

    def test_currency_mismatch(self):
        with pytest.raises(ValueError, match="Currency mismatch"):
            Money.of("1", "USD") + Money.of("1", "EUR")
        with pytest.raises(ValueError):
            Money.of("1", "USD") < Money.of("1", "EUR")

    def test_comparison(self):
        assert Money.of("1.00", "USD") < Money.of("1.01", "USD")
        assert Money.of("1.00", "USD") >= Money.of("1", "USD")

    def test_str_and_repr(self):
        m = Money.of("3.30", "USD")
        assert str(m) == "3.30 USD"
        assert repr(m) == "Money('3.30', 'USD')"
