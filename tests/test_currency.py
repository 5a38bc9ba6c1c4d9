"""
Test suite for currency module

Tests conversion between boundary amounts and integer minor units.
Amounts with more precision than the currency allows must be rejected,
never rounded.
"""

import pytest
from decimal import Decimal

from fund_ledger.currency import (
    Currency, decimal_from_string, to_minor_units, from_minor_units,
    round_to_minor, format_amount
)
from fund_ledger.errors import ValidationError


class TestCurrency:
    """Test Currency enum"""

    def test_precision(self):
        """Test minor units per major unit"""
        assert Currency.USD.precision == 2
        assert Currency.USD.minor_per_major == 100
        assert Currency.JPY.minor_per_major == 1

    def test_from_code(self):
        """Test lookup by ISO code, case-insensitive"""
        assert Currency.from_code("usd") == Currency.USD
        assert Currency.from_code("EUR") == Currency.EUR

    def test_unknown_code(self):
        """Test unknown code is a validation error"""
        with pytest.raises(ValidationError) as exc_info:
            Currency.from_code("XYZ")
        assert exc_info.value.rule == "currency"


class TestDecimalFromString:
    """Test parsing of user-entered amounts"""

    def test_plain_and_symbols(self):
        """Test parsing amounts with and without symbols"""
        assert decimal_from_string("100.25") == Decimal("100.25")
        assert decimal_from_string("$1,234.56") == Decimal("1234.56")

    def test_comma_decimal_separator(self):
        """Test parsing a comma decimal separator"""
        assert decimal_from_string("1234,56") == Decimal("1234.56")
        assert decimal_from_string("1,234") == Decimal("1234")

    def test_invalid(self):
        """Test rejection of malformed amounts"""
        with pytest.raises(ValidationError):
            decimal_from_string("")
        with pytest.raises(ValidationError):
            decimal_from_string("abc")


class TestMinorUnits:
    """Test conversion into and out of minor units"""

    def test_to_minor_units(self):
        """Test strings, Decimals, ints and floats convert exactly"""
        assert to_minor_units("100.25") == 10025
        assert to_minor_units(Decimal("0.01")) == 1
        assert to_minor_units(5) == 500
        assert to_minor_units(0.1) == 10
        assert to_minor_units("-12.50") == -1250

    def test_jpy_has_no_minor_units(self):
        """Test a currency without minor units"""
        assert to_minor_units("1500", Currency.JPY) == 1500
        with pytest.raises(ValidationError):
            to_minor_units("1500.5", Currency.JPY)

    def test_excess_precision_rejected(self):
        """Test amounts are never silently rounded"""
        with pytest.raises(ValidationError) as exc_info:
            to_minor_units("10.005")
        assert exc_info.value.rule == "amount_precision"

    def test_rejects_non_numeric(self):
        """Test rejection of non-numeric input"""
        with pytest.raises(ValidationError):
            to_minor_units(True)
        with pytest.raises(ValidationError):
            to_minor_units(float("nan"))
        with pytest.raises(ValidationError):
            to_minor_units([1])

    def test_from_minor_units(self):
        """Test conversion back to major units"""
        assert from_minor_units(10025) == Decimal("100.25")
        assert from_minor_units(-1) == Decimal("-0.01")
        assert from_minor_units(1500, Currency.JPY) == Decimal("1500")

    def test_round_to_minor(self):
        """Test half-up rounding of fractional minor units"""
        assert round_to_minor(Decimal("2.5")) == 3
        assert round_to_minor(Decimal("2.49")) == 2
        assert round_to_minor(Decimal("-2.5")) == -3

    def test_format_amount(self):
        """Test display formatting"""
        assert format_amount(123456) == "USD 1,234.56"
        assert format_amount(1500, Currency.JPY) == "JPY 1,500"
