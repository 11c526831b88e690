"""
Test suite for decimal arithmetic helpers

Money must never drift: these tests pin exact Decimal behaviour, NaN
propagation and half-up rounding to cents.
"""

import pytest
from decimal import Decimal

from microfinance.currency import (
    Currency, ZERO, add, subtract, is_invalid, to_decimal,
    decimal_from_string, round_money
)


class TestToDecimal:
    """Test coercion of stored and submitted values"""

    def test_strings_and_numbers(self):
        """Test that strings, ints and floats become exact decimals"""
        assert to_decimal("1100.50") == Decimal("1100.50")
        assert to_decimal(1100) == Decimal("1100")
        assert to_decimal(0.1) == Decimal("0.1")
        assert to_decimal(Decimal("7.25")) == Decimal("7.25")

    def test_missing_values_are_zero(self):
        """Test that None and blank strings count as zero"""
        assert to_decimal(None) == ZERO
        assert to_decimal("") == ZERO
        assert to_decimal("   ") == ZERO

    def test_unreadable_values_are_nan(self):
        """Test that garbage comes back as NaN instead of raising"""
        assert is_invalid(to_decimal("abc"))
        assert is_invalid(to_decimal("NaN"))
        assert is_invalid(to_decimal(True))
        assert is_invalid(to_decimal(["1"]))

    def test_currency_formatting_is_stripped(self):
        """Test parsing of display-formatted amounts"""
        assert decimal_from_string("₹1,100.50") == Decimal("1100.50")
        assert decimal_from_string(" -25 ") == Decimal("-25")
        assert decimal_from_string("Rs. 500") == Decimal("500")
        assert decimal_from_string("INR 12,00,000") == Decimal("1200000")

    def test_exponent_notation(self):
        """Test that scientific notation keeps its value"""
        assert decimal_from_string("1e3") == Decimal("1000")
        assert str(decimal_from_string("1e3")) == "1000"
        assert decimal_from_string("2.5E-1") == Decimal("0.25")

    @pytest.mark.parametrize("raw", ["12abc", "abc12", "1e3x", "1-2", "12..5", "1,,2", "₹", "e3"])
    def test_stray_characters_are_rejected(self, raw):
        """Test that text mixed into a number is not silently dropped"""
        with pytest.raises(ValueError):
            decimal_from_string(raw)
        assert is_invalid(to_decimal(raw))

    def test_decimal_from_string_rejects_special_values(self):
        """Test that nan/infinity text is refused"""
        with pytest.raises(ValueError):
            decimal_from_string("Infinity")
        with pytest.raises(ValueError):
            decimal_from_string("")


class TestArithmetic:
    """Test exact add/subtract"""

    def test_no_float_drift(self):
        """Test the classic 0.1 + 0.2 case"""
        assert add("0.1", "0.2") == Decimal("0.3")
        assert add(0.1, 0.2) == Decimal("0.3")

    def test_many_small_additions(self):
        """Test that a thousand paise add up exactly"""
        total = ZERO
        for _ in range(1000):
            total = add(total, "0.01")
        assert total == Decimal("10.00")

    def test_subtract(self):
        assert subtract("2200.00", "1100") == Decimal("1100.00")
        assert subtract("0", "0.01") == Decimal("-0.01")

    def test_nan_propagates(self):
        """Test that a corrupt operand poisons the result"""
        assert is_invalid(add("1100", "corrupt"))
        assert is_invalid(subtract("corrupt", "1100"))
        assert is_invalid(add(Decimal("NaN"), "1"))

    def test_is_invalid(self):
        assert is_invalid(Decimal("NaN"))
        assert is_invalid(Decimal("Infinity"))
        assert is_invalid("1.00")
        assert not is_invalid(Decimal("1.00"))


class TestRounding:
    """Test half-up rounding to the currency minor unit"""

    def test_half_up(self):
        """Test that .005 rounds away from zero"""
        assert round_money(Decimal("2.345")) == Decimal("2.35")
        assert round_money(Decimal("2.344")) == Decimal("2.34")
        assert round_money(Decimal("0.125")) == Decimal("0.13")

    def test_quantum(self):
        assert Currency.INR.quantum == Decimal("0.01")
        assert round_money(Decimal("1100")) == Decimal("1100.00")
