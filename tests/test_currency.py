"""
Tests for currency precision helpers
"""

import pytest
from decimal import Decimal

from microloan.currency import Currency, to_decimal, round_amount, format_amount


class TestCurrency:
    """Test Currency metadata"""

    def test_precision(self):
        """Test pesos are whole units and dollars carry cents"""
        assert Currency.COP.code == "COP"
        assert Currency.COP.precision == 0
        assert Currency.COP.quantum == Decimal('1')
        assert Currency.USD.quantum == Decimal('0.01')


class TestConversion:
    """Test conversion and rounding"""

    def test_to_decimal(self):
        """Test accepted input types"""
        assert to_decimal(150000) == Decimal('150000')
        assert to_decimal(" 0.20 ") == Decimal('0.20')
        value = Decimal('1.5')
        assert to_decimal(value) is value

    def test_float_rejected(self):
        """Test floats never become money"""
        with pytest.raises(ValueError):
            to_decimal(0.1)

    def test_garbage_rejected(self):
        """Test unparseable strings raise ValueError"""
        with pytest.raises(ValueError):
            to_decimal("ten pesos")

    def test_round_half_up(self):
        """Test halves round away from zero"""
        assert round_amount("2.5") == Decimal('3')
        assert round_amount("-2.5") == Decimal('-3')
        assert round_amount("10.005", Currency.USD) == Decimal('10.01')
        assert round_amount("33333.3333") == Decimal('33333')

    def test_format(self):
        """Test display formatting"""
        assert format_amount(Decimal('1200000')) == "COP 1,200,000"
        assert format_amount(Decimal('1234.5'), Currency.USD) == "USD 1,234.50"
