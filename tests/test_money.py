"""
Tests for money arithmetic and business calendar helpers
"""

import pytest
from datetime import date, datetime
from decimal import Decimal

from loan_servicing.money import (
    ZERO, fix2, sum2, max0, clamp_percent, normalize_rate, normalize_percent,
    percent_of, to_decimal, within_tolerance, money_str
)
from loan_servicing.dates import add_months, days_between, iter_days, parse_date, business_today
from loan_servicing.errors import ValidationError


class TestMoney:
    """Test Decimal helpers"""

    def test_fix2_rounds_half_up(self):
        """Test two-decimal rounding"""
        assert fix2(Decimal('1.005')) == Decimal('1.01')
        assert fix2(Decimal('1.004')) == Decimal('1.00')
        assert fix2('2.5') == Decimal('2.50')

    def test_to_decimal(self):
        """Test conversion of mixed inputs"""
        assert to_decimal(None) == Decimal('0')
        assert to_decimal("") == Decimal('0')
        assert to_decimal(0.1) == Decimal('0.1')
        assert to_decimal("12.34") == Decimal('12.34')

        with pytest.raises(ValueError, match="Invalid numeric value"):
            to_decimal("abc")

    def test_sum2_rounds_each_step(self):
        """Test summing with per-step rounding"""
        assert sum2(['0.005', '0.005']) == Decimal('0.02')
        assert sum2([]) == ZERO

    def test_max0(self):
        """Test flooring at zero"""
        assert max0(Decimal('-3')) == ZERO
        assert max0(Decimal('3.456')) == Decimal('3.46')

    def test_rates_and_percents(self):
        """Test rate normalization"""
        assert normalize_rate(60) == Decimal('0.6')
        assert normalize_rate('0.6') == Decimal('0.6')
        assert normalize_percent('0.25') == Decimal('25')
        assert normalize_percent(None, default=10) == Decimal('10')
        assert normalize_percent(150) == Decimal('100')
        assert clamp_percent(-5) == Decimal('0')

    def test_percent_of(self):
        """Test percentage of an amount"""
        assert percent_of(800, 10) == Decimal('80.00')
        assert percent_of('333.33', '33.333') == Decimal('111.11')

    def test_tolerance_and_formatting(self):
        """Test tolerance comparison and serialization"""
        assert within_tolerance('10.00', '10.01')
        assert not within_tolerance('10.00', '10.02')
        assert money_str(5) == "5.00"


class TestDates:
    """Test calendar helpers"""

    def test_add_months_clamps_month_end(self):
        """Test month arithmetic at month end"""
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2024, 11, 15), 3) == date(2025, 2, 15)
        assert add_months(date(2024, 1, 1), 0) == date(2024, 1, 1)

    def test_days_and_iteration(self):
        """Test day counting"""
        assert days_between(date(2024, 1, 31), date(2024, 2, 5)) == 5
        assert days_between(date(2024, 2, 5), date(2024, 1, 31)) == -5
        days = list(iter_days(date(2024, 1, 30), date(2024, 2, 2)))
        assert len(days) == 4
        assert days[-1] == date(2024, 2, 2)
        assert list(iter_days(date(2024, 2, 2), date(2024, 2, 1))) == []

    def test_parse_date(self):
        """Test ISO date parsing"""
        assert parse_date(None) is None
        assert parse_date("") is None
        assert parse_date("2024-03-05") == date(2024, 3, 5)
        assert parse_date("2024-03-05T10:00:00") == date(2024, 3, 5)
        assert parse_date(datetime(2024, 3, 5, 10, 0)) == date(2024, 3, 5)

    def test_parse_date_rejects_garbage(self):
        """Test invalid dates raise a validation error"""
        with pytest.raises(ValidationError, match="Invalid as_of") as exc_info:
            parse_date("2024-13-01", "as_of")
        assert exc_info.value.code == "INVALID_DATE"
        assert exc_info.value.status == 400

    def test_business_today(self):
        """Test business date in an explicit timezone"""
        assert isinstance(business_today("UTC"), date)
