"""
Test suite for amortization module

Tests flat-rate totals, first due date rules, schedule generation and
origination limits. All financial math must be exact.
"""

import pytest
from decimal import Decimal
from datetime import date, timedelta

from microloan.amortization import (
    AmortizationCalculator, Periodicity, Weekday, add_months, due_date_for
)
from microloan.currency import Currency
from microloan.exceptions import ValidationError


class TestCompute:
    """Test loan totals"""

    def setup_method(self):
        self.calculator = AmortizationCalculator(
            max_principal=Decimal('100000000'), max_term_count=100
        )

    def test_reference_loan(self):
        """Test 1,000,000 at 20% over 10 installments"""
        result = self.calculator.compute(Decimal('1000000'), Decimal('0.20'), 10)

        assert result.interest_total == Decimal('200000')
        assert result.total_amount == Decimal('1200000')
        assert result.installment_value == Decimal('120000')
        assert result.amount_delivered == Decimal('1000000')

    def test_insurance_not_added_to_total(self):
        """Test insurance fee is withheld from the cash delivered, not repaid"""
        result = self.calculator.compute("1000000", "0.20", 10, insurance_fee="30000")

        assert result.total_amount == Decimal('1200000')
        assert result.amount_delivered == Decimal('970000')
        assert result.insurance_fee == Decimal('30000')

    def test_installment_value_rounds_half_up(self):
        """Test installment value is rounded to whole pesos"""
        result = self.calculator.compute("100000", "0.10", 3)

        assert result.total_amount == Decimal('110000')
        assert result.installment_value == Decimal('36667')

    def test_zero_rate(self):
        """Test an interest-free loan"""
        result = self.calculator.compute("500000", "0", 5)
        assert result.interest_total == Decimal('0')
        assert result.installment_value == Decimal('100000')

    def test_two_decimal_currency(self):
        """Test rounding to cents for a two-decimal currency"""
        calculator = AmortizationCalculator(currency=Currency.USD)
        result = calculator.compute("1000.00", "0.15", 7)

        assert result.interest_total == Decimal('150.00')
        assert result.installment_value == Decimal('164.29')

    @pytest.mark.parametrize("principal,rate,term,insurance,field", [
        ("0", "0.2", 10, "0", "principal"),
        ("-100", "0.2", 10, "0", "principal"),
        ("100000", "-0.1", 10, "0", "flat_rate"),
        ("100000", "1.5", 10, "0", "flat_rate"),
        ("100000", "0.2", 0, "0", "term_count"),
        ("100000", "0.2", 101, "0", "term_count"),
        ("100000", "0.2", 10, "-1", "insurance_fee"),
        ("100000", "0.2", 10, "100000", "insurance_fee"),
        ("200000000", "0.2", 10, "0", "principal"),
        ("1000.5", "0.2", 10, "0", "principal"),
    ])
    def test_invalid_terms(self, principal, rate, term, insurance, field):
        """Test out-of-range terms are rejected with the offending field"""
        with pytest.raises(ValidationError) as exc_info:
            self.calculator.compute(principal, rate, term, insurance)
        assert exc_info.value.field == field

    def test_float_principal_rejected(self):
        """Test floats never enter monetary math"""
        with pytest.raises(ValidationError):
            self.calculator.compute(1000000.0, "0.2", 10)


class TestFirstDueDate:
    """Test first due date rules"""

    def setup_method(self):
        self.calculator = AmortizationCalculator()
        self.monday = date(2024, 1, 1)

    def test_daily(self):
        """Test daily loans fall due the next day"""
        assert self.calculator.first_due_date(self.monday, Periodicity.DAILY) == date(2024, 1, 2)

    def test_weekly_and_biweekly_without_anchor(self):
        """Test fixed offsets when no weekday is given"""
        assert self.calculator.first_due_date(self.monday, Periodicity.WEEKLY) == date(2024, 1, 8)
        assert self.calculator.first_due_date(self.monday, Periodicity.BIWEEKLY) == date(2024, 1, 16)

    def test_anchor_same_weekday_is_next_week(self):
        """Test an anchor equal to the disbursement weekday skips a full week"""
        due = self.calculator.first_due_date(self.monday, Periodicity.WEEKLY, Weekday.MONDAY)
        assert due == date(2024, 1, 8)

    def test_anchor_later_weekday(self):
        """Test an anchor later in the week lands in the following week"""
        due = self.calculator.first_due_date(self.monday, Periodicity.WEEKLY, Weekday.WEDNESDAY)
        assert due == date(2024, 1, 10)

    def test_anchor_earlier_weekday(self):
        """Test an anchor earlier in the week than disbursement"""
        wednesday = date(2024, 1, 3)
        due = self.calculator.first_due_date(wednesday, Periodicity.BIWEEKLY, Weekday.MONDAY)
        assert due == date(2024, 1, 15)

    def test_anchor_always_at_least_seven_days_out(self):
        """Test every disbursement/anchor pair lands 7 to 13 days out on the anchor"""
        for offset in range(7):
            disbursed = self.monday + timedelta(days=offset)
            for weekday in Weekday:
                due = self.calculator.first_due_date(disbursed, Periodicity.WEEKLY, weekday)
                assert due.weekday() == weekday.value
                assert 7 <= (due - disbursed).days <= 13

    def test_monthly_clamps_to_month_end(self):
        """Test Jan 31 rolls to the last day of February"""
        assert self.calculator.first_due_date(date(2024, 1, 31), Periodicity.MONTHLY) == date(2024, 2, 29)
        assert self.calculator.first_due_date(date(2023, 1, 31), Periodicity.MONTHLY) == date(2023, 2, 28)
        assert self.calculator.first_due_date(date(2024, 3, 15), Periodicity.MONTHLY) == date(2024, 4, 15)


class TestSchedule:
    """Test schedule generation"""

    def setup_method(self):
        self.calculator = AmortizationCalculator()

    def test_even_schedule(self):
        """Test a schedule that divides exactly"""
        schedule = self.calculator.build_schedule(
            "1000000", "0.20", 10, date(2024, 1, 8), Periodicity.WEEKLY
        )

        assert [entry.sequence_number for entry in schedule] == list(range(1, 11))
        for entry in schedule:
            assert entry.scheduled_value == Decimal('120000')
            assert entry.principal_portion == Decimal('100000')
            assert entry.interest_portion == Decimal('20000')
        assert schedule[1].due_date == date(2024, 1, 15)
        assert schedule[-1].due_date == date(2024, 3, 11)

    def test_remainder_goes_to_last_installment(self):
        """Test the schedule sums exactly to the loan totals"""
        schedule = self.calculator.build_schedule(
            "100000", "0.10", 3, date(2024, 1, 2), Periodicity.DAILY
        )

        assert [e.scheduled_value for e in schedule] == [
            Decimal('36667'), Decimal('36667'), Decimal('36666')
        ]
        assert sum(e.scheduled_value for e in schedule) == Decimal('110000')
        assert sum(e.principal_portion for e in schedule) == Decimal('100000')
        assert sum(e.interest_portion for e in schedule) == Decimal('10000')
        for entry in schedule:
            assert entry.principal_portion + entry.interest_portion == entry.scheduled_value

    def test_schedule_sums_for_awkward_terms(self):
        """Test exact sums across a range of terms"""
        for term in (1, 6, 7, 13, 29, 30):
            schedule = self.calculator.build_schedule(
                "1234567", "0.17", term, date(2024, 1, 2), Periodicity.DAILY
            )
            totals = self.calculator.compute("1234567", "0.17", term)
            assert len(schedule) == term
            assert sum(e.scheduled_value for e in schedule) == totals.total_amount
            assert sum(e.interest_portion for e in schedule) == totals.interest_total
            assert all(e.principal_portion >= 0 for e in schedule)

    def test_monthly_dates_do_not_drift(self):
        """Test monthly dates are computed from the first due date"""
        schedule = self.calculator.build_schedule(
            "300000", "0.20", 4, date(2024, 1, 31), Periodicity.MONTHLY
        )
        assert [e.due_date for e in schedule] == [
            date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)
        ]

    def test_biweekly_step(self):
        """Test biweekly installments are fifteen days apart"""
        schedule = self.calculator.build_schedule(
            "300000", "0.20", 3, date(2024, 1, 16), Periodicity.BIWEEKLY
        )
        assert [e.due_date for e in schedule] == [
            date(2024, 1, 16), date(2024, 1, 31), date(2024, 2, 15)
        ]

    def test_term_too_large_for_amount(self):
        """Test a schedule whose last installment would be empty is rejected"""
        with pytest.raises(ValidationError):
            self.calculator.build_schedule("150", "0", 100, date(2024, 1, 2), Periodicity.DAILY)


class TestDateHelpers:
    """Test date arithmetic helpers"""

    def test_add_months_across_year(self):
        """Test adding months across a year boundary"""
        assert add_months(date(2024, 11, 30), 3) == date(2025, 2, 28)

    def test_due_date_for_daily(self):
        """Test fixed-step due dates"""
        assert due_date_for(date(2024, 1, 2), Periodicity.DAILY, 9) == date(2024, 1, 11)
