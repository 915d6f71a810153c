"""
Test suite for arrears module

Tests overdue installment counting, next due date, status derivation and
route delinquency rate.
"""

import pytest
from decimal import Decimal
from datetime import date, timedelta
from types import SimpleNamespace

from microloan.amortization import Periodicity
from microloan.arrears import (
    LoanStatus, PERIOD_DAYS, overdue_count, next_due_date,
    derive_loan_status, delinquency_rate
)


class TestOverdueCount:
    """Test overdue installment counting"""

    def setup_method(self):
        self.first_due = date(2024, 1, 8)

    def test_before_first_due_date(self):
        """Test nothing is overdue before the first due date"""
        assert overdue_count(self.first_due, Periodicity.WEEKLY, 0, 10, date(2024, 1, 7)) == 0

    def test_on_first_due_date(self):
        """Test the first installment counts once its due date is reached"""
        assert overdue_count(self.first_due, Periodicity.WEEKLY, 0, 10, self.first_due) == 1

    def test_weekly_progression(self):
        """Test expected installments grow one per period"""
        assert overdue_count(self.first_due, Periodicity.WEEKLY, 1, 10, date(2024, 1, 22)) == 2
        assert overdue_count(self.first_due, Periodicity.WEEKLY, 3, 10, date(2024, 1, 22)) == 0

    def test_capped_at_term(self):
        """Test the count never exceeds the unpaid installments"""
        far_future = date(2030, 1, 1)
        assert overdue_count(self.first_due, Periodicity.WEEKLY, 2, 5, far_future) == 3
        assert overdue_count(self.first_due, Periodicity.DAILY, 0, 5, far_future) == 5

    def test_fully_paid(self):
        """Test a fully paid loan has nothing overdue"""
        assert overdue_count(self.first_due, Periodicity.MONTHLY, 10, 10, date(2030, 1, 1)) == 0

    @pytest.mark.parametrize("periodicity", list(Periodicity))
    def test_monotonic_in_today(self, periodicity):
        """Test the count never decreases as time passes"""
        previous = 0
        for offset in range(-10, 400):
            today = self.first_due + timedelta(days=offset)
            current = overdue_count(self.first_due, periodicity, 2, 12, today)
            assert current >= previous
            previous = current

    def test_drops_to_zero_when_caught_up(self):
        """Test paying up to the expected count clears arrears"""
        today = self.first_due + timedelta(days=PERIOD_DAYS[Periodicity.BIWEEKLY] * 3)
        assert overdue_count(self.first_due, Periodicity.BIWEEKLY, 1, 10, today) == 3
        assert overdue_count(self.first_due, Periodicity.BIWEEKLY, 4, 10, today) == 0

    def test_monthly_uses_thirty_day_periods(self):
        """Test monthly arrears use a fixed thirty-day approximation"""
        assert overdue_count(date(2024, 1, 31), Periodicity.MONTHLY, 0, 6, date(2024, 3, 1)) == 2


class TestNextDueDate:
    """Test next due date lookup"""

    def test_next_unpaid(self):
        """Test the due date of the first unpaid installment"""
        assert next_due_date(date(2024, 1, 8), Periodicity.WEEKLY, 2, 10) == date(2024, 1, 22)
        assert next_due_date(date(2024, 1, 31), Periodicity.MONTHLY, 1, 10) == date(2024, 2, 29)

    def test_none_when_paid(self):
        """Test no next due date once every installment is paid"""
        assert next_due_date(date(2024, 1, 8), Periodicity.WEEKLY, 10, 10) is None


class TestDeriveLoanStatus:
    """Test loan status derivation"""

    def test_statuses(self):
        """Test each status is reachable"""
        assert derive_loan_status(Decimal('100'), 0) == LoanStatus.ACTIVE
        assert derive_loan_status(Decimal('100'), 2) == LoanStatus.OVERDUE
        assert derive_loan_status(Decimal('0'), 3) == LoanStatus.PAID
        assert derive_loan_status(Decimal('100'), 2, cancelled=True) == LoanStatus.CANCELLED


class TestDelinquencyRate:
    """Test delinquency rate"""

    def _loan(self, status, paid, first_due=date(2024, 1, 8)):
        return SimpleNamespace(
            status=status, first_due_date=first_due, periodicity=Periodicity.WEEKLY,
            installments_paid_count=paid, term_count=10
        )

    def test_rate(self):
        """Test paid and cancelled loans are excluded from the base"""
        today = date(2024, 1, 22)  # Three installments expected
        loans = [
            self._loan(LoanStatus.ACTIVE, 3),
            self._loan(LoanStatus.OVERDUE, 1),
            self._loan(LoanStatus.ACTIVE, 0),
            self._loan(LoanStatus.PAID, 10),
            self._loan(LoanStatus.CANCELLED, 0),
        ]
        assert delinquency_rate(loans, today) == Decimal('66.67')

    def test_no_open_loans(self):
        """Test an empty book has a zero rate"""
        assert delinquency_rate([], date(2024, 1, 22)) == Decimal('0')
