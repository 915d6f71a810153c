"""
Arrears Module

Overdue-installment arithmetic. Everything here is a pure function of stored
loan fields and a reference date, so arrears can be re-derived at any time
without auxiliary state.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import date
from typing import Iterable, Optional
from enum import Enum

from .amortization import Periodicity, due_date_for


class LoanStatus(Enum):
    """Loan status, derived from balance and arrears"""
    ACTIVE = "active"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


# Fixed approximation of a period length, not calendar-exact
PERIOD_DAYS = {
    Periodicity.DAILY: 1,
    Periodicity.WEEKLY: 7,
    Periodicity.BIWEEKLY: 15,
    Periodicity.MONTHLY: 30,
}


def overdue_count(
    first_due_date: date,
    periodicity: Periodicity,
    installments_paid: int,
    term_count: int,
    today: date
) -> int:
    """
    Number of installments that should have been paid by ``today`` but were not

    Args:
        first_due_date: Due date of installment #1
        periodicity: Installment periodicity
        installments_paid: Fully paid installments so far
        term_count: Total installments
        today: Reference date

    Returns:
        Overdue installment count, between 0 and the unpaid installment count
    """
    if installments_paid >= term_count:
        return 0

    elapsed = (today - first_due_date).days
    if elapsed < 0:
        return 0

    expected = min(elapsed // PERIOD_DAYS[periodicity] + 1, term_count)
    return max(0, min(expected - installments_paid, term_count - installments_paid))


def next_due_date(
    first_due_date: date,
    periodicity: Periodicity,
    installments_paid: int,
    term_count: int
) -> Optional[date]:
    """Due date of the first unpaid installment, or None when all are paid"""
    if installments_paid >= term_count:
        return None
    return due_date_for(first_due_date, periodicity, installments_paid)


def derive_loan_status(outstanding_balance: Decimal, overdue: int,
                       cancelled: bool = False) -> LoanStatus:
    """Loan status from its balance and overdue count"""
    if cancelled:
        return LoanStatus.CANCELLED
    if outstanding_balance <= 0:
        return LoanStatus.PAID
    if overdue > 0:
        return LoanStatus.OVERDUE
    return LoanStatus.ACTIVE


def delinquency_rate(loans: Iterable, today: date) -> Decimal:
    """
    Percentage of open loans with at least one overdue installment

    Paid and cancelled loans are not counted. Returns 0 when there are no
    open loans.
    """
    open_loans = [
        loan for loan in loans
        if loan.status not in (LoanStatus.PAID, LoanStatus.CANCELLED)
    ]
    if not open_loans:
        return Decimal('0')

    delinquent = sum(
        1 for loan in open_loans
        if overdue_count(
            loan.first_due_date, loan.periodicity,
            loan.installments_paid_count, loan.term_count, today
        ) > 0
    )
    rate = Decimal(delinquent) * Decimal('100') / Decimal(len(open_loans))
    return rate.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
