"""
Amortization Module

Flat-rate amortization for route-collected microloans. Interest is the
principal times a single flat rate, charged once over the whole term and
divided evenly across installments. The insurance fee is withheld at
disbursement and never enters the repayable total.
"""

from decimal import Decimal
from datetime import date, timedelta
from dataclasses import dataclass
from typing import List, Optional
from enum import Enum
import calendar

from .currency import Currency, Number, to_decimal, round_amount
from .exceptions import ValidationError


class Periodicity(Enum):
    """How often installments fall due"""
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


class Weekday(Enum):
    """Collection weekday, numbered like date.weekday()"""
    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6


# Days between consecutive due dates for fixed-step periodicities
STEP_DAYS = {
    Periodicity.DAILY: 1,
    Periodicity.WEEKLY: 7,
    Periodicity.BIWEEKLY: 15,
}


@dataclass
class AmortizationResult:
    """Totals for a flat-rate loan"""
    principal: Decimal
    insurance_fee: Decimal
    interest_total: Decimal
    total_amount: Decimal
    installment_value: Decimal
    amount_delivered: Decimal  # Cash handed to the client after the insurance fee


@dataclass
class ScheduledInstallment:
    """Single entry in an amortization schedule"""
    sequence_number: int
    due_date: date
    scheduled_value: Decimal
    principal_portion: Decimal
    interest_portion: Decimal


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of shorter months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def due_date_for(first_due_date: date, periodicity: Periodicity, index: int) -> date:
    """
    Due date of the installment ``index`` positions after the first one

    Monthly dates are always derived from the first due date so clamping in
    a short month does not drift into later months.
    """
    if periodicity == Periodicity.MONTHLY:
        return add_months(first_due_date, index)
    return first_due_date + timedelta(days=STEP_DAYS[periodicity] * index)


class AmortizationCalculator:
    """
    Computes loan totals, first due dates and installment schedules

    Stateless apart from the origination limits it is configured with.
    """

    def __init__(
        self,
        currency: Currency = Currency.COP,
        max_principal: Optional[Decimal] = None,
        max_term_count: Optional[int] = None
    ):
        self.currency = currency
        self.max_principal = max_principal
        self.max_term_count = max_term_count

    def validate(
        self,
        principal: Decimal,
        flat_rate: Decimal,
        term_count: int,
        insurance_fee: Decimal
    ) -> None:
        """Reject terms a loan can never be originated with"""
        if isinstance(term_count, bool) or not isinstance(term_count, int):
            raise ValidationError("term_count must be an integer", field="term_count")
        if term_count < 1:
            raise ValidationError("term_count must be at least 1", field="term_count")
        if self.max_term_count is not None and term_count > self.max_term_count:
            raise ValidationError(
                f"term_count must not exceed {self.max_term_count}", field="term_count"
            )
        if principal <= 0:
            raise ValidationError("principal must be positive", field="principal")
        if self.max_principal is not None and principal > self.max_principal:
            raise ValidationError(
                f"principal must not exceed {self.max_principal}", field="principal"
            )
        if flat_rate < 0:
            raise ValidationError("flat_rate must not be negative", field="flat_rate")
        if flat_rate > 1:
            raise ValidationError("flat_rate must not exceed 1 (100%)", field="flat_rate")
        if insurance_fee < 0:
            raise ValidationError("insurance_fee must not be negative", field="insurance_fee")
        if insurance_fee >= principal:
            raise ValidationError(
                "insurance_fee must be less than principal", field="insurance_fee"
            )

    def _parse(self, value: Number, field: str) -> Decimal:
        try:
            return to_decimal(value)
        except ValueError as e:
            raise ValidationError(str(e), field=field) from e

    def _parse_amount(self, value: Number, field: str) -> Decimal:
        amount = self._parse(value, field)
        if amount != round_amount(amount, self.currency):
            raise ValidationError(
                f"{field} has more decimal places than {self.currency.code} allows",
                field=field
            )
        return round_amount(amount, self.currency)

    def compute(
        self,
        principal: Number,
        flat_rate: Number,
        term_count: int,
        insurance_fee: Number = Decimal('0')
    ) -> AmortizationResult:
        """
        Compute totals for a flat-rate loan

        Args:
            principal: Amount lent
            flat_rate: Interest for the whole term as a fraction (0.20 = 20%)
            term_count: Number of installments
            insurance_fee: Fee withheld at disbursement

        Returns:
            AmortizationResult

        Raises:
            ValidationError: If any term is out of range
        """
        principal = self._parse_amount(principal, "principal")
        flat_rate = self._parse(flat_rate, "flat_rate")
        insurance_fee = self._parse_amount(insurance_fee, "insurance_fee")
        self.validate(principal, flat_rate, term_count, insurance_fee)

        interest_total = round_amount(principal * flat_rate, self.currency)
        total_amount = principal + interest_total

        return AmortizationResult(
            principal=principal,
            insurance_fee=insurance_fee,
            interest_total=interest_total,
            total_amount=total_amount,
            installment_value=round_amount(total_amount / Decimal(term_count), self.currency),
            amount_delivered=principal - insurance_fee
        )

    def first_due_date(
        self,
        disbursement_date: date,
        periodicity: Periodicity,
        anchor_weekday: Optional[Weekday] = None
    ) -> date:
        """
        First installment due date

        Weekly and biweekly loans anchored to a weekday fall due on the first
        occurrence of that weekday at least seven days after disbursement, so
        a client never pays in the same week the cash was handed over.
        """
        if periodicity == Periodicity.DAILY:
            return disbursement_date + timedelta(days=1)

        if periodicity in (Periodicity.WEEKLY, Periodicity.BIWEEKLY):
            if anchor_weekday is None:
                return disbursement_date + timedelta(days=STEP_DAYS[periodicity])
            delta = (anchor_weekday.value - disbursement_date.weekday()) % 7
            return disbursement_date + timedelta(days=7 if delta == 0 else delta + 7)

        if periodicity == Periodicity.MONTHLY:
            return add_months(disbursement_date, 1)

        raise ValidationError(f"Unsupported periodicity: {periodicity}", field="periodicity")

    def build_schedule(
        self,
        principal: Number,
        flat_rate: Number,
        term_count: int,
        first_due_date: date,
        periodicity: Periodicity,
        insurance_fee: Number = Decimal('0')
    ) -> List[ScheduledInstallment]:
        """
        Generate one entry per installment

        Every installment but the last is worth the rounded installment value;
        the last absorbs the rounding remainder so the schedule sums exactly
        to the total amount. Interest is spread with cumulative rounding and
        principal is the rest of each installment.
        """
        result = self.compute(principal, flat_rate, term_count, insurance_fee)
        n = Decimal(term_count)

        schedule = []
        interest_assigned = Decimal('0')
        for index in range(term_count):
            sequence = index + 1
            if sequence < term_count:
                scheduled_value = result.installment_value
            else:
                scheduled_value = result.total_amount - result.installment_value * (term_count - 1)

            cumulative_interest = round_amount(
                result.interest_total * Decimal(sequence) / n, self.currency
            )
            interest_portion = cumulative_interest - interest_assigned
            interest_assigned = cumulative_interest
            principal_portion = scheduled_value - interest_portion

            if scheduled_value <= 0 or principal_portion < 0:
                raise ValidationError(
                    f"term_count {term_count} is too large for a total of "
                    f"{result.total_amount}; the final installment would be empty",
                    field="term_count"
                )

            schedule.append(ScheduledInstallment(
                sequence_number=sequence,
                due_date=due_date_for(first_due_date, periodicity, index),
                scheduled_value=scheduled_value,
                principal_portion=principal_portion,
                interest_portion=interest_portion
            ))

        return schedule
