"""
Loan Module

Handles loan origination, installment schedule persistence, arrears refresh
and loan lifecycle management. Outstanding balances are changed only by the
payment allocator, which reuses the recalculation helpers defined here.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
from enum import Enum
import uuid

from .amortization import AmortizationCalculator, Periodicity, Weekday
from .arrears import (
    LoanStatus, overdue_count, next_due_date, derive_loan_status, delinquency_rate
)
from .audit import AuditTrail, AuditEventType
from .config import MicroloanConfig, get_config
from .currency import Currency, Number, to_decimal
from .exceptions import ConflictError, NotFoundError, ValidationError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


logger = get_logger("microloan.loans")


class InstallmentStatus(Enum):
    """Installment states"""
    PENDING = "pending"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"


# Installments that can still receive cash
OPEN_INSTALLMENT_STATUSES = (
    InstallmentStatus.PENDING,
    InstallmentStatus.PARTIALLY_PAID,
    InstallmentStatus.OVERDUE,
)


class PaymentKind(Enum):
    """How a payment record relates to its installment"""
    INSTALLMENT = "installment"
    PARTIAL = "partial"
    FULL = "full"
    ADVANCE = "advance"


class PaymentMethod(Enum):
    """How the client paid"""
    CASH = "cash"
    TRANSFER = "transfer"
    CHECK = "check"
    OTHER = "other"


@dataclass
class Loan(StorageRecord):
    """Flat-rate microloan with its running balance"""
    client_id: str
    route_id: str
    collector_id: str
    principal: Decimal
    flat_rate: Decimal               # Whole-term rate, e.g. 0.20 for 20%
    term_count: int
    periodicity: Periodicity
    insurance_fee: Decimal
    disbursement_date: date
    first_due_date: date
    interest_total: Decimal
    total_amount: Decimal            # principal + interest_total
    installment_value: Decimal
    outstanding_balance: Decimal
    installments_paid_count: int = 0
    status: LoanStatus = LoanStatus.ACTIVE
    currency: str = "COP"
    anchor_weekday: Optional[Weekday] = None
    version: int = 1                 # Bumped on every write
    notes: Optional[str] = None

    @property
    def amount_paid(self) -> Decimal:
        return self.total_amount - self.outstanding_balance

    @property
    def is_cancelled(self) -> bool:
        return self.status == LoanStatus.CANCELLED


@dataclass
class Installment(StorageRecord):
    """One scheduled repayment of a loan"""
    loan_id: str
    sequence_number: int
    due_date: date
    scheduled_value: Decimal
    principal_portion: Decimal
    interest_portion: Decimal
    amount_paid: Decimal = Decimal('0')
    payment_date: Optional[date] = None
    status: InstallmentStatus = InstallmentStatus.PENDING
    notes: Optional[str] = None

    @property
    def outstanding(self) -> Decimal:
        return self.scheduled_value - self.amount_paid

    @property
    def is_paid(self) -> bool:
        return self.status == InstallmentStatus.PAID


@dataclass
class PaymentRecord(StorageRecord):
    """Cash applied to a single installment; append-only"""
    installment_id: str
    loan_id: str
    amount: Decimal
    payment_date: date
    collector_id: str
    kind: PaymentKind
    method: PaymentMethod = PaymentMethod.CASH
    receipt_number: Optional[str] = None
    notes: Optional[str] = None


def installment_status_for(installment: Installment, amount_paid: Decimal,
                           today: date) -> InstallmentStatus:
    """
    Status an installment takes once ``amount_paid`` has been applied

    Paid when fully covered, partially paid when something was applied,
    otherwise pending. Anything unpaid past its due date is overdue.
    """
    if amount_paid >= installment.scheduled_value:
        return InstallmentStatus.PAID
    if amount_paid > 0:
        status = InstallmentStatus.PARTIALLY_PAID
    else:
        status = InstallmentStatus.PENDING
    if installment.due_date < today:
        return InstallmentStatus.OVERDUE
    return status


def coerce_enum(enum_type, value, field: str):
    if isinstance(value, enum_type) or value is None:
        return value
    if isinstance(value, str) and value.upper() in enum_type.__members__:
        return enum_type[value.upper()]
    try:
        return enum_type(value)
    except ValueError as e:
        choices = ", ".join(str(member.value) for member in enum_type)
        raise ValidationError(f"{field} must be one of: {choices}", field=field) from e


class LoanManager:
    """
    Manages loan lifecycle from disbursement through payoff
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        config: Optional[MicroloanConfig] = None
    ):
        self.storage = storage
        self.config = config or get_config()
        self.audit_trail = audit_trail or AuditTrail(
            storage, enabled=self.config.enable_audit_logging
        )

        try:
            self.currency = Currency[self.config.currency.upper()]
        except KeyError:
            raise ValueError(f"Unsupported currency: {self.config.currency}")

        self.calculator = AmortizationCalculator(
            currency=self.currency,
            max_principal=Decimal(self.config.max_principal),
            max_term_count=self.config.max_term_count
        )

        self.loans_table = "loans"
        self.installments_table = "installments"
        self.payments_table = "payment_records"

    def create_loan(
        self,
        client_id: str,
        route_id: str,
        collector_id: str,
        principal: Number,
        flat_rate: Number,
        term_count: int,
        periodicity: Union[Periodicity, str],
        disbursement_date: date,
        insurance_fee: Number = Decimal('0'),
        anchor_weekday: Optional[Union[Weekday, int]] = None,
        notes: Optional[str] = None
    ) -> Loan:
        """
        Disburse a new loan and persist its installment schedule

        The loan and every installment are written in one unit of work.

        Returns:
            Created Loan

        Raises:
            ValidationError: If any term is invalid
        """
        for field, value in (("client_id", client_id), ("route_id", route_id),
                             ("collector_id", collector_id)):
            if not value:
                raise ValidationError(f"{field} is required", field=field)

        periodicity = coerce_enum(Periodicity, periodicity, "periodicity")
        anchor_weekday = coerce_enum(Weekday, anchor_weekday, "anchor_weekday")

        totals = self.calculator.compute(principal, flat_rate, term_count, insurance_fee)
        first_due = self.calculator.first_due_date(disbursement_date, periodicity, anchor_weekday)
        schedule = self.calculator.build_schedule(
            principal, flat_rate, term_count, first_due, periodicity, insurance_fee
        )

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            client_id=client_id,
            route_id=route_id,
            collector_id=collector_id,
            principal=totals.principal,
            flat_rate=to_decimal(flat_rate),
            term_count=term_count,
            periodicity=periodicity,
            insurance_fee=totals.insurance_fee,
            disbursement_date=disbursement_date,
            first_due_date=first_due,
            interest_total=totals.interest_total,
            total_amount=totals.total_amount,
            installment_value=totals.installment_value,
            outstanding_balance=totals.total_amount,
            currency=self.currency.code,
            anchor_weekday=anchor_weekday,
            notes=notes
        )

        installments = [
            Installment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                sequence_number=entry.sequence_number,
                due_date=entry.due_date,
                scheduled_value=entry.scheduled_value,
                principal_portion=entry.principal_portion,
                interest_portion=entry.interest_portion
            )
            for entry in schedule
        ]

        with self.storage.atomic():
            self.storage.save(self.loans_table, loan.id, loan.to_dict())
            for installment in installments:
                self.save_installment(installment)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_CREATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "client_id": client_id,
                    "route_id": route_id,
                    "collector_id": collector_id,
                    "principal": loan.principal,
                    "flat_rate": loan.flat_rate,
                    "term_count": term_count,
                    "periodicity": periodicity.value,
                    "total_amount": loan.total_amount,
                    "first_due_date": first_due
                }
            )

        log_action(
            logger, "info", "loan_created", action="create_loan", resource=loan.id,
            route_id=route_id, principal=str(loan.principal), term_count=term_count
        )
        return loan

    def get_loan(self, loan_id: str) -> Loan:
        """
        Raises:
            NotFoundError: If the loan does not exist
        """
        data = self.storage.load(self.loans_table, loan_id)
        if not data:
            raise NotFoundError("loan", loan_id)
        return Loan.from_dict(data)

    def get_installment(self, installment_id: str) -> Installment:
        data = self.storage.load(self.installments_table, installment_id)
        if not data:
            raise NotFoundError("installment", installment_id)
        return Installment.from_dict(data)

    def get_installments(self, loan_id: str) -> List[Installment]:
        """Installments of a loan, ascending by sequence number"""
        installments = [
            Installment.from_dict(data)
            for data in self.storage.find(self.installments_table, {"loan_id": loan_id})
        ]
        installments.sort(key=lambda x: x.sequence_number)
        return installments

    def get_payment(self, payment_id: str) -> PaymentRecord:
        data = self.storage.load(self.payments_table, payment_id)
        if not data:
            raise NotFoundError("payment", payment_id)
        return PaymentRecord.from_dict(data)

    def get_payments(self, loan_id: str) -> List[PaymentRecord]:
        """Payment records of a loan, newest first"""
        payments = [
            PaymentRecord.from_dict(data)
            for data in self.storage.find(self.payments_table, {"loan_id": loan_id})
        ]
        payments.sort(key=lambda x: (x.payment_date, x.created_at), reverse=True)
        return payments

    def get_installment_payments(self, installment_id: str) -> List[PaymentRecord]:
        return [
            PaymentRecord.from_dict(data)
            for data in self.storage.find(self.payments_table, {"installment_id": installment_id})
        ]

    def get_route_loans(self, route_id: str,
                        status: Optional[LoanStatus] = None) -> List[Loan]:
        """Loans on a route, newest disbursement first"""
        filters: Dict[str, Any] = {"route_id": route_id}
        if status is not None:
            filters["status"] = status.value
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda x: (x.disbursement_date, x.created_at), reverse=True)
        return loans

    def save_loan(self, loan: Loan) -> None:
        """Persist a loan, bumping its version"""
        loan.version += 1
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def save_installment(self, installment: Installment) -> None:
        self.storage.save(self.installments_table, installment.id, installment.to_dict())

    def recalculate(self, loan: Loan, installments: List[Installment], today: date) -> Loan:
        """
        Re-derive balance, paid count and status from the installments

        The caller is responsible for saving the loan.
        """
        paid_total = sum((i.amount_paid for i in installments), Decimal('0'))
        loan.outstanding_balance = loan.total_amount - paid_total
        loan.installments_paid_count = sum(1 for i in installments if i.is_paid)
        overdue = overdue_count(
            loan.first_due_date, loan.periodicity,
            loan.installments_paid_count, loan.term_count, today
        )
        loan.status = derive_loan_status(loan.outstanding_balance, overdue, loan.is_cancelled)
        return loan

    def refresh_arrears(self, loan_id: str, today: Optional[date] = None) -> int:
        """
        Mark unpaid installments past their due date as overdue and re-derive
        the loan status

        Returns:
            Overdue installment count
        """
        today = today or date.today()

        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            if loan.is_cancelled:
                return 0

            installments = self.get_installments(loan_id)
            for installment in installments:
                if (installment.status in (InstallmentStatus.PENDING, InstallmentStatus.PARTIALLY_PAID)
                        and installment.due_date < today):
                    installment.status = InstallmentStatus.OVERDUE
                    installment.updated_at = datetime.now(timezone.utc)
                    self.save_installment(installment)

            overdue = overdue_count(
                loan.first_due_date, loan.periodicity,
                loan.installments_paid_count, loan.term_count, today
            )
            new_status = derive_loan_status(loan.outstanding_balance, overdue)
            if new_status != loan.status:
                old_status = loan.status
                loan.status = new_status
                self.save_loan(loan)
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_STATUS_CHANGED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={
                        "old_status": old_status.value,
                        "new_status": new_status.value,
                        "overdue_count": overdue
                    }
                )

        return overdue

    def loan_summary(self, loan_id: str, today: Optional[date] = None) -> Dict[str, Any]:
        """Progress figures for a loan detail view"""
        today = today or date.today()
        loan = self.get_loan(loan_id)
        installments = self.get_installments(loan_id)

        paid = sum(1 for i in installments if i.is_paid)
        next_installment = next(
            (i for i in installments if i.status in OPEN_INSTALLMENT_STATUSES), None
        )
        progress = Decimal('0')
        if loan.total_amount > 0:
            progress = (loan.amount_paid * Decimal('100') / loan.total_amount).quantize(Decimal('0.01'))

        return {
            "loan_id": loan.id,
            "status": loan.status.value,
            "total_installments": len(installments),
            "paid_installments": paid,
            "pending_installments": len(installments) - paid,
            "total_amount": loan.total_amount,
            "amount_paid": loan.amount_paid,
            "outstanding_balance": loan.outstanding_balance,
            "overdue_count": 0 if loan.is_cancelled else overdue_count(
                loan.first_due_date, loan.periodicity, paid, loan.term_count, today
            ),
            "next_due_date": next_due_date(
                loan.first_due_date, loan.periodicity, paid, loan.term_count
            ),
            "next_installment": {
                "installment_id": next_installment.id,
                "sequence_number": next_installment.sequence_number,
                "due_date": next_installment.due_date,
                "outstanding": next_installment.outstanding,
            } if next_installment else None,
            "progress_percentage": progress,
        }

    def route_delinquency_rate(self, route_id: str, today: Optional[date] = None) -> Decimal:
        """Share of open loans on a route that are behind on payments"""
        return delinquency_rate(self.get_route_loans(route_id), today or date.today())

    def cancel_loan(self, loan_id: str, reason: Optional[str] = None) -> Loan:
        """
        Cancel a loan that has not received any payment

        Raises:
            ValidationError: If the loan is cancelled or has payments applied
        """
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            if loan.is_cancelled:
                raise ValidationError(f"loan {loan_id} is already cancelled")
            if loan.amount_paid > 0 or self.get_payments(loan_id):
                raise ValidationError(
                    f"loan {loan_id} has payments applied and cannot be cancelled"
                )

            loan.status = LoanStatus.CANCELLED
            if reason:
                loan.notes = f"{loan.notes}\n{reason}" if loan.notes else reason
            self.save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_CANCELLED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"reason": reason}
            )

        log_action(logger, "info", "loan_cancelled", action="cancel_loan", resource=loan_id)
        return loan

    def check_version(self, loan: Loan, expected_version: Optional[int]) -> None:
        """
        Raises:
            ConflictError: If the loan changed since the caller read it
        """
        if expected_version is not None and loan.version != expected_version:
            raise ConflictError(
                f"loan {loan.id} was modified concurrently "
                f"(expected version {expected_version}, found {loan.version})"
            )
