"""
Payment Allocation Module

Distributes cash received from a client across the loan's open installments,
oldest first, and reverses allocations. Every allocation or reversal is a
single unit of work: installments, payment records and the loan balance are
written together or not at all.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import List, Optional, Union
import uuid

from .arrears import LoanStatus
from .audit import AuditTrail, AuditEventType
from .config import MicroloanConfig
from .currency import Number, to_decimal, round_amount
from .exceptions import NotFoundError, ValidationError
from .loans import (
    LoanManager, Installment, InstallmentStatus, PaymentRecord, PaymentKind,
    PaymentMethod, OPEN_INSTALLMENT_STATUSES, installment_status_for, coerce_enum
)
from .logging_config import get_logger, log_action
from .storage import StorageInterface


logger = get_logger("microloan.payments")


@dataclass
class AllocationResult:
    """Outcome of one allocation"""
    loan_id: str
    amount: Decimal
    payments: List[PaymentRecord] = field(default_factory=list)
    installments: List[Installment] = field(default_factory=list)  # Touched, in allocation order
    outstanding_balance: Decimal = Decimal('0')
    loan_status: LoanStatus = LoanStatus.ACTIVE
    loan_version: int = 0

    @property
    def applied(self) -> Decimal:
        return sum((payment.amount for payment in self.payments), Decimal('0'))


@dataclass
class ReversalResult:
    """Outcome of a reversal"""
    loan_id: str
    installment_id: str
    payments_removed: int
    amount_reversed: Decimal
    installment_status: InstallmentStatus
    outstanding_balance: Decimal
    loan_status: LoanStatus


class PaymentAllocator:
    """
    Applies and reverses client payments

    Outstanding balances change only through this class.
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager: Optional[LoanManager] = None,
        audit_trail: Optional[AuditTrail] = None,
        config: Optional[MicroloanConfig] = None
    ):
        self.storage = storage
        self.loan_manager = loan_manager or LoanManager(storage, audit_trail, config)
        self.audit_trail = audit_trail or self.loan_manager.audit_trail
        self.currency = self.loan_manager.currency

    def allocate(
        self,
        loan_id: str,
        amount: Number,
        payment_date: Optional[date] = None,
        method: Union[PaymentMethod, str] = PaymentMethod.CASH,
        notes: Optional[str] = None,
        collector_id: Optional[str] = None,
        today: Optional[date] = None,
        receipt_number: Optional[str] = None,
        expected_version: Optional[int] = None
    ) -> AllocationResult:
        """
        Apply a payment to the loan's open installments, oldest first

        Args:
            loan_id: Loan receiving the payment
            amount: Cash received
            payment_date: Date the cash was collected (defaults to today)
            method: Payment method
            notes: Free text stored on every payment record
            collector_id: Collector who received the cash (defaults to the loan's)
            today: Reference date for overdue marking (defaults to date.today())
            receipt_number: Receipt printed for the client
            expected_version: Loan version the caller last read

        Returns:
            AllocationResult

        Raises:
            ValidationError: Non-positive amount, cancelled loan, fully paid
                schedule, or an amount above the total outstanding
            NotFoundError: Loan or schedule missing
            ConflictError: Loan version differs from expected_version
        """
        try:
            amount = to_decimal(amount)
        except ValueError as e:
            raise ValidationError(str(e), field="amount") from e
        if amount <= 0:
            raise ValidationError("amount must be positive", field="amount")
        if amount != round_amount(amount, self.currency):
            raise ValidationError(
                f"amount has more decimal places than {self.currency.code} allows",
                field="amount"
            )
        amount = round_amount(amount, self.currency)
        method = coerce_enum(PaymentMethod, method, "method")
        today = today or date.today()
        payment_date = payment_date or today

        with self.storage.atomic():
            loan = self.loan_manager.get_loan(loan_id)
            self.loan_manager.check_version(loan, expected_version)
            if loan.is_cancelled:
                raise ValidationError(f"loan {loan_id} is cancelled")

            installments = self.loan_manager.get_installments(loan_id)
            if not installments:
                raise NotFoundError("installment schedule", loan_id)

            eligible = [i for i in installments if i.status in OPEN_INSTALLMENT_STATUSES]
            total_outstanding = sum(
                (max(i.outstanding, Decimal('0')) for i in eligible), Decimal('0')
            )
            if total_outstanding <= 0:
                raise ValidationError("no pending installments remain for this loan")
            if amount > total_outstanding:
                raise ValidationError(
                    f"amount exceeds total outstanding ({amount} > {total_outstanding})",
                    field="amount"
                )

            result = AllocationResult(loan_id=loan_id, amount=amount)
            remaining = amount
            now = datetime.now(timezone.utc)

            for installment in eligible:
                if remaining <= 0:
                    break
                outstanding = installment.outstanding
                if outstanding <= 0:
                    continue

                applied = min(remaining, outstanding)
                new_amount_paid = installment.amount_paid + applied
                installment.status = installment_status_for(installment, new_amount_paid, today)
                installment.amount_paid = new_amount_paid
                installment.payment_date = payment_date
                installment.updated_at = now
                self.loan_manager.save_installment(installment)

                payment = PaymentRecord(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    installment_id=installment.id,
                    loan_id=loan_id,
                    amount=applied,
                    payment_date=payment_date,
                    collector_id=collector_id or loan.collector_id,
                    kind=PaymentKind.FULL if installment.is_paid else PaymentKind.PARTIAL,
                    method=method,
                    receipt_number=receipt_number,
                    notes=notes
                )
                self.storage.save(self.loan_manager.payments_table, payment.id, payment.to_dict())

                result.payments.append(payment)
                result.installments.append(installment)
                remaining -= applied

            self.loan_manager.recalculate(loan, installments, today)
            self.loan_manager.save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_ALLOCATED,
                entity_type="loan",
                entity_id=loan_id,
                metadata={
                    "amount": amount,
                    "payment_date": payment_date,
                    "method": method.value,
                    "payment_ids": [p.id for p in result.payments],
                    "installments": [i.sequence_number for i in result.installments],
                    "outstanding_balance": loan.outstanding_balance
                }
            )

        result.outstanding_balance = loan.outstanding_balance
        result.loan_status = loan.status
        result.loan_version = loan.version

        log_action(
            logger, "info", "payment_allocated", action="allocate", resource=loan_id,
            amount=str(amount), installments_touched=len(result.installments),
            outstanding_balance=str(loan.outstanding_balance)
        )
        return result

    def reverse(self, installment_id: str, today: Optional[date] = None) -> ReversalResult:
        """
        Undo every payment applied to an installment

        All payment records of the installment are deleted and it goes back
        to pending with nothing paid. Calling it again is a no-op.

        Raises:
            NotFoundError: If the installment does not exist
        """
        today = today or date.today()

        with self.storage.atomic():
            installment = self.loan_manager.get_installment(installment_id)
            loan = self.loan_manager.get_loan(installment.loan_id)
            payments = self.loan_manager.get_installment_payments(installment_id)

            already_reset = (
                not payments
                and installment.amount_paid == 0
                and installment.status == InstallmentStatus.PENDING
                and installment.payment_date is None
            )
            if already_reset:
                return ReversalResult(
                    loan_id=loan.id,
                    installment_id=installment_id,
                    payments_removed=0,
                    amount_reversed=Decimal('0'),
                    installment_status=installment.status,
                    outstanding_balance=loan.outstanding_balance,
                    loan_status=loan.status
                )

            for payment in payments:
                self.storage.delete(self.loan_manager.payments_table, payment.id)
            amount_reversed = installment.amount_paid

            installment.amount_paid = Decimal('0')
            installment.status = InstallmentStatus.PENDING
            installment.payment_date = None
            installment.updated_at = datetime.now(timezone.utc)
            self.loan_manager.save_installment(installment)

            installments = self.loan_manager.get_installments(loan.id)
            self.loan_manager.recalculate(loan, installments, today)
            self.loan_manager.save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.INSTALLMENT_REVERSED,
                entity_type="installment",
                entity_id=installment_id,
                metadata={
                    "loan_id": loan.id,
                    "payment_ids": [p.id for p in payments],
                    "amount_reversed": amount_reversed
                }
            )

        log_action(
            logger, "info", "installment_reversed", action="reverse", resource=installment_id,
            loan_id=loan.id, payments_removed=len(payments), amount_reversed=str(amount_reversed)
        )
        return ReversalResult(
            loan_id=loan.id,
            installment_id=installment_id,
            payments_removed=len(payments),
            amount_reversed=amount_reversed,
            installment_status=installment.status,
            outstanding_balance=loan.outstanding_balance,
            loan_status=loan.status
        )

    def reverse_payment(self, payment_id: str, today: Optional[date] = None) -> ReversalResult:
        """
        Undo a single payment record

        The installment is rebuilt from its remaining payment records: the
        amount paid is their sum and the payment date the latest of them.

        Raises:
            NotFoundError: If the payment does not exist
        """
        today = today or date.today()

        with self.storage.atomic():
            payment = self.loan_manager.get_payment(payment_id)
            installment = self.loan_manager.get_installment(payment.installment_id)
            loan = self.loan_manager.get_loan(installment.loan_id)

            self.storage.delete(self.loan_manager.payments_table, payment_id)
            remaining = self.loan_manager.get_installment_payments(installment.id)

            amount_paid = sum((p.amount for p in remaining), Decimal('0'))
            installment.status = installment_status_for(installment, amount_paid, today)
            installment.amount_paid = amount_paid
            installment.payment_date = max((p.payment_date for p in remaining), default=None)
            installment.updated_at = datetime.now(timezone.utc)
            self.loan_manager.save_installment(installment)

            installments = self.loan_manager.get_installments(loan.id)
            self.loan_manager.recalculate(loan, installments, today)
            self.loan_manager.save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_REVERSED,
                entity_type="payment",
                entity_id=payment_id,
                metadata={
                    "loan_id": loan.id,
                    "installment_id": installment.id,
                    "amount": payment.amount
                }
            )

        log_action(
            logger, "info", "payment_reversed", action="reverse_payment", resource=payment_id,
            loan_id=loan.id, amount=str(payment.amount)
        )
        return ReversalResult(
            loan_id=loan.id,
            installment_id=installment.id,
            payments_removed=1,
            amount_reversed=payment.amount,
            installment_status=installment.status,
            outstanding_balance=loan.outstanding_balance,
            loan_status=loan.status
        )
