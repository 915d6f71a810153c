"""
Daily Cash Reconciliation Module

End-of-day accounting for a collector's route. A collector leaves with a
daily float, collects installments, disburses new loans (keeping the
insurance fee) and pays route expenses. At the end of the day the cash handed
back is compared with what should have come back:

    theoretical = float + collected + insurance - new loans - approved expenses
    difference  = actual returned - theoretical

Each (date, route, collector) group is reconciled exactly once. The stored
record is terminal.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, timezone, date
from dataclasses import dataclass
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .arrears import LoanStatus
from .audit import AuditTrail, AuditEventType
from .config import MicroloanConfig, get_config
from .currency import Currency, Number, to_decimal, round_amount
from .exceptions import ConflictError, NotFoundError, ValidationError
from .loans import Loan, PaymentRecord
from .logging_config import get_logger, log_action
from .retry import retry_read
from .storage import StorageInterface, StorageRecord


logger = get_logger("microloan.reconciliation")


class FloatStatus(Enum):
    """Daily float lifecycle"""
    IN_PROGRESS = "in_progress"  # Collector is on the route
    FINISHED = "finished"        # Route finished, cash not yet counted
    RECONCILED = "reconciled"    # Terminal


class ExpenseApproval(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Classification(Enum):
    """Outcome of comparing returned cash with the theoretical amount"""
    BALANCED = "balanced"
    SURPLUS = "surplus"
    SHORTFALL = "shortfall"
    AUDIT = "audit"  # Difference too large either way, needs review


def group_key(reconciliation_date: date, route_id: str, collector_id: str) -> str:
    """Identifier shared by a group's daily float and its reconciliation"""
    return f"{reconciliation_date.isoformat()}:{route_id}:{collector_id}"


@dataclass
class DailyFloat(StorageRecord):
    """Cash handed to a collector at the start of a route-day"""
    route_id: str
    collector_id: str
    float_date: date
    float_amount: Decimal
    actual_returned: Optional[Decimal] = None
    status: FloatStatus = FloatStatus.IN_PROGRESS
    handed_over_by: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class Expense(StorageRecord):
    """Route expense paid out of the collector's cash"""
    route_id: str
    collector_id: str
    expense_date: date
    amount: Decimal
    category: str
    description: Optional[str] = None
    approval_status: ExpenseApproval = ExpenseApproval.PENDING
    reviewed_by: Optional[str] = None


@dataclass
class Totals:
    """Cash movements of one group"""
    collected: Decimal = Decimal('0')
    collected_count: int = 0
    new_loans_disbursed: Decimal = Decimal('0')
    new_loans_count: int = 0
    insurance_collected: Decimal = Decimal('0')
    expenses_total: Decimal = Decimal('0')
    expenses_approved: Decimal = Decimal('0')
    expenses_pending: Decimal = Decimal('0')
    expenses_count: int = 0

    def theoretical(self, float_amount: Decimal) -> Decimal:
        """Cash the collector should hand back"""
        return (float_amount + self.collected + self.insurance_collected
                - self.new_loans_disbursed - self.expenses_approved)


@dataclass
class Reconciliation(StorageRecord):
    """Terminal end-of-day record for a group"""
    reconciliation_date: date
    route_id: str
    collector_id: str
    collected: Decimal
    collected_count: int
    new_loans_disbursed: Decimal
    new_loans_count: int
    insurance_collected: Decimal
    expenses_total: Decimal
    expenses_approved: Decimal
    expenses_pending: Decimal
    expenses_count: int
    float_amount: Decimal
    theoretical: Decimal
    actual_returned: Decimal
    difference: Decimal
    classification: Classification
    reconciled_by: Optional[str] = None
    closing_notes: Optional[str] = None
    difference_justification: Optional[str] = None


def classify(difference: Decimal, audit_threshold: Decimal) -> Classification:
    """
    Classify a signed difference

    A difference larger than the threshold in either direction is flagged for
    audit, overriding the sign.
    """
    if abs(difference) > audit_threshold:
        return Classification.AUDIT
    if difference == 0:
        return Classification.BALANCED
    if difference > 0:
        return Classification.SURPLUS
    return Classification.SHORTFALL


class DailyCashReconciler:
    """
    Aggregates a group's cash movements and records its reconciliation
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
        self.currency = Currency[self.config.currency.upper()]
        self.audit_threshold = Decimal(self.config.audit_threshold)

        self.floats_table = "daily_floats"
        self.expenses_table = "expenses"
        self.reconciliations_table = "reconciliations"
        self.loans_table = "loans"
        self.payments_table = "payment_records"

    def _amount(self, value: Number, field: str, allow_zero: bool = True) -> Decimal:
        try:
            amount = to_decimal(value)
        except ValueError as e:
            raise ValidationError(str(e), field=field) from e
        if amount < 0 or (amount == 0 and not allow_zero):
            qualifier = "must not be negative" if allow_zero else "must be positive"
            raise ValidationError(f"{field} {qualifier}", field=field)
        rounded = round_amount(amount, self.currency)
        if amount != rounded:
            raise ValidationError(
                f"{field} has more decimal places than {self.currency.code} allows",
                field=field
            )
        return rounded

    # Daily float

    def open_float(
        self,
        route_id: str,
        collector_id: str,
        float_date: date,
        float_amount: Number,
        handed_over_by: Optional[str] = None,
        notes: Optional[str] = None
    ) -> DailyFloat:
        """
        Record the cash a collector leaves with

        Raises:
            ConflictError: If the group already has a float
        """
        if not route_id or not collector_id:
            raise ValidationError("route_id and collector_id are required")
        amount = self._amount(float_amount, "float_amount")

        now = datetime.now(timezone.utc)
        daily_float = DailyFloat(
            id=group_key(float_date, route_id, collector_id),
            created_at=now,
            updated_at=now,
            route_id=route_id,
            collector_id=collector_id,
            float_date=float_date,
            float_amount=amount,
            handed_over_by=handed_over_by,
            notes=notes
        )

        with self.storage.atomic():
            try:
                self.storage.insert_unique(self.floats_table, daily_float.id, daily_float.to_dict())
            except ConflictError as e:
                raise ConflictError(
                    f"a daily float already exists for route {route_id}, "
                    f"collector {collector_id} on {float_date.isoformat()}"
                ) from e

            self.audit_trail.log_event(
                event_type=AuditEventType.FLOAT_OPENED,
                entity_type="float",
                entity_id=daily_float.id,
                metadata={"float_amount": amount, "handed_over_by": handed_over_by}
            )

        log_action(logger, "info", "float_opened", action="open_float",
                   resource=daily_float.id, float_amount=str(amount))
        return daily_float

    def get_float(self, float_id: str) -> DailyFloat:
        data = self.storage.load(self.floats_table, float_id)
        if not data:
            raise NotFoundError("daily float", float_id)
        return DailyFloat.from_dict(data)

    def find_float(self, float_date: date, route_id: str,
                   collector_id: str) -> Optional[DailyFloat]:
        data = self.storage.load(self.floats_table, group_key(float_date, route_id, collector_id))
        return DailyFloat.from_dict(data) if data else None

    def finish_float(self, float_id: str) -> DailyFloat:
        """
        Mark the route-day as finished

        Finishing an already finished float returns it unchanged.

        Raises:
            ConflictError: If the float was already reconciled
        """
        with self.storage.atomic():
            daily_float = self.get_float(float_id)
            if daily_float.status == FloatStatus.FINISHED:
                return daily_float
            if daily_float.status == FloatStatus.RECONCILED:
                raise ConflictError(f"daily float {float_id} is already reconciled")

            daily_float.status = FloatStatus.FINISHED
            daily_float.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.floats_table, float_id, daily_float.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.FLOAT_FINISHED,
                entity_type="float",
                entity_id=float_id,
                metadata={}
            )

        return daily_float

    def pending_floats(self) -> List[DailyFloat]:
        """Floats whose group has not been reconciled, oldest first"""
        pending = []
        for data in self.storage.load_all(self.floats_table):
            daily_float = DailyFloat.from_dict(data)
            if daily_float.status == FloatStatus.RECONCILED:
                continue
            if self.storage.exists(self.reconciliations_table, daily_float.id):
                continue
            pending.append(daily_float)
        pending.sort(key=lambda x: (x.float_date, x.route_id, x.collector_id))
        return pending

    # Expenses

    def record_expense(
        self,
        route_id: str,
        collector_id: str,
        expense_date: date,
        amount: Number,
        category: str,
        description: Optional[str] = None
    ) -> Expense:
        """Record a route expense awaiting approval"""
        if not category:
            raise ValidationError("category is required", field="category")
        now = datetime.now(timezone.utc)
        expense = Expense(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            route_id=route_id,
            collector_id=collector_id,
            expense_date=expense_date,
            amount=self._amount(amount, "amount", allow_zero=False),
            category=category,
            description=description
        )

        with self.storage.atomic():
            self.storage.save(self.expenses_table, expense.id, expense.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.EXPENSE_RECORDED,
                entity_type="expense",
                entity_id=expense.id,
                metadata={"route_id": route_id, "amount": expense.amount, "category": category}
            )

        return expense

    def get_expense(self, expense_id: str) -> Expense:
        data = self.storage.load(self.expenses_table, expense_id)
        if not data:
            raise NotFoundError("expense", expense_id)
        return Expense.from_dict(data)

    def _review_expense(self, expense_id: str, decision: ExpenseApproval,
                        reviewed_by: Optional[str]) -> Expense:
        event_type = {
            ExpenseApproval.APPROVED: AuditEventType.EXPENSE_APPROVED,
            ExpenseApproval.REJECTED: AuditEventType.EXPENSE_REJECTED,
        }[decision]

        with self.storage.atomic():
            expense = self.get_expense(expense_id)
            if expense.approval_status != ExpenseApproval.PENDING:
                raise ValidationError(
                    f"expense {expense_id} is already {expense.approval_status.value}"
                )
            expense.approval_status = decision
            expense.reviewed_by = reviewed_by
            expense.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.expenses_table, expense_id, expense.to_dict())

            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="expense",
                entity_id=expense_id,
                metadata={"amount": expense.amount},
                user_id=reviewed_by
            )

        return expense

    def approve_expense(self, expense_id: str, reviewed_by: Optional[str] = None) -> Expense:
        return self._review_expense(expense_id, ExpenseApproval.APPROVED, reviewed_by)

    def reject_expense(self, expense_id: str, reviewed_by: Optional[str] = None) -> Expense:
        return self._review_expense(expense_id, ExpenseApproval.REJECTED, reviewed_by)

    # Aggregation

    def _read(self, operation, description: str):
        return retry_read(
            operation,
            attempts=self.config.storage_read_attempts,
            delay_seconds=self.config.storage_retry_delay_seconds,
            description=description
        )

    def _collections(self, day: date, route_id: str, collector_id: str) -> List[PaymentRecord]:
        route_loans = {
            data["id"] for data in self.storage.find(self.loans_table, {"route_id": route_id})
        }
        return [
            PaymentRecord.from_dict(data)
            for data in self.storage.find(
                self.payments_table,
                {"payment_date": day.isoformat(), "collector_id": collector_id}
            )
            if data["loan_id"] in route_loans
        ]

    def _new_loans(self, day: date, route_id: str, collector_id: str) -> List[Loan]:
        loans = [
            Loan.from_dict(data)
            for data in self.storage.find(
                self.loans_table,
                {"disbursement_date": day.isoformat(), "route_id": route_id,
                 "collector_id": collector_id}
            )
        ]
        return [loan for loan in loans if loan.status != LoanStatus.CANCELLED]

    def _expenses(self, day: date, route_id: str) -> List[Expense]:
        return [
            Expense.from_dict(data)
            for data in self.storage.find(
                self.expenses_table, {"expense_date": day.isoformat(), "route_id": route_id}
            )
        ]

    def aggregate(self, day: date, route_id: str, collector_id: str) -> Totals:
        """
        Sum a group's collections, new loans and expenses

        The three reads are independent. With ``parallel_aggregation`` they
        run on a thread pool, so this must not be called from inside an open
        unit of work on the same storage.
        """
        reads = [
            (lambda: self._collections(day, route_id, collector_id), "collections"),
            (lambda: self._new_loans(day, route_id, collector_id), "new_loans"),
            (lambda: self._expenses(day, route_id), "expenses"),
        ]

        if self.config.parallel_aggregation:
            with ThreadPoolExecutor(max_workers=len(reads)) as executor:
                futures = [executor.submit(self._read, op, name) for op, name in reads]
                payments, loans, expenses = [future.result() for future in futures]
        else:
            payments, loans, expenses = [self._read(op, name) for op, name in reads]

        zero = Decimal('0')
        approved = [e for e in expenses if e.approval_status == ExpenseApproval.APPROVED]
        pending = [e for e in expenses if e.approval_status == ExpenseApproval.PENDING]

        return Totals(
            collected=sum((p.amount for p in payments), zero),
            collected_count=len(payments),
            new_loans_disbursed=sum((loan.principal for loan in loans), zero),
            new_loans_count=len(loans),
            insurance_collected=sum((loan.insurance_fee for loan in loans), zero),
            expenses_total=sum((e.amount for e in expenses), zero),
            expenses_approved=sum((e.amount for e in approved), zero),
            expenses_pending=sum((e.amount for e in pending), zero),
            expenses_count=len(expenses)
        )

    # Reconciliation

    def reconcile(
        self,
        day: date,
        route_id: str,
        collector_id: str,
        actual_returned: Number,
        float_amount: Optional[Number] = None,
        reconciled_by: Optional[str] = None,
        closing_notes: Optional[str] = None,
        justification: Optional[str] = None
    ) -> Reconciliation:
        """
        Record the end-of-day reconciliation of a group

        Args:
            day: Route-day being reconciled
            route_id: Route
            collector_id: Collector
            actual_returned: Cash the collector handed back
            float_amount: Starting cash; defaults to the group's daily float
            reconciled_by: Operator recording the reconciliation
            closing_notes: Free text
            justification: Explanation of a non-zero difference

        Returns:
            Stored Reconciliation

        Raises:
            ConflictError: If the group was already reconciled
            NotFoundError: If no float amount was given and the group has no float
        """
        key = group_key(day, route_id, collector_id)
        actual_returned = self._amount(actual_returned, "actual_returned")

        if self.storage.exists(self.reconciliations_table, key):
            raise ConflictError(f"group {key} is already reconciled")

        daily_float = self.find_float(day, route_id, collector_id)
        if float_amount is None:
            if daily_float is None:
                raise NotFoundError("daily float", key)
            amount = daily_float.float_amount
        else:
            amount = self._amount(float_amount, "float_amount")

        totals = self.aggregate(day, route_id, collector_id)
        theoretical = totals.theoretical(amount)
        difference = actual_returned - theoretical
        classification = classify(difference, self.audit_threshold)

        now = datetime.now(timezone.utc)
        reconciliation = Reconciliation(
            id=key,
            created_at=now,
            updated_at=now,
            reconciliation_date=day,
            route_id=route_id,
            collector_id=collector_id,
            collected=totals.collected,
            collected_count=totals.collected_count,
            new_loans_disbursed=totals.new_loans_disbursed,
            new_loans_count=totals.new_loans_count,
            insurance_collected=totals.insurance_collected,
            expenses_total=totals.expenses_total,
            expenses_approved=totals.expenses_approved,
            expenses_pending=totals.expenses_pending,
            expenses_count=totals.expenses_count,
            float_amount=amount,
            theoretical=theoretical,
            actual_returned=actual_returned,
            difference=difference,
            classification=classification,
            reconciled_by=reconciled_by,
            closing_notes=closing_notes,
            difference_justification=justification
        )

        with self.storage.atomic():
            try:
                self.storage.insert_unique(
                    self.reconciliations_table, key, reconciliation.to_dict()
                )
            except ConflictError as e:
                raise ConflictError(f"group {key} is already reconciled") from e

            if daily_float is not None:
                daily_float = self.get_float(key)
                daily_float.status = FloatStatus.RECONCILED
                daily_float.actual_returned = actual_returned
                daily_float.updated_at = now
                self.storage.save(self.floats_table, key, daily_float.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.RECONCILIATION_CREATED,
                entity_type="reconciliation",
                entity_id=key,
                metadata={
                    "theoretical": theoretical,
                    "actual_returned": actual_returned,
                    "difference": difference,
                    "classification": classification.value
                },
                user_id=reconciled_by
            )

        log_action(
            logger, "warning" if classification == Classification.AUDIT else "info",
            "reconciliation_created", action="reconcile", resource=key,
            theoretical=str(theoretical), difference=str(difference),
            classification=classification.value
        )
        return reconciliation

    def get_reconciliation(self, day: date, route_id: str,
                           collector_id: str) -> Optional[Reconciliation]:
        data = self.storage.load(self.reconciliations_table, group_key(day, route_id, collector_id))
        return Reconciliation.from_dict(data) if data else None

    def list_reconciliations(
        self,
        day: Optional[date] = None,
        route_id: Optional[str] = None,
        collector_id: Optional[str] = None,
        classification: Optional[Classification] = None
    ) -> List[Reconciliation]:
        """Reconciliations matching the given filters, newest first"""
        filters: Dict[str, Any] = {}
        if day is not None:
            filters["reconciliation_date"] = day.isoformat()
        if route_id is not None:
            filters["route_id"] = route_id
        if collector_id is not None:
            filters["collector_id"] = collector_id
        if classification is not None:
            filters["classification"] = classification.value

        reconciliations = [
            Reconciliation.from_dict(data)
            for data in self.storage.find(self.reconciliations_table, filters)
        ]
        reconciliations.sort(key=lambda x: (x.reconciliation_date, x.created_at), reverse=True)
        return reconciliations

    def statistics(self, reconciliations: Optional[List[Reconciliation]] = None) -> Dict[str, Any]:
        """Counts per classification and difference figures"""
        if reconciliations is None:
            reconciliations = self.list_reconciliations()

        counts = {c.value: 0 for c in Classification}
        for reconciliation in reconciliations:
            counts[reconciliation.classification.value] += 1

        differences = [r.difference for r in reconciliations]
        total_difference = sum(differences, Decimal('0'))
        average = Decimal('0')
        if differences:
            average = (total_difference / Decimal(len(differences))).quantize(
                Decimal('0.01'), rounding=ROUND_HALF_UP
            )

        return {
            "total": len(reconciliations),
            "by_classification": counts,
            "total_difference": total_difference,
            "average_difference": average,
            "largest_surplus": max((d for d in differences if d > 0), default=Decimal('0')),
            "largest_shortfall": min((d for d in differences if d < 0), default=Decimal('0')),
        }
