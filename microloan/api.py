"""
FastAPI REST API Module

Provides REST API endpoints for loan disbursement, payment allocation and
reversal, daily floats, route expenses and end-of-day reconciliation.
Runs on port 8090.
"""

from datetime import datetime, timezone, date
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Depends, status
from pydantic import BaseModel, Field
import uvicorn

from . import __version__
from .audit import AuditTrail
from .config import MicroloanConfig, get_config
from .exceptions import (
    MicroloanError, ValidationError, NotFoundError, ConflictError, StorageError
)
from .loans import LoanManager, coerce_enum
from .logging_config import get_logger, setup_logging
from .payments import PaymentAllocator
from .reconciliation import Classification, DailyCashReconciler, group_key
from .storage import StorageInterface, create_storage


logger = get_logger("microloan.api")


# Pydantic models for API requests
class CreateLoanRequest(BaseModel):
    client_id: str
    route_id: str
    collector_id: str
    principal: str = Field(..., description="Decimal amount as string")
    flat_rate: str = Field(..., description="Whole-term rate as a fraction, e.g. 0.20")
    term_count: int
    periodicity: str = Field(..., description="daily, weekly, biweekly or monthly")
    disbursement_date: date
    insurance_fee: str = "0"
    anchor_weekday: Optional[str] = Field(None, description="Weekday name, e.g. monday")
    notes: Optional[str] = None


class PaymentRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    payment_date: Optional[date] = None
    method: str = "cash"
    notes: Optional[str] = None
    collector_id: Optional[str] = None
    receipt_number: Optional[str] = None
    expected_version: Optional[int] = None


class OpenFloatRequest(BaseModel):
    route_id: str
    collector_id: str
    float_date: date
    float_amount: str
    handed_over_by: Optional[str] = None
    notes: Optional[str] = None


class CreateExpenseRequest(BaseModel):
    route_id: str
    collector_id: str
    expense_date: date
    amount: str
    category: str
    description: Optional[str] = None


class ReviewExpenseRequest(BaseModel):
    reviewed_by: Optional[str] = None


class ReconcileRequest(BaseModel):
    reconciliation_date: date
    route_id: str
    collector_id: str
    actual_returned: str
    float_amount: Optional[str] = None
    reconciled_by: Optional[str] = None
    closing_notes: Optional[str] = None
    justification: Optional[str] = None


# Microloan System Context
class MicroloanSystem:
    """Engine components sharing one storage backend"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 config: Optional[MicroloanConfig] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)

        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.loan_manager = LoanManager(self.storage, self.audit_trail, self.config)
        self.payment_allocator = PaymentAllocator(
            self.storage, self.loan_manager, self.audit_trail, self.config
        )
        self.reconciler = DailyCashReconciler(self.storage, self.audit_trail, self.config)


# Global system instance, created on first request
microloan_system: Optional[MicroloanSystem] = None


# Create FastAPI app
app = FastAPI(
    title="Microloan Route-Collection API",
    description="Loan schedules, payment allocation and daily cash reconciliation",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc"
)


# Dependency to get the microloan system
def get_microloan_system() -> MicroloanSystem:
    global microloan_system
    if microloan_system is None:
        microloan_system = MicroloanSystem()
    return microloan_system


def _http_error(error: MicroloanError) -> HTTPException:
    """Map an engine error to an HTTP error"""
    if isinstance(error, ValidationError):
        return HTTPException(status_code=422, detail=error.message)
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=error.message)
    if isinstance(error, ConflictError):
        return HTTPException(status_code=409, detail=error.message)
    if isinstance(error, StorageError):
        logger.error("storage_error", exc_info=error)
        return HTTPException(
            status_code=503,
            detail="Storage temporarily unavailable, please retry"
        )
    logger.error("unexpected_engine_error", exc_info=error)
    return HTTPException(status_code=500, detail="Internal error")


# Health check endpoint
@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


# Loan Endpoints
@app.post("/loans", status_code=status.HTTP_201_CREATED)
def create_loan(
    request: CreateLoanRequest,
    system: MicroloanSystem = Depends(get_microloan_system)
):
    """Disburse a new loan"""
    try:
        loan = system.loan_manager.create_loan(
            client_id=request.client_id,
            route_id=request.route_id,
            collector_id=request.collector_id,
            principal=request.principal,
            flat_rate=request.flat_rate,
            term_count=request.term_count,
            periodicity=request.periodicity,
            disbursement_date=request.disbursement_date,
            insurance_fee=request.insurance_fee,
            anchor_weekday=request.anchor_weekday,
            notes=request.notes
        )
    except MicroloanError as e:
        raise _http_error(e)

    return {"loan": loan.to_dict(), "message": "Loan created successfully"}


@app.get("/loans/{loan_id}")
def get_loan(
    loan_id: str,
    system: MicroloanSystem = Depends(get_microloan_system)
):
    """Get loan details"""
    try:
        return {"loan": system.loan_manager.get_loan(loan_id).to_dict()}
    except MicroloanError as e:
        raise _http_error(e)


@app.get("/loans/{loan_id}/schedule")
def get_loan_schedule(
    loan_id: str,
    system: MicroloanSystem = Depends(get_microloan_system)
):
    """Get the installment schedule"""
    try:
        system.loan_manager.get_loan(loan_id)
        installments = system.loan_manager.get_installments(loan_id)
    except MicroloanError as e:
        raise _http_error(e)

    return {"schedule": [installment.to_dict() for installment in installments]}


@app.get("/loans/{loan_id}/arrears")
def get_loan_arrears(
    loan_id: str,
    today: Optional[date] = None,
    system: MicroloanSystem = Depends(get_microloan_system)
):
    """Refresh arrears and return the loan summary"""
    try:
        overdue = system.loan_manager.refresh_arrears(loan_id, today)
        summary = system.loan_manager.loan_summary(loan_id, today)
    except MicroloanError as e:
        raise _http_error(e)

    return {"overdue_count": overdue, "summary": _jsonable(summary)}


@app.post("/loans/{loan_id}/payments", status_code=status.HTTP_201_CREATED)
def allocate_payment(
    loan_id: str,
    request: PaymentRequest,
    system: MicroloanSystem = Depends(get_microloan_system)
):
    """Apply a payment to the loan's open installments"""
    try:
        result = system.payment_allocator.allocate(
            loan_id=loan_id,
            amount=request.amount,
            payment_date=request.payment_date,
            method=request.method,
            notes=request.notes,
            collector_id=request.collector_id,
            receipt_number=request.receipt_number,
            expected_version=request.expected_version
        )
    except MicroloanError as e:
        raise _http_error(e)

    return {
        "loan_id": result.loan_id,
        "amount": str(result.amount),
        "applied": str(result.applied),
        "payments": [payment.to_dict() for payment in result.payments],
        "installments": [installment.to_dict() for installment in result.installments],
        "outstanding_balance": str(result.outstanding_balance),
        "loan_status": result.loan_status.value,
        "loan_version": result.loan_version
    }


def _reversal_response(result) -> Dict[str, Any]:
    return {
        "loan_id": result.loan_id,
        "installment_id": result.installment_id,
        "payments_removed": result.payments_removed,
        "amount_reversed": str(result.amount_reversed),
        "installment_status": result.installment_status.value,
        "outstanding_balance": str(result.outstanding_balance),
        "loan_status": result.loan_status.value
    }


@app.delete("/installments/{installment_id}/payments")
def reverse_installment(
    installment_id: str,
    system: MicroloanSystem = Depends(get_microloan_system)
):
    """Undo every payment applied to an installment"""
    try:
        return _reversal_response(system.payment_allocator.reverse(installment_id))
    except MicroloanError as e:
        raise _http_error(e)


@app.delete("/payments/{payment_id}")
def reverse_payment(
    payment_id: str,
    system: MicroloanSystem = Depends(get_microloan_system)
):
    """Undo a single payment record"""
    try:
        return _reversal_response(system.payment_allocator.reverse_payment(payment_id))
    except MicroloanError as e:
        raise _http_error(e)


# Daily Float and Expense Endpoints
@app.post("/floats", status_code=status.HTTP_201_CREATED)
def open_float(
    request: OpenFloatRequest,
    system: MicroloanSystem = Depends(get_microloan_system)
):
    """Record the cash a collector leaves with"""
    try:
        daily_float = system.reconciler.open_float(
            route_id=request.route_id,
            collector_id=request.collector_id,
            float_date=request.float_date,
            float_amount=request.float_amount,
            handed_over_by=request.handed_over_by,
            notes=request.notes
        )
    except MicroloanError as e:
        raise _http_error(e)

    return {"float": daily_float.to_dict()}


@app.post("/floats/{float_id}/finish")
def finish_float(
    float_id: str,
    system: MicroloanSystem = Depends(get_microloan_system)
):
    """Mark a route-day as finished"""
    try:
        return {"float": system.reconciler.finish_float(float_id).to_dict()}
    except MicroloanError as e:
        raise _http_error(e)


@app.get("/floats/pending")
def get_pending_floats(system: MicroloanSystem = Depends(get_microloan_system)):
    """Floats awaiting reconciliation"""
    return {"floats": [f.to_dict() for f in system.reconciler.pending_floats()]}


@app.post("/expenses", status_code=status.HTTP_201_CREATED)
def record_expense(
    request: CreateExpenseRequest,
    system: MicroloanSystem = Depends(get_microloan_system)
):
    """Record a route expense"""
    try:
        expense = system.reconciler.record_expense(
            route_id=request.route_id,
            collector_id=request.collector_id,
            expense_date=request.expense_date,
            amount=request.amount,
            category=request.category,
            description=request.description
        )
    except MicroloanError as e:
        raise _http_error(e)

    return {"expense": expense.to_dict()}


@app.post("/expenses/{expense_id}/approve")
def approve_expense(
    expense_id: str,
    request: Optional[ReviewExpenseRequest] = None,
    system: MicroloanSystem = Depends(get_microloan_system)
):
    """Approve a pending expense"""
    reviewed_by = request.reviewed_by if request else None
    try:
        return {"expense": system.reconciler.approve_expense(expense_id, reviewed_by).to_dict()}
    except MicroloanError as e:
        raise _http_error(e)


@app.post("/expenses/{expense_id}/reject")
def reject_expense(
    expense_id: str,
    request: Optional[ReviewExpenseRequest] = None,
    system: MicroloanSystem = Depends(get_microloan_system)
):
    """Reject a pending expense"""
    reviewed_by = request.reviewed_by if request else None
    try:
        return {"expense": system.reconciler.reject_expense(expense_id, reviewed_by).to_dict()}
    except MicroloanError as e:
        raise _http_error(e)


# Reconciliation Endpoints
@app.post("/reconciliations", status_code=status.HTTP_201_CREATED)
def reconcile(
    request: ReconcileRequest,
    system: MicroloanSystem = Depends(get_microloan_system)
):
    """Record the end-of-day reconciliation of a route-day"""
    try:
        reconciliation = system.reconciler.reconcile(
            day=request.reconciliation_date,
            route_id=request.route_id,
            collector_id=request.collector_id,
            actual_returned=request.actual_returned,
            float_amount=request.float_amount,
            reconciled_by=request.reconciled_by,
            closing_notes=request.closing_notes,
            justification=request.justification
        )
    except MicroloanError as e:
        raise _http_error(e)

    return {"reconciliation": reconciliation.to_dict()}


@app.get("/reconciliations")
def list_reconciliations(
    reconciliation_date: Optional[date] = None,
    route_id: Optional[str] = None,
    collector_id: Optional[str] = None,
    classification: Optional[str] = None,
    system: MicroloanSystem = Depends(get_microloan_system)
):
    """Reconciliations matching the filters, newest first"""
    try:
        wanted = coerce_enum(Classification, classification, "classification")
        reconciliations = system.reconciler.list_reconciliations(
            day=reconciliation_date,
            route_id=route_id,
            collector_id=collector_id,
            classification=wanted
        )
    except MicroloanError as e:
        raise _http_error(e)

    return {"reconciliations": [r.to_dict() for r in reconciliations]}


@app.get("/reconciliations/{reconciliation_date}/{route_id}/{collector_id}")
def get_reconciliation(
    reconciliation_date: date,
    route_id: str,
    collector_id: str,
    system: MicroloanSystem = Depends(get_microloan_system)
):
    """Reconciliation of a single route-day"""
    try:
        reconciliation = system.reconciler.get_reconciliation(
            reconciliation_date, route_id, collector_id
        )
    except MicroloanError as e:
        raise _http_error(e)

    if reconciliation is None:
        raise HTTPException(
            status_code=404,
            detail=f"reconciliation {group_key(reconciliation_date, route_id, collector_id)} not found"
        )
    return {"reconciliation": reconciliation.to_dict()}


@app.get("/reconciliations/statistics")
def get_reconciliation_statistics(system: MicroloanSystem = Depends(get_microloan_system)):
    """Counts per classification and difference figures"""
    return _jsonable(system.reconciler.statistics())


@app.get("/audit/integrity")
def verify_audit_integrity(system: MicroloanSystem = Depends(get_microloan_system)):
    """Verify audit trail integrity"""
    return system.audit_trail.verify_integrity()


def _jsonable(data: Dict[str, Any]) -> Dict[str, Any]:
    """Decimals to strings, dates to ISO format"""
    result = {}
    for key, value in data.items():
        if isinstance(value, dict):
            result[key] = _jsonable(value)
        elif isinstance(value, date):
            result[key] = value.isoformat()
        elif value is None or isinstance(value, (bool, int, str)):
            result[key] = value
        else:
            result[key] = str(value)
    return result


# Run server function
def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, config.log_format, config.log_file)
    uvicorn.run(
        "microloan.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
