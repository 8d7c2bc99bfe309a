"""
Loan endpoints
"""

from datetime import date

from fastapi import APIRouter, Depends, HTTPException, status

from .dependencies import get_as_of, get_engine, parse_role
from .schemas import (
    LedgerModel, PaymentModel, RecordPaymentRequest, ScheduleEntryModel, StatusChangeRequest,
    money_fields
)
from ..engine import LoanEngine
from ..models import KycStatus, PaymentMethod


router = APIRouter()

STATUS_ACTIONS = ("verify", "approve", "activate", "reject", "mark_pending")


@router.get("/{loan_id}/ledger")
async def get_ledger(
    loan_id: str,
    as_of: date = Depends(get_as_of),
    engine: LoanEngine = Depends(get_engine)
):
    """Ledger view of a loan: amount due, overdue state, payments"""
    return LedgerModel.from_ledger(engine.ledger(loan_id), as_of)


@router.get("/{loan_id}/schedule")
async def get_schedule(
    loan_id: str,
    engine: LoanEngine = Depends(get_engine)
):
    """Installment schedule with paid flags"""
    ledger = engine.ledger(loan_id)
    return {
        "loan_id": loan_id,
        "schedule": [ScheduleEntryModel.from_entry(entry) for entry in ledger.schedule()],
    }


@router.post("/{loan_id}/payments", status_code=status.HTTP_201_CREATED)
async def record_payment(
    loan_id: str,
    request: RecordPaymentRequest,
    engine: LoanEngine = Depends(get_engine)
):
    """Record a payment locally and try to sync it right away"""
    try:
        method = PaymentMethod(request.method.lower())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown payment method: {request.method}")

    # Collection time falls back to the server clock only at this edge
    paid_at = request.paid_at if request.paid_at is not None else engine.clock()
    payment, outcome = await engine.submit_payment(
        loan_id,
        request.amount,
        method,
        paid_at,
        transaction_ref=request.transaction_ref,
        collected_by=parse_role(request.collected_by),
        overpayment=request.overpayment,
    )
    return {
        "payment": PaymentModel.from_payment(payment),
        "sync": outcome.to_dict() if outcome else None,
        "message": "Payment recorded successfully",
    }


@router.put("/{loan_id}/status")
async def change_status(
    loan_id: str,
    request: StatusChangeRequest,
    engine: LoanEngine = Depends(get_engine)
):
    """Apply a lifecycle action (verify, approve, activate, reject, mark_pending)"""
    if request.action not in STATUS_ACTIONS:
        raise HTTPException(status_code=400, detail=f"Unknown action: {request.action}")

    role = parse_role(request.role)
    book = engine.book
    if request.action == "reject":
        loan = book.reject(loan_id, request.comment, role=role)
    elif request.action == "mark_pending":
        loan = book.mark_pending(loan_id, request.comment, role=role)
    else:
        loan = getattr(book, request.action)(loan_id, role=role, comment=request.comment)

    return {
        "loan_id": loan.loan_id,
        "status": loan.status.value,
        "status_comment": loan.status_comment,
        "message": "Loan status updated successfully",
    }


@router.put("/{loan_id}/kyc")
async def change_kyc(
    loan_id: str,
    kyc_status: str,
    role: str = "verifier",
    engine: LoanEngine = Depends(get_engine)
):
    """Update KYC verification status"""
    try:
        kyc = KycStatus(kyc_status.lower())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown KYC status: {kyc_status}")
    loan = engine.book.update_kyc(loan_id, kyc, role=parse_role(role))
    return {"loan_id": loan.loan_id, "kyc_status": loan.kyc_status.value}


@router.get("/{loan_id}/completion-report")
async def get_completion_report(
    loan_id: str,
    engine: LoanEngine = Depends(get_engine)
):
    """Closing summary for a fully paid loan"""
    return money_fields(engine.book.completion_report(loan_id))


@router.delete("/{loan_id}")
async def delete_loan(
    loan_id: str,
    role: str = "admin",
    engine: LoanEngine = Depends(get_engine)
):
    """Delete a loan with its payments and pending writes"""
    engine.book.delete(loan_id, role=parse_role(role))
    return {"loan_id": loan_id, "message": "Loan deleted successfully"}
