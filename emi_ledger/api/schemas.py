"""
Pydantic schemas for API requests and responses
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from ..currency import Money
from ..ledger import InstallmentDue, LoanLedger
from ..models import Payment
from ..schedule import ScheduleEntry


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field("INR", description="Currency code")

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


class RecordPaymentRequest(BaseModel):
    amount: Decimal = Field(..., description="Amount collected, as a decimal string or number")
    method: str = Field(..., description="cash, transfer, card or wallet")
    paid_at: Optional[datetime] = Field(None, description="Collection time; the server clock when omitted")
    transaction_ref: Optional[str] = None
    collected_by: str = "collections"
    overpayment: bool = False


class StatusChangeRequest(BaseModel):
    action: str = Field(..., description="verify, approve, activate, reject or mark_pending")
    role: str = Field(..., description="Acting role")
    comment: str = ""


class ScheduleEntryModel(BaseModel):
    sequence: int
    due_date: str
    amount: MoneyModel
    paid: bool

    @classmethod
    def from_entry(cls, entry: ScheduleEntry) -> 'ScheduleEntryModel':
        return cls(
            sequence=entry.sequence,
            due_date=entry.due_date.isoformat(),
            amount=MoneyModel.from_money(entry.amount),
            paid=entry.paid,
        )


class InstallmentModel(BaseModel):
    sequence: int
    due_date: str
    emi: MoneyModel
    overdue_days: int
    penalty: MoneyModel
    total: MoneyModel

    @classmethod
    def from_installment(cls, installment: InstallmentDue) -> 'InstallmentModel':
        return cls(
            sequence=installment.sequence,
            due_date=installment.due_date.isoformat(),
            emi=MoneyModel.from_money(installment.emi),
            overdue_days=installment.penalty.overdue_days,
            penalty=MoneyModel.from_money(installment.penalty.amount),
            total=MoneyModel.from_money(installment.total),
        )


class PaymentModel(BaseModel):
    payment_id: str
    loan_id: str
    sequence: int
    amount: MoneyModel
    penalty: MoneyModel
    method: str
    paid_at: str
    sync_state: str
    transaction_ref: Optional[str] = None
    overpayment: bool = False

    @classmethod
    def from_payment(cls, payment: Payment) -> 'PaymentModel':
        return cls(
            payment_id=payment.payment_id,
            loan_id=payment.loan_id,
            sequence=payment.sequence,
            amount=MoneyModel.from_money(payment.amount),
            penalty=MoneyModel.from_money(payment.penalty),
            method=payment.method.value,
            paid_at=payment.paid_at.isoformat(),
            sync_state=payment.sync_state.value,
            transaction_ref=payment.transaction_ref,
            overpayment=payment.overpayment,
        )


class LedgerModel(BaseModel):
    loan_id: str
    loan_number: Optional[str] = None
    customer_name: str
    status: str
    derived_status: str
    kyc_status: str
    tenure: int
    emis_paid: int
    emis_remaining: int
    emi_amount: MoneyModel
    is_overdue: bool
    amount_due: MoneyModel
    total_outstanding: MoneyModel
    next_installment: Optional[InstallmentModel] = None
    payments: List[PaymentModel] = []
    as_of: str

    @classmethod
    def from_ledger(cls, ledger: LoanLedger, as_of) -> 'LedgerModel':
        loan = ledger.loan
        installment = ledger.next_installment(as_of)
        return cls(
            loan_id=loan.loan_id,
            loan_number=loan.loan_number,
            customer_name=loan.customer_name,
            status=loan.status.value,
            derived_status=ledger.derived_status(as_of).value,
            kyc_status=loan.kyc_status.value,
            tenure=loan.tenure,
            emis_paid=ledger.emis_paid(),
            emis_remaining=ledger.emis_remaining(),
            emi_amount=MoneyModel.from_money(loan.emi_amount),
            is_overdue=ledger.is_overdue(as_of),
            amount_due=MoneyModel.from_money(ledger.amount_due_for_next_installment(as_of)),
            total_outstanding=MoneyModel.from_money(ledger.total_outstanding(as_of)),
            next_installment=InstallmentModel.from_installment(installment) if installment else None,
            payments=[PaymentModel.from_payment(p) for p in loan.payments],
            as_of=as_of.isoformat(),
        )


def money_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    """Render Money values of a plain dict as MoneyModel dicts"""
    return {
        key: MoneyModel.from_money(value).model_dump() if isinstance(value, Money) else value
        for key, value in data.items()
    }
