"""
API Edge Normalization Module

The only place that knows how the remote service spells its fields. Remote
loan and payment documents arrive with inconsistent names (``id`` vs ``_id``,
``clientName`` vs ``customerName``, ``emi`` vs ``emiAmount``) and leave here
as ``Loan`` / ``Payment`` records. Outbound request bodies are built here too.
"""

from datetime import datetime, date, timezone, tzinfo
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Optional

from .currency import Money
from .errors import MalformedRecord
from .models import (
    Loan, Payment, LoanStatus, PaymentMethod, ApplicationChannel, KycStatus,
    SyncState, Role, StatusComment, as_date
)


_STATUS_ALIASES = {
    "pending": LoanStatus.PENDING,
    "submitted": LoanStatus.PENDING,
    "verified": LoanStatus.VERIFIED,
    "approved": LoanStatus.APPROVED,
    "active": LoanStatus.ACTIVE,
    "disbursed": LoanStatus.ACTIVE,
    # Overdue is recomputed locally from the schedule
    "overdue": LoanStatus.ACTIVE,
    "paid": LoanStatus.PAID,
    "completed": LoanStatus.PAID,
    "closed": LoanStatus.PAID,
    "rejected": LoanStatus.REJECTED,
}

_METHOD_ALIASES = {
    "cash": PaymentMethod.CASH,
    "transfer": PaymentMethod.TRANSFER,
    "bank_transfer": PaymentMethod.TRANSFER,
    "bank": PaymentMethod.TRANSFER,
    "neft": PaymentMethod.TRANSFER,
    "imps": PaymentMethod.TRANSFER,
    "card": PaymentMethod.CARD,
    "debit_card": PaymentMethod.CARD,
    "credit_card": PaymentMethod.CARD,
    "wallet": PaymentMethod.WALLET,
    "upi": PaymentMethod.WALLET,
}

_ROLE_ALIASES = {role.value: role for role in Role}
_ROLE_ALIASES.update({"collection": Role.COLLECTIONS, "credit_manager": Role.VERIFIER})


def _first(raw: Dict[str, Any], *names: str) -> Any:
    for name in names:
        value = raw.get(name)
        if value not in (None, ""):
            return value
    return None


def _money(value: Any, what: str) -> Money:
    try:
        return Money.of(value)
    except (InvalidOperation, TypeError, ValueError):
        raise MalformedRecord(f"Invalid {what}: {value!r}")


def _datetime(value: Any, what: str) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise MalformedRecord(f"Invalid {what}: {value!r}")
    else:
        raise MalformedRecord(f"Missing or invalid {what}: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _civil_date(value: Any, what: str, tz: Optional[tzinfo]) -> date:
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    if isinstance(value, str) and len(value.strip()) == 10:
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            raise MalformedRecord(f"Invalid {what}: {value!r}")
    return as_date(_datetime(value, what), tz)


def normalize_status(value: Any) -> LoanStatus:
    try:
        return _STATUS_ALIASES[str(value).strip().lower()]
    except KeyError:
        raise MalformedRecord(f"Unknown loan status: {value!r}")


def normalize_method(value: Any) -> PaymentMethod:
    try:
        return _METHOD_ALIASES[str(value).strip().lower().replace(" ", "_")]
    except KeyError:
        raise MalformedRecord(f"Unknown payment method: {value!r}")


def normalize_payment(raw: Dict[str, Any], loan_id: str, position: int) -> Payment:
    """
    Normalize one remote payment. Remote payments are confirmed by definition.

    ``position`` (1-based) stands in for the installment number when the
    remote document predates ``emiNumber``.
    """
    paid_at = _first(raw, "paymentDate", "date", "paidAt", "createdAt")
    amount = _first(raw, "amount", "paidAmount")
    if amount is None:
        raise MalformedRecord(f"Payment {position} of loan {loan_id} has no amount")

    collected_by = str(_first(raw, "collectedBy") or "collections").lower()
    payment_id = _first(raw, "_id", "id")
    extra = {"payment_id": str(payment_id)} if payment_id is not None else {}

    return Payment(
        loan_id=loan_id,
        sequence=int(_first(raw, "emiNumber", "installment") or position),
        amount=_money(amount, "payment amount"),
        method=normalize_method(_first(raw, "paymentMode", "method", "mode") or "cash"),
        paid_at=_datetime(paid_at, f"payment date of installment {position}"),
        penalty=_money(_first(raw, "penalty", "penaltyAmount") or 0, "penalty"),
        sync_state=SyncState.CONFIRMED,
        transaction_ref=_first(raw, "transactionId", "transactionRef"),
        collected_by=_ROLE_ALIASES.get(collected_by, Role.COLLECTIONS),
        **extra
    )


def normalize_loan(raw: Dict[str, Any], tz: Optional[tzinfo] = None) -> Loan:
    """
    Normalize a remote loan document (with embedded payment history).

    The origination timestamp is read on the civil calendar of ``tz``
    (Asia/Kolkata when omitted); a bare date is taken as already local.

    Raises:
        MalformedRecord: when identity, origination date, tenure or EMI are missing
    """
    loan_id = _first(raw, "_id", "id", "loanId")
    if loan_id is None:
        raise MalformedRecord("Loan record has no identifier")
    loan_id = str(loan_id)

    origination = _first(raw, "emiStartDate", "appliedDate", "originationDate", "createdAt")
    if origination is None:
        raise MalformedRecord(f"Loan {loan_id} has no origination date")

    tenure = _first(raw, "tenure")
    try:
        tenure = int(tenure)
    except (TypeError, ValueError):
        raise MalformedRecord(f"Loan {loan_id} has invalid tenure {tenure!r}")
    if tenure <= 0:
        raise MalformedRecord(f"Loan {loan_id} has invalid tenure {tenure!r}")

    emi = _first(raw, "emiAmount", "emi")
    if emi is None:
        raise MalformedRecord(f"Loan {loan_id} has no EMI amount")

    channel_raw = str(_first(raw, "applicationMode", "applicationType", "channel") or "self").lower()
    channel = ApplicationChannel.AGENCY if channel_raw == "agency" else ApplicationChannel.SELF

    kyc_raw = str(_first(raw, "kycStatus") or "pending").lower()
    try:
        kyc = KycStatus(kyc_raw)
    except ValueError:
        raise MalformedRecord(f"Loan {loan_id} has unknown KYC status {kyc_raw!r}")

    payments = [
        normalize_payment(p, loan_id, index)
        for index, p in enumerate(raw.get("payments") or [], start=1)
    ]
    payments.sort(key=lambda p: p.sequence)

    comment_at = _first(raw, "commentDate")
    updated_at = _first(raw, "updatedAt")
    comments = [
        StatusComment(
            status=normalize_status(c.get("status", raw.get("status", "pending"))),
            comment=c.get("comment", ""),
            role=_ROLE_ALIASES.get(str(c.get("role", "admin")).lower(), Role.ADMIN),
            timestamp=_datetime(c.get("timestamp") or c.get("date"), "comment timestamp"),
        )
        for c in raw.get("comments") or []
    ]

    try:
        return Loan(
            loan_id=loan_id,
            customer_id=str(_first(raw, "customerId", "borrowerId", "clientMobile", "clientId") or ""),
            customer_name=str(_first(raw, "customerName", "clientName", "borrower") or ""),
            principal=_money(_first(raw, "loanAmount", "amount", "principal") or 0, "loan amount"),
            emi_amount=_money(emi, "EMI amount"),
            tenure=tenure,
            origination_date=_civil_date(origination, "origination date", tz),
            channel=channel,
            status=normalize_status(_first(raw, "status") or "pending"),
            kyc_status=kyc,
            status_comment=_first(raw, "statusComment"),
            comment_at=_datetime(comment_at, "comment date") if comment_at else None,
            comments=comments,
            payments=payments,
            loan_number=_first(raw, "loanId", "loanNumber"),
            updated_at=_datetime(updated_at, "update time") if updated_at else datetime.now(timezone.utc),
        )
    except ValueError as e:
        if isinstance(e, MalformedRecord):
            raise
        raise MalformedRecord(f"Loan {loan_id}: {e}")


def normalize_loans(raws: Iterable[Dict[str, Any]], tz: Optional[tzinfo] = None) -> list:
    return [normalize_loan(raw, tz) for raw in raws]


def unwrap_loan_payload(body: Any) -> Dict[str, Any]:
    """Remote responses wrap the loan as ``{"loan": {...}}`` or ``{"data": {...}}``"""
    if isinstance(body, dict):
        for key in ("loan", "data"):
            if isinstance(body.get(key), dict):
                return body[key]
        return body
    raise MalformedRecord(f"Unexpected loan payload: {type(body).__name__}")


def unwrap_loan_list(body: Any) -> list:
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        for key in ("loans", "data"):
            if isinstance(body.get(key), list):
                return body[key]
    raise MalformedRecord(f"Unexpected loan list payload: {type(body).__name__}")


def confirmation_reference(body: Any) -> Optional[str]:
    """Transaction reference the remote service assigned to an accepted payment"""
    if not isinstance(body, dict):
        return None
    ref = _first(body, "transactionId", "transactionRef", "paymentId")
    if ref is None and isinstance(body.get("payment"), dict):
        ref = _first(body["payment"], "transactionId", "transactionRef", "_id", "id")
    return str(ref) if ref is not None else None


def payment_request_body(payment: Payment) -> Dict[str, Any]:
    """Body for ``POST /loans/{id}/payment``"""
    return {
        "amount": str(payment.amount.amount),
        "paymentMode": payment.method.value,
        "paymentDate": payment.paid_at.isoformat(),
        "emiNumber": payment.sequence,
        "penalty": str(payment.penalty.amount),
        "collectedBy": payment.collected_by.value,
        "transactionId": payment.transaction_ref or "",
    }


def status_request_body(status: LoanStatus, comment: Optional[str]) -> Dict[str, Any]:
    """Body for ``PUT /loans/{id}/status``"""
    return {"status": status.value, "comment": comment or ""}
