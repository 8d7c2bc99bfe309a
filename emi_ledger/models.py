"""
Data Model Module

The single record types the engine works with. Remote payloads are turned into
these by ``normalization``; nothing past that boundary branches on field-name
variants.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, date, timezone, tzinfo
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo
import uuid

from .currency import Money


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "Pending"        # Submitted by shopkeeper
    VERIFIED = "Verified"      # KYC checked by verifier
    APPROVED = "Approved"      # Final admin approval, ready for collection
    ACTIVE = "Active"          # Collecting EMIs
    OVERDUE = "Overdue"        # Derived from ACTIVE at query time, never stored
    PAID = "Paid"              # All installments collected
    REJECTED = "Rejected"      # Terminal


STORED_STATUSES = frozenset(s for s in LoanStatus if s is not LoanStatus.OVERDUE)


class PaymentMethod(Enum):
    CASH = "cash"
    TRANSFER = "transfer"
    CARD = "card"
    WALLET = "wallet"


class ApplicationChannel(Enum):
    SELF = "self"
    AGENCY = "agency"


class KycStatus(Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class SyncState(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"


class Role(Enum):
    """Acting roles recorded in audit comments"""
    SHOPKEEPER = "shopkeeper"
    VERIFIER = "verifier"
    ADMIN = "admin"
    COLLECTIONS = "collections"
    SYSTEM = "system"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


DEFAULT_TIMEZONE = "Asia/Kolkata"


def civil_zone(tz: Optional[tzinfo] = None) -> tzinfo:
    return tz if tz is not None else ZoneInfo(DEFAULT_TIMEZONE)


def as_date(value, tz: Optional[tzinfo] = None) -> date:
    """
    Truncate a datetime to its civil date in ``tz``; dates pass through.

    Aware datetimes are converted to ``tz`` (Asia/Kolkata when omitted) before
    truncation, so a UTC timestamp late in the evening lands on the next local
    day. Naive datetimes are taken as already local.
    """
    if value is None:
        raise ValueError("A date is required")
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(civil_zone(tz))
        return value.date()
    if isinstance(value, date):
        return value
    raise TypeError(f"Expected date or datetime, got {type(value).__name__}")


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass(frozen=True)
class StatusComment:
    """Audit entry appended on every lifecycle action"""
    status: LoanStatus
    comment: str
    role: Role
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "comment": self.comment,
            "role": self.role.value,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StatusComment':
        return cls(
            status=LoanStatus(data["status"]),
            comment=data["comment"],
            role=Role(data["role"]),
            timestamp=_parse_datetime(data["timestamp"]),
        )


@dataclass(frozen=True)
class Payment:
    """One collected installment. Immutable; confirmation yields a new record."""
    loan_id: str
    sequence: int
    amount: Money
    method: PaymentMethod
    paid_at: datetime
    penalty: Money = field(default_factory=Money.zero)
    sync_state: SyncState = SyncState.PENDING
    transaction_ref: Optional[str] = None
    collected_by: Role = Role.COLLECTIONS
    overpayment: bool = False
    payment_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def idempotency_key(self) -> str:
        return payment_key(self.loan_id, self.sequence)

    @property
    def is_confirmed(self) -> bool:
        return self.sync_state is SyncState.CONFIRMED

    def confirmed(self, transaction_ref: Optional[str] = None) -> 'Payment':
        """Return the confirmed copy of this payment"""
        if self.is_confirmed:
            return self
        return replace(
            self,
            sync_state=SyncState.CONFIRMED,
            transaction_ref=transaction_ref or self.transaction_ref,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "loan_id": self.loan_id,
            "sequence": self.sequence,
            "amount": str(self.amount.amount),
            "method": self.method.value,
            "paid_at": self.paid_at.isoformat(),
            "penalty": str(self.penalty.amount),
            "sync_state": self.sync_state.value,
            "transaction_ref": self.transaction_ref,
            "collected_by": self.collected_by.value,
            "overpayment": self.overpayment,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Payment':
        return cls(
            payment_id=data["payment_id"],
            loan_id=data["loan_id"],
            sequence=int(data["sequence"]),
            amount=Money(Decimal(data["amount"])),
            method=PaymentMethod(data["method"]),
            paid_at=_parse_datetime(data["paid_at"]),
            penalty=Money(Decimal(data["penalty"])),
            sync_state=SyncState(data["sync_state"]),
            transaction_ref=data.get("transaction_ref"),
            collected_by=Role(data.get("collected_by", Role.COLLECTIONS.value)),
            overpayment=bool(data.get("overpayment", False)),
        )


def payment_key(loan_id: str, sequence: int) -> str:
    """Idempotency key for an installment write"""
    return f"{loan_id}:{sequence}"


@dataclass
class Loan:
    """Loan with its ordered payment history"""
    loan_id: str
    customer_id: str
    customer_name: str
    principal: Money
    emi_amount: Money
    tenure: int
    origination_date: date
    channel: ApplicationChannel = ApplicationChannel.SELF
    status: LoanStatus = LoanStatus.PENDING
    kyc_status: KycStatus = KycStatus.PENDING
    status_comment: Optional[str] = None
    comment_at: Optional[datetime] = None
    comments: List[StatusComment] = field(default_factory=list)
    payments: List[Payment] = field(default_factory=list)
    loan_number: Optional[str] = None   # Human-facing number shown on receipts
    local_key: Optional[str] = None     # Device-side temporary key, never sent as identity
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not self.loan_id:
            raise ValueError("Loan requires a loan_id")
        self.origination_date = as_date(self.origination_date)
        if not isinstance(self.tenure, int) or self.tenure <= 0:
            raise ValueError(f"Tenure must be a positive integer, got {self.tenure!r}")
        if self.status is LoanStatus.OVERDUE:
            raise ValueError("Overdue is derived from the schedule and cannot be stored")
        if len(self.payments) > self.tenure:
            raise ValueError(
                f"Loan {self.loan_id} has {len(self.payments)} payments for tenure {self.tenure}"
            )

    @property
    def emis_paid(self) -> int:
        return len(self.payments)

    @property
    def emis_remaining(self) -> int:
        return self.tenure - self.emis_paid

    @property
    def next_sequence(self) -> int:
        if not self.payments:
            return 1
        return max(p.sequence for p in self.payments) + 1

    @property
    def pending_payments(self) -> List[Payment]:
        return [p for p in self.payments if not p.is_confirmed]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loan_id": self.loan_id,
            "customer_id": self.customer_id,
            "customer_name": self.customer_name,
            "principal": str(self.principal.amount),
            "emi_amount": str(self.emi_amount.amount),
            "tenure": self.tenure,
            "origination_date": self.origination_date.isoformat(),
            "channel": self.channel.value,
            "status": self.status.value,
            "kyc_status": self.kyc_status.value,
            "status_comment": self.status_comment,
            "comment_at": self.comment_at.isoformat() if self.comment_at else None,
            "comments": [c.to_dict() for c in self.comments],
            "payments": [p.to_dict() for p in self.payments],
            "loan_number": self.loan_number,
            "local_key": self.local_key,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        comment_at = data.get("comment_at")
        return cls(
            loan_id=data["loan_id"],
            customer_id=data["customer_id"],
            customer_name=data["customer_name"],
            principal=Money(Decimal(data["principal"])),
            emi_amount=Money(Decimal(data["emi_amount"])),
            tenure=int(data["tenure"]),
            origination_date=date.fromisoformat(data["origination_date"]),
            channel=ApplicationChannel(data["channel"]),
            status=LoanStatus(data["status"]),
            kyc_status=KycStatus(data["kyc_status"]),
            status_comment=data.get("status_comment"),
            comment_at=_parse_datetime(comment_at) if comment_at else None,
            comments=[StatusComment.from_dict(c) for c in data.get("comments", [])],
            payments=[Payment.from_dict(p) for p in data.get("payments", [])],
            loan_number=data.get("loan_number"),
            local_key=data.get("local_key"),
            updated_at=_parse_datetime(data["updated_at"]),
        )
