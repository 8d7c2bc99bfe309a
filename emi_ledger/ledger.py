"""
Loan Ledger Module

``LoanLedger`` is the read model over one loan and its payments: amount due,
overdue predicate, EMIs paid/remaining. ``LoanBook`` is the state container
that owns every loan on this device, persists it, and performs the explicit
lifecycle transitions (verify, approve, activate, reject, mark pending).

Overdue is never stored. It is derived at query time from the schedule and the
payments, so it can never drift from the calendar.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Dict, List, Optional
import logging

from .currency import Money
from .errors import InvalidLoanState, InvalidTransition, LoanNotFoundLocally
from .events import DomainEvent, EventDispatcher
from .logging_config import log_action
from .models import Loan, LoanStatus, KycStatus, Payment, Role, StatusComment, as_date
from .penalty import PenaltyAssessment, PenaltyPolicy
from .schedule import ScheduleEntry, schedule_entries


logger = logging.getLogger("emi_ledger.ledger")

LOANS_TABLE = "loans"

# target status -> statuses it may be reached from
ALLOWED_TRANSITIONS: Dict[LoanStatus, frozenset] = {
    LoanStatus.VERIFIED: frozenset({LoanStatus.PENDING}),
    LoanStatus.APPROVED: frozenset({LoanStatus.VERIFIED}),
    LoanStatus.ACTIVE: frozenset({LoanStatus.APPROVED}),
    LoanStatus.REJECTED: frozenset({LoanStatus.PENDING, LoanStatus.VERIFIED}),
    # Re-asserting Pending is a hold with a comment, never a step backwards
    LoanStatus.PENDING: frozenset({LoanStatus.PENDING}),
    LoanStatus.PAID: frozenset({LoanStatus.ACTIVE, LoanStatus.APPROVED}),
}

PAYABLE_STATUSES = frozenset({LoanStatus.APPROVED, LoanStatus.ACTIVE})


def can_transition(current: LoanStatus, target: LoanStatus) -> bool:
    return current in ALLOWED_TRANSITIONS.get(target, frozenset())


@dataclass(frozen=True)
class InstallmentDue:
    """What it takes to settle the next unpaid installment as of a date"""
    sequence: int
    due_date: date
    emi: Money
    penalty: PenaltyAssessment

    @property
    def total(self) -> Money:
        return self.emi + self.penalty.amount


class LoanLedger:
    """Read model over a loan and its payments. Never mutates the loan."""

    def __init__(self, loan: Loan, policy: Optional[PenaltyPolicy] = None):
        self.loan = loan
        self.policy = policy or PenaltyPolicy()

    def schedule(self) -> List[ScheduleEntry]:
        return schedule_entries(self.loan)

    def emis_paid(self) -> int:
        return self.loan.emis_paid

    def emis_remaining(self) -> int:
        return self.loan.emis_remaining

    def next_installment(self, as_of) -> Optional[InstallmentDue]:
        """Next unpaid installment with its penalty as of ``as_of``; None when fully paid"""
        for entry in self.schedule():
            if not entry.paid:
                return InstallmentDue(
                    sequence=entry.sequence,
                    due_date=entry.due_date,
                    emi=entry.amount,
                    penalty=self.policy.assess(entry.due_date, as_of),
                )
        return None

    def amount_due_for_next_installment(self, as_of) -> Money:
        """Scheduled EMI plus penalty for the next unpaid installment"""
        installment = self.next_installment(as_of)
        return installment.total if installment else Money.zero()

    def overdue_installments(self, as_of) -> List[ScheduleEntry]:
        when = as_date(as_of, self.policy.tz)
        return [e for e in self.schedule() if not e.paid and e.due_date < when]

    def is_overdue(self, as_of) -> bool:
        """Any scheduled installment past its due date without a payment"""
        if self.loan.status not in PAYABLE_STATUSES:
            return False
        return bool(self.overdue_installments(as_of))

    def days_overdue(self, as_of) -> int:
        installment = self.next_installment(as_of)
        return installment.penalty.overdue_days if installment else 0

    def accrued_penalty(self, as_of) -> Money:
        """Penalty accrued on every overdue unpaid installment"""
        total = Money.zero()
        for entry in self.overdue_installments(as_of):
            total = total + self.policy.assess(entry.due_date, as_of).amount
        return total

    def total_outstanding(self, as_of) -> Money:
        """Remaining EMIs plus penalties accrued so far"""
        return self.loan.emi_amount * self.emis_remaining() + self.accrued_penalty(as_of)

    def penalties_collected(self) -> Money:
        total = Money.zero()
        for payment in self.loan.payments:
            total = total + payment.penalty
        return total

    def derived_status(self, as_of) -> LoanStatus:
        if self.loan.status is LoanStatus.ACTIVE and self.is_overdue(as_of):
            return LoanStatus.OVERDUE
        return self.loan.status


class LoanBook:
    """
    Explicit container for every loan held on this device.

    Loans are persisted as rows of the ``loans`` table; each row carries the
    flat columns the offline sweep reads (customerId, amount, status,
    createdAt, synced) plus the full record.
    """

    def __init__(
        self,
        storage,
        queue,
        policy: Optional[PenaltyPolicy] = None,
        dispatcher: Optional[EventDispatcher] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.queue = queue
        self.policy = policy or PenaltyPolicy()
        self.dispatcher = dispatcher or EventDispatcher()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._loans: Dict[str, Loan] = {}

    # -- persistence -------------------------------------------------------

    def load(self) -> int:
        """Load persisted loans into memory. Returns the number loaded."""
        self._loans = {}
        for row in self.storage.load_all(LOANS_TABLE):
            loan = Loan.from_dict(row["record"])
            self._loans[loan.loan_id] = loan
        return len(self._loans)

    def save(self, loan: Loan, synced: bool) -> None:
        self._loans[loan.loan_id] = loan
        self.storage.save(LOANS_TABLE, loan.loan_id, {
            "id": loan.loan_id,
            "customerId": loan.customer_id,
            "amount": str(loan.principal.amount),
            "status": loan.status.value,
            "createdAt": loan.origination_date.isoformat(),
            "synced": synced,
            "record": loan.to_dict(),
        })

    def mark_synced(self, loan_id: str) -> None:
        self.storage.update(LOANS_TABLE, loan_id, {"synced": True})

    def is_synced(self, loan_id: str) -> bool:
        row = self.storage.load(LOANS_TABLE, loan_id)
        return bool(row and row.get("synced"))

    # -- queries -----------------------------------------------------------

    def find(self, loan_id: str) -> Optional[Loan]:
        return self._loans.get(loan_id)

    def get(self, loan_id: str) -> Loan:
        loan = self._loans.get(loan_id)
        if loan is None:
            raise LoanNotFoundLocally(loan_id)
        return loan

    def loans(self) -> List[Loan]:
        return list(self._loans.values())

    def list_loans(self, status: Optional[LoanStatus] = None, as_of=None) -> List[Loan]:
        """Loans filtered by status; Overdue filtering needs ``as_of``"""
        if status is None:
            return self.loans()
        if status is LoanStatus.OVERDUE:
            if as_of is None:
                raise ValueError("Filtering on Overdue requires as_of")
            return [loan for loan in self._loans.values()
                    if self.ledger(loan).derived_status(as_of) is LoanStatus.OVERDUE]
        return [loan for loan in self._loans.values() if loan.status is status]

    def active_loans(self) -> List[Loan]:
        return [loan for loan in self._loans.values() if loan.status is LoanStatus.ACTIVE]

    def ledger(self, loan) -> LoanLedger:
        if isinstance(loan, str):
            loan = self.get(loan)
        return LoanLedger(loan, self.policy)

    def statistics(self, as_of) -> Dict[str, object]:
        """Loan counts per derived status and penalty totals"""
        counts = {status.value.lower(): 0 for status in LoanStatus}
        collected = Money.zero()
        accrued = Money.zero()
        for loan in self._loans.values():
            ledger = self.ledger(loan)
            counts[ledger.derived_status(as_of).value.lower()] += 1
            collected = collected + ledger.penalties_collected()
            accrued = accrued + ledger.accrued_penalty(as_of)
        return {
            "total_loans": len(self._loans),
            **counts,
            "penalties_collected": collected,
            "penalties_accrued": accrued,
        }

    def completion_report(self, loan_id: str) -> Dict[str, object]:
        """Closing summary for a fully paid loan"""
        loan = self.get(loan_id)
        if loan.status is not LoanStatus.PAID:
            raise InvalidLoanState(loan_id, loan.status.value, f"Loan {loan_id} is not fully paid")
        total_paid = Money.zero()
        for payment in loan.payments:
            total_paid = total_paid + payment.amount
        return {
            "loan_id": loan.loan_id,
            "loan_number": loan.loan_number,
            "customer_name": loan.customer_name,
            "principal": loan.principal,
            "tenure": loan.tenure,
            "origination_date": loan.origination_date,
            "completion_date": as_date(loan.payments[-1].paid_at, self.policy.tz) if loan.payments else None,
            "total_paid": total_paid,
            "penalties_paid": self.ledger(loan).penalties_collected(),
            "total_emis": loan.emis_paid,
            "generated_at": self.clock(),
        }

    # -- mutations -------------------------------------------------------------

    def add(self, loan: Loan) -> Loan:
        """Start tracking a loan that is not in the book yet"""
        if loan.loan_id in self._loans:
            raise InvalidLoanState(loan.loan_id, loan.status.value,
                                   f"Loan {loan.loan_id} is already in the book")
        self.save(loan, synced=True)
        logger.info(f"Loan {loan.loan_id} added for {loan.customer_name}")
        return loan

    def replace(self, loan: Loan, synced: bool = True) -> None:
        """Install a loan as received from the remote service"""
        existing = self._loans.get(loan.loan_id)
        if existing is not None and loan.local_key is None:
            loan.local_key = existing.local_key
        self.save(loan, synced)

    def delete(self, loan_id: str, role: Role = Role.ADMIN) -> Loan:
        """Delete a loan, its payments and its pending writes"""
        loan = self.get(loan_id)
        with self.storage.atomic():
            self.storage.delete(LOANS_TABLE, loan_id)
            self.queue.purge_loan(loan_id)
            self.queue.enqueue_delete(loan_id)
        del self._loans[loan_id]
        log_action(logger, "info", f"Loan {loan_id} deleted", loan_id=loan_id,
                   role=role.value, action="delete_loan")
        self.dispatcher.emit(DomainEvent.LOAN_DELETED, "loan", loan_id, {"role": role.value})
        return loan

    def confirm_payment(self, loan_id: str, sequence: int,
                        transaction_ref: Optional[str] = None) -> Optional[Payment]:
        """Swap a pending payment for its confirmed copy after remote acknowledgement"""
        loan = self._loans.get(loan_id)
        if loan is None:
            return None
        for index, payment in enumerate(loan.payments):
            if payment.sequence == sequence:
                confirmed = payment.confirmed(transaction_ref)
                loan.payments[index] = confirmed
                self.save(loan, synced=self.is_synced(loan_id))
                return confirmed
        return None

    def forget(self, loan_id: str) -> None:
        """Drop a loan the remote service no longer knows, without queuing a delete"""
        self.storage.delete(LOANS_TABLE, loan_id)
        self.queue.purge_loan(loan_id)
        self._loans.pop(loan_id, None)

    def append_comment(self, loan: Loan, status: LoanStatus, comment: str, role: Role) -> StatusComment:
        entry = StatusComment(status=status, comment=comment, role=role, timestamp=self.clock())
        loan.comments.append(entry)
        loan.status_comment = comment
        loan.comment_at = entry.timestamp
        loan.updated_at = entry.timestamp
        return entry

    def verify(self, loan_id: str, role: Role = Role.VERIFIER, comment: str = "") -> Loan:
        return self._transition(loan_id, LoanStatus.VERIFIED, role, comment or "Verified")

    def approve(self, loan_id: str, role: Role = Role.ADMIN, comment: str = "") -> Loan:
        return self._transition(loan_id, LoanStatus.APPROVED, role, comment or "Approved")

    def activate(self, loan_id: str, role: Role = Role.ADMIN, comment: str = "") -> Loan:
        return self._transition(loan_id, LoanStatus.ACTIVE, role, comment or "Collection started")

    def reject(self, loan_id: str, reason: str, role: Role = Role.ADMIN) -> Loan:
        return self._transition(loan_id, LoanStatus.REJECTED, role, reason or "Rejected")

    def mark_pending(self, loan_id: str, comment: str, role: Role = Role.VERIFIER) -> Loan:
        return self._transition(loan_id, LoanStatus.PENDING, role, comment)

    def update_kyc(self, loan_id: str, kyc_status: KycStatus, role: Role = Role.VERIFIER) -> Loan:
        loan = self.get(loan_id)
        previous = loan.kyc_status
        loan.kyc_status = kyc_status
        self.append_comment(loan, loan.status, f"KYC {kyc_status.value}", role)
        self.save(loan, synced=self.is_synced(loan_id))
        self.dispatcher.emit(DomainEvent.LOAN_KYC_CHANGED, "loan", loan_id, {
            "from": previous.value, "to": kyc_status.value, "role": role.value,
        })
        return loan

    def _transition(self, loan_id: str, target: LoanStatus, role: Role, comment: str) -> Loan:
        loan = self.get(loan_id)
        previous = loan.status
        if not can_transition(previous, target):
            raise InvalidTransition(loan_id, previous.value, target.value)

        snapshot = (loan.status, loan.status_comment, loan.comment_at, loan.updated_at, len(loan.comments))
        loan.status = target
        self.append_comment(loan, target, comment, role)
        try:
            with self.storage.atomic():
                self.save(loan, synced=False)
                self.queue.enqueue_status(loan_id, target, comment)
        except Exception:
            loan.status, loan.status_comment, loan.comment_at, loan.updated_at, count = snapshot
            del loan.comments[count:]
            raise

        log_action(logger, "info", f"Loan {loan_id} {previous.value} -> {target.value}",
                   loan_id=loan_id, role=role.value, action="status_transition",
                   extra={"comment": comment})
        self.dispatcher.emit(DomainEvent.LOAN_STATUS_CHANGED, "loan", loan_id, {
            "from": previous.value, "to": target.value, "role": role.value, "comment": comment,
        })
        return loan
