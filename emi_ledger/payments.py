"""
Payment Recorder Module

Validates a collected installment against the schedule and penalty rules and
records it locally. Recording never waits for the network: the payment is
appended as ``pending`` and a create-payment write is queued for the sync
manager.
"""

from datetime import date, datetime, time
from decimal import InvalidOperation
from typing import Callable, Optional, Union
import logging

from .currency import Money
from .errors import InsufficientPayment, InvalidLoanState, UnflaggedOverpayment, ValidationError
from .events import DomainEvent, EventDispatcher
from .ledger import LoanBook, PAYABLE_STATUSES
from .logging_config import log_action
from .models import LoanStatus, Payment, PaymentMethod, Role, civil_zone


logger = logging.getLogger("emi_ledger.payments")


class PaymentRecorder:
    """Single entry point for recording installment payments"""

    def __init__(
        self,
        book: LoanBook,
        queue,
        dispatcher: Optional[EventDispatcher] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.book = book
        self.queue = queue
        self.dispatcher = dispatcher or book.dispatcher
        self.clock = clock or book.clock

    def record_payment(
        self,
        loan_id: str,
        amount,
        method: Union[PaymentMethod, str],
        paid_at: Union[datetime, date],
        transaction_ref: Optional[str] = None,
        collected_by: Role = Role.COLLECTIONS,
        overpayment: bool = False
    ) -> Payment:
        """
        Record one installment payment.

        Args:
            loan_id: Loan the payment applies to
            amount: Amount collected (Money, Decimal, int or str)
            method: cash, transfer, card or wallet
            paid_at: When the money was collected; drives the penalty
            transaction_ref: Optional receipt / transfer reference
            collected_by: Collecting role
            overpayment: Accept an amount above the total outstanding

        Returns:
            The recorded Payment, in ``pending`` sync state

        Raises:
            ValidationError: amount is not a positive number, or paid_at is missing
            InvalidLoanState: loan is not Approved or Active
            InsufficientPayment: amount below EMI plus penalty
            UnflaggedOverpayment: amount above total outstanding without the flag
        """
        if paid_at is None:
            raise ValidationError("paid_at is required")
        paid_at = self._as_timestamp(paid_at)
        method = PaymentMethod(method) if isinstance(method, str) else method
        try:
            amount = Money.of(amount)
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError(f"Payment amount must be a number, got {amount!r}")
        if not amount.amount.is_finite() or not amount.is_positive():
            raise ValidationError(f"Payment amount must be a positive number, got {amount.amount}")

        loan = self.book.get(loan_id)
        if loan.status not in PAYABLE_STATUSES:
            raise InvalidLoanState(loan_id, loan.status.value)

        ledger = self.book.ledger(loan)
        installment = ledger.next_installment(paid_at)
        if installment is None:
            raise InvalidLoanState(loan_id, loan.status.value,
                                   f"Loan {loan_id} has no unpaid installments")

        due = installment.total
        if amount < due:
            raise InsufficientPayment(loan_id, amount, due)

        outstanding = ledger.total_outstanding(paid_at)
        is_overpayment = amount > outstanding
        if is_overpayment and not overpayment:
            raise UnflaggedOverpayment(loan_id, amount, outstanding)

        payment = Payment(
            loan_id=loan_id,
            sequence=loan.next_sequence,
            amount=amount,
            method=method,
            paid_at=paid_at,
            penalty=installment.penalty.amount,
            transaction_ref=transaction_ref,
            collected_by=collected_by,
            overpayment=is_overpayment,
        )

        previous_status = loan.status
        snapshot = (loan.status, loan.status_comment, loan.comment_at, loan.updated_at, len(loan.comments))
        loan.payments.append(payment)
        if loan.status is LoanStatus.APPROVED:
            loan.status = LoanStatus.ACTIVE
            self.book.append_comment(loan, LoanStatus.ACTIVE, "Activated on first payment", collected_by)
        if loan.emis_remaining == 0:
            loan.status = LoanStatus.PAID
            self.book.append_comment(loan, LoanStatus.PAID, "All installments collected", collected_by)
        loan.updated_at = self.clock()

        try:
            with self.book.storage.atomic():
                # Status changes driven by a payment are applied remotely by the payment itself
                self.book.save(loan, synced=self.book.is_synced(loan_id))
                self.queue.enqueue_payment(payment)
        except Exception:
            loan.payments.pop()
            loan.status, loan.status_comment, loan.comment_at, loan.updated_at, count = snapshot
            del loan.comments[count:]
            raise

        log_action(logger, "info",
                   f"Recorded installment {payment.sequence} of {loan.tenure}: {amount.to_string()}",
                   loan_id=loan_id, role=collected_by.value, action="record_payment",
                   extra={"penalty": str(payment.penalty), "overdue_days": installment.penalty.overdue_days})

        self.dispatcher.emit(DomainEvent.PAYMENT_RECORDED, "payment", payment.payment_id, {
            "loan_id": loan_id,
            "sequence": payment.sequence,
            "amount": str(amount),
            "penalty": str(payment.penalty),
        })
        if loan.status is not previous_status:
            self.dispatcher.emit(DomainEvent.LOAN_STATUS_CHANGED, "loan", loan_id, {
                "from": previous_status.value, "to": loan.status.value, "role": collected_by.value,
            })
        return payment

    def _as_timestamp(self, value) -> datetime:
        if isinstance(value, datetime):
            return value
        if isinstance(value, date):
            return datetime.combine(value, time.min, tzinfo=civil_zone(self.book.policy.tz))
        raise ValidationError(f"paid_at must be a date or datetime, got {type(value).__name__}")
