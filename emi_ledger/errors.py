"""Exception hierarchy for the EMI ledger engine."""

from typing import Optional

from .currency import Money


class EmiLedgerError(Exception):
    """Base exception for all engine errors."""


class ValidationError(EmiLedgerError):
    """Rejected input. Reported to the caller, never retried, never mutates state."""


class InvalidLoanState(ValidationError):
    """Raised when a loan is not in a state that allows the operation."""

    def __init__(self, loan_id: str, status: str, message: Optional[str] = None):
        self.loan_id = loan_id
        self.status = status
        super().__init__(message or f"Loan {loan_id} is {status} and cannot accept this operation")


class InvalidTransition(InvalidLoanState):
    """Raised when a lifecycle transition is not allowed from the current status."""

    def __init__(self, loan_id: str, status: str, target: str):
        self.target = target
        super().__init__(loan_id, status, f"Loan {loan_id} cannot move from {status} to {target}")


class InsufficientPayment(ValidationError):
    """Raised when a payment does not cover EMI plus penalty."""

    def __init__(self, loan_id: str, amount: Money, due: Money):
        self.loan_id = loan_id
        self.amount = amount
        self.due = due
        self.shortfall = due - amount
        super().__init__(
            f"Payment of {amount.to_string()} for loan {loan_id} is short by "
            f"{self.shortfall.to_string()} (due {due.to_string()})"
        )


class UnflaggedOverpayment(ValidationError):
    """Raised when a payment exceeds total outstanding without the overpayment flag."""

    def __init__(self, loan_id: str, amount: Money, outstanding: Money):
        self.loan_id = loan_id
        self.amount = amount
        self.outstanding = outstanding
        super().__init__(
            f"Payment of {amount.to_string()} exceeds outstanding {outstanding.to_string()} "
            f"on loan {loan_id}; mark it as an overpayment to accept it"
        )


class LoanNotFoundLocally(ValidationError):
    """Raised when an operation names a loan the local book does not hold."""

    def __init__(self, loan_id: str):
        self.loan_id = loan_id
        super().__init__(f"Loan {loan_id} not found")


class MalformedRecord(EmiLedgerError, ValueError):
    """Raised when a remote record cannot be normalized."""


class SyncError(EmiLedgerError):
    """Base class for failures talking to the remote system of record."""


class TransientNetworkError(SyncError):
    """Network or server hiccup. The operation stays queued and is retried."""


class RemoteRejection(SyncError):
    """Non-retryable refusal by the remote service."""

    def __init__(self, status_code: int, detail: str):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Remote rejected request ({status_code}): {detail}")


class RefreshRequired(RemoteRejection):
    """The remote copy moved on; the client must refresh before acting again."""


class LoanNotFound(RefreshRequired):
    """The loan no longer exists remotely."""


class StateConflict(RefreshRequired):
    """The loan was already changed elsewhere (e.g. duplicate installment)."""
