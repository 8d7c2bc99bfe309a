"""
Offline Queue Module

Durable, ordered queue of remote writes produced while the device may be
offline. Every write carries an idempotency key; keys confirmed by the remote
service are remembered in ``confirmed_keys`` so a replay never produces a
second write.

Tables:
    sync_queue      queued operations, in enqueue order
    payments        locally recorded payments (loanId, amount, method,
                    timestamp, synced) plus the full record for replay
    confirmed_keys  idempotency keys the remote service has acknowledged
    sync_holds      loans whose draining waits for a reconcile or refresh
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional
import logging
import uuid

from .logging_config import log_action
from .models import LoanStatus, Payment
from .normalization import payment_request_body, status_request_body


logger = logging.getLogger("emi_ledger.queue")

QUEUE_TABLE = "sync_queue"
PAYMENTS_TABLE = "payments"
CONFIRMED_TABLE = "confirmed_keys"
LOANS_TABLE = "loans"
HOLDS_TABLE = "sync_holds"

HOLD_RECONCILE = "reconcile"
HOLD_REFRESH = "refresh"


class OperationKind(Enum):
    CREATE_PAYMENT = "create-payment"
    UPDATE_LOAN_STATUS = "update-loan-status"
    DELETE_LOAN = "delete-loan"


class OperationState(Enum):
    QUEUED = "queued"
    IN_FLIGHT = "in-flight"
    FAILED = "failed"                  # Retryable, waiting for backoff
    FAILED_TERMINAL = "failed-terminal"  # Needs user attention, never retried automatically


@dataclass
class QueuedOperation:
    """One pending remote write"""
    kind: OperationKind
    loan_id: str
    idempotency_key: str
    payload: Dict[str, Any]
    created_at: datetime
    state: OperationState = OperationState.QUEUED
    retry_count: int = 0
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    op_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def is_terminal(self) -> bool:
        return self.state is OperationState.FAILED_TERMINAL

    def payment(self) -> Optional[Payment]:
        """The payment carried by a create-payment operation"""
        if self.kind is not OperationKind.CREATE_PAYMENT:
            return None
        return Payment.from_dict(self.payload["payment"])

    def is_ready(self, now: datetime) -> bool:
        if self.state is OperationState.QUEUED:
            return True
        if self.state is OperationState.FAILED:
            return self.next_attempt_at is None or self.next_attempt_at <= now
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.op_id,
            "kind": self.kind.value,
            "loan_id": self.loan_id,
            "idempotency_key": self.idempotency_key,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
            "state": self.state.value,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'QueuedOperation':
        next_attempt = data.get("next_attempt_at")
        return cls(
            op_id=data["id"],
            kind=OperationKind(data["kind"]),
            loan_id=data["loan_id"],
            idempotency_key=data["idempotency_key"],
            payload=data["payload"],
            created_at=datetime.fromisoformat(data["created_at"]),
            state=OperationState(data["state"]),
            retry_count=data.get("retry_count", 0),
            last_error=data.get("last_error"),
            next_attempt_at=datetime.fromisoformat(next_attempt) if next_attempt else None,
        )


def backoff_delay(retry_count: int, base_seconds: float, max_seconds: float) -> timedelta:
    """Exponential backoff: base, 2*base, 4*base ... capped at max"""
    seconds = base_seconds * (2 ** max(retry_count - 1, 0))
    return timedelta(seconds=min(seconds, max_seconds))


class OfflineQueue:
    """Ordered, durable queue of remote writes keyed by idempotency key"""

    def __init__(
        self,
        storage,
        clock: Optional[Callable[[], datetime]] = None,
        backoff_base_seconds: float = 2.0,
        backoff_max_seconds: float = 300.0
    ):
        self.storage = storage
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds

    # -- enqueue -----------------------------------------------------------

    def enqueue_payment(self, payment: Payment) -> QueuedOperation:
        """Queue a create-payment write and mirror the payment row as unsynced"""
        key = payment.idempotency_key
        existing = self.find_by_key(key)
        if existing is not None and not existing.is_terminal:
            return existing

        op = QueuedOperation(
            kind=OperationKind.CREATE_PAYMENT,
            loan_id=payment.loan_id,
            idempotency_key=key,
            payload={"payment": payment.to_dict(), "body": payment_request_body(payment)},
            created_at=self.clock(),
        )
        with self.storage.atomic():
            self.storage.save(PAYMENTS_TABLE, key, {
                "id": key,
                "loanId": payment.loan_id,
                "amount": str(payment.amount.amount),
                "method": payment.method.value,
                "timestamp": payment.paid_at.isoformat(),
                "synced": False,
                "record": payment.to_dict(),
            })
            self._save(op)
        log_action(logger, "info", f"Queued payment {key}", loan_id=payment.loan_id,
                   action="enqueue_payment", op_id=op.op_id)
        return op

    def enqueue_status(self, loan_id: str, status: LoanStatus, comment: Optional[str]) -> QueuedOperation:
        now = self.clock()
        op = QueuedOperation(
            kind=OperationKind.UPDATE_LOAN_STATUS,
            loan_id=loan_id,
            idempotency_key=f"{loan_id}:status:{status.value}:{now.isoformat()}",
            payload={"status": status.value, "body": status_request_body(status, comment)},
            created_at=now,
        )
        self._save(op)
        log_action(logger, "info", f"Queued status update {status.value}", loan_id=loan_id,
                   action="enqueue_status", op_id=op.op_id)
        return op

    def enqueue_delete(self, loan_id: str) -> QueuedOperation:
        op = QueuedOperation(
            kind=OperationKind.DELETE_LOAN,
            loan_id=loan_id,
            idempotency_key=f"{loan_id}:delete",
            payload={},
            created_at=self.clock(),
        )
        self._save(op)
        return op

    # -- queries -----------------------------------------------------------

    def operations(self, loan_id: Optional[str] = None,
                   states: Optional[Iterable[OperationState]] = None) -> List[QueuedOperation]:
        """Operations in enqueue order, optionally filtered"""
        wanted = set(states) if states is not None else None
        ops = [QueuedOperation.from_dict(row) for row in self.storage.load_all(QUEUE_TABLE)]
        return [
            op for op in ops
            if (loan_id is None or op.loan_id == loan_id)
            and (wanted is None or op.state in wanted)
        ]

    def pending_for(self, loan_id: str) -> List[QueuedOperation]:
        """Operations still awaiting the remote service (terminal ones excluded)"""
        return [op for op in self.operations(loan_id) if not op.is_terminal]

    def failed_terminal(self) -> List[QueuedOperation]:
        return self.operations(states=[OperationState.FAILED_TERMINAL])

    def loans_with_work(self) -> List[str]:
        loan_ids: List[str] = []
        for op in self.operations():
            if not op.is_terminal and op.loan_id not in loan_ids:
                loan_ids.append(op.loan_id)
        return loan_ids

    def get(self, op_id: str) -> Optional[QueuedOperation]:
        row = self.storage.load(QUEUE_TABLE, op_id)
        return QueuedOperation.from_dict(row) if row else None

    def find_by_key(self, key: str) -> Optional[QueuedOperation]:
        for op in self.operations():
            if op.idempotency_key == key:
                return op
        return None

    def is_confirmed(self, key: str) -> bool:
        return self.storage.exists(CONFIRMED_TABLE, key)

    def __len__(self) -> int:
        return len(self.operations())

    # -- state changes -----------------------------------------------------

    def recover_in_flight(self) -> int:
        """Return operations interrupted mid-flight (crash, app kill) to the queue"""
        recovered = 0
        for op in self.operations(states=[OperationState.IN_FLIGHT]):
            op.state = OperationState.QUEUED
            self._save(op)
            recovered += 1
        if recovered:
            logger.info(f"Recovered {recovered} in-flight operations")
        return recovered

    def mark_in_flight(self, op: QueuedOperation) -> None:
        op.state = OperationState.IN_FLIGHT
        self._save(op)

    def mark_confirmed(self, op: QueuedOperation, transaction_ref: Optional[str] = None) -> None:
        """Remember the key, flag the mirrored row synced and drop the operation"""
        with self.storage.atomic():
            self.storage.save(CONFIRMED_TABLE, op.idempotency_key, {
                "id": op.idempotency_key,
                "loan_id": op.loan_id,
                "op_id": op.op_id,
                "transaction_ref": transaction_ref,
                "confirmed_at": self.clock().isoformat(),
            })
            if op.kind is OperationKind.CREATE_PAYMENT:
                self.storage.update(PAYMENTS_TABLE, op.idempotency_key, {"synced": True})
            self.storage.delete(QUEUE_TABLE, op.op_id)
        log_action(logger, "info", f"Confirmed {op.kind.value} {op.idempotency_key}",
                   loan_id=op.loan_id, action="confirm", op_id=op.op_id)

    def mark_failed(self, op: QueuedOperation, error: str) -> None:
        """Retryable failure; schedule the next attempt with exponential backoff"""
        op.retry_count += 1
        op.last_error = error
        op.state = OperationState.FAILED
        op.next_attempt_at = self.clock() + backoff_delay(
            op.retry_count, self.backoff_base_seconds, self.backoff_max_seconds
        )
        self._save(op)
        log_action(logger, "warning", f"Sync attempt {op.retry_count} failed: {error}",
                   loan_id=op.loan_id, action="retry_scheduled", op_id=op.op_id)

    def mark_terminal(self, op: QueuedOperation, error: str) -> None:
        op.state = OperationState.FAILED_TERMINAL
        op.last_error = error
        op.next_attempt_at = None
        self._save(op)
        log_action(logger, "error", f"Operation {op.idempotency_key} failed permanently: {error}",
                   loan_id=op.loan_id, action="failed_terminal", op_id=op.op_id)

    def retry(self, op_id: str) -> QueuedOperation:
        """User-initiated retry of a failed-terminal operation"""
        op = self.get(op_id)
        if op is None:
            raise KeyError(op_id)
        op.state = OperationState.QUEUED
        op.next_attempt_at = None
        op.last_error = None
        self._save(op)
        return op

    def discard(self, op_id: str) -> bool:
        """User-initiated removal of an operation and its unsynced payment row"""
        op = self.get(op_id)
        if op is None:
            return False
        with self.storage.atomic():
            if op.kind is OperationKind.CREATE_PAYMENT:
                self.drop_payment_row(op.idempotency_key)
            self.storage.delete(QUEUE_TABLE, op.op_id)
        return True

    def drop_payment_row(self, key: str) -> None:
        self.storage.delete(PAYMENTS_TABLE, key)

    def purge_loan(self, loan_id: str) -> int:
        """Remove every operation, payment row and hold for a loan"""
        with self.storage.atomic():
            removed = self.storage.delete_where(QUEUE_TABLE, {"loan_id": loan_id})
            self.storage.delete_where(PAYMENTS_TABLE, {"loanId": loan_id})
            self.storage.delete(HOLDS_TABLE, loan_id)
        return removed

    # -- holds ---------------------------------------------------------------

    def set_hold(self, loan_id: str, reason: str) -> None:
        """Stop draining a loan until it is reconciled or refreshed"""
        self.storage.save(HOLDS_TABLE, loan_id, {
            "id": loan_id,
            "reason": reason,
            "since": self.clock().isoformat(),
        })

    def hold_for(self, loan_id: str) -> Optional[str]:
        row = self.storage.load(HOLDS_TABLE, loan_id)
        return row["reason"] if row else None

    def held_loans(self) -> List[str]:
        return [row["id"] for row in self.storage.load_all(HOLDS_TABLE)]

    def clear_hold(self, loan_id: str) -> None:
        self.storage.delete(HOLDS_TABLE, loan_id)

    # -- sweep ---------------------------------------------------------------

    def sweep_unsynced(self) -> List[QueuedOperation]:
        """
        Re-enqueue locally written rows still flagged unsynced that have no
        operation in the queue (rows written by an older client, or queue
        entries lost before they were persisted).
        """
        queued_keys = {op.idempotency_key for op in self.operations()}
        queued_loans = {op.loan_id for op in self.operations()
                        if op.kind is OperationKind.UPDATE_LOAN_STATUS}
        requeued: List[QueuedOperation] = []

        for row in self.storage.find(PAYMENTS_TABLE, {"synced": False}):
            if row["id"] in queued_keys or self.is_confirmed(row["id"]):
                continue
            payment = Payment.from_dict(row["record"])
            requeued.append(self.enqueue_payment(payment))

        for row in self.storage.find(LOANS_TABLE, {"synced": False}):
            if row["id"] in queued_loans:
                continue
            record = row["record"]
            requeued.append(self.enqueue_status(
                row["id"], LoanStatus(record["status"]), record.get("status_comment")
            ))

        if requeued:
            logger.info(f"Sweep re-enqueued {len(requeued)} unsynced records")
        return requeued

    def _save(self, op: QueuedOperation) -> None:
        self.storage.save(QUEUE_TABLE, op.op_id, op.to_dict())
