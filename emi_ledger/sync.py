"""
Sync Manager Module

Drains the offline queue against the remote loan service. Operations of one
loan go out strictly in the order they were queued; different loans drain
concurrently. Transient failures back off and retry, remote rejections end in
``failed-terminal`` and trigger reconciliation against the remote snapshot.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
import asyncio
import logging

from .errors import (
    LoanNotFound, MalformedRecord, RefreshRequired, RemoteRejection, TransientNetworkError
)
from .events import DomainEvent, EventDispatcher
from .ledger import LoanBook, PAYABLE_STATUSES, can_transition
from .logging_config import log_action
from .models import Loan, LoanStatus
from .normalization import confirmation_reference, normalize_loan
from .queue import (
    HOLD_RECONCILE, HOLD_REFRESH, OfflineQueue, OperationKind, QueuedOperation
)


logger = logging.getLogger("emi_ledger.sync")


@dataclass
class SyncOutcome:
    """What one drain achieved. Keys are idempotency keys, loans are loan ids."""
    confirmed: List[str] = field(default_factory=list)
    deduplicated: List[str] = field(default_factory=list)
    retrying: List[str] = field(default_factory=list)
    failed_terminal: List[str] = field(default_factory=list)
    refresh_required: List[str] = field(default_factory=list)
    reconciled: List[str] = field(default_factory=list)

    def merge(self, other: 'SyncOutcome') -> None:
        for name in ("confirmed", "deduplicated", "retrying", "failed_terminal",
                     "refresh_required", "reconciled"):
            getattr(self, name).extend(getattr(other, name))

    @property
    def is_clean(self) -> bool:
        return not (self.retrying or self.failed_terminal or self.refresh_required)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "confirmed": self.confirmed,
            "deduplicated": self.deduplicated,
            "retrying": self.retrying,
            "failed_terminal": self.failed_terminal,
            "refresh_required": self.refresh_required,
            "reconciled": self.reconciled,
        }


class SyncManager:
    """Pushes queued writes to the remote service and folds results back into the book"""

    def __init__(
        self,
        book: LoanBook,
        queue: OfflineQueue,
        remote,
        dispatcher: Optional[EventDispatcher] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.book = book
        self.queue = queue
        self.remote = remote
        self.dispatcher = dispatcher or book.dispatcher
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, loan_id: str) -> asyncio.Lock:
        lock = self._locks.get(loan_id)
        if lock is None:
            lock = self._locks[loan_id] = asyncio.Lock()
        return lock

    async def sync_loan(self, loan_id: str) -> SyncOutcome:
        """Drain the queued operations of one loan in order"""
        outcome = SyncOutcome()
        async with self._lock(loan_id):
            await self._drain_loan(loan_id, outcome)
        return outcome

    async def drain(self) -> SyncOutcome:
        """Drain every loan with queued work; loans run concurrently"""
        loan_ids = self.queue.loans_with_work()
        for loan_id in self.queue.held_loans():
            if loan_id not in loan_ids and self.queue.hold_for(loan_id) == HOLD_RECONCILE:
                loan_ids.append(loan_id)

        outcome = SyncOutcome()
        if not loan_ids:
            return outcome

        results = await asyncio.gather(*(self.sync_loan(loan_id) for loan_id in loan_ids))
        for result in results:
            outcome.merge(result)

        log_action(logger, "info", f"Drained {len(loan_ids)} loans", action="drain",
                   extra={k: len(v) for k, v in outcome.to_dict().items()})
        return outcome

    async def on_connectivity_restored(self) -> SyncOutcome:
        """Re-enqueue anything written while offline and drain"""
        self.queue.sweep_unsynced()
        return await self.drain()

    async def run_periodic(self, interval: float, stop_event: Optional[asyncio.Event] = None) -> None:
        """Drain every ``interval`` seconds until ``stop_event`` is set"""
        stop_event = stop_event or asyncio.Event()
        while not stop_event.is_set():
            try:
                await self.drain()
            except Exception as e:
                logger.error(f"Periodic drain failed: {e}", exc_info=True)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    # -- draining -------------------------------------------------------------

    async def _drain_loan(self, loan_id: str, outcome: SyncOutcome) -> None:
        hold = self.queue.hold_for(loan_id)
        if hold == HOLD_REFRESH:
            return
        if hold == HOLD_RECONCILE and not await self.reconcile(loan_id, outcome):
            return

        now = self.clock()
        for op in self.queue.operations(loan_id):
            if op.is_terminal:
                # Settled by the reconcile or refresh that cleared the hold
                continue
            if not op.is_ready(now):
                break

            if self.queue.is_confirmed(op.idempotency_key):
                self._confirm(op, None)
                outcome.deduplicated.append(op.idempotency_key)
                continue

            self.queue.mark_in_flight(op)
            try:
                body = await self._send(op)
            except TransientNetworkError as e:
                self.queue.mark_failed(op, str(e))
                outcome.retrying.append(op.idempotency_key)
                break
            except LoanNotFound as e:
                if op.kind is OperationKind.DELETE_LOAN:
                    self._confirm(op, None)
                    outcome.confirmed.append(op.idempotency_key)
                    continue
                self._fail_terminal(op, e, outcome)
                self.queue.set_hold(loan_id, HOLD_REFRESH)
                outcome.refresh_required.append(loan_id)
                break
            except RefreshRequired as e:
                self._fail_terminal(op, e, outcome)
                self.queue.set_hold(loan_id, HOLD_REFRESH)
                outcome.refresh_required.append(loan_id)
                break
            except RemoteRejection as e:
                self._fail_terminal(op, e, outcome)
                self.queue.set_hold(loan_id, HOLD_RECONCILE)
                await self.reconcile(loan_id, outcome)
                break
            else:
                self._confirm(op, body)
                outcome.confirmed.append(op.idempotency_key)

        if self.book.find(loan_id) is not None and not self.queue.pending_for(loan_id):
            self.book.mark_synced(loan_id)

    async def _send(self, op: QueuedOperation) -> Any:
        if op.kind is OperationKind.CREATE_PAYMENT:
            return await self.remote.post_payment(op.loan_id, op.payload["body"], op.idempotency_key)
        if op.kind is OperationKind.UPDATE_LOAN_STATUS:
            return await self.remote.put_status(op.loan_id, op.payload["body"], op.idempotency_key)
        return await self.remote.delete_loan(op.loan_id, op.idempotency_key)

    def _confirm(self, op: QueuedOperation, body: Any) -> None:
        ref = confirmation_reference(body)
        self.queue.mark_confirmed(op, ref)
        if op.kind is OperationKind.CREATE_PAYMENT:
            payment = self.book.confirm_payment(op.loan_id, op.payment().sequence, ref)
            if payment is not None:
                self.dispatcher.emit(DomainEvent.PAYMENT_CONFIRMED, "payment", payment.payment_id, {
                    "loan_id": op.loan_id,
                    "sequence": payment.sequence,
                    "transaction_ref": payment.transaction_ref,
                })

    def _fail_terminal(self, op: QueuedOperation, error: RemoteRejection, outcome: SyncOutcome) -> None:
        self.queue.mark_terminal(op, str(error))
        outcome.failed_terminal.append(op.idempotency_key)
        self.dispatcher.emit(DomainEvent.SYNC_FAILED_TERMINAL, "loan", op.loan_id, {
            "op_id": op.op_id,
            "kind": op.kind.value,
            "idempotency_key": op.idempotency_key,
            "status_code": error.status_code,
            "error": error.detail,
        })

    # -- reconciliation -------------------------------------------------------

    async def reconcile(self, loan_id: str, outcome: Optional[SyncOutcome] = None) -> bool:
        """
        Rebuild a loan from its last confirmed remote snapshot plus the queued
        payments that still follow on from it.

        Returns False (and keeps the loan held) when the snapshot cannot be
        fetched; the next drain tries again.
        """
        try:
            raw = await self.remote.get_loan(loan_id)
            snapshot = normalize_loan(raw, self.book.policy.tz)
        except LoanNotFound:
            logger.warning(f"Loan {loan_id} no longer exists remotely, dropping local copy")
            self.book.forget(loan_id)
            self.dispatcher.emit(DomainEvent.LOAN_DELETED, "loan", loan_id, {"reason": "remote_not_found"})
            return True
        except (TransientNetworkError, RemoteRejection, MalformedRecord) as e:
            self.queue.set_hold(loan_id, HOLD_RECONCILE)
            log_action(logger, "warning", f"Reconciliation deferred: {e}", loan_id=loan_id,
                       action="reconcile_deferred")
            return False

        self._merge(snapshot)
        self.queue.clear_hold(loan_id)
        if outcome is not None:
            outcome.reconciled.append(loan_id)
        log_action(logger, "info", "Loan reconciled with remote snapshot", loan_id=loan_id,
                   action="reconcile")
        self.dispatcher.emit(DomainEvent.LOAN_RECONCILED, "loan", loan_id, {
            "emis_paid": snapshot.emis_paid,
            "status": snapshot.status.value,
        })
        return True

    async def refresh(self, loan_id: Optional[str] = None) -> List[Loan]:
        """
        Pull remote loans and merge them into the book, keeping local pending
        payments on top of the confirmed remote history. Clears refresh holds.
        """
        if loan_id is not None:
            try:
                raws = [await self.remote.get_loan(loan_id)]
            except LoanNotFound:
                self.book.forget(loan_id)
                self.dispatcher.emit(DomainEvent.LOAN_DELETED, "loan", loan_id, {"reason": "remote_not_found"})
                return []
        else:
            raws = await self.remote.list_loans()

        merged: List[Loan] = []
        for raw in raws:
            try:
                snapshot = normalize_loan(raw, self.book.policy.tz)
            except MalformedRecord as e:
                logger.warning(f"Skipping malformed remote loan: {e}")
                continue
            async with self._lock(snapshot.loan_id):
                loan = self._merge(snapshot)
                self.queue.clear_hold(snapshot.loan_id)
            if loan is not None:
                merged.append(loan)

        logger.info(f"Refreshed {len(merged)} loans from remote")
        return merged

    def _merge(self, snapshot: Loan) -> Optional[Loan]:
        """
        Lay still-valid queued writes over a remote snapshot and install the
        result. Queued payments must continue the confirmed sequence without
        gaps; anything else is invalidated.
        """
        loan_id = snapshot.loan_id
        ops = self.queue.operations(loan_id)
        if any(op.kind is OperationKind.DELETE_LOAN and not op.is_terminal for op in ops):
            return None

        remote_keys = {p.idempotency_key for p in snapshot.payments}
        payments = list(snapshot.payments)
        status = snapshot.status
        unsynced = False

        for op in ops:
            if op.kind is OperationKind.CREATE_PAYMENT:
                if op.is_terminal:
                    # A remote installment under the same number belongs to someone else
                    self.queue.drop_payment_row(op.idempotency_key)
                    continue
                if op.idempotency_key in remote_keys:
                    # An earlier attempt landed even though we never saw the answer
                    self.queue.mark_confirmed(op)
                    continue
                payment = op.payment()
                next_sequence = payments[-1].sequence + 1 if payments else 1
                if (payment.sequence == next_sequence and len(payments) < snapshot.tenure
                        and status in PAYABLE_STATUSES):
                    payments.append(payment)
                    if status is LoanStatus.APPROVED:
                        status = LoanStatus.ACTIVE
                    if len(payments) == snapshot.tenure:
                        status = LoanStatus.PAID
                    unsynced = True
                else:
                    self.queue.mark_terminal(op, "Superseded by remote payment history")
                    self.queue.drop_payment_row(op.idempotency_key)
                    self.dispatcher.emit(DomainEvent.PAYMENT_REJECTED, "payment", payment.payment_id, {
                        "loan_id": loan_id,
                        "sequence": payment.sequence,
                        "reason": "superseded",
                    })
            elif op.kind is OperationKind.UPDATE_LOAN_STATUS and not op.is_terminal:
                target = LoanStatus(op.payload["status"])
                if can_transition(status, target):
                    status = target
                    unsynced = True
                elif target is status:
                    self.queue.mark_confirmed(op)
                else:
                    self.queue.mark_terminal(op, f"Remote loan is {status.value}, cannot move to {target.value}")

        snapshot.payments = payments
        snapshot.status = status
        self.book.replace(snapshot, synced=not unsynced)
        return snapshot
