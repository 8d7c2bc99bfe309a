"""
Test suite for the offline queue
"""

import pytest
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

from emi_ledger.currency import Money
from emi_ledger.models import LoanStatus, Payment, PaymentMethod
from emi_ledger.queue import (
    OfflineQueue, OperationKind, OperationState, backoff_delay,
    CONFIRMED_TABLE, LOANS_TABLE, PAYMENTS_TABLE, HOLD_RECONCILE
)
from emi_ledger.storage import InMemoryStorage, SQLiteStorage

from conftest import FixedClock


def make_payment(sequence=1, loan_id="L1"):
    return Payment(loan_id, sequence, Money.of("5000"), PaymentMethod.CASH,
                   datetime(2024, 2, 2, 10, 0, tzinfo=timezone.utc))


class TestBackoff:
    """Test retry delays"""

    def test_doubles(self):
        delays = [backoff_delay(n, 2.0, 300.0).total_seconds() for n in (1, 2, 3, 4)]
        assert delays == [2.0, 4.0, 8.0, 16.0]

    def test_capped(self):
        assert backoff_delay(20, 2.0, 300.0) == timedelta(seconds=300)


class TestOfflineQueue:
    """Test queue ordering, state changes and recovery"""

    def setup_method(self):
        self.clock = FixedClock(datetime(2024, 3, 5, 10, 0, tzinfo=timezone.utc))
        self.storage = InMemoryStorage()
        self.queue = OfflineQueue(self.storage, clock=self.clock)

    def test_enqueue_payment(self):
        op = self.queue.enqueue_payment(make_payment())

        assert op.kind is OperationKind.CREATE_PAYMENT
        assert op.idempotency_key == "L1:1"
        assert op.state is OperationState.QUEUED
        assert op.payment().sequence == 1
        assert op.payment().amount == Money.of("5000")
        assert op.payload["body"]["emiNumber"] == 1
        assert self.storage.load(PAYMENTS_TABLE, "L1:1")["synced"] is False

    def test_same_key_enqueued_once(self):
        first = self.queue.enqueue_payment(make_payment())
        second = self.queue.enqueue_payment(make_payment())

        assert second.op_id == first.op_id
        assert len(self.queue) == 1

    def test_fifo_order(self):
        self.queue.enqueue_payment(make_payment(1))
        self.queue.enqueue_status("L1", LoanStatus.ACTIVE, "go")
        self.queue.enqueue_payment(make_payment(2))

        kinds = [op.kind for op in self.queue.operations("L1")]
        assert kinds == [OperationKind.CREATE_PAYMENT, OperationKind.UPDATE_LOAN_STATUS,
                         OperationKind.CREATE_PAYMENT]

    def test_status_and_delete_keys(self):
        status = self.queue.enqueue_status("L1", LoanStatus.APPROVED, None)
        delete = self.queue.enqueue_delete("L1")

        assert status.idempotency_key == "L1:status:Approved:2024-03-05T10:00:00+00:00"
        assert status.payload["body"] == {"status": "Approved", "comment": ""}
        assert delete.idempotency_key == "L1:delete"

    def test_mark_confirmed(self):
        op = self.queue.enqueue_payment(make_payment())

        self.queue.mark_confirmed(op, "TXN-1")

        assert len(self.queue) == 0
        assert self.queue.is_confirmed("L1:1")
        assert self.storage.load(CONFIRMED_TABLE, "L1:1")["transaction_ref"] == "TXN-1"
        assert self.storage.load(PAYMENTS_TABLE, "L1:1")["synced"] is True

    def test_mark_failed_schedules_backoff(self):
        op = self.queue.enqueue_payment(make_payment())

        self.queue.mark_failed(op, "timeout")
        stored = self.queue.get(op.op_id)

        assert stored.state is OperationState.FAILED
        assert stored.retry_count == 1
        assert stored.last_error == "timeout"
        assert stored.next_attempt_at == self.clock.now + timedelta(seconds=2)
        assert not stored.is_ready(self.clock.now)
        assert stored.is_ready(self.clock.now + timedelta(seconds=2))

        self.queue.mark_failed(stored, "timeout")
        assert self.queue.get(op.op_id).next_attempt_at == self.clock.now + timedelta(seconds=4)

    def test_terminal_is_never_ready(self):
        op = self.queue.enqueue_payment(make_payment())

        self.queue.mark_terminal(op, "rejected")

        stored = self.queue.get(op.op_id)
        assert stored.is_terminal
        assert not stored.is_ready(self.clock.now + timedelta(days=1))
        assert self.queue.failed_terminal()[0].op_id == op.op_id
        assert self.queue.loans_with_work() == []
        assert self.queue.pending_for("L1") == []

    def test_terminal_key_can_be_enqueued_again(self):
        op = self.queue.enqueue_payment(make_payment())
        self.queue.mark_terminal(op, "rejected")

        again = self.queue.enqueue_payment(make_payment())

        assert again.op_id != op.op_id
        assert len(self.queue) == 2

    def test_retry(self):
        op = self.queue.enqueue_payment(make_payment())
        self.queue.mark_terminal(op, "rejected")

        retried = self.queue.retry(op.op_id)

        assert retried.state is OperationState.QUEUED
        assert retried.last_error is None
        with pytest.raises(KeyError):
            self.queue.retry("missing")

    def test_discard_drops_payment_row(self):
        op = self.queue.enqueue_payment(make_payment())

        assert self.queue.discard(op.op_id)

        assert len(self.queue) == 0
        assert not self.storage.exists(PAYMENTS_TABLE, "L1:1")
        assert not self.queue.discard(op.op_id)

    def test_recover_in_flight(self):
        op = self.queue.enqueue_payment(make_payment())
        self.queue.mark_in_flight(op)

        assert self.queue.recover_in_flight() == 1
        assert self.queue.get(op.op_id).state is OperationState.QUEUED
        assert self.queue.recover_in_flight() == 0

    def test_loans_with_work_in_first_seen_order(self):
        self.queue.enqueue_payment(make_payment(1, "B"))
        self.queue.enqueue_payment(make_payment(1, "A"))
        self.queue.enqueue_payment(make_payment(2, "B"))

        assert self.queue.loans_with_work() == ["B", "A"]

    def test_purge_loan(self):
        self.queue.enqueue_payment(make_payment(1, "A"))
        self.queue.enqueue_payment(make_payment(1, "B"))
        self.queue.set_hold("A", HOLD_RECONCILE)

        assert self.queue.purge_loan("A") == 1

        assert [op.loan_id for op in self.queue.operations()] == ["B"]
        assert not self.storage.exists(PAYMENTS_TABLE, "A:1")
        assert self.queue.hold_for("A") is None

    def test_holds(self):
        self.queue.set_hold("L1", HOLD_RECONCILE)

        assert self.queue.hold_for("L1") == "reconcile"
        assert self.queue.held_loans() == ["L1"]

        self.queue.clear_hold("L1")
        assert self.queue.hold_for("L1") is None


class TestSweep:
    """Test re-enqueueing unsynced rows that lost their operation"""

    def setup_method(self):
        self.clock = FixedClock(datetime(2024, 3, 5, 10, 0, tzinfo=timezone.utc))
        self.storage = InMemoryStorage()
        self.queue = OfflineQueue(self.storage, clock=self.clock)

    def test_orphan_payment_row_requeued(self):
        payment = make_payment()
        self.storage.save(PAYMENTS_TABLE, "L1:1", {
            "id": "L1:1", "loanId": "L1", "amount": "5000.00", "method": "cash",
            "timestamp": payment.paid_at.isoformat(), "synced": False, "record": payment.to_dict(),
        })

        requeued = self.queue.sweep_unsynced()

        assert [op.idempotency_key for op in requeued] == ["L1:1"]
        assert self.queue.sweep_unsynced() == []

    def test_confirmed_row_not_requeued(self):
        op = self.queue.enqueue_payment(make_payment())
        self.queue.mark_confirmed(op)
        self.storage.update(PAYMENTS_TABLE, "L1:1", {"synced": False})

        assert self.queue.sweep_unsynced() == []

    def test_unsynced_loan_row_requeues_status(self):
        self.storage.save(LOANS_TABLE, "L1", {
            "id": "L1", "status": "Verified", "synced": False,
            "record": {"status": "Verified", "status_comment": "Documents checked"},
        })

        requeued = self.queue.sweep_unsynced()

        assert len(requeued) == 1
        assert requeued[0].kind is OperationKind.UPDATE_LOAN_STATUS
        assert requeued[0].payload["body"] == {"status": "Verified", "comment": "Documents checked"}


class TestQueueDurability:
    """Test the queue survives an app restart"""

    def test_restart(self):
        clock = FixedClock(datetime(2024, 3, 5, 10, 0, tzinfo=timezone.utc))
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "device.db"
            storage = SQLiteStorage(db_path)
            queue = OfflineQueue(storage, clock=clock)
            first = queue.enqueue_payment(make_payment(1))
            queue.enqueue_payment(make_payment(2))
            queue.mark_in_flight(first)
            storage.close()

            reopened = SQLiteStorage(db_path)
            queue = OfflineQueue(reopened, clock=clock)

            assert queue.recover_in_flight() == 1
            assert [op.idempotency_key for op in queue.operations()] == ["L1:1", "L1:2"]
            assert all(op.state is OperationState.QUEUED for op in queue.operations())
            reopened.close()
