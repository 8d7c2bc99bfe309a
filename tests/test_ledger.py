"""
Test suite for the loan ledger read model and the loan book

The reference scenario: tenure 12, EMI 5,000, originated 2024-01-10, nothing
paid, as of 2024-03-05. Installment 1 was due 2024-02-02 and is 32 days late.
"""

import pytest
from datetime import date, datetime, timezone

from emi_ledger.currency import Money
from emi_ledger.errors import InvalidLoanState, InvalidTransition, LoanNotFoundLocally
from emi_ledger.events import DomainEvent, EventDispatcher
from emi_ledger.ledger import LoanBook, LoanLedger, LOANS_TABLE
from emi_ledger.models import KycStatus, LoanStatus, Payment, PaymentMethod, Role, SyncState
from emi_ledger.penalty import PenaltyPolicy
from emi_ledger.queue import OfflineQueue, OperationKind
from emi_ledger.storage import InMemoryStorage

from conftest import make_loan


def paid(loan_id, sequence, when, amount="5000", penalty="0"):
    return Payment(loan_id, sequence, Money.of(amount), PaymentMethod.CASH, when,
                   penalty=Money.of(penalty), sync_state=SyncState.CONFIRMED)


class TestLoanLedger:
    """Test ledger queries"""

    def test_reference_scenario(self):
        ledger = LoanLedger(make_loan())
        as_of = date(2024, 3, 5)

        installment = ledger.next_installment(as_of)

        assert installment.sequence == 1
        assert installment.due_date == date(2024, 2, 2)
        assert installment.penalty.overdue_days == 32
        assert installment.penalty.amount == Money.of("640")
        assert ledger.amount_due_for_next_installment(as_of) == Money.of("5640")
        assert ledger.is_overdue(as_of)
        assert ledger.derived_status(as_of) is LoanStatus.OVERDUE
        assert ledger.emis_paid() == 0
        assert ledger.emis_remaining() == 12

    def test_not_overdue_before_due_date(self):
        ledger = LoanLedger(make_loan())
        as_of = date(2024, 2, 2)

        assert not ledger.is_overdue(as_of)
        assert ledger.derived_status(as_of) is LoanStatus.ACTIVE
        assert ledger.amount_due_for_next_installment(as_of) == Money.of("5000")

    def test_utc_evening_of_due_date_is_a_day_late(self):
        """20:00 UTC on 2 Feb is 3 Feb in Kolkata"""
        ledger = LoanLedger(make_loan())
        as_of = datetime(2024, 2, 2, 20, 0, tzinfo=timezone.utc)

        assert ledger.amount_due_for_next_installment(as_of) == Money.of("5020")
        assert ledger.is_overdue(as_of)

    def test_policy_timezone_decides_the_civil_day(self):
        ledger = LoanLedger(make_loan(), PenaltyPolicy(tz=timezone.utc))
        as_of = datetime(2024, 2, 2, 20, 0, tzinfo=timezone.utc)

        assert ledger.amount_due_for_next_installment(as_of) == Money.of("5000")
        assert not ledger.is_overdue(as_of)

    def test_paid_installment_moves_next_due(self):
        loan = make_loan()
        loan.payments.append(paid("L1", 1, datetime(2024, 2, 1, tzinfo=timezone.utc)))
        ledger = LoanLedger(loan)

        assert ledger.next_installment(date(2024, 3, 5)).due_date == date(2024, 3, 2)
        assert ledger.days_overdue(date(2024, 3, 5)) == 3
        assert ledger.amount_due_for_next_installment(date(2024, 3, 5)) == Money.of("5060")

    def test_total_outstanding_counts_every_overdue_installment(self):
        ledger = LoanLedger(make_loan())
        as_of = date(2024, 3, 5)

        # 12 EMIs plus 32 days on installment 1 and 3 days on installment 2
        assert ledger.total_outstanding(as_of) == Money.of("60000") + Money.of("640") + Money.of("60")
        assert len(ledger.overdue_installments(as_of)) == 2

    def test_overdue_only_for_payable_loans(self):
        ledger = LoanLedger(make_loan(status=LoanStatus.PENDING))
        assert not ledger.is_overdue(date(2024, 6, 1))
        assert ledger.derived_status(date(2024, 6, 1)) is LoanStatus.PENDING

    def test_fully_paid(self):
        loan = make_loan(tenure=2, status=LoanStatus.PAID)
        loan.payments.extend([
            paid("L1", 1, datetime(2024, 2, 2, tzinfo=timezone.utc)),
            paid("L1", 2, datetime(2024, 3, 2, tzinfo=timezone.utc)),
        ])
        ledger = LoanLedger(loan)

        assert ledger.next_installment(date(2024, 9, 1)) is None
        assert ledger.amount_due_for_next_installment(date(2024, 9, 1)).is_zero()
        assert not ledger.is_overdue(date(2024, 9, 1))
        assert ledger.derived_status(date(2024, 9, 1)) is LoanStatus.PAID

    def test_custom_penalty_policy(self):
        ledger = LoanLedger(make_loan(), PenaltyPolicy(per_day=Money.of("10"), cap=Money.of("200")))
        assert ledger.amount_due_for_next_installment(date(2024, 3, 5)) == Money.of("5200")

    def test_schedule_has_tenure_entries(self):
        ledger = LoanLedger(make_loan(tenure=6))
        assert [e.sequence for e in ledger.schedule()] == [1, 2, 3, 4, 5, 6]


class TestLoanBook:
    """Test loan book transitions and persistence"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.clock = lambda: datetime(2024, 3, 5, 10, 0, tzinfo=timezone.utc)
        self.queue = OfflineQueue(self.storage, clock=self.clock)
        self.dispatcher = EventDispatcher()
        self.events = []
        self.dispatcher.subscribe_all(self.events.append)
        self.book = LoanBook(self.storage, self.queue, PenaltyPolicy(), self.dispatcher, self.clock)

    def test_add_and_get(self):
        self.book.add(make_loan(status=LoanStatus.PENDING, kyc=KycStatus.PENDING))

        assert self.book.get("L1").status is LoanStatus.PENDING
        assert self.book.find("missing") is None
        with pytest.raises(LoanNotFoundLocally):
            self.book.get("missing")
        with pytest.raises(InvalidLoanState):
            self.book.add(make_loan())

    def test_full_approval_path(self):
        self.book.add(make_loan(status=LoanStatus.PENDING))

        self.book.verify("L1", Role.VERIFIER, "Documents checked")
        self.book.approve("L1", Role.ADMIN)
        loan = self.book.activate("L1", Role.ADMIN)

        assert loan.status is LoanStatus.ACTIVE
        assert [c.status for c in loan.comments] == [
            LoanStatus.VERIFIED, LoanStatus.APPROVED, LoanStatus.ACTIVE
        ]
        assert loan.comments[0].role is Role.VERIFIER
        assert loan.comments[0].comment == "Documents checked"
        assert loan.status_comment == "Collection started"

        ops = self.queue.operations("L1")
        assert [op.kind for op in ops] == [OperationKind.UPDATE_LOAN_STATUS] * 3
        assert [op.payload["status"] for op in ops] == ["Verified", "Approved", "Active"]
        assert not self.book.is_synced("L1")

        changed = [e for e in self.events if e.event_type is DomainEvent.LOAN_STATUS_CHANGED]
        assert [e.data["to"] for e in changed] == ["Verified", "Approved", "Active"]

    def test_reject_from_pending_or_verified(self):
        self.book.add(make_loan("A", status=LoanStatus.PENDING))
        self.book.add(make_loan("B", status=LoanStatus.VERIFIED))

        assert self.book.reject("A", "Address mismatch").status is LoanStatus.REJECTED
        assert self.book.reject("B", "Income too low").status is LoanStatus.REJECTED

    @pytest.mark.parametrize("status,action", [
        (LoanStatus.PENDING, "approve"),
        (LoanStatus.VERIFIED, "activate"),
        (LoanStatus.ACTIVE, "verify"),
        (LoanStatus.REJECTED, "verify"),
        (LoanStatus.PAID, "activate"),
    ])
    def test_invalid_transitions(self, status, action):
        self.book.add(make_loan(status=status))

        with pytest.raises(InvalidTransition):
            getattr(self.book, action)("L1")

        loan = self.book.get("L1")
        assert loan.status is status
        assert loan.comments == []
        assert len(self.queue) == 0

    def test_reject_after_approval_not_allowed(self):
        self.book.add(make_loan(status=LoanStatus.APPROVED))
        with pytest.raises(InvalidTransition):
            self.book.reject("L1", "Changed mind")

    def test_mark_pending_is_a_comment_on_a_pending_loan(self):
        self.book.add(make_loan(status=LoanStatus.PENDING))

        loan = self.book.mark_pending("L1", "Waiting for Aadhaar copy")

        assert loan.status is LoanStatus.PENDING
        assert loan.status_comment == "Waiting for Aadhaar copy"
        assert len(self.queue.operations("L1")) == 1

    def test_mark_pending_never_moves_backwards(self):
        self.book.add(make_loan(status=LoanStatus.VERIFIED))
        with pytest.raises(InvalidTransition):
            self.book.mark_pending("L1", "Recheck")

    def test_update_kyc(self):
        self.book.add(make_loan(status=LoanStatus.PENDING, kyc=KycStatus.PENDING))

        loan = self.book.update_kyc("L1", KycStatus.VERIFIED)

        assert loan.kyc_status is KycStatus.VERIFIED
        assert any(e.event_type is DomainEvent.LOAN_KYC_CHANGED for e in self.events)

    def test_delete_cascades(self):
        self.book.add(make_loan(status=LoanStatus.PENDING))
        self.book.verify("L1")
        self.storage.save("payments", "L1:1", {"id": "L1:1", "loanId": "L1", "synced": False})

        self.book.delete("L1")

        assert self.book.find("L1") is None
        assert not self.storage.exists(LOANS_TABLE, "L1")
        assert not self.storage.exists("payments", "L1:1")
        ops = self.queue.operations("L1")
        assert [op.kind for op in ops] == [OperationKind.DELETE_LOAN]
        assert any(e.event_type is DomainEvent.LOAN_DELETED for e in self.events)

    def test_reload_from_storage(self):
        self.book.add(make_loan(status=LoanStatus.PENDING))
        self.book.verify("L1")

        fresh = LoanBook(self.storage, self.queue, clock=self.clock)
        assert fresh.load() == 1
        assert fresh.get("L1").status is LoanStatus.VERIFIED
        assert fresh.get("L1").comments[0].status is LoanStatus.VERIFIED

    def test_list_loans_by_status(self):
        self.book.add(make_loan("A"))
        self.book.add(make_loan("B", status=LoanStatus.PENDING))
        self.book.add(make_loan("C", origination=date(2024, 2, 25)))

        assert [l.loan_id for l in self.book.list_loans(LoanStatus.PENDING)] == ["B"]
        assert [l.loan_id for l in self.book.active_loans()] == ["A", "C"]
        overdue = self.book.list_loans(LoanStatus.OVERDUE, as_of=date(2024, 3, 5))
        assert [l.loan_id for l in overdue] == ["A"]
        with pytest.raises(ValueError):
            self.book.list_loans(LoanStatus.OVERDUE)

    def test_statistics(self):
        self.book.add(make_loan("A"))
        self.book.add(make_loan("B", status=LoanStatus.PENDING))
        self.book.add(make_loan("C", origination=date(2024, 2, 25)))
        loan_d = make_loan("D", tenure=1, status=LoanStatus.PAID)
        loan_d.payments.append(paid("D", 1, datetime(2024, 2, 12, tzinfo=timezone.utc),
                                    amount="5200", penalty="200"))
        self.book.add(loan_d)

        stats = self.book.statistics(date(2024, 3, 5))

        assert stats["total_loans"] == 4
        assert stats["overdue"] == 1
        assert stats["active"] == 1
        assert stats["pending"] == 1
        assert stats["paid"] == 1
        assert stats["penalties_collected"] == Money.of("200")
        assert stats["penalties_accrued"] == Money.of("700")

    def test_completion_report(self):
        loan = make_loan(tenure=2, status=LoanStatus.PAID, loan_number="LN-1")
        loan.payments.extend([
            paid("L1", 1, datetime(2024, 2, 2, tzinfo=timezone.utc)),
            paid("L1", 2, datetime(2024, 3, 6, tzinfo=timezone.utc), amount="5080", penalty="80"),
        ])
        self.book.add(loan)

        report = self.book.completion_report("L1")

        assert report["total_paid"] == Money.of("10080")
        assert report["penalties_paid"] == Money.of("80")
        assert report["total_emis"] == 2
        assert report["completion_date"] == date(2024, 3, 6)
        assert report["loan_number"] == "LN-1"

    def test_completion_report_requires_paid_loan(self):
        self.book.add(make_loan())
        with pytest.raises(InvalidLoanState):
            self.book.completion_report("L1")
