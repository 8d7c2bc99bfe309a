"""
Test suite for alert generation and the alert center
"""

from datetime import date, datetime, timezone

from emi_ledger.currency import Money
from emi_ledger.events import DomainEvent, EventDispatcher
from emi_ledger.models import KycStatus, LoanStatus, Role
from emi_ledger.notifications import (
    Alert, AlertCenter, AlertGenerator, AlertSeverity, AlertType, visible_to
)

from conftest import FixedClock, make_loan


AS_OF = date(2024, 3, 5)


def active(loans):
    return [loan for loan in loans if loan.status is LoanStatus.ACTIVE]


class TestAlertGenerator:
    """Test alert derivation"""

    def test_overdue_alert(self):
        loan = make_loan(loan_number="LN-7")

        alerts = AlertGenerator().generate([loan], [loan], AS_OF)

        assert len(alerts) == 1
        alert = alerts[0]
        assert alert.alert_type is AlertType.PAYMENT_OVERDUE
        assert alert.severity is AlertSeverity.HIGH
        assert alert.days_overdue == 32
        assert alert.amount == Money.of("5640")
        assert alert.message == "Asha Devi's EMI is 32 days overdue (Loan: LN-7)"

    def test_loan_id_used_without_loan_number(self):
        loan = make_loan()
        alerts = AlertGenerator().generate([loan], [loan], AS_OF)
        assert alerts[0].message.endswith("(Loan: L1)")

    def test_no_alert_before_due_date(self):
        loan = make_loan()
        assert AlertGenerator().generate([loan], [loan], date(2024, 2, 2)) == []

    def test_kyc_alert_for_pending_unverified(self):
        loans = [
            make_loan("A", status=LoanStatus.PENDING, kyc=KycStatus.PENDING),
            make_loan("B", status=LoanStatus.PENDING, kyc=KycStatus.VERIFIED),
            make_loan("C", status=LoanStatus.VERIFIED, kyc=KycStatus.PENDING),
        ]

        alerts = AlertGenerator().generate(loans, active(loans), AS_OF)

        assert [(a.alert_type, a.loan_id) for a in alerts] == [(AlertType.KYC_REQUIRED, "A")]
        assert alerts[0].severity is AlertSeverity.MEDIUM
        assert alerts[0].kyc_status is KycStatus.PENDING

    def test_only_active_loans_checked_for_overdue(self):
        approved = make_loan(status=LoanStatus.APPROVED)
        assert AlertGenerator().generate([approved], [], AS_OF) == []


class TestRoleFilter:
    """Test which alerts each role sees"""

    def alert(self, alert_type):
        return Alert(alert_type, "t", "m", AlertSeverity.HIGH, "L1", "C1")

    def test_collections_sees_overdue(self):
        assert visible_to(self.alert(AlertType.PAYMENT_OVERDUE), Role.COLLECTIONS)
        assert not visible_to(self.alert(AlertType.KYC_REQUIRED), Role.COLLECTIONS)

    def test_verifier_sees_kyc(self):
        assert visible_to(self.alert(AlertType.KYC_REQUIRED), Role.VERIFIER)
        assert not visible_to(self.alert(AlertType.PAYMENT_OVERDUE), Role.VERIFIER)

    def test_admin_sees_everything_raised(self):
        assert visible_to(self.alert(AlertType.PAYMENT_OVERDUE), Role.ADMIN)
        assert visible_to(self.alert(AlertType.KYC_REQUIRED), Role.ADMIN)

    def test_system_sees_nothing(self):
        assert not visible_to(self.alert(AlertType.PAYMENT_OVERDUE), Role.SYSTEM)


class TestAlertCenter:
    """Test deduplication, retraction and the live list"""

    def setup_method(self):
        self.dispatcher = EventDispatcher()
        self.events = []
        self.dispatcher.subscribe_all(self.events.append)
        self.clock = FixedClock(datetime(2024, 3, 5, 10, 0, tzinfo=timezone.utc))
        self.center = AlertCenter(dispatcher=self.dispatcher, clock=self.clock)

    def test_same_condition_raised_once(self):
        loan = make_loan()

        first = self.center.update([loan], [loan], AS_OF)
        second = self.center.update([loan], [loan], AS_OF)

        assert len(first) == 1
        assert second == []
        assert len(self.center.alerts()) == 1
        assert self.center.alerts()[0].alert_id == first[0].alert_id
        raised = [e for e in self.events if e.event_type is DomainEvent.ALERT_RAISED]
        assert len(raised) == 1
        assert raised[0].data["type"] == "payment_overdue"

    def test_retracted_when_condition_clears(self):
        loan = make_loan(status=LoanStatus.PENDING, kyc=KycStatus.PENDING)
        self.center.update([loan], [], AS_OF)

        loan.kyc_status = KycStatus.VERIFIED
        self.center.update([loan], [], AS_OF)

        assert self.center.alerts() == []
        retracted = [e for e in self.events if e.event_type is DomainEvent.ALERT_RETRACTED]
        assert retracted[0].data == {"type": "kyc_required", "loan_id": "L1"}

    def test_newest_first_and_limited(self):
        center = AlertCenter(dispatcher=self.dispatcher, limit=3, clock=self.clock)
        loans = [make_loan(f"L{n}", status=LoanStatus.PENDING, kyc=KycStatus.PENDING) for n in range(5)]

        center.update(loans[:2], [], AS_OF)
        self.clock.advance(minutes=1)
        center.update(loans, [], AS_OF)

        live = center.alerts()
        assert len(live) == 3
        assert [a.loan_id for a in live] == ["L4", "L3", "L2"]

    def test_read_flag_survives_update(self):
        loan = make_loan()
        alert = self.center.update([loan], [loan], AS_OF)[0]

        assert self.center.mark_read(alert.alert_id)
        self.center.update([loan], [loan], AS_OF)

        assert self.center.alerts()[0].read
        assert self.center.unread_count() == 0
        assert not self.center.mark_read("missing")

    def test_unread_count_per_role(self):
        loans = [make_loan("A"), make_loan("B", status=LoanStatus.PENDING, kyc=KycStatus.PENDING)]
        self.center.update(loans, active(loans), AS_OF)

        assert self.center.unread_count() == 2
        assert self.center.unread_count(Role.COLLECTIONS) == 1
        assert self.center.unread_count(Role.VERIFIER) == 1
        assert [a.loan_id for a in self.center.for_role(Role.COLLECTIONS)] == ["A"]

        self.center.mark_all_read()
        assert self.center.unread_count(Role.ADMIN) == 0

    def test_clear(self):
        loan = make_loan()
        self.center.update([loan], [loan], AS_OF)
        self.center.clear()
        assert self.center.alerts() == []
