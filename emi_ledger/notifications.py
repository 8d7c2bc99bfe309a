"""
Notification Generator Module

Derives user-facing alerts (overdue EMIs, pending KYC) from ledger state and
keeps a deduplicated, bounded alert list for the presentation layer. Delivery
is not handled here; raising and retracting alerts publishes domain events.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple
import logging
import uuid

from .currency import Money
from .events import DomainEvent, EventDispatcher
from .ledger import LoanLedger
from .models import KycStatus, Loan, LoanStatus, Role
from .penalty import PenaltyPolicy


logger = logging.getLogger("emi_ledger.notifications")

DEFAULT_ALERT_LIMIT = 50


class AlertType(Enum):
    PAYMENT_OVERDUE = "payment_overdue"
    KYC_REQUIRED = "kyc_required"


class AlertSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# Alert types each role's panel shows
ROLE_ALERT_TYPES: Dict[Role, frozenset] = {
    Role.VERIFIER: frozenset({AlertType.KYC_REQUIRED}),
    Role.COLLECTIONS: frozenset({AlertType.PAYMENT_OVERDUE}),
    Role.SHOPKEEPER: frozenset({AlertType.KYC_REQUIRED}),
}


@dataclass(frozen=True)
class Alert:
    """A derived alert about one loan"""
    alert_type: AlertType
    title: str
    message: str
    severity: AlertSeverity
    loan_id: str
    customer_id: str
    days_overdue: int = 0
    amount: Optional[Money] = None
    kyc_status: Optional[KycStatus] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    read: bool = False
    alert_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def dedupe_key(self) -> Tuple[str, str, str]:
        return (self.alert_type.value, self.loan_id, self.message)

    def to_dict(self) -> Dict[str, object]:
        return {
            "alert_id": self.alert_id,
            "type": self.alert_type.value,
            "title": self.title,
            "message": self.message,
            "severity": self.severity.value,
            "loan_id": self.loan_id,
            "customer_id": self.customer_id,
            "days_overdue": self.days_overdue,
            "amount": str(self.amount) if self.amount is not None else None,
            "kyc_status": self.kyc_status.value if self.kyc_status else None,
            "created_at": self.created_at.isoformat(),
            "read": self.read,
        }


def visible_to(alert: Alert, role: Role) -> bool:
    if role is Role.ADMIN:
        return alert.alert_type is not AlertType.PAYMENT_OVERDUE or alert.severity is AlertSeverity.HIGH
    return alert.alert_type in ROLE_ALERT_TYPES.get(role, frozenset())


class AlertGenerator:
    """Pure derivation of alerts from loans"""

    def __init__(self, policy: Optional[PenaltyPolicy] = None):
        self.policy = policy or PenaltyPolicy()

    def generate(self, loans: Iterable[Loan], active_loans: Iterable[Loan], as_of) -> List[Alert]:
        alerts: List[Alert] = []

        for loan in active_loans:
            ledger = LoanLedger(loan, self.policy)
            if not ledger.is_overdue(as_of):
                continue
            installment = ledger.next_installment(as_of)
            days = installment.penalty.overdue_days
            alerts.append(Alert(
                alert_type=AlertType.PAYMENT_OVERDUE,
                title="Payment Overdue",
                message=f"{loan.customer_name}'s EMI is {days} days overdue "
                        f"(Loan: {loan.loan_number or loan.loan_id})",
                severity=AlertSeverity.HIGH,
                loan_id=loan.loan_id,
                customer_id=loan.customer_id,
                days_overdue=days,
                amount=installment.total,
            ))

        for loan in loans:
            if loan.status is LoanStatus.PENDING and loan.kyc_status is not KycStatus.VERIFIED:
                alerts.append(Alert(
                    alert_type=AlertType.KYC_REQUIRED,
                    title="KYC Verification Required",
                    message=f"{loan.customer_name}'s KYC needs verification "
                            f"(Loan: {loan.loan_number or loan.loan_id})",
                    severity=AlertSeverity.MEDIUM,
                    loan_id=loan.loan_id,
                    customer_id=loan.customer_id,
                    kyc_status=loan.kyc_status,
                ))

        return alerts


class AlertCenter:
    """Deduplicated, bounded list of live alerts, newest first"""

    def __init__(
        self,
        generator: Optional[AlertGenerator] = None,
        dispatcher: Optional[EventDispatcher] = None,
        limit: int = DEFAULT_ALERT_LIMIT,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.generator = generator or AlertGenerator()
        self.dispatcher = dispatcher or EventDispatcher()
        self.limit = limit
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._alerts: List[Alert] = []

    def update(self, loans: Iterable[Loan], active_loans: Iterable[Loan], as_of) -> List[Alert]:
        """
        Re-derive alerts. New ones are added, alerts whose condition no longer
        holds are retracted, and already-raised ones keep their id and read flag.

        Returns:
            The newly raised alerts
        """
        fresh = self.generator.generate(list(loans), list(active_loans), as_of)
        fresh_keys = {alert.dedupe_key for alert in fresh}

        kept: List[Alert] = []
        for alert in self._alerts:
            if alert.dedupe_key in fresh_keys:
                kept.append(alert)
            else:
                self.dispatcher.emit(DomainEvent.ALERT_RETRACTED, "alert", alert.alert_id, {
                    "type": alert.alert_type.value, "loan_id": alert.loan_id,
                })

        existing_keys = {alert.dedupe_key for alert in kept}
        raised: List[Alert] = []
        now = self.clock()
        for alert in fresh:
            if alert.dedupe_key in existing_keys:
                continue
            alert = replace(alert, created_at=now)
            existing_keys.add(alert.dedupe_key)
            raised.append(alert)

        self._alerts = (list(reversed(raised)) + kept)[:self.limit]
        live_ids = {alert.alert_id for alert in self._alerts}
        for alert in raised:
            if alert.alert_id in live_ids:
                self.dispatcher.emit(DomainEvent.ALERT_RAISED, "alert", alert.alert_id, alert.to_dict())

        if raised:
            logger.info(f"Raised {len(raised)} alerts, {len(self._alerts)} live")
        return [alert for alert in raised if alert.alert_id in live_ids]

    def alerts(self) -> List[Alert]:
        return list(self._alerts)

    def for_role(self, role: Role) -> List[Alert]:
        return [alert for alert in self._alerts if visible_to(alert, role)]

    def mark_read(self, alert_id: str) -> bool:
        for index, alert in enumerate(self._alerts):
            if alert.alert_id == alert_id:
                self._alerts[index] = replace(alert, read=True)
                return True
        return False

    def mark_all_read(self) -> None:
        self._alerts = [replace(alert, read=True) for alert in self._alerts]

    def unread_count(self, role: Optional[Role] = None) -> int:
        alerts = self.for_role(role) if role is not None else self._alerts
        return sum(1 for alert in alerts if not alert.read)

    def clear(self) -> None:
        self._alerts = []
