"""
Loan Engine Module

Composition root. Builds storage, loan book, offline queue, payment recorder,
sync manager and alert center from one configuration and owns their
lifecycle. Nothing in the package reaches for a global store; callers hold an
engine.
"""

from datetime import date, datetime
from typing import Callable, Optional, Tuple
from zoneinfo import ZoneInfo
import logging

from .config import EmiLedgerConfig, get_config
from .errors import SyncError
from .events import EventDispatcher
from .ledger import LoanBook, LoanLedger
from .logging_config import log_action, setup_logging
from .models import Payment, Role, as_date
from .notifications import AlertCenter, AlertGenerator
from .payments import PaymentRecorder
from .penalty import PenaltyPolicy
from .queue import HOLD_RECONCILE, OfflineQueue, OperationKind
from .remote import RemoteLoanService
from .storage import StorageInterface, create_storage
from .sync import SyncManager, SyncOutcome


logger = logging.getLogger("emi_ledger.engine")


class LoanEngine:
    """EMI ledger engine with all components wired together"""

    def __init__(
        self,
        config: Optional[EmiLedgerConfig] = None,
        storage: Optional[StorageInterface] = None,
        remote: Optional[RemoteLoanService] = None,
        clock: Optional[Callable[[], datetime]] = None,
        dispatcher: Optional[EventDispatcher] = None,
        configure_logging: bool = False
    ):
        self.config = config or get_config()
        if configure_logging:
            setup_logging(self.config.log_level, log_format=self.config.log_format)

        self.tz = ZoneInfo(self.config.timezone)
        self.clock = clock or (lambda: datetime.now(self.tz))
        self.dispatcher = dispatcher or EventDispatcher()
        self.policy = PenaltyPolicy.from_config(self.config)

        self.storage = storage or create_storage(self.config.database_path)
        self.remote = remote or RemoteLoanService.from_config(self.config)

        self.queue = OfflineQueue(
            self.storage,
            clock=self.clock,
            backoff_base_seconds=self.config.sync_backoff_base_seconds,
            backoff_max_seconds=self.config.sync_backoff_max_seconds,
        )
        self.book = LoanBook(self.storage, self.queue, self.policy, self.dispatcher, self.clock)
        self.recorder = PaymentRecorder(self.book, self.queue, self.dispatcher, self.clock)
        self.sync = SyncManager(self.book, self.queue, self.remote, self.dispatcher, self.clock)
        self.alerts = AlertCenter(
            AlertGenerator(self.policy), self.dispatcher, limit=self.config.alert_limit, clock=self.clock
        )
        self._opened = False

    def open(self) -> 'LoanEngine':
        """Load persisted loans and return interrupted operations to the queue"""
        loaded = self.book.load()
        recovered = self.queue.recover_in_flight()
        self._opened = True
        logger.info(f"Engine opened with {loaded} loans, {len(self.queue)} queued operations "
                    f"({recovered} recovered)")
        return self

    def close(self) -> None:
        """Release the local database"""
        self.storage.close()
        self._opened = False

    async def aclose(self) -> None:
        """Release the HTTP client and the local database"""
        await self.remote.aclose()
        self.close()

    async def __aenter__(self) -> 'LoanEngine':
        return self.open()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    @property
    def is_open(self) -> bool:
        return self._opened

    def today(self) -> date:
        """Civil date in the configured timezone"""
        return as_date(self.clock(), self.tz)

    def ledger(self, loan_id: str) -> LoanLedger:
        return self.book.ledger(loan_id)

    def record_payment(self, loan_id: str, amount, method, paid_at, **kwargs) -> Payment:
        """Record locally without touching the network"""
        return self.recorder.record_payment(loan_id, amount, method, paid_at, **kwargs)

    async def submit_payment(self, loan_id: str, amount, method, paid_at,
                             **kwargs) -> Tuple[Payment, Optional[SyncOutcome]]:
        """
        Record a payment, then try to push that loan's queue right away.

        Validation errors propagate. Sync problems do not: the payment stays
        queued and the next drain picks it up.
        """
        payment = self.record_payment(loan_id, amount, method, paid_at, **kwargs)
        if not self.config.sync_on_record:
            return payment, None
        try:
            outcome = await self.sync.sync_loan(loan_id)
        except SyncError as e:
            log_action(logger, "warning", f"Immediate sync failed, payment stays queued: {e}",
                       loan_id=loan_id, action="submit_payment")
            return payment, None
        loan = self.book.find(loan_id)
        if loan is None:
            return payment, outcome
        current = next((p for p in loan.payments if p.sequence == payment.sequence), payment)
        return current, outcome

    async def refresh(self, loan_id: Optional[str] = None):
        return await self.sync.refresh(loan_id)

    async def drain(self) -> SyncOutcome:
        return await self.sync.drain()

    async def connectivity_restored(self) -> SyncOutcome:
        return await self.sync.on_connectivity_restored()

    def discard_operation(self, op_id: str) -> bool:
        """
        Drop a queued operation on the user's say-so.

        A discarded payment still sits in the local loan, so the loan is held
        for reconciliation and the next sync rebuilds it from the remote copy.
        """
        op = self.queue.get(op_id)
        if op is None or not self.queue.discard(op_id):
            return False
        if op.kind is OperationKind.CREATE_PAYMENT and self.queue.hold_for(op.loan_id) is None:
            self.queue.set_hold(op.loan_id, HOLD_RECONCILE)
        log_action(logger, "info", f"Discarded queued {op.kind.value} operation",
                   loan_id=op.loan_id, action="discard_operation", op_id=op_id)
        return True

    def refresh_alerts(self, as_of=None):
        """Re-derive alerts from the book as of ``as_of`` (default today)"""
        return self.alerts.update(self.book.loans(), self.book.active_loans(), as_of or self.today())

    def statistics(self, as_of=None):
        return self.book.statistics(as_of or self.today())

    def alerts_for(self, role: Role):
        return self.alerts.for_role(role)
