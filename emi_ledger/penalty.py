"""
Penalty Engine Module

Flat per-day late charge on an overdue installment. No compounding.
"""

from dataclasses import dataclass
from datetime import tzinfo
from decimal import Decimal
from typing import Optional
from zoneinfo import ZoneInfo

from .currency import Money
from .models import as_date


DEFAULT_RATE = Money(Decimal('20'))


@dataclass(frozen=True)
class PenaltyAssessment:
    """Overdue days and the resulting penalty"""
    overdue_days: int
    amount: Money

    @property
    def is_overdue(self) -> bool:
        return self.overdue_days > 0


@dataclass(frozen=True)
class PenaltyPolicy:
    """Per-day rate with an optional ceiling, counted on the calendar of ``tz``"""
    per_day: Money = DEFAULT_RATE
    cap: Optional[Money] = None
    tz: Optional[tzinfo] = None

    @classmethod
    def from_config(cls, config) -> 'PenaltyPolicy':
        cap = Money.of(config.penalty_cap) if config.penalty_cap else None
        return cls(per_day=Money.of(config.penalty_per_day), cap=cap, tz=ZoneInfo(config.timezone))

    def assess(self, due_date, as_of) -> PenaltyAssessment:
        return penalty(due_date, as_of, self.per_day, self.cap, self.tz)


def penalty(due_date, as_of, per_day: Money = DEFAULT_RATE,
            cap: Optional[Money] = None, tz: Optional[tzinfo] = None) -> PenaltyAssessment:
    """
    Assess the late penalty on an installment.

    Both dates are truncated to civil dates in ``tz`` (Asia/Kolkata when
    omitted). Paying on or before the due date costs nothing; every calendar
    day after it costs ``per_day``.

    Args:
        due_date: Installment due date
        as_of: Date the installment is (or would be) paid
        per_day: Charge per overdue day
        cap: Optional ceiling on the amount
        tz: Civil calendar for aware timestamps

    Returns:
        PenaltyAssessment
    """
    due = as_date(due_date, tz)
    when = as_date(as_of, tz)

    if when <= due:
        return PenaltyAssessment(overdue_days=0, amount=Money.zero())

    days = (when - due).days
    amount = per_day * days
    if cap is not None and amount > cap:
        amount = cap
    return PenaltyAssessment(overdue_days=days, amount=amount)
