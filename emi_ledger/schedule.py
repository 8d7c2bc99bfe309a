"""
Schedule Calculator Module

Turns a loan's origination date and tenure into its EMI due dates.

Installments always fall on the 2nd of a month. A loan originated on days
1-18 pays its first EMI on the 2nd of the next month; a loan originated on
the 19th or later skips a month and pays on the 2nd of the month after next.
"""

from dataclasses import dataclass
from datetime import date, tzinfo
from typing import List, Optional, Tuple

from .currency import Money
from .models import Loan, as_date


DUE_DAY = 2
CUTOFF_DAY = 18


@dataclass(frozen=True)
class ScheduleEntry:
    """Single installment in a loan's schedule"""
    sequence: int
    due_date: date
    amount: Money
    paid: bool


def _add_months(year: int, month: int, months: int) -> Tuple[int, int]:
    index = month - 1 + months
    return year + index // 12, index % 12 + 1


def first_due_date(origin_date, tz: Optional[tzinfo] = None) -> date:
    """Due date of installment 1 for a loan originated on ``origin_date``"""
    origin = as_date(origin_date, tz)
    offset = 1 if origin.day <= CUTOFF_DAY else 2
    year, month = _add_months(origin.year, origin.month, offset)
    return date(year, month, DUE_DAY)


def due_date_for(origin_date, sequence: int, tz: Optional[tzinfo] = None) -> date:
    """Due date of installment ``sequence`` (1-based)"""
    if sequence < 1:
        raise ValueError(f"Installment numbers start at 1, got {sequence}")
    first = first_due_date(origin_date, tz)
    year, month = _add_months(first.year, first.month, sequence - 1)
    return date(year, month, DUE_DAY)


def schedule(origin_date, tenure: int, tz: Optional[tzinfo] = None) -> List[Tuple[int, date]]:
    """
    Compute the ordered due-date schedule.

    Args:
        origin_date: Loan origination date or timestamp
        tenure: Number of installments
        tz: Civil calendar a timestamp is read in (Asia/Kolkata when omitted)

    Returns:
        List of (sequence number, due date), sequence starting at 1
    """
    if tenure is None or tenure <= 0:
        raise ValueError(f"Tenure must be a positive integer, got {tenure!r}")
    first = first_due_date(origin_date, tz)
    entries = []
    for k in range(1, tenure + 1):
        year, month = _add_months(first.year, first.month, k - 1)
        entries.append((k, date(year, month, DUE_DAY)))
    return entries


def schedule_entries(loan: Loan) -> List[ScheduleEntry]:
    """Full schedule for a loan with paid flags from its payments"""
    paid = {p.sequence for p in loan.payments}
    return [
        ScheduleEntry(sequence=k, due_date=due, amount=loan.emi_amount, paid=k in paid)
        for k, due in schedule(loan.origination_date, loan.tenure)
    ]
