"""
Delayed Payment Tracking Module

Per-installment delay in whole calendar days, loan-level days in arrears and
the daily refresh that keeps both current.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Optional

from .currency import Money
from .dates import days_between
from .schedule import Installment


@dataclass(frozen=True)
class DelayResult:
    """Outcome of comparing a payment date against a due date"""
    scheduled_due_date: date
    actual_payment_date: date
    delayed_days: int
    is_early: bool

    @property
    def is_late(self) -> bool:
        return self.delayed_days > 0

    @property
    def days_early(self) -> int:
        return max(0, days_between(self.actual_payment_date, self.scheduled_due_date))


def compute_delay(due_date: date, payment_date: date) -> DelayResult:
    """Delayed days = max(0, payment_date - due_date); early payments yield 0"""
    difference = days_between(due_date, payment_date)
    return DelayResult(
        scheduled_due_date=due_date,
        actual_payment_date=payment_date,
        delayed_days=max(0, difference),
        is_early=difference < 0,
    )


def earliest_overdue(schedule: Iterable[Installment], as_of: date) -> Optional[Installment]:
    """Earliest active, unpaid installment already past its due date"""
    overdue = [r for r in schedule if r.is_open and r.due_date < as_of]
    if not overdue:
        return None
    return min(overdue, key=lambda r: (r.due_date, r.installment_number))


def days_in_arrears(schedule: Iterable[Installment], as_of: date) -> int:
    """Days past due of the earliest unpaid past-due installment, 0 when current"""
    row = earliest_overdue(schedule, as_of)
    if row is None:
        return 0
    return compute_delay(row.due_date, as_of).delayed_days


def accrue_penalty(installment: Installment, daily_rate: Decimal) -> bool:
    """
    Assess the late-payment penalty for an open overdue installment.

    penalty = (unpaid principal + interest) * daily_rate * delayed_days, never
    lowered below what is already assessed or paid.
    """
    if daily_rate <= Decimal('0') or installment.delayed_days <= 0:
        return False
    base = installment.principal_outstanding + installment.interest_outstanding
    assessed = base * (daily_rate * Decimal(installment.delayed_days))
    floor = installment.due_penalty if installment.due_penalty >= installment.paid_penalty \
        else installment.paid_penalty
    if assessed <= floor:
        return False
    installment.due_penalty = assessed
    return True


def refresh_delays(
    schedule: Iterable[Installment],
    as_of: date,
    daily_penalty_rate: Decimal = Decimal('0')
) -> List[Installment]:
    """
    Bring stored delay state of open installments up to as_of.

    Mutates the installments in place and returns the ones that changed.
    Paid and superseded rows keep the delay recorded when they were settled.
    """
    changed = []
    for installment in schedule:
        if not installment.is_open:
            continue
        before = (installment.delayed_days, installment.payment_status, installment.due_penalty)

        installment.delayed_days = compute_delay(installment.due_date, as_of).delayed_days
        accrue_penalty(installment, daily_penalty_rate)
        installment.recompute_status(as_of)

        if (installment.delayed_days, installment.payment_status, installment.due_penalty) != before:
            installment.updated_at = datetime.now(timezone.utc)
            changed.append(installment)
    return changed


def total_overdue(schedule: Iterable[Installment], as_of: date, currency) -> Money:
    """Remaining amount on installments already past due"""
    return sum((r.remaining_amount for r in schedule if r.is_open and r.due_date < as_of),
               Money.zero(currency))
