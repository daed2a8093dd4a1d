"""
Calendar Primitives Module

Repayment frequencies, whole-calendar-day deltas and due-date stepping.
"""

from datetime import date, timedelta
from enum import Enum
import calendar


class RepaymentFrequency(Enum):
    """Repayment frequency options"""
    DAILY = "daily"                    # 365 payments per year
    WEEKLY = "weekly"                  # 52 payments per year
    BI_WEEKLY = "bi_weekly"            # 26 payments per year
    MONTHLY = "monthly"                # 12 payments per year
    QUARTERLY = "quarterly"            # 4 payments per year
    SEMI_ANNUALLY = "semi_annually"    # 2 payments per year
    ANNUALLY = "annually"              # 1 payment per year

    @property
    def periods_per_year(self) -> int:
        return {
            RepaymentFrequency.DAILY: 365,
            RepaymentFrequency.WEEKLY: 52,
            RepaymentFrequency.BI_WEEKLY: 26,
            RepaymentFrequency.MONTHLY: 12,
            RepaymentFrequency.QUARTERLY: 4,
            RepaymentFrequency.SEMI_ANNUALLY: 2,
            RepaymentFrequency.ANNUALLY: 1,
        }[self]


def days_between(start: date, end: date) -> int:
    """Signed number of whole calendar days from start to end"""
    return (end - start).days


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def next_due_date(current_date: date, frequency: RepaymentFrequency) -> date:
    """Calculate next due date based on frequency"""
    if frequency == RepaymentFrequency.DAILY:
        return current_date + timedelta(days=1)
    elif frequency == RepaymentFrequency.WEEKLY:
        return current_date + timedelta(days=7)
    elif frequency == RepaymentFrequency.BI_WEEKLY:
        return current_date + timedelta(days=14)
    elif frequency == RepaymentFrequency.MONTHLY:
        return add_months(current_date, 1)
    elif frequency == RepaymentFrequency.QUARTERLY:
        return add_months(current_date, 3)
    elif frequency == RepaymentFrequency.SEMI_ANNUALLY:
        return add_months(current_date, 6)
    elif frequency == RepaymentFrequency.ANNUALLY:
        return add_months(current_date, 12)
    raise ValueError(f"Unsupported repayment frequency: {frequency}")


def due_dates(first_due_date: date, frequency: RepaymentFrequency, count: int) -> list:
    """Consecutive due dates starting at first_due_date.

    Monthly-style steps are taken from the anchor date rather than chained so
    that a 31st anchor does not drift to the 28th after February.
    """
    if count <= 0:
        return []
    dates = [first_due_date]
    month_steps = {
        RepaymentFrequency.MONTHLY: 1,
        RepaymentFrequency.QUARTERLY: 3,
        RepaymentFrequency.SEMI_ANNUALLY: 6,
        RepaymentFrequency.ANNUALLY: 12,
    }
    for index in range(1, count):
        if frequency in month_steps:
            dates.append(add_months(first_due_date, month_steps[frequency] * index))
        else:
            dates.append(next_due_date(dates[-1], frequency))
    return dates
