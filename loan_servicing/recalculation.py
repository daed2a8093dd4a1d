"""
Schedule Recalculation Module

Regenerates the unpaid tail of a loan's schedule from an effective date,
either keeping the number of periods (smaller installments) or keeping the
installment amount (fewer periods). Replaced rows are kept as history.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List
from enum import Enum
import copy

from .currency import Money
from .schedule import (
    Installment, build_installments,
    build_fixed_payment_installments, periodic_rate
)
from .dates import due_dates
from .errors import InvalidEffectiveDate, InvalidRecalculation


class RecalculationType(Enum):
    REDUCE_INSTALLMENT = "REDUCE_INSTALLMENT"
    REDUCE_TERM = "REDUCE_TERM"


@dataclass(frozen=True)
class RecalculationOptions:
    recalculation_type: RecalculationType
    effective_date: date


@dataclass
class RecalculationPlan:
    """Rows to write for one recalculation; nothing is persisted yet"""
    loan_id: str
    recalculation_type: RecalculationType
    effective_date: date
    new_version: int
    principal_reamortized: Money
    new_installment_amount: Money
    superseded: List[Installment] = field(default_factory=list)
    restructured: List[Installment] = field(default_factory=list)
    new_rows: List[Installment] = field(default_factory=list)

    @property
    def changed_rows(self) -> List[Installment]:
        return self.superseded + self.restructured + self.new_rows

    def to_wire(self) -> Dict[str, Any]:
        return {
            'loanId': self.loan_id,
            'type': self.recalculation_type.value,
            'effectiveDate': self.effective_date.isoformat(),
            'scheduleVersion': self.new_version,
            'principalReamortized': self.principal_reamortized.to_wire(),
            'newInstallmentAmount': self.new_installment_amount.to_wire(),
            'supersededCount': len(self.superseded),
            'restructuredCount': len(self.restructured),
            'newInstallmentCount': len(self.new_rows),
        }


class ScheduleRecalculationService:
    """Computes recalculation plans; inputs are never mutated"""

    def recalculate(self, loan, schedule: List[Installment],
                    options: RecalculationOptions) -> RecalculationPlan:
        """
        Re-amortize unpaid installments falling due on or after the effective date.

        Untouched rows are superseded and the new rows take over their periods
        and due dates. Partially paid rows keep their period: they stay on the
        schedule with their interest and penalty, and only their unpaid
        principal moves into the new rows. Unpaid penalty on superseded rows is
        carried onto the first new row.

        Raises:
            InvalidEffectiveDate: effective date precedes the last paid installment
            InvalidRecalculation: nothing left to amortize, no untouched period
                to amortize over, or the fixed installment does not cover one
                period's interest
        """
        active = sorted((r for r in schedule if not r.is_superseded),
                        key=lambda r: r.installment_number)
        paid_dates = [r.due_date for r in active if r.is_paid]
        if paid_dates and options.effective_date < max(paid_dates):
            raise InvalidEffectiveDate(
                "Effective date precedes the last paid installment",
                loan_id=loan.id, effective_date=options.effective_date,
                last_paid_due_date=max(paid_dates)
            )

        replaced = [copy.deepcopy(r) for r in active
                    if not r.is_paid and r.due_date >= options.effective_date]
        if not replaced:
            raise InvalidRecalculation("No unpaid installments fall on or after the effective date",
                                       loan_id=loan.id, effective_date=options.effective_date)

        zero = Money.zero(loan.currency)
        principal = sum((r.principal_outstanding for r in replaced), zero)
        if not principal.is_positive():
            raise InvalidRecalculation("No principal left to re-amortize",
                                       loan_id=loan.id, effective_date=options.effective_date)

        superseded = [r for r in replaced if r.paid_total.is_zero()]
        restructured = [r for r in replaced if not r.paid_total.is_zero()]
        if not superseded:
            raise InvalidRecalculation(
                "No unpaid period left to re-amortize over",
                loan_id=loan.id, effective_date=options.effective_date,
                principal=principal.amount
            )
        carried_penalty = sum((r.penalty_outstanding for r in superseded), zero)

        new_version = loan.schedule_version + 1
        kept_numbers = [r.installment_number for r in active if r.id not in {x.id for x in superseded}]
        now = datetime.now(timezone.utc)

        for row in superseded:
            row.is_superseded = True
            row.updated_at = now
        for row in restructured:
            row.due_principal = row.paid_principal
            row.restructured = True
            row.recompute_status(options.effective_date)
            row.updated_at = now

        start_number = max(kept_numbers) + 1 if kept_numbers else 1
        first_due = superseded[0].due_date
        terms = loan.terms

        if options.recalculation_type == RecalculationType.REDUCE_INSTALLMENT:
            new_rows = build_installments(
                loan_id=loan.id,
                principal=principal,
                annual_interest_rate=terms.annual_interest_rate,
                frequency=terms.repayment_frequency,
                method=terms.amortization_method,
                periods=len(superseded),
                first_due_date=first_due,
                version=new_version,
                start_number=start_number,
            )
        else:
            payment = loan.installment_amount
            first_interest = principal * periodic_rate(terms.annual_interest_rate, terms.repayment_frequency)
            if payment <= first_interest:
                raise InvalidRecalculation(
                    "Installment amount does not cover one period's interest",
                    loan_id=loan.id, installment_amount=payment.amount,
                    period_interest=first_interest.amount
                )
            new_rows = build_fixed_payment_installments(
                loan_id=loan.id,
                principal=principal,
                annual_interest_rate=terms.annual_interest_rate,
                frequency=terms.repayment_frequency,
                payment=payment,
                first_due_date=first_due,
                version=new_version,
                start_number=start_number,
            )
        _take_over_due_dates(new_rows, [r.due_date for r in superseded], terms.repayment_frequency)

        if carried_penalty.is_positive():
            new_rows[0].due_penalty = carried_penalty

        if options.recalculation_type == RecalculationType.REDUCE_TERM:
            new_installment = loan.installment_amount
        else:
            new_installment = new_rows[0].due_principal + new_rows[0].due_interest

        return RecalculationPlan(
            loan_id=loan.id,
            recalculation_type=options.recalculation_type,
            effective_date=options.effective_date,
            new_version=new_version,
            principal_reamortized=principal,
            new_installment_amount=new_installment,
            superseded=superseded,
            restructured=restructured,
            new_rows=new_rows,
        )


def _take_over_due_dates(rows: List[Installment], dates: List[date], frequency) -> None:
    """New rows fall due on the superseded rows' dates, then continue by frequency"""
    extra = len(rows) - len(dates)
    if extra > 0:
        dates = dates + due_dates(dates[-1], frequency, extra + 1)[1:]
    for row, due in zip(rows, dates):
        row.due_date = due
