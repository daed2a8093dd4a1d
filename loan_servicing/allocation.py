"""
Payment Allocation Module

Turns a cash amount into a penalty / interest / principal / excess breakdown
against a loan's installment schedule. The engine only computes: it returns
apply-once schedule deltas and leaves persistence to the caller.
"""

from decimal import Decimal
from datetime import datetime, timedelta, timezone, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Union
from enum import Enum

from .currency import Money, min_money, is_representable, decimal_from_string
from .schedule import Installment, ScheduleDelta, accrued_rows
from .delays import compute_delay
from .errors import InvalidAmount, InvalidDate, AlreadySettled, DuplicateAttempt, ScheduleNotFound


class AllocationMode(Enum):
    INSTALLMENT = "installment"
    GENERAL = "general"


@dataclass(frozen=True)
class Allocation:
    """Breakdown of one payment; the four parts always sum to the amount"""
    amount: Money
    principal_paid: Money
    interest_paid: Money
    penalty_paid: Money
    excess_amount: Money
    mode: AllocationMode
    target_installment_id: Optional[str] = None

    def is_balanced(self) -> bool:
        return (self.principal_paid + self.interest_paid + self.penalty_paid
                + self.excess_amount) == self.amount

    def to_wire(self) -> Dict[str, Any]:
        return {
            'amount': self.amount.to_wire(),
            'principalPaid': self.principal_paid.to_wire(),
            'interestPaid': self.interest_paid.to_wire(),
            'penaltyPaid': self.penalty_paid.to_wire(),
            'excessAmount': self.excess_amount.to_wire(),
            'mode': self.mode.value,
            'targetInstallmentId': self.target_installment_id,
        }


@dataclass(frozen=True)
class DelayInfo:
    """Delay observed on one installment touched by a payment"""
    installment_id: str
    installment_number: int
    scheduled_due_date: date
    actual_payment_date: date
    delayed_days: int
    is_early: bool
    delay_reset: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'installment_id': self.installment_id,
            'installment_number': self.installment_number,
            'scheduled_due_date': self.scheduled_due_date.isoformat(),
            'actual_payment_date': self.actual_payment_date.isoformat(),
            'delayed_days': self.delayed_days,
            'is_early': self.is_early,
            'delay_reset': self.delay_reset,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DelayInfo':
        return cls(
            installment_id=data['installment_id'],
            installment_number=data['installment_number'],
            scheduled_due_date=date.fromisoformat(data['scheduled_due_date']),
            actual_payment_date=date.fromisoformat(data['actual_payment_date']),
            delayed_days=data['delayed_days'],
            is_early=data['is_early'],
            delay_reset=data.get('delay_reset', False),
        )

    def to_wire(self) -> Dict[str, Any]:
        return {
            'installmentId': self.installment_id,
            'installmentNumber': self.installment_number,
            'scheduledDueDate': self.scheduled_due_date.isoformat(),
            'actualPaymentDate': self.actual_payment_date.isoformat(),
            'delayedDays': self.delayed_days,
            'isEarly': self.is_early,
            'delayReset': self.delay_reset,
        }


@dataclass
class AllocationResult:
    allocation: Allocation
    deltas: List[ScheduleDelta] = field(default_factory=list)
    delay_info: List[DelayInfo] = field(default_factory=list)


class _Split:
    """Running per-installment totals while the waterfall is computed"""

    def __init__(self, installment: Installment):
        zero = Money.zero(installment.currency)
        self.installment = installment
        self.penalty = zero
        self.interest = zero
        self.principal = zero

    @property
    def touched(self) -> bool:
        return not (self.penalty + self.interest + self.principal).is_zero()


class PaymentAllocationEngine:
    """
    Allocates payments against a schedule.

    Installment-specific payments settle one row: penalty, interest,
    principal, and anything beyond becomes excess. General payments sweep the
    whole schedule: penalties, interest accrued so far, principal, interest of
    later periods, then excess.
    """

    def __init__(self, duplicate_cooldown: timedelta = timedelta(seconds=300)):
        self.duplicate_cooldown = duplicate_cooldown

    def validate_amount(self, loan, amount: Union[Money, Decimal, str, int]) -> Money:
        """Reject non-positive amounts and amounts finer than the currency's minor unit"""
        currency = loan.currency
        if isinstance(amount, Money):
            if amount.currency != currency:
                raise InvalidAmount(
                    f"Payment currency {amount.currency.code} does not match loan currency {currency.code}",
                    loan_id=loan.id
                )
            value = amount.amount
        else:
            try:
                value = decimal_from_string(amount)
            except ValueError as e:
                raise InvalidAmount(str(e), loan_id=loan.id, amount=amount)

        if value <= Decimal('0'):
            raise InvalidAmount("Payment amount must be positive", loan_id=loan.id, amount=value)
        if not is_representable(value, currency):
            raise InvalidAmount(
                f"Payment amount has more precision than {currency.code} allows",
                loan_id=loan.id, amount=value, precision=currency.precision
            )
        return Money(value, currency)

    def validate_date(self, loan, payment_date: date, today: date) -> None:
        if payment_date > today:
            raise InvalidDate("Payment date cannot be in the future",
                              loan_id=loan.id, payment_date=payment_date, today=today)
        if payment_date < loan.terms.disbursement_date:
            raise InvalidDate("Payment date cannot precede disbursement",
                              loan_id=loan.id, payment_date=payment_date,
                              disbursement_date=loan.terms.disbursement_date)

    def allocate(
        self,
        loan,
        schedule: List[Installment],
        amount: Union[Money, Decimal, str, int],
        payment_date: date,
        transaction_id: str,
        target_installment_id: Optional[str] = None,
        today: Optional[date] = None,
        now: Optional[datetime] = None
    ) -> AllocationResult:
        """
        Compute the allocation of a payment.

        Args:
            loan: LoanAccount being paid
            schedule: Active installments of the loan
            amount: Payment amount
            payment_date: Date the cash was received
            transaction_id: Id the resulting deltas are keyed by
            target_installment_id: Settle this installment only when given
            today: Business date used for future-date validation
            now: Wall clock used for the duplicate-submission guard

        Returns:
            AllocationResult with the breakdown, deltas and delay info

        Raises:
            InvalidAmount, InvalidDate, ScheduleNotFound, AlreadySettled, DuplicateAttempt
        """
        today = today or date.today()
        now = now or datetime.now(timezone.utc)

        money = self.validate_amount(loan, amount)
        self.validate_date(loan, payment_date, today)

        if target_installment_id is not None:
            return self._allocate_installment(loan, schedule, money, payment_date,
                                              transaction_id, target_installment_id, now)
        return self._allocate_general(loan, schedule, money, payment_date, transaction_id)

    def _allocate_installment(self, loan, schedule, amount, payment_date, transaction_id,
                              target_installment_id, now) -> AllocationResult:
        target = next((r for r in schedule
                       if r.id == target_installment_id and not r.is_superseded), None)
        if target is None:
            raise ScheduleNotFound(
                f"Installment {target_installment_id} is not part of the active schedule",
                loan_id=loan.id, installment_id=target_installment_id
            )
        if target.is_paid:
            raise AlreadySettled(
                f"Installment #{target.installment_number} is already paid",
                loan_id=loan.id, installment_id=target.id
            )
        if target.last_payment_attempt is not None:
            elapsed = now - target.last_payment_attempt
            if timedelta(0) <= elapsed < self.duplicate_cooldown:
                raise DuplicateAttempt(
                    f"A payment was attempted on installment #{target.installment_number} "
                    f"{int(elapsed.total_seconds())} seconds ago",
                    loan_id=loan.id, installment_id=target.id,
                    last_payment_attempt=target.last_payment_attempt,
                    cooldown_seconds=int(self.duplicate_cooldown.total_seconds())
                )

        split = _Split(target)
        remaining = amount
        for component in ('penalty', 'interest', 'principal'):
            due = getattr(target, f'{component}_outstanding')
            pay = min_money(due, remaining)
            setattr(split, component, pay)
            remaining = remaining - pay

        delay = compute_delay(target.due_date, payment_date)
        delayed_days_after = delay.delayed_days
        delta = self._delta(split, transaction_id, payment_date, delayed_days_after, attempted_at=now)
        info = DelayInfo(
            installment_id=target.id,
            installment_number=target.installment_number,
            scheduled_due_date=target.due_date,
            actual_payment_date=payment_date,
            delayed_days=delay.delayed_days,
            is_early=delay.is_early,
            delay_reset=not delay.is_late and target.delayed_days > 0,
        )
        allocation = Allocation(
            amount=amount,
            principal_paid=split.principal,
            interest_paid=split.interest,
            penalty_paid=split.penalty,
            excess_amount=remaining,
            mode=AllocationMode.INSTALLMENT,
            target_installment_id=target.id,
        )
        return AllocationResult(allocation, [delta], [info])

    def _allocate_general(self, loan, schedule, amount, payment_date, transaction_id) -> AllocationResult:
        open_rows = sorted((r for r in schedule if r.is_open), key=lambda r: r.installment_number)
        accrued_ids = {r.id for r in accrued_rows(open_rows, payment_date)}
        splits = {r.id: _Split(r) for r in open_rows}
        remaining = amount

        passes = (
            ('penalty', open_rows),
            ('interest', [r for r in open_rows if r.id in accrued_ids]),
            ('principal', open_rows),
            ('interest', [r for r in open_rows if r.id not in accrued_ids]),
        )
        for component, rows in passes:
            for row in rows:
                if remaining.is_zero():
                    break
                split = splits[row.id]
                due = getattr(row, f'{component}_outstanding') - getattr(split, component)
                pay = min_money(due, remaining)
                if pay.is_positive():
                    setattr(split, component, getattr(split, component) + pay)
                    remaining = remaining - pay

        deltas = []
        delay_info = []
        zero = Money.zero(loan.currency)
        totals = {'penalty': zero, 'interest': zero, 'principal': zero}
        for row in open_rows:
            split = splits[row.id]
            if not split.touched:
                continue
            for component in totals:
                totals[component] = totals[component] + getattr(split, component)
            delay = compute_delay(row.due_date, payment_date)
            # Early or on-time general payments leave the stored delay alone
            delayed_days_after = delay.delayed_days if delay.is_late else row.delayed_days
            deltas.append(self._delta(split, transaction_id, payment_date, delayed_days_after))
            delay_info.append(DelayInfo(
                installment_id=row.id,
                installment_number=row.installment_number,
                scheduled_due_date=row.due_date,
                actual_payment_date=payment_date,
                delayed_days=delay.delayed_days,
                is_early=delay.is_early,
            ))

        allocation = Allocation(
            amount=amount,
            principal_paid=totals['principal'],
            interest_paid=totals['interest'],
            penalty_paid=totals['penalty'],
            excess_amount=remaining,
            mode=AllocationMode.GENERAL,
        )
        return AllocationResult(allocation, deltas, delay_info)

    @staticmethod
    def _delta(split: _Split, transaction_id: str, payment_date: date,
               delayed_days_after: int, attempted_at: Optional[datetime] = None) -> ScheduleDelta:
        row = split.installment
        return ScheduleDelta(
            transaction_id=transaction_id,
            installment_id=row.id,
            installment_number=row.installment_number,
            principal=split.principal,
            interest=split.interest,
            penalty=split.penalty,
            payment_date=payment_date,
            delayed_days_after=delayed_days_after,
            delayed_days_before=row.delayed_days,
            status_before=row.payment_status,
            attempted_at=attempted_at,
            last_payment_attempt_before=row.last_payment_attempt,
            payment_attempt_count_before=row.payment_attempt_count,
            actual_payment_date_before=row.actual_payment_date,
        )
