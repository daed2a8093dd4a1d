"""
Installment Schedule Module

Ordered installments per loan: the source of truth for due amounts, paid
amounts and per-installment delay. Rows are created in batches (disbursement
or recalculation), mutated in place by apply-once schedule deltas and never
physically removed.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Iterable
from enum import Enum

from .currency import Money, Currency
from .dates import RepaymentFrequency, due_dates
from .storage import StorageInterface, StorageRecord
from .errors import ScheduleNotFound, NotReversible


# Marker appended to an installment's applied ids when a transaction is reversed
REVERSAL_SUFFIX = ":reversed"


class PaymentStatus(Enum):
    """Payment state of a single installment"""
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"


class AmortizationMethod(Enum):
    """Methods for loan amortization"""
    EQUAL_INSTALLMENT = "equal_installment"  # French method - equal payments
    EQUAL_PRINCIPAL = "equal_principal"      # Equal principal + declining interest
    BULLET = "bullet"                        # Interest only, principal at end


def _money(data: Dict[str, Any], key: str, currency: Currency) -> Money:
    return Money(Decimal(data[key]), currency)


def _datetime_or_none(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _date_or_none(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


@dataclass
class Installment(StorageRecord):
    """One scheduled due date with its principal/interest split and payment state"""
    loan_id: str
    installment_number: int
    due_date: date
    currency: Currency
    due_principal: Money
    due_interest: Money
    outstanding_principal: Money          # Scheduled balance after this installment
    due_penalty: Money = None
    paid_principal: Money = None
    paid_interest: Money = None
    paid_penalty: Money = None
    is_paid: bool = False
    payment_status: PaymentStatus = PaymentStatus.PENDING
    delayed_days: int = 0
    last_payment_attempt: Optional[datetime] = None
    payment_attempt_count: int = 0
    actual_payment_date: Optional[date] = None
    applied_transaction_ids: List[str] = field(default_factory=list)
    schedule_version: int = 1
    is_superseded: bool = False
    restructured: bool = False

    def __post_init__(self):
        zero = Money.zero(self.currency)
        for name in ('due_penalty', 'paid_principal', 'paid_interest', 'paid_penalty'):
            if getattr(self, name) is None:
                setattr(self, name, zero)

    @property
    def due_total(self) -> Money:
        return self.due_principal + self.due_interest + self.due_penalty

    @property
    def paid_total(self) -> Money:
        return self.paid_principal + self.paid_interest + self.paid_penalty

    @property
    def remaining_amount(self) -> Money:
        return self.due_total - self.paid_total

    @property
    def principal_outstanding(self) -> Money:
        return self.due_principal - self.paid_principal

    @property
    def interest_outstanding(self) -> Money:
        return self.due_interest - self.paid_interest

    @property
    def penalty_outstanding(self) -> Money:
        return self.due_penalty - self.paid_penalty

    @property
    def is_open(self) -> bool:
        """Active and not yet settled"""
        return not self.is_paid and not self.is_superseded

    def recompute_status(self, as_of: date) -> None:
        """Derive is_paid/payment_status from amounts and the as-of date"""
        self.is_paid = self.remaining_amount.is_zero()
        if self.is_paid:
            self.payment_status = PaymentStatus.PAID
        elif self.paid_total.is_positive():
            self.payment_status = PaymentStatus.PARTIAL
        elif self.due_date < as_of:
            self.payment_status = PaymentStatus.OVERDUE
        else:
            self.payment_status = PaymentStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat(),
            'currency': self.currency.code,
            'due_principal': str(self.due_principal.amount),
            'due_interest': str(self.due_interest.amount),
            'due_penalty': str(self.due_penalty.amount),
            'outstanding_principal': str(self.outstanding_principal.amount),
            'paid_principal': str(self.paid_principal.amount),
            'paid_interest': str(self.paid_interest.amount),
            'paid_penalty': str(self.paid_penalty.amount),
            'is_paid': self.is_paid,
            'payment_status': self.payment_status.value,
            'delayed_days': self.delayed_days,
            'last_payment_attempt': self.last_payment_attempt.isoformat() if self.last_payment_attempt else None,
            'payment_attempt_count': self.payment_attempt_count,
            'actual_payment_date': self.actual_payment_date.isoformat() if self.actual_payment_date else None,
            'applied_transaction_ids': list(self.applied_transaction_ids),
            'schedule_version': self.schedule_version,
            'is_superseded': self.is_superseded,
            'restructured': self.restructured,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            installment_number=data['installment_number'],
            due_date=date.fromisoformat(data['due_date']),
            currency=currency,
            due_principal=_money(data, 'due_principal', currency),
            due_interest=_money(data, 'due_interest', currency),
            due_penalty=_money(data, 'due_penalty', currency),
            outstanding_principal=_money(data, 'outstanding_principal', currency),
            paid_principal=_money(data, 'paid_principal', currency),
            paid_interest=_money(data, 'paid_interest', currency),
            paid_penalty=_money(data, 'paid_penalty', currency),
            is_paid=data['is_paid'],
            payment_status=PaymentStatus(data['payment_status']),
            delayed_days=data.get('delayed_days', 0),
            last_payment_attempt=_datetime_or_none(data.get('last_payment_attempt')),
            payment_attempt_count=data.get('payment_attempt_count', 0),
            actual_payment_date=_date_or_none(data.get('actual_payment_date')),
            applied_transaction_ids=list(data.get('applied_transaction_ids', [])),
            schedule_version=data.get('schedule_version', 1),
            is_superseded=data.get('is_superseded', False),
            restructured=data.get('restructured', False),
        )

    def to_wire(self) -> Dict[str, Any]:
        """Public representation with computed totals"""
        return {
            'id': self.id,
            'installmentNumber': self.installment_number,
            'dueDate': self.due_date.isoformat(),
            'duePrincipal': self.due_principal.to_wire(),
            'dueInterest': self.due_interest.to_wire(),
            'duePenalty': self.due_penalty.to_wire(),
            'dueTotal': self.due_total.to_wire(),
            'paidPrincipal': self.paid_principal.to_wire(),
            'paidInterest': self.paid_interest.to_wire(),
            'paidPenalty': self.paid_penalty.to_wire(),
            'paidTotal': self.paid_total.to_wire(),
            'remainingAmount': self.remaining_amount.to_wire(),
            'outstandingPrincipal': self.outstanding_principal.to_wire(),
            'isPaid': self.is_paid,
            'paymentStatus': self.payment_status.value,
            'delayedDays': self.delayed_days,
            'actualPaymentDate': self.actual_payment_date.isoformat() if self.actual_payment_date else None,
            'lastPaymentAttempt': self.last_payment_attempt.isoformat() if self.last_payment_attempt else None,
            'paymentAttemptCount': self.payment_attempt_count,
            'scheduleVersion': self.schedule_version,
            'restructured': self.restructured,
        }


@dataclass(frozen=True)
class ScheduleDelta:
    """
    Apply-once description of what one transaction did to one installment.

    Carries the installment's pre-image for the fields a payment overwrites so
    that a reversal can restore them exactly.
    """
    transaction_id: str
    installment_id: str
    installment_number: int
    principal: Money
    interest: Money
    penalty: Money
    payment_date: date
    delayed_days_after: int
    delayed_days_before: int
    status_before: PaymentStatus
    attempted_at: Optional[datetime] = None
    last_payment_attempt_before: Optional[datetime] = None
    payment_attempt_count_before: int = 0
    actual_payment_date_before: Optional[date] = None

    @property
    def total(self) -> Money:
        return self.principal + self.interest + self.penalty

    @property
    def reversal_key(self) -> str:
        return f"{self.transaction_id}{REVERSAL_SUFFIX}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'transaction_id': self.transaction_id,
            'installment_id': self.installment_id,
            'installment_number': self.installment_number,
            'currency': self.principal.currency.code,
            'principal': str(self.principal.amount),
            'interest': str(self.interest.amount),
            'penalty': str(self.penalty.amount),
            'payment_date': self.payment_date.isoformat(),
            'delayed_days_after': self.delayed_days_after,
            'delayed_days_before': self.delayed_days_before,
            'status_before': self.status_before.value,
            'attempted_at': self.attempted_at.isoformat() if self.attempted_at else None,
            'last_payment_attempt_before': (self.last_payment_attempt_before.isoformat()
                                            if self.last_payment_attempt_before else None),
            'payment_attempt_count_before': self.payment_attempt_count_before,
            'actual_payment_date_before': (self.actual_payment_date_before.isoformat()
                                           if self.actual_payment_date_before else None),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScheduleDelta':
        currency = Currency[data['currency']]
        return cls(
            transaction_id=data['transaction_id'],
            installment_id=data['installment_id'],
            installment_number=data['installment_number'],
            principal=_money(data, 'principal', currency),
            interest=_money(data, 'interest', currency),
            penalty=_money(data, 'penalty', currency),
            payment_date=date.fromisoformat(data['payment_date']),
            delayed_days_after=data['delayed_days_after'],
            delayed_days_before=data['delayed_days_before'],
            status_before=PaymentStatus(data['status_before']),
            attempted_at=_datetime_or_none(data.get('attempted_at')),
            last_payment_attempt_before=_datetime_or_none(data.get('last_payment_attempt_before')),
            payment_attempt_count_before=data.get('payment_attempt_count_before', 0),
            actual_payment_date_before=_date_or_none(data.get('actual_payment_date_before')),
        )


def apply_delta(installment: Installment, delta: ScheduleDelta) -> bool:
    """
    Apply a delta to an installment in place.

    Returns:
        False if this transaction was already applied (no change), True otherwise
    """
    if delta.transaction_id in installment.applied_transaction_ids:
        return False

    installment.paid_principal = installment.paid_principal + delta.principal
    installment.paid_interest = installment.paid_interest + delta.interest
    installment.paid_penalty = installment.paid_penalty + delta.penalty
    installment.delayed_days = delta.delayed_days_after
    installment.actual_payment_date = delta.payment_date
    if delta.attempted_at is not None:
        installment.last_payment_attempt = delta.attempted_at
        installment.payment_attempt_count += 1
    installment.applied_transaction_ids.append(delta.transaction_id)
    installment.recompute_status(delta.payment_date)
    installment.updated_at = datetime.now(timezone.utc)
    return True


def check_revertible(installment: Installment, delta: ScheduleDelta) -> None:
    """Raise NotReversible if reverting the delta would break the installment"""
    context = dict(installment_id=installment.id, transaction_id=delta.transaction_id,
                   installment_number=installment.installment_number)
    if installment.is_superseded or installment.restructured:
        raise NotReversible(
            f"Installment #{installment.installment_number} was restructured after this payment",
            **context
        )
    if delta.transaction_id not in installment.applied_transaction_ids:
        raise NotReversible(
            f"Installment #{installment.installment_number} does not carry this payment",
            **context
        )
    for component in ('principal', 'interest', 'penalty'):
        paid = getattr(installment, f'paid_{component}')
        if (paid - getattr(delta, component)).is_negative():
            raise NotReversible(
                f"Reversal would make paid {component} negative on installment "
                f"#{installment.installment_number}",
                paid=paid.amount, reversal=getattr(delta, component).amount, **context
            )


def live_transaction_ids(installment: Installment) -> List[str]:
    """Applied transaction ids that have not been reversed, in application order"""
    ids = installment.applied_transaction_ids
    reversed_ids = {i[:-len(REVERSAL_SUFFIX)] for i in ids if i.endswith(REVERSAL_SUFFIX)}
    return [i for i in ids if not i.endswith(REVERSAL_SUFFIX) and i not in reversed_ids]


def revert_delta(installment: Installment, delta: ScheduleDelta, as_of: date) -> bool:
    """
    Undo a previously applied delta in place.

    Pre-image fields (delay, attempt stamp, status) are restored only when no
    later transaction still in force has touched the installment since.

    Returns:
        False if the reversal was already applied, True otherwise
    """
    if delta.reversal_key in installment.applied_transaction_ids:
        return False
    check_revertible(installment, delta)

    touched_since = live_transaction_ids(installment)[-1] != delta.transaction_id
    installment.paid_principal = installment.paid_principal - delta.principal
    installment.paid_interest = installment.paid_interest - delta.interest
    installment.paid_penalty = installment.paid_penalty - delta.penalty

    if not touched_since:
        installment.delayed_days = delta.delayed_days_before
        installment.actual_payment_date = delta.actual_payment_date_before
        if delta.attempted_at is not None:
            installment.last_payment_attempt = delta.last_payment_attempt_before
            installment.payment_attempt_count = delta.payment_attempt_count_before

    installment.applied_transaction_ids.append(delta.reversal_key)
    installment.recompute_status(as_of)
    if not touched_since and installment.paid_total.is_zero():
        installment.payment_status = delta.status_before
    installment.updated_at = datetime.now(timezone.utc)
    return True


def periodic_rate(annual_interest_rate: Decimal, frequency: RepaymentFrequency) -> Decimal:
    return annual_interest_rate / Decimal(frequency.periods_per_year)


def level_payment(principal: Money, rate: Decimal, periods: int) -> Money:
    """Equal installment amount: P * [r(1+r)^n] / [(1+r)^n - 1]"""
    if periods <= 0:
        raise ValueError("Number of periods must be positive")
    if rate == Decimal('0'):
        return principal / Decimal(periods)
    factor = (Decimal('1') + rate) ** periods
    return principal * (rate * factor / (factor - Decimal('1')))


def installment_id(loan_id: str, version: int, number: int) -> str:
    return f"{loan_id}-v{version}-{number:04d}"


def build_installments(
    loan_id: str,
    principal: Money,
    annual_interest_rate: Decimal,
    frequency: RepaymentFrequency,
    method: AmortizationMethod,
    periods: int,
    first_due_date: date,
    version: int = 1,
    start_number: int = 1
) -> List[Installment]:
    """
    Amortize principal over a number of periods.

    Interest on each row is the periodic rate on the opening balance; the last
    row takes whatever principal rounding left behind.
    """
    if periods <= 0:
        raise ValueError("Number of periods must be positive")
    if not principal.is_positive():
        raise ValueError("Principal must be positive")

    currency = principal.currency
    rate = periodic_rate(annual_interest_rate, frequency)
    dates = due_dates(first_due_date, frequency, periods)
    now = datetime.now(timezone.utc)

    payment = level_payment(principal, rate, periods)
    principal_per_period = principal / Decimal(periods)
    balance = principal
    rows = []

    for index, due in enumerate(dates):
        interest = balance * rate
        is_last = index == periods - 1

        if method == AmortizationMethod.EQUAL_INSTALLMENT:
            principal_part = payment - interest
        elif method == AmortizationMethod.EQUAL_PRINCIPAL:
            principal_part = principal_per_period
        elif method == AmortizationMethod.BULLET:
            principal_part = Money.zero(currency)
        else:
            raise ValueError(f"Unsupported amortization method: {method}")

        if is_last or principal_part > balance:
            principal_part = balance
        if principal_part.is_negative():
            principal_part = Money.zero(currency)
        balance = balance - principal_part

        number = start_number + index
        rows.append(Installment(
            id=installment_id(loan_id, version, number),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            installment_number=number,
            due_date=due,
            currency=currency,
            due_principal=principal_part,
            due_interest=interest,
            outstanding_principal=balance,
            schedule_version=version,
        ))

    return rows


def build_fixed_payment_installments(
    loan_id: str,
    principal: Money,
    annual_interest_rate: Decimal,
    frequency: RepaymentFrequency,
    payment: Money,
    first_due_date: date,
    version: int,
    start_number: int,
    max_periods: int = 3650
) -> List[Installment]:
    """Amortize principal with a fixed payment, as many periods as it takes"""
    currency = principal.currency
    rate = periodic_rate(annual_interest_rate, frequency)
    now = datetime.now(timezone.utc)
    balance = principal
    rows = []
    due = first_due_date

    while balance.is_positive():
        if len(rows) >= max_periods:
            raise ValueError("Fixed payment does not amortize the principal")
        interest = balance * rate
        principal_part = payment - interest
        if not principal_part.is_positive():
            raise ValueError("Fixed payment does not cover the periodic interest")
        if principal_part > balance:
            principal_part = balance
        balance = balance - principal_part
        number = start_number + len(rows)
        rows.append(Installment(
            id=installment_id(loan_id, version, number),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            installment_number=number,
            due_date=due,
            currency=currency,
            due_principal=principal_part,
            due_interest=interest,
            outstanding_principal=balance,
            schedule_version=version,
        ))
        due = due_dates(first_due_date, frequency, len(rows) + 1)[-1]

    return rows


def accrued_rows(schedule: Iterable[Installment], as_of: date) -> List[Installment]:
    """
    Open rows whose interest has accrued by as_of.

    That is every open row already due, plus the open row of the current
    period (the first one falling due on or after as_of).
    """
    rows = sorted((r for r in schedule if r.is_open), key=lambda r: r.installment_number)
    accrued = [r for r in rows if r.due_date <= as_of]
    upcoming = [r for r in rows if r.due_date > as_of]
    if upcoming:
        accrued.append(upcoming[0])
    return accrued


class ScheduleStore:
    """Persistence for installment rows, one document per installment"""

    def __init__(self, storage: StorageInterface, table_name: str = "installments"):
        self.storage = storage
        self.table_name = table_name

    def save(self, installment: Installment) -> None:
        self.storage.save(self.table_name, installment.id, installment.to_dict())

    def save_batch(self, installments: Iterable[Installment]) -> None:
        with self.storage.atomic():
            for installment in installments:
                self.save(installment)

    def get_installment(self, installment_id: str) -> Installment:
        data = self.storage.load(self.table_name, installment_id)
        if not data:
            raise ScheduleNotFound(f"Installment {installment_id} not found",
                                   installment_id=installment_id)
        return Installment.from_dict(data)

    def get_schedule(self, loan_id: str, include_superseded: bool = False) -> List[Installment]:
        """Installments of a loan ordered by installment number"""
        rows = [Installment.from_dict(data)
                for data in self.storage.find(self.table_name, {'loan_id': loan_id})]
        if not include_superseded:
            rows = [r for r in rows if not r.is_superseded]
        rows.sort(key=lambda r: (r.installment_number, r.schedule_version))
        return rows

    def require_schedule(self, loan_id: str) -> List[Installment]:
        rows = self.get_schedule(loan_id)
        if not rows:
            raise ScheduleNotFound(f"No schedule for loan {loan_id}", loan_id=loan_id)
        return rows

    def apply_deltas(self, deltas: Iterable[ScheduleDelta]) -> List[Installment]:
        """Apply deltas and persist the touched installments"""
        updated = []
        for delta in deltas:
            installment = self.get_installment(delta.installment_id)
            if apply_delta(installment, delta):
                self.save(installment)
            updated.append(installment)
        return updated

    def revert_deltas(self, deltas: Iterable[ScheduleDelta], as_of: date) -> List[Installment]:
        deltas = list(deltas)
        installments = [self.get_installment(d.installment_id) for d in deltas]
        # Validate everything before touching anything
        for installment, delta in zip(installments, deltas):
            if delta.reversal_key not in installment.applied_transaction_ids:
                check_revertible(installment, delta)
        for installment, delta in zip(installments, deltas):
            if revert_delta(installment, delta, as_of):
                self.save(installment)
        return installments


@dataclass
class ScheduleSummary:
    """Aggregate view of a loan's active schedule"""
    total_scheduled: Money
    total_paid: Money
    total_remaining: Money
    paid_count: int
    overdue_count: int
    total_delayed_days: int
    next_due_date: Optional[date]
    next_due_amount: Money

    def to_wire(self) -> Dict[str, Any]:
        return {
            'totalScheduled': self.total_scheduled.to_wire(),
            'totalPaid': self.total_paid.to_wire(),
            'totalRemaining': self.total_remaining.to_wire(),
            'paidCount': self.paid_count,
            'overdueCount': self.overdue_count,
            'totalDelayedDays': self.total_delayed_days,
            'nextDueDate': self.next_due_date.isoformat() if self.next_due_date else None,
            'nextDueAmount': self.next_due_amount.to_wire(),
        }


def summarize(schedule: List[Installment], currency: Currency) -> ScheduleSummary:
    zero = Money.zero(currency)
    total_scheduled = sum((r.due_total for r in schedule), zero)
    total_paid = sum((r.paid_total for r in schedule), zero)
    open_rows = [r for r in schedule if r.is_open]
    next_row = open_rows[0] if open_rows else None
    return ScheduleSummary(
        total_scheduled=total_scheduled,
        total_paid=total_paid,
        total_remaining=total_scheduled - total_paid,
        paid_count=sum(1 for r in schedule if r.is_paid),
        overdue_count=sum(1 for r in schedule if r.payment_status == PaymentStatus.OVERDUE
                          or (r.is_open and r.delayed_days > 0)),
        total_delayed_days=sum(r.delayed_days for r in schedule),
        next_due_date=next_row.due_date if next_row else None,
        next_due_amount=next_row.remaining_amount if next_row else zero,
    )
