"""
Loan Classification Module

Risk status from days in arrears, provisioning requirements and the
append-only classification history.

Status is a pure function of days in arrears: a loan cured by a payment moves
straight back to PERFORMING, there is no probation period.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Iterable
from enum import Enum
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord


class LoanStatus(Enum):
    """Regulatory loan classification, ordered by severity"""
    PERFORMING = "performing"
    WATCH = "watch"
    SUBSTANDARD = "substandard"
    DOUBTFUL = "doubtful"
    LOSS = "loss"

    @property
    def severity(self) -> int:
        return _SEVERITY.index(self)

    @property
    def is_non_performing(self) -> bool:
        return self.severity >= LoanStatus.SUBSTANDARD.severity


_SEVERITY = [
    LoanStatus.PERFORMING,
    LoanStatus.WATCH,
    LoanStatus.SUBSTANDARD,
    LoanStatus.DOUBTFUL,
    LoanStatus.LOSS,
]

# Upper bound (inclusive) of days in arrears for each status; LOSS is open-ended
STATUS_THRESHOLDS = (
    (0, LoanStatus.PERFORMING),
    (30, LoanStatus.WATCH),
    (90, LoanStatus.SUBSTANDARD),
    (180, LoanStatus.DOUBTFUL),
)


class ClassificationTrigger(Enum):
    """What caused a classification to be evaluated"""
    DISBURSEMENT = "disbursement"
    PAYMENT = "payment"
    REVERSAL = "reversal"
    RECALCULATION = "recalculation"
    TICK = "tick"
    BACKFILL = "backfill"


def status_for_days(days_in_arrears: int) -> LoanStatus:
    """Map days in arrears to a status"""
    if days_in_arrears < 0:
        raise ValueError("Days in arrears cannot be negative")
    for upper_bound, status in STATUS_THRESHOLDS:
        if days_in_arrears <= upper_bound:
            return status
    return LoanStatus.LOSS


class ProvisioningPolicy:
    """
    Provisioning rate per status.

    WATCH, SUBSTANDARD and DOUBTFUL rates are configurable within their
    regulatory brackets; PERFORMING and LOSS are fixed.
    """

    BRACKETS = {
        LoanStatus.WATCH: (Decimal('0.01'), Decimal('0.05')),
        LoanStatus.SUBSTANDARD: (Decimal('0.10'), Decimal('0.25')),
        LoanStatus.DOUBTFUL: (Decimal('0.50'), Decimal('0.50')),
    }

    def __init__(
        self,
        watch_rate: Decimal = Decimal('0.03'),
        substandard_rate: Decimal = Decimal('0.20'),
        doubtful_rate: Decimal = Decimal('0.50')
    ):
        self.rates: Dict[LoanStatus, Decimal] = {
            LoanStatus.PERFORMING: Decimal('0'),
            LoanStatus.WATCH: Decimal(watch_rate),
            LoanStatus.SUBSTANDARD: Decimal(substandard_rate),
            LoanStatus.DOUBTFUL: Decimal(doubtful_rate),
            LoanStatus.LOSS: Decimal('1'),
        }
        for status, (low, high) in self.BRACKETS.items():
            rate = self.rates[status]
            if not low <= rate <= high:
                raise ValueError(
                    f"Provisioning rate {rate} for {status.value} is outside its bracket {low}-{high}"
                )

    @classmethod
    def from_config(cls, config) -> 'ProvisioningPolicy':
        return cls(
            watch_rate=Decimal(config.watch_provisioning_rate),
            substandard_rate=Decimal(config.substandard_provisioning_rate),
            doubtful_rate=Decimal(config.doubtful_provisioning_rate),
        )

    def rate_for(self, status: LoanStatus) -> Decimal:
        return self.rates[status]


@dataclass
class ClassificationRecord(StorageRecord):
    """One evaluation of a loan's risk status; never updated after it is written"""
    loan_id: str
    organization_id: str
    classification_date: date
    days_in_arrears: int
    status: LoanStatus
    previous_status: Optional[LoanStatus]
    provisioning_rate: Decimal
    outstanding_principal: Money
    accrued_interest: Money
    collateral_value: Money
    net_exposure: Money
    provision_required: Money
    trigger: ClassificationTrigger
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'organization_id': self.organization_id,
            'classification_date': self.classification_date.isoformat(),
            'days_in_arrears': self.days_in_arrears,
            'status': self.status.value,
            'previous_status': self.previous_status.value if self.previous_status else None,
            'provisioning_rate': str(self.provisioning_rate),
            'currency': self.net_exposure.currency.code,
            'outstanding_principal': str(self.outstanding_principal.amount),
            'accrued_interest': str(self.accrued_interest.amount),
            'collateral_value': str(self.collateral_value.amount),
            'net_exposure': str(self.net_exposure.amount),
            'provision_required': str(self.provision_required.amount),
            'trigger': self.trigger.value,
            'notes': self.notes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ClassificationRecord':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            organization_id=data['organization_id'],
            classification_date=date.fromisoformat(data['classification_date']),
            days_in_arrears=data['days_in_arrears'],
            status=LoanStatus(data['status']),
            previous_status=LoanStatus(data['previous_status']) if data.get('previous_status') else None,
            provisioning_rate=Decimal(data['provisioning_rate']),
            outstanding_principal=Money(Decimal(data['outstanding_principal']), currency),
            accrued_interest=Money(Decimal(data['accrued_interest']), currency),
            collateral_value=Money(Decimal(data['collateral_value']), currency),
            net_exposure=Money(Decimal(data['net_exposure']), currency),
            provision_required=Money(Decimal(data['provision_required']), currency),
            trigger=ClassificationTrigger(data['trigger']),
            notes=data.get('notes'),
        )

    def to_wire(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'loanId': self.loan_id,
            'classificationDate': self.classification_date.isoformat(),
            'daysInArrears': self.days_in_arrears,
            'status': self.status.value,
            'previousStatus': self.previous_status.value if self.previous_status else None,
            'provisioningRate': str(self.provisioning_rate),
            'outstandingPrincipal': self.outstanding_principal.to_wire(),
            'accruedInterest': self.accrued_interest.to_wire(),
            'collateralValue': self.collateral_value.to_wire(),
            'netExposure': self.net_exposure.to_wire(),
            'provisionRequired': self.provision_required.to_wire(),
            'trigger': self.trigger.value,
            'notes': self.notes,
        }


@dataclass
class ClassificationOutcome:
    """Result of one evaluation"""
    record: ClassificationRecord
    was_reclassified: bool
    previous_status: Optional[LoanStatus]
    new_status: LoanStatus
    days_overdue: int

    def to_wire(self) -> Dict[str, Any]:
        return {
            'wasReclassified': self.was_reclassified,
            'previousStatus': self.previous_status.value if self.previous_status else None,
            'newStatus': self.new_status.value,
            'daysOverdue': self.days_overdue,
            'provisioningRate': str(self.record.provisioning_rate),
            'provisionRequired': self.record.provision_required.to_wire(),
            'recordId': self.record.id,
        }


class ClassificationEngine:
    """Evaluates a loan's status; never mutates the loan it is given"""

    def __init__(self, policy: Optional[ProvisioningPolicy] = None):
        self.policy = policy or ProvisioningPolicy()

    def evaluate(
        self,
        loan,
        days_in_arrears: int,
        as_of: date,
        trigger: ClassificationTrigger,
        notes: Optional[str] = None,
        previous_status: Optional[LoanStatus] = None
    ) -> ClassificationOutcome:
        """
        Classify a loan from its days in arrears and current balances.

        Args:
            loan: LoanAccount with balances already refreshed
            days_in_arrears: Aggregate days in arrears as of as_of
            as_of: Classification date
            trigger: What caused this evaluation
            notes: Free text stored on the record
            previous_status: Status to compare against, defaults to loan.status

        Returns:
            ClassificationOutcome with the record to append
        """
        status = status_for_days(days_in_arrears)
        previous = previous_status if previous_status is not None else loan.status
        rate = self.policy.rate_for(status)

        exposure = loan.outstanding_principal + loan.accrued_interest - loan.collateral_value
        if exposure.is_negative():
            exposure = Money.zero(loan.currency)

        now = datetime.now(timezone.utc)
        record = ClassificationRecord(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            organization_id=loan.organization_id,
            classification_date=as_of,
            days_in_arrears=days_in_arrears,
            status=status,
            previous_status=previous,
            provisioning_rate=rate,
            outstanding_principal=loan.outstanding_principal,
            accrued_interest=loan.accrued_interest,
            collateral_value=loan.collateral_value,
            net_exposure=exposure,
            provision_required=exposure * rate,
            trigger=trigger,
            notes=notes,
        )
        return ClassificationOutcome(
            record=record,
            was_reclassified=previous is not None and previous != status,
            previous_status=previous,
            new_status=status,
            days_overdue=days_in_arrears,
        )


class ClassificationStore:
    """Append-only persistence for classification records"""

    def __init__(self, storage: StorageInterface, table_name: str = "classification_records"):
        self.storage = storage
        self.table_name = table_name

    def append(self, record: ClassificationRecord) -> None:
        if self.storage.exists(self.table_name, record.id):
            raise ValueError(f"Classification record {record.id} already written")
        self.storage.save(self.table_name, record.id, record.to_dict())

    def get(self, record_id: str) -> Optional[ClassificationRecord]:
        data = self.storage.load(self.table_name, record_id)
        return ClassificationRecord.from_dict(data) if data else None

    def history(self, loan_id: str) -> List[ClassificationRecord]:
        """Records for a loan, oldest first"""
        records = [ClassificationRecord.from_dict(data)
                   for data in self.storage.find(self.table_name, {'loan_id': loan_id})]
        records.sort(key=lambda r: (r.classification_date, r.created_at))
        return records


@dataclass
class StatusBucket:
    """Portfolio figures for one status"""
    status: LoanStatus
    loan_count: int
    outstanding: Money
    provision_required: Money
    share_of_portfolio: Decimal = Decimal('0')

    def to_wire(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'loanCount': self.loan_count,
            'outstanding': self.outstanding.to_wire(),
            'provisionRequired': self.provision_required.to_wire(),
            'shareOfPortfolio': str(self.share_of_portfolio),
        }


@dataclass
class ProvisioningReport:
    """Aggregate provisioning for a portfolio in one currency"""
    currency: Currency
    as_of: date
    buckets: List[StatusBucket] = field(default_factory=list)
    total_outstanding: Money = None
    total_provision: Money = None
    portfolio_at_risk_30: Decimal = Decimal('0')
    non_performing_ratio: Decimal = Decimal('0')

    def to_wire(self) -> Dict[str, Any]:
        return {
            'currency': self.currency.code,
            'asOf': self.as_of.isoformat(),
            'buckets': [bucket.to_wire() for bucket in self.buckets],
            'totalOutstanding': self.total_outstanding.to_wire(),
            'totalProvision': self.total_provision.to_wire(),
            'portfolioAtRisk30': str(self.portfolio_at_risk_30),
            'nonPerformingRatio': str(self.non_performing_ratio),
        }


def _ratio(part: Money, whole: Money) -> Decimal:
    if whole.is_zero():
        return Decimal('0')
    return (part.amount / whole.amount).quantize(Decimal('0.0001'))


def build_provisioning_report(
    loans: Iterable,
    policy: ProvisioningPolicy,
    currency: Currency,
    as_of: date
) -> ProvisioningReport:
    """
    Summarize provisioning per status for active loans in one currency.

    PAR30 is the share of outstanding principal on loans more than 30 days in
    arrears; the non-performing ratio is the share held by SUBSTANDARD or worse.
    """
    zero = Money.zero(currency)
    loans = [loan for loan in loans if loan.currency == currency and not loan.is_paid_off]

    buckets = {status: StatusBucket(status, 0, zero, zero) for status in _SEVERITY}
    principal_total = zero
    par30 = zero
    non_performing = zero

    for loan in loans:
        bucket = buckets[loan.status]
        exposure = loan.outstanding_principal + loan.accrued_interest - loan.collateral_value
        if exposure.is_negative():
            exposure = zero
        bucket.loan_count += 1
        bucket.outstanding = bucket.outstanding + loan.outstanding_principal + loan.accrued_interest
        bucket.provision_required = bucket.provision_required + exposure * policy.rate_for(loan.status)

        principal_total = principal_total + loan.outstanding_principal
        if loan.days_in_arrears > 30:
            par30 = par30 + loan.outstanding_principal
        if loan.status.is_non_performing:
            non_performing = non_performing + loan.outstanding_principal

    total_outstanding = sum((b.outstanding for b in buckets.values()), zero)
    for bucket in buckets.values():
        bucket.share_of_portfolio = _ratio(bucket.outstanding, total_outstanding)

    return ProvisioningReport(
        currency=currency,
        as_of=as_of,
        buckets=[buckets[status] for status in _SEVERITY],
        total_outstanding=total_outstanding,
        total_provision=sum((b.provision_required for b in buckets.values()), zero),
        portfolio_at_risk_30=_ratio(par30, principal_total),
        non_performing_ratio=_ratio(non_performing, principal_total),
    )
