"""
Loan Account Module

Loan terms, the loan account record with its derived balances and risk
state, and the repository that persists it. Balances are always re-derived
from the active installment rows, never accumulated independently.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Iterable
from enum import Enum

from .currency import Money, Currency
from .dates import RepaymentFrequency
from .storage import StorageInterface, StorageRecord
from .schedule import Installment, AmortizationMethod, accrued_rows
from .classification import LoanStatus
from .errors import LoanNotFound


class LoanState(Enum):
    """Loan lifecycle states"""
    ACTIVE = "active"             # Loan is in repayment
    PAID_OFF = "paid_off"         # Every active installment settled


@dataclass
class LoanTerms:
    """Loan terms and conditions"""
    principal_amount: Money
    annual_interest_rate: Decimal       # e.g., 0.24 for 24%
    term_periods: int                   # Number of installments
    repayment_frequency: RepaymentFrequency
    amortization_method: AmortizationMethod
    disbursement_date: date
    first_payment_date: date

    def __post_init__(self):
        if not self.principal_amount.is_positive():
            raise ValueError("Principal amount must be positive")
        if self.annual_interest_rate < Decimal('0'):
            raise ValueError("Interest rate cannot be negative")
        if self.term_periods <= 0:
            raise ValueError("Term must be at least one period")
        if self.first_payment_date <= self.disbursement_date:
            raise ValueError("First payment date must be after disbursement date")


@dataclass
class LoanAccount(StorageRecord):
    """Loan account with terms, derived balances and current classification"""
    organization_id: str
    borrower_id: str
    terms: LoanTerms
    installment_amount: Money                 # Scheduled installment of the current schedule
    state: LoanState = LoanState.ACTIVE

    # Derived balances
    outstanding_principal: Money = None
    accrued_interest: Money = None
    outstanding_penalty: Money = None
    unapplied_balance: Money = None           # Excess payments held on the loan
    collateral_value: Money = None

    # Risk state
    status: LoanStatus = LoanStatus.PERFORMING
    days_in_arrears: int = 0
    latest_classification_id: Optional[str] = None
    last_classified_on: Optional[date] = None

    schedule_version: int = 1
    last_payment_date: Optional[date] = None
    paid_off_date: Optional[date] = None

    def __post_init__(self):
        zero_amount = Money.zero(self.currency)
        if self.outstanding_principal is None:
            self.outstanding_principal = self.terms.principal_amount
        for name in ('accrued_interest', 'outstanding_penalty', 'unapplied_balance', 'collateral_value'):
            if getattr(self, name) is None:
                setattr(self, name, zero_amount)

    @property
    def currency(self) -> Currency:
        return self.terms.principal_amount.currency

    @property
    def is_paid_off(self) -> bool:
        return self.state == LoanState.PAID_OFF

    @property
    def total_outstanding(self) -> Money:
        return self.outstanding_principal + self.accrued_interest + self.outstanding_penalty

    def to_wire(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'organizationId': self.organization_id,
            'borrowerId': self.borrower_id,
            'currency': self.currency.code,
            'principalAmount': self.terms.principal_amount.to_wire(),
            'annualInterestRate': str(self.terms.annual_interest_rate),
            'termPeriods': self.terms.term_periods,
            'repaymentFrequency': self.terms.repayment_frequency.value,
            'amortizationMethod': self.terms.amortization_method.value,
            'disbursementDate': self.terms.disbursement_date.isoformat(),
            'firstPaymentDate': self.terms.first_payment_date.isoformat(),
            'installmentAmount': self.installment_amount.to_wire(),
            'state': self.state.value,
            'outstandingPrincipal': self.outstanding_principal.to_wire(),
            'accruedInterest': self.accrued_interest.to_wire(),
            'outstandingPenalty': self.outstanding_penalty.to_wire(),
            'unappliedBalance': self.unapplied_balance.to_wire(),
            'collateralValue': self.collateral_value.to_wire(),
            'status': self.status.value,
            'daysInArrears': self.days_in_arrears,
            'latestClassificationId': self.latest_classification_id,
            'lastClassifiedOn': self.last_classified_on.isoformat() if self.last_classified_on else None,
            'scheduleVersion': self.schedule_version,
            'lastPaymentDate': self.last_payment_date.isoformat() if self.last_payment_date else None,
            'paidOffDate': self.paid_off_date.isoformat() if self.paid_off_date else None,
        }


def refresh_balances(loan: LoanAccount, schedule: Iterable[Installment], as_of: date) -> None:
    """
    Re-derive the loan's balances and lifecycle state from its active rows.

    Accrued interest is the unpaid interest of rows already due plus the row of
    the current period.
    """
    active = [r for r in schedule if not r.is_superseded]
    zero = Money.zero(loan.currency)

    loan.outstanding_principal = sum((r.principal_outstanding for r in active), zero)
    loan.accrued_interest = sum((r.interest_outstanding for r in accrued_rows(active, as_of)), zero)
    loan.outstanding_penalty = sum((r.penalty_outstanding for r in active), zero)

    if active and all(r.is_paid for r in active):
        if loan.state != LoanState.PAID_OFF:
            loan.paid_off_date = as_of
        loan.state = LoanState.PAID_OFF
    else:
        loan.state = LoanState.ACTIVE
        loan.paid_off_date = None
    loan.updated_at = datetime.now(timezone.utc)


class LoanRepository:
    """Persists loan accounts; lookups are scoped to an organization"""

    def __init__(self, storage: StorageInterface, table_name: str = "loans"):
        self.storage = storage
        self.table_name = table_name

    def save(self, loan: LoanAccount) -> None:
        self.storage.save(self.table_name, loan.id, self._loan_to_dict(loan))

    def find(self, loan_id: str) -> Optional[LoanAccount]:
        data = self.storage.load(self.table_name, loan_id)
        return self._loan_from_dict(data) if data else None

    def get(self, loan_id: str, organization_id: Optional[str] = None) -> LoanAccount:
        """
        Load a loan, raising LoanNotFound if missing or owned by another organization
        """
        loan = self.find(loan_id)
        if loan is None or (organization_id is not None and loan.organization_id != organization_id):
            raise LoanNotFound(loan_id, organization_id)
        return loan

    def list_for_organization(self, organization_id: str) -> List[LoanAccount]:
        loans = [self._loan_from_dict(data)
                 for data in self.storage.find(self.table_name, {'organization_id': organization_id})]
        loans.sort(key=lambda loan: (loan.terms.disbursement_date, loan.id))
        return loans

    def list_all(self) -> List[LoanAccount]:
        return [self._loan_from_dict(data) for data in self.storage.load_all(self.table_name)]

    def _loan_to_dict(self, loan: LoanAccount) -> Dict[str, Any]:
        terms = loan.terms
        return {
            'id': loan.id,
            'created_at': loan.created_at.isoformat(),
            'updated_at': loan.updated_at.isoformat(),
            'organization_id': loan.organization_id,
            'borrower_id': loan.borrower_id,
            'currency': loan.currency.code,
            'principal_amount': str(terms.principal_amount.amount),
            'annual_interest_rate': str(terms.annual_interest_rate),
            'term_periods': terms.term_periods,
            'repayment_frequency': terms.repayment_frequency.value,
            'amortization_method': terms.amortization_method.value,
            'disbursement_date': terms.disbursement_date.isoformat(),
            'first_payment_date': terms.first_payment_date.isoformat(),
            'installment_amount': str(loan.installment_amount.amount),
            'state': loan.state.value,
            'outstanding_principal': str(loan.outstanding_principal.amount),
            'accrued_interest': str(loan.accrued_interest.amount),
            'outstanding_penalty': str(loan.outstanding_penalty.amount),
            'unapplied_balance': str(loan.unapplied_balance.amount),
            'collateral_value': str(loan.collateral_value.amount),
            'status': loan.status.value,
            'days_in_arrears': loan.days_in_arrears,
            'latest_classification_id': loan.latest_classification_id,
            'last_classified_on': loan.last_classified_on.isoformat() if loan.last_classified_on else None,
            'schedule_version': loan.schedule_version,
            'last_payment_date': loan.last_payment_date.isoformat() if loan.last_payment_date else None,
            'paid_off_date': loan.paid_off_date.isoformat() if loan.paid_off_date else None,
        }

    def _loan_from_dict(self, data: Dict[str, Any]) -> LoanAccount:
        currency = Currency[data['currency']]

        def money(key: str) -> Money:
            return Money(Decimal(data[key]), currency)

        def optional_date(key: str) -> Optional[date]:
            return date.fromisoformat(data[key]) if data.get(key) else None

        terms = LoanTerms(
            principal_amount=money('principal_amount'),
            annual_interest_rate=Decimal(data['annual_interest_rate']),
            term_periods=data['term_periods'],
            repayment_frequency=RepaymentFrequency(data['repayment_frequency']),
            amortization_method=AmortizationMethod(data['amortization_method']),
            disbursement_date=date.fromisoformat(data['disbursement_date']),
            first_payment_date=date.fromisoformat(data['first_payment_date']),
        )
        return LoanAccount(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            organization_id=data['organization_id'],
            borrower_id=data['borrower_id'],
            terms=terms,
            installment_amount=money('installment_amount'),
            state=LoanState(data['state']),
            outstanding_principal=money('outstanding_principal'),
            accrued_interest=money('accrued_interest'),
            outstanding_penalty=money('outstanding_penalty'),
            unapplied_balance=money('unapplied_balance'),
            collateral_value=money('collateral_value'),
            status=LoanStatus(data['status']),
            days_in_arrears=data['days_in_arrears'],
            latest_classification_id=data.get('latest_classification_id'),
            last_classified_on=optional_date('last_classified_on'),
            schedule_version=data.get('schedule_version', 1),
            last_payment_date=optional_date('last_payment_date'),
            paid_off_date=optional_date('paid_off_date'),
        )
