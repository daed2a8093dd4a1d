"""
Shared fixtures for the loan servicing test suite
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, date

from loan_servicing.config import ServicingConfig
from loan_servicing.currency import Money, Currency
from loan_servicing.dates import RepaymentFrequency
from loan_servicing.storage import InMemoryStorage
from loan_servicing.schedule import Installment, AmortizationMethod
from loan_servicing.loans import LoanAccount, LoanTerms
from loan_servicing.servicing import LoanServicingService


def rwf(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.RWF)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def config():
    return ServicingConfig(
        database_url="memory://",
        duplicate_payment_cooldown_seconds=300,
        daily_penalty_rate="0",
        classification_workers=4,
    )


@pytest.fixture
def service(storage, config):
    return LoanServicingService(storage, config)


@pytest.fixture
def make_loan():
    """Factory for an RWF loan account that is not persisted"""
    def _make_loan(principal="80000", rate="0", periods=1,
                   disbursed=date(2024, 1, 1), first_due=date(2024, 2, 1),
                   installment="100000", collateral="0", loan_id="loan-1"):
        now = datetime.now(timezone.utc)
        terms = LoanTerms(
            principal_amount=rwf(principal),
            annual_interest_rate=Decimal(rate),
            term_periods=periods,
            repayment_frequency=RepaymentFrequency.MONTHLY,
            amortization_method=AmortizationMethod.EQUAL_INSTALLMENT,
            disbursement_date=disbursed,
            first_payment_date=first_due,
        )
        return LoanAccount(
            id=loan_id,
            created_at=now,
            updated_at=now,
            organization_id="org-1",
            borrower_id="borrower-1",
            terms=terms,
            installment_amount=rwf(installment),
            collateral_value=rwf(collateral),
        )
    return _make_loan


@pytest.fixture
def make_installment():
    """Factory for a single RWF installment row"""
    def _make_installment(number, due_date, principal, interest, penalty="0",
                          loan_id="loan-1", delayed_days=0):
        now = datetime.now(timezone.utc)
        return Installment(
            id=f"inst-{number}",
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            installment_number=number,
            due_date=due_date,
            currency=Currency.RWF,
            due_principal=rwf(principal),
            due_interest=rwf(interest),
            due_penalty=rwf(penalty),
            outstanding_principal=rwf(0),
            delayed_days=delayed_days,
        )
    return _make_installment


@pytest.fixture
def disburse(service):
    """Disburse a 1,200,000 RWF interest-free loan repaid monthly from 2024-02-01"""
    def _disburse(principal="1200000", rate="0", periods=12, organization_id="org-1",
                  method=AmortizationMethod.EQUAL_INSTALLMENT, collateral=None,
                  borrower_id="borrower-1"):
        return service.disburse_loan(
            organization_id=organization_id,
            borrower_id=borrower_id,
            principal_amount=principal,
            annual_interest_rate=rate,
            term_periods=periods,
            disbursement_date=date(2024, 1, 1),
            first_payment_date=date(2024, 2, 1),
            amortization_method=method,
            collateral_value=collateral,
            today=date(2024, 1, 1),
        )
    return _disburse
