"""
Test suite for loan accounts

Tests loan terms validation, balance derivation from the schedule and the
organization-scoped repository.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_servicing.currency import Money, Currency
from loan_servicing.dates import RepaymentFrequency
from loan_servicing.errors import LoanNotFound
from loan_servicing.schedule import AmortizationMethod
from loan_servicing.classification import LoanStatus
from loan_servicing.loans import LoanTerms, LoanState, LoanRepository, refresh_balances


def rwf(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.RWF)


class TestLoanTerms:
    """Test loan terms validation"""

    def terms(self, **overrides):
        values = dict(
            principal_amount=rwf(1000000),
            annual_interest_rate=Decimal('0.24'),
            term_periods=12,
            repayment_frequency=RepaymentFrequency.MONTHLY,
            amortization_method=AmortizationMethod.EQUAL_INSTALLMENT,
            disbursement_date=date(2024, 1, 1),
            first_payment_date=date(2024, 2, 1),
        )
        values.update(overrides)
        return LoanTerms(**values)

    def test_valid_terms(self):
        assert self.terms().term_periods == 12

    @pytest.mark.parametrize("overrides,message", [
        ({"principal_amount": rwf(0)}, "Principal"),
        ({"annual_interest_rate": Decimal('-0.01')}, "negative"),
        ({"term_periods": 0}, "at least one"),
        ({"first_payment_date": date(2024, 1, 1)}, "after disbursement"),
    ])
    def test_invalid_terms(self, overrides, message):
        with pytest.raises(ValueError, match=message):
            self.terms(**overrides)


class TestRefreshBalances:
    """Balances are re-derived from installment rows"""

    def test_balances_follow_schedule(self, make_loan, make_installment):
        loan = make_loan(principal="200000")
        rows = [
            make_installment(1, date(2024, 2, 1), "80000", "20000", penalty="1000"),
            make_installment(2, date(2024, 3, 1), "80000", "15000"),
            make_installment(3, date(2024, 4, 1), "40000", "10000"),
        ]
        rows[0].paid_interest = rwf(20000)

        refresh_balances(loan, rows, date(2024, 2, 15))

        assert loan.outstanding_principal == rwf(200000)
        # Row 1 is due, row 2 is the current period; row 3 has not accrued yet
        assert loan.accrued_interest == rwf(15000)
        assert loan.outstanding_penalty == rwf(1000)
        assert loan.total_outstanding == rwf(216000)
        assert loan.state == LoanState.ACTIVE

    def test_paid_off_when_every_row_is_settled(self, make_loan, make_installment):
        loan = make_loan()
        row = make_installment(1, date(2024, 2, 1), "80000", "20000")
        row.paid_principal = rwf(80000)
        row.paid_interest = rwf(20000)
        row.recompute_status(date(2024, 2, 1))

        refresh_balances(loan, [row], date(2024, 2, 1))

        assert loan.state == LoanState.PAID_OFF
        assert loan.paid_off_date == date(2024, 2, 1)
        assert loan.outstanding_principal.is_zero()

    def test_superseded_rows_are_ignored(self, make_loan, make_installment):
        loan = make_loan()
        rows = [
            make_installment(1, date(2024, 2, 1), "80000", "20000"),
            make_installment(2, date(2024, 3, 1), "80000", "20000"),
        ]
        rows[1].is_superseded = True

        refresh_balances(loan, rows, date(2024, 1, 15))
        assert loan.outstanding_principal == rwf(80000)


class TestLoanRepository:

    def test_save_and_load(self, storage, make_loan):
        repository = LoanRepository(storage)
        loan = make_loan(collateral="50000")
        loan.status = LoanStatus.WATCH
        loan.days_in_arrears = 12
        loan.last_payment_date = date(2024, 2, 10)
        repository.save(loan)

        loaded = repository.get(loan.id, "org-1")
        assert loaded.status == LoanStatus.WATCH
        assert loaded.days_in_arrears == 12
        assert loaded.collateral_value == rwf(50000)
        assert loaded.terms.repayment_frequency == RepaymentFrequency.MONTHLY
        assert loaded.last_payment_date == date(2024, 2, 10)

    def test_lookup_is_scoped_to_organization(self, storage, make_loan):
        repository = LoanRepository(storage)
        repository.save(make_loan())

        with pytest.raises(LoanNotFound) as exc_info:
            repository.get("loan-1", "org-2")
        assert exc_info.value.http_status == 404
        assert repository.find("loan-404") is None

    def test_list_for_organization(self, storage, make_loan):
        repository = LoanRepository(storage)
        repository.save(make_loan(loan_id="loan-b"))
        repository.save(make_loan(loan_id="loan-a"))

        assert [loan.id for loan in repository.list_for_organization("org-1")] == ["loan-a", "loan-b"]
        assert repository.list_for_organization("org-2") == []
        assert len(repository.list_all()) == 2
