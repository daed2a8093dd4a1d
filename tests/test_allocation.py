"""
Test suite for payment allocation

Tests the installment and general waterfalls, conservation of the paid
amount, duplicate-submission guard and input validation.
"""

import copy
import pytest
from decimal import Decimal
from datetime import date, datetime, timedelta, timezone

from loan_servicing.currency import Money, Currency
from loan_servicing.errors import (
    InvalidAmount, InvalidDate, AlreadySettled, DuplicateAttempt, ScheduleNotFound
)
from loan_servicing.allocation import PaymentAllocationEngine, AllocationMode


TODAY = date(2024, 6, 1)
NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def rwf(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.RWF)


@pytest.fixture
def engine():
    return PaymentAllocationEngine(duplicate_cooldown=timedelta(seconds=300))


@pytest.fixture
def three_rows(make_installment):
    return [
        make_installment(1, date(2024, 2, 1), "30000", "10000", penalty="2000"),
        make_installment(2, date(2024, 3, 1), "30000", "8000"),
        make_installment(3, date(2024, 4, 1), "30000", "6000"),
    ]


class TestInstallmentAllocation:
    """Payments targeted at one installment"""

    def test_exact_payment_on_due_date(self, engine, make_loan, make_installment):
        loan = make_loan()
        row = make_installment(1, date(2024, 2, 1), "80000", "20000")

        result = engine.allocate(loan, [row], "100000", date(2024, 2, 1), "TXN001",
                                 target_installment_id=row.id, today=TODAY, now=NOW)

        allocation = result.allocation
        assert allocation.mode == AllocationMode.INSTALLMENT
        assert allocation.interest_paid == rwf(20000)
        assert allocation.principal_paid == rwf(80000)
        assert allocation.penalty_paid.is_zero()
        assert allocation.excess_amount.is_zero()
        assert allocation.is_balanced()

        delta = result.deltas[0]
        assert delta.delayed_days_after == 0
        assert delta.attempted_at == NOW
        assert result.delay_info[0].delayed_days == 0

    def test_partial_late_payment(self, engine, make_loan, make_installment):
        loan = make_loan()
        row = make_installment(1, date(2024, 2, 1), "80000", "20000")

        result = engine.allocate(loan, [row], "50000", date(2024, 2, 11), "TXN001",
                                 target_installment_id=row.id, today=TODAY, now=NOW)

        assert result.allocation.interest_paid == rwf(20000)
        assert result.allocation.principal_paid == rwf(30000)
        assert result.deltas[0].delayed_days_after == 10
        assert result.delay_info[0].delayed_days == 10

    def test_penalty_first_then_excess(self, engine, make_loan, make_installment):
        loan = make_loan()
        row = make_installment(1, date(2024, 2, 1), "80000", "20000", penalty="1500")

        result = engine.allocate(loan, [row], "110000", date(2024, 2, 11), "TXN001",
                                 target_installment_id=row.id, today=TODAY, now=NOW)

        assert result.allocation.penalty_paid == rwf(1500)
        assert result.allocation.excess_amount == rwf(8500)
        assert result.allocation.is_balanced()

    def test_on_time_payment_resets_delay(self, engine, make_loan, make_installment):
        loan = make_loan()
        row = make_installment(1, date(2024, 3, 1), "80000", "20000", delayed_days=6)

        result = engine.allocate(loan, [row], "1000", date(2024, 2, 20), "TXN001",
                                 target_installment_id=row.id, today=TODAY, now=NOW)

        assert result.deltas[0].delayed_days_after == 0
        assert result.deltas[0].delayed_days_before == 6
        assert result.delay_info[0].delay_reset is True
        assert result.delay_info[0].is_early is True

    def test_paid_installment_is_rejected(self, engine, make_loan, make_installment):
        loan = make_loan()
        row = make_installment(1, date(2024, 2, 1), "80000", "20000")
        row.is_paid = True

        with pytest.raises(AlreadySettled):
            engine.allocate(loan, [row], "1000", date(2024, 2, 1), "TXN001",
                            target_installment_id=row.id, today=TODAY, now=NOW)

    def test_unknown_installment(self, engine, make_loan, make_installment):
        loan = make_loan()
        row = make_installment(1, date(2024, 2, 1), "80000", "20000")

        with pytest.raises(ScheduleNotFound):
            engine.allocate(loan, [row], "1000", date(2024, 2, 1), "TXN001",
                            target_installment_id="inst-99", today=TODAY, now=NOW)

    def test_duplicate_attempt_within_cooldown(self, engine, make_loan, make_installment):
        loan = make_loan()
        row = make_installment(1, date(2024, 2, 1), "80000", "20000")
        row.last_payment_attempt = NOW - timedelta(seconds=60)

        with pytest.raises(DuplicateAttempt) as exc_info:
            engine.allocate(loan, [row], "1000", date(2024, 2, 1), "TXN001",
                            target_installment_id=row.id, today=TODAY, now=NOW)
        assert exc_info.value.http_status == 409

    def test_attempt_after_cooldown_is_accepted(self, engine, make_loan, make_installment):
        loan = make_loan()
        row = make_installment(1, date(2024, 2, 1), "80000", "20000")
        row.last_payment_attempt = NOW - timedelta(seconds=301)

        result = engine.allocate(loan, [row], "1000", date(2024, 2, 1), "TXN001",
                                 target_installment_id=row.id, today=TODAY, now=NOW)
        assert result.allocation.interest_paid == rwf(1000)


class TestGeneralAllocation:
    """Payments swept across the whole schedule"""

    def test_waterfall_order(self, engine, make_loan, three_rows):
        loan = make_loan()

        result = engine.allocate(loan, three_rows, "60000", date(2024, 2, 15), "TXN001",
                                 today=TODAY, now=NOW)

        allocation = result.allocation
        assert allocation.mode == AllocationMode.GENERAL
        assert allocation.penalty_paid == rwf(2000)
        assert allocation.interest_paid == rwf(18000)
        assert allocation.principal_paid == rwf(40000)
        assert allocation.excess_amount.is_zero()

        by_number = {d.installment_number: d for d in result.deltas}
        assert set(by_number) == {1, 2}
        assert by_number[1].principal == rwf(30000)
        assert by_number[2].principal == rwf(10000)
        assert by_number[1].delayed_days_after == 14
        # General payments never stamp the duplicate guard
        assert by_number[1].attempted_at is None

    def test_future_interest_and_excess(self, engine, make_loan, three_rows):
        loan = make_loan()

        result = engine.allocate(loan, three_rows, "300000", date(2024, 2, 15), "TXN001",
                                 today=TODAY, now=NOW)

        allocation = result.allocation
        assert allocation.interest_paid == rwf(24000)
        assert allocation.principal_paid == rwf(90000)
        assert allocation.excess_amount == rwf(184000)
        assert allocation.is_balanced()
        assert len(result.deltas) == 3

    def test_early_payment_keeps_stored_delay(self, engine, make_loan, make_installment):
        loan = make_loan()
        row = make_installment(1, date(2024, 3, 1), "80000", "20000", delayed_days=3)

        result = engine.allocate(loan, [row], "10000", date(2024, 2, 20), "TXN001",
                                 today=TODAY, now=NOW)

        assert result.deltas[0].delayed_days_after == 3

    def test_conservation_across_amounts(self, engine, make_loan, three_rows):
        loan = make_loan()
        for amount in ("1", "2000", "19999", "42001", "116000", "500000"):
            result = engine.allocate(loan, three_rows, amount, date(2024, 2, 15), "TXN001",
                                     today=TODAY, now=NOW)
            assert result.allocation.is_balanced()
            applied = sum((d.total for d in result.deltas), rwf(0))
            assert applied + result.allocation.excess_amount == rwf(amount)

    def test_schedule_is_not_mutated(self, engine, make_loan, three_rows):
        loan = make_loan()
        before = copy.deepcopy(three_rows)

        engine.allocate(loan, three_rows, "60000", date(2024, 2, 15), "TXN001",
                        today=TODAY, now=NOW)

        assert three_rows == before

    def test_fully_paid_schedule_goes_to_excess(self, engine, make_loan, three_rows):
        loan = make_loan()
        for row in three_rows:
            row.is_paid = True

        result = engine.allocate(loan, three_rows, "5000", date(2024, 2, 15), "TXN001",
                                 today=TODAY, now=NOW)

        assert result.deltas == []
        assert result.allocation.excess_amount == rwf(5000)


class TestValidation:
    """Amount and date validation"""

    @pytest.mark.parametrize("amount", ["0", "-100", "100.5", "abc", Decimal('0.4')])
    def test_invalid_amounts(self, engine, make_loan, three_rows, amount):
        loan = make_loan()
        with pytest.raises(InvalidAmount):
            engine.allocate(loan, three_rows, amount, date(2024, 2, 15), "TXN001",
                            today=TODAY, now=NOW)

    def test_currency_mismatch(self, engine, make_loan, three_rows):
        loan = make_loan()
        with pytest.raises(InvalidAmount, match="does not match"):
            engine.allocate(loan, three_rows, Money(Decimal('10'), Currency.USD),
                            date(2024, 2, 15), "TXN001", today=TODAY, now=NOW)

    def test_money_and_formatted_strings(self, engine, make_loan):
        loan = make_loan()
        assert engine.validate_amount(loan, rwf(5000)) == rwf(5000)
        assert engine.validate_amount(loan, "5,000") == rwf(5000)
        assert engine.validate_amount(loan, 5000) == rwf(5000)

    def test_future_payment_date(self, engine, make_loan, three_rows):
        loan = make_loan()
        with pytest.raises(InvalidDate, match="future"):
            engine.allocate(loan, three_rows, "1000", TODAY + timedelta(days=1), "TXN001",
                            today=TODAY, now=NOW)

    def test_payment_before_disbursement(self, engine, make_loan, three_rows):
        loan = make_loan()
        with pytest.raises(InvalidDate, match="disbursement"):
            engine.allocate(loan, three_rows, "1000", date(2023, 12, 31), "TXN001",
                            today=TODAY, now=NOW)
