"""
Test suite for the loan servicing service

Exercises full payment, reversal, classification and daily-update flows
against in-memory storage, including concurrency on a single loan.
"""

import threading
import pytest
from decimal import Decimal
from datetime import date, datetime, timezone
from unittest.mock import Mock

from loan_servicing.currency import Money, Currency
from loan_servicing.errors import (
    DuplicateAttempt, InvalidAmount, InvalidDate, InvalidTerms, LoanNotFound,
    NotReversible, TransactionNotFound
)
from loan_servicing.events import DomainEvent
from loan_servicing.audit import AuditEventType
from loan_servicing.schedule import PaymentStatus
from loan_servicing.classification import LoanStatus, ClassificationTrigger
from loan_servicing.ledger import PaymentMethod, TransactionKind
from loan_servicing.loans import LoanState
from loan_servicing.recalculation import RecalculationOptions, RecalculationType
from loan_servicing import servicing as servicing_module
from loan_servicing.servicing import LoanServicingService, PaymentRequest


ORG = "org-1"


def rwf(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.RWF)


def at(day: date, hour: int = 9) -> datetime:
    return datetime(day.year, day.month, day.day, hour, tzinfo=timezone.utc)


class TestDisbursement:

    def test_disburse_creates_schedule_and_classification(self, service, disburse):
        loan = disburse()

        assert loan.outstanding_principal == rwf(1200000)
        assert loan.installment_amount == rwf(100000)
        assert loan.status == LoanStatus.PERFORMING
        assert loan.latest_classification_id is not None

        view = service.get_schedule(ORG, loan.id, as_of=date(2024, 1, 1))
        assert len(view.installments) == 12
        assert view.summary.total_scheduled == rwf(1200000)

        history = service.classification_history(ORG, loan.id)
        assert [r.trigger for r in history] == [ClassificationTrigger.DISBURSEMENT]

    def test_invalid_terms(self, disburse):
        with pytest.raises(InvalidTerms):
            disburse(periods=0)
        with pytest.raises(InvalidAmount):
            disburse(principal="-5")
        with pytest.raises(InvalidAmount):
            disburse(principal="1000.50")

    def test_future_disbursement(self, service):
        with pytest.raises(InvalidDate):
            service.disburse_loan(ORG, "borrower-1", "100000", "0", 3,
                                  date(2024, 2, 1), date(2024, 3, 1), today=date(2024, 1, 1))

    def test_other_organization_cannot_see_loan(self, service, disburse):
        loan = disburse()
        with pytest.raises(LoanNotFound):
            service.get_loan("org-2", loan.id)


class TestPayments:
    """Payments through the service"""

    def test_installment_payment(self, service, disburse):
        loan = disburse()
        first = service.get_schedule(ORG, loan.id, as_of=date(2024, 1, 1)).installments[0]

        result = service.process_payment(ORG, loan.id, PaymentRequest(
            amount="100000", payment_date=date(2024, 2, 1), method=PaymentMethod.MOBILE_MONEY,
            received_by="teller-1", target_installment_id=first.id
        ), today=date(2024, 2, 1), now=at(date(2024, 2, 1)))

        assert result.allocation.principal_paid == rwf(100000)
        assert result.transaction.sequence == 1
        assert result.loan.outstanding_principal == rwf(1100000)
        assert result.loan.last_payment_date == date(2024, 2, 1)
        assert result.schedule[0].is_paid

        stored = service.get_transaction(ORG, result.transaction.id)
        assert stored.received_by == "teller-1"
        assert stored.classification_before == {"status": "performing", "days_in_arrears": 0}

    def test_business_date_is_the_local_calendar_day(self, service, disburse, monkeypatch):
        class LocalDate(date):
            @classmethod
            def today(cls):
                return cls(2024, 3, 2)

        loan = disburse()
        monkeypatch.setattr(servicing_module, "date", LocalDate)

        # 01:30 in Kigali is still the previous day in UTC
        result = service.process_payment(ORG, loan.id, PaymentRequest(
            amount="100000", payment_date=date(2024, 3, 2)
        ), now=datetime(2024, 3, 1, 23, 30, tzinfo=timezone.utc))

        assert result.transaction.payment_date == date(2024, 3, 2)
        assert result.allocation.principal_paid == rwf(100000)

    def test_excess_is_held_on_loan(self, service, disburse):
        loan = disburse(periods=2, principal="200000")

        result = service.process_payment(ORG, loan.id, PaymentRequest(
            amount="250000", payment_date=date(2024, 2, 1)
        ), today=date(2024, 2, 1))

        assert result.allocation.excess_amount == rwf(50000)
        assert result.loan.unapplied_balance == rwf(50000)
        assert result.loan.state == LoanState.PAID_OFF
        assert result.loan.paid_off_date == date(2024, 2, 1)

    def test_payment_cures_arrears(self, service, disburse):
        loan = disburse()

        outcome, changed = service.reclassify_loan(ORG, loan.id, as_of=date(2024, 3, 17))
        assert changed == 2
        assert outcome.new_status == LoanStatus.SUBSTANDARD
        assert outcome.days_overdue == 45

        result = service.process_payment(ORG, loan.id, PaymentRequest(
            amount="200000", payment_date=date(2024, 3, 17)
        ), today=date(2024, 3, 17))

        assert result.classification.was_reclassified is True
        assert result.classification.previous_status == LoanStatus.SUBSTANDARD
        assert result.classification.new_status == LoanStatus.PERFORMING
        assert result.loan.days_in_arrears == 0

    def test_duplicate_submission_under_concurrency(self, service, disburse):
        loan = disburse()
        first = service.get_schedule(ORG, loan.id, as_of=date(2024, 1, 1)).installments[0]
        now = at(date(2024, 2, 1))
        outcomes = []

        def submit():
            try:
                service.process_payment(ORG, loan.id, PaymentRequest(
                    amount="50000", payment_date=date(2024, 2, 1), target_installment_id=first.id
                ), today=date(2024, 2, 1), now=now)
                outcomes.append("ok")
            except DuplicateAttempt:
                outcomes.append("duplicate")

        threads = [threading.Thread(target=submit) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(outcomes) == ["duplicate", "ok"]
        assert len(service.list_transactions(ORG, loan.id)) == 1
        row = service.schedules.get_installment(first.id)
        assert row.paid_total == rwf(50000)
        assert row.payment_attempt_count == 1

    def test_failed_payment_leaves_no_trace(self, service, disburse):
        loan = disburse()
        with pytest.raises(InvalidDate):
            service.process_payment(ORG, loan.id, PaymentRequest(
                amount="1000", payment_date=date(2024, 5, 1)
            ), today=date(2024, 2, 1))

        assert service.list_transactions(ORG, loan.id) == []
        assert service.get_loan(ORG, loan.id).outstanding_principal == rwf(1200000)


class TestReversals:
    """Reversal restores the state before the payment"""

    def test_reversal_restores_delay_and_status(self, service, disburse):
        loan = disburse()
        outcome, _ = service.reclassify_loan(ORG, loan.id, as_of=date(2024, 2, 11),
                                             trigger=ClassificationTrigger.TICK)
        assert outcome.new_status == LoanStatus.WATCH
        first = service.schedules.get_schedule(loan.id)[0]
        assert first.delayed_days == 10
        assert first.payment_status == PaymentStatus.OVERDUE

        payment = service.process_payment(ORG, loan.id, PaymentRequest(
            amount="100000", payment_date=date(2024, 2, 11), target_installment_id=first.id
        ), today=date(2024, 2, 11), now=at(date(2024, 2, 11)))
        assert payment.loan.status == LoanStatus.PERFORMING

        result = service.reverse_transaction(ORG, payment.transaction.id, "Cheque bounced",
                                             reversed_by="supervisor-1", today=date(2024, 2, 11))

        row = service.schedules.get_installment(first.id)
        assert row.paid_total.is_zero()
        assert row.delayed_days == 10
        assert row.payment_status == PaymentStatus.OVERDUE
        assert row.last_payment_attempt is None
        assert result.loan.status == LoanStatus.WATCH
        assert result.loan.outstanding_principal == rwf(1200000)
        assert result.reversal.kind == TransactionKind.REVERSAL
        assert result.original.is_reversed

        with pytest.raises(NotReversible):
            service.reverse_transaction(ORG, payment.transaction.id, "again", today=date(2024, 2, 11))
        with pytest.raises(NotReversible):
            service.reverse_transaction(ORG, result.reversal.id, "undo", today=date(2024, 2, 11))

    def test_reversal_of_excess_payment(self, service, disburse):
        loan = disburse(periods=2, principal="200000")
        payment = service.process_payment(ORG, loan.id, PaymentRequest(
            amount="250000", payment_date=date(2024, 2, 1)
        ), today=date(2024, 2, 1))

        result = service.reverse_transaction(ORG, payment.transaction.id, "Wrong account",
                                             today=date(2024, 2, 1))

        assert result.loan.unapplied_balance.is_zero()
        assert result.loan.state == LoanState.ACTIVE
        assert result.loan.paid_off_date is None

    def test_general_payment_reversal_restores_schedule(self, service, disburse):
        loan = disburse()
        service.reclassify_loan(ORG, loan.id, as_of=date(2024, 3, 11),
                                trigger=ClassificationTrigger.TICK)
        before = [row.to_wire() for row in service.schedules.get_schedule(loan.id)]
        assert [row["delayedDays"] for row in before[:3]] == [39, 10, 0]

        payment = service.process_payment(ORG, loan.id, PaymentRequest(
            amount="250000", payment_date=date(2024, 3, 11)
        ), today=date(2024, 3, 11))
        assert sorted(d.installment_number for d in payment.transaction.deltas) == [1, 2, 3]

        result = service.reverse_transaction(ORG, payment.transaction.id, "Duplicate deposit",
                                             today=date(2024, 3, 11))

        after = [row.to_wire() for row in service.schedules.get_schedule(loan.id)]
        assert after == before
        assert result.loan.outstanding_principal == rwf(1200000)
        assert result.loan.status == LoanStatus.SUBSTANDARD

    def test_reversals_in_reverse_order_restore_row(self, service, disburse):
        loan = disburse()
        before = service.schedules.get_schedule(loan.id)[0].to_wire()

        payments = [
            service.process_payment(ORG, loan.id, PaymentRequest(
                amount=amount, payment_date=date(2024, 2, 11)
            ), today=date(2024, 2, 11))
            for amount in ("30000", "20000")
        ]
        row = service.schedules.get_schedule(loan.id)[0]
        assert row.delayed_days == 10
        assert row.paid_principal == rwf(50000)

        for payment in reversed(payments):
            service.reverse_transaction(ORG, payment.transaction.id, "Cheque bounced",
                                        today=date(2024, 2, 11))

        row = service.schedules.get_schedule(loan.id)[0]
        assert row.delayed_days == 0
        assert row.actual_payment_date is None
        assert row.to_wire() == before

    def test_reversal_refused_after_recalculation(self, service, disburse):
        loan = disburse()
        payment = service.process_payment(ORG, loan.id, PaymentRequest(
            amount="250000", payment_date=date(2024, 2, 1)
        ), today=date(2024, 2, 1))
        service.recalculate_schedule(
            ORG, loan.id, RecalculationOptions(RecalculationType.REDUCE_INSTALLMENT, date(2024, 3, 1)),
            today=date(2024, 3, 1)
        )

        with pytest.raises(NotReversible, match="restructured"):
            service.reverse_transaction(ORG, payment.transaction.id, "late", today=date(2024, 3, 1))

    def test_unknown_or_foreign_transaction(self, service, disburse):
        loan = disburse()
        payment = service.process_payment(ORG, loan.id, PaymentRequest(
            amount="1000", payment_date=date(2024, 1, 1)
        ), today=date(2024, 1, 1))

        with pytest.raises(TransactionNotFound):
            service.reverse_transaction(ORG, "TXN404", "typo")
        with pytest.raises(TransactionNotFound):
            service.reverse_transaction("org-2", payment.transaction.id, "typo")


class TestDailyUpdate:
    """Batch reclassification"""

    def test_daily_update_reclassifies_portfolio(self, service, disburse):
        loans = [disburse(borrower_id=f"borrower-{n}") for n in range(5)]
        disburse(organization_id="org-2")

        result = service.run_daily_update(ORG, as_of=date(2024, 3, 17))

        assert result.loans_processed == 5
        assert len(result.reclassified) == 5
        assert result.installments_updated == 10
        assert result.failures == {}
        assert {loan_id for loan_id, _ in result.reclassified} == {loan.id for loan in loans}
        assert all(o.new_status == LoanStatus.SUBSTANDARD for _, o in result.reclassified)

        again = service.run_daily_update(ORG, as_of=date(2024, 3, 17))
        assert again.reclassified == []
        assert again.installments_updated == 0

    def test_unexpected_failure_is_isolated_per_loan(self, service, disburse, monkeypatch):
        healthy = disburse(borrower_id="borrower-1")
        broken = disburse(borrower_id="borrower-2")
        require_schedule = service.schedules.require_schedule

        def flaky_require_schedule(loan_id):
            if loan_id == broken.id:
                raise RuntimeError("database is locked")
            return require_schedule(loan_id)

        monkeypatch.setattr(service.schedules, "require_schedule", flaky_require_schedule)

        result = service.run_daily_update(ORG, as_of=date(2024, 3, 17))

        assert result.failures == {broken.id: "database is locked"}
        assert result.loans_processed == 1
        assert [loan_id for loan_id, _ in result.reclassified] == [healthy.id]
        assert service.get_loan(ORG, healthy.id).status == LoanStatus.SUBSTANDARD
        assert service.get_loan(ORG, broken.id).status == LoanStatus.PERFORMING

    def test_penalty_accrues_on_tick(self, storage, config, disburse):
        config.daily_penalty_rate = "0.001"
        service = LoanServicingService(storage, config)
        loan = disburse()

        service.run_daily_update(ORG, as_of=date(2024, 2, 11))

        first = service.schedules.get_schedule(loan.id)[0]
        assert first.due_penalty == rwf(1000)
        assert service.get_loan(ORG, loan.id).outstanding_penalty == rwf(1000)

    def test_delayed_days_report_and_summary(self, service, disburse):
        loan = disburse()
        service.process_payment(ORG, loan.id, PaymentRequest(
            amount="100000", payment_date=date(2024, 2, 6)
        ), today=date(2024, 2, 6))

        report = service.delayed_days_report(ORG, days_threshold=0, as_of=date(2024, 3, 11))
        assert report["totalInstallments"] == 2
        assert report["maxDelayedDays"] == 10
        assert [e["installmentNumber"] for e in report["installments"]] == [2, 1]

        summary = service.payment_summary(ORG, loan.id)
        assert summary["paymentCount"] == 1
        assert summary["principalPaid"] == "100000"
        assert summary["maxDelayedDays"] == 5


class TestObservability:
    """Audit trail and domain events"""

    def test_audit_chain_covers_operations(self, service, disburse):
        loan = disburse()
        payment = service.process_payment(ORG, loan.id, PaymentRequest(
            amount="100000", payment_date=date(2024, 2, 20)
        ), today=date(2024, 2, 20))
        service.reverse_transaction(ORG, payment.transaction.id, "test", today=date(2024, 2, 20))

        events = service.audit_trail.get_events_for_entity("loan", loan.id)
        types = [e.event_type for e in events]
        assert types[0] == AuditEventType.LOAN_DISBURSED
        assert AuditEventType.PAYMENT_PROCESSED in types
        assert AuditEventType.PAYMENT_REVERSED in types
        assert service.audit_trail.verify_integrity()["valid"] is True

    def test_events_published(self, service, disburse):
        handler = Mock()
        service.dispatcher.subscribe_all(handler)
        loan = disburse()
        service.reclassify_loan(ORG, loan.id, as_of=date(2024, 2, 11))

        published = [call.args[0].event_type for call in handler.call_args_list]
        assert published == [DomainEvent.LOAN_DISBURSED, DomainEvent.LOAN_RECLASSIFIED]
        assert handler.call_args_list[1].args[0].data["new_status"] == "watch"

    def test_events_can_be_disabled(self, storage, config):
        config.enable_events = False
        service = LoanServicingService(storage, config)
        handler = Mock()
        service.dispatcher.subscribe_all(handler)

        service.disburse_loan(ORG, "borrower-1", "100000", "0", 2,
                              date(2024, 1, 1), date(2024, 2, 1), today=date(2024, 1, 1))
        handler.assert_not_called()
