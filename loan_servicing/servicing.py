"""
Loan Servicing Module

Orchestrates the engine: serializes work per loan, commits schedule deltas,
ledger entries and classification records in one atomic block, then emits
audit entries, structured logs and domain events.
"""

from decimal import Decimal
from datetime import datetime, timedelta, timezone, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Tuple, Union
from concurrent.futures import ThreadPoolExecutor, as_completed
import threading
import uuid

from .config import ServicingConfig, get_config
from .currency import Money, Currency, is_representable, decimal_from_string
from .dates import RepaymentFrequency
from .storage import StorageInterface
from .audit import AuditTrail, AuditEventType
from .events import EventDispatcher, EventPayload, DomainEvent
from .logging_config import get_logger, log_action
from .schedule import (
    Installment, ScheduleStore, AmortizationMethod, ScheduleSummary, build_installments, summarize
)
from .delays import days_in_arrears, refresh_delays
from .allocation import PaymentAllocationEngine, Allocation
from .classification import (
    ClassificationEngine, ClassificationOutcome, ClassificationRecord, ClassificationStore,
    ClassificationTrigger, ProvisioningPolicy, ProvisioningReport,
    build_provisioning_report
)
from .recalculation import RecalculationOptions, RecalculationPlan, ScheduleRecalculationService
from .ledger import PaymentMethod, PaymentTransaction, TransactionKind, TransactionLedger
from .loans import LoanAccount, LoanRepository, LoanState, LoanTerms, refresh_balances
from .errors import (
    InvalidAmount, InvalidDate, InvalidRecalculation, InvalidTerms, LoanServicingError,
    NotReversible, TransactionNotFound
)


class LoanLockRegistry:
    """One re-entrant lock per loan, created on first use"""

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def lock_for(self, loan_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(loan_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[loan_id] = lock
            return lock


@dataclass
class PaymentRequest:
    amount: Union[Decimal, str, int, Money]
    payment_date: date
    method: PaymentMethod = PaymentMethod.CASH
    received_by: str = "system"
    approved_by: Optional[str] = None
    target_installment_id: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class PaymentResult:
    transaction: PaymentTransaction
    allocation: Allocation
    loan: LoanAccount
    classification: ClassificationOutcome
    schedule: List[Installment]

    def to_wire(self) -> Dict[str, Any]:
        return {
            'transaction': self.transaction.to_wire(),
            'allocation': self.allocation.to_wire(),
            'loan': self.loan.to_wire(),
            'classification': self.classification.to_wire(),
            'schedule': [row.to_wire() for row in self.schedule],
        }


@dataclass
class ReversalResult:
    reversal: PaymentTransaction
    original: PaymentTransaction
    loan: LoanAccount
    classification: ClassificationOutcome
    schedule: List[Installment]

    def to_wire(self) -> Dict[str, Any]:
        return {
            'reversal': self.reversal.to_wire(),
            'original': self.original.to_wire(),
            'loan': self.loan.to_wire(),
            'classification': self.classification.to_wire(),
            'schedule': [row.to_wire() for row in self.schedule],
        }


@dataclass
class RecalculationResult:
    plan: RecalculationPlan
    loan: LoanAccount
    classification: ClassificationOutcome
    schedule: List[Installment]

    def to_wire(self) -> Dict[str, Any]:
        return {
            'recalculation': self.plan.to_wire(),
            'loan': self.loan.to_wire(),
            'classification': self.classification.to_wire(),
            'schedule': [row.to_wire() for row in self.schedule],
        }


@dataclass
class ScheduleView:
    loan: LoanAccount
    installments: List[Installment]
    summary: ScheduleSummary

    def to_wire(self) -> Dict[str, Any]:
        return {
            'loanId': self.loan.id,
            'scheduleVersion': self.loan.schedule_version,
            'installments': [row.to_wire() for row in self.installments],
            'summary': self.summary.to_wire(),
        }


@dataclass
class DailyUpdateResult:
    as_of: date
    loans_processed: int = 0
    installments_updated: int = 0
    reclassified: List[Tuple[str, ClassificationOutcome]] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)

    def to_wire(self) -> Dict[str, Any]:
        return {
            'asOf': self.as_of.isoformat(),
            'loansProcessed': self.loans_processed,
            'installmentsUpdated': self.installments_updated,
            'reclassified': [dict(loanId=loan_id, **outcome.to_wire())
                             for loan_id, outcome in self.reclassified],
            'failures': self.failures,
        }


class LoanServicingService:
    """
    Entry point for every servicing operation.

    Work on one loan runs under that loan's lock; different loans proceed in
    parallel. Each mutation commits inside a single storage.atomic() block.
    """

    def __init__(
        self,
        storage: StorageInterface,
        config: Optional[ServicingConfig] = None,
        audit_trail: Optional[AuditTrail] = None,
        dispatcher: Optional[EventDispatcher] = None
    ):
        self.config = config or get_config()
        self.storage = storage
        self.loans = LoanRepository(storage)
        self.schedules = ScheduleStore(storage)
        self.ledger = TransactionLedger(storage)
        self.classifications = ClassificationStore(storage)
        self.policy = ProvisioningPolicy.from_config(self.config)
        self.classifier = ClassificationEngine(self.policy)
        self.allocator = PaymentAllocationEngine(
            timedelta(seconds=self.config.duplicate_payment_cooldown_seconds)
        )
        self.recalculator = ScheduleRecalculationService()
        self.daily_penalty_rate = Decimal(self.config.daily_penalty_rate)
        if audit_trail is None and self.config.enable_audit_logging:
            audit_trail = AuditTrail(storage)
        self.audit_trail = audit_trail
        self.dispatcher = dispatcher or EventDispatcher()
        self.locks = LoanLockRegistry()
        self.logger = get_logger("loan_servicing.servicing")

    # ------------------------------------------------------------------
    # Disbursement and reads
    # ------------------------------------------------------------------

    def disburse_loan(
        self,
        organization_id: str,
        borrower_id: str,
        principal_amount: Union[Decimal, str, int],
        annual_interest_rate: Union[Decimal, str],
        term_periods: int,
        disbursement_date: date,
        first_payment_date: date,
        repayment_frequency: RepaymentFrequency = RepaymentFrequency.MONTHLY,
        amortization_method: AmortizationMethod = AmortizationMethod.EQUAL_INSTALLMENT,
        currency: Optional[Currency] = None,
        collateral_value: Union[Decimal, str, int, None] = None,
        disbursed_by: Optional[str] = None,
        today: Optional[date] = None
    ) -> LoanAccount:
        """
        Create a loan account with its initial schedule and classification

        Returns:
            The persisted LoanAccount
        """
        today = today or date.today()
        currency = currency or Currency[self.config.default_currency]
        principal = self._validated_money(principal_amount, currency, "Principal amount")
        collateral = (self._validated_money(collateral_value, currency, "Collateral value", allow_zero=True)
                      if collateral_value is not None else Money.zero(currency))
        if disbursement_date > today:
            raise InvalidDate("Disbursement date cannot be in the future",
                              disbursement_date=disbursement_date, today=today)
        try:
            rate = decimal_from_string(annual_interest_rate)
            terms = LoanTerms(
                principal_amount=principal,
                annual_interest_rate=rate,
                term_periods=term_periods,
                repayment_frequency=repayment_frequency,
                amortization_method=amortization_method,
                disbursement_date=disbursement_date,
                first_payment_date=first_payment_date,
            )
        except ValueError as e:
            raise InvalidTerms(str(e), borrower_id=borrower_id)

        now = datetime.now(timezone.utc)
        loan_id = str(uuid.uuid4())
        rows = build_installments(
            loan_id=loan_id,
            principal=principal,
            annual_interest_rate=rate,
            frequency=repayment_frequency,
            method=amortization_method,
            periods=term_periods,
            first_due_date=first_payment_date,
        )
        loan = LoanAccount(
            id=loan_id,
            created_at=now,
            updated_at=now,
            organization_id=organization_id,
            borrower_id=borrower_id,
            terms=terms,
            installment_amount=rows[0].due_principal + rows[0].due_interest,
            collateral_value=collateral,
        )

        with self.locks.lock_for(loan_id):
            refresh_delays(rows, today, self.daily_penalty_rate)
            refresh_balances(loan, rows, today)
            outcome = self.classifier.evaluate(
                loan, days_in_arrears(rows, today), today, ClassificationTrigger.DISBURSEMENT,
                previous_status=None
            )
            with self.storage.atomic():
                self.schedules.save_batch(rows)
                self._record_classification(loan, outcome)
                self.loans.save(loan)
                self._audit(AuditEventType.LOAN_DISBURSED, loan.id, {
                    "organization_id": organization_id,
                    "borrower_id": borrower_id,
                    "principal_amount": principal.to_string(),
                    "annual_rate": str(rate),
                    "term_periods": term_periods,
                    "repayment_frequency": repayment_frequency.value,
                    "amortization_method": amortization_method.value,
                    "disbursement_date": disbursement_date,
                }, user_id=disbursed_by)

        log_action(
            self.logger, "info", f"Loan disbursed: {principal.to_string()}",
            user_id=disbursed_by, action="disburse_loan", resource=f"loan:{loan.id}",
            extra={"organization_id": organization_id, "borrower_id": borrower_id,
                   "installments": len(rows)}
        )
        self._publish(DomainEvent.LOAN_DISBURSED, loan, {
            "borrower_id": borrower_id,
            "principal_amount": principal.to_wire(),
            "installments": len(rows),
        })
        return loan

    def get_loan(self, organization_id: str, loan_id: str) -> LoanAccount:
        return self.loans.get(loan_id, organization_id)

    def get_schedule(self, organization_id: str, loan_id: str,
                     as_of: Optional[date] = None) -> ScheduleView:
        """Active schedule with delays brought up to as_of (nothing is persisted)"""
        as_of = as_of or date.today()
        loan = self.loans.get(loan_id, organization_id)
        rows = self.schedules.require_schedule(loan_id)
        refresh_delays(rows, as_of)
        return ScheduleView(loan=loan, installments=rows, summary=summarize(rows, loan.currency))

    def list_transactions(self, organization_id: str, loan_id: str) -> List[PaymentTransaction]:
        self.loans.get(loan_id, organization_id)
        return self.ledger.list_for_loan(loan_id)

    def get_transaction(self, organization_id: str, transaction_id: str) -> PaymentTransaction:
        transaction = self.ledger.get(transaction_id)
        if transaction.organization_id != organization_id:
            raise TransactionNotFound(transaction_id)
        return transaction

    # ------------------------------------------------------------------
    # Payments and reversals
    # ------------------------------------------------------------------

    def process_payment(
        self,
        organization_id: str,
        loan_id: str,
        request: PaymentRequest,
        today: Optional[date] = None,
        now: Optional[datetime] = None
    ) -> PaymentResult:
        """
        Allocate a payment and commit it.

        Args:
            organization_id: Owning organization
            loan_id: Loan being paid
            request: Amount, date, method and optional target installment
            today: Business date (defaults to today)
            now: Wall clock for the duplicate-submission guard

        Returns:
            PaymentResult with the ledger entry, updated loan and schedule
        """
        today = today or date.today()
        now = now or datetime.now(timezone.utc)

        with self.locks.lock_for(loan_id):
            loan = self.loans.get(loan_id, organization_id)
            schedule = self.schedules.require_schedule(loan_id)
            transaction_id = str(uuid.uuid4())
            result = self.allocator.allocate(
                loan, schedule, request.amount, request.payment_date, transaction_id,
                target_installment_id=request.target_installment_id, today=today, now=now
            )
            allocation = result.allocation
            previous_state = loan.state
            snapshot = {"status": loan.status.value, "days_in_arrears": loan.days_in_arrears}

            with self.storage.atomic():
                self.schedules.apply_deltas(result.deltas)
                schedule = self.schedules.get_schedule(loan_id)
                loan.unapplied_balance = loan.unapplied_balance + allocation.excess_amount
                if loan.last_payment_date is None or request.payment_date > loan.last_payment_date:
                    loan.last_payment_date = request.payment_date
                refresh_balances(loan, schedule, today)
                outcome = self.classifier.evaluate(
                    loan, days_in_arrears(schedule, today), today, ClassificationTrigger.PAYMENT
                )

                transaction = PaymentTransaction(
                    id=transaction_id,
                    created_at=now,
                    updated_at=now,
                    loan_id=loan_id,
                    organization_id=organization_id,
                    sequence=self.ledger.next_sequence(loan_id),
                    kind=TransactionKind.PAYMENT,
                    amount=allocation.amount,
                    payment_date=request.payment_date,
                    method=request.method,
                    received_by=request.received_by,
                    approved_by=request.approved_by,
                    notes=request.notes,
                    principal_paid=allocation.principal_paid,
                    interest_paid=allocation.interest_paid,
                    penalty_paid=allocation.penalty_paid,
                    excess_amount=allocation.excess_amount,
                    target_installment_id=allocation.target_installment_id,
                    deltas=result.deltas,
                    delay_info=result.delay_info,
                    classification_before=snapshot,
                )
                self.ledger.append(transaction)
                self._record_classification(loan, outcome, user_id=request.received_by)
                self.loans.save(loan)

                self._audit(AuditEventType.PAYMENT_PROCESSED, loan_id, {
                    "transaction_id": transaction_id,
                    "amount": allocation.amount.to_string(),
                    "principal_paid": allocation.principal_paid.to_string(),
                    "interest_paid": allocation.interest_paid.to_string(),
                    "penalty_paid": allocation.penalty_paid.to_string(),
                    "excess_amount": allocation.excess_amount.to_string(),
                    "payment_date": request.payment_date,
                    "method": request.method.value,
                    "target_installment_id": allocation.target_installment_id,
                }, user_id=request.received_by)
                paid_off = loan.is_paid_off and previous_state != LoanState.PAID_OFF
                if paid_off:
                    self._audit(AuditEventType.LOAN_PAID_OFF, loan_id, {
                        "transaction_id": transaction_id,
                        "paid_off_date": loan.paid_off_date,
                    }, user_id=request.received_by)

        log_action(
            self.logger, "info", f"Payment processed: {allocation.amount.to_string()}",
            user_id=request.received_by, action="process_payment", resource=f"loan:{loan_id}",
            extra={
                "transaction_id": transaction_id,
                "mode": allocation.mode.value,
                "principal_paid": allocation.principal_paid.to_wire(),
                "interest_paid": allocation.interest_paid.to_wire(),
                "penalty_paid": allocation.penalty_paid.to_wire(),
                "excess_amount": allocation.excess_amount.to_wire(),
                "status": outcome.new_status.value,
                "was_reclassified": outcome.was_reclassified,
            }
        )
        self._publish(DomainEvent.PAYMENT_PROCESSED, loan, {
            "transaction_id": transaction_id,
            "amount": allocation.amount.to_wire(),
            "excess_amount": allocation.excess_amount.to_wire(),
        })
        self._publish_classification(loan, outcome)
        if paid_off:
            self._publish(DomainEvent.LOAN_PAID_OFF, loan, {"transaction_id": transaction_id})

        return PaymentResult(transaction=transaction, allocation=allocation, loan=loan,
                             classification=outcome, schedule=schedule)

    def reverse_transaction(
        self,
        organization_id: str,
        transaction_id: str,
        reason: str,
        reversed_by: Optional[str] = None,
        today: Optional[date] = None
    ) -> ReversalResult:
        """
        Reverse a payment with a compensating ledger entry.

        The touched installments are re-opened with their prior delay restored
        and the loan is reclassified.

        Raises:
            TransactionNotFound, NotReversible
        """
        today = today or date.today()
        original = self.get_transaction(organization_id, transaction_id)
        loan_id = original.loan_id

        with self.locks.lock_for(loan_id):
            # Re-read under the loan lock; a concurrent reversal may have won
            original = self.ledger.get(transaction_id)
            self.ledger.check_reversible(original)
            loan = self.loans.get(loan_id, organization_id)
            if original.excess_amount > loan.unapplied_balance:
                raise NotReversible(
                    "Excess from this payment has already been consumed",
                    transaction_id=transaction_id, loan_id=loan_id,
                    excess_amount=original.excess_amount.amount,
                    unapplied_balance=loan.unapplied_balance.amount
                )

            with self.storage.atomic():
                self.schedules.revert_deltas(original.deltas, today)
                schedule = self.schedules.get_schedule(loan_id)
                loan.unapplied_balance = loan.unapplied_balance - original.excess_amount
                refresh_balances(loan, schedule, today)
                outcome = self.classifier.evaluate(
                    loan, days_in_arrears(schedule, today), today, ClassificationTrigger.REVERSAL,
                    notes=reason
                )

                reversal = self.ledger.build_reversal(
                    original, reason, sequence=self.ledger.next_sequence(loan_id),
                    reversal_id=str(uuid.uuid4()), reversed_by=reversed_by
                )
                self.ledger.append(reversal)
                original = self.ledger.mark_reversed(original, reversal, reason)
                self._record_classification(loan, outcome, user_id=reversed_by)
                self.loans.save(loan)
                self._audit(AuditEventType.PAYMENT_REVERSED, loan_id, {
                    "transaction_id": transaction_id,
                    "reversal_id": reversal.id,
                    "amount": original.amount.to_string(),
                    "reason": reason,
                }, user_id=reversed_by)

        log_action(
            self.logger, "info", f"Payment reversed: {original.amount.to_string()}",
            user_id=reversed_by, action="reverse_payment", resource=f"transaction:{transaction_id}",
            extra={"loan_id": loan_id, "reversal_id": reversal.id, "reason": reason,
                   "status": outcome.new_status.value}
        )
        self._publish(DomainEvent.PAYMENT_REVERSED, loan, {
            "transaction_id": transaction_id,
            "reversal_id": reversal.id,
            "reason": reason,
        })
        self._publish_classification(loan, outcome)

        return ReversalResult(reversal=reversal, original=original, loan=loan,
                              classification=outcome, schedule=schedule)

    # ------------------------------------------------------------------
    # Recalculation
    # ------------------------------------------------------------------

    def recalculate_schedule(
        self,
        organization_id: str,
        loan_id: str,
        options: RecalculationOptions,
        requested_by: Optional[str] = None,
        today: Optional[date] = None
    ) -> RecalculationResult:
        """Replace the unpaid tail of the schedule and reclassify"""
        today = today or date.today()

        with self.locks.lock_for(loan_id):
            loan = self.loans.get(loan_id, organization_id)
            if loan.is_paid_off:
                raise InvalidRecalculation("Loan is already paid off", loan_id=loan_id)
            schedule = self.schedules.require_schedule(loan_id)
            plan = self.recalculator.recalculate(loan, schedule, options)

            with self.storage.atomic():
                for row in plan.changed_rows:
                    self.schedules.save(row)
                loan.schedule_version = plan.new_version
                loan.installment_amount = plan.new_installment_amount
                schedule = self.schedules.get_schedule(loan_id)
                refresh_delays(schedule, today, self.daily_penalty_rate)
                for row in schedule:
                    self.schedules.save(row)
                refresh_balances(loan, schedule, today)
                outcome = self.classifier.evaluate(
                    loan, days_in_arrears(schedule, today), today,
                    ClassificationTrigger.RECALCULATION,
                    notes=f"{options.recalculation_type.value} from {options.effective_date.isoformat()}"
                )
                self._record_classification(loan, outcome, user_id=requested_by)
                self.loans.save(loan)
                self._audit(AuditEventType.SCHEDULE_RECALCULATED, loan_id, {
                    "type": options.recalculation_type.value,
                    "effective_date": options.effective_date,
                    "schedule_version": plan.new_version,
                    "principal_reamortized": plan.principal_reamortized.to_string(),
                    "superseded": len(plan.superseded),
                    "restructured": len(plan.restructured),
                    "new_installments": len(plan.new_rows),
                }, user_id=requested_by)

        log_action(
            self.logger, "info", f"Schedule recalculated: {options.recalculation_type.value}",
            user_id=requested_by, action="recalculate_schedule", resource=f"loan:{loan_id}",
            extra={"schedule_version": plan.new_version, "new_installments": len(plan.new_rows),
                   "installment_amount": plan.new_installment_amount.to_wire()}
        )
        self._publish(DomainEvent.SCHEDULE_RECALCULATED, loan, plan.to_wire())
        self._publish_classification(loan, outcome)

        return RecalculationResult(plan=plan, loan=loan, classification=outcome, schedule=schedule)

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def reclassify_loan(
        self,
        organization_id: str,
        loan_id: str,
        as_of: Optional[date] = None,
        trigger: ClassificationTrigger = ClassificationTrigger.BACKFILL
    ) -> Tuple[ClassificationOutcome, int]:
        """
        Refresh delays (and penalties) as of a date and reclassify one loan.

        Safe to re-run: the same inputs always produce the same status.

        Returns:
            The outcome and the number of installments whose delay changed
        """
        as_of = as_of or date.today()

        with self.locks.lock_for(loan_id):
            loan = self.loans.get(loan_id, organization_id)
            schedule = self.schedules.require_schedule(loan_id)
            changed = refresh_delays(schedule, as_of, self.daily_penalty_rate)

            with self.storage.atomic():
                for row in changed:
                    self.schedules.save(row)
                refresh_balances(loan, schedule, as_of)
                outcome = self.classifier.evaluate(
                    loan, days_in_arrears(schedule, as_of), as_of, trigger
                )
                self._record_classification(loan, outcome)
                self.loans.save(loan)
                if changed:
                    self._audit(AuditEventType.DELAYED_DAYS_UPDATED, loan_id, {
                        "as_of": as_of,
                        "installments_updated": len(changed),
                        "days_in_arrears": outcome.days_overdue,
                    })

        self._publish_classification(loan, outcome)
        return outcome, len(changed)

    def run_daily_update(self, organization_id: str, as_of: Optional[date] = None) -> DailyUpdateResult:
        """Daily tick: refresh delays and reclassify every active loan of an organization"""
        as_of = as_of or date.today()
        loans = [loan for loan in self.loans.list_for_organization(organization_id)
                 if not loan.is_paid_off]
        result = DailyUpdateResult(as_of=as_of)

        with ThreadPoolExecutor(max_workers=max(1, self.config.classification_workers)) as executor:
            futures = {
                executor.submit(self.reclassify_loan, organization_id, loan.id, as_of,
                                ClassificationTrigger.TICK): loan.id
                for loan in loans
            }
            for future in as_completed(futures):
                loan_id = futures[future]
                try:
                    outcome, changed = future.result()
                except LoanServicingError as e:
                    result.failures[loan_id] = e.message
                    log_action(self.logger, "error", f"Daily update failed: {e.message}",
                               action="daily_update", resource=f"loan:{loan_id}",
                               extra=e.to_dict())
                    continue
                except Exception as e:
                    result.failures[loan_id] = str(e)
                    log_action(self.logger, "error", f"Daily update failed: {e}",
                               action="daily_update", resource=f"loan:{loan_id}",
                               extra={"error": type(e).__name__}, exc_info=True)
                    continue
                result.loans_processed += 1
                result.installments_updated += changed
                if outcome.was_reclassified:
                    result.reclassified.append((loan_id, outcome))

        log_action(
            self.logger, "info", "Daily delayed-days update complete",
            action="daily_update", resource=f"organization:{organization_id}",
            extra={"as_of": as_of.isoformat(), "loans_processed": result.loans_processed,
                   "installments_updated": result.installments_updated,
                   "reclassified": len(result.reclassified), "failures": len(result.failures)}
        )
        return result

    def classification_history(self, organization_id: str, loan_id: str) -> List[ClassificationRecord]:
        self.loans.get(loan_id, organization_id)
        return self.classifications.history(loan_id)

    def list_classifications(self, organization_id: str) -> List[Dict[str, Any]]:
        """Current classification of every loan of an organization"""
        summaries = []
        for loan in self.loans.list_for_organization(organization_id):
            record = (self.classifications.get(loan.latest_classification_id)
                      if loan.latest_classification_id else None)
            summaries.append({
                'loanId': loan.id,
                'borrowerId': loan.borrower_id,
                'state': loan.state.value,
                'status': loan.status.value,
                'daysInArrears': loan.days_in_arrears,
                'classificationDate': record.classification_date.isoformat() if record else None,
                'provisioningRate': str(self.policy.rate_for(loan.status)),
                'netExposure': record.net_exposure.to_wire() if record else None,
                'provisionRequired': record.provision_required.to_wire() if record else None,
            })
        return summaries

    def provisioning_report(self, organization_id: str,
                            as_of: Optional[date] = None) -> List[ProvisioningReport]:
        """Provisioning summary, one report per currency held by the organization"""
        as_of = as_of or date.today()
        loans = self.loans.list_for_organization(organization_id)
        currencies = sorted({loan.currency for loan in loans}, key=lambda c: c.code)
        return [build_provisioning_report(loans, self.policy, currency, as_of)
                for currency in currencies]

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def delayed_days_report(self, organization_id: str, days_threshold: int = 0,
                            as_of: Optional[date] = None) -> Dict[str, Any]:
        """Installments delayed by more than days_threshold across the organization"""
        as_of = as_of or date.today()
        entries = []
        for loan in self.loans.list_for_organization(organization_id):
            rows = self.schedules.get_schedule(loan.id)
            refresh_delays(rows, as_of)
            for row in rows:
                if row.delayed_days > days_threshold:
                    entries.append({
                        'loanId': loan.id,
                        'borrowerId': loan.borrower_id,
                        'installmentId': row.id,
                        'installmentNumber': row.installment_number,
                        'dueDate': row.due_date.isoformat(),
                        'delayedDays': row.delayed_days,
                        'isPaid': row.is_paid,
                        'paymentStatus': row.payment_status.value,
                        'remainingAmount': row.remaining_amount.to_wire(),
                        'currency': loan.currency.code,
                    })
        entries.sort(key=lambda e: (-e['delayedDays'], e['loanId'], e['installmentNumber']))
        delays = [e['delayedDays'] for e in entries]
        return {
            'asOf': as_of.isoformat(),
            'daysThreshold': days_threshold,
            'installments': entries,
            'totalInstallments': len(entries),
            'loansAffected': len({e['loanId'] for e in entries}),
            'averageDelayedDays': str((Decimal(sum(delays)) / Decimal(len(delays))).quantize(Decimal('0.01')))
                                  if delays else "0.00",
            'maxDelayedDays': max(delays, default=0),
        }

    def payment_summary(self, organization_id: str, loan_id: str) -> Dict[str, Any]:
        """Totals paid by component and delay statistics for one loan"""
        loan = self.loans.get(loan_id, organization_id)
        payments = [t for t in self.ledger.list_for_loan(loan_id)
                    if t.kind == TransactionKind.PAYMENT and not t.is_reversed]
        zero = Money.zero(loan.currency)
        rows = self.schedules.get_schedule(loan_id)
        delays = [r.delayed_days for r in rows]
        delayed_rows = [r for r in rows if r.delayed_days > 0]

        return {
            'loanId': loan_id,
            'paymentCount': len(payments),
            'totalPaid': sum((t.amount for t in payments), zero).to_wire(),
            'principalPaid': sum((t.principal_paid for t in payments), zero).to_wire(),
            'interestPaid': sum((t.interest_paid for t in payments), zero).to_wire(),
            'penaltyPaid': sum((t.penalty_paid for t in payments), zero).to_wire(),
            'excessPaid': sum((t.excess_amount for t in payments), zero).to_wire(),
            'remainingBalance': loan.total_outstanding.to_wire(),
            'totalDelayedDays': sum(delays),
            'averageDelayedDays': str((Decimal(sum(delays)) / Decimal(len(delays))).quantize(Decimal('0.01')))
                                  if delays else "0.00",
            'maxDelayedDays': max(delays, default=0),
            'installmentsWithDelays': len(delayed_rows),
            'lastPaymentDate': loan.last_payment_date.isoformat() if loan.last_payment_date else None,
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _validated_money(self, value, currency: Currency, label: str, allow_zero: bool = False) -> Money:
        try:
            amount = decimal_from_string(value)
        except ValueError as e:
            raise InvalidAmount(f"{label}: {e}", value=value)
        if amount < Decimal('0') or (amount == Decimal('0') and not allow_zero):
            raise InvalidAmount(f"{label} must be positive", value=amount)
        if not is_representable(amount, currency):
            raise InvalidAmount(f"{label} has more precision than {currency.code} allows",
                                value=amount, precision=currency.precision)
        return Money(amount, currency)

    def _record_classification(self, loan: LoanAccount, outcome: ClassificationOutcome,
                               user_id: Optional[str] = None) -> None:
        """Append the record and point the loan at it; caller holds storage.atomic()"""
        record = outcome.record
        self.classifications.append(record)
        loan.status = outcome.new_status
        loan.days_in_arrears = outcome.days_overdue
        loan.latest_classification_id = record.id
        loan.last_classified_on = record.classification_date
        if outcome.was_reclassified:
            self._audit(AuditEventType.LOAN_RECLASSIFIED, loan.id, {
                "previous_status": outcome.previous_status,
                "new_status": outcome.new_status,
                "days_in_arrears": outcome.days_overdue,
                "trigger": record.trigger,
                "provision_required": record.provision_required.to_string(),
            }, user_id=user_id)
            log_action(
                self.logger, "warning" if outcome.new_status.severity > outcome.previous_status.severity
                else "info",
                f"Loan reclassified {outcome.previous_status.value} -> {outcome.new_status.value}",
                user_id=user_id, action="reclassify_loan", resource=f"loan:{loan.id}",
                extra={"days_in_arrears": outcome.days_overdue, "trigger": record.trigger.value}
            )

    def _audit(self, event_type: AuditEventType, loan_id: str, metadata: Dict[str, Any],
               user_id: Optional[str] = None) -> None:
        if self.audit_trail is not None:
            self.audit_trail.log_event(event_type, "loan", loan_id, metadata, user_id=user_id)

    def _publish(self, event_type: DomainEvent, loan: LoanAccount, data: Dict[str, Any]) -> None:
        if not self.config.enable_events:
            return
        payload = dict(data)
        payload.setdefault("organization_id", loan.organization_id)
        payload.setdefault("status", loan.status.value)
        self.dispatcher.publish(EventPayload(
            event_type=event_type,
            entity_type="loan",
            entity_id=loan.id,
            data=payload,
        ))

    def _publish_classification(self, loan: LoanAccount, outcome: ClassificationOutcome) -> None:
        if outcome.was_reclassified:
            self._publish(DomainEvent.LOAN_RECLASSIFIED, loan, {
                "previous_status": outcome.previous_status.value,
                "new_status": outcome.new_status.value,
                "days_in_arrears": outcome.days_overdue,
                "trigger": outcome.record.trigger.value,
            })
