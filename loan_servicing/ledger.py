"""
Transaction Ledger Module

Append-only record of payments and their compensating reversals. Every entry
carries a per-loan commit sequence; ledger order is commit order, not payment
date. The only change ever made to a stored entry is flagging it reversed.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .schedule import ScheduleDelta
from .allocation import DelayInfo
from .errors import TransactionNotFound, NotReversible


class TransactionKind(Enum):
    PAYMENT = "payment"
    REVERSAL = "reversal"


class PaymentMethod(Enum):
    """How the cash was received"""
    CASH = "CASH"
    BANK_TRANSFER = "BANK_TRANSFER"
    MOBILE_MONEY = "MOBILE_MONEY"
    CHEQUE = "CHEQUE"
    OTHER = "OTHER"


@dataclass
class PaymentTransaction(StorageRecord):
    """Ledger entry for one payment or reversal"""
    loan_id: str
    organization_id: str
    sequence: int
    kind: TransactionKind
    amount: Money
    payment_date: date
    method: PaymentMethod
    received_by: str
    principal_paid: Money
    interest_paid: Money
    penalty_paid: Money
    excess_amount: Money
    approved_by: Optional[str] = None
    notes: Optional[str] = None
    target_installment_id: Optional[str] = None
    deltas: List[ScheduleDelta] = field(default_factory=list)
    delay_info: List[DelayInfo] = field(default_factory=list)
    classification_before: Optional[Dict[str, Any]] = None

    # Reversal bookkeeping
    is_reversed: bool = False
    reversal_reason: Optional[str] = None
    reversed_by_transaction_id: Optional[str] = None
    reversed_at: Optional[datetime] = None
    reverses_transaction_id: Optional[str] = None

    @property
    def currency(self) -> Currency:
        return self.amount.currency

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'organization_id': self.organization_id,
            'sequence': self.sequence,
            'kind': self.kind.value,
            'currency': self.currency.code,
            'amount': str(self.amount.amount),
            'payment_date': self.payment_date.isoformat(),
            'method': self.method.value,
            'received_by': self.received_by,
            'approved_by': self.approved_by,
            'notes': self.notes,
            'principal_paid': str(self.principal_paid.amount),
            'interest_paid': str(self.interest_paid.amount),
            'penalty_paid': str(self.penalty_paid.amount),
            'excess_amount': str(self.excess_amount.amount),
            'target_installment_id': self.target_installment_id,
            'deltas': [delta.to_dict() for delta in self.deltas],
            'delay_info': [info.to_dict() for info in self.delay_info],
            'classification_before': self.classification_before,
            'is_reversed': self.is_reversed,
            'reversal_reason': self.reversal_reason,
            'reversed_by_transaction_id': self.reversed_by_transaction_id,
            'reversed_at': self.reversed_at.isoformat() if self.reversed_at else None,
            'reverses_transaction_id': self.reverses_transaction_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentTransaction':
        currency = Currency[data['currency']]

        def money(key: str) -> Money:
            return Money(Decimal(data[key]), currency)

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            organization_id=data['organization_id'],
            sequence=data['sequence'],
            kind=TransactionKind(data['kind']),
            amount=money('amount'),
            payment_date=date.fromisoformat(data['payment_date']),
            method=PaymentMethod(data['method']),
            received_by=data['received_by'],
            approved_by=data.get('approved_by'),
            notes=data.get('notes'),
            principal_paid=money('principal_paid'),
            interest_paid=money('interest_paid'),
            penalty_paid=money('penalty_paid'),
            excess_amount=money('excess_amount'),
            target_installment_id=data.get('target_installment_id'),
            deltas=[ScheduleDelta.from_dict(d) for d in data.get('deltas', [])],
            delay_info=[DelayInfo.from_dict(d) for d in data.get('delay_info', [])],
            classification_before=data.get('classification_before'),
            is_reversed=data.get('is_reversed', False),
            reversal_reason=data.get('reversal_reason'),
            reversed_by_transaction_id=data.get('reversed_by_transaction_id'),
            reversed_at=datetime.fromisoformat(data['reversed_at']) if data.get('reversed_at') else None,
            reverses_transaction_id=data.get('reverses_transaction_id'),
        )

    def to_wire(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'loanId': self.loan_id,
            'sequence': self.sequence,
            'kind': self.kind.value,
            'amount': self.amount.to_wire(),
            'currency': self.currency.code,
            'paymentDate': self.payment_date.isoformat(),
            'method': self.method.value,
            'receivedBy': self.received_by,
            'approvedBy': self.approved_by,
            'notes': self.notes,
            'principalPaid': self.principal_paid.to_wire(),
            'interestPaid': self.interest_paid.to_wire(),
            'penaltyPaid': self.penalty_paid.to_wire(),
            'excessAmount': self.excess_amount.to_wire(),
            'targetInstallmentId': self.target_installment_id,
            'delayInfo': [info.to_wire() for info in self.delay_info],
            'isReversed': self.is_reversed,
            'reversalReason': self.reversal_reason,
            'reversedByTransactionId': self.reversed_by_transaction_id,
            'reversesTransactionId': self.reverses_transaction_id,
            'createdAt': self.created_at.isoformat(),
        }


class TransactionLedger:
    """Append-only ledger of payment transactions"""

    def __init__(self, storage: StorageInterface, table_name: str = "payment_transactions"):
        self.storage = storage
        self.table_name = table_name

    def next_sequence(self, loan_id: str) -> int:
        entries = self.storage.find(self.table_name, {'loan_id': loan_id})
        return max((e['sequence'] for e in entries), default=0) + 1

    def append(self, transaction: PaymentTransaction) -> PaymentTransaction:
        if self.storage.exists(self.table_name, transaction.id):
            raise ValueError(f"Transaction {transaction.id} already recorded")
        self.storage.save(self.table_name, transaction.id, transaction.to_dict())
        return transaction

    def get(self, transaction_id: str) -> PaymentTransaction:
        data = self.storage.load(self.table_name, transaction_id)
        if not data:
            raise TransactionNotFound(transaction_id)
        return PaymentTransaction.from_dict(data)

    def list_for_loan(self, loan_id: str) -> List[PaymentTransaction]:
        """Entries for a loan in commit order"""
        transactions = [PaymentTransaction.from_dict(data)
                        for data in self.storage.find(self.table_name, {'loan_id': loan_id})]
        transactions.sort(key=lambda t: t.sequence)
        return transactions

    def check_reversible(self, transaction: PaymentTransaction) -> None:
        if transaction.kind == TransactionKind.REVERSAL:
            raise NotReversible("A reversal cannot itself be reversed",
                                transaction_id=transaction.id,
                                reverses_transaction_id=transaction.reverses_transaction_id)
        if transaction.is_reversed:
            raise NotReversible("Transaction is already reversed",
                                transaction_id=transaction.id,
                                reversed_by_transaction_id=transaction.reversed_by_transaction_id)

    def mark_reversed(self, transaction: PaymentTransaction, reversal: PaymentTransaction,
                      reason: str) -> PaymentTransaction:
        now = datetime.now(timezone.utc)
        transaction.is_reversed = True
        transaction.reversal_reason = reason
        transaction.reversed_by_transaction_id = reversal.id
        transaction.reversed_at = now
        transaction.updated_at = now
        self.storage.save(self.table_name, transaction.id, transaction.to_dict())
        return transaction

    def build_reversal(self, original: PaymentTransaction, reason: str, sequence: int,
                       reversal_id: str, reversed_by: Optional[str] = None) -> PaymentTransaction:
        """Compensating entry mirroring the original's breakdown"""
        now = datetime.now(timezone.utc)
        return PaymentTransaction(
            id=reversal_id,
            created_at=now,
            updated_at=now,
            loan_id=original.loan_id,
            organization_id=original.organization_id,
            sequence=sequence,
            kind=TransactionKind.REVERSAL,
            amount=original.amount,
            payment_date=original.payment_date,
            method=original.method,
            received_by=reversed_by or original.received_by,
            approved_by=reversed_by,
            notes=reason,
            principal_paid=original.principal_paid,
            interest_paid=original.interest_paid,
            penalty_paid=original.penalty_paid,
            excess_amount=original.excess_amount,
            target_installment_id=original.target_installment_id,
            deltas=list(original.deltas),
            reversal_reason=reason,
            reverses_transaction_id=original.id,
        )
