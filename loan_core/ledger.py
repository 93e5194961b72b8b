"""
Ledger Module

Append-only record of every financial movement tied to a loan. Entries are
never edited or removed; a correction is a new reversal entry pointing at
the entry it cancels. Loan totals shown anywhere in the system are derived
from here.

Ordering is by an insertion sequence rather than wall-clock time, so two
entries written within the same clock tick still list deterministically.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import threading
import uuid

from .amounts import ZERO, require_positive, format_amount
from .audit import AuditTrail, AuditEventType
from .concurrency import LockManager, loan_key
from .events import EventDispatcher, EventPayload, DomainEvent, loan_invalidation_keys
from .exceptions import DuplicateTransaction, InvalidTransition, TransactionNotFound
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


logger = get_logger("loan_core.ledger")


class TransactionKind(Enum):
    """Direction of money relative to the organization"""
    DEBIT = "debit"      # money leaving
    CREDIT = "credit"    # money entering

    @property
    def opposite(self) -> 'TransactionKind':
        return TransactionKind.CREDIT if self == TransactionKind.DEBIT else TransactionKind.DEBIT


class TransactionCategory(Enum):
    """What a ledger entry represents"""
    DISBURSEMENT = "disbursement"
    PAYMENT = "payment"
    REPAYMENT = "repayment"
    REVERSAL = "reversal"


@dataclass
class Transaction(StorageRecord):
    """Immutable ledger entry"""
    loan_id: str
    kind: TransactionKind
    category: TransactionCategory
    amount: Decimal
    sequence: int
    bank_account_id: Optional[str] = None
    description: str = ""
    reference: Optional[str] = None
    performed_by: Optional[str] = None
    idempotency_key: Optional[str] = None
    reverses: Optional[str] = None

    @property
    def is_reversal(self) -> bool:
        return self.category == TransactionCategory.REVERSAL

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['kind'] = self.kind.value
        result['category'] = self.category.value
        result['amount'] = str(self.amount)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['kind'] = TransactionKind(data['kind'])
        data['category'] = TransactionCategory(data['category'])
        data['amount'] = Decimal(data['amount'])
        return cls(**data)

    def to_response(self, precision: int = 2) -> Dict[str, Any]:
        """Serialized form returned by the API"""
        return {
            'id': self.id,
            'loan_id': self.loan_id,
            'kind': self.kind.value,
            'category': self.category.value,
            'amount': format_amount(self.amount, precision),
            'sequence': self.sequence,
            'bank_account_id': self.bank_account_id,
            'description': self.description,
            'reference': self.reference,
            'performed_by': self.performed_by,
            'idempotency_key': self.idempotency_key,
            'reverses': self.reverses,
            'created_at': self.created_at.isoformat()
        }


@dataclass
class TransactionSummary:
    """Per-loan ledger summary attached to loan detail responses"""
    count: int
    total_paid: Decimal        # sum of debits
    total_received: Decimal    # sum of credits
    transactions: List[Transaction] = field(default_factory=list)

    def to_dict(self, precision: int = 2) -> Dict[str, Any]:
        return {
            'count': self.count,
            'totalPaid': format_amount(self.total_paid, precision),
            'totalReceived': format_amount(self.total_received, precision),
            'transactions': [t.to_response(precision) for t in self.transactions]
        }


def debit_total(transactions: List[Transaction]) -> Decimal:
    return sum((t.amount for t in transactions if t.kind == TransactionKind.DEBIT), ZERO)


def credit_total(transactions: List[Transaction]) -> Decimal:
    return sum((t.amount for t in transactions if t.kind == TransactionKind.CREDIT), ZERO)


def net_by_category(transactions: List[Transaction]) -> Dict[TransactionCategory, Decimal]:
    """
    Sum amounts per category with reversals netted out

    A reversal subtracts from the category of the entry it reverses, so the
    result reflects what actually stands after corrections.
    """
    by_id = {t.id: t for t in transactions}
    totals = {category: ZERO for category in TransactionCategory if category != TransactionCategory.REVERSAL}
    for t in transactions:
        if t.is_reversal:
            original = by_id.get(t.reverses)
            if original is not None:
                totals[original.category] -= t.amount
        else:
            totals[t.category] += t.amount
    return totals


class LedgerStore:
    """
    Append-only transaction ledger

    record() joins the caller's storage transaction when one is open, so a
    ledger entry commits or rolls back together with the loan change it
    explains.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        locks: LockManager,
        event_dispatcher: Optional[EventDispatcher] = None,
        precision: int = 2
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.locks = locks
        self._event_dispatcher = event_dispatcher
        self.precision = precision
        self.transactions_table = "transactions"

        self._sequence_lock = threading.Lock()
        self._sequence = max(
            (data.get('sequence', 0) for data in self.storage.load_all(self.transactions_table)),
            default=0
        )

    def _next_sequence(self) -> int:
        with self._sequence_lock:
            self._sequence += 1
            return self._sequence

    def record(
        self,
        loan_id: str,
        kind: TransactionKind,
        category: TransactionCategory,
        amount: Any,
        bank_account_id: Optional[str] = None,
        description: str = "",
        reference: Optional[str] = None,
        performed_by: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        reverses: Optional[str] = None,
        branch_id: Optional[str] = None
    ) -> Transaction:
        """
        Append a transaction for a loan

        The caller must hold the loan lock so the idempotency check and the
        append cannot interleave with another writer on the same loan.

        Raises:
            InvalidAmount: If amount is not positive
            DuplicateTransaction: If idempotency_key was already used for the loan
        """
        amount = require_positive(amount, self.precision)

        if idempotency_key and self.find_by_idempotency_key(loan_id, idempotency_key):
            raise DuplicateTransaction(
                f"Idempotency key {idempotency_key} already used for loan {loan_id}"
            )

        now = datetime.now(timezone.utc)
        transaction = Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            kind=kind,
            category=category,
            amount=amount,
            sequence=self._next_sequence(),
            bank_account_id=bank_account_id,
            description=description,
            reference=reference,
            performed_by=performed_by,
            idempotency_key=idempotency_key,
            reverses=reverses
        )

        with self.storage.atomic():
            self.storage.save(self.transactions_table, transaction.id, transaction.to_dict())
            self.storage.on_commit(lambda: self._notify(transaction, branch_id))

        return transaction

    def _notify(self, transaction: Transaction, branch_id: Optional[str]) -> None:
        reversal = transaction.is_reversal
        self.audit_trail.log_event(
            event_type=AuditEventType.TRANSACTION_REVERSED if reversal else AuditEventType.TRANSACTION_RECORDED,
            entity_type="transaction",
            entity_id=transaction.id,
            metadata={
                "loan_id": transaction.loan_id,
                "kind": transaction.kind,
                "category": transaction.category,
                "amount": transaction.amount,
                "sequence": transaction.sequence,
                "bank_account_id": transaction.bank_account_id,
                "reverses": transaction.reverses
            },
            user_id=transaction.performed_by
        )
        if self._event_dispatcher:
            self._event_dispatcher.publish(EventPayload(
                event_type=DomainEvent.TRANSACTION_REVERSED if reversal else DomainEvent.TRANSACTION_RECORDED,
                entity_type="transaction",
                entity_id=transaction.id,
                data={
                    "loan_id": transaction.loan_id,
                    "kind": transaction.kind.value,
                    "category": transaction.category.value,
                    "amount": str(transaction.amount),
                    "sequence": transaction.sequence
                },
                invalidates=loan_invalidation_keys(transaction.loan_id, branch_id)
            ))
        log_action(
            logger, "info",
            f"{transaction.category.value} {transaction.kind.value} of {transaction.amount} "
            f"recorded for loan {transaction.loan_id}",
            user_id=transaction.performed_by,
            action="reverse_transaction" if reversal else "record_transaction",
            resource=f"loan:{transaction.loan_id}"
        )

    def reverse(
        self,
        transaction_id: str,
        performed_by: Optional[str] = None,
        reason: Optional[str] = None,
        branch_id: Optional[str] = None
    ) -> Transaction:
        """
        Append the mirror image of a transaction

        Only the ledger entry is written. Reversing a payment or repayment
        also changes the loan, so those go through
        PaymentRecorder.reverse_payment, which calls this inside its own
        transaction.

        Raises:
            TransactionNotFound: If the transaction does not exist
            InvalidTransition: If it is itself a reversal or was already reversed
        """
        original = self.get_transaction(transaction_id)

        with self.locks.lock(loan_key(original.loan_id)):
            with self.storage.atomic():
                if original.is_reversal:
                    raise InvalidTransition(f"Transaction {transaction_id} is a reversal and cannot be reversed")
                if self.find_reversal(transaction_id):
                    raise InvalidTransition(f"Transaction {transaction_id} has already been reversed")

                return self.record(
                    loan_id=original.loan_id,
                    kind=original.kind.opposite,
                    category=TransactionCategory.REVERSAL,
                    amount=original.amount,
                    bank_account_id=original.bank_account_id,
                    description=reason or f"Reversal of {original.category.value}",
                    reference=original.reference,
                    performed_by=performed_by,
                    reverses=original.id,
                    branch_id=branch_id
                )

    def get_transaction(self, transaction_id: str) -> Transaction:
        data = self.storage.load(self.transactions_table, transaction_id)
        if not data:
            raise TransactionNotFound(transaction_id)
        return Transaction.from_dict(data)

    def list_by_loan(self, loan_id: str) -> List[Transaction]:
        """Transactions of one loan in insertion order"""
        transactions = [
            Transaction.from_dict(data)
            for data in self.storage.find(self.transactions_table, {'loan_id': loan_id})
        ]
        transactions.sort(key=lambda t: t.sequence)
        return transactions

    def list_all(self) -> List[Transaction]:
        transactions = [Transaction.from_dict(data) for data in self.storage.load_all(self.transactions_table)]
        transactions.sort(key=lambda t: t.sequence)
        return transactions

    def find_by_idempotency_key(self, loan_id: str, idempotency_key: str) -> Optional[Transaction]:
        matches = self.storage.find(self.transactions_table, {
            'loan_id': loan_id,
            'idempotency_key': idempotency_key
        })
        if matches:
            return Transaction.from_dict(matches[0])
        return None

    def find_reversal(self, transaction_id: str) -> Optional[Transaction]:
        matches = self.storage.find(self.transactions_table, {'reverses': transaction_id})
        if matches:
            return Transaction.from_dict(matches[0])
        return None

    def has_transactions(self, loan_id: str) -> bool:
        return bool(self.storage.find(self.transactions_table, {'loan_id': loan_id}))

    def paid_total(self, loan_id: str) -> Decimal:
        """Payments and repayments on a loan, net of reversals"""
        totals = net_by_category(self.list_by_loan(loan_id))
        return totals[TransactionCategory.PAYMENT] + totals[TransactionCategory.REPAYMENT]

    def disbursed_total(self, loan_id: str) -> Decimal:
        """Principal moved at disbursement, net of reversals"""
        return net_by_category(self.list_by_loan(loan_id))[TransactionCategory.DISBURSEMENT]

    def summary(self, loan_id: str) -> TransactionSummary:
        transactions = self.list_by_loan(loan_id)
        return TransactionSummary(
            count=len(transactions),
            total_paid=debit_total(transactions),
            total_received=credit_total(transactions),
            transactions=transactions
        )
