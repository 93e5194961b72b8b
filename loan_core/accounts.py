"""
Bank Account Module

Bank accounts that loan disbursements, payments and repayments move money
through. Balances are adjusted only inside the same storage transaction as
the ledger entry that explains them, so an account never drifts from the
ledger of record.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
import uuid

from .amounts import ZERO, parse_amount, format_amount
from .audit import AuditTrail, AuditEventType
from .concurrency import LockManager, account_key
from .events import EventDispatcher, EventPayload, DomainEvent, account_key as account_cache_key
from .exceptions import AccountNotFound, InvalidAmount, ValidationError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


logger = get_logger("loan_core.accounts")


@dataclass
class BankAccount(StorageRecord):
    """Organization bank account with a running balance"""
    name: str
    balance: Decimal
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    allow_overdraft: bool = False
    created_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['balance'] = str(self.balance)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BankAccount':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            name=data['name'],
            balance=Decimal(data['balance']),
            bank_name=data.get('bank_name'),
            account_number=data.get('account_number'),
            allow_overdraft=data.get('allow_overdraft', False),
            created_by=data.get('created_by')
        )

    def to_response(self, precision: int = 2) -> Dict[str, Any]:
        """Serialized form returned by the API"""
        return {
            'id': self.id,
            'name': self.name,
            'bank_name': self.bank_name,
            'account_number': self.account_number,
            'balance': format_amount(self.balance, precision),
            'allow_overdraft': self.allow_overdraft,
            'created_by': self.created_by,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat()
        }


class BankAccountManager:
    """
    Bank account collaborator used by loan workflows

    apply_balance_delta joins the caller's open transaction; adjust_balance
    is the standalone entry point that opens its own.
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
        self.accounts_table = "bank_accounts"

    def create_account(
        self,
        name: str,
        bank_name: Optional[str] = None,
        account_number: Optional[str] = None,
        opening_balance: Any = "0",
        allow_overdraft: bool = False,
        created_by: Optional[str] = None
    ) -> BankAccount:
        """
        Open a bank account

        Raises:
            ValidationError: If name is blank
            InvalidAmount: If the opening balance is malformed, or negative
                on an account without overdraft
        """
        if not name or not name.strip():
            raise ValidationError("Bank account name is required")

        balance = parse_amount(opening_balance, self.precision)
        if balance < ZERO and not allow_overdraft:
            raise InvalidAmount(f"Opening balance cannot be negative, got {balance}")

        now = datetime.now(timezone.utc)
        account = BankAccount(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name.strip(),
            balance=balance,
            bank_name=bank_name,
            account_number=account_number,
            allow_overdraft=allow_overdraft,
            created_by=created_by
        )

        with self.storage.atomic():
            self.storage.save(self.accounts_table, account.id, account.to_dict())

            def notify():
                self.audit_trail.log_event(
                    event_type=AuditEventType.ACCOUNT_CREATED,
                    entity_type="bank_account",
                    entity_id=account.id,
                    metadata={
                        "name": account.name,
                        "opening_balance": account.balance
                    },
                    user_id=created_by
                )
                log_action(logger, "info", f"Bank account {account.name} created",
                           user_id=created_by, action="create_account",
                           resource=f"bank_account:{account.id}")

            self.storage.on_commit(notify)

        return account

    def get_account(self, account_id: str) -> BankAccount:
        """
        Get a bank account by ID

        Raises:
            AccountNotFound: If no such account exists
        """
        data = self.storage.load(self.accounts_table, account_id) if account_id else None
        if not data:
            raise AccountNotFound(account_id)
        return BankAccount.from_dict(data)

    def list_accounts(self) -> List[BankAccount]:
        """All bank accounts, oldest first"""
        accounts = [BankAccount.from_dict(data) for data in self.storage.load_all(self.accounts_table)]
        accounts.sort(key=lambda a: (a.created_at, a.id))
        return accounts

    def apply_balance_delta(
        self,
        account_id: str,
        delta: Decimal,
        reason: str,
        performed_by: Optional[str] = None,
        loan_id: Optional[str] = None
    ) -> BankAccount:
        """
        Move an account balance inside the caller's transaction

        The caller must hold the account lock. The audit record and event are
        deferred until the surrounding transaction commits.

        Raises:
            AccountNotFound: If no such account exists
            InvalidAmount: If the balance would go negative without overdraft
        """
        account = self.get_account(account_id)
        new_balance = account.balance + delta
        if new_balance < ZERO and not account.allow_overdraft:
            raise InvalidAmount(
                f"Insufficient balance in account {account.name}: "
                f"{format_amount(account.balance, self.precision)} available, "
                f"{format_amount(-delta, self.precision)} required"
            )

        previous_balance = account.balance
        account.balance = new_balance
        account.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.accounts_table, account.id, account.to_dict())

        def notify():
            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_BALANCE_ADJUSTED,
                entity_type="bank_account",
                entity_id=account.id,
                metadata={
                    "previous_balance": previous_balance,
                    "delta": delta,
                    "new_balance": new_balance,
                    "reason": reason,
                    "loan_id": loan_id
                },
                user_id=performed_by
            )
            if self._event_dispatcher:
                self._event_dispatcher.publish(EventPayload(
                    event_type=DomainEvent.ACCOUNT_BALANCE_ADJUSTED,
                    entity_type="bank_account",
                    entity_id=account.id,
                    data={
                        "delta": str(delta),
                        "balance": str(new_balance),
                        "reason": reason,
                        "loan_id": loan_id
                    },
                    invalidates=[account_cache_key(account.id)]
                ))
            log_action(logger, "info", f"Balance of {account.name} adjusted by {delta}",
                       user_id=performed_by, action="adjust_balance",
                       resource=f"bank_account:{account.id}",
                       extra={"reason": reason, "loan_id": loan_id})

        self.storage.on_commit(notify)
        return account

    def adjust_balance(
        self,
        account_id: str,
        delta: Any,
        reason: str = "manual adjustment",
        performed_by: Optional[str] = None
    ) -> BankAccount:
        """Adjust a balance in a transaction of its own"""
        amount = parse_amount(delta, self.precision)
        if amount == ZERO:
            raise InvalidAmount("Balance adjustment must be non-zero")

        with self.locks.lock(account_key(account_id)):
            with self.storage.atomic():
                return self.apply_balance_delta(account_id, amount, reason, performed_by)
