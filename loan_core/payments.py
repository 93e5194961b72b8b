"""
Payment Recorder Module

Money flowing back against a loan's principal. A borrower paying a giving
loan is a credit; the organization repaying a lender on a receiving loan is
a debit. Either way paid_amount grows and the loan completes when nothing
is left due. A bounced payment is cancelled with reverse_payment, which
appends a reversal entry and takes the amount back off paid_amount.
"""

from typing import Any, Optional

from .accounts import BankAccountManager
from .audit import AuditEventType
from .concurrency import loan_key, account_key
from .events import DomainEvent
from .exceptions import DuplicateTransaction, InvalidTransition, OverpaymentRejected
from .amounts import require_positive
from .ledger import TransactionKind, TransactionCategory
from .loans import LoanManager, Loan, LoanDirection, LoanStatus


# Ledger entries whose reversal feeds back into paid_amount
REVERSIBLE_CATEGORIES = (TransactionCategory.PAYMENT, TransactionCategory.REPAYMENT)


class PaymentRecorder:
    """
    Records payments (giving loans) and repayments (receiving loans)

    Checks run in a fixed order: amount, direction, idempotency key,
    overpayment, then loan status.
    """

    def __init__(self, loan_manager: LoanManager, accounts: BankAccountManager):
        self.loan_manager = loan_manager
        self.accounts = accounts
        self.storage = loan_manager.storage
        self.ledger = loan_manager.ledger
        self.locks = loan_manager.locks
        self.state_machine = loan_manager.state_machine

    def record_payment(self, loan_id: str, amount: Any, **metadata) -> Loan:
        """Borrower pays back a giving loan"""
        return self._record(loan_id, amount, LoanDirection.GIVING, **metadata)

    def record_repayment(self, loan_id: str, amount: Any, **metadata) -> Loan:
        """Organization pays back the lender of a receiving loan"""
        return self._record(loan_id, amount, LoanDirection.RECEIVING, **metadata)

    def _record(
        self,
        loan_id: str,
        amount: Any,
        direction: LoanDirection,
        bank_account_id: Optional[str] = None,
        performed_by: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        reference: Optional[str] = None,
        description: Optional[str] = None,
        allow_overpayment: Optional[bool] = None
    ) -> Loan:
        """
        Raises:
            InvalidAmount: If amount is not positive
            LoanNotFound: If the loan does not exist
            InvalidTransition: Wrong direction or loan not Active/Overdue
            DuplicateTransaction: If idempotency_key was already used
            OverpaymentRejected: If paid amount would exceed the principal
            AccountNotFound: If bank_account_id does not resolve
        """
        config = self.loan_manager.config
        amount = require_positive(amount, config.amount_precision)
        if allow_overpayment is None:
            allow_overpayment = config.allow_overpayment

        if direction == LoanDirection.GIVING:
            kind, category = TransactionKind.CREDIT, TransactionCategory.PAYMENT
            action, label = "record_payment", "Payment"
            audit_event, domain_event = AuditEventType.LOAN_PAYMENT_RECORDED, DomainEvent.LOAN_PAYMENT_RECORDED
            delta = amount
        else:
            kind, category = TransactionKind.DEBIT, TransactionCategory.REPAYMENT
            action, label = "record_repayment", "Repayment"
            audit_event, domain_event = AuditEventType.LOAN_REPAYMENT_RECORDED, DomainEvent.LOAN_REPAYMENT_RECORDED
            delta = -amount

        keys = [loan_key(loan_id)]
        if bank_account_id:
            keys.append(account_key(bank_account_id))

        with self.locks.lock_many(keys):
            with self.storage.atomic():
                loan = self.loan_manager.loans.get(loan_id)
                if loan.direction != direction:
                    raise InvalidTransition(
                        f"{label}s apply to {direction.value} loans, {loan.loan_number} is {loan.direction.value}"
                    )
                if idempotency_key and self.ledger.find_by_idempotency_key(loan.id, idempotency_key):
                    raise DuplicateTransaction(
                        f"Idempotency key {idempotency_key} already used for loan {loan.loan_number}"
                    )
                new_paid = loan.paid_amount + amount
                if new_paid > loan.total_amount and not allow_overpayment:
                    raise OverpaymentRejected(
                        f"{label} of {amount} exceeds the {loan.due_amount} due on loan {loan.loan_number}"
                    )
                previous_status = loan.status
                if previous_status not in (LoanStatus.ACTIVE, LoanStatus.OVERDUE):
                    raise InvalidTransition(
                        f"Cannot record a {label.lower()} on loan {loan.loan_number} in status {previous_status.value}"
                    )

                transaction = self.ledger.record(
                    loan_id=loan.id,
                    kind=kind,
                    category=category,
                    amount=amount,
                    bank_account_id=bank_account_id,
                    description=description or f"{label} for loan {loan.loan_number}",
                    reference=reference,
                    performed_by=performed_by,
                    idempotency_key=idempotency_key,
                    branch_id=loan.branch_id
                )
                if bank_account_id:
                    self.accounts.apply_balance_delta(
                        bank_account_id, delta, f"{label} for loan {loan.loan_number}",
                        performed_by=performed_by, loan_id=loan.id
                    )

                loan.paid_amount = new_paid
                loan.status = self.state_machine.after_payment(loan)
                self.loan_manager.loans.save(loan)

                self.loan_manager.after_commit(
                    loan, audit_event, domain_event, action, user_id=performed_by,
                    metadata={"amount": amount, "transaction_id": transaction.id}
                )
                if loan.status == LoanStatus.COMPLETED:
                    self.loan_manager.after_commit(
                        loan, AuditEventType.LOAN_COMPLETED, DomainEvent.LOAN_COMPLETED, "complete_loan",
                        user_id=performed_by, metadata={"previous_status": previous_status.value}
                    )

        return loan

    def reverse_payment(
        self,
        loan_id: str,
        transaction_id: str,
        performed_by: Optional[str] = None,
        reason: Optional[str] = None
    ) -> Loan:
        """
        Cancel a payment or repayment with a reversal entry

        This is the only write that lowers paid_amount. The reversal entry,
        the loan and any bank account touched by the original move together,
        so the ledger keeps reproducing paid_amount. A Completed loan that
        owes money again goes back to Active.

        Raises:
            LoanNotFound: If the loan does not exist
            TransactionNotFound: If the transaction does not exist
            InvalidTransition: Entry belongs to another loan, is not a payment
                or repayment, or was already reversed
            InvalidAmount: If the bank account cannot absorb the refund
        """
        original = self.ledger.get_transaction(transaction_id)

        keys = [loan_key(loan_id)]
        if original.bank_account_id:
            keys.append(account_key(original.bank_account_id))

        with self.locks.lock_many(keys):
            with self.storage.atomic():
                loan = self.loan_manager.loans.get(loan_id)
                if original.loan_id != loan.id:
                    raise InvalidTransition(
                        f"Transaction {transaction_id} does not belong to loan {loan.loan_number}"
                    )
                if original.category not in REVERSIBLE_CATEGORIES:
                    raise InvalidTransition(
                        f"Only payments and repayments can be reversed, {transaction_id} "
                        f"is a {original.category.value}"
                    )
                previous_status = loan.status
                loan.paid_amount = loan.paid_amount - original.amount
                loan.status = self.state_machine.after_reversal(loan)

                reversal = self.ledger.reverse(
                    original.id, performed_by=performed_by, reason=reason, branch_id=loan.branch_id
                )
                if original.bank_account_id:
                    # undo the balance change made when the money moved
                    delta = original.amount if original.kind == TransactionKind.DEBIT else -original.amount
                    self.accounts.apply_balance_delta(
                        original.bank_account_id, delta, f"Reversal for loan {loan.loan_number}",
                        performed_by=performed_by, loan_id=loan.id
                    )

                self.loan_manager.loans.save(loan)
                self.loan_manager.after_commit(
                    loan, AuditEventType.LOAN_PAYMENT_REVERSED, DomainEvent.LOAN_PAYMENT_REVERSED,
                    "reverse_payment", user_id=performed_by,
                    metadata={
                        "amount": original.amount,
                        "transaction_id": reversal.id,
                        "reverses": original.id,
                        "previous_status": previous_status.value
                    }
                )

        return loan
