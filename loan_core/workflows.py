"""
Approval Workflow Module

Approve or reject a receiving loan. Approval takes the borrowed principal
into a bank account: the credit entry, the balance change and the status
flip commit together or not at all.
"""

from datetime import datetime, timezone
from typing import Optional

from .accounts import BankAccountManager
from .audit import AuditEventType
from .concurrency import loan_key, account_key
from .events import DomainEvent
from .exceptions import InvalidTransition, ValidationError
from .ledger import TransactionKind, TransactionCategory
from .loans import LoanManager, Loan, LoanDirection, LoanEvent


class ApprovalWorkflow:
    """Pending -> Active (approve) and Pending -> Rejected (reject)"""

    def __init__(self, loan_manager: LoanManager, accounts: BankAccountManager):
        self.loan_manager = loan_manager
        self.accounts = accounts
        self.storage = loan_manager.storage
        self.ledger = loan_manager.ledger
        self.locks = loan_manager.locks
        self.state_machine = loan_manager.state_machine

    def approve(
        self,
        loan_id: str,
        target_account_id: str,
        approved_by: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Loan:
        """
        Approve a pending receiving loan into target_account_id

        Raises:
            LoanNotFound: If the loan does not exist
            InvalidTransition: If the loan is not a Pending receiving loan
            AccountNotFound: If target_account_id does not resolve
        """
        with self.locks.lock_many([loan_key(loan_id), account_key(target_account_id)]):
            with self.storage.atomic():
                loan = self.loan_manager.loans.get(loan_id)
                if loan.direction != LoanDirection.RECEIVING:
                    raise InvalidTransition(f"Only receiving loans go through approval, {loan.loan_number} is giving")
                new_status = self.state_machine.transition(loan.status, LoanEvent.APPROVE)
                account = self.accounts.get_account(target_account_id)

                transaction = self.ledger.record(
                    loan_id=loan.id,
                    kind=TransactionKind.CREDIT,
                    category=TransactionCategory.DISBURSEMENT,
                    amount=loan.total_amount,
                    bank_account_id=account.id,
                    description=f"Principal received for loan {loan.loan_number}",
                    performed_by=approved_by,
                    branch_id=loan.branch_id
                )
                self.accounts.apply_balance_delta(
                    account.id, loan.total_amount, f"Approval of loan {loan.loan_number}",
                    performed_by=approved_by, loan_id=loan.id
                )

                loan.status = new_status
                loan.approved_by = approved_by
                loan.approved_by_name = self.loan_manager.display_name(approved_by)
                loan.approved_at = datetime.now(timezone.utc)
                if notes is not None:
                    loan.notes = notes
                self.loan_manager.loans.save(loan)

                self.loan_manager.after_commit(
                    loan, AuditEventType.LOAN_APPROVED, DomainEvent.LOAN_APPROVED, "approve_loan",
                    user_id=approved_by,
                    metadata={"target_account_id": account.id, "transaction_id": transaction.id}
                )

        return loan

    def reject(
        self,
        loan_id: str,
        rejection_reason: str,
        rejected_by: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Loan:
        """
        Reject a pending loan; no ledger entry is written

        Raises:
            ValidationError: If rejection_reason is blank
            LoanNotFound: If the loan does not exist
            InvalidTransition: If the loan is not Pending
        """
        if not rejection_reason or not rejection_reason.strip():
            raise ValidationError("A rejection reason is required")

        with self.locks.lock(loan_key(loan_id)):
            with self.storage.atomic():
                loan = self.loan_manager.loans.get(loan_id)
                loan.status = self.state_machine.transition(loan.status, LoanEvent.REJECT)
                loan.rejection_reason = rejection_reason.strip()
                loan.rejected_by = rejected_by
                loan.rejected_by_name = self.loan_manager.display_name(rejected_by)
                loan.rejected_at = datetime.now(timezone.utc)
                if notes is not None:
                    loan.notes = notes
                self.loan_manager.loans.save(loan)

                self.loan_manager.after_commit(
                    loan, AuditEventType.LOAN_REJECTED, DomainEvent.LOAN_REJECTED, "reject_loan",
                    user_id=rejected_by, metadata={"rejection_reason": loan.rejection_reason}
                )

        return loan
