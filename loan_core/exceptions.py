"""
Error Taxonomy

Typed failures returned by every public loan core operation. All errors
derive from ValueError so callers treating bad input generically keep working.
"""


class LoanCoreError(ValueError):
    """Base exception for all loan core errors."""
    
    code = "loan_core_error"
    http_status = 400
    retryable = False


class NotFound(LoanCoreError):
    """Raised when a referenced entity does not exist."""
    
    code = "not_found"
    http_status = 404


class LoanNotFound(NotFound):
    """Raised when a loan id does not resolve."""
    
    def __init__(self, loan_id: str):
        super().__init__(f"Loan {loan_id} not found")
        self.loan_id = loan_id


class AccountNotFound(NotFound):
    """Raised when a bank account id does not resolve."""
    
    def __init__(self, account_id: str):
        super().__init__(f"Bank account {account_id} not found")
        self.account_id = account_id


class TransactionNotFound(NotFound):
    """Raised when a ledger transaction id does not resolve."""
    
    def __init__(self, transaction_id: str):
        super().__init__(f"Transaction {transaction_id} not found")
        self.transaction_id = transaction_id


class InvalidTransition(LoanCoreError):
    """Raised when a status or direction rule is violated."""
    
    code = "invalid_transition"
    http_status = 409


class ImmutableFieldViolation(LoanCoreError):
    """Raised on an attempt to change a field fixed at creation."""
    
    code = "immutable_field"
    http_status = 422


class InvalidAmount(LoanCoreError):
    """Raised for zero, negative or malformed amounts."""
    
    code = "invalid_amount"
    http_status = 422


class OverpaymentRejected(LoanCoreError):
    """Raised when a payment would push paid amount above the principal."""
    
    code = "overpayment_rejected"
    http_status = 422


class DuplicateTransaction(LoanCoreError):
    """Raised when an idempotency key was already used for the loan."""
    
    code = "duplicate_transaction"
    http_status = 409


class HasTransactions(LoanCoreError):
    """Raised when deleting a loan that the ledger still references."""
    
    code = "has_transactions"
    http_status = 409


class ConcurrencyConflict(LoanCoreError):
    """Raised when a write was based on a stale loan version. Safe to retry."""
    
    code = "concurrency_conflict"
    http_status = 409
    retryable = True


class ValidationError(LoanCoreError):
    """Raised for malformed requests (missing name, unknown status, bad filters)."""
    
    code = "validation_error"
    http_status = 422
