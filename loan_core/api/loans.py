"""
Loan endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, Query, status

from .dependencies import LoanSystem, get_loan_system
from .schemas import (
    CreateLoanRequest, UpdateLoanRequest, UpdateLoanStatusRequest,
    ApproveLoanRequest, RejectLoanRequest, PaymentRequest, ReversePaymentRequest
)
from ..concurrency import retry_on_conflict
from ..events import loan_invalidation_keys, account_key
from ..loans import Loan, LoanDirection


router = APIRouter()


def _loan_response(system: LoanSystem, loan: Loan, *extra_keys: str) -> dict:
    return {
        "success": True,
        "loan": loan.to_response(system.precision),
        "invalidates": loan_invalidation_keys(loan.id, loan.branch_id) + list(extra_keys)
    }


def _write(system: LoanSystem, operation):
    return retry_on_conflict(operation, system.config.concurrency_max_retries)


def _create(direction: LoanDirection, request: CreateLoanRequest, system: LoanSystem) -> dict:
    loan = _write(system, lambda: system.loan_manager.create_loan(
        direction=direction,
        total_amount=request.total_amount,
        profile=request.profile.model_dump(),
        branch_id=request.branch_id,
        created_by=request.created_by,
        loan_type=request.loan_type,
        purpose=request.purpose,
        source=request.source,
        duration_months=request.duration_months,
        commitment_date=request.commitment_date,
        completion_date=request.completion_date,
        reservation_officer_id=request.reservation_officer_id,
        notes=request.notes,
        source_account_id=request.source_account_id
    ))
    extra = [account_key(request.source_account_id)] if request.source_account_id else []
    return _loan_response(system, loan, *extra)


@router.post("/giving", status_code=status.HTTP_201_CREATED)
def create_giving_loan(
    request: CreateLoanRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """Lend money out; the loan starts Active with its disbursement recorded"""
    return _create(LoanDirection.GIVING, request, system)


@router.post("/receiving", status_code=status.HTTP_201_CREATED)
def create_receiving_loan(
    request: CreateLoanRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """Register money borrowed; the loan starts Pending approval"""
    return _create(LoanDirection.RECEIVING, request, system)


@router.get("")
def list_loans(
    direction: Optional[str] = None,
    loan_status: Optional[str] = Query(None, alias="status"),
    branch_id: Optional[str] = Query(None, alias="branchId"),
    date_from: Optional[date] = Query(None, alias="dateFrom"),
    date_to: Optional[date] = Query(None, alias="dateTo"),
    search: Optional[str] = None,
    page: int = 1,
    limit: Optional[int] = None,
    system: LoanSystem = Depends(get_loan_system)
):
    """List loans, newest first"""
    result = system.loan_manager.list_loans(
        direction=direction,
        status=loan_status,
        branch_id=branch_id,
        date_from=date_from,
        date_to=date_to,
        search=search,
        page=page,
        limit=limit
    )
    return {"success": True, **result.to_dict(system.precision)}


@router.get("/{loan_id}")
def get_loan(
    loan_id: str,
    system: LoanSystem = Depends(get_loan_system)
):
    """Loan with its transaction summary"""
    detail = system.loan_manager.get_loan_detail(loan_id)
    return {"success": True, **detail.to_dict(system.precision)}


@router.put("/{loan_id}")
def update_loan(
    loan_id: str,
    request: UpdateLoanRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """Edit profile and descriptive fields"""
    changes = dict(request.model_extra or {})
    loan = _write(system, lambda: system.loan_manager.update_loan(loan_id, changes, request.updated_by))
    return _loan_response(system, loan)


@router.patch("/{loan_id}/status")
def update_loan_status(
    loan_id: str,
    request: UpdateLoanStatusRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """Generic status transition"""
    loan = _write(system, lambda: system.loan_manager.update_loan_status(
        loan_id, request.status, request.updated_by
    ))
    return _loan_response(system, loan)


@router.post("/{loan_id}/approve")
def approve_loan(
    loan_id: str,
    request: ApproveLoanRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """Approve a pending receiving loan into a bank account"""
    loan = _write(system, lambda: system.approval_workflow.approve(
        loan_id, request.target_account_id, request.approved_by, request.notes
    ))
    return _loan_response(system, loan, account_key(request.target_account_id))


@router.post("/{loan_id}/reject")
def reject_loan(
    loan_id: str,
    request: RejectLoanRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """Reject a pending loan"""
    loan = _write(system, lambda: system.approval_workflow.reject(
        loan_id, request.rejection_reason, request.rejected_by, request.notes
    ))
    return _loan_response(system, loan)


def _payment_kwargs(request: PaymentRequest) -> dict:
    return {
        "bank_account_id": request.bank_account_id,
        "performed_by": request.performed_by,
        "idempotency_key": request.idempotency_key,
        "reference": request.reference,
        "description": request.description,
        "allow_overpayment": request.allow_overpayment
    }


@router.post("/{loan_id}/payments")
def record_payment(
    loan_id: str,
    request: PaymentRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """Borrower payment on a giving loan"""
    loan = _write(system, lambda: system.payment_recorder.record_payment(
        loan_id, request.amount, **_payment_kwargs(request)
    ))
    extra = [account_key(request.bank_account_id)] if request.bank_account_id else []
    return _loan_response(system, loan, *extra)


@router.post("/{loan_id}/repayments")
def record_repayment(
    loan_id: str,
    request: PaymentRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """Repayment to the lender of a receiving loan"""
    loan = _write(system, lambda: system.payment_recorder.record_repayment(
        loan_id, request.amount, **_payment_kwargs(request)
    ))
    extra = [account_key(request.bank_account_id)] if request.bank_account_id else []
    return _loan_response(system, loan, *extra)


@router.post("/{loan_id}/transactions/{transaction_id}/reverse")
def reverse_payment(
    loan_id: str,
    transaction_id: str,
    request: ReversePaymentRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """Cancel a bounced payment or repayment"""
    loan = _write(system, lambda: system.payment_recorder.reverse_payment(
        loan_id, transaction_id, performed_by=request.performed_by, reason=request.reason
    ))
    original = system.ledger.get_transaction(transaction_id)
    extra = [account_key(original.bank_account_id)] if original.bank_account_id else []
    return _loan_response(system, loan, *extra)


@router.delete("/{loan_id}")
def delete_loan(
    loan_id: str,
    deleted_by: Optional[str] = Query(None, alias="deletedBy"),
    system: LoanSystem = Depends(get_loan_system)
):
    """Delete a loan that has no transactions"""
    loan = _write(system, lambda: system.loan_manager.delete_loan(loan_id, deleted_by))
    return {
        "success": True,
        "deleted": loan.id,
        "invalidates": loan_invalidation_keys(loan.id, loan.branch_id)
    }
