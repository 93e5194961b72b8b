"""
Bank account endpoints
"""

from fastapi import APIRouter, Depends, status

from .dependencies import LoanSystem, get_loan_system
from .schemas import CreateBankAccountRequest
from ..events import account_key


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_bank_account(
    request: CreateBankAccountRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """Open a bank account"""
    account = system.account_manager.create_account(
        name=request.name,
        bank_name=request.bank_name,
        account_number=request.account_number,
        opening_balance=request.opening_balance,
        allow_overdraft=request.allow_overdraft,
        created_by=request.created_by
    )
    return {
        "success": True,
        "account": account.to_response(system.precision),
        "invalidates": [account_key(account.id)]
    }


@router.get("")
def list_bank_accounts(system: LoanSystem = Depends(get_loan_system)):
    """All bank accounts"""
    accounts = system.account_manager.list_accounts()
    return {
        "success": True,
        "accounts": [account.to_response(system.precision) for account in accounts],
        "count": len(accounts)
    }


@router.get("/{account_id}")
def get_bank_account(
    account_id: str,
    system: LoanSystem = Depends(get_loan_system)
):
    """Bank account details"""
    account = system.account_manager.get_account(account_id)
    return {"success": True, "account": account.to_response(system.precision)}
