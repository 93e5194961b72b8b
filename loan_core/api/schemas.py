"""
Pydantic schemas for API requests

Amounts travel as strings (or integers) and are parsed to Decimal by the
core; JSON floats are refused there.
"""

from datetime import date
from typing import Optional, Union
from pydantic import BaseModel, ConfigDict, Field


AmountField = Union[str, int]


class BorrowerProfileModel(BaseModel):
    full_name: str = Field(..., description="Borrower (giving) or lender (receiving) name")
    father_name: Optional[str] = None
    mother_name: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    marital_status: Optional[str] = None
    nid_number: Optional[str] = None
    nid_front_image: Optional[str] = None
    nid_back_image: Optional[str] = None
    profile_photo: Optional[str] = None
    present_address: Optional[str] = None
    permanent_address: Optional[str] = None
    district: Optional[str] = None
    upazila: Optional[str] = None
    post_code: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_email: Optional[str] = None
    emergency_contact: Optional[str] = None
    emergency_phone: Optional[str] = None
    business_name: Optional[str] = None
    business_type: Optional[str] = None
    business_address: Optional[str] = None


class CreateLoanRequest(BaseModel):
    total_amount: AmountField = Field(..., description="Principal as a decimal string")
    profile: BorrowerProfileModel
    branch_id: Optional[str] = None
    created_by: Optional[str] = None
    loan_type: Optional[str] = None
    purpose: Optional[str] = None
    source: Optional[str] = None
    duration_months: Optional[int] = None
    commitment_date: Optional[date] = None
    completion_date: Optional[date] = None
    reservation_officer_id: Optional[str] = None
    notes: Optional[str] = None
    source_account_id: Optional[str] = Field(None, description="Account funding a giving loan")


class UpdateLoanRequest(BaseModel):
    """Any loan field may be sent; the core rejects the immutable ones"""
    model_config = ConfigDict(extra="allow")

    updated_by: Optional[str] = None


class UpdateLoanStatusRequest(BaseModel):
    status: str = Field(..., description="Target status, any casing")
    updated_by: Optional[str] = None


class ApproveLoanRequest(BaseModel):
    target_account_id: str
    approved_by: Optional[str] = None
    notes: Optional[str] = None


class RejectLoanRequest(BaseModel):
    rejection_reason: str
    rejected_by: Optional[str] = None
    notes: Optional[str] = None


class PaymentRequest(BaseModel):
    amount: AmountField
    bank_account_id: Optional[str] = None
    performed_by: Optional[str] = None
    idempotency_key: Optional[str] = None
    reference: Optional[str] = None
    description: Optional[str] = None
    allow_overpayment: Optional[bool] = None


class ReversePaymentRequest(BaseModel):
    performed_by: Optional[str] = None
    reason: Optional[str] = None


class CreateBankAccountRequest(BaseModel):
    name: str
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    opening_balance: AmountField = "0"
    allow_overdraft: bool = False
    created_by: Optional[str] = None
